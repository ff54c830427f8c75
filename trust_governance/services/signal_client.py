"""
Signal Client - Fetches credibility signals for content units from the signal feeds

Feeds:
- source: author reputation / historical accuracy and affiliation verification
- method: disclosed methodology flags
- proximity: relation of the author to the subject
- temporal: data timestamp and time sensitivity
- validation: corroborating / contradicting citations
"""
import logging
from typing import Dict, Any
import httpx
from tenacity import retry, stop_after_attempt, wait_exponential, retry_if_exception_type
from trust_governance.config import settings
from trust_governance.errors import UpstreamUnavailable

logger = logging.getLogger(__name__)

DIMENSIONS = ("source", "method", "proximity", "temporal", "validation")


class SignalClient:
    """
    HTTP client for the signal feeds.

    Every request is bounded by SIGNAL_TIMEOUT_SEC; transient failures are
    retried a bounded number of times before UpstreamUnavailable is raised.
    """

    def __init__(self, base_url: str = None, timeout: float = None):
        self.base_url = (base_url or settings.SIGNAL_SERVICE_URL).rstrip("/")
        self.timeout = timeout if timeout is not None else settings.SIGNAL_TIMEOUT_SEC

    @retry(
        stop=stop_after_attempt(settings.SIGNAL_MAX_RETRIES),
        wait=wait_exponential(multiplier=0.2, min=0.2, max=1),
        retry=retry_if_exception_type((httpx.TimeoutException, httpx.TransportError)),
        reraise=True
    )
    def _get(self, path: str) -> Dict[str, Any]:
        with httpx.Client(timeout=self.timeout) as client:
            response = client.get(f"{self.base_url}{path}")
            response.raise_for_status()
            return response.json()

    def fetch(self, dimension: str, content_id: str) -> Dict[str, Any]:
        """Fetch the raw signals for one dimension of one content unit"""
        if dimension not in DIMENSIONS:
            raise ValueError(f"Unknown trust dimension: {dimension}")

        try:
            return self._get(f"/signals/{dimension}/{content_id}")
        except httpx.TimeoutException:
            logger.warning(f"Signal timeout: {dimension} for {content_id}")
            raise UpstreamUnavailable(source=dimension)
        except httpx.HTTPStatusError as e:
            logger.warning(f"Signal HTTP error: {dimension} for {content_id}: {e}")
            raise UpstreamUnavailable(source=dimension)
        except httpx.TransportError as e:
            logger.warning(f"Signal transport error: {dimension} for {content_id}: {e}")
            raise UpstreamUnavailable(source=dimension)

    async def health_check(self) -> bool:
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.get(f"{self.base_url}/health")
                return response.status_code == 200
        except httpx.HTTPError as e:
            logger.debug(f"Signal service health check failed: {e}")
            return False


# Singleton instance
signal_client = SignalClient()
