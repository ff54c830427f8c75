"""
Trust Score Service - Computes the five-dimension trust profile of a content unit

Dimensions (each clamped to 0-100):
- T1 Source: author reputation / historical accuracy + affiliation verification
- T2 Method: completeness of the disclosed methodology
- T3 Proximity: primary vs. secondary relation of the author to the subject
- T4 Temporal: decay of data age against the relevance window
- T5 Validation: corroborating vs. contradicting citations

Scores are deterministic. A dimension whose signal feed does not answer in
time falls back to the neutral score and the profile is flagged partial.
"""
import logging
from concurrent.futures import ThreadPoolExecutor, wait
from datetime import datetime
from typing import Dict, Any, List, Optional, Tuple
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from trust_governance.config import settings
from trust_governance.db.models import TrustProfile
from trust_governance.errors import UpstreamUnavailable
from trust_governance.services.signal_client import DIMENSIONS, signal_client

logger = logging.getLogger(__name__)

DIMENSION_LABELS = {
    "t1_source": "Source",
    "t2_method": "Method",
    "t3_proximity": "Proximity",
    "t4_temporal": "Temporal",
    "t5_validation": "Validation",
}


def clamp(value: float, low: int = 0, high: int = 100) -> int:
    return int(max(low, min(high, round(value))))


def trust_level(score: int) -> str:
    if score >= 80:
        return "High Trust"
    elif score >= 60:
        return "Medium Trust"
    elif score >= 40:
        return "Low Trust"
    return "Unverified"


def _parse_timestamp(value: Any) -> Optional[datetime]:
    if value is None or isinstance(value, datetime):
        return value
    try:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is not None:
        parsed = parsed.replace(tzinfo=None) - parsed.utcoffset()
    return parsed


class TrustScoreService:
    """Service computing and persisting trust profiles"""

    # T1: weight of historical reputation, bonus by affiliation verification level
    REPUTATION_WEIGHT = 0.75
    UNKNOWN_AUTHOR_BASE = 30
    AFFILIATION_BONUS = {
        "none": 0,
        "self_declared": 5,
        "email_verified": 15,
        "institution_verified": 25,
    }

    # T2: methodology disclosure weights (sum to 100)
    METHOD_WEIGHTS = {
        "method_described": 40,
        "reproducible": 30,
        "data_available": 30,
    }

    # T3: base score by proximity type, bonus for firsthand evidence
    PROXIMITY_BASE = {
        "on_site": 85,
        "remote": 60,
        "inferred": 35,
    }
    FIRSTHAND_BONUS = 15

    # T5: citation count at which the validation signal reaches full strength
    VALIDATION_SATURATION = 5
    CONTRADICTION_DETAIL_MAX = 200

    def __init__(self, provider=None, max_workers: int = 10):
        self.provider = provider or signal_client
        self._executor = ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix="trust-signals"
        )

    @property
    def fetch_budget_sec(self) -> float:
        """Upper bound on how long one compute() waits for all feeds"""
        return settings.SIGNAL_TIMEOUT_SEC * max(1, settings.SIGNAL_MAX_RETRIES) + 1.0

    # ------------------------------------------------------------------
    # Signal collection
    # ------------------------------------------------------------------

    def collect_signals(
        self,
        content_id: str,
        timeout: Optional[float] = None
    ) -> Tuple[Dict[str, Dict[str, Any]], List[str]]:
        """
        Fetch every dimension's signals concurrently.

        Returns (signals by dimension, dimensions that were unavailable).
        """
        timeout = self.fetch_budget_sec if timeout is None else timeout
        futures = {
            dimension: self._executor.submit(self.provider.fetch, dimension, content_id)
            for dimension in DIMENSIONS
        }
        wait(futures.values(), timeout=timeout)

        signals: Dict[str, Dict[str, Any]] = {}
        unavailable: List[str] = []
        for dimension, future in futures.items():
            if not future.done():
                future.cancel()
                logger.warning(f"Signal {dimension} for {content_id} exceeded {timeout}s, using neutral score")
                unavailable.append(dimension)
                continue
            try:
                signals[dimension] = future.result() or {}
            except UpstreamUnavailable:
                unavailable.append(dimension)
            except Exception as e:
                logger.error(f"Signal {dimension} for {content_id} failed: {e}", exc_info=True)
                unavailable.append(dimension)

        return signals, unavailable

    # ------------------------------------------------------------------
    # Dimension scoring
    # ------------------------------------------------------------------

    def score_source(self, signals: Dict[str, Any]) -> Dict[str, Any]:
        reputation = signals.get("author_reputation")
        affiliation = signals.get("affiliation_level") or "none"
        author_known = reputation is not None

        base = reputation * self.REPUTATION_WEIGHT if author_known else self.UNKNOWN_AUTHOR_BASE
        score = clamp(base + self.AFFILIATION_BONUS.get(affiliation, 0))
        return {
            "t1_source": score,
            "t1_author_known": author_known,
            "t1_affiliation_level": affiliation,
        }

    def score_method(self, signals: Dict[str, Any]) -> Dict[str, Any]:
        flags = {key: bool(signals.get(key, False)) for key in self.METHOD_WEIGHTS}
        score = sum(weight for key, weight in self.METHOD_WEIGHTS.items() if flags[key])
        return {
            "t2_method": clamp(score),
            "t2_method_described": flags["method_described"],
            "t2_reproducible": flags["reproducible"],
            "t2_data_available": flags["data_available"],
        }

    def score_proximity(self, signals: Dict[str, Any]) -> Dict[str, Any]:
        proximity_type = signals.get("proximity_type")
        firsthand = bool(signals.get("firsthand", False))

        base = self.PROXIMITY_BASE.get(proximity_type, settings.TRUST_NEUTRAL_SCORE)
        if firsthand:
            base += self.FIRSTHAND_BONUS
        return {
            "t3_proximity": clamp(base),
            "t3_proximity_type": proximity_type if proximity_type in self.PROXIMITY_BASE else None,
            "t3_firsthand": firsthand,
        }

    def score_temporal(self, signals: Dict[str, Any], now: datetime) -> Dict[str, Any]:
        is_time_sensitive = bool(signals.get("is_time_sensitive", False))
        data_timestamp = _parse_timestamp(signals.get("data_timestamp"))

        if data_timestamp is None:
            score = settings.TRUST_NEUTRAL_SCORE
        else:
            window_days = (
                settings.TRUST_TIME_SENSITIVE_RELEVANCE_DAYS if is_time_sensitive
                else settings.TRUST_MAX_RELEVANCE_DAYS
            )
            window_days = signals.get("max_relevance_days") or window_days
            age_days = max(0.0, (now - data_timestamp).total_seconds() / 86400)
            score = 100 * (1 - age_days / window_days)

        return {
            "t4_temporal": clamp(score),
            "is_time_sensitive": is_time_sensitive,
            "data_timestamp": data_timestamp,
        }

    def score_validation(self, signals: Dict[str, Any]) -> Dict[str, Any]:
        contradicting = signals.get("contradicting") or []
        corroborating_count = signals.get("corroborating_count")
        if corroborating_count is None:
            corroborating_count = len(signals.get("corroborating") or [])
        contradicting_count = signals.get("contradicting_count")
        if contradicting_count is None:
            contradicting_count = len(contradicting)

        total = corroborating_count + contradicting_count
        if total == 0:
            score = settings.TRUST_NEUTRAL_SCORE
        else:
            balance = (corroborating_count - contradicting_count) / total
            strength = min(1.0, total / self.VALIDATION_SATURATION)
            score = 50 + 50 * balance * strength

        contradictions = [
            {
                "content_id": str(item.get("content_id", "")),
                "detail": str(item.get("detail", ""))[:self.CONTRADICTION_DETAIL_MAX],
            }
            for item in contradicting
            if isinstance(item, dict)
        ]
        return {
            "t5_validation": clamp(score),
            "corroborating_count": corroborating_count,
            "contradicting_count": contradicting_count,
            "contradictions": contradictions,
        }

    def score_signals(
        self,
        signals: Dict[str, Dict[str, Any]],
        unavailable: List[str],
        now: Optional[datetime] = None
    ) -> Dict[str, Any]:
        """Turn collected signals into profile fields; unavailable dimensions stay neutral"""
        now = now or datetime.utcnow()
        neutral = settings.TRUST_NEUTRAL_SCORE
        scorers = {
            "source": (self.score_source, {"t1_source": neutral}),
            "method": (self.score_method, {"t2_method": neutral}),
            "proximity": (self.score_proximity, {"t3_proximity": neutral}),
            "temporal": (
                lambda s: self.score_temporal(s, now),
                {"t4_temporal": neutral, "is_time_sensitive": False, "data_timestamp": None}
            ),
            "validation": (
                self.score_validation,
                {"t5_validation": neutral, "corroborating_count": 0,
                 "contradicting_count": 0, "contradictions": []}
            ),
        }

        fields: Dict[str, Any] = {}
        failed: List[str] = []
        for dimension, (scorer, fallback) in scorers.items():
            if dimension in unavailable:
                fields.update(fallback)
                continue
            try:
                fields.update(scorer(signals.get(dimension) or {}))
            except (TypeError, ValueError, AttributeError) as e:
                # malformed feed payload, score this dimension as missing
                logger.warning(f"Signal {dimension} payload could not be scored: {e}")
                fields.update(fallback)
                failed.append(dimension)

        fields["partial_dimensions"] = [
            d for d in DIMENSIONS if d in unavailable or d in failed
        ]
        fields["is_partial"] = bool(fields["partial_dimensions"])
        return fields

    # ------------------------------------------------------------------
    # Summary
    # ------------------------------------------------------------------

    def summarize(self, profile: TrustProfile) -> str:
        """Deterministic templated synopsis of a profile"""
        scores = {key: getattr(profile, key) for key in DIMENSION_LABELS}
        strongest = max(scores, key=lambda k: (scores[k], -list(DIMENSION_LABELS).index(k)))
        weakest = min(scores, key=lambda k: (scores[k], list(DIMENSION_LABELS).index(k)))

        parts = [
            f"{trust_level(profile.aggregate)} ({profile.aggregate}/100).",
            f"Strongest: {DIMENSION_LABELS[strongest]} ({scores[strongest]}); "
            f"weakest: {DIMENSION_LABELS[weakest]} ({scores[weakest]}).",
        ]
        if profile.corroborating_count:
            parts.append(f"Corroborated by {profile.corroborating_count} source(s).")
        if profile.contradicting_count:
            parts.append(f"Contradicted by {profile.contradicting_count} source(s).")
        if profile.is_time_sensitive:
            if profile.data_timestamp:
                parts.append(f"Time-sensitive data from {profile.data_timestamp.date().isoformat()}.")
            else:
                parts.append("Time-sensitive data.")
        if profile.is_partial:
            parts.append(f"Partial: {', '.join(profile.partial_dimensions)} unavailable.")
        return " ".join(parts)

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def compute(
        self,
        db: Session,
        content_id: str,
        content_type: str = "post",
        now: Optional[datetime] = None
    ) -> TrustProfile:
        """Recompute and persist the trust profile of a content unit"""
        now = now or datetime.utcnow()
        signals, unavailable = self.collect_signals(content_id)
        fields = self.score_signals(signals, unavailable, now)

        try:
            profile = self._upsert(db, content_id, content_type, fields, now)
        except IntegrityError:
            # a concurrent worker created the row first; update it instead
            profile = self._upsert(db, content_id, content_type, fields, now)

        if profile.is_partial:
            logger.warning(
                f"Trust profile for {content_id} is partial: {profile.partial_dimensions}"
            )
        else:
            logger.info(f"Trust profile for {content_id} computed: aggregate={profile.aggregate}")
        return profile

    def _upsert(
        self,
        db: Session,
        content_id: str,
        content_type: str,
        fields: Dict[str, Any],
        now: datetime
    ) -> TrustProfile:
        try:
            profile = db.query(TrustProfile).filter(
                TrustProfile.content_id == content_id
            ).with_for_update().first()

            if not profile:
                profile = TrustProfile(content_id=content_id, content_type=content_type, created_at=now)
                db.add(profile)

            for key, value in fields.items():
                setattr(profile, key, value)
            profile.updated_at = now
            profile.summary = self.summarize(profile)
            db.commit()
            db.refresh(profile)
            return profile
        except Exception:
            db.rollback()
            raise

    def get_profile(self, db: Session, content_id: str) -> Optional[TrustProfile]:
        return db.query(TrustProfile).filter(TrustProfile.content_id == content_id).first()

    def serialize_profile(self, profile: TrustProfile) -> Dict[str, Any]:
        return {
            "content_id": profile.content_id,
            "content_type": profile.content_type,
            "t1_source": profile.t1_source,
            "t1_author_known": profile.t1_author_known,
            "t1_affiliation_level": profile.t1_affiliation_level,
            "t2_method": profile.t2_method,
            "t2_method_described": profile.t2_method_described,
            "t2_reproducible": profile.t2_reproducible,
            "t2_data_available": profile.t2_data_available,
            "t3_proximity": profile.t3_proximity,
            "t3_proximity_type": profile.t3_proximity_type,
            "t3_firsthand": profile.t3_firsthand,
            "t4_temporal": profile.t4_temporal,
            "is_time_sensitive": profile.is_time_sensitive,
            "data_timestamp": profile.data_timestamp.isoformat() if profile.data_timestamp else None,
            "t5_validation": profile.t5_validation,
            "corroborating_count": profile.corroborating_count,
            "contradicting_count": profile.contradicting_count,
            "contradictions": profile.contradictions or [],
            "aggregate": profile.aggregate,
            "trust_level": trust_level(profile.aggregate),
            "summary": profile.summary,
            "is_partial": profile.is_partial,
            "partial_dimensions": profile.partial_dimensions or [],
            "updated_at": profile.updated_at.isoformat() if profile.updated_at else None,
        }


# Singleton instance
trust_score_service = TrustScoreService()
