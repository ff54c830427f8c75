"""
Error taxonomy for governance operations.

Every error carries a client-safe message. Validation and conflict messages
are surfaced verbatim; anything not derived from GovernanceError is treated
as an internal failure and rendered generically by the app.
"""
from typing import Any, Dict, Optional


class GovernanceError(Exception):
    """Base class for expected, client-visible failures"""
    
    status_code = 400
    
    def __init__(self, message: str, **extra: Any):
        super().__init__(message)
        self.message = message
        self.extra: Dict[str, Any] = extra
    
    def to_dict(self) -> Dict[str, Any]:
        body = {"error": self.message}
        body.update(self.extra)
        return body


class AuthenticationRequired(GovernanceError):
    status_code = 401
    
    def __init__(self, message: str = "Unauthorized", **extra: Any):
        super().__init__(message, **extra)


class AuthorizationDenied(GovernanceError):
    status_code = 403
    
    def __init__(self, message: str = "Forbidden", **extra: Any):
        super().__init__(message, **extra)


class ValidationFailed(GovernanceError):
    status_code = 400


class Conflict(GovernanceError):
    status_code = 409


class NotFound(GovernanceError):
    status_code = 404


class InsufficientQuorum(GovernanceError):
    """Approval attempted before the endorsement quorum was met"""
    
    status_code = 400
    
    def __init__(
        self,
        required: Dict[str, int],
        current: Dict[str, int],
        message: str = "Insufficient endorsements"
    ):
        super().__init__(message, required=required, current=current)
        self.required = required
        self.current = current


class UpstreamUnavailable(GovernanceError):
    """A signal source did not answer within its bounded timeout"""
    
    status_code = 503
    
    def __init__(self, message: str = "Signal source unavailable", source: Optional[str] = None):
        super().__init__(message, source=source)
        self.source = source


def require_text(value: Optional[str], field: str, min_length: int) -> str:
    """Validate a required free-text field against its minimum length"""
    if value is None or not value.strip():
        raise ValidationFailed(f"Missing required field: {field}")
    value = value.strip()
    if len(value) < min_length:
        raise ValidationFailed(
            f"{field.replace('_', ' ').capitalize()} must be at least {min_length} characters"
        )
    return value
