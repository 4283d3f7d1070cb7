"""Error taxonomy shared by the engine and the HTTP layer."""

from typing import Any, Optional


class PostflowError(Exception):
    """Base error: stable machine-readable code, human message, HTTP status."""

    status = 500
    default_code = "internal_error"

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or self.default_code
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        body: dict[str, Any] = {"ok": False, "error": self.message, "code": self.code}
        if self.details:
            body["details"] = self.details
        return body


class ValidationError(PostflowError):
    """Rejected before any mutation (missing field, empty batch, unknown platform)."""

    status = 400
    default_code = "validation_error"


class AuthenticationError(PostflowError):
    """No identity or an invalid one."""

    status = 401
    default_code = "unauthorized"


class ForbiddenError(PostflowError):
    """Identity is valid but does not own the resource."""

    status = 403
    default_code = "forbidden"

    def __init__(self, message: str = "Forbidden", code: Optional[str] = None) -> None:
        super().__init__(message, code=code)


class NotFoundError(PostflowError):
    status = 404
    default_code = "not_found"

    def __init__(self, resource: str, resource_id: Any = None) -> None:
        message = f"{resource} not found" if resource_id is None else f"{resource} {resource_id} not found"
        super().__init__(message, details={"resource": resource})


class UpstreamTimeoutError(PostflowError):
    """Backing store timed out; the caller may retry the same request once."""

    status = 408
    default_code = "upstream_timeout"


class ConflictError(PostflowError):
    """Request is well-formed but the resource state does not allow it."""

    status = 409
    default_code = "conflict"


class GoneError(PostflowError):
    """The resource existed but is no longer usable (expired share link)."""

    status = 410
    default_code = "session_expired"


class PublishError(PostflowError):
    """The publishing service refused or failed a single platform delivery."""

    status = 502
    default_code = "publish_failed"
