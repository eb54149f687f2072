"""
Exception hierarchy and Graph API error mapping for the SharePoint audit tools.
"""

from typing import Any, Dict, List, Optional


class SpAuditError(Exception):
    """
    Base exception for spaudit.

    Attributes:
        details: Optional structured information (HTTP status, operation, ...)
        cause: Optional original exception that triggered this error
    """

    def __init__(
        self,
        message: str,
        *,
        details: Optional[Dict[str, Any]] = None,
        cause: Optional[BaseException] = None,
    ) -> None:
        super().__init__(message)
        self.details = details or {}
        self.cause = cause


class ConfigError(SpAuditError):
    """Raised when configuration or credentials are missing or unusable."""


class ResolutionError(SpAuditError):
    """Raised when a requested site, library or folder does not exist."""

    def __init__(self, kind: str, requested: str, available: List[str]) -> None:
        self.kind = kind
        self.requested = requested
        self.available = list(available)
        if self.available:
            listing = ", ".join(f"'{name}'" for name in self.available)
        else:
            listing = "(none)"
        super().__init__(
            f"{kind} '{requested}' not found. Available {kind.lower()}s: {listing}",
            details={"kind": kind, "requested": requested, "available": self.available},
        )


class GraphError(SpAuditError):
    """Raised for Graph API failures not covered by a more specific class."""

    @property
    def status_code(self) -> Optional[int]:
        return self.details.get("status_code")


class AuthError(GraphError):
    """HTTP 401: token expired or invalid."""


class AccessDeniedError(GraphError):
    """HTTP 403."""


class NotFoundError(GraphError):
    """HTTP 404."""


class ThrottledError(GraphError):
    """HTTP 429."""


class NetworkError(GraphError):
    """Transport failure or timeout before a response arrived."""


def map_http_error(
    status_code: int,
    response_text: str,
    operation: str,
    *,
    cause: Optional[BaseException] = None,
) -> GraphError:
    """
    Map a failed Graph response to a spaudit exception.

    Policy:
        - 401 -> AuthError
        - 403 -> AccessDeniedError
        - 404 -> NotFoundError
        - 429 -> ThrottledError
        - otherwise -> GraphError
    """
    details = {
        "status_code": status_code,
        "operation": operation,
        "response": response_text[:500] if response_text else "",
    }
    message = f"Failed to {operation}: {status_code}"

    if status_code == 401:
        return AuthError(message, details=details, cause=cause)
    if status_code == 403:
        return AccessDeniedError(message, details=details, cause=cause)
    if status_code == 404:
        return NotFoundError(message, details=details, cause=cause)
    if status_code == 429:
        return ThrottledError(message, details=details, cause=cause)
    return GraphError(message, details=details, cause=cause)


def describe_api_error(error: SpAuditError) -> List[str]:
    """
    Return console guidance lines for an error, most specific first.

    Args:
        error: Any spaudit exception

    Returns:
        List of lines ready to print
    """
    lines = [f"❌ {error}"]

    if isinstance(error, AuthError):
        lines.append("🔑 Token expired or invalid")
        lines.append("Refresh with: rclone config reconnect <remote>, or check the app registration secret")
    elif isinstance(error, AccessDeniedError):
        lines.append("Access denied. This could be due to:")
        lines.append("  - Insufficient permissions on the site or library")
        lines.append("  - Sites.Read.All / Sites.FullControl.All not granted to the app")
    elif isinstance(error, NotFoundError):
        lines.append("Item not found - check the site URL, library and folder names")
    elif isinstance(error, ThrottledError):
        lines.append("Request throttled by SharePoint - lower --throttle and try again")
    elif isinstance(error, NetworkError):
        lines.append("Network error - check connectivity to graph.microsoft.com")
    elif isinstance(error, GraphError) and error.details.get("response"):
        lines.append(f"Response: {error.details['response']}")

    return lines
