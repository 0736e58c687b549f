"""Gateway error taxonomy and its HTTP rendering."""

from typing import Dict, Optional


class GatewayError(Exception):
    """Base class for errors rendered to the client as ``{error, message}``."""

    status_code: int = 500
    error_type: str = "internal_error"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_dict(self) -> Dict[str, str]:
        return {"error": self.error_type, "message": self.message}


class ValidationError(GatewayError):
    status_code = 400
    error_type = "invalid_request"


class AuthenticationError(GatewayError):
    status_code = 401
    error_type = "authentication_error"


class PermissionDeniedError(GatewayError):
    status_code = 403
    error_type = "insufficient_permissions"


class NoAccountAvailable(GatewayError):
    status_code = 503
    error_type = "service_unavailable"

    def __init__(self, message: str = "No upstream account available"):
        super().__init__(message)


class UpstreamError(GatewayError):
    """Non-2xx or transport failure from the upstream provider."""

    status_code = 502
    error_type = "upstream_error"

    def __init__(
        self,
        upstream_status: Optional[int],
        body: str = "",
        account_id: Optional[int] = None,
    ):
        if upstream_status is None:
            message = f"Upstream request failed: {body}"
        else:
            message = f"Upstream returned HTTP {upstream_status}"
        super().__init__(message)
        self.upstream_status = upstream_status
        self.body = body
        self.account_id = account_id

    def to_dict(self) -> Dict[str, str]:
        data = super().to_dict()
        if self.body:
            data["upstream_body"] = self.body[:2000]
        return data


class CredentialExpired(GatewayError):
    """OAuth credential could not be made valid. Drives failover, never rendered."""

    def __init__(self, account_id: int, reason: str = ""):
        super().__init__(f"Credential for account {account_id} expired: {reason}")
        self.account_id = account_id
        self.reason = reason


class InternalError(GatewayError):
    status_code = 500
    error_type = "internal_error"
