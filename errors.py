from typing import Any, Dict, Optional


class OAuthError(Exception):
    """OAuth 2.1 protocol error rendered as an error/error_description body"""

    error = "invalid_request"
    status_code = 400

    def __init__(self, description: str, error: Optional[str] = None, status_code: Optional[int] = None):
        super().__init__(description)
        self.description = description
        if error:
            self.error = error
        if status_code:
            self.status_code = status_code

    def to_dict(self) -> Dict[str, Any]:
        return {"error": self.error, "error_description": self.description}


class InvalidRequestError(OAuthError):
    error = "invalid_request"


class InvalidGrantError(OAuthError):
    error = "invalid_grant"


class UnsupportedGrantTypeError(OAuthError):
    error = "unsupported_grant_type"


class UnsupportedResponseTypeError(OAuthError):
    error = "unsupported_response_type"


class InvalidClientMetadataError(OAuthError):
    error = "invalid_client_metadata"


class ServerError(OAuthError):
    error = "server_error"
    status_code = 500


class UpstreamError(Exception):
    """Upstream authorization server did not return a usable token response"""

    def __init__(self, message: str, status_code: Optional[int] = None, body: Optional[str] = None):
        super().__init__(message)
        self.status_code = status_code
        self.body = body
