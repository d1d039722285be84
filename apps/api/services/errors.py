# ArcGIS 連携で発生するエラー（HTTP ステータスを保持し、API 層で {success: false, error} に変換）

from typing import Any, Dict, Optional


class ArcGISError(Exception):
    status_code = 500
    retryable = False

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}

    def to_response(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {"success": False, "error": self.message}
        if self.retryable:
            body["retryable"] = True
        return body


class CredentialError(ArcGISError):
    """Token issuance failed or returned a malformed body."""


class UpstreamError(ArcGISError):
    """Remote query returned non-2xx or an embedded {error} object."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None, code: Optional[int] = None):
        super().__init__(message, detail)
        self.code = code


class UpstreamTimeout(UpstreamError):
    retryable = True


class ValidationError(ArcGISError):
    status_code = 400


class DecodeError(ArcGISError):
    """A single feature could not be decoded; callers skip the record."""
