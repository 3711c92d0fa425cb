from typing import Any, Dict, Mapping, Optional


class ProxyError(RuntimeError):
    """Base for errors that map onto a client-facing HTTP status."""

    status_code = 500

    def __init__(self, message: str, *, status_code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code

    def to_dict(self) -> Dict[str, Any]:
        return {"error": self.message}


class InvalidArgumentError(ProxyError):
    status_code = 400


class ImageTooLargeError(InvalidArgumentError):
    status_code = 413


class ConfigurationError(ProxyError):
    status_code = 400


class JobNotFoundError(ProxyError):
    status_code = 404


class UpstreamHttpError(ProxyError):
    """Non-2xx answer from a provider. The raw body is kept for diagnosis."""

    def __init__(self, upstream_status: int, body: str, url: str = ""):
        super().__init__(f"upstream {upstream_status}: {body}")
        self.upstream_status = upstream_status
        self.body = body
        self.url = url
        if 400 <= upstream_status < 500 and upstream_status not in (401, 403, 407):
            self.status_code = upstream_status
        else:
            self.status_code = 502

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error": self.message,
            "upstream_status": self.upstream_status,
            "upstream_body": self.body,
        }


class ModerationUnavailableError(ProxyError):
    status_code = 503

    def to_dict(self) -> Dict[str, Any]:
        return {"error": self.message, "retryable": True}


class ContentRejectedError(ProxyError):
    status_code = 403

    def __init__(self, message: str, category_scores: Optional[Mapping[str, float]] = None):
        super().__init__(message)
        self.category_scores = dict(category_scores or {})

    def to_dict(self) -> Dict[str, Any]:
        return {"error": self.message, "retryable": False, "category_scores": self.category_scores}
