# portraitbook/errors.py
"""Error taxonomy. Every error knows the HTTP status the API boundary maps it to."""
from typing import Optional


class PortraitbookError(Exception):
    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(PortraitbookError):
    status_code = 400


class NotFoundError(PortraitbookError):
    status_code = 404


class ConfigurationError(PortraitbookError):
    pass


class UpstreamGatewayError(PortraitbookError):
    """Non-2xx (or failed) response from the remote model gateway."""

    def __init__(self, message: str, status_code_upstream: Optional[int] = None, body: Optional[str] = None):
        super().__init__(message)
        self.status_code_upstream = status_code_upstream
        self.body = body


class StatusFetchError(UpstreamGatewayError):
    """Live status lookup failed; `record` is the last known local state."""

    def __init__(self, message: str, record, status_code_upstream: Optional[int] = None, body: Optional[str] = None):
        super().__init__(message, status_code_upstream=status_code_upstream, body=body)
        self.record = record


class ResponseShapeError(PortraitbookError):
    pass


class UnexpectedMaskFormatError(ResponseShapeError):
    def __init__(self, message: str = "Unexpected mask output format"):
        super().__init__(message)


class NoImagesReturnedError(ResponseShapeError):
    def __init__(self, message: str = "Fine-tuned model returned no images"):
        super().__init__(message)


class ResponseParseError(PortraitbookError):
    pass


class EmptyResponseError(ResponseParseError):
    def __init__(self, message: str = "Gemini returned empty prompt"):
        super().__init__(message)


class NoImagesFoundError(PortraitbookError):
    def __init__(self, message: str = "No image files found in upload"):
        super().__init__(message)
