from enum import Enum
from typing import Optional


class FetchErrorKind(Enum):
    REQUEST_TIMEOUT = "request_timeout"
    RESPONSE_STATUS_404 = "response_status_404"
    RESPONSE_STATUS_500 = "response_status_500"
    RESPONSE_STATUS_NOT_200 = "response_status_not_200"
    CONTENT_TYPE_PARSE = "content_type_parse"
    INVALID_CONTENT_TYPE_FOUND = "invalid_content_type_found"
    UNABLE_TO_READ_BODY = "unable_to_read_body"
    # transport failures that are not timeouts: refused, DNS, redirect loops
    REQUEST_FAILED = "request_failed"


class ConfigErrorKind(Enum):
    READ_FILE = "config_read_file"
    CONVERSION = "config_conversion"


class FetchError(Exception):
    """A fetch that failed for exactly one classified reason."""

    def __init__(self, kind: FetchErrorKind, message: str, url: Optional[str] = None, status: Optional[int] = None) -> None:
        self.kind = kind
        self.message = message
        self.url = url
        self.status = status
        super().__init__(message)

    def __repr__(self) -> str:
        return f"FetchError({self.kind.name}, {self.message!r})"


class ConfigError(Exception):
    def __init__(self, kind: ConfigErrorKind, message: str) -> None:
        self.kind = kind
        self.message = message
        super().__init__(message)
