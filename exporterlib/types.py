from dataclasses import dataclass
from typing import Protocol
from urllib.parse import urlparse


@dataclass(frozen=True)
class FetchRequest:
    url: str
    accepted_mime_type: str
    timeout_seconds: int

    def __post_init__(self) -> None:
        if not self.url:
            raise ValueError("url must not be empty")
        parsed = urlparse(self.url)
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            raise ValueError(f"url must be an absolute http(s) URL: {self.url!r}")
        if not self.accepted_mime_type or not self.accepted_mime_type.strip():
            raise ValueError("accepted mime type must not be empty")
        # bool is an int subclass; True is not a timeout
        if isinstance(self.timeout_seconds, bool) or not isinstance(self.timeout_seconds, int):
            raise ValueError(f"timeout must be an integer number of seconds, got {self.timeout_seconds!r}")
        if self.timeout_seconds <= 0:
            raise ValueError(f"timeout must be positive, got {self.timeout_seconds}")


@dataclass(frozen=True)
class FetchResult:
    body: bytes
    mime_type: str


class FetcherProtocol(Protocol):
    def fetch(self, url: str, accepted_mime_type: str, timeout_seconds: int) -> FetchResult: ...
