import json
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional

from . import mime
from .errors import ConfigError, ConfigErrorKind
from .types import FetchRequest


DEFAULT_PORT = 9100
DEFAULT_ADDRESS = "0.0.0.0"

_REQUIRED_KEYS = ("url", "mimeType", "timeout")
_OPTIONAL_KEYS = ("port", "address", "basicAuth", "metricsInterval")


@dataclass(frozen=True)
class BasicAuthCredentials:
    username: str
    password: str


@dataclass(frozen=True)
class ExporterConfig:
    url: str
    mime_type: str
    timeout: int
    port: int = DEFAULT_PORT
    address: str = DEFAULT_ADDRESS
    basic_auth: Optional[BasicAuthCredentials] = None
    metrics_interval: float = 10.0

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "url": self.url,
            "mimeType": self.mime_type,
            "timeout": self.timeout,
            "port": self.port,
            "address": self.address,
            "metricsInterval": self.metrics_interval,
        }
        if self.basic_auth is not None:
            data["basicAuth"] = {"username": self.basic_auth.username, "password": self.basic_auth.password}
        return data


def load_config(path: str) -> ExporterConfig:
    content = _read_config_file(path)
    return _convert_to_config(content)


def dump_config(config: ExporterConfig, path: str) -> None:
    Path(path).write_text(json.dumps(config.to_dict(), indent=2) + "\n", encoding="utf-8")


def _read_config_file(path: str) -> str:
    try:
        return Path(path).read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as e:
        raise ConfigError(ConfigErrorKind.READ_FILE, f'Configuration: could not read file "{path}"') from e


def _convert_to_config(content: str) -> ExporterConfig:
    try:
        data = json.loads(content)
        return _from_dict(data)
    except (ValueError, TypeError) as e:
        # json.JSONDecodeError is a ValueError
        raise ConfigError(ConfigErrorKind.CONVERSION, f'Configuration: could not load configuration: "{e}"') from e


def _expect(data: Dict[str, Any], key: str, kind: type, default: Any = None) -> Any:
    if key not in data:
        return default
    value = data[key]
    # reject bools where numbers are expected
    if isinstance(value, bool) and kind is not bool:
        raise TypeError(f"{key} must be {kind.__name__}, got bool")
    if kind is float and isinstance(value, int):
        value = float(value)
    if not isinstance(value, kind):
        raise TypeError(f"{key} must be {kind.__name__}, got {type(value).__name__}")
    return value


def _from_dict(data: Any) -> ExporterConfig:
    if not isinstance(data, dict):
        raise TypeError(f"configuration must be a JSON object, got {type(data).__name__}")
    unknown = sorted(set(data) - set(_REQUIRED_KEYS) - set(_OPTIONAL_KEYS))
    if unknown:
        raise ValueError(f"unknown keys: {', '.join(unknown)}")
    missing = [k for k in _REQUIRED_KEYS if k not in data]
    if missing:
        raise ValueError(f"missing required keys: {', '.join(missing)}")

    url = _expect(data, "url", str)
    mime_type = _expect(data, "mimeType", str)
    timeout = _expect(data, "timeout", int)
    # same rules the fetcher applies to every call
    FetchRequest(url, mime_type, timeout)
    mime.normalize_token(mime_type)

    port = _expect(data, "port", int, DEFAULT_PORT)
    if not 0 <= port <= 65535:
        raise ValueError(f"port out of range: {port}")
    metrics_interval = _expect(data, "metricsInterval", float, 10.0)
    if metrics_interval < 0:
        raise ValueError(f"metricsInterval must not be negative: {metrics_interval}")

    basic_auth = None
    raw_auth = _expect(data, "basicAuth", dict)
    if raw_auth is not None:
        extra = sorted(set(raw_auth) - {"username", "password"})
        if extra:
            raise ValueError(f"unknown basicAuth keys: {', '.join(extra)}")
        username = _expect(raw_auth, "username", str)
        password = _expect(raw_auth, "password", str)
        if not username or password is None:
            raise ValueError("basicAuth requires username and password")
        basic_auth = BasicAuthCredentials(username=username, password=password)

    return ExporterConfig(
        url=url,
        mime_type=mime_type,
        timeout=timeout,
        port=port,
        address=_expect(data, "address", str, DEFAULT_ADDRESS),
        basic_auth=basic_auth,
        metrics_interval=metrics_interval,
    )
