import re
from typing import Dict, List, Optional, Tuple

# RFC 7230 token characters
_TOKEN_RE = re.compile(r"^[!#$%&'*+.^_`|~0-9A-Za-z-]+$")
_PARAM_RE = re.compile(r';\s*([!#$%&\'*+.^_`|~0-9A-Za-z-]+)\s*=\s*("(?:[^"\\]|\\.)*"|[^;]*)')


def parse_content_type(header: Optional[str]) -> Tuple[str, str, Dict[str, str]]:
    """Split a Content-Type header into (type, subtype, params).

    Only the media type is validated; malformed parameters are skipped.
    """
    if header is None or not header.strip():
        raise ValueError("empty Content-Type")
    media_type, _, raw_params = header.partition(";")
    media_type = media_type.strip().lower()
    if media_type.count("/") != 1:
        raise ValueError(f"malformed media type: {media_type!r}")
    main, sub = media_type.split("/")
    if not _TOKEN_RE.match(main) or not _TOKEN_RE.match(sub):
        raise ValueError(f"malformed media type: {media_type!r}")
    params: Dict[str, str] = {}
    for match in _PARAM_RE.finditer(";" + raw_params):
        value = match.group(2).strip()
        if len(value) >= 2 and value[0] == value[-1] == '"':
            value = re.sub(r"\\(.)", r"\1", value[1:-1])
        params[match.group(1).lower()] = value
    return main, sub, params


def normalize_token(value: str) -> str:
    value = value.strip().lower()
    if "/" in value:
        _, sub, _ = parse_content_type(value)
        return sub
    if not _TOKEN_RE.match(value):
        raise ValueError(f"malformed mime-type token: {value!r}")
    return value


def media_type_tokens(sub: str) -> List[str]:
    tokens = [sub]
    if "+" in sub:
        suffix = sub.rsplit("+", 1)[1]
        if suffix:
            tokens.append(suffix)
    return tokens
