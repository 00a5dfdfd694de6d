"""Request identity keys for dedupe, debounce and rate-limit scoping."""

import json
from enum import Enum
from typing import Any, Callable, Optional, Sequence, Union

from .errors import ConfigError
from .models import FormBody, MultipartBody, PreparedRequest

_BASE36 = "0123456789abcdefghijklmnopqrstuvwxyz"


class KeyStrategy(str, Enum):
    """Built-in key strategies."""

    URL = "url"
    METHOD_URL = "method+url"
    METHOD_URL_BODY = "method+url+body"
    CUSTOM = "custom"


_ALIASES = {
    "url+method": KeyStrategy.METHOD_URL,
    "url+method+body": KeyStrategy.METHOD_URL_BODY,
}


def _to_base36(value: int) -> str:
    if value == 0:
        return "0"
    digits = []
    while value:
        value, rem = divmod(value, 36)
        digits.append(_BASE36[rem])
    return "".join(reversed(digits))


def stable_hash(data: Union[str, bytes]) -> str:
    """djb2 over a string or bytes, folded to a signed 32-bit int, rendered base36."""
    if isinstance(data, str):
        units: Sequence[int] = [ord(ch) for ch in data]
    else:
        units = data
    value = 5381
    for unit in units:
        value = ((value << 5) + value + unit) & 0xFFFFFFFF
    if value >= 0x80000000:
        value -= 0x100000000
    return _to_base36(abs(value))


def _canonical_json(body: Any) -> str:
    return json.dumps(body, sort_keys=True, separators=(",", ":"), default=str)


def hash_body(body: Any) -> str:
    """
    Hash a request body.

    Strings are hashed as-is, form bodies as sorted k=v pairs, structured
    bodies as canonical JSON and binary bodies byte-wise.
    """
    if body is None:
        return ""
    if isinstance(body, str):
        return stable_hash(body)
    if isinstance(body, (bytes, bytearray, memoryview)):
        return stable_hash(bytes(body))
    if isinstance(body, (FormBody, MultipartBody)):
        pairs = sorted(body.items())
        return stable_hash("&".join(f"{k}={v}" for k, v in pairs))
    return stable_hash(_canonical_json(body))


def _header_suffix(prepared: PreparedRequest, include_headers: Sequence[str]) -> str:
    parts = []
    for name in include_headers or ():
        value = prepared.header(name)
        if value:
            parts.append(f"h:{name}={value}")
    return "|" + "|".join(parts) if parts else ""


def derive_key(
    prepared: PreparedRequest,
    strategy: Union[str, KeyStrategy, Callable[[PreparedRequest], Any]] = KeyStrategy.METHOD_URL,
    include_headers: Sequence[str] = (),
    key_generator: Optional[Callable[[PreparedRequest], Any]] = None,
) -> str:
    """
    Derive the identity key of a prepared request.

    Args:
        prepared: The resolved request
        strategy: A KeyStrategy name (or alias), or a callable taking the request
        include_headers: Header names appended as h:{name}={value} pairs
        key_generator: Callable used by the "custom" strategy

    Returns:
        The key string

    Raises:
        ConfigError: Unknown strategy, or a custom generator returned a non-string
    """
    if callable(strategy) and not isinstance(strategy, str):
        key_generator, strategy = strategy, KeyStrategy.CUSTOM

    name = _ALIASES.get(strategy, strategy) if isinstance(strategy, str) else strategy
    try:
        strategy = KeyStrategy(name)
    except ValueError:
        raise ConfigError(
            f"Invalid key strategy {name!r}: must be one of url, method+url, method+url+body, custom"
        ) from None

    if strategy is KeyStrategy.CUSTOM:
        if not callable(key_generator):
            raise ConfigError('key strategy "custom" requires a key_generator function')
        key = key_generator(prepared)
        if not isinstance(key, str):
            raise ConfigError(f"key_generator must return a string, got {type(key).__name__}")
        return key

    if strategy is KeyStrategy.URL:
        key = prepared.url
    else:
        key = f"{prepared.method}:{prepared.url}"
        if strategy is KeyStrategy.METHOD_URL_BODY and prepared.body is not None:
            key += f":body:{hash_body(prepared.body)}"

    return key + _header_suffix(prepared, include_headers)
