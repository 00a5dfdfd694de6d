"""URL joining and query merging."""

import re
from typing import Any, Dict, List, Mapping, Optional, Tuple
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

_SCHEME_RE = re.compile(r"^[a-zA-Z][a-zA-Z0-9+.\-]*://")


def is_absolute_url(url: str) -> bool:
    """Check whether url carries its own scheme."""
    return bool(_SCHEME_RE.match(url))


def join_url(base_url: Optional[str], url: str) -> str:
    """
    Join base_url and url with exactly one slash.

    Absolute urls are returned unchanged; an empty base returns url as-is.
    """
    if not base_url or is_absolute_url(url):
        return url
    if not url:
        return base_url
    return base_url.rstrip("/") + "/" + url.lstrip("/")


def _query_value(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if value is None:
        return ""
    return str(value)


def _as_pairs(query: Mapping[str, Any]) -> Dict[str, List[str]]:
    pairs: Dict[str, List[str]] = {}
    for key, value in query.items():
        if isinstance(value, (list, tuple)):
            pairs[str(key)] = [_query_value(item) for item in value]
        else:
            pairs[str(key)] = [_query_value(value)]
    return pairs


def merge_query(url: str, query: Optional[Mapping[str, Any]]) -> str:
    """
    Merge query into the query string already present in url.

    Keys from query replace all existing values for the same key; list
    values produce repeated keys (a=1&a=2).
    """
    if not query:
        return url

    parts = urlsplit(url)
    merged: Dict[str, List[str]] = {}
    for key, value in parse_qsl(parts.query, keep_blank_values=True):
        merged.setdefault(key, []).append(value)
    merged.update(_as_pairs(query))

    encoded = urlencode([(k, v) for k, values in merged.items() for v in values])
    return urlunsplit((parts.scheme, parts.netloc, parts.path, encoded, parts.fragment))


def build_url(url: str, base_url: Optional[str] = None, query: Optional[Mapping[str, Any]] = None) -> str:
    """Resolve url against base_url, then merge query."""
    return merge_query(join_url(base_url, url), query)


def split_url(url: str) -> Tuple[str, str, str, str]:
    """
    Split a resolved url into (origin, hostname, path, query).

    Relative urls resolve against http://localhost.
    """
    if not is_absolute_url(url):
        url = "http://localhost" + (url if url.startswith("/") else "/" + url)
    parts = urlsplit(url)
    origin = f"{parts.scheme}://{parts.netloc}"
    return origin, parts.hostname or "", parts.path or "/", parts.query
