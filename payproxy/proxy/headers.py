from collections.abc import Mapping
from typing import Iterable, List, Tuple, Union

HeaderPairs = List[Tuple[str, str]]
HeaderInput = Union[Mapping, Iterable[Tuple[str, str]]]

# Connection-scoped headers (RFC 7230 §6.1); never relayed between connections
HOP_BY_HOP_HEADERS = frozenset(
    {
        "connection",
        "upgrade",
        "proxy-authorization",
        "proxy-authenticate",
        "te",
        "trailer",
        "transfer-encoding",
    }
)

CORS_HEADERS: Tuple[Tuple[str, str], ...] = (
    ("Access-Control-Allow-Origin", "*"),
    ("Access-Control-Allow-Methods", "GET, POST, PUT, DELETE, OPTIONS"),
    ("Access-Control-Allow-Headers", "Content-Type, Authorization"),
)


def _pairs(headers: HeaderInput) -> Iterable[Tuple[str, str]]:
    if hasattr(headers, "multi_items"):
        return headers.multi_items()
    if isinstance(headers, Mapping):
        return headers.items()
    return headers


def sanitize_headers(headers: HeaderInput):
    """
    Return a copy of ``headers`` without hop-by-hop entries.

    A dict yields a dict. Anything else (header pairs, httpx/starlette header
    objects) yields a list of pairs with order and duplicates preserved.
    """
    if isinstance(headers, dict):
        return {
            name: value
            for name, value in headers.items()
            if name.lower() not in HOP_BY_HOP_HEADERS
        }
    return [
        (name, value)
        for name, value in _pairs(headers)
        if name.lower() not in HOP_BY_HOP_HEADERS
    ]


def merge_headers(base: HeaderInput, overrides: HeaderInput) -> HeaderPairs:
    """Merge two header sets case-insensitively; entries in ``overrides`` win."""
    override_pairs = list(_pairs(overrides))
    replaced = {name.lower() for name, _ in override_pairs}
    merged = [(name, value) for name, value in _pairs(base) if name.lower() not in replaced]
    merged.extend(override_pairs)
    return merged


def drop_headers(headers: HeaderInput, *names: str) -> HeaderPairs:
    dropped = {name.lower() for name in names}
    return [(name, value) for name, value in _pairs(headers) if name.lower() not in dropped]


def apply_cors_headers(headers: HeaderInput) -> HeaderPairs:
    """Replace any upstream CORS headers with the proxy's fixed policy."""
    return merge_headers(headers, CORS_HEADERS)


def get_header(headers: HeaderInput, name: str, default=None):
    name = name.lower()
    for key, value in _pairs(headers):
        if key.lower() == name:
            return value
    return default
