"""
Request classification.

Every inbound request maps to exactly one route decision based on its method,
``Host`` header and path. The rules are evaluated in a fixed order:

1. ``OPTIONS`` is always a CORS preflight.
2. Unknown or missing hosts are rejected before anything else.
3. ``/<gateway>/...`` paths are proxied to the matching payment gateway.
4. Everything else is redirected when the host has a redirect target.
5. Otherwise the request is rejected.
"""

from dataclasses import dataclass
from typing import Optional, Union

from payproxy.config import ProxyConfig

UNRECOGNIZED_HOST = "Bad Request: Unrecognized host"
NO_REDIRECT_TARGET = "Bad Request: No redirect target configured"
INVALID_GATEWAY = "Invalid payment gateway"


@dataclass(frozen=True)
class CorsPreflight:
    kind = "cors_preflight"


@dataclass(frozen=True)
class Redirect:
    target_url: str
    kind = "redirect"


@dataclass(frozen=True)
class GatewayProxy:
    gateway_key: str
    path: str
    referrer: str
    kind = "gateway_proxy"


@dataclass(frozen=True)
class Reject:
    status_code: int
    reason: str
    kind = "reject"


RouteDecision = Union[CorsPreflight, Redirect, GatewayProxy, Reject]


def strip_gateway_prefix(path: str, prefix: str) -> Optional[str]:
    """
    Return the path below ``prefix`` (query preserved), or None if it does not match.

    ``/vandar/v1/ipgs?x=1`` under ``/vandar`` gives ``/v1/ipgs?x=1``; ``/vandar``
    and ``/vandar?x=1`` give ``/`` and ``/?x=1``.
    """
    pathname = path.split("?", 1)[0]
    if pathname != prefix and not pathname.startswith(prefix + "/"):
        return None
    remainder = path[len(prefix) :]
    if not remainder.startswith("/"):
        remainder = "/" + remainder
    return remainder


def classify(
    method: str, host: Optional[str], path: str, config: ProxyConfig
) -> RouteDecision:
    if method.upper() == "OPTIONS":
        return CorsPreflight()

    referrer = config.referrer_for(host)
    if referrer is None:
        return Reject(400, UNRECOGNIZED_HOST)

    for gateway in config.gateways:
        remainder = strip_gateway_prefix(path, gateway.prefix)
        if remainder is not None:
            return GatewayProxy(gateway.key, remainder, referrer)

    redirect_base = config.redirect_base_for(host)
    if redirect_base:
        return Redirect(redirect_base.rstrip("/") + path)

    return Reject(400, NO_REDIRECT_TARGET)
