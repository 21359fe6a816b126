"""
Immutable proxy configuration.

The gateway, host and redirect tables are validated once at startup and then
shared by reference with every request. Models are frozen and the host tables
are exposed as read-only mappings, so nothing can mutate them after load.
"""

from types import MappingProxyType
from typing import Dict, Mapping, Optional, Tuple
from urllib.parse import urlparse

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


class ProxyConfigError(ValueError):
    """Raised when the proxy configuration cannot be loaded or is invalid."""


def _require_absolute_url(value: str) -> str:
    parsed = urlparse(value)
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        raise ValueError(f"'{value}' must be an absolute http(s) URL")
    return value


def _normalise_host_table(table: Mapping[str, str]) -> Mapping[str, str]:
    normalised: Dict[str, str] = {}
    for host, url in table.items():
        key = host.strip().lower()
        if not key:
            raise ValueError("host entries must not be empty")
        if key in normalised:
            raise ValueError(f"duplicate host entry '{host}'")
        normalised[key] = _require_absolute_url(url)
    return MappingProxyType(normalised)


class GatewayRoute(BaseModel):
    """A payment gateway reachable under ``/<key>/...``."""

    model_config = ConfigDict(frozen=True)

    key: str
    target: str
    host: str

    @field_validator("key")
    @classmethod
    def _validate_key(cls, value: str) -> str:
        value = value.strip()
        if not value or value.startswith("/") or value.endswith("/"):
            raise ValueError(
                "gateway key must be non-empty without leading or trailing '/'"
            )
        if any(ch in value for ch in "?# "):
            raise ValueError(f"gateway key '{value}' contains reserved characters")
        return value

    @field_validator("target")
    @classmethod
    def _validate_target(cls, value: str) -> str:
        return _require_absolute_url(value.strip()).rstrip("/")

    @field_validator("host")
    @classmethod
    def _validate_host(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("gateway host override must not be empty")
        return value

    @property
    def prefix(self) -> str:
        return f"/{self.key}"


class ProxyConfig(BaseModel):
    """Startup configuration consumed by the classifier and forwarding engine."""

    model_config = ConfigDict(frozen=True)

    port: int = Field(default=3000, ge=1, le=65535)
    request_timeout_ms: int = Field(default=30000, gt=0)
    shutdown_grace_ms: int = Field(default=10000, ge=0)
    gateways: Tuple[GatewayRoute, ...] = ()
    hosts: Mapping[str, str] = Field(default_factory=dict, validate_default=True)
    redirects: Mapping[str, str] = Field(default_factory=dict, validate_default=True)

    @model_validator(mode="before")
    @classmethod
    def _gateways_from_mapping(cls, data):
        # {"vandar": {"target": ..., "host": ...}} keeps insertion order
        if isinstance(data, dict) and isinstance(data.get("gateways"), dict):
            data = dict(data)
            data["gateways"] = [
                {"key": key, **entry} for key, entry in data["gateways"].items()
            ]
        return data

    @field_validator("hosts", "redirects", mode="after")
    @classmethod
    def _validate_host_tables(cls, value: Mapping[str, str]) -> Mapping[str, str]:
        return _normalise_host_table(value)

    @model_validator(mode="after")
    def _validate_prefixes_disjoint(self) -> "ProxyConfig":
        for i, first in enumerate(self.gateways):
            for second in self.gateways[i + 1 :]:
                a, b = f"{first.prefix}/", f"{second.prefix}/"
                if a.startswith(b) or b.startswith(a):
                    raise ValueError(
                        f"gateway prefixes '{first.prefix}' and '{second.prefix}' overlap"
                    )
        return self

    @property
    def request_timeout(self) -> float:
        return self.request_timeout_ms / 1000.0

    @property
    def shutdown_grace(self) -> float:
        return self.shutdown_grace_ms / 1000.0

    def gateway(self, key: str) -> Optional[GatewayRoute]:
        for route in self.gateways:
            if route.key == key:
                return route
        return None

    def referrer_for(self, host: Optional[str]) -> Optional[str]:
        if not host:
            return None
        return self.hosts.get(host.strip().lower())

    def redirect_base_for(self, host: Optional[str]) -> Optional[str]:
        if not host:
            return None
        return self.redirects.get(host.strip().lower())
