from payproxy.config.loader import DEFAULT_TABLES, load_config
from payproxy.config.models import GatewayRoute, ProxyConfig, ProxyConfigError

__all__ = [
    "DEFAULT_TABLES",
    "GatewayRoute",
    "ProxyConfig",
    "ProxyConfigError",
    "load_config",
]
