import json
import logging
from typing import Any, Dict, Optional

from pydantic import ValidationError

from payproxy import vars as env
from payproxy.config.models import ProxyConfig, ProxyConfigError

logger = logging.getLogger("uvicorn.error")

DEFAULT_TABLES: Dict[str, Any] = {
    "gateways": [
        {"key": "vandar", "target": "https://ipg.vandar.io", "host": "ipg.vandar.io"},
        {
            "key": "zibal",
            "target": "https://gateway.zibal.ir",
            "host": "gateway.zibal.ir",
        },
        {
            "key": "zarinpal",
            "target": "https://payment.zarinpal.com",
            "host": "payment.zarinpal.com",
        },
    ],
    "hosts": {
        "pay.v1-domain.com": "https://v1-domain.com/",
        "pay.v2-domain.com": "https://v1-domain.com/",
    },
    "redirects": {
        "pay.v1-domain.com": "https://v1-domain.com",
        "pay.v2-domain.com": "https://v1-domain.com",
    },
}


def read_tables(path: str) -> Dict[str, Any]:
    """Read the gateway/host/redirect tables from a JSON file."""
    try:
        with open(path, "r", encoding="utf-8") as handle:
            data = json.load(handle)
    except OSError as e:
        raise ProxyConfigError(f"Cannot read proxy config file {path}: {e}") from e
    except json.JSONDecodeError as e:
        raise ProxyConfigError(f"Proxy config file {path} is not valid JSON: {e}") from e

    if not isinstance(data, dict):
        raise ProxyConfigError(f"Proxy config file {path} must contain a JSON object")
    unknown = set(data) - {"gateways", "hosts", "redirects"}
    if unknown:
        raise ProxyConfigError(
            f"Proxy config file {path} has unknown sections: {', '.join(sorted(unknown))}"
        )
    return data


def load_config(
    path: Optional[str] = None,
    port: Optional[int] = None,
    request_timeout_ms: Optional[int] = None,
    shutdown_grace_ms: Optional[int] = None,
) -> ProxyConfig:
    """
    Build the immutable ProxyConfig used for the lifetime of the process.

    Arguments left as None fall back to the environment (see payproxy.vars);
    the tables fall back to DEFAULT_TABLES when no config file is configured.
    """
    path = path if path is not None else env.PROXY_CONFIG_FILE
    tables = read_tables(path) if path else DEFAULT_TABLES
    source = path or "built-in tables"

    try:
        config = ProxyConfig(
            port=port if port is not None else env.PORT,
            request_timeout_ms=(
                request_timeout_ms
                if request_timeout_ms is not None
                else env.REQUEST_TIMEOUT_MS
            ),
            shutdown_grace_ms=(
                shutdown_grace_ms
                if shutdown_grace_ms is not None
                else env.GRACEFUL_SHUTDOWN_TIMEOUT_MS
            ),
            **tables,
        )
    except ValidationError as e:
        raise ProxyConfigError(f"Invalid proxy configuration ({source}): {e}") from e

    logger.debug(
        f"[Config] Loaded {len(config.gateways)} gateways, {len(config.hosts)} hosts "
        f"and {len(config.redirects)} redirects from {source}"
    )
    return config
