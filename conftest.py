# Make `import payproxy` resolve to this checkout when running pytest from the root.
import logging
import os
import sys

import pytest

SERVICE_ROOT = os.path.dirname(__file__)
if SERVICE_ROOT not in sys.path:
    sys.path.insert(0, SERVICE_ROOT)

from payproxy.config import ProxyConfig  # noqa: E402

KNOWN_HOST = "pay.v1-domain.com"
REDIRECT_HOST = "pay.v2-domain.com"
REFERRER = "https://v1-domain.com/"


@pytest.fixture
def proxy_config() -> ProxyConfig:
    """Gateway/host tables used by the proxy tests."""
    return ProxyConfig(
        request_timeout_ms=2000,
        shutdown_grace_ms=50,
        gateways=[
            {"key": "vandar", "target": "https://ipg.vandar.io", "host": "ipg.vandar.io"},
            {"key": "zibal", "target": "https://gateway.zibal.ir", "host": "gateway.zibal.ir"},
            {
                "key": "zarinpal",
                "target": "https://payment.zarinpal.com",
                "host": "payment.zarinpal.com",
            },
        ],
        hosts={KNOWN_HOST: REFERRER, REDIRECT_HOST: REFERRER},
        redirects={REDIRECT_HOST: "https://v1-domain.com"},
    )


@pytest.fixture
def proxy_log(caplog):
    """caplog wired to the uvicorn.error logger, which uvicorn stops from propagating."""
    logger = logging.getLogger("uvicorn.error")
    logger.addHandler(caplog.handler)
    caplog.set_level(logging.DEBUG, logger="uvicorn.error")
    yield caplog
    logger.removeHandler(caplog.handler)
