import os

SERVICE_NAME = os.getenv("SERVICE_NAME", "payment-gateway-proxy")
HOST = os.environ.get("HOST", "0.0.0.0")
PORT = int(os.environ.get("PORT", "3000"))

REQUEST_TIMEOUT_MS = int(os.getenv("REQUEST_TIMEOUT_MS", "30000"))
GRACEFUL_SHUTDOWN_TIMEOUT_MS = int(os.getenv("GRACEFUL_SHUTDOWN_TIMEOUT_MS", "10000"))

# JSON file with the gateway, host and redirect tables; built-in tables when unset
PROXY_CONFIG_FILE = os.getenv("PROXY_CONFIG_FILE", "")

LOG_LEVEL = os.getenv("LOG_LEVEL", "info").lower()

OTLP_ENDPOINT = os.getenv("OTLP_ENDPOINT")
OTLP_HEADERS = os.getenv("OTLP_HEADERS", "")

METRICS_ENABLED = os.getenv("METRICS_ENABLED", "true").lower() == "true"
METRICS_PATH = os.getenv("METRICS_PATH", "/__proxy/metrics")
