import pytest

from payproxy.proxy.classifier import (
    NO_REDIRECT_TARGET,
    UNRECOGNIZED_HOST,
    CorsPreflight,
    GatewayProxy,
    Redirect,
    Reject,
    classify,
    strip_gateway_prefix,
)

KNOWN_HOST = "pay.v1-domain.com"
REDIRECT_HOST = "pay.v2-domain.com"
REFERRER = "https://v1-domain.com/"


class TestCorsPreflight:
    @pytest.mark.parametrize(
        "host,path",
        [
            (KNOWN_HOST, "/vandar/v1/ipgs"),
            ("unknown.example.com", "/anything"),
            (None, "/"),
            (REDIRECT_HOST, "/dashboard"),
        ],
    )
    def test_options_is_always_preflight(self, proxy_config, host, path):
        assert classify("OPTIONS", host, path, proxy_config) == CorsPreflight()

    def test_method_case_is_ignored(self, proxy_config):
        assert classify("options", None, "/", proxy_config) == CorsPreflight()


class TestHostValidation:
    @pytest.mark.parametrize("host", [None, "", "unknown.example.com"])
    def test_unknown_host_rejected_before_gateway_match(self, proxy_config, host):
        result = classify("POST", host, "/vandar/v1/ipgs", proxy_config)

        assert result == Reject(400, UNRECOGNIZED_HOST)

    def test_host_match_is_case_insensitive(self, proxy_config):
        result = classify("GET", "PAY.V1-Domain.com", "/vandar/x", proxy_config)

        assert isinstance(result, GatewayProxy)


class TestGatewayProxy:
    @pytest.mark.parametrize("key", ["vandar", "zibal", "zarinpal"])
    @pytest.mark.parametrize("suffix", ["p", "v1/ipgs", "a/b/c.json"])
    def test_prefix_is_stripped(self, proxy_config, key, suffix):
        result = classify("POST", KNOWN_HOST, f"/{key}/{suffix}", proxy_config)

        assert result == GatewayProxy(key, f"/{suffix}", REFERRER)

    @pytest.mark.parametrize("path", ["/vandar", "/vandar/"])
    def test_bare_prefix_yields_root(self, proxy_config, path):
        result = classify("GET", KNOWN_HOST, path, proxy_config)

        assert result == GatewayProxy("vandar", "/", REFERRER)

    def test_query_string_preserved(self, proxy_config):
        result = classify("GET", KNOWN_HOST, "/zibal/v1/verify?trackId=42&x=a%2Fb", proxy_config)

        assert result == GatewayProxy("zibal", "/v1/verify?trackId=42&x=a%2Fb", REFERRER)

    def test_query_on_bare_prefix(self, proxy_config):
        result = classify("GET", KNOWN_HOST, "/zibal?trackId=1", proxy_config)

        assert result == GatewayProxy("zibal", "/?trackId=1", REFERRER)

    def test_similar_prefix_does_not_match(self, proxy_config):
        result = classify("GET", REDIRECT_HOST, "/vandarx/v1", proxy_config)

        assert isinstance(result, Redirect)

    def test_gateway_wins_over_redirect(self, proxy_config):
        result = classify("GET", REDIRECT_HOST, "/zarinpal/pg/v4", proxy_config)

        assert result == GatewayProxy("zarinpal", "/pg/v4", REFERRER)


class TestRedirect:
    def test_redirect_keeps_path_and_query(self, proxy_config):
        result = classify("GET", REDIRECT_HOST, "/dashboard?tab=1", proxy_config)

        assert result == Redirect("https://v1-domain.com/dashboard?tab=1")

    def test_known_host_without_redirect_target(self, proxy_config):
        result = classify("GET", KNOWN_HOST, "/dashboard", proxy_config)

        assert result == Reject(400, NO_REDIRECT_TARGET)


class TestStripGatewayPrefix:
    def test_no_match(self):
        assert strip_gateway_prefix("/other/x", "/vandar") is None
        assert strip_gateway_prefix("/vandar2/x", "/vandar") is None

    def test_nested_key(self):
        assert strip_gateway_prefix("/pay/v2/verify", "/pay/v2") == "/verify"
