"""
Tests for the response passes.

Tests cover:
- Transfer-encoding removal for HTTP/1.0 clients
- Connection header policy per client HTTP version
- Redirect location rewriting (host, auto, protocol)
- Header relay with cookie domain rewriting and raw key casing
- Status line writing
"""

from unittest.mock import AsyncMock

import httpx
import pytest

from reverse_proxy.config.endpoint import parse_endpoint
from reverse_proxy.config.options import ProxyConfiguration
from reverse_proxy.forwarding.incoming import IncomingRequestView
from reverse_proxy.forwarding.sink import AsgiResponseSink
from reverse_proxy.response.rewriter import (
    RESPONSE_PASSES,
    ResponseDescriptor,
    remove_chunked,
    set_connection,
    set_redirect_host_rewrite,
    write_headers,
    write_status_code,
)


def _config(**values) -> ProxyConfiguration:
    values.setdefault("target", "http://backend.com")
    values["target"] = parse_endpoint(values["target"])
    return ProxyConfiguration.model_construct(**values)


def _incoming(http_version="1.1", headers=None) -> IncomingRequestView:
    return IncomingRequestView("GET", "/", headers=headers, http_version=http_version)


def _upstream(status_code=200, headers=None, raw_headers=None, reason_phrase=None):
    return ResponseDescriptor(
        status_code=status_code,
        headers=httpx.Headers(headers or {}),
        raw_headers=raw_headers,
        reason_phrase=reason_phrase,
    )


@pytest.fixture
def sink():
    return AsgiResponseSink(AsyncMock())


@pytest.fixture
def redirect():
    """A 301 from the target pointing back at itself, client asked for ext-auto.com."""
    return (
        _incoming(headers={"host": "ext-auto.com"}),
        _upstream(301, {"location": "http://backend.com/"}),
    )


class TestRemoveChunked:
    def test_removed_for_http_10(self):
        upstream = _upstream(headers={"transfer-encoding": "chunked", "x": "1"})
        remove_chunked(_incoming("1.0"), None, upstream)
        assert "transfer-encoding" not in upstream.headers
        assert upstream.headers["x"] == "1"

    def test_kept_for_http_11(self):
        upstream = _upstream(headers={"transfer-encoding": "chunked"})
        remove_chunked(_incoming("1.1"), None, upstream)
        assert upstream.headers["transfer-encoding"] == "chunked"


class TestSetConnection:
    """Test the connection header policy."""

    def test_http_10_without_client_connection(self):
        upstream = _upstream()
        set_connection(_incoming("1.0"), None, upstream)
        assert upstream.headers["connection"] == "close"

    def test_http_10_with_client_connection(self):
        upstream = _upstream()
        set_connection(_incoming("1.0", {"connection": "hey"}), None, upstream)
        assert upstream.headers["connection"] == "hey"

    def test_http_10_overrides_upstream_value(self):
        upstream = _upstream(headers={"connection": "keep-alive"})
        set_connection(_incoming("1.0"), None, upstream)
        assert upstream.headers["connection"] == "close"

    def test_default_version_with_client_connection(self):
        upstream = _upstream()
        set_connection(_incoming(None, {"connection": "hola"}), None, upstream)
        assert upstream.headers["connection"] == "hola"

    def test_default_version_without_client_connection(self):
        upstream = _upstream()
        set_connection(_incoming(None), None, upstream)
        assert upstream.headers["connection"] == "keep-alive"

    def test_upstream_value_kept_for_http_11(self):
        upstream = _upstream(headers={"connection": "close"})
        set_connection(_incoming("1.1", {"connection": "keep-alive"}), None, upstream)
        assert upstream.headers["connection"] == "close"

    @pytest.mark.parametrize("headers", [{"connection": "namstey"}, {}])
    def test_http_2_untouched(self, headers):
        upstream = _upstream()
        set_connection(_incoming("2", headers), None, upstream)
        assert "connection" not in upstream.headers


class TestSetRedirectHostRewrite:
    """Test Location rewriting for redirects from the target."""

    @pytest.mark.parametrize("status", [201, 301, 302, 307, 308])
    def test_host_rewrite_on_redirect_statuses(self, redirect, status):
        incoming, upstream = redirect
        upstream.status_code = status
        set_redirect_host_rewrite(incoming, None, upstream, _config(host_rewrite="ext-manual.com"))
        assert upstream.headers["location"] == "http://ext-manual.com/"

    @pytest.mark.parametrize(
        "options",
        [{"host_rewrite": "ext-manual.com"}, {"auto_rewrite": True}, {"protocol_rewrite": "https"}],
    )
    def test_not_rewritten_on_200(self, redirect, options):
        incoming, upstream = redirect
        upstream.status_code = 200
        set_redirect_host_rewrite(incoming, None, upstream, _config(**options))
        assert upstream.headers["location"] == "http://backend.com/"

    def test_not_rewritten_without_rewrite_options(self, redirect):
        incoming, upstream = redirect
        set_redirect_host_rewrite(incoming, None, upstream, _config())
        assert upstream.headers["location"] == "http://backend.com/"

    def test_host_rewrite_wins_over_auto_rewrite(self, redirect):
        incoming, upstream = redirect
        set_redirect_host_rewrite(
            incoming, None, upstream, _config(host_rewrite="ext-manual.com", auto_rewrite=True)
        )
        assert upstream.headers["location"] == "http://ext-manual.com/"

    @pytest.mark.parametrize(
        "location", ["http://some-other/", "http://backend.com:8080/", "/relative/path"]
    )
    @pytest.mark.parametrize(
        "options",
        [{"host_rewrite": "ext-manual.com"}, {"auto_rewrite": True}, {"protocol_rewrite": "https"}],
    )
    def test_foreign_location_untouched(self, redirect, location, options):
        incoming, upstream = redirect
        upstream.status_code = 302
        upstream.headers["location"] = location
        set_redirect_host_rewrite(incoming, None, upstream, _config(**options))
        assert upstream.headers["location"] == location

    @pytest.mark.parametrize("status", [201, 301, 302, 307, 308])
    def test_auto_rewrite_uses_client_host(self, redirect, status):
        incoming, upstream = redirect
        upstream.status_code = status
        set_redirect_host_rewrite(incoming, None, upstream, _config(auto_rewrite=True))
        assert upstream.headers["location"] == "http://ext-auto.com/"

    @pytest.mark.parametrize("status", [201, 301, 302, 307, 308])
    def test_protocol_rewrite(self, redirect, status):
        incoming, upstream = redirect
        upstream.status_code = status
        set_redirect_host_rewrite(incoming, None, upstream, _config(protocol_rewrite="https"))
        assert upstream.headers["location"] == "https://backend.com/"

    def test_protocol_rewrite_with_colon(self, redirect):
        incoming, upstream = redirect
        set_redirect_host_rewrite(incoming, None, upstream, _config(protocol_rewrite="https:"))
        assert upstream.headers["location"] == "https://backend.com/"

    def test_protocol_with_host_rewrite(self, redirect):
        incoming, upstream = redirect
        set_redirect_host_rewrite(
            incoming,
            None,
            upstream,
            _config(protocol_rewrite="https", host_rewrite="ext-manual.com"),
        )
        assert upstream.headers["location"] == "https://ext-manual.com/"

    def test_protocol_with_auto_rewrite(self, redirect):
        incoming, upstream = redirect
        set_redirect_host_rewrite(
            incoming, None, upstream, _config(protocol_rewrite="https", auto_rewrite=True)
        )
        assert upstream.headers["location"] == "https://ext-auto.com/"

    def test_path_query_and_fragment_preserved(self, redirect):
        incoming, upstream = redirect
        upstream.headers["location"] = "http://backend.com/login?next=/a#top"
        set_redirect_host_rewrite(incoming, None, upstream, _config(host_rewrite="proxy.io"))
        assert upstream.headers["location"] == "http://proxy.io/login?next=/a#top"

    def test_target_port_must_match(self, redirect):
        incoming, upstream = redirect
        upstream.headers["location"] = "http://backend.com:8080/x"
        set_redirect_host_rewrite(
            incoming,
            None,
            upstream,
            _config(target="http://backend.com:8080", host_rewrite="proxy.io"),
        )
        assert upstream.headers["location"] == "http://proxy.io/x"

    def test_unparseable_location_untouched(self, redirect):
        incoming, upstream = redirect
        upstream.headers["location"] = "http://[broken/"
        set_redirect_host_rewrite(incoming, None, upstream, _config(host_rewrite="proxy.io"))
        assert upstream.headers["location"] == "http://[broken/"

    def test_idempotent(self, redirect):
        incoming, upstream = redirect
        config = _config(host_rewrite="ext-manual.com")
        set_redirect_host_rewrite(incoming, None, upstream, config)
        set_redirect_host_rewrite(incoming, None, upstream, config)
        assert upstream.headers["location"] == "http://ext-manual.com/"


COOKIES = [
    "hello; domain=my.domain; path=/",
    "there; domain=my.domain; path=/",
]


@pytest.fixture
def extended():
    """Upstream head with two cookies, with and without raw header casing."""
    headers = [("hey", "hello"), ("how", "are you?")] + [("set-cookie", c) for c in COOKIES]
    raw = [("Hey", "hello"), ("How", "are you?")] + [("Set-Cookie", c) for c in COOKIES]
    return _upstream(headers=headers), _upstream(headers=headers, raw_headers=raw)


class TestWriteHeaders:
    """Test header relay to the sink."""

    def test_writes_headers(self, sink, extended):
        upstream, _ = extended
        write_headers(None, sink, upstream, _config())

        assert sink.get_header("hey") == "hello"
        assert sink.get_header("how") == "are you?"
        assert sink.get_header("set-cookie") == COOKIES

    def test_writes_raw_headers(self, sink, extended):
        _, raw_upstream = extended
        write_headers(None, sink, raw_upstream, _config())

        assert sink.get_header("hey") == "hello"
        assert sink.get_header("set-cookie") == COOKIES
        assert [name for name, _ in sink.header_items][:2] == ["hey", "how"]

    def test_preserves_raw_key_case(self, sink, extended):
        _, raw_upstream = extended
        write_headers(None, sink, raw_upstream, _config(preserve_header_key_case=True))

        names = [name for name, _ in sink.header_items]
        assert names == ["Hey", "How", "Set-Cookie", "Set-Cookie"]

    def test_preserve_case_without_raw_headers(self, sink, extended):
        upstream, _ = extended
        write_headers(None, sink, upstream, _config(preserve_header_key_case=True))
        assert [name for name, _ in sink.header_items][0] == "hey"

    def test_first_raw_occurrence_wins(self, sink):
        upstream = _upstream(
            headers=[("x-a", "1"), ("x-a", "2")],
            raw_headers=[("X-A", "1"), ("x-A", "2")],
        )
        write_headers(None, sink, upstream, _config(preserve_header_key_case=True))
        assert sink.header_items == [("X-A", "1, 2")]

    def test_cookie_domain_untouched_by_default(self, sink, extended):
        upstream, _ = extended
        write_headers(None, sink, upstream, _config())
        assert "hello; domain=my.domain; path=/" in sink.get_header("set-cookie")

    def test_rewrites_cookie_domain(self, sink, extended):
        upstream, _ = extended
        write_headers(None, sink, upstream, _config(cookie_domain_rewrite="my.new.domain"))
        assert "hello; domain=my.new.domain; path=/" in sink.get_header("set-cookie")

    def test_removes_cookie_domain(self, sink, extended):
        upstream, _ = extended
        write_headers(None, sink, upstream, _config(cookie_domain_rewrite=""))
        assert sink.get_header("set-cookie") == ["hello; path=/", "there; path=/"]

    def test_advanced_cookie_configuration(self, sink):
        upstream = _upstream(
            headers=[
                ("set-cookie", "hello-on-my.domain; domain=my.domain; path=/"),
                ("set-cookie", "hello-on-my.old.domain; domain=my.old.domain; path=/"),
                ("set-cookie", "hello-on-my.special.domain; domain=my.special.domain; path=/"),
            ]
        )
        write_headers(
            None,
            sink,
            upstream,
            _config(
                cookie_domain_rewrite={
                    "*": "",
                    "my.old.domain": "my.new.domain",
                    "my.special.domain": "my.special.domain",
                }
            ),
        )

        assert sink.get_header("set-cookie") == [
            "hello-on-my.domain; path=/",
            "hello-on-my.old.domain; domain=my.new.domain; path=/",
            "hello-on-my.special.domain; domain=my.special.domain; path=/",
        ]

    def test_single_cookie_is_rewritten(self, sink):
        upstream = _upstream(headers={"set-cookie": "a=1; Domain=backend.com"})
        write_headers(None, sink, upstream, _config(cookie_domain_rewrite={"backend.com": "proxy.io"}))
        assert sink.get_header("set-cookie") == "a=1; Domain=proxy.io"

    def test_empty_cookie_mapping_relays_same_head_twice(self, extended):
        _, raw_upstream = extended
        config = _config(cookie_domain_rewrite={}, preserve_header_key_case=True)
        first, second = AsgiResponseSink(AsyncMock()), AsgiResponseSink(AsyncMock())

        write_headers(None, first, raw_upstream, config)
        write_headers(None, second, raw_upstream, config)

        assert first.header_items == second.header_items
        assert first.get_header("Set-Cookie") == COOKIES
        assert raw_upstream.headers.get_list("set-cookie") == COOKIES


class TestWriteStatusCode:
    def test_status_only(self, sink):
        write_status_code(None, sink, _upstream(200))
        assert sink.headers_sent
        assert sink.status_code == 200
        assert sink.reason_phrase is None

    def test_status_with_reason(self, sink):
        write_status_code(None, sink, _upstream(404, reason_phrase="Nope"))
        assert sink.status_code == 404
        assert sink.reason_phrase == "Nope"


class TestResponsePasses:
    def test_fixed_order(self):
        assert RESPONSE_PASSES == (
            remove_chunked,
            set_connection,
            set_redirect_host_rewrite,
            write_headers,
            write_status_code,
        )

    @pytest.mark.asyncio
    async def test_full_pipeline_flushes_head(self):
        send = AsyncMock()
        sink = AsgiResponseSink(send)
        upstream = _upstream(
            302,
            {"location": "http://backend.com/next", "transfer-encoding": "chunked"},
            reason_phrase="Found",
        )
        incoming = _incoming("1.0", {"host": "proxy.io"})

        for response_pass in RESPONSE_PASSES:
            response_pass(incoming, sink, upstream, _config(auto_rewrite=True))
        await sink.end()

        start = send.await_args_list[0].args[0]
        assert start["type"] == "http.response.start"
        assert start["status"] == 302
        assert (b"location", b"http://proxy.io/next") in start["headers"]
        assert (b"connection", b"close") in start["headers"]
        assert not any(name == b"transfer-encoding" for name, _ in start["headers"])
        assert send.await_args_list[1].args[0] == {
            "type": "http.response.body",
            "body": b"",
            "more_body": False,
        }

    def test_from_httpx(self):
        response = httpx.Response(
            201,
            headers=[("X-Trace", "abc"), ("Set-Cookie", "a=1"), ("Set-Cookie", "b=2")],
            extensions={"reason_phrase": b"Created Here"},
        )
        upstream = ResponseDescriptor.from_httpx(response)

        assert upstream.status_code == 201
        assert upstream.reason_phrase == "Created Here"
        assert upstream.raw_headers[0] == ("X-Trace", "abc")
        assert upstream.headers.get_list("set-cookie") == ["a=1", "b=2"]
        assert upstream.stream is response

        upstream.headers["x-trace"] = "changed"
        assert response.headers["x-trace"] == "abc"
