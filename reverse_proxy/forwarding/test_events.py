from unittest.mock import AsyncMock, Mock

import pytest

from reverse_proxy.forwarding.events import ERROR, START, ProxyEvents


class TestProxyEvents:
    """Test subscription and emission of lifecycle events."""

    @pytest.mark.asyncio
    async def test_sync_and_async_handlers_run_in_order(self):
        events = ProxyEvents()
        calls = []
        events.on(START, lambda *args: calls.append(("sync", args)))

        async def async_handler(*args):
            calls.append(("async", args))

        events.on(START, async_handler)

        assert await events.emit(START, "req", "res", "target") is True
        assert calls == [("sync", ("req", "res", "target")), ("async", ("req", "res", "target"))]

    @pytest.mark.asyncio
    async def test_emit_without_listeners(self):
        assert await ProxyEvents().emit(START, 1) is False

    @pytest.mark.asyncio
    async def test_error_without_listener_raises(self):
        exc = RuntimeError("upstream down")
        with pytest.raises(RuntimeError, match="upstream down"):
            await ProxyEvents().emit(ERROR, exc, None, None, None)

    @pytest.mark.asyncio
    async def test_error_with_listener_does_not_raise(self):
        events = ProxyEvents()
        handler = AsyncMock()
        events.on(ERROR, handler)
        exc = RuntimeError("x")

        await events.emit(ERROR, exc, "req", "res", "target")

        handler.assert_awaited_once_with(exc, "req", "res", "target")

    @pytest.mark.asyncio
    async def test_off_removes_handler(self):
        events = ProxyEvents()
        handler = Mock()
        events.on(START, handler)
        events.off(START, handler)
        events.off(START, handler)

        await events.emit(START)

        handler.assert_not_called()
        assert not events.has_listeners(START)

    def test_unknown_event_rejected(self):
        with pytest.raises(ValueError):
            ProxyEvents().on("proxyReqWs", Mock())
