import socket
from unittest.mock import Mock

from reverse_proxy.common.socket_tuning import tune_socket


class TestTuneSocket:
    """Test socket-level settings applied to upstream connections."""

    def test_tcp_socket(self):
        sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        try:
            sock.settimeout(5)

            result = tune_socket(sock)

            assert result is sock
            assert sock.gettimeout() is None
            assert sock.getsockopt(socket.IPPROTO_TCP, socket.TCP_NODELAY) != 0
            assert sock.getsockopt(socket.SOL_SOCKET, socket.SO_KEEPALIVE) != 0
        finally:
            sock.close()

    def test_non_blocking_socket_left_non_blocking(self):
        """Event loop sockets must never be switched to blocking mode."""
        sock = Mock()
        sock.gettimeout.return_value = 0.0
        sock.family = socket.AF_INET

        tune_socket(sock)

        sock.settimeout.assert_not_called()
        sock.setsockopt.assert_any_call(socket.IPPROTO_TCP, socket.TCP_NODELAY, 1)
        sock.setsockopt.assert_any_call(socket.SOL_SOCKET, socket.SO_KEEPALIVE, 1)

    def test_unix_socket_skips_nodelay(self):
        sock = Mock()
        sock.gettimeout.return_value = None
        sock.family = getattr(socket, "AF_UNIX", -1)

        tune_socket(sock)

        calls = [c.args for c in sock.setsockopt.call_args_list]
        assert (socket.IPPROTO_TCP, socket.TCP_NODELAY, 1) not in calls
        assert (socket.SOL_SOCKET, socket.SO_KEEPALIVE, 1) in calls
