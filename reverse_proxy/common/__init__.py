from .cookies import normalize_cookie_config, rewrite_cookie_domain
from .socket_tuning import tune_socket
from .url_join import url_join

__all__ = [
    "normalize_cookie_config",
    "rewrite_cookie_domain",
    "tune_socket",
    "url_join",
]
