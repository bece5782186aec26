from .endpoint import Endpoint, is_ssl_scheme, parse_endpoint, port_is_required
from .options import ProxyConfiguration, ProxyConfigurationError, configuration_from_env

__all__ = [
    "Endpoint",
    "ProxyConfiguration",
    "ProxyConfigurationError",
    "configuration_from_env",
    "is_ssl_scheme",
    "parse_endpoint",
    "port_is_required",
]
