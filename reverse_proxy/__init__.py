from .config import ProxyConfiguration, ProxyConfigurationError
from .proxy import Proxy

__all__ = ["Proxy", "ProxyConfiguration", "ProxyConfigurationError"]
