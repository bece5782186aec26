import os

SERVICE_NAME = os.getenv("SERVICE_NAME", "reverse-proxy")
HOST = os.environ.get("HOST", "0.0.0.0")
PORT = int(os.environ.get("PORT", "8000"))
LOG_LEVEL = os.environ.get("LOG_LEVEL", "info").lower()

OTLP_ENDPOINT = os.getenv("OTLP_ENDPOINT")
OTLP_HEADERS = os.getenv("OTLP_HEADERS", "")
METRICS_PATH = os.environ.get("METRICS_PATH", "/metrics")


def _flag(name: str, default: str = "false") -> bool:
    return os.environ.get(name, default).lower() == "true"


def _optional_float(name: str):
    raw = os.environ.get(name, "")
    return float(raw) if raw else None


def _parse_pairs(raw: str) -> dict:
    mapping: dict = {}
    if not raw:
        return mapping
    for entry in raw.split(","):
        entry = entry.strip()
        if not entry:
            continue
        if "=" in entry:
            key, val = entry.split("=", 1)
            key = key.strip()
            if key:
                mapping[key] = val.strip()
    return mapping


PROXY_TARGET = os.environ.get("PROXY_TARGET", "")
PROXY_FORWARD = os.environ.get("PROXY_FORWARD", "")
PROXY_HEADERS = _parse_pairs(os.getenv("PROXY_HEADERS", ""))

PROXY_CHANGE_ORIGIN = _flag("PROXY_CHANGE_ORIGIN")
PROXY_PREPEND_PATH = _flag("PROXY_PREPEND_PATH", "true")
PROXY_IGNORE_PATH = _flag("PROXY_IGNORE_PATH")
PROXY_TO_PROXY = _flag("PROXY_TO_PROXY")
PROXY_XFWD = _flag("PROXY_XFWD")

# Seconds; unset means no timeout
PROXY_TIMEOUT = _optional_float("PROXY_TIMEOUT")
PROXY_UPSTREAM_TIMEOUT = _optional_float("PROXY_UPSTREAM_TIMEOUT")

PROXY_HOST_REWRITE = os.environ.get("PROXY_HOST_REWRITE") or None
PROXY_AUTO_REWRITE = _flag("PROXY_AUTO_REWRITE")
PROXY_PROTOCOL_REWRITE = os.environ.get("PROXY_PROTOCOL_REWRITE") or None

# Either "domain=replacement,..." pairs or a single replacement for every domain.
# Set but empty strips the domain attribute from all cookies.
_COOKIE_DOMAIN_REWRITE_RAW = os.environ.get("PROXY_COOKIE_DOMAIN_REWRITE")
if _COOKIE_DOMAIN_REWRITE_RAW is None:
    PROXY_COOKIE_DOMAIN_REWRITE = None
elif "=" in _COOKIE_DOMAIN_REWRITE_RAW:
    PROXY_COOKIE_DOMAIN_REWRITE = _parse_pairs(_COOKIE_DOMAIN_REWRITE_RAW)
else:
    PROXY_COOKIE_DOMAIN_REWRITE = _COOKIE_DOMAIN_REWRITE_RAW.strip()

PROXY_PRESERVE_HEADER_KEY_CASE = _flag("PROXY_PRESERVE_HEADER_KEY_CASE")

# TLS verification of upstream certificates; unset means verify
_SECURE_RAW = os.environ.get("PROXY_SECURE", "")
PROXY_SECURE = _SECURE_RAW.lower() == "true" if _SECURE_RAW else None

PROXY_AUTH = os.environ.get("PROXY_AUTH") or None
PROXY_CA = os.environ.get("PROXY_CA") or None
PROXY_LOCAL_ADDRESS = os.environ.get("PROXY_LOCAL_ADDRESS") or None
PROXY_SSL_CERT = os.environ.get("PROXY_SSL_CERT") or None
PROXY_SSL_KEY = os.environ.get("PROXY_SSL_KEY") or None
PROXY_SSL_PASSPHRASE = os.environ.get("PROXY_SSL_PASSPHRASE") or None
