import logging
from typing import Any, Dict, Mapping, Optional, Union

import httpx
from pydantic import BaseModel, ConfigDict, ValidationError, field_validator, model_validator
from pydantic.alias_generators import to_camel

from reverse_proxy import vars as proxy_vars
from reverse_proxy.config.endpoint import Endpoint, parse_endpoint
from reverse_proxy.utils import mask_token

logger = logging.getLogger("uvicorn.error")


class ProxyConfigurationError(ValueError):
    pass


class ProxyConfiguration(BaseModel):
    """
    Process-wide proxy settings, read-only once built.

    Field names follow snake_case; the camelCase names of the configuration
    surface (``changeOrigin``, ``cookieDomainRewrite``, ...) are accepted as
    aliases. ``target`` and ``forward`` may be URL strings, decomposed mappings
    or Endpoint instances.
    """

    model_config = ConfigDict(
        frozen=True,
        populate_by_name=True,
        arbitrary_types_allowed=True,
        alias_generator=to_camel,
    )

    target: Optional[Endpoint] = None
    forward: Optional[Endpoint] = None
    headers: Optional[Dict[str, str]] = None
    agent: Optional[httpx.AsyncClient] = None
    ssl: Optional[Dict[str, Any]] = None

    change_origin: bool = False
    prepend_path: bool = True
    ignore_path: bool = False
    to_proxy: bool = False
    xfwd: bool = False

    timeout: Optional[float] = None
    proxy_timeout: Optional[float] = None

    host_rewrite: Optional[str] = None
    auto_rewrite: bool = False
    protocol_rewrite: Optional[str] = None
    cookie_domain_rewrite: Union[str, Dict[str, str], None] = None
    preserve_header_key_case: bool = False

    secure: Optional[bool] = None
    auth: Optional[str] = None
    ca: Optional[str] = None
    local_address: Optional[str] = None

    @field_validator("target", "forward", mode="before")
    @classmethod
    def _parse_endpoint(cls, value):
        if value == "":
            return None
        return parse_endpoint(value)

    @field_validator("headers", mode="before")
    @classmethod
    def _stringify_headers(cls, value):
        if value is None:
            return None
        return {str(name): str(item) for name, item in dict(value).items()}

    @model_validator(mode="after")
    def _require_destination(self):
        usable = [e for e in (self.target, self.forward) if e is not None and e.is_usable]
        if not usable:
            raise ValueError("Must provide a proper URL as target or forward")
        return self

    @classmethod
    def build(
        cls, options: Optional[Mapping[str, Any]] = None, **overrides: Any
    ) -> "ProxyConfiguration":
        """Validate ``options`` (plus keyword overrides) into a configuration."""
        data = {**dict(options or {}), **overrides}
        try:
            return cls.model_validate(data)
        except ValidationError as exc:
            raise ProxyConfigurationError(str(exc)) from exc
        except (TypeError, ValueError) as exc:
            raise ProxyConfigurationError(str(exc)) from exc

    @property
    def destination(self) -> Optional[Endpoint]:
        return self.target or self.forward

    def describe(self) -> str:
        """Short human-readable summary for startup logs."""
        parts = []
        if self.target:
            parts.append(f"target={self.target.to_url()}")
        if self.forward:
            parts.append(f"forward={self.forward.to_url()}")
        if self.auth:
            parts.append(f"auth={mask_token(self.auth, self.auth)}")
        flags = [
            name
            for name in ("change_origin", "xfwd", "to_proxy", "ignore_path", "auto_rewrite")
            if getattr(self, name)
        ]
        if flags:
            parts.append("flags=" + ",".join(flags))
        return " ".join(parts)


def configuration_from_env() -> ProxyConfiguration:
    """Build the configuration from the ``PROXY_*`` environment variables."""
    ssl_material = {
        name: value
        for name, value in (
            ("cert", proxy_vars.PROXY_SSL_CERT),
            ("key", proxy_vars.PROXY_SSL_KEY),
            ("passphrase", proxy_vars.PROXY_SSL_PASSPHRASE),
        )
        if value
    }
    configuration = ProxyConfiguration.build(
        target=proxy_vars.PROXY_TARGET or None,
        forward=proxy_vars.PROXY_FORWARD or None,
        headers=proxy_vars.PROXY_HEADERS or None,
        ssl=ssl_material or None,
        change_origin=proxy_vars.PROXY_CHANGE_ORIGIN,
        prepend_path=proxy_vars.PROXY_PREPEND_PATH,
        ignore_path=proxy_vars.PROXY_IGNORE_PATH,
        to_proxy=proxy_vars.PROXY_TO_PROXY,
        xfwd=proxy_vars.PROXY_XFWD,
        timeout=proxy_vars.PROXY_TIMEOUT,
        proxy_timeout=proxy_vars.PROXY_UPSTREAM_TIMEOUT,
        host_rewrite=proxy_vars.PROXY_HOST_REWRITE,
        auto_rewrite=proxy_vars.PROXY_AUTO_REWRITE,
        protocol_rewrite=proxy_vars.PROXY_PROTOCOL_REWRITE,
        cookie_domain_rewrite=proxy_vars.PROXY_COOKIE_DOMAIN_REWRITE,
        preserve_header_key_case=proxy_vars.PROXY_PRESERVE_HEADER_KEY_CASE,
        secure=proxy_vars.PROXY_SECURE,
        auth=proxy_vars.PROXY_AUTH,
        ca=proxy_vars.PROXY_CA,
        local_address=proxy_vars.PROXY_LOCAL_ADDRESS,
    )
    logger.info(f"[Proxy] Loaded configuration: {configuration.describe()}")
    return configuration
