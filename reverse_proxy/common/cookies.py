import re
from typing import Mapping, Optional, Sequence, Union

COOKIE_DOMAIN_RE = re.compile(r"(;\s*domain=)([^;]+)", flags=re.IGNORECASE)

CookieHeader = Union[str, Sequence[str]]


def _replacement_domain(
    previous_domain: str, config: Mapping[str, str]
) -> Optional[str]:
    if previous_domain in config:
        return config[previous_domain]
    if "*" in config:
        return config["*"]
    return None


def rewrite_cookie_domain(header: CookieHeader, config: Mapping[str, str]):
    """
    Rewrite or remove the ``domain`` attribute of one or more Set-Cookie values.

    ``config`` maps a cookie domain (or ``*`` for any domain) to its replacement.
    An empty replacement strips the attribute. Values without a matching key, or
    without a domain attribute at all, are returned unchanged.
    """
    if isinstance(header, (list, tuple)):
        return [rewrite_cookie_domain(value, config) for value in header]

    def _substitute(match: re.Match) -> str:
        prefix, previous_domain = match.group(1), match.group(2)
        new_domain = _replacement_domain(previous_domain, config)
        if new_domain is None:
            return match.group(0)
        if new_domain:
            return f"{prefix}{new_domain}"
        return ""

    return COOKIE_DOMAIN_RE.sub(_substitute, header, count=1)


def normalize_cookie_config(
    config: Union[str, Mapping[str, str], None],
) -> Optional[Mapping[str, str]]:
    """A bare string is shorthand for ``{"*": value}``; ``""`` strips every domain."""
    if config is None:
        return None
    if isinstance(config, str):
        return {"*": config}
    return config
