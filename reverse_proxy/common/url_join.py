import re

_REPEATED_SLASHES = re.compile(r"/+")


def url_join(*segments: str) -> str:
    """
    Join path segments into one upstream path without touching the query string.

    Only the last segment may carry a query string. Empty segments are dropped so
    ``url_join("", "am")`` does not produce a leading slash, repeated slashes are
    collapsed, and a scheme separator produced by the join (``http://`` or
    ``https://``) survives the collapse.

    Args:
        segments: Path pieces, outermost first.

    Returns:
        The joined path, with the original query string re-appended verbatim.
    """
    if not segments:
        return ""

    *head, last = segments
    last_path, separator, query = last.partition("?")

    joined = "/".join(segment for segment in (*head, last_path) if segment)
    joined = _REPEATED_SLASHES.sub("/", joined)
    joined = joined.replace("http:/", "http://", 1).replace("https:/", "https://", 1)

    return f"{joined}{separator}{query}"
