"""URL normalization.

The normalized form of a URL is its identity in the frontier and the
visited set, so normalization must be idempotent:
``normalize_url(normalize_url(u)) == normalize_url(u)``.
"""

from __future__ import annotations

from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

from trawl.common.exceptions import InvalidURLException

FETCHABLE_SCHEMES = frozenset({"http", "https"})

DEFAULT_PORTS = {"http": 80, "https": 443}

# Query parameters that only track the visitor and never change the page.
DEFAULT_TRACKING_PARAMS: frozenset[str] = frozenset(
    {
        "utm_*",
        "gclid",
        "dclid",
        "fbclid",
        "msclkid",
        "mc_cid",
        "mc_eid",
        "_ga",
        "_gl",
        "ref_src",
        "igshid",
    }
)


def _is_tracking_param(name: str, tracking_params: frozenset[str]) -> bool:
    lowered = name.lower()
    if lowered in tracking_params:
        return True
    return any(
        pattern.endswith("*") and lowered.startswith(pattern[:-1])
        for pattern in tracking_params
    )


def _netloc(scheme: str, hostname: str, port: int | None, userinfo: str) -> str:
    netloc = hostname
    if ":" in hostname:
        # IPv6 literal
        netloc = f"[{hostname}]"
    if port is not None and DEFAULT_PORTS.get(scheme) != port:
        netloc = f"{netloc}:{port}"
    if userinfo:
        netloc = f"{userinfo}@{netloc}"
    return netloc


def normalize_url(
    url: str,
    tracking_params: frozenset[str] = DEFAULT_TRACKING_PARAMS,
) -> str:
    """Return the canonical identity of a URL.

    - scheme and host are lowercased, default ports dropped
    - the fragment is dropped
    - tracking query parameters are removed, the rest sorted
    - trailing slashes are stripped from the path (the root path becomes empty)

    URLs that cannot be parsed are returned stripped but otherwise
    unchanged; fetching them fails permanently later (see
    ``ensure_fetchable``).

    Args:
        url: The URL to normalize.
        tracking_params: Parameter names to remove. A trailing ``*`` matches
            any parameter with that prefix.

    Returns:
        The normalized URL string.
    """
    url = url.strip()
    try:
        parts = urlsplit(url)
        port = parts.port
    except ValueError:
        return url

    scheme = parts.scheme.lower()
    if not scheme or not parts.hostname:
        return url

    userinfo = ""
    if "@" in parts.netloc:
        userinfo = parts.netloc.rsplit("@", 1)[0]

    netloc = _netloc(scheme, parts.hostname.lower(), port, userinfo)

    path = parts.path.rstrip("/")

    query_pairs = [
        (name, value)
        for name, value in parse_qsl(parts.query, keep_blank_values=True)
        if not _is_tracking_param(name, tracking_params)
    ]
    query = urlencode(sorted(query_pairs))

    return urlunsplit((scheme, netloc, path, query, ""))


def host_of(url: str) -> str:
    """Return the lowercase host (with any non-default port) of a URL."""
    try:
        parts = urlsplit(url)
        port = parts.port
    except ValueError:
        return ""
    hostname = (parts.hostname or "").lower()
    if not hostname:
        return ""
    if port is not None and DEFAULT_PORTS.get(parts.scheme.lower()) != port:
        return f"{hostname}:{port}"
    return hostname


def ensure_fetchable(url: str) -> None:
    """Raise if the URL can never be fetched.

    Raises:
        InvalidURLException: For malformed URLs or schemes other than
            http and https.
    """
    try:
        parts = urlsplit(url)
        parts.port  # noqa: B018 - raises ValueError on a bad port
    except ValueError as e:
        raise InvalidURLException(url, f"malformed URL ({e})") from e

    scheme = parts.scheme.lower()
    if scheme not in FETCHABLE_SCHEMES:
        raise InvalidURLException(
            url, f"unsupported scheme '{scheme or '(none)'}'"
        )
    if not parts.hostname:
        raise InvalidURLException(url, "missing host")
