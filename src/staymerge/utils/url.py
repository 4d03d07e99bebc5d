"""Listing URL canonicalization for repeat-scrape identity."""

from urllib.parse import urlsplit

from staymerge.models import Platform

# Registrable domains; a host matches the domain itself or any subdomain of it.
_PLATFORM_DOMAINS: dict[str, Platform] = {
    "booking.com": Platform.BOOKING,
    "vrbo.com": Platform.VRBO,
}

# Airbnb runs one site per country (airbnb.com, airbnb.co.uk, airbnb.com.br...).
_AIRBNB_LABEL = "airbnb"

_DEFAULT_PORTS: dict[str, int] = {"http": 80, "https": 443}


def normalize_url(url: str) -> str:
    """Reduce a listing URL to ``scheme://host[:port]/path`` without a trailing slash.

    Platforms append tracking parameters and fragments inconsistently, so the
    query string and fragment are dropped, as are credentials and the default
    port for the scheme. Anything that is not an absolute URL with a host is
    returned unchanged; this never raises.

    Args:
        url: URL as recorded by a scraper.

    Returns:
        Normalized identity key.
    """
    try:
        parts = urlsplit(url.strip())
        host = parts.hostname
        port = parts.port
    except (AttributeError, ValueError):
        return url
    if not parts.scheme or not host:
        return url

    scheme = parts.scheme.lower()
    if ":" in host:
        host = f"[{host}]"
    if port is not None and port != _DEFAULT_PORTS.get(scheme):
        host = f"{host}:{port}"
    path = parts.path.rstrip("/")
    return f"{scheme}://{host}{path}"


def is_valid_listing_url(url: str | None) -> bool:
    """True for an absolute http(s) URL with a host."""
    if not url:
        return False
    try:
        parts = urlsplit(url.strip())
    except ValueError:
        return False
    return parts.scheme in ("http", "https") and bool(parts.hostname)


def _is_airbnb_host(host: str) -> bool:
    labels = host.split(".")
    if _AIRBNB_LABEL not in labels:
        return False
    suffix = labels[labels.index(_AIRBNB_LABEL) + 1 :]
    # Only a public suffix may follow: "com", "co.uk", "com.br".
    return 1 <= len(suffix) <= 2 and all(0 < len(label) <= 3 for label in suffix)


def detect_platform(url: str | None) -> Platform | None:
    """Guess the listing platform from the URL's host."""
    if not is_valid_listing_url(url):
        return None
    host = urlsplit(url.strip()).hostname or ""  # type: ignore[union-attr]
    if _is_airbnb_host(host):
        return Platform.AIRBNB
    for domain, platform in _PLATFORM_DOMAINS.items():
        if host == domain or host.endswith("." + domain):
            return platform
    return None
