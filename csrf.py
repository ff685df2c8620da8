"""Same-origin checks for state-changing requests.

Resolution order: an explicit Origin/Referer is compared against the allowed
origins; without one, the browser-controlled ``sec-fetch-site`` header
decides; with neither, the request is rejected.
"""

from typing import Iterable, Mapping, Optional
from urllib.parse import urlsplit


def _origin_of(value: str) -> Optional[str]:
    # Origin is already an origin; Referer is a full URL.
    try:
        parts = urlsplit(value.strip())
        port = parts.port
    except ValueError:
        return None
    if parts.scheme not in {"http", "https"} or not parts.hostname:
        return None
    host = parts.hostname
    if ":" in host:
        host = f"[{host}]"
    default_port = 443 if parts.scheme == "https" else 80
    if port is not None and port != default_port:
        host = f"{host}:{port}"
    return f"{parts.scheme}://{host}"


def get_source_origin(headers: Mapping[str, str]) -> Optional[str]:
    origin = headers.get("origin")
    if origin and origin != "null":
        return _origin_of(origin)

    referer = headers.get("referer")
    if referer:
        return _origin_of(referer)

    return None


def get_expected_origin(headers: Mapping[str, str]) -> Optional[str]:
    """Origin this deployment is served from, as seen through proxies."""
    host = headers.get("x-forwarded-host") or headers.get("host")
    if not host:
        return None
    host = host.split(",")[0].strip()

    proto = headers.get("x-forwarded-proto")
    if proto:
        proto = proto.split(",")[0].strip()
    elif host.startswith("localhost") or host.startswith("127.0.0.1"):
        proto = "http"
    else:
        proto = "https"

    return f"{proto}://{host}"


def is_same_origin_request(
    headers: Mapping[str, str],
    expected_origin: str,
    allowed_origins: Iterable[str] = (),
    allow_same_site: bool = True,
) -> bool:
    allowed = {expected_origin.rstrip("/"), *(o.rstrip("/") for o in allowed_origins)}

    source_origin = get_source_origin(headers)
    if source_origin:
        return source_origin in allowed

    sec_fetch_site = headers.get("sec-fetch-site")
    if not sec_fetch_site:
        return False
    if sec_fetch_site == "same-origin":
        return True
    if allow_same_site and sec_fetch_site == "same-site":
        return True
    return False
