"""Reverse geocoding of report coordinates to a display address."""

import httpx
import structlog

from config import GEOCODER_TIMEOUT, GEOCODER_URL, GEOCODER_USER_AGENT, GEOCODING_ENABLED

log = structlog.get_logger(__name__)


def reverse_geocode(lat: float, lng: float) -> str:
    """Return a display address for the point, or "" when unavailable.

    Never raises: the address is optional and must not block report intake.
    """
    if not GEOCODING_ENABLED:
        return ""
    params = {"format": "jsonv2", "lat": lat, "lon": lng}
    try:
        r = httpx.get(
            GEOCODER_URL,
            params=params,
            headers={"User-Agent": GEOCODER_USER_AGENT},
            timeout=GEOCODER_TIMEOUT,
        )
        r.raise_for_status()
        data = r.json()
    except (httpx.HTTPError, ValueError) as e:
        log.warning("reverse_geocode_failed", lat=lat, lng=lng, error=str(e))
        return ""
    if not isinstance(data, dict):
        return ""
    return data.get("display_name") or ""
