from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from math import isfinite
from urllib import error as urllib_error
from urllib import parse as urllib_parse
from urllib import request as urllib_request

from timeclock.errors import ApiError
from timeclock.settings import get_settings

logger = logging.getLogger("timeclock.geocode")


@dataclass(frozen=True, slots=True)
class GeocodeResult:
    lat: float
    lng: float
    display_name: str | None


def _fetch_json(url: str, *, user_agent: str, timeout_seconds: int) -> object:
    request = urllib_request.Request(
        url=url,
        method="GET",
        headers={"User-Agent": user_agent, "Accept": "application/json"},
    )
    try:
        with urllib_request.urlopen(request, timeout=max(1, timeout_seconds)) as response:
            body = response.read().decode("utf-8", errors="replace")
    except urllib_error.HTTPError as exc:
        error_body = exc.read(300).decode("utf-8", errors="ignore")
        logger.warning("geocode_http_error", extra={"status_code": exc.code, "body": error_body})
        raise ApiError(
            status_code=502,
            code="GEOCODE_FAILED",
            message=f"Geocode failed: {exc.code}",
        ) from exc
    except (urllib_error.URLError, TimeoutError) as exc:
        logger.warning("geocode_unreachable", extra={"error": str(exc)})
        raise ApiError(status_code=502, code="GEOCODE_FAILED", message="Geocoder is unreachable.") from exc

    try:
        return json.loads(body)
    except ValueError as exc:
        raise ApiError(status_code=502, code="GEOCODE_FAILED", message="Bad geocode response.") from exc


def geocode_address(address: str) -> GeocodeResult:
    query = address.strip()
    if not query:
        raise ApiError(status_code=422, code="ADDRESS_REQUIRED", message="Missing address.")

    settings = get_settings()
    url = f"{settings.geocoder_url}?" + urllib_parse.urlencode({"q": query, "format": "json", "limit": "1"})
    payload = _fetch_json(
        url,
        user_agent=settings.geocoder_user_agent,
        timeout_seconds=settings.geocoder_timeout_seconds,
    )

    first = payload[0] if isinstance(payload, list) and payload else None
    if not isinstance(first, dict) or not first.get("lat") or not first.get("lon"):
        raise ApiError(status_code=404, code="GEOCODE_NO_RESULTS", message="No results.")

    try:
        lat = float(first["lat"])
        lng = float(first["lon"])
    except (TypeError, ValueError) as exc:
        raise ApiError(status_code=502, code="GEOCODE_FAILED", message="Bad geocode result.") from exc
    if not isfinite(lat) or not isfinite(lng):
        raise ApiError(status_code=502, code="GEOCODE_FAILED", message="Bad geocode result.")

    display_name = first.get("display_name")
    return GeocodeResult(lat=lat, lng=lng, display_name=str(display_name) if display_name else None)
