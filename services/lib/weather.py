"""
Current conditions from Open-Meteo, cached for 30 minutes.

Location comes from configured coordinates when both are usable numbers,
otherwise the configured postal code (or city) is geocoded.  A failed
refetch is raised to the caller; the previous entry stays cached untouched.
"""

import asyncio
import json
import logging
import math
import time

from aiohttp import ClientError, ClientSession

log = logging.getLogger(__name__)

FORECAST_URL = "https://api.open-meteo.com/v1/forecast"
GEOCODE_URL = "https://geocoding-api.open-meteo.com/v1/search"

CACHE_TTL_MS = 30 * 60 * 1000

# (codes, label, icon); "Clear" switches icon by day/night
WEATHER_CODES = [
    ((1, 2, 3), "Cloudy", "cloud"),
    ((45, 48), "Fog", "cloud-fog"),
    ((51, 53, 55, 56, 57), "Drizzle", "cloud-drizzle"),
    ((61, 63, 65, 80, 81, 82), "Rain", "cloud-rain"),
    ((66, 67), "Freezing Rain", "cloud-rain"),
    ((71, 73, 75, 77, 85, 86), "Snow", "cloud-snow"),
    ((95, 96, 99), "Thunder", "cloud-lightning"),
]


class LocationNotFound(Exception):
    """The configured location could not be resolved to coordinates."""


class WeatherLookupFailed(Exception):
    """Geocoding or forecast request failed."""


def describe_weather(code, is_day) -> dict:
    """Map a WMO weather code to a coarse label/icon pair."""
    if code == 0:
        return {"label": "Clear", "icon": "sun" if is_day else "moon"}
    for codes, label, icon in WEATHER_CODES:
        if code in codes:
            return {"label": label, "icon": icon}
    return {"label": "Unknown", "icon": "cloud"}


def _as_coordinate(value):
    try:
        num = float(value)
    except (TypeError, ValueError):
        return None
    return num if math.isfinite(num) else None


def _now_ms() -> int:
    return int(time.time() * 1000)


class WeatherCache:
    """Serves the last forecast summary while it is fresh, refetches otherwise."""

    def __init__(self, session: ClientSession, *, latitude=None, longitude=None,
                 postal_code="", city="", country="CA",
                 forecast_url=FORECAST_URL, geocode_url=GEOCODE_URL, clock=_now_ms):
        self.session = session
        self.latitude = _as_coordinate(latitude)
        self.longitude = _as_coordinate(longitude)
        self.postal_code = postal_code or ""
        self.city = city or ""
        self.country = country or ""
        self.forecast_url = forecast_url
        self.geocode_url = geocode_url
        self._clock = clock
        self._lock = asyncio.Lock()
        self.payload = None
        self.fetched_at = 0

    def _fresh(self, now: int) -> bool:
        return self.payload is not None and now - self.fetched_at < CACHE_TTL_MS

    async def get_weather(self) -> dict:
        if self._fresh(self._clock()):
            return self.payload

        async with self._lock:
            # A concurrent miss may have refilled the cache meanwhile
            if self._fresh(self._clock()):
                return self.payload
            payload = await self._fetch()
            self.payload = payload
            self.fetched_at = payload["last_updated"]
            log.info("Weather updated: %s %s°C (%s)",
                     payload["label"], payload["temperature"], payload["location"])
            return payload

    async def _fetch(self) -> dict:
        latitude, longitude, location = await self._resolve_location()

        current = (await self._get_json(self.forecast_url, {
            "latitude": latitude,
            "longitude": longitude,
            "current": "temperature_2m,weather_code,is_day",
            "temperature_unit": "celsius",
        })).get("current")
        if not isinstance(current, dict):
            raise WeatherLookupFailed("Forecast response has no current conditions")

        code = current.get("weather_code")
        is_day = current.get("is_day") == 1
        condition = describe_weather(code, is_day)
        return {
            "temperature": current.get("temperature_2m"),
            "weather_code": code,
            "is_day": current.get("is_day"),
            "label": condition["label"],
            "icon": condition["icon"],
            "location": location,
            "last_updated": self._clock(),
        }

    async def _resolve_location(self):
        """Return (latitude, longitude, label) for the configured location."""
        if self.latitude is not None and self.longitude is not None:
            label = self.city or f"{self.latitude:.2f}, {self.longitude:.2f}"
            return self.latitude, self.longitude, label

        query = self.postal_code or self.city
        if not query:
            raise LocationNotFound("No weather location configured")

        params = {"name": query, "count": 1, "language": "en", "format": "json"}
        if self.country:
            params["countryCode"] = self.country
        data = await self._get_json(self.geocode_url, params)

        results = data.get("results") or []
        result = results[0] if results and isinstance(results[0], dict) else None
        lat = _as_coordinate(result.get("latitude")) if result else None
        lon = _as_coordinate(result.get("longitude")) if result else None
        if lat is None or lon is None:
            raise LocationNotFound(f"Location not found: {query}")

        return lat, lon, result.get("name") or self.city or query

    async def _get_json(self, url, params) -> dict:
        try:
            async with self.session.get(url, params=params) as resp:
                text = await resp.text()
                status = resp.status
        except (ClientError, asyncio.TimeoutError) as e:
            raise WeatherLookupFailed(f"Request to {url} failed: {e}") from e

        if status != 200:
            raise WeatherLookupFailed(f"{url} -> HTTP {status}: {text[:200]}")
        try:
            data = json.loads(text)
        except json.JSONDecodeError as e:
            raise WeatherLookupFailed(f"{url} returned invalid JSON") from e
        if not isinstance(data, dict):
            raise WeatherLookupFailed(f"{url} returned unexpected payload")
        return data
