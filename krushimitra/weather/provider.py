"""
Weather Provider Adapter (Tomorrow.io forecast API)
===================================================

fetch(lat, lon) returns one normalized payload:

{
    "temperature": int,                 # deg C, rounded
    "humidity": int,                    # %
    "wind_speed": int,                  # m/s
    "precipitation_probability": int,   # %
    "weather_code": int,
    "condition": str,                   # description of weather_code
    "forecast": [                       # up to 7 daily entries
        {"date": str, "temperature_max": int, "temperature_min": int,
         "weather_code": int, "precipitation_probability": int}
    ]
}

Failures map onto the core taxonomy:
- no API key              -> ProviderNotConfigured
- HTTP 429                -> RateLimited
- other non-2xx, bad JSON -> TransientError
- transport errors        -> TransientError
- timeouts                -> UpstreamTimeout
"""
import logging
from typing import Any, Dict, List, Optional, Protocol

import httpx

from krushimitra.core.errors import (
    ProviderNotConfigured,
    RateLimited,
    TransientError,
    UpstreamTimeout,
)

logger = logging.getLogger(__name__)

FORECAST_DAYS = 7

WEATHER_DESCRIPTIONS = {
    0: "Unknown",
    1000: "Clear",
    1001: "Cloudy",
    1100: "Mostly Clear",
    1101: "Partly Cloudy",
    1102: "Mostly Cloudy",
    2000: "Fog",
    2100: "Light Fog",
    3000: "Light Wind",
    3001: "Wind",
    3002: "Strong Wind",
    4000: "Drizzle",
    4001: "Rain",
    4200: "Light Rain",
    4201: "Heavy Rain",
    5000: "Snow",
    5001: "Flurries",
    5100: "Light Snow",
    5101: "Heavy Snow",
    6000: "Freezing Drizzle",
    6001: "Freezing Rain",
    6200: "Light Freezing Rain",
    6201: "Heavy Freezing Rain",
    7000: "Ice Pellets",
    7101: "Heavy Ice Pellets",
    7102: "Light Ice Pellets",
    8000: "Thunderstorm",
}


class WeatherProvider(Protocol):
    async def fetch(self, latitude: float, longitude: float) -> Dict[str, Any]:
        ...


def _num(value: Any) -> float:
    try:
        return float(value or 0)
    except (TypeError, ValueError):
        return 0.0


def _first_present(values: Dict[str, Any], *keys: str) -> Any:
    for key in keys:
        if values.get(key) is not None:
            return values[key]
    return None


def _first_values(timeline: Any) -> Dict[str, Any]:
    if isinstance(timeline, list) and timeline:
        first = timeline[0] or {}
        return first.get("values") or {}
    return {}


def normalize_forecast(data: Dict[str, Any]) -> Dict[str, Any]:
    """Reduce the provider response to the canonical payload."""
    timelines = data.get("timelines") or {}
    current = _first_values(timelines.get("minutely")) or _first_values(timelines.get("hourly"))

    temperature = _num(_first_present(current, "temperature", "temperatureApparent"))
    weather_code = int(_num(current.get("weatherCode")))

    forecast: List[Dict[str, Any]] = []
    for day in (timelines.get("daily") or [])[:FORECAST_DAYS]:
        values = day.get("values") or {}
        forecast.append({
            "date": day.get("time"),
            "temperature_max": round(_num(_first_present(values, "temperatureMax", "temperature"))),
            "temperature_min": round(_num(_first_present(values, "temperatureMin", "temperature"))),
            "weather_code": int(_num(values.get("weatherCode"))),
            "precipitation_probability": round(_num(values.get("precipitationProbability"))),
        })

    return {
        "temperature": round(temperature),
        "humidity": round(_num(current.get("humidity"))),
        "wind_speed": round(_num(current.get("windSpeed"))),
        "precipitation_probability": round(_num(current.get("precipitationProbability"))),
        "weather_code": weather_code,
        "condition": WEATHER_DESCRIPTIONS.get(weather_code, "Unknown"),
        "forecast": forecast,
    }


class TomorrowIoProvider:
    """Async HTTP adapter for the Tomorrow.io forecast endpoint."""

    def __init__(
        self,
        api_key: str,
        base_url: str = "https://api.tomorrow.io/v4/weather/forecast",
        timeout_seconds: float = 10.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.api_key = api_key
        self.base_url = base_url
        self.timeout_seconds = timeout_seconds
        self._client = client

    @property
    def configured(self) -> bool:
        return bool(self.api_key)

    async def _get(self, params: Dict[str, str]) -> httpx.Response:
        if self._client is not None:
            return await self._client.get(self.base_url, params=params, timeout=self.timeout_seconds)
        async with httpx.AsyncClient(timeout=self.timeout_seconds) as client:
            return await client.get(self.base_url, params=params)

    async def fetch(self, latitude: float, longitude: float) -> Dict[str, Any]:
        if not self.api_key:
            raise ProviderNotConfigured("Weather service not configured")

        params = {"location": f"{latitude},{longitude}", "apikey": self.api_key}
        try:
            response = await self._get(params)
        except httpx.TimeoutException as exc:
            raise UpstreamTimeout(f"Weather API timed out after {self.timeout_seconds}s") from exc
        except httpx.HTTPError as exc:
            # str(exc) can include the request URL, which carries the API key
            raise TransientError(f"Weather API transport error: {type(exc).__name__}") from exc

        if response.status_code == 429:
            raise RateLimited("Weather API rate limit exceeded")
        if not response.is_success:
            raise TransientError(f"Weather API error: {response.status_code}")

        try:
            data = response.json()
        except ValueError as exc:
            raise TransientError("Weather API returned invalid JSON") from exc
        if not isinstance(data, dict):
            raise TransientError("Weather API returned unexpected body")

        return normalize_forecast(data)

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None
