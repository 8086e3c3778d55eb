"""Weather tool backed by Open-Meteo (free, no API key).

Geocodes the requested place name, then fetches current conditions and a
short daily forecast. Uses its own httpx client, never the model provider's.
"""

from __future__ import annotations

import logging
from typing import Any

import httpx

from zbot.engine.schemas import ToolResult
from zbot.engine.tools import Tool, ToolContext, ToolParam

logger = logging.getLogger(__name__)

GEOCODING_URL = "https://geocoding-api.open-meteo.com/v1/search"
FORECAST_URL = "https://api.open-meteo.com/v1/forecast"

MAX_DAYS = 16

WEATHER_CODES: dict[int, str] = {
    0: "Clear sky",
    1: "Mainly clear",
    2: "Partly cloudy",
    3: "Overcast",
    45: "Fog",
    48: "Depositing rime fog",
    51: "Light drizzle",
    53: "Moderate drizzle",
    55: "Dense drizzle",
    56: "Light freezing drizzle",
    57: "Dense freezing drizzle",
    61: "Slight rain",
    63: "Moderate rain",
    65: "Heavy rain",
    66: "Light freezing rain",
    67: "Heavy freezing rain",
    71: "Slight snowfall",
    73: "Moderate snowfall",
    75: "Heavy snowfall",
    77: "Snow grains",
    80: "Slight rain showers",
    81: "Moderate rain showers",
    82: "Violent rain showers",
    85: "Slight snow showers",
    86: "Heavy snow showers",
    95: "Thunderstorm",
    96: "Thunderstorm with slight hail",
    99: "Thunderstorm with heavy hail",
}

_CURRENT_FIELDS = [
    "temperature_2m",
    "relative_humidity_2m",
    "apparent_temperature",
    "precipitation",
    "weather_code",
    "wind_speed_10m",
    "is_day",
]
_DAILY_FIELDS = [
    "weather_code",
    "temperature_2m_max",
    "temperature_2m_min",
    "precipitation_sum",
    "precipitation_probability_max",
    "sunrise",
    "sunset",
]


def describe_code(code: int | None) -> str:
    if code is None:
        return "Unknown"
    return WEATHER_CODES.get(int(code), "Unknown")


class WeatherTool(Tool):
    name = "weather"
    description = "Current weather and a daily forecast for a city or place name."
    parameters = (
        ToolParam("location", "string", "City or place name, e.g. Hanoi", required=True),
        ToolParam("days", "number", f"Forecast days, 1-{MAX_DAYS} (default 3)"),
    )

    def __init__(self, http: httpx.AsyncClient, timeout: float = 10.0) -> None:
        self._http = http
        self._timeout = timeout

    async def execute(self, params: dict[str, Any], context: ToolContext) -> ToolResult:
        location = str(params["location"]).strip()
        if not location:
            return ToolResult.fail("location must not be empty")
        days = max(1, min(int(params.get("days", 3)), MAX_DAYS))

        try:
            place = await self._geocode(location)
            if place is None:
                return ToolResult.fail(f"Location not found: {location}")
            forecast = await self._forecast(place, days)
        except httpx.TimeoutException:
            return ToolResult.fail("Weather service timed out. Try again.")
        except httpx.HTTPError as e:
            logger.warning("weather request failed: %s", e)
            return ToolResult.fail(f"Weather service error: {e}")

        return ToolResult.ok(forecast)

    async def _geocode(self, query: str) -> dict[str, Any] | None:
        response = await self._http.get(
            GEOCODING_URL,
            params={"name": query, "count": 1, "format": "json"},
            timeout=self._timeout,
        )
        response.raise_for_status()
        results = response.json().get("results") or []
        if not results:
            logger.debug("No geocoding match for %r", query)
            return None
        return results[0]

    async def _forecast(self, place: dict[str, Any], days: int) -> dict[str, Any]:
        response = await self._http.get(
            FORECAST_URL,
            params={
                "latitude": place["latitude"],
                "longitude": place["longitude"],
                "current": ",".join(_CURRENT_FIELDS),
                "daily": ",".join(_DAILY_FIELDS),
                "timezone": "auto",
                "forecast_days": days,
            },
            timeout=self._timeout,
        )
        response.raise_for_status()
        data = response.json()

        current = data.get("current", {})
        daily = data.get("daily", {})
        dates = daily.get("time", [])

        def _day(i: int, key: str) -> Any:
            values = daily.get(key) or []
            return values[i] if i < len(values) else None

        return {
            "location": {
                "name": place.get("name"),
                "region": place.get("admin1"),
                "country": place.get("country"),
                "timezone": data.get("timezone", place.get("timezone")),
            },
            "current": {
                "temperature": current.get("temperature_2m"),
                "feels_like": current.get("apparent_temperature"),
                "humidity": current.get("relative_humidity_2m"),
                "precipitation": current.get("precipitation"),
                "wind_speed": current.get("wind_speed_10m"),
                "is_day": bool(current.get("is_day", 1)),
                "description": describe_code(current.get("weather_code")),
            },
            "daily": [
                {
                    "date": date,
                    "max": _day(i, "temperature_2m_max"),
                    "min": _day(i, "temperature_2m_min"),
                    "precipitation": _day(i, "precipitation_sum"),
                    "precipitation_probability": _day(i, "precipitation_probability_max"),
                    "sunrise": _day(i, "sunrise"),
                    "sunset": _day(i, "sunset"),
                    "description": describe_code(_day(i, "weather_code")),
                }
                for i, date in enumerate(dates)
            ],
        }
