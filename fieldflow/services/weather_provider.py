import logging
from dataclasses import asdict, dataclass
from typing import Any, Protocol

import httpx

from fieldflow.core.config import settings
from fieldflow.services.automation_errors import ActionFailure

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class WeatherReport:
    condition: str
    description: str
    condition_code: int
    temperature: float | None
    wind_speed: float | None
    severity: int

    def to_json(self) -> dict[str, Any]:
        return asdict(self)


class WeatherProvider(Protocol):
    def current(self, *, location_query: str) -> WeatherReport:
        ...


def severity_for(condition_code: int, wind_speed: float | None) -> int:
    """Score OpenWeather condition codes from 0 (clear) to 10 (severe)."""
    group = condition_code // 100
    if group == 2:
        score = 9
    elif group == 6:
        score = 8
    elif group == 5:
        score = 7 if condition_code in {502, 503, 504, 511, 522, 531} else 5
    elif group == 3:
        score = 3
    elif group == 7:
        score = 10 if condition_code in {771, 781} else 4
    elif condition_code == 800:
        score = 0
    else:
        score = 1
    if wind_speed is not None and wind_speed >= 25:
        score += 2
    return min(score, 10)


class OpenWeatherProvider:
    def __init__(
        self,
        api_key: str,
        *,
        base_url: str | None = None,
        transport: httpx.BaseTransport | None = None,
    ):
        self._api_key = api_key
        self._client = httpx.Client(
            base_url=base_url or settings.openweather_base_url,
            timeout=settings.http_timeout_seconds,
            transport=transport,
        )

    def current(self, *, location_query: str) -> WeatherReport:
        try:
            response = self._client.get(
                "/weather",
                params={"q": location_query, "appid": self._api_key, "units": "imperial"},
            )
            response.raise_for_status()
            payload = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning("Weather lookup for %s failed: %s", location_query, exc)
            raise ActionFailure(f"Weather lookup failed: {exc}") from exc

        conditions = payload.get("weather") or [{}]
        first = conditions[0] if isinstance(conditions, list) and conditions else {}
        code = int(first.get("id") or 800)
        wind_speed = (payload.get("wind") or {}).get("speed")
        return WeatherReport(
            condition=str(first.get("main") or "Clear"),
            description=str(first.get("description") or ""),
            condition_code=code,
            temperature=(payload.get("main") or {}).get("temp"),
            wind_speed=wind_speed,
            severity=severity_for(code, wind_speed),
        )


def build_weather_provider() -> WeatherProvider | None:
    if not settings.openweather_api_key:
        return None
    return OpenWeatherProvider(settings.openweather_api_key)
