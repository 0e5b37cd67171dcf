"""
Historical weather snapshot for an observation, from the Open-Meteo archive API
(free, no API key required).

One request per observation: start_date == end_date == the observation date,
hourly series for temperature, humidity, precipitation, weather code and wind.
The hour matching the observation time is picked; index 0 is used when no hour
matches or the matched hour has no data.
"""
import json
import logging
import urllib.parse
import urllib.request
from datetime import date, datetime, timezone

from lookup import Lookup
from observations import WeatherData

log = logging.getLogger(__name__)

ARCHIVE_URL     = "https://archive-api.open-meteo.com/v1/archive"
WEATHER_TIMEOUT = 15  # seconds

HOURLY_FIELDS = [
    "temperature_2m",
    "relative_humidity_2m",
    "precipitation",
    "weather_code",
    "wind_speed_10m",
]

# WMO weather interpretation codes
WEATHER_CODES: dict[int, str] = {
    0:  "Clear",
    1:  "Mostly Clear",
    2:  "Partly Cloudy",
    3:  "Overcast",
    45: "Foggy",
    48: "Depositing Rime Fog",
    51: "Light Drizzle",
    53: "Moderate Drizzle",
    55: "Dense Drizzle",
    61: "Slight Rain",
    63: "Moderate Rain",
    65: "Heavy Rain",
    71: "Slight Snow",
    73: "Moderate Snow",
    75: "Heavy Snow",
    77: "Snow Grains",
    80: "Slight Rain Showers",
    81: "Moderate Rain Showers",
    82: "Violent Rain Showers",
    85: "Slight Snow Showers",
    86: "Heavy Snow Showers",
    95: "Thunderstorm",
    96: "Thunderstorm with Hail",
    99: "Thunderstorm with Heavy Hail",
}


def describe_weather_code(code) -> str:
    try:
        return WEATHER_CODES.get(int(code), "Unknown")
    except (TypeError, ValueError):
        return "Unknown"


def _hour_of(timestamp: str) -> int | None:
    try:
        return datetime.fromisoformat(timestamp).hour
    except (TypeError, ValueError):
        return None


def _value_at(series, index):
    if isinstance(series, list) and 0 <= index < len(series):
        return series[index]
    return None


def select_hour_index(hourly: dict, target_hour: int) -> int:
    """Index of the first hourly entry at target_hour, else 0 (also 0 when that entry has no temperature)."""
    times = hourly.get("time") or []
    index = next((i for i, t in enumerate(times) if _hour_of(t) == target_hour), 0)
    if _value_at(hourly.get("temperature_2m"), index) is None:
        index = 0
    return index


def snapshot_from_hourly(hourly: dict, target_hour: int) -> WeatherData:
    """Build a WeatherData record from an Open-Meteo `hourly` block."""
    index = select_hour_index(hourly, target_hour)

    def pick(field: str) -> float:
        value = _value_at(hourly.get(field), index)
        return float(value) if value is not None else 0.0

    code = _value_at(hourly.get("weather_code"), index)
    condition = describe_weather_code(code)
    return WeatherData(
        temperature=pick("temperature_2m"),
        condition=condition,
        humidity=pick("relative_humidity_2m"),
        wind_speed=pick("wind_speed_10m"),
        precipitation=pick("precipitation"),
        description=condition if condition != "Unknown" else "Unknown conditions",
    )


def fetch_weather(lat: float, lng: float, when: datetime) -> Lookup:
    """
    Historical weather at (lat, lng) for the hour of `when`.

    `when` is interpreted in UTC (the archive's default timezone).
    Returns Lookup.available(WeatherData) or Lookup.unavailable(reason).
    """
    if when.tzinfo is not None:
        when = when.astimezone(timezone.utc)
    day: date = when.date()
    query = urllib.parse.urlencode({
        "latitude": f"{lat:.6f}",
        "longitude": f"{lng:.6f}",
        "start_date": day.isoformat(),
        "end_date": day.isoformat(),
        "hourly": ",".join(HOURLY_FIELDS),
    })
    try:
        with urllib.request.urlopen(f"{ARCHIVE_URL}?{query}", timeout=WEATHER_TIMEOUT) as resp:
            data = json.loads(resp.read().decode("utf-8"))
    except Exception as e:  # network, HTTP protocol or decode failure
        log.warning("Weather lookup failed for %.4f, %.4f on %s: %s", lat, lng, day, e)
        return Lookup.unavailable("weather archive request failed", str(e))

    hourly = data.get("hourly") if isinstance(data, dict) else None
    if not isinstance(hourly, dict) or not hourly.get("time"):
        return Lookup.unavailable("weather archive returned no hourly data")
    return Lookup.available(snapshot_from_hourly(hourly, when.hour))
