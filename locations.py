"""
Location strings: formatting, normalization, grouping and filtering.

The legacy `location` field is free text (a Nominatim address, a
"lat, lng" pair, or "Unknown"). The gallery groups and filters
observations by a normalized form of that string so that trivially
different spellings land in the same group.
"""
import re

UNKNOWN_LOCATION = "Unknown"

_WHITESPACE = re.compile(r"\s+")
_COMMA_SPACING = re.compile(r"\s*,\s*")


def format_coordinates(lat: float, lng: float) -> str:
    return f"{lat:.6f}, {lng:.6f}"


def display_location(location_data) -> str:
    """Display string for a structured location: formatted text, address, or coordinates."""
    text = getattr(location_data, "formatted_location", None) or getattr(location_data, "address", None)
    if text and text.strip():
        return normalize_location(text)
    return format_coordinates(location_data.lat, location_data.lng)


def normalize_location(location: str | None) -> str:
    """Collapse whitespace and comma spacing; blank input becomes "Unknown"."""
    if not location:
        return UNKNOWN_LOCATION
    text = _WHITESPACE.sub(" ", location).strip()
    text = _COMMA_SPACING.sub(", ", text).strip(", ")
    return text or UNKNOWN_LOCATION


def location_key(location: str | None) -> str:
    """Case-insensitive grouping key."""
    return normalize_location(location).casefold()


def short_label(location: str | None) -> str:
    """First comma-separated segment, e.g. the park or street name of an address."""
    return normalize_location(location).split(",")[0].strip()


def group_by_location(observations: list) -> list[tuple[str, list]]:
    """
    Group observations by normalized location.

    Returns (location, observations) pairs sorted by location, case-insensitively.
    The display name of a group is the first spelling seen; members keep
    their original order.
    """
    groups: dict[str, tuple[str, list]] = {}
    for obs in observations:
        key = location_key(obs.location)
        if key not in groups:
            groups[key] = (normalize_location(obs.location), [])
        groups[key][1].append(obs)
    return [groups[key] for key in sorted(groups)]


def filter_by_location(observations: list, location: str | None) -> list:
    """Observations whose normalized location matches; no filter when location is empty."""
    if not location:
        return list(observations)
    key = location_key(location)
    return [obs for obs in observations if location_key(obs.location) == key]
