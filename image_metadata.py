"""
Image metadata extraction (no AI).

Reads EXIF data (GPS coordinates, capture date/time) from image files via Pillow.
Reverse geocoding is done via OpenStreetMap Nominatim (free, no API key required).

Both precedence chains (coordinates and timestamp) are written as ordered
lists of candidate readers; the first one that yields a value wins.
"""
import json
import logging
import os
import urllib.parse
import urllib.request
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from PIL import Image

from lookup import Lookup

log = logging.getLogger(__name__)

NOMINATIM_REVERSE_URL = "https://nominatim.openstreetmap.org/reverse"
DEFAULT_USER_AGENT    = "MushroomFieldNotes/1.0"
GEOCODE_TIMEOUT       = 10  # seconds

# EXIF tag IDs
_TAG_DATETIME            = 306     # DateTime (IFD0, generic modification time)
_TAG_EXIF_IFD            = 34665   # Exif sub-IFD pointer
_TAG_GPS_INFO            = 34853   # GPSInfo IFD pointer
_TAG_DATETIME_ORIGINAL   = 36867   # DateTimeOriginal (capture)
_TAG_DATETIME_DIGITIZED  = 36868   # DateTimeDigitized / CreateDate
_TAG_OFFSET_TIME         = 36880
_TAG_OFFSET_ORIGINAL     = 36881
_TAG_OFFSET_DIGITIZED    = 36882

# GPS sub-tags inside the GPSInfo IFD
_GPS_LAT_REF = 1
_GPS_LAT     = 2
_GPS_LON_REF = 3
_GPS_LON     = 4


@dataclass
class ImageMetadata:
    latitude:  float | None = None
    longitude: float | None = None
    date_time: datetime | None = None
    address:   str | None = None

    @property
    def has_coordinates(self) -> bool:
        return self.latitude is not None and self.longitude is not None


@dataclass
class _ExifTags:
    ifd0:  dict
    exif:  dict
    gps:   dict
    path:  str


# ── Coordinates ──────────────────────────────────────────────────────────────

def _rational_to_float(value) -> float:
    """Convert a Pillow IFDRational or (numerator, denominator) tuple to float."""
    if hasattr(value, "numerator") and hasattr(value, "denominator"):
        return value.numerator / value.denominator if value.denominator else 0.0
    if isinstance(value, tuple) and len(value) == 2:
        return value[0] / value[1] if value[1] else 0.0
    return float(value)


def _dms_to_decimal(dms, ref) -> float | None:
    """Convert DMS (degrees / minutes / seconds) tuple + hemisphere ref to decimal degrees."""
    try:
        degrees = _rational_to_float(dms[0])
        minutes = _rational_to_float(dms[1])
        seconds = _rational_to_float(dms[2])
    except (TypeError, ValueError, IndexError, ZeroDivisionError):
        return None
    decimal = degrees + minutes / 60.0 + seconds / 3600.0
    if isinstance(ref, bytes):
        ref = ref.decode("ascii", "ignore")
    if ref and ref.strip().upper() in ("S", "W"):
        decimal = -decimal
    return decimal


def _normalized_coordinates(tags: _ExifTags):
    """Signed decimal degrees from the DMS triplets plus hemisphere refs."""
    lat_dms, lon_dms = tags.gps.get(_GPS_LAT), tags.gps.get(_GPS_LON)
    lat_ref, lon_ref = tags.gps.get(_GPS_LAT_REF), tags.gps.get(_GPS_LON_REF)
    if not (isinstance(lat_dms, tuple) and isinstance(lon_dms, tuple)):
        return None
    if len(lat_dms) != 3 or len(lon_dms) != 3 or not lat_ref or not lon_ref:
        return None
    lat = _dms_to_decimal(lat_dms, lat_ref)
    lon = _dms_to_decimal(lon_dms, lon_ref)
    if lat is None or lon is None:
        return None
    return lat, lon


def _raw_coordinates(tags: _ExifTags):
    """Plain GPSLatitude / GPSLongitude values, for writers that store decimal degrees."""
    lat, lon = tags.gps.get(_GPS_LAT), tags.gps.get(_GPS_LON)
    if lat is None or lon is None or isinstance(lat, tuple) or isinstance(lon, tuple):
        return None
    try:
        return _rational_to_float(lat), _rational_to_float(lon)
    except (TypeError, ValueError, ZeroDivisionError):
        return None


COORDINATE_SOURCES = [_normalized_coordinates, _raw_coordinates]


# ── Timestamp ────────────────────────────────────────────────────────────────

def _parse_exif_datetime(value, offset=None) -> datetime | None:
    """Parse 'YYYY:MM:DD HH:MM:SS' (plus optional '+HH:MM' offset tag) into an aware datetime.

    EXIF times without an offset tag are taken as UTC.
    """
    if isinstance(value, bytes):
        value = value.decode("ascii", "ignore")
    if not isinstance(value, str):
        return None
    value = value.strip().rstrip("\x00")
    try:
        parsed = datetime.strptime(value[:19], "%Y:%m:%d %H:%M:%S")
    except ValueError:
        return None
    tz = timezone.utc
    if isinstance(offset, str) and len(offset.strip()) >= 6:
        try:
            sign = -1 if offset.strip()[0] == "-" else 1
            hours, minutes = offset.strip()[1:6].split(":")
            tz = timezone(sign * timedelta(hours=int(hours), minutes=int(minutes)))
        except ValueError:
            tz = timezone.utc
    return parsed.replace(tzinfo=tz)


def _capture_time(tags: _ExifTags):
    return _parse_exif_datetime(tags.exif.get(_TAG_DATETIME_ORIGINAL), tags.exif.get(_TAG_OFFSET_ORIGINAL))


def _modification_time(tags: _ExifTags):
    return _parse_exif_datetime(tags.ifd0.get(_TAG_DATETIME), tags.exif.get(_TAG_OFFSET_TIME))


def _creation_time(tags: _ExifTags):
    return _parse_exif_datetime(tags.exif.get(_TAG_DATETIME_DIGITIZED), tags.exif.get(_TAG_OFFSET_DIGITIZED))


def _file_modified_time(tags: _ExifTags):
    return datetime.fromtimestamp(os.path.getmtime(tags.path), tz=timezone.utc)


TIMESTAMP_SOURCES = [_capture_time, _modification_time, _creation_time]


def first_available(sources, tags):
    """Return the first non-None value produced by the ordered sources."""
    for source in sources:
        value = source(tags)
        if value is not None:
            return value
    return None


# ── Reverse geocoding ────────────────────────────────────────────────────────

def reverse_geocode(lat: float, lon: float, user_agent: str = DEFAULT_USER_AGENT) -> Lookup:
    """
    Call OpenStreetMap Nominatim reverse geocoding.
    Returns Lookup.available(display_name) or Lookup.unavailable(reason).
    Usage policy: a descriptive User-Agent header is required.
    """
    query = urllib.parse.urlencode({
        "format": "json",
        "lat": f"{lat:.6f}",
        "lon": f"{lon:.6f}",
        "zoom": 18,
        "addressdetails": 1,
    })
    req = urllib.request.Request(
        f"{NOMINATIM_REVERSE_URL}?{query}",
        headers={"User-Agent": user_agent},
    )
    try:
        with urllib.request.urlopen(req, timeout=GEOCODE_TIMEOUT) as resp:
            data = json.loads(resp.read().decode("utf-8"))
    except Exception as e:  # network, HTTP protocol or decode failure
        log.warning("Reverse geocoding failed for %.6f, %.6f: %s", lat, lon, e)
        return Lookup.unavailable("reverse geocoding failed", str(e))

    address = data.get("display_name") if isinstance(data, dict) else None
    if not address:
        return Lookup.unavailable("no display_name in geocoding response")
    return Lookup.available(address)


# ── Public entry point ───────────────────────────────────────────────────────

def _read_tags(image_path: str) -> _ExifTags:
    with Image.open(image_path) as image:
        exif = image.getexif()
        return _ExifTags(
            ifd0=dict(exif),
            exif=dict(exif.get_ifd(_TAG_EXIF_IFD)),
            gps=dict(exif.get_ifd(_TAG_GPS_INFO)),
            path=image_path,
        )


def extract_metadata(
    image_path: str,
    user_agent: str = DEFAULT_USER_AGENT,
    geocode: bool = True,
    use_file_mtime: bool = False,
) -> ImageMetadata:
    """
    Extract GPS coordinates and capture date/time from an image's EXIF data.

    Performs reverse geocoding when both coordinates are found; a failed
    lookup only leaves `address` empty. Unreadable files or broken EXIF
    give an empty ImageMetadata instead of raising.

    With use_file_mtime=True the file's last-modified time is the final
    fallback for the timestamp.
    """
    try:
        tags = _read_tags(image_path)
        sources = TIMESTAMP_SOURCES + ([_file_modified_time] if use_file_mtime else [])
        coords = first_available(COORDINATE_SOURCES, tags)
        date_time = first_available(sources, tags)
    except Exception as e:
        log.warning("Could not read EXIF from %s: %s", image_path, e)
        return ImageMetadata()

    metadata = ImageMetadata(date_time=date_time)
    if coords is not None:
        metadata.latitude = round(coords[0], 6)
        metadata.longitude = round(coords[1], 6)
        if geocode:
            metadata.address = reverse_geocode(metadata.latitude, metadata.longitude, user_agent).value
    return metadata
