"""
Shared fixtures for the field notes tests.

Provides a temporary images folder and store file, JPEG writers (with and
without EXIF), and stand-ins for the network-backed collaborators
(identification, metadata extraction, weather) so the orchestrator and the
Flask app can be exercised offline.
"""
from datetime import datetime, timezone

import pytest
from PIL import Image
from PIL.TiffImagePlugin import IFDRational

from image_metadata import ImageMetadata
from lookup import Lookup
from observations import WeatherData
from store import JsonObservationStore


def identification(image_file="a.jpg", **overrides) -> dict:
    """A complete, well-formed model reply (camelCase, as the model returns it)."""
    ident = {
        "imageFile": image_file,
        "scientificName": "Amanita muscaria",
        "commonName": "Fly Agaric",
        "confidence": 92,
        "edibility": "Toxic",
        "warning": "Do not eat. Confirm every identification with an expert.",
        "keyFeatures": {
            "cap": "Red with white warts",
            "gillsOrPores": "White, free gills",
            "stipe": "White with a ring and bulbous base",
            "sporePrintColor": "White",
            "other": "Volva remnants at base",
        },
        "ecologicalRole": "Mycorrhizal",
        "habitatNotes": "Under birch and pine",
        "funFact": "Featured in many fairy tales.",
        "cookingOrUsage": "Not for consumption.",
        "location": "Unknown",
    }
    ident.update(overrides)
    return ident


class FakeIdentifier:
    """Callable with identify_mushroom's signature; replies per image file."""

    def __init__(self, replies=None, default=None):
        self.replies = replies or {}
        self.default = default
        self.calls = []

    def __call__(self, image_bytes, file_name, mime_type=None, info_card=True):
        self.calls.append(file_name)
        reply = self.replies.get(file_name, self.default)
        if isinstance(reply, Exception):
            raise reply
        if reply is None:
            return Lookup.available(identification(file_name))
        if isinstance(reply, Lookup):
            return reply
        return Lookup.available(dict(reply))


class FakeExtractor:
    """Callable with extract_metadata's signature; returns canned metadata per path basename."""

    def __init__(self, by_file=None):
        self.by_file = by_file or {}
        self.calls = []
        self.options = []

    def __call__(self, image_path, user_agent=None, **kwargs):
        name = image_path.replace("\\", "/").rsplit("/", 1)[-1]
        self.calls.append(name)
        self.options.append(kwargs)
        return self.by_file.get(name, ImageMetadata())


class FakeWeather:
    def __init__(self, result=None):
        self.result = result
        self.calls = []

    def __call__(self, lat, lng, when):
        self.calls.append((lat, lng, when))
        if self.result is None:
            return Lookup.available(sample_weather())
        return self.result


def sample_weather() -> WeatherData:
    return WeatherData(
        temperature=14.2,
        condition="Overcast",
        humidity=88,
        wind_speed=9.5,
        precipitation=0.0,
        description="Overcast",
    )


def gps_metadata() -> ImageMetadata:
    return ImageMetadata(
        latitude=52.520008,
        longitude=13.404954,
        date_time=datetime(2024, 9, 14, 8, 30, tzinfo=timezone.utc),
        address="Tiergarten, Berlin, Germany",
    )


def write_jpeg(path, exif=None) -> str:
    image = Image.new("RGB", (16, 16), (120, 80, 40))
    if exif is not None:
        image.save(path, "JPEG", exif=exif)
    else:
        image.save(path, "JPEG")
    return str(path)


def gps_exif(lat_dms=(52, 31, 12), lat_ref="N", lon_dms=(13, 24, 18), lon_ref="E",
             original="2024:09:14 08:30:00", modified=None) -> Image.Exif:
    exif = Image.Exif()
    if modified:
        exif[306] = modified
    if original:
        exif[34665] = {36867: original}
    exif[34853] = {
        1: lat_ref,
        2: tuple(IFDRational(v) for v in lat_dms),
        3: lon_ref,
        4: tuple(IFDRational(v) for v in lon_dms),
    }
    return exif


@pytest.fixture
def images_dir(tmp_path):
    path = tmp_path / "images"
    path.mkdir()
    return path


@pytest.fixture
def store_path(tmp_path):
    return tmp_path / "data" / "mushrooms.json"


@pytest.fixture
def store(store_path):
    return JsonObservationStore(str(store_path))


@pytest.fixture
def add_images(images_dir):
    """Create plain JPEGs in the images folder: add_images("a.jpg", "b.jpg")."""
    def _add(*names):
        for name in names:
            write_jpeg(images_dir / name)
        return [str(images_dir / n) for n in names]
    return _add
