"""
Observation data model.

Field names are snake_case in Python and camelCase on disk and over the API
(imageFile, keyFeatures, locationData, ...), via a pydantic alias generator.
"""
from typing import Literal, Optional, get_args

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

from locations import UNKNOWN_LOCATION, display_location

Edibility = Literal[
    "Unknown",
    "Edible",
    "Edible with Caution",
    "Inedible",
    "Toxic",
    "Psychoactive",
]

EcologicalRole = Literal["Unknown", "Saprotrophic", "Mycorrhizal", "Parasitic"]

EDIBILITY_VALUES = get_args(Edibility)
ECOLOGICAL_ROLES = get_args(EcologicalRole)

DEFAULT_WARNING = "Never consume wild mushrooms without expert identification."


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class KeyFeatures(_CamelModel):
    cap:               str = ""
    gills_or_pores:    str = ""
    stipe:             str = ""
    spore_print_color: str = ""
    other:             str = ""

    @field_validator("*", mode="before")
    @classmethod
    def _null_is_blank(cls, value):
        return "" if value is None else value


class LocationData(_CamelModel):
    address:            str
    lat:                float
    lng:                float
    formatted_location: Optional[str] = None


class WeatherData(_CamelModel):
    temperature:   float   # Celsius
    condition:     str
    humidity:      float   # percent
    wind_speed:    float   # km/h
    precipitation: Optional[float] = None  # mm
    description:   str
    icon:          Optional[str] = None


class Observation(_CamelModel):
    image_file:       str = Field(min_length=1)
    scientific_name:  str = ""
    common_name:      str = ""
    confidence:       int = Field(default=0, ge=0, le=100)
    edibility:        Edibility = "Unknown"
    warning:          str = DEFAULT_WARNING
    key_features:     KeyFeatures = Field(default_factory=KeyFeatures)
    ecological_role:  EcologicalRole = "Unknown"
    habitat_notes:    str = ""
    fun_fact:         str = ""
    cooking_or_usage: str = ""
    location:         str = UNKNOWN_LOCATION
    location_data:    Optional[LocationData] = None
    observation_date: Optional[str] = None
    observation_time: Optional[str] = None
    weather:          Optional[WeatherData] = None
    info_card_image:  Optional[str] = None

    @field_validator(
        "scientific_name", "common_name", "habitat_notes", "fun_fact", "cooking_or_usage",
        mode="before",
    )
    @classmethod
    def _null_text_is_blank(cls, value):
        # Models answer null for details they cannot tell from the photo
        return "" if value is None else value

    @field_validator("confidence", mode="before")
    @classmethod
    def _clamp_confidence(cls, value):
        # Models occasionally answer 87.5 or "87"
        if value is None or value == "":
            return 0
        try:
            number = round(float(value))
        except (TypeError, ValueError):
            return 0
        return max(0, min(100, number))

    @field_validator("edibility", mode="before")
    @classmethod
    def _known_edibility(cls, value):
        return value if value in EDIBILITY_VALUES else "Unknown"

    @field_validator("ecological_role", mode="before")
    @classmethod
    def _known_role(cls, value):
        return value if value in ECOLOGICAL_ROLES else "Unknown"

    @field_validator("warning", mode="before")
    @classmethod
    def _warning_required(cls, value):
        if not isinstance(value, str) or not value.strip():
            return DEFAULT_WARNING
        return value

    @field_validator("location", mode="before")
    @classmethod
    def _location_required(cls, value):
        if not isinstance(value, str) or not value.strip():
            return UNKNOWN_LOCATION
        return value

    @model_validator(mode="after")
    def _location_follows_location_data(self):
        if self.location_data is not None:
            self.location = display_location(self.location_data)
        return self

    def to_record(self) -> dict:
        """JSON-ready dict with camelCase keys; absent optional fields are omitted."""
        return self.model_dump(by_alias=True, exclude_none=True)
