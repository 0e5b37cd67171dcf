"""
Result type for lookups that are allowed to fail quietly.

Geocoding, weather, info-card generation and response parsing all return a
Lookup instead of raising: either a value, or an explicit "unavailable"
marker with a short reason (and optional diagnostic detail, e.g. the raw
model text that could not be parsed).
"""
from dataclasses import dataclass
from typing import Any


@dataclass(frozen=True)
class Lookup:
    value:  Any = None
    reason: str = ""
    detail: str = ""
    ok:     bool = True

    @classmethod
    def available(cls, value) -> "Lookup":
        return cls(value=value)

    @classmethod
    def unavailable(cls, reason: str, detail: str = "") -> "Lookup":
        return cls(reason=reason, detail=detail, ok=False)

    def value_or(self, default):
        return self.value if self.ok else default
