"""Exception hierarchy for the field notes pipeline."""


class FieldNotesError(Exception):
    """Base class for all field notes errors."""


class ConfigurationError(FieldNotesError):
    """Required settings (API key, AI backend) are missing or invalid."""


class StoreCorruptedError(FieldNotesError):
    """The observation file exists but is not a JSON array of valid records."""

    def __init__(self, path, detail: str):
        super().__init__(f"Observation store {path} is corrupted: {detail}")
        self.path = path
        self.detail = detail


class ObservationRejected(FieldNotesError):
    """An identification result is missing mandatory fields and was not stored."""

    def __init__(self, image_file: str, missing: list[str]):
        super().__init__(
            f"Identification for {image_file} is missing required fields: {', '.join(missing)}"
        )
        self.image_file = image_file
        self.missing = missing
