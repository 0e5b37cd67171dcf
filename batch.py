"""
Batch orchestrator: analyze every photo in the images folder that is not yet
in the observation store.

Images are processed one at a time. Each goes through

    Pending -> Extracting -> Identifying -> Validating -> Saving -> Done

and any failure moves it to Failed, logs it, and continues with the next
image; the image stays unprocessed and is picked up again by a later run.

Run from the command line:

    field-notes-batch                    # all unprocessed images
    field-notes-batch --reprocess a.jpg  # re-analyze one stored image
"""
import argparse
import logging
import os
import sys
from dataclasses import dataclass, field
from datetime import timezone
from enum import Enum

from errors import ConfigurationError, ObservationRejected, StoreCorruptedError
from identification import identify_mushroom, missing_required_fields
from image_files import list_image_files, mime_type_for, resolve_image_path
from image_metadata import DEFAULT_USER_AGENT, ImageMetadata, extract_metadata
from locations import UNKNOWN_LOCATION, format_coordinates
from lookup import Lookup
from observations import Observation
from site_config import pipeline_config, require_api_key
from store import JsonObservationStore, ObservationStore
from weather import fetch_weather

log = logging.getLogger(__name__)

# Fields kept from the stored record when a re-analysis does not supply them
CARRIED_FORWARD = ("locationData", "location", "observationDate", "observationTime", "weather")


class Stage(Enum):
    PENDING     = "pending"
    EXTRACTING  = "extracting"
    IDENTIFYING = "identifying"
    VALIDATING  = "validating"
    SAVING      = "saving"
    DONE        = "done"
    FAILED      = "failed"


@dataclass
class BatchProgress:
    current: int
    total:   int


@dataclass
class ItemOutcome:
    image_file: str
    status:     str          # "saved", "skipped" or "failed"
    stage:      Stage        # last stage reached
    detail:     str = ""

    def to_dict(self) -> dict:
        return {
            "imageFile": self.image_file,
            "status": self.status,
            "stage": self.stage.value,
            "detail": self.detail,
        }


@dataclass
class BatchReport:
    total:    int
    outcomes: list[ItemOutcome] = field(default_factory=list)

    def _with_status(self, status: str) -> list[str]:
        return [o.image_file for o in self.outcomes if o.status == status]

    @property
    def saved(self) -> list[str]:
        return self._with_status("saved")

    @property
    def skipped(self) -> list[str]:
        return self._with_status("skipped")

    @property
    def failed(self) -> list[str]:
        return self._with_status("failed")

    def to_dict(self) -> dict:
        return {
            "total": self.total,
            "saved": self.saved,
            "skipped": self.skipped,
            "failed": self.failed,
            "items": [o.to_dict() for o in self.outcomes],
        }


# ── Record assembly ──────────────────────────────────────────────────────────

def _iso_utc(dt) -> tuple[str, str]:
    """(date, timestamp) strings, e.g. ("2024-09-14", "2024-09-14T08:30:00.000Z")."""
    utc = dt.astimezone(timezone.utc)
    return utc.date().isoformat(), utc.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def observation_fields(image_file: str, ident: dict, metadata: ImageMetadata, weather=None) -> dict:
    """
    camelCase record for one fresh analysis: model output plus EXIF location,
    date/time and weather. Values the analysis could not determine are None.
    """
    record = dict(ident)
    record["imageFile"] = image_file

    location = ident.get("location")
    if not location or location == UNKNOWN_LOCATION:
        location = None

    record["locationData"] = None
    if metadata.has_coordinates:
        text = metadata.address or format_coordinates(metadata.latitude, metadata.longitude)
        record["locationData"] = {
            "address": text,
            "lat": metadata.latitude,
            "lng": metadata.longitude,
            "formattedLocation": text,
        }
        location = text
    record["location"] = location

    record["observationDate"] = record["observationTime"] = None
    if metadata.date_time is not None:
        record["observationDate"], record["observationTime"] = _iso_utc(metadata.date_time)

    record["weather"] = weather.model_dump(by_alias=True) if weather is not None else None
    return record


def carry_forward(fresh: dict, previous: Observation) -> dict:
    """Fill fields the fresh analysis left as None from the previously stored record.

    Only None counts as absent; empty strings and zeros from the fresh
    analysis are kept.
    """
    merged = dict(fresh)
    old = previous.model_dump(by_alias=True)
    for key in CARRIED_FORWARD:
        if merged.get(key) is None and old.get(key) is not None:
            merged[key] = old[key]
    return merged


def build_observation(
    image_file: str,
    ident: dict,
    metadata: ImageMetadata,
    weather=None,
    previous: Observation | None = None,
) -> Observation:
    fields = observation_fields(image_file, ident, metadata, weather)
    if previous is not None:
        fields = carry_forward(fields, previous)
    return Observation.model_validate(fields)


# ── Orchestrator ─────────────────────────────────────────────────────────────

class BatchOrchestrator:
    """Runs extract -> identify -> validate -> save for unprocessed images, sequentially."""

    def __init__(
        self,
        store: ObservationStore,
        images_dir: str,
        identify=identify_mushroom,
        extract=extract_metadata,
        lookup_weather=fetch_weather,
        info_cards: bool = True,
        with_weather: bool = True,
        use_file_mtime: bool = True,
        user_agent: str = DEFAULT_USER_AGENT,
    ):
        self.store = store
        self.images_dir = images_dir
        self.identify = identify
        self.extract = extract
        self.lookup_weather = lookup_weather
        self.info_cards = info_cards
        self.with_weather = with_weather
        self.use_file_mtime = use_file_mtime
        self.user_agent = user_agent

    def pending_images(self) -> list[str]:
        return self.store.unprocessed(list_image_files(self.images_dir))

    def _weather_for(self, metadata: ImageMetadata) -> Lookup:
        if not self.with_weather:
            return Lookup.unavailable("weather disabled")
        if not metadata.has_coordinates or metadata.date_time is None:
            return Lookup.unavailable("no coordinates or capture time")
        return self.lookup_weather(metadata.latitude, metadata.longitude, metadata.date_time)

    def analyze(self, image_file: str, previous: Observation | None = None, on_stage=None) -> Lookup:
        """
        Extract, identify and validate one image without saving it.

        Returns Lookup.available(Observation), or Lookup.unavailable when the
        model reply could not be parsed. Raises FileNotFoundError for a missing
        image and ObservationRejected when mandatory fields are missing.
        """
        def enter(stage: Stage):
            log.debug("%s: %s", image_file, stage.value)
            if on_stage is not None:
                on_stage(stage)

        path = resolve_image_path(self.images_dir, image_file)
        if path is None:
            raise FileNotFoundError(os.path.join(self.images_dir, image_file))

        enter(Stage.EXTRACTING)
        metadata = self.extract(path, user_agent=self.user_agent, use_file_mtime=self.use_file_mtime)

        enter(Stage.IDENTIFYING)
        with open(path, "rb") as f:
            image_bytes = f.read()
        result = self.identify(image_bytes, image_file, mime_type_for(image_file), info_card=self.info_cards)
        if not result.ok:
            return result

        enter(Stage.VALIDATING)
        missing = missing_required_fields(result.value)
        if missing:
            raise ObservationRejected(image_file, missing)

        weather = self._weather_for(metadata)
        if not weather.ok:
            log.debug("%s: no weather (%s)", image_file, weather.reason)
        observation = build_observation(image_file, result.value, metadata, weather.value, previous)
        return Lookup.available(observation)

    def process_image(self, image_file: str, previous: Observation | None = None) -> ItemOutcome:
        """Analyze and save one image. Never raises, except for a corrupted store."""
        stage = Stage.PENDING

        def track(new_stage: Stage):
            nonlocal stage
            stage = new_stage

        try:
            result = self.analyze(image_file, previous, on_stage=track)
            if not result.ok:
                log.warning("Skipped (%s): %s", result.reason, image_file)
                return ItemOutcome(image_file, "skipped", stage, result.reason)
            track(Stage.SAVING)
            self.store.upsert(result.value)
        except StoreCorruptedError:
            raise
        except ObservationRejected as e:
            log.warning("Skipped (invalid result): %s", e)
            return ItemOutcome(image_file, "skipped", stage, str(e))
        except Exception as e:
            log.exception("Error analyzing %s during %s", image_file, stage.value)
            return ItemOutcome(image_file, "failed", Stage.FAILED, f"{stage.value}: {e}")

        obs = result.value
        where = f" (Location: {obs.location})" if obs.location_data else ""
        log.info("Done: %s%s", image_file, where)
        return ItemOutcome(image_file, "saved", Stage.DONE)

    def run(self, on_progress=None) -> BatchReport:
        """Process every pending image in sorted order; on_progress receives BatchProgress."""
        pending = self.pending_images()
        report = BatchReport(total=len(pending))
        log.info("Analyzing %d images", report.total)
        for i, image_file in enumerate(pending, start=1):
            if on_progress is not None:
                on_progress(BatchProgress(current=i, total=report.total))
            report.outcomes.append(self.process_image(image_file))
        log.info(
            "Batch finished: %d saved, %d skipped, %d failed",
            len(report.saved), len(report.skipped), len(report.failed),
        )
        return report

    def reprocess(self, image_file: str) -> ItemOutcome:
        """Re-analyze a stored image, keeping its location/date/weather when the new analysis lacks them."""
        return self.process_image(image_file, previous=self.store.get(image_file))


def build_orchestrator(config: dict | None = None, **overrides) -> BatchOrchestrator:
    """Orchestrator wired to the configured store, images folder and options."""
    config = config or pipeline_config()
    options = {
        "info_cards": config["info_cards"],
        "with_weather": config["fetch_weather"],
        "use_file_mtime": config.get("file_mtime", True),
        "user_agent": config["user_agent"],
    }
    options.update(overrides)
    return BatchOrchestrator(JsonObservationStore(config["data_file"]), config["images_dir"], **options)


# ── Command line ─────────────────────────────────────────────────────────────

def _parse_args(argv):
    parser = argparse.ArgumentParser(
        prog="field-notes-batch",
        description="Identify unprocessed mushroom photos and add them to the field notes.",
    )
    parser.add_argument("--reprocess", metavar="FILE", help="re-analyze one stored image")
    parser.add_argument("--no-info-cards", action="store_true", help="skip info card generation")
    parser.add_argument("--no-weather", action="store_true", help="skip historical weather lookups")
    parser.add_argument("-v", "--verbose", action="store_true", help="log every pipeline stage")
    return parser.parse_args(argv)


def main(argv=None) -> int:
    args = _parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    try:
        require_api_key()
    except ConfigurationError as e:
        print(f"Missing configuration: {e}", file=sys.stderr)
        return 1

    config = pipeline_config()
    overrides = {}
    if args.no_info_cards:
        overrides["info_cards"] = False
    if args.no_weather:
        overrides["with_weather"] = False
    orchestrator = build_orchestrator(config, **overrides)

    try:
        if args.reprocess:
            outcome = orchestrator.reprocess(args.reprocess)
            print(f"{outcome.image_file}: {outcome.status} {outcome.detail}".rstrip())
            return 0

        if not os.path.isdir(config["images_dir"]):
            print(f"Images directory not found: {config['images_dir']}", file=sys.stderr)
            return 1
        report = orchestrator.run(
            on_progress=lambda p: print(f"[{p.current}/{p.total}] processing...")
        )
    except StoreCorruptedError as e:
        print(str(e), file=sys.stderr)
        return 1

    print(
        f"\nSaved {len(report.saved)} of {report.total} images to {config['data_file']} "
        f"({len(report.skipped)} skipped, {len(report.failed)} failed)."
    )
    return 0


if __name__ == "__main__":
    sys.exit(main())
