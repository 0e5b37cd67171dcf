"""
Tests for batch.py: the sequential orchestrator, the validation gate, the
reprocess merge policy, and the command line entry point.

A failure on one image must never stop the batch, and a rejected or
unparseable result must never reach the store.
"""
import json

import pytest

import batch
from batch import (
    BatchOrchestrator,
    BatchProgress,
    Stage,
    build_observation,
    carry_forward,
    observation_fields,
)
from conftest import (
    FakeExtractor,
    FakeIdentifier,
    FakeWeather,
    gps_metadata,
    identification,
    sample_weather,
)
from errors import StoreCorruptedError
from image_metadata import ImageMetadata
from lookup import Lookup
from observations import LocationData, Observation


def make_orchestrator(store, images_dir, identify=None, extract=None, weather=None, **kwargs):
    return BatchOrchestrator(
        store,
        str(images_dir),
        identify=identify or FakeIdentifier(),
        extract=extract or FakeExtractor(),
        lookup_weather=weather or FakeWeather(),
        **kwargs,
    )


class TestRecordAssembly:

    def test_no_gps_and_no_model_location_is_unknown(self):
        record = build_observation("a.jpg", identification(location="Unknown"), ImageMetadata())
        assert record.location == "Unknown"
        assert record.location_data is None
        assert record.observation_date is None

    def test_model_location_used_without_gps(self):
        record = build_observation("a.jpg", identification(location="Forest edge"), ImageMetadata())
        assert record.location == "Forest edge"

    def test_gps_location_overrides_model_location(self):
        record = build_observation("a.jpg", identification(location="Forest edge"), gps_metadata())
        assert record.location == "Tiergarten, Berlin, Germany"
        assert record.location_data.lat == pytest.approx(52.520008)
        assert record.location_data.formatted_location == "Tiergarten, Berlin, Germany"

    def test_coordinates_when_geocoding_failed(self):
        metadata = gps_metadata()
        metadata.address = None
        record = build_observation("a.jpg", identification(), metadata)
        assert record.location == "52.520008, 13.404954"
        assert record.location_data.address == "52.520008, 13.404954"

    def test_date_and_time_from_capture_time(self):
        record = build_observation("a.jpg", identification(), gps_metadata())
        assert record.observation_date == "2024-09-14"
        assert record.observation_time == "2024-09-14T08:30:00.000Z"

    def test_weather_attached(self):
        record = build_observation("a.jpg", identification(), gps_metadata(), sample_weather())
        assert record.weather.condition == "Overcast"


class TestMergePolicy:

    def previous(self):
        return Observation(
            image_file="a.jpg",
            common_name="Old name",
            habitat_notes="Old habitat",
            location_data=LocationData(address="Grunewald, Berlin", lat=52.48, lng=13.26),
            observation_date="2023-10-01",
            observation_time="2023-10-01T09:15:00.000Z",
            weather=sample_weather(),
        )

    def test_absent_fields_carried_forward(self):
        record = build_observation("a.jpg", identification(), ImageMetadata(), previous=self.previous())
        assert record.location_data.address == "Grunewald, Berlin"
        assert record.location == "Grunewald, Berlin"
        assert record.observation_date == "2023-10-01"
        assert record.observation_time == "2023-10-01T09:15:00.000Z"
        assert record.weather == sample_weather()

    def test_descriptive_fields_fully_replaced(self):
        fresh = identification(habitatNotes="", commonName="Fly Agaric")
        record = build_observation("a.jpg", fresh, ImageMetadata(), previous=self.previous())
        assert record.common_name == "Fly Agaric"
        assert record.habitat_notes == ""

    def test_fresh_values_win(self):
        record = build_observation("a.jpg", identification(), gps_metadata(), previous=self.previous())
        assert record.location == "Tiergarten, Berlin, Germany"
        assert record.observation_date == "2024-09-14"

    def test_only_none_counts_as_absent(self):
        fresh = {"imageFile": "a.jpg", "observationDate": "", "weather": None}
        merged = carry_forward(fresh, self.previous())
        assert merged["observationDate"] == ""
        assert merged["weather"]["condition"] == "Overcast"

    def test_fields_are_none_when_analysis_lacks_them(self):
        fields = observation_fields("a.jpg", identification(), ImageMetadata())
        assert fields["locationData"] is None
        assert fields["location"] is None
        assert fields["weather"] is None


class TestRun:

    def test_saves_every_pending_image_in_order(self, store, images_dir, add_images):
        add_images("b.jpg", "a.jpg", "c.JPG", "notes.txt")
        identify = FakeIdentifier()
        report = make_orchestrator(store, images_dir, identify=identify).run()
        assert identify.calls == ["a.jpg", "b.jpg", "c.JPG"]
        assert report.saved == ["a.jpg", "b.jpg", "c.JPG"]
        assert [o.image_file for o in store.read_all()] == ["a.jpg", "b.jpg", "c.JPG"]

    def test_already_stored_images_are_not_reanalyzed(self, store, images_dir, add_images):
        add_images("a.jpg", "b.jpg")
        store.upsert(Observation(image_file="a.jpg"))
        identify = FakeIdentifier()
        make_orchestrator(store, images_dir, identify=identify).run()
        assert identify.calls == ["b.jpg"]

    def test_progress_reports_current_and_total(self, store, images_dir, add_images):
        add_images("a.jpg", "b.jpg", "c.jpg")
        seen = []
        make_orchestrator(store, images_dir).run(on_progress=seen.append)
        assert seen == [BatchProgress(1, 3), BatchProgress(2, 3), BatchProgress(3, 3)]

    def test_exception_on_one_image_does_not_stop_the_batch(self, store, images_dir, add_images):
        add_images("a.jpg", "b.jpg", "c.jpg")
        identify = FakeIdentifier(replies={"b.jpg": RuntimeError("model timeout")})
        report = make_orchestrator(store, images_dir, identify=identify).run()
        assert report.saved == ["a.jpg", "c.jpg"]
        assert report.failed == ["b.jpg"]
        failed = report.outcomes[1]
        assert failed.stage is Stage.FAILED
        assert failed.detail.startswith("identifying")
        assert store.unprocessed(["a.jpg", "b.jpg", "c.jpg"]) == ["b.jpg"]

    def test_incomplete_result_is_rejected_and_left_pending(self, store, images_dir, add_images):
        add_images("a.jpg", "b.jpg")
        incomplete = identification("a.jpg")
        del incomplete["keyFeatures"]
        identify = FakeIdentifier(replies={"a.jpg": incomplete})
        report = make_orchestrator(store, images_dir, identify=identify).run()
        assert report.skipped == ["a.jpg"]
        assert report.outcomes[0].stage is Stage.VALIDATING
        assert "keyFeatures" in report.outcomes[0].detail
        assert [o.image_file for o in store.read_all()] == ["b.jpg"]

    def test_null_optional_text_fields_are_saved_blank(self, store, images_dir, add_images):
        add_images("a.jpg")
        reply = identification("a.jpg", cookingOrUsage=None, funFact=None)
        reply["keyFeatures"]["cap"] = None
        identify = FakeIdentifier(replies={"a.jpg": reply})
        report = make_orchestrator(store, images_dir, identify=identify).run()
        assert report.saved == ["a.jpg"]
        stored = store.get("a.jpg")
        assert stored.fun_fact == "" and stored.cooking_or_usage == ""
        assert stored.key_features.cap == ""
        assert stored.key_features.stipe == "White with a ring and bulbous base"

    def test_unparseable_reply_is_skipped(self, store, images_dir, add_images):
        add_images("a.jpg")
        identify = FakeIdentifier(replies={"a.jpg": Lookup.unavailable("response is not valid JSON", "oops")})
        report = make_orchestrator(store, images_dir, identify=identify).run()
        assert report.skipped == ["a.jpg"]
        assert report.outcomes[0].stage is Stage.IDENTIFYING
        assert store.read_all() == []

    def test_weather_fetched_when_gps_and_time_known(self, store, images_dir, add_images):
        add_images("a.jpg", "b.jpg")
        weather = FakeWeather()
        extract = FakeExtractor(by_file={"a.jpg": gps_metadata()})
        make_orchestrator(store, images_dir, extract=extract, weather=weather).run()
        assert len(weather.calls) == 1
        stored = store.get("a.jpg")
        assert stored.weather.condition == "Overcast"
        assert store.get("b.jpg").weather is None
        assert store.get("b.jpg").location == "Unknown"

    def test_weather_failure_only_omits_weather(self, store, images_dir, add_images):
        add_images("a.jpg")
        extract = FakeExtractor(by_file={"a.jpg": gps_metadata()})
        weather = FakeWeather(result=Lookup.unavailable("archive down"))
        report = make_orchestrator(store, images_dir, extract=extract, weather=weather).run()
        assert report.saved == ["a.jpg"]
        assert store.get("a.jpg").weather is None

    def test_weather_can_be_disabled(self, store, images_dir, add_images):
        add_images("a.jpg")
        weather = FakeWeather()
        extract = FakeExtractor(by_file={"a.jpg": gps_metadata()})
        make_orchestrator(store, images_dir, extract=extract, weather=weather, with_weather=False).run()
        assert weather.calls == []

    def test_file_mtime_fallback_is_on_by_default(self, store, images_dir, add_images):
        add_images("a.jpg")
        extract = FakeExtractor()
        make_orchestrator(store, images_dir, extract=extract).run()
        assert extract.options[0]["use_file_mtime"] is True

    def test_file_mtime_fallback_can_be_disabled(self, store, images_dir, add_images):
        add_images("a.jpg")
        extract = FakeExtractor()
        make_orchestrator(store, images_dir, extract=extract, use_file_mtime=False).run()
        assert extract.options[0]["use_file_mtime"] is False

    def test_build_orchestrator_reads_file_mtime_setting(self, store_path, images_dir):
        config = {
            "images_dir": str(images_dir),
            "data_file": str(store_path),
            "info_cards": True,
            "fetch_weather": True,
            "file_mtime": False,
            "user_agent": "Test/1.0",
        }
        assert batch.build_orchestrator(config).use_file_mtime is False

    def test_corrupted_store_aborts(self, store, store_path, images_dir, add_images):
        add_images("a.jpg")
        store_path.parent.mkdir(parents=True)
        store_path.write_text("{", encoding="utf-8")
        with pytest.raises(StoreCorruptedError):
            make_orchestrator(store, images_dir).run()

    def test_missing_images_folder_means_nothing_to_do(self, store, tmp_path):
        report = make_orchestrator(store, tmp_path / "absent").run()
        assert report.total == 0


class TestReprocess:

    def test_reprocess_keeps_location_and_replaces_taxonomy(self, store, images_dir, add_images):
        add_images("a.jpg")
        store.upsert(Observation(
            image_file="a.jpg",
            common_name="Old",
            location_data=LocationData(address="Grunewald, Berlin", lat=52.48, lng=13.26),
            observation_date="2023-10-01",
        ))
        store.upsert(Observation(image_file="z.jpg"))
        outcome = make_orchestrator(store, images_dir).reprocess("a.jpg")
        assert outcome.status == "saved"
        records = store.read_all()
        assert [o.image_file for o in records] == ["a.jpg", "z.jpg"]
        assert records[0].common_name == "Fly Agaric"
        assert records[0].location == "Grunewald, Berlin"
        assert records[0].observation_date == "2023-10-01"

    def test_reprocess_missing_image_fails_cleanly(self, store, images_dir):
        outcome = make_orchestrator(store, images_dir).reprocess("gone.jpg")
        assert outcome.status == "failed"


class TestCommandLine:

    def test_missing_api_key_exits_with_error(self, monkeypatch, capsys):
        monkeypatch.setattr(batch, "require_api_key", _raise_config_error)
        assert batch.main([]) == 1
        assert "GEMINI_API_KEY" in capsys.readouterr().err

    def test_runs_batch_with_configured_paths(self, monkeypatch, tmp_path, images_dir, add_images, capsys):
        add_images("a.jpg")
        data_file = tmp_path / "out" / "mushrooms.json"
        config = {
            "images_dir": str(images_dir),
            "data_file": str(data_file),
            "info_cards": True,
            "fetch_weather": True,
            "user_agent": "Test/1.0",
        }
        monkeypatch.setattr(batch, "require_api_key", lambda: "key")
        monkeypatch.setattr(batch, "pipeline_config", lambda: dict(config))
        monkeypatch.setattr(
            batch, "build_orchestrator",
            lambda cfg, **overrides: make_orchestrator(
                batch.JsonObservationStore(cfg["data_file"]), cfg["images_dir"], **overrides
            ),
        )
        assert batch.main(["--no-info-cards"]) == 0
        assert json.loads(data_file.read_text(encoding="utf-8"))[0]["imageFile"] == "a.jpg"
        assert "[1/1]" in capsys.readouterr().out


def _raise_config_error():
    from errors import ConfigurationError
    raise ConfigurationError("GEMINI_API_KEY is not set.")
