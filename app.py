import logging
import os
import traceback
from datetime import datetime, timezone

from flask import Flask, Response, jsonify, render_template, request, send_from_directory
from dotenv import load_dotenv
from pydantic import ValidationError

from batch import build_orchestrator
from errors import ObservationRejected, StoreCorruptedError
from image_files import resolve_image_path
from locations import filter_by_location, group_by_location, short_label
from observations import Observation
from site_config import SITE_CONFIG, pipeline_config
from store import JsonObservationStore
from weather import fetch_weather

load_dotenv()

log = logging.getLogger(__name__)

app = Flask(__name__)
app.config["MAX_CONTENT_LENGTH"] = 16 * 1024 * 1024  # 16 MB (info cards are inline base64)

_config = pipeline_config()
app.config["IMAGES_DIR"] = _config["images_dir"]
app.config["DATA_FILE"]  = _config["data_file"]

# Endpoints that never call the AI backend skip the API-key check
_NO_KEY_ALLOWED = {
    "static", "robots_txt", "index", "image_file",
    "list_images", "list_mushrooms", "save_mushroom", "weather_lookup",
}

ERROR_LOG = "last_error.log"


# ── Inject site config into every template automatically ──────────────────────
@app.context_processor
def inject_globals():
    return {"site": SITE_CONFIG, "short_label": short_label}


@app.before_request
def require_api_key():
    if request.endpoint in _NO_KEY_ALLOWED:
        return None
    if not os.environ.get("GEMINI_API_KEY"):
        if request.path.startswith("/api/"):
            return jsonify({"error": "GEMINI_API_KEY is not set"}), 503
        return render_template("setup.html"), 503
    return None


# ── Helpers ───────────────────────────────────────────────────────────────────

def _log_error(context: str, exc: Exception) -> None:
    """Write the last error with timestamp to last_error.log (no user data)."""
    with open(ERROR_LOG, "w", encoding="utf-8") as f:
        f.write(f"[{datetime.now().isoformat(timespec='seconds')}] {context}\n\n")
        if exc.__traceback__:
            traceback.print_exception(type(exc), exc, exc.__traceback__, file=f)
        else:
            f.write(f"{type(exc).__name__}: {exc}\n")


def _store() -> JsonObservationStore:
    return JsonObservationStore(app.config["DATA_FILE"])


def _orchestrator():
    config = pipeline_config()
    config["images_dir"] = app.config["IMAGES_DIR"]
    config["data_file"] = app.config["DATA_FILE"]
    return build_orchestrator(config)


def _image_file_from_body() -> str | None:
    body = request.get_json(silent=True) or {}
    image_file = body.get("imageFile")
    return image_file if isinstance(image_file, str) and image_file else None


@app.errorhandler(StoreCorruptedError)
def store_corrupted(e):
    _log_error(f"endpoint={request.endpoint}", e)
    log.error("%s", e)
    if request.path.startswith("/api/"):
        return jsonify({"error": str(e)}), 500
    return render_template("error.html", message=str(e)), 500


# ── Pages ─────────────────────────────────────────────────────────────────────

@app.route("/robots.txt")
def robots_txt():
    return Response("User-agent: *\nDisallow: /\n", mimetype="text/plain")


@app.route("/")
def index():
    observations = _store().read_all()
    selected = request.args.get("location") or None
    return render_template(
        "index.html",
        observations=filter_by_location(observations, selected),
        groups=group_by_location(observations),
        selected_location=selected,
        total=len(observations),
    )


@app.route("/images/<path:filename>")
def image_file(filename):
    return send_from_directory(app.config["IMAGES_DIR"], filename)


# ── JSON API ──────────────────────────────────────────────────────────────────

@app.route("/api/images")
def list_images():
    return jsonify(_orchestrator().pending_images())


@app.route("/api/mushrooms", methods=["GET"])
def list_mushrooms():
    return jsonify([o.to_record() for o in _store().read_all()])


@app.route("/api/mushrooms", methods=["POST"])
def save_mushroom():
    body = request.get_json(silent=True)
    if not isinstance(body, dict):
        return jsonify({"error": "Request body must be a JSON object"}), 400
    try:
        observation = Observation.model_validate(body)
    except ValidationError as e:
        details = e.errors(include_url=False, include_context=False, include_input=False)
        return jsonify({"error": "Invalid observation", "details": details}), 400
    saved = _store().upsert(observation)
    return jsonify({"success": True, "observation": saved.to_record()})


@app.route("/api/analyze", methods=["POST"])
def analyze():
    image_file = _image_file_from_body()
    if not image_file:
        return jsonify({"error": "imageFile is required"}), 400
    orchestrator = _orchestrator()
    if resolve_image_path(orchestrator.images_dir, image_file) is None:
        return jsonify({"error": "Image file not found"}), 404

    try:
        result = orchestrator.analyze(image_file, previous=orchestrator.store.get(image_file))
    except ObservationRejected as e:
        return jsonify({"error": str(e), "missing": e.missing}), 422
    except StoreCorruptedError:
        raise
    except Exception as e:
        _log_error(f"analyze imageFile={image_file}", e)
        return jsonify({"error": f"Failed to analyze image: {e}"}), 500

    if not result.ok:
        return jsonify({"error": f"The AI response could not be used: {result.reason}"}), 502
    return jsonify(result.value.to_record())


@app.route("/api/reprocess", methods=["POST"])
def reprocess():
    image_file = _image_file_from_body()
    if not image_file:
        return jsonify({"error": "imageFile is required"}), 400
    orchestrator = _orchestrator()
    if orchestrator.store.get(image_file) is None:
        return jsonify({"error": f"{image_file} has not been analyzed yet"}), 404
    outcome = orchestrator.reprocess(image_file)
    if outcome.status != "saved":
        return jsonify({"error": outcome.detail, **outcome.to_dict()}), 502
    return jsonify({"success": True, "observation": orchestrator.store.get(image_file).to_record()})


@app.route("/api/batch", methods=["POST"])
def run_batch():
    report = _orchestrator().run()
    return jsonify(report.to_dict())


@app.route("/api/weather")
def weather_lookup():
    lat, lng, date = request.args.get("lat"), request.args.get("lng"), request.args.get("date")
    if not lat or not lng or not date:
        return jsonify({"error": "lat, lng, and date are required"}), 400
    try:
        when = datetime.fromisoformat(date.replace("Z", "+00:00"))
        lat_f, lng_f = float(lat), float(lng)
    except ValueError:
        return jsonify({"error": "lat and lng must be numbers and date an ISO 8601 timestamp"}), 400
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)

    result = fetch_weather(lat_f, lng_f, when)
    if not result.ok:
        return jsonify({"error": result.reason}), 502
    return jsonify(result.value.model_dump(by_alias=True, exclude_none=True))


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)
    print("Starting on http://localhost:5000")
    app.run(debug=True, port=5000)
