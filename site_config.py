"""
Centralized site and pipeline configuration.

SITE_CONFIG holds the static text shown on every page.
pipeline_config() merges the defaults below with environment variables
(read from .env via python-dotenv) so edits apply without a restart.
"""
import os

from dotenv import load_dotenv

from errors import ConfigurationError

APP_ROOT = os.path.dirname(os.path.abspath(__file__))

SITE_CONFIG = {
    "title": "Mushroom Field Notes",
    "eyebrow": "FIELD NOTE ATLAS",
    "tagline": (
        "A locally generated field guide built from your own photographs, "
        "enriched with identifications from Gemini. Never forage based solely "
        "on this tool; always confirm with a human expert."
    ),
    # Shown in the "how to update" box on the gallery page
    "update_hint": "Add new photos to the images folder, then run field-notes-batch.",
    "footer_author": "Mushroom Field Notes",
}

# ── Pipeline defaults (each overridable through the environment) ─────────────
_DEFAULTS = {
    "ai_provider":   "gemini_api",
    "model":         "gemini-2.5-flash",
    "image_model":   "gemini-2.5-flash-image",
    "images_dir":    "static/images",
    "data_file":     "data/mushrooms.json",
    "info_cards":    True,
    "fetch_weather": True,
    "file_mtime":    True,
    "user_agent":    "MushroomFieldNotes/1.0",
}

_ENV_KEYS = {
    "ai_provider":   "AI_PROVIDER",
    "model":         "GEMINI_MODEL",
    "image_model":   "GEMINI_IMAGE_MODEL",
    "images_dir":    "FIELD_NOTES_IMAGES_DIR",
    "data_file":     "FIELD_NOTES_DATA_FILE",
    "info_cards":    "FIELD_NOTES_INFO_CARDS",
    "fetch_weather": "FIELD_NOTES_WEATHER",
    "file_mtime":    "FIELD_NOTES_FILE_MTIME",
    "user_agent":    "FIELD_NOTES_USER_AGENT",
}

_FALSE_VALUES = {"0", "false", "no", "off"}


def _resolve(path: str) -> str:
    return path if os.path.isabs(path) else os.path.join(APP_ROOT, path)


def pipeline_config() -> dict:
    """Return the effective pipeline settings as a plain dict."""
    load_dotenv(override=True)
    config = dict(_DEFAULTS)
    for key, env_name in _ENV_KEYS.items():
        raw = os.environ.get(env_name)
        if raw is None or raw == "":
            continue
        if isinstance(_DEFAULTS[key], bool):
            config[key] = raw.strip().lower() not in _FALSE_VALUES
        else:
            config[key] = raw
    config["images_dir"] = _resolve(config["images_dir"])
    config["data_file"] = _resolve(config["data_file"])
    return config


def require_api_key() -> str:
    """Return GEMINI_API_KEY or raise ConfigurationError if it is not set."""
    load_dotenv(override=True)
    api_key = os.environ.get("GEMINI_API_KEY")
    if not api_key:
        raise ConfigurationError(
            "GEMINI_API_KEY is not set. Copy .env.example to .env and add your key."
        )
    return api_key
