"""
AI client dispatcher.
Selects the active backend based on the AI_PROVIDER environment variable
and delegates all calls to it.

Supported backends (ai_backends/<name>.py, each must expose call() and generate_image()):
  gemini_api: Google Gemini via google-genai SDK (default)

To add a new backend:
  1. Create ai_backends/my_provider.py with call() and generate_image()
     functions matching the signatures below.
  2. Set AI_PROVIDER=my_provider in .env.
"""
import importlib

from errors import ConfigurationError
from site_config import pipeline_config


def _backend():
    provider = pipeline_config()["ai_provider"]
    try:
        return importlib.import_module(f"ai_backends.{provider}")
    except ModuleNotFoundError as e:
        raise ConfigurationError(
            f"AI backend '{provider}' not found. "
            f"Create ai_backends/{provider}.py or change AI_PROVIDER in .env."
        ) from e


def call_ai(image_bytes: bytes, mime_type: str, prompt: str) -> str:
    """Send image bytes + prompt to the active backend and return the raw response text."""
    return _backend().call(image_bytes, mime_type, prompt, model=pipeline_config()["model"])


def generate_image(prompt: str) -> bytes | None:
    """Ask the active backend for an illustration; returns image bytes or None."""
    return _backend().generate_image(prompt, model=pipeline_config()["image_model"])
