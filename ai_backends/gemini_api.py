"""
AI backend: Google Gemini
Text identification via generate_content (JSON response mime type) and
info-card illustration via an image-output model.
Requires GEMINI_API_KEY in environment.
"""
import json

from google import genai
from google.genai import types

from site_config import require_api_key

DEFAULT_MODEL       = "gemini-2.5-flash"
DEFAULT_IMAGE_MODEL = "gemini-2.5-flash-image"


def _client() -> genai.Client:
    return genai.Client(api_key=require_api_key())


def _quota_error(e: Exception) -> RuntimeError | None:
    """Readable error for 429 / RESOURCE_EXHAUSTED responses, else None."""
    msg = str(e)
    if "429" not in msg and "RESOURCE_EXHAUSTED" not in msg:
        return None
    retry = ""
    try:
        data = json.loads(msg[msg.index("{"):])
        for d in data.get("error", {}).get("details", []):
            if d.get("@type", "").endswith("RetryInfo"):
                retry = f" Retry after: {d['retryDelay']}."
    except (ValueError, AttributeError, KeyError):
        pass
    return RuntimeError(f"Gemini API quota exceeded.{retry} Wait and try again.")


def call(image_bytes: bytes, mime_type: str, prompt: str, model: str | None = None) -> str:
    """Send an image + prompt to Gemini and return the raw response text.

    Args:
        image_bytes: Encoded image file contents.
        mime_type:   Declared MIME type of image_bytes (e.g. "image/jpeg").
        prompt:      Instruction text sent before the image.
        model:       Model name; defaults to DEFAULT_MODEL.

    Returns:
        The response text, unparsed.
    """
    client = _client()
    try:
        response = client.models.generate_content(
            model=model or DEFAULT_MODEL,
            contents=[
                prompt,
                types.Part.from_bytes(data=image_bytes, mime_type=mime_type),
            ],
            config=types.GenerateContentConfig(
                response_mime_type="application/json",
                max_output_tokens=8192,
            ),
        )
    except Exception as e:
        quota = _quota_error(e)
        if quota is not None:
            raise quota from e
        raise
    return response.text or ""


def generate_image(prompt: str, model: str | None = None) -> bytes | None:
    """Render an illustration for prompt; returns the first inline image's bytes or None."""
    client = _client()
    try:
        response = client.models.generate_content(
            model=model or DEFAULT_IMAGE_MODEL,
            contents=prompt,
            config=types.GenerateContentConfig(
                response_modalities=["IMAGE"],
                image_config=types.ImageConfig(aspect_ratio="4:3"),
            ),
        )
    except Exception as e:
        quota = _quota_error(e)
        if quota is not None:
            raise quota from e
        raise

    for candidate in response.candidates or []:
        content = candidate.content
        for part in (content.parts if content else None) or []:
            if part.inline_data and part.inline_data.data:
                return part.inline_data.data
    return None
