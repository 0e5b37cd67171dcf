"""
Mushroom identification through the active AI backend.

identify_mushroom() sends the photo with a fixed instruction that spells out
the expected JSON shape and returns Lookup.available(dict) with the parsed
fields, or Lookup.unavailable(...) when the reply is not a JSON object
(the raw text is kept in Lookup.detail for logging only).

A second, independent call can render an illustrated field-guide card from the
identified fields; if it fails the identification is returned without a card.
"""
import base64
import json
import logging

from ai_client import call_ai, generate_image
from image_files import mime_type_for
from lookup import Lookup

log = logging.getLogger(__name__)

RAW_SNIPPET_CHARS = 2000

REQUIRED_FIELDS = ("scientificName", "commonName", "keyFeatures")


def build_instruction(file_name: str) -> str:
    return (
        "You are a cautious but helpful mushroom identification assistant.\n\n"
        "You are analyzing a photograph of a wild mushroom. Use ONLY what is visible in the photo.\n"
        "If you are not reasonably confident, choose a higher-level group "
        "(e.g. \"Amanita species\") rather than an exact species.\n\n"
        "Return STRICTLY one JSON object with these fields:\n"
        "- imageFile: string\n"
        "- scientificName: string\n"
        "- commonName: string\n"
        "- confidence: integer 0-100\n"
        "- edibility: one of \"Unknown\", \"Edible\", \"Edible with Caution\", "
        "\"Inedible\", \"Toxic\", \"Psychoactive\"\n"
        "- warning: string; always include a strong foraging safety disclaimer\n"
        "- keyFeatures: object with string fields cap, gillsOrPores, stipe, "
        "sporePrintColor, other\n"
        "- ecologicalRole: one of \"Unknown\", \"Saprotrophic\", \"Mycorrhizal\", \"Parasitic\"\n"
        "- habitatNotes: string\n"
        "- funFact: string\n"
        "- cookingOrUsage: string\n"
        "- location: string\n\n"
        "Rules:\n"
        "- confidence must be an integer between 0 and 100.\n"
        "- Do NOT wrap the JSON in backticks or a code block.\n"
        "- Do NOT add any commentary outside the JSON.\n"
        "- If you are unsure about edibility, set edibility to \"Unknown\" and include a strong warning.\n"
        "- Set location to \"Unknown\" if not provided.\n"
        f"- Use this exact image file name in the \"imageFile\" field: \"{file_name}\".\n"
    )


def strip_code_fences(text: str) -> str:
    """Remove a leading ```/```json line and a trailing ``` from a model reply."""
    text = (text or "").strip()
    if text.startswith("```"):
        first_newline = text.find("\n")
        text = text[first_newline + 1:] if first_newline != -1 else text[3:]
        if text.lower().startswith("json"):
            text = text[4:]
    if text.endswith("```"):
        text = text[:-3]
    return text.strip()


def parse_identification(text: str) -> Lookup:
    """Parse the model reply into a dict; unparseable replies become Lookup.unavailable."""
    cleaned = strip_code_fences(text)
    try:
        parsed = json.loads(cleaned)
    except json.JSONDecodeError as e:
        return Lookup.unavailable(f"response is not valid JSON ({e.msg})", text[:RAW_SNIPPET_CHARS])
    if not isinstance(parsed, dict):
        return Lookup.unavailable("response is not a JSON object", text[:RAW_SNIPPET_CHARS])
    return Lookup.available(parsed)


def missing_required_fields(identification: dict) -> list[str]:
    """Names of mandatory fields that are absent or empty."""
    return [name for name in REQUIRED_FIELDS if not identification.get(name)]


def build_info_card_prompt(ident: dict) -> str:
    features = ident.get("keyFeatures") or {}
    return (
        f"Create a beautiful, informative field guide card for the mushroom "
        f"\"{ident.get('commonName') or ''}\" ({ident.get('scientificName') or ''}).\n\n"
        "The card should be designed in a 4:3 aspect ratio (landscape orientation) "
        "with a field guide aesthetic. Include:\n\n"
        "1. Header: the common name as a large elegant title, the scientific name in italics below\n"
        "2. Key characteristics:\n"
        f"   - Cap: {features.get('cap') or ''}\n"
        f"   - Gills/Pores: {features.get('gillsOrPores') or ''}\n"
        f"   - Stipe (stem): {features.get('stipe') or ''}\n"
        f"   - Spore print: {features.get('sporePrintColor') or ''}\n"
        "3. Ecological information:\n"
        f"   - Ecological role: {ident.get('ecologicalRole') or 'Unknown'}\n"
        f"   - Habitat: {ident.get('habitatNotes') or ''}\n"
        f"4. Edibility status: \"{ident.get('edibility') or 'Unknown'}\" with color coding "
        "(red for toxic, green for edible, amber for caution)\n"
        f"5. Interesting fact: {ident.get('funFact') or ''}\n"
        f"6. Safety warning, displayed prominently: \"{ident.get('warning') or ''}\"\n\n"
        "Design: cream/beige aged-paper background, serif headings, clean sans-serif body text, "
        "botanical illustration borders, clear sections. It should look like it belongs "
        "in a professional mycological field guide."
    )


def generate_info_card(ident: dict) -> Lookup:
    """Base64-encoded info card image for an identification, or Lookup.unavailable."""
    try:
        image_bytes = generate_image(build_info_card_prompt(ident))
    except Exception as e:
        log.warning("Info card generation failed for %s: %s", ident.get("imageFile"), e)
        return Lookup.unavailable("info card generation failed", str(e))
    if not image_bytes:
        return Lookup.unavailable("no image data in info card response")
    if isinstance(image_bytes, str):
        return Lookup.available(image_bytes)
    return Lookup.available(base64.b64encode(image_bytes).decode("ascii"))


def identify_mushroom(
    image_bytes: bytes,
    file_name: str,
    mime_type: str | None = None,
    info_card: bool = True,
) -> Lookup:
    """
    Identify the mushroom in image_bytes.

    Returns Lookup.available(dict) with camelCase fields as produced by the
    model (plus infoCardImage when a card was rendered), or
    Lookup.unavailable(reason, raw_text) when the reply could not be parsed.
    Backend errors (network, quota, missing key) propagate.
    """
    text = call_ai(image_bytes, mime_type or mime_type_for(file_name), build_instruction(file_name))
    result = parse_identification(text)
    if not result.ok:
        log.warning("Unparseable identification for %s: %s\n--- RAW RESPONSE ---\n%s",
                    file_name, result.reason, result.detail)
        return result

    ident = result.value
    ident["imageFile"] = file_name
    if info_card and not missing_required_fields(ident):
        card = generate_info_card(ident)
        if card.ok:
            ident["infoCardImage"] = card.value
        else:
            log.info("No info card for %s: %s", file_name, card.reason)
    return Lookup.available(ident)
