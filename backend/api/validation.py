import re
import html
import uuid
from typing import Any, Dict, List, Optional
from .logging_config import ValidationError

# Input size limits
MAX_TEXT_LENGTH = 2000
MAX_NAME_LENGTH = 200
MAX_INVENTORY_ITEMS = 200
MAX_EXISTING_RECIPES = 50
MAX_AUDIO_BYTES = 25 * 1024 * 1024  # Whisper upload limit
MIN_AUDIO_BYTES = 1024
MAX_WEIGHT_KG = 500  # Reasonable upper limit
MIN_WEIGHT_KG = 20   # Reasonable lower limit
MAX_FASTING_HOURS = 168

AUDIO_CONTENT_TYPES = {
    "audio/webm", "audio/ogg", "audio/mpeg", "audio/mp3", "audio/mp4", "audio/m4a",
    "audio/x-m4a", "audio/wav", "audio/x-wav", "audio/wave", "audio/flac", "video/webm",
    "application/octet-stream",
}
LANGUAGE_PATTERN = re.compile(r"^[a-z]{2}$")


def sanitize_text(text: str, max_length: int = MAX_TEXT_LENGTH) -> str:
    """Sanitize text input by removing HTML and limiting length"""
    if not isinstance(text, str):
        raise ValidationError("Input must be a string")

    clean_text = html.escape(text.strip())

    # Remove control characters except newlines and tabs
    clean_text = re.sub(r'[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]', '', clean_text)

    if len(clean_text) > max_length:
        raise ValidationError(f"Text exceeds maximum length of {max_length} characters")

    return clean_text


def validate_uuid(value: str, field: str = "id") -> str:
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(f"{field} is required", field)
    try:
        return str(uuid.UUID(value.strip()))
    except ValueError:
        raise ValidationError(f"{field} must be a valid UUID", field)


def validate_weight(weight_kg: float) -> float:
    """Validate weight measurement"""
    if isinstance(weight_kg, bool) or not isinstance(weight_kg, (int, float)):
        raise ValidationError("Weight must be a number", "new_weight_kg")

    weight_kg = float(weight_kg)

    if weight_kg < MIN_WEIGHT_KG:
        raise ValidationError(f"Weight too low (minimum {MIN_WEIGHT_KG} kg)", "new_weight_kg")

    if weight_kg > MAX_WEIGHT_KG:
        raise ValidationError(f"Weight too high (maximum {MAX_WEIGHT_KG} kg)", "new_weight_kg")

    return round(weight_kg, 1)


def validate_audio_upload(size: int, content_type: Optional[str]) -> int:
    """Reject uploads Whisper would refuse or that cannot hold speech"""
    if size > MAX_AUDIO_BYTES:
        raise ValidationError("Audio file too large (max 25MB)", "audio")
    if size < MIN_AUDIO_BYTES:
        raise ValidationError("Audio file too small", "audio")
    if content_type:
        base_type = content_type.split(";")[0].strip().lower()
        if base_type not in AUDIO_CONTENT_TYPES:
            raise ValidationError(f"Unsupported audio type: {base_type}", "audio")
    return size


def validate_language(language: Optional[str]) -> Optional[str]:
    if language is None:
        return None
    language = language.strip().lower()
    if not LANGUAGE_PATTERN.match(language):
        raise ValidationError("Language must be a two-letter ISO-639-1 code", "language")
    return language


def validate_inventory(items: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Validate the fridge inventory sent for recipe generation"""
    if not isinstance(items, list) or len(items) == 0:
        raise ValidationError("inventory_final is required and must be a non-empty array", "inventory_final")

    if len(items) > MAX_INVENTORY_ITEMS:
        raise ValidationError(f"Too many inventory items (maximum {MAX_INVENTORY_ITEMS})", "inventory_final")

    validated = []
    for i, item in enumerate(items):
        name = (item.get("name") or "").strip()
        if not name:
            raise ValidationError(f"Inventory item {i + 1} is missing a name", "inventory_final")
        validated.append({
            "name": sanitize_text(name, MAX_NAME_LENGTH),
            "quantity": sanitize_text(str(item["quantity"]), 50) if item.get("quantity") else None,
            "category": item.get("category"),
        })
    return validated


def validate_existing_recipes(recipes: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    if len(recipes) > MAX_EXISTING_RECIPES:
        raise ValidationError(f"Too many existing recipes (maximum {MAX_EXISTING_RECIPES})", "existing_recipes")
    return recipes


def validate_fasting_duration(duration_hours: float, target_hours: float) -> tuple:
    """Validate a completed fasting session"""
    for name, value in [("duration_hours", duration_hours), ("target_hours", target_hours)]:
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise ValidationError(f"{name} must be a number", name)
        if value < 0:
            raise ValidationError(f"{name} cannot be negative", name)
        if value > MAX_FASTING_HOURS:
            raise ValidationError(f"{name} too long (maximum {MAX_FASTING_HOURS} hours)", name)

    if target_hours == 0:
        raise ValidationError("target_hours must be positive", "target_hours")

    return float(duration_hours), float(target_hours)
