import pytest
from backend.api.validation import (
    sanitize_text, validate_uuid, validate_weight, validate_audio_upload, validate_language,
    validate_inventory, validate_existing_recipes, validate_fasting_duration, MAX_AUDIO_BYTES
)
from backend.api.logging_config import ValidationError


class TestValidation:
    """Test input validation functions"""

    def test_sanitize_text(self):
        """Test text sanitization"""
        assert sanitize_text("  hello world  ") == "hello world"

        # HTML escaping
        assert sanitize_text("<script>alert('xss')</script>") == "&lt;script&gt;alert(&#x27;xss&#x27;)&lt;/script&gt;"

        # Control character removal
        assert sanitize_text("hello\x00\x01world") == "helloworld"

        with pytest.raises(ValidationError):
            sanitize_text("a" * 3000)

        with pytest.raises(ValidationError):
            sanitize_text(123)

    def test_validate_uuid(self):
        value = "0B6C4C1E-2F1A-4B7E-9C55-6A4A1D2E3F40"
        assert validate_uuid(value) == value.lower()

        with pytest.raises(ValidationError) as exc_info:
            validate_uuid("activity-42", "activity_id")
        assert exc_info.value.field == "activity_id"

        with pytest.raises(ValidationError):
            validate_uuid("  ")

    def test_validate_weight(self):
        """Test weight validation"""
        assert validate_weight(70.5) == 70.5
        assert validate_weight(80) == 80.0
        assert validate_weight(50.123) == 50.1

        with pytest.raises(ValidationError):
            validate_weight(10)

        with pytest.raises(ValidationError):
            validate_weight(600)

        with pytest.raises(ValidationError):
            validate_weight(True)

    def test_validate_audio_upload(self):
        assert validate_audio_upload(4096, "audio/webm;codecs=opus") == 4096
        assert validate_audio_upload(4096, None) == 4096

        with pytest.raises(ValidationError):
            validate_audio_upload(MAX_AUDIO_BYTES + 1, "audio/webm")

        with pytest.raises(ValidationError):
            validate_audio_upload(10, "audio/webm")

        with pytest.raises(ValidationError):
            validate_audio_upload(4096, "image/png")

    def test_validate_language(self):
        assert validate_language(" FR ") == "fr"
        assert validate_language(None) is None

        with pytest.raises(ValidationError):
            validate_language("french")

    def test_validate_inventory(self):
        items = validate_inventory([
            {"name": " Poulet ", "quantity": 2, "category": "protein"},
            {"name": "Riz"},
        ])
        assert items == [
            {"name": "Poulet", "quantity": "2", "category": "protein"},
            {"name": "Riz", "quantity": None, "category": None},
        ]

        with pytest.raises(ValidationError):
            validate_inventory([])

        with pytest.raises(ValidationError):
            validate_inventory([{"name": "  "}])

        with pytest.raises(ValidationError):
            validate_inventory([{"name": "x"}] * 201)

    def test_validate_existing_recipes(self):
        assert validate_existing_recipes([{"title": "Curry"}]) == [{"title": "Curry"}]

        with pytest.raises(ValidationError):
            validate_existing_recipes([{"title": "Curry"}] * 51)

    def test_validate_fasting_duration(self):
        assert validate_fasting_duration(16, 16) == (16.0, 16.0)

        with pytest.raises(ValidationError):
            validate_fasting_duration(-1, 16)

        with pytest.raises(ValidationError):
            validate_fasting_duration(200, 16)

        with pytest.raises(ValidationError):
            validate_fasting_duration(12, 0)
