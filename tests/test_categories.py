"""Tests for the category/subcategory matrix."""
import pytest
from itsm_core.categories import CATEGORY_SUBCATEGORIES, get_subcategories, validate_category_subcategory
from itsm_core.errors import ValidationError


class TestCategoryValidation:
    """Test category/subcategory compatibility."""

    def test_valid_pairs(self):
        """Every listed pair is accepted."""
        for category, subcategories in CATEGORY_SUBCATEGORIES.items():
            for subcategory in subcategories:
                validate_category_subcategory(category, subcategory)  # Should not raise

    def test_subcategory_from_other_category(self):
        """POS APP belongs to APPLICATION, not SERVERS."""
        with pytest.raises(ValidationError) as exc_info:
            validate_category_subcategory("SERVERS", "POS APP")
        assert "POS APP" in exc_info.value.message
        assert "AMEX" in exc_info.value.message

    def test_unknown_category_checked_first(self):
        """An unknown category is reported even if the subcategory is also bogus."""
        with pytest.raises(ValidationError) as exc_info:
            validate_category_subcategory("PRINTERS", "LASER")
        assert "Invalid category" in exc_info.value.message

    def test_get_subcategories(self):
        assert get_subcategories("POS APPLICATION") == ["SOFTWARE", "PATCH"]
        assert get_subcategories("UNKNOWN") == []
