"""Category/subcategory compatibility matrix for IT officer assessments."""
import logging

from .errors import ValidationError

logger = logging.getLogger("itsm-core.categories")

CATEGORY_SUBCATEGORIES: dict[str, tuple[str, ...]] = {
    "APPLICATION": ("POS APP", "MERCHANT APP", "SWITCH APP"),
    "SERVERS": ("AMEX", "UPI", "DOMAIN", "MCARD", "VISA", "MDLWR"),
    "NETWORK DEVICES": ("DC-SWITCH", "CORE-SW", "EDGE-FW", "DC-FW", "INTERNET-FW"),
    "POS APPLICATION": ("SOFTWARE", "PATCH"),
    "MERCHANT SUPPORT": ("DCC", "PRE-AUTH", "SETTLEMENT"),
}


def get_subcategories(category: str) -> list[str]:
    """Allowed subcategories for `category` (empty for unknown categories)."""
    return list(CATEGORY_SUBCATEGORIES.get(category, ()))


def validate_category_subcategory(category: str, subcategory: str) -> None:
    """
    Validate a category/subcategory pair.

    The category is checked first; the subcategory is only looked at once
    the category is known.

    Raises:
        ValidationError: Unknown category, or subcategory outside the category
    """
    allowed = CATEGORY_SUBCATEGORIES.get(category)
    if allowed is None:
        logger.warning(f"Rejected unknown category {category!r}")
        raise ValidationError(
            f"Invalid category: {category}. "
            f"Valid categories: {', '.join(CATEGORY_SUBCATEGORIES)}."
        )

    if subcategory not in allowed:
        logger.warning(f"Rejected subcategory {subcategory!r} for category {category!r}")
        raise ValidationError(
            f"Invalid subcategory '{subcategory}' for category '{category}'. "
            f"Allowed: {', '.join(allowed)}."
        )
