from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any


# Maximum order total: 99,999,999.99 in major units
MAX_AMOUNT_CENTS = 9_999_999_999
MAX_ITEMS_PER_ORDER = 200

_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


class ValidationError(ValueError):
    """400-level input problem."""

    code = "validation_error"


@dataclass(frozen=True)
class ItemInput:
    product_ref: str
    name: str
    quantity: int
    unit_price_cents: int


@dataclass(frozen=True)
class ShippingInput:
    full_name: str
    email: str
    phone: str
    address: str
    city: str
    region: str | None = None
    delivery_location: str | None = None


def _require_str(data: dict, key: str, *, label: str | None = None, max_len: int = 255) -> str:
    value = data.get(key)
    if value is None or (isinstance(value, str) and not value.strip()):
        raise ValidationError(f"{label or key} is required")
    if not isinstance(value, (str, int)) or isinstance(value, bool):
        raise ValidationError(f"{label or key} must be a string")
    value = str(value).strip()
    if len(value) > max_len:
        raise ValidationError(f"{label or key} must be at most {max_len} characters")
    return value


def _optional_str(data: dict, key: str, max_len: int = 255) -> str | None:
    value = data.get(key)
    if value is None or (isinstance(value, str) and not value.strip()):
        return None
    return _require_str(data, key, max_len=max_len)


def optional_text(value: Any, field: str, max_len: int = 1000) -> str | None:
    """Strip a free-text field; None for missing or blank, ValidationError for non-strings."""
    if value is None:
        return None
    if not isinstance(value, str):
        raise ValidationError(f"{field} must be a string")
    value = value.strip()
    if len(value) > max_len:
        raise ValidationError(f"{field} must be at most {max_len} characters")
    return value or None


def coerce_int(value: Any, field: str, *, minimum: int | None = None) -> int:
    """
    Strict integer coercion: rejects bools, floats, decimals and scientific notation.
    """
    if isinstance(value, bool):
        raise ValidationError(f"{field} must be an integer")
    if isinstance(value, int):
        result = value
    elif isinstance(value, str):
        stripped = value.strip()
        if not stripped or "e" in stripped.lower() or "." in stripped:
            raise ValidationError(f"{field} must be a plain integer")
        try:
            result = int(stripped)
        except ValueError:
            raise ValidationError(f"{field} must be an integer")
    else:
        raise ValidationError(f"{field} must be an integer")

    if minimum is not None and result < minimum:
        raise ValidationError(f"{field} must be >= {minimum}")
    return result


def parse_items(raw_items: Any) -> list[ItemInput]:
    if not isinstance(raw_items, list) or not raw_items:
        raise ValidationError("items must be a non-empty list")
    if len(raw_items) > MAX_ITEMS_PER_ORDER:
        raise ValidationError(f"An order may contain at most {MAX_ITEMS_PER_ORDER} items")

    items = []
    for index, raw in enumerate(raw_items):
        if not isinstance(raw, dict):
            raise ValidationError(f"items[{index}] must be an object")
        items.append(ItemInput(
            product_ref=_require_str(raw, "product_ref", label=f"items[{index}].product_ref", max_len=64),
            name=_require_str(raw, "name", label=f"items[{index}].name"),
            quantity=coerce_int(raw.get("quantity"), f"items[{index}].quantity", minimum=1),
            unit_price_cents=coerce_int(raw.get("unit_price_cents"), f"items[{index}].unit_price_cents", minimum=0),
        ))
    return items


def parse_shipping(raw: Any) -> ShippingInput:
    if not isinstance(raw, dict):
        raise ValidationError("shipping_destination must be an object")

    email = _require_str(raw, "email", label="shipping_destination.email")
    if not _EMAIL_RE.match(email):
        raise ValidationError("shipping_destination.email is not a valid email address")

    return ShippingInput(
        full_name=_require_str(raw, "full_name", label="shipping_destination.full_name"),
        email=email,
        phone=_require_str(raw, "phone", label="shipping_destination.phone", max_len=32),
        address=_require_str(raw, "address", label="shipping_destination.address"),
        city=_require_str(raw, "city", label="shipping_destination.city", max_len=128),
        region=_optional_str(raw, "region", max_len=128),
        delivery_location=_optional_str(raw, "delivery_location"),
    )


def parse_amount_cents(value: Any, field: str = "total_amount_cents") -> int:
    amount = coerce_int(value, field, minimum=0)
    if amount > MAX_AMOUNT_CENTS:
        raise ValidationError(f"{field} exceeds the maximum allowed amount")
    return amount


def normalize_kenyan_phone(phone: str) -> str:
    """
    Normalize a Kenyan phone number to +254 format.

    "0712345678" -> "+254712345678", "254712..." -> "+254712...",
    "712345678" -> "+254712345678". Already-normalized numbers pass through.
    """
    cleaned = re.sub(r"[^\d+]", "", phone or "")
    if not cleaned:
        raise ValidationError("phone is required")
    if cleaned.startswith("+254"):
        return cleaned
    if cleaned.startswith("254"):
        return "+" + cleaned
    if cleaned.startswith("0"):
        return "+254" + cleaned[1:]
    return "+254" + cleaned.lstrip("+")


def require_json_object(data: Any) -> dict:
    if not isinstance(data, dict):
        raise ValidationError("Request body must be a JSON object")
    return data
