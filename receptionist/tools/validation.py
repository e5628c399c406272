from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any

from ..errors import ArgumentValidationError

_EMAIL_RE = re.compile(
    r"^[a-z0-9!#$%&'*+/=?^_`{|}~-]+(?:\.[a-z0-9!#$%&'*+/=?^_`{|}~-]+)*"
    r"@(?:[a-z0-9](?:[a-z0-9-]*[a-z0-9])?\.)+[a-z0-9](?:[a-z0-9-]*[a-z0-9])?$"
)
_US_ZIP_RE = re.compile(r"^\d{5}(-\d{4})?$")
_INTL_ZIP_RE = re.compile(r"^[a-zA-Z0-9\s-]{3,10}$")
_CONTROL_RE = re.compile(r"[\x00-\x1f\x7f]")
_PRIORITIES = ("urgent", "high", "standard", "low")


def clean_text(value: Any, max_length: int = 500) -> str | None:
    """Strip control characters and runs of whitespace from caller-supplied text."""
    if value is None:
        return None
    text = _CONTROL_RE.sub(" ", str(value))
    text = " ".join(text.split())
    return text[:max_length] or None


def normalize_phone(phone: Any) -> str:
    if not phone or not isinstance(phone, str):
        raise ValueError("Phone number is required")
    cleaned = re.sub(r"[^\d+]", "", phone)
    digits = cleaned.replace("+", "")
    if not 10 <= len(digits) <= 15:
        raise ValueError("Phone number must be 10-15 digits")
    if "+" in cleaned and (not cleaned.startswith("+") or cleaned.count("+") > 1):
        raise ValueError("Invalid phone number format")
    return cleaned if cleaned.startswith("+") else f"+1{digits}"


def _name(value: Any) -> str:
    text = clean_text(value, 255) if isinstance(value, str) else None
    if not text:
        raise ValueError("Name is required")
    if len(text) < 2:
        raise ValueError("Name is too short")
    if not re.search(r"[a-zA-Z]", text):
        raise ValueError("Name must contain letters")
    return text


def _address(value: Any) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ValueError("Address is required")
    text = value.strip()
    if len(text) < 5:
        raise ValueError("Address is too short")
    if len(text) > 500:
        raise ValueError("Address is too long")
    if not (re.search(r"\d", text) and re.search(r"[a-zA-Z]", text)):
        raise ValueError("Address must contain both numbers and letters")
    return clean_text(text) or text


def _email(value: Any) -> str | None:
    if not value:
        return None
    if not isinstance(value, str):
        raise ValueError("Email must be a string")
    text = value.strip().lower()
    if len(text) > 254:
        raise ValueError("Email is too long")
    if not _EMAIL_RE.match(text):
        raise ValueError("Invalid email format")
    return text


def _city(value: Any) -> str | None:
    if not value:
        return None
    text = clean_text(value, 100)
    if not text or len(text) < 2:
        raise ValueError("City name is too short")
    return text


def _state(value: Any) -> str | None:
    if not value:
        return None
    text = (clean_text(value, 50) or "").upper()
    if len(text) < 2:
        raise ValueError("State is too short")
    return text


def _zip(value: Any) -> str | None:
    if not value:
        return None
    text = str(value).strip()
    if not (_US_ZIP_RE.match(text) or _INTL_ZIP_RE.match(text)):
        raise ValueError("Invalid ZIP/postal code format")
    return text.upper()


def _priority(value: Any) -> str:
    text = str(value).strip().lower() if value else ""
    return text if text in _PRIORITIES else "standard"


@dataclass
class BookingInput:
    name: str
    phone: str
    address: str
    email: str | None = None
    city: str | None = None
    state: str | None = None
    zip: str | None = None
    service_type: str | None = None
    preferred_time: str | None = None
    equipment: str | None = None
    priority: str = "standard"


def validate_booking(args: Any) -> BookingInput:
    """Validate and sanitize create_booking arguments.

    Collects every field error before raising so the log shows the full
    picture of what the assistant sent.
    """
    if not isinstance(args, dict):
        args = {}
    errors: list[str] = []
    values: dict[str, Any] = {}
    checks = (
        ("name", "Name", _name, args.get("name")),
        ("phone", "Phone", normalize_phone, args.get("phone")),
        ("address", "Address", _address, args.get("address")),
        ("email", "Email", _email, args.get("email")),
        ("city", "City", _city, args.get("city")),
        ("state", "State", _state, args.get("state")),
        ("zip", "ZIP", _zip, args.get("zip")),
    )
    for key, label, check, raw in checks:
        try:
            values[key] = check(raw)
        except ValueError as exc:
            errors.append(f"{label}: {exc}")
    if errors:
        raise ArgumentValidationError(errors)

    return BookingInput(
        **values,
        service_type=clean_text(args.get("service_type") or args.get("job_type") or args.get("summary")),
        preferred_time=clean_text(
            args.get("preferred_time") or args.get("requested_start") or args.get("time"), 200
        ),
        equipment=clean_text(args.get("equipment") or args.get("equipment_info")),
        priority=_priority(args.get("priority")),
    )
