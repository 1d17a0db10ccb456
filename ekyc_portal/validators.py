"""Local input validation, run before any request leaves the client."""

import re
from datetime import date, datetime
from typing import Optional

from .errors import FieldTooLongError, InvalidDateError, InvalidDocumentError, InputValidationError, NotesRequiredError

DOB_PATTERN = re.compile(r"\d{4}-\d{2}-\d{2}")
PHONE_PATTERN = re.compile(r"[\d+\-\s()]{6,20}")

SUBMISSION_FIELD_LIMITS = {
    "first_name": 100,
    "last_name": 100,
    "address": 500,
    "document_type": 50,
    "document_number": 100,
}

PROFILE_FIELD_LIMITS = {
    "full_name": 200,
    "address": 500,
    "phone": 30,
}


def parse_dob(value) -> Optional[date]:
    """Accept YYYY-MM-DD or blank."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    text = str(value)
    if not DOB_PATTERN.fullmatch(text):
        raise InvalidDateError()
    try:
        return date.fromisoformat(text)
    except ValueError:
        raise InvalidDateError(f"DOB is not a valid calendar date: {text}")


def clean_text(field: str, value, limit: int) -> str:
    text = str(value if value is not None else "").strip()
    if len(text) > limit:
        raise FieldTooLongError(field, limit)
    return text


def clean_phone(value) -> str:
    phone = clean_text("phone", value, PROFILE_FIELD_LIMITS["phone"])
    if phone and not PHONE_PATTERN.fullmatch(phone):
        raise InputValidationError("Phone contains invalid characters", code="invalid_phone")
    return phone


def validate_review_notes(notes: Optional[str], min_length: int) -> str:
    text = (notes or "").strip()
    if len(text) < min_length:
        raise NotesRequiredError(f"notes required: provide at least {min_length} characters")
    return text


def validate_document(filename: Optional[str], size: int, content_type: Optional[str],
                      allowed_types, max_size: int):
    """File checks on metadata only; contents stay opaque."""
    if not filename:
        raise InvalidDocumentError("Please select a file.")
    if content_type not in allowed_types:
        raise InvalidDocumentError("Unsupported file type. Allowed: JPG, PNG, WEBP, PDF.")
    if size > max_size:
        raise InvalidDocumentError(f"File is too large. Maximum size is {max_size // (1024 * 1024)} MB.")
