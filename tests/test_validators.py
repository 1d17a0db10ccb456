"""Local input validation: dates, length caps, review notes and document metadata."""

from datetime import date

import pytest

from ekyc_portal.errors import (FieldTooLongError, InputValidationError, InvalidDateError,
                                InvalidDocumentError, NotesRequiredError)
from ekyc_portal.storage_service import ALLOWED_CONTENT_TYPES, build_document_path, sanitize_filename
from ekyc_portal.validators import (clean_phone, clean_text, parse_dob, validate_document,
                                    validate_review_notes)


class TestParseDob:

    def test_accepts_iso_date(self):
        assert parse_dob("1990-01-31") == date(1990, 1, 31)

    def test_blank_means_absent(self):
        assert parse_dob(None) is None
        assert parse_dob("") is None

    @pytest.mark.parametrize("value", ["31/01/1990", "1990-1-31", "19900131", "1990-01-31T00:00", " 1990-01-31"])
    def test_rejects_other_formats(self, value):
        with pytest.raises(InvalidDateError) as exc_info:
            parse_dob(value)
        assert "YYYY-MM-DD" in exc_info.value.message

    def test_rejects_impossible_calendar_date(self):
        with pytest.raises(InvalidDateError):
            parse_dob("1990-02-30")

    def test_validation_errors_are_value_errors(self):
        with pytest.raises(ValueError):
            parse_dob("yesterday")


class TestCleanText:

    def test_trims_whitespace(self):
        assert clean_text("first_name", "  Ada  ", 100) == "Ada"

    def test_none_becomes_empty(self):
        assert clean_text("address", None, 500) == ""

    def test_limit_applies_after_trimming(self):
        assert clean_text("first_name", " " + "a" * 100 + " ", 100) == "a" * 100

    def test_over_limit_is_rejected(self):
        with pytest.raises(FieldTooLongError) as exc_info:
            clean_text("first_name", "a" * 101, 100)
        assert exc_info.value.field == "first_name"
        assert exc_info.value.limit == 100


def test_phone_characters():
    assert clean_phone(" +1 (555) 010-9999 ") == "+1 (555) 010-9999"
    assert clean_phone("") == ""
    with pytest.raises(InputValidationError):
        clean_phone("call me maybe")


class TestReviewNotes:

    @pytest.mark.parametrize("notes", [None, "", "   ", "ab"])
    def test_short_notes_rejected(self, notes):
        with pytest.raises(NotesRequiredError) as exc_info:
            validate_review_notes(notes, 3)
        assert exc_info.value.message.startswith("notes required")

    def test_notes_trimmed(self):
        assert validate_review_notes("  blurry photo ", 3) == "blurry photo"


class TestDocuments:

    def test_accepts_pdf_under_limit(self):
        validate_document("id.pdf", 1024, "application/pdf", ALLOWED_CONTENT_TYPES, 10 * 1024 * 1024)

    def test_rejects_unknown_type(self):
        with pytest.raises(InvalidDocumentError):
            validate_document("id.exe", 10, "application/octet-stream", ALLOWED_CONTENT_TYPES, 1024)

    def test_rejects_oversized(self):
        with pytest.raises(InvalidDocumentError):
            validate_document("id.png", 2048, "image/png", ALLOWED_CONTENT_TYPES, 1024)

    def test_rejects_missing_filename(self):
        with pytest.raises(InvalidDocumentError):
            validate_document("", 10, "image/png", ALLOWED_CONTENT_TYPES, 1024)

    def test_document_path_layout(self):
        path = build_document_path("user-1", "sub-1", "id front!", "my scan (1).png", timestamp_ms=1700000000000)
        assert path == "user-1/sub-1/id_front_/1700000000000_my_scan__1_.png"

    def test_filename_capped(self):
        assert len(sanitize_filename("x" * 500)) == 200
