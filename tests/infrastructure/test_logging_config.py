"""Tests for structured logging."""

import json
import logging
import sys

import pytest

from resource_vault.infrastructure.logging_config import (
    StructuredFormatter,
    mask_identifier,
    mask_path,
    mask_reference,
    setup_logging,
)


def make_record(**extra) -> logging.LogRecord:
    record = logging.LogRecord(
        name="resource_vault.domain.services.resource_store",
        level=logging.INFO,
        pathname=__file__,
        lineno=10,
        msg="Created %s",
        args=("Patient/p1",),
        exc_info=None,
    )
    for key, value in extra.items():
        setattr(record, key, value)
    return record


class TestStructuredFormatter:
    """Test JSON log formatting."""

    def test_base_fields(self):
        data = json.loads(StructuredFormatter().format(make_record()))

        assert data["level"] == "INFO"
        assert data["logger"] == "resource_vault.domain.services.resource_store"
        assert data["message"] == "Created Patient/p1"
        assert data["timestamp"].endswith("Z")

    def test_extra_fields_are_merged(self):
        record = make_record(extra_fields={"operation": "create", "kind": "Patient", "version": 1})
        data = json.loads(StructuredFormatter().format(record))

        assert data["operation"] == "create"
        assert data["kind"] == "Patient"
        assert data["version"] == 1

    def test_extra_fields_do_not_replace_base_fields(self):
        record = make_record(extra_fields={"message": "spoofed"})
        assert json.loads(StructuredFormatter().format(record))["message"] == "Created Patient/p1"

    def test_request_context(self):
        record = make_record(request_id="req-1", endpoint="/fhir/Patient")
        data = json.loads(StructuredFormatter().format(record))
        assert data["request_id"] == "req-1"
        assert data["endpoint"] == "/fhir/Patient"

    def test_exception_is_formatted(self):
        try:
            raise RuntimeError("backend exploded")
        except RuntimeError:
            record = make_record()
            record.exc_info = sys.exc_info()

        data = json.loads(StructuredFormatter().format(record))
        assert "backend exploded" in data["exception"]


class TestSetupLogging:
    """Test root logger configuration."""

    @pytest.fixture(autouse=True)
    def restore_root_logger(self):
        root = logging.getLogger()
        handlers, level = list(root.handlers), root.level
        yield
        root.handlers[:] = handlers
        root.setLevel(level)

    def test_json_logging(self):
        setup_logging(use_json=True, log_level="debug")
        root = logging.getLogger()

        assert root.level == logging.DEBUG
        assert len(root.handlers) == 1
        assert isinstance(root.handlers[0].formatter, StructuredFormatter)

    def test_plain_logging_with_unknown_level(self):
        setup_logging(use_json=False, log_level="chatty")
        root = logging.getLogger()

        assert root.level == logging.INFO
        assert not isinstance(root.handlers[0].formatter, StructuredFormatter)


class TestIdentifierMasking:
    """Test masking of resource ids before they are logged."""

    @pytest.mark.parametrize("value,expected", [
        ("3f2a9c1e-77aa", "3f2a***"),
        ("12345", "1234***"),
        ("1234", "***"),
        ("p1", "***"),
        ("", "***"),
        (None, None),
    ])
    def test_mask_identifier(self, value, expected):
        assert mask_identifier(value) == expected

    def test_mask_reference(self):
        assert mask_reference("Patient", "patient-12345") == "Patient/pati***"
        assert mask_reference("Patient", None) == "Patient"

    @pytest.mark.parametrize("path,expected", [
        ("/fhir/Patient/patient-12345", "/fhir/Patient/pati***"),
        ("/fhir/Patient/patient-12345/_history/2", "/fhir/Patient/pati***/_history/2"),
        ("/fhir/Patient", "/fhir/Patient"),
        ("/api/health", "/api/health"),
    ])
    def test_mask_path(self, path, expected):
        assert mask_path(path) == expected

    def test_mask_identifier_accepts_non_strings(self):
        assert mask_identifier(1234567) == "1234***"
