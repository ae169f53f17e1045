"""
Tests for the error hierarchy and registry.yaml.
"""

import logging
from decimal import Decimal

import pytest

from photoledger.core.errors import (
    InsufficientCreditsError,
    InvalidExecutionStateError,
    InvalidTransitionError,
    NetworkError,
    PhotoLedgerError,
    ReceiptValidationFailed,
    StepProcessingFailed,
    UnknownExecutionError,
    UnknownProductError,
    UnknownPurchaseError,
    UnknownReservationError,
    WorkflowBusyError,
)
from photoledger.core.errors.registry import ErrorRegistry, RegistryValidationError, error_registry

ALL_ERRORS = [
    InsufficientCreditsError(requested=Decimal("2"), available=Decimal("1")),
    UnknownReservationError("r1"),
    InvalidTransitionError("free", "cancelled_pending_expiry"),
    UnknownProductError("com.example.nope"),
    ReceiptValidationFailed("p1", "receipt_invalid"),
    UnknownPurchaseError("p1"),
    NetworkError("timeout"),
    StepProcessingFailed("funko", "model error"),
    WorkflowBusyError("e1"),
    InvalidExecutionStateError("e1", "complete", "abort"),
    UnknownExecutionError("e1"),
]


class TestErrorHierarchy:
    def test_base_defaults_to_system_code(self):
        err = PhotoLedgerError()
        assert err.code == "PLE-SYS-001"
        assert str(err) == "PLE-SYS-001"

    def test_invalid_code_rejected(self):
        with pytest.raises(ValueError):
            PhotoLedgerError(code="VZ-BAD-1")

    def test_insufficient_credits_carries_amounts(self):
        err = InsufficientCreditsError(requested=Decimal("2"), available=Decimal("1.5"))
        assert err.code == "PLE-LDG-001"
        assert err.requested == Decimal("2")
        assert err.available == Decimal("1.5")
        assert err.context == {"requested": "2", "available": "1.5"}

    def test_message_includes_detail(self):
        err = UnknownPurchaseError("abc")
        assert str(err).startswith("PLE-PUR-003: ")
        assert "abc" in str(err)

    @pytest.mark.parametrize("error", ALL_ERRORS, ids=lambda e: type(e).__name__)
    def test_every_error_is_registered(self, error):
        assert error_registry.get(error.code) is not None


class TestErrorRegistry:
    def test_loads_bundled_registry(self):
        registry = ErrorRegistry()
        registry.load()
        assert len(registry) >= 13
        assert registry.schema_version == 1

    def test_lookup_unknown_raises(self):
        with pytest.raises(KeyError):
            error_registry.lookup("PLE-SYS-999")

    def test_network_errors_are_retryable(self):
        assert error_registry.is_retryable(NetworkError("down")) is True
        assert error_registry.is_retryable(StepProcessingFailed("s", "boom")) is True
        assert error_registry.is_retryable(
            InsufficientCreditsError(requested=Decimal("1"), available=Decimal("0"))
        ) is False

    def test_describe_uses_safe_message(self):
        payload = error_registry.describe(UnknownProductError("com.example.secret"))
        assert payload["code"] == "PLE-PUR-001"
        assert payload["message"] == "This product is not available."
        assert payload["retryable"] is False

    def test_codes_for_domain(self):
        assert set(error_registry.codes_for_domain("LDG")) == {"PLE-LDG-001", "PLE-LDG-002", "PLE-LDG-003"}

    def test_loads_on_first_lookup(self):
        registry = ErrorRegistry()
        assert registry.get("PLE-NET-001").retryable is True
        assert registry.schema_version == 1

    def test_log_level_follows_severity(self):
        assert error_registry.log_level(
            InsufficientCreditsError(requested=Decimal("1"), available=Decimal("0"))
        ) == logging.INFO
        assert error_registry.log_level(StepProcessingFailed("s", "boom")) == logging.WARNING
        assert error_registry.log_level(UnknownReservationError("r1")) == logging.ERROR

    def test_describe_unknown_code_falls_back(self, tmp_path):
        path = tmp_path / "registry.yaml"
        path.write_text("schema_version: 1\nerrors: []\n")
        registry = ErrorRegistry(str(path))
        payload = registry.describe(NetworkError("down"))
        assert payload == {"code": "PLE-NET-001", "message": "Something went wrong.", "retryable": False}
        assert registry.log_level(NetworkError("down")) == logging.ERROR

    def test_domain_mismatch_rejected(self, tmp_path):
        path = tmp_path / "registry.yaml"
        path.write_text(
            "schema_version: 1\n"
            "errors:\n"
            "  - code: PLE-LDG-001\n"
            "    domain: SUB\n"
            "    title: t\n"
            "    severity: ERROR\n"
            "    retryable: false\n"
            "    user_action_required: false\n"
            "    safe_message: m\n"
            "    remediation: []\n"
        )
        with pytest.raises(RegistryValidationError):
            ErrorRegistry().load(str(path))

    def test_duplicate_code_rejected(self, tmp_path):
        entry = (
            "  - code: PLE-NET-001\n"
            "    domain: NET\n"
            "    title: t\n"
            "    severity: WARN\n"
            "    retryable: true\n"
            "    user_action_required: false\n"
            "    safe_message: m\n"
            "    remediation: []\n"
        )
        path = tmp_path / "registry.yaml"
        path.write_text("schema_version: 1\nerrors:\n" + entry + entry)
        with pytest.raises(RegistryValidationError):
            ErrorRegistry().load(str(path))
