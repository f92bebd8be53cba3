"""Tests for error display text and process logging setup."""

from __future__ import annotations

import logging

import pytest

from praysync.errors import (
    AuthorizationError,
    TransientNetworkError,
    ValidationError,
    classify_http_error,
    user_friendly_message,
)
from praysync.logging_config import configure_logging


class TestUserFriendlyMessage:
    @pytest.mark.parametrize(
        "code,expected",
        [
            ("23505", "This item already exists"),
            ("23503", "Cannot delete item - it is referenced by other data"),
            ("PGRST116", "Item not found"),
            ("42501", "Permission denied - please check your access rights"),
            ("23502", "Required field is missing"),
        ],
    )
    def test_known_backend_codes(self, code: str, expected: str) -> None:
        assert user_friendly_message(ValidationError("raw", code=code)) == expected

    def test_transient_errors_mention_connection(self) -> None:
        assert user_friendly_message(TransientNetworkError("timeout")) == (
            "Network request failed - please check your connection"
        )

    def test_falls_back_to_error_message(self) -> None:
        assert user_friendly_message(AuthorizationError("Session expired")) == "Session expired"

    def test_classified_response_keeps_friendly_text(self) -> None:
        error = classify_http_error(409, {"code": "23505", "message": "duplicate key value"})
        assert isinstance(error, ValidationError)
        assert user_friendly_message(error) == "This item already exists"

    def test_non_library_errors(self) -> None:
        assert user_friendly_message(None) == "An unknown error occurred"
        assert user_friendly_message(RuntimeError("boom")) == "boom"
        assert user_friendly_message(RuntimeError()) == "An error occurred"


class TestConfigureLogging:
    @pytest.fixture(autouse=True)
    def restore_level(self):
        logger = logging.getLogger("praysync")
        previous = logger.level
        yield
        logger.setLevel(previous)

    def test_level_name_applied_to_package_logger(self) -> None:
        logger = configure_logging("debug")
        assert logger.name == "praysync"
        assert logger.level == logging.DEBUG

    def test_unknown_level_name_defaults_to_info(self) -> None:
        assert configure_logging("chatty").level == logging.INFO

    def test_numeric_level(self) -> None:
        assert configure_logging(logging.WARNING).level == logging.WARNING
