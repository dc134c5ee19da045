"""Tests for logging setup and secret masking."""

import io
import json
import logging
from uuid import uuid4

import pytest

from refreshvault.core.logging import (
    REDACTED,
    SecretRedactionFilter,
    redact,
    setup_logging,
)


@pytest.fixture
def restore_root_logger():
    """setup_logging() replaces the root handlers; put the originals back."""
    handlers = logging.root.handlers[:]
    level = logging.root.level
    yield
    logging.root.handlers = handlers
    logging.root.setLevel(level)


def capture(handler: logging.Handler) -> io.StringIO:
    stream = io.StringIO()
    handler.setStream(stream)  # type: ignore[attr-defined]
    return stream


class TestRedact:
    """Pattern-level masking."""

    def test_bearer_value_masked(self):
        assert redact("Authorization: Bearer abc.def-123") == f"Authorization: Bearer {REDACTED}"

    def test_named_token_value_masked(self):
        value = str(uuid4())
        masked = redact(f"presented refresh_token={value} from 198.51.100.4")
        assert value not in masked
        assert "198.51.100.4" in masked

    def test_json_style_pair_masked(self):
        value = str(uuid4())
        masked = redact(f'body: {{"refresh_token": "{value}"}}')
        assert value not in masked

    def test_hex_secret_masked(self):
        key = "ab" * 32
        assert redact(f"loaded key {key}") == f"loaded key {REDACTED}"

    def test_token_id_kept(self):
        token_id = uuid4()
        message = f"Revoked refresh token {token_id}"
        assert redact(message) == message


class TestSecretRedactionFilter:
    """Record rewriting."""

    def test_masks_formatted_args(self):
        value = str(uuid4())
        record = logging.LogRecord(
            "refreshvault.test", logging.INFO, __file__, 1, "got plaintext=%s", (value,), None
        )

        assert SecretRedactionFilter().filter(record) is True
        assert value not in record.getMessage()
        assert record.args == ()

    def test_clean_record_untouched(self):
        record = logging.LogRecord(
            "refreshvault.test", logging.INFO, __file__, 1, "purged %d tokens", (3,), None
        )

        SecretRedactionFilter().filter(record)

        assert record.args == (3,)
        assert record.getMessage() == "purged 3 tokens"


class TestSetupLogging:
    """Handlers installed by setup_logging()."""

    def test_structured_output_is_masked_json(self, restore_root_logger):
        setup_logging(level="INFO", format_type="structured")
        stream = capture(logging.root.handlers[0])
        value = str(uuid4())

        logging.getLogger("refreshvault.test").warning("bad refresh_token=%s", value)

        entry = json.loads(stream.getvalue().strip().splitlines()[-1])
        assert entry["level"] == "WARNING"
        assert entry["logger"] == "refreshvault.test"
        assert value not in entry["message"]
        assert REDACTED in entry["message"]

    def test_dev_output_is_masked(self, restore_root_logger):
        setup_logging(level="DEBUG", format_type="dev")
        stream = capture(logging.root.handlers[0])

        logging.getLogger("refreshvault.test").info("header Bearer secret-admin-key")

        output = stream.getvalue()
        assert "secret-admin-key" not in output
        assert "| INFO     | refreshvault.test |" in output

    def test_every_handler_has_filter(self, restore_root_logger):
        setup_logging(format_type="structured")
        assert all(
            any(isinstance(f, SecretRedactionFilter) for f in handler.filters)
            for handler in logging.root.handlers
        )
