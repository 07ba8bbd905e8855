"""Tests for crm_mailsync.logging."""

from __future__ import annotations

import json
import logging

import structlog

from crm_mailsync.logging import REDACTED, redact_credentials, setup_logging


class TestSetupLogging:
    def test_json_mode(self):
        setup_logging(json=True, level="INFO")
        root = logging.getLogger()
        assert root.level == logging.INFO
        assert len(root.handlers) == 1

    def test_level_case_insensitive(self):
        setup_logging(json=False, level="warning")
        assert logging.getLogger().level == logging.WARNING

    def test_replaces_existing_handlers(self):
        root = logging.getLogger()
        root.addHandler(logging.StreamHandler())
        root.addHandler(logging.StreamHandler())
        setup_logging()
        assert len(root.handlers) == 1


class TestRedaction:
    def test_masks_credential_keys(self):
        event = {
            "event": "imap_connected",
            "password": "hunter2",
            "access_token": "ya29.secret",
            "host": "imap.test.com",
        }
        out = redact_credentials(None, "info", event)
        assert out["password"] == REDACTED
        assert out["access_token"] == REDACTED
        assert out["host"] == "imap.test.com"

    def test_rendered_output_never_contains_secret(self, capsys):
        setup_logging(json=True, level="INFO")
        structlog.get_logger("test_redaction").info("login_attempt", password="hunter2", username="me")

        line = capsys.readouterr().out.strip().splitlines()[-1]
        record = json.loads(line)
        assert record["password"] == REDACTED
        assert record["username"] == "me"
        assert "hunter2" not in line
