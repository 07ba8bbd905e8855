"""Tests for crm_mailsync.models."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest
from pydantic import ValidationError

from crm_mailsync.interface import FetchBatch, FetchedMessage
from crm_mailsync.models import (
    Address,
    ComposeRequest,
    ProviderKind,
    SyncConfig,
    SyncCursor,
    SyncResult,
)
from tests.conftest import make_message


class TestSyncConfig:
    def test_login_defaults_to_address(self):
        config = SyncConfig(id="c", provider=ProviderKind.IMAP_SMTP, email_address="me@x.com")
        assert config.login == "me@x.com"

    def test_uses_oauth_only_with_token(self):
        with_token = SyncConfig(id="c", provider="gmail", access_token="t", email_address="me@x.com")
        without = SyncConfig(id="c", provider="gmail", password="p", email_address="me@x.com")
        generic = SyncConfig(id="c", provider="imap_smtp", access_token="t", email_address="me@x.com")
        assert with_token.uses_oauth
        assert not without.uses_oauth
        assert not generic.uses_oauth

    def test_secrets_are_masked(self):
        config = SyncConfig(
            id="c", provider="imap_smtp", password="hunter2", access_token="bearer-abc123", email_address="me@x.com"
        )
        dumped = repr(config) + config.model_dump_json()
        assert "hunter2" not in dumped
        assert "bearer-abc123" not in dumped

    def test_token_expired(self):
        now = datetime(2025, 6, 1, tzinfo=UTC)
        config = SyncConfig(
            id="c",
            provider="outlook",
            access_token="t",
            token_expires_at=now - timedelta(seconds=1),
            email_address="me@x.com",
        )
        assert config.token_expired(now)
        assert not config.model_copy(update={"token_expires_at": None}).token_expired(now)

    def test_is_due(self):
        now = datetime(2025, 6, 1, 12, 0, tzinfo=UTC)
        config = SyncConfig(id="c", provider="imap_smtp", email_address="me@x.com", sync_interval=15)
        assert config.is_due(now)
        assert not config.model_copy(update={"last_sync_at": now - timedelta(minutes=14)}).is_due(now)
        assert config.model_copy(update={"last_sync_at": now - timedelta(minutes=15)}).is_due(now)

    def test_unknown_provider_rejected(self):
        with pytest.raises(ValidationError):
            SyncConfig(id="c", provider="pop3", email_address="me@x.com")


class TestMessages:
    def test_address_str(self):
        assert str(Address(address="a@x.com")) == "a@x.com"
        assert str(Address(address="a@x.com", name="Alice")) == "Alice <a@x.com>"

    def test_primary_recipient(self):
        assert make_message(to=["first@x.com", "second@x.com"]).primary_recipient.address == "first@x.com"
        assert make_message(to=[]).primary_recipient is None

    def test_compose_requires_recipient(self):
        with pytest.raises(ValidationError):
            ComposeRequest(to=[])

    def test_cursor_is_non_negative(self):
        with pytest.raises(ValidationError):
            SyncCursor(config_id="c", folder="inbox", last_uid=-1)

    def test_sync_result_defaults(self):
        result = SyncResult(config_id="c")
        assert result.success is False
        assert result.inbound_synced == result.outbound_synced == 0
        assert result.errors == []


class TestFetchBatch:
    def test_uids_include_failures(self):
        batch = FetchBatch(
            messages=[FetchedMessage(uid=3, raw_bytes=b"x"), FetchedMessage(uid=1, raw_bytes=b"y")],
            failures={2: "NO"},
        )
        assert batch.uids == [1, 2, 3]
        assert batch.highest_uid == 3
        assert batch

    def test_empty(self):
        batch = FetchBatch()
        assert not batch
        assert batch.highest_uid == 0
