import importlib
import logging
import os
import sqlite3
import sys
from datetime import datetime, timezone

import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))

from servicebroker.services.clock import parse_iso, to_iso
from servicebroker.services.db import Database
from servicebroker.services.events import InProcessEventPublisher, QuoteReceived, RequestCompleted


def test_auth_ttl_invalid_env_falls_back(monkeypatch):
    monkeypatch.setenv("AUTH_TOKEN_TTL_HOURS", "not-a-number")
    sys.modules.pop("servicebroker.auth", None)
    auth = importlib.import_module("servicebroker.auth")
    assert auth.TOKEN_TTL_HOURS == 24


def test_auth_ttl_non_positive_env_falls_back(monkeypatch):
    monkeypatch.setenv("AUTH_TOKEN_TTL_HOURS", "0")
    sys.modules.pop("servicebroker.auth", None)
    auth = importlib.import_module("servicebroker.auth")
    assert auth.TOKEN_TTL_HOURS == 24


def test_tampered_token_is_rejected():
    auth = importlib.import_module("servicebroker.auth")
    token, _ = auth.create_access_token("user_1")
    assert auth.verify_access_token(token) == "user_1"
    payload, signature = token.split(".", 1)
    assert auth.verify_access_token(f"{payload}.{signature[::-1]}") is None
    assert auth.verify_access_token("garbage") is None
    assert auth.parse_bearer_token("Token abc") is None


def test_database_adds_missing_message_column(tmp_path):
    db_path = tmp_path / "legacy.sqlite3"
    with sqlite3.connect(str(db_path)) as conn:
        conn.execute(
            """
            CREATE TABLE messages (
                id TEXT PRIMARY KEY,
                sender_id TEXT NOT NULL,
                receiver_id TEXT NOT NULL,
                request_id TEXT NOT NULL,
                quote_id TEXT,
                text TEXT NOT NULL,
                created_at TEXT NOT NULL,
                is_read INTEGER NOT NULL DEFAULT 0,
                is_delivered INTEGER NOT NULL DEFAULT 0
            )
            """
        )
        conn.commit()

    Database(str(db_path))

    with sqlite3.connect(str(db_path)) as conn:
        columns = {row[1] for row in conn.execute("PRAGMA table_info(messages)").fetchall()}
    assert "is_system" in columns


def test_failed_transaction_rolls_back(tmp_path):
    db = Database(str(tmp_path / "rollback.sqlite3"))
    with pytest.raises(RuntimeError):
        with db.transaction() as conn:
            conn.execute(
                "INSERT INTO hidden_requests (id, provider_id, service_request_id, hidden_at) VALUES (?, ?, ?, ?)",
                ("hid_1", "prov_a", "req_1", "2026-01-01T00:00:00+00:00"),
            )
            raise RuntimeError("boom")
    with db.read() as conn:
        assert conn.execute("SELECT COUNT(*) FROM hidden_requests").fetchone()[0] == 0


def test_failing_subscriber_does_not_block_others(caplog):
    publisher = InProcessEventPublisher(history_size=2)
    received = []

    def broken(event):
        raise RuntimeError("subscriber down")

    publisher.subscribe(broken)
    publisher.subscribe(received.append)

    with caplog.at_level(logging.ERROR):
        publisher.publish(QuoteReceived(request_id="req_1", provider_id="prov_a"))
        publisher.publish_all([RequestCompleted(request_id="req_1"), RequestCompleted(request_id="req_2")])

    assert len(received) == 3
    assert len(publisher.published) == 2
    assert "Event handler failed for QuoteReceived" in caplog.text
    assert received[0].payload() == {"request_id": "req_1", "provider_id": "prov_a"}


def test_timestamps_normalize_to_utc():
    assert parse_iso("2026-03-02T09:00:00Z") == datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)
    assert parse_iso("2026-03-02T09:00:00").tzinfo is not None
    assert parse_iso(None) is None
    assert to_iso(datetime(2026, 3, 2, 9, 0)) == "2026-03-02T09:00:00+00:00"
    with pytest.raises(ValueError):
        parse_iso("next tuesday")
