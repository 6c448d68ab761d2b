"""Log redaction and request context helpers."""

import structlog

from yoink.logging import (
    _add_correlation_id,
    _redact_secrets,
    bind_auth_context,
    clear_request_context,
    get_correlation_id,
    redact,
    set_correlation_id,
)


def test_redact_shortens_identifiers():
    assert redact(None) is None
    assert redact("short") == "***"
    assert redact("0123456789abcdef") == "0123***ef"


def test_secret_keys_are_masked():
    event = {
        "event": "token_created",
        "token_id": "abc",
        "secret": "hunter2",
        "Authorization": "Bearer abc:def",
        "session_cookie": "sid",
        "token_hash": "$argon2id$...",
        "attempts": 3,
    }

    out = _redact_secrets(None, "info", dict(event))

    assert out["token_id"] == "abc"
    assert out["secret"] == "[REDACTED]"
    assert out["Authorization"] == "[REDACTED]"
    assert out["session_cookie"] == "[REDACTED]"
    assert out["token_hash"] == "[REDACTED]"
    assert out["attempts"] == 3


def test_correlation_id_is_added():
    cid = set_correlation_id("req-42")

    assert cid == "req-42"
    assert get_correlation_id() == "req-42"
    assert _add_correlation_id(None, "info", {})["correlation_id"] == "req-42"


def test_generated_correlation_id():
    assert len(set_correlation_id()) == 36


def test_auth_context_binding():
    clear_request_context()
    bind_auth_context("user-1", "org-1")

    assert structlog.contextvars.get_contextvars() == {"user_id": "user-1", "org_id": "org-1"}

    clear_request_context()
    assert structlog.contextvars.get_contextvars() == {}
