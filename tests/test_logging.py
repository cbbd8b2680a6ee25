from claimgate.logging import (
    _redact_sensitive,
    get_correlation_id,
    sanitize_error_message,
    set_correlation_id,
)


def test_secret_fields_masked():
    event = _redact_sensitive(
        None,
        "info",
        {
            "event": "login_failed",
            "email": "someone@example.com",
            "client_secret": "abc",
            "account_id": "acct-1",
        },
    )

    assert event["email"] == "so***om"
    assert event["client_secret"] == "***"
    assert event["account_id"] == "acct-1"
    assert event["event"] == "login_failed"


def test_sanitize_error_message_strips_credentials_and_sql():
    cleaned = sanitize_error_message("SELECT * FROM account failed; password=hunter2")

    assert "hunter2" not in cleaned
    assert "SELECT" not in cleaned
    assert sanitize_error_message("") == "An error occurred"


def test_correlation_id_generated_when_absent():
    generated = set_correlation_id()

    assert get_correlation_id() == generated
    assert set_correlation_id("req-1") == "req-1"
