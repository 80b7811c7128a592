from estatevault.logging import _scrub_credentials, get_correlation_id, set_correlation_id


def test_secrets_are_redacted():
    event = _scrub_credentials(
        None,
        "info",
        {"event": "login", "password": "Hunter2!", "refresh_token": "abc.def", "token_type": "refresh"},
    )
    assert event["password"] == "[redacted]"
    assert event["refresh_token"] == "[redacted]"
    assert event["token_type"] == "refresh"


def test_contact_details_are_masked():
    event = _scrub_credentials(
        None, "info", {"event": "x", "email": "owner@example.com", "phone_number": "+351912345678"}
    )
    assert event["email"] == "o***@example.com"
    assert event["phone_number"] == "***5678"


def test_non_string_values_pass_through():
    event = _scrub_credentials(None, "info", {"event": "x", "code": None, "count": 3})
    assert event == {"event": "x", "code": None, "count": 3}


def test_correlation_id_is_bounded_and_minted():
    assert set_correlation_id("  req-1  ") == "req-1"
    assert get_correlation_id() == "req-1"
    assert len(set_correlation_id("x" * 500)) == 128
    assert set_correlation_id(None) != "req-1"
