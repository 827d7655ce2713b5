import importlib
import json
import sys

import pytest

from attribute_access.errors import ValidationError


def _load_handler(monkeypatch, *, enforce_on_token: str = "1"):
    monkeypatch.setenv("SCHEMA_VERSION", "2026-10-17")
    monkeypatch.setenv("ENFORCE_ON_TOKEN", enforce_on_token)
    if "lambda" not in sys.path:
        sys.path.insert(0, "lambda")
    import attribute_guard as handler_module
    return importlib.reload(handler_module)


def _event(trigger: str, **attrs) -> dict:
    return {
        "version": "1",
        "triggerSource": trigger,
        "region": "us-east-1",
        "userPoolId": "us-east-1_abc",
        "userName": "u1",
        "request": {"userAttributes": attrs},
        "response": {},
    }


def _wide_event(capsys) -> dict:
    lines = [line for line in capsys.readouterr().out.splitlines() if line.strip()]
    assert len(lines) == 1
    return json.loads(lines[0])


def test_sign_up_with_valid_attributes_is_accepted(monkeypatch, capsys):
    handler_module = _load_handler(monkeypatch)
    event = _event(
        "PreSignUp_SignUp",
        email="ada@example.com",
        given_name="Ada",
        family_name="Lovelace",
        **{"custom:client": "acme"},
    )

    assert handler_module.handler(event, None) is event

    logged = _wide_event(capsys)
    assert logged["event"] == "attribute_access_guard"
    assert logged["outcome"] == "accepted"
    assert logged["trigger_source"] == "PreSignUp_SignUp"
    assert logged["user_pool_id"] == "us-east-1_abc"
    assert logged["schema_version"] == "2026-10-17"
    assert isinstance(logged["duration_ms"], int)


@pytest.mark.parametrize(
    "attrs, attribute",
    [
        ({"given_name": "Ada", "family_name": "Lovelace"}, "custom:client"),
        ({"given_name": "Ada", "family_name": "Lovelace", "custom:client": "ab"}, "custom:client"),
        ({"given_name": "Ada", "family_name": "Lovelace", "custom:client": "x" * 61}, "custom:client"),
        ({"family_name": "Lovelace", "custom:client": "acme"}, "given_name"),
    ],
)
def test_admin_create_with_invalid_attributes_is_rejected(monkeypatch, capsys, attrs, attribute):
    handler_module = _load_handler(monkeypatch)
    with pytest.raises(ValidationError) as exc_info:
        handler_module.handler(_event("PreSignUp_AdminCreateUser", **attrs), None)
    assert exc_info.value.attribute == attribute

    logged = _wide_event(capsys)
    assert logged["outcome"] == "rejected"
    assert logged["error"] == {"code": "INVALID_ATTRIBUTE", "attribute": attribute}


def test_rejected_value_is_not_logged(monkeypatch, capsys):
    handler_module = _load_handler(monkeypatch)
    value = "q" * 61
    with pytest.raises(ValidationError) as exc_info:
        handler_module.handler(
            _event("PreSignUp_SignUp", given_name="Ada", family_name="Lovelace", **{"custom:client": value}),
            None,
        )
    assert value not in str(exc_info.value)
    assert value not in json.dumps(_wide_event(capsys))


def test_token_generation_rechecks_client(monkeypatch, capsys):
    handler_module = _load_handler(monkeypatch)
    event = _event("TokenGeneration_Authentication", **{"custom:client": "acme/../x"})
    with pytest.raises(ValidationError):
        handler_module.handler(event, None)
    assert _wide_event(capsys)["outcome"] == "rejected"

    ok = _event("TokenGeneration_RefreshTokens", **{"custom:client": "acme"})
    assert handler_module.handler(ok, None) is ok
    assert _wide_event(capsys)["outcome"] == "accepted"


def test_token_generation_check_can_be_disabled(monkeypatch, capsys):
    handler_module = _load_handler(monkeypatch, enforce_on_token="0")
    event = _event("TokenGeneration_Authentication")
    assert handler_module.handler(event, None) is event
    assert _wide_event(capsys)["outcome"] == "skipped"


def test_other_trigger_sources_are_skipped(monkeypatch, capsys):
    handler_module = _load_handler(monkeypatch)
    event = _event("PreSignUp_ExternalProvider")
    assert handler_module.handler(event, None) is event
    assert _wide_event(capsys)["outcome"] == "skipped"


def test_unexpected_errors_are_logged_and_raised(monkeypatch, capsys):
    handler_module = _load_handler(monkeypatch)

    def boom(_attrs):
        raise RuntimeError("boom")

    monkeypatch.setattr(handler_module, "_check_sign_up", boom)
    with pytest.raises(RuntimeError):
        handler_module.handler(_event("PreSignUp_SignUp"), None)
    logged = _wide_event(capsys)
    assert logged["outcome"] == "error"
    assert logged["error"] == {"type": "RuntimeError", "message": "boom"}
