import json
import os
import time
from datetime import datetime, timezone
from typing import Any

from attribute_access.errors import ValidationError
from attribute_access.schema import CLIENT_ATTRIBUTE, SIGN_UP_ATTRIBUTES, validate_attributes

SCHEMA_VERSION = os.environ.get("SCHEMA_VERSION", "2026-10-17")
# Set to "0" to let tokens through for users whose attribute predates the guard.
ENFORCE_ON_TOKEN = os.environ.get("ENFORCE_ON_TOKEN", "1").strip().lower() not in {"0", "false", "no"}

_SIGN_UP_SOURCES = {"PreSignUp_SignUp", "PreSignUp_AdminCreateUser"}
_TOKEN_SOURCE_PREFIX = "TokenGeneration_"


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _user_attributes(event: dict[str, Any]) -> dict[str, str]:
    request = event.get("request") or {}
    attrs = request.get("userAttributes") if isinstance(request, dict) else None
    if not isinstance(attrs, dict):
        return {}
    return {str(k): str(v) for k, v in attrs.items() if v is not None}


def _check_sign_up(attrs: dict[str, str]) -> None:
    validate_attributes(attrs, schemas=SIGN_UP_ATTRIBUTES)


def _check_token(attrs: dict[str, str]) -> None:
    # Profile updates bypass the sign-up trigger; re-check before a token
    # carrying the value can reach the identity pool.
    CLIENT_ATTRIBUTE.validate(attrs.get(CLIENT_ATTRIBUTE.claim_name))


def handler(event: dict[str, Any], _context: Any) -> dict[str, Any]:
    start = time.time()
    trigger = str(event.get("triggerSource") or "")
    wide_event: dict[str, Any] = {
        "event": "attribute_access_guard",
        "schema_version": SCHEMA_VERSION,
        "trigger_source": trigger,
        "user_pool_id": str(event.get("userPoolId") or ""),
        "ts": _now_iso(),
    }
    try:
        attrs = _user_attributes(event)
        if trigger in _SIGN_UP_SOURCES:
            _check_sign_up(attrs)
            wide_event["outcome"] = "accepted"
        elif trigger.startswith(_TOKEN_SOURCE_PREFIX) and ENFORCE_ON_TOKEN:
            _check_token(attrs)
            wide_event["outcome"] = "accepted"
        else:
            wide_event["outcome"] = "skipped"
        return event
    except ValidationError as exc:
        wide_event["outcome"] = "rejected"
        wide_event["error"] = {"code": exc.error_code, "attribute": exc.attribute}
        # Cognito surfaces the message to the caller; it names the attribute and
        # the bound, never the submitted value.
        raise
    except Exception as exc:
        wide_event["outcome"] = "error"
        wide_event["error"] = {"type": type(exc).__name__, "message": str(exc)}
        raise
    finally:
        wide_event["duration_ms"] = int((time.time() - start) * 1000)
        print(json.dumps(wide_event, separators=(",", ":"), sort_keys=True))
