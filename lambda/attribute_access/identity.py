from __future__ import annotations

import base64
import json
import time
import uuid
from dataclasses import dataclass, field, replace
from typing import Any

from .errors import ValidationError
from .schema import CLIENT_ATTRIBUTE, FAMILY_NAME, GIVEN_NAME, SIGN_UP_ATTRIBUTES, validate_attributes


@dataclass(frozen=True)
class IdentityRecord:
    sub: str
    email: str
    given_name: str
    family_name: str
    client: str

    @classmethod
    def create(
        cls,
        *,
        email: str,
        given_name: str,
        family_name: str,
        client: str,
        sub: str | None = None,
    ) -> "IdentityRecord":
        if not (email or "").strip():
            raise ValidationError("email", "value is required")
        return cls(
            sub=sub or str(uuid.uuid4()),
            email=email,
            given_name=GIVEN_NAME.validate(given_name),
            family_name=FAMILY_NAME.validate(family_name),
            client=CLIENT_ATTRIBUTE.validate(client),
        )

    def update(self, **changes: str) -> "IdentityRecord":
        if "sub" in changes:
            raise ValidationError("sub", "identifier is immutable")
        unknown = set(changes) - {"email", "given_name", "family_name", "client"}
        if unknown:
            raise ValidationError(sorted(unknown)[0], "unknown attribute")
        checked: dict[str, str] = {}
        for name, value in changes.items():
            if name == "client":
                checked[name] = CLIENT_ATTRIBUTE.validate(value)
            elif name == "given_name":
                checked[name] = GIVEN_NAME.validate(value)
            elif name == "family_name":
                checked[name] = FAMILY_NAME.validate(value)
            else:
                if not (value or "").strip():
                    raise ValidationError("email", "value is required")
                checked[name] = value
        return replace(self, **checked)

    def claims(self) -> dict[str, str]:
        return {
            "sub": self.sub,
            "email": self.email,
            GIVEN_NAME.claim_name: self.given_name,
            FAMILY_NAME.claim_name: self.family_name,
            CLIENT_ATTRIBUTE.claim_name: self.client,
        }

    def to_user_attributes(self) -> list[dict[str, str]]:
        """Cognito ``UserAttributes`` shape; ``sub`` is assigned by the pool, not sent."""
        return [
            {"Name": "email", "Value": self.email},
            {"Name": GIVEN_NAME.claim_name, "Value": self.given_name},
            {"Name": FAMILY_NAME.claim_name, "Value": self.family_name},
            {"Name": CLIENT_ATTRIBUTE.claim_name, "Value": self.client},
        ]

    @classmethod
    def from_user_attributes(cls, attributes: list[dict[str, Any]]) -> "IdentityRecord":
        values = {
            str(a.get("Name", "")): str(a.get("Value", ""))
            for a in attributes
            if isinstance(a, dict)
        }
        sub = values.get("sub", "").strip()
        if not sub:
            raise ValidationError("sub", "value is required")
        checked = validate_attributes(values, schemas=SIGN_UP_ATTRIBUTES)
        return cls(
            sub=sub,
            email=values.get("email", ""),
            given_name=checked[GIVEN_NAME.claim_name],
            family_name=checked[FAMILY_NAME.claim_name],
            client=checked[CLIENT_ATTRIBUTE.claim_name],
        )


def decode_jwt_claims(token: str) -> dict[str, Any]:
    # Decodes only; the token was verified by the identity store that issued it.
    parts = (token or "").split(".")
    if len(parts) < 2:
        raise ValueError("invalid JWT: expected at least 2 dot-separated parts")
    payload = parts[1]
    payload += "=" * (-len(payload) % 4)
    raw = base64.urlsafe_b64decode(payload.encode("utf-8"))
    val = json.loads(raw.decode("utf-8"))
    if not isinstance(val, dict):
        raise ValueError("invalid JWT payload: expected JSON object")
    return val


@dataclass(frozen=True)
class VerifiedToken:
    claims: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_jwt(cls, token: str) -> "VerifiedToken":
        return cls(claims=decode_jwt_claims(token))

    @property
    def sub(self) -> str:
        return str(self.claims.get("sub") or "")

    @property
    def audience(self) -> str:
        return str(self.claims.get("aud") or "")

    def attribute(self, claim_name: str) -> str | None:
        val = self.claims.get(claim_name)
        if val is None:
            return None
        return str(val)


class LocalIdentityStore:
    """In-process stand-in for the user pool.

    Tokens snapshot the record at authentication time, so updating an attribute
    only affects tokens (and therefore credentials) issued afterwards.
    """

    def __init__(self, *, client_id: str, issuer: str = "local-identity-store") -> None:
        self.client_id = client_id
        self.issuer = issuer
        self._records: dict[str, IdentityRecord] = {}

    def sign_up(
        self,
        *,
        email: str,
        given_name: str,
        family_name: str,
        client: str,
        sub: str | None = None,
    ) -> IdentityRecord:
        record = IdentityRecord.create(
            email=email,
            given_name=given_name,
            family_name=family_name,
            client=client,
            sub=sub,
        )
        if record.sub in self._records:
            raise ValidationError("sub", "identity already exists")
        self._records[record.sub] = record
        return record

    def get(self, sub: str) -> IdentityRecord:
        try:
            return self._records[sub]
        except KeyError:
            raise KeyError(f"unknown identity: {sub}") from None

    def update_attributes(self, sub: str, **changes: str) -> IdentityRecord:
        record = self.get(sub).update(**changes)
        self._records[sub] = record
        return record

    def authenticate(self, sub: str, *, now: float | None = None) -> VerifiedToken:
        record = self.get(sub)
        issued = int(now if now is not None else time.time())
        claims: dict[str, Any] = {
            **record.claims(),
            "aud": self.client_id,
            "iss": self.issuer,
            "token_use": "id",
            "auth_time": issued,
            "iat": issued,
        }
        return VerifiedToken(claims=claims)
