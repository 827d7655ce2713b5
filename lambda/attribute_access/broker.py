from __future__ import annotations

import hashlib
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any

from .errors import ExchangeDeniedError, NoRoleMatchedError, UnmappedAttributeError
from .identity import VerifiedToken
from .mapping import FederationMappingTable
from .roles import ExchangeOutcome, RoleSelectionRule
from .trust import AuthState, TrustPolicyStatement, amr_for

DEFAULT_DURATION_SECONDS = 3600


def token_roles(claims: dict[str, Any]) -> tuple[str, ...]:
    """Roles offered by the ``cognito:roles`` claim, which may be a list or a single string."""
    raw = claims.get("cognito:roles") or ()
    if isinstance(raw, str):
        raw = (raw,)
    return tuple(str(r) for r in raw)


@dataclass(frozen=True)
class IssuedCredential:
    identity_id: str
    role_id: str
    auth_state: AuthState
    session_tags: dict[str, str] = field(default_factory=dict)
    issued_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    expires_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def expired(self, now: datetime | None = None) -> bool:
        return (now or datetime.now(timezone.utc)) >= self.expires_at

    def to_json(self) -> dict[str, Any]:
        # Never includes secret material; only what policy evaluation sees.
        return {
            "identityId": self.identity_id,
            "roleId": self.role_id,
            "authState": self.auth_state.value,
            "sessionTags": dict(self.session_tags),
            "issuedAt": self.issued_at.isoformat(),
            "expiresAt": self.expires_at.isoformat(),
        }


def _identity_id(audience: str, sub: str) -> str:
    digest = hashlib.sha256(f"{audience}:{sub}".encode("utf-8")).hexdigest()
    return f"local:{digest[:32]}"


class CredentialBroker:
    """Model of the identity pool's token-for-credentials exchange.

    Stateless: each call reads only its arguments and the configuration held
    here, so concurrent exchanges need no coordination.
    """

    def __init__(
        self,
        *,
        mapping: FederationMappingTable,
        role_rule: RoleSelectionRule,
        trust_policies: dict[str, TrustPolicyStatement],
        duration_seconds: int = DEFAULT_DURATION_SECONDS,
        allow_unauthenticated: bool = False,
    ) -> None:
        if duration_seconds <= 0:
            raise ValueError("duration_seconds must be positive")
        self.mapping = mapping
        self.role_rule = role_rule
        self.trust_policies = dict(trust_policies)
        self.duration_seconds = duration_seconds
        self.allow_unauthenticated = allow_unauthenticated

    def exchange(
        self,
        token: VerifiedToken | None,
        audience: str,
        *,
        auth_state: AuthState = AuthState.AUTHENTICATED,
        now: datetime | None = None,
    ) -> IssuedCredential:
        if auth_state is AuthState.UNAUTHENTICATED and not self.allow_unauthenticated:
            raise ExchangeDeniedError("unauthenticated identities are disabled")
        if auth_state is AuthState.AUTHENTICATED and token is None:
            raise ExchangeDeniedError("authenticated exchange requires a verified token")

        claims = token.claims if token is not None else {}
        outcome = ExchangeOutcome(
            auth_state=auth_state,
            token_roles=token_roles(claims),
            preferred_role=(str(claims.get("cognito:preferred_role") or "") or None),
        )
        role_id = self.role_rule.select_role(outcome)

        trust = self.trust_policies.get(role_id)
        if trust is None:
            raise NoRoleMatchedError(f"selected role {role_id!r} has no trust policy")
        if not trust.permits(audience=audience, amr=amr_for(auth_state, provider=self.role_rule.identity_provider)):
            raise ExchangeDeniedError(f"trust policy of {role_id!r} rejects this exchange")

        session_tags: dict[str, str] = {}
        if auth_state is AuthState.AUTHENTICATED:
            # Fails closed: no mapping, no credential.
            session_tags = self.mapping.resolve_tags(token, audience)

        issued_at = now or datetime.now(timezone.utc)
        return IssuedCredential(
            identity_id=_identity_id(audience, token.sub if token is not None else "anonymous"),
            role_id=role_id,
            auth_state=auth_state,
            session_tags=session_tags,
            issued_at=issued_at,
            expires_at=issued_at + timedelta(seconds=self.duration_seconds),
        )


def check_session_tags(credential: IssuedCredential, mapping: FederationMappingTable, audience: str) -> dict[str, str]:
    """Post-exchange health check: every mapped tag is present and non-empty."""
    expected = [e.tag_key for e in mapping.for_audience(audience)]
    if not expected:
        raise UnmappedAttributeError(f"no federation mapping for audience {audience!r}")
    missing = [k for k in expected if not credential.session_tags.get(k)]
    if missing:
        raise UnmappedAttributeError(
            f"exchanged credentials carry no value for session tag(s) {missing}; federation mapping not applied?"
        )
    return {k: credential.session_tags[k] for k in expected}
