from __future__ import annotations

import fnmatch
from dataclasses import dataclass
from enum import Enum
from typing import Any

from .errors import PolicyConfigurationError

FEDERATED_PRINCIPAL = "cognito-identity.amazonaws.com"
AUDIENCE_CONDITION_KEY = "cognito-identity.amazonaws.com:aud"
AMR_CONDITION_KEY = "cognito-identity.amazonaws.com:amr"
TRUST_ACTIONS: tuple[str, ...] = ("sts:AssumeRoleWithWebIdentity", "sts:TagSession")
POLICY_VERSION = "2012-10-17"


class AuthState(str, Enum):
    AUTHENTICATED = "authenticated"
    UNAUTHENTICATED = "unauthenticated"


@dataclass(frozen=True)
class TrustPolicyStatement:
    audience: str
    auth_state: AuthState
    actions: tuple[str, ...] = TRUST_ACTIONS
    effect: str = "Allow"

    def __post_init__(self) -> None:
        if not isinstance(self.audience, str) or not self.audience.strip():
            raise PolicyConfigurationError(
                "trust statement without an audience condition would let any identity pool assume the role"
            )
        if tuple(self.actions) != TRUST_ACTIONS:
            raise PolicyConfigurationError(f"trust statement must grant exactly {list(TRUST_ACTIONS)}")
        if not isinstance(self.auth_state, AuthState):
            raise PolicyConfigurationError(f"unknown authentication state: {self.auth_state!r}")

    def to_json(self) -> dict[str, Any]:
        return {
            "Effect": self.effect,
            "Action": list(self.actions),
            "Condition": {
                "StringEquals": {AUDIENCE_CONDITION_KEY: self.audience},
                "ForAnyValue:StringLike": {AMR_CONDITION_KEY: self.auth_state.value},
            },
            "Principal": {"Federated": FEDERATED_PRINCIPAL},
        }

    def to_document(self) -> dict[str, Any]:
        return {"Version": POLICY_VERSION, "Statement": [self.to_json()]}

    def permits(self, *, audience: str, amr: list[str] | tuple[str, ...], action: str = TRUST_ACTIONS[0]) -> bool:
        """Evaluate this statement for a web-identity request carrying ``amr`` values."""
        if self.effect != "Allow" or action not in self.actions:
            return False
        if audience != self.audience:
            return False
        # ForAnyValue:StringLike: at least one request value matches the pattern.
        return any(fnmatch.fnmatchcase(str(v), self.auth_state.value) for v in amr)


def build_trust_policy(audience: str, auth_state: AuthState | str) -> TrustPolicyStatement:
    try:
        state = AuthState(auth_state)
    except ValueError:
        raise PolicyConfigurationError(f"unknown authentication state: {auth_state!r}") from None
    return TrustPolicyStatement(audience=audience, auth_state=state)


def build_trust_policies(audience: str) -> dict[AuthState, TrustPolicyStatement]:
    # Both states always get a statement so the broker never evaluates an
    # unattached role, even with unauthenticated identities disabled.
    return {state: build_trust_policy(audience, state) for state in AuthState}


def amr_for(auth_state: AuthState, *, provider: str = "") -> list[str]:
    """``amr`` values the broker puts on a web-identity token for ``auth_state``."""
    if auth_state is AuthState.UNAUTHENTICATED:
        return [AuthState.UNAUTHENTICATED.value]
    out = [AuthState.AUTHENTICATED.value]
    if provider:
        out.append(provider)
    return out
