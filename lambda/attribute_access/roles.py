from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from .errors import NoRoleMatchedError
from .trust import AuthState


class AmbiguousRoleResolution(str, Enum):
    AUTHENTICATED_ROLE = "AuthenticatedRole"
    DENY = "Deny"


@dataclass(frozen=True)
class ExchangeOutcome:
    auth_state: AuthState
    # cognito:roles / cognito:preferred_role claims from the verified token.
    token_roles: tuple[str, ...] = ()
    preferred_role: str | None = None


@dataclass(frozen=True)
class RoleSelectionRule:
    roles: dict[AuthState, str] = field(default_factory=dict)
    identity_provider: str = ""
    ambiguous_role_resolution: AmbiguousRoleResolution = AmbiguousRoleResolution.AUTHENTICATED_ROLE

    def select_role(self, outcome: ExchangeOutcome) -> str:
        if outcome.auth_state is AuthState.UNAUTHENTICATED:
            return self._configured(AuthState.UNAUTHENTICATED)
        if outcome.preferred_role:
            return outcome.preferred_role
        distinct = sorted(set(outcome.token_roles))
        if len(distinct) == 1:
            return distinct[0]
        return self._resolve_ambiguous(len(distinct))

    def _resolve_ambiguous(self, candidates: int) -> str:
        if self.ambiguous_role_resolution is AmbiguousRoleResolution.AUTHENTICATED_ROLE:
            return self._configured(AuthState.AUTHENTICATED)
        raise NoRoleMatchedError(
            f"{candidates} candidate roles in token and ambiguous role resolution is Deny"
        )

    def _configured(self, state: AuthState) -> str:
        role = (self.roles.get(state) or "").strip()
        if not role:
            raise NoRoleMatchedError(f"no {state.value} role attached")
        return role

    def to_role_attachment(self) -> dict[str, Any]:
        """Properties for AWS::Cognito::IdentityPoolRoleAttachment (minus the pool id)."""
        out: dict[str, Any] = {
            "roles": {state.value: arn for state, arn in self.roles.items()},
        }
        if self.identity_provider:
            out["roleMappings"] = {
                "mapping": {
                    "type": "Token",
                    "ambiguousRoleResolution": self.ambiguous_role_resolution.value,
                    "identityProvider": self.identity_provider,
                }
            }
        return out
