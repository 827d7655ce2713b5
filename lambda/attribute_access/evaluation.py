"""Local stand-in for the resource policy engine.

Only what the partition scheme relies on is modelled: Allow/Deny statements,
IAM wildcards in actions and resources, and ``${aws:PrincipalTag/...}``
substitution from session tags. Substitution goes through a ``Resolver`` so
tests can plug in their own.
"""

from __future__ import annotations

import re
from enum import Enum
from typing import TYPE_CHECKING, Callable, Iterable, Mapping, Optional

if TYPE_CHECKING:
    from .access import AccessPolicyStatement

Resolver = Callable[[str, Mapping[str, str]], Optional[str]]

_PRINCIPAL_TAG_RE = re.compile(r"\$\{aws:PrincipalTag/([^}]+)\}")
_WILDCARDS = frozenset("*?")


class Decision(str, Enum):
    ALLOW = "allow"
    IMPLICIT_DENY = "implicit_deny"
    EXPLICIT_DENY = "explicit_deny"

    @property
    def allowed(self) -> bool:
        return self is Decision.ALLOW


def substitute(pattern: str, session_tags: Mapping[str, str]) -> str | None:
    """Resolve principal tag variables; ``None`` if any referenced tag is absent."""
    missing = False

    def _sub(m: re.Match) -> str:
        nonlocal missing
        value = session_tags.get(m.group(1))
        if not value:
            missing = True
            return ""
        return value

    resolved = _PRINCIPAL_TAG_RE.sub(_sub, pattern)
    return None if missing else resolved


def referenced_tags(pattern: str) -> list[str]:
    return _PRINCIPAL_TAG_RE.findall(pattern)


def _wildcard_regex(pattern: str, *, ignore_case: bool) -> re.Pattern:
    parts = []
    for ch in pattern:
        if ch == "*":
            parts.append(".*")
        elif ch == "?":
            parts.append(".")
        else:
            parts.append(re.escape(ch))
    return re.compile("".join(parts), re.IGNORECASE if ignore_case else 0)


def action_matches(pattern: str, action: str) -> bool:
    return bool(_wildcard_regex(pattern, ignore_case=True).fullmatch(action))


def resource_matches(pattern: str, resource: str) -> bool:
    return bool(_wildcard_regex(pattern, ignore_case=False).fullmatch(resource))


def _statement_matches(
    statement: AccessPolicyStatement,
    action: str,
    resource: str,
    session_tags: Mapping[str, str],
    resolver: Resolver,
) -> bool:
    if not any(action_matches(a, action) for a in statement.actions):
        return False
    for pattern in statement.resources:
        tags = referenced_tags(pattern)
        if any(_WILDCARDS & set(session_tags.get(k) or "") for k in tags):
            # A tag value must never widen the pattern it is substituted into.
            continue
        resolved = resolver(pattern, session_tags) if tags else pattern
        if resolved is None:
            continue
        if resource_matches(resolved, resource):
            return True
    return False


def statement_permits(
    statement: AccessPolicyStatement,
    action: str,
    resource: str,
    session_tags: Mapping[str, str],
    *,
    resolver: Resolver = substitute,
) -> bool:
    return statement.effect == "Allow" and _statement_matches(
        statement, action, resource, session_tags, resolver
    )


class PolicyEvaluator:
    def __init__(self, statements: Iterable[AccessPolicyStatement], *, resolver: Resolver = substitute) -> None:
        self.statements = list(statements)
        self.resolver = resolver

    def evaluate(self, action: str, resource: str, session_tags: Mapping[str, str]) -> Decision:
        allowed = False
        for stmt in self.statements:
            if not _statement_matches(stmt, action, resource, session_tags, self.resolver):
                continue
            if stmt.effect == "Deny":
                return Decision.EXPLICIT_DENY
            if stmt.effect == "Allow":
                allowed = True
        return Decision.ALLOW if allowed else Decision.IMPLICIT_DENY

    def is_allowed(self, action: str, resource: str, session_tags: Mapping[str, str]) -> bool:
        return self.evaluate(action, resource, session_tags).allowed
