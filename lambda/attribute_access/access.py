from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from .errors import PolicyConfigurationError
from .evaluation import action_matches
from .mapping import validate_tag_key
from .trust import POLICY_VERSION

LIST_ACTIONS: tuple[str, ...] = ("s3:ListBucket",)
READ_WRITE_ACTIONS: tuple[str, ...] = ("s3:GetObject*", "s3:PutObject*")

# Actions that touch object data and therefore must be partitioned by tag.
OBJECT_ACTIONS: tuple[str, ...] = (
    "s3:GetObject",
    "s3:GetObjectAcl",
    "s3:GetObjectAttributes",
    "s3:GetObjectTagging",
    "s3:GetObjectVersion",
    "s3:PutObject",
    "s3:PutObjectAcl",
    "s3:PutObjectTagging",
    "s3:DeleteObject",
    "s3:DeleteObjectVersion",
    "s3:AbortMultipartUpload",
    "s3:ListMultipartUploadParts",
    "s3:RestoreObject",
)


def principal_tag_variable(tag_key: str) -> str:
    return "${aws:PrincipalTag/" + validate_tag_key(tag_key) + "}"


@dataclass(frozen=True)
class AccessPolicyStatement:
    sid: str
    actions: tuple[str, ...]
    resources: tuple[str, ...]
    effect: str = "Allow"

    def to_json(self) -> dict[str, Any]:
        return {
            "Sid": self.sid,
            "Effect": self.effect,
            "Action": list(self.actions),
            "Resource": list(self.resources),
        }

    def touches_object_data(self) -> bool:
        return any(action_matches(a, obj) for a in self.actions for obj in OBJECT_ACTIONS)


def partition_pattern(resource_id: str, tag_key: str) -> str:
    return f"{resource_id}/{principal_tag_variable(tag_key)}/*"


def build_access_policy(resource_id: str, tag_key: str) -> list[AccessPolicyStatement]:
    """Statements for the shared bucket.

    The tag variable is left in the pattern for the policy engine to resolve at
    request time, so one document serves every tenant.
    """
    if not isinstance(resource_id, str) or not resource_id.strip():
        raise PolicyConfigurationError("access policy needs a resource id")
    if resource_id.endswith("/"):
        raise PolicyConfigurationError(f"resource id must not end with '/': {resource_id!r}")
    statements = [
        AccessPolicyStatement(sid="ListObjects", actions=LIST_ACTIONS, resources=(resource_id,)),
        AccessPolicyStatement(
            sid="PartitionReadWrite",
            actions=READ_WRITE_ACTIONS,
            resources=(partition_pattern(resource_id, tag_key),),
        ),
    ]
    check_partitioned(statements, tag_key, resource_id=resource_id)
    return statements


def _partition_violation(resource: str, variable: str, resource_id: str | None) -> str | None:
    if resource.count(variable) != 1:
        return f"without exactly one {variable}"
    head, tail = resource.split(variable)
    # The tag must be the first path segment after a literal bucket prefix.
    if not head.endswith("/") or not head[:-1] or any(ch in head for ch in "*?"):
        return f"with {variable} not directly under a literal bucket"
    if resource_id is not None and head != resource_id + "/":
        return f"outside {resource_id}/{variable}/"
    if not tail.startswith("/"):
        return f"with {variable} not followed by '/'"
    return None


def check_partitioned(
    statements: list[AccessPolicyStatement], tag_key: str, *, resource_id: str | None = None
) -> None:
    """Reject any Allow on object data whose resource is not ``<bucket>/<tag>/...``."""
    variable = principal_tag_variable(tag_key)
    for stmt in statements:
        if stmt.effect != "Allow" or not stmt.touches_object_data():
            continue
        for resource in stmt.resources:
            problem = _partition_violation(resource, variable, resource_id)
            if problem:
                raise PolicyConfigurationError(
                    f"statement {stmt.sid!r} grants object access on {resource!r} {problem}"
                )


def to_policy_document(statements: list[AccessPolicyStatement]) -> dict[str, Any]:
    return {"Version": POLICY_VERSION, "Statement": [s.to_json() for s in statements]}
