from __future__ import annotations

import re
from dataclasses import dataclass

from .errors import ValidationError

# Values end up as an S3 key segment and an STS session tag value; keep to the
# characters both accept and never allow path or policy-variable syntax.
PATH_SEGMENT_PATTERN = r"[A-Za-z0-9][A-Za-z0-9_.+=@-]*"


@dataclass(frozen=True)
class AttributeSchema:
    name: str
    data_type: str = "String"
    min_len: int = 0
    max_len: int = 2048
    mutable: bool = True
    required: bool = False
    custom: bool = False
    pattern: str | None = None

    def __post_init__(self) -> None:
        if self.data_type != "String":
            raise ValueError(f"unsupported attribute type: {self.data_type}")
        if self.min_len < 0 or self.max_len < self.min_len:
            raise ValueError(f"invalid length bounds for {self.name}: {self.min_len}..{self.max_len}")

    @property
    def claim_name(self) -> str:
        return f"custom:{self.name}" if self.custom else self.name

    def validate(self, value: object) -> str:
        """Return ``value`` unchanged if it satisfies the schema.

        Out-of-bounds values are rejected, never truncated or escaped: two
        tenants whose values only differ past ``max_len`` would otherwise share
        a partition.
        """
        if value is None:
            if self.required:
                raise ValidationError(self.claim_name, "value is required")
            raise ValidationError(self.claim_name, "value is missing")
        if not isinstance(value, str):
            raise ValidationError(self.claim_name, f"expected string, got {type(value).__name__}")
        if len(value) < self.min_len:
            raise ValidationError(
                self.claim_name, f"must be at least {self.min_len} characters (got {len(value)})"
            )
        if len(value) > self.max_len:
            raise ValidationError(
                self.claim_name, f"must be at most {self.max_len} characters (got {len(value)})"
            )
        if self.pattern is not None and not re.fullmatch(self.pattern, value):
            raise ValidationError(self.claim_name, "contains characters that are not allowed")
        return value

    def is_valid(self, value: object) -> bool:
        try:
            self.validate(value)
        except ValidationError:
            return False
        return True


CLIENT_ATTRIBUTE = AttributeSchema(
    name="client",
    min_len=3,
    max_len=60,
    mutable=True,
    required=True,
    custom=True,
    pattern=PATH_SEGMENT_PATTERN,
)

GIVEN_NAME = AttributeSchema(name="given_name", min_len=1, max_len=256, required=True)
FAMILY_NAME = AttributeSchema(name="family_name", min_len=1, max_len=256, required=True)

SIGN_UP_ATTRIBUTES: tuple[AttributeSchema, ...] = (GIVEN_NAME, FAMILY_NAME, CLIENT_ATTRIBUTE)


def attribute_by_claim(claim_name: str) -> AttributeSchema | None:
    for schema in SIGN_UP_ATTRIBUTES:
        if schema.claim_name == claim_name:
            return schema
    return None


def validate_attributes(
    attributes: dict[str, str],
    *,
    schemas: tuple[AttributeSchema, ...] = SIGN_UP_ATTRIBUTES,
    partial: bool = False,
) -> dict[str, str]:
    """Validate a claim-name keyed mapping; with ``partial`` only present keys are checked."""
    out: dict[str, str] = {}
    for schema in schemas:
        if schema.claim_name not in attributes:
            if partial:
                continue
            if schema.required:
                raise ValidationError(schema.claim_name, "value is required")
            continue
        out[schema.claim_name] = schema.validate(attributes[schema.claim_name])
    return out
