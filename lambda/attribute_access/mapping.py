from __future__ import annotations

import json
import re
from dataclasses import dataclass
from typing import Any

from .errors import PolicyConfigurationError, UnmappedAttributeError
from .identity import VerifiedToken
from .schema import CLIENT_ATTRIBUTE

MAPPING_DOCUMENT_KIND = "attribute-access.federation-mapping.v1"
DEFAULT_TAG_KEY = CLIENT_ATTRIBUTE.name

_TAG_KEY_RE = re.compile(r"[\w .:/=+\-@]{1,128}")


def validate_tag_key(tag_key: str) -> str:
    if not _TAG_KEY_RE.fullmatch(tag_key or ""):
        raise PolicyConfigurationError(f"invalid session tag key: {tag_key!r}")
    if tag_key.lower().startswith("aws:"):
        raise PolicyConfigurationError(f"session tag key may not use the aws: prefix: {tag_key!r}")
    return tag_key


@dataclass(frozen=True)
class FederationMapping:
    attribute_name: str
    tag_key: str
    audience: str

    def __post_init__(self) -> None:
        if not (self.attribute_name or "").strip():
            raise PolicyConfigurationError("federation mapping needs a token attribute name")
        if not (self.audience or "").strip():
            raise PolicyConfigurationError("federation mapping needs an audience")
        validate_tag_key(self.tag_key)

    def to_json(self) -> dict[str, str]:
        return {
            "attributeName": self.attribute_name,
            "tagKey": self.tag_key,
            "audience": self.audience,
        }


@dataclass(frozen=True)
class FederationMappingTable:
    """Explicit, inspectable attribute-to-tag table for one or more audiences.

    Applied to the broker out of band; see ``diff_principal_tags`` for the
    check that it actually was.
    """

    entries: tuple[FederationMapping, ...] = ()
    version: str = ""
    identity_provider: str = ""

    def __post_init__(self) -> None:
        seen: set[tuple[str, str]] = set()
        for entry in self.entries:
            key = (entry.audience, entry.tag_key)
            if key in seen:
                raise PolicyConfigurationError(
                    f"duplicate federation mapping for audience {entry.audience!r} and tag key {entry.tag_key!r}"
                )
            seen.add(key)

    @classmethod
    def single(
        cls,
        *,
        audience: str,
        tag_key: str = DEFAULT_TAG_KEY,
        attribute_name: str = CLIENT_ATTRIBUTE.claim_name,
        version: str = "",
        identity_provider: str = "",
    ) -> "FederationMappingTable":
        return cls(
            entries=(FederationMapping(attribute_name=attribute_name, tag_key=tag_key, audience=audience),),
            version=version,
            identity_provider=identity_provider,
        )

    def for_audience(self, audience: str) -> list[FederationMapping]:
        return [e for e in self.entries if e.audience == audience]

    def resolve_tags(self, token: VerifiedToken, audience: str) -> dict[str, str]:
        entries = self.for_audience(audience)
        if not entries:
            raise UnmappedAttributeError(f"no federation mapping for audience {audience!r}")
        tags: dict[str, str] = {}
        for entry in entries:
            value = token.attribute(entry.attribute_name)
            if not value:
                raise UnmappedAttributeError(
                    f"verified token carries no {entry.attribute_name!r} for tag {entry.tag_key!r}"
                )
            tags[entry.tag_key] = value
        return tags

    def resolve_tag(self, token: VerifiedToken, audience: str) -> tuple[str, str]:
        tags = self.resolve_tags(token, audience)
        if len(tags) != 1:
            raise PolicyConfigurationError(
                f"audience {audience!r} maps {len(tags)} tags; expected exactly one"
            )
        (tag_key, tag_value), = tags.items()
        return tag_key, tag_value

    def to_principal_tags(self, audience: str) -> dict[str, str]:
        """Shape of ``PrincipalTags`` for cognito-identity SetPrincipalTagAttributeMap."""
        return {e.tag_key: e.attribute_name for e in self.for_audience(audience)}

    def to_document(self) -> dict[str, Any]:
        return {
            "kind": MAPPING_DOCUMENT_KIND,
            "version": self.version,
            "identityProviderName": self.identity_provider,
            "entries": [e.to_json() for e in self.entries],
        }

    def dumps(self, *, pretty: bool = True) -> str:
        if pretty:
            return json.dumps(self.to_document(), indent=2, sort_keys=True) + "\n"
        return json.dumps(self.to_document(), separators=(",", ":"), sort_keys=True)

    @classmethod
    def from_document(cls, doc: dict[str, Any]) -> "FederationMappingTable":
        if not isinstance(doc, dict):
            raise PolicyConfigurationError("federation mapping document must be a JSON object")
        kind = str(doc.get("kind") or "")
        if kind != MAPPING_DOCUMENT_KIND:
            raise PolicyConfigurationError(f"unexpected federation mapping kind: {kind!r}")
        raw_entries = doc.get("entries")
        if not isinstance(raw_entries, list) or not raw_entries:
            raise PolicyConfigurationError("federation mapping document has no entries")
        entries: list[FederationMapping] = []
        for raw in raw_entries:
            if not isinstance(raw, dict):
                raise PolicyConfigurationError("federation mapping entry must be a JSON object")
            entries.append(
                FederationMapping(
                    attribute_name=str(raw.get("attributeName") or ""),
                    tag_key=str(raw.get("tagKey") or ""),
                    audience=str(raw.get("audience") or ""),
                )
            )
        return cls(
            entries=tuple(entries),
            version=str(doc.get("version") or ""),
            identity_provider=str(doc.get("identityProviderName") or ""),
        )

    @classmethod
    def loads(cls, text: str) -> "FederationMappingTable":
        try:
            doc = json.loads(text)
        except ValueError as e:
            raise PolicyConfigurationError(f"invalid federation mapping document: {e}") from e
        return cls.from_document(doc)


def diff_principal_tags(
    expected: dict[str, str],
    observed: dict[str, str] | None,
    *,
    use_defaults: bool | None = None,
) -> list[str]:
    findings: list[str] = []
    if use_defaults:
        findings.append("broker uses default attribute mappings instead of the custom mapping")
    observed = observed or {}
    if not observed:
        findings.append("no principal tag mapping is applied")
    for tag_key, attribute_name in sorted(expected.items()):
        got = observed.get(tag_key)
        if got is None:
            findings.append(f"tag {tag_key!r} is not mapped (expected {attribute_name!r})")
        elif got != attribute_name:
            findings.append(f"tag {tag_key!r} maps {got!r} (expected {attribute_name!r})")
    for tag_key in sorted(set(observed) - set(expected)):
        findings.append(f"unexpected tag {tag_key!r} maps {observed[tag_key]!r}")
    return findings
