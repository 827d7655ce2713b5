import dataclasses

import pytest

from attribute_access.errors import PolicyConfigurationError, UnmappedAttributeError
from attribute_access.identity import VerifiedToken
from attribute_access.mapping import (
    MAPPING_DOCUMENT_KIND,
    FederationMapping,
    FederationMappingTable,
    diff_principal_tags,
    validate_tag_key,
)

POOL = "us-east-1:11111111-2222-3333-4444-555555555555"


def _token(**claims) -> VerifiedToken:
    return VerifiedToken(claims={"sub": "u1", **claims})


def test_single_maps_custom_client_to_client_tag():
    table = FederationMappingTable.single(audience=POOL)
    assert table.to_principal_tags(POOL) == {"client": "custom:client"}
    assert table.resolve_tags(_token(**{"custom:client": "acme"}), POOL) == {"client": "acme"}
    assert table.resolve_tag(_token(**{"custom:client": "acme"}), POOL) == ("client", "acme")


def test_resolve_fails_closed():
    table = FederationMappingTable.single(audience=POOL)
    with pytest.raises(UnmappedAttributeError, match="no federation mapping"):
        table.resolve_tags(_token(**{"custom:client": "acme"}), "us-east-1:other-pool")
    with pytest.raises(UnmappedAttributeError):
        table.resolve_tags(_token(), POOL)
    with pytest.raises(UnmappedAttributeError):
        table.resolve_tags(_token(**{"custom:client": ""}), POOL)


def test_duplicate_audience_and_tag_is_rejected():
    entry = FederationMapping(attribute_name="custom:client", tag_key="client", audience=POOL)
    other = FederationMapping(attribute_name="custom:tenant", tag_key="client", audience=POOL)
    with pytest.raises(PolicyConfigurationError, match="duplicate"):
        FederationMappingTable(entries=(entry, other))


def test_same_tag_key_on_two_audiences_is_allowed():
    first = FederationMapping(attribute_name="custom:client", tag_key="client", audience=POOL)
    second = FederationMapping(attribute_name="custom:client", tag_key="client", audience="us-east-1:other")
    table = FederationMappingTable(entries=(first, second))
    assert table.for_audience(POOL) == [first]
    assert table.for_audience("us-east-1:other") == [second]
    assert [f.name for f in dataclasses.fields(table)] == ["entries", "version", "identity_provider"]


def test_resolve_tag_requires_exactly_one_tag():
    table = FederationMappingTable(
        entries=(
            FederationMapping(attribute_name="custom:client", tag_key="client", audience=POOL),
            FederationMapping(attribute_name="custom:region", tag_key="region", audience=POOL),
        )
    )
    token = _token(**{"custom:client": "acme", "custom:region": "eu"})
    assert table.resolve_tags(token, POOL) == {"client": "acme", "region": "eu"}
    with pytest.raises(PolicyConfigurationError):
        table.resolve_tag(token, POOL)


@pytest.mark.parametrize("tag_key", ["", "aws:client", "AWS:x", "bad{key}", "k" * 129])
def test_invalid_tag_keys(tag_key):
    with pytest.raises(PolicyConfigurationError):
        validate_tag_key(tag_key)


def test_entries_need_attribute_and_audience():
    with pytest.raises(PolicyConfigurationError):
        FederationMapping(attribute_name="", tag_key="client", audience=POOL)
    with pytest.raises(PolicyConfigurationError):
        FederationMapping(attribute_name="custom:client", tag_key="client", audience=" ")


def test_document_round_trip():
    table = FederationMappingTable.single(
        audience=POOL,
        version="2026-10-17",
        identity_provider="cognito-idp.us-east-1.amazonaws.com/us-east-1_abc",
    )
    doc = table.to_document()
    assert doc["kind"] == MAPPING_DOCUMENT_KIND
    assert doc["entries"] == [{"attributeName": "custom:client", "tagKey": "client", "audience": POOL}]
    assert FederationMappingTable.loads(table.dumps()) == table
    assert FederationMappingTable.loads(table.dumps(pretty=False)) == table


@pytest.mark.parametrize(
    "text",
    [
        "not json",
        '{"kind": "other", "entries": []}',
        '{"kind": "%s", "entries": []}' % MAPPING_DOCUMENT_KIND,
        '{"kind": "%s", "entries": ["x"]}' % MAPPING_DOCUMENT_KIND,
    ],
)
def test_loads_rejects_malformed_documents(text):
    with pytest.raises(PolicyConfigurationError):
        FederationMappingTable.loads(text)


def test_diff_principal_tags():
    expected = {"client": "custom:client"}
    assert diff_principal_tags(expected, {"client": "custom:client"}, use_defaults=False) == []

    findings = diff_principal_tags(expected, {})
    assert "no principal tag mapping is applied" in findings
    assert any("'client' is not mapped" in f for f in findings)

    findings = diff_principal_tags(expected, {"client": "custom:tenant", "extra": "email"}, use_defaults=True)
    assert any("default attribute mappings" in f for f in findings)
    assert any("maps 'custom:tenant'" in f for f in findings)
    assert any("unexpected tag 'extra'" in f for f in findings)
