from datetime import datetime, timedelta, timezone

import pytest

from attribute_access.access import build_access_policy
from attribute_access.broker import CredentialBroker, check_session_tags, token_roles
from attribute_access.errors import ExchangeDeniedError, NoRoleMatchedError, UnmappedAttributeError
from attribute_access.evaluation import PolicyEvaluator
from attribute_access.identity import LocalIdentityStore, VerifiedToken
from attribute_access.mapping import FederationMappingTable
from attribute_access.roles import AmbiguousRoleResolution, RoleSelectionRule
from attribute_access.trust import AuthState, build_trust_policies

POOL = "us-east-1:11111111-2222-3333-4444-555555555555"
BUCKET_ARN = "arn:aws:s3:::shared-bucket"
AUTH_ROLE = "arn:aws:iam::123456789012:role/Authenticated"
UNAUTH_ROLE = "arn:aws:iam::123456789012:role/Unauthenticated"
NOW = datetime(2026, 10, 17, 12, 0, tzinfo=timezone.utc)


def _broker(*, mapping=None, audience=POOL, **kwargs) -> CredentialBroker:
    trust = build_trust_policies(audience)
    return CredentialBroker(
        mapping=mapping or FederationMappingTable.single(audience=POOL),
        role_rule=RoleSelectionRule(
            roles={AuthState.AUTHENTICATED: AUTH_ROLE, AuthState.UNAUTHENTICATED: UNAUTH_ROLE},
            identity_provider="cognito-idp.us-east-1.amazonaws.com/us-east-1_abc:client-1",
            ambiguous_role_resolution=AmbiguousRoleResolution.AUTHENTICATED_ROLE,
        ),
        trust_policies={
            AUTH_ROLE: trust[AuthState.AUTHENTICATED],
            UNAUTH_ROLE: trust[AuthState.UNAUTHENTICATED],
        },
        **kwargs,
    )


def _store() -> LocalIdentityStore:
    store = LocalIdentityStore(client_id="client-1")
    store.sign_up(email="u1@example.com", given_name="U", family_name="One", client="acme", sub="u1")
    store.sign_up(email="u2@example.com", given_name="U", family_name="Two", client="globex", sub="u2")
    return store


def test_end_to_end_user_reaches_only_own_prefix():
    store = _store()
    broker = _broker()
    evaluator = PolicyEvaluator(build_access_policy(BUCKET_ARN, "client"))

    cred = broker.exchange(store.authenticate("u1"), POOL, now=NOW)

    assert cred.role_id == AUTH_ROLE
    assert cred.session_tags == {"client": "acme"}
    assert cred.expires_at == NOW + timedelta(hours=1)
    assert check_session_tags(cred, broker.mapping, POOL) == {"client": "acme"}

    assert evaluator.is_allowed("s3:PutObject", BUCKET_ARN + "/acme/x.txt", cred.session_tags)
    assert not evaluator.is_allowed("s3:GetObject", BUCKET_ARN + "/other/x.txt", cred.session_tags)


def test_two_users_are_isolated():
    store = _store()
    broker = _broker()
    evaluator = PolicyEvaluator(build_access_policy(BUCKET_ARN, "client"))
    c1 = broker.exchange(store.authenticate("u1"), POOL, now=NOW)
    c2 = broker.exchange(store.authenticate("u2"), POOL, now=NOW)

    assert c1.identity_id != c2.identity_id
    assert not evaluator.is_allowed("s3:GetObject", BUCKET_ARN + "/globex/k", c1.session_tags)
    assert not evaluator.is_allowed("s3:GetObject", BUCKET_ARN + "/acme/k", c2.session_tags)


def test_identity_id_is_stable_per_user_and_audience():
    store = _store()
    broker = _broker()
    a = broker.exchange(store.authenticate("u1", now=1), POOL, now=NOW)
    b = broker.exchange(store.authenticate("u1", now=2), POOL, now=NOW)
    assert a.identity_id == b.identity_id
    assert a.identity_id.startswith("local:")


def test_attribute_change_only_affects_later_exchanges():
    store = _store()
    broker = _broker()
    evaluator = PolicyEvaluator(build_access_policy(BUCKET_ARN, "client"))
    old = broker.exchange(store.authenticate("u1"), POOL, now=NOW)

    store.update_attributes("u1", client="initech")
    new = broker.exchange(store.authenticate("u1"), POOL, now=NOW)

    # No live revocation: the earlier credential keeps its tag until expiry.
    assert old.session_tags == {"client": "acme"}
    assert evaluator.is_allowed("s3:GetObject", BUCKET_ARN + "/acme/k", old.session_tags)
    assert new.session_tags == {"client": "initech"}
    assert not old.expired(NOW + timedelta(minutes=59))
    assert old.expired(NOW + timedelta(hours=1))


def test_unmapped_audience_fails_closed():
    store = _store()
    other_pool = "us-east-1:99999999-0000-0000-0000-000000000000"
    broker = _broker(audience=other_pool)
    with pytest.raises(UnmappedAttributeError):
        broker.exchange(store.authenticate("u1"), other_pool)


def test_token_without_attribute_fails_closed():
    broker = _broker()
    with pytest.raises(UnmappedAttributeError):
        broker.exchange(VerifiedToken(claims={"sub": "u9", "aud": "client-1"}), POOL)


def test_trust_policy_rejects_other_audience():
    broker = _broker()
    with pytest.raises(ExchangeDeniedError):
        broker.exchange(_store().authenticate("u1"), "us-east-1:not-this-pool")


def test_unauthenticated_and_missing_token_are_denied():
    broker = _broker()
    with pytest.raises(ExchangeDeniedError, match="disabled"):
        broker.exchange(None, POOL, auth_state=AuthState.UNAUTHENTICATED)
    with pytest.raises(ExchangeDeniedError, match="verified token"):
        broker.exchange(None, POOL)


def test_unauthenticated_exchange_carries_no_tags_when_enabled():
    broker = _broker(allow_unauthenticated=True)
    cred = broker.exchange(None, POOL, auth_state=AuthState.UNAUTHENTICATED, now=NOW)
    assert cred.role_id == UNAUTH_ROLE
    assert cred.session_tags == {}
    evaluator = PolicyEvaluator(build_access_policy(BUCKET_ARN, "client"))
    assert not evaluator.is_allowed("s3:GetObject", BUCKET_ARN + "/acme/k", cred.session_tags)


def test_token_role_without_trust_policy_is_rejected():
    token = VerifiedToken(claims={"sub": "u1", "custom:client": "acme", "cognito:preferred_role": "arn:unknown"})
    with pytest.raises(NoRoleMatchedError):
        _broker().exchange(token, POOL)


def test_check_session_tags_detects_missing_mapping():
    broker = _broker(allow_unauthenticated=True)
    cred = broker.exchange(None, POOL, auth_state=AuthState.UNAUTHENTICATED, now=NOW)
    with pytest.raises(UnmappedAttributeError, match="federation mapping not applied"):
        check_session_tags(cred, broker.mapping, POOL)
    with pytest.raises(UnmappedAttributeError):
        check_session_tags(cred, broker.mapping, "us-east-1:other")


def test_credential_json_has_no_secret_material():
    cred = _broker().exchange(_store().authenticate("u1"), POOL, now=NOW)
    out = cred.to_json()
    assert out["sessionTags"] == {"client": "acme"}
    assert out["authState"] == "authenticated"
    assert not {"AccessKeyId", "SecretKey", "SessionToken"} & set(out)


def test_duration_must_be_positive():
    with pytest.raises(ValueError):
        _broker(duration_seconds=0)


def test_single_string_roles_claim_is_one_role():
    assert token_roles({"cognito:roles": AUTH_ROLE}) == (AUTH_ROLE,)
    assert token_roles({"cognito:roles": [AUTH_ROLE, UNAUTH_ROLE]}) == (AUTH_ROLE, UNAUTH_ROLE)
    assert token_roles({}) == ()

    broker = _broker()
    strict = CredentialBroker(
        mapping=broker.mapping,
        role_rule=RoleSelectionRule(
            roles=broker.role_rule.roles,
            ambiguous_role_resolution=AmbiguousRoleResolution.DENY,
        ),
        trust_policies=broker.trust_policies,
    )
    token = VerifiedToken(claims={**_store().authenticate("u1").claims, "cognito:roles": AUTH_ROLE})
    cred = strict.exchange(token, POOL, now=NOW)
    assert cred.role_id == AUTH_ROLE
    assert cred.session_tags == {"client": "acme"}
