from __future__ import annotations

import argparse
import sys
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from botocore.exceptions import ClientError

from attribute_access.access import build_access_policy, to_policy_document
from attribute_access.config import FrontendConfig
from attribute_access.errors import AttributeAccessError, ValidationError
from attribute_access.evaluation import PolicyEvaluator
from attribute_access.identity import IdentityRecord, decode_jwt_claims
from attribute_access.mapping import DEFAULT_TAG_KEY, FederationMappingTable, diff_principal_tags
from attribute_access.roles import AmbiguousRoleResolution, RoleSelectionRule
from attribute_access.schema import CLIENT_ATTRIBUTE
from attribute_access.trust import AuthState, build_trust_policies

from .cli_shared import (
    GlobalOpts,
    OpError,
    UsageError,
    _account_session,
    _cf_outputs,
    _client_error_code,
    _eprint,
    _issued_session,
    _print_json,
    _read_json_file,
    _require_str,
    _stack_output_value,
)

SMOKE_OBJECT_NAME = ".attribute-access-smoke"


@dataclass
class AdminContext:
    session: Any
    stack: str
    _outputs: dict[str, str] = field(default_factory=dict)

    def outputs(self) -> dict[str, str]:
        if self._outputs:
            return self._outputs
        self._outputs = {
            str(o.get("OutputKey", "")).strip(): str(o.get("OutputValue", "")).strip()
            for o in _cf_outputs(self.session, stack=self.stack)
        }
        return self._outputs

    def output(self, key: str) -> str | None:
        return self.outputs().get(key)

    def require_output(self, key: str) -> str:
        v = self.output(key)
        if not v:
            raise OpError(f"missing CloudFormation output {key!r} on stack {self.stack!r}")
        return v

    def resolve(self, override: str | None, key: str) -> str:
        if override and override.strip():
            return override.strip()
        return self.require_output(key)

    def frontend_config(self) -> FrontendConfig:
        try:
            return FrontendConfig.from_stack_outputs(self.outputs())
        except AttributeAccessError as e:
            raise OpError(f"stack {self.stack!r}: {e}") from e

    def mapping_table(self, *, version: str | None = None) -> FederationMappingTable:
        return FederationMappingTable.single(
            audience=self.require_output("IdentityPoolId"),
            tag_key=self.output("FederationTagKey") or DEFAULT_TAG_KEY,
            attribute_name=self.output("FederationAttributeName") or CLIENT_ATTRIBUTE.claim_name,
            version=version or datetime.now(timezone.utc).strftime("%Y-%m-%d"),
            identity_provider=self.require_output("IdentityProviderName"),
        )


def build_admin_context(g: GlobalOpts) -> AdminContext:
    return AdminContext(session=_account_session(), stack=g.stack)


def _load_mapping(ctx: AdminContext, path: str | None) -> FederationMappingTable:
    if not path:
        return ctx.mapping_table()
    doc = _read_json_file(path, label="federation mapping file")
    try:
        return FederationMappingTable.from_document(doc)
    except AttributeAccessError as e:
        raise UsageError(str(e)) from e


def cmd_stack_output(args: argparse.Namespace, g: GlobalOpts) -> int:
    ctx = build_admin_context(g)
    key = str(getattr(args, "output_key", "") or "").strip()
    if not key:
        outputs = _cf_outputs(ctx.session, stack=g.stack)
        _print_json(outputs, pretty=g.pretty)
        return 0
    v = _stack_output_value(ctx.session, stack=g.stack, key=key)
    if v is None:
        raise OpError(f"output key not found: {key}")
    sys.stdout.write(v + "\n")
    return 0


def cmd_frontend_env(args: argparse.Namespace, g: GlobalOpts) -> int:
    ctx = build_admin_context(g)
    env = ctx.frontend_config().to_env()
    if args.exports:
        for k, v in env.items():
            sys.stdout.write(f"export {k}={v}\n")
        return 0
    _print_json(env, pretty=g.pretty)
    return 0


def cmd_mapping_render(args: argparse.Namespace, g: GlobalOpts) -> int:
    ctx = build_admin_context(g)
    table = ctx.mapping_table(version=args.version)
    if args.out:
        out = Path(args.out)
        out.parent.mkdir(parents=True, exist_ok=True)
        out.write_text(table.dumps(pretty=True), encoding="utf-8")
        if not g.quiet:
            _eprint(f"wrote {out}")
    _print_json(table.to_document(), pretty=g.pretty)
    return 0


def cmd_mapping_apply(args: argparse.Namespace, g: GlobalOpts) -> int:
    ctx = build_admin_context(g)
    table = _load_mapping(ctx, args.file)
    if not table.identity_provider:
        raise UsageError("federation mapping has no identityProviderName")
    requests = [
        {
            "IdentityPoolId": audience,
            "IdentityProviderName": table.identity_provider,
            "UseDefaults": False,
            "PrincipalTags": table.to_principal_tags(audience),
        }
        for audience in sorted({e.audience for e in table.entries})
    ]
    if args.dry_run:
        _print_json({"dryRun": True, "version": table.version, "requests": requests}, pretty=g.pretty)
        return 0

    c = ctx.session.client("cognito-identity")
    for req in requests:
        try:
            c.set_principal_tag_attribute_map(**req)
        except Exception as e:
            raise OpError(
                f"cognito-identity set-principal-tag-attribute-map failed for {req['IdentityPoolId']!r}: {e}"
            ) from e
    _print_json({"applied": True, "version": table.version, "requests": requests}, pretty=g.pretty)
    return 0


def cmd_mapping_verify(args: argparse.Namespace, g: GlobalOpts) -> int:
    ctx = build_admin_context(g)
    table = _load_mapping(ctx, args.file)
    c = ctx.session.client("cognito-identity")
    results: list[dict[str, Any]] = []
    ok = True
    for audience in sorted({e.audience for e in table.entries}):
        expected = table.to_principal_tags(audience)
        observed: dict[str, str] = {}
        use_defaults: bool | None = None
        try:
            resp = c.get_principal_tag_attribute_map(
                IdentityPoolId=audience,
                IdentityProviderName=table.identity_provider,
            )
            observed = dict(resp.get("PrincipalTags") or {})
            use_defaults = resp.get("UseDefaults")
        except ClientError as e:
            if _client_error_code(e) != "ResourceNotFoundException":
                raise OpError(f"cognito-identity get-principal-tag-attribute-map failed: {e}") from e
        findings = diff_principal_tags(expected, observed, use_defaults=use_defaults)
        ok = ok and not findings
        results.append(
            {
                "identityPoolId": audience,
                "expected": expected,
                "observed": observed,
                "findings": findings,
            }
        )
    _print_json({"ok": ok, "version": table.version, "results": results}, pretty=g.pretty)
    if not ok and not g.quiet:
        _eprint("federation mapping is missing or drifted; exchanged credentials will carry no usable session tag")
    return 0 if ok else 1


def cmd_user_create(args: argparse.Namespace, g: GlobalOpts) -> int:
    try:
        record = IdentityRecord.create(
            email=args.email,
            given_name=args.given_name,
            family_name=args.family_name,
            client=args.client,
        )
    except ValidationError as e:
        raise UsageError(str(e)) from e
    ctx = build_admin_context(g)
    user_pool_id = ctx.resolve(args.user_pool_id, "UserPoolId")
    c = ctx.session.client("cognito-idp")
    kwargs: dict[str, Any] = {
        "UserPoolId": user_pool_id,
        "Username": record.email,
        "UserAttributes": record.to_user_attributes(),
    }
    if args.suppress_invite:
        kwargs["MessageAction"] = "SUPPRESS"
    try:
        resp = c.admin_create_user(**kwargs)
    except Exception as e:
        raise OpError(f"cognito admin-create-user failed: {e}") from e
    attrs = {
        str(a.get("Name")): str(a.get("Value"))
        for a in (resp.get("User") or {}).get("Attributes") or []
        if isinstance(a, dict)
    }
    _print_json(
        {
            "username": record.email,
            "sub": attrs.get("sub", ""),
            "userPoolId": user_pool_id,
            "client": record.client,
            "created": True,
        },
        pretty=g.pretty,
    )
    return 0


def cmd_user_set_client(args: argparse.Namespace, g: GlobalOpts) -> int:
    try:
        client = CLIENT_ATTRIBUTE.validate(args.client)
    except ValidationError as e:
        raise UsageError(str(e)) from e
    username = _require_str(args.username, "username", hint="positional USERNAME")
    ctx = build_admin_context(g)
    user_pool_id = ctx.resolve(args.user_pool_id, "UserPoolId")
    c = ctx.session.client("cognito-idp")
    try:
        c.admin_update_user_attributes(
            UserPoolId=user_pool_id,
            Username=username,
            UserAttributes=[{"Name": CLIENT_ATTRIBUTE.claim_name, "Value": client}],
        )
    except Exception as e:
        raise OpError(f"cognito admin-update-user-attributes failed: {e}") from e
    _print_json(
        {
            "username": username,
            "userPoolId": user_pool_id,
            "client": client,
            "updated": True,
            "note": "credentials issued before this change keep the previous tag until they expire",
        },
        pretty=g.pretty,
    )
    return 0


def _policy_bundle(
    *,
    audience: str,
    resource_id: str,
    tag_key: str,
    roles: dict[AuthState, str],
    identity_provider: str,
) -> dict[str, Any]:
    try:
        trust = build_trust_policies(audience)
        access = build_access_policy(resource_id, tag_key)
    except AttributeAccessError as e:
        raise UsageError(str(e)) from e
    rule = RoleSelectionRule(
        roles=roles,
        identity_provider=identity_provider,
        ambiguous_role_resolution=AmbiguousRoleResolution.AUTHENTICATED_ROLE,
    )
    return {
        "trustPolicies": {state.value: stmt.to_document() for state, stmt in trust.items()},
        "accessPolicy": to_policy_document(access),
        "roleAttachment": rule.to_role_attachment(),
    }


def cmd_policy_render(args: argparse.Namespace, g: GlobalOpts) -> int:
    if args.audience and args.resource_id:
        bundle = _policy_bundle(
            audience=args.audience,
            resource_id=args.resource_id,
            tag_key=args.tag_key or DEFAULT_TAG_KEY,
            roles={},
            identity_provider="",
        )
        _print_json(bundle, pretty=g.pretty)
        return 0

    ctx = build_admin_context(g)
    frontend = ctx.frontend_config()
    roles: dict[AuthState, str] = {}
    for state, key in (
        (AuthState.AUTHENTICATED, "AuthenticatedRoleArn"),
        (AuthState.UNAUTHENTICATED, "UnauthenticatedRoleArn"),
    ):
        arn = ctx.output(key)
        if arn:
            roles[state] = arn
    bundle = _policy_bundle(
        audience=args.audience or frontend.identity_pool_id,
        resource_id=args.resource_id or frontend.bucket_arn,
        tag_key=args.tag_key or ctx.output("FederationTagKey") or DEFAULT_TAG_KEY,
        roles=roles,
        identity_provider=f"{frontend.identity_provider_name}:{frontend.user_pool_client_id}",
    )
    _print_json(bundle, pretty=g.pretty)
    return 0


def cmd_policy_check(args: argparse.Namespace, g: GlobalOpts) -> int:
    tag_key = args.tag_key or DEFAULT_TAG_KEY
    resource_id = _require_str(args.resource_id, "resource id", hint="--resource-id")
    try:
        statements = build_access_policy(resource_id, tag_key)
    except AttributeAccessError as e:
        raise UsageError(str(e)) from e
    session_tags = {tag_key: args.client} if args.client else {}
    decision = PolicyEvaluator(statements).evaluate(args.action, args.resource, session_tags)
    _print_json(
        {
            "action": args.action,
            "resource": args.resource,
            "sessionTags": session_tags,
            "decision": decision.value,
            "allowed": decision.allowed,
        },
        pretty=g.pretty,
    )
    expect = (args.expect or "").strip().lower()
    if expect and (expect == "allow") != decision.allowed:
        return 1
    return 0


def _authenticate(cognito_idp: Any, *, client_id: str, username: str, password: str) -> str:
    try:
        resp = cognito_idp.initiate_auth(
            AuthFlow="USER_PASSWORD_AUTH",
            ClientId=client_id,
            AuthParameters={"USERNAME": username, "PASSWORD": password},
        )
    except Exception as e:
        raise OpError(f"cognito initiate-auth failed: {e}") from e
    id_token = str((resp.get("AuthenticationResult") or {}).get("IdToken") or "")
    if not id_token:
        raise OpError("cognito initiate-auth returned no IdToken (challenge pending?)")
    return id_token


def _exchange(cognito_identity: Any, *, frontend: FrontendConfig, id_token: str) -> dict[str, Any]:
    logins = {frontend.identity_provider_name: id_token}
    try:
        identity_id = cognito_identity.get_id(IdentityPoolId=frontend.identity_pool_id, Logins=logins)["IdentityId"]
        resp = cognito_identity.get_credentials_for_identity(IdentityId=identity_id, Logins=logins)
    except Exception as e:
        raise OpError(f"credential exchange failed: {e}") from e
    creds = resp.get("Credentials") or {}
    if not creds.get("AccessKeyId"):
        raise OpError("credential exchange returned no credentials")
    return {"identityId": identity_id, "credentials": creds}


def _probe_put(s3: Any, *, bucket: str, key: str) -> str:
    try:
        s3.put_object(Bucket=bucket, Key=key, Body=b"")
    except ClientError as e:
        code = _client_error_code(e)
        if code in ("AccessDenied", "403"):
            return "denied"
        raise OpError(f"s3 put-object {key!r} failed: {e}") from e
    return "allowed"


def _probe_list(s3: Any, *, bucket: str) -> str:
    try:
        s3.list_objects_v2(Bucket=bucket, MaxKeys=1)
    except ClientError as e:
        if _client_error_code(e) in ("AccessDenied", "403"):
            return "denied"
        raise OpError(f"s3 list-objects failed: {e}") from e
    return "allowed"


def cmd_smoke(args: argparse.Namespace, g: GlobalOpts) -> int:
    """End-to-end check of the deployed pipeline for one user.

    Own prefix must accept writes and a foreign prefix must refuse them. An
    own-prefix denial means the credentials carry no usable session tag,
    which is what a missing federation mapping looks like from outside.
    """
    username = _require_str(args.username, "username", hint="--username")
    password = _require_str(args.password, "password", hint="--password")
    ctx = build_admin_context(g)
    frontend = ctx.frontend_config()

    id_token = _authenticate(
        ctx.session.client("cognito-idp"),
        client_id=frontend.user_pool_client_id,
        username=username,
        password=password,
    )
    claims = decode_jwt_claims(id_token)
    try:
        client = CLIENT_ATTRIBUTE.validate(claims.get(CLIENT_ATTRIBUTE.claim_name))
    except ValidationError as e:
        raise OpError(f"user {username!r} has no usable {CLIENT_ATTRIBUTE.claim_name}: {e}") from e
    foreign = (args.foreign_client or "").strip() or f"{client}-isolation-probe"
    if foreign == client:
        raise UsageError("--foreign-client must differ from the user's own client")

    exchanged = _exchange(ctx.session.client("cognito-identity"), frontend=frontend, id_token=id_token)
    s3 = _issued_session(exchanged["credentials"], region=frontend.region).client("s3")

    checks = {
        "listBucket": _probe_list(s3, bucket=frontend.bucket),
        "ownPrefixWrite": _probe_put(s3, bucket=frontend.bucket, key=f"{client}/{SMOKE_OBJECT_NAME}"),
        "foreignPrefixWrite": _probe_put(s3, bucket=frontend.bucket, key=f"{foreign}/{SMOKE_OBJECT_NAME}"),
    }
    findings: list[str] = []
    if checks["listBucket"] != "allowed":
        findings.append("listing the bucket was denied")
    if checks["ownPrefixWrite"] != "allowed":
        findings.append("session tag missing or wrong on exchanged credentials (federation mapping not applied?)")
    if checks["foreignPrefixWrite"] != "denied":
        findings.append(f"write to foreign prefix {foreign!r} was allowed: partition isolation is broken")

    expiration = exchanged["credentials"].get("Expiration")
    _print_json(
        {
            "ok": not findings,
            "username": username,
            "client": client,
            "identityId": exchanged["identityId"],
            "expiresAt": expiration.isoformat() if hasattr(expiration, "isoformat") else str(expiration or ""),
            "checks": checks,
            "findings": findings,
        },
        pretty=g.pretty,
    )
    return 0 if not findings else 1
