from __future__ import annotations

import argparse
import contextlib
import io
import os
import sys
from typing import Any

import click
import typer
from dotenv import load_dotenv
from rich.console import Console

from attribute_access.errors import AttributeAccessError

from .. import __version__
from ..admin_commands import (
    cmd_frontend_env,
    cmd_mapping_apply,
    cmd_mapping_render,
    cmd_mapping_verify,
    cmd_policy_check,
    cmd_policy_render,
    cmd_smoke,
    cmd_stack_output,
    cmd_user_create,
    cmd_user_set_client,
)
from ..cli_shared import DEFAULT_STACK_NAME
from ..cli_shared import GlobalOpts
from ..cli_shared import OpError
from ..cli_shared import UsageError
from ..cli_shared import _eprint
from ..cli_shared import _env_or_none

PROG_NAME = "attribute-access-admin"


class _InsertionOrderTyperGroup(typer.core.TyperGroup):
    def list_commands(self, ctx: click.Context) -> list[str]:
        names = list(self.commands)
        lead = [n for n in ("stack-output", "frontend-env") if n in names]
        head = [n for n in names if n not in set(lead)]
        return lead + head


_ERROR_CONSOLE = Console(stderr=True)


def _rich_error(msg: str) -> None:
    _ERROR_CONSOLE.print(f"[bold red]error:[/bold red] {msg}")


def _root_help_text(*, root_app: typer.Typer, prog_name: str) -> str:
    buf = io.StringIO()
    try:
        with contextlib.redirect_stdout(buf):
            try:
                root_app(args=["--help"], prog_name=prog_name, standalone_mode=False)
            except (typer.Exit, click.ClickException):
                pass
    except Exception:
        return ""
    return str(buf.getvalue() or "").strip()


def _render_usage_error_with_help(
    *,
    message: str,
    ctx: click.Context | None = None,
    fallback_help: str = "",
) -> None:
    _rich_error(message)
    help_text = ""
    if isinstance(ctx, click.Context):
        try:
            help_text = str(ctx.get_help() or "").strip()
        except Exception:
            help_text = ""
    if not help_text:
        help_text = str(fallback_help or "").strip()
    if help_text:
        _eprint("")
        _eprint(help_text)


def _namespace(**kwargs: Any) -> argparse.Namespace:
    return argparse.Namespace(**kwargs)


def _version_callback(value: bool) -> None:
    if value:
        typer.echo(f"attribute-access {__version__}")
        raise typer.Exit(code=0)


def _apply_global_env(args: argparse.Namespace) -> GlobalOpts:
    if getattr(args, "profile", None):
        os.environ["AWS_PROFILE"] = str(args.profile).strip()
    if getattr(args, "region", None):
        os.environ["AWS_REGION"] = str(args.region).strip()
    # If the user didn't explicitly pass --stack, defer to env.
    stack = (getattr(args, "stack", None) or _env_or_none("STACK") or DEFAULT_STACK_NAME).strip()
    return GlobalOpts(
        stack=stack,
        pretty=not bool(getattr(args, "plain_json", False)),
        quiet=bool(getattr(args, "quiet", False)),
    )


admin_app = typer.Typer(
    name=PROG_NAME,
    help="Provision and check attribute-based access to the shared bucket.",
    no_args_is_help=True,
    add_completion=False,
    cls=_InsertionOrderTyperGroup,
)

mapping_app = typer.Typer(help="Principal tag mapping on the identity pool", no_args_is_help=True)
user_app = typer.Typer(help="User pool accounts and their client attribute", no_args_is_help=True)
policy_app = typer.Typer(help="Trust and access policy documents", no_args_is_help=True)

admin_app.add_typer(mapping_app, name="mapping")
admin_app.add_typer(user_app, name="user")
admin_app.add_typer(policy_app, name="policy")


@admin_app.callback()
def app_callback_admin(
    ctx: typer.Context,
    profile: str | None = typer.Option(None, "--profile", help="AWS CLI profile name (sets AWS_PROFILE)"),
    region: str | None = typer.Option(None, "--region", help="AWS region (sets AWS_REGION)"),
    stack: str | None = typer.Option(
        None,
        "--stack",
        help=f"CloudFormation stack name (default: env STACK or {DEFAULT_STACK_NAME})",
    ),
    plain_json: bool = typer.Option(False, "--plain-json", help="Emit compact JSON output"),
    quiet: bool = typer.Option(False, "--quiet", help="Reduce stderr logging"),
    version: bool = typer.Option(
        False,
        "--version",
        callback=_version_callback,
        is_eager=True,
        help="Show version and exit",
    ),
) -> None:
    del version
    ns = _namespace(
        profile=profile,
        region=region,
        stack=stack,
        plain_json=plain_json,
        quiet=quiet,
    )
    ctx.obj = {"g": _apply_global_env(ns)}


def _ctx_global(ctx: typer.Context) -> GlobalOpts:
    obj = ctx.find_root().obj
    if isinstance(obj, dict) and isinstance(obj.get("g"), GlobalOpts):
        return obj["g"]
    return _apply_global_env(_namespace(profile=None, region=None, stack=None, plain_json=False, quiet=False))


def _invoke(ctx: typer.Context, func: Any, **kwargs: Any) -> None:
    g = _ctx_global(ctx)
    args = _namespace(**kwargs)
    try:
        code = int(func(args, g))
    except UsageError as e:
        _render_usage_error_with_help(message=str(e), ctx=ctx)
        raise typer.Exit(code=2)
    except (OpError, AttributeAccessError) as e:
        _rich_error(str(e))
        raise typer.Exit(code=1)

    if code:
        raise typer.Exit(code=code)


def _invoke_from_locals(
    ctx: typer.Context,
    func: Any,
    local_vars: dict[str, Any],
    *,
    drop: tuple[str, ...] = ("ctx",),
) -> None:
    _invoke(ctx, func, **{k: v for k, v in local_vars.items() if k not in drop})


@admin_app.command("stack-output", help="Print CloudFormation stack outputs or a single output value.")
def stack_output(
    ctx: typer.Context,
    output_key: str | None = typer.Argument(None, help="Optional CloudFormation output key"),
) -> None:
    _invoke_from_locals(ctx, cmd_stack_output, locals())


@admin_app.command(
    "frontend-env",
    help="Print IDENTITY_POOL_ID, USER_POOL_ID, USER_POOL_CLIENT_ID, REGION and BUCKET for the front end.",
)
def frontend_env(
    ctx: typer.Context,
    exports: bool = typer.Option(False, "--exports", help="Emit shell export lines instead of JSON"),
) -> None:
    _invoke_from_locals(ctx, cmd_frontend_env, locals())


@admin_app.command(
    "smoke",
    help="Sign in as a user, exchange the token for credentials and probe own/foreign bucket prefixes.",
)
def smoke(
    ctx: typer.Context,
    username: str | None = typer.Option(None, "--username", help="User pool username (or env ATTRIBUTE_ACCESS_USERNAME)"),
    password: str | None = typer.Option(None, "--password", help="User pool password (or env ATTRIBUTE_ACCESS_PASSWORD)"),
    foreign_client: str | None = typer.Option(
        None,
        "--foreign-client",
        help="Client value whose prefix must be denied (default: derived from the user's own)",
    ),
) -> None:
    _invoke(
        ctx,
        cmd_smoke,
        username=username or _env_or_none("ATTRIBUTE_ACCESS_USERNAME"),
        password=password or _env_or_none("ATTRIBUTE_ACCESS_PASSWORD"),
        foreign_client=foreign_client,
    )


@mapping_app.command("render", help="Render the federation mapping document from stack outputs.")
def mapping_render(
    ctx: typer.Context,
    out: str | None = typer.Option(None, "--out", help="Also write the document to this path"),
    version: str | None = typer.Option(None, "--version", help="Document version label (default: today, UTC)"),
) -> None:
    _invoke_from_locals(ctx, cmd_mapping_render, locals())


@mapping_app.command("apply", help="Apply the principal tag mapping to the identity pool.")
def mapping_apply(
    ctx: typer.Context,
    file: str | None = typer.Option(None, "--file", help="Mapping document (default: rendered from stack outputs)"),
    dry_run: bool = typer.Option(False, "--dry-run", help="Print the requests without calling AWS"),
) -> None:
    _invoke_from_locals(ctx, cmd_mapping_apply, locals())


@mapping_app.command("verify", help="Compare the identity pool's principal tag mapping with the expected one.")
def mapping_verify(
    ctx: typer.Context,
    file: str | None = typer.Option(None, "--file", help="Mapping document (default: rendered from stack outputs)"),
) -> None:
    _invoke_from_locals(ctx, cmd_mapping_verify, locals())


@user_app.command("create", help="Create a user with given/family name and client attribute.")
def user_create(
    ctx: typer.Context,
    email: str = typer.Argument(..., help="Email address (also the username)"),
    given_name: str = typer.Option(..., "--given-name", help="Given name"),
    family_name: str = typer.Option(..., "--family-name", help="Family name"),
    client: str = typer.Option(..., "--client", help="Client attribute (becomes the bucket prefix)"),
    user_pool_id: str | None = typer.Option(None, "--user-pool-id", help="Override user pool id (otherwise stack output UserPoolId)"),
    suppress_invite: bool = typer.Option(False, "--suppress-invite", help="Do not send the invitation message"),
) -> None:
    _invoke_from_locals(ctx, cmd_user_create, locals())


@user_app.command("set-client", help="Change a user's client attribute.")
def user_set_client(
    ctx: typer.Context,
    username: str = typer.Argument(...),
    client: str = typer.Argument(...),
    user_pool_id: str | None = typer.Option(None, "--user-pool-id", help="Override user pool id (otherwise stack output UserPoolId)"),
) -> None:
    _invoke_from_locals(ctx, cmd_user_set_client, locals())


@policy_app.command("render", help="Render trust policies, access policy and role attachment as JSON.")
def policy_render(
    ctx: typer.Context,
    audience: str | None = typer.Option(None, "--audience", help="Identity pool id (otherwise stack output IdentityPoolId)"),
    resource_id: str | None = typer.Option(None, "--resource-id", help="Bucket ARN (otherwise derived from stack output BucketName)"),
    tag_key: str | None = typer.Option(None, "--tag-key", help="Session tag key (otherwise stack output FederationTagKey)"),
) -> None:
    _invoke_from_locals(ctx, cmd_policy_render, locals())


@policy_app.command("check", help="Evaluate one request against the access policy offline.")
def policy_check(
    ctx: typer.Context,
    action: str = typer.Argument(..., help="Action, e.g. s3:GetObject"),
    resource: str = typer.Argument(..., help="Resource ARN, e.g. arn:aws:s3:::bucket/acme/report.csv"),
    resource_id: str = typer.Option(..., "--resource-id", help="Bucket ARN the policy is built for"),
    client: str | None = typer.Option(None, "--client", help="Session tag value (omit to simulate a missing tag)"),
    tag_key: str | None = typer.Option(None, "--tag-key", help="Session tag key (default client)"),
    expect: str | None = typer.Option(None, "--expect", help="allow or deny; exit 1 when the decision differs"),
) -> None:
    if expect and expect.strip().lower() not in ("allow", "deny"):
        _render_usage_error_with_help(message="--expect must be 'allow' or 'deny'", ctx=ctx)
        raise typer.Exit(code=2)
    _invoke_from_locals(ctx, cmd_policy_check, locals())


def _run_cli(*, root_app: typer.Typer, prog_name: str, argv: list[str] | None = None) -> int:
    argv = list(sys.argv[1:] if argv is None else argv)
    # Discover and load .env without overriding already-exported values.
    load_dotenv()
    try:
        result = root_app(args=argv, prog_name=prog_name, standalone_mode=False)
        if result is None:
            return 0
        return int(result)
    except typer.Exit as e:
        return int(e.exit_code)
    except click.ClickException as e:
        if isinstance(e, click.UsageError):
            _render_usage_error_with_help(message=e.format_message(), ctx=getattr(e, "ctx", None))
            return int(e.exit_code)
        _rich_error(e.format_message())
        return int(e.exit_code)
    except UsageError as e:
        _render_usage_error_with_help(
            message=str(e),
            fallback_help=_root_help_text(root_app=root_app, prog_name=prog_name),
        )
        return 2
    except OpError as e:
        _rich_error(str(e))
        return 1


def main(argv: list[str] | None = None) -> int:
    return _run_cli(root_app=admin_app, prog_name=PROG_NAME, argv=argv)


if __name__ == "__main__":
    raise SystemExit(main())
