import os

from aws_cdk import (
    Aws,
    CfnOutput,
    Duration,
    RemovalPolicy,
    Stack,
    aws_amplify as amplify,
    aws_cloudwatch as cloudwatch,
    aws_codecommit as codecommit,
    aws_cognito as cognito,
    aws_iam as iam,
    aws_lambda as _lambda,
    aws_logs as logs,
    aws_s3 as s3,
)
from constructs import Construct

from attribute_access.access import build_access_policy
from attribute_access.config import FrontendConfig
from attribute_access.mapping import DEFAULT_TAG_KEY, validate_tag_key
from attribute_access.roles import AmbiguousRoleResolution, RoleSelectionRule
from attribute_access.schema import CLIENT_ATTRIBUTE, FAMILY_NAME, GIVEN_NAME
from attribute_access.trust import AuthState, build_trust_policies


class AttributeAccessStack(Stack):
    """User pool, identity pool and a shared bucket partitioned by ``custom:client``.

    The identity pool's principal tag mapping (``client`` <- ``custom:client``)
    has no CloudFormation counterpart in this stack; apply it afterwards with
    ``attribute-access-admin mapping apply`` and check it with
    ``attribute-access-admin mapping verify``.
    """

    def __init__(self, scope: Construct, construct_id: str, **kwargs) -> None:
        super().__init__(scope, construct_id, **kwargs)

        stage_name = os.getenv("STAGE", "prod")
        data_retention_mode = os.getenv("DATA_RETENTION_MODE", "destroy").strip().lower()
        if data_retention_mode not in {"destroy", "retain"}:
            raise ValueError(
                "DATA_RETENTION_MODE must be 'destroy' or 'retain' (case-insensitive)"
            )
        stateful_removal_policy = (
            RemovalPolicy.DESTROY
            if data_retention_mode == "destroy"
            else RemovalPolicy.RETAIN
        )
        bucket_auto_delete_objects = data_retention_mode == "destroy"
        tag_key = validate_tag_key(
            (os.getenv("FEDERATION_TAG_KEY") or DEFAULT_TAG_KEY).strip()
        )
        frontend_repository_arn = (os.getenv("FRONTEND_REPOSITORY_ARN") or "").strip()
        schema_version = "2026-10-17"

        name_prefix = f"{construct_id}-{stage_name}"

        guard_fn = _lambda.Function(
            self,
            "AttributeGuardHandler",
            runtime=_lambda.Runtime.PYTHON_3_12,
            handler="attribute_guard.handler",
            code=_lambda.Code.from_asset("lambda"),
            timeout=Duration.seconds(5),
            environment={
                "SCHEMA_VERSION": schema_version,
                "ENFORCE_ON_TOKEN": "1",
            },
        )

        user_pool = cognito.UserPool(
            self,
            "AttributeAccessUserPool",
            user_pool_name=f"{name_prefix}-users",
            self_sign_up_enabled=True,
            auto_verify=cognito.AutoVerifiedAttrs(email=True),
            sign_in_aliases=cognito.SignInAliases(email=True),
            custom_attributes={
                # Cognito cannot mark custom attributes required; the guard
                # trigger enforces presence at sign-up.
                CLIENT_ATTRIBUTE.name: cognito.StringAttribute(
                    min_len=CLIENT_ATTRIBUTE.min_len,
                    max_len=CLIENT_ATTRIBUTE.max_len,
                    mutable=CLIENT_ATTRIBUTE.mutable,
                ),
            },
            standard_attributes=cognito.StandardAttributes(
                given_name=cognito.StandardAttribute(
                    required=GIVEN_NAME.required,
                    mutable=GIVEN_NAME.mutable,
                ),
                family_name=cognito.StandardAttribute(
                    required=FAMILY_NAME.required,
                    mutable=FAMILY_NAME.mutable,
                ),
            ),
            lambda_triggers=cognito.UserPoolTriggers(
                pre_sign_up=guard_fn,
                pre_token_generation=guard_fn,
            ),
            removal_policy=stateful_removal_policy,
        )

        user_pool_client = user_pool.add_client(
            "AttributeAccessUserPoolClient",
            # Browser app: no client secret.
            generate_secret=False,
            auth_flows=cognito.AuthFlow(user_password=True, user_srp=True),
        )

        identity_pool = cognito.CfnIdentityPool(
            self,
            "AttributeAccessIdentityPool",
            allow_unauthenticated_identities=False,
            cognito_identity_providers=[
                cognito.CfnIdentityPool.CognitoIdentityProviderProperty(
                    client_id=user_pool_client.user_pool_client_id,
                    provider_name=user_pool.user_pool_provider_name,
                )
            ],
        )

        bucket = s3.Bucket(
            self,
            "AttributeAccessBucket",
            versioned=False,
            removal_policy=stateful_removal_policy,
            auto_delete_objects=bucket_auto_delete_objects,
            block_public_access=s3.BlockPublicAccess.BLOCK_ALL,
            enforce_ssl=True,
            cors=[
                s3.CorsRule(
                    allowed_methods=[
                        s3.HttpMethods.GET,
                        s3.HttpMethods.POST,
                        s3.HttpMethods.PUT,
                    ],
                    allowed_origins=["*"],
                    allowed_headers=["*"],
                )
            ],
        )

        access_policy = iam.ManagedPolicy(
            self,
            "PartitionAccessPolicy",
            description=f"Allows S3 access under <bucket>/${{aws:PrincipalTag/{tag_key}}}/",
            statements=[
                iam.PolicyStatement.from_json(stmt.to_json())
                for stmt in build_access_policy(bucket.bucket_arn, tag_key)
            ],
        )

        trust_policies = build_trust_policies(identity_pool.ref)
        authenticated_role = iam.CfnRole(
            self,
            "IdentityPoolAuthenticatedRole",
            assume_role_policy_document=trust_policies[AuthState.AUTHENTICATED].to_document(),
            description="Default role for authenticated users",
            managed_policy_arns=[access_policy.managed_policy_arn],
        )
        # Unauthenticated identities are disabled, but the pool still gets an
        # explicit role for that state.
        unauthenticated_role = iam.CfnRole(
            self,
            "IdentityPoolUnauthenticatedRole",
            assume_role_policy_document=trust_policies[AuthState.UNAUTHENTICATED].to_document(),
            description="Default role for unauthenticated users",
        )

        identity_provider = (
            f"{user_pool.user_pool_provider_name}:{user_pool_client.user_pool_client_id}"
        )
        role_rule = RoleSelectionRule(
            roles={
                AuthState.AUTHENTICATED: authenticated_role.attr_arn,
                AuthState.UNAUTHENTICATED: unauthenticated_role.attr_arn,
            },
            identity_provider=identity_provider,
            ambiguous_role_resolution=AmbiguousRoleResolution.AUTHENTICATED_ROLE,
        )
        attachment = role_rule.to_role_attachment()
        cognito.CfnIdentityPoolRoleAttachment(
            self,
            "IdentityPoolRoleAttachment",
            identity_pool_id=identity_pool.ref,
            roles=attachment["roles"],
            role_mappings={
                name: cognito.CfnIdentityPoolRoleAttachment.RoleMappingProperty(
                    type=mapping["type"],
                    ambiguous_role_resolution=mapping["ambiguousRoleResolution"],
                    identity_provider=mapping["identityProvider"],
                )
                for name, mapping in attachment["roleMappings"].items()
            },
        )

        frontend = FrontendConfig(
            identity_pool_id=identity_pool.ref,
            user_pool_id=user_pool.user_pool_id,
            user_pool_client_id=user_pool_client.user_pool_client_id,
            region=Aws.REGION,
            bucket=bucket.bucket_name,
        )
        if frontend_repository_arn:
            self._add_frontend_app(
                name_prefix=name_prefix,
                repository_arn=frontend_repository_arn,
                environment=frontend.to_env(),
            )

        guard_log_group = logs.LogGroup(
            self,
            "AttributeGuardLogGroup",
            log_group_name=f"/aws/lambda/{guard_fn.function_name}",
            retention=logs.RetentionDays.ONE_WEEK,
            removal_policy=stateful_removal_policy,
        )
        logs.MetricFilter(
            self,
            "AttributeGuardErrorMetricFilter",
            log_group=guard_log_group,
            metric_namespace="AttributeAccess",
            metric_name="GuardErrors",
            filter_pattern=logs.FilterPattern.string_value("$.outcome", "=", "error"),
            metric_value="1",
        )
        cloudwatch.Alarm(
            self,
            "AttributeGuardErrorsAlarm",
            metric=cloudwatch.Metric(
                namespace="AttributeAccess",
                metric_name="GuardErrors",
                statistic="Sum",
                period=Duration.minutes(5),
            ),
            threshold=1,
            evaluation_periods=1,
            datapoints_to_alarm=1,
        )

        CfnOutput(
            self,
            "IdentityPoolId",
            value=identity_pool.ref,
            description="Identity pool id (front-end IDENTITY_POOL_ID; trust policy audience).",
        )
        CfnOutput(
            self,
            "UserPoolId",
            value=user_pool.user_pool_id,
            description="User pool id (front-end USER_POOL_ID).",
        )
        CfnOutput(
            self,
            "UserPoolClientId",
            value=user_pool_client.user_pool_client_id,
            description="User pool app client id (front-end USER_POOL_CLIENT_ID).",
        )
        CfnOutput(
            self,
            "Region",
            value=Aws.REGION,
            description="Deployment region (front-end REGION).",
        )
        CfnOutput(
            self,
            "BucketName",
            value=bucket.bucket_name,
            description="Shared bucket partitioned by session tag (front-end BUCKET).",
        )
        CfnOutput(
            self,
            "IdentityProviderName",
            value=user_pool.user_pool_provider_name,
            description="Provider name to use for the principal tag mapping.",
        )
        CfnOutput(
            self,
            "FederationTagKey",
            value=tag_key,
            description="Session tag key the access policy expects.",
        )
        CfnOutput(
            self,
            "FederationAttributeName",
            value=CLIENT_ATTRIBUTE.claim_name,
            description="Token claim that must be mapped to the session tag.",
        )
        CfnOutput(
            self,
            "AuthenticatedRoleArn",
            value=authenticated_role.attr_arn,
            description="Role issued to authenticated identities.",
        )
        CfnOutput(
            self,
            "UnauthenticatedRoleArn",
            value=unauthenticated_role.attr_arn,
            description="Role attached for unauthenticated identities (disabled).",
        )
        CfnOutput(
            self,
            "AccessPolicyArn",
            value=access_policy.managed_policy_arn,
            description="Managed policy scoping bucket access by session tag.",
        )

    def _add_frontend_app(
        self,
        *,
        name_prefix: str,
        repository_arn: str,
        environment: dict[str, str],
    ) -> None:
        repository = codecommit.Repository.from_repository_arn(
            self, "FrontendRepository", repository_arn
        )
        service_role = iam.Role(
            self,
            "FrontendServiceRole",
            assumed_by=iam.ServicePrincipal("amplify.amazonaws.com"),
        )
        service_role.add_to_policy(
            iam.PolicyStatement(
                actions=["codecommit:GitPull"],
                resources=[repository.repository_arn],
            )
        )
        app = amplify.CfnApp(
            self,
            "FrontendApp",
            name=f"{name_prefix}-frontend",
            repository=repository.repository_clone_url_http,
            iam_service_role=service_role.role_arn,
            environment_variables=[
                amplify.CfnApp.EnvironmentVariableProperty(name=k, value=v)
                for k, v in sorted(environment.items())
            ],
        )
        amplify.CfnBranch(
            self,
            "FrontendMainBranch",
            app_id=app.attr_app_id,
            branch_name="main",
        )
