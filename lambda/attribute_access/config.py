from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Mapping

from .errors import ConfigurationError

IDENTITY_POOL_ID = "IDENTITY_POOL_ID"
USER_POOL_ID = "USER_POOL_ID"
USER_POOL_CLIENT_ID = "USER_POOL_CLIENT_ID"
REGION = "REGION"
BUCKET = "BUCKET"

# CloudFormation output key for each front-end env var.
STACK_OUTPUT_KEYS: dict[str, str] = {
    IDENTITY_POOL_ID: "IdentityPoolId",
    USER_POOL_ID: "UserPoolId",
    USER_POOL_CLIENT_ID: "UserPoolClientId",
    REGION: "Region",
    BUCKET: "BucketName",
}


@dataclass(frozen=True)
class FrontendConfig:
    identity_pool_id: str
    user_pool_id: str
    user_pool_client_id: str
    region: str
    bucket: str

    @classmethod
    def from_mapping(cls, values: Mapping[str, str | None], *, source: str) -> "FrontendConfig":
        missing = [name for name in STACK_OUTPUT_KEYS if not (values.get(name) or "").strip()]
        if missing:
            raise ConfigurationError(f"missing {', '.join(missing)} ({source})")
        return cls(
            identity_pool_id=str(values[IDENTITY_POOL_ID]).strip(),
            user_pool_id=str(values[USER_POOL_ID]).strip(),
            user_pool_client_id=str(values[USER_POOL_CLIENT_ID]).strip(),
            region=str(values[REGION]).strip(),
            bucket=str(values[BUCKET]).strip(),
        )

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "FrontendConfig":
        env = os.environ if environ is None else environ
        return cls.from_mapping({name: env.get(name) for name in STACK_OUTPUT_KEYS}, source="environment")

    @classmethod
    def from_stack_outputs(cls, outputs: Mapping[str, str]) -> "FrontendConfig":
        return cls.from_mapping(
            {name: outputs.get(key) for name, key in STACK_OUTPUT_KEYS.items()},
            source="stack outputs",
        )

    def to_env(self) -> dict[str, str]:
        return {
            IDENTITY_POOL_ID: self.identity_pool_id,
            USER_POOL_ID: self.user_pool_id,
            USER_POOL_CLIENT_ID: self.user_pool_client_id,
            REGION: self.region,
            BUCKET: self.bucket,
        }

    @property
    def identity_provider_name(self) -> str:
        return f"cognito-idp.{self.region}.amazonaws.com/{self.user_pool_id}"

    @property
    def bucket_arn(self) -> str:
        return f"arn:aws:s3:::{self.bucket}"
