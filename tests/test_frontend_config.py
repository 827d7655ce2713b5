import pytest

from attribute_access.config import STACK_OUTPUT_KEYS, FrontendConfig
from attribute_access.errors import ConfigurationError

ENV = {
    "IDENTITY_POOL_ID": "us-east-1:pool",
    "USER_POOL_ID": "us-east-1_abc",
    "USER_POOL_CLIENT_ID": "client-1",
    "REGION": "us-east-1",
    "BUCKET": "shared-bucket",
}


def test_from_env_and_back():
    config = FrontendConfig.from_env(ENV)
    assert config.to_env() == ENV
    assert config.identity_provider_name == "cognito-idp.us-east-1.amazonaws.com/us-east-1_abc"
    assert config.bucket_arn == "arn:aws:s3:::shared-bucket"


def test_from_env_reads_process_environment(monkeypatch):
    for k, v in ENV.items():
        monkeypatch.setenv(k, v)
    assert FrontendConfig.from_env() == FrontendConfig.from_env(ENV)


def test_from_stack_outputs_uses_output_keys():
    outputs = {STACK_OUTPUT_KEYS[name]: value for name, value in ENV.items()}
    assert FrontendConfig.from_stack_outputs(outputs).to_env() == ENV


def test_missing_values_are_named():
    env = dict(ENV, BUCKET="  ")
    del env["REGION"]
    with pytest.raises(ConfigurationError) as exc_info:
        FrontendConfig.from_env(env)
    message = str(exc_info.value)
    assert "REGION" in message and "BUCKET" in message
    assert "environment" in message
