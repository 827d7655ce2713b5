from __future__ import annotations


class AttributeAccessError(Exception):
    error_code = "ATTRIBUTE_ACCESS_ERROR"
    retryable = False


class ValidationError(AttributeAccessError):
    """Attribute value rejected at the identity boundary; the user may resubmit."""

    error_code = "INVALID_ATTRIBUTE"
    retryable = True

    def __init__(self, attribute: str, message: str) -> None:
        super().__init__(f"{attribute}: {message}")
        self.attribute = attribute


class UnmappedAttributeError(AttributeAccessError):
    """No session tag can be derived; the exchange fails closed."""

    error_code = "UNMAPPED_ATTRIBUTE"


class NoRoleMatchedError(AttributeAccessError):
    error_code = "NO_ROLE_MATCHED"


class ExchangeDeniedError(AttributeAccessError):
    error_code = "EXCHANGE_DENIED"


class PolicyConfigurationError(AttributeAccessError):
    error_code = "POLICY_MISCONFIGURED"


class ConfigurationError(AttributeAccessError):
    error_code = "MISCONFIGURED"
