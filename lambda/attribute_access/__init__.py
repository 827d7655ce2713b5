"""Attribute-scoped access to a shared bucket.

A verified ``custom:client`` attribute becomes an STS session tag at exchange
time, and one access policy uses that tag to confine each identity to
``<bucket>/<client>/*``.
"""

from .access import AccessPolicyStatement, build_access_policy, check_partitioned, principal_tag_variable
from .broker import CredentialBroker, IssuedCredential, check_session_tags
from .config import FrontendConfig
from .errors import (
    AttributeAccessError,
    ConfigurationError,
    ExchangeDeniedError,
    NoRoleMatchedError,
    PolicyConfigurationError,
    UnmappedAttributeError,
    ValidationError,
)
from .evaluation import Decision, PolicyEvaluator, statement_permits, substitute
from .identity import IdentityRecord, LocalIdentityStore, VerifiedToken
from .mapping import FederationMapping, FederationMappingTable
from .roles import AmbiguousRoleResolution, ExchangeOutcome, RoleSelectionRule
from .schema import CLIENT_ATTRIBUTE, AttributeSchema
from .trust import AuthState, TrustPolicyStatement, build_trust_policies, build_trust_policy

__all__ = [
    "AccessPolicyStatement",
    "AmbiguousRoleResolution",
    "AttributeAccessError",
    "AttributeSchema",
    "AuthState",
    "CLIENT_ATTRIBUTE",
    "ConfigurationError",
    "CredentialBroker",
    "Decision",
    "ExchangeDeniedError",
    "ExchangeOutcome",
    "FederationMapping",
    "FederationMappingTable",
    "FrontendConfig",
    "IdentityRecord",
    "IssuedCredential",
    "LocalIdentityStore",
    "NoRoleMatchedError",
    "PolicyConfigurationError",
    "PolicyEvaluator",
    "RoleSelectionRule",
    "TrustPolicyStatement",
    "UnmappedAttributeError",
    "ValidationError",
    "VerifiedToken",
    "build_access_policy",
    "build_trust_policies",
    "build_trust_policy",
    "check_partitioned",
    "check_session_tags",
    "principal_tag_variable",
    "statement_permits",
    "substitute",
]

__version__ = "0.1.0"
