"""Registry API modules.

This package provides the HTTP plumbing shared by the hub and external
registry adapters.

Classes:
    RegistryHttpClient: Generic JSON client with bearer auth and typed errors
    TokenCache: Process-scoped OAuth2 token cache with single-flight refresh
    OAuthTokenAcquirer: client_credentials token fetcher
    ClientCredentials: OAuth2 client credentials

Exceptions:
    HubSyncError: Base exception for all errors
    ConfigurationError: Missing or invalid configuration
    AuthenticationError: Authentication failures
    APIError: API request failures
    NetworkError: Network connectivity issues
    SyncError: Synchronization failures

Resilience:
    RetryPolicy: Exponential backoff policy
    OperationResult: Success/noop/transient/permanent outcome of a call
    retry_with_policy: Policy-driven retry of one effect
"""
from .auth import (
    DEFAULT_TOKEN_TTL_SECONDS,
    CachedToken,
    ClientCredentials,
    OAuthTokenAcquirer,
    TokenCache,
)
from .client import RegistryHttpClient
from .exceptions import (
    APIError,
    AuthenticationError,
    ConfigurationError,
    ConflictError,
    ErrorCollector,
    HubSyncError,
    NetworkError,
    NotFoundError,
    PermanentValidationError,
    RateLimitError,
    SyncError,
    TokenFetchError,
    TransientExternalError,
)
from .resilience import (
    OperationResult,
    OutcomeKind,
    RetryOutcome,
    RetryPolicy,
    process_concurrent,
    retry_with_policy,
)

__all__ = [
    # Auth
    "DEFAULT_TOKEN_TTL_SECONDS",
    "CachedToken",
    "ClientCredentials",
    "OAuthTokenAcquirer",
    "TokenCache",
    # Client
    "RegistryHttpClient",
    # Exceptions
    "APIError",
    "AuthenticationError",
    "ConfigurationError",
    "ConflictError",
    "ErrorCollector",
    "HubSyncError",
    "NetworkError",
    "NotFoundError",
    "PermanentValidationError",
    "RateLimitError",
    "SyncError",
    "TokenFetchError",
    "TransientExternalError",
    # Resilience
    "OperationResult",
    "OutcomeKind",
    "RetryOutcome",
    "RetryPolicy",
    "process_concurrent",
    "retry_with_policy",
]
