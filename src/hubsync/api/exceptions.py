#!/usr/bin/env python3
"""Errors raised by the registry clients, the staging store and the workflows.

Every error derives from HubSyncError and carries a machine-readable code,
a details dict and a ``recoverable`` flag. The flag is the only thing
OperationResult.from_exception() looks at when it sorts a failure into
transient or permanent, so subclasses set it from what they know about
the failure (HTTP status, kind of network problem).

Exception Hierarchy:
    HubSyncError
    ├── ConfigurationError
    ├── AuthenticationError
    │   ├── TokenFetchError
    │   ├── TokenExpiredError
    │   └── InvalidCredentialsError
    ├── APIError
    │   ├── RateLimitError
    │   ├── NotFoundError
    │   ├── ConflictError
    │   ├── ValidationError
    │   └── ServerError
    ├── NetworkError
    │   ├── ConnectionError
    │   └── TimeoutError
    ├── TransientExternalError
    ├── PermanentValidationError
    └── SyncError
        ├── PartialSyncError
        ├── DuplicateDeviceIdError
        ├── JobFailedError
        ├── JobQuotaExceededError
        ├── JobNotReadyError
        ├── ReadinessTimeoutError
        ├── ReconciliationError
        ├── EffectFailedError
        └── NonDeterministicWorkflowError
"""
from datetime import datetime, timezone
from typing import Any, Optional

# Statuses worth retrying when no subclass decides otherwise
RETRYABLE_STATUSES = frozenset({408, 429, 500, 502, 503, 504})


def _details(kwargs: dict[str, Any], **values: Any) -> dict[str, Any]:
    """Pop ``details`` from kwargs and add every value that is not None."""
    details = dict(kwargs.pop("details", None) or {})
    details.update({key: value for key, value in values.items() if value is not None})
    return details


# ============================================
# Base Exception
# ============================================

class HubSyncError(Exception):
    """Root of the error hierarchy.

    Attributes:
        message: Human-readable description
        code: Machine-readable code, defaults to the upper-cased class name
        details: Extra context for logs
        timestamp: UTC time the error was created
        cause: Underlying exception, also chained as ``__cause__``
        recoverable: True when retrying the same call may succeed
    """

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
        cause: Optional[BaseException] = None,
        recoverable: bool = False,
    ):
        super().__init__(message)
        self.message = message
        self.code = code or type(self).__name__.upper()
        self.details = details or {}
        self.timestamp = datetime.now(timezone.utc)
        self.cause = cause
        self.recoverable = recoverable
        if cause is not None:
            self.__cause__ = cause

    def __str__(self) -> str:
        text = f"[{self.code}] {self.message}"
        if self.details:
            text += " (" + ", ".join(f"{k}={v}" for k, v in self.details.items()) + ")"
        return text

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.message!r}, code={self.code!r}, recoverable={self.recoverable})"

    def to_dict(self) -> dict[str, Any]:
        return {
            "error_type": type(self).__name__,
            "message": self.message,
            "code": self.code,
            "details": self.details,
            "timestamp": self.timestamp.isoformat(),
            "recoverable": self.recoverable,
            "cause": str(self.cause) if self.cause else None,
        }


class ConfigurationError(HubSyncError):
    """Required settings are missing or unusable. Never retried."""

    def __init__(self, message: str, missing_keys: Optional[list[str]] = None, **kwargs):
        details = _details(kwargs, missing_keys=missing_keys or None)
        super().__init__(message, code="CONFIGURATION_ERROR", details=details, **kwargs)
        self.missing_keys = missing_keys or []


# ============================================
# Authentication Errors
# ============================================

class AuthenticationError(HubSyncError):
    """Token acquisition or token use failed."""

    def __init__(self, message: str, **kwargs):
        kwargs.setdefault("recoverable", True)
        super().__init__(message, **kwargs)


class TokenFetchError(AuthenticationError):
    """The token endpoint did not hand out a token."""

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        endpoint_key: Optional[str] = None,
        **kwargs,
    ):
        details = _details(kwargs, status_code=status_code, endpoint_key=endpoint_key)
        super().__init__(message, code="TOKEN_FETCH_ERROR", details=details, **kwargs)
        self.status_code = status_code
        self.endpoint_key = endpoint_key


class TokenExpiredError(AuthenticationError):
    """A resource server answered 401 for a cached token."""

    def __init__(self, message: str = "Access token rejected", **kwargs):
        super().__init__(message, code="TOKEN_EXPIRED", **kwargs)


class InvalidCredentialsError(AuthenticationError):
    """The token endpoint rejected the client id or secret."""

    def __init__(self, message: str = "Invalid client credentials", **kwargs):
        kwargs["recoverable"] = False
        super().__init__(message, code="INVALID_CREDENTIALS", **kwargs)


# ============================================
# API Errors
# ============================================

class APIError(HubSyncError):
    """A registry answered with a non-success HTTP status.

    Attributes:
        status_code: HTTP status
        endpoint: Path that was requested
        method: HTTP method
        response_body: Body of the reply, kept whole; details hold the first 500 chars
    """

    def __init__(
        self,
        message: str,
        status_code: int,
        endpoint: Optional[str] = None,
        response_body: Optional[str] = None,
        method: str = "GET",
        **kwargs,
    ):
        details = _details(
            kwargs,
            status_code=status_code,
            endpoint=endpoint,
            method=method or None,
            response_body=response_body[:500] if response_body else None,
        )
        kwargs.setdefault("recoverable", status_code in RETRYABLE_STATUSES)
        kwargs.setdefault("code", f"API_ERROR_{status_code}")
        super().__init__(message, details=details, **kwargs)
        self.status_code = status_code
        self.endpoint = endpoint
        self.response_body = response_body
        self.method = method


class RateLimitError(APIError):
    """HTTP 429. ``retry_after`` falls back to 60 seconds."""

    def __init__(self, message: str = "Rate limit exceeded", retry_after: Optional[int] = None, **kwargs):
        kwargs.setdefault("status_code", 429)
        details = _details(kwargs, retry_after_seconds=retry_after)
        super().__init__(message, code="RATE_LIMIT_EXCEEDED", details=details, **kwargs)
        self.retry_after = retry_after or 60


class NotFoundError(APIError):
    """HTTP 404, or a lookup that came back empty."""

    def __init__(self, resource_type: str, resource_id: Optional[str] = None, **kwargs):
        kwargs.setdefault("status_code", 404)
        details = _details(kwargs, resource_type=resource_type, resource_id=resource_id)
        message = f"{resource_type} '{resource_id}' not found" if resource_id else f"{resource_type} not found"
        super().__init__(message, code="NOT_FOUND", details=details, recoverable=False, **kwargs)
        self.resource_type = resource_type
        self.resource_id = resource_id


class ConflictError(APIError):
    """HTTP 409. Create paths treat it as "already there"."""

    def __init__(self, message: str = "Resource already exists", **kwargs):
        kwargs.setdefault("status_code", 409)
        super().__init__(message, code="CONFLICT", recoverable=False, **kwargs)


class ValidationError(APIError):
    """Input rejected, either by a registry (400/422) or by a local check."""

    def __init__(self, message: str, field: Optional[str] = None, **kwargs):
        kwargs.setdefault("status_code", 400)
        details = _details(kwargs, field=field)
        super().__init__(message, code="VALIDATION_ERROR", details=details, recoverable=False, **kwargs)
        self.field = field


class ServerError(APIError):
    """HTTP 5xx. Always worth another attempt."""

    def __init__(self, message: str = "Server error", **kwargs):
        kwargs.setdefault("status_code", 500)
        super().__init__(message, code="SERVER_ERROR", recoverable=True, **kwargs)


# ============================================
# Network Errors
# ============================================

class NetworkError(HubSyncError):
    """The request never got an HTTP answer."""

    def __init__(self, message: str, **kwargs):
        kwargs.setdefault("recoverable", True)
        super().__init__(message, **kwargs)


class ConnectionError(NetworkError):
    def __init__(self, message: str = "Failed to connect to server", host: Optional[str] = None, **kwargs):
        details = _details(kwargs, host=host)
        super().__init__(message, code="CONNECTION_ERROR", details=details, **kwargs)


class TimeoutError(NetworkError):
    def __init__(self, message: str = "Request timed out", timeout_seconds: Optional[float] = None, **kwargs):
        details = _details(kwargs, timeout_seconds=timeout_seconds)
        super().__init__(message, code="TIMEOUT_ERROR", details=details, **kwargs)


# ============================================
# Registry Errors
# ============================================

class TransientExternalError(HubSyncError):
    """Raised for a registry failure that is expected to clear on retry.

    Used for missing readiness data (twin tags not populated yet) and for
    external registries that answer with an unexpected but non-fatal reply.
    """

    def __init__(self, message: str, **kwargs):
        kwargs.setdefault("code", "TRANSIENT_EXTERNAL_ERROR")
        super().__init__(message, recoverable=True, **kwargs)


class PermanentValidationError(HubSyncError):
    """Device properties that no number of retries will make acceptable."""

    def __init__(self, message: str, field: Optional[str] = None, **kwargs):
        details = _details(kwargs, field=field)
        super().__init__(
            message, code="PERMANENT_VALIDATION_ERROR", details=details, recoverable=False, **kwargs
        )
        self.field = field


# ============================================
# Sync Errors
# ============================================

class SyncError(HubSyncError):
    """Base class for synchronization errors."""


class PartialSyncError(SyncError):
    """Some devices of a batch failed while the rest went through.

    Attributes:
        succeeded: Devices applied
        failed: Devices that failed
        errors: The individual failures (up to the collector's cap)
    """

    def __init__(
        self,
        message: str,
        succeeded: int = 0,
        failed: int = 0,
        errors: Optional[list[Exception]] = None,
        **kwargs,
    ):
        errors = errors or []
        details = _details(
            kwargs,
            succeeded=succeeded,
            failed=failed,
            sample_errors=[str(e)[:100] for e in errors[:5]] or None,
        )
        super().__init__(message, code="PARTIAL_SYNC_ERROR", details=details, recoverable=True, **kwargs)
        self.succeeded = succeeded
        self.failed = failed
        self.errors = errors


class DuplicateDeviceIdError(SyncError):
    """Raised when a device id appears twice in one side of a diff."""

    def __init__(self, device_id: str, side: str, **kwargs):
        details = _details(kwargs, device_id=device_id, side=side)
        super().__init__(
            f"Duplicate device id '{device_id}' in {side} set",
            code="DUPLICATE_DEVICE_ID",
            details=details,
            recoverable=False,
            **kwargs,
        )
        self.device_id = device_id
        self.side = side

class JobFailedError(SyncError):
    """Raised when a bulk job ends in failed or cancelled state.

    Attributes:
        job_id: Identifier of the hub job
        job_status: Terminal status reported by the hub
    """

    def __init__(
        self,
        job_id: str,
        job_status: str,
        message: Optional[str] = None,
        **kwargs,
    ):
        details = _details(kwargs, job_id=job_id, job_status=job_status)
        super().__init__(
            message or f"Job {job_id} ended with status {job_status}",
            code="JOB_FAILED",
            details=details,
            recoverable=False,
            **kwargs,
        )
        self.job_id = job_id
        self.job_status = job_status


class JobQuotaExceededError(SyncError):
    """Raised when the hub refuses a job because too many are running."""

    def __init__(self, message: str = "Bulk job quota exceeded", **kwargs):
        super().__init__(
            message,
            code="JOB_QUOTA_EXCEEDED",
            recoverable=True,
            **kwargs,
        )


class JobNotReadyError(SyncError):
    """Raised when polling gives up while the job is still not terminal.

    The job outcome is unknown; callers must not assume success or failure.
    """

    def __init__(
        self,
        job_id: str,
        last_status: str,
        attempts: int,
        **kwargs,
    ):
        details = _details(kwargs, job_id=job_id, last_status=last_status, attempts=attempts)
        super().__init__(
            f"Job {job_id} not finished after {attempts} polls (last status {last_status})",
            code="JOB_NOT_READY",
            details=details,
            recoverable=False,
            **kwargs,
        )
        self.job_id = job_id
        self.last_status = last_status
        self.attempts = attempts


class ReadinessTimeoutError(SyncError):
    """Raised when required device metadata never became available."""

    def __init__(self, device_id: str, attempts: int, **kwargs):
        details = _details(kwargs, device_id=device_id, attempts=attempts)
        super().__init__(
            f"Device '{device_id}' not ready after {attempts} checks",
            code="READINESS_TIMEOUT",
            details=details,
            recoverable=False,
            **kwargs,
        )
        self.device_id = device_id
        self.attempts = attempts


class ReconciliationError(SyncError):
    """Raised when a bulk reconciliation run aborts.

    Attributes:
        run_id: Reconciliation run identifier
        stage: Step of the run that failed
    """

    def __init__(self, message: str, run_id: str, stage: str, **kwargs):
        details = _details(kwargs, run_id=run_id, stage=stage)
        super().__init__(
            message,
            code="RECONCILIATION_FAILED",
            details=details,
            recoverable=False,
            **kwargs,
        )
        self.run_id = run_id
        self.stage = stage


class EffectFailedError(SyncError):
    """Raised when replaying an effect whose recorded outcome was a failure."""

    def __init__(
        self,
        effect_name: str,
        error: Optional[dict[str, Any]] = None,
        **kwargs,
    ):
        error = error or {}
        details = _details(kwargs, effect=effect_name, error_type=error.get("error_type"))
        super().__init__(
            error.get("message") or f"Effect '{effect_name}' failed",
            code="EFFECT_FAILED",
            details=details,
            recoverable=False,
            **kwargs,
        )
        self.effect_name = effect_name
        self.error_type = error.get("error_type")


class NonDeterministicWorkflowError(SyncError):
    """Raised when a replayed workflow asks for a different effect than recorded."""

    def __init__(
        self,
        instance_id: str,
        sequence: int,
        expected: str,
        actual: str,
        **kwargs,
    ):
        details = _details(
            kwargs, instance_id=instance_id, sequence=sequence, recorded=expected, requested=actual
        )
        super().__init__(
            f"Workflow {instance_id} diverged from its history at step {sequence}",
            code="NON_DETERMINISTIC_WORKFLOW",
            details=details,
            recoverable=False,
            **kwargs,
        )


# ============================================
# Error Aggregation
# ============================================

class ErrorCollector:
    """Gathers per-device failures of a batch and reports them as one PartialSyncError.

    Only the first ``max_errors`` are kept; ``count()`` still reflects every add.
    """

    def __init__(self, max_errors: int = 100):
        self.errors: list[tuple[Exception, dict[str, Any]]] = []
        self.max_errors = max_errors
        self._total = 0

    def add(self, error: Exception, context: Optional[dict[str, Any]] = None):
        self._total += 1
        if len(self.errors) < self.max_errors:
            self.errors.append((error, context or {}))

    def has_errors(self) -> bool:
        return self._total > 0

    def count(self) -> int:
        return self._total

    def to_exception(self, succeeded: int = 0) -> PartialSyncError:
        if not self.errors:
            raise ValueError("ErrorCollector is empty")
        return PartialSyncError(
            f"{self._total} device(s) failed",
            succeeded=succeeded,
            failed=self._total,
            errors=[e for e, _ in self.errors],
        )


# ============================================
# Exports
# ============================================

__all__ = [
    # Base
    "HubSyncError",
    # Configuration
    "ConfigurationError",
    # Authentication
    "AuthenticationError",
    "TokenFetchError",
    "TokenExpiredError",
    "InvalidCredentialsError",
    # API
    "APIError",
    "RateLimitError",
    "NotFoundError",
    "ConflictError",
    "ValidationError",
    "ServerError",
    # Network
    "NetworkError",
    "ConnectionError",
    "TimeoutError",
    # Registry
    "TransientExternalError",
    "PermanentValidationError",
    # Sync
    "SyncError",
    "PartialSyncError",
    "DuplicateDeviceIdError",
    "JobFailedError",
    "JobQuotaExceededError",
    "JobNotReadyError",
    "ReadinessTimeoutError",
    "ReconciliationError",
    "EffectFailedError",
    "NonDeterministicWorkflowError",
    # Utilities
    "ErrorCollector",
]
