"""Settings for the registry sync service.

Settings are read once from the environment (and a ``.env`` file, via
python-dotenv) into a SyncSettings instance that is passed explicitly to
the components that need it.

Integer settings fall back to their default when unset or unparsable and
are raised to their minimum when configured below it.

Environment Variables:
    EXTERNAL_SYSTEM_NAME: External registry adapter (default: actility)
    SYNC_USE_EXPORT_JOB: Read hub devices with an export job (default: true)
    SYNC_CHANGE_JOB_THRESHOLD: Change count that switches to an import job
        (default: 100, 0 always uses the job)
    SYNC_PAGE_BUDGET_SECONDS: Time budget of one page-transfer call (default: 180)
    SYNC_MANUAL_BATCH_SIZE: Devices per manual import batch (default: 100)
    SYNC_IMPORT_INITIAL_WAIT_SECONDS: Wait before the first import poll (default: 30)
    HUB_SYNCHRONIZER_ENABLED: Allow bulk reconciliation runs, manual and
        scheduled (default: true)
    SYNC_INTERVAL_MINUTES: Minutes between scheduled reconciliations (default: 60)
    SYNC_ON_STARTUP: Reconcile once when the scheduler starts (default: true)

    EXPORT_JOB_RETRY_INTERVAL_SECONDS / EXPORT_JOB_RETRY_ATTEMPTS
    IMPORT_JOB_RETRY_INTERVAL_SECONDS / IMPORT_JOB_RETRY_ATTEMPTS
    TWIN_CHECK_INTERVAL_SECONDS / TWIN_CHECK_MAX_INTERVAL_SECONDS /
        TWIN_CHECK_MAX_RETRY_COUNT / TWIN_CHECK_RETRY_TIMEOUT_MINUTES
    EXTERNAL_CALL_RETRY_INTERVAL_SECONDS / EXTERNAL_CALL_MAX_INTERVAL_SECONDS /
        EXTERNAL_CALL_MAX_RETRY_COUNT / EXTERNAL_CALL_RETRY_TIMEOUT_MINUTES

    Hub credentials:
        HUB_BASE_URL, HUB_TOKEN_URL, HUB_CLIENT_ID, HUB_CLIENT_SECRET

    Actility credentials:
        ACTILITY_API_TOKEN_URI, ACTILITY_API_CLIENT_ID,
        ACTILITY_API_CLIENT_SECRET, ACTILITY_API_DEVICES_URI

    EXTERNAL_TOKEN_TTL_SECONDS: Validity applied to external tokens (default: 6 days)
    STAGING_ROOT: Staging directory (default: ./staging)
    STAGING_SIGNING_KEY: Key signing staging access URLs (default: random per process)
    HUB_FACADE_ENABLED / HUB_FACADE_SOFT_DELETE: Facade switches (default: true / false)
    DATABASE_URL: PostgreSQL effect log (unset: in-memory)
"""

import logging
import os
import secrets
from dataclasses import dataclass, field
from typing import Mapping, Optional

from dotenv import load_dotenv

from .api.auth import DEFAULT_TOKEN_TTL_SECONDS, ClientCredentials
from .api.exceptions import ConfigurationError
from .api.resilience import RetryPolicy

logger = logging.getLogger(__name__)


def _int_env(env: Mapping[str, str], name: str, default: int, minimum: int) -> int:
    raw = env.get(name)
    try:
        value = int(raw) if raw not in (None, "") else default
    except ValueError:
        logger.warning(f"{name}={raw!r} is not an integer, using {default}")
        value = default
    return max(minimum, value)


def _bool_env(env: Mapping[str, str], name: str, default: bool) -> bool:
    raw = env.get(name)
    if raw is None or raw == "":
        return default
    return raw.strip().lower() == "true"


@dataclass
class SyncSettings:
    """Runtime settings. Build with ``SyncSettings.from_env()``."""

    external_system_name: str = "actility"
    use_export_job: bool = True
    change_job_threshold: int = 100
    page_budget_seconds: int = 180
    manual_batch_size: int = 100
    import_initial_wait_seconds: int = 30

    hub_synchronizer_enabled: bool = True
    sync_interval_minutes: int = 60
    sync_on_startup: bool = True

    export_job_retry_interval: int = 60
    export_job_retry_attempts: int = 5
    import_job_retry_interval: int = 300
    import_job_retry_attempts: int = 5

    twin_check_interval: int = 30
    twin_check_max_interval: int = 300
    twin_check_max_retry_count: int = 100
    twin_check_retry_timeout_minutes: int = 2880

    external_call_retry_interval: int = 10
    external_call_max_interval: int = 300
    external_call_max_retry_count: int = 10
    external_call_retry_timeout_minutes: int = 60

    hub_base_url: Optional[str] = None
    hub_token_url: Optional[str] = None
    hub_client_id: Optional[str] = None
    hub_client_secret: Optional[str] = field(default=None, repr=False)

    actility_token_uri: Optional[str] = None
    actility_client_id: Optional[str] = None
    actility_client_secret: Optional[str] = field(default=None, repr=False)
    actility_devices_uri: Optional[str] = None
    external_token_ttl_seconds: int = DEFAULT_TOKEN_TTL_SECONDS

    staging_root: str = "./staging"
    staging_signing_key: str = field(default_factory=lambda: secrets.token_urlsafe(32), repr=False)

    hub_facade_enabled: bool = True
    hub_facade_soft_delete: bool = False

    database_url: Optional[str] = field(default=None, repr=False)

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> "SyncSettings":
        """Read settings from ``env`` (default: os.environ after loading .env)."""
        if env is None:
            load_dotenv()
            env = os.environ

        return cls(
            external_system_name=env.get("EXTERNAL_SYSTEM_NAME") or "actility",
            use_export_job=_bool_env(env, "SYNC_USE_EXPORT_JOB", True),
            change_job_threshold=_int_env(env, "SYNC_CHANGE_JOB_THRESHOLD", 100, 0),
            page_budget_seconds=_int_env(env, "SYNC_PAGE_BUDGET_SECONDS", 180, 10),
            manual_batch_size=_int_env(env, "SYNC_MANUAL_BATCH_SIZE", 100, 1),
            import_initial_wait_seconds=_int_env(env, "SYNC_IMPORT_INITIAL_WAIT_SECONDS", 30, 0),
            hub_synchronizer_enabled=_bool_env(env, "HUB_SYNCHRONIZER_ENABLED", True),
            sync_interval_minutes=_int_env(env, "SYNC_INTERVAL_MINUTES", 60, 1),
            sync_on_startup=_bool_env(env, "SYNC_ON_STARTUP", True),
            export_job_retry_interval=_int_env(env, "EXPORT_JOB_RETRY_INTERVAL_SECONDS", 60, 10),
            export_job_retry_attempts=_int_env(env, "EXPORT_JOB_RETRY_ATTEMPTS", 5, 1),
            import_job_retry_interval=_int_env(env, "IMPORT_JOB_RETRY_INTERVAL_SECONDS", 300, 1),
            import_job_retry_attempts=_int_env(env, "IMPORT_JOB_RETRY_ATTEMPTS", 5, 1),
            twin_check_interval=_int_env(env, "TWIN_CHECK_INTERVAL_SECONDS", 30, 10),
            twin_check_max_interval=_int_env(env, "TWIN_CHECK_MAX_INTERVAL_SECONDS", 300, 60),
            twin_check_max_retry_count=_int_env(env, "TWIN_CHECK_MAX_RETRY_COUNT", 100, 1),
            twin_check_retry_timeout_minutes=_int_env(env, "TWIN_CHECK_RETRY_TIMEOUT_MINUTES", 2880, 1),
            external_call_retry_interval=_int_env(env, "EXTERNAL_CALL_RETRY_INTERVAL_SECONDS", 10, 1),
            external_call_max_interval=_int_env(env, "EXTERNAL_CALL_MAX_INTERVAL_SECONDS", 300, 10),
            external_call_max_retry_count=_int_env(env, "EXTERNAL_CALL_MAX_RETRY_COUNT", 10, 1),
            external_call_retry_timeout_minutes=_int_env(env, "EXTERNAL_CALL_RETRY_TIMEOUT_MINUTES", 60, 1),
            hub_base_url=env.get("HUB_BASE_URL"),
            hub_token_url=env.get("HUB_TOKEN_URL"),
            hub_client_id=env.get("HUB_CLIENT_ID"),
            hub_client_secret=env.get("HUB_CLIENT_SECRET"),
            actility_token_uri=env.get("ACTILITY_API_TOKEN_URI"),
            actility_client_id=env.get("ACTILITY_API_CLIENT_ID"),
            actility_client_secret=env.get("ACTILITY_API_CLIENT_SECRET"),
            actility_devices_uri=env.get("ACTILITY_API_DEVICES_URI"),
            external_token_ttl_seconds=_int_env(
                env, "EXTERNAL_TOKEN_TTL_SECONDS", DEFAULT_TOKEN_TTL_SECONDS, 60
            ),
            staging_root=env.get("STAGING_ROOT") or "./staging",
            staging_signing_key=env.get("STAGING_SIGNING_KEY") or secrets.token_urlsafe(32),
            hub_facade_enabled=_bool_env(env, "HUB_FACADE_ENABLED", True),
            hub_facade_soft_delete=_bool_env(env, "HUB_FACADE_SOFT_DELETE", False),
            database_url=env.get("DATABASE_URL") or None,
        )

    # ----------------------------------------
    # Required settings
    # ----------------------------------------

    def _require(self, keys: dict[str, Optional[str]], what: str) -> None:
        missing = [name for name, value in keys.items() if not value]
        if missing:
            raise ConfigurationError(
                f"Missing {what} configuration: {', '.join(missing)}",
                missing_keys=missing,
            )

    def require_hub(self) -> None:
        """Raises ConfigurationError if any HUB_* setting is missing."""
        self._require(
            {
                "HUB_BASE_URL": self.hub_base_url,
                "HUB_TOKEN_URL": self.hub_token_url,
                "HUB_CLIENT_ID": self.hub_client_id,
                "HUB_CLIENT_SECRET": self.hub_client_secret,
            },
            "hub",
        )

    def require_actility(self) -> None:
        """Raises ConfigurationError if any ACTILITY_API_* setting is missing."""
        self._require(
            {
                "ACTILITY_API_TOKEN_URI": self.actility_token_uri,
                "ACTILITY_API_CLIENT_ID": self.actility_client_id,
                "ACTILITY_API_CLIENT_SECRET": self.actility_client_secret,
                "ACTILITY_API_DEVICES_URI": self.actility_devices_uri,
            },
            "Actility",
        )

    def hub_credentials(self) -> ClientCredentials:
        self.require_hub()
        return ClientCredentials(
            token_url=self.hub_token_url,
            client_id=self.hub_client_id,
            client_secret=self.hub_client_secret,
        )

    # ----------------------------------------
    # Retry policies
    # ----------------------------------------

    def readiness_policy(self) -> RetryPolicy:
        """Policy for waiting until a new hub device carries its tags."""
        return RetryPolicy(
            initial_interval=self.twin_check_interval,
            backoff_coefficient=2.0,
            max_interval=self.twin_check_max_interval,
            max_attempts=self.twin_check_max_retry_count,
            total_timeout=self.twin_check_retry_timeout_minutes * 60,
        )

    def external_call_policy(self) -> RetryPolicy:
        """Policy for external registry create/delete calls."""
        return RetryPolicy(
            initial_interval=self.external_call_retry_interval,
            backoff_coefficient=2.0,
            max_interval=self.external_call_max_interval,
            max_attempts=self.external_call_max_retry_count,
            total_timeout=self.external_call_retry_timeout_minutes * 60,
        )

    def export_job_policy(self) -> RetryPolicy:
        """Fixed-interval polling of the export job."""
        return RetryPolicy(
            initial_interval=self.export_job_retry_interval,
            backoff_coefficient=1.0,
            max_interval=self.export_job_retry_interval,
            max_attempts=self.export_job_retry_attempts,
        )

    def import_job_policy(self) -> RetryPolicy:
        """Fixed-interval polling of the import job."""
        return RetryPolicy(
            initial_interval=self.import_job_retry_interval,
            backoff_coefficient=1.0,
            max_interval=self.import_job_retry_interval,
            max_attempts=self.import_job_retry_attempts,
        )


__all__ = ["SyncSettings"]
