"""Job Poller Use Case - waits for hub bulk jobs under a retry policy.

Each poll is one recorded effect. Pending, running and unknown statuses
(and transport errors while polling) are "not ready yet" and retried;
succeeded, failed and cancelled end the wait at once. Running out of
policy while the job is still not terminal raises JobNotReadyError: the
job outcome is unknown and must not be treated as success or failure.
"""

import logging

from ...api.exceptions import JobFailedError, JobNotReadyError
from ...api.resilience import OperationResult, RetryPolicy, retry_with_policy
from ..domain.entities import JobStatus, SyncJob
from ..domain.ports import IHubRegistry

logger = logging.getLogger(__name__)


class JobPoller:
    """Polls a hub job until it reaches a terminal status.

    Example:
        job = await JobPoller(hub).wait(ctx, job_id, policy)
        JobPoller.require_success(job)
    """

    def __init__(self, hub: IHubRegistry):
        self.hub = hub

    async def poll_once(self, job_id: str) -> OperationResult:
        """Fetch the job once and classify its status.

        Returns:
            success with the job for a terminal status; transient with the
            last known job otherwise.
        """
        try:
            job = await self.hub.get_job(job_id)
        except Exception as e:
            logger.warning(f"Polling job {job_id} failed: {e}")
            return OperationResult.transient(
                f"Job {job_id} status unavailable: {e}",
                error_type=e.__class__.__name__,
                value={"job_id": job_id, "status": JobStatus.UNKNOWN.value},
            )

        if job.status.is_terminal:
            return OperationResult.success(job.to_dict())
        return OperationResult.transient(f"Job {job_id} is {job.status.value}", value=job.to_dict())

    async def wait(self, runner, job_id: str, policy: RetryPolicy, name: str = "hub.job_status") -> SyncJob:
        """Wait for ``job_id`` to finish.

        Args:
            runner: WorkflowContext or DirectRunner.
            job_id: Hub job identifier.
            policy: Polling interval, backoff and limits.
            name: Effect name prefix for the polls.

        Returns:
            The job in its terminal status.

        Raises:
            JobNotReadyError: If the policy ran out before the job finished.
        """
        outcome = await retry_with_policy(runner, name, self.poll_once, policy, job_id)

        if outcome.result.succeeded:
            return SyncJob.from_dict(outcome.result.value)

        last = outcome.result.value or {}
        raise JobNotReadyError(
            job_id,
            last_status=last.get("status", JobStatus.UNKNOWN.value),
            attempts=outcome.attempts,
        )

    @staticmethod
    def require_success(job: SyncJob) -> SyncJob:
        """Raise JobFailedError unless the job succeeded."""
        if job.status != JobStatus.SUCCEEDED:
            raise JobFailedError(job.job_id, job.status.value, message=job.failure_reason)
        return job


__all__ = ["JobPoller"]
