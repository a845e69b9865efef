"""
Job Cleanup Service.

Administrative bulk delete of a tenant's jobs. Not part of the normal
job lifecycle.
"""

from typing import Iterable, Optional

from invoice_followup.infrastructure.firestore import JobRepository, JobStatus
from invoice_followup.infrastructure.logging import get_logger, log_duration


logger = get_logger(__name__)


class CleanupService:

    def __init__(self, job_repository: Optional[JobRepository] = None) -> None:
        self._job_repo = job_repository or JobRepository()

    @log_duration("cleanup_jobs")
    def cleanup_jobs(
        self,
        owner_id: str,
        statuses: Optional[Iterable[JobStatus]] = None,
    ) -> int:
        """Delete the owner's jobs, all of them or only those in ``statuses``."""
        statuses = list(statuses) if statuses else None
        deleted = self._job_repo.delete_for_owner(owner_id, statuses)

        logger.warning(
            f"Deleted {deleted} jobs for owner {owner_id}",
            extra={"extra_fields": {
                "owner_id": owner_id,
                "deleted_count": deleted,
                "statuses": [s.value for s in statuses] if statuses else "all",
            }}
        )

        return deleted
