"""
Background execution of template asset imports.

Imports of large archives (many fonts, remote storage) can take longer than
an HTTP request should stay open. This module runs them on a bounded thread
pool and tracks each run as a job:

- Job creation and registration
- Asynchronous import execution
- Status tracking and event logging
- Thread-safe access to job state, written through to the database so
  finished jobs survive a restart
"""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime
from threading import Lock
from typing import Any, Dict, List, Optional

from .database import Database
from .entities import CurrentUser
from .errors import TemplateAssetError
from .importer import TemplateAssetService
from .models import ImportOptions, JobDetail, JobEvent, JobStatus, JobSummary
from .utils import new_id, utc_now

logger = logging.getLogger(__name__)


@dataclass
class JobRecord:
    """
    Internal representation of an import job with full state.

    Attributes:
        id: Unique job identifier
        template_asset_id: The stored archive being imported
        organisation_id: Organisation the entities are created in
        user_id: User who started the import
        status: Current execution status
        created_at: Job creation timestamp (UTC)
        updated_at: Last modification timestamp (UTC)
        options: External ids passed to the import
        result: Ids of the created entities, keyed like the import result
        error: Error message if the job failed
        events: Chronological list of job lifecycle events
    """

    id: str
    template_asset_id: str
    organisation_id: str
    user_id: str
    status: JobStatus
    created_at: datetime
    updated_at: datetime
    options: Dict[str, Any] = field(default_factory=dict)
    result: Dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None
    events: List[JobEvent] = field(default_factory=list)

    def to_summary(self) -> JobSummary:
        return JobSummary(
            id=self.id,
            template_asset_id=self.template_asset_id,
            organisation_id=self.organisation_id,
            status=self.status,
            created_at=self.created_at,
            updated_at=self.updated_at,
        )

    def to_detail(self) -> JobDetail:
        return JobDetail(
            **self.to_summary().model_dump(),
            options=self.options,
            result=self.result,
            events=self.events,
            error=self.error,
        )

    def to_row(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "template_asset_id": self.template_asset_id,
            "organisation_id": self.organisation_id,
            "user_id": self.user_id,
            "status": self.status.value,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "options": self.options,
            "result": self.result,
            "error": self.error,
            "events": [{"timestamp": e.timestamp, "message": e.message} for e in self.events],
        }

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "JobRecord":
        return cls(
            id=row["id"],
            template_asset_id=row["template_asset_id"],
            organisation_id=row["organisation_id"],
            user_id=row["user_id"],
            status=JobStatus(row["status"]),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            options=row["options"],
            result=row["result"],
            error=row["error"],
            events=[JobEvent(**event) for event in row["events"]],
        )


class ImportJobManager:
    """
    Runs imports in the background and keeps track of them.

    Thread Safety:
        All job state modifications are protected by a lock; every change is
        also saved to the ``import_jobs`` table. Only pending and running jobs
        are held in memory; finished ones are read back from the table.
    """

    def __init__(self, service: TemplateAssetService, database: Database, max_workers: int = 2) -> None:
        self.service = service
        self.database = database
        self._jobs: Dict[str, JobRecord] = {}
        self._lock = Lock()
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="template-import")

    def list_jobs(self, user: CurrentUser) -> List[JobSummary]:
        """Jobs of the caller's organisation, newest first."""
        rows = self.database.list_jobs(user.organisation_id)
        with self._lock:
            records = [self._jobs.get(row["id"]) or JobRecord.from_row(row) for row in rows]
        return [record.to_summary() for record in records]

    def get_job(self, job_id: str, user: CurrentUser) -> Optional[JobDetail]:
        with self._lock:
            record = self._jobs.get(job_id)
            detail = record.to_detail() if record else None
        if detail is None:
            row = self.database.get_job(job_id)
            detail = JobRecord.from_row(row).to_detail() if row else None
        if detail is None or detail.organisation_id != user.organisation_id:
            return None
        return detail

    def _register_job(self, record: JobRecord) -> None:
        with self._lock:
            self._jobs[record.id] = record
            self.database.save_job(record.to_row())

    def _update_job(self, job_id: str, **kwargs: Any) -> None:
        """Set attributes on a job, refresh ``updated_at`` and persist it."""
        with self._lock:
            record = self._jobs[job_id]
            for key, value in kwargs.items():
                setattr(record, key, value)
            record.updated_at = utc_now()
            self.database.save_job(record.to_row())

    def _append_event(self, job_id: str, message: str) -> None:
        event = JobEvent(timestamp=utc_now(), message=message)
        with self._lock:
            record = self._jobs[job_id]
            record.events.append(event)
            record.updated_at = event.timestamp
            self.database.save_job(record.to_row())

    def _finish_job(self, job_id: str, message: str, **kwargs: Any) -> None:
        """Record the final event and status, then keep the job only in the database."""
        event = JobEvent(timestamp=utc_now(), message=message)
        with self._lock:
            record = self._jobs.pop(job_id)
            record.events.append(event)
            for key, value in kwargs.items():
                setattr(record, key, value)
            record.updated_at = event.timestamp
            self.database.save_job(record.to_row())

    def create_job(self, user: CurrentUser, template_asset_id: str, options: ImportOptions) -> JobSummary:
        """
        Register an import of a stored archive and submit it.

        The template asset must belong to the caller's organisation or be
        public; that is checked here so the caller gets a 404 instead of a failed job.

        Raises:
            NotFound: If no such template asset is visible to the organisation
        """
        self.service.get_importable_template_asset(template_asset_id, user)

        now = utc_now()
        record = JobRecord(
            id=new_id(),
            template_asset_id=template_asset_id,
            organisation_id=user.organisation_id,
            user_id=user.id,
            status=JobStatus.PENDING,
            created_at=now,
            updated_at=now,
            options=options.model_dump(exclude_none=True),
        )
        record.events.append(JobEvent(timestamp=now, message="Import registered and awaiting execution."))
        self._register_job(record)

        self._executor.submit(self._run_import, record.id, user, options)
        logger.info(f"Queued import job {record.id} for template asset {template_asset_id}")
        return record.to_summary()

    def _run_import(self, job_id: str, user: CurrentUser, options: ImportOptions) -> None:
        """Execute one import (runs in a background thread)."""
        self._update_job(job_id, status=JobStatus.RUNNING)
        self._append_event(job_id, "Import started.")

        with self._lock:
            template_asset_id = self._jobs[job_id].template_asset_id

        try:
            created = self.service.import_template_asset(user, template_asset_id, options)
        except TemplateAssetError as exc:
            self._finish_job(job_id, f"Import failed: {exc.message}", status=JobStatus.FAILED, error=exc.message)
        except Exception as exc:
            logger.exception(f"Import job {job_id} crashed")
            self._finish_job(job_id, f"Import failed: {exc}", status=JobStatus.FAILED, error=str(exc))
        else:
            result = {key: entity.id for key, entity in created.items()}
            self._finish_job(job_id, "Import completed.", status=JobStatus.COMPLETED, result=result)

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)
