import uuid
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Iterable, List, Mapping, Optional, Tuple

from common.job_schema import ErrorKind, Job, JobStatus, Result, TransformSettings

# ------------------------------------------------------------------------------
# JOB STORE
# An immutable snapshot of the batch: jobs keyed by id, in intake order.
# Every transition below returns a NEW store; the previous one is untouched.
# Results displaced by a transition are handed back to the caller, which owns
# releasing their display handles.
# ------------------------------------------------------------------------------


@dataclass(frozen=True)
class SourceFile:
    """One intake item: raw bytes plus declared mime type."""
    content: bytes
    mime: str
    name: str = ""


@dataclass(frozen=True)
class JobStore:
    jobs: Mapping[str, Job] = field(default_factory=lambda: MappingProxyType({}))

    def __len__(self) -> int:
        return len(self.jobs)

    def __iter__(self):
        return iter(self.jobs.values())

    def ids(self) -> List[str]:
        return list(self.jobs)

    def count(self, status: JobStatus) -> int:
        return sum(1 for j in self.jobs.values() if j.status == status)


def _with_jobs(jobs: dict) -> JobStore:
    return JobStore(jobs=MappingProxyType(jobs))


def _replace(job: Job, **changes) -> Job:
    # Re-run validation so the status/result/error invariants are checked
    return Job(**{**dict(job), **changes})


def _results(jobs: Iterable[Job]) -> List[Result]:
    return [j.result for j in jobs if j.result is not None]


def create_store(sources: Iterable[SourceFile]) -> JobStore:
    """Builds a fresh store with one pending job per source file."""
    jobs = {}
    for source in sources:
        job_id = uuid.uuid4().hex[:12]
        jobs[job_id] = Job(
            id=job_id,
            name=source.name or f"image-{job_id}",
            source_bytes=source.content,
            source_mime=source.mime,
            status=JobStatus.PENDING,
        )
    return _with_jobs(jobs)


def replace_all(store: JobStore, sources: Iterable[SourceFile]) -> Tuple[JobStore, List[Result]]:
    """Intake: the whole collection is replaced by new pending jobs."""
    return create_store(sources), _results(store)


def clear(store: JobStore) -> Tuple[JobStore, List[Result]]:
    return JobStore(), _results(store)


def get_job(store: JobStore, job_id: str) -> Optional[Job]:
    return store.jobs.get(job_id)


def update_job(store: JobStore, job: Job) -> JobStore:
    """Swaps in a new version of an existing job, keeping its position."""
    if job.id not in store.jobs:
        raise KeyError(job.id)
    jobs = dict(store.jobs)
    jobs[job.id] = job
    return _with_jobs(jobs)


def get_next_pending_job(store: JobStore) -> Optional[Job]:
    """First pending job by insertion order."""
    for job in store.jobs.values():
        if job.status == JobStatus.PENDING:
            return job
    return None


def mark_processing(store: JobStore, job_id: str, settings: TransformSettings) -> JobStore:
    job = store.jobs[job_id]
    if job.status != JobStatus.PENDING:
        raise ValueError(f"Job {job_id} is {job.status.value}, expected pending")
    if store.count(JobStatus.PROCESSING):
        raise ValueError("Another job is already processing")
    return update_job(store, _replace(job, status=JobStatus.PROCESSING, settings_snapshot=settings))


def mark_completed(store: JobStore, job_id: str, result: Result) -> Optional[JobStore]:
    """Returns None when the job is no longer in this store (batch replaced
    or reset while it ran)."""
    job = store.jobs.get(job_id)
    if job is None or job.status != JobStatus.PROCESSING:
        return None
    return update_job(store, _replace(job, status=JobStatus.COMPLETED, result=result))


def mark_failed(store: JobStore, job_id: str, kind: ErrorKind, detail: str = "") -> Optional[JobStore]:
    job = store.jobs.get(job_id)
    if job is None or job.status != JobStatus.PROCESSING:
        return None
    return update_job(
        store, _replace(job, status=JobStatus.ERROR, error=kind, error_detail=detail or None)
    )


def rearm_finished(store: JobStore) -> Tuple[JobStore, List[Result]]:
    """Every completed/error job goes back to pending; processing jobs are left alone."""
    jobs = {}
    released = []
    for job_id, job in store.jobs.items():
        if job.status in (JobStatus.COMPLETED, JobStatus.ERROR):
            if job.result is not None:
                released.append(job.result)
            job = _replace(
                job,
                status=JobStatus.PENDING,
                result=None,
                error=None,
                error_detail=None,
                settings_snapshot=None,
            )
        jobs[job_id] = job
    return _with_jobs(jobs), released
