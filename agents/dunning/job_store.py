"""Notification job store: fingerprinted, idempotent reminder jobs.

A job's ``hash`` is a SHA-256 over its semantic content, so submitting the
same reminder twice yields the stored job flagged ``duplicate`` instead of a
second row. Jobs are only mutated through the allow-listed ``JobPatch`` and
are never deleted; sent reminders are recorded in an append-only log.
"""

import hashlib
import json
import logging
import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Callable, Mapping, Protocol, Sequence

from backend.core.observability import metrics

from . import errors
from .config import DunningConfig
from .dto import (
    JobLine,
    JobPatch,
    JobPayload,
    JobStatus,
    NotificationJob,
    NotificationLog,
    parse_datetime,
    to_float,
    to_int,
)

logger = logging.getLogger(__name__)

MESSAGE_FINGERPRINT_LIMIT = 512

STRICT_REQUIRED_FIELDS = (
    "rucOrDni",
    "companyName",
    "licenseIds",
    "licenses",
    "severity",
    "severityScore",
    "totalBase",
    "totalLate",
    "totalDue",
    "message",
)
LENIENT_REQUIRED_FIELDS = ("rucOrDni", "licenseIds", "message")
LOG_REQUIRED_FIELDS = ("rucOrDni", "licenseIds", "severity", "totalDue", "sentAt")


class DuplicateHashError(Exception):
    """Raised by a repository when the unique hash index rejects an insert."""


class JobRepository(Protocol):
    def insert(self, job: NotificationJob) -> NotificationJob: ...

    def get(self, job_id: str) -> NotificationJob | None: ...

    def get_by_hash(self, job_hash: str) -> NotificationJob | None: ...

    def save(self, job: NotificationJob) -> NotificationJob: ...

    def find(self, *, status: JobStatus | None, limit: int) -> list[NotificationJob]: ...


class LogRepository(Protocol):
    def insert(self, entry: NotificationLog) -> NotificationLog: ...


def fingerprint(payload: JobPayload) -> str:
    """Content fingerprint of a reminder.

    Covers the recipient id, the de-duplicated sorted license ids, severity,
    the total formatted to two decimals and the trimmed message (first 512
    characters). Contact details, channel, origin and schedule are excluded.
    """
    base = {
        "rucOrDni": payload.ruc_or_dni.strip(),
        "licenseIds": sorted(set(payload.license_ids)),
        "severity": payload.severity,
        "totalDue": f"{payload.total_due:.2f}",
        "message": payload.message.strip()[:MESSAGE_FINGERPRINT_LIMIT],
    }
    canonical = json.dumps(base, sort_keys=True, separators=(",", ":"), ensure_ascii=False)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def _is_missing(value: Any) -> bool:
    return value is None or value == "" or value == []


def parse_job_payload(
    data: Any, required: Sequence[str] = STRICT_REQUIRED_FIELDS
) -> JobPayload:
    """Validate and convert one raw job item.

    Optional values default: ``companyName`` to ``rucOrDni``, ``severity`` to
    ``info``, numeric totals to 0 and ``licenses`` to an empty list.

    Raises:
        errors.ValidationError: On missing or malformed fields
    """
    if not isinstance(data, Mapping):
        raise errors.ValidationError("Job item must be an object")

    missing = [key for key in required if key != "licenses" and _is_missing(data.get(key))]
    if "licenses" in required and data.get("licenses") is None:
        missing.append("licenses")
    if missing:
        raise errors.ValidationError(f"Missing fields: {', '.join(missing)}", fields=missing)

    invalid: list[str] = []

    license_ids = data.get("licenseIds")
    if not isinstance(license_ids, list) or not all(
        isinstance(item, (str, int)) and str(item).strip() for item in license_ids
    ):
        invalid.append("licenseIds")
        license_ids = []
    license_ids = [str(item).strip() for item in license_ids]

    lines: list[JobLine] = []
    raw_lines = data.get("licenses") or []
    if not isinstance(raw_lines, list):
        invalid.append("licenses")
    else:
        try:
            lines = [JobLine.from_dict(line) for line in raw_lines]
        except (ValueError, TypeError):
            invalid.append("licenses")

    numbers: dict[str, float] = {}
    for key in ("severityScore", "totalBase", "totalLate", "totalDue"):
        try:
            numbers[key] = to_float(data.get(key)) or 0.0
        except (ValueError, TypeError):
            invalid.append(key)

    message = data.get("message")
    if not isinstance(message, str):
        invalid.append("message")

    try:
        scheduled_at = parse_datetime(data.get("scheduledAt"))
    except (ValueError, TypeError):
        invalid.append("scheduledAt")
        scheduled_at = None

    if invalid:
        raise errors.ValidationError(f"Invalid fields: {', '.join(invalid)}", fields=invalid)

    ruc_or_dni = str(data["rucOrDni"]).strip()
    return JobPayload(
        ruc_or_dni=ruc_or_dni,
        company_name=str(data.get("companyName") or ruc_or_dni),
        license_ids=license_ids,
        message=message,
        licenses=lines,
        severity=str(data.get("severity") or "info"),
        severity_score=numbers["severityScore"],
        total_base=numbers["totalBase"],
        total_late=numbers["totalLate"],
        total_due=numbers["totalDue"],
        phone_number=data.get("phoneNumber") or None,
        email=data.get("email") or None,
        channel=data.get("channel") or None,
        origin=data.get("origin") or None,
        scheduled_at=scheduled_at,
    )


@dataclass
class UpsertResult:
    job: NotificationJob
    duplicate: bool

    def to_dict(self) -> dict[str, Any]:
        return {**self.job.to_dict(), "duplicate": self.duplicate}


@dataclass
class BatchOutcome:
    """Per-item result of a lenient batch."""

    created: list[UpsertResult] = field(default_factory=list)
    failed: list[dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "created": [result.to_dict() for result in self.created],
            "failed": list(self.failed),
        }


def _as_items(body: Any) -> list[Any]:
    items = body if isinstance(body, list) else [body]
    if not items:
        raise errors.ValidationError("Empty batch")
    return items


class NotificationJobStore:
    """Idempotent store for dunning notification jobs."""

    def __init__(
        self,
        jobs: JobRepository,
        logs: LogRepository | None = None,
        config: DunningConfig | None = None,
        clock: Callable[[], datetime] | None = None,
    ):
        self.jobs = jobs
        self.logs = logs
        self.config = config or DunningConfig()
        self._clock = clock or (lambda: datetime.now(UTC))

    def upsert(self, payload: JobPayload) -> UpsertResult:
        """Insert a pending job unless one with the same fingerprint exists."""
        job_hash = fingerprint(payload)
        existing = self.jobs.get_by_hash(job_hash)
        if existing is not None:
            metrics.increment_job_duplicates()
            logger.info("job_duplicate", extra={"job_id": existing.id, "hash": job_hash})
            return UpsertResult(job=existing, duplicate=True)

        job = NotificationJob.from_payload(
            payload, job_id=uuid.uuid4().hex, job_hash=job_hash, now=self._clock()
        )
        try:
            stored = self.jobs.insert(job)
        except DuplicateHashError:
            # Lost the race on the unique index; the winner is the stored job
            winner = self.jobs.get_by_hash(job_hash)
            if winner is None:
                raise
            metrics.increment_job_duplicates()
            logger.info("job_duplicate_race", extra={"job_id": winner.id, "hash": job_hash})
            return UpsertResult(job=winner, duplicate=True)

        metrics.increment_jobs_created()
        logger.info(
            "job_created",
            extra={"job_id": stored.id, "hash": job_hash, "severity": stored.severity},
        )
        return UpsertResult(job=stored, duplicate=False)

    def get(self, job_id: str) -> NotificationJob:
        job = self.jobs.get(job_id)
        if job is None:
            raise errors.NotFoundError(f"Job {job_id} not found", id=job_id)
        return job

    def find(self, status: str | None = None, limit: int | None = None) -> list[NotificationJob]:
        """List jobs by descending severity score, oldest first within a score."""
        status_enum = None
        if status:
            try:
                status_enum = JobStatus(status.strip().lower())
            except ValueError as exc:
                raise errors.ValidationError(
                    f"Unknown status: {status}", fields=["status"]
                ) from exc
        if limit is None or limit <= 0:
            limit = self.config.jobs_default_limit
        return self.jobs.find(status=status_enum, limit=limit)

    def patch(self, job_id: str, fields: Mapping[str, Any] | None) -> NotificationJob:
        """Apply an allow-listed partial update; other keys are ignored.

        Raises:
            errors.ValidationError: Empty or malformed patch
            errors.NotFoundError: Unknown id
        """
        job_patch = JobPatch.from_mapping(fields)
        current = self.get(job_id)
        updated = self.jobs.save(job_patch.apply(current, self._clock()))
        logger.info(
            "job_patched",
            extra={
                "job_id": job_id,
                "fields": sorted(job_patch.values),
                "status": updated.status.value,
            },
        )
        return updated

    def create_strict(self, body: Any) -> list[UpsertResult]:
        """All-or-nothing batch: every item is validated before any insert."""
        items = _as_items(body)
        payloads: list[JobPayload] = []
        problems: list[str] = []
        bad_fields: list[str] = []
        for index, item in enumerate(items):
            try:
                payloads.append(parse_job_payload(item, STRICT_REQUIRED_FIELDS))
            except errors.ValidationError as exc:
                problems.append(f"item {index}: {exc.message}" if len(items) > 1 else exc.message)
                bad_fields.extend(f for f in exc.fields if f not in bad_fields)
        if problems:
            metrics.increment_job_rejections("strict")
            raise errors.ValidationError("; ".join(problems), fields=bad_fields)
        return [self.upsert(payload) for payload in payloads]

    def create_lenient(self, body: Any) -> BatchOutcome:
        """Per-item batch: failures are reported, successes are kept."""
        outcome = BatchOutcome()
        for index, item in enumerate(_as_items(body)):
            try:
                payload = parse_job_payload(item, LENIENT_REQUIRED_FIELDS)
            except errors.ValidationError as exc:
                outcome.failed.append({"index": index, **exc.to_dict()})
                metrics.increment_job_rejections("lenient")
                continue
            outcome.created.append(self.upsert(payload))
        if outcome.failed:
            logger.warning(
                "job_batch_partial",
                extra={
                    "created_count": len(outcome.created),
                    "failed_count": len(outcome.failed),
                },
            )
        return outcome

    def append_log(self, entry: Mapping[str, Any]) -> NotificationLog:
        """Record a sent reminder.

        Raises:
            errors.ValidationError: On missing or malformed fields
            errors.ConfigurationError: When no log repository is wired
        """
        if self.logs is None:
            raise errors.ConfigurationError("Notification log storage is not configured")
        if not isinstance(entry, Mapping):
            raise errors.ValidationError("Log entry must be an object")

        missing = [key for key in LOG_REQUIRED_FIELDS if _is_missing(entry.get(key))]
        if missing:
            raise errors.ValidationError(f"Missing fields: {', '.join(missing)}", fields=missing)

        invalid: list[str] = []
        license_ids = entry.get("licenseIds")
        if not isinstance(license_ids, list):
            invalid.append("licenseIds")
        try:
            total_due = to_float(entry.get("totalDue")) or 0.0
        except (ValueError, TypeError):
            invalid.append("totalDue")
        try:
            sent_at = parse_datetime(entry.get("sentAt"))
        except (ValueError, TypeError):
            invalid.append("sentAt")
        message = entry.get("message")
        if isinstance(message, str):
            message_length = len(message)
        else:
            try:
                message_length = to_int(entry.get("messageLength")) or 0
            except (ValueError, TypeError):
                invalid.append("messageLength")
        if invalid:
            raise errors.ValidationError(f"Invalid fields: {', '.join(invalid)}", fields=invalid)

        log = NotificationLog(
            id=uuid.uuid4().hex,
            job_id=str(entry["jobId"]) if entry.get("jobId") else None,
            ruc_or_dni=str(entry["rucOrDni"]).strip(),
            license_ids=[str(item) for item in license_ids],
            severity=str(entry["severity"]),
            total_due=total_due,
            message_length=message_length,
            conversation_id=(
                str(entry["conversationId"]) if entry.get("conversationId") is not None else None
            ),
            sent_at=sent_at,
            created_at=self._clock(),
        )
        stored = self.logs.insert(log)
        logger.info(
            "notification_logged",
            extra={"log_id": stored.id, "job_id": stored.job_id, "severity": stored.severity},
        )
        return stored
