from sqlalchemy import (
    JSON,
    Column,
    DateTime,
    Float,
    Index,
    Integer,
    Numeric,
    String,
    Table,
    Text,
    insert,
    select,
    update,
)
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from agents.dunning import errors
from agents.dunning.dto import JobLine, JobStatus, NotificationJob, NotificationLog, parse_datetime
from agents.dunning.job_store import DuplicateHashError
from backend.core.database import metadata

license_notification_jobs = Table(
    "license_notification_jobs",
    metadata,
    Column("id", String(32), primary_key=True),
    Column("hash", String(64), nullable=False),
    Column("ruc_or_dni", String(32), nullable=False),
    Column("company_name", String(255), nullable=False),
    Column("phone_number", String(32)),
    Column("email", String(255)),
    Column("license_ids", JSON, nullable=False),
    Column("licenses", JSON, nullable=False),
    Column("severity", String(16), nullable=False),
    Column("severity_score", Float, nullable=False, default=0.0),
    Column("total_base", Numeric(12, 2, asdecimal=False), nullable=False, default=0),
    Column("total_late", Numeric(12, 2, asdecimal=False), nullable=False, default=0),
    Column("total_due", Numeric(12, 2, asdecimal=False), nullable=False, default=0),
    Column("message", Text, nullable=False),
    Column("channel", String(32)),
    Column("origin", String(64)),
    Column("status", String(16), nullable=False),
    Column("attempts", Integer, nullable=False, default=0),
    Column("scheduled_at", DateTime(timezone=True)),
    Column("sent_at", DateTime(timezone=True)),
    Column("created_at", DateTime(timezone=True), nullable=False),
    Column("updated_at", DateTime(timezone=True), nullable=False),
    Index("ux_license_notification_jobs_hash", "hash", unique=True),
    Index("ix_license_notification_jobs_status", "status"),
    extend_existing=True,
)

license_notification_logs = Table(
    "license_notification_logs",
    metadata,
    Column("id", String(32), primary_key=True),
    Column("job_id", String(32)),
    Column("ruc_or_dni", String(32), nullable=False, index=True),
    Column("license_ids", JSON, nullable=False),
    Column("severity", String(32), nullable=False),
    Column("total_due", Numeric(12, 2, asdecimal=False), nullable=False),
    Column("message_length", Integer, nullable=False, default=0),
    Column("conversation_id", String(64)),
    Column("sent_at", DateTime(timezone=True), nullable=False),
    Column("created_at", DateTime(timezone=True), nullable=False),
    extend_existing=True,
)


def _job_to_row(job: NotificationJob) -> dict:
    row = dict(job.__dict__)
    row["licenses"] = [line.to_dict() for line in job.licenses]
    row["license_ids"] = list(job.license_ids)
    row["status"] = job.status.value
    return row


def _job_from_row(row) -> NotificationJob:
    data = dict(row._mapping)
    data["licenses"] = [JobLine.from_dict(line) for line in data["licenses"] or []]
    data["license_ids"] = list(data["license_ids"] or [])
    data["status"] = JobStatus(data["status"])
    for key in ("scheduled_at", "sent_at", "created_at", "updated_at"):
        data[key] = parse_datetime(data[key])
    for key in ("severity_score", "total_base", "total_late", "total_due"):
        data[key] = float(data[key] or 0)
    return NotificationJob(**data)


class SqlJobRepository:
    """Notification jobs on SQLAlchemy Core; the unique hash index arbitrates duplicates."""

    def __init__(self, engine: Engine, table: Table = license_notification_jobs):
        self.engine = engine
        self.table = table

    def insert(self, job: NotificationJob) -> NotificationJob:
        try:
            with self.engine.begin() as conn:
                conn.execute(insert(self.table).values(**_job_to_row(job)))
        except IntegrityError as e:
            raise DuplicateHashError(job.hash) from e
        return job

    def save(self, job: NotificationJob) -> NotificationJob:
        row = _job_to_row(job)
        # id and hash are immutable
        row.pop("id")
        row.pop("hash")
        with self.engine.begin() as conn:
            conn.execute(update(self.table).where(self.table.c.id == job.id).values(**row))
        return job

    def get(self, job_id: str) -> NotificationJob | None:
        with self.engine.begin() as conn:
            row = conn.execute(select(self.table).where(self.table.c.id == job_id)).fetchone()
        return _job_from_row(row) if row else None

    def get_by_hash(self, job_hash: str) -> NotificationJob | None:
        with self.engine.begin() as conn:
            row = conn.execute(
                select(self.table).where(self.table.c.hash == job_hash)
            ).fetchone()
        return _job_from_row(row) if row else None

    def find(self, *, status: JobStatus | None = None, limit: int = 25) -> list[NotificationJob]:
        t = self.table
        query = select(t)
        if status is not None:
            query = query.where(t.c.status == status.value)
        query = query.order_by(t.c.severity_score.desc(), t.c.created_at.asc()).limit(limit)
        with self.engine.begin() as conn:
            rows = conn.execute(query).fetchall()
        return [_job_from_row(row) for row in rows]


class SqlLogRepository:
    """Append-only notification log."""

    def __init__(self, engine: Engine, table: Table = license_notification_logs):
        self.engine = engine
        self.table = table

    def insert(self, entry: NotificationLog) -> NotificationLog:
        row = dict(entry.__dict__)
        row["license_ids"] = list(entry.license_ids)
        try:
            with self.engine.begin() as conn:
                conn.execute(insert(self.table).values(**row))
        except SQLAlchemyError as e:
            raise errors.StorageError(
                "Notification log write failed", jobId=entry.job_id, rucOrDni=entry.ruc_or_dni
            ) from e
        return entry

    def list_for(self, ruc_or_dni: str) -> list[NotificationLog]:
        t = self.table
        query = select(t).where(t.c.ruc_or_dni == ruc_or_dni).order_by(t.c.sent_at.desc())
        with self.engine.begin() as conn:
            rows = conn.execute(query).fetchall()
        entries = []
        for row in rows:
            data = dict(row._mapping)
            data["license_ids"] = list(data["license_ids"] or [])
            data["sent_at"] = parse_datetime(data["sent_at"])
            data["created_at"] = parse_datetime(data["created_at"])
            data["total_due"] = float(data["total_due"] or 0)
            entries.append(NotificationLog(**data))
        return entries
