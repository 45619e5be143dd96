from datetime import datetime
from typing import Any

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Integer,
    Numeric,
    String,
    Table,
    Text,
    and_,
    func,
    insert,
    or_,
    select,
    update,
)
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError

from agents.dunning import errors
from agents.dunning.dto import BillingFrequency, License, LicenseStatus, parse_datetime
from backend.core.database import metadata

licenses = Table(
    "licenses",
    metadata,
    Column("id", String(32), primary_key=True),
    Column("license_key", String(32), nullable=False, unique=True),
    Column("user_id", String(64)),
    Column("ruc_or_dni", String(32), index=True),
    Column("company_name", String(255), nullable=False),
    Column("phone_number", String(32)),
    Column("email", String(255)),
    Column("amount", Numeric(12, 2), nullable=False),
    Column("currency", String(3), nullable=False),
    Column("frequency", String(16), nullable=False),
    Column("domain", String(255), index=True),
    Column("service_type", String(64)),
    Column("status", String(16), nullable=False, index=True),
    Column("payment_method", String(32), nullable=False),
    Column("start_date", DateTime(timezone=True)),
    Column("end_date", DateTime(timezone=True)),
    Column("next_payment_due", DateTime(timezone=True)),
    Column("paid_at", DateTime(timezone=True)),
    Column("grace_period_days", Integer, nullable=False, default=0),
    Column("auto_renew", Boolean, nullable=False, default=False),
    Column("notes", Text),
    Column("late_fee_amount", Numeric(12, 2)),
    Column("late_fee_percentage", Numeric(7, 4)),
    Column("outstanding_balance", Numeric(12, 2)),
    Column("prorated_amount_due", Numeric(12, 2)),
    Column("prorated_days", Integer),
    Column("billing_cycle_days", Integer),
    Column("current_payment_code", String(16), index=True),
    Column("current_payment_code_expires_at", DateTime(timezone=True)),
    Column("payment_verification_state", String(16), nullable=False, default="idle"),
    Column("created_at", DateTime(timezone=True), nullable=False),
    Column("updated_at", DateTime(timezone=True), nullable=False),
    extend_existing=True,
)

_DATETIME_COLUMNS = (
    "start_date",
    "end_date",
    "next_payment_due",
    "paid_at",
    "current_payment_code_expires_at",
    "created_at",
    "updated_at",
)


def _to_row(license: License) -> dict[str, Any]:
    row = dict(license.__dict__)
    row["frequency"] = license.frequency.value
    row["status"] = license.status.value
    return row


def _from_row(row) -> License:
    data = dict(row._mapping)
    data["frequency"] = BillingFrequency(data["frequency"])
    data["status"] = LicenseStatus(data["status"])
    for key in _DATETIME_COLUMNS:
        data[key] = parse_datetime(data[key])
    data["grace_period_days"] = data["grace_period_days"] or 0
    data["auto_renew"] = bool(data["auto_renew"])
    return License(**data)


def _duplicate_key(license: License) -> errors.ValidationError:
    # license_key is the only unique column besides the generated id
    return errors.ValidationError(
        f"licenseKey already in use: {license.license_key}", fields=["licenseKey"]
    )


def _earliest_boundary(license: License) -> datetime:
    return min(d for d in (license.end_date, license.next_payment_due) if d is not None)


class SqlLicenseRepository:
    """License storage on SQLAlchemy Core."""

    def __init__(self, engine: Engine, table: Table = licenses):
        self.engine = engine
        self.table = table

    def insert(self, license: License) -> License:
        try:
            with self.engine.begin() as conn:
                conn.execute(insert(self.table).values(**_to_row(license)))
        except IntegrityError as e:
            raise _duplicate_key(license) from e
        return license

    def save(self, license: License) -> License:
        row = _to_row(license)
        row.pop("id")
        try:
            with self.engine.begin() as conn:
                conn.execute(
                    update(self.table).where(self.table.c.id == license.id).values(**row)
                )
        except IntegrityError as e:
            raise _duplicate_key(license) from e
        return license

    def _get_one(self, clause) -> License | None:
        with self.engine.begin() as conn:
            row = conn.execute(select(self.table).where(clause).limit(1)).fetchone()
        return _from_row(row) if row else None

    def get(self, license_id: str) -> License | None:
        return self._get_one(self.table.c.id == license_id)

    def get_by_domain(self, domain: str) -> License | None:
        return self._get_one(self.table.c.domain == domain)

    def get_by_license_key(self, license_key: str) -> License | None:
        return self._get_one(self.table.c.license_key == license_key)

    def find(
        self,
        *,
        status: LicenseStatus | None = None,
        ruc_or_dni: str | None = None,
        domain: str | None = None,
        auto_renew: bool | None = None,
    ) -> list[License]:
        t = self.table
        query = select(t)
        if status is not None:
            query = query.where(t.c.status == status.value)
        if ruc_or_dni:
            query = query.where(t.c.ruc_or_dni == ruc_or_dni)
        if domain:
            query = query.where(t.c.domain == domain)
        if auto_renew is not None:
            query = query.where(t.c.auto_renew == auto_renew)
        query = query.order_by(t.c.created_at.desc())
        with self.engine.begin() as conn:
            rows = conn.execute(query).fetchall()
        return [_from_row(row) for row in rows]

    def find_past_due(self, now: datetime) -> list[License]:
        """Non-cancelled licenses with endDate or nextPaymentDue before ``now``, earliest first."""
        t = self.table
        query = select(t).where(
            and_(
                t.c.status != LicenseStatus.CANCELLED.value,
                or_(t.c.end_date < now, t.c.next_payment_due < now),
            )
        )
        with self.engine.begin() as conn:
            rows = conn.execute(query).fetchall()
        return sorted((_from_row(row) for row in rows), key=_earliest_boundary)

    def find_due_between(self, start: datetime, end: datetime) -> list[License]:
        """Non-cancelled licenses whose coverage ends in ``[start, end)``, earliest first."""
        t = self.table
        coverage_end = func.coalesce(t.c.end_date, t.c.next_payment_due)
        query = select(t).where(
            and_(
                t.c.status != LicenseStatus.CANCELLED.value,
                coverage_end >= start,
                coverage_end < end,
            )
        )
        with self.engine.begin() as conn:
            rows = conn.execute(query).fetchall()
        return sorted((_from_row(row) for row in rows), key=_earliest_boundary)

    def find_renewable(self, now: datetime) -> list[License]:
        t = self.table
        query = (
            select(t)
            .where(t.c.auto_renew.is_(True))
            .where(t.c.next_payment_due <= now)
            .where(t.c.status != LicenseStatus.CANCELLED.value)
            .order_by(t.c.next_payment_due)
        )
        with self.engine.begin() as conn:
            rows = conn.execute(query).fetchall()
        return [_from_row(row) for row in rows]
