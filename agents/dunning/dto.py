"""Data Transfer Objects for the dunning engine.

Provides type-safe records for licenses, notification jobs and the
notification log, with validation at the boundary and camelCase
serialization for the HTTP surface.
"""

from dataclasses import dataclass, field
from datetime import UTC, date, datetime, timedelta
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Callable, Mapping

from . import errors


class LicenseStatus(Enum):
    """License payment status."""
    PENDING = "pending"
    PAID = "paid"
    OVERDUE = "overdue"
    CANCELLED = "cancelled"


class BillingFrequency(Enum):
    """Recurring billing cycle."""
    MONTHLY = "monthly"
    ANNUAL = "annual"


class JobStatus(Enum):
    """Notification job status."""
    PENDING = "pending"
    SENT = "sent"
    FAILED = "failed"


def parse_datetime(value: Any) -> datetime | None:
    """Parse an ISO date/datetime (or date/datetime object) into aware UTC.

    Date-only values resolve to midnight UTC. Naive datetimes are taken as UTC.

    Raises:
        ValueError: If the value cannot be parsed
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, date):
        parsed = datetime(value.year, value.month, value.day)
    elif isinstance(value, str):
        parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    else:
        raise ValueError(f"Unsupported date value: {value!r}")
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=UTC)
    return parsed.astimezone(UTC)


def to_iso(value: datetime | None) -> str | None:
    """Serialize a datetime as ISO-8601 (UTC)."""
    if value is None:
        return None
    return parse_datetime(value).isoformat()


def to_decimal(value: Any) -> Decimal | None:
    """Convert a numeric value into Decimal.

    Raises:
        ValueError: If the value is not numeric
    """
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        raise ValueError(f"Not a number: {value!r}")
    try:
        result = Decimal(str(value))
    except (InvalidOperation, TypeError) as exc:
        raise ValueError(f"Not a number: {value!r}") from exc
    if not result.is_finite():
        raise ValueError(f"Not a number: {value!r}")
    return result


def to_int(value: Any) -> int | None:
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        raise ValueError(f"Not an integer: {value!r}")
    if isinstance(value, float) and not value.is_integer():
        raise ValueError(f"Not an integer: {value!r}")
    return int(value)


def to_float(value: Any) -> float | None:
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        raise ValueError(f"Not a number: {value!r}")
    return float(value)


def to_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in ("1", "true", "yes", "on")
    return bool(value)


def _to_str(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _decimal_out(value: Decimal | None) -> float | None:
    return float(value) if value is not None else None


def _enum_parser(enum_cls: type[Enum]) -> Callable[[Any], Enum]:
    def parse(value: Any) -> Enum:
        if isinstance(value, enum_cls):
            return value
        try:
            return enum_cls(str(value).strip().lower())
        except ValueError as exc:
            allowed = ", ".join(m.value for m in enum_cls)
            raise ValueError(f"expected one of: {allowed}") from exc

    return parse


# camelCase key -> (attribute name, parser)
LICENSE_FIELDS: dict[str, tuple[str, Callable[[Any], Any]]] = {
    "licenseKey": ("license_key", _to_str),
    "userId": ("user_id", _to_str),
    "rucOrDni": ("ruc_or_dni", _to_str),
    "companyName": ("company_name", _to_str),
    "phoneNumber": ("phone_number", _to_str),
    "email": ("email", _to_str),
    "amount": ("amount", to_decimal),
    "currency": ("currency", _to_str),
    "frequency": ("frequency", _enum_parser(BillingFrequency)),
    "domain": ("domain", _to_str),
    "serviceType": ("service_type", _to_str),
    "status": ("status", _enum_parser(LicenseStatus)),
    "paymentMethod": ("payment_method", _to_str),
    "startDate": ("start_date", parse_datetime),
    "endDate": ("end_date", parse_datetime),
    "nextPaymentDue": ("next_payment_due", parse_datetime),
    "paidAt": ("paid_at", parse_datetime),
    "gracePeriodDays": ("grace_period_days", to_int),
    "autoRenew": ("auto_renew", to_bool),
    "notes": ("notes", _to_str),
    "lateFeeAmount": ("late_fee_amount", to_decimal),
    "lateFeePercentage": ("late_fee_percentage", to_decimal),
    "outstandingBalance": ("outstanding_balance", to_decimal),
    "proratedAmountDue": ("prorated_amount_due", to_decimal),
    "proratedDays": ("prorated_days", to_int),
    "billingCycleDays": ("billing_cycle_days", to_int),
}

LICENSE_REQUIRED_FIELDS = ("companyName", "amount", "frequency")


def parse_license_fields(data: Mapping[str, Any]) -> dict[str, Any]:
    """Parse known camelCase license keys into attribute values.

    Unknown keys are ignored. Every parse failure is collected so the caller
    sees all malformed fields at once.

    Raises:
        errors.ValidationError: If any value is malformed
    """
    values: dict[str, Any] = {}
    invalid: list[str] = []
    problems: list[str] = []
    for key, (attr, parser) in LICENSE_FIELDS.items():
        if key not in data:
            continue
        try:
            values[attr] = parser(data[key])
        except (ValueError, TypeError) as exc:
            invalid.append(key)
            problems.append(f"{key}: {exc}")
    if invalid:
        raise errors.ValidationError("Invalid fields: " + "; ".join(problems), fields=invalid)
    return values


@dataclass
class License:
    """A recurring software license and its financial state."""

    company_name: str
    amount: Decimal
    frequency: BillingFrequency
    id: str = ""
    license_key: str = ""
    user_id: str | None = None
    ruc_or_dni: str | None = None
    phone_number: str | None = None
    email: str | None = None
    currency: str = "PEN"
    domain: str | None = None
    service_type: str | None = None
    status: LicenseStatus = LicenseStatus.PENDING
    payment_method: str = "transfer"
    start_date: datetime | None = None
    end_date: datetime | None = None
    next_payment_due: datetime | None = None
    paid_at: datetime | None = None
    grace_period_days: int = 0
    auto_renew: bool = False
    notes: str | None = None
    late_fee_amount: Decimal | None = None
    late_fee_percentage: Decimal | None = None
    outstanding_balance: Decimal | None = None
    prorated_amount_due: Decimal | None = None
    prorated_days: int | None = None
    billing_cycle_days: int | None = None
    current_payment_code: str | None = None
    current_payment_code_expires_at: datetime | None = None
    payment_verification_state: str = "idle"
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @property
    def coverage_end(self) -> datetime | None:
        """End of the paid period: endDate, falling back to nextPaymentDue."""
        return self.end_date or self.next_payment_due

    @property
    def grace_until(self) -> datetime | None:
        """Last instant at which the license is still usable."""
        end = self.coverage_end
        if end is None:
            return None
        return end + timedelta(days=max(self.grace_period_days or 0, 0))

    @property
    def is_cancelled(self) -> bool:
        return self.status is LicenseStatus.CANCELLED

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "id": self.id,
            "licenseKey": self.license_key,
            "userId": self.user_id,
            "rucOrDni": self.ruc_or_dni,
            "companyName": self.company_name,
            "phoneNumber": self.phone_number,
            "email": self.email,
            "amount": _decimal_out(self.amount),
            "currency": self.currency,
            "frequency": self.frequency.value,
            "domain": self.domain,
            "serviceType": self.service_type,
            "status": self.status.value,
            "paymentMethod": self.payment_method,
            "startDate": to_iso(self.start_date),
            "endDate": to_iso(self.end_date),
            "nextPaymentDue": to_iso(self.next_payment_due),
            "paidAt": to_iso(self.paid_at),
            "gracePeriodDays": self.grace_period_days,
            "autoRenew": self.auto_renew,
            "notes": self.notes,
            "lateFeeAmount": _decimal_out(self.late_fee_amount),
            "lateFeePercentage": _decimal_out(self.late_fee_percentage),
            "outstandingBalance": _decimal_out(self.outstanding_balance),
            "proratedAmountDue": _decimal_out(self.prorated_amount_due),
            "proratedDays": self.prorated_days,
            "billingCycleDays": self.billing_cycle_days,
            "currentPaymentCode": self.current_payment_code,
            "currentPaymentCodeExpiresAt": to_iso(self.current_payment_code_expires_at),
            "paymentVerificationState": self.payment_verification_state,
            "createdAt": to_iso(self.created_at),
            "updatedAt": to_iso(self.updated_at),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "License":
        """Create from a camelCase payload, validating required fields.

        Raises:
            errors.ValidationError: On missing required or malformed fields
        """
        missing = [k for k in LICENSE_REQUIRED_FIELDS if data.get(k) in (None, "")]
        if missing:
            raise errors.ValidationError(
                f"{', '.join(missing)} required", fields=missing
            )
        values = parse_license_fields(data)
        if values.get("grace_period_days") is None:
            values.pop("grace_period_days", None)
        if values.get("status") is None:
            values.pop("status", None)
        for attr in ("currency", "payment_method", "license_key"):
            if values.get(attr) is None:
                values.pop(attr, None)
        values.setdefault("auto_renew", False)
        if data.get("id"):
            values["id"] = str(data["id"])
        return cls(**values)


@dataclass
class JobLine:
    """A license line item inside a notification job."""

    license_id: str
    service: str = ""
    notify_type: str = ""
    amount: float = 0.0
    late_fee: float = 0.0
    line_total: float = 0.0
    end_date: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "licenseId": self.license_id,
            "service": self.service,
            "notifyType": self.notify_type,
            "amount": self.amount,
            "lateFee": self.late_fee,
            "lineTotal": self.line_total,
            "endDate": self.end_date,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "JobLine":
        if not isinstance(data, Mapping) or not data.get("licenseId"):
            raise ValueError("each line needs a licenseId")
        return cls(
            license_id=str(data["licenseId"]),
            service=str(data.get("service") or ""),
            notify_type=str(data.get("notifyType") or ""),
            amount=to_float(data.get("amount")) or 0.0,
            late_fee=to_float(data.get("lateFee")) or 0.0,
            line_total=to_float(data.get("lineTotal")) or 0.0,
            end_date=_to_str(data.get("endDate")),
        )


@dataclass
class JobPayload:
    """Semantic content of a reminder, as submitted for upsert."""

    ruc_or_dni: str
    company_name: str
    license_ids: list[str]
    message: str
    licenses: list[JobLine] = field(default_factory=list)
    severity: str = "info"
    severity_score: float = 0.0
    total_base: float = 0.0
    total_late: float = 0.0
    total_due: float = 0.0
    phone_number: str | None = None
    email: str | None = None
    channel: str | None = None
    origin: str | None = None
    scheduled_at: datetime | None = None


@dataclass
class NotificationJob:
    """A fingerprinted, trackable dunning job."""

    id: str
    hash: str
    ruc_or_dni: str
    company_name: str
    license_ids: list[str]
    message: str
    licenses: list[JobLine] = field(default_factory=list)
    severity: str = "info"
    severity_score: float = 0.0
    total_base: float = 0.0
    total_late: float = 0.0
    total_due: float = 0.0
    phone_number: str | None = None
    email: str | None = None
    channel: str | None = None
    origin: str | None = None
    status: JobStatus = JobStatus.PENDING
    attempts: int = 0
    scheduled_at: datetime | None = None
    sent_at: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @classmethod
    def from_payload(
        cls, payload: JobPayload, *, job_id: str, job_hash: str, now: datetime
    ) -> "NotificationJob":
        """Create a fresh pending job from an upsert payload."""
        return cls(
            id=job_id,
            hash=job_hash,
            ruc_or_dni=payload.ruc_or_dni,
            company_name=payload.company_name,
            license_ids=list(payload.license_ids),
            message=payload.message,
            licenses=list(payload.licenses),
            severity=payload.severity,
            severity_score=payload.severity_score,
            total_base=payload.total_base,
            total_late=payload.total_late,
            total_due=payload.total_due,
            phone_number=payload.phone_number,
            email=payload.email,
            channel=payload.channel,
            origin=payload.origin,
            status=JobStatus.PENDING,
            attempts=0,
            scheduled_at=payload.scheduled_at or now,
            sent_at=None,
            created_at=now,
            updated_at=now,
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "id": self.id,
            "hash": self.hash,
            "rucOrDni": self.ruc_or_dni,
            "companyName": self.company_name,
            "phoneNumber": self.phone_number,
            "email": self.email,
            "licenseIds": list(self.license_ids),
            "licenses": [line.to_dict() for line in self.licenses],
            "severity": self.severity,
            "severityScore": self.severity_score,
            "totalBase": self.total_base,
            "totalLate": self.total_late,
            "totalDue": self.total_due,
            "message": self.message,
            "channel": self.channel,
            "origin": self.origin,
            "status": self.status.value,
            "attempts": self.attempts,
            "scheduledAt": to_iso(self.scheduled_at),
            "sentAt": to_iso(self.sent_at),
            "createdAt": to_iso(self.created_at),
            "updatedAt": to_iso(self.updated_at),
        }


# Restricted partial update for jobs: camelCase key -> (attribute, parser)
JOB_PATCH_FIELDS: dict[str, tuple[str, Callable[[Any], Any]]] = {
    "status": ("status", _enum_parser(JobStatus)),
    "attempts": ("attempts", to_int),
    "sentAt": ("sent_at", parse_datetime),
    "scheduledAt": ("scheduled_at", parse_datetime),
    "message": ("message", lambda v: str(v) if v is not None else None),
    "channel": ("channel", _to_str),
    "severity": ("severity", _to_str),
    "severityScore": ("severity_score", to_float),
}


@dataclass(frozen=True)
class JobPatch:
    """Typed partial update restricted to the allow-listed job fields."""

    values: Mapping[str, Any] = field(default_factory=dict)

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any] | None) -> "JobPatch":
        """Keep only allow-listed keys; everything else is dropped.

        Raises:
            errors.ValidationError: If no allow-listed key is present or a
                value is malformed
        """
        data = data or {}
        if not isinstance(data, Mapping):
            raise errors.ValidationError("Patch body must be an object")
        values: dict[str, Any] = {}
        invalid: list[str] = []
        for key, (attr, parser) in JOB_PATCH_FIELDS.items():
            if key not in data:
                continue
            try:
                values[attr] = parser(data[key])
            except (ValueError, TypeError):
                invalid.append(key)
        if invalid:
            raise errors.ValidationError(
                f"Invalid values for: {', '.join(invalid)}", fields=invalid
            )
        if not values:
            raise errors.ValidationError("No valid fields to update")
        if "status" in values and values["status"] is None:
            raise errors.ValidationError("status cannot be null", fields=["status"])
        if "message" in values and values["message"] is None:
            raise errors.ValidationError("message cannot be null", fields=["message"])
        attempts = values.get("attempts")
        if "attempts" in values and (attempts is None or attempts < 0):
            raise errors.ValidationError(
                "attempts must be a non-negative integer", fields=["attempts"]
            )
        return cls(values=values)

    def apply(self, job: NotificationJob, now: datetime) -> NotificationJob:
        """Return a copy of the job with the patch applied."""
        data = dict(job.__dict__)
        data.update(self.values)
        data["updated_at"] = now
        return NotificationJob(**data)


@dataclass
class NotificationLog:
    """Append-only record of a reminder that was actually sent."""

    id: str
    ruc_or_dni: str
    license_ids: list[str]
    severity: str
    total_due: float
    sent_at: datetime
    message_length: int = 0
    job_id: str | None = None
    conversation_id: str | None = None
    created_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "jobId": self.job_id,
            "rucOrDni": self.ruc_or_dni,
            "licenseIds": list(self.license_ids),
            "severity": self.severity,
            "totalDue": self.total_due,
            "messageLength": self.message_length,
            "conversationId": self.conversation_id,
            "sentAt": to_iso(self.sent_at),
            "createdAt": to_iso(self.created_at),
        }
