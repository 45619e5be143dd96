"""License ledger: financial state and lifecycle of recurring licenses.

Owns creation defaults (license key, coverage window, proration), status
transitions (paid extension, cancelled is terminal), validity checks and the
renewal / overdue sweeps. Persistence is delegated to a ``LicenseRepository``.
"""

import calendar
import logging
import secrets
import string
import uuid
from datetime import UTC, datetime, timedelta
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Callable, Mapping, Protocol

from backend.core.observability import metrics

from . import errors
from .config import DunningConfig
from .dto import (
    LICENSE_REQUIRED_FIELDS,
    BillingFrequency,
    License,
    LicenseStatus,
    parse_license_fields,
    to_decimal,
    to_iso,
)
from .payments import PaymentProcessor, SimulatedPaymentProcessor

logger = logging.getLogger(__name__)

CENTS = Decimal("0.01")
CURRENCY_SYMBOLS = {"PEN": "S/", "USD": "US$", "EUR": "€"}
PLACEHOLDER = "—"

_KEY_ALPHABET = string.ascii_uppercase + string.digits
PAYMENT_CODE_LENGTH = 6


class LicenseRepository(Protocol):
    """Storage for license records."""

    def insert(self, license: License) -> License: ...

    def get(self, license_id: str) -> License | None: ...

    def get_by_domain(self, domain: str) -> License | None: ...

    def get_by_license_key(self, license_key: str) -> License | None: ...

    def save(self, license: License) -> License: ...

    def find(
        self,
        *,
        status: LicenseStatus | None = None,
        ruc_or_dni: str | None = None,
        domain: str | None = None,
        auto_renew: bool | None = None,
    ) -> list[License]: ...

    def find_past_due(self, now: datetime) -> list[License]: ...

    def find_due_between(self, start: datetime, end: datetime) -> list[License]: ...

    def find_renewable(self, now: datetime) -> list[License]: ...


def round_money(value: Decimal) -> Decimal:
    """Round half-up to cents."""
    return value.quantize(CENTS, rounding=ROUND_HALF_UP)


def generate_license_key() -> str:
    return "LIC-" + "".join(secrets.choice(_KEY_ALPHABET) for _ in range(8))


def generate_payment_code() -> str:
    return "".join(secrets.choice(_KEY_ALPHABET) for _ in range(PAYMENT_CODE_LENGTH))


def add_months(value: datetime, months: int) -> datetime:
    """Add calendar months, clamping the day to the target month's length."""
    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


def add_cycle(value: datetime, frequency: BillingFrequency) -> datetime:
    """Advance a date by one billing cycle."""
    return add_months(value, 12 if frequency is BillingFrequency.ANNUAL else 1)


def cycle_end(start: datetime, frequency: BillingFrequency) -> datetime:
    """Last day covered by a cycle starting at ``start``."""
    return add_cycle(start, frequency) - timedelta(days=1)


def compute_prorated_amount(
    amount: Decimal | None, prorated_days: int | None, billing_cycle_days: int | None
) -> Decimal | None:
    """Fraction of ``amount`` for ``prorated_days`` out of ``billing_cycle_days``.

    Returns None when either day count is missing or the cycle length is not
    positive.
    """
    if amount is None or prorated_days is None or not billing_cycle_days:
        return None
    if billing_cycle_days <= 0:
        return None
    return round_money(amount * Decimal(prorated_days) / Decimal(billing_cycle_days))


def initial_charge(license: License) -> Decimal:
    """First amount billed: prorated amount, else outstanding balance, else the fee."""
    if license.prorated_amount_due is not None:
        return license.prorated_amount_due
    if license.outstanding_balance is not None:
        return license.outstanding_balance
    return license.amount


def late_fee(license: License) -> Decimal:
    """Late fee owed on an overdue license.

    An explicit ``late_fee_amount`` wins; otherwise a percentage of the fee;
    zero when neither is configured.
    """
    if license.late_fee_amount is not None:
        return round_money(license.late_fee_amount)
    if license.late_fee_percentage is not None:
        return round_money(license.amount * license.late_fee_percentage / Decimal(100))
    return Decimal("0.00")


def check_validity(license: License, now: datetime | None = None) -> bool:
    """True while the license is not cancelled and ``now`` is within coverage plus grace."""
    if license.is_cancelled:
        return False
    grace_until = license.grace_until
    if grace_until is None:
        return True
    now = now or datetime.now(UTC)
    return now <= grace_until


def is_in_grace(license: License, now: datetime) -> bool:
    """True when coverage has ended but the grace window is still open."""
    end = license.coverage_end
    if end is None or now <= end:
        return False
    return now <= license.grace_until


def format_currency(value: Any, currency: str | None = "PEN") -> str:
    """Render an amount for display; malformed input renders a placeholder."""
    try:
        amount = to_decimal(value)
    except ValueError:
        return PLACEHOLDER
    if amount is None:
        return PLACEHOLDER
    code = (currency or "PEN").upper()
    symbol = CURRENCY_SYMBOLS.get(code, code)
    return f"{symbol} {round_money(amount):,.2f}"


class LicenseLedger:
    """Operator and machine operations on licenses."""

    def __init__(
        self,
        repository: LicenseRepository,
        config: DunningConfig | None = None,
        payment_processor: PaymentProcessor | None = None,
        clock: Callable[[], datetime] | None = None,
    ):
        self.repository = repository
        self.config = config or DunningConfig()
        self.payment_processor = payment_processor or SimulatedPaymentProcessor()
        self._clock = clock or (lambda: datetime.now(UTC))

    def now(self) -> datetime:
        return self._clock()

    def create(self, data: Mapping[str, Any]) -> License:
        """Create a pending license from a camelCase payload.

        Raises:
            errors.ValidationError: On missing or malformed fields
        """
        license = License.from_dict(data)
        now = self.now()

        license.id = uuid.uuid4().hex
        if not license.license_key:
            license.license_key = generate_license_key()
        if "currency" not in data or not data.get("currency"):
            license.currency = self.config.default_currency
        if license.start_date and not license.end_date:
            license.end_date = cycle_end(license.start_date, license.frequency)
        if license.end_date and not license.next_payment_due:
            license.next_payment_due = license.end_date
        if license.prorated_amount_due is None:
            license.prorated_amount_due = compute_prorated_amount(
                license.amount, license.prorated_days, license.billing_cycle_days
            )
        license.created_at = now
        license.updated_at = now

        stored = self.repository.insert(license)
        logger.info(
            "license_created",
            extra={
                "license_id": stored.id,
                "license_key": stored.license_key,
                "frequency": stored.frequency.value,
            },
        )
        return stored

    def get(self, license_id: str) -> License:
        license = self.repository.get(license_id)
        if license is None:
            raise errors.NotFoundError(f"License {license_id} not found", id=license_id)
        return license

    def get_many(self, license_ids: list[str]) -> list[License]:
        """Fetch licenses in request order, skipping unknown ids."""
        found = (self.repository.get(license_id) for license_id in license_ids)
        return [license for license in found if license is not None]

    def get_by_domain(self, domain: str) -> License | None:
        return self.repository.get_by_domain(domain.strip())

    def get_by_license_key(self, license_key: str) -> License | None:
        return self.repository.get_by_license_key(license_key.strip())

    def create_payment_intent(self, license_id: str) -> dict[str, Any]:
        """Issue a short payment code the client quotes when paying by mobile transfer.

        A new code replaces any previous one and the license waits for
        verification until it is marked paid.

        Raises:
            errors.NotFoundError: Unknown id
            errors.ValidationError: License is cancelled
        """
        license = self.get(license_id)
        if license.is_cancelled:
            raise errors.ValidationError(
                "Cancelled licenses do not accept payments", fields=["status"]
            )
        now = self.now()
        license.current_payment_code = generate_payment_code()
        license.current_payment_code_expires_at = now + timedelta(
            minutes=self.config.payment_code_ttl_minutes
        )
        license.payment_verification_state = "awaiting"
        license.updated_at = now
        self.repository.save(license)
        logger.info("license_payment_intent", extra={"license_id": license.id})
        return {
            "licenseId": license.id,
            "code": license.current_payment_code,
            "expiresAt": to_iso(license.current_payment_code_expires_at),
        }

    def find(
        self,
        *,
        status: str | None = None,
        ruc_or_dni: str | None = None,
        domain: str | None = None,
        auto_renew: bool | None = None,
    ) -> list[License]:
        """List licenses matching every given filter, newest first."""
        status_enum = None
        if status:
            try:
                status_enum = LicenseStatus(status.strip().lower())
            except ValueError as exc:
                raise errors.ValidationError(
                    f"Unknown status: {status}", fields=["status"]
                ) from exc
        return self.repository.find(
            status=status_enum, ruc_or_dni=ruc_or_dni, domain=domain, auto_renew=auto_renew
        )

    def update(self, license_id: str, data: Mapping[str, Any]) -> License:
        """Apply a partial update.

        Moving to ``paid`` stamps ``paidAt`` and extends coverage by one cycle.
        A cancelled license keeps its status.

        Raises:
            errors.NotFoundError: Unknown id
            errors.ValidationError: Malformed fields or a change out of cancelled
        """
        current = self.get(license_id)
        values = parse_license_fields(data)

        cleared = [
            key
            for key in LICENSE_REQUIRED_FIELDS
            if key in data and data.get(key) in (None, "")
        ]
        if cleared:
            raise errors.ValidationError(f"{', '.join(cleared)} required", fields=cleared)
        if not values:
            raise errors.ValidationError("No fields to update")

        new_status = values.get("status")
        if "status" in values and new_status is None:
            raise errors.ValidationError("status cannot be empty", fields=["status"])
        if (
            current.is_cancelled
            and new_status is not None
            and new_status is not LicenseStatus.CANCELLED
        ):
            raise errors.ValidationError(
                "Cancelled licenses cannot change status", fields=["status"]
            )
        if values.get("grace_period_days") is None:
            values.pop("grace_period_days", None)

        now = self.now()
        updated = License(**{**current.__dict__, **values})

        if new_status is LicenseStatus.PAID and current.status is not LicenseStatus.PAID:
            self._apply_paid(current, updated, now, paid_at=values.get("paid_at"))

        if "prorated_amount_due" not in values and (
            "prorated_days" in values or "billing_cycle_days" in values or "amount" in values
        ):
            recomputed = compute_prorated_amount(
                updated.amount, updated.prorated_days, updated.billing_cycle_days
            )
            if recomputed is not None:
                updated.prorated_amount_due = recomputed

        updated.id = current.id
        updated.updated_at = now
        stored = self.repository.save(updated)
        logger.info(
            "license_updated",
            extra={
                "license_id": stored.id,
                "status": stored.status.value,
                "fields": sorted(values),
            },
        )
        return stored

    def _apply_paid(
        self,
        current: License,
        updated: License,
        now: datetime,
        paid_at: datetime | None = None,
    ) -> None:
        updated.status = LicenseStatus.PAID
        updated.paid_at = paid_at or now
        if current.end_date:
            updated.end_date = add_cycle(current.end_date, current.frequency)
        else:
            updated.end_date = cycle_end(current.start_date or now, current.frequency)
        updated.next_payment_due = updated.end_date if updated.auto_renew else None
        if updated.current_payment_code:
            updated.payment_verification_state = "verified"
        updated.current_payment_code = None
        updated.current_payment_code_expires_at = None

    def renew_due(self, now: datetime | None = None) -> dict[str, Any]:
        """Charge and mark paid every auto-renewing license whose payment is due.

        Returns:
            ``{"processed": n, "details": [...]}`` with one entry per candidate
        """
        now = now or self.now()
        details: list[dict[str, Any]] = []
        processed = 0
        for license in self.repository.find_renewable(now):
            outcome = self.payment_processor.charge(license)
            if not outcome.success:
                logger.warning(
                    "license_renewal_failed",
                    extra={"license_id": license.id, "reason": outcome.error},
                )
                details.append(
                    {"id": license.id, "success": False, "error": outcome.error}
                )
                continue
            renewed = License(**license.__dict__)
            self._apply_paid(license, renewed, now, paid_at=outcome.processed_at)
            renewed.updated_at = now
            self.repository.save(renewed)
            processed += 1
            details.append(
                {
                    "id": license.id,
                    "success": True,
                    "reference": outcome.reference,
                    "endDate": renewed.to_dict()["endDate"],
                }
            )
        metrics.increment_licenses_renewed(processed)
        logger.info("license_renewal_run", extra={"processed": processed})
        return {"processed": processed, "details": details}

    def sweep_overdue(self, now: datetime | None = None) -> list[License]:
        """Mark licenses whose coverage plus grace has lapsed as overdue.

        Applies to pending and paid licenses alike; a paid cycle that ran out
        without renewal is overdue too.
        """
        now = now or self.now()
        moved: list[License] = []
        for license in self.repository.find_past_due(now):
            if license.status is LicenseStatus.OVERDUE:
                continue
            if check_validity(license, now):
                continue
            license.status = LicenseStatus.OVERDUE
            license.updated_at = now
            moved.append(self.repository.save(license))
        if moved:
            logger.info("license_overdue_sweep", extra={"moved": len(moved)})
        return moved
