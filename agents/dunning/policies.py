"""Business policies for reminder stage determination.

Deterministic functions deriving the reminder stage of a license for a given
day, and the severity attached to that stage.
"""

from datetime import date, datetime
from decimal import Decimal

from .config import DunningConfig
from .dto import License
from .ledger import late_fee

PRE_DUE_STAGES = {3: "pre_due_3d", 2: "pre_due_2d", 1: "pre_due_1d"}
DUE_TODAY = "due_today"
OVERDUE = "overdue"
GRACE_PREFIX = "grace_day_"


def _as_date(value: datetime | date) -> date:
    return value.date() if isinstance(value, datetime) else value


def determine_reminder_stage(
    license: License, today: date | datetime, config: DunningConfig | None = None
) -> str | None:
    """Reminder stage for ``license`` on ``today``.

    Returns:
        ``pre_due_Nd``, ``due_today``, ``grace_day_N``, ``overdue``, or None
        when no reminder applies (cancelled, no coverage end, or too early)
    """
    if license.is_cancelled or license.coverage_end is None:
        return None

    pre_due_days = (config or DunningConfig()).pre_due_days
    days_until = (_as_date(license.coverage_end) - _as_date(today)).days

    if days_until > pre_due_days:
        return None
    if days_until > 0:
        return PRE_DUE_STAGES.get(days_until, f"pre_due_{days_until}d")
    if days_until == 0:
        return DUE_TODAY

    days_late = -days_until
    if days_late <= max(license.grace_period_days or 0, 0):
        return f"{GRACE_PREFIX}{days_late}"
    return OVERDUE


def severity_for(stage: str | None, config: DunningConfig | None = None) -> tuple[str, int]:
    """Map a stage to ``(severity, score)``.

    Pre-due reminders are ``info``, the due day and grace days are
    ``warning``, anything past grace is ``critical``.
    """
    scores = (config or DunningConfig()).severity_scores
    if stage == OVERDUE:
        severity = "critical"
    elif stage == DUE_TODAY or (stage or "").startswith(GRACE_PREFIX):
        severity = "warning"
    else:
        severity = "info"
    return severity, scores.get(severity, 0)


def amount_due(license: License, stage: str | None) -> tuple[Decimal, Decimal]:
    """Base amount and late fee owed for a license at ``stage``.

    The late fee applies only once coverage has ended.
    """
    base = license.outstanding_balance if license.outstanding_balance is not None else license.amount
    late = Decimal("0.00")
    if stage == OVERDUE or (stage or "").startswith(GRACE_PREFIX):
        late = late_fee(license)
    return base, late
