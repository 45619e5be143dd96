"""Payment processing seam used by license renewal.

No real settlement happens here. ``SimulatedPaymentProcessor`` always
succeeds and moves no funds; a gateway-backed processor can be injected into
``LicenseLedger`` without touching renewal logic.
"""

import logging
import uuid
from dataclasses import dataclass
from datetime import UTC, datetime
from decimal import Decimal
from typing import Protocol

from .dto import License

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PaymentOutcome:
    """Result of one charge attempt."""

    success: bool
    reference: str | None = None
    amount: Decimal | None = None
    error: str | None = None
    processed_at: datetime | None = None


class PaymentProcessor(Protocol):
    """Charges a license for its next billing cycle."""

    def charge(self, license: License) -> PaymentOutcome: ...


class SimulatedPaymentProcessor:
    """Stand-in processor: every charge succeeds, nothing is settled."""

    def charge(self, license: License) -> PaymentOutcome:
        reference = f"SIM-{uuid.uuid4().hex[:12].upper()}"
        logger.info(
            "payment_simulated",
            extra={
                "license_id": license.id,
                "reference": reference,
                "amount": str(license.amount),
                "currency": license.currency,
            },
        )
        return PaymentOutcome(
            success=True,
            reference=reference,
            amount=license.amount,
            processed_at=datetime.now(UTC),
        )
