"""Overdue scanner: licenses past their due boundary or nearing it."""

import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime, time, timedelta
from typing import Any, Callable

from backend.core.observability import metrics

from .dto import License
from .ledger import LicenseRepository, check_validity

logger = logging.getLogger(__name__)

DEFAULT_LIMIT = 100


@dataclass
class ScanResult:
    items: list[License] = field(default_factory=list)

    @property
    def count(self) -> int:
        return len(self.items)

    def to_dict(self) -> dict[str, Any]:
        return {"count": self.count, "items": [item.to_dict() for item in self.items]}


class OverdueScanner:
    """Selects non-cancelled licenses past their due boundary, or about to reach it."""

    def __init__(
        self,
        repository: LicenseRepository,
        default_limit: int = DEFAULT_LIMIT,
        clock: Callable[[], datetime] | None = None,
    ):
        self.repository = repository
        self.default_limit = default_limit
        self._clock = clock or (lambda: datetime.now(UTC))

    def scan(
        self,
        include_grace: bool = False,
        limit: int | None = None,
        now: datetime | None = None,
    ) -> ScanResult:
        """Run a scan.

        Args:
            include_grace: Keep licenses still inside their grace window
            limit: Maximum number of items (defaults to the configured limit)
            now: Reference instant

        Returns:
            Candidates ordered by earliest boundary
        """
        now = now or self._clock()
        limit = self.default_limit if limit is None or limit <= 0 else limit

        candidates = self.repository.find_past_due(now)
        if not include_grace:
            candidates = [lic for lic in candidates if not check_validity(lic, now)]

        result = ScanResult(items=candidates[:limit])
        metrics.record_overdue_scan(result.count)
        logger.info(
            "overdue_scan",
            extra={
                "include_grace": include_grace,
                "limit": limit,
                "count": result.count,
            },
        )
        return result

    def scan_upcoming(
        self,
        days: int,
        limit: int | None = None,
        now: datetime | None = None,
    ) -> ScanResult:
        """Licenses whose coverage ends today or within the next ``days`` days.

        Day boundaries are UTC calendar days, matching how reminder stages
        count days until due.
        """
        now = now or self._clock()
        limit = self.default_limit if limit is None or limit <= 0 else limit

        start = datetime.combine(now.astimezone(UTC).date(), time(0, 0), tzinfo=UTC)
        end = start + timedelta(days=max(days, 0) + 1)
        result = ScanResult(items=self.repository.find_due_between(start, end)[:limit])
        logger.info("upcoming_scan", extra={"days": days, "count": result.count})
        return result
