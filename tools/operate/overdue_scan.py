"""Overdue scan operate tool.

Scans licenses past their due boundary and those due within the pre-due
window, marks expired ones overdue and enqueues one reminder job per client.
Enqueueing goes through the job store, so running the tool twice on the same
day creates no duplicate jobs.
"""

from __future__ import annotations

import argparse
import json
from collections import OrderedDict
from datetime import UTC, date, datetime, time
from decimal import Decimal
from typing import Any, Sequence

from agents.dunning.dispatcher import doc_hint_for, pick_client_identifier, pick_client_label
from agents.dunning.dto import License, to_iso
from agents.dunning.policies import amount_due, determine_reminder_stage, severity_for
from agents.dunning.rendering import TemplateEngine
from backend.core.config import settings
from backend.core.database import create_db_engine
from backend.core.observability import init_observability, set_trace_id
from backend.core.services import build_services

CHANNEL = "whatsapp"
ORIGIN = "overdue_scan"


def _group_by_client(licenses: Sequence[License]) -> "OrderedDict[str, list[License]]":
    groups: OrderedDict[str, list[License]] = OrderedDict()
    for lic in licenses:
        groups.setdefault(lic.ruc_or_dni or lic.id, []).append(lic)
    return groups


def build_job_payload(
    licenses: Sequence[License], today: date, templates: TemplateEngine
) -> dict[str, Any] | None:
    """Reminder job payload for one client's licenses, or None when no stage applies."""
    config = templates.config
    staged = [(lic, determine_reminder_stage(lic, today, config)) for lic in licenses]
    staged = [(lic, stage) for lic, stage in staged if stage]
    if not staged:
        return None

    lines = []
    total_base = Decimal("0")
    total_late = Decimal("0")
    worst_stage, worst = None, ("info", -1)
    for lic, stage in staged:
        base, late = amount_due(lic, stage)
        total_base += base
        total_late += late
        lines.append(
            {
                "licenseId": lic.id,
                "service": lic.service_type or "",
                "notifyType": stage,
                "amount": float(base),
                "lateFee": float(late),
                "lineTotal": float(base + late),
                "endDate": to_iso(lic.coverage_end),
            }
        )
        severity = severity_for(stage, config)
        if severity[1] > worst[1]:
            worst_stage, worst = stage, severity

    group = [lic for lic, _ in staged]
    identifier = pick_client_identifier(group)
    message, _ = templates.render_chat_reminder(
        group,
        client_label=pick_client_label(group),
        doc_hint=doc_hint_for(identifier),
        stage=worst_stage,
        currency_fallback=group[0].currency,
    )
    return {
        "rucOrDni": identifier,
        "companyName": pick_client_label(group),
        "phoneNumber": next((lic.phone_number for lic in group if lic.phone_number), None),
        "email": next((lic.email for lic in group if lic.email), None),
        "licenseIds": [lic.id for lic in group],
        "licenses": lines,
        "severity": worst[0],
        "severityScore": worst[1],
        "totalBase": float(total_base),
        "totalLate": float(total_late),
        "totalDue": float(total_base + total_late),
        "message": message,
        "channel": CHANNEL,
        "origin": ORIGIN,
    }


def run_overdue_scan(
    services,
    now: datetime,
    include_grace: bool = True,
    limit: int | None = None,
    dry_run: bool = False,
    include_upcoming: bool = True,
) -> dict[str, Any]:
    scan = services.scanner.scan(include_grace=include_grace, limit=limit, now=now)
    candidates = list(scan.items)
    upcoming = 0
    if include_upcoming:
        seen = {lic.id for lic in candidates}
        window = services.scanner.scan_upcoming(services.config.pre_due_days, limit=limit, now=now)
        fresh = [lic for lic in window.items if lic.id not in seen]
        upcoming = len(fresh)
        candidates.extend(fresh)

    marked = [] if dry_run else services.ledger.sweep_overdue(now)

    templates = services.dispatcher.templates
    payloads = []
    for group in _group_by_client(candidates).values():
        payload = build_job_payload(group, now.date(), templates)
        if payload:
            payloads.append(payload)

    created = duplicates = 0
    if payloads and not dry_run:
        for result in services.job_store.create_strict(payloads):
            if result.duplicate:
                duplicates += 1
            else:
                created += 1

    return {
        "date": now.date().isoformat(),
        "dry_run": dry_run,
        "scanned": scan.count,
        "upcoming": upcoming,
        "marked_overdue": len(marked),
        "jobs_planned": len(payloads),
        "jobs_created": created,
        "jobs_duplicate": duplicates,
    }


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Scan overdue licenses and enqueue reminders")
    parser.add_argument("--database-url", help="Database URL, defaults to DATABASE_URL")
    parser.add_argument("--date", help="Run as of noon UTC on this date (YYYY-MM-DD)")
    parser.add_argument("--limit", type=int, help="Maximum licenses to scan")
    parser.add_argument(
        "--exclude-grace", action="store_true", help="Skip licenses still inside their grace window"
    )
    parser.add_argument(
        "--exclude-upcoming", action="store_true", help="Skip licenses not yet past due"
    )
    parser.add_argument("--dry-run", action="store_true", help="Do not mark licenses or write jobs")
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    init_observability(enable_metrics=settings.enable_metrics)
    set_trace_id(None)

    if args.date:
        now = datetime.combine(date.fromisoformat(args.date), time(12, 0), tzinfo=UTC)
    else:
        now = datetime.now(UTC)

    engine = create_db_engine(args.database_url)
    services = build_services(settings, engine, clock=lambda: now)
    result = run_overdue_scan(
        services,
        now,
        include_grace=not args.exclude_grace,
        limit=args.limit,
        dry_run=args.dry_run,
        include_upcoming=not args.exclude_upcoming,
    )

    print(json.dumps(result, ensure_ascii=False))
    print("Overdue scan completed" + (" (dry-run)" if args.dry_run else ""))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
