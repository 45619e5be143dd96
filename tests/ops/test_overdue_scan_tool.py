"""Tests for the overdue scan operate tool."""

import json
import logging

import pytest

from agents.dunning.config import DunningConfig
from agents.dunning.dto import LicenseStatus
from agents.dunning.ledger import LicenseLedger
from agents.dunning.rendering import TemplateEngine
from backend.apps.licenses.repository import SqlLicenseRepository
from backend.apps.notifications.repository import SqlJobRepository
from backend.core.database import create_db_engine, metadata
from tools.operate.overdue_scan import build_job_payload, main, parse_args, run_overdue_scan


@pytest.fixture
def seeded(services, license_payload):
    ledger = services.ledger
    return {
        "a_overdue": ledger.create(
            license_payload(rucOrDni="111", companyName="Alfa", domain="a1.pe", endDate="2026-03-01")
        ),
        "a_grace": ledger.create(
            license_payload(rucOrDni="111", companyName="Alfa", domain="a2.pe", endDate="2026-03-14")
        ),
        "b_overdue": ledger.create(
            license_payload(rucOrDni="222", companyName="Beta", domain="b.pe", endDate="2026-03-10")
        ),
        "current": ledger.create(
            license_payload(rucOrDni="333", companyName="Gamma", domain="c.pe", endDate="2026-05-01")
        ),
    }


class TestRunOverdueScan:
    """Test scan, sweep and job enqueueing."""

    def test_first_run_marks_and_enqueues(self, services, seeded, now):
        result = run_overdue_scan(services, now)

        assert result == {
            "date": "2026-03-15",
            "dry_run": False,
            "scanned": 3,
            "upcoming": 0,
            "marked_overdue": 2,
            "jobs_planned": 2,
            "jobs_created": 2,
            "jobs_duplicate": 0,
        }
        assert services.ledger.get(seeded["a_overdue"].id).status is LicenseStatus.OVERDUE
        assert services.ledger.get(seeded["a_grace"].id).status is LicenseStatus.PENDING

        jobs = {job.ruc_or_dni: job for job in services.job_store.find()}
        alfa = jobs["111"]
        assert alfa.severity == "critical"
        assert alfa.severity_score == 90
        assert alfa.total_due == 400.0
        assert sorted(alfa.license_ids) == sorted([seeded["a_overdue"].id, seeded["a_grace"].id])
        assert [line.notify_type for line in alfa.licenses] == ["overdue", "grace_day_1"]
        assert alfa.channel == "whatsapp"
        assert alfa.origin == "overdue_scan"
        assert alfa.message.startswith("Hola Alfa 👋")

    def test_second_run_creates_no_duplicates(self, services, seeded, now):
        run_overdue_scan(services, now)
        again = run_overdue_scan(services, now)

        assert again["marked_overdue"] == 0
        assert again["jobs_created"] == 0
        assert again["jobs_duplicate"] == 2
        assert len(services.job_store.find()) == 2

    def test_dry_run_writes_nothing(self, services, seeded, now):
        result = run_overdue_scan(services, now, dry_run=True)

        assert result["jobs_planned"] == 2
        assert result["jobs_created"] == 0
        assert result["marked_overdue"] == 0
        assert services.job_store.find() == []
        assert services.ledger.get(seeded["b_overdue"].id).status is LicenseStatus.PENDING

    def test_exclude_grace(self, services, seeded, now):
        result = run_overdue_scan(services, now, include_grace=False)

        assert result["scanned"] == 2
        alfa = next(job for job in services.job_store.find() if job.ruc_or_dni == "111")
        assert alfa.license_ids == [seeded["a_overdue"].id]

    def test_upcoming_licenses_get_pre_due_jobs(self, services, license_payload, now):
        soon = services.ledger.create(
            license_payload(rucOrDni="444", companyName="Delta", domain="d.pe", endDate="2026-03-17")
        )
        today = services.ledger.create(
            license_payload(
                rucOrDni="555", companyName="Epsilon", domain="e.pe", endDate="2026-03-15T18:00:00Z"
            )
        )
        services.ledger.create(
            license_payload(rucOrDni="666", companyName="Zeta", domain="z.pe", endDate="2026-03-25")
        )

        result = run_overdue_scan(services, now)

        assert result["scanned"] == 0
        assert result["upcoming"] == 2
        assert result["jobs_created"] == 2
        jobs = {job.ruc_or_dni: job for job in services.job_store.find()}
        assert jobs["444"].license_ids == [soon.id]
        assert [line.notify_type for line in jobs["444"].licenses] == ["pre_due_2d"]
        assert jobs["444"].severity == "info"
        assert [line.notify_type for line in jobs["555"].licenses] == ["due_today"]
        assert jobs["555"].license_ids == [today.id]
        assert services.ledger.get(soon.id).status is LicenseStatus.PENDING

    def test_exclude_upcoming(self, services, license_payload, now):
        services.ledger.create(license_payload(endDate="2026-03-17"))

        result = run_overdue_scan(services, now, include_upcoming=False)

        assert result["upcoming"] == 0
        assert result["jobs_planned"] == 0


class TestBuildJobPayload:
    def test_no_stage_no_payload(self, services, license_payload, now):
        lic = services.ledger.create(license_payload(endDate="2026-06-01"))
        templates = TemplateEngine(DunningConfig())

        assert build_job_payload([lic], now.date(), templates) is None

    def test_late_fee_is_added_once_past_due(self, services, license_payload, now):
        lic = services.ledger.create(
            license_payload(endDate="2026-03-01", lateFeePercentage=10)
        )

        payload = build_job_payload([lic], now.date(), TemplateEngine(DunningConfig()))

        assert payload["totalBase"] == 200.0
        assert payload["totalLate"] == 20.0
        assert payload["totalDue"] == 220.0
        assert payload["licenses"][0]["lineTotal"] == 220.0


class TestCli:
    """Test the command line entry point against a SQLite file."""

    @pytest.fixture(autouse=True)
    def restore_root_handlers(self):
        # main() binds a JSON handler to the captured stdout of this test
        root = logging.getLogger()
        saved = root.handlers[:]
        yield
        root.handlers[:] = saved

    def test_parse_args(self):
        args = parse_args(
            [
                "--date", "2026-03-15", "--limit", "5",
                "--exclude-grace", "--exclude-upcoming", "--dry-run",
            ]
        )
        assert args.date == "2026-03-15"
        assert args.limit == 5
        assert args.exclude_grace is True
        assert args.exclude_upcoming is True
        assert args.dry_run is True

    def test_main_runs_twice_without_duplicates(self, tmp_path, capsys, license_payload, now):
        url = f"sqlite:///{tmp_path / 'scan.db'}"
        engine = create_db_engine(url)
        metadata.create_all(engine)
        ledger = LicenseLedger(SqlLicenseRepository(engine), clock=lambda: now)
        ledger.create(license_payload(endDate="2026-03-01"))

        def run():
            assert main(["--database-url", url, "--date", "2026-03-15"]) == 0
            out = capsys.readouterr().out
            assert "Overdue scan completed" in out
            line = next(l for l in out.splitlines() if l.startswith('{"date"'))
            return json.loads(line)

        first = run()
        second = run()

        assert first["jobs_created"] == 1
        assert second["jobs_created"] == 0
        assert second["jobs_duplicate"] == 1
        jobs = SqlJobRepository(engine).find(status=None, limit=10)
        assert len(jobs) == 1
        engine.dispose()
