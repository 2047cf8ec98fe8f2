"""Tests for pipeline.py: full ingestion runs against a temp database."""

import json
from datetime import date, datetime
from decimal import Decimal

import pytest

from errors import MissingColumnsError, UnrecognizedFormat, ZeroRevenueError
from pipeline import main, run_ingestion
from service_mapping import import_service_mapping

WEEK_ROWS = [
    ("1/13/25", "Jane Doe", "Saline 1L (Member)", "$45.00"),
    ("1/14/25", "Bob Roe", "Energy (Non-Member)", "$150.00"),
    ("1/14/25", "Bob Roe", "Toradol", "$35.00"),
    ("1/15/25", "Ann Lee", "Semaglutide 2.5mg", "$299.00"),
    ("1/18/25", "Ann Lee", "Energy Drip + Semaglutide", "$200.00"),
    ("1/18/25", "Ann Lee", "Tip", "$20.00"),
]


class TestRevenueRun:
    """Revenue export only."""

    def test_end_to_end(self, db, revenue_csv):
        summary = run_ingestion(revenue_csv(WEEK_ROWS))

        assert summary["week_start"] == "2025-01-13"
        assert summary["week_end"] == "2025-01-19"
        assert summary["revenue"]["records"] == 5
        assert summary["revenue"]["dropped"] == {"tip": 1}
        assert summary["metrics"]["actual_weekly_revenue"] == Decimal("729.00")

        row = db.get_weekly_metrics("2025-01-13")
        assert row["actual_weekly_revenue"] == 729.0
        assert row["source_file"] == "revenue.csv"
        assert row["drop_counts"] == {"tip": 1}
        assert row["iv_infusions_weekday_weekly"] == 2

        flagged = db.get_flagged_services("2025-01-13")
        assert [f["description"] for f in flagged] == ["Energy Drip + Semaglutide"]
        assert db.get_recent_uploads()[0]["status"] == "processed"

    def test_rerun_is_idempotent(self, db, revenue_csv):
        path = revenue_csv(WEEK_ROWS)
        first = run_ingestion(path)
        second = run_ingestion(path)
        assert first["metrics"] == second["metrics"]
        assert len(db.list_weeks()) == 1
        assert len(db.get_flagged_services("2025-01-13")) == 1

    def test_vendor_export(self, db, write_csv):
        path = write_csv([
            '"Date,""Patient"",""Charge Desc"",""Calculated Payment (Line)"""',
            '"1/13/2025,""Jane Doe"",""Saline 1L (Member)"",""$45.00"""',
        ])
        summary = run_ingestion(path)
        assert summary["metrics"]["iv_infusions_weekday_weekly"] == 1
        assert summary["metrics"]["actual_weekly_revenue"] == Decimal("45.00")

    def test_web_page_export_ignores_total_row(self, db, write_mhtml):
        def line(practitioner, day, patient, desc, amount):
            return [practitioner, day, day, patient, "P1", "FL", "SB", "Service",
                    desc, amount, "$0.00", "$0.00", amount, amount, "$0.00", "1"]
        path = write_mhtml([
            line("Dr. Smith", "1/13/25", "Jane Doe", "Saline 1L (Member)", "$45.00"),
            line("", "", "Ann Lee", "Saline 1L (Member)", "$45.00")[2:],
            ["Total", "$90.00"],
        ])
        summary = run_ingestion(path)
        assert summary["metrics"]["actual_weekly_revenue"] == Decimal("90.00")
        assert summary["metrics"]["iv_infusions_weekday_weekly"] == 2
        assert summary["revenue"]["dropped"] == {"no_description_cell": 1}

    def test_explicit_week_start(self, db, revenue_csv):
        summary = run_ingestion(revenue_csv(WEEK_ROWS), week_start="2025-01-13")
        assert summary["week_end"] == "2025-01-19"

    def test_zero_revenue_persists_nothing(self, db, revenue_csv):
        path = revenue_csv([("1/13/25", "Jane", "Energy", "")] * 500)
        with pytest.raises(ZeroRevenueError):
            run_ingestion(path)
        assert db.list_weeks() == []
        failed = db.get_recent_uploads()[0]
        assert failed["status"] == "failed"
        assert failed["error"].startswith("zero_revenue")

    def test_missing_columns(self, db, write_csv):
        path = write_csv(["Date,Patient,Notes", "1/13/25,Jane,hello"])
        with pytest.raises(MissingColumnsError):
            run_ingestion(path)
        assert db.list_weeks() == []

    def test_unreadable_file(self, db, tmp_path):
        path = tmp_path / "export.xlsx"
        path.write_bytes(b"\x00\x01\x02\x03" * 100)
        with pytest.raises(UnrecognizedFormat):
            run_ingestion(path)

    def test_dry_run_writes_nothing(self, db, revenue_csv):
        summary = run_ingestion(revenue_csv(WEEK_ROWS), dry_run=True)
        assert summary["dry_run"] is True
        assert db.list_weeks() == []
        assert db.get_recent_uploads() == []

    def test_nothing_to_ingest(self, db):
        with pytest.raises(ValueError):
            run_ingestion()


class TestMembershipRun:
    """Roster uploads, alone and with revenue."""

    def test_roster_only_counts_once(self, db, write_xlsx):
        path = write_xlsx([
            ["Patient", "Title", "Start Date"],
            ["Jane Doe", "Membership - Family (NEW)", datetime(2025, 1, 6)],
            ["Old Member", "Individual", datetime(2024, 6, 1)],
        ], name="roster.xlsx")

        first = run_ingestion(membership_path=path, week_start=date(2025, 1, 6))
        assert first["metrics"]["new_family_members_weekly"] == 1
        assert first["metrics"]["total_drip_iv_members"] == 2

        second = run_ingestion(membership_path=path, week_start=date(2025, 1, 6))
        assert second["metrics"]["new_family_members_weekly"] == 0
        assert db.count_registry("family") == 1
        assert db.get_weekly_metrics("2025-01-06")["family_memberships"] == 1

    def test_roster_with_revenue_uses_revenue_week(self, db, revenue_csv, write_csv):
        roster = write_csv([
            "Patient,Title,Start Date",
            "Ann Lee,Concierge Membership,2025-01-15",
            "Bob Roe,Individual,2025-01-02",
        ], name="roster.csv")
        summary = run_ingestion(revenue_csv(WEEK_ROWS), roster)
        metrics = summary["metrics"]
        assert summary["week_start"] == "2025-01-13"
        assert metrics["new_concierge_members_weekly"] == 1
        assert metrics["new_individual_members_weekly"] == 0
        assert summary["membership"]["skipped"] == {"outside_week": 1}

        row = db.get_weekly_metrics("2025-01-13")
        assert row["new_concierge_members_weekly"] == 1
        assert row["actual_weekly_revenue"] == 729.0

    def test_revenue_rerun_keeps_membership_columns(self, db, revenue_csv, write_csv):
        roster = write_csv(["Patient,Title,Start Date", "Ann Lee,Corporate,2025-01-15"], name="roster.csv")
        revenue = revenue_csv(WEEK_ROWS)
        run_ingestion(revenue, roster)
        run_ingestion(revenue)
        row = db.get_weekly_metrics("2025-01-13")
        assert row["new_corporate_members_weekly"] == 1
        assert row["new_members_source"] == "roster"

    def test_signups_from_revenue_without_roster(self, db, revenue_csv):
        rows = WEEK_ROWS + [
            ("1/16/25", "Cy Dee", "Membership - Family (NEW)", "$199.00"),
            ("1/2/25", "Di Eve", "Membership - Individual (NEW)", "$99.00"),
        ]
        run_ingestion(revenue_csv(rows), week_start="2025-01-13")
        row = db.get_weekly_metrics("2025-01-13")
        assert row["new_family_members_weekly"] == 1
        assert row["new_individual_members_weekly"] == 0
        assert row["new_individual_members_monthly"] == 1
        assert row["new_members_source"] == "revenue"

    def test_roster_overrides_weekly_signups_only(self, db, revenue_csv, write_csv):
        rows = WEEK_ROWS + [("1/16/25", "Cy Dee", "Membership - Family (NEW)", "$199.00")]
        roster = write_csv(["Patient,Title,Start Date", "Ann Lee,Individual,2025-01-15"], name="roster.csv")
        summary = run_ingestion(revenue_csv(rows), roster)
        metrics = summary["metrics"]
        assert metrics["new_family_members_weekly"] == 0
        assert metrics["new_individual_members_weekly"] == 1
        assert metrics["new_family_members_monthly"] == 1
        assert metrics["new_members_source"] == "roster"


class TestServiceMappingRun:
    """Bin totals and unmapped services during ingestion."""

    @pytest.fixture
    def services(self, write_xlsx):
        return write_xlsx([
            ["Services Export"],
            ["Service Name", "Service Type", "Charges", "Revenue Performance Bins",
             "Service Volume Analytics Bin", "Customer Analytics Bin"],
            ["Saline 1L (Member)", "IV Therapy", 45.0, "IV Therapy", "Total Drips", "Members"],
            ["Energy (Non-Member)", "IV Therapy", 150.0, "IV Therapy", "Total Drips", "Non-Members"],
        ], name="services.xlsx")

    def test_bins_and_unmapped_persisted(self, db, revenue_csv, services):
        import_service_mapping(services)
        summary = run_ingestion(revenue_csv(WEEK_ROWS))
        assert summary["revenue"]["unmapped"] == 3

        row = db.get_weekly_metrics("2025-01-13")
        assert row["bin_revenue_perf_weekly"] == {"IV Therapy": 195.0}
        assert row["bin_service_volume_weekly"] == {"Total Drips": 2}
        assert row["bin_customer_weekly"] == {"Members": 1, "Non-Members": 1}

        unmapped = db.get_unmapped_services("2025-01-13")
        assert sorted(u["description"] for u in unmapped) == [
            "Energy Drip + Semaglutide", "Semaglutide 2.5mg", "Toradol",
        ]

    def test_rerun_replaces_unmapped(self, db, revenue_csv, services):
        import_service_mapping(services)
        path = revenue_csv(WEEK_ROWS)
        run_ingestion(path)
        run_ingestion(path)
        assert len(db.get_unmapped_services("2025-01-13")) == 3

    def test_no_mapping_loaded(self, db, revenue_csv):
        summary = run_ingestion(revenue_csv(WEEK_ROWS))
        assert summary["metrics"]["bin_revenue_perf_weekly"] == {}
        assert db.get_unmapped_services() == []

    def test_cli_loads_mapping(self, db, revenue_csv, services, capsys):
        assert main(["--load-mapping", str(services), str(revenue_csv(WEEK_ROWS))]) == 0
        out = json.loads(capsys.readouterr().out)
        assert out["mapping"]["inserted"] == 2
        assert out["metrics"]["bin_service_volume_weekly"] == {"Total Drips": 2}


class TestCli:
    """python pipeline.py ..."""

    def test_dry_run_prints_summary(self, db, revenue_csv, capsys):
        assert main([str(revenue_csv(WEEK_ROWS)), "--dry-run"]) == 0
        out = json.loads(capsys.readouterr().out)
        assert out["week_start"] == "2025-01-13"
        assert db.list_weeks() == []

    def test_bad_file_exit_code(self, db, write_csv, capsys):
        path = write_csv(["Date,Patient,Notes", "1/13/25,Jane,hello"])
        assert main([str(path)]) == 2
        assert '"error": "missing_columns"' in capsys.readouterr().err

    def test_week_start_must_be_monday(self, revenue_csv):
        with pytest.raises(SystemExit):
            main([str(revenue_csv(WEEK_ROWS)), "--week-start", "2025-01-14"])
