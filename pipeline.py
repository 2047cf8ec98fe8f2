"""
pipeline.py - One ingestion run: revenue export and/or membership roster in,
one weekly metrics row out.

    python pipeline.py REVENUE [--membership ROSTER] [--week-start YYYY-MM-DD] [--dry-run]
    python pipeline.py --load-mapping SERVICES_EXPORT.xlsx
"""

import argparse
import json
import logging
import os
import sys
from datetime import date

from data_processor import aggregate_metrics, normalize_rows
from database import (
    get_db, init_db, new_members_source, record_upload, replace_flagged_services,
    replace_unmapped_services, upsert_weekly_metrics,
)
from errors import IngestionError, PipelineDefect, StructuralError
from file_formats import extract_rows
from memberships import REGISTRY_COUNTERS, count_new_memberships, membership_totals, parse_roster
from service_mapping import import_service_mapping, load_service_mapping
from week_window import month_window, previous_week, resolve_week_window, week_starting

logger = logging.getLogger(__name__)


def _process_revenue(path, week_start=None, title_rows=None, mapping=None):
    table = extract_rows(path, title_rows=title_rows)
    batch = normalize_rows(table.rows, table.columns, path=path)
    if week_start:
        week = week_starting(week_start)
        month = month_window(week.end)
    else:
        week, month = resolve_week_window(batch.dates, path=path)
    metrics = aggregate_metrics(batch.records, week, month, batch.source_rows,
                                path=path, mapping=mapping)
    metrics["source_file"] = os.path.basename(path)
    metrics["drop_counts"] = dict(table.dropped + batch.dropped)
    info = {
        "file": os.path.basename(path),
        "format": table.format,
        "rows_read": batch.source_rows,
        "records": len(batch.records),
        "dropped": metrics["drop_counts"],
        "unmapped": len(metrics["unmapped_services"]),
    }
    return week, metrics, info


def _process_roster(path, title_rows=None):
    table = extract_rows(path, title_rows=title_rows)
    entries, titles, rejected = parse_roster(table.rows, table.columns, path=path)
    info = {
        "file": os.path.basename(path),
        "format": table.format,
        "rows_read": len(table.rows),
        "entries": len(entries),
        "rejected": dict(rejected),
    }
    return entries, titles, info


def _record_failure(error):
    try:
        init_db()
        with get_db() as conn:
            record_upload(conn, os.path.basename(error.path or "unknown"), "unknown",
                          "failed", error=f"{error.kind}: {error.message}")
    except Exception:
        logger.exception("Could not record failed upload")


def run_ingestion(revenue_path=None, membership_path=None, week_start=None,
                  dry_run=False, title_rows=None):
    """Run the pipeline for one upload and return a JSON-ready summary.

    Raises StructuralError for a bad file and PipelineDefect for an internal
    inconsistency; in both cases nothing is persisted. A dry run never opens
    the database, so it reports no registry counts and no bin totals.
    """
    if not revenue_path and not membership_path:
        raise ValueError("Nothing to ingest: pass a revenue export and/or a membership roster")
    if isinstance(week_start, str):
        week_start = date.fromisoformat(week_start)

    summary = {"dry_run": dry_run}
    try:
        mapping = None
        if not dry_run:
            init_db()
            if revenue_path:
                mapping = load_service_mapping()

        week = metrics = None
        if revenue_path:
            week, metrics, summary["revenue"] = _process_revenue(
                revenue_path, week_start, title_rows, mapping)

        entries = titles = None
        if membership_path:
            entries, titles, summary["membership"] = _process_roster(membership_path, title_rows)
            if week is None:
                week = week_starting(week_start) if week_start else previous_week()

        week_start_iso, week_end_iso = week.key
        record = metrics if metrics is not None else {
            "week_start": week_start_iso,
            "week_end": week_end_iso,
        }
        if titles is not None:
            record.update(membership_totals(titles))

        if not dry_run:
            with get_db(immediate=True) as conn:
                if entries is not None:
                    counters, skipped = count_new_memberships(conn, entries, week)
                    record.update(counters)
                    record["new_members_source"] = "roster"
                    summary["membership"]["skipped"] = dict(skipped)
                elif new_members_source(conn, week_start_iso, week_end_iso) == "roster":
                    # registry counts from an earlier roster upload stand
                    for key in REGISTRY_COUNTERS:
                        record.pop(key, None)
                    record.pop("new_members_source", None)
                upsert_weekly_metrics(conn, record)
                if metrics is not None:
                    replace_flagged_services(conn, week_start_iso, week_end_iso,
                                             metrics["flagged_services"])
                    if mapping is not None:
                        replace_unmapped_services(conn, week_start_iso, metrics["unmapped_services"])
                    info = summary["revenue"]
                    record_upload(conn, info["file"], "revenue", "processed", week,
                                  info["rows_read"], info["records"])
                if entries is not None:
                    info = summary["membership"]
                    record_upload(conn, info["file"], "membership", "processed", week,
                                  info["rows_read"], info["entries"])
    except IngestionError as e:
        logger.error("Ingestion failed (%s): %s", e.kind, e)
        if not dry_run:
            _record_failure(e)
        raise

    summary["week_start"] = week_start_iso
    summary["week_end"] = week_end_iso
    summary["metrics"] = record
    logger.info("Ingestion complete for week %s%s", week.label(), " (dry run)" if dry_run else "")
    return summary


def _monday(value):
    day = date.fromisoformat(value)
    if day.weekday() != 0:
        raise argparse.ArgumentTypeError(f"{value} is not a Monday")
    return day


def main(argv=None):
    logging.basicConfig(level=logging.INFO,
                        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s")
    parser = argparse.ArgumentParser(description="Ingest a weekly billing export.")
    parser.add_argument("revenue", nargs="?", help="revenue export (csv, tsv, xls, xlsx)")
    parser.add_argument("--membership", help="active-membership roster")
    parser.add_argument("--week-start", type=_monday, help="reporting week Monday, YYYY-MM-DD")
    parser.add_argument("--dry-run", action="store_true", help="compute without saving")
    parser.add_argument("--load-mapping", metavar="EXPORT",
                        help="load a services export with bin allocations before ingesting")
    args = parser.parse_args(argv)
    if not args.revenue and not args.membership and not args.load_mapping:
        parser.error("a revenue export, --membership roster or --load-mapping export is required")

    result = {}
    try:
        if args.load_mapping:
            result["mapping"] = import_service_mapping(args.load_mapping)
        if args.revenue or args.membership:
            result.update(run_ingestion(args.revenue, args.membership, args.week_start, args.dry_run))
    except StructuralError as e:
        print(json.dumps(e.to_dict(), indent=2), file=sys.stderr)
        return 2
    except PipelineDefect as e:
        print(json.dumps(e.to_dict(), indent=2), file=sys.stderr)
        return 3
    print(json.dumps(result, indent=2, default=str))
    return 0


if __name__ == "__main__":
    sys.exit(main())
