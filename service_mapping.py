"""
service_mapping.py - Service-to-bin mapping for the dashboard's revenue,
volume and customer panels.

Each billed service belongs to up to three reporting bins. The bins come from
the practice-management "services export with dashboard bin allocations"
workbook, loaded into the service_mapping table. Ingestion looks every charge
up once per run and lists the ones it cannot place.
"""

import hashlib
import json
import logging
import os
import re
from collections import Counter, defaultdict
from dataclasses import dataclass

from data_processor import parse_dollar, resolve_columns
from database import get_db, get_service_mapping, init_db, record_mapping_load, upsert_service_mapping
from errors import MissingColumnsError
from file_formats import extract_rows

logger = logging.getLogger(__name__)

MAPPING_TITLE_ROWS = int(os.environ.get("MAPPING_TITLE_ROWS", "1"))

NAME_COLUMNS = ["Service Name", "Charge Desc", "Description"]
TYPE_COLUMNS = ["Service Type", "Charge Type"]
CHARGE_COLUMNS = ["Charges", "Default Charge", "Price"]
REVENUE_BIN_COLUMNS = ["Revenue Performance Bins", "Revenue Performance Bin"]
VOLUME_BIN_COLUMNS = ["Service Volume Analytics Bin", "Service Volume Bin"]
CUSTOMER_BIN_COLUMNS = ["Customer Analytics Bin", "Customer Bin"]

_HORMONE_TYPO = re.compile(r"total hormne services", re.I)


def normalize_service_name(value):
    return " ".join(str(value or "").split()).lower()


normalize_service_type = normalize_service_name


def normalize_volume_bin(value):
    """The export misspells one volume bin; store the corrected name."""
    if not value:
        return value
    return _HORMONE_TYPO.sub("Total Hormone Services", value)


@dataclass(frozen=True)
class ServiceBins:
    revenue_perf: str = None
    service_volume: str = None
    customer: str = None


@dataclass(frozen=True)
class MappingEntry:
    service_name: str
    service_type: str
    default_charge: object
    bins: ServiceBins

    @property
    def key(self):
        return normalize_service_name(self.service_name), normalize_service_type(self.service_type)


def _cell(row, columns):
    for col in columns:
        value = row.get(col)
        if value is not None and str(value).strip():
            return " ".join(str(value).split())
    return None


def parse_mapping(rows, header, path=None):
    """Mapping entries from an extracted services export.

    Returns ``(entries, skipped)``. A later row for the same normalized
    name and type replaces an earlier one.
    """
    columns = {
        "name": resolve_columns(header, NAME_COLUMNS),
        "type": resolve_columns(header, TYPE_COLUMNS),
        "charge": resolve_columns(header, CHARGE_COLUMNS),
        "revenue": resolve_columns(header, REVENUE_BIN_COLUMNS),
        "volume": resolve_columns(header, VOLUME_BIN_COLUMNS),
        "customer": resolve_columns(header, CUSTOMER_BIN_COLUMNS),
    }
    if not columns["name"] or not (columns["revenue"] or columns["volume"] or columns["customer"]):
        raise MissingColumnsError(
            f"Services export needs a service name and at least one bin column. "
            f"Found: {', '.join(str(h) for h in header)}",
            path=path,
            expectation=f"name: one of {NAME_COLUMNS}; bins: {REVENUE_BIN_COLUMNS[0]}, "
                        f"{VOLUME_BIN_COLUMNS[0]} or {CUSTOMER_BIN_COLUMNS[0]}",
        )

    entries = {}
    skipped = Counter()
    for row in rows:
        name = _cell(row, columns["name"])
        if not name:
            skipped["no_service_name"] += 1
            continue
        entry = MappingEntry(
            service_name=name,
            service_type=_cell(row, columns["type"]) or "",
            default_charge=parse_dollar(_cell(row, columns["charge"])),
            bins=ServiceBins(
                revenue_perf=_cell(row, columns["revenue"]),
                service_volume=normalize_volume_bin(_cell(row, columns["volume"])),
                customer=_cell(row, columns["customer"]),
            ),
        )
        if entry.key in entries:
            skipped["duplicate"] += 1
        entries[entry.key] = entry

    logger.info("Services export: %d mapped services, skipped %s",
                len(entries), dict(skipped) or "none")
    return list(entries.values()), skipped


def mapping_hash(entries):
    names = json.dumps(sorted(e.key for e in entries))
    return hashlib.sha256(names.encode("utf-8")).hexdigest()


def import_service_mapping(path, title_rows=None):
    """Load a services export into the service_mapping table in one transaction."""
    table = extract_rows(path, title_rows=MAPPING_TITLE_ROWS if title_rows is None else title_rows)
    entries, skipped = parse_mapping(table.rows, table.columns, path=path)
    digest = mapping_hash(entries)
    init_db()
    with get_db(immediate=True) as conn:
        inserted, updated = upsert_service_mapping(conn, entries)
        record_mapping_load(conn, os.path.basename(str(path)), len(entries), digest)
    logger.info("Service mapping loaded from %s: %d inserted, %d updated (hash %s)",
                os.path.basename(str(path)), inserted, updated, digest[:16])
    return {
        "file": os.path.basename(str(path)),
        "inserted": inserted,
        "updated": updated,
        "skipped": dict(skipped),
        "mapping_hash": digest,
    }


class ServiceMapping:
    """Bin lookup over the mapping table, held in memory for one ingestion run.

    A description matches on its normalized name and charge type, or on the
    name alone when exactly one mapped service carries that name.
    """

    def __init__(self, entries):
        self._exact = {}
        by_name = defaultdict(list)
        for e in entries:
            self._exact[e.key] = e.bins
            by_name[e.key[0]].append(e.bins)
        self._unique_name = {name: bins[0] for name, bins in by_name.items() if len(bins) == 1}
        self._cache = {}

    def __len__(self):
        return len(self._exact)

    @classmethod
    def from_rows(cls, rows):
        return cls(
            MappingEntry(
                r["service_name"], r["service_type"] or "", r["default_charge"],
                ServiceBins(r["revenue_perf_bin"], r["service_volume_bin"], r["customer_bin"]),
            )
            for r in rows
        )

    @staticmethod
    def key_for(description, charge_type=""):
        return normalize_service_name(description), normalize_service_type(charge_type)

    def lookup(self, description, charge_type=""):
        """ServiceBins for a charge, or None when the service is unmapped."""
        key = self.key_for(description, charge_type)
        if key not in self._cache:
            bins = self._exact.get(key)
            if bins is None:
                bins = self._unique_name.get(key[0])
            self._cache[key] = bins
        return self._cache[key]


def load_service_mapping():
    """ServiceMapping from the database, or None while the table is empty."""
    rows = get_service_mapping()
    if not rows:
        logger.info("No service mapping loaded; bin totals are skipped")
        return None
    return ServiceMapping.from_rows(rows)
