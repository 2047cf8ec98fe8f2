"""
memberships.py - Active-membership roster processing.

Counts first-time membership signups against the durable registry and the
active membership totals shown on the dashboard.
"""

import logging
from collections import Counter
from dataclasses import dataclass

from data_processor import parse_date, resolve_columns
from database import insert_membership_if_absent
from errors import MissingColumnsError
from service_categories import MEMBERSHIP_TYPES, membership_type

logger = logging.getLogger(__name__)

ROSTER_PATIENT_COLUMNS = ["Patient", "Patient Name", "Member", "Name"]
ROSTER_TITLE_COLUMNS = ["Title", "Membership Type", "Type", "Plan", "Membership"]
ROSTER_START_COLUMNS = ["Start Date", "Membership Start", "Start"]

# weekly new-member counters the registry owns once a roster has been uploaded
REGISTRY_COUNTERS = tuple(f"new_{kind}_members_weekly" for kind in MEMBERSHIP_TYPES)

TOTAL_FIELDS = (
    "total_drip_iv_members",
    "individual_memberships",
    "family_memberships",
    "family_concierge_memberships",
    "drip_concierge_memberships",
    "concierge_memberships",
    "corporate_memberships",
)


@dataclass(frozen=True)
class RosterEntry:
    patient: str
    membership_type: str
    title_raw: str
    start_date: object

    @property
    def member_key(self):
        return f"{self.patient.lower()}|{self.membership_type}|{self.start_date.isoformat()}"


def _first(row, columns):
    for col in columns:
        value = row.get(col)
        if value is not None and str(value).strip():
            return value
    return None


def parse_roster(rows, header, path=None):
    """Returns (entries, recognized titles, rejection Counter)."""
    columns = {
        "patient": resolve_columns(header, ROSTER_PATIENT_COLUMNS),
        "title": resolve_columns(header, ROSTER_TITLE_COLUMNS),
        "start": resolve_columns(header, ROSTER_START_COLUMNS),
    }
    missing = [role for role, cols in columns.items() if not cols]
    if missing:
        raise MissingColumnsError(
            f"Membership roster is missing column(s): {', '.join(missing)}",
            path=path,
            expectation="Patient, Title and Start Date columns",
        )

    entries = []
    titles = []
    rejected = Counter()
    for row in rows:
        patient = " ".join(str(_first(row, columns["patient"]) or "").split())
        title = str(_first(row, columns["title"]) or "").strip()
        kind = membership_type(title)
        if kind:
            titles.append(title)
        if not patient:
            rejected["missing_patient"] += 1
            continue
        if not kind:
            rejected["unrecognized_title"] += 1
            logger.info("Skipping %s: unrecognized membership title %r", patient, title)
            continue
        start = parse_date(_first(row, columns["start"]))
        if start is None:
            rejected["invalid_start_date"] += 1
            logger.info("Skipping %s: unparseable start date", patient)
            continue
        entries.append(RosterEntry(patient, kind, title, start))

    logger.info("Roster: %d usable entries, rejected %s", len(entries), dict(rejected) or "none")
    return entries, titles, rejected


def membership_totals(titles):
    totals = dict.fromkeys(TOTAL_FIELDS, 0)
    for title in titles:
        t = title.lower()
        totals["total_drip_iv_members"] += 1
        if "individual" in t:
            totals["individual_memberships"] += 1
        elif "family" in t and "concierge" in t:
            totals["family_concierge_memberships"] += 1
        elif "family" in t:
            totals["family_memberships"] += 1
        elif "concierge" in t and "drip" in t:
            totals["drip_concierge_memberships"] += 1
        elif "concierge" in t:
            totals["concierge_memberships"] += 1
        elif "corporate" in t:
            totals["corporate_memberships"] += 1
    return totals


def count_new_memberships(conn, entries, week):
    """Register roster entries that started in ``week``; count actual inserts.

    ``conn`` must already hold the run's write transaction so two uploads of
    the same roster cannot both see a key as unregistered.
    """
    counters = dict.fromkeys(REGISTRY_COUNTERS, 0)
    skipped = Counter()
    for entry in entries:
        if entry.start_date not in week:
            skipped["outside_week"] += 1
            continue
        if insert_membership_if_absent(conn, entry, week.start):
            counters[f"new_{entry.membership_type}_members_weekly"] += 1
            logger.info("New %s membership: %s (starts %s)",
                        entry.membership_type, entry.patient, entry.start_date)
        else:
            skipped["already_registered"] += 1
            logger.debug("Already registered: %s", entry.member_key)
    return counters, skipped
