"""
data_processor.py - Normalizes extracted billing rows and computes the weekly
dashboard metrics for the clinic.
"""

import logging
import os
import re
from collections import Counter, defaultdict
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from decimal import Decimal, InvalidOperation

from errors import MissingColumnsError, PipelineDefect, ZeroRevenueError
from service_categories import (
    BASE_INFUSION, CATEGORIES, CONSULTATION, INFUSION_ADDON, MEMBERSHIP,
    REVENUE_TAXONOMY, STANDALONE_INJECTION, WEIGHT_MANAGEMENT,
    WEIGHT_MANAGEMENT_TAXONOMY, categorize, is_ambiguous, is_weight_loss,
    MEMBERSHIP_TYPES, matching_categories, mentions_weight_loss, new_signup_type,
)

logger = logging.getLogger(__name__)

ZERO_REVENUE_ROW_THRESHOLD = int(os.environ.get("ZERO_REVENUE_ROW_THRESHOLD", "10"))

DATE_COLUMNS = ["Date", "Date Of Payment", "Payment Date", "Service Date"]
PATIENT_COLUMNS = ["Patient", "Patient Name", "Customer"]
DESCRIPTION_COLUMNS = ["Charge Desc", "Charge Description", "Service Name", "Description"]
CHARGE_TYPE_COLUMNS = ["Charge Type", "Service Type"]
AMOUNT_COLUMNS = [
    "Calculated Payment (Line)", "Charge Amount", "Payment Amount",
    "Amount", "Total", "Paid",
]

MIN_YEAR = 2020
EXCEL_EPOCH = date(1899, 12, 30)
MAX_SERIAL = 2958465  # 9999-12-31

HORMONE_KEYWORDS = (
    "hormone", "testosterone", "estrogen", "progesterone",
    "hrt", "bhrt", "pellet", "thyroid", "cortisol",
)
NON_MEMBER_MARKERS = ("(non-member)", "non-member", "non member")

_MDY_RE = re.compile(r"^(\d{1,2})/(\d{1,2})/(\d{4}|\d{2})(?:\s.*)?$")
_ISO_RE = re.compile(r"^(\d{4})-(\d{2})-(\d{2})(?:[ T].*)?$")
_SERIAL_RE = re.compile(r"^\d+(\.\d+)?$")
_TIP_RE = re.compile(r"\b(tip|tips|total_tips)\b", re.I)

CENT = Decimal("0.01")


# ──────────────────────────────────────────────────────────────────────────────
# Helpers
# ──────────────────────────────────────────────────────────────────────────────

def _from_serial(serial):
    if not 1 <= serial <= MAX_SERIAL:
        return None
    return EXCEL_EPOCH + timedelta(days=int(serial))


def parse_date(value):
    """Transaction date from a text, native or serial cell; None if unusable."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, datetime):
        dt = value.date()
    elif isinstance(value, date):
        dt = value
    elif isinstance(value, (int, float)):
        dt = _from_serial(value)
    else:
        s = str(value).strip()
        if not s or s.lower() == "total":
            return None
        dt = None
        mdy = _MDY_RE.match(s)
        iso = _ISO_RE.match(s)
        try:
            if mdy:
                month, day, year = (int(g) for g in mdy.groups())
                if len(mdy.group(3)) == 2:
                    year += 2000
                dt = date(year, month, day)
            elif iso:
                dt = date(*(int(g) for g in iso.groups()))
            elif _SERIAL_RE.match(s):
                dt = _from_serial(float(s))
        except ValueError:
            return None
    if dt is None or dt.year < MIN_YEAR:
        return None
    return dt


def parse_dollar(value):
    """Decimal amount, or None when the cell is blank or not a number."""
    if value is None or isinstance(value, bool):
        return None
    s = str(value).strip()
    if not s:
        return None
    negative = s.startswith("(") and s.endswith(")")
    s = s.strip("()").replace("$", "").replace(",", "").replace(" ", "")
    try:
        amount = Decimal(s)
    except InvalidOperation:
        return None
    if not amount.is_finite():
        return None
    return -amount if negative else amount


def _clean_text(value):
    return "" if value is None else " ".join(str(value).split())


def _header_key(name):
    return " ".join(str(name).split()).lower()


def is_tip(description):
    return bool(_TIP_RE.search(description or ""))


def member_status(description):
    lo = (description or "").lower()
    if any(m in lo for m in NON_MEMBER_MARKERS):
        return "non_member"
    if "member" in lo:
        return "member"
    return None


def is_hormone_service(description):
    lo = (description or "").lower()
    return any(k in lo for k in HORMONE_KEYWORDS)


# ──────────────────────────────────────────────────────────────────────────────
# Normalizer
# ──────────────────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class NormalizedRecord:
    transaction_date: date
    patient: str
    charge_description: str
    amount: Decimal
    charge_type: str = ""


@dataclass
class NormalizedBatch:
    records: list
    dropped: Counter
    dates: set
    source_rows: int
    columns: dict = field(default_factory=dict)


def resolve_columns(header, candidates):
    """Header names present for one role, in candidate priority order."""
    by_key = {}
    for name in header:
        by_key.setdefault(_header_key(name), name)
    return [by_key[_header_key(c)] for c in candidates if _header_key(c) in by_key]


def resolve_column_map(header, path=None):
    columns = {
        "date": resolve_columns(header, DATE_COLUMNS),
        "patient": resolve_columns(header, PATIENT_COLUMNS),
        "description": resolve_columns(header, DESCRIPTION_COLUMNS),
        "amount": resolve_columns(header, AMOUNT_COLUMNS),
        "charge_type": resolve_columns(header, CHARGE_TYPE_COLUMNS),
    }
    missing = [role for role in ("date", "description", "amount") if not columns[role]]
    if missing:
        wanted = {"date": DATE_COLUMNS, "description": DESCRIPTION_COLUMNS,
                  "amount": AMOUNT_COLUMNS}
        raise MissingColumnsError(
            f"Missing required column(s): {', '.join(missing)}. "
            f"Found: {', '.join(str(h) for h in header)}",
            path=path,
            expectation="; ".join(f"{r}: one of {wanted[r]}" for r in missing),
        )
    return columns


def normalize_rows(rows, header, path=None):
    columns = resolve_column_map(header, path)
    logger.info("Column mapping: %s", {k: v[:1] for k, v in columns.items()})

    records = []
    dropped = Counter()
    dates = set()
    for row in rows:
        tx_date = None
        for col in columns["date"]:
            tx_date = parse_date(row.get(col))
            if tx_date:
                break
        if tx_date is None:
            dropped["invalid_date"] += 1
            continue
        dates.add(tx_date)

        desc = ""
        for col in columns["description"]:
            desc = _clean_text(row.get(col))
            if desc:
                break
        if not desc or desc.lower() == "total":
            dropped["empty_description"] += 1
            continue
        if is_tip(desc):
            dropped["tip"] += 1
            continue

        amount = None
        for col in columns["amount"]:
            if _clean_text(row.get(col)):
                amount = parse_dollar(row.get(col))
                break
        if amount is None or amount <= 0:
            dropped["non_positive_amount"] += 1
            logger.debug("Dropping %r on %s: amount %r", desc, tx_date, amount)
            continue

        patient = ""
        for col in columns["patient"]:
            patient = _clean_text(row.get(col))
            if patient:
                break

        charge_type = ""
        for col in columns["charge_type"]:
            charge_type = _clean_text(row.get(col))
            if charge_type:
                break

        records.append(NormalizedRecord(tx_date, patient, desc, amount, charge_type))

    logger.info("Normalized %d of %d rows; dropped %s",
                len(records), len(rows), dict(dropped) or "none")
    return NormalizedBatch(records, dropped, dates, len(rows), columns)


# ──────────────────────────────────────────────────────────────────────────────
# Metrics aggregation
# ──────────────────────────────────────────────────────────────────────────────

def _split():
    return {"weekday": 0, "weekend": 0}


def _money(value):
    return value.quantize(CENT)


def empty_metrics(week, month):
    m = {
        "week_start": week.start.isoformat(),
        "week_end": week.end.isoformat(),
        "month_start": month.start.isoformat(),
        "month_end": month.end.isoformat(),
        "actual_weekly_revenue": Decimal("0"),
        "actual_monthly_revenue": Decimal("0"),
        "category_revenue_weekly": {c: Decimal("0") for c in CATEGORIES},
        "category_revenue_monthly": {c: Decimal("0") for c in CATEGORIES},
        "weight_management_breakdown_weekly": {c: Decimal("0") for c in CATEGORIES},
        "service_counts_weekly": {c: _split() for c in CATEGORIES},
        "service_counts_monthly": {c: _split() for c in CATEGORIES},
        "flagged_services": [],
    }
    for period in ("weekly", "monthly"):
        for bucket in ("infusion", "injection", "membership", "weight_management"):
            m[f"{bucket}_revenue_{period}"] = Decimal("0")
        for kind in ("iv_infusions", "injections", "drip_iv"):
            for part in ("weekday", "weekend"):
                m[f"{kind}_{part}_{period}"] = 0
        for stage in ("initial", "followup"):
            for sex in ("female", "male"):
                m[f"hormone_{stage}_{sex}_{period}"] = 0
        for kind in MEMBERSHIP_TYPES:
            m[f"new_{kind}_members_{period}"] = 0
        m[f"weight_loss_consults_{period}"] = 0
        m[f"weight_loss_injections_{period}"] = 0
        m[f"unique_customers_{period}"] = 0
    m["member_customers_weekly"] = 0
    m["non_member_customers_weekly"] = 0
    m["new_members_source"] = "revenue"
    m["bin_revenue_perf_weekly"] = {}
    m["bin_service_volume_weekly"] = {}
    m["bin_customer_weekly"] = {}
    m["unmapped_services"] = []
    return m


def _count_hormone(m, desc, period):
    lo = desc.lower()
    # "female" contains "male"
    if "female" in lo:
        sex = "female"
    elif "male" in lo:
        sex = "male"
    else:
        return
    stage = "initial" if "initial" in lo else "followup"
    m[f"hormone_{stage}_{sex}_{period}"] += 1


def _accumulate(m, rec, category, variant, period, part):
    amount = rec.amount
    desc = rec.charge_description

    m[f"actual_{period}_revenue"] += amount
    m[f"category_revenue_{period}"][category] += amount
    m[f"service_counts_{period}"][category][part] += 1

    weight_loss = is_weight_loss(desc)
    if category in (BASE_INFUSION, INFUSION_ADDON):
        m[f"infusion_revenue_{period}"] += amount
        if category == BASE_INFUSION:
            m[f"iv_infusions_{part}_{period}"] += 1
    else:
        if weight_loss or variant == WEIGHT_MANAGEMENT:
            m[f"weight_management_revenue_{period}"] += amount
        if category == STANDALONE_INJECTION and not weight_loss:
            m[f"injection_revenue_{period}"] += amount
            m[f"injections_{part}_{period}"] += 1
        elif category == MEMBERSHIP:
            m[f"membership_revenue_{period}"] += amount
            kind = new_signup_type(desc)
            if kind:
                m[f"new_{kind}_members_{period}"] += 1

    if category == CONSULTATION and mentions_weight_loss(desc):
        m[f"weight_loss_consults_{period}"] += 1
    if weight_loss and (category == STANDALONE_INJECTION or variant == WEIGHT_MANAGEMENT):
        m[f"weight_loss_injections_{period}"] += 1
    if is_hormone_service(desc):
        _count_hormone(m, desc, period)


def _track_unmapped(unmapped, mapping, rec):
    key = mapping.key_for(rec.charge_description, rec.charge_type)
    if key in unmapped:
        unmapped[key]["occurrences"] += 1
        return
    unmapped[key] = {
        "service_name": key[0],
        "service_type": key[1],
        "description": rec.charge_description,
        "occurrences": 1,
    }


def aggregate_metrics(records, week, month, source_rows=0, taxonomy=REVENUE_TAXONOMY,
                      path=None, mapping=None):
    """Fold normalized records into one weekly metrics record.

    Week and month membership are independent: a row can count toward the
    month without being in the reporting week and vice versa. With a
    ``mapping`` (a ServiceMapping) the week's rows are also totalled per
    reporting bin, and services it cannot place are listed for review.
    """
    m = empty_metrics(week, month)
    customers = defaultdict(set)
    flagged = {}
    bin_revenue = defaultdict(Decimal)
    bin_volume = Counter()
    bin_customers = defaultdict(set)
    unmapped = {}

    for rec in records:
        category = categorize(rec.charge_description, taxonomy)
        variant = categorize(rec.charge_description, WEIGHT_MANAGEMENT_TAXONOMY)
        part = "weekend" if rec.transaction_date.weekday() >= 5 else "weekday"
        who = rec.patient.lower()
        in_week = rec.transaction_date in week
        in_month = rec.transaction_date in month

        if in_week:
            _accumulate(m, rec, category, variant, "weekly", part)
            m["weight_management_breakdown_weekly"][variant] += rec.amount
            if who:
                customers["weekly"].add(who)
                status = member_status(rec.charge_description)
                if status:
                    customers[status].add(who)
            if rec.charge_description not in flagged and is_ambiguous(rec.charge_description, taxonomy):
                flagged[rec.charge_description] = {
                    "description": rec.charge_description,
                    "categories": matching_categories(rec.charge_description, taxonomy),
                    "chosen": category,
                }
            if mapping is not None:
                bins = mapping.lookup(rec.charge_description, rec.charge_type)
                if bins is None:
                    _track_unmapped(unmapped, mapping, rec)
                else:
                    if bins.revenue_perf:
                        bin_revenue[bins.revenue_perf] += rec.amount
                    if bins.service_volume:
                        bin_volume[bins.service_volume] += 1
                    if bins.customer and who:
                        bin_customers[bins.customer].add(who)
        if in_month:
            _accumulate(m, rec, category, variant, "monthly", part)
            if who:
                customers["monthly"].add(who)

    for period in ("weekly", "monthly"):
        m[f"unique_customers_{period}"] = len(customers[period])
        for part in ("weekday", "weekend"):
            m[f"drip_iv_{part}_{period}"] = (
                m[f"iv_infusions_{part}_{period}"] + m[f"injections_{part}_{period}"]
            )
    m["member_customers_weekly"] = len(customers["member"])
    m["non_member_customers_weekly"] = len(customers["non_member"])
    m["bin_revenue_perf_weekly"] = dict(bin_revenue)
    m["bin_service_volume_weekly"] = dict(bin_volume)
    m["bin_customer_weekly"] = {b: len(s) for b, s in bin_customers.items()}
    m["unmapped_services"] = list(unmapped.values())
    if unmapped:
        logger.warning("%d service(s) in week %s have no bin mapping", len(unmapped), m["week_start"])

    m["flagged_services"] = list(flagged.values())
    for item in m["flagged_services"]:
        logger.warning("Ambiguous service %r matches %s; counted as %s",
                       item["description"], item["categories"], item["chosen"])

    check_conservation(m)

    if m["actual_weekly_revenue"] == 0 and source_rows > ZERO_REVENUE_ROW_THRESHOLD:
        raise ZeroRevenueError(
            f"Weekly revenue is $0 for {week.start} to {week.end} "
            f"but the file had {source_rows} rows",
            path=path,
            expectation="a non-empty export produces revenue in its reporting week",
        )

    logger.info("Week %s to %s: revenue $%s (month $%s), %d customers, %d infusions, %d injections",
                m["week_start"], m["week_end"], _money(m["actual_weekly_revenue"]),
                _money(m["actual_monthly_revenue"]), m["unique_customers_weekly"],
                m["iv_infusions_weekday_weekly"] + m["iv_infusions_weekend_weekly"],
                m["injections_weekday_weekly"] + m["injections_weekend_weekly"])
    return m


def check_conservation(m):
    for period in ("weekly", "monthly"):
        total = sum(m[f"category_revenue_{period}"].values(), Decimal("0"))
        if total != m[f"actual_{period}_revenue"]:
            raise PipelineDefect(
                f"{period} category revenue {total} != total {m[f'actual_{period}_revenue']}",
                expectation="per-category revenue sums to total revenue",
            )
