"""
file_formats.py - Detects the export format of an uploaded billing file and
turns it into header-keyed raw rows.

The billing system hands us the same report in several shapes: UTF-16 tab
exports, a vendor CSV with doubled quotes around every field, an MHTML page
saved with an .xls extension, real workbooks, and plain CSV/TSV.
"""

import csv
import html
import io
import logging
import os
import quopri
import re
import zipfile
from collections import Counter
from dataclasses import dataclass, field

import openpyxl
import xlrd
from openpyxl.utils.exceptions import InvalidFileException
from xlrd.compdoc import CompDocError

from errors import StructuralError, UnrecognizedFormat

logger = logging.getLogger(__name__)

WORKBOOK_TITLE_ROWS = int(os.environ.get("WORKBOOK_TITLE_ROWS", "0"))

UTF16 = "utf16_delimited"
MHTML = "mhtml"
DELIMITED = "quoted_delimited"
WORKBOOK = "binary_workbook"

HEAD_BYTES = 64 * 1024
ZIP_MAGIC = b"PK\x03\x04"
OLE_MAGIC = b"\xd0\xcf\x11\xe0"
MIME_MARKERS = ("MIME-Version:", "Content-Type:", "Content-Location:")

# Fixed column layout of the HTML "Excel" export
MHTML_COLUMNS = [
    "Practitioner",
    "Date",
    "Date Of Payment",
    "Patient",
    "Patient_ID",
    "Patient State",
    "Super Bill",
    "Charge Type",
    "Charge Desc",
    "Charges",
    "Total Discount",
    "Tax",
    "Charges - Discount",
    "Calculated Payment (Line)",
    "COGS",
    "Qty",
]
PAYMENT_INDEX = MHTML_COLUMNS.index("Calculated Payment (Line)")
DESCRIPTION_INDEX = MHTML_COLUMNS.index("Charge Desc")
# Practitioner, Date and Date Of Payment are the merged (row-spanned) cells
SPANNED_COLUMNS = 3
MIN_ALIGNED_WIDTH = 13

_ROW_RE = re.compile(r"<tr[^>]*>.*?</tr>", re.I | re.S)
_CELL_RE = re.compile(r"<t[dh][^>]*>(.*?)</t[dh]>", re.I | re.S)
_TAG_RE = re.compile(r"<[^>]+>")
_BOUNDARY_RE = re.compile(r'boundary="?([^";\r\n]+)"?', re.I)
_QP_RE = re.compile(r"Content-Transfer-Encoding:\s*quoted-printable", re.I)
_CURRENCY_RE = re.compile(r"^\(?-?\$?\s*-?[\d,]*\d\.\d{2}\)?$")


@dataclass
class ExtractedTable:
    """Raw rows from one file, keyed by header name."""
    format: str
    columns: list
    rows: list
    dropped: Counter = field(default_factory=Counter)
    path: str = None


# ──────────────────────────────────────────────────────────────────────────────
# Detection
# ──────────────────────────────────────────────────────────────────────────────

def detect_format(raw: bytes, extension: str = "") -> str:
    if not raw:
        raise UnrecognizedFormat("File is empty", expectation="a non-empty export file")

    if raw[:2] in (b"\xff\xfe", b"\xfe\xff"):
        return UTF16

    head = raw[:HEAD_BYTES]
    text = head.decode("utf-8", errors="replace")
    lower = text.lower()
    mime_hits = sum(1 for m in MIME_MARKERS if m in text)
    has_markup = "<html" in lower or "<table" in lower
    has_rows = "<tr" in lower or "</td>" in lower
    if (mime_hits >= 2 or has_markup) and has_rows:
        return MHTML

    if head.startswith(ZIP_MAGIC) or head.startswith(OLE_MAGIC):
        return WORKBOOK

    if b"\x00" not in head:
        return DELIMITED

    logger.debug("No text signature in %s file, handing to the workbook readers",
                 extension or "unnamed")
    return WORKBOOK


def detect_dialect(first_line: str) -> str:
    """'vendor' for the doubled-quote export ("a,""b"",""c""), else 'standard'."""
    if first_line.startswith('"') and ',""' in first_line:
        return "vendor"
    return "standard"


# ──────────────────────────────────────────────────────────────────────────────
# Delimited text
# ──────────────────────────────────────────────────────────────────────────────

def split_vendor_line(line: str) -> list:
    content = line.strip()
    if len(content) >= 2 and content.startswith('"') and content.endswith('"'):
        content = content[1:-1]

    parts = []
    current = []
    i = 0
    n = len(content)
    while i < n:
        if content.startswith(',""', i):
            parts.append("".join(current))
            current = []
            i += 3
        elif content.startswith(",,", i):
            parts.append("".join(current))
            parts.append("")
            current = []
            i += 2
        else:
            current.append(content[i])
            i += 1
    if current or not parts:
        parts.append("".join(current))

    return [p.strip('"').strip() for p in parts]


def name_blank_headers(headers: list) -> list:
    named = []
    for i, h in enumerate(headers):
        h = "" if h is None else str(h).strip()
        if not h:
            h = "Patient_ID" if i > 0 and named[i - 1] == "Patient" else f"Column_{i}"
        named.append(h)
    return named


def _pick_delimiter(header_line: str) -> str:
    return "\t" if header_line.count("\t") > header_line.count(",") else ","


def parse_delimited(text: str, path=None) -> ExtractedTable:
    lines = [ln for ln in text.splitlines() if ln.strip()]
    if not lines:
        raise StructuralError("No header row found", path=path,
                              expectation="a header line followed by data rows")

    dropped = Counter()
    dialect = detect_dialect(lines[0])
    if dialect == "vendor":
        header = name_blank_headers(split_vendor_line(lines[0]))
        records = (split_vendor_line(ln) for ln in lines[1:])
    else:
        delimiter = _pick_delimiter(lines[0])
        reader = csv.reader(io.StringIO("\n".join(lines)), delimiter=delimiter)
        header = name_blank_headers(next(reader))
        records = reader

    rows = []
    for values in records:
        if len(values) != len(header):
            dropped["field_count_mismatch"] += 1
            continue
        rows.append(dict(zip(header, (v.strip() for v in values))))

    logger.info("Parsed %d rows (%s dialect, %d columns), dropped %d",
                len(rows), dialect, len(header), dropped["field_count_mismatch"])
    return ExtractedTable(DELIMITED, header, rows, dropped)


def _decode_text(raw: bytes) -> str:
    try:
        return raw.decode("utf-8-sig")
    except UnicodeDecodeError:
        return raw.decode("cp1252", errors="replace")


# ──────────────────────────────────────────────────────────────────────────────
# MHTML ("xls" that is really a saved web page)
# ──────────────────────────────────────────────────────────────────────────────

class RowSpanState:
    """Last value seen per column index while walking one HTML table.

    Merged cells in the export are written once; the rows beneath simply
    omit the leading columns. Only those spanned columns are inherited, and
    only cells a row actually supplied update the state. A short row that
    does not reach back to Charge Desc is a subtotal line, not a service.
    """

    def __init__(self, width=len(MHTML_COLUMNS)):
        self.width = width
        self.last = {}

    def align(self, cells):
        """Place a row's cells onto the full layout, or None if it can't be placed."""
        n = len(cells)
        if n >= self.width:
            placed = list(cells[:self.width])
        elif n >= MIN_ALIGNED_WIDTH:
            placed = [None] * (self.width - n) + list(cells)
        else:
            pay = find_payment_cell(cells)
            if pay is None:
                return None
            offset = PAYMENT_INDEX - pay
            if offset > DESCRIPTION_INDEX:
                return None
            if offset >= 0:
                placed = [None] * offset + list(cells)
            else:
                placed = list(cells[-offset:])
            placed = (placed + [""] * self.width)[:self.width]
        return self.fill(placed)

    def fill(self, placed):
        row = []
        for idx, value in enumerate(placed):
            if value is None:
                value = self.last.get(idx, "") if idx < SPANNED_COLUMNS else ""
            elif value:
                self.last[idx] = value
            row.append(value)
        return row


def find_payment_cell(cells):
    """Index of the payment amount, scanning from the end of a short row."""
    hits = [i for i, c in enumerate(cells) if _CURRENCY_RE.match(c or "")]
    if not hits:
        return None
    pay = hits[-1]
    # last amount is COGS when only the quantity follows it
    if len(hits) > 1 and hits[-2] == pay - 1 and len(cells) - pay == 2:
        pay = hits[-2]
    return pay


def cell_text(fragment: str) -> str:
    text = html.unescape(_TAG_RE.sub("", fragment))
    return text.replace("\xa0", " ").strip()


def _table_part(text: str) -> str:
    m = _BOUNDARY_RE.search(text)
    parts = text.split("--" + m.group(1)) if m else [text]
    for part in parts:
        lower = part.lower()
        if "<table" in lower or "<tr" in lower:
            return part
    return ""


def _undo_quoted_printable(part: str) -> str:
    head = part.lstrip("\n").split("\n\n", 1)[0]
    if _QP_RE.search(head):
        return quopri.decodestring(part.encode("utf-8")).decode("utf-8", errors="replace")
    return re.sub(r"=\r?\n", "", part).replace("=3D", "=")


def _split_rows(table_html: str) -> list:
    rows = _ROW_RE.findall(table_html)
    if rows:
        return rows
    # malformed markup: close each <tr chunk at </tr> or at the next row
    chunks = re.split(r"<tr", table_html, flags=re.I)[1:]
    return ["<tr" + c.split("</tr>", 1)[0] for c in chunks]


def parse_mhtml(text: str, path=None) -> ExtractedTable:
    part = _table_part(text)
    if not part:
        raise StructuralError("No HTML table found in web-page export", path=path,
                              expectation="a <table> inside the MHTML document")
    part = _undo_quoted_printable(part.replace("\r\n", "\n"))
    tr_rows = _split_rows(part)
    if len(tr_rows) < 2:
        raise StructuralError("No data rows found in HTML table", path=path,
                              expectation="a header row followed by data rows")

    state = RowSpanState()
    dropped = Counter()
    rows = []
    for tr in tr_rows[1:]:
        cells = [cell_text(c) for c in _CELL_RE.findall(tr)]
        if not cells:
            continue
        placed = state.align(cells)
        if placed is None:
            reason = "no_payment_cell" if find_payment_cell(cells) is None else "no_description_cell"
            dropped[reason] += 1
            logger.debug("Dropping %d-cell row (%s): %s", len(cells), reason, cells)
            continue
        rows.append(dict(zip(MHTML_COLUMNS, placed)))

    logger.info("Parsed %d rows from HTML table (%d <tr> elements), dropped %d",
                len(rows), len(tr_rows), sum(dropped.values()))
    return ExtractedTable(MHTML, list(MHTML_COLUMNS), rows, dropped)


# ──────────────────────────────────────────────────────────────────────────────
# Binary workbooks
# ──────────────────────────────────────────────────────────────────────────────

def _xlsx_rows(raw):
    wb = openpyxl.load_workbook(io.BytesIO(raw), read_only=True, data_only=True)
    try:
        ws = wb.worksheets[0]
        return [list(r) for r in ws.iter_rows(values_only=True)]
    finally:
        wb.close()


def _xls_rows(raw):
    book = xlrd.open_workbook(file_contents=raw)
    sheet = book.sheet_by_index(0)
    rows = []
    for i in range(sheet.nrows):
        values = []
        for cell in sheet.row(i):
            if cell.ctype == xlrd.XL_CELL_DATE:
                values.append(xlrd.xldate.xldate_as_datetime(cell.value, book.datemode))
            elif cell.ctype in (xlrd.XL_CELL_EMPTY, xlrd.XL_CELL_BLANK):
                values.append(None)
            else:
                values.append(cell.value)
        rows.append(values)
    return rows


def _is_blank(value):
    return value is None or (isinstance(value, str) and not value.strip())


def parse_workbook(raw: bytes, path=None, title_rows=None) -> ExtractedTable:
    if title_rows is None:
        title_rows = WORKBOOK_TITLE_ROWS

    readers = [_xls_rows, _xlsx_rows] if raw.startswith(OLE_MAGIC) else [_xlsx_rows, _xls_rows]
    grid = None
    errors = []
    for reader in readers:
        try:
            grid = reader(raw)
            break
        except (InvalidFileException, zipfile.BadZipFile, KeyError, OSError,
                xlrd.XLRDError, CompDocError) as e:
            errors.append(f"{reader.__name__.strip('_')}: {e}")
    if grid is None:
        raise UnrecognizedFormat(
            "File is not a readable spreadsheet (" + "; ".join(errors) + ")",
            path=path,
            expectation="an .xlsx or .xls workbook, CSV/TSV, or the HTML export",
        )

    body = [r for r in grid[title_rows:] if not all(_is_blank(v) for v in r)]
    if not body:
        raise StructuralError("No header row found in workbook", path=path,
                              expectation=f"a header row after {title_rows} title row(s)")

    header = name_blank_headers(body[0])
    rows = []
    for values in body[1:]:
        values = list(values) + [None] * (len(header) - len(values))
        rows.append(dict(zip(header, values)))

    logger.info("Read %d rows from first worksheet (%d columns)", len(rows), len(header))
    return ExtractedTable(WORKBOOK, header, rows)


# ──────────────────────────────────────────────────────────────────────────────
# Entry point
# ──────────────────────────────────────────────────────────────────────────────

def extract_rows(path, title_rows=None) -> ExtractedTable:
    path = str(path)
    with open(path, "rb") as f:
        raw = f.read()

    extension = os.path.splitext(path)[1].lower()
    try:
        fmt = detect_format(raw, extension)
    except UnrecognizedFormat as e:
        e.path = path
        raise
    logger.info("Detected %s format for %s (%d bytes)", fmt, os.path.basename(path), len(raw))

    if fmt == UTF16:
        table = parse_delimited(raw.decode("utf-16"), path=path)
        table.format = UTF16
    elif fmt == MHTML:
        table = parse_mhtml(_decode_text(raw), path=path)
    elif fmt == DELIMITED:
        table = parse_delimited(_decode_text(raw), path=path)
    else:
        table = parse_workbook(raw, path=path, title_rows=title_rows)

    if not table.rows:
        raise StructuralError("No data rows could be extracted", path=path,
                              expectation="at least one data row below the header")
    table.path = path
    return table
