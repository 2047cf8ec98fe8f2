"""Shared fixtures: a throwaway database and builders for export files."""

import os
import tempfile

# app.py creates its tables at import; keep that away from /data
os.environ.setdefault("DB_PATH", os.path.join(tempfile.mkdtemp(prefix="clinic-test-"), "import.db"))

import openpyxl
import pytest

import database


@pytest.fixture
def db(tmp_path, monkeypatch):
    """Fresh SQLite database per test."""
    monkeypatch.setattr(database, "DB_PATH", str(tmp_path / "clinic.db"))
    database.init_db()
    return database


@pytest.fixture
def write_csv(tmp_path):
    def _write(lines, name="export.csv", encoding="utf-8"):
        path = tmp_path / name
        path.write_bytes(("\n".join(lines) + "\n").encode(encoding))
        return path
    return _write


@pytest.fixture
def write_xlsx(tmp_path):
    def _write(rows, name="export.xlsx"):
        wb = openpyxl.Workbook()
        ws = wb.active
        for row in rows:
            ws.append(row)
        path = tmp_path / name
        wb.save(path)
        return path
    return _write


def mhtml_document(rows, header_cells=16, quoted_printable=False):
    """MHTML page in the shape the billing system saves as .xls."""
    header = "<tr>" + "".join(f"<td>H{i}</td>" for i in range(header_cells)) + "</tr>"
    body = "".join(
        "<tr>" + "".join(f"<td>{c}</td>" for c in row) + "</tr>" for row in rows
    )
    table = f"<html><body><table border=3D\"1\">{header}{body}</table></body></html>"
    encoding = "quoted-printable" if quoted_printable else "8bit"
    return (
        "MIME-Version: 1.0\n"
        'Content-Type: multipart/related; boundary="----=_NextPart_01"\n'
        "\n"
        "------=_NextPart_01\n"
        "Content-Location: file:///C:/report.htm\n"
        f"Content-Transfer-Encoding: {encoding}\n"
        'Content-Type: text/html; charset="utf-8"\n'
        "\n"
        f"{table}\n"
        "------=_NextPart_01--\n"
    )


@pytest.fixture
def write_mhtml(tmp_path):
    def _write(rows, name="report.xls", **kwargs):
        path = tmp_path / name
        path.write_text(mhtml_document(rows, **kwargs), encoding="utf-8")
        return path
    return _write


REVENUE_HEADER = ["Date", "Patient", "Charge Desc", "Calculated Payment (Line)"]


@pytest.fixture
def revenue_csv(write_csv):
    """Plain CSV revenue export from (date, patient, description, amount) tuples."""
    def _write(rows, name="revenue.csv"):
        lines = [",".join(REVENUE_HEADER)]
        lines += [",".join(f'"{v}"' for v in row) for row in rows]
        return write_csv(lines, name=name)
    return _write
