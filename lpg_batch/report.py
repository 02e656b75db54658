"""
Report assembly: outcome records → normalized rows → .xlsx bytes.
"""

import io
import logging
import os
import tempfile
import time
from dataclasses import dataclass
from datetime import datetime

from openpyxl import Workbook
from openpyxl.styles import Alignment, Font, PatternFill
from openpyxl.utils import get_column_letter

from lpg_batch.models import OutcomeRecord

logger = logging.getLogger("lpg_batch")

UNKNOWN = "Unknown"
STATUS_SUCCESS = "Success"
STATUS_ERROR = "Error"

SHEET_TITLE = "Laporan Subsidi Tepat LPG"
HEADERS = ["No", "Nama", "NIK", "Jenis Pengguna", "Status", "Error Message"]
COLUMN_WIDTHS = [5, 25, 20, 15, 12, 40]

XLSX_MIMETYPE = "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"
FILENAME_PREFIX = "subsidi-tepat-lpg-report"


@dataclass(frozen=True)
class ReportRow:
    index: int
    name: str
    identifier: str
    category: str
    result: str
    failure_reason: str

    def as_list(self) -> list:
        return [self.index, self.name, self.identifier, self.category, self.result, self.failure_reason]


def to_rows(records: list[OutcomeRecord]) -> list[ReportRow]:
    """One row per record, in order.  Missing name/category render as 'Unknown'."""
    return [
        ReportRow(
            index=i,
            name=record.customer_name or UNKNOWN,
            identifier=record.identifier,
            category=record.customer_category or UNKNOWN,
            result=STATUS_SUCCESS if record.is_success else STATUS_ERROR,
            failure_reason=record.failure_reason or "",
        )
        for i, record in enumerate(records, 1)
    ]


def build_workbook(rows: list[ReportRow]) -> bytes:
    """Serialize rows to an .xlsx workbook with a fixed header row."""
    wb = Workbook()
    ws = wb.active
    ws.title = SHEET_TITLE

    ws.append(HEADERS)
    header_fill = PatternFill(start_color="4472C4", end_color="4472C4", fill_type="solid")
    header_font = Font(bold=True, color="FFFFFF")
    for cell in ws[1]:
        cell.fill = header_fill
        cell.font = header_font
        cell.alignment = Alignment(horizontal="center")

    for row in rows:
        ws.append(row.as_list())

    # NIK column is text
    for (cell,) in ws.iter_rows(min_row=2, min_col=3, max_col=3):
        cell.number_format = "@"

    for col_idx, width in enumerate(COLUMN_WIDTHS, 1):
        ws.column_dimensions[get_column_letter(col_idx)].width = width

    buffer = io.BytesIO()
    wb.save(buffer)
    logger.info(f"📊 Excel report generated — {len(rows)} row(s)")
    return buffer.getvalue()


def report_filename(now: datetime = None) -> str:
    now = now or datetime.now()
    return f"{FILENAME_PREFIX}-{now.strftime('%Y-%m-%dT%H-%M-%S')}.xlsx"


def save_report(data: bytes, filename: str, reports_dir: str) -> str:
    """Write report bytes under reports_dir (atomic via a private temp file + rename)."""
    os.makedirs(reports_dir, exist_ok=True)
    path = os.path.join(reports_dir, filename)
    with tempfile.NamedTemporaryFile(dir=reports_dir, prefix=".report-", suffix=".tmp", delete=False) as f:
        f.write(data)
        tmp = f.name
    try:
        os.replace(tmp, path)
    except OSError:
        os.unlink(tmp)
        raise
    logger.info(f"📊 Excel report saved to: {path}")
    return path


def cleanup_old_reports(reports_dir: str, max_age_seconds: int = 86_400) -> int:
    """Delete report files older than max_age_seconds.  Returns how many were removed."""
    if not os.path.isdir(reports_dir):
        return 0

    removed = 0
    now = time.time()
    for name in os.listdir(reports_dir):
        path = os.path.join(reports_dir, name)
        try:
            if not os.path.isfile(path):
                continue
            if now - os.path.getmtime(path) > max_age_seconds:
                os.unlink(path)
                removed += 1
                logger.info(f"🗑️  Cleaned up old report: {name}")
        except OSError as e:
            logger.warning(f"Could not clean up {name}: {e}")
    return removed
