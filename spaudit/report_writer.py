"""
CSV report output shared by the audit tools.

Every field is double-quoted with embedded quotes doubled, matching what
PowerShell's Export-Csv produces, so reports from either toolchain diff
cleanly. Rows are appended as workers finish, one locked write per row.
"""

import csv
import io
import threading
from typing import List, Sequence

from .models import FolderAggregate

FOLDER_STATS_HEADER = [
    "TopFolder",
    "FolderPath",
    "FileCount",
    "SubfolderCount",
    "SizeBytes",
    "SizeMB",
    "SizeGB",
]

PERMISSION_REPORT_HEADER = [
    "SiteUrl",
    "Library",
    "ItemType",
    "ItemPath",
    "ItemUrl",
    "User",
    "Roles",
    "GrantedVia",
    "Inherited",
]


def format_csv_line(values: Sequence[object]) -> str:
    """Render one CSV record, terminated by a newline."""
    buf = io.StringIO()
    writer = csv.writer(buf, quoting=csv.QUOTE_ALL, lineterminator="\n")
    writer.writerow(["" if value is None else str(value) for value in values])
    return buf.getvalue()


class CsvReportWriter:
    """
    Append-only CSV sink that is safe to share between worker threads.

    The header is written on open, so a run that produces no rows still
    leaves a valid header-only file behind.
    """

    def __init__(self, path: str, header: Sequence[str]) -> None:
        self.path = path
        self.header: List[str] = list(header)
        self.rows_written = 0
        self._lock = threading.Lock()
        self._fh = open(path, "w", encoding="utf-8", newline="")
        self._fh.write(format_csv_line(self.header))
        self._fh.flush()

    def __enter__(self) -> "CsvReportWriter":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def write_row(self, values: Sequence[object]) -> None:
        if len(values) != len(self.header):
            raise ValueError(f"Expected {len(self.header)} fields, got {len(values)}")
        line = format_csv_line(values)
        with self._lock:
            self._fh.write(line)
            self._fh.flush()
            self.rows_written += 1

    def write_aggregate(self, aggregate: FolderAggregate) -> None:
        self.write_row(aggregate.as_row())

    def close(self) -> None:
        with self._lock:
            if not self._fh.closed:
                self._fh.close()
