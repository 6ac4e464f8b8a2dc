from __future__ import annotations

import csv
from datetime import date, datetime
from io import BytesIO
from pathlib import Path
from typing import Any
from zipfile import BadZipFile

import pandas as pd
from openpyxl import Workbook, load_workbook
from openpyxl.utils.exceptions import InvalidFileException


WORKBOOK_EXTENSIONS = {".xlsx", ".xlsm", ".xltx", ".xltm"}
CSV_EXTENSIONS = {".csv", ".txt"}
SUPPORTED_IMPORT_EXTENSIONS = WORKBOOK_EXTENSIONS | CSV_EXTENSIONS
LEGACY_SPREADSHEET_EXTENSIONS = {".xls", ".ods"}
CSV_DELIMITERS = ",;\t|"
CSV_SNIFF_BYTES = 8192
EXPORT_FORMATS = {"xlsx", "csv"}
RESULT_SHEET_NAME = "Resultado"
XLSX_MIME = "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"
CSV_MIME = "text/csv"


class LabelImportError(ValueError):
    """Raised when an uploaded file cannot be read as a label table."""


def sanitize_headers(raw_headers: list[Any]) -> list[str]:
    headers: list[str] = []
    seen: set[str] = set()
    for index, value in enumerate(raw_headers, start=1):
        header = str(value).strip() if value is not None else ""
        if not header:
            header = f"Column {index}"

        base = header
        suffix = 2
        while header in seen:
            header = f"{base} ({suffix})"
            suffix += 1

        seen.add(header)
        headers.append(header)
    return headers


def normalize_cell_value(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, datetime):
        return value.strftime("%Y-%m-%d %H:%M")
    if isinstance(value, date):
        return value.strftime("%Y-%m-%d")
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value).strip()


def read_workbook_rows(data: bytes) -> list[dict[str, str]]:
    try:
        workbook = load_workbook(BytesIO(data), read_only=True, data_only=True)
    except (InvalidFileException, BadZipFile, KeyError, OSError, ValueError) as exc:
        raise LabelImportError(f"Not a readable workbook: {exc}") from exc

    try:
        if not workbook.worksheets:
            raise LabelImportError("Workbook has no sheets.")
        worksheet = workbook.worksheets[0]
        row_iter = worksheet.iter_rows(values_only=True)
        header_row = next(row_iter, None)
        if header_row is None:
            return []
        headers = sanitize_headers(list(header_row))

        rows: list[dict[str, str]] = []
        for row in row_iter:
            if row is None:
                continue
            if all(value is None or str(value).strip() == "" for value in row):
                continue
            record: dict[str, str] = {}
            for index, header in enumerate(headers):
                value = row[index] if index < len(row) else None
                record[header] = normalize_cell_value(value)
            rows.append(record)
        return rows
    finally:
        workbook.close()


def detect_csv_delimiter(data: bytes) -> str:
    sample = data[:CSV_SNIFF_BYTES].decode("utf-8-sig", errors="replace")
    try:
        return csv.Sniffer().sniff(sample, delimiters=CSV_DELIMITERS).delimiter
    except csv.Error:
        return ","


def read_csv_rows(data: bytes) -> list[dict[str, str]]:
    try:
        frame = pd.read_csv(
            BytesIO(data),
            dtype=str,
            keep_default_na=False,
            sep=detect_csv_delimiter(data),
            encoding="utf-8-sig",
        )
    except pd.errors.EmptyDataError:
        return []
    except (pd.errors.ParserError, UnicodeDecodeError, ValueError) as exc:
        raise LabelImportError(f"Not a readable CSV file: {exc}") from exc

    frame = frame.fillna("")
    frame.columns = sanitize_headers(list(frame.columns))
    rows: list[dict[str, str]] = []
    for raw_row in frame.to_dict(orient="records"):
        if all(str(value).strip() == "" for value in raw_row.values()):
            continue
        rows.append({header: normalize_cell_value(value) for header, value in raw_row.items()})
    return rows


def read_label_rows(data: bytes, file_name: str = "") -> list[dict[str, str]]:
    """Parse uploaded bytes into row dicts keyed by header.

    The reader is chosen from the file extension. Without a recognized
    extension the bytes are tried as a workbook first, then as CSV.
    """
    if not data:
        raise LabelImportError("File is empty.")

    suffix = Path(file_name).suffix.lower() if file_name else ""
    if suffix in WORKBOOK_EXTENSIONS:
        return read_workbook_rows(data)
    if suffix in CSV_EXTENSIONS:
        return read_csv_rows(data)
    if suffix in LEGACY_SPREADSHEET_EXTENSIONS:
        raise LabelImportError(f"{suffix} files are not supported; save the sheet as .xlsx or .csv first.")
    if suffix:
        raise LabelImportError(f"Unsupported file type: {suffix}")

    try:
        return read_workbook_rows(data)
    except LabelImportError:
        return read_csv_rows(data)


def write_result_rows(rows: list[dict[str, str]], headers: list[str], fmt: str = "xlsx") -> bytes:
    normalized_format = str(fmt).strip().lower().lstrip(".")
    if normalized_format not in EXPORT_FORMATS:
        raise ValueError(f"Unsupported export format: {fmt}")

    if normalized_format == "csv":
        frame = pd.DataFrame(rows, columns=headers)
        return frame.to_csv(index=False).encode("utf-8")

    workbook = Workbook()
    worksheet = workbook.active
    worksheet.title = RESULT_SHEET_NAME
    worksheet.append(headers)
    for row in rows:
        worksheet.append([row.get(header, "") for header in headers])
    buffer = BytesIO()
    workbook.save(buffer)
    return buffer.getvalue()


def mime_type_for(fmt: str) -> str:
    return CSV_MIME if str(fmt).strip().lower().lstrip(".") == "csv" else XLSX_MIME
