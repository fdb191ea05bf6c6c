from __future__ import annotations

import csv
import io
import json
import zipfile
from dataclasses import dataclass, field
from typing import Any

from ..validation import ValidationError

ITEM_ID_HEADERS = ("item_id", "itemid", "id")
STOCK_HEADERS = ("stock", "new_stock", "quantity")

SUPPORTED_FORMATS = ("csv", "json", "xlsx")


def _to_text(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip().strip('"').strip("'").strip()
    return text if text else None


def _to_stock(value: Any) -> int | None:
    """Whole, non-negative stock count or None. "12.0" from a spreadsheet is 12; "12.5" is not."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value if value >= 0 else None
    if isinstance(value, float):
        return int(value) if value.is_integer() and value >= 0 else None
    text = _to_text(value)
    if text is None:
        return None
    try:
        number = float(text)
    except ValueError:
        return None
    if not number.is_integer() or number < 0:
        return None
    return int(number)


def _normalize_header(header: Any) -> str:
    return (_to_text(header) or "").lower().replace(" ", "_")


@dataclass(frozen=True)
class StockRow:
    row_number: int
    item_id: str
    stock: int


@dataclass
class ParsedStockImport:
    source: str
    rows: list[StockRow] = field(default_factory=list)
    skipped: list[dict] = field(default_factory=list)

    @property
    def total_rows(self) -> int:
        return len(self.rows) + len(self.skipped)


def _pick(raw: dict, names: tuple[str, ...]) -> Any:
    for key, value in raw.items():
        if _normalize_header(key) in names:
            return value
    return None


def normalize_rows(raw_rows: list, *, source: str, first_row_number: int = 1) -> ParsedStockImport:
    """
    Turn raw dict rows into (item_id, absolute stock) pairs.

    Rows missing an id, or with a stock that is not a whole number >= 0, are
    skipped and reported, never guessed at.
    """
    parsed = ParsedStockImport(source=source)
    for offset, raw in enumerate(raw_rows):
        row_number = first_row_number + offset
        if not isinstance(raw, dict):
            parsed.skipped.append({"row": row_number, "error": "row must be an object"})
            continue
        if all(_to_text(v) is None for v in raw.values()):
            # Blank spreadsheet line
            continue

        item_id = _to_text(_pick(raw, ITEM_ID_HEADERS))
        if item_id is None:
            parsed.skipped.append({"row": row_number, "error": "missing item_id"})
            continue
        stock = _to_stock(_pick(raw, STOCK_HEADERS))
        if stock is None:
            parsed.skipped.append({"row": row_number, "item_id": item_id, "error": "stock must be a whole number >= 0"})
            continue
        parsed.rows.append(StockRow(row_number=row_number, item_id=item_id, stock=stock))
    return parsed


def _check_headers(headers: list[str]) -> None:
    normalized = {_normalize_header(h) for h in headers}
    if not normalized & set(ITEM_ID_HEADERS) or not normalized & set(STOCK_HEADERS):
        raise ValidationError("file must have item_id and stock columns")


def parse_csv(text: str) -> ParsedStockImport:
    reader = csv.DictReader(io.StringIO(text.lstrip("\ufeff")))
    _check_headers(reader.fieldnames or [])
    # Header is line 1
    return normalize_rows(list(reader), source="csv", first_row_number=2)


def parse_xlsx(stream) -> ParsedStockImport:
    from openpyxl import load_workbook
    from openpyxl.utils.exceptions import InvalidFileException

    try:
        wb = load_workbook(stream, read_only=True, data_only=True)
    except (InvalidFileException, zipfile.BadZipFile, KeyError):
        raise ValidationError("Failed to parse upload: not a valid .xlsx workbook")
    try:
        data = list(wb.active.values)
    finally:
        wb.close()
    if not data:
        raise ValidationError("file must have item_id and stock columns")
    headers = [str(h) if h is not None else "" for h in data[0]]
    _check_headers(headers)
    rows = [
        {headers[i]: row[i] if i < len(row) else None for i in range(len(headers))}
        for row in data[1:]
    ]
    return normalize_rows(rows, source="xlsx", first_row_number=2)


def parse_json(payload: Any) -> ParsedStockImport:
    if isinstance(payload, (str, bytes)):
        try:
            payload = json.loads(payload)
        except ValueError:
            raise ValidationError("invalid JSON")
    if isinstance(payload, dict):
        payload = payload.get("rows")
    if not isinstance(payload, list):
        raise ValidationError("rows must be a list")
    return normalize_rows(payload, source="json")


def parse_upload(filename: str, stream) -> ParsedStockImport:
    ext = (filename or "").rsplit(".", 1)[-1].lower()
    if ext == "csv":
        try:
            text = stream.read().decode("utf-8")
        except UnicodeDecodeError:
            raise ValidationError("CSV file must be UTF-8 encoded")
        return parse_csv(text)
    if ext == "json":
        return parse_json(stream.read())
    if ext in {"xlsx", "xlsm"}:
        return parse_xlsx(stream)
    raise ValidationError(f"Unsupported file format; use one of: {', '.join(SUPPORTED_FORMATS)}")
