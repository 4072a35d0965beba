"""
Template Parser
Extracts document fields from PDFs (normalised rectangles) and Excel files
(cell references) using the template stored for the document type
"""

import json
import logging
import math
import re
from datetime import datetime
from functools import cmp_to_key
from typing import Any, Dict, List, Optional, Tuple

import pandas as pd
from PyPDF2 import PdfReader

logger = logging.getLogger(__name__)

# Fragments whose normalised y differs by less than this sit on the same line
LINE_TOLERANCE = 0.01

DATE_FORMATS = [
    "%d/%m/%Y", "%d/%m/%y", "%Y-%m-%d", "%d-%m-%Y", "%d.%m.%Y",
    "%d %B %Y", "%d %b %Y", "%B %d, %Y", "%b %d, %Y",
]


class TemplateParseError(Exception):
    pass


# === PDF ===

def _text_fragments(page) -> List[Tuple[float, float, str]]:
    """(x, y, text) in PDF points, origin bottom-left, for every text run on a page"""
    fragments = []

    def visitor(text, cm, tm, font_dict, font_size):
        if not text or not text.strip():
            return
        # text matrix position mapped through the current transformation matrix
        x = cm[0] * tm[4] + cm[2] * tm[5] + cm[4]
        y = cm[1] * tm[4] + cm[3] * tm[5] + cm[5]
        fragments.append((x, y, text.strip()))

    page.extract_text(visitor_text=visitor)
    return fragments


def extract_region_text(fragments: List[Tuple[float, float, str]], page_width: float, page_height: float,
                        region: Dict[str, Any]) -> str:
    """
    Join the fragments whose origin lies inside a normalised rectangle.

    Args:
        fragments: (x, y, text) with a bottom-left origin in points
        region: {left, top, right, bottom} in 0..1 with a top-left origin
    """
    left, top = float(region["left"]), float(region["top"])
    right, bottom = float(region["right"]), float(region["bottom"])

    hits = []
    for x, y, text in fragments:
        nx = x / page_width
        ny = 1 - (y / page_height)
        if left <= nx <= right and top <= ny <= bottom:
            hits.append((nx, ny, text))

    def reading_order(a, b):
        if abs(a[1] - b[1]) > LINE_TOLERANCE:
            return -1 if a[1] < b[1] else 1
        return -1 if a[0] < b[0] else (1 if a[0] > b[0] else 0)

    hits.sort(key=cmp_to_key(reading_order))
    return " ".join(text for _, _, text in hits).strip()


def extract_fields_from_pdf(file_path: str, coordinates: Dict[str, Dict[str, Any]]) -> Dict[str, Any]:
    if not coordinates:
        raise TemplateParseError("Template has no PDF coordinates defined")

    reader = PdfReader(file_path)
    full_text = "\n".join((page.extract_text() or "") for page in reader.pages)
    extracted: Dict[str, Any] = {"fullText": full_text}

    page_cache: Dict[int, Tuple[List[Tuple[float, float, str]], float, float]] = {}
    for field_name, region in coordinates.items():
        if not region:
            continue
        page_number = int(region.get("page") or 1)
        if page_number > len(reader.pages):
            logger.warning(f"Skipping {field_name}: page {page_number} does not exist")
            continue
        if page_number not in page_cache:
            page = reader.pages[page_number - 1]
            box = page.mediabox
            width = float(box.right) - float(box.left)
            height = float(box.top) - float(box.bottom)
            fragments = [(x - float(box.left), y - float(box.bottom), t) for x, y, t in _text_fragments(page)]
            page_cache[page_number] = (fragments, width, height)
        fragments, width, height = page_cache[page_number]
        extracted[field_name] = extract_region_text(fragments, width, height, region)

    return extracted


# === Excel ===

def column_to_number(column: str) -> int:
    """A -> 1, Z -> 26, AA -> 27"""
    result = 0
    for char in column.upper():
        result = result * 26 + (ord(char) - ord("A") + 1)
    return result


def _cell_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, float):
        if math.isnan(value):
            return ""
        if value.is_integer():
            return str(int(value))
    if isinstance(value, (pd.Timestamp, datetime)):
        return value.strftime("%Y-%m-%d")
    return str(value).strip()


def _cell(frame: pd.DataFrame, row: int, column: int) -> str:
    if row < 1 or column < 1 or row > frame.shape[0] or column > frame.shape[1]:
        return ""
    return _cell_text(frame.iat[row - 1, column - 1])


def extract_fields_from_frame(frame: pd.DataFrame, excel_cells: Dict[str, Dict[str, Any]]) -> Dict[str, Any]:
    extracted = {}
    for field_name, mapping in excel_cells.items():
        if not mapping or not mapping.get("column") or not mapping.get("row"):
            logger.warning(f"Skipping {field_name}: missing column or row")
            continue
        column = column_to_number(str(mapping["column"]))
        row = int(mapping["row"])

        if mapping.get("endColumn") and mapping.get("endRow"):
            end_column = column_to_number(str(mapping["endColumn"]))
            end_row = int(mapping["endRow"])
            lines = []
            for r in range(row, end_row + 1):
                values = [_cell(frame, r, c) for c in range(column, end_column + 1)]
                values = [v for v in values if v]
                if values:
                    lines.append("\t".join(values))
            extracted[field_name] = "\n".join(lines)
        else:
            extracted[field_name] = _cell(frame, row, column)
    return extracted


def extract_fields_from_excel(file_path: str, excel_cells: Dict[str, Dict[str, Any]]) -> Dict[str, Any]:
    if not excel_cells:
        raise TemplateParseError("Template has no Excel cell mappings defined")

    sheets = pd.read_excel(file_path, sheet_name=None, header=None)
    if not sheets:
        raise TemplateParseError("Excel file has no sheets")

    # multi-page exports put the current page on the last sheet
    names = list(sheets.keys())
    frame = sheets[names[-1]]

    text_lines = []
    for sheet in sheets.values():
        for _, row in sheet.iterrows():
            text_lines.append(" ".join(_cell_text(v) for v in row.tolist()).strip())

    extracted = {"fullText": "\n".join(text_lines)}
    extracted.update(extract_fields_from_frame(frame, excel_cells))
    return extracted


# === Shared ===

def detect_document_type(text: Optional[str]) -> str:
    upper = (text or "").upper()
    if "CREDIT NOTE" in upper:
        return "credit_note"
    if "STATEMENT" in upper:
        return "statement"
    return "invoice"


def file_type_for(file_name: str) -> Optional[str]:
    lower = file_name.lower()
    if lower.endswith(".pdf"):
        return "pdf"
    if lower.endswith((".xlsx", ".xls")):
        return "excel"
    return None


def load_json_field(value: Any) -> Dict[str, Any]:
    if not value:
        return {}
    if isinstance(value, dict):
        return value
    return json.loads(value)


def extract_full_text(file_path: str, file_type: str) -> str:
    """Plain text of the whole document, used to detect its type before picking a template"""
    if file_type == "pdf":
        reader = PdfReader(file_path)
        return "\n".join((page.extract_text() or "") for page in reader.pages)
    if file_type == "excel":
        sheets = pd.read_excel(file_path, sheet_name=None, header=None)
        return "\n".join(
            " ".join(_cell_text(v) for v in row.tolist()).strip()
            for sheet in sheets.values()
            for _, row in sheet.iterrows()
        )
    raise TemplateParseError(f"Unsupported file type '{file_type}'")


def parse_fields(file_path: str, file_type: str, template: Dict[str, Any]) -> Dict[str, Any]:
    """Run the right extractor for a template row"""
    if file_type == "pdf":
        return extract_fields_from_pdf(file_path, load_json_field(template.get("coordinates")))
    if file_type == "excel":
        return extract_fields_from_excel(file_path, load_json_field(template.get("excel_cells")))
    raise TemplateParseError(f"Unsupported file type '{file_type}'")


def parse_amount(value: Any) -> Optional[float]:
    if value is None or value == "":
        return None
    if isinstance(value, (int, float)):
        return float(value)
    text = str(value).strip()
    negative = text.startswith("-") or (text.startswith("(") and text.endswith(")"))
    cleaned = re.sub(r"[^0-9.]", "", text)
    if not cleaned or cleaned.count(".") > 1:
        return None
    amount = float(cleaned)
    return -amount if negative else amount


def parse_date(value: Any) -> Optional[datetime]:
    if not value:
        return None
    if isinstance(value, datetime):
        return value
    text = str(value).strip()
    for fmt in DATE_FORMATS:
        try:
            return datetime.strptime(text, fmt)
        except ValueError:
            continue
    return None
