"""Export serializers — turn projected rows into artifact bytes per format.

Each serializer receives rows already projected to the selected columns (in
order) and the column list as ``(key, label)`` pairs. Adding a format means
registering one more serializer; the job state machine does not change.
"""

import csv
import io
import json
from datetime import date, datetime
from xml.sax.saxutils import escape

from openpyxl import Workbook
from openpyxl.styles import Font, PatternFill
from reportlab.lib import colors
from reportlab.lib.pagesizes import A4, landscape
from reportlab.lib.styles import getSampleStyleSheet
from reportlab.platypus import Paragraph, SimpleDocTemplate, Spacer, Table, TableStyle


def _cell(value):
    """Flatten a value for tabular formats."""
    if value is None:
        return ""
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, (dict, list, tuple)):
        return json.dumps(value, default=str)
    return value


class Serializer:
    format = ""
    extension = ""
    media_type = "application/octet-stream"

    def serialize(self, rows: list[dict], columns: list[tuple[str, str]]) -> bytes:
        raise NotImplementedError


class CSVSerializer(Serializer):
    format = "csv"
    extension = "csv"
    media_type = "text/csv"

    def serialize(self, rows: list[dict], columns: list[tuple[str, str]]) -> bytes:
        buf = io.StringIO(newline="")
        writer = csv.writer(buf)
        writer.writerow([label for _, label in columns])
        for row in rows:
            writer.writerow([_cell(row.get(key)) for key, _ in columns])
        return buf.getvalue().encode("utf-8")


class JSONSerializer(Serializer):
    format = "json"
    extension = "json"
    media_type = "application/json"

    def serialize(self, rows: list[dict], columns: list[tuple[str, str]]) -> bytes:
        records = [{key: row.get(key) for key, _ in columns} for row in rows]
        return json.dumps(records, indent=2, default=str).encode("utf-8")


class ExcelSerializer(Serializer):
    format = "excel"
    extension = "xlsx"
    media_type = "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"

    def __init__(self, sheet_title: str = "Export", column_width: int = 15) -> None:
        self._sheet_title = sheet_title
        self._column_width = column_width

    def serialize(self, rows: list[dict], columns: list[tuple[str, str]]) -> bytes:
        workbook = Workbook()
        sheet = workbook.active
        sheet.title = self._sheet_title

        sheet.append([label for _, label in columns])
        header_fill = PatternFill(fill_type="solid", fgColor="FFE6E6FA")
        for cell in sheet[1]:
            cell.font = Font(bold=True)
            cell.fill = header_fill

        for row in rows:
            sheet.append([_cell(row.get(key)) for key, _ in columns])

        for column_cells in sheet.columns:
            sheet.column_dimensions[column_cells[0].column_letter].width = self._column_width

        buf = io.BytesIO()
        workbook.save(buf)
        return buf.getvalue()


class PDFSerializer(Serializer):
    format = "pdf"
    extension = "pdf"
    media_type = "application/pdf"

    def __init__(self, title: str = "Data Export") -> None:
        self._title = title

    def serialize(self, rows: list[dict], columns: list[tuple[str, str]]) -> bytes:
        styles = getSampleStyleSheet()
        body_style = styles["BodyText"]
        body_style.fontSize = 8

        buf = io.BytesIO()
        doc = SimpleDocTemplate(buf, pagesize=landscape(A4), title=self._title)

        data = [[label for _, label in columns]]
        for row in rows:
            data.append([Paragraph(escape(str(_cell(row.get(key)))), body_style) for key, _ in columns])

        table = Table(data, repeatRows=1)
        table.setStyle(
            TableStyle([
                ("BACKGROUND", (0, 0), (-1, 0), colors.lavender),
                ("FONTNAME", (0, 0), (-1, 0), "Helvetica-Bold"),
                ("FONTSIZE", (0, 0), (-1, -1), 8),
                ("GRID", (0, 0), (-1, -1), 0.25, colors.grey),
                ("VALIGN", (0, 0), (-1, -1), "TOP"),
            ])
        )

        story = [
            Paragraph(escape(self._title), styles["Title"]),
            Paragraph(f"Total records: {len(rows)}", styles["Normal"]),
            Spacer(1, 12),
            table,
        ]
        doc.build(story)
        return buf.getvalue()


_SERIALIZERS: dict[str, Serializer] = {
    s.format: s
    for s in (CSVSerializer(), JSONSerializer(), ExcelSerializer(), PDFSerializer())
}


def register_serializer(serializer: Serializer) -> None:
    _SERIALIZERS[serializer.format] = serializer


def get_serializer(fmt: str) -> Serializer:
    serializer = _SERIALIZERS.get(fmt)
    if serializer is None:
        raise ValueError(f"Unsupported export format: {fmt}")
    return serializer


def supported_formats() -> tuple[str, ...]:
    return tuple(_SERIALIZERS)
