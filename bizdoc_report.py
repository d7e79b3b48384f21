"""
bizdoc_report.py
================
Document output for the BizDoc report.

Two renderers share one section order:

    title → executive summary → key findings → key metrics (+ derived margins)
    → trends → charts → risk scores → opportunities / recommendations /
    entities → sources → confidence

PdfReportRenderer draws directly on a ReportLab canvas with a single render
cursor (page, y). Every emission (lines, table rows, bullets, bars, images)
checks the space left on the page first and breaks the page *before* it
draws, so no item is ever split across two pages.

DocxReportRenderer writes the same content with python-docx and marks table
rows as non-splittable; Word does the pagination.
"""

import io
import logging
import re
from dataclasses import dataclass
from datetime import datetime

from docx import Document
from docx.oxml import OxmlElement
from docx.oxml.ns import qn
from docx.shared import Inches, Pt, RGBColor
from reportlab.lib import colors
from reportlab.lib.pagesizes import letter
from reportlab.lib.utils import ImageReader
from reportlab.pdfbase.pdfmetrics import stringWidth
from reportlab.pdfgen import canvas

from bizdoc_engine import RISK_DIMENSIONS, normalize_analysis
from bizdoc_errors import InvalidInput, RenderError

logger = logging.getLogger(__name__)

# ── Shared constants ─────────────────────────────────────────────────────────

EM_DASH = "—"
DEFAULT_CONFIDENCE_FLOOR = 0.05   # a report never shows 0% confidence

RISK_LABELS = {
    "financialStability": "Financial Stability",
    "liquidity": "Liquidity",
    "concentrationRisk": "Concentration Risk",
    "compliance": "Compliance",
    "growthOutlook": "Growth Outlook",
}
ENTITY_LABELS = (
    ("companies", "Companies"),
    ("investors", "Investors"),
    ("regulators", "Regulators"),
    ("people", "People"),
)

BRAND_GREEN = colors.HexColor("#2d5f3f")
BRAND_PALE  = colors.HexColor("#eef7f1")
GRID_COLOR  = colors.HexColor("#d4e6da")
TEXT_DARK   = colors.HexColor("#1a1a1a")
TEXT_MID    = colors.HexColor("#4a4a4a")
ACCENT_RED  = colors.HexColor("#c0392b")


# ═══════════════════════════════════════════════════════════════════════════════
#  PART 1 — SHARED FORMATTING
# ═══════════════════════════════════════════════════════════════════════════════

def sanitize_filename(name, default: str = "BizDoc_Report") -> str:
    return re.sub(r"[^\w\-]+", "_", str(name or ""))[:64] or default


def format_metric_value(value, unit: str = "") -> str:
    """Percent units are stored as fractions: 0.15 with "%" → "15.0%"."""
    if not isinstance(value, (int, float)) or isinstance(value, bool):
        return EM_DASH
    if "%" in (unit or ""):
        return f"{value * 100:.1f}%"
    if float(value).is_integer():
        return f"{value:,.0f}"
    return f"{value:,.2f}"


def risk_bar_width(value, max_width: float) -> float:
    """Bar length for a 1–5 score; out-of-range scores are clamped first."""
    if not isinstance(value, (int, float)) or isinstance(value, bool):
        return 0.0
    return min(max(value, 1), 5) / 5.0 * max_width


def display_confidence(confidence, floor: float = DEFAULT_CONFIDENCE_FLOOR) -> float:
    """Confidence as a display percentage, never below ``floor``."""
    if not isinstance(confidence, (int, float)) or isinstance(confidence, bool):
        confidence = 0.0
    return min(max(confidence, floor), 1.0) * 100.0


_REVENUE_RE = re.compile(r"\b(revenues?|net sales|sales|turnover)\b", re.IGNORECASE)
_RATE_RE = re.compile(r"\b(growth|margin|rate|ratio|per|yoy|change)\b", re.IGNORECASE)
_MARGIN_INPUTS = (
    ("Gross margin", re.compile(r"\bgross\s+(profit|income)\b", re.IGNORECASE)),
    ("Operating margin", re.compile(r"\b(operating\s+(income|profit)|ebit)\b", re.IGNORECASE)),
    ("EBITDA margin", re.compile(r"\bebitda\b", re.IGNORECASE)),
    ("Net margin", re.compile(r"\bnet\s+(income|profit|earnings)\b", re.IGNORECASE)),
)


def _absolute(metric: dict, pattern) -> bool:
    label = metric.get("label") or ""
    return (bool(pattern.search(label)) and not _RATE_RE.search(label)
            and "%" not in (metric.get("unit") or "")
            and isinstance(metric.get("value"), (int, float)))


def derive_metrics(metrics: list) -> list:
    """
    Margin ratios computed from the literal metrics, e.g. gross profit / revenue.

    Only emitted when both inputs are present, the denominator is nonzero,
    the units agree, and the model did not already report that margin.
    """
    revenue = next((m for m in metrics if _absolute(m, _REVENUE_RE)), None)
    if revenue is None or not revenue["value"]:
        return []

    existing = " | ".join((m.get("label") or "").lower() for m in metrics)
    derived = []
    for name, pattern in _MARGIN_INPUTS:
        if name.lower() in existing:
            continue
        numerator = next((m for m in metrics if _absolute(m, pattern)), None)
        if numerator is None:
            continue
        if numerator.get("unit") and revenue.get("unit") and \
                numerator["unit"].lower() != revenue["unit"].lower():
            continue
        derived.append({
            "label": f"{name} (derived)",
            "value": numerator["value"] / revenue["value"],
            "unit": "%",
            "note": f"{numerator['label']} / {revenue['label']}",
        })
    return derived


def _subtitle(analysis: dict, generated_at: datetime) -> str:
    meta = analysis.get("meta") or {}
    parts = [f"Generated {generated_at.strftime('%B %d, %Y at %H:%M')}"]
    source = meta.get("filename") or meta.get("source") or meta.get("url")
    if source:
        parts.append(f"Source: {source}")
    return " · ".join(parts)


# ═══════════════════════════════════════════════════════════════════════════════
#  PART 2 — PDF (ReportLab canvas)
# ═══════════════════════════════════════════════════════════════════════════════

BODY_FONT = "Helvetica"
BOLD_FONT = "Helvetica-Bold"
ITALIC_FONT = "Helvetica-Oblique"


def _pdf_safe(text) -> str:
    """Standard PDF fonts only cover cp1252; anything else becomes '?'."""
    return str(text).encode("cp1252", errors="replace").decode("cp1252")


def _split_long_word(word: str, font: str, size: float, max_width: float) -> list:
    if stringWidth(word, font, size) <= max_width:
        return [word]
    pieces, piece = [], ""
    for ch in word:
        if piece and stringWidth(piece + ch, font, size) > max_width:
            pieces.append(piece)
            piece = ch
        else:
            piece += ch
    if piece:
        pieces.append(piece)
    return pieces


def wrap_text(text, font: str, size: float, max_width: float) -> list:
    """
    Greedy line fill: add words while the line still fits, otherwise flush
    the line and start the next one with that word. Explicit newlines are
    kept as line breaks; a single word wider than the line is cut.
    """
    lines = []
    for raw_line in str(text or "").replace("\r", "").split("\n"):
        line = ""
        for word in raw_line.split():
            for piece in _split_long_word(word, font, size, max_width):
                test = f"{line} {piece}" if line else piece
                if stringWidth(test, font, size) <= max_width:
                    line = test
                else:
                    if line:
                        lines.append(line)
                    line = piece
        if line:
            lines.append(line)
    return lines


@dataclass
class RenderCursor:
    page: int
    y: float

    def fits(self, height: float, bottom: float) -> bool:
        return self.y - height >= bottom


class PdfReportRenderer:
    """Lays an Analysis Result out on US-letter pages."""

    content_type = "application/pdf"
    extension = "pdf"

    MARGIN = 56
    BODY_SIZE = 10
    SMALL_SIZE = 8.5
    HEADING_SIZE = 13
    TITLE_SIZE = 22
    BAR_HEIGHT = 20
    CELL_PAD = 4

    def __init__(self, confidence_floor: float = DEFAULT_CONFIDENCE_FLOOR,
                 generated_at: datetime = None, pagesize=letter,
                 max_image_width: float = None):
        self.confidence_floor = confidence_floor
        self.generated_at = generated_at or datetime.now()
        self.page_width, self.page_height = pagesize
        self.pagesize = pagesize
        self.left = self.MARGIN
        self.width = self.page_width - 2 * self.MARGIN
        self.top = self.page_height - self.MARGIN
        self.bottom = self.MARGIN
        self.max_image_width = min(max_image_width or self.width, self.width)
        self.page_count = 0
        self._canvas = None
        self.cursor = None
        self._title = ""

    # ── Page lifecycle ───────────────────────────────────────────────────

    @property
    def body_height(self) -> float:
        return self.top - self.bottom

    def _draw_header(self):
        c = self._canvas
        c.saveState()
        y = self.page_height - self.MARGIN + 22
        date = self.generated_at.strftime("%B %d, %Y")
        c.setFont(BOLD_FONT, 8)
        c.setFillColor(BRAND_GREEN)
        room = self.width - stringWidth(date, BODY_FONT, 8) - 20
        title = _pdf_safe(self._title)
        while title and stringWidth(title, BOLD_FONT, 8) > room:
            title = title[:-2] + "…" if len(title) > 2 else ""
        c.drawString(self.left, y, title)
        c.setFont(BODY_FONT, 8)
        c.setFillColor(TEXT_MID)
        c.drawRightString(self.left + self.width, y, date)
        c.setStrokeColor(GRID_COLOR)
        c.setLineWidth(0.8)
        c.line(self.left, y - 6, self.left + self.width, y - 6)
        c.restoreState()

    def _draw_footer(self):
        c = self._canvas
        c.saveState()
        y = self.MARGIN - 30
        c.setStrokeColor(GRID_COLOR)
        c.setLineWidth(0.5)
        c.line(self.left, y + 12, self.left + self.width, y + 12)
        c.setFont(BODY_FONT, 7.5)
        c.setFillColor(TEXT_MID)
        c.drawString(self.left, y, "Generated by BizDoc · AI-assisted analysis, verify before use")
        c.drawRightString(self.left + self.width, y, f"Page {self.cursor.page}")
        c.restoreState()

    def _new_page(self):
        """Finish the current page and start the next one under a running header."""
        self._draw_footer()
        self._canvas.showPage()
        self.cursor.page += 1
        self.cursor.y = self.top
        self._draw_header()

    def _ensure(self, height: float):
        if not self.cursor.fits(height, self.bottom):
            self._new_page()

    def _space(self, height: float):
        self.cursor.y = max(self.cursor.y - height, self.bottom)

    # ── Emission primitives ──────────────────────────────────────────────

    def draw_line(self, text, font=BODY_FONT, size=BODY_SIZE, indent=0.0,
                  color=TEXT_DARK, leading=None):
        leading = leading or size * 1.4
        self._ensure(leading)
        c = self._canvas
        c.setFont(font, size)
        c.setFillColor(color)
        c.drawString(self.left + indent, self.cursor.y - size, _pdf_safe(text))
        self.cursor.y -= leading

    def draw_paragraph(self, text, font=BODY_FONT, size=BODY_SIZE, indent=0.0,
                       color=TEXT_DARK, space_after=6):
        for line in wrap_text(_pdf_safe(text), font, size, self.width - indent):
            self.draw_line(line, font=font, size=size, indent=indent, color=color)
        self._space(space_after)

    def draw_heading(self, text):
        # keep the heading on the same page as at least two body lines
        height = self.HEADING_SIZE * 1.6 + 8 + 2 * self.BODY_SIZE * 1.4
        self._ensure(height)
        self._space(4)
        self.draw_line(text, font=BOLD_FONT, size=self.HEADING_SIZE, color=BRAND_GREEN,
                       leading=self.HEADING_SIZE * 1.5)
        c = self._canvas
        c.setStrokeColor(GRID_COLOR)
        c.setLineWidth(0.8)
        c.line(self.left, self.cursor.y + 2, self.left + self.width, self.cursor.y + 2)
        self._space(6)

    def draw_bullet(self, text, marker="•", size=BODY_SIZE):
        indent = max(14, 3 + stringWidth(_pdf_safe(marker), BODY_FONT, size) + 4)
        leading = size * 1.4
        lines = wrap_text(_pdf_safe(text), BODY_FONT, size, self.width - indent)
        if not lines:
            return
        if len(lines) * leading > self.body_height:
            # taller than a whole page; fall back to line-by-line
            for i, line in enumerate(lines):
                self.draw_line(f"{marker} {line}" if i == 0 else line,
                               indent=0 if i == 0 else indent, size=size)
            return
        self._ensure(len(lines) * leading)
        c = self._canvas
        c.setFont(BODY_FONT, size)
        c.setFillColor(BRAND_GREEN)
        c.drawString(self.left + 3, self.cursor.y - size, _pdf_safe(marker))
        c.setFillColor(TEXT_DARK)
        for line in lines:
            c.drawString(self.left + indent, self.cursor.y - size, line)
            self.cursor.y -= leading
        self._space(2)

    def _row_layout(self, cells, col_widths, font, size):
        wrapped = [wrap_text(_pdf_safe(cell), font, size, w - 2 * self.CELL_PAD) or [""]
                   for cell, w in zip(cells, col_widths)]
        height = max(len(w) for w in wrapped) * size * 1.3 + 2 * self.CELL_PAD
        return wrapped, height

    def _cap_row(self, wrapped, height, size, max_height):
        """Truncate cells so the row fits in ``max_height``; the last kept line ends in '…'."""
        if height <= max_height:
            return wrapped, height
        keep = max(1, int((max_height - 2 * self.CELL_PAD) // (size * 1.3)))
        capped = []
        for lines in wrapped:
            if len(lines) > keep:
                lines = lines[:keep - 1] + [lines[keep - 1].rstrip()[:-1].rstrip() + "…"]
            capped.append(lines)
        return capped, keep * size * 1.3 + 2 * self.CELL_PAD

    def _draw_row(self, wrapped, height, col_widths, font, size, fill=None,
                  color=TEXT_DARK, aligns=None):
        c = self._canvas
        y_top = self.cursor.y
        if fill is not None:
            c.setFillColor(fill)
            c.rect(self.left, y_top - height, sum(col_widths), height, stroke=0, fill=1)
        c.setFont(font, size)
        c.setFillColor(color)
        x = self.left
        for i, (lines, w) in enumerate(zip(wrapped, col_widths)):
            align = (aligns or [])[i] if aligns and i < len(aligns) else "left"
            y = y_top - self.CELL_PAD - size
            for line in lines:
                if align == "right":
                    c.drawRightString(x + w - self.CELL_PAD, y, line)
                else:
                    c.drawString(x + self.CELL_PAD, y, line)
                y -= size * 1.3
            x += w
        c.setStrokeColor(GRID_COLOR)
        c.setLineWidth(0.5)
        c.line(self.left, y_top - height, self.left + sum(col_widths), y_top - height)
        self.cursor.y -= height

    def draw_table(self, header, rows, col_widths, aligns=None):
        """Header row is repeated at the top of every page the table spills onto."""
        size = self.BODY_SIZE - 0.5
        head_wrapped, head_h = self._row_layout(header, col_widths, BOLD_FONT, size)

        def draw_header():
            self._draw_row(head_wrapped, head_h, col_widths, BOLD_FONT, size,
                           fill=BRAND_GREEN, color=colors.white, aligns=aligns)

        # a single row may never be taller than a page under the header
        max_row_h = self.body_height - head_h

        def layout(row):
            wrapped, height = self._row_layout(row, col_widths, BODY_FONT, size)
            return self._cap_row(wrapped, height, size, max_row_h)

        first_h = layout(rows[0])[1] if rows else 0
        self._ensure(head_h + first_h)
        draw_header()
        for idx, row in enumerate(rows):
            wrapped, height = layout(row)
            if not self.cursor.fits(height, self.bottom):
                self._new_page()
                draw_header()
            self._draw_row(wrapped, height, col_widths, BODY_FONT, size,
                           fill=BRAND_PALE if idx % 2 else None, aligns=aligns)
        self._space(8)

    def draw_bar(self, label, value, max_value=5):
        label_w = 130
        value_w = 40
        track_w = self.width - label_w - value_w
        self._ensure(self.BAR_HEIGHT)
        c = self._canvas
        y_mid = self.cursor.y - self.BAR_HEIGHT / 2
        c.setFont(BODY_FONT, self.BODY_SIZE)
        c.setFillColor(TEXT_DARK)
        c.drawString(self.left, y_mid - 3.5, _pdf_safe(label))

        x0 = self.left + label_w
        c.setFillColor(BRAND_PALE)
        c.setStrokeColor(GRID_COLOR)
        c.rect(x0, y_mid - 5, track_w, 10, stroke=1, fill=1)
        filled = risk_bar_width(value, track_w)
        if filled > 0:
            c.setFillColor(ACCENT_RED if value >= 4 else BRAND_GREEN)
            c.rect(x0, y_mid - 5, filled, 10, stroke=0, fill=1)

        shown = f"{min(max(int(value), 1), max_value)}/{max_value}" if filled else EM_DASH
        c.setFillColor(TEXT_MID)
        c.drawRightString(self.left + self.width, y_mid - 3.5, shown)
        self.cursor.y -= self.BAR_HEIGHT

    def draw_image(self, image_bytes, caption=None):
        if not image_bytes:
            raise RenderError("Chart image is empty", chart=caption or "")
        try:
            reader = ImageReader(io.BytesIO(image_bytes))
            img_w, img_h = reader.getSize()
        except Exception as exc:
            raise RenderError(f"Invalid chart image: {exc}", chart=caption or "") from exc
        if not img_w or not img_h:
            raise RenderError("Chart image has no size", chart=caption or "")

        caption_h = self.BODY_SIZE * 1.8 if caption else 0
        w = self.max_image_width
        h = img_h * w / img_w
        if h + caption_h > self.body_height:
            h = self.body_height - caption_h
            w = img_w * h / img_h

        self._ensure(caption_h + h)
        if caption:
            self.draw_line(caption, font=BOLD_FONT, size=self.BODY_SIZE + 1,
                           leading=caption_h)
        try:
            self._canvas.drawImage(reader, self.left + (self.width - w) / 2,
                                   self.cursor.y - h, width=w, height=h)
        except Exception as exc:
            raise RenderError(f"Could not embed chart image: {exc}", chart=caption or "") from exc
        self.cursor.y -= h
        self._space(10)

    # ── Sections ─────────────────────────────────────────────────────────

    def _title_block(self, a):
        for line in wrap_text(_pdf_safe(a["title"]), BOLD_FONT, self.TITLE_SIZE, self.width):
            self.draw_line(line, font=BOLD_FONT, size=self.TITLE_SIZE, color=BRAND_GREEN)
        self.draw_paragraph(_subtitle(a, self.generated_at), font=ITALIC_FONT,
                            size=self.SMALL_SIZE, color=TEXT_MID, space_after=10)

    def _metrics(self, a):
        literal = a["keyMetrics"]
        rows = literal + derive_metrics(literal)
        if not rows:
            return
        self.draw_heading("Key Metrics")
        col_widths = [self.width * 0.55, self.width * 0.25, self.width * 0.20]
        self.draw_table(
            ["Metric", "Value", "Unit"],
            [[m["label"] or EM_DASH, format_metric_value(m["value"], m["unit"]),
              m["unit"] or EM_DASH] for m in rows],
            col_widths, aligns=["left", "right", "left"],
        )

    def _charts(self, charts):
        if not charts:
            return
        self.draw_heading("Charts")
        for chart in charts:
            self.draw_image(chart.image, caption=chart.title)

    def _risk(self, a):
        self.draw_heading("Risk Scores")
        for key in RISK_DIMENSIONS:
            self.draw_bar(RISK_LABELS[key], a["riskScores"].get(key))
        self.draw_paragraph("Scale 1 (low) to 5 (high). Scores outside the scale are clamped.",
                            font=ITALIC_FONT, size=self.SMALL_SIZE, color=TEXT_MID)

    def _lists(self, a):
        if a["opportunities"]:
            self.draw_heading("Opportunities")
            for item in a["opportunities"]:
                self.draw_bullet(item)
        if a["recommendations"]:
            self.draw_heading("Recommendations")
            for rec in a["recommendations"]:
                text = f"{rec['title']} {EM_DASH} {rec['detail']}" if rec["detail"] else rec["title"]
                self.draw_bullet(text)
        entities = [(label, a["entities"][key]) for key, label in ENTITY_LABELS
                    if a["entities"].get(key)]
        if entities:
            self.draw_heading("Entities")
            for label, names in entities:
                self.draw_paragraph(f"{label}: {', '.join(names)}", space_after=2)

    def _sources(self, a):
        if not a["sources"]:
            return
        self.draw_heading("Sources")
        for i, src in enumerate(a["sources"], 1):
            self.draw_bullet(f"{src['title']} {EM_DASH} {src['url']}", marker=f"[{i}]",
                             size=self.SMALL_SIZE)

    def render(self, analysis: dict, charts=()) -> bytes:
        a = normalize_analysis(analysis)
        self._title = a["title"]
        buf = io.BytesIO()
        self._canvas = canvas.Canvas(buf, pagesize=self.pagesize)
        self._canvas.setTitle(_pdf_safe(a["title"]))
        self._canvas.setAuthor("BizDoc")
        self.cursor = RenderCursor(page=1, y=self.top)

        self._title_block(a)

        self.draw_heading("Executive Summary")
        self.draw_paragraph(a["executiveSummary"] or EM_DASH)

        if a["keyFindings"]:
            self.draw_heading("Key Findings")
            for finding in a["keyFindings"]:
                self.draw_bullet(finding)

        self._metrics(a)

        if a["trends"]["narrative"]:
            self.draw_heading("Trends")
            self.draw_paragraph(a["trends"]["narrative"])

        self._charts(list(charts or []))
        self._risk(a)
        self._lists(a)
        self._sources(a)

        pct = display_confidence(a["confidence"], self.confidence_floor)
        self._space(6)
        self.draw_line(f"Confidence: {pct:.0f}%", font=BOLD_FONT, size=self.BODY_SIZE + 1,
                       color=BRAND_GREEN)

        self._draw_footer()
        self._canvas.save()
        self.page_count = self.cursor.page
        logger.info("PDF rendered: %d page(s)", self.page_count)
        return buf.getvalue()


# ═══════════════════════════════════════════════════════════════════════════════
#  PART 3 — DOCX (python-docx)
# ═══════════════════════════════════════════════════════════════════════════════

def _keep_row_together(row, header=False):
    tr_pr = row._tr.get_or_add_trPr()
    tr_pr.append(OxmlElement("w:cantSplit"))
    if header:
        tr_pr.append(OxmlElement("w:tblHeader"))


def _add_page_field(paragraph):
    run = paragraph.add_run()
    begin = OxmlElement("w:fldChar")
    begin.set(qn("w:fldCharType"), "begin")
    instr = OxmlElement("w:instrText")
    instr.set(qn("xml:space"), "preserve")
    instr.text = "PAGE"
    end = OxmlElement("w:fldChar")
    end.set(qn("w:fldCharType"), "end")
    run._r.append(begin)
    run._r.append(instr)
    run._r.append(end)


class DocxReportRenderer:
    content_type = "application/vnd.openxmlformats-officedocument.wordprocessingml.document"
    extension = "docx"

    def __init__(self, confidence_floor: float = DEFAULT_CONFIDENCE_FLOOR,
                 generated_at: datetime = None, image_width_in: float = 6.0):
        self.confidence_floor = confidence_floor
        self.generated_at = generated_at or datetime.now()
        self.image_width_in = image_width_in

    def _table(self, document, header, rows):
        table = document.add_table(rows=1, cols=len(header))
        table.style = "Table Grid"
        for cell, text in zip(table.rows[0].cells, header):
            cell.text = text
            cell.paragraphs[0].runs[0].bold = True
        _keep_row_together(table.rows[0], header=True)
        for values in rows:
            row = table.add_row()
            for cell, text in zip(row.cells, values):
                cell.text = text
            _keep_row_together(row)
        return table

    def render(self, analysis: dict, charts=()) -> bytes:
        a = normalize_analysis(analysis)
        document = Document()
        document.core_properties.title = a["title"]
        document.core_properties.author = "BizDoc"

        header = document.sections[0].header.paragraphs[0]
        header.text = f"{a['title']} · {self.generated_at.strftime('%B %d, %Y')}"
        footer = document.sections[0].footer.paragraphs[0]
        footer.text = "Generated by BizDoc · Page "
        _add_page_field(footer)

        document.add_heading(a["title"], level=0)
        sub = document.add_paragraph()
        run = sub.add_run(_subtitle(a, self.generated_at))
        run.italic = True
        run.font.size = Pt(9)
        run.font.color.rgb = RGBColor(0x4a, 0x4a, 0x4a)

        document.add_heading("Executive Summary", level=1)
        document.add_paragraph(a["executiveSummary"] or EM_DASH)

        if a["keyFindings"]:
            document.add_heading("Key Findings", level=1)
            for finding in a["keyFindings"]:
                document.add_paragraph(finding, style="List Bullet")

        rows = a["keyMetrics"] + derive_metrics(a["keyMetrics"])
        if rows:
            document.add_heading("Key Metrics", level=1)
            self._table(document, ["Metric", "Value", "Unit"], [
                [m["label"] or EM_DASH, format_metric_value(m["value"], m["unit"]),
                 m["unit"] or EM_DASH] for m in rows
            ])

        if a["trends"]["narrative"]:
            document.add_heading("Trends", level=1)
            document.add_paragraph(a["trends"]["narrative"])

        charts = list(charts or [])
        if charts:
            document.add_heading("Charts", level=1)
            for chart in charts:
                document.add_heading(chart.title, level=2)
                if not chart.image:
                    raise RenderError("Chart image is empty", chart=chart.title)
                try:
                    document.add_picture(io.BytesIO(chart.image), width=Inches(self.image_width_in))
                except Exception as exc:
                    raise RenderError(f"Invalid chart image: {exc}", chart=chart.title) from exc

        document.add_heading("Risk Scores", level=1)
        risk_rows = []
        for key in RISK_DIMENSIONS:
            value = a["riskScores"].get(key)
            if isinstance(value, int):
                filled = int(round(risk_bar_width(value, 5)))
                risk_rows.append([RISK_LABELS[key],
                                  "■" * filled + "□" * (5 - filled) + f"  {filled}/5"])
            else:
                risk_rows.append([RISK_LABELS[key], EM_DASH])
        self._table(document, ["Dimension", "Score (1–5)"], risk_rows)

        if a["opportunities"]:
            document.add_heading("Opportunities", level=1)
            for item in a["opportunities"]:
                document.add_paragraph(item, style="List Bullet")
        if a["recommendations"]:
            document.add_heading("Recommendations", level=1)
            for rec in a["recommendations"]:
                p = document.add_paragraph(style="List Bullet")
                p.add_run(rec["title"]).bold = True
                if rec["detail"]:
                    p.add_run(f" {EM_DASH} {rec['detail']}")
        entities = [(label, a["entities"][key]) for key, label in ENTITY_LABELS
                    if a["entities"].get(key)]
        if entities:
            document.add_heading("Entities", level=1)
            for label, names in entities:
                document.add_paragraph(f"{label}: {', '.join(names)}")

        if a["sources"]:
            document.add_heading("Sources", level=1)
            for i, src in enumerate(a["sources"], 1):
                document.add_paragraph(f"[{i}] {src['title']} {EM_DASH} {src['url']}")

        pct = display_confidence(a["confidence"], self.confidence_floor)
        document.add_paragraph().add_run(f"Confidence: {pct:.0f}%").bold = True

        buf = io.BytesIO()
        document.save(buf)
        return buf.getvalue()


# ── Public API ───────────────────────────────────────────────────────────────

RENDERERS = {"pdf": PdfReportRenderer, "docx": DocxReportRenderer}


def get_renderer(fmt: str = "pdf", **kwargs):
    fmt = (fmt or "pdf").lower()
    if fmt not in RENDERERS:
        raise InvalidInput("format must be 'pdf' or 'docx'", field="format")
    return RENDERERS[fmt](**kwargs)


def render_report(analysis: dict, charts=(), fmt: str = "pdf", **kwargs) -> bytes:
    return get_renderer(fmt, **kwargs).render(analysis, charts)
