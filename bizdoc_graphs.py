"""
bizdoc_graphs.py
================
Chart stage for the BizDoc report.

Takes the normalized Analysis Result and derives at most two chart specs:

    1. Key metrics — bar chart (label × value, in the order given)
    2. First trend KPI — line chart (x × y, in the order given, never sorted)

Each spec is then rasterized to PNG bytes, either locally with matplotlib
or by a remote Chart.js rendering endpoint (QuickChart-compatible). A spec
that was derived but cannot be rasterized aborts the report.
"""

import io
import logging
import re
import textwrap
from dataclasses import dataclass, field
from typing import List

import matplotlib
matplotlib.use("Agg")
import matplotlib.pyplot as plt
import matplotlib.ticker as mticker
import numpy as np
import requests

from bizdoc_errors import ChartRenderError

logger = logging.getLogger(__name__)

# ── Shared style ──────────────────────────────────────────────────────────────
BRAND_GREEN     = "#2d5f3f"
BRAND_LIGHT     = "#3a7d52"
BRAND_PALE      = "#eef7f1"
ACCENT_BLUE     = "#3a6ea8"
GRID_COLOR      = "#d4e6da"
TEXT_DARK       = "#1a1a1a"
TEXT_MID        = "#4a4a4a"

PNG_SIGNATURE = b"\x89PNG\r\n\x1a\n"

_PERCENT_LABEL_RE = re.compile(
    r"\b(margin|rate|ratio|yield|percent(age)?|pct|share)s?\b", re.IGNORECASE
)
_CURRENCY_RE = re.compile(
    r"[$€£¥]|\b(usd|eur|gbp|jpy|cad|aud|chf|dollars?|euros?|currency)\b", re.IGNORECASE
)

AXIS_LABELS = {"%": "Percent", "currency": "Amount", "count": "Value"}


@dataclass
class ChartSpec:
    title: str
    kind: str                          # "bar" | "line"
    labels: List[str] = field(default_factory=list)
    series: List[float] = field(default_factory=list)
    axis_unit: str = "count"           # "%" | "currency" | "count"


@dataclass
class RenderedChart:
    title: str
    image: bytes
    spec: ChartSpec


# ── Derivation ───────────────────────────────────────────────────────────────

def infer_axis_unit(units, labels) -> str:
    """Percent wins if any unit has "%" or any label reads like a margin/rate."""
    units = [u or "" for u in units]
    if any("%" in u for u in units) or any(_PERCENT_LABEL_RE.search(l or "") for l in labels):
        return "%"
    if any(_CURRENCY_RE.search(u) for u in units):
        return "currency"
    return "count"


def format_axis_value(value: float, axis_unit: str) -> str:
    if axis_unit == "%":
        return f"{value * 100:.0f}%"
    if axis_unit == "currency":
        return f"${value:,.0f}"
    return f"{value:,.0f}"


def derive_chart_specs(analysis: dict) -> List[ChartSpec]:
    specs = []

    metrics = [m for m in analysis.get("keyMetrics") or []
               if isinstance(m, dict) and isinstance(m.get("value"), (int, float))]
    if metrics:
        labels = [m.get("label") or f"Metric {i}" for i, m in enumerate(metrics, 1)]
        specs.append(ChartSpec(
            title="Key Metrics",
            kind="bar",
            labels=labels,
            series=[float(m["value"]) for m in metrics],
            axis_unit=infer_axis_unit([m.get("unit") for m in metrics], labels),
        ))

    kpis = (analysis.get("trends") or {}).get("kpis") or []
    first = kpis[0] if kpis and isinstance(kpis[0], dict) else None
    points = [p for p in (first or {}).get("points") or []
              if isinstance(p, dict) and isinstance(p.get("y"), (int, float))]
    if points:
        name = first.get("name") or "Trend"
        specs.append(ChartSpec(
            title=f"{name} Trend",
            kind="line",
            labels=[str(p.get("x", "")) for p in points],
            series=[float(p["y"]) for p in points],
            axis_unit=infer_axis_unit([], [name]),
        ))

    return specs


# ── matplotlib rasterizer ────────────────────────────────────────────────────

def _add_ai_watermark(fig):
    """Add a subtle 'AI Estimates' watermark to a figure."""
    fig.text(
        0.99, 0.01,
        "AI-extracted figures · Verify before use",
        ha="right", va="bottom", fontsize=7, color="#aaaaaa",
        style="italic", transform=fig.transFigure,
    )


def _apply_base_style(ax, title, xlabel, ylabel):
    """Apply consistent report styling to a matplotlib axes."""
    ax.set_facecolor(BRAND_PALE)
    ax.set_title(title, fontsize=13, fontweight="bold", color=TEXT_DARK, pad=12)
    ax.set_xlabel(xlabel, fontsize=10, color=TEXT_MID)
    ax.set_ylabel(ylabel, fontsize=10, color=TEXT_MID)
    ax.tick_params(colors=TEXT_MID, labelsize=9)
    ax.spines["top"].set_visible(False)
    ax.spines["right"].set_visible(False)
    ax.spines["left"].set_color(GRID_COLOR)
    ax.spines["bottom"].set_color(GRID_COLOR)
    ax.yaxis.grid(True, color=GRID_COLOR, linewidth=0.8, linestyle="--")
    ax.set_axisbelow(True)


class MatplotlibRasterizer:
    """Draws chart specs locally and returns PNG bytes."""

    name = "matplotlib"

    def __init__(self, dpi: int = 150):
        self.dpi = dpi

    def render(self, spec: ChartSpec) -> bytes:
        fig, ax = plt.subplots(figsize=(9, 5))
        try:
            fig.patch.set_facecolor("white")
            _apply_base_style(ax, spec.title, "", AXIS_LABELS.get(spec.axis_unit, "Value"))

            x = np.arange(len(spec.series))
            crowded = len(spec.labels) > 6
            tick_labels = [textwrap.fill(l, 14 if not crowded else 18) for l in spec.labels]

            if spec.kind == "bar":
                ax.bar(x, spec.series, width=0.6, color=BRAND_GREEN, edgecolor=BRAND_LIGHT)
            elif spec.kind == "line":
                ax.plot(x, spec.series, color=ACCENT_BLUE, linewidth=2.5,
                        marker="o", markersize=6)
            else:
                raise ValueError(f"unknown chart kind {spec.kind!r}")

            ax.set_xticks(x)
            ax.set_xticklabels(tick_labels, rotation=45 if crowded else 0,
                               ha="right" if crowded else "center",
                               fontsize=7 if crowded else 9)
            ax.yaxis.set_major_formatter(mticker.FuncFormatter(
                lambda v, _: format_axis_value(v, spec.axis_unit)
            ))

            _add_ai_watermark(fig)
            fig.tight_layout()
            buf = io.BytesIO()
            fig.savefig(buf, format="png", dpi=self.dpi, bbox_inches="tight",
                        facecolor="white", edgecolor="none")
            return buf.getvalue()
        except Exception as exc:
            raise ChartRenderError(f"Could not draw chart '{spec.title}': {exc}") from exc
        finally:
            plt.close(fig)


# ── Remote rasterizer ────────────────────────────────────────────────────────

def to_chartjs(spec: ChartSpec) -> dict:
    """Chart.js config for a spec. Percent series are sent pre-multiplied by 100."""
    scale = 100.0 if spec.axis_unit == "%" else 1.0
    axis_title = AXIS_LABELS.get(spec.axis_unit, "Value")
    if spec.axis_unit == "%":
        axis_title += " (%)"
    return {
        "type": spec.kind,
        "data": {
            "labels": list(spec.labels),
            "datasets": [{
                "label": spec.title,
                "data": [round(v * scale, 4) for v in spec.series],
                "backgroundColor": BRAND_GREEN if spec.kind == "bar" else ACCENT_BLUE,
                "borderColor": BRAND_LIGHT if spec.kind == "bar" else ACCENT_BLUE,
                "fill": False,
            }],
        },
        "options": {
            "plugins": {
                "title": {"display": True, "text": spec.title},
                "legend": {"display": False},
            },
            "scales": {"y": {"title": {"display": True, "text": axis_title}}},
        },
    }


class HttpChartRasterizer:
    """POSTs a Chart.js config to a rendering endpoint and expects PNG back."""

    name = "chart-endpoint"

    def __init__(self, endpoint: str, timeout: float = 30.0, width: int = 900,
                 height: int = 500, session=None):
        self.endpoint = endpoint
        self.timeout = timeout
        self.width = width
        self.height = height
        self._http = session or requests

    def render(self, spec: ChartSpec) -> bytes:
        payload = {
            "chart": to_chartjs(spec),
            "format": "png",
            "width": self.width,
            "height": self.height,
            "backgroundColor": "white",
        }
        try:
            resp = self._http.post(self.endpoint, json=payload, timeout=self.timeout)
        except requests.RequestException as exc:
            raise ChartRenderError(f"Chart endpoint unreachable: {exc}") from exc
        if not resp.ok:
            raise ChartRenderError(f"Chart endpoint returned HTTP {resp.status_code}")
        if not resp.content.startswith(PNG_SIGNATURE):
            raise ChartRenderError("Chart endpoint did not return a PNG image")
        return resp.content


# ── Public API ───────────────────────────────────────────────────────────────

def build_charts(analysis: dict, rasterizer) -> List[RenderedChart]:
    """Derive chart specs and rasterize each, in order. Any failure aborts."""
    charts = []
    for spec in derive_chart_specs(analysis):
        try:
            image = rasterizer.render(spec)
        except ChartRenderError:
            raise
        except Exception as exc:
            raise ChartRenderError(f"Could not rasterize '{spec.title}': {exc}") from exc
        if not image:
            raise ChartRenderError(f"Rasterizer returned no image for '{spec.title}'")
        charts.append(RenderedChart(title=spec.title, image=image, spec=spec))
    logger.info("Rendered %d chart(s) with %s", len(charts), getattr(rasterizer, "name", "rasterizer"))
    return charts
