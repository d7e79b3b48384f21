"""
bizdoc_pipeline.py
==================
Orchestrates one report request end to end:

    Text Acquisition → Analysis → Enrichment (never fatal) → Charts → Renderer

Collaborators are built once from a ``PipelineConfig`` (or injected directly,
which is how the tests run it). The pipeline keeps no state between requests.
"""

import logging
import os
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional, Union

from bizdoc_clients import (
    AnthropicJsonClient,
    ClaudeWebResearch,
    OcrSpaceClient,
    PypdfTextExtractor,
    SerpSearchClient,
)
from bizdoc_config import PipelineConfig
from bizdoc_engine import acquire_text, analyze, enrich, normalize_analysis
from bizdoc_errors import InvalidInput
from bizdoc_graphs import HttpChartRasterizer, MatplotlibRasterizer, build_charts
from bizdoc_report import RENDERERS, get_renderer, sanitize_filename

logger = logging.getLogger(__name__)

OUTPUT_FORMATS = tuple(RENDERERS)


def default_ocr(config: PipelineConfig):
    """OCR.space when a key is configured, otherwise the local text-layer reader."""
    if config.ocr_key:
        return OcrSpaceClient(config.ocr_key, timeout=config.ocr_timeout)
    return PypdfTextExtractor(timeout=config.ocr_timeout)


@dataclass
class ReportRequest:
    """One caller request, in the field names the HTTP payload uses."""

    text: Optional[str] = None
    pdf_url: Optional[str] = None
    pdf_data: Optional[Union[str, bytes]] = None
    language: str = "eng"
    filename: str = ""
    fmt: str = "pdf"
    meta: dict = field(default_factory=dict)

    @classmethod
    def from_payload(cls, payload, default_language: str = "eng") -> "ReportRequest":
        if not isinstance(payload, dict):
            raise InvalidInput("Request body must be a JSON object")
        fmt = str(payload.get("format") or payload.get("type") or "pdf").strip().lower()
        if fmt not in OUTPUT_FORMATS:
            raise InvalidInput("format must be 'pdf' or 'docx'", field="format")
        meta = payload.get("meta")
        return cls(
            text=payload.get("text") if isinstance(payload.get("text"), str) else None,
            pdf_url=payload.get("pdfUrl") or payload.get("url") or None,
            pdf_data=payload.get("pdfDataUrl") or payload.get("dataUrl") or None,
            language=str(payload.get("language") or default_language),
            filename=str(payload.get("filename") or ""),
            fmt=fmt,
            meta=dict(meta) if isinstance(meta, dict) else {},
        )

    @property
    def title_hint(self) -> str:
        return os.path.splitext(os.path.basename(self.filename))[0] if self.filename else ""


@dataclass
class ReportDocument:
    content: bytes
    filename: str
    content_type: str
    analysis: dict = field(default_factory=dict)
    pages: Optional[int] = None


def default_rasterizer(config: PipelineConfig):
    """The configured chart endpoint, otherwise local matplotlib."""
    if config.chart_endpoint:
        return HttpChartRasterizer(config.chart_endpoint, timeout=config.chart_timeout)
    return MatplotlibRasterizer()


def render_document(analysis: dict, charts=(), fmt: str = "pdf", filename: str = "",
                    confidence_floor: float = None) -> ReportDocument:
    """Render an Analysis Result to PDF/DOCX bytes. Needs no credentials."""
    analysis = normalize_analysis(analysis)
    options = {} if confidence_floor is None else {"confidence_floor": confidence_floor}
    renderer = get_renderer(fmt, **options)
    content = renderer.render(analysis, charts)
    stem = sanitize_filename(os.path.splitext(filename)[0] if filename else analysis["title"])
    return ReportDocument(
        content=content,
        filename=f"{stem}.{renderer.extension}",
        content_type=renderer.content_type,
        analysis=analysis,
        pages=getattr(renderer, "page_count", None),
    )


class ReportPipeline:
    """Builds reports from text, a PDF URL or inline PDF bytes."""

    def __init__(self, config: PipelineConfig = None, ocr=None, llm=None, search=None,
                 research=None, rasterizer=None):
        self.config = config or PipelineConfig.from_env()
        # an injected LLM stands in for the credential
        self.config.validate(require_llm=llm is None)
        cfg = self.config

        if ocr is None:
            ocr = default_ocr(cfg)
        if llm is None:
            llm = AnthropicJsonClient(
                api_key=cfg.llm_key, model=cfg.llm_model, max_tokens=cfg.llm_max_tokens,
                temperature=cfg.llm_temperature, timeout=cfg.llm_timeout,
            )
        if search is None and cfg.search_key:
            search = SerpSearchClient(cfg.search_key, timeout=cfg.search_timeout)
        if research is None:
            if cfg.research_mode == "search":
                research = search
            elif cfg.research_mode == "web" and cfg.llm_key:
                research = ClaudeWebResearch(api_key=cfg.llm_key, model=cfg.llm_model,
                                             timeout=cfg.llm_timeout)
        if rasterizer is None:
            rasterizer = default_rasterizer(cfg)

        self.ocr = ocr
        self.llm = llm
        self.search = search
        self.research = research
        self.rasterizer = rasterizer
        logger.info("Pipeline ready: %s", cfg.describe())

    # ── Stages ───────────────────────────────────────────────────────────

    def acquire_text(self, request: ReportRequest) -> str:
        return acquire_text(
            self.ocr, text=request.text, pdf_url=request.pdf_url,
            pdf_data=request.pdf_data,
            language=request.language or self.config.default_language,
        )

    def analyze(self, text: str, title_hint: str = "", meta: dict = None) -> dict:
        result = analyze(
            self.llm, text, title_hint=title_hint, research=self.research,
            two_pass=self.config.two_pass, max_chars=self.config.max_input_chars,
            max_results=self.config.search_max_results, meta=meta,
        )
        result["generatedAt"] = datetime.now(timezone.utc).isoformat(timespec="seconds")
        result["model"] = getattr(self.llm, "model", None) or self.config.llm_model
        return result

    def enrich(self, analysis: dict, query_text: str = None) -> dict:
        if query_text is None:
            query_text = f"{analysis.get('title', '')} {analysis.get('executiveSummary', '')}"
        return enrich(
            analysis, query_text, search=self.search,
            max_results=self.config.search_max_results,
            query_chars=self.config.enrichment_query_chars,
        )

    def build_charts(self, analysis: dict) -> list:
        return build_charts(analysis, self.rasterizer)

    def render(self, analysis: dict, charts=(), fmt: str = "pdf",
               filename: str = "") -> ReportDocument:
        return render_document(analysis, charts, fmt=fmt, filename=filename,
                               confidence_floor=self.config.confidence_floor)

    # ── Composite operations ─────────────────────────────────────────────

    def summarize(self, request: ReportRequest) -> dict:
        """Acquire, analyze and enrich; the Analysis Result without a document."""
        logger.info("Step 1/3: acquiring text")
        text = self.acquire_text(request)
        logger.info("Acquired %s characters", f"{len(text):,}")

        meta = dict(request.meta)
        if request.filename:
            meta.setdefault("filename", request.filename)
        if request.pdf_url and not (request.text or "").strip():
            meta.setdefault("source", request.pdf_url)

        logger.info("Step 2/3: analyzing (%s)", "two-pass" if self.config.two_pass else "single pass")
        analysis = self.analyze(text, title_hint=request.title_hint, meta=meta)

        logger.info("Step 3/3: enriching sources")
        return self.enrich(analysis)

    def run(self, request: ReportRequest) -> ReportDocument:
        """Full pipeline. Raises a BizDocError; never returns empty bytes."""
        analysis = self.summarize(request)
        charts = self.build_charts(analysis)
        document = self.render(analysis, charts, fmt=request.fmt, filename=request.filename)
        logger.info("Report ready: %s (%s bytes)", document.filename, f"{len(document.content):,}")
        return document
