"""
bizdoc_engine.py
================
Analysis engine for the BizDoc report pipeline.

Handles:
  - Text acquisition (literal text first, otherwise OCR of a URL or inline PDF)
  - Two-pass structured analysis (draft → research-backed fact check)
  - Normalization of whatever the model returned into the canonical
    Analysis Result shape the charts and renderer rely on
  - Optional enrichment of ``sources`` from a search collaborator

Collaborators are passed in; nothing here reads the environment.
"""

import base64
import binascii
import json
import logging
import math
import re

from bizdoc_errors import EmptyExtraction, InvalidInput, MissingInput

logger = logging.getLogger(__name__)

# ── Constants ────────────────────────────────────────────────────────────────

RISK_DIMENSIONS = (
    "financialStability",
    "liquidity",
    "concentrationRisk",
    "compliance",
    "growthOutlook",
)
ENTITY_KINDS = ("companies", "investors", "regulators", "people")

DEFAULT_TITLE = "BizDoc Analysis"
DEFAULT_MAX_CHARS = 45_000

_URL_RE = re.compile(r"^https?://\S+$", re.IGNORECASE)
_DATA_URI_RE = re.compile(r"^data:[^,]*;base64,", re.IGNORECASE)
_NUMBER_RE = re.compile(r"^[-+]?(\d+\.?\d*|\.\d+)(e[-+]?\d+)?$", re.IGNORECASE)
_SCALE = {"k": 1e3, "m": 1e6, "mm": 1e6, "b": 1e9, "bn": 1e9, "t": 1e12}


# ═══════════════════════════════════════════════════════════════════════════════
#  TEXT ACQUISITION
# ═══════════════════════════════════════════════════════════════════════════════

def decode_inline_pdf(payload) -> bytes:
    """Decode a ``data:...;base64,`` URI (or bare base64) into raw bytes."""
    if isinstance(payload, (bytes, bytearray)):
        data = bytes(payload)
    else:
        body = _DATA_URI_RE.sub("", str(payload).strip(), count=1)
        body = re.sub(r"\s+", "", body)
        try:
            data = base64.b64decode(body, validate=True)
        except (binascii.Error, ValueError) as exc:
            raise InvalidInput("Inline PDF is not valid base64") from exc
    if not data:
        raise InvalidInput("Inline PDF payload is empty")
    return data


def acquire_text(ocr, text=None, pdf_url=None, pdf_data=None, language: str = "eng") -> str:
    """
    Produce plain text from exactly one input mode.

    Literal text always wins and is returned verbatim; the OCR collaborator
    is never called when it is present. Otherwise a http(s) URL, then inline
    PDF bytes, are handed to ``ocr.extract_text`` once (no retry).
    """
    if isinstance(text, str) and text.strip():
        return text

    if isinstance(pdf_url, str) and pdf_url.strip():
        url = pdf_url.strip()
        if not _URL_RE.match(url):
            raise InvalidInput("Invalid URL (http/https required)", field="pdfUrl")
        logger.info("Extracting text from URL via %s", getattr(ocr, "name", "ocr"))
        extracted = ocr.extract_text(url, language=language or "eng")
    elif pdf_data:
        data = decode_inline_pdf(pdf_data)
        logger.info("Extracting text from %s inline bytes via %s",
                    f"{len(data):,}", getattr(ocr, "name", "ocr"))
        extracted = ocr.extract_text(data, language=language or "eng")
    else:
        raise MissingInput("No input provided: send 'text', 'pdfUrl' or 'pdfDataUrl'.")

    if not isinstance(extracted, str) or not extracted.strip():
        raise EmptyExtraction("OCR returned no text")
    return extracted


# ═══════════════════════════════════════════════════════════════════════════════
#  NORMALIZATION
# ═══════════════════════════════════════════════════════════════════════════════

def _str(value) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value.strip()
    if isinstance(value, (dict, list)):
        return json.dumps(value, ensure_ascii=False)
    return str(value)


def _num(value):
    """Best-effort number: 1.5, "1,200", "$10M", "15%" (→ 0.15). None if hopeless."""
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, (int, float)):
        return float(value) if math.isfinite(value) else None
    if not isinstance(value, str):
        return None

    s = value.strip().lower().replace(",", "").replace(" ", "")
    s = re.sub(r"^[$€£¥]|usd$|eur$", "", s)
    percent = s.endswith("%")
    if percent:
        s = s[:-1]
    factor = 1.0
    m = re.match(r"^(.*\d)(k|mm|m|bn|b|t)$", s)
    if m:
        s, factor = m.group(1), _SCALE[m.group(2)]
    if not _NUMBER_RE.match(s):
        return None
    num = float(s) * factor
    return num / 100.0 if percent else num


def _str_list(value) -> list:
    if isinstance(value, str):
        value = [value] if value.strip() else []
    if not isinstance(value, list):
        return []
    out = []
    for item in value:
        if isinstance(item, dict):
            label = _str(item.get("label") or item.get("title") or item.get("name"))
            detail = _str(item.get("detail") or item.get("description") or item.get("text"))
            item = f"{label}: {detail}" if label and detail else (label or detail)
        else:
            item = _str(item)
        if item:
            out.append(item)
    return out


def _metrics(value) -> list:
    out = []
    for item in value if isinstance(value, list) else []:
        if not isinstance(item, dict):
            continue
        label = _str(item.get("label") or item.get("name") or item.get("metric"))
        unit = _str(item.get("unit"))
        raw = item.get("value")
        num = _num(raw)
        if isinstance(raw, str) and raw.strip().endswith("%") and not unit:
            unit = "%"
        if not label and num is None:
            continue
        out.append({"label": label, "value": num, "unit": unit, "note": _str(item.get("note"))})
    return out


def _risk_scores(value) -> dict:
    value = value if isinstance(value, dict) else {}
    out = {}
    for key in RISK_DIMENSIONS:
        snake = re.sub(r"([A-Z])", r"_\1", key).lower()
        num = _num(value.get(key, value.get(snake)))
        out[key] = int(round(num)) if num is not None else None
    return out


def _recommendations(value) -> list:
    out = []
    for item in value if isinstance(value, list) else []:
        if isinstance(item, dict):
            rec = {"title": _str(item.get("title") or item.get("label")),
                   "detail": _str(item.get("detail") or item.get("description"))}
        else:
            rec = {"title": _str(item), "detail": ""}
        if rec["title"] or rec["detail"]:
            out.append(rec)
    return out


def _trends(value) -> dict:
    if isinstance(value, str):
        return {"narrative": value.strip(), "kpis": []}
    value = value if isinstance(value, dict) else {}
    series_list = value.get("kpis")
    kpis = []
    for series in series_list if isinstance(series_list, list) else []:
        if not isinstance(series, dict):
            continue
        raw_points = series.get("points")
        points = []
        for p in raw_points if isinstance(raw_points, list) else []:
            if not isinstance(p, dict):
                continue
            y = _num(p.get("y"))
            if y is not None:
                points.append({"x": _str(p.get("x")), "y": y})   # input order kept
        kpis.append({"name": _str(series.get("name")), "points": points})
    return {"narrative": _str(value.get("narrative")), "kpis": kpis}


def merge_sources(sources: list, incoming) -> int:
    """
    Append ``incoming`` results to ``sources`` in place, deduplicated by url.

    Existing entries keep their positions; new ones are appended in the
    order received; the first occurrence of a url wins. Returns the number
    of entries added.
    """
    seen = {s.get("url") for s in sources if isinstance(s, dict) and s.get("url")}
    added = 0
    for item in incoming or []:
        if isinstance(item, str):
            item = {"url": item}
        if not isinstance(item, dict):
            continue
        url = _str(item.get("url") or item.get("link"))
        if not url or url in seen:
            continue
        sources.append({"title": _str(item.get("title")) or url, "url": url})
        seen.add(url)
        added += 1
    return added


def normalize_analysis(raw, title_hint: str = "", meta: dict = None) -> dict:
    """
    Coerce a model response into the canonical Analysis Result.

    Missing fields get empty defaults ([] / {} / ""), never an error. Also
    accepts the older snake_case field names. Idempotent: normalizing an
    already-normalized result returns an equal dict.
    """
    raw = raw if isinstance(raw, dict) else {}

    def pick(*keys):
        for k in keys:
            if raw.get(k) not in (None, "", [], {}):
                return raw[k]
        return None

    findings = _str_list(pick("keyFindings", "key_findings"))
    findings += [f"Risk flag: {r}" for r in _str_list(raw.get("risk_flags"))]

    recommendations = _recommendations(pick("recommendations"))
    recommendations += _recommendations(_str_list(raw.get("suggestions")))

    entities_raw = pick("entities") or {}
    entities_raw = entities_raw if isinstance(entities_raw, dict) else {}

    sources = []
    merge_sources(sources, pick("sources") if isinstance(pick("sources"), list) else [])

    confidence = _num(raw.get("confidence"))
    if confidence is not None and 1.0 < confidence <= 100.0:
        confidence /= 100.0
    confidence = min(max(confidence or 0.0, 0.0), 1.0)

    merged_meta = dict(raw.get("meta") or {}) if isinstance(raw.get("meta"), dict) else {}
    merged_meta.update(meta or {})
    if raw.get("source_filename") and "filename" not in merged_meta:
        merged_meta["filename"] = _str(raw["source_filename"])

    result = {
        "title": _str(pick("title")) or _str(title_hint) or DEFAULT_TITLE,
        "executiveSummary": _str(pick("executiveSummary", "executive_summary")),
        "keyMetrics": _metrics(pick("keyMetrics", "key_metrics", "kpis")),
        "riskScores": _risk_scores(pick("riskScores", "risk_scores")),
        "opportunities": _str_list(pick("opportunities")),
        "keyFindings": findings,
        "recommendations": recommendations,
        "entities": {k: _str_list(entities_raw.get(k)) for k in ENTITY_KINDS},
        "dates": _str_list(pick("dates")),
        "amounts": _str_list(pick("amounts")),
        "trends": _trends(pick("trends")),
        "sources": sources,
        "confidence": confidence,
        "meta": merged_meta,
        "input": dict(raw["input"]) if isinstance(raw.get("input"), dict) else {},
    }
    for key in ("generatedAt", "model"):
        if raw.get(key):
            result[key] = _str(raw[key])
    return result


# ═══════════════════════════════════════════════════════════════════════════════
#  ANALYSIS
# ═══════════════════════════════════════════════════════════════════════════════

_SCHEMA = """{{
  "title": "short document title",
  "executiveSummary": "120-180 words, English, rigorous, concise",
  "keyMetrics": [{{"label": "Revenue", "value": 10000000, "unit": "USD", "note": "Q1"}}],
  "riskScores": {{"financialStability": 1-5, "liquidity": 1-5, "concentrationRisk": 1-5,
                  "compliance": 1-5, "growthOutlook": 1-5}},
  "keyFindings": ["short finding", "..."],
  "opportunities": ["3 short bullet strings"],
  "recommendations": [{{"title": "...", "detail": "..."}}],
  "entities": {{"companies": [], "investors": [], "regulators": [], "people": []}},
  "dates": ["dates found in the text"],
  "amounts": ["amounts found in the text (USD where applicable)"],
  "trends": {{"narrative": "...", "kpis": [{{"name": "Revenue", "points": [{{"x": "Q1", "y": 1.0}}]}}]}},
  "confidence": 0.0-1.0
}}"""

_DRAFT_PROMPT = """You are a senior financial/business analyst. Produce a first-draft
structured analysis of the document below. Return a STRICT JSON object:

""" + _SCHEMA + """

Rules:
- Percentages go in "value" as fractions (15% → 0.15) with "unit": "%".
- Money goes in "value" as a plain number with the currency code in "unit".
- Keep trend points in the order they appear in the document.
- Use only facts present in the text; leave arrays empty rather than guessing.

Document title hint: {title}

Analyze this text:
---
{text}
---"""

_FACT_CHECK_PROMPT = """You are the fact-checking editor for a business analysis.
Below are (1) the source document, (2) a first-draft analysis in JSON and
(3) numbered research results from an independent web search.

Verify every claim in the draft against the document and the research.
Correct anything unsupported, tighten the executive summary to 120-180 words
and add inline citation markers like [1] that refer to the research results
you relied on. Then emit the FINAL analysis as a STRICT JSON object with the
same fields as the draft plus:
  "sources": [{{"title": "...", "url": "..."}}]  — in the same order as your [n] markers
and final values for "riskScores" (integers 1-5) and "confidence" (0.0-1.0).

Document:
---
{text}
---

Draft analysis:
{draft}

Research results:
{research}
"""


def _format_research(results: list) -> str:
    if not results:
        return "(no research results available — cite nothing)"
    lines = []
    for i, r in enumerate(results, 1):
        snippet = f" — {r['snippet']}" if r.get("snippet") else ""
        lines.append(f"[{i}] {r.get('title', '')} <{r.get('url', '')}>{snippet}")
    return "\n".join(lines)


def gather_research(research, query: str, max_results: int = 6) -> list:
    """Optional research step for the fact-check pass. Failure → no notes."""
    if research is None or not query.strip():
        return []
    try:
        results = research.search(query, max_results)
    except Exception as exc:  # research is advisory; the fact check runs without it
        logger.warning("Research step failed (%s); fact check continues without it", exc)
        return []
    return [r for r in results or [] if isinstance(r, dict) and r.get("url")]


def analyze(llm, text: str, title_hint: str = "", research=None, two_pass: bool = True,
            max_chars: int = DEFAULT_MAX_CHARS, max_results: int = 6,
            meta: dict = None) -> dict:
    """
    Run the analysis stage and return a normalized Analysis Result.

    Pass 1 drafts from the (truncated) text alone. When ``two_pass`` is on,
    pass 2 receives the draft plus research results and its output replaces
    the draft entirely.
    """
    excerpt = text[:max_chars]
    if len(text) > max_chars:
        logger.info("Input truncated from %s to %s characters", f"{len(text):,}", f"{max_chars:,}")

    draft = llm.structured_complete(
        _DRAFT_PROMPT.format(title=title_hint or "(none)", text=excerpt)
    )
    logger.info("Draft analysis received (%d fields)", len(draft))
    final = draft

    if two_pass:
        query = " ".join(
            [_str(draft.get("title")) or title_hint, _str(draft.get("executiveSummary"))[:200]]
        ).strip()
        notes = gather_research(research, query, max_results)
        final = llm.structured_complete(
            _FACT_CHECK_PROMPT.format(
                text=excerpt,
                draft=json.dumps(draft, ensure_ascii=False, indent=2),
                research=_format_research(notes),
            )
        )
        logger.info("Fact-checked analysis received (%d research notes)", len(notes))

    return normalize_analysis(final, title_hint=title_hint, meta=meta)


# ═══════════════════════════════════════════════════════════════════════════════
#  ENRICHMENT
# ═══════════════════════════════════════════════════════════════════════════════

def enrich(analysis: dict, query_text: str, search=None, max_results: int = 6,
           query_chars: int = 200) -> dict:
    """
    Append search results to ``analysis["sources"]`` (url-deduplicated).

    No-op when no search collaborator is configured. Any failure is logged
    and swallowed; ``sources`` is then left exactly as it was.
    """
    if search is None:
        logger.debug("Enrichment skipped: no search collaborator configured")
        return analysis

    query = " ".join((query_text or "").split())[:query_chars]
    if not query:
        return analysis

    sources = analysis.get("sources")
    if not isinstance(sources, list):
        sources = analysis["sources"] = []
    try:
        results = search.search(query, max_results)
        merged = list(sources)
        added = merge_sources(merged, results)
    except Exception as exc:  # enrichment must never cost the user their report
        logger.warning("Enrichment failed (%s); continuing with %d existing source(s)",
                       exc, len(sources))
        return analysis

    sources[:] = merged
    logger.info("Enrichment added %d source(s)", added)
    return analysis
