"""Tests for text acquisition, normalization, analysis and enrichment."""
import base64
from unittest.mock import Mock

import pytest
import requests

from bizdoc_engine import (
    DEFAULT_TITLE,
    RISK_DIMENSIONS,
    acquire_text,
    analyze,
    decode_inline_pdf,
    enrich,
    gather_research,
    merge_sources,
    normalize_analysis,
)
from bizdoc_errors import EmptyExtraction, InvalidInput, MissingInput
from conftest import FakeLlm, FakeOcr, FakeSearch


class TestAcquireText:
    """Test the text-first acquisition contract."""

    def test_literal_text_bypasses_ocr(self):
        """Test that literal text is returned verbatim without calling OCR."""
        ocr = Mock()
        text = "  Revenue grew to $10M in Q1.  "
        assert acquire_text(ocr, text=text, pdf_url="https://example.com/a.pdf") == text
        ocr.extract_text.assert_not_called()

    def test_blank_text_falls_through_to_url(self):
        """Test that whitespace-only text is treated as absent."""
        ocr = FakeOcr("from ocr")
        assert acquire_text(ocr, text="   ", pdf_url="https://example.com/a.pdf") == "from ocr"
        assert ocr.calls == [("https://example.com/a.pdf", "eng")]

    @pytest.mark.parametrize("url", ["ftp://example.com/a.pdf", "example.com/a.pdf", "javascript:alert(1)"])
    def test_non_http_url_rejected(self, url):
        """Test that only http(s) URLs are accepted."""
        ocr = Mock()
        with pytest.raises(InvalidInput):
            acquire_text(ocr, pdf_url=url)
        ocr.extract_text.assert_not_called()

    def test_no_input(self):
        """Test error when nothing usable was supplied."""
        with pytest.raises(MissingInput):
            acquire_text(FakeOcr(), text="", pdf_url="", pdf_data=None)

    def test_missing_input_is_invalid_input(self):
        """Test that MissingInput is reported as a 4xx input error."""
        with pytest.raises(InvalidInput):
            acquire_text(FakeOcr())

    def test_empty_ocr_result(self):
        """Test EmptyExtraction when OCR returns only whitespace."""
        with pytest.raises(EmptyExtraction):
            acquire_text(FakeOcr("  \n "), pdf_url="https://example.com/not-a-pdf")

    def test_data_uri_decoded_before_ocr(self):
        """Test that an inline data URI reaches OCR as raw bytes."""
        ocr = FakeOcr("inline text")
        payload = "data:application/pdf;base64," + base64.b64encode(b"%PDF-1.4 fake").decode()
        assert acquire_text(ocr, pdf_data=payload, language="ger") == "inline text"
        assert ocr.calls == [(b"%PDF-1.4 fake", "ger")]

    def test_language_defaults_to_eng(self):
        """Test the default OCR language hint."""
        ocr = FakeOcr("x")
        acquire_text(ocr, pdf_url="https://example.com/a.pdf", language=None)
        assert ocr.calls[0][1] == "eng"


class TestDecodeInlinePdf:
    """Test inline PDF decoding."""

    def test_bare_base64(self):
        """Test base64 without a data: prefix."""
        assert decode_inline_pdf(base64.b64encode(b"abc").decode()) == b"abc"

    def test_invalid_base64(self):
        """Test that undecodable payloads are rejected."""
        with pytest.raises(InvalidInput):
            decode_inline_pdf("data:application/pdf;base64,!!!not-base64!!!")

    def test_empty_payload(self):
        """Test that an empty payload is rejected."""
        with pytest.raises(InvalidInput):
            decode_inline_pdf("data:application/pdf;base64,")


class TestNormalizeAnalysis:
    """Test coercion into the canonical Analysis Result."""

    def test_empty_response_gets_defaults(self):
        """Test that every field is defaulted rather than erroring."""
        result = normalize_analysis({})
        assert result["title"] == DEFAULT_TITLE
        assert result["executiveSummary"] == ""
        assert result["keyMetrics"] == []
        assert result["sources"] == []
        assert result["trends"] == {"narrative": "", "kpis": []}
        assert set(result["riskScores"]) == set(RISK_DIMENSIONS)
        assert all(v is None for v in result["riskScores"].values())
        assert result["confidence"] == 0.0

    def test_non_dict_input(self):
        """Test that a non-object response still normalizes."""
        assert normalize_analysis(["not", "a", "dict"])["title"] == DEFAULT_TITLE

    def test_scalar_trend_fields(self):
        """Test that scalar kpis / points are dropped instead of failing."""
        assert normalize_analysis({"trends": {"kpis": 3}})["trends"]["kpis"] == []
        result = normalize_analysis({"trends": {"narrative": "Up", "kpis": [
            {"name": "Revenue", "points": 7},
            {"name": "Margin", "points": [{"x": "2023", "y": "12"}]},
        ]}})
        assert result["trends"]["narrative"] == "Up"
        assert result["trends"]["kpis"] == [
            {"name": "Revenue", "points": []},
            {"name": "Margin", "points": [{"x": "2023", "y": 12.0}]},
        ]

    def test_idempotent(self, sample_analysis):
        """Test that normalizing twice gives the same result."""
        once = normalize_analysis(sample_analysis, meta={"filename": "acme.pdf"})
        assert normalize_analysis(once) == once

    def test_snake_case_aliases(self):
        """Test that the older snake_case field names are accepted."""
        result = normalize_analysis({
            "executive_summary": "Summary",
            "key_metrics": [{"label": "Revenue", "value": "1,200"}],
            "risk_scores": {"financial_stability": 4, "growth_outlook": "2"},
            "key_findings": ["Finding"],
            "risk_flags": ["Going concern"],
            "suggestions": ["Raise capital"],
            "source_filename": "deck.pdf",
        })
        assert result["executiveSummary"] == "Summary"
        assert result["keyMetrics"][0]["value"] == 1200.0
        assert result["riskScores"]["financialStability"] == 4
        assert result["riskScores"]["growthOutlook"] == 2
        assert result["keyFindings"] == ["Finding", "Risk flag: Going concern"]
        assert result["recommendations"] == [{"title": "Raise capital", "detail": ""}]
        assert result["meta"]["filename"] == "deck.pdf"

    def test_metric_value_strings(self):
        """Test currency, scale and percent strings in metric values."""
        result = normalize_analysis({"keyMetrics": [
            {"label": "Revenue", "value": "$10M"},
            {"label": "Margin", "value": "15%"},
            {"label": "Headcount", "value": "n/a"},
        ]})
        revenue, margin, headcount = result["keyMetrics"]
        assert revenue["value"] == 10_000_000
        assert margin["value"] == pytest.approx(0.15)
        assert margin["unit"] == "%"
        assert headcount["value"] is None

    def test_confidence_scaling(self):
        """Test that 0–100 confidences are rescaled and clamped."""
        assert normalize_analysis({"confidence": 85})["confidence"] == pytest.approx(0.85)
        assert normalize_analysis({"confidence": -3})["confidence"] == 0.0
        assert normalize_analysis({"confidence": 500})["confidence"] == 1.0

    def test_sources_deduplicated(self):
        """Test that duplicate source urls are dropped on normalization."""
        result = normalize_analysis({"sources": [
            {"title": "A", "url": "https://a"}, {"title": "A again", "url": "https://a"},
            {"title": "no url"},
        ]})
        assert result["sources"] == [{"title": "A", "url": "https://a"}]

    def test_kpi_points_keep_order(self):
        """Test that trend points are not re-sorted."""
        result = normalize_analysis({"trends": {"kpis": [{"name": "Rev", "points": [
            {"x": "2024", "y": 3}, {"x": "2022", "y": 1}, {"x": "2023", "y": "2"},
        ]}]}})
        assert [p["x"] for p in result["trends"]["kpis"][0]["points"]] == ["2024", "2022", "2023"]


class TestMergeSources:
    """Test url-based source deduplication."""

    def test_preserve_then_append(self):
        """Test existing order is kept and new results are appended in order."""
        sources = [{"title": "A", "url": "https://a"}, {"title": "B", "url": "https://b"}]
        added = merge_sources(sources, [
            {"title": "B dup", "url": "https://b"},
            {"title": "C", "url": "https://c"},
            {"title": "C dup", "url": "https://c"},
            {"title": "D", "link": "https://d"},
        ])
        assert added == 2
        assert [s["url"] for s in sources] == ["https://a", "https://b", "https://c", "https://d"]
        assert sources[1]["title"] == "B"

    def test_no_duplicate_urls(self):
        """Test the merged sequence never holds the same url twice."""
        sources = []
        merge_sources(sources, [{"url": "https://x"}] * 5 + ["https://x", "https://y"])
        urls = [s["url"] for s in sources]
        assert len(urls) == len(set(urls)) == 2


class TestAnalyze:
    """Test the two-pass analysis stage."""

    def test_second_pass_supersedes_draft(self):
        """Test that pass 2 output replaces the draft entirely."""
        llm = FakeLlm(
            {"title": "Draft", "executiveSummary": "draft summary", "opportunities": ["draft only"]},
            {"title": "Final", "executiveSummary": "final summary [1]",
             "sources": [{"title": "S", "url": "https://s"}]},
        )
        search = FakeSearch([{"title": "S", "url": "https://s", "snippet": "x"}])
        result = analyze(llm, "Some document text", research=search, two_pass=True)
        assert result["title"] == "Final"
        assert result["opportunities"] == []
        assert len(llm.prompts) == 2
        assert "https://s" in llm.prompts[1]
        assert search.queries[0][0].startswith("Draft draft summary")

    def test_single_pass(self):
        """Test that two_pass=False makes one call and ignores research."""
        llm = FakeLlm({"title": "Only"})
        search = FakeSearch()
        assert analyze(llm, "text", research=search, two_pass=False)["title"] == "Only"
        assert len(llm.prompts) == 1
        assert search.queries == []

    def test_input_truncated(self):
        """Test that the prompt carries at most max_chars of the input."""
        llm = FakeLlm({})
        analyze(llm, "A" * 60_000 + "TAILMARKER", two_pass=False, max_chars=40_000)
        assert "TAILMARKER" not in llm.prompts[0]
        assert "A" * 40_000 in llm.prompts[0]

    def test_research_failure_is_not_fatal(self):
        """Test that a failing research collaborator leaves pass 2 without notes."""
        llm = FakeLlm({"title": "Draft"}, {"title": "Final"})
        search = FakeSearch(error=requests.ConnectionError("down"))
        assert analyze(llm, "text", research=search)["title"] == "Final"
        assert gather_research(search, "query") == []

    def test_title_hint_and_meta(self):
        """Test that the title hint fills a missing title and meta passes through."""
        result = analyze(FakeLlm({}), "text", title_hint="acme_q1", two_pass=False,
                         meta={"filename": "acme_q1.pdf"})
        assert result["title"] == "acme_q1"
        assert result["meta"] == {"filename": "acme_q1.pdf"}


class TestEnrich:
    """Test the never-fatal enrichment stage."""

    def test_no_search_is_noop(self, sample_analysis):
        """Test that enrichment without a collaborator changes nothing."""
        analysis = normalize_analysis(sample_analysis)
        before = list(analysis["sources"])
        assert enrich(analysis, "query", search=None)["sources"] == before

    def test_results_appended(self, sample_analysis):
        """Test that search results are merged into sources."""
        analysis = normalize_analysis(sample_analysis)
        search = FakeSearch([
            {"title": "Dup", "url": "https://example.com/acme-10q"},
            {"title": "News", "url": "https://news.example.com/acme"},
        ])
        enrich(analysis, "Acme Corp " * 50, search=search, query_chars=200)
        assert [s["url"] for s in analysis["sources"]] == [
            "https://example.com/acme-10q", "https://news.example.com/acme",
        ]
        assert len(search.queries[0][0]) <= 200

    def test_failure_swallowed(self, sample_analysis):
        """Test that a network error leaves sources exactly as they were."""
        analysis = normalize_analysis(sample_analysis)
        sources = analysis["sources"]
        before = [dict(s) for s in sources]
        enrich(analysis, "query", search=FakeSearch(error=requests.ConnectionError("boom")))
        assert analysis["sources"] is sources
        assert analysis["sources"] == before

    def test_malformed_results_swallowed(self, sample_analysis):
        """Test that a malformed search response does not raise."""
        analysis = normalize_analysis(sample_analysis)
        search = Mock()
        search.search.return_value = 42
        before = list(analysis["sources"])
        enrich(analysis, "query", search=search)
        assert analysis["sources"] == before
