"""Shared fixtures and in-memory collaborators for BizDoc tests."""
import base64
import copy

import pytest

from bizdoc_config import PipelineConfig

# 1×1 transparent PNG
TINY_PNG = base64.b64decode(
    "iVBORw0KGgoAAAANSUhEUgAAAAEAAAABCAYAAAAfFcSJAAAADUlEQVR42mNkYPhfDwAChwGA60e6kgAAAABJRU5ErkJggg=="
)


class FakeOcr:
    name = "fake-ocr"

    def __init__(self, text="Extracted document text"):
        self.text = text
        self.calls = []

    def extract_text(self, source, language="eng"):
        self.calls.append((source, language))
        return self.text


class FakeLlm:
    """Returns the queued responses in order; the last one repeats."""

    model = "fake-model"

    def __init__(self, *responses):
        self.responses = list(responses) or [{}]
        self.prompts = []

    def structured_complete(self, prompt, system=None):
        self.prompts.append(prompt)
        idx = min(len(self.prompts) - 1, len(self.responses) - 1)
        return copy.deepcopy(self.responses[idx])


class FakeSearch:
    name = "fake-search"

    def __init__(self, results=None, error=None):
        self.results = results or []
        self.error = error
        self.queries = []

    def search(self, query, max_results=6):
        self.queries.append((query, max_results))
        if self.error is not None:
            raise self.error
        return list(self.results)[:max_results]


class FakeRasterizer:
    name = "fake-rasterizer"

    def __init__(self, image=TINY_PNG):
        self.image = image
        self.specs = []

    def render(self, spec):
        self.specs.append(spec)
        return self.image


@pytest.fixture
def tiny_png():
    return TINY_PNG


@pytest.fixture
def config():
    """Config with no credentials; tests inject their own collaborators."""
    return PipelineConfig(research_mode="search", two_pass=True)


@pytest.fixture
def sample_analysis():
    """A complete model response in the canonical shape."""
    return {
        "title": "Acme Corp Q1 Results",
        "executiveSummary": "Revenue grew to $10M in Q1 [1], driven by enterprise demand.",
        "keyMetrics": [
            {"label": "Revenue", "value": 10_000_000, "unit": "USD", "note": "Q1"},
            {"label": "Gross profit", "value": 4_000_000, "unit": "USD", "note": ""},
            {"label": "Net income", "value": 1_000_000, "unit": "USD", "note": ""},
            {"label": "Revenue growth", "value": 0.15, "unit": "%", "note": "YoY"},
        ],
        "riskScores": {
            "financialStability": 2,
            "liquidity": 3,
            "concentrationRisk": 4,
            "compliance": 1,
            "growthOutlook": 2,
        },
        "opportunities": ["Expand into EU mid-market"],
        "keyFindings": ["Revenue up 15% year over year", "Cash runway of 24 months"],
        "recommendations": [{"title": "Diversify customers", "detail": "Top 3 are 60% of revenue"}],
        "entities": {"companies": ["Acme Corp"], "investors": [], "regulators": ["SEC"], "people": []},
        "trends": {
            "narrative": "Quarterly revenue rose steadily.",
            "kpis": [{"name": "Revenue", "points": [
                {"x": "Q3", "y": 7.0}, {"x": "Q4", "y": 8.5}, {"x": "Q1", "y": 10.0},
            ]}],
        },
        "sources": [{"title": "Acme 10-Q", "url": "https://example.com/acme-10q"}],
        "confidence": 0.85,
    }


@pytest.fixture
def fake_ocr():
    return FakeOcr()


@pytest.fixture
def fake_rasterizer():
    return FakeRasterizer()
