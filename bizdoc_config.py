"""
bizdoc_config.py
================
Explicit configuration for the report pipeline.

Credentials are read once (environment or a local .env file) into a
``PipelineConfig`` that is handed to the pipeline at construction time.
No stage looks at the environment on its own.
"""

import os
from dataclasses import dataclass, field
from typing import Any, Callable, List, Optional

from dotenv import load_dotenv

from bizdoc_errors import MissingConfiguration

load_dotenv()

# ── Constants ────────────────────────────────────────────────────────────────

DEFAULT_MODEL = "claude-sonnet-4-5"
RESEARCH_MODES = ("search", "web", "off")

# The extraction prompt never carries more than this many characters.
MIN_INPUT_CHARS = 40_000
MAX_INPUT_CHARS = 50_000


def _env(name: str, default: Any = None, cast: Optional[Callable] = None,
         aliases: Optional[list] = None):
    """Read an env var (first match among name + aliases), optionally cast."""
    for key in (name, *(aliases or [])):
        val = os.getenv(key)
        if val is not None and val != "":
            if cast is None:
                return val
            try:
                return cast(val)
            except (TypeError, ValueError) as exc:
                raise ValueError(f"Invalid value for {key}: {exc}") from exc
    return default


def _flag(val: str) -> bool:
    return str(val).strip().lower() in ("1", "true", "yes", "on")


@dataclass
class PipelineConfig:
    """Recognized options for one pipeline instance.

    Only ``llm_key`` is required. Every other collaborator degrades:
    no ``ocr_key`` → local pypdf text extraction, no ``search_key`` →
    enrichment and search research are skipped, no ``chart_endpoint`` →
    charts are drawn locally with matplotlib.
    """

    ocr_key: Optional[str] = None
    llm_key: Optional[str] = None
    search_key: Optional[str] = None
    chart_endpoint: Optional[str] = None

    llm_model: str = DEFAULT_MODEL
    llm_max_tokens: int = 8000
    llm_temperature: float = 0.2
    max_input_chars: int = 45_000
    two_pass: bool = True
    research_mode: str = "search"

    search_max_results: int = 6
    enrichment_query_chars: int = 200
    confidence_floor: float = 0.05
    default_language: str = "eng"
    max_upload_bytes: int = 5 * 1024 * 1024

    ocr_timeout: float = 90.0
    llm_timeout: float = 120.0
    search_timeout: float = 20.0
    chart_timeout: float = 30.0

    allowed_origins: List[str] = field(default_factory=lambda: ["*"])
    debug: bool = False

    @classmethod
    def from_env(cls, **overrides) -> "PipelineConfig":
        """Build a config from the environment; keyword overrides win."""
        origins = _env("ALLOWED_ORIGINS", default="*")
        values = dict(
            ocr_key=_env("OCR_SPACE_API_KEY", aliases=["OCR_SPACE_KEY", "OCRSPACE_API_KEY"]),
            llm_key=_env("ANTHROPIC_API_KEY"),
            search_key=_env("SERPAPI_KEY"),
            chart_endpoint=_env("BIZDOC_CHART_ENDPOINT"),
            llm_model=_env("BIZDOC_LLM_MODEL", default=DEFAULT_MODEL),
            llm_max_tokens=_env("BIZDOC_LLM_MAX_TOKENS", default=8000, cast=int),
            max_input_chars=_env("BIZDOC_MAX_INPUT_CHARS", default=45_000, cast=int),
            two_pass=_env("BIZDOC_TWO_PASS", default=True, cast=_flag),
            research_mode=_env("BIZDOC_RESEARCH", default="search").lower(),
            confidence_floor=_env("BIZDOC_CONFIDENCE_FLOOR", default=0.05, cast=float),
            ocr_timeout=_env("BIZDOC_OCR_TIMEOUT", default=90.0, cast=float),
            llm_timeout=_env("BIZDOC_LLM_TIMEOUT", default=120.0, cast=float),
            search_timeout=_env("BIZDOC_SEARCH_TIMEOUT", default=20.0, cast=float),
            chart_timeout=_env("BIZDOC_CHART_TIMEOUT", default=30.0, cast=float),
            allowed_origins=[o.strip() for o in origins.split(",") if o.strip()],
            debug=_env("BIZDOC_DEBUG", default=False, cast=_flag),
        )
        values.update(overrides)
        return cls(**values)

    def validate(self, require_llm: bool = True):
        """Fail fast on a missing credential or an out-of-range option."""
        if require_llm and not self.llm_key:
            raise MissingConfiguration(
                "ANTHROPIC_API_KEY not set — the analysis service is not configured",
                option="llm_key",
            )
        if not MIN_INPUT_CHARS <= self.max_input_chars <= MAX_INPUT_CHARS:
            raise ValueError(
                f"max_input_chars must be between {MIN_INPUT_CHARS:,} and {MAX_INPUT_CHARS:,}"
            )
        if not 0.0 < self.confidence_floor < 1.0:
            raise ValueError("confidence_floor must be strictly between 0 and 1")
        if self.research_mode not in RESEARCH_MODES:
            raise ValueError(f"research_mode must be one of {', '.join(RESEARCH_MODES)}")
        return self

    def describe(self) -> dict:
        """Which collaborators are configured. Safe to expose; never includes the keys."""
        return {
            "llm": bool(self.llm_key),
            "llm_model": self.llm_model,
            "ocr": "ocr.space" if self.ocr_key else "pypdf",
            "search": bool(self.search_key),
            "charts": "endpoint" if self.chart_endpoint else "matplotlib",
            "two_pass": self.two_pass,
            "research": self.research_mode,
        }
