"""
bizdoc_clients.py
=================
Adapters for the external collaborators the pipeline talks to.

  - OCR:       OcrSpaceClient (OCR.space) or PypdfTextExtractor (local text layer)
  - LLM:       AnthropicJsonClient — one strict-JSON completion per call
  - Search:    SerpSearchClient (SerpAPI organic results)
  - Research:  ClaudeWebResearch — Claude + server-side web_search tool

Every adapter makes exactly one logical request per call and never retries;
transport problems surface as the Upstream* errors from bizdoc_errors.
"""

import io
import json
import logging
import re

import requests
from anthropic import (
    Anthropic,
    APIConnectionError,
    APIStatusError,
    APITimeoutError,
    AuthenticationError,
    PermissionDeniedError,
    RateLimitError,
)
from pypdf import PdfReader
from pypdf.errors import PyPdfError

from bizdoc_config import DEFAULT_MODEL
from bizdoc_errors import (
    EmptyExtraction,
    UpstreamFormatError,
    UpstreamRefused,
    UpstreamUnavailable,
)

logger = logging.getLogger(__name__)

# ── Constants ────────────────────────────────────────────────────────────────

OCR_SPACE_URL = "https://api.ocr.space/parse/image"
SERPAPI_URL = "https://serpapi.com/search.json"

WEB_SEARCH_TOOL = {
    "type": "web_search_20250305",
    "name": "web_search",
    "max_uses": 5,
}

JSON_SYSTEM_PROMPT = (
    "You are a precise, structured business document analyst. "
    "Respond with a single well-formed JSON object and nothing else — "
    "no markdown fences, no prose before or after."
)


def _http_call(service: str, timeout: float, fn, *args, **kwargs):
    """Run one requests call, mapping transport failures to UpstreamUnavailable."""
    try:
        return fn(*args, timeout=timeout, **kwargs)
    except requests.Timeout as exc:
        raise UpstreamUnavailable(
            f"{service} did not answer within {timeout:.0f}s", service=service
        ) from exc
    except requests.RequestException as exc:
        raise UpstreamUnavailable(f"{service} unreachable: {exc}", service=service) from exc


def _json_body(resp, service: str):
    try:
        return resp.json()
    except ValueError as exc:
        raise UpstreamFormatError(
            f"{service} returned non-JSON content (status {resp.status_code})",
            service=service,
        ) from exc


# ── OCR ──────────────────────────────────────────────────────────────────────

class OcrSpaceClient:
    """OCR.space parse/image API. Accepts either a public URL or PDF bytes."""

    name = "ocr.space"

    def __init__(self, api_key: str, timeout: float = 90.0, session=None):
        self.api_key = api_key
        self.timeout = timeout
        self._http = session or requests

    def extract_text(self, source, language: str = "eng") -> str:
        form = {
            "language": (language or "eng").lower(),   # single code only
            "filetype": "PDF",
            "isOverlayRequired": "false",
            "detectOrientation": "true",
            "scale": "true",
            "OCREngine": "2",
        }
        files = None
        if isinstance(source, (bytes, bytearray)):
            files = {"file": ("upload.pdf", bytes(source), "application/pdf")}
        else:
            form["url"] = source

        resp = _http_call(
            self.name, self.timeout, self._http.post, OCR_SPACE_URL,
            headers={"apikey": self.api_key}, data=form, files=files,
        )
        if not resp.ok:
            raise UpstreamUnavailable(
                f"OCR HTTP {resp.status_code}", service=self.name, status=resp.status_code
            )
        data = _json_body(resp, self.name)
        if not isinstance(data, dict):
            raise UpstreamFormatError("OCR response is not a JSON object", service=self.name)

        if data.get("IsErroredOnProcessing"):
            msgs = []
            for key in ("ErrorMessage", "ErrorDetails"):
                val = data.get(key)
                if isinstance(val, list):
                    msgs.extend(str(v) for v in val if v)
                elif val:
                    msgs.append(str(val))
            raise UpstreamRefused(
                "; ".join(msgs) or "OCR processing error", service=self.name
            )

        parsed = data.get("ParsedResults") or []
        text = "\n".join(
            (r.get("ParsedText") or "") for r in parsed if isinstance(r, dict)
        ).strip()
        logger.info("OCR extracted %s characters from %d page(s)", f"{len(text):,}", len(parsed))
        return text


class PypdfTextExtractor:
    """Local fallback when no OCR key is configured: reads the PDF text layer.

    Scanned PDFs without a text layer yield nothing, which the acquisition
    stage reports as EmptyExtraction.
    """

    name = "pypdf"

    def __init__(self, timeout: float = 60.0, session=None):
        self.timeout = timeout
        self._http = session or requests

    def _download(self, url: str) -> bytes:
        resp = _http_call("pdf-download", self.timeout, self._http.get, url)
        if not resp.ok:
            raise UpstreamUnavailable(
                f"Download failed with HTTP {resp.status_code}",
                service="pdf-download", status=resp.status_code,
            )
        return resp.content

    def extract_text(self, source, language: str = "eng") -> str:
        data = self._download(source) if isinstance(source, str) else bytes(source)
        try:
            reader = PdfReader(io.BytesIO(data))
            text = ""
            for i, page in enumerate(reader.pages, 1):
                text += (page.extract_text() or "") + "\n\n"
                if i % 5 == 0:
                    logger.debug("Processed %d/%d pages", i, len(reader.pages))
        except (PyPdfError, ValueError) as exc:
            raise EmptyExtraction(f"No extractable text: {exc}") from exc
        text = text.strip()
        logger.info("Extracted %s characters from the PDF text layer", f"{len(text):,}")
        return text


# ── LLM ──────────────────────────────────────────────────────────────────────

def _anthropic_call(client, service: str, **kwargs):
    """One messages.create call with the SDK's errors mapped onto ours."""
    try:
        return client.messages.create(**kwargs)
    except APITimeoutError as exc:
        raise UpstreamUnavailable("Anthropic request timed out", service=service) from exc
    except APIConnectionError as exc:
        raise UpstreamUnavailable(f"Anthropic unreachable: {exc}", service=service) from exc
    except (AuthenticationError, PermissionDeniedError) as exc:
        raise UpstreamRefused(
            "Anthropic rejected the credential — check ANTHROPIC_API_KEY",
            service=service, status=exc.status_code,
        ) from exc
    except RateLimitError as exc:
        raise UpstreamUnavailable(
            "Anthropic rate limit reached", service=service, status=exc.status_code
        ) from exc
    except APIStatusError as exc:
        message = getattr(exc, "message", None) or str(exc)
        if exc.status_code >= 500:
            raise UpstreamUnavailable(
                f"Anthropic HTTP {exc.status_code}", service=service, status=exc.status_code
            ) from exc
        raise UpstreamRefused(message, service=service, status=exc.status_code) from exc


def extract_json(raw_text: str, service: str = "anthropic") -> dict:
    """
    Parse the JSON object out of a model response.

    Recovery strategy:
      1. Strip markdown fences and surrounding prose
      2. Regex extract outermost { ... }
      3. json.loads()
      4. If fails: strip control characters and retry
      5. If fails: close open braces/brackets
      6. If fails: cut at the first balanced closing brace
      7. If all fail: UpstreamFormatError
    """
    raw = (raw_text or "").strip()
    raw = re.sub(r"```[a-z]*\s*\n?", "", raw)
    raw = re.sub(r"\n?\s*```", "", raw)

    json_match = re.search(r"\{[\s\S]*\}", raw)
    if not json_match:
        raise UpstreamFormatError("No JSON object found in response", service=service,
                                  raw=raw[:200])
    fragment = json_match.group()
    cleaned = re.sub(r"[\x00-\x08\x0b\x0c\x0e-\x1f]", "", fragment)

    candidates = [fragment, cleaned]

    open_b = cleaned.count("{") - cleaned.count("}")
    open_a = cleaned.count("[") - cleaned.count("]")
    candidates.append(cleaned + ("]" * max(open_a, 0)) + ("}" * max(open_b, 0)))

    depth = 0
    for idx, ch in enumerate(cleaned):
        if ch == "{":
            depth += 1
        elif ch == "}":
            depth -= 1
            if depth == 0:
                candidates.append(cleaned[:idx + 1])
                break

    for candidate in candidates:
        try:
            parsed = json.loads(candidate)
        except (json.JSONDecodeError, ValueError):
            continue
        if isinstance(parsed, dict):
            return parsed

    raise UpstreamFormatError("JSON parse failed", service=service, raw=raw[:200])


class AnthropicJsonClient:
    """Structured completion: prompt in, one JSON object out."""

    name = "anthropic"

    def __init__(self, api_key: str = None, model: str = DEFAULT_MODEL,
                 max_tokens: int = 8000, temperature: float = 0.2,
                 timeout: float = 120.0, client=None):
        self.model = model
        self.max_tokens = max_tokens
        self.temperature = temperature
        self._client = client or Anthropic(api_key=api_key, timeout=timeout, max_retries=0)

    def structured_complete(self, prompt: str, system: str = JSON_SYSTEM_PROMPT) -> dict:
        response = _anthropic_call(
            self._client, self.name,
            model=self.model,
            max_tokens=self.max_tokens,
            temperature=self.temperature,
            system=system,
            messages=[{"role": "user", "content": prompt}],
        )
        if getattr(response, "stop_reason", None) == "refusal":
            raise UpstreamRefused("The model declined to analyze this document",
                                  service=self.name)

        raw = "".join(
            block.text for block in response.content
            if getattr(block, "type", None) == "text"
        )
        if not raw.strip():
            raise UpstreamFormatError("Empty response from model", service=self.name)
        if getattr(response, "stop_reason", None) == "max_tokens":
            logger.warning("Model output hit max_tokens; attempting JSON recovery")
        return extract_json(raw, service=self.name)


# ── Search / research ────────────────────────────────────────────────────────

class SerpSearchClient:
    """Google organic results via SerpAPI → [{title, url, snippet}, ...]."""

    name = "serpapi"

    def __init__(self, api_key: str, timeout: float = 20.0, session=None):
        self.api_key = api_key
        self.timeout = timeout
        self._http = session or requests

    def search(self, query: str, max_results: int = 6) -> list:
        params = {
            "q": query,
            "engine": "google",
            "num": str(max_results),
            "api_key": self.api_key,
        }
        resp = _http_call(self.name, self.timeout, self._http.get, SERPAPI_URL, params=params)
        if not resp.ok:
            raise UpstreamUnavailable(
                f"Search HTTP {resp.status_code}", service=self.name, status=resp.status_code
            )
        data = _json_body(resp, self.name)
        if not isinstance(data, dict):
            raise UpstreamFormatError("Search response is not a JSON object", service=self.name)
        if data.get("error"):
            raise UpstreamRefused(str(data["error"]), service=self.name)

        organic = data.get("organic_results")
        if not isinstance(organic, list):
            return []
        return [
            {"title": x.get("title") or x["link"], "url": x["link"], "snippet": x.get("snippet") or ""}
            for x in organic[:max_results]
            if isinstance(x, dict) and x.get("link")
        ]


_RESEARCH_PROMPT = """Use web_search to find independent, reputable sources that confirm or
contradict the main factual claims in the following business document excerpt.
Prefer regulators, company filings, and established financial press.
Do 2-5 searches, then reply with one short sentence.

Excerpt:
{query}
"""


class ClaudeWebResearch:
    """Research collaborator backed by Claude's server-side web_search tool.

    Loops while the API reports ``pause_turn`` (server tool still working),
    collecting every search result block it sees. Result order is the order
    the results were returned; urls are deduplicated.
    """

    name = "anthropic-web-search"
    MAX_TURNS = 4

    def __init__(self, api_key: str = None, model: str = DEFAULT_MODEL,
                 max_tokens: int = 2000, timeout: float = 120.0, client=None):
        self.model = model
        self.max_tokens = max_tokens
        self._client = client or Anthropic(api_key=api_key, timeout=timeout, max_retries=0)

    def search(self, query: str, max_results: int = 6) -> list:
        messages = [{"role": "user", "content": _RESEARCH_PROMPT.format(query=query)}]
        results, seen = [], set()

        for _ in range(self.MAX_TURNS):
            response = _anthropic_call(
                self._client, self.name,
                model=self.model,
                max_tokens=self.max_tokens,
                tools=[WEB_SEARCH_TOOL],
                messages=messages,
            )
            for block in response.content:
                if getattr(block, "type", None) != "web_search_tool_result":
                    continue
                items = getattr(block, "content", None)
                if not isinstance(items, list):
                    continue   # error payload instead of results
                for item in items:
                    url = getattr(item, "url", None)
                    if url and url not in seen:
                        seen.add(url)
                        results.append({
                            "title": getattr(item, "title", None) or url,
                            "url": url,
                            "snippet": "",
                        })

            if response.stop_reason != "pause_turn":
                break
            messages.append({"role": "assistant", "content": response.content})

        logger.info("Web research returned %d result(s)", len(results))
        return results[:max_results]
