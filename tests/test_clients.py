"""Tests for the collaborator adapters, with every transport mocked."""
import io
from types import SimpleNamespace
from unittest.mock import Mock

import httpx
import pytest
import requests
from anthropic import APIConnectionError, APITimeoutError, AuthenticationError, InternalServerError
from reportlab.pdfgen import canvas

from bizdoc_clients import (
    OCR_SPACE_URL,
    AnthropicJsonClient,
    ClaudeWebResearch,
    OcrSpaceClient,
    PypdfTextExtractor,
    SerpSearchClient,
    extract_json,
)
from bizdoc_engine import acquire_text
from bizdoc_errors import EmptyExtraction, UpstreamFormatError, UpstreamRefused, UpstreamUnavailable

ANTHROPIC_REQUEST = httpx.Request("POST", "https://api.anthropic.com/v1/messages")


def _response(payload=None, ok=True, status_code=200, content=b""):
    resp = Mock(ok=ok, status_code=status_code, content=content)
    if isinstance(payload, Exception):
        resp.json.side_effect = payload
    else:
        resp.json.return_value = payload
    return resp


def _message(text=None, stop_reason="end_turn", blocks=None):
    content = blocks if blocks is not None else [SimpleNamespace(type="text", text=text)]
    return SimpleNamespace(content=content, stop_reason=stop_reason)


def _pdf_with_text(text):
    buf = io.BytesIO()
    c = canvas.Canvas(buf)
    c.drawString(72, 720, text)
    c.showPage()
    c.save()
    return buf.getvalue()


class TestOcrSpaceClient:
    """Test the OCR.space adapter."""

    def test_url_source(self):
        """Test URL extraction and the form fields sent."""
        session = Mock()
        session.post.return_value = _response({
            "IsErroredOnProcessing": False,
            "ParsedResults": [{"ParsedText": "Page one"}, {"ParsedText": "Page two"}],
        })
        text = OcrSpaceClient("key", session=session).extract_text("https://x/a.pdf", "ENG")
        assert text == "Page one\nPage two"
        args, kwargs = session.post.call_args
        assert args[0] == OCR_SPACE_URL
        assert kwargs["headers"] == {"apikey": "key"}
        assert kwargs["data"]["url"] == "https://x/a.pdf"
        assert kwargs["data"]["language"] == "eng"
        assert kwargs["files"] is None

    def test_bytes_source(self):
        """Test that bytes are uploaded as a multipart file."""
        session = Mock()
        session.post.return_value = _response({"ParsedResults": [{"ParsedText": "ok"}]})
        OcrSpaceClient("key", session=session).extract_text(b"%PDF-1.4")
        kwargs = session.post.call_args.kwargs
        assert kwargs["files"]["file"][1] == b"%PDF-1.4"
        assert "url" not in kwargs["data"]

    def test_processing_error(self):
        """Test that an explicit OCR error payload is UpstreamRefused."""
        session = Mock()
        session.post.return_value = _response({
            "IsErroredOnProcessing": True, "ErrorMessage": ["Invalid API key"],
        })
        with pytest.raises(UpstreamRefused, match="Invalid API key"):
            OcrSpaceClient("bad", session=session).extract_text("https://x/a.pdf")

    def test_http_error(self):
        """Test that a non-2xx answer is UpstreamUnavailable."""
        session = Mock()
        session.post.return_value = _response({}, ok=False, status_code=503)
        with pytest.raises(UpstreamUnavailable):
            OcrSpaceClient("key", session=session).extract_text("https://x/a.pdf")

    def test_timeout(self):
        """Test that a transport timeout is UpstreamUnavailable."""
        session = Mock()
        session.post.side_effect = requests.Timeout("slow")
        with pytest.raises(UpstreamUnavailable) as exc_info:
            OcrSpaceClient("key", timeout=5, session=session).extract_text("https://x/a.pdf")
        assert exc_info.value.service == "ocr.space"

    def test_non_json(self):
        """Test that a non-JSON body is UpstreamFormatError."""
        session = Mock()
        session.post.return_value = _response(ValueError("not json"))
        with pytest.raises(UpstreamFormatError):
            OcrSpaceClient("key", session=session).extract_text("https://x/a.pdf")


class TestPypdfTextExtractor:
    """Test the local text-layer extractor."""

    def test_bytes(self):
        """Test extraction from PDF bytes."""
        text = PypdfTextExtractor().extract_text(_pdf_with_text("Revenue grew to 10M"))
        assert "Revenue grew to 10M" in text

    def test_url_downloaded_first(self):
        """Test that URL sources are downloaded before parsing."""
        session = Mock()
        session.get.return_value = _response(content=_pdf_with_text("Hello"))
        assert "Hello" in PypdfTextExtractor(session=session).extract_text("https://x/a.pdf")
        session.get.assert_called_once()

    def test_not_a_pdf(self):
        """Test that a non-PDF body yields EmptyExtraction."""
        with pytest.raises(EmptyExtraction):
            acquire_text(PypdfTextExtractor(), pdf_data=b"<html>not a pdf</html>")


class TestExtractJson:
    """Test JSON recovery from model output."""

    def test_fenced(self):
        """Test markdown fences are stripped."""
        assert extract_json('```json\n{"title": "A"}\n```') == {"title": "A"}

    def test_surrounding_prose(self):
        """Test prose before and after the object."""
        assert extract_json('Here you go:\n{"a": 1}\nThanks!') == {"a": 1}

    def test_truncated(self):
        """Test that unclosed brackets are repaired."""
        assert extract_json('{"a": [1, 2') == {"a": [1, 2]}

    def test_no_object(self):
        """Test UpstreamFormatError when nothing parses."""
        with pytest.raises(UpstreamFormatError):
            extract_json("I cannot help with that.")


class TestAnthropicJsonClient:
    """Test the structured completion adapter."""

    def test_returns_parsed_object(self):
        """Test the request parameters and parsed result."""
        client = Mock()
        client.messages.create.return_value = _message('{"title": "Acme"}')
        llm = AnthropicJsonClient(model="m", max_tokens=100, client=client)
        assert llm.structured_complete("prompt") == {"title": "Acme"}
        kwargs = client.messages.create.call_args.kwargs
        assert kwargs["model"] == "m"
        assert kwargs["messages"] == [{"role": "user", "content": "prompt"}]

    def test_empty_output(self):
        """Test that an empty completion is UpstreamFormatError."""
        client = Mock()
        client.messages.create.return_value = _message("   ")
        with pytest.raises(UpstreamFormatError):
            AnthropicJsonClient(client=client).structured_complete("p")

    def test_refusal(self):
        """Test that a refusal is UpstreamRefused."""
        client = Mock()
        client.messages.create.return_value = _message("", stop_reason="refusal")
        with pytest.raises(UpstreamRefused):
            AnthropicJsonClient(client=client).structured_complete("p")

    @pytest.mark.parametrize("error", [
        APIConnectionError(request=ANTHROPIC_REQUEST),
        APITimeoutError(request=ANTHROPIC_REQUEST),
        InternalServerError("overloaded", response=httpx.Response(529, request=ANTHROPIC_REQUEST), body=None),
    ])
    def test_transient_errors(self, error):
        """Test that transport and 5xx failures are UpstreamUnavailable."""
        client = Mock()
        client.messages.create.side_effect = error
        with pytest.raises(UpstreamUnavailable):
            AnthropicJsonClient(client=client).structured_complete("p")

    def test_bad_credential(self):
        """Test that a rejected key is UpstreamRefused and says so."""
        client = Mock()
        client.messages.create.side_effect = AuthenticationError(
            "invalid x-api-key", response=httpx.Response(401, request=ANTHROPIC_REQUEST), body=None,
        )
        with pytest.raises(UpstreamRefused, match="ANTHROPIC_API_KEY"):
            AnthropicJsonClient(client=client).structured_complete("p")


class TestSerpSearchClient:
    """Test the SerpAPI adapter."""

    def test_organic_results(self):
        """Test mapping of organic results."""
        session = Mock()
        session.get.return_value = _response({"organic_results": [
            {"title": "A", "link": "https://a", "snippet": "sa"},
            {"title": "no link"},
            {"link": "https://b"},
        ]})
        results = SerpSearchClient("key", session=session).search("acme", 5)
        assert results == [
            {"title": "A", "url": "https://a", "snippet": "sa"},
            {"title": "https://b", "url": "https://b", "snippet": ""},
        ]
        params = session.get.call_args.kwargs["params"]
        assert params["q"] == "acme"
        assert params["num"] == "5"

    def test_error_payload(self):
        """Test that an error payload is UpstreamRefused."""
        session = Mock()
        session.get.return_value = _response({"error": "Invalid API key."})
        with pytest.raises(UpstreamRefused):
            SerpSearchClient("bad", session=session).search("acme")

    def test_no_results(self):
        """Test that a response without organic results is empty."""
        session = Mock()
        session.get.return_value = _response({"search_metadata": {}})
        assert SerpSearchClient("key", session=session).search("acme") == []


class TestClaudeWebResearch:
    """Test the web_search research loop."""

    def test_pause_turn_loop_and_dedup(self):
        """Test that results across turns are collected once per url."""
        def result_block(*urls):
            return SimpleNamespace(type="web_search_tool_result", content=[
                SimpleNamespace(url=u, title=u.upper()) for u in urls
            ])

        client = Mock()
        client.messages.create.side_effect = [
            _message(blocks=[result_block("https://a", "https://b")], stop_reason="pause_turn"),
            _message(blocks=[result_block("https://b", "https://c"),
                             SimpleNamespace(type="text", text="Done.")]),
        ]
        results = ClaudeWebResearch(client=client).search("acme revenue", max_results=6)
        assert [r["url"] for r in results] == ["https://a", "https://b", "https://c"]
        assert client.messages.create.call_count == 2

    def test_error_block_ignored(self):
        """Test that a tool error payload contributes no results."""
        client = Mock()
        client.messages.create.return_value = _message(blocks=[
            SimpleNamespace(type="web_search_tool_result",
                            content=SimpleNamespace(type="web_search_tool_result_error")),
        ])
        assert ClaudeWebResearch(client=client).search("q") == []
