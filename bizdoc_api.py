"""
HTTP surface for the BizDoc report pipeline.

Every endpoint either returns the document / JSON it promises or a structured
``{"ok": false, "error": ..., "code": ...}`` body, never empty bytes.

Run locally with:  uvicorn bizdoc_api:app --reload
"""
import logging
import os
import time
from typing import Optional

from fastapi import Body, FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from pydantic import BaseModel
from starlette.concurrency import run_in_threadpool

from bizdoc_config import PipelineConfig
from bizdoc_engine import acquire_text, normalize_analysis
from bizdoc_errors import BizDocError, InvalidInput, MissingInput
from bizdoc_graphs import build_charts
from bizdoc_pipeline import (
    ReportPipeline,
    ReportRequest,
    default_ocr,
    default_rasterizer,
    render_document,
)

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

OCR_PREVIEW_CHARS = 2000


# ---------------------------------------------------------------------------
# Request schemas
# ---------------------------------------------------------------------------

class ReportPayload(BaseModel):
    """Body of the text / URL / inline-PDF endpoints."""

    text: Optional[str] = None
    pdfUrl: Optional[str] = None
    pdfDataUrl: Optional[str] = None
    language: Optional[str] = None
    filename: Optional[str] = None
    format: Optional[str] = None
    type: Optional[str] = None
    meta: Optional[dict] = None


class OcrPayload(BaseModel):
    url: Optional[str] = None
    pdfUrl: Optional[str] = None
    dataUrl: Optional[str] = None
    pdfDataUrl: Optional[str] = None
    language: Optional[str] = None


def _document_response(document) -> Response:
    return Response(
        content=document.content,
        media_type=document.content_type,
        headers={"Content-Disposition": f'attachment; filename="{document.filename}"'},
    )


# ---------------------------------------------------------------------------
# Application factory
# ---------------------------------------------------------------------------

def create_app(config: PipelineConfig = None, pipeline: ReportPipeline = None) -> FastAPI:
    """
    Build the FastAPI app. The pipeline is constructed on first use so that
    ``/api/health``, ``/api/ocr`` and ``/api/download`` still answer when the
    LLM credential is missing; the analysis endpoints then fail with
    ``missing_configuration`` (503).
    """
    config = config or (pipeline.config if pipeline else PipelineConfig.from_env())

    app = FastAPI(
        title="BizDoc API",
        description=(
            "Turn pasted text, a PDF URL or an uploaded PDF into an analysed "
            "PDF/DOCX business report.\n\n"
            "- `POST /api/analyze` — Analysis Result JSON\n"
            "- `POST /api/summarize-download` — full pipeline → document\n"
            "- `POST /api/upload-analyze-download` — raw PDF body → document\n"
        ),
        version="1.0.0",
    )
    app.state.config = config
    app.state.pipeline = pipeline

    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.allowed_origins,
        allow_credentials="*" not in config.allowed_origins,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["*"],
        expose_headers=["Content-Disposition"],
    )

    def get_pipeline() -> ReportPipeline:
        if app.state.pipeline is None:
            app.state.pipeline = ReportPipeline(config)
        return app.state.pipeline

    # -----------------------------------------------------------------------
    # Middleware / error handlers
    # -----------------------------------------------------------------------

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        t0 = time.monotonic()
        response = await call_next(request)
        elapsed_ms = round((time.monotonic() - t0) * 1000, 2)
        if request.url.path != "/api/health":
            logger.info("%s %s → %d  (%.2f ms)", request.method, request.url.path,
                        response.status_code, elapsed_ms)
        return response

    @app.exception_handler(BizDocError)
    async def bizdoc_error_handler(request: Request, exc: BizDocError):
        logger.warning("%s %s failed: %s (%s)", request.method, request.url.path,
                       exc.message, exc.code)
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        first = exc.errors()[0] if exc.errors() else {}
        where = ".".join(str(p) for p in first.get("loc", ()) if p != "body")
        err = InvalidInput(f"{where or 'body'}: {first.get('msg', 'invalid request')}")
        return JSONResponse(status_code=err.status_code, content=err.to_dict())

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        logger.error("Unhandled exception on %s %s: %s", request.method,
                     request.url.path, exc, exc_info=True)
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"ok": False, "error": str(exc) if config.debug else "internal_error",
                     "code": "internal_error"},
        )

    # -----------------------------------------------------------------------
    # Routes
    # -----------------------------------------------------------------------

    @app.get("/api/health", tags=["Health"])
    def health():
        """Which collaborators are configured. Never exposes the keys."""
        return {"ok": True, "service": "bizdoc", **config.describe()}

    @app.post("/api/ocr", tags=["Text"])
    def ocr(payload: OcrPayload):
        language = payload.language or config.default_language
        ocr_client = app.state.pipeline.ocr if app.state.pipeline else default_ocr(config)
        text = acquire_text(
            ocr_client,
            pdf_url=payload.pdfUrl or payload.url,
            pdf_data=payload.pdfDataUrl or payload.dataUrl,
            language=language,
        )
        return {
            "ok": True,
            "source": getattr(ocr_client, "name", "ocr"),
            "language": language,
            "textLength": len(text),
            "preview": text[:OCR_PREVIEW_CHARS],
            "text": text,
        }

    @app.post("/api/analyze", tags=["Analysis"])
    def analyze(payload: ReportPayload):
        request = ReportRequest.from_payload(payload.model_dump(exclude_none=True),
                                             default_language=config.default_language)
        analysis = get_pipeline().summarize(request)
        return {"ok": True, **analysis}

    @app.post("/api/download", tags=["Documents"])
    def download(payload: dict = Body(...)):
        """Render an Analysis Result supplied by the caller (charts included)."""
        analysis = payload.get("analysis") if isinstance(payload.get("analysis"), dict) else payload
        fmt = str(payload.get("format") or payload.get("type") or "pdf").lower()
        # render only; no LLM credential involved
        rasterizer = (app.state.pipeline.rasterizer if app.state.pipeline
                      else default_rasterizer(config))
        analysis = normalize_analysis(analysis)
        document = render_document(analysis, build_charts(analysis, rasterizer), fmt=fmt,
                                   filename=str(payload.get("filename") or ""),
                                   confidence_floor=config.confidence_floor)
        return _document_response(document)

    @app.post("/api/summarize-download", tags=["Documents"])
    def summarize_download(payload: ReportPayload):
        request = ReportRequest.from_payload(payload.model_dump(exclude_none=True),
                                             default_language=config.default_language)
        return _document_response(get_pipeline().run(request))

    @app.post("/api/upload-analyze-download", tags=["Documents"])
    async def upload_analyze_download(request: Request):
        """Body is the raw PDF; ``X-Filename`` / ``X-Language`` carry the metadata."""
        body = await request.body()
        if not body:
            raise MissingInput("Empty upload: send the PDF bytes as the request body")
        if len(body) > config.max_upload_bytes:
            raise InvalidInput(
                f"Upload exceeds {config.max_upload_bytes // (1024 * 1024)} MB limit",
                size=len(body),
            )
        filename = os.path.basename(request.headers.get("x-filename") or "upload.pdf")
        report_request = ReportRequest(
            pdf_data=body,
            language=request.headers.get("x-language") or config.default_language,
            filename=filename,
            fmt=(request.query_params.get("format") or "pdf").lower(),
        )
        if report_request.fmt not in ("pdf", "docx"):
            raise InvalidInput("format must be 'pdf' or 'docx'", field="format")
        pipe = get_pipeline()
        document = await run_in_threadpool(pipe.run, report_request)
        return _document_response(document)

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("bizdoc_api:app", host="0.0.0.0", port=int(os.getenv("PORT", "8000")),
                reload=True, log_level="info")
