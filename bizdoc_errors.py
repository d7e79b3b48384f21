"""
bizdoc_errors.py
================
Error taxonomy for the BizDoc report pipeline.

Every stage either returns its typed result or raises exactly one of these.
The HTTP layer turns them into ``{"ok": false, "error": ..., "code": ...}``.
"""


class BizDocError(Exception):
    """Base class for every failure the pipeline surfaces to a caller."""

    code = "internal_error"
    status_code = 500

    def __init__(self, message: str = "", **details):
        super().__init__(message or self.code)
        self.message = message or self.code
        self.details = details

    def to_dict(self) -> dict:
        payload = {"ok": False, "error": self.message, "code": self.code}
        if self.details:
            payload["details"] = self.details
        return payload


# ── Request / configuration errors ───────────────────────────────────────────

class InvalidInput(BizDocError):
    code = "invalid_input"
    status_code = 400


class MissingInput(InvalidInput):
    code = "missing_input"


class MissingConfiguration(BizDocError):
    """A required collaborator credential is absent. Not transient."""

    code = "missing_configuration"
    status_code = 503


# ── Collaborator errors ──────────────────────────────────────────────────────

class UpstreamError(BizDocError):
    status_code = 502

    def __init__(self, message: str = "", service: str = "", **details):
        if service:
            details["service"] = service
        super().__init__(message, **details)
        self.service = service


class UpstreamUnavailable(UpstreamError):
    """Collaborator unreachable, timed out, or answered non-2xx."""

    code = "upstream_unavailable"


class UpstreamFormatError(UpstreamError):
    """Collaborator answered, but not with the JSON envelope we need."""

    code = "upstream_format_error"


class UpstreamRefused(UpstreamError):
    """Collaborator returned an explicit error payload (bad key, refusal...)."""

    code = "upstream_refused"


class EmptyExtraction(BizDocError):
    code = "empty_extraction"
    status_code = 422


# ── Output errors ────────────────────────────────────────────────────────────

class ChartRenderError(BizDocError):
    code = "chart_render_error"
    status_code = 500


class RenderError(BizDocError):
    code = "render_error"
    status_code = 500
