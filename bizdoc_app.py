"""
BizDoc — Business Document Report Generator
============================================
Paste text, point at a PDF URL, or upload a PDF and download an analysed
PDF/DOCX report: Extract → Analyze → Enrich → Chart → Render.

Installation:
    pip install -e .

Run locally:
    streamlit run bizdoc_app.py
"""

import os
from datetime import datetime

import streamlit as st

from bizdoc_config import PipelineConfig
from bizdoc_errors import BizDocError
from bizdoc_pipeline import ReportPipeline, ReportRequest


# ── API keys ──────────────────────────────────────────────────────────────────
def _secret(name: str) -> str:
    try:
        return st.secrets[name]
    except Exception:
        return os.environ.get(name, "")


def _build_config() -> PipelineConfig:
    overrides = {"llm_key": _secret("ANTHROPIC_API_KEY")}
    for field_name, env_name in (("ocr_key", "OCR_SPACE_API_KEY"), ("search_key", "SERPAPI_KEY")):
        value = _secret(env_name)
        if value:
            overrides[field_name] = value
    return PipelineConfig.from_env(**overrides)


# ── Page config ───────────────────────────────────────────────────────────────
st.set_page_config(
    page_title="BizDoc · Report Generator",
    page_icon="📊",
    layout="centered",
)

# ── Styling ───────────────────────────────────────────────────────────────────
st.markdown("""
<style>
    @import url('https://fonts.googleapis.com/css2?family=Inter:wght@300;400;500;600;700&display=swap');
    html, body, [class*="css"] { font-family: 'Inter', sans-serif; }

    @keyframes fadeInUp {
        from { opacity: 0; transform: translateY(18px); }
        to   { opacity: 1; transform: translateY(0); }
    }

    .stApp { background-color: #F5F7F5; color: #1a1a1a; }
    .block-container { padding-top: 2rem; max-width: 780px; }

    /* ── Hero banner ── */
    .hero {
        background: linear-gradient(160deg, #0D2818 0%, #1B4332 50%, #2d5f3f 100%);
        border-radius: 20px;
        padding: 2.6rem 2.2rem 2rem 2.2rem;
        margin-bottom: 2rem;
        text-align: center;
        box-shadow: 0 12px 40px rgba(6, 26, 14, 0.35);
        animation: fadeInUp 0.7s ease-out;
    }
    .hero-title { color: #ffffff !important; font-size: 1.9rem; font-weight: 700; }
    .hero-sub   { color: rgba(255,255,255,0.78) !important; font-size: 0.95rem; margin-top: 0.6rem; }

    /* ── Step pills ── */
    .step-row { display: flex; gap: 0.5rem; justify-content: center; margin-top: 1.2rem; flex-wrap: wrap; }
    .step-pill {
        background: rgba(255, 255, 255, 0.08);
        border: 1px solid rgba(255, 255, 255, 0.3);
        color: #eef7f1 !important;
        border-radius: 20px;
        padding: 0.3rem 0.95rem;
        font-size: 0.76rem;
    }
    .step-arrow { color: rgba(255, 255, 255, 0.4) !important; font-size: 0.7rem; }

    .footer { text-align: center; font-size: 0.8rem; color: #5A554F !important; margin-top: 1rem; }
    .divider {
        height: 1px;
        background: linear-gradient(90deg, transparent 0%, #3a7d52 50%, transparent 100%);
        margin: 1.5rem 0;
    }
</style>
""", unsafe_allow_html=True)

# ── Hero Banner ───────────────────────────────────────────────────────────────
st.markdown("""
<div class="hero">
    <div class="hero-title">BizDoc Report Generator</div>
    <div class="hero-sub">
        Turn a financial filing, board memo or business article into a fact-checked
        report with key metrics, risk scores, charts and sources.
    </div>
    <div class="step-row">
        <span class="step-pill">Extract</span>
        <span class="step-arrow">&#9656;</span>
        <span class="step-pill">Analyze + Fact-check</span>
        <span class="step-arrow">&#9656;</span>
        <span class="step-pill">Charts</span>
        <span class="step-arrow">&#9656;</span>
        <span class="step-pill">Report</span>
    </div>
</div>
""", unsafe_allow_html=True)

# ── Input ─────────────────────────────────────────────────────────────────────
tab_text, tab_url, tab_upload = st.tabs(["Paste text", "PDF URL", "Upload PDF"])
with tab_text:
    pasted_text = st.text_area("Document text", height=220,
                               placeholder="Paste the document text here…")
with tab_url:
    pdf_url = st.text_input("PDF URL", placeholder="https://example.com/annual-report.pdf")
with tab_upload:
    uploaded_file = st.file_uploader("Drop a PDF here or click to browse", type=["pdf"])
    if uploaded_file:
        st.caption(f"**{uploaded_file.name}** · {uploaded_file.size / (1024 * 1024):.1f} MB")

col_lang, col_fmt = st.columns(2)
with col_lang:
    language = st.text_input("OCR language", value="eng", max_chars=3)
with col_fmt:
    fmt = st.radio("Output format", ["pdf", "docx"], horizontal=True,
                   format_func=lambda f: f.upper())

has_input = bool(pasted_text.strip() or pdf_url.strip() or uploaded_file)
run_button = st.button("Generate Report", disabled=not has_input, use_container_width=True)
if not has_input:
    st.caption("Paste text, enter a PDF URL or upload a PDF to begin")

# ── Pipeline ──────────────────────────────────────────────────────────────────
if run_button and has_input:
    request = ReportRequest(
        text=pasted_text if pasted_text.strip() else None,
        pdf_url=pdf_url.strip() or None,
        pdf_data=uploaded_file.getvalue() if uploaded_file else None,
        language=language or "eng",
        filename=uploaded_file.name if uploaded_file else "",
        fmt=fmt,
    )

    try:
        pipeline = ReportPipeline(_build_config())

        # ── Step 1: Extract ──────────────────────────────────────────────
        with st.status("Extracting text...", expanded=False) as status:
            text = pipeline.acquire_text(request)
            status.update(label=f"Text ready ({len(text):,} characters)",
                          state="complete", expanded=False)

        # ── Step 2: Analyze (draft → fact check) ─────────────────────────
        label = "Analyzing and fact-checking (1-3 min)..." if pipeline.config.two_pass \
            else "Analyzing..."
        with st.status(label, expanded=False) as status:
            meta = {"filename": request.filename} if request.filename else {}
            if request.pdf_url and not request.text:
                meta["source"] = request.pdf_url
            analysis = pipeline.analyze(text, title_hint=request.title_hint, meta=meta)
            before = len(analysis["sources"])
            pipeline.enrich(analysis)
            status.update(
                label=f"Analysis complete · {len(analysis['keyMetrics'])} metrics · "
                      f"{len(analysis['sources'])} sources (+{len(analysis['sources']) - before} from search)",
                state="complete", expanded=False,
            )

        # ── Step 3: Charts + document ────────────────────────────────────
        with st.status("Generating report with charts...", expanded=False) as status:
            charts = pipeline.build_charts(analysis)
            document = pipeline.render(analysis, charts, fmt=request.fmt,
                                       filename=request.filename)
            status.update(label="Report generated", state="complete", expanded=False)

    except BizDocError as e:
        st.error(f"{e.message} ({e.code})")
        st.stop()
    except Exception as e:
        st.error(f"An error occurred: {e}")
        st.stop()

    # Store in session state for download button persistence
    st.session_state["report_bytes"] = document.content
    st.session_state["report_filename"] = document.filename
    st.session_state["report_mime"] = document.content_type
    st.session_state["report_title"] = analysis["title"]
    st.session_state["generated_at"] = datetime.now().strftime('%B %d, %Y at %H:%M')

# ── Download section (rendered from session state, survives reruns) ───────────
if "report_bytes" in st.session_state:
    st.write("")
    st.success(f"Report ready — {st.session_state['report_title']}")

    st.download_button(
        label=f"Download Report ({st.session_state['report_filename'].rsplit('.', 1)[-1].upper()})",
        data=st.session_state["report_bytes"],
        file_name=st.session_state["report_filename"],
        mime=st.session_state["report_mime"],
        use_container_width=True,
        key="dl_report",
    )

    st.caption(
        f"Generated {st.session_state['generated_at']} · "
        "AI-assisted analysis — verify figures against the source before use."
    )

# ── Footer ────────────────────────────────────────────────────────────────────
st.markdown('<div class="divider"></div>', unsafe_allow_html=True)
st.markdown("""
<div class="footer">
    <strong>BizDoc</strong> &nbsp;&middot;&nbsp; Business Document Report Generator
    &nbsp;&middot;&nbsp; Powered by Claude AI
</div>
""", unsafe_allow_html=True)
