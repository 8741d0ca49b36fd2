"""
Streamlit slide deck for the colitis RNA-Seq report.

Launch with ``colitis-rnaseq present`` or
``streamlit run src/colitis_rnaseq/report/app.py``. Input paths come from
the environment (see ``colitis_rnaseq.config.load_config``).
"""

import logging
from pathlib import Path

import pandas as pd
import streamlit as st

from colitis_rnaseq.analysis.association import correlation_matrix
from colitis_rnaseq.analysis.de_analysis import DE_METHODS
from colitis_rnaseq.analysis.de_result import significant_genes
from colitis_rnaseq.analysis.filtering import gene_count_range
from colitis_rnaseq.analysis.projection import EMBEDDING_METHODS
from colitis_rnaseq.config import load_config
from colitis_rnaseq.pipeline import ENRICHMENT_SERVICES, ReportPipeline
from colitis_rnaseq.report.plots import ReportVisualizer

logger = logging.getLogger(__name__)

SLIDES = [
    "Overview",
    "Gene filtering",
    "Sample projection",
    "PC associations",
    "Differential expression",
    "Method comparison",
    "Replicate ratios",
    "Pathway enrichment",
]

METHOD_LABELS = {"pca": "PCA", "umap": "UMAP", "tsne": "t-SNE", "deseq2": "DESeq2", "edger": "edgeR"}

viz = ReportVisualizer()


# --- Cached stages ---
# The pipeline is shared across reruns; each stage output is cached on the
# input paths plus the widget values that drive it.

@st.cache_resource
def get_pipeline(counts_path: str, metadata_path: str) -> ReportPipeline:
    config = load_config()
    config.counts_path = Path(counts_path)
    config.metadata_path = Path(metadata_path)
    return ReportPipeline(config)


@st.cache_data
def cached_embedding(_pipeline: ReportPipeline, key: str, method: str, n_genes: int, n_components: int) -> pd.DataFrame:
    return _pipeline.embedding(method, n_genes=n_genes, n_components=n_components)


@st.cache_data
def cached_associations(_pipeline: ReportPipeline, key: str, n_pcs: int):
    return _pipeline.associations(n_pcs)


@st.cache_data
def cached_de(_pipeline: ReportPipeline, key: str):
    return _pipeline.de_results()


@st.cache_data
def cached_ratios(_pipeline: ReportPipeline, key: str, method: str) -> pd.DataFrame:
    return _pipeline.ratios(method)


@st.cache_data
def cached_enrichment(_pipeline: ReportPipeline, key: str, service: str, method: str):
    return _pipeline.enrichment(service, method)


# --- Navigation ---

def _step(delta: int) -> None:
    index = SLIDES.index(st.session_state["slide"]) + delta
    st.session_state["slide"] = SLIDES[max(0, min(index, len(SLIDES) - 1))]


def _navigation() -> str:
    if "slide" not in st.session_state:
        st.session_state["slide"] = SLIDES[0]
    st.sidebar.title("Colitis RNA-Seq")
    st.sidebar.radio("Slide", SLIDES, key="slide")
    prev_col, next_col = st.sidebar.columns(2)
    prev_col.button("Previous", on_click=_step, args=(-1,), use_container_width=True)
    next_col.button("Next", on_click=_step, args=(1,), use_container_width=True)
    return st.session_state["slide"]


# --- Slides ---

def slide_overview(pipeline: ReportPipeline) -> None:
    st.title("Bulk RNA-Seq of ulcerative colitis biopsies")
    cohort = pipeline.cohort
    st.markdown(
        "Paired inflamed and non-inflamed colon biopsies per patient. "
        "This deck walks through gene filtering, sample projections, "
        "association of principal components with clinical factors, "
        "differential expression and pathway enrichment."
    )
    col1, col2, col3 = st.columns(3)
    col1.metric("Samples", cohort.n_samples)
    col2.metric("Genes", f"{cohort.n_genes:,}")
    if "patient" in cohort.metadata.columns:
        col3.metric("Patients", cohort.metadata["patient"].nunique())

    fields = [f for f in pipeline.metadata_fields() if f in cohort.metadata.columns]
    st.subheader("Sample metadata")
    st.dataframe(cohort.metadata[fields], use_container_width=True)
    meta = cohort.metadata
    if {"hospital", "inflammation"} <= set(meta.columns):
        st.subheader("Samples per hospital")
        st.dataframe(pd.crosstab(meta["hospital"], meta["inflammation"]))


def slide_filtering(pipeline: ReportPipeline) -> None:
    st.header("Gene filtering")
    cfg = pipeline.config.filter
    filtered = pipeline.filtered
    st.markdown(
        f"Genes are kept when more than **{cfg.min_fraction:.0%}** of samples have at least "
        f"**{cfg.min_count:g}** read. Expression is then log2(CPM + {cfg.log_prior:g}) and the "
        f"**{cfg.n_top_variance}** most variable genes feed the projections."
    )
    col1, col2 = st.columns(2)
    col1.metric("Genes before", f"{pipeline.cohort.n_genes:,}")
    col2.metric("Genes retained", f"{filtered.n_retained:,}")

    symbols = pipeline.cohort.symbols(filtered.top_variance.index[:20])
    top = pd.DataFrame({
        "symbol": symbols,
        "variance": filtered.variance.loc[filtered.top_variance.index[:20]].round(3).to_numpy(),
    }, index=filtered.top_variance.index[:20])
    st.subheader("Most variable genes")
    st.dataframe(top, use_container_width=True)


def slide_projection(pipeline: ReportPipeline, key: str) -> None:
    st.header("Sample projection")
    n_retained = pipeline.filtered.n_retained
    col1, col2, col3, col4 = st.columns(4)
    method = col1.selectbox("Method", EMBEDDING_METHODS, format_func=lambda m: METHOD_LABELS[m])
    bounds = gene_count_range(n_retained, pipeline.config.filter.n_top_variance)
    if bounds is None:
        n_genes = n_retained
        col2.caption(f"All {n_retained} retained genes")
    else:
        low, high, value, step = bounds
        n_genes = col2.slider("Top variable genes", min_value=low, max_value=high, value=value, step=step)
    color_by = col3.selectbox("Colour by", pipeline.metadata_fields())
    dims = col4.radio("Dimensions", ("2-D", "3-D"), horizontal=True)

    frame = cached_embedding(pipeline, key, method, n_genes, 3 if dims == "3-D" else 2)
    st.plotly_chart(
        viz.embedding_scatter(frame, color_by=color_by, title=f"{METHOD_LABELS[method]} on {n_genes} genes",
                              hover_fields=pipeline.metadata_fields()),
        use_container_width=True,
    )
    if method == "pca":
        st.plotly_chart(viz.explained_variance(pipeline.pca.explained_variance_ratio), use_container_width=True)


def slide_associations(pipeline: ReportPipeline, key: str) -> None:
    st.header("Principal components vs clinical factors")
    max_pcs = pipeline.pca.n_components
    n_pcs = st.slider("Principal components", min_value=1, max_value=max_pcs, value=min(5, max_pcs))
    correlations, group_tests = cached_associations(pipeline, key, n_pcs)

    st.plotly_chart(viz.association_heatmap(correlation_matrix(correlations)), use_container_width=True)
    st.subheader("Group tests")
    st.dataframe(group_tests, use_container_width=True)


def slide_de(pipeline: ReportPipeline, key: str) -> None:
    st.header("Differential expression: inflamed vs non-inflamed")
    de_cfg = pipeline.config.de
    results = cached_de(pipeline, key)

    col1, col2, col3 = st.columns(3)
    fdr = col1.slider("FDR threshold", 0.01, 0.2, float(de_cfg.fdr_threshold), step=0.01)
    lfc = col2.slider("|log2FC| threshold", 0.0, 3.0, float(de_cfg.log2fc_threshold), step=0.25)
    top_n = col3.slider("Top genes", 5, 100, int(de_cfg.top_n), step=5)

    tabs = st.tabs([METHOD_LABELS[m] for m in DE_METHODS])
    for tab, method in zip(tabs, DE_METHODS):
        result = results[method]
        with tab:
            st.caption(f"Design: {result.provenance.design}")
            sig = significant_genes(result.table, fdr, lfc)
            up = int((sig["log2FoldChange"] > 0).sum())
            st.markdown(f"**{len(sig)}** genes pass ({up} up, {len(sig) - up} down)")
            st.dataframe(sig.head(top_n), use_container_width=True)
            st.plotly_chart(viz.volcano(result), use_container_width=True)


def slide_comparison(pipeline: ReportPipeline, key: str) -> None:
    st.header("DESeq2 vs edgeR")
    cached_de(pipeline, key)
    comparison = pipeline.comparison()
    col1, col2, col3 = st.columns(3)
    col1.metric("Shared top genes", len(comparison.shared))
    col2.metric("Jaccard", f"{comparison.jaccard:.2f}")
    col3.metric("log2FC Spearman", f"{comparison.log2fc_spearman:.2f}")
    st.plotly_chart(viz.method_comparison(comparison), use_container_width=True)

    symbols = pipeline.cohort.symbols
    st.markdown(f"**Only {METHOD_LABELS[comparison.method_a]}:** {', '.join(symbols(comparison.only_a)) or 'none'}")
    st.markdown(f"**Only {METHOD_LABELS[comparison.method_b]}:** {', '.join(symbols(comparison.only_b)) or 'none'}")


def slide_ratios(pipeline: ReportPipeline, key: str) -> None:
    st.header("Per-patient inflammation ratios")
    st.markdown(
        "Each patient's two inflamed and two non-inflamed biopsies are averaged; "
        "the heatmap shows log2(inflamed / non-inflamed) CPM for the top DE genes."
    )
    method = st.selectbox("Top genes from", DE_METHODS, format_func=lambda m: METHOD_LABELS[m])
    ratios = cached_ratios(pipeline, key, method)
    st.plotly_chart(viz.ratio_heatmap(ratios), use_container_width=True)


def slide_enrichment(pipeline: ReportPipeline, key: str) -> None:
    st.header("Pathway enrichment")
    col1, col2 = st.columns(2)
    service = col1.selectbox("Service", ENRICHMENT_SERVICES)
    method = col2.selectbox("DE method", DE_METHODS, format_func=lambda m: METHOD_LABELS[m])

    with st.spinner(f"Querying {service}..."):
        result = cached_enrichment(pipeline, key, service, method)

    prov = result.provenance
    st.caption(
        f"{len(prov.input_genes)} input genes"
        + (f", {len(prov.unmapped_genes)} without NCBI Gene ID" if prov.unmapped_genes else "")
    )
    st.plotly_chart(viz.enrichment_bar(result), use_container_width=True)
    st.dataframe(result.table, use_container_width=True)


def main() -> None:
    st.set_page_config(page_title="Colitis RNA-Seq", layout="wide")
    slide = _navigation()

    config = load_config()
    try:
        counts_path, metadata_path = config.require_inputs()
    except ValueError as exc:
        st.error(str(exc))
        st.stop()

    pipeline = get_pipeline(str(counts_path), str(metadata_path))
    key = f"{counts_path}|{metadata_path}"

    try:
        if slide == "Overview":
            slide_overview(pipeline)
        elif slide == "Gene filtering":
            slide_filtering(pipeline)
        elif slide == "Sample projection":
            slide_projection(pipeline, key)
        elif slide == "PC associations":
            slide_associations(pipeline, key)
        elif slide == "Differential expression":
            slide_de(pipeline, key)
        elif slide == "Method comparison":
            slide_comparison(pipeline, key)
        elif slide == "Replicate ratios":
            slide_ratios(pipeline, key)
        else:
            slide_enrichment(pipeline, key)
    except ValueError as exc:
        logger.error("Slide %r failed: %s", slide, exc)
        st.error(str(exc))
        st.stop()


main()
