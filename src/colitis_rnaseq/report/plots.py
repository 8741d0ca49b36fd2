"""
Interactive Plotly figures for the colitis RNA-Seq report.

This module provides the figure builders used by the slide deck:
- 2-D / 3-D sample embeddings coloured by a metadata field
- Explained variance of the principal components
- PC-metadata association heatmaps
- Volcano plots and DE method comparison scatter
- Per-patient inflammation ratio heatmaps
- Enrichment term bar charts

Usage:
    from colitis_rnaseq.report.plots import ReportVisualizer

    viz = ReportVisualizer()
    fig = viz.embedding_scatter(frame, color_by="inflammation")
    fig.show()
"""

import re
from typing import Optional, Sequence

import numpy as np
import pandas as pd
import plotly.express as px
import plotly.graph_objects as go

from ..analysis.de_result import DEResult, EnrichmentResult, MethodComparison

# Color schemes
COLORS = {
    # Inflammation status
    "inflamed": "#e74c3c",       # Red
    "non-inflamed": "#3498db",   # Blue

    # Expression direction
    "up": "#e74c3c",      # Red (up-regulated)
    "down": "#3498db",    # Blue (down-regulated)
    "neutral": "#95a5a6", # Gray

    # DE methods
    "deseq2": "#1f77b4",  # Blue
    "edger": "#ff7f0e",   # Orange
    "both": "#2ca02c",    # Green
}

QUALITATIVE = px.colors.qualitative.Plotly

AXIS_PATTERN = re.compile(r"(PC|UMAP|tSNE)\d+")


class ReportVisualizer:
    """Figure builders for the report slides."""

    def __init__(self, template: str = "plotly_white"):
        """
        Initialize visualizer.

        Args:
            template: Plotly template (plotly_white, plotly_dark, ggplot2, etc.)
        """
        self.template = template

    def _category_colors(self, values: Sequence[str]) -> dict:
        levels = sorted(set(values))
        palette = {}
        for i, level in enumerate(levels):
            palette[level] = COLORS.get(level, QUALITATIVE[i % len(QUALITATIVE)])
        return palette

    def embedding_scatter(
        self,
        frame: pd.DataFrame,
        color_by: str = "inflammation",
        title: str = "Sample embedding",
        hover_fields: Optional[Sequence[str]] = None,
        height: int = 600,
    ) -> go.Figure:
        """
        Scatter samples in 2 or 3 dimensions, one trace per level of color_by.

        Args:
            frame: embedding_frame() output, first columns are the coordinates
            color_by: Metadata column used for colouring
            title: Chart title
            hover_fields: Extra metadata columns shown on hover

        Returns:
            Plotly Figure object
        """
        if frame.empty:
            return self._empty_figure("No samples to display")
        if color_by not in frame.columns:
            raise ValueError(f"Cannot colour by {color_by!r}; column not in metadata")

        axes = [c for c in frame.columns if AXIS_PATTERN.fullmatch(str(c))]
        if len(axes) not in (2, 3):
            raise ValueError(f"Expected 2 or 3 coordinate columns, found {axes}")
        hover_fields = [f for f in (hover_fields or []) if f in frame.columns]

        labels = frame[color_by].fillna("NA").astype(str)
        palette = self._category_colors(labels)

        fig = go.Figure()
        for level, color in palette.items():
            sub = frame[labels == level]
            text = [
                "<br>".join([f"sample: {idx}"] + [f"{f}: {sub.at[idx, f]}" for f in hover_fields])
                for idx in sub.index
            ]
            marker = dict(size=6 if len(axes) == 3 else 10, color=color, line=dict(width=1, color="white"))
            if len(axes) == 3:
                fig.add_trace(go.Scatter3d(
                    x=sub[axes[0]], y=sub[axes[1]], z=sub[axes[2]],
                    mode="markers", name=level, marker=marker,
                    hovertext=text, hoverinfo="text",
                ))
            else:
                fig.add_trace(go.Scatter(
                    x=sub[axes[0]], y=sub[axes[1]],
                    mode="markers", name=level, marker=marker,
                    hovertext=text, hoverinfo="text",
                ))

        layout = dict(
            title=dict(text=title, x=0.5, font=dict(size=18)),
            legend=dict(title=dict(text=color_by)),
            template=self.template,
            height=height,
        )
        if len(axes) == 3:
            layout["scene"] = dict(xaxis_title=axes[0], yaxis_title=axes[1], zaxis_title=axes[2])
        else:
            layout["xaxis_title"] = axes[0]
            layout["yaxis_title"] = axes[1]
        fig.update_layout(**layout)
        return fig

    def explained_variance(
        self,
        ratio: pd.Series,
        title: str = "Explained variance",
        height: int = 400,
    ) -> go.Figure:
        """Bar chart of per-PC explained variance with the cumulative curve."""
        if ratio.empty:
            return self._empty_figure("No components to display")

        pct = ratio * 100
        fig = go.Figure()
        fig.add_trace(go.Bar(
            x=list(pct.index), y=pct.values,
            name="Per component", marker_color=COLORS["deseq2"],
            text=[f"{v:.1f}%" for v in pct.values], textposition="outside",
        ))
        fig.add_trace(go.Scatter(
            x=list(pct.index), y=pct.cumsum().values,
            name="Cumulative", mode="lines+markers",
            line=dict(color=COLORS["edger"]),
        ))
        fig.update_layout(
            title=dict(text=title, x=0.5, font=dict(size=18)),
            yaxis_title="% variance",
            template=self.template,
            height=height,
        )
        return fig

    def association_heatmap(
        self,
        matrix: pd.DataFrame,
        title: str = "PC / metadata correlation",
        value_label: str = "Spearman rho",
        height: int = 500,
    ) -> go.Figure:
        """Heatmap of a variables x PCs matrix on a diverging scale centred at zero."""
        if matrix.empty:
            return self._empty_figure("No associations to display")

        fig = go.Figure(go.Heatmap(
            z=matrix.values,
            x=list(matrix.columns),
            y=list(matrix.index),
            colorscale="RdBu_r",
            zmid=0,
            colorbar=dict(title=value_label),
            hovertemplate="%{y} / %{x}<br>" + value_label + ": %{z:.2f}<extra></extra>",
        ))
        fig.update_layout(
            title=dict(text=title, x=0.5, font=dict(size=18)),
            template=self.template,
            height=max(height, 30 * len(matrix.index) + 150),
        )
        return fig

    def volcano(
        self,
        result: DEResult,
        title: Optional[str] = None,
        label_top: int = 10,
        height: int = 550,
    ) -> go.Figure:
        """
        Volcano plot of one DE result; thresholds drawn from its provenance.

        Args:
            result: DEResult to plot
            title: Chart title (defaults to the method name)
            label_top: Number of top genes annotated with their symbol
        """
        table = result.table.dropna(subset=["log2FoldChange", "padj"])
        if table.empty:
            return self._empty_figure("No tested genes to display")

        fdr = result.provenance.thresholds["fdr"]
        lfc = result.provenance.thresholds["log2fc"]
        y = -np.log10(table["padj"].clip(lower=np.finfo(float).tiny))
        direction = np.where(
            (table["padj"] < fdr) & (table["log2FoldChange"] > lfc), "up",
            np.where((table["padj"] < fdr) & (table["log2FoldChange"] < -lfc), "down", "neutral"),
        )

        fig = go.Figure()
        for key, name in (("neutral", "Not significant"), ("up", "Up in inflamed"), ("down", "Down in inflamed")):
            mask = direction == key
            if not mask.any():
                continue
            fig.add_trace(go.Scatter(
                x=table["log2FoldChange"][mask], y=y[mask],
                mode="markers", name=name,
                marker=dict(size=5, color=COLORS[key], opacity=0.5 if key == "neutral" else 0.85),
                hovertext=table["symbol"][mask], hoverinfo="text+x+y",
            ))

        top = result.top(label_top)
        for gene_id, row in top.iterrows():
            fig.add_annotation(
                x=row["log2FoldChange"], y=float(y.get(gene_id, 0)),
                text=str(row["symbol"]), showarrow=False, yshift=10,
                font=dict(size=10),
            )

        fig.add_hline(y=-np.log10(fdr), line_dash="dash", line_color="gray", opacity=0.5)
        fig.add_vline(x=lfc, line_dash="dash", line_color="gray", opacity=0.5)
        fig.add_vline(x=-lfc, line_dash="dash", line_color="gray", opacity=0.5)
        fig.update_layout(
            title=dict(text=title or f"Volcano plot ({result.method})", x=0.5, font=dict(size=18)),
            xaxis_title="Log2 Fold Change",
            yaxis_title="-log10 adjusted p-value",
            template=self.template,
            height=height,
            hovermode="closest",
        )
        return fig

    def method_comparison(
        self,
        comparison: MethodComparison,
        title: str = "DE method agreement",
        height: int = 550,
    ) -> go.Figure:
        """Scatter of log2 fold changes from two methods, top-list membership coloured."""
        a, b = comparison.method_a, comparison.method_b
        merged = comparison.merged.dropna(subset=[f"log2FoldChange_{a}", f"log2FoldChange_{b}"])
        if merged.empty:
            return self._empty_figure("No genes tested by both methods")

        in_a = merged[f"in_top_{a}"]
        in_b = merged[f"in_top_{b}"]
        groups = (
            ("neutral", "Neither top list", ~in_a & ~in_b),
            (a, f"Top {a} only", in_a & ~in_b),
            (b, f"Top {b} only", ~in_a & in_b),
            ("both", "Both top lists", in_a & in_b),
        )

        fig = go.Figure()
        for key, name, mask in groups:
            if not mask.any():
                continue
            sub = merged[mask]
            fig.add_trace(go.Scatter(
                x=sub[f"log2FoldChange_{a}"], y=sub[f"log2FoldChange_{b}"],
                mode="markers", name=name,
                marker=dict(size=5 if key == "neutral" else 9, color=COLORS.get(key, COLORS["neutral"])),
                hovertext=sub["symbol"], hoverinfo="text+x+y",
            ))

        fig.update_layout(
            title=dict(text=f"{title} (Spearman rho = {comparison.log2fc_spearman:.2f})", x=0.5, font=dict(size=18)),
            xaxis_title=f"{a} log2FC",
            yaxis_title=f"{b} log2FC",
            template=self.template,
            height=height,
        )
        return fig

    def ratio_heatmap(
        self,
        ratios: pd.DataFrame,
        value: str = "log2_ratio",
        title: str = "Inflamed / non-inflamed ratio per patient",
        height: int = 600,
    ) -> go.Figure:
        """Genes x patients heatmap of an inflammation_ratios() table."""
        if ratios.empty:
            return self._empty_figure("No ratios to display")

        label = "symbol" if "symbol" in ratios.columns else "gene_id"
        matrix = ratios.pivot_table(index=label, columns="patient", values=value, aggfunc="first", dropna=False)
        order = matrix.mean(axis=1).sort_values(ascending=False).index
        matrix = matrix.loc[order]

        fig = go.Figure(go.Heatmap(
            z=matrix.values,
            x=[str(c) for c in matrix.columns],
            y=list(matrix.index),
            colorscale="RdBu_r",
            zmid=0 if value == "log2_ratio" else None,
            colorbar=dict(title=value),
            hovertemplate="Gene: %{y}<br>Patient: %{x}<br>" + value + ": %{z:.2f}<extra></extra>",
        ))
        fig.update_layout(
            title=dict(text=title, x=0.5, font=dict(size=18)),
            xaxis_title="Patient",
            template=self.template,
            height=max(height, 18 * len(matrix.index) + 150),
        )
        return fig

    def enrichment_bar(
        self,
        result: EnrichmentResult,
        max_terms: int = 15,
        title: Optional[str] = None,
        height: int = 550,
    ) -> go.Figure:
        """Horizontal bar chart of the top terms by |score|."""
        top = result.get_top_terms(max_terms)
        if top.empty:
            return self._empty_figure("No significant terms")

        top = top.iloc[::-1]
        scores = top["score"].astype(float)
        names = [
            (name if len(name) <= 60 else name[:57] + "...")
            for name in top["term_name"].astype(str)
        ]
        fig = go.Figure(go.Bar(
            x=scores, y=names, orientation="h",
            marker_color=[COLORS["down"] if s < 0 else COLORS["up"] for s in scores],
            customdata=list(zip(top["source"].astype(str), top["padj"].astype(float))),
            hovertemplate="%{y}<br>%{customdata[0]}<br>score: %{x:.2f}<br>padj: %{customdata[1]:.2e}<extra></extra>",
        ))
        fig.update_layout(
            title=dict(text=title or f"Enrichment ({result.provenance.backend})", x=0.5, font=dict(size=18)),
            xaxis_title="Score",
            template=self.template,
            height=max(height, 28 * len(top) + 150),
            margin=dict(l=20, r=20, t=80, b=20),
        )
        return fig

    def _empty_figure(self, message: str) -> go.Figure:
        """Create an empty figure with a message."""
        fig = go.Figure()
        fig.add_annotation(
            text=message,
            xref="paper", yref="paper",
            x=0.5, y=0.5,
            showarrow=False,
            font=dict(size=16, color="gray"),
        )
        fig.update_layout(
            template=self.template,
            xaxis=dict(visible=False),
            yaxis=dict(visible=False),
        )
        return fig
