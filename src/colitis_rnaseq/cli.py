import logging
import os
import subprocess
import sys
from pathlib import Path
from typing import Optional

import click
import pandas as pd

from colitis_rnaseq.analysis.de_analysis import DE_METHODS
from colitis_rnaseq.config import ReportConfig, load_config
from colitis_rnaseq.pipeline import ENRICHMENT_SERVICES, ReportPipeline

APP_PATH = Path(__file__).parent / "report" / "app.py"

logger = logging.getLogger(__name__)


def _input_options(func):
    func = click.option(
        "--metadata",
        "metadata_path",
        type=click.Path(exists=True, dir_okay=False, path_type=Path),
        help="GEO series-matrix metadata file (overrides COLITIS_METADATA_PATH).",
    )(func)
    func = click.option(
        "--counts",
        "counts_path",
        type=click.Path(exists=True, dir_okay=False, path_type=Path),
        help="Raw count matrix, TSV or TSV.gz (overrides COLITIS_COUNTS_PATH).",
    )(func)
    return func


def _build_config(counts_path: Optional[Path], metadata_path: Optional[Path]) -> ReportConfig:
    config = load_config()
    if counts_path is not None:
        config.counts_path = counts_path
    if metadata_path is not None:
        config.metadata_path = metadata_path
    try:
        config.require_inputs()
    except ValueError as exc:
        raise click.ClickException(str(exc)) from exc
    return config


def _echo_table(df: pd.DataFrame) -> None:
    if df.empty:
        click.echo("  (no rows)")
        return
    with pd.option_context("display.width", 160, "display.max_columns", 20):
        click.echo(df.to_string())


@click.group()
@click.option("-v", "--verbose", is_flag=True, help="Enable verbose logging.")
def cli(verbose: bool) -> None:
    """Exploratory report for paired inflamed / non-inflamed colitis RNA-Seq."""
    logging.basicConfig(level=logging.DEBUG if verbose else logging.INFO)


@cli.command("summary")
@_input_options
def summary_command(counts_path: Optional[Path], metadata_path: Optional[Path]) -> None:
    """Load the cohort and print sample and gene filtering statistics."""
    pipeline = ReportPipeline(_build_config(counts_path, metadata_path))
    try:
        cohort = pipeline.cohort
        filtered = pipeline.filtered
    except ValueError as exc:
        raise click.ClickException(str(exc)) from exc

    click.echo(f"Samples: {cohort.n_samples}")
    click.echo(f"Genes: {cohort.n_genes}")
    click.echo(f"Genes passing prevalence filter: {filtered.n_retained}")
    click.echo(f"Top-variance subset: {len(filtered.top_variance)}")
    for field in pipeline.metadata_fields():
        counts = cohort.metadata[field].value_counts()
        click.echo(f"{field}: {counts.to_dict()}")


@cli.command("de")
@_input_options
@click.option(
    "--top",
    "top_n",
    type=click.IntRange(1, 1000),
    default=None,
    help="Number of top genes per method (default from configuration).",
)
@click.option(
    "--output-dir",
    type=click.Path(file_okay=False, path_type=Path),
    default=None,
    help="Also write each method's full result table as TSV here.",
)
def de_command(
    counts_path: Optional[Path],
    metadata_path: Optional[Path],
    top_n: Optional[int],
    output_dir: Optional[Path],
) -> None:
    """Run DESeq2 and edgeR models and print their top genes."""
    pipeline = ReportPipeline(_build_config(counts_path, metadata_path))
    try:
        results = pipeline.de_results()
        comparison = pipeline.comparison(top_n)
    except ValueError as exc:
        raise click.ClickException(str(exc)) from exc

    for method in DE_METHODS:
        result = results[method]
        click.echo(f"\n== {method} ({result.provenance.design}) ==")
        click.echo(
            f"Tested {result.genes_tested} genes: "
            f"{result.n_upregulated} up, {result.n_downregulated} down"
        )
        _echo_table(result.top(top_n))
        if output_dir is not None:
            output_dir.mkdir(parents=True, exist_ok=True)
            path = output_dir / f"de_{method}.tsv"
            result.table.to_csv(path, sep="\t", index_label="gene_id")
            click.echo(f"Wrote {path}")

    click.echo(f"\n{comparison!r}")
    click.echo(f"Jaccard index of top lists: {comparison.jaccard:.2f}")


@cli.command("enrich")
@_input_options
@click.option(
    "--service",
    type=click.Choice(ENRICHMENT_SERVICES),
    default="gprofiler",
    show_default=True,
    help="Enrichment service to query.",
)
@click.option(
    "--method",
    type=click.Choice(DE_METHODS),
    default="deseq2",
    show_default=True,
    help="DE result the input genes are taken from.",
)
@click.option(
    "--max-terms",
    type=click.IntRange(1, 500),
    default=20,
    show_default=True,
    help="Number of terms to print.",
)
def enrich_command(
    counts_path: Optional[Path],
    metadata_path: Optional[Path],
    service: str,
    method: str,
    max_terms: int,
) -> None:
    """Run pathway enrichment on the strongest DE genes."""
    pipeline = ReportPipeline(_build_config(counts_path, metadata_path))
    try:
        result = pipeline.enrichment(service, method)
    except ValueError as exc:
        raise click.ClickException(str(exc)) from exc

    prov = result.provenance
    click.echo(f"{prov.backend}: {len(prov.input_genes)} input genes, {result.n_terms} terms")
    if prov.unmapped_genes:
        click.echo(f"Unmapped symbols: {', '.join(prov.unmapped_genes)}", err=True)
    columns = ["term_id", "term_name", "source", "score", "padj", "overlap_size"]
    _echo_table(result.get_top_terms(max_terms)[columns])


@cli.command("present")
@_input_options
@click.option("--port", type=click.IntRange(1, 65535), default=8501, show_default=True)
def present_command(counts_path: Optional[Path], metadata_path: Optional[Path], port: int) -> None:
    """Launch the interactive slide deck with streamlit."""
    config = _build_config(counts_path, metadata_path)
    env = dict(os.environ)
    env["COLITIS_COUNTS_PATH"] = str(config.counts_path)
    env["COLITIS_METADATA_PATH"] = str(config.metadata_path)

    cmd = [sys.executable, "-m", "streamlit", "run", str(APP_PATH), "--server.port", str(port)]
    logger.info("Running: %s", " ".join(cmd))
    completed = subprocess.run(cmd, env=env, check=False)
    if completed.returncode != 0:
        raise click.ClickException(f"streamlit exited with status {completed.returncode}")


def main() -> None:  # pragma: no cover - entry point
    cli()


if __name__ == "__main__":  # pragma: no cover
    main()
