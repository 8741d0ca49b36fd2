"""Tests for the click command-line interface."""

from unittest.mock import MagicMock, patch

import pandas as pd
import pytest
from click.testing import CliRunner

from colitis_rnaseq.analysis.de_analysis import compare_methods
from colitis_rnaseq.analysis.de_result import EnrichmentProvenance, EnrichmentResult
from colitis_rnaseq.cli import cli

from conftest import make_cohort, make_de_result


@pytest.fixture
def inputs(tmp_path):
    counts = tmp_path / "counts.tsv.gz"
    metadata = tmp_path / "series.txt.gz"
    counts.write_bytes(b"")
    metadata.write_bytes(b"")
    return ["--counts", str(counts), "--metadata", str(metadata)]


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in ("COLITIS_COUNTS_PATH", "COLITIS_METADATA_PATH", "COLITIS_HGNC_CACHE"):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setattr("colitis_rnaseq.config.load_dotenv", lambda: None)


def _make_pipeline():
    pipeline = MagicMock()
    cohort = make_cohort()
    pipeline.cohort = cohort
    pipeline.filtered.n_retained = 270
    pipeline.filtered.top_variance = range(100)
    pipeline.metadata_fields.return_value = ["inflammation", "patient"]
    results = {"deseq2": make_de_result("deseq2"), "edger": make_de_result("edger")}
    pipeline.de_results.return_value = results
    pipeline.comparison.return_value = compare_methods(results["deseq2"], results["edger"])
    return pipeline


class TestCli:
    def test_missing_inputs(self):
        result = CliRunner().invoke(cli, ["summary"])
        assert result.exit_code != 0
        assert "not configured" in result.output

    def test_summary(self, inputs):
        with patch("colitis_rnaseq.cli.ReportPipeline", return_value=_make_pipeline()):
            result = CliRunner().invoke(cli, ["summary"] + inputs)
        assert result.exit_code == 0, result.output
        assert "Samples: 16" in result.output
        assert "Genes passing prevalence filter: 270" in result.output

    def test_cli_paths_override_env(self, inputs, monkeypatch, tmp_path):
        monkeypatch.setenv("COLITIS_COUNTS_PATH", str(tmp_path / "elsewhere.tsv"))
        with patch("colitis_rnaseq.cli.ReportPipeline", return_value=_make_pipeline()) as mock_cls:
            result = CliRunner().invoke(cli, ["summary"] + inputs)
        assert result.exit_code == 0, result.output
        config = mock_cls.call_args.args[0]
        assert str(config.counts_path) == inputs[1]

    def test_de(self, inputs, tmp_path):
        out = tmp_path / "out"
        with patch("colitis_rnaseq.cli.ReportPipeline", return_value=_make_pipeline()):
            result = CliRunner().invoke(cli, ["de", "--output-dir", str(out)] + inputs)
        assert result.exit_code == 0, result.output
        assert "== deseq2" in result.output
        assert "CXCL8" in result.output
        assert (out / "de_edger.tsv").exists()

    def test_value_error_becomes_click_error(self, inputs):
        pipeline = _make_pipeline()
        pipeline.de_results.side_effect = ValueError("Count columns must be aligned")
        with patch("colitis_rnaseq.cli.ReportPipeline", return_value=pipeline):
            result = CliRunner().invoke(cli, ["de"] + inputs)
        assert result.exit_code == 1
        assert "Count columns must be aligned" in result.output

    def test_enrich(self, inputs):
        pipeline = _make_pipeline()
        provenance = EnrichmentProvenance(
            backend="enrichr", organism="hsapiens", sources=["KEGG_2021_Human"],
            significance_threshold=0.05, input_genes=["CXCL8", "S100A8", "REG1A"],
        )
        table = pd.DataFrame({
            "term_id": ["IL-17"], "term_name": ["IL-17 signaling pathway"], "source": ["KEGG_2021_Human"],
            "score": [250.0], "pvalue": [1e-7], "padj": [1e-5], "set_size": [94],
            "overlap_size": [3], "overlap_genes": [["CXCL8", "S100A8", "REG1A"]],
        })
        pipeline.enrichment.return_value = EnrichmentResult(provenance=provenance, table=table)
        with patch("colitis_rnaseq.cli.ReportPipeline", return_value=pipeline):
            result = CliRunner().invoke(cli, ["enrich", "--service", "enrichr"] + inputs)
        assert result.exit_code == 0, result.output
        pipeline.enrichment.assert_called_once_with("enrichr", "deseq2")
        assert "IL-17 signaling pathway" in result.output

    def test_present_runs_streamlit(self, inputs):
        completed = MagicMock(returncode=0)
        with patch("colitis_rnaseq.cli.subprocess.run", return_value=completed) as mock_run:
            result = CliRunner().invoke(cli, ["present", "--port", "8600"] + inputs)
        assert result.exit_code == 0, result.output
        cmd = mock_run.call_args.args[0]
        assert cmd[1:4] == ["-m", "streamlit", "run"]
        assert cmd[-1] == "8600"
        env = mock_run.call_args.kwargs["env"]
        assert env["COLITIS_COUNTS_PATH"] == inputs[1]
