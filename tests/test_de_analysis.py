"""Tests for the DESeq2 / edgeR DE engine and result views."""

import warnings
from unittest.mock import MagicMock, patch

import numpy as np
import pandas as pd
import pytest

from colitis_rnaseq.analysis.de_analysis import (
    DifferentialExpressionAnalyzer,
    build_design,
    compare_methods,
    tmm_factors,
)
from colitis_rnaseq.analysis.de_result import DE_COLUMNS, significant_genes
from colitis_rnaseq.config import DEConfig

from conftest import N_DE_GENES, make_cohort, make_de_result


# ---------------------------------------------------------------------------
# Design
# ---------------------------------------------------------------------------


class TestBuildDesign:
    def test_paired_when_every_patient_has_both(self, cohort):
        design, paired = build_design(cohort.metadata, DEConfig())
        assert paired
        assert set(design["condition"]) == {"inflamed", "noninflamed"}
        assert set(design["block"]) == {"P1", "P2", "P3", "P4"}

    def test_unpaired_when_disabled(self, cohort):
        design, paired = build_design(cohort.metadata, DEConfig(paired=False))
        assert not paired
        assert "block" not in design.columns

    def test_falls_back_when_patient_lacks_condition(self, cohort):
        metadata = cohort.metadata.copy()
        metadata.loc[metadata["patient"] == "P1", "inflammation"] = "inflamed"
        design, paired = build_design(metadata, DEConfig())
        assert not paired

    def test_other_levels_dropped(self, cohort):
        metadata = cohort.metadata.copy()
        metadata.iloc[0, metadata.columns.get_loc("inflammation")] = "unknown"
        design, _ = build_design(metadata, DEConfig(paired=False))
        assert len(design) == len(metadata) - 1

    def test_missing_level_raises(self, cohort):
        metadata = cohort.metadata.assign(inflammation="inflamed")
        with pytest.raises(ValueError, match="No samples"):
            build_design(metadata, DEConfig())

    def test_missing_condition_column(self, cohort):
        with pytest.raises(ValueError, match="no condition column"):
            build_design(cohort.metadata.drop(columns="inflammation"), DEConfig())


# ---------------------------------------------------------------------------
# edgeR path
# ---------------------------------------------------------------------------


class TestTMMFactors:
    def test_factors_indexed_by_sample(self):
        counts = pd.DataFrame({"a": [10, 20, 30], "b": [5, 40, 30]})
        returned = pd.DataFrame({"norm.factors": [0.9, 1.1]}, index=["a", "b"])
        with patch("colitis_rnaseq.analysis.de_analysis.conorm.tmm_norm_factors", return_value=returned) as mock_tmm:
            factors = tmm_factors(counts)
        mock_tmm.assert_called_once()
        assert list(factors.index) == ["a", "b"]
        assert factors["b"] == pytest.approx(1.1)

    def test_composition_shift_detected(self):
        rng = np.random.RandomState(42)
        a = rng.poisson(100, size=200).astype(float)
        b = a.copy()
        b[:20] *= 20  # a few genes dominate sample b
        factors = tmm_factors(pd.DataFrame({"a": a, "b": b}))
        assert factors["b"] < factors["a"]

    def test_zero_library_raises(self):
        with pytest.raises(ValueError, match="zero library"):
            tmm_factors(pd.DataFrame({"a": [1, 2], "b": [0, 0]}))


class TestEdgeRModel:
    def test_condition_is_last_coefficient(self, cohort):
        def fake_lrt(fit):
            n_genes = mock_dge_cls.call_args.kwargs["counts"].shape[0]
            lrt = MagicMock()
            lrt.table = pd.DataFrame({
                "logFC": np.full(n_genes, 2.0),
                "logCPM": 5.0,
                "LR": 10.0,
                "PValue": np.full(n_genes, 1e-4),
            })
            return lrt

        with patch("colitis_rnaseq.analysis.de_analysis.DGEList") as mock_dge_cls, \
                patch("colitis_rnaseq.analysis.de_analysis.glmLRT", side_effect=fake_lrt):
            mock_dge_cls.return_value.common_dispersion = 0.05
            result = DifferentialExpressionAnalyzer().run(cohort.counts, cohort.metadata, method="edger")

        dge = mock_dge_cls.return_value
        model = dge.estimateGLMCommonDisp.call_args.kwargs["design"]
        inflamed = (cohort.metadata["inflammation"] == "inflamed").to_numpy(dtype=float)
        np.testing.assert_array_equal(model[:, -1], inflamed)
        # intercept + 3 patient blocks + condition
        assert model.shape == (16, 5)
        dge.glmFit.assert_called_once()
        assert (result.table["log2FoldChange"] == 2.0).all()
        assert result.table["padj"].notna().all()

    def test_fit_warnings_reach_caller(self, cohort):
        from colitis_rnaseq.analysis import de_analysis

        real_lrt = de_analysis.glmLRT

        def noisy_lrt(fit):
            warnings.warn("GLM iteration limit reached", RuntimeWarning)
            return real_lrt(fit)

        with patch("colitis_rnaseq.analysis.de_analysis.glmLRT", side_effect=noisy_lrt):
            with pytest.warns(RuntimeWarning, match="iteration limit"):
                DifferentialExpressionAnalyzer().run(cohort.counts, cohort.metadata, method="edger")


# ---------------------------------------------------------------------------
# Result views
# ---------------------------------------------------------------------------


class TestSignificantGenes:
    def test_thresholds_are_strict(self):
        table = make_de_result().table
        table.loc["G4", "padj"] = 0.07
        sig = significant_genes(table, 0.07, 1.0)
        assert list(sig.index) == ["G1", "G2", "G3"]

    def test_missing_padj_never_significant(self):
        sig = significant_genes(make_de_result().table, 0.07, 1.0)
        assert "G7" not in sig.index

    def test_sorted_by_padj(self):
        sig = significant_genes(make_de_result().table, 0.07, 1.0)
        assert sig["padj"].is_monotonic_increasing


class TestDEResult:
    def test_top_respects_thresholds_and_size(self):
        result = make_de_result(top_n=2)
        top = result.top()
        assert list(top.index) == ["G1", "G2"]
        assert (top["padj"] < 0.07).all()
        assert (top["log2FoldChange"].abs() > 1.0).all()

    def test_direction_counts(self):
        result = make_de_result()
        assert result.n_upregulated == 2
        assert result.n_downregulated == 2

    def test_get_gene_by_symbol_or_id(self):
        result = make_de_result()
        assert result.get_gene("S100A8")["log2FoldChange"] == 3.0
        assert result.get_gene("G3")["symbol"] == "REG1A"
        assert result.get_gene("MISSING") is None


class TestCompareMethods:
    def test_overlap_sets(self):
        a = make_de_result("deseq2")
        rows_b = [
            ("G1", "CXCL8", 3.5, 1e-9, 1e-7),
            ("G3", "REG1A", -2.0, 1e-5, 1e-3),
            ("G5", "ACTB", 1.5, 1e-4, 0.02),
            ("G8", "EXTRA", 2.0, 1e-6, 1e-4),
        ]
        b = make_de_result("edger", rows=rows_b)
        comparison = compare_methods(a, b)

        assert set(comparison.shared) == {"G1", "G3"}
        assert set(comparison.only_a) == {"G2", "G4"}
        assert set(comparison.only_b) == {"G5", "G8"}
        assert comparison.jaccard == pytest.approx(2 / 6)
        assert "log2FoldChange_deseq2" in comparison.merged.columns
        assert "in_top_edger" in comparison.merged.columns
        assert list(comparison.merged.index) == ["G1", "G3", "G5"]

    def test_identical_results_agree(self):
        a = make_de_result("deseq2")
        b = make_de_result("edger")
        comparison = compare_methods(a, b)
        assert comparison.jaccard == 1.0
        assert comparison.log2fc_spearman == pytest.approx(1.0)


# ---------------------------------------------------------------------------
# Full runs on synthetic counts
# ---------------------------------------------------------------------------


@pytest.fixture(scope="module")
def de_run():
    cohort = make_cohort()
    analyzer = DifferentialExpressionAnalyzer(DEConfig())
    results = analyzer.run_both(cohort.counts, cohort.metadata, symbols=cohort.genes["symbol"])
    return cohort, results


class TestAnalyzerRun:
    @pytest.mark.parametrize("method", ["deseq2", "edger"])
    def test_table_layout(self, de_run, method):
        _, results = de_run
        result = results[method]
        assert list(result.table.columns) == DE_COLUMNS
        assert result.provenance.design == "~block + condition"
        assert result.provenance.n_test_samples == 8

    @pytest.mark.parametrize("method", ["deseq2", "edger"])
    def test_recovers_planted_genes(self, de_run, method):
        cohort, results = de_run
        planted = set(cohort.counts.index[:N_DE_GENES])
        top = results[method].top()
        assert len(top) > 0
        assert len(top) <= 20
        assert set(top.index) <= planted
        assert (top["log2FoldChange"] > 0).all()
        assert top["padj"].is_monotonic_increasing

    @pytest.mark.parametrize("method", ["deseq2", "edger"])
    def test_fold_change_magnitude(self, de_run, method):
        cohort, results = de_run
        planted = cohort.counts.index[:N_DE_GENES]
        lfc = results[method].table.loc[planted, "log2FoldChange"]
        assert lfc.median() == pytest.approx(3.0, abs=0.75)

    def test_symbols_attached(self, de_run):
        cohort, results = de_run
        gene = cohort.counts.index[0]
        assert results["deseq2"].table.loc[gene, "symbol"] == "GENE0"

    def test_methods_agree(self, de_run):
        _, results = de_run
        comparison = compare_methods(results["deseq2"], results["edger"])
        assert comparison.log2fc_spearman > 0.8
        assert len(comparison.shared) >= 10

    def test_unknown_method(self, cohort):
        analyzer = DifferentialExpressionAnalyzer()
        with pytest.raises(ValueError, match="Unknown DE method"):
            analyzer.run(cohort.counts, cohort.metadata, method="limma")

    def test_misaligned_inputs(self, cohort):
        analyzer = DifferentialExpressionAnalyzer()
        counts = cohort.counts[cohort.counts.columns[::-1]]
        with pytest.raises(ValueError, match="aligned"):
            analyzer.run(counts, cohort.metadata, method="edger")
