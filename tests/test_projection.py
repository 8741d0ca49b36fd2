"""Tests for PCA, UMAP and t-SNE sample embeddings."""

from unittest.mock import patch

import numpy as np
import pandas as pd
import pytest

from colitis_rnaseq.analysis.filtering import filter_cohort
from colitis_rnaseq.analysis.projection import (
    compute_embedding,
    compute_pca,
    embedding_frame,
)


@pytest.fixture
def expr(cohort):
    return filter_cohort(cohort).log_expr


class TestComputePCA:
    def test_shapes_and_names(self, expr):
        result = compute_pca(expr, n_components=5)
        assert list(result.scores.columns) == ["PC1", "PC2", "PC3", "PC4", "PC5"]
        assert list(result.scores.index) == list(expr.columns)
        assert result.loadings.shape == (len(expr), 5)
        assert result.n_components == 5

    def test_explained_variance_decreasing(self, expr):
        ratio = compute_pca(expr, n_components=5).explained_variance_ratio
        assert (np.diff(ratio.to_numpy()) <= 1e-12).all()
        assert 0 < ratio.sum() <= 1.0

    def test_components_clamped_to_samples(self, expr):
        result = compute_pca(expr, n_components=100)
        assert result.n_components == expr.shape[1]

    def test_pc1_separates_inflammation(self, cohort, expr):
        scores = compute_pca(expr, n_components=2).scores["PC1"]
        inflamed = cohort.metadata["inflammation"] == "inflamed"
        gap = abs(scores[inflamed].mean() - scores[~inflamed].mean())
        assert gap > scores.std()

    def test_top_loading_genes(self, expr):
        result = compute_pca(expr, n_components=2)
        top = result.top_loading_genes("PC1", n=5)
        assert len(top) == 5
        assert top.abs().is_monotonic_decreasing


class TestComputeEmbedding:
    @pytest.mark.parametrize("n_components", [2, 3])
    def test_pca_embedding(self, expr, n_components):
        coords = compute_embedding(expr, method="pca", n_components=n_components)
        assert coords.shape == (expr.shape[1], n_components)
        assert coords.columns[0] == "PC1"

    def test_tsne_small_cohort(self, expr):
        coords = compute_embedding(expr, method="tsne", n_components=2, random_state=0)
        assert list(coords.columns) == ["tSNE1", "tSNE2"]
        assert list(coords.index) == list(expr.columns)
        assert np.isfinite(coords.to_numpy()).all()

    def test_umap_neighbors_clamped(self, expr):
        n = expr.shape[1]
        with patch("colitis_rnaseq.analysis.projection.umap.UMAP") as mock_umap:
            mock_umap.return_value.fit_transform.return_value = np.zeros((n, 3))
            coords = compute_embedding(expr, method="umap", n_components=3, n_neighbors=50)

        kwargs = mock_umap.call_args.kwargs
        assert kwargs["n_neighbors"] == n - 1
        assert kwargs["n_components"] == 3
        assert list(coords.columns) == ["UMAP1", "UMAP2", "UMAP3"]

    def test_unknown_method(self, expr):
        with pytest.raises(ValueError, match="Unknown embedding method"):
            compute_embedding(expr, method="mds")

    def test_invalid_components(self, expr):
        with pytest.raises(ValueError, match="n_components"):
            compute_embedding(expr, n_components=4)

    def test_too_few_samples(self):
        expr = pd.DataFrame(np.ones((10, 2)), columns=["a", "b"])
        with pytest.raises(ValueError, match="Need more than"):
            compute_embedding(expr, n_components=2)


class TestEmbeddingFrame:
    def test_one_row_per_sample(self, cohort, expr):
        coords = compute_embedding(expr, method="pca")
        frame = embedding_frame(coords, cohort.metadata)
        assert len(frame) == cohort.n_samples
        assert {"PC1", "PC2", "inflammation", "patient"} <= set(frame.columns)

    def test_unknown_samples_raise(self, cohort, expr):
        coords = compute_embedding(expr, method="pca").rename(index={"S01": "ghost"})
        with pytest.raises(ValueError, match="missing from metadata"):
            embedding_frame(coords, cohort.metadata)
