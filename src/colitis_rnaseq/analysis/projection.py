"""
Low-dimensional sample embeddings.

PCA and t-SNE come from scikit-learn, UMAP from umap-learn. Every
embedding takes a genes x samples expression matrix and returns
per-sample coordinates; the caller joins them to the metadata for
plotting.
"""

import logging
from dataclasses import dataclass
from typing import Literal, Optional

import numpy as np
import pandas as pd
import umap
from sklearn.decomposition import PCA
from sklearn.manifold import TSNE
from sklearn.preprocessing import StandardScaler

logger = logging.getLogger(__name__)

EmbeddingMethod = Literal["pca", "umap", "tsne"]

EMBEDDING_METHODS = ("pca", "umap", "tsne")
AXIS_PREFIX = {"pca": "PC", "umap": "UMAP", "tsne": "tSNE"}


@dataclass
class PCAResult:
    """Principal component scores, loadings and explained variance."""

    scores: pd.DataFrame  # samples x PCs
    loadings: pd.DataFrame  # genes x PCs
    explained_variance_ratio: pd.Series  # indexed by PC name

    @property
    def n_components(self) -> int:
        return self.scores.shape[1]

    def top_loading_genes(self, pc: str, n: int = 10) -> pd.Series:
        """Genes with the largest absolute loading on one component."""
        column = self.loadings[pc]
        order = column.abs().sort_values(ascending=False).index[:n]
        return column.loc[order]


def _samples_matrix(expr: pd.DataFrame, scale: bool) -> np.ndarray:
    X = expr.T.to_numpy(dtype=float)
    if scale:
        X = StandardScaler().fit_transform(X)
    return X


def compute_pca(
    expr: pd.DataFrame,
    n_components: int = 10,
    scale: bool = False,
) -> PCAResult:
    """
    Run PCA on a genes x samples expression matrix.

    Args:
        expr: Expression matrix (genes x samples), typically log2 CPM
        n_components: Number of components, clamped to min(samples, genes)
        scale: Standardize each gene to unit variance first

    Returns:
        PCAResult with scores indexed by sample
    """
    n_samples, n_genes = expr.shape[1], expr.shape[0]
    n = min(n_components, n_samples, n_genes)
    if n < 1:
        raise ValueError("Expression matrix is empty")

    pca = PCA(n_components=n)
    scores = pca.fit_transform(_samples_matrix(expr, scale))

    names = [f"PC{i + 1}" for i in range(n)]
    logger.info(
        "PCA on %d genes: first %d PCs explain %.1f%% of variance",
        n_genes, n, 100 * pca.explained_variance_ratio_.sum(),
    )
    return PCAResult(
        scores=pd.DataFrame(scores, index=expr.columns, columns=names),
        loadings=pd.DataFrame(pca.components_.T, index=expr.index, columns=names),
        explained_variance_ratio=pd.Series(pca.explained_variance_ratio_, index=names),
    )


def compute_embedding(
    expr: pd.DataFrame,
    method: EmbeddingMethod = "pca",
    n_components: int = 2,
    random_state: Optional[int] = 42,
    n_neighbors: int = 15,
    min_dist: float = 0.1,
    perplexity: float = 30.0,
) -> pd.DataFrame:
    """
    Embed samples into 2 or 3 dimensions.

    UMAP ``n_neighbors`` and t-SNE ``perplexity`` are clamped below the
    number of samples, which small cohorts would otherwise violate.

    Returns:
        DataFrame (samples x n_components) with columns like PC1, UMAP1, tSNE1
    """
    if method not in EMBEDDING_METHODS:
        raise ValueError(f"Unknown embedding method {method!r}; expected one of {EMBEDDING_METHODS}")
    if n_components not in (2, 3):
        raise ValueError(f"n_components must be 2 or 3, got {n_components}")

    n_samples = expr.shape[1]
    if n_samples <= n_components:
        raise ValueError(
            f"Need more than {n_components} samples for a {n_components}-D embedding, got {n_samples}"
        )

    X = _samples_matrix(expr, scale=False)

    if method == "pca":
        coords = PCA(n_components=n_components).fit_transform(X)
    elif method == "umap":
        neighbors = max(2, min(n_neighbors, n_samples - 1))
        reducer = umap.UMAP(
            n_components=n_components,
            n_neighbors=neighbors,
            min_dist=min_dist,
            random_state=random_state,
        )
        coords = reducer.fit_transform(X)
    else:
        perp = float(min(perplexity, max(1.0, (n_samples - 1) / 3.0)))
        tsne = TSNE(
            n_components=n_components,
            perplexity=perp,
            init="pca",
            random_state=random_state,
        )
        coords = tsne.fit_transform(X)

    prefix = AXIS_PREFIX[method]
    columns = [f"{prefix}{i + 1}" for i in range(n_components)]
    logger.debug("Computed %s embedding for %d samples on %d genes", method, n_samples, expr.shape[0])
    return pd.DataFrame(coords, index=expr.columns, columns=columns)


def embedding_frame(coords: pd.DataFrame, metadata: pd.DataFrame) -> pd.DataFrame:
    """Join embedding coordinates to metadata; one row per sample."""
    missing = set(coords.index) - set(metadata.index)
    if missing:
        raise ValueError(f"Embedding samples missing from metadata: {sorted(missing)[:5]}")
    frame = coords.join(metadata, how="left")
    if len(frame) != len(coords):
        raise ValueError("Embedding row count does not match sample count")
    return frame
