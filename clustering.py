"""
Hierarchical clustering of genes for heatmap row ordering.

Counts are size-factor normalized, variance-stabilized, and clustered on
Euclidean distance with a pluggable linkage method. The resulting order is a
display artifact only.
"""

from dataclasses import dataclass
from typing import List, Optional, Sequence
import logging
import numpy as np
import pandas as pd
from scipy.cluster.hierarchy import linkage, leaves_list
from scipy.spatial.distance import pdist
from pydeseq2.preprocessing import deseq2_norm
from analysis_errors import ClusteringFailed
from count_data import CountMatrix
from significance import SignificantGenes

logger = logging.getLogger(__name__)

MIN_GENES_TO_CLUSTER = 3

# R hclust method name -> SciPy linkage method. SciPy's "ward" on Euclidean
# distances is R's "ward.D2".
LINKAGE_METHODS = {
    "ward.D2": "ward",
    "complete": "complete",
    "average": "average",
    "single": "single",
}


@dataclass(frozen=True)
class ClusterOrdering:
    """Display order for one (comparison, linkage method) pair."""

    genes: List[str]  # Permutation of the requested subset
    method: str
    clustered: bool  # False when the input order was kept
    warning: Optional[str] = None


def estimate_size_factors(counts: pd.DataFrame) -> pd.Series:
    """
    Median-of-ratios size factors (PyDESeq2 `deseq2_norm`) for a genes × samples frame.

    Falls back to total-count scaling when no gene is expressed in every sample.
    """
    positive = counts[(counts > 0).all(axis=1)]
    if positive.empty:
        totals = counts.sum(axis=0).astype(float)
        totals[totals == 0] = 1.0
        return totals / np.exp(np.log(totals).mean())
    # PyDESeq2 works on samples × genes
    _, size_factors = deseq2_norm(positive.T.to_numpy(dtype=float))
    return pd.Series(np.asarray(size_factors, dtype=float), index=counts.columns)


def estimate_dispersion(normalized: pd.DataFrame, size_factors: pd.Series) -> Optional[float]:
    """
    Method-of-moments common dispersion: var ≈ mean * E[1/s] + alpha * mean².

    Returns None when the data show no overdispersion.
    """
    means = normalized.mean(axis=1)
    variances = normalized.var(axis=1, ddof=1)
    expressed = means > 0
    if not expressed.any():
        return None
    inv_sf = float((1.0 / size_factors).mean())
    alphas = (variances[expressed] - means[expressed] * inv_sf) / means[expressed] ** 2
    alphas = alphas[np.isfinite(alphas) & (alphas > 0)]
    if alphas.empty:
        return None
    return float(alphas.mean())


def variance_stabilize(normalized: pd.DataFrame, dispersion: Optional[float]) -> pd.DataFrame:
    """
    DESeq2's closed-form VST for a constant dispersion, on a log2-like scale.

    Without a usable dispersion the transform degrades to log2(x + 1).
    """
    if dispersion is None or dispersion <= 0:
        return np.log2(normalized + 1)
    a = dispersion
    transformed = (2 * np.arcsinh(np.sqrt(a * normalized)) - np.log(a) - np.log(4)) / np.log(2)
    return transformed


def order_genes(
    matrix: CountMatrix,
    gene_subset: Sequence[str],
    method: str = "ward.D2",
    samples: Optional[Sequence[str]] = None,
) -> List[str]:
    """
    Order a gene subset by hierarchical clustering of its count profiles.

    Args:
        matrix: Count matrix (genes × samples)
        gene_subset: Genes to order
        method: "ward.D2", "complete", "average" or "single"
        samples: Restrict to these samples (default: all)

    Returns:
        Permutation of ``gene_subset``. Genes absent from the matrix follow the
        clustered genes in their input order. Fewer than 3 clusterable genes
        returns the subset unchanged.

    Raises:
        ClusteringFailed: on non-finite transformed values, all-identical
            profiles, or a linkage error
    """
    if method not in LINKAGE_METHODS:
        raise ValueError(
            f"Unsupported linkage method '{method}'. Supported: {', '.join(LINKAGE_METHODS)}"
        )
    gene_subset = list(gene_subset)
    present = [g for g in dict.fromkeys(gene_subset) if g in matrix.counts.index]
    if len(present) < MIN_GENES_TO_CLUSTER:
        return gene_subset

    columns = list(samples) if samples is not None else matrix.samples
    counts = matrix.counts.loc[:, columns]
    size_factors = estimate_size_factors(counts)
    normalized_all = counts.div(size_factors, axis=1)
    dispersion = estimate_dispersion(normalized_all, size_factors)
    vst = variance_stabilize(normalized_all.loc[present], dispersion)

    values = vst.values.astype(float)
    if not np.isfinite(values).all():
        raise ClusteringFailed(
            "Variance-stabilized values contain NaN or infinite entries",
            details={"method": method},
        )

    distances = pdist(values, metric="euclidean")
    if not np.any(distances > 0):
        raise ClusteringFailed(
            "All selected genes have identical expression profiles; nothing to cluster",
            details={"method": method},
        )

    try:
        tree = linkage(distances, method=LINKAGE_METHODS[method])
        order = leaves_list(tree)
    except (ValueError, FloatingPointError) as e:
        raise ClusteringFailed(f"Hierarchical clustering failed: {str(e)}", details={"method": method})

    ordered = [present[i] for i in order]
    placed = set(ordered)
    return ordered + [g for g in gene_subset if g not in placed]


def order_with_fallback(
    matrix: CountMatrix,
    gene_subset: Sequence[str],
    method: str = "ward.D2",
    samples: Optional[Sequence[str]] = None,
    comparison: Optional[str] = None,
) -> ClusterOrdering:
    """
    Cluster, falling back to the input order on ClusteringFailed.

    The fallback is reported through ``ClusterOrdering.warning`` and logged.
    """
    try:
        genes = order_genes(matrix, gene_subset, method, samples)
    except ClusteringFailed as e:
        e.comparison = comparison
        logger.warning(f"Clustering fell back to input order: {str(e)}")
        return ClusterOrdering(
            genes=list(gene_subset),
            method=method,
            clustered=False,
            warning=f"Clustering failed ({e.message}); showing genes in ranked order.",
        )
    clustered = len(set(gene_subset) & set(matrix.genes)) >= MIN_GENES_TO_CLUSTER
    return ClusterOrdering(genes=genes, method=method, clustered=clustered)


def heatmap_genes(significant: SignificantGenes, per_side: int = 20) -> List[str]:
    """Default heatmap subset: top ``per_side`` up plus top ``per_side`` down genes."""
    return [g.gene for g in significant.up[:per_side]] + [
        g.gene for g in significant.down[:per_side]
    ]
