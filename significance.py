"""
Significance classification of DE results.

Thresholds can change at any time after the DE run; reclassification is a
single pass over the stored GeneResult list and never refits the model.
"""

from dataclasses import dataclass
from typing import Dict, List, Sequence
from de_analysis import GeneResult


@dataclass(frozen=True)
class SignificantGenes:
    """Up/down partitions of one comparison at a given threshold."""

    up: List[GeneResult]  # log2FC descending
    down: List[GeneResult]  # log2FC ascending (most negative first)
    padj_threshold: float
    lfc_threshold: float

    @property
    def n_significant(self) -> int:
        return len(self.up) + len(self.down)


def classify(
    results: Sequence[GeneResult],
    padj_threshold: float = 0.05,
    lfc_threshold: float = 1.0,
) -> SignificantGenes:
    """
    Partition genes into up- and down-regulated sets.

    up:   padj < padj_threshold and log2FC >  lfc_threshold
    down: padj < padj_threshold and log2FC < -lfc_threshold

    Sorting is stable, so genes with equal fold change keep their input order.
    """
    if not 0 <= padj_threshold <= 1:
        raise ValueError(f"padj_threshold must be in [0, 1], got {padj_threshold}")
    if lfc_threshold < 0:
        raise ValueError(f"lfc_threshold must be non-negative, got {lfc_threshold}")

    up, down = [], []
    for gene in results:
        if not gene.adjusted_p_value < padj_threshold:
            continue
        if gene.log2_fold_change > lfc_threshold:
            up.append(gene)
        elif gene.log2_fold_change < -lfc_threshold:
            down.append(gene)

    up.sort(key=lambda g: g.log2_fold_change, reverse=True)
    down.sort(key=lambda g: g.log2_fold_change)
    return SignificantGenes(up, down, padj_threshold, lfc_threshold)


def summarize_counts(results: Sequence[GeneResult], significant: SignificantGenes) -> Dict[str, int]:
    """Gene counts for summaries and exports."""
    return {
        "total_tested": len(results),
        "n_up": len(significant.up),
        "n_down": len(significant.down),
        "n_significant": significant.n_significant,
    }
