"""
Demo dataset generator for the transcriptome analysis pipeline.

Generates reproducible negative-binomial count data with planted
differential expression, plus matching gene sets for enrichment demos.
"""

from typing import Dict, List, Sequence, Tuple
import numpy as np
import pandas as pd
from count_data import CountMatrix, IdentifierType, SampleMetadata

CONTROL = "Control"
TREATMENT = "Treatment"
STIMULATED = "Stimulated"

# Planted effects relative to Control
UPREGULATED = {
    TREATMENT: ["VEGFA", "COL1A1", "FN1", "MMP1", "FGF2", "TGFB1", "SERPINE1", "CTGF",
                "THBS1", "TNC", "POSTN", "LOX"],
    STIMULATED: ["IL1B", "IL6", "CXCL8", "TNF", "CCL2", "PTGS2", "NFKBIA", "ICAM1",
                 "SOD2", "IRF1", "CXCL1", "CCL20"],
}
DOWNREGULATED = {
    TREATMENT: ["FLG", "LOR", "CLDN1", "IVL", "TIMP1", "KRT1", "KRT10", "DSG1",
                "CDSN", "SPRR1A", "TGM1", "AQP3"],
    STIMULATED: ["MITF", "TYR", "TYRP1", "DCT", "PMEL", "MLANA"],
}
FOLD_CHANGE = 4.0
DISPERSION = 0.05


def demo_gene_names(n_genes: int = 300) -> List[str]:
    """Planted genes first (in first-appearance order), then GENE001, GENE002, ..."""
    planted: List[str] = []
    for genes in list(UPREGULATED.values()) + list(DOWNREGULATED.values()):
        for gene in genes:
            if gene not in planted:
                planted.append(gene)
    n_background = max(0, n_genes - len(planted))
    return planted + [f"GENE{i:03d}" for i in range(1, n_background + 1)]


def load_demo_dataset(
    n_genes: int = 300,
    n_replicates: int = 3,
    conditions: Sequence[str] = (CONTROL, TREATMENT, STIMULATED),
    seed: int = 42,
) -> Tuple[CountMatrix, SampleMetadata]:
    """
    Generate a synthetic RNA-seq experiment.

    Args:
        n_genes: Total number of genes (planted genes included)
        n_replicates: Samples per condition
        conditions: Condition labels; the first is the baseline the planted
            effects are relative to
        seed: Seed for the random generator

    Returns:
        (CountMatrix, SampleMetadata). Samples are named {condition}_Rep{i}.

    Dataset characteristics:
    - Base means drawn log-normally, so most genes are lowly expressed
    - Counts are negative binomial with dispersion 0.05
    - Planted genes change 4x (log2FC = ±2) in their condition
    """
    rng = np.random.default_rng(seed)
    genes = demo_gene_names(n_genes)
    base_means = rng.lognormal(mean=5.0, sigma=1.0, size=len(genes))

    sample_conditions: Dict[str, str] = {}
    columns: Dict[str, np.ndarray] = {}
    for condition in conditions:
        means = base_means.copy()
        for gene in UPREGULATED.get(condition, []):
            means[genes.index(gene)] *= FOLD_CHANGE
        for gene in DOWNREGULATED.get(condition, []):
            means[genes.index(gene)] /= FOLD_CHANGE

        for rep in range(1, n_replicates + 1):
            sample = f"{condition}_Rep{rep}"
            sample_conditions[sample] = condition
            # NB(mean, dispersion) as numpy's (n, p) parameterization
            n = 1.0 / DISPERSION
            p = n / (n + means)
            columns[sample] = rng.negative_binomial(n, p)

    counts = pd.DataFrame(columns, index=pd.Index(genes, name="gene")).astype(np.int64)
    return CountMatrix(counts, IdentifierType.SYMBOL), SampleMetadata(sample_conditions)


def demo_gene_sets(n_genes: int = 300, set_size: int = 15) -> Dict[str, List[str]]:
    """
    Gene sets matching the demo dataset, for enrichment without network access.

    Each planted group gets one set (padded with background genes to
    ``set_size``); a few background-only sets act as negatives.
    """
    genes = demo_gene_names(n_genes)
    background = [g for g in genes if g.startswith("GENE")]
    gene_sets = {}
    groups = [
        ("Wound healing (DEMO:0001)", UPREGULATED[TREATMENT]),
        ("Epidermal barrier (DEMO:0002)", DOWNREGULATED[TREATMENT]),
        ("Inflammatory response (DEMO:0003)", UPREGULATED[STIMULATED]),
        ("Melanogenesis (DEMO:0004)", DOWNREGULATED[STIMULATED]),
    ]
    offset = 0
    for name, members in groups:
        pad = max(0, set_size - len(members))
        gene_sets[name] = list(members) + background[offset:offset + pad]
        offset += pad
    for i in range(3):
        start = offset + i * set_size
        gene_sets[f"Background set {i + 1} (DEMO:{i + 10:04d})"] = background[start:start + set_size]
    return gene_sets


def get_demo_description() -> str:
    """Markdown description of the demo dataset."""
    return f"""# Demo Dataset

## Experimental Design
- **Conditions**: {CONTROL} (baseline), {TREATMENT}, {STIMULATED}
- **Samples**: 3 replicates per condition, named `{{condition}}_Rep{{i}}`
- **Genes**: 300 gene symbols (planted genes plus `GENE001`... background)

## Planted Differential Expression
- **{TREATMENT}**: wound-healing genes up 4x, barrier genes down 4x
- **{STIMULATED}**: inflammatory genes up 4x, melanogenesis genes down 4x

## Data Characteristics
- Negative binomial counts, dispersion {DISPERSION}
- Reproducible for a given seed (default 42)
- Integer raw counts (not normalized)

## Expected Results
Running one-vs-rest comparisons against {CONTROL} yields `{TREATMENT}_vs_{CONTROL}`
and `{STIMULATED}_vs_{CONTROL}`; planted genes show |log2FoldChange| ≈ 2.
"""
