"""
Interpretation Engine for transcriptome analysis.

Builds the structured numeric summaries handed to the narrative collaborator
and rule-based interpretations of DE and enrichment results.
"""

from dataclasses import dataclass, field
from typing import List, Dict, Any, Optional, Sequence
import numpy as np
from de_analysis import DEResult, GeneResult
from pathway_enrichment import GseaResult
from significance import SignificantGenes, summarize_counts

# Narrative request kinds
SUMMARY = "summary"
PATHWAY = "pathway"
INTERPRETATION = "interpretation"
NARRATIVE_KINDS = (SUMMARY, PATHWAY, INTERPRETATION)

PROMPT_GENES_PER_SIDE = 25
CHAT_GENES_PER_SIDE = 10
PROMPT_GENE_SETS = 20


@dataclass
class Interpretation:
    """Single interpretation or insight."""
    category: str       # 'de', 'enrichment'
    level: str          # 'critical', 'important', 'informative'
    title: str
    description: str
    evidence: Dict[str, Any]
    recommendations: List[str] = field(default_factory=list)


def gene_entry(gene: GeneResult) -> Dict[str, Any]:
    return {
        "gene": gene.gene,
        "log2_fold_change": round(gene.log2_fold_change, 4),
        "adjusted_p_value": float(f"{gene.adjusted_p_value:.3g}"),
        "average_expression": round(gene.average_expression, 2),
    }


def build_de_summary(
    de_result: DEResult,
    significant: SignificantGenes,
    kind: str = INTERPRETATION,
    top_n: int = PROMPT_GENES_PER_SIDE,
) -> Dict[str, Any]:
    """
    Structured summary of one comparison for the narrative collaborator.

    Args:
        de_result: DE result of the comparison
        significant: Classification of ``de_result`` at the current thresholds
        kind: One of NARRATIVE_KINDS
        top_n: Genes listed per direction

    Returns:
        Plain dict of counts, thresholds and the top genes per direction
    """
    if kind not in NARRATIVE_KINDS:
        raise ValueError(f"Unknown narrative kind '{kind}'. Expected one of {NARRATIVE_KINDS}")
    counts = summarize_counts(de_result.genes, significant)
    return {
        "kind": kind,
        "comparison": de_result.name,
        "baseline": de_result.comparison.baseline,
        "test": de_result.comparison.test,
        "n_samples": len(de_result.samples),
        "thresholds": {
            "padj": significant.padj_threshold,
            "log2_fold_change": significant.lfc_threshold,
        },
        **counts,
        "top_up": [gene_entry(g) for g in significant.up[:top_n]],
        "top_down": [gene_entry(g) for g in significant.down[:top_n]],
    }


def build_chat_context(de_result: DEResult, significant: SignificantGenes) -> Dict[str, Any]:
    """Shorter summary (top 10 per direction) used to seed a conversational session."""
    summary = build_de_summary(de_result, significant, INTERPRETATION, top_n=CHAT_GENES_PER_SIDE)
    summary["kind"] = "chat"
    return summary


def build_enrichment_summary(
    comparison: str,
    database: str,
    results: Sequence[GseaResult],
    top_n: int = PROMPT_GENE_SETS,
    padj_threshold: float = 0.05,
) -> Dict[str, Any]:
    """Structured summary of one (comparison, database) GSEA run."""
    significant = [r for r in results if r.adjusted_p_value < padj_threshold]
    activated = [r for r in significant if r.normalized_enrichment_score > 0]
    suppressed = [r for r in significant if r.normalized_enrichment_score < 0]

    def entry(r: GseaResult) -> Dict[str, Any]:
        return {
            "id": r.id,
            "description": r.description,
            "nes": round(r.normalized_enrichment_score, 3),
            "adjusted_p_value": float(f"{r.adjusted_p_value:.3g}"),
            "set_size": r.set_size,
            "core_genes": list(r.core_genes[:10]),
        }

    return {
        "comparison": comparison,
        "database": database,
        "n_tested": len(results),
        "n_significant": len(significant),
        "padj_threshold": padj_threshold,
        "activated": [entry(r) for r in activated[:top_n]],
        "suppressed": [entry(r) for r in suppressed[:top_n]],
    }


class InterpretationEngine:
    """
    Rule-based interpretation of analysis results.

    Generates human-readable insights from DE and GSEA results to accompany
    the narrative text.
    """

    def __init__(self):
        self.interpretations: List[Interpretation] = []

    def interpret_de_results(
        self,
        de_result: DEResult,
        significant: SignificantGenes,
    ) -> List[Interpretation]:
        """
        Generate interpretations from differential expression results.

        Returns:
            List of Interpretation objects
        """
        interpretations = []
        counts = summarize_counts(de_result.genes, significant)
        n_genes, n_up, n_down = counts["total_tested"], counts["n_up"], counts["n_down"]
        n_sig = counts["n_significant"]

        interpretations.append(Interpretation(
            category='de',
            level='important',
            title='Differential Expression Summary',
            description=(
                f"Analysis of {n_genes:,} genes in {de_result.name} revealed "
                f"{n_sig:,} significantly differentially expressed genes. "
                f"Of these, {n_up:,} were upregulated and {n_down:,} were downregulated "
                f"(|log₂FC| > {significant.lfc_threshold}, padj < {significant.padj_threshold})."
            ),
            evidence={
                'total_genes_tested': n_genes,
                'significant': n_sig,
                'upregulated': n_up,
                'downregulated': n_down,
                'thresholds': {'padj': significant.padj_threshold, 'lfc': significant.lfc_threshold}
            },
            recommendations=[
                "Examine top DE genes for biological relevance",
                "Run GSEA on the full ranked gene list",
            ]
        ))

        if n_sig == 0:
            interpretations.append(Interpretation(
                category='de',
                level='critical',
                title='No Significant Genes',
                description=(
                    f"No gene passed the thresholds in {de_result.name}. The comparison may be "
                    f"underpowered, or the conditions may be transcriptionally similar."
                ),
                evidence={'n_samples': len(de_result.samples)},
                recommendations=[
                    "Relax the fold-change threshold for exploratory analysis",
                    "Check replicate consistency",
                ]
            ))
        else:
            sig_lfc = np.array([g.log2_fold_change for g in significant.up + significant.down])
            median_lfc = float(np.median(np.abs(sig_lfc)))
            if median_lfc > 3.0:
                interpretations.append(Interpretation(
                    category='de',
                    level='important',
                    title='Large Effect Sizes Detected',
                    description=(
                        f"The median absolute log₂ fold change among significant genes is "
                        f"{median_lfc:.2f}, indicating strong transcriptional changes."
                    ),
                    evidence={'median_abs_lfc': median_lfc},
                ))

            # Strong directional imbalance
            if n_sig >= 10:
                up_fraction = n_up / n_sig
                if up_fraction > 0.8 or up_fraction < 0.2:
                    direction = 'upregulation' if up_fraction > 0.8 else 'downregulation'
                    interpretations.append(Interpretation(
                        category='de',
                        level='informative',
                        title='Directional Bias',
                        description=(
                            f"{up_fraction:.0%} of significant genes are upregulated, "
                            f"suggesting predominant {direction} in {de_result.comparison.test}."
                        ),
                        evidence={'up_fraction': up_fraction},
                    ))

        if len(de_result.samples) < 6:
            interpretations.append(Interpretation(
                category='de',
                level='informative',
                title='Limited Replication',
                description=(
                    f"Only {len(de_result.samples)} samples were included in {de_result.name}. "
                    f"Dispersion estimates rely heavily on shrinkage at this sample size."
                ),
                evidence={'n_samples': len(de_result.samples)},
            ))

        self.interpretations.extend(interpretations)
        return interpretations

    def interpret_gsea_results(
        self,
        comparison: str,
        database: str,
        results: Sequence[GseaResult],
        padj_threshold: float = 0.05,
    ) -> List[Interpretation]:
        """Generate interpretations from one GSEA run."""
        interpretations = []
        significant = [r for r in results if r.adjusted_p_value < padj_threshold]

        if not significant:
            interpretations.append(Interpretation(
                category='enrichment',
                level='informative',
                title='No Enriched Gene Sets',
                description=(
                    f"No {database} gene set reached padj < {padj_threshold} in {comparison}."
                ),
                evidence={'n_tested': len(results)},
            ))
            self.interpretations.extend(interpretations)
            return interpretations

        activated = [r for r in significant if r.normalized_enrichment_score > 0]
        suppressed = [r for r in significant if r.normalized_enrichment_score < 0]
        top = min(significant, key=lambda r: r.adjusted_p_value)
        interpretations.append(Interpretation(
            category='enrichment',
            level='important',
            title='Gene Set Enrichment Summary',
            description=(
                f"{len(significant)} {database} gene sets were enriched in {comparison} "
                f"({len(activated)} activated, {len(suppressed)} suppressed). The strongest was "
                f"'{top.description}' (NES = {top.normalized_enrichment_score:.2f}, "
                f"padj = {top.adjusted_p_value:.2e})."
            ),
            evidence={
                'n_significant': len(significant),
                'activated': len(activated),
                'suppressed': len(suppressed),
                'top_term': top.id,
            },
        ))

        self.interpretations.extend(interpretations)
        return interpretations

    def generate_methods_text(self, params: Optional[Dict] = None) -> str:
        """
        Generate methods section text.

        Args:
            params: Dictionary with analysis parameters:
                - padj: P-value threshold (default: 0.05)
                - lfc: LFC threshold (default: 1.0)
                - linkage: Heatmap linkage method (default: 'ward.D2')
                - databases: Gene-set databases used
                - permutations: GSEA permutations (default: 1000)
        """
        params = params or {}
        padj = params.get('padj', 0.05)
        lfc = params.get('lfc', 1.0)
        linkage_method = params.get('linkage', 'ward.D2')
        databases = params.get('databases', ['GO_Biological_Process_2023', 'KEGG_2021_Human'])
        permutations = params.get('permutations', 1000)

        return f"""## Methods

### Differential Expression Analysis

Differential gene expression was analysed with PyDESeq2 using the design `~ condition`, fitting each comparison on its own two groups of samples. Genes with Benjamini-Hochberg adjusted p-value < {padj} and absolute log₂ fold change > {lfc} were considered significantly differentially expressed.

### Gene Set Enrichment Analysis

Genes were ranked by log₂ fold change and tested with preranked GSEA (GSEApy, {permutations} permutations) against {', '.join(databases)}. Gene sets with 10 to 500 members present in the ranking were tested; p-values were adjusted with the Benjamini-Hochberg method.

### Clustering

Heatmap rows were ordered by hierarchical clustering ({linkage_method} linkage, Euclidean distance) of variance-stabilized counts.
"""

    def get_all_interpretations(self) -> List[Interpretation]:
        return list(self.interpretations)

    def clear(self):
        self.interpretations = []
