"""
Differential expression analysis using PyDESeq2.

One model fit per comparison: each comparison uses only the samples of its two
conditions, so batches of comparisons are independent and a failure in one
never invalidates the others.
"""

from dataclasses import dataclass, field
from typing import Dict, List, Tuple, Optional, Sequence
import logging
import math
import pandas as pd
import numpy as np
from analysis_errors import AnalysisError, InsufficientReplication, ParseError
from count_data import Comparison, CountMatrix, SampleMetadata

logger = logging.getLogger(__name__)

# -log10(padj) when padj underflows to 0
NEG_LOG10_PADJ_CAP = 50.0
MIN_REPLICATES = 2

# Internal factor levels; keeps user condition labels out of the design formula
BASELINE_LEVEL = "baseline"
TEST_LEVEL = "comparison"
DESIGN_FACTOR = "condition"


def neg_log10_padj(padj: float) -> float:
    """-log10(padj), capped at NEG_LOG10_PADJ_CAP."""
    if padj <= 0:
        return NEG_LOG10_PADJ_CAP
    return min(-math.log10(padj), NEG_LOG10_PADJ_CAP)


@dataclass(frozen=True)
class GeneResult:
    """Per-gene statistics for one comparison."""

    gene: str
    log2_fold_change: float  # test relative to baseline
    adjusted_p_value: float  # Benjamini-Hochberg
    average_expression: float  # baseMean over the comparison's samples
    p_value: float = float("nan")

    @property
    def neg_log10_adjusted_p_value(self) -> float:
        return neg_log10_padj(self.adjusted_p_value)


RESULT_COLUMNS = ["gene", "log2FoldChange", "padj", "baseMean", "pvalue", "negLog10Padj"]


@dataclass(frozen=True)
class DEResult:
    """Result from differential expression analysis of one comparison."""

    comparison: Comparison
    genes: Tuple[GeneResult, ...]  # Unsorted, source of truth for every derived view
    samples: Tuple[str, ...]  # Samples included in the fit
    warnings: Tuple[str, ...] = ()

    @property
    def name(self) -> str:
        return self.comparison.name

    def __len__(self) -> int:
        return len(self.genes)

    def to_dataframe(self) -> pd.DataFrame:
        """Columns: gene, log2FoldChange, padj, baseMean, pvalue, negLog10Padj"""
        return pd.DataFrame(
            [
                (
                    g.gene,
                    g.log2_fold_change,
                    g.adjusted_p_value,
                    g.average_expression,
                    g.p_value,
                    g.neg_log10_adjusted_p_value,
                )
                for g in self.genes
            ],
            columns=RESULT_COLUMNS,
        )


@dataclass
class BatchResult:
    """Outcome of a multi-comparison request; failures are reported per comparison."""

    results: Dict[str, DEResult] = field(default_factory=dict)
    errors: Dict[str, AnalysisError] = field(default_factory=dict)

    @property
    def succeeded(self) -> List[str]:
        return list(self.results)

    @property
    def failed(self) -> List[str]:
        return list(self.errors)


def results_from_frame(
    results_df: pd.DataFrame, comparison: Comparison, samples: Sequence[str], warnings: Sequence[str] = ()
) -> DEResult:
    """
    Build a DEResult from a DESeq2-style results table.

    Rows with any undefined statistic (log2FoldChange, padj, baseMean) are dropped.

    Args:
        results_df: Gene-indexed DataFrame with baseMean, log2FoldChange, pvalue, padj
    """
    required = ["baseMean", "log2FoldChange", "padj"]
    missing = [c for c in required if c not in results_df.columns]
    if missing:
        raise ValueError(f"Results table missing columns: {', '.join(missing)}")

    stats = results_df[required].replace([np.inf, -np.inf], np.nan)
    defined = stats.notna().all(axis=1)
    n_dropped = int((~defined).sum())
    if n_dropped:
        logger.info(f"{comparison.name}: dropped {n_dropped} genes with undefined statistics")

    pvalues = results_df["pvalue"] if "pvalue" in results_df.columns else pd.Series(np.nan, index=results_df.index)
    genes = tuple(
        GeneResult(
            gene=str(gene),
            log2_fold_change=float(row["log2FoldChange"]),
            adjusted_p_value=float(row["padj"]),
            average_expression=float(row["baseMean"]),
            p_value=float(pvalues.loc[gene]),
        )
        for gene, row in results_df.loc[defined].iterrows()
    )
    return DEResult(
        comparison=comparison,
        genes=genes,
        samples=tuple(samples),
        warnings=tuple(warnings),
    )


class DEAnalysisEngine:
    """Differential expression analysis using PyDESeq2."""

    def __init__(self, n_cpus: int = 1, refit_cooks: bool = True):
        self.n_cpus = n_cpus
        self.refit_cooks = refit_cooks

    def select_samples(
        self,
        matrix: CountMatrix,
        metadata: SampleMetadata,
        comparison: Comparison,
    ) -> Tuple[List[str], List[str]]:
        """
        Pick the matrix samples belonging to each side of a comparison.

        Samples labeled with other conditions are excluded from this
        comparison only.

        Returns:
            (baseline_samples, test_samples), each in matrix column order

        Raises:
            ParseError: if a matrix sample has no metadata
            InsufficientReplication: if either side has fewer than 2 samples
        """
        missing = metadata.missing_samples(matrix)
        if missing:
            raise ParseError(
                f"{len(missing)} sample(s) in the count matrix have no metadata: "
                f"{', '.join(missing[:5])}{'...' if len(missing) > 5 else ''}.",
                stage="metadata_alignment",
                comparison=comparison.name,
                details={"missing_samples": missing},
            )

        baseline = metadata.samples_for(comparison.baseline, within=matrix.samples)
        test = metadata.samples_for(comparison.test, within=matrix.samples)
        for condition, samples in ((comparison.baseline, baseline), (comparison.test, test)):
            if len(samples) < MIN_REPLICATES:
                raise InsufficientReplication(
                    f"Condition '{condition}' has only {len(samples)} sample(s), "
                    f"need ≥{MIN_REPLICATES} for dispersion estimation",
                    comparison=comparison.name,
                    details={"condition": condition, "n_samples": len(samples)},
                )
        return baseline, test

    def fit_comparison(
        self,
        counts_df: pd.DataFrame,
        levels: pd.Series,
    ) -> pd.DataFrame:
        """
        Fit DESeq2 for one two-level design and return the results table.

        Args:
            counts_df: samples × genes DataFrame with integer counts
            levels: Per-sample factor level (BASELINE_LEVEL / TEST_LEVEL), index = samples

        Returns:
            Gene-indexed DataFrame: baseMean, log2FoldChange, lfcSE, stat, pvalue, padj
        """
        from pydeseq2.dds import DeseqDataSet
        from pydeseq2.ds import DeseqStats
        from pydeseq2.default_inference import DefaultInference

        inference = DefaultInference(n_cpus=self.n_cpus)
        metadata_df = pd.DataFrame({DESIGN_FACTOR: levels})

        dds = DeseqDataSet(
            counts=counts_df,
            metadata=metadata_df,
            design=f"~{DESIGN_FACTOR}",
            refit_cooks=self.refit_cooks,
            inference=inference,
            quiet=True,
        )
        # Size factors, dispersion trend + shrinkage, GLM fit, Cook's refit
        dds.deseq2()

        # Wald test and BH correction with independent filtering
        stat_res = DeseqStats(
            dds,
            contrast=[DESIGN_FACTOR, TEST_LEVEL, BASELINE_LEVEL],
            independent_filter=True,
            inference=inference,
            quiet=True,
        )
        stat_res.summary()
        return stat_res.results_df.copy()

    def run(
        self,
        matrix: CountMatrix,
        metadata: SampleMetadata,
        condition_a: str,
        condition_b: str,
    ) -> DEResult:
        """
        Differential expression of ``condition_b`` relative to baseline ``condition_a``.

        Raises:
            InsufficientReplication: if either group has fewer than 2 samples
            ParseError: if matrix samples lack metadata
        """
        comparison = Comparison(condition_a, condition_b)
        baseline, test = self.select_samples(matrix, metadata, comparison)
        samples = baseline + test

        counts_df = matrix.to_samples_by_genes(samples)
        warnings = []

        # Genes with no counts in any included sample have undefined statistics
        expressed = counts_df.sum(axis=0) > 0
        n_zero = int((~expressed).sum())
        if n_zero:
            counts_df = counts_df.loc[:, expressed]
            warnings.append(f"{n_zero} genes with zero counts in all samples excluded")
        if counts_df.shape[1] == 0:
            raise ValueError("No genes with non-zero counts in the selected samples")

        levels = pd.Series(
            [BASELINE_LEVEL] * len(baseline) + [TEST_LEVEL] * len(test),
            index=samples,
        )
        logger.info(
            f"Running DESeq2 for {comparison.name}: {len(baseline)} vs {len(test)} samples, "
            f"{counts_df.shape[1]} genes"
        )
        results_df = self.fit_comparison(counts_df, levels)
        result = results_from_frame(results_df, comparison, samples, warnings)
        logger.info(f"{comparison.name}: {len(result)} genes with defined statistics")
        return result

    def run_all_comparisons(
        self,
        matrix: CountMatrix,
        metadata: SampleMetadata,
        comparisons: List[Comparison],
    ) -> BatchResult:
        """
        Run every comparison sequentially.

        Returns:
            BatchResult with successes and per-comparison errors. Failed
            comparisons never roll back the ones that already succeeded.
        """
        batch = BatchResult()
        for comparison in comparisons:
            try:
                batch.results[comparison.name] = self.run(
                    matrix, metadata, comparison.baseline, comparison.test
                )
            except AnalysisError as e:
                logger.error(f"DE analysis {comparison.name} failed: {str(e)}")
                batch.errors[comparison.name] = e
            except (ValueError, RuntimeError, TypeError, np.linalg.LinAlgError) as e:
                logger.error(f"DE analysis {comparison.name} failed: {str(e)}", exc_info=True)
                batch.errors[comparison.name] = AnalysisError(
                    f"Comparison failed: {str(e)}",
                    stage="differential_expression",
                    comparison=comparison.name,
                )
        return batch
