"""
Analysis session orchestrator.

Wires the pipeline for one interactive session:
parse -> identifier normalization -> DE per comparison -> significance view
-> {heatmap clustering, GSEA} -> comparison cache -> narrative/export.

Every long-running step is a coroutine; CPU-bound work runs in a worker
thread while holding the statistical backend's exclusive handle.
"""

from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Union
import asyncio
import inspect
import logging
from analysis_config import AnalysisConfig, SUPPORTED_LINKAGE_METHODS, load_config
from analysis_errors import AnalysisError, AnalysisInProgress
from clustering import ClusterOrdering, heatmap_genes, order_with_fallback
from comparison_cache import DE_KIND, GSEA_KIND, ComparisonCache
from count_data import (
    Comparison,
    CountMatrix,
    IdentifierType,
    SampleMetadata,
    one_vs_rest_comparisons,
    pairwise_comparisons,
)
from de_analysis import BatchResult, DEAnalysisEngine, DEResult
from export_engine import ExportData
from gene_identifiers import normalize_identifiers, translation_report
from id_translation import IdentifierTranslator
from interpretation_engine import (
    INTERPRETATION,
    Interpretation,
    InterpretationEngine,
    build_chat_context,
    build_de_summary,
    build_enrichment_summary,
)
from pathway_enrichment import GseaEngine, GseaResult
from rnaseq_parser import Source, parse_count_matrix, parse_metadata
from significance import SignificantGenes, classify
from statistical_backend import StatisticalBackend

logger = logging.getLogger(__name__)

Narrator = Callable[[Dict[str, Any]], Union[str, Awaitable[str]]]


class AnalysisSession:
    """
    One user's analysis workflow.

    Loading a new count matrix or metadata table clears every cached result.
    Changing thresholds only changes the derived significance view.
    """

    def __init__(
        self,
        config: Optional[AnalysisConfig] = None,
        backend: Optional[StatisticalBackend] = None,
        translator: Optional[IdentifierTranslator] = None,
        de_engine: Optional[DEAnalysisEngine] = None,
        gsea_engine: Optional[GseaEngine] = None,
        narrator: Optional[Narrator] = None,
        status_callback: Optional[Callable[[str], None]] = None,
        console_callback: Optional[Callable[[str], None]] = None,
    ):
        self.config = config or load_config()
        self.status_callback = status_callback or (lambda msg: None)
        self.backend = backend or StatisticalBackend(
            timeout=self.config.backend_timeout,
            status_callback=self.status_callback,
            console_callback=console_callback,
        )
        self._translator = translator
        self._gsea_engine = gsea_engine
        self.de_engine = de_engine or DEAnalysisEngine(n_cpus=self.config.n_cpus)
        self.narrator = narrator
        self.interpretation_engine = InterpretationEngine()
        self.cache = ComparisonCache()

        self.matrix: Optional[CountMatrix] = None
        self.metadata: Optional[SampleMetadata] = None
        self.parse_warnings: List[str] = []
        self.translation_summary: Dict[str, Any] = {}
        self.errors: Dict[str, AnalysisError] = {}
        self.padj_threshold = self.config.padj_threshold
        self.lfc_threshold = self.config.lfc_threshold
        self.is_loading = False

    @property
    def translator(self) -> IdentifierTranslator:
        if self._translator is None:
            self._translator = IdentifierTranslator(
                batch_size=self.config.translation_batch_size,
                timeout=self.config.translation_timeout,
                species=self.config.species,
                status_callback=self._status,
            )
        return self._translator

    @property
    def gsea_engine(self) -> GseaEngine:
        if self._gsea_engine is None:
            self._gsea_engine = GseaEngine(self.config, self.translator)
        return self._gsea_engine

    def _status(self, message: str):
        logger.info(message)
        self.status_callback(message)

    def _reject_while_loading(self, action: str):
        if self.is_loading:
            raise AnalysisInProgress(f"Cannot {action} while an analysis is running")

    def _reset_results(self):
        self.cache.clear()
        self.interpretation_engine.clear()
        self.errors = {}

    async def initialize_backend(self) -> None:
        await self.backend.initialize()

    # ------------------------------------------------------------------
    # Input
    # ------------------------------------------------------------------

    async def load_count_matrix(self, source: Source) -> CountMatrix:
        """
        Parse a count matrix and bring its identifiers into symbol space.

        Raises:
            ParseError, NoIdentifiersTranslated, ExternalServiceTimeout
        """
        self._reject_while_loading("load a new count matrix")
        self._status("Parsing count matrix...")
        parsed = await asyncio.to_thread(parse_count_matrix, source)
        raw = parsed.matrix
        if raw.identifier_type in (IdentifierType.SYMBOL, IdentifierType.UNKNOWN):
            matrix = raw
        else:
            self._status(f"Converting {raw.identifier_type.value} identifiers to gene symbols...")
            matrix = await normalize_identifiers(raw, self.translator)

        self.matrix = matrix
        self.parse_warnings = list(parsed.warnings)
        self.translation_summary = translation_report(raw, matrix)
        self._reset_results()
        self._status(f"Loaded {matrix.n_genes} genes × {len(matrix.samples)} samples")
        return matrix

    def load_metadata(self, source: Source, filename: Optional[str] = None) -> SampleMetadata:
        """Parse sample metadata (CSV/TSV/Excel). Clears cached results."""
        self._reject_while_loading("load new metadata")
        self.metadata = parse_metadata(source, filename=filename)
        self._reset_results()
        logger.info(f"Loaded metadata: {self.metadata.count_per_condition()}")
        return self.metadata

    def conditions(self) -> List[str]:
        """Conditions of the loaded samples; metadata rows for absent samples are ignored."""
        if self.metadata is None:
            return []
        within = self.matrix.samples if self.matrix is not None else None
        return self.metadata.conditions(within=within)

    def one_vs_rest(self, baseline: Optional[str] = None) -> List[Comparison]:
        return one_vs_rest_comparisons(self.conditions(), baseline)

    def all_pairs(self) -> List[Comparison]:
        return pairwise_comparisons(self.conditions())

    # ------------------------------------------------------------------
    # Differential expression
    # ------------------------------------------------------------------

    async def run_primary_analysis(
        self, comparisons: Optional[Sequence[Comparison]] = None
    ) -> BatchResult:
        """
        Run DE for each comparison, one after another.

        Comparisons already in the cache are reused. A failing comparison is
        reported in ``BatchResult.errors`` without affecting the others.

        Raises:
            AnalysisInProgress: if another primary analysis is running
            BackendNotReady: if the backend has not finished initializing
            ParseError: if count matrix samples lack metadata
        """
        self._reject_while_loading("start a new analysis")
        self.backend.require_ready()
        if self.matrix is None or self.metadata is None:
            raise AnalysisError(
                "Load a count matrix and sample metadata before running the analysis",
                stage="primary_analysis",
            )
        self.metadata.validate_against(self.matrix)
        comparisons = list(comparisons) if comparisons is not None else self.one_vs_rest()
        if not comparisons:
            raise AnalysisError(
                "At least two conditions are needed to form a comparison",
                stage="primary_analysis",
                details={"conditions": self.conditions()},
            )

        batch = BatchResult()
        self.is_loading = True
        try:
            for i, comparison in enumerate(comparisons, start=1):
                name = comparison.name
                cached = self.cache.get(name, DE_KIND)
                if cached is not None:
                    batch.results[name] = cached
                    continue
                self._status(f"Running differential expression for {name} ({i}/{len(comparisons)})...")
                async with self.backend.acquire(name):
                    single = await asyncio.to_thread(
                        self.de_engine.run_all_comparisons, self.matrix, self.metadata, [comparison]
                    )
                if name in single.results:
                    self.cache.put(name, DE_KIND, single.results[name])
                    self.errors.pop(name, None)
                    batch.results[name] = single.results[name]
                else:
                    self.errors[name] = single.errors[name]
                    batch.errors[name] = single.errors[name]
        finally:
            self.is_loading = False

        self._status(
            f"Analysis complete: {len(batch.succeeded)} succeeded, {len(batch.failed)} failed"
        )
        return batch

    def comparison_names(self) -> List[str]:
        """Names of comparisons with DE results, in completion order."""
        return [k.comparison for k in self.cache.keys() if k.kind == DE_KIND]

    def de_result(self, comparison: str) -> DEResult:
        result = self.cache.get(comparison, DE_KIND)
        if result is None:
            raise KeyError(f"No DE result for '{comparison}'. Run the primary analysis first.")
        return result

    def set_thresholds(
        self, padj_threshold: Optional[float] = None, lfc_threshold: Optional[float] = None
    ) -> None:
        """Change significance thresholds. Stored DE results are kept."""
        padj = self.padj_threshold if padj_threshold is None else padj_threshold
        lfc = self.lfc_threshold if lfc_threshold is None else lfc_threshold
        if not 0 <= padj <= 1:
            raise ValueError(f"padj_threshold must be in [0, 1], got {padj}")
        if lfc < 0:
            raise ValueError(f"lfc_threshold must be non-negative, got {lfc}")
        self.padj_threshold, self.lfc_threshold = padj, lfc
        logger.info(f"Thresholds set: padj < {padj}, |log2FC| > {lfc}")

    def significant_genes(self, comparison: str) -> SignificantGenes:
        return classify(self.de_result(comparison).genes, self.padj_threshold, self.lfc_threshold)

    # ------------------------------------------------------------------
    # Downstream analyses
    # ------------------------------------------------------------------

    async def cluster_heatmap(
        self,
        comparison: str,
        method: Optional[str] = None,
        genes: Optional[Sequence[str]] = None,
    ) -> ClusterOrdering:
        """
        Heatmap row order for one comparison.

        Defaults to the top up- and down-regulated genes, clustered over the
        comparison's own samples. Never cached: the order is recomputed for
        every method change.
        """
        method = method or self.config.linkage_method
        if method not in SUPPORTED_LINKAGE_METHODS:
            raise ValueError(
                f"Unsupported linkage method '{method}'. Supported: {', '.join(SUPPORTED_LINKAGE_METHODS)}"
            )
        self.backend.require_ready()
        de_result = self.de_result(comparison)
        subset = list(genes) if genes is not None else heatmap_genes(
            self.significant_genes(comparison), self.config.heatmap_genes_per_side
        )
        async with self.backend.acquire(f"{comparison}/clustering"):
            ordering = await asyncio.to_thread(
                order_with_fallback, self.matrix, subset, method, list(de_result.samples), comparison
            )
        if ordering.warning:
            self._status(ordering.warning)
        return ordering

    async def run_gsea(self, comparison: str, database: str) -> List[GseaResult]:
        """
        GSEA for (comparison, database), computed at most once per session.

        Raises:
            EnrichmentFailed: for this database only; nothing is cached, so
                the same request can be retried
        """
        self.backend.require_ready()
        de_result = self.de_result(comparison)

        async def compute() -> List[GseaResult]:
            self._status(f"Running GSEA for {comparison} against {database}...")
            async with self.backend.acquire(f"{comparison}/{database}"):
                return await self.gsea_engine.run(de_result, database)

        return await self.cache.get_or_compute_async(comparison, GSEA_KIND, compute, database)

    async def _narrate(self, summary: Dict[str, Any]) -> str:
        if self.narrator is None:
            raise ValueError("No narrator configured for this session")
        text = self.narrator(summary)
        if inspect.isawaitable(text):
            text = await text
        return text

    async def interpret(self, comparison: str, kind: str = INTERPRETATION) -> str:
        """Narrative text for one comparison from the injected narrator."""
        summary = build_de_summary(
            self.de_result(comparison), self.significant_genes(comparison), kind
        )
        return await self._narrate(summary)

    async def interpret_enrichment(self, comparison: str, database: str) -> str:
        results = await self.run_gsea(comparison, database)
        summary = build_enrichment_summary(comparison, database, results, padj_threshold=self.padj_threshold)
        return await self._narrate(summary)

    def chat_context(self, comparison: str) -> Dict[str, Any]:
        """Short summary used to seed a conversation about one comparison."""
        return build_chat_context(self.de_result(comparison), self.significant_genes(comparison))

    def insights(self, comparison: str, database: Optional[str] = None) -> List[Interpretation]:
        """
        Rule-based insights accompanying the narrative.

        Enrichment insights are added when GSEA for ``database`` is already
        cached; this never starts a GSEA run.
        """
        found = self.interpretation_engine.interpret_de_results(
            self.de_result(comparison), self.significant_genes(comparison)
        )
        if database is not None:
            results = self.cache.get(comparison, GSEA_KIND, database)
            if results is not None:
                found += self.interpretation_engine.interpret_gsea_results(
                    comparison, database, results, self.padj_threshold
                )
        return found

    def methods_text(self) -> str:
        """Methods paragraph reflecting the session's current settings."""
        return self.interpretation_engine.generate_methods_text(
            {
                "padj": self.padj_threshold,
                "lfc": self.lfc_threshold,
                "linkage": self.config.linkage_method,
                "databases": list(self.config.databases),
                "permutations": self.config.gsea_permutations,
            }
        )

    def export_data(self) -> ExportData:
        """Bundle every cached result for the export engine."""
        de_results = {name: self.de_result(name) for name in self.comparison_names()}
        gsea_results = {
            (key.comparison, key.database): self.cache.get(*key)
            for key in self.cache.keys()
            if key.kind == GSEA_KIND
        }
        return ExportData(
            de_results=de_results,
            significant={name: self.significant_genes(name) for name in de_results},
            gsea_results=gsea_results,
            settings={
                "padj_threshold": self.padj_threshold,
                "lfc_threshold": self.lfc_threshold,
                "linkage_method": self.config.linkage_method,
            },
            sample_conditions=dict(self.metadata.sample_conditions) if self.metadata else {},
            errors={name: str(e) for name, e in self.errors.items()},
        )
