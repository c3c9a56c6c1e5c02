"""
Gene Set Enrichment Analysis Module

Runs preranked GSEA (GSEApy) on the full fold-change ranking of one
comparison against a configured gene-set database.

Classes:
    GseaResult: One enriched gene set
    GseaEngine: Ranking, identifier translation, set filtering and prerank
"""

from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple, TYPE_CHECKING
import asyncio
import logging
import re
import gseapy as gp
import numpy as np
import pandas as pd
from statsmodels.stats.multitest import multipletests
from analysis_config import AnalysisConfig, GeneSetDatabase
from analysis_errors import AnalysisError, EnrichmentFailed
from de_analysis import DEResult, GeneResult

if TYPE_CHECKING:
    from id_translation import IdentifierTranslator

logger = logging.getLogger(__name__)

TERM_ID_PATTERN = re.compile(r"^(?P<description>.*?)\s*\((?P<id>[A-Za-z]+:\d+)\)$")
KEGG_ID_PATTERN = re.compile(r"^(?P<id>hsa\d+)\s+(?P<description>.+)$")


@dataclass(frozen=True)
class GseaResult:
    """Enrichment of one gene set for one (comparison, database) pair."""

    id: str
    description: str
    set_size: int
    enrichment_score: float
    normalized_enrichment_score: float
    p_value: float
    adjusted_p_value: float  # Benjamini-Hochberg across tested sets
    q_value: float  # GSEApy FDR q-value
    core_genes: List[str]


def build_ranking(genes: Sequence[GeneResult]) -> pd.Series:
    """
    Rank all genes of a comparison by log2 fold change, descending.

    Genes are deduplicated after sorting; the first occurrence wins. Genes with
    non-finite fold changes are skipped.
    """
    finite = [g for g in genes if g.gene and np.isfinite(g.log2_fold_change)]
    ordered = sorted(finite, key=lambda g: g.log2_fold_change, reverse=True)
    ranking: Dict[str, float] = {}
    for g in ordered:
        if g.gene not in ranking:
            ranking[g.gene] = g.log2_fold_change
    return pd.Series(ranking, dtype=float, name="log2FoldChange")


def translate_ranking(ranking: pd.Series, mapping: Dict[str, str]) -> pd.Series:
    """
    Re-key a symbol ranking through ``mapping``; untranslated genes are dropped.

    When several symbols share a target id, the highest-ranked one wins.
    """
    translated: Dict[str, float] = {}
    for symbol, score in ranking.items():
        target = mapping.get(symbol)
        if target is not None and target not in translated:
            translated[target] = score
    return pd.Series(translated, dtype=float, name=ranking.name)


def split_term(term: str) -> Tuple[str, str]:
    """Split an Enrichr-style term into (id, description)."""
    match = TERM_ID_PATTERN.match(term)
    if match:
        return match.group("id"), match.group("description")
    match = KEGG_ID_PATTERN.match(term)
    if match:
        return match.group("id"), match.group("description")
    return term, term


class GseaEngine:
    """
    Preranked GSEA against named gene-set databases.

    Supports:
    - Enrichr libraries, local GMT files and in-memory gene sets
    - Databases keyed by Entrez ids (ranking symbols translated first)
    - Set-size filtering before the permutation test
    """

    def __init__(
        self,
        config: Optional[AnalysisConfig] = None,
        translator: Optional["IdentifierTranslator"] = None,
    ):
        self.config = config or AnalysisConfig()
        self.translator = translator
        self._library_cache: Dict[str, Dict[str, List[str]]] = {}

    def get_database(self, name: str) -> GeneSetDatabase:
        if name not in self.config.databases:
            raise EnrichmentFailed(
                f"Unknown gene-set database '{name}'. "
                f"Available: {', '.join(self.config.databases)}",
                database=name,
            )
        return self.config.databases[name]

    def load_gene_sets(self, database: GeneSetDatabase) -> Dict[str, List[str]]:
        """Resolve a database source to {set name: member ids}; libraries are fetched once."""
        source = database.source
        if isinstance(source, dict):
            return {k: list(v) for k, v in source.items()}
        if source in self._library_cache:
            return self._library_cache[source]
        if source.lower().endswith(".gmt"):
            if not Path(source).exists():
                raise EnrichmentFailed(f"GMT file not found: {source}", database=database.name)
            gene_sets = gp.read_gmt(source)
        else:
            logger.info(f"Fetching gene-set library {source}")
            gene_sets = gp.get_library(name=source, organism=self.config.organism)
        self._library_cache[source] = gene_sets
        return gene_sets

    def filter_gene_sets(
        self, gene_sets: Dict[str, List[str]], ranked_ids: Sequence[str]
    ) -> Dict[str, List[str]]:
        """Keep sets whose overlap with the ranking is within [min_size, max_size]."""
        universe = set(ranked_ids)
        kept = {}
        for name, members in gene_sets.items():
            overlap = [m for m in dict.fromkeys(members) if m in universe]
            if self.config.gsea_min_size <= len(overlap) <= self.config.gsea_max_size:
                kept[name] = overlap
        return kept

    async def prepare_ranking(self, de_result: DEResult, database: GeneSetDatabase) -> pd.Series:
        """Fold-change ranking, translated into the database's namespace if needed."""
        ranking = build_ranking(de_result.genes)
        if database.id_namespace == "symbol":
            return ranking
        if database.id_namespace != "entrez":
            raise EnrichmentFailed(
                f"Unsupported gene-set namespace '{database.id_namespace}'",
                comparison=de_result.name,
                database=database.name,
            )
        if self.translator is None:
            raise EnrichmentFailed(
                "Database requires Entrez ids but no identifier translator is configured",
                comparison=de_result.name,
                database=database.name,
            )
        mapping = await self.translator.symbols_to_entrez(ranking.index.tolist())
        translated = translate_ranking(ranking, mapping)
        n_dropped = len(ranking) - len(translated)
        if n_dropped:
            logger.warning(
                f"{de_result.name}/{database.name}: {n_dropped} genes without Entrez id dropped"
            )
        return translated

    def run_prerank(
        self, ranking: pd.Series, gene_sets: Dict[str, List[str]]
    ) -> List[GseaResult]:
        """Run GSEApy prerank on already-filtered gene sets and format the output."""
        pre_res = gp.prerank(
            rnk=ranking,
            gene_sets=gene_sets,
            min_size=self.config.gsea_min_size,
            max_size=self.config.gsea_max_size,
            permutation_num=self.config.gsea_permutations,
            seed=self.config.gsea_seed,
            threads=1,
            outdir=None,
            verbose=False,
        )
        return self.format_results(pre_res.res2d, gene_sets)

    def format_results(
        self, res2d: pd.DataFrame, gene_sets: Dict[str, List[str]]
    ) -> List[GseaResult]:
        """
        Standardize prerank output.

        Adjusted p-values are Benjamini-Hochberg over all tested sets. Results
        above ``gsea_pvalue_cutoff`` are dropped; the rest are sorted by
        adjusted p-value.
        """
        if res2d is None or res2d.empty:
            return []

        df = res2d.copy()
        df["NOM p-val"] = pd.to_numeric(df["NOM p-val"], errors="coerce")
        df = df.dropna(subset=["NOM p-val"])
        if df.empty:
            return []
        df["p.adjust"] = multipletests(df["NOM p-val"].clip(0, 1), method="fdr_bh")[1]
        df = df[df["p.adjust"] <= self.config.gsea_pvalue_cutoff]
        df = df.sort_values(["p.adjust", "Term"], kind="mergesort")

        results = []
        for _, row in df.iterrows():
            term = str(row["Term"])
            term_id, description = split_term(term)
            lead = row.get("Lead_genes", "")
            core = [g for g in str(lead).split(";") if g and g != "nan"]
            results.append(
                GseaResult(
                    id=term_id,
                    description=description,
                    set_size=len(gene_sets.get(term, [])),
                    enrichment_score=float(row["ES"]),
                    normalized_enrichment_score=float(row["NES"]),
                    p_value=float(row["NOM p-val"]),
                    adjusted_p_value=float(row["p.adjust"]),
                    q_value=float(pd.to_numeric(row.get("FDR q-val", np.nan), errors="coerce")),
                    core_genes=core,
                )
            )
        return results

    async def run(self, de_result: DEResult, database_name: str) -> List[GseaResult]:
        """
        Run GSEA for one comparison against one database.

        Returns:
            List of GseaResult; empty when no gene set passes the size bounds
            or none survives the p-value cutoff

        Raises:
            EnrichmentFailed: carrying comparison and database names
        """
        database = self.get_database(database_name)
        try:
            ranking = await self.prepare_ranking(de_result, database)
            library = await asyncio.to_thread(self.load_gene_sets, database)
            gene_sets = self.filter_gene_sets(library, ranking.index)
            if not gene_sets:
                logger.info(
                    f"{de_result.name}/{database.name}: no gene set within size bounds "
                    f"[{self.config.gsea_min_size}, {self.config.gsea_max_size}]"
                )
                return []
            logger.info(
                f"Running GSEA for {de_result.name} with {database.name}: "
                f"{len(ranking)} ranked genes, {len(gene_sets)} gene sets"
            )
            return await asyncio.to_thread(self.run_prerank, ranking, gene_sets)
        except AnalysisError as e:
            e.comparison = e.comparison or de_result.name
            e.database = e.database or database.name
            raise
        except Exception as e:
            # GSEApy and the Enrichr download raise a wide range of errors
            logger.error(
                f"GSEA for {de_result.name} with {database.name} failed: {str(e)}", exc_info=True
            )
            raise EnrichmentFailed(
                f"Enrichment analysis failed: {str(e)}",
                comparison=de_result.name,
                database=database.name,
            ) from e
