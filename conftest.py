"""
Pytest configuration and fixtures for transcriptome analysis tests.
"""

import asyncio
from types import SimpleNamespace
from typing import Dict, List
from unittest.mock import MagicMock
import pytest
import pandas as pd
import numpy as np
from analysis_config import AnalysisConfig, GeneSetDatabase
from count_data import Comparison, CountMatrix, IdentifierType, SampleMetadata
from de_analysis import DEAnalysisEngine, DEResult, GeneResult
from demo_data import demo_gene_sets, load_demo_dataset
from statistical_backend import StatisticalBackend


# ============================================================================
# Sample Data Fixtures
# ============================================================================


@pytest.fixture
def small_count_matrix():
    """
    Small symbol-keyed count matrix.
    Shape: (6 genes, 6 samples), 3 Control + 3 Treatment
    """
    counts = pd.DataFrame(
        {
            "C1": [100, 200, 50, 10, 0, 500],
            "C2": [110, 190, 55, 12, 0, 480],
            "C3": [95, 210, 45, 9, 0, 510],
            "T1": [400, 50, 52, 11, 0, 490],
            "T2": [420, 45, 48, 10, 0, 505],
            "T3": [390, 55, 50, 13, 0, 495],
        },
        index=pd.Index(["MYC", "TP53", "GAPDH", "ACTB", "XIST", "EEF1A1"], name="gene"),
    )
    return CountMatrix(counts, IdentifierType.SYMBOL)


@pytest.fixture
def sample_metadata():
    """Control/Treatment metadata matching small_count_matrix."""
    return SampleMetadata(
        {"C1": "Control", "C2": "Control", "C3": "Control",
         "T1": "Treatment", "T2": "Treatment", "T3": "Treatment"}
    )


@pytest.fixture
def demo_dataset():
    """(CountMatrix, SampleMetadata) with Control, Treatment and Stimulated."""
    return load_demo_dataset(n_genes=120, n_replicates=3, seed=7)


@pytest.fixture
def sample_de_result():
    """
    DE result with 100 genes; GENE001-GENE010 strongly up, GENE011-GENE020
    strongly down, the rest unchanged.
    """
    rng = np.random.default_rng(42)
    genes = []
    for i in range(1, 101):
        if i <= 10:
            lfc, padj = 2.0 + i * 0.1, 1e-6 * i
        elif i <= 20:
            lfc, padj = -2.0 - (i - 10) * 0.1, 1e-5 * i
        else:
            lfc, padj = float(rng.normal(0, 0.3)), float(rng.uniform(0.2, 1.0))
        genes.append(
            GeneResult(
                gene=f"GENE{i:03d}",
                log2_fold_change=lfc,
                adjusted_p_value=padj,
                average_expression=float(rng.uniform(10, 1000)),
                p_value=padj / 10,
            )
        )
    return DEResult(
        comparison=Comparison("Control", "Treatment"),
        genes=tuple(genes),
        samples=("C1", "C2", "C3", "T1", "T2", "T3"),
    )


@pytest.fixture
def demo_config():
    """Config using the offline demo gene sets instead of Enrichr libraries."""
    return AnalysisConfig(
        gsea_permutations=100,
        databases={
            "DEMO": GeneSetDatabase("DEMO", demo_gene_sets(n_genes=120), "symbol"),
            "DEMO_ENTREZ": GeneSetDatabase(
                "DEMO_ENTREZ",
                {"Entrez set (DEMO:0100)": [str(1000 + i) for i in range(20)]},
                "entrez",
            ),
        },
    )


# ============================================================================
# Collaborator Fakes
# ============================================================================


class FakeTranslator:
    """In-memory stand-in for IdentifierTranslator; records every request."""

    def __init__(self, to_symbol: Dict[str, str] = None, to_entrez: Dict[str, str] = None):
        self.to_symbol = to_symbol or {}
        self.to_entrez = to_entrez or {}
        self.calls: List[tuple] = []

    async def to_symbols(self, ids, source):
        self.calls.append(("to_symbols", list(ids), source))
        return {i: self.to_symbol[i] for i in ids if i in self.to_symbol}

    async def symbols_to_entrez(self, symbols):
        self.calls.append(("symbols_to_entrez", list(symbols)))
        return {s: self.to_entrez[s] for s in symbols if s in self.to_entrez}


@pytest.fixture
def fake_translator():
    return FakeTranslator()


def fake_importer(name):
    """Pretend every module imports, with a fixed version."""
    return SimpleNamespace(__name__=name, __version__="1.0")


@pytest.fixture
def ready_backend():
    """Statistical backend that has already been brought up."""
    backend = StatisticalBackend(importer=fake_importer)
    asyncio.run(backend.initialize())
    return backend


def _fake_fit(counts_df, levels):
    """Deterministic DESeq2 stand-in: log ratio of group means, two-level p-values."""
    baseline = counts_df.loc[levels == "baseline"]
    test = counts_df.loc[levels == "comparison"]
    lfc = np.log2((test.mean(axis=0) + 0.5) / (baseline.mean(axis=0) + 0.5))
    padj = np.where(lfc.abs() > 1, 1e-4, 0.5)
    return pd.DataFrame(
        {
            "baseMean": counts_df.mean(axis=0),
            "log2FoldChange": lfc,
            "pvalue": padj / 10,
            "padj": padj,
        },
        index=counts_df.columns,
    )


@pytest.fixture
def mock_deseq(monkeypatch):
    """Replace the PyDESeq2 fit with a fast deterministic one."""
    fit = MagicMock(side_effect=_fake_fit)
    monkeypatch.setattr(
        DEAnalysisEngine, "fit_comparison", lambda self, counts_df, levels: fit(counts_df, levels)
    )
    return fit


# ============================================================================
# External API Mocking Fixtures
# ============================================================================


@pytest.fixture
def mock_gseapy(monkeypatch):
    """Mock gseapy module for enrichment analysis testing."""
    mock_gp = MagicMock()

    mock_gp.get_library = MagicMock(return_value=demo_gene_sets(n_genes=120))
    mock_gp.read_gmt = MagicMock(return_value=demo_gene_sets(n_genes=120))

    mock_gsea_result = MagicMock()
    mock_gsea_result.res2d = pd.DataFrame(
        {
            "Name": ["prerank", "prerank", "prerank"],
            "Term": [
                "Epidermal barrier (DEMO:0002)",
                "Wound healing (DEMO:0001)",
                "Background set 1 (DEMO:0010)",
            ],
            "ES": [-0.8, 0.9, 0.2],
            "NES": [-2.1, 2.4, 0.5],
            "NOM p-val": [0.004, 0.001, 0.8],
            "FDR q-val": [0.01, 0.005, 0.9],
            "FWER p-val": [0.01, 0.003, 1.0],
            "Lead_genes": ["FLG;LOR;CLDN1", "VEGFA;COL1A1;FN1", "GENE001"],
        }
    )
    mock_gp.prerank = MagicMock(return_value=mock_gsea_result)

    monkeypatch.setattr("pathway_enrichment.gp", mock_gp)
    return mock_gp
