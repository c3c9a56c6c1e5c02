"""
Analysis configuration.

Defaults live in ``AnalysisConfig``; ``config/analysis.yaml`` overlays them.
"""

from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, Optional, Union
import logging
import yaml

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = Path(__file__).parent / "config" / "analysis.yaml"

SUPPORTED_LINKAGE_METHODS = ("ward.D2", "complete", "average", "single")


@dataclass(frozen=True)
class GeneSetDatabase:
    """A named gene-set collection usable for GSEA."""

    name: str
    source: Union[str, Dict[str, list]]  # Enrichr library name, GMT path, or {set: genes}
    id_namespace: str = "symbol"  # "symbol" or "entrez"


def _default_databases() -> Dict[str, GeneSetDatabase]:
    return {
        "GO": GeneSetDatabase("GO", "GO_Biological_Process_2023", "symbol"),
        "KEGG": GeneSetDatabase("KEGG", "KEGG_2021_Human", "symbol"),
    }


@dataclass
class AnalysisConfig:
    """Settings shared by every pipeline component."""

    # Significance
    padj_threshold: float = 0.05
    lfc_threshold: float = 1.0

    # Identifier translation
    translation_batch_size: int = 1000
    translation_timeout: float = 300.0
    species: str = "human,mouse,rat"

    # Statistical backend
    backend_timeout: float = 1200.0
    n_cpus: int = 1

    # Clustering
    linkage_method: str = "ward.D2"
    heatmap_genes_per_side: int = 20

    # GSEA
    gsea_min_size: int = 10
    gsea_max_size: int = 500
    gsea_permutations: int = 1000
    gsea_seed: int = 42
    gsea_pvalue_cutoff: float = 1.0
    organism: str = "Human"
    databases: Dict[str, GeneSetDatabase] = field(default_factory=_default_databases)


def _parse_databases(raw: Dict[str, Any]) -> Dict[str, GeneSetDatabase]:
    databases = {}
    for name, entry in raw.items():
        if isinstance(entry, str):
            databases[name] = GeneSetDatabase(name, entry)
            continue
        if "source" not in entry:
            raise ValueError(f"Database '{name}' in config has no 'source'")
        databases[name] = GeneSetDatabase(
            name=name,
            source=entry["source"],
            id_namespace=entry.get("id_namespace", "symbol"),
        )
    return databases


def load_config(path: Optional[Union[str, Path]] = None) -> AnalysisConfig:
    """
    Load configuration from YAML, falling back to defaults.

    Args:
        path: YAML file path (default: config/analysis.yaml next to this module)

    Returns:
        AnalysisConfig with recognised keys overlaid on the defaults

    Raises:
        ValueError: on unknown keys or an unsupported linkage method
    """
    config_file = Path(path) if path is not None else DEFAULT_CONFIG_PATH
    if not config_file.exists():
        logger.warning(f"Analysis config not found at {config_file}, using defaults")
        return AnalysisConfig()

    with open(config_file, "r") as f:
        raw = yaml.safe_load(f) or {}

    known = {f.name for f in fields(AnalysisConfig)}
    unknown = sorted(set(raw) - known)
    if unknown:
        raise ValueError(f"Unknown config keys in {config_file}: {', '.join(unknown)}")

    overrides = dict(raw)
    if "databases" in overrides:
        overrides["databases"] = _parse_databases(overrides["databases"] or {})

    config = AnalysisConfig(**overrides)
    if config.linkage_method not in SUPPORTED_LINKAGE_METHODS:
        raise ValueError(
            f"Unsupported linkage method '{config.linkage_method}'. "
            f"Supported: {', '.join(SUPPORTED_LINKAGE_METHODS)}"
        )
    logger.info(f"Loaded analysis config from {config_file}")
    return config
