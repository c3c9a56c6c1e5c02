"""Tests for configuration loading."""
import pytest
from analysis_config import AnalysisConfig, GeneSetDatabase, load_config


def test_defaults():
    config = AnalysisConfig()
    assert config.padj_threshold == 0.05
    assert config.lfc_threshold == 1.0
    assert config.linkage_method == "ward.D2"
    assert config.databases["GO"].source == "GO_Biological_Process_2023"


def test_bundled_config_matches_defaults():
    config = load_config()
    assert config.translation_batch_size == 1000
    assert config.gsea_min_size == 10 and config.gsea_max_size == 500
    assert set(config.databases) == {"GO", "KEGG"}


def test_yaml_overlay(tmp_path):
    path = tmp_path / "analysis.yaml"
    path.write_text(
        "lfc_threshold: 0.5\n"
        "linkage_method: average\n"
        "databases:\n"
        "  Reactome: Reactome_2022\n"
        "  LOCAL:\n"
        "    source: sets.gmt\n"
        "    id_namespace: entrez\n"
    )
    config = load_config(path)
    assert config.lfc_threshold == 0.5
    assert config.padj_threshold == 0.05
    assert config.linkage_method == "average"
    assert config.databases["Reactome"] == GeneSetDatabase("Reactome", "Reactome_2022")
    assert config.databases["LOCAL"].id_namespace == "entrez"


def test_unknown_key(tmp_path):
    path = tmp_path / "analysis.yaml"
    path.write_text("padj_cutoff: 0.1\n")
    with pytest.raises(ValueError, match="padj_cutoff"):
        load_config(path)


def test_unsupported_linkage(tmp_path):
    path = tmp_path / "analysis.yaml"
    path.write_text("linkage_method: ward.D\n")
    with pytest.raises(ValueError):
        load_config(path)


def test_database_without_source(tmp_path):
    path = tmp_path / "analysis.yaml"
    path.write_text("databases:\n  LOCAL:\n    id_namespace: entrez\n")
    with pytest.raises(ValueError):
        load_config(path)


def test_missing_file_uses_defaults(tmp_path):
    assert load_config(tmp_path / "absent.yaml") == AnalysisConfig()


def test_empty_file_uses_defaults(tmp_path):
    path = tmp_path / "analysis.yaml"
    path.write_text("")
    assert load_config(path) == AnalysisConfig()
