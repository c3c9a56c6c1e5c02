"""Tests for identifier namespace detection and normalization."""
import asyncio
import pandas as pd
import pytest
from analysis_errors import NoIdentifiersTranslated
from conftest import FakeTranslator
from count_data import CountMatrix, IdentifierType
from gene_identifiers import (
    collapse_rows,
    detect_identifier_type,
    normalize_identifiers,
    strip_version_suffixes,
    translation_report,
)


def make_matrix(ids, identifier_type, values=None):
    values = values or [[i + 1, i + 2] for i in range(len(ids))]
    counts = pd.DataFrame(values, index=pd.Index(ids, name="gene"), columns=["S1", "S2"])
    return CountMatrix(counts, identifier_type)


class TestDetectIdentifierType:
    def test_ensembl(self):
        ids = ["ENSG00000141510", "ENSG00000012048.21", "ENSMUSG00000059552"]
        assert detect_identifier_type(ids) == IdentifierType.ENSEMBL

    def test_entrez(self):
        assert detect_identifier_type(["7157", "672", "4609", "1956"]) == IdentifierType.ENTREZ

    def test_uniprot(self):
        ids = ["P04637", "P38398", "Q9Y6K9", "O15350", "A0A024R161"]
        assert detect_identifier_type(ids) == IdentifierType.UNIPROT

    def test_symbol(self):
        assert detect_identifier_type(["TP53", "BRCA1", "MYC", "GAPDH"]) == IdentifierType.SYMBOL

    def test_empty_is_unknown(self):
        assert detect_identifier_type([]) == IdentifierType.UNKNOWN

    def test_mixed_below_thresholds_is_unknown(self):
        ids = ["ENSG00000141510", "7157", "gene_with_underscore", "another_one"]
        assert detect_identifier_type(ids) == IdentifierType.UNKNOWN

    def test_ensembl_needs_more_than_seventy_percent(self):
        # 7/10 Ensembl is not enough; the remainder are symbols (30%) so nothing wins
        ids = [f"ENSG{i:011d}" for i in range(7)] + ["TP53", "MYC", "KRAS"]
        assert detect_identifier_type(ids) == IdentifierType.UNKNOWN

    def test_only_first_hundred_ids_scored(self):
        ids = ["TP53"] * 100 + ["7157"] * 500
        assert detect_identifier_type(ids) == IdentifierType.SYMBOL


class TestCollapseRows:
    def test_collisions_are_summed(self):
        matrix = make_matrix(["a", "b", "c"], IdentifierType.ENSEMBL, [[1, 2], [10, 20], [5, 5]])
        result = collapse_rows(matrix, {"a": "X", "b": "X", "c": "Y"}, IdentifierType.SYMBOL)
        assert result.genes == ["X", "Y"]
        assert result.counts.loc["X"].tolist() == [11, 22]
        assert result.identifier_type == IdentifierType.SYMBOL

    def test_unmapped_rows_dropped(self):
        matrix = make_matrix(["a", "b"], IdentifierType.ENTREZ)
        result = collapse_rows(matrix, {"a": "X"}, IdentifierType.SYMBOL)
        assert result.genes == ["X"]

    def test_source_matrix_untouched(self):
        matrix = make_matrix(["a", "b"], IdentifierType.ENTREZ)
        collapse_rows(matrix, {"a": "X", "b": "X"}, IdentifierType.SYMBOL)
        assert matrix.genes == ["a", "b"]


def test_strip_version_suffixes_merges_versions():
    matrix = make_matrix(
        ["ENSG00000141510.16", "ENSG00000141510.17", "ENSG00000012048"],
        IdentifierType.ENSEMBL,
        [[1, 1], [2, 2], [3, 3]],
    )
    result = strip_version_suffixes(matrix)
    assert result.genes == ["ENSG00000141510", "ENSG00000012048"]
    assert result.counts.loc["ENSG00000141510"].tolist() == [3, 3]


def test_strip_version_suffixes_ignores_other_namespaces():
    matrix = make_matrix(["HLA-A.1", "TP53"], IdentifierType.UNKNOWN)
    assert strip_version_suffixes(matrix) is matrix


class TestNormalizeIdentifiers:
    def test_symbol_matrix_is_identity(self, small_count_matrix):
        result = asyncio.run(normalize_identifiers(small_count_matrix, FakeTranslator()))
        assert result is small_count_matrix
        pd.testing.assert_frame_equal(result.counts, small_count_matrix.counts)

    def test_unknown_matrix_is_identity(self):
        matrix = make_matrix(["gene_1", "gene_2"], IdentifierType.UNKNOWN)
        assert asyncio.run(normalize_identifiers(matrix)) is matrix

    def test_ensembl_translated_and_collapsed(self):
        matrix = make_matrix(
            ["ENSG00000141510.16", "ENSG00000012048", "ENSG00000999999", "ENSG00000111111"],
            IdentifierType.ENSEMBL,
            [[1, 2], [3, 4], [5, 6], [7, 8]],
        )
        translator = FakeTranslator(
            to_symbol={
                "ENSG00000141510": "TP53",
                "ENSG00000012048": "BRCA1",
                "ENSG00000111111": "TP53",
            }
        )
        result = asyncio.run(normalize_identifiers(matrix, translator))

        assert result.identifier_type == IdentifierType.SYMBOL
        assert result.original_identifier_type == IdentifierType.ENSEMBL
        assert result.genes == ["TP53", "BRCA1"]
        # Both Ensembl rows mapping to TP53 are summed, never overwritten
        assert result.counts.loc["TP53"].tolist() == [8, 10]
        # Version suffix stripped before querying
        assert "ENSG00000141510" in translator.calls[0][1]

    def test_nothing_translated_raises(self):
        matrix = make_matrix(["7157", "672"], IdentifierType.ENTREZ)
        with pytest.raises(NoIdentifiersTranslated) as exc_info:
            asyncio.run(normalize_identifiers(matrix, FakeTranslator()))
        assert exc_info.value.stage == "identifier_translation"

    def test_translation_report(self):
        before = make_matrix(["7157", "672"], IdentifierType.ENTREZ)
        after = asyncio.run(
            normalize_identifiers(before, FakeTranslator(to_symbol={"7157": "TP53"}))
        )
        report = translation_report(before, after)
        assert report["genes_before"] == 2
        assert report["genes_after"] == 1
        assert report["identifier_type"] == "symbol"
