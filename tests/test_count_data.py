"""Tests for the count matrix / metadata model and comparison builders."""
import pandas as pd
import pytest
from analysis_errors import ParseError
from count_data import (
    Comparison,
    CountMatrix,
    IdentifierType,
    SampleMetadata,
    one_vs_rest_comparisons,
    pairwise_comparisons,
)


class TestCountMatrix:
    def test_from_records_zero_fills_missing_samples(self):
        matrix = CountMatrix.from_records(
            {"TP53": {"S1": 5, "S2": 6}, "MYC": {"S1": 1}}, IdentifierType.SYMBOL
        )
        assert matrix.samples == ["S1", "S2"]
        assert matrix.counts.loc["MYC", "S2"] == 0
        assert matrix.to_records()["MYC"] == {"S1": 1, "S2": 0}

    def test_duplicate_genes_rejected(self):
        counts = pd.DataFrame({"S1": [1, 2]}, index=["TP53", "TP53"])
        with pytest.raises(ValueError, match="Duplicate gene"):
            CountMatrix(counts)

    def test_duplicate_samples_rejected(self):
        counts = pd.DataFrame([[1, 2]], index=["TP53"], columns=["S1", "S1"])
        with pytest.raises(ValueError, match="Duplicate sample"):
            CountMatrix(counts)

    def test_negative_rejected(self):
        with pytest.raises(ValueError):
            CountMatrix(pd.DataFrame({"S1": [-1]}, index=["TP53"]))

    def test_samples_by_genes_transpose(self, small_count_matrix):
        df = small_count_matrix.to_samples_by_genes(["C1", "T1"])
        assert df.shape == (2, small_count_matrix.n_genes)
        assert df.loc["T1", "MYC"] == 400

    def test_original_identifier_type_defaults_to_current(self, small_count_matrix):
        assert small_count_matrix.original_identifier_type == IdentifierType.SYMBOL


class TestSampleMetadata:
    def test_conditions_in_first_appearance_order(self):
        metadata = SampleMetadata({"S1": "B", "S2": "A", "S3": "B", "S4": "C"})
        assert metadata.conditions() == ["B", "A", "C"]
        assert metadata.count_per_condition() == {"B": 2, "A": 1, "C": 1}

    def test_conditions_within_skips_absent_samples(self):
        metadata = SampleMetadata({"Ghost1": "Pilot", "S1": "B", "S2": "A", "Ghost2": "B"})
        assert metadata.conditions(within=["S2", "S1"]) == ["B", "A"]
        assert metadata.conditions() == ["Pilot", "B", "A"]

    def test_samples_for_within_keeps_matrix_order(self):
        metadata = SampleMetadata({"S1": "A", "S2": "B", "S3": "A"})
        assert metadata.samples_for("A", within=["S3", "S2", "S1"]) == ["S3", "S1"]

    def test_extra_metadata_rows_ignored(self, small_count_matrix, sample_metadata):
        extended = SampleMetadata({**sample_metadata.sample_conditions, "EXTRA": "Other"})
        extended.validate_against(small_count_matrix)

    def test_missing_metadata_raises(self, small_count_matrix):
        metadata = SampleMetadata({"C1": "Control"})
        with pytest.raises(ParseError) as exc_info:
            metadata.validate_against(small_count_matrix)
        assert exc_info.value.stage == "metadata_alignment"


class TestComparisons:
    def test_name(self):
        assert Comparison("A", "B").name == "B_vs_A"

    def test_same_condition_rejected(self):
        with pytest.raises(ValueError):
            Comparison("A", "A")

    def test_one_vs_rest(self):
        names = [c.name for c in one_vs_rest_comparisons(["A", "B", "C"])]
        assert names == ["B_vs_A", "C_vs_A"]

    def test_one_vs_rest_explicit_baseline(self):
        names = [c.name for c in one_vs_rest_comparisons(["A", "B", "C"], baseline="B")]
        assert names == ["A_vs_B", "C_vs_B"]

    def test_one_vs_rest_unknown_baseline(self):
        with pytest.raises(ValueError):
            one_vs_rest_comparisons(["A", "B"], baseline="Z")

    def test_pairwise(self):
        names = [c.name for c in pairwise_comparisons(["A", "B", "C"])]
        assert names == ["B_vs_A", "C_vs_A", "C_vs_B"]
