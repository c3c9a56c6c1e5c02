"""
Count matrix and sample metadata model.

Canonical CountMatrix shape: genes × samples (gene identifiers as index,
sample names as columns, non-negative integer counts). This differs from the
samples × genes layout PyDESeq2 expects; use ``to_samples_by_genes()`` at that
boundary.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Iterable, List, Mapping, Optional, Tuple
import pandas as pd
import numpy as np
from analysis_errors import ParseError


class IdentifierType(Enum):
    """Gene identifier namespace."""

    ENSEMBL = "ensembl"
    ENTREZ = "entrez"
    UNIPROT = "uniprot"
    SYMBOL = "symbol"
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class CountMatrix:
    """
    Raw counts for one uploaded dataset.

    Built once per upload and shared read-only by all downstream components.
    The only sanctioned transformation is identifier remapping, which returns
    a new CountMatrix (see gene_identifiers.collapse_rows).
    """

    counts: pd.DataFrame  # genes × samples, int64
    identifier_type: IdentifierType = IdentifierType.UNKNOWN
    original_identifier_type: Optional[IdentifierType] = None

    def __post_init__(self):
        if self.counts.index.has_duplicates:
            dups = self.counts.index[self.counts.index.duplicated()].unique().tolist()
            raise ValueError(f"Duplicate gene identifiers in count matrix: {dups[:5]}")
        if self.counts.columns.has_duplicates:
            dups = self.counts.columns[self.counts.columns.duplicated()].unique().tolist()
            raise ValueError(f"Duplicate sample names in count matrix: {dups[:5]}")
        if (self.counts.values < 0).any():
            raise ValueError("Count matrix cannot contain negative values")
        if self.original_identifier_type is None:
            object.__setattr__(self, "original_identifier_type", self.identifier_type)

    @classmethod
    def from_records(
        cls,
        records: Mapping[str, Mapping[str, float]],
        identifier_type: IdentifierType = IdentifierType.UNKNOWN,
    ) -> "CountMatrix":
        """
        Build from a gene -> {sample -> count} mapping.

        Samples missing from a gene's record are zero-filled here, at
        construction time, and nowhere else.
        """
        samples: List[str] = []
        seen = set()
        for row in records.values():
            for sample in row:
                if sample not in seen:
                    seen.add(sample)
                    samples.append(sample)
        df = pd.DataFrame.from_dict(
            {gene: dict(row) for gene, row in records.items()}, orient="index"
        )
        df = df.reindex(columns=samples).fillna(0).astype(np.int64)
        df.index.name = "gene"
        return cls(df, identifier_type)

    @property
    def genes(self) -> List[str]:
        return self.counts.index.tolist()

    @property
    def samples(self) -> List[str]:
        return self.counts.columns.tolist()

    @property
    def n_genes(self) -> int:
        return self.counts.shape[0]

    def is_empty(self) -> bool:
        return self.counts.shape[0] == 0

    def to_records(self) -> Dict[str, Dict[str, int]]:
        """gene -> {sample -> count}"""
        return {
            gene: {s: int(v) for s, v in row.items()}
            for gene, row in self.counts.to_dict(orient="index").items()
        }

    def subset(self, genes: Iterable[str], samples: Optional[Iterable[str]] = None) -> pd.DataFrame:
        """Return a copy restricted to the given genes (in order) and samples."""
        genes = [g for g in genes if g in self.counts.index]
        columns = list(samples) if samples is not None else self.samples
        return self.counts.loc[genes, columns].copy()

    def to_samples_by_genes(self, samples: Optional[Iterable[str]] = None) -> pd.DataFrame:
        """Transpose to samples × genes for PyDESeq2."""
        columns = list(samples) if samples is not None else self.samples
        return self.counts.loc[:, columns].T.copy()

    def with_counts(self, counts: pd.DataFrame, identifier_type: IdentifierType) -> "CountMatrix":
        """Derive a new matrix, remembering the namespace of the original upload."""
        return CountMatrix(
            counts,
            identifier_type=identifier_type,
            original_identifier_type=self.original_identifier_type,
        )


@dataclass(frozen=True)
class SampleMetadata:
    """Ordered sample -> condition mapping."""

    sample_conditions: Dict[str, str] = field(default_factory=dict)

    def __len__(self) -> int:
        return len(self.sample_conditions)

    def conditions(self, within: Optional[Iterable[str]] = None) -> List[str]:
        """
        Unique condition labels in order of first appearance.

        With ``within``, only rows for those samples count, so metadata rows
        for samples absent from the count matrix contribute no condition.
        """
        present = set(within) if within is not None else None
        ordered: List[str] = []
        for sample, condition in self.sample_conditions.items():
            if present is not None and sample not in present:
                continue
            if condition not in ordered:
                ordered.append(condition)
        return ordered

    def samples_for(self, condition: str, within: Optional[Iterable[str]] = None) -> List[str]:
        """Samples labeled ``condition``, optionally restricted to ``within`` (keeps that order)."""
        if within is None:
            return [s for s, c in self.sample_conditions.items() if c == condition]
        return [s for s in within if self.sample_conditions.get(s) == condition]

    def count_per_condition(self) -> Dict[str, int]:
        counts: Dict[str, int] = {}
        for condition in self.sample_conditions.values():
            counts[condition] = counts.get(condition, 0) + 1
        return counts

    def missing_samples(self, matrix: CountMatrix) -> List[str]:
        """Matrix samples with no metadata row."""
        return [s for s in matrix.samples if s not in self.sample_conditions]

    def validate_against(self, matrix: CountMatrix) -> None:
        """
        Require metadata for every matrix sample.

        Extra metadata rows for samples absent from the matrix are ignored.

        Raises:
            ParseError: if any matrix sample has no condition
        """
        missing = self.missing_samples(matrix)
        if missing:
            raise ParseError(
                f"{len(missing)} sample(s) in the count matrix have no metadata: "
                f"{', '.join(missing[:5])}{'...' if len(missing) > 5 else ''}. "
                f"Suggestion: Ensure the metadata 'sample' column matches the count matrix header.",
                stage="metadata_alignment",
                details={"missing_samples": missing},
            )


@dataclass(frozen=True)
class Comparison:
    """Ordered pair (baseline, test); log2 fold changes are test relative to baseline."""

    baseline: str
    test: str

    def __post_init__(self):
        if self.baseline == self.test:
            raise ValueError(f"Comparison needs two different conditions, got '{self.test}' twice")

    @property
    def name(self) -> str:
        return f"{self.test}_vs_{self.baseline}"

    def as_tuple(self) -> Tuple[str, str]:
        return (self.baseline, self.test)


def one_vs_rest_comparisons(
    conditions: List[str], baseline: Optional[str] = None
) -> List[Comparison]:
    """
    Compare every other condition against one baseline.

    The baseline defaults to the first condition, so [A, B, C] yields
    B_vs_A and C_vs_A.
    """
    if not conditions:
        return []
    baseline = baseline if baseline is not None else conditions[0]
    if baseline not in conditions:
        raise ValueError(f"Baseline '{baseline}' is not one of {conditions}")
    return [Comparison(baseline, c) for c in conditions if c != baseline]


def pairwise_comparisons(conditions: List[str]) -> List[Comparison]:
    """Every unordered pair once, earlier condition as baseline."""
    comparisons = []
    for i, baseline in enumerate(conditions):
        for test in conditions[i + 1:]:
            comparisons.append(Comparison(baseline, test))
    return comparisons
