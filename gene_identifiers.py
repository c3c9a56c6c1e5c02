"""
Gene identifier namespace detection and normalization.

Detection is a prioritized predicate table over a fixed set of namespaces.
Normalization brings every identifier into gene-symbol space; rows whose
identifiers collide afterwards are summed per sample, never overwritten.
"""

from typing import Dict, Mapping, Optional, Sequence, TYPE_CHECKING
import logging
import re
import pandas as pd
from analysis_errors import NoIdentifiersTranslated
from count_data import CountMatrix, IdentifierType

if TYPE_CHECKING:
    from id_translation import IdentifierTranslator

logger = logging.getLogger(__name__)

DETECTION_SAMPLE_SIZE = 100

# Checked in this order; an id counts for the first pattern it matches.
IDENTIFIER_PATTERNS = [
    (IdentifierType.ENSEMBL, re.compile(r"^ENS[A-Z]*G\d+(\.\d+)?$", re.IGNORECASE)),
    (IdentifierType.ENTREZ, re.compile(r"^\d+$")),
    (
        IdentifierType.UNIPROT,
        re.compile(
            r"^[A-NR-Z][0-9]([A-Z][A-Z0-9]{2}[0-9]){1,2}$|^[OPQ][0-9][A-Z0-9]{3}[0-9]$",
            re.IGNORECASE,
        ),
    ),
    (IdentifierType.SYMBOL, re.compile(r"^[A-Z0-9][A-Z0-9-]{1,10}$", re.IGNORECASE)),
]

# Most specific first; the namespace wins if its match fraction exceeds the threshold.
DETECTION_THRESHOLDS = [
    (IdentifierType.ENSEMBL, 0.7),
    (IdentifierType.UNIPROT, 0.7),
    (IdentifierType.ENTREZ, 0.7),
    (IdentifierType.SYMBOL, 0.5),
]

ENSEMBL_VERSION_SUFFIX = re.compile(r"\.\d+$")


def detect_identifier_type(ids: Sequence[str]) -> IdentifierType:
    """
    Guess the namespace of a list of gene identifiers.

    Only the first 100 ids are scored.

    Returns:
        IdentifierType; UNKNOWN when no namespace clears its threshold
    """
    sample = [str(i) for i in list(ids)[:DETECTION_SAMPLE_SIZE]]
    if not sample:
        return IdentifierType.UNKNOWN

    scores = {namespace: 0 for namespace, _ in IDENTIFIER_PATTERNS}
    for identifier in sample:
        for namespace, pattern in IDENTIFIER_PATTERNS:
            if pattern.match(identifier):
                scores[namespace] += 1
                break

    for namespace, threshold in DETECTION_THRESHOLDS:
        if scores[namespace] / len(sample) > threshold:
            return namespace
    return IdentifierType.UNKNOWN


def collapse_rows(
    matrix: CountMatrix,
    mapping: Mapping[str, str],
    identifier_type: IdentifierType,
    drop_unmapped: bool = True,
) -> CountMatrix:
    """
    Rename rows through ``mapping`` and sum rows that end up sharing a name.

    Args:
        matrix: Source matrix (left untouched)
        mapping: old identifier → new identifier
        identifier_type: Namespace of the new identifiers
        drop_unmapped: Drop rows missing from ``mapping`` (else keep their id)

    Returns:
        New CountMatrix; row order follows first appearance of each new id
    """
    counts = matrix.counts
    if drop_unmapped:
        keep = [g for g in counts.index if g in mapping]
        counts = counts.loc[keep]
    new_index = [mapping.get(g, g) for g in counts.index]
    collapsed = counts.groupby(pd.Index(new_index, name="gene"), sort=False).sum()
    n_merged = len(counts) - len(collapsed)
    if n_merged:
        logger.info(f"Merged {n_merged} rows whose identifiers collided after remapping")
    return matrix.with_counts(collapsed, identifier_type)


def strip_version_suffixes(matrix: CountMatrix) -> CountMatrix:
    """
    Drop Ensembl version suffixes (ENSG0000012345.7 → ENSG0000012345).

    Only valid for matrices confirmed as Ensembl; other namespaces are returned unchanged.
    """
    if matrix.identifier_type != IdentifierType.ENSEMBL:
        return matrix
    mapping = {g: ENSEMBL_VERSION_SUFFIX.sub("", g) for g in matrix.genes}
    return collapse_rows(matrix, mapping, IdentifierType.ENSEMBL)


async def normalize_identifiers(
    matrix: CountMatrix,
    translator: Optional["IdentifierTranslator"] = None,
) -> CountMatrix:
    """
    Bring a count matrix into gene-symbol space.

    Symbol and unknown matrices are returned unchanged. Ensembl/Entrez/UniProt
    ids are translated through the Identifier Translation Service;
    untranslatable ids are dropped silently and rows mapping to the same
    symbol are summed.

    Raises:
        NoIdentifiersTranslated: if no row survives translation
        ExternalServiceTimeout: if the translation service exceeds its bound
    """
    namespace = matrix.identifier_type
    if namespace in (IdentifierType.SYMBOL, IdentifierType.UNKNOWN):
        return matrix
    if translator is None:
        raise ValueError(f"A translator is required to normalize {namespace.value} identifiers")

    stripped = strip_version_suffixes(matrix)
    conversion = await translator.to_symbols(stripped.genes, namespace)
    remapped = collapse_rows(stripped, conversion, IdentifierType.SYMBOL)

    if remapped.is_empty():
        raise NoIdentifiersTranslated(
            f"No {namespace.value} gene identifiers could be converted to symbols. "
            f"Please check your ID format.",
            details={"n_queried": stripped.n_genes},
        )
    n_dropped = stripped.n_genes - len(conversion)
    if n_dropped:
        logger.warning(f"{n_dropped} {namespace.value} identifiers had no symbol and were dropped")
    logger.info(
        f"Normalized {matrix.n_genes} {namespace.value} identifiers to {remapped.n_genes} symbols"
    )
    return remapped


def translation_report(before: CountMatrix, after: CountMatrix) -> Dict[str, object]:
    """Summary of a normalization pass for status display."""
    return {
        "original_identifier_type": before.identifier_type.value,
        "identifier_type": after.identifier_type.value,
        "genes_before": before.n_genes,
        "genes_after": after.n_genes,
    }
