"""
Export module for transcriptome analysis results.

Writes DE tables, up/down gene lists and GSEA tables as CSV/TSV text with a
fixed column order and float format, so identical results always produce
identical bytes. A multi-sheet Excel workbook is also available.
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Tuple, Optional, List, Any, Sequence
import re
import sys
import pandas as pd
from de_analysis import DEResult, GeneResult, RESULT_COLUMNS
from pathway_enrichment import GseaResult
from significance import SignificantGenes

FLOAT_FORMAT = "%.6g"
MAX_SHEET_NAME = 31
SEPARATORS = {"csv": ",", "tsv": "\t"}

GENE_LIST_COLUMNS = ["gene", "log2FoldChange", "padj", "baseMean"]
GSEA_COLUMNS = [
    "ID",
    "Description",
    "setSize",
    "enrichmentScore",
    "NES",
    "pvalue",
    "p.adjust",
    "qvalue",
    "core_enrichment",
]


@dataclass
class ExportData:
    """Complete export bundle for one session."""

    de_results: Dict[str, DEResult]  # comparison name -> result
    significant: Dict[str, SignificantGenes] = field(default_factory=dict)
    gsea_results: Dict[Tuple[str, str], List[GseaResult]] = field(default_factory=dict)  # (comparison, database)
    settings: Dict[str, Any] = field(default_factory=dict)  # padj_threshold, lfc_threshold, ...
    sample_conditions: Dict[str, str] = field(default_factory=dict)
    errors: Dict[str, str] = field(default_factory=dict)  # comparison name -> failure message


def de_table(de_result: DEResult) -> pd.DataFrame:
    """Full DE table sorted by padj, then gene name."""
    df = de_result.to_dataframe()
    return df.sort_values(["padj", "gene"], kind="mergesort").reset_index(drop=True)[RESULT_COLUMNS]


def gene_list_table(genes: Sequence[GeneResult]) -> pd.DataFrame:
    """Up- or down-regulated genes, in classifier order."""
    return pd.DataFrame(
        [(g.gene, g.log2_fold_change, g.adjusted_p_value, g.average_expression) for g in genes],
        columns=GENE_LIST_COLUMNS,
    )


def gsea_table(results: Sequence[GseaResult]) -> pd.DataFrame:
    """GSEA results with clusterProfiler-style column names."""
    return pd.DataFrame(
        [
            (
                r.id,
                r.description,
                r.set_size,
                r.enrichment_score,
                r.normalized_enrichment_score,
                r.p_value,
                r.adjusted_p_value,
                r.q_value,
                "/".join(r.core_genes),
            )
            for r in results
        ],
        columns=GSEA_COLUMNS,
    )


class ExportEngine:
    """Tabular export engine for analysis results."""

    def __init__(self, fmt: str = "csv"):
        if fmt not in SEPARATORS:
            raise ValueError(f"Unsupported export format '{fmt}'. Use one of {list(SEPARATORS)}")
        self.fmt = fmt
        self.sep = SEPARATORS[fmt]

    def to_text(self, df: pd.DataFrame) -> str:
        return df.to_csv(sep=self.sep, index=False, float_format=FLOAT_FORMAT, lineterminator="\n")

    def export_de_table(self, de_result: DEResult) -> str:
        return self.to_text(de_table(de_result))

    def export_gene_lists(self, significant: SignificantGenes) -> Dict[str, str]:
        """Returns {"up": text, "down": text}."""
        return {
            "up": self.to_text(gene_list_table(significant.up)),
            "down": self.to_text(gene_list_table(significant.down)),
        }

    def export_gsea_table(self, results: Sequence[GseaResult]) -> str:
        return self.to_text(gsea_table(results))

    def sanitize_name(self, name: str, max_length: Optional[int] = None) -> str:
        """
        Make a comparison or database name safe for file and sheet names.

        Replaces [ ] : * ? / \\ and whitespace with '_' and strips quotes.
        """
        name = re.sub(r"[\[\]:*?/\\\s]", "_", name)
        name = name.strip("'")
        return name[:max_length] if max_length else name

    def unique_sheet_name(self, name: str, used: set) -> str:
        """
        Sanitized sheet name of at most 31 characters, not yet in ``used``.

        Excel compares sheet names case-insensitively, so names that collide
        after truncation get a numeric suffix (_2, _3, ...). ``used`` holds
        lowercased names and is updated in place.
        """
        base = self.sanitize_name(name, MAX_SHEET_NAME)
        candidate, n = base, 2
        while candidate.lower() in used:
            suffix = f"_{n}"
            candidate = base[:MAX_SHEET_NAME - len(suffix)] + suffix
            n += 1
        used.add(candidate.lower())
        return candidate

    def export_tables(self, directory: str, export_data: ExportData) -> List[Path]:
        """
        Write every table of the bundle into ``directory``.

        Files: DE_{comparison}, Up_{comparison}, Down_{comparison} and
        GSEA_{database}_{comparison}, with the engine's extension.

        Returns:
            Paths written, in a deterministic order
        """
        out_dir = Path(directory)
        out_dir.mkdir(parents=True, exist_ok=True)
        written = []

        def write(stem: str, text: str):
            path = out_dir / f"{self.sanitize_name(stem)}.{self.fmt}"
            path.write_text(text, encoding="utf-8")
            written.append(path)

        for name in sorted(export_data.de_results):
            write(f"DE_{name}", self.export_de_table(export_data.de_results[name]))
            if name in export_data.significant:
                lists = self.export_gene_lists(export_data.significant[name])
                write(f"Up_{name}", lists["up"])
                write(f"Down_{name}", lists["down"])

        for comparison, database in sorted(export_data.gsea_results):
            write(
                f"GSEA_{database}_{comparison}",
                self.export_gsea_table(export_data.gsea_results[(comparison, database)]),
            )
        return written

    def export_excel(self, filepath: str, export_data: ExportData) -> None:
        """
        Export analysis results to a multi-sheet Excel workbook.

        Sheets: DE_{comparison}, Up_/Down_{comparison}, {database}_{comparison}, Settings
        """
        used = {"settings"}
        with pd.ExcelWriter(filepath, engine="openpyxl") as writer:
            for name in sorted(export_data.de_results):
                de_table(export_data.de_results[name]).to_excel(
                    writer, sheet_name=self.unique_sheet_name(f"DE_{name}", used), index=False
                )
                if name in export_data.significant:
                    sig = export_data.significant[name]
                    gene_list_table(sig.up).to_excel(
                        writer, sheet_name=self.unique_sheet_name(f"Up_{name}", used), index=False
                    )
                    gene_list_table(sig.down).to_excel(
                        writer, sheet_name=self.unique_sheet_name(f"Down_{name}", used), index=False
                    )

            for comparison, database in sorted(export_data.gsea_results):
                gsea_table(export_data.gsea_results[(comparison, database)]).to_excel(
                    writer,
                    sheet_name=self.unique_sheet_name(f"{database}_{comparison}", used),
                    index=False,
                )

            self._write_settings_sheet(writer, export_data)

    def _write_settings_sheet(self, writer: pd.ExcelWriter, export_data: ExportData) -> None:
        """
        Write Settings sheet with key-value rows: versions, thresholds,
        per-comparison status and the sample conditions.
        """
        settings_data = [
            ["Parameter", "Value"],
            [
                "Python Version",
                f"{sys.version_info.major}.{sys.version_info.minor}.{sys.version_info.micro}",
            ],
        ]

        try:
            import pydeseq2

            settings_data.append(["PyDESeq2 Version", pydeseq2.__version__])
        except (ImportError, AttributeError):
            settings_data.append(["PyDESeq2 Version", "N/A"])

        if export_data.settings:
            settings_data.append(["---", "---"])
            settings_data.append(["Thresholds", ""])
            for key in ("padj_threshold", "lfc_threshold", "linkage_method"):
                if key in export_data.settings:
                    settings_data.append([key, str(export_data.settings[key])])

        if export_data.de_results or export_data.errors:
            settings_data.append(["---", "---"])
            settings_data.append(["Comparisons", ""])
            for name in sorted(export_data.de_results):
                sig = export_data.significant.get(name)
                detail = f"{sig.n_significant} significant genes" if sig else f"{len(export_data.de_results[name])} genes"
                settings_data.append([name, f"SUCCESS ({detail})"])
            for name in sorted(export_data.errors):
                settings_data.append([name, f"FAILED ({export_data.errors[name]})"])

        if export_data.sample_conditions:
            settings_data.append(["---", "---"])
            settings_data.append(["Sample Conditions", ""])
            for sample, condition in sorted(export_data.sample_conditions.items()):
                settings_data.append([sample, condition])

        pd.DataFrame(settings_data).to_excel(writer, sheet_name="Settings", index=False, header=False)
