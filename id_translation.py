"""
Identifier Translation Service client (MyGene.info).

Translates batches of gene identifiers between namespaces. Unresolved queries
are simply absent from the returned mapping; a failed batch is logged and
skipped so the remaining batches still run.
"""

from typing import Callable, Dict, List, Optional, Sequence
import asyncio
import logging
import threading
import mygene
from analysis_errors import ExternalServiceTimeout
from count_data import IdentifierType

logger = logging.getLogger(__name__)

# MyGene.info query scopes per source namespace
SCOPES = {
    IdentifierType.ENSEMBL: "ensembl.gene",
    IdentifierType.ENTREZ: "entrezgene",
    IdentifierType.UNIPROT: "uniprot",
    IdentifierType.SYMBOL: "symbol",
}


class IdentifierTranslator:
    """Batched, time-bounded gene identifier translation via MyGene.info."""

    def __init__(
        self,
        batch_size: int = 1000,
        timeout: float = 300.0,
        species: str = "human,mouse,rat",
        client: Optional[mygene.MyGeneInfo] = None,
        status_callback: Optional[Callable[[str], None]] = None,
    ):
        if batch_size < 1:
            raise ValueError(f"batch_size must be positive, got {batch_size}")
        self.batch_size = batch_size
        self.timeout = timeout
        self.species = species
        self.client = client if client is not None else mygene.MyGeneInfo()
        self.status_callback = status_callback or (lambda msg: None)

    def _query_batch(self, batch: List[str], scopes: str, field: str) -> Dict[str, str]:
        hits = self.client.querymany(
            batch,
            scopes=scopes,
            fields=field,
            species=self.species,
            verbose=False,
        )
        mapping: Dict[str, str] = {}
        for hit in hits:
            if hit.get("notfound") or field not in hit:
                continue
            query = str(hit["query"])
            value = hit[field]
            if isinstance(value, list):  # Some ids resolve to several values
                value = value[0] if value else None
            if value is not None and query not in mapping:
                mapping[query] = str(value)
        return mapping

    def _translate_blocking(
        self,
        ids: List[str],
        scopes: str,
        field: str,
        cancelled: Optional[threading.Event] = None,
    ) -> Dict[str, str]:
        mapping: Dict[str, str] = {}
        n_batches = (len(ids) + self.batch_size - 1) // self.batch_size
        for i in range(0, len(ids), self.batch_size):
            batch = ids[i:i + self.batch_size]
            batch_no = i // self.batch_size + 1
            if cancelled is not None and cancelled.is_set():
                logger.warning(
                    f"Identifier translation abandoned before batch {batch_no}/{n_batches}"
                )
                break
            self.status_callback(f"Translating identifiers (batch {batch_no}/{n_batches})...")
            try:
                mapping.update(self._query_batch(batch, scopes, field))
            except Exception as e:
                # Partial failure: keep going with the remaining batches
                logger.warning(
                    f"Identifier translation batch {batch_no}/{n_batches} failed: {str(e)}",
                    exc_info=True,
                )
        logger.info(f"Translated {len(mapping)}/{len(ids)} identifiers ({scopes} -> {field})")
        return mapping

    async def translate(
        self, ids: Sequence[str], source: IdentifierType, field: str = "symbol"
    ) -> Dict[str, str]:
        """
        Translate identifiers from ``source`` namespace to ``field``.

        Args:
            ids: Identifiers to translate (sent in batches of ``batch_size``)
            source: Namespace of ``ids``; selects the query scope
            field: MyGene.info output field ("symbol" or "entrezgene")

        Returns:
            Dict mapping queried identifier → translated value

        Raises:
            ExternalServiceTimeout: if the whole translation exceeds ``timeout``;
                no further batch is requested after that
        """
        if source not in SCOPES:
            raise ValueError(f"Cannot translate identifiers of type '{source.value}'")
        ids = list(dict.fromkeys(str(i) for i in ids))
        if not ids:
            return {}
        cancelled = threading.Event()
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(self._translate_blocking, ids, SCOPES[source], field, cancelled),
                timeout=self.timeout,
            )
        except asyncio.TimeoutError:
            # The worker thread cannot be interrupted; stop it at the next batch boundary
            cancelled.set()
            raise ExternalServiceTimeout(
                f"Identifier translation did not finish within {self.timeout:.0f} seconds. "
                f"Suggestion: Check your network connection and retry.",
                stage="identifier_translation",
                details={"n_ids": len(ids)},
            )

    async def to_symbols(self, ids: Sequence[str], source: IdentifierType) -> Dict[str, str]:
        return await self.translate(ids, source, field="symbol")

    async def symbols_to_entrez(self, symbols: Sequence[str]) -> Dict[str, str]:
        return await self.translate(symbols, IdentifierType.SYMBOL, field="entrezgene")
