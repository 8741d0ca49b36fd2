"""
Gene symbol -> NCBI Gene ID resolution through the HGNC complete set.

g:Profiler is queried with Entrez accessions, so DE symbols are resolved
here first. The HGNC table is fetched once and kept as a two-column TSV
under ``~/.colitis_rnaseq``; it is refetched after 30 days.
"""

import logging
import os
import time
from io import StringIO
from pathlib import Path
from typing import Dict, Iterable, Optional

import pandas as pd
import requests

logger = logging.getLogger(__name__)

HGNC_URL = "https://storage.googleapis.com/public-download-files/hgnc/tsv/tsv/hgnc_complete_set.txt"

DEFAULT_CACHE_FILE = Path.home() / ".colitis_rnaseq" / "hgnc_gene_map.tsv"

CACHE_MAX_AGE_SECONDS = 30 * 24 * 60 * 60

_ALT_SYMBOL_COLUMNS = ("prev_symbol", "alias_symbol")


def parse_hgnc_table(raw: str) -> Dict[str, str]:
    """
    Build an uppercase symbol -> NCBI Gene ID map from HGNC TSV text.

    Approved symbols win; previous and alias symbols (pipe-separated) only
    fill names no approved symbol claims.
    """
    table = pd.read_csv(StringIO(raw), sep="\t", dtype=str, keep_default_na=False)
    if "symbol" not in table.columns:
        raise ValueError("HGNC table has no 'symbol' column")
    if "entrez_id" not in table.columns:
        raise ValueError("HGNC table has no 'entrez_id' column")

    table = table[(table["symbol"].str.strip() != "") & (table["entrez_id"].str.strip() != "")]
    approved = dict(zip(table["symbol"].str.strip().str.upper(), table["entrez_id"].str.strip()))

    mapping = dict(approved)
    for column in _ALT_SYMBOL_COLUMNS:
        if column not in table.columns:
            continue
        alternates = (
            table[[column, "entrez_id"]]
            .assign(alt=lambda df: df[column].str.split("|"))
            .explode("alt")
        )
        for alt, entrez_id in zip(alternates["alt"], alternates["entrez_id"]):
            alt = alt.strip().strip('"').upper()
            if alt:
                mapping.setdefault(alt, entrez_id.strip())
    return mapping


class GeneMapper:
    """
    Resolves gene symbols to NCBI Gene IDs.

    Args:
        cache_path: TSV cache location. Falls back to ``COLITIS_HGNC_CACHE``
            and then ``~/.colitis_rnaseq/hgnc_gene_map.tsv``.
        session: requests session for the HGNC download.
    """

    def __init__(
        self,
        cache_path: Optional[Path] = None,
        session: Optional[requests.Session] = None,
    ) -> None:
        if cache_path is None:
            env_path = os.environ.get("COLITIS_HGNC_CACHE")
            cache_path = Path(env_path) if env_path else DEFAULT_CACHE_FILE
        self.cache_path = Path(cache_path)
        self.session = session or requests.Session()
        self._mapping: Optional[Dict[str, str]] = None

    def resolve_symbols(self, symbols: Iterable[str]) -> Dict[str, Optional[str]]:
        """Map each symbol to its NCBI Gene ID, or None when HGNC has no entry."""
        mapping = self.get_symbol_to_ncbi_map()
        resolved = {sym: mapping.get(sym) or mapping.get(sym.upper()) for sym in symbols}
        missing = [sym for sym, gene_id in resolved.items() if gene_id is None]
        if missing:
            logger.info(
                "%d of %d symbols have no NCBI Gene ID: %s",
                len(missing), len(resolved), ", ".join(missing[:10]),
            )
        return resolved

    def get_symbol_to_ncbi_map(self) -> Dict[str, str]:
        if self._mapping is None:
            self._mapping = self._load()
        return self._mapping

    def _cache_age(self) -> Optional[float]:
        if not self.cache_path.exists():
            return None
        return time.time() - self.cache_path.stat().st_mtime

    def _load(self) -> Dict[str, str]:
        age = self._cache_age()
        if age is not None and age < CACHE_MAX_AGE_SECONDS:
            logger.debug("Using HGNC cache %s (%.1f days old)", self.cache_path, age / 86400)
            return self._read_cache()

        logger.info("Fetching HGNC complete set from %s", HGNC_URL)
        try:
            response = self.session.get(HGNC_URL, timeout=120)
            response.raise_for_status()
            mapping = parse_hgnc_table(response.text)
            self._write_cache(mapping)
        except (requests.RequestException, OSError, ValueError) as exc:
            if age is not None:
                logger.warning("HGNC download failed (%s); using stale cache %s", exc, self.cache_path)
                return self._read_cache()
            logger.warning("HGNC download failed (%s); symbols will stay unmapped", exc)
            return {}

        logger.info("Cached %d HGNC symbols at %s", len(mapping), self.cache_path)
        return mapping

    def _read_cache(self) -> Dict[str, str]:
        cached = pd.read_csv(self.cache_path, sep="\t", dtype=str, keep_default_na=False)
        return dict(zip(cached["symbol"], cached["ncbi_gene_id"]))

    def _write_cache(self, mapping: Dict[str, str]) -> None:
        self.cache_path.parent.mkdir(parents=True, exist_ok=True)
        frame = pd.DataFrame(sorted(mapping.items()), columns=["symbol", "ncbi_gene_id"])
        frame.to_csv(self.cache_path, sep="\t", index=False)
