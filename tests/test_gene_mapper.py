"""Tests for the HGNC symbol -> NCBI Gene ID mapper."""

import os
import time
from unittest.mock import MagicMock

import pytest
import requests

from colitis_rnaseq.analysis.gene_mapper import (
    CACHE_MAX_AGE_SECONDS,
    GeneMapper,
    parse_hgnc_table,
)

HGNC_TEXT = (
    "hgnc_id\tsymbol\tname\tentrez_id\tprev_symbol\talias_symbol\n"
    "HGNC:6025\tCXCL8\tC-X-C motif chemokine ligand 8\t3576\tIL8\t\"NAF|GCP1\"\n"
    "HGNC:10498\tS100A8\tS100 calcium binding protein A8\t6279\t\tCAGA\n"
    "HGNC:99999\tNOID\tno entrez\t\t\t\n"
    "HGNC:1\tGCP1\tclash with alias\t111\t\t\n"
)


def _mock_session(text=HGNC_TEXT, error=None):
    session = MagicMock()
    if error is not None:
        session.get.side_effect = error
    else:
        response = MagicMock()
        response.text = text
        response.raise_for_status.return_value = None
        session.get.return_value = response
    return session


class TestParseHgncTable:
    def test_approved_symbols(self):
        mapping = parse_hgnc_table(HGNC_TEXT)
        assert mapping["CXCL8"] == "3576"
        assert mapping["S100A8"] == "6279"
        assert "NOID" not in mapping

    def test_previous_and_alias_symbols(self):
        mapping = parse_hgnc_table(HGNC_TEXT)
        assert mapping["IL8"] == "3576"
        assert mapping["NAF"] == "3576"
        assert mapping["CAGA"] == "6279"

    def test_alias_never_overrides_approved(self):
        mapping = parse_hgnc_table(HGNC_TEXT)
        assert mapping["GCP1"] == "111"

    def test_missing_symbol_column(self):
        with pytest.raises(ValueError, match="symbol"):
            parse_hgnc_table("foo\tbar\n1\t2\n")


class TestGeneMapper:
    def test_download_and_cache(self, tmp_path):
        cache = tmp_path / "hgnc.tsv"
        session = _mock_session()
        mapper = GeneMapper(cache_path=cache, session=session)

        resolved = mapper.resolve_symbols(["CXCL8", "s100a8", "UNKNOWN"])
        assert resolved == {"CXCL8": "3576", "s100a8": "6279", "UNKNOWN": None}
        assert cache.exists()
        session.get.assert_called_once()

    def test_fresh_cache_skips_download(self, tmp_path):
        cache = tmp_path / "hgnc.tsv"
        GeneMapper(cache_path=cache, session=_mock_session()).get_symbol_to_ncbi_map()

        session = _mock_session()
        mapping = GeneMapper(cache_path=cache, session=session).get_symbol_to_ncbi_map()
        assert mapping["IL8"] == "3576"
        session.get.assert_not_called()

    def test_stale_cache_used_when_download_fails(self, tmp_path):
        cache = tmp_path / "hgnc.tsv"
        GeneMapper(cache_path=cache, session=_mock_session()).get_symbol_to_ncbi_map()
        old = time.time() - CACHE_MAX_AGE_SECONDS - 60
        os.utime(cache, (old, old))

        session = _mock_session(error=requests.ConnectionError("offline"))
        mapper = GeneMapper(cache_path=cache, session=session)
        assert mapper.resolve_symbols(["CXCL8"]) == {"CXCL8": "3576"}
        session.get.assert_called_once()

    def test_no_cache_and_no_network(self, tmp_path):
        session = _mock_session(error=requests.Timeout("slow"))
        mapper = GeneMapper(cache_path=tmp_path / "missing.tsv", session=session)
        assert mapper.resolve_symbols(["CXCL8"]) == {"CXCL8": None}

    def test_env_cache_path(self, tmp_path, monkeypatch):
        cache = tmp_path / "from_env.tsv"
        monkeypatch.setenv("COLITIS_HGNC_CACHE", str(cache))
        GeneMapper(session=_mock_session()).get_symbol_to_ncbi_map()
        assert cache.exists()
