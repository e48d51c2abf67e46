from pathlib import Path
import sys

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from app.dte.config import DteConfig, get_dte_config


def test_certification_hosts_and_urls():
    cfg = DteConfig("certificacion")

    assert cfg.is_certificacion
    assert cfg.sii_host == DteConfig.SII_HOSTS["certificacion"]
    assert cfg.seed_url == f"https://{cfg.sii_host}/DTEWS/CrSeed.jws"
    assert cfg.token_url.endswith("/DTEWS/GetTokenFromSeed.jws")
    assert cfg.upload_url.endswith("/cgi_dte/UPL/DTEUpload")


def test_invalid_environment():
    with pytest.raises(ValueError):
        DteConfig("test")


def test_env_overrides(monkeypatch, tmp_path):
    monkeypatch.setenv("DTE_ENV", "produccion")
    monkeypatch.setenv("DTE_REQUEST_TIMEOUT", "45")
    monkeypatch.setenv("DTE_SCRATCH_DIR", str(tmp_path))
    monkeypatch.setenv("DTE_ANCHO_PAPEL", "57")

    cfg = get_dte_config()

    assert cfg.env == "produccion"
    assert not cfg.is_certificacion
    assert cfg.request_timeout == 45
    assert cfg.scratch_root == tmp_path
    assert cfg.default_paper_width == 57


def test_non_integer_timeout_is_rejected(monkeypatch):
    monkeypatch.setenv("DTE_REQUEST_TIMEOUT", "treinta")
    with pytest.raises(ValueError) as excinfo:
        DteConfig("certificacion")
    assert "DTE_REQUEST_TIMEOUT" in str(excinfo.value)
