from pathlib import Path
import sys

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from app.dte.scratch import ScratchDir, safe_slug


def test_each_scope_gets_its_own_directory(tmp_path):
    with ScratchDir(tmp_path, prefix="boleta") as a, ScratchDir(tmp_path, prefix="boleta") as b:
        assert a.path != b.path
        assert a.path.name.startswith("boleta_")
        assert a.path.is_dir() and b.path.is_dir()


def test_sensitive_files_removed_on_exit(tmp_path):
    with ScratchDir(tmp_path, prefix="req") as scratch:
        cert = scratch.save_sensitive(b"p12", "firma.p12")
        caf = scratch.save_sensitive(b"<AUTORIZACION/>", "caf.xml")
        output = scratch.write_bytes(b"<EnvioDTE/>", "docs", "boletas", "xml", "envio.xml")
        assert cert.read_bytes() == b"p12"
        assert oct(cert.stat().st_mode & 0o777) == "0o600"

    assert not cert.exists()
    assert not caf.exists()
    assert not (scratch.path / "secrets").exists()
    assert output.read_bytes() == b"<EnvioDTE/>"


def test_sensitive_files_removed_when_body_raises(tmp_path):
    try:
        with ScratchDir(tmp_path) as scratch:
            cert = scratch.save_sensitive(b"p12", "firma.p12")
            raise RuntimeError("falla en el pipeline")
    except RuntimeError:
        pass

    assert not cert.exists()


def test_outputs_removed_when_not_kept(tmp_path):
    with ScratchDir(tmp_path, keep_outputs=False) as scratch:
        scratch.write_bytes(b"x", "docs", "a.xml")

    assert not scratch.path.exists()


def test_cleanup_is_idempotent(tmp_path):
    scratch = ScratchDir(tmp_path)
    with scratch:
        scratch.save_sensitive(b"x", "caf.xml")
    scratch.cleanup()
    assert scratch.sensitive_files


def test_prefix_and_slug_are_path_safe(tmp_path):
    with ScratchDir(tmp_path, prefix="../../etc passwd") as scratch:
        assert scratch.path.parent == tmp_path
    assert safe_slug("Nota Crédito") == "nota_cr_dito"
    assert safe_slug("") == "documento"
