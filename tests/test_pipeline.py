from pathlib import Path
import sys

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from app.dte import renderer as renderer_module
from app.dte.config import DteConfig
from app.dte.exceptions import AuthError, FolioOutOfRange, InvalidAuthorization, RenderError, ValidationError
from app.dte.intake import parse_batch_request, parse_document_request
from app.dte.models import DocumentFamily, DocumentKind, Mode, PreviewResult
from app.dte.pipeline import AdapterOperation, DtePipeline

from _dte_fixtures import (
    ISSUER,
    NOTE_REFERENCES,
    RECIPIENT,
    RUT_FIRMANTE,
    FakeEndpoint,
    FakeSigner,
    b64,
    make_caf,
    make_p12,
    request_body,
    P12_PASSWORD,
)


class _Harness:
    def __init__(self, tmp_path, endpoint=None, signer=None):
        self.config = DteConfig("certificacion")
        self.config.scratch_root = tmp_path
        self.endpoint = endpoint or FakeEndpoint()
        self.signer = signer or FakeSigner()
        self.endpoint_envs = []
        self.signers_created = 0

    def _signer_factory(self):
        self.signers_created += 1
        return self.signer

    def _endpoint_factory(self, config, signer):
        self.endpoint_envs.append(config.env)
        return self.endpoint

    def pipeline(self) -> DtePipeline:
        return DtePipeline(
            self.config,
            signer_factory=self._signer_factory,
            endpoint_factory=self._endpoint_factory,
        )


@pytest.fixture
def harness(tmp_path):
    return _Harness(tmp_path)


def test_preview_returns_xml_and_pdf_without_submitting(harness, tmp_path):
    request = parse_document_request(request_body(), DocumentFamily.BOLETA, preview=True)

    result = harness.pipeline().process(request)

    assert isinstance(result, PreviewResult)
    assert result.signed.folio == 100
    assert result.signed.kind is DocumentKind.BOLETA
    assert b'ID="T39F100"' in result.xml
    assert result.pdf is not None and result.pdf.startswith(b"%PDF")
    assert Path(result.xml_path).read_bytes() == result.xml
    assert Path(result.pdf_path).exists()
    assert harness.endpoint_envs == []


def test_preview_xml_format_skips_pdf(harness):
    body = request_body(opciones={"formato": "xml"})
    request = parse_document_request(body, DocumentFamily.BOLETA, preview=True)

    result = harness.pipeline().process(request)

    assert result.pdf is None
    assert result.pdf_path is None
    assert result.xml_path.endswith(".xml")


def test_sensitive_files_are_removed_and_outputs_kept(harness, tmp_path):
    request = parse_document_request(request_body(), DocumentFamily.BOLETA, preview=False)

    harness.pipeline().process(request)

    assert list(tmp_path.rglob("*firma.p12")) == []
    assert list(tmp_path.rglob("*caf.xml")) == []
    assert list(tmp_path.rglob("secrets")) == []
    assert len(list(tmp_path.rglob("envio_boleta_39_100_*.xml"))) == 1


def test_issue_receipt_submits_envio_boleta(harness):
    request = parse_document_request(request_body(folio=150), DocumentFamily.BOLETA, preview=False)

    result = harness.pipeline().process(request)

    assert result.track_id == "4711"
    assert result.folios == (150,)
    assert result.kind is DocumentKind.BOLETA
    assert result.envelope_xml.startswith(b'<?xml version="1.0" encoding="ISO-8859-1"?>')
    assert b"<EnvioBOLETA " in result.envelope_xml
    assert result.pdf.startswith(b"%PDF")
    assert result.render_error is None
    assert result.print_data["documento"]["folio"] == 150

    sent = harness.endpoint.sent[0]
    assert sent["token"] == "TOKEN123"
    assert sent["sender"] == RUT_FIRMANTE
    assert sent["issuer"] == ISSUER["RUTEmisor"]
    assert sent["xml"] == result.envelope_xml
    assert harness.endpoint.closed is True
    assert harness.endpoint_envs == ["certificacion"]


def test_issue_invoice_keeps_envio_dte(tmp_path):
    harness = _Harness(tmp_path)
    body = request_body(tipo=33, receptor=dict(RECIPIENT))
    request = parse_document_request(body, DocumentFamily.FACTURA, preview=False)

    result = harness.pipeline().process(request)

    assert result.kind is DocumentKind.FACTURA
    assert b"<EnvioDTE " in result.envelope_xml
    assert b"EnvioBOLETA" not in result.envelope_xml


def test_issue_credit_note(tmp_path):
    harness = _Harness(tmp_path)
    body = request_body(tipo=61, receptor=dict(RECIPIENT), referencias=[dict(r) for r in NOTE_REFERENCES])
    request = parse_document_request(body, DocumentFamily.NOTA_CREDITO, preview=False)

    result = harness.pipeline().process(request)

    assert result.kind is DocumentKind.NOTA_CREDITO
    assert b"<Referencia>" in result.envelope_xml


def test_production_flag_selects_production_endpoint(harness):
    body = request_body(opciones={"certificacion": False})
    request = parse_document_request(body, DocumentFamily.BOLETA, preview=False)

    harness.pipeline().process(request)

    assert harness.endpoint_envs == ["produccion"]


def test_pdf_failure_after_submission_keeps_success(harness, monkeypatch):
    def boom(*args, **kwargs):
        raise RuntimeError("fuente no disponible")

    monkeypatch.setattr(renderer_module, "render_dte_pdf", boom)
    request = parse_document_request(request_body(), DocumentFamily.BOLETA, preview=False)

    result = harness.pipeline().process(request)

    assert result.track_id == "4711"
    assert result.pdf is None
    assert result.pdf_path is None
    assert "fuente no disponible" in result.render_error


def test_preview_pdf_failure_is_not_fatal(harness, monkeypatch):
    def boom(*args, **kwargs):
        raise RuntimeError("sin reportlab")

    monkeypatch.setattr(renderer_module, "render_dte_pdf", boom)
    request = parse_document_request(request_body(), DocumentFamily.BOLETA, preview=True)

    result = harness.pipeline().process(request)

    assert result.pdf is None
    assert result.xml



def test_preview_xml_write_failure_is_fatal_and_cleans_up(harness, tmp_path, monkeypatch):
    original_dir = renderer_module.ArtifactRenderer._dir

    def read_only(self, slug, sub):
        if sub == "xml":
            raise OSError("disco de solo lectura")
        return original_dir(self, slug, sub)

    monkeypatch.setattr(renderer_module.ArtifactRenderer, "_dir", read_only)
    request = parse_document_request(request_body(), DocumentFamily.BOLETA, preview=True)

    with pytest.raises(RenderError) as excinfo:
        harness.pipeline().process(request)

    assert "No se pudo guardar XML preview (Tipo: 39, Folio: 100)" in excinfo.value.message
    assert "disco de solo lectura" in excinfo.value.message
    assert harness.endpoint_envs == []
    assert list(tmp_path.rglob("*firma.p12")) == []
    assert list(tmp_path.rglob("*caf.xml")) == []

def test_print_data_can_be_disabled(harness):
    request = parse_document_request(
        request_body(generate_print_data=False), DocumentFamily.BOLETA, preview=False
    )

    result = harness.pipeline().process(request)

    assert result.print_data is None
    assert result.print_data_error is None


def test_issue_requires_resolution_before_any_work(harness):
    request = parse_document_request(request_body(), DocumentFamily.BOLETA, preview=True)
    request.mode = Mode.ISSUE
    request.issuer = {k: v for k, v in ISSUER.items() if k != "FchResol"}

    with pytest.raises(ValidationError) as excinfo:
        harness.pipeline().process(request)

    assert "emisor.FchResol" in excinfo.value.message
    assert harness.signers_created == 0


def test_out_of_range_folio_never_signs(harness):
    request = parse_document_request(request_body(folio=999), DocumentFamily.BOLETA, preview=False)

    with pytest.raises(FolioOutOfRange):
        harness.pipeline().process(request)

    assert not [c for c in harness.signer.calls if c[0] in ("stamp", "sign")]
    assert harness.endpoint.sent == []


def test_auth_failure_sends_nothing(tmp_path):
    harness = _Harness(tmp_path, endpoint=FakeEndpoint(fail_auth=True))
    request = parse_document_request(request_body(), DocumentFamily.BOLETA, preview=False)

    with pytest.raises(AuthError):
        harness.pipeline().process(request)

    assert harness.endpoint.sent == []
    assert harness.endpoint.closed is True
    assert list(tmp_path.rglob("*firma.p12")) == []


def test_build_print_json_for_invoice(harness):
    body = request_body(tipo=33, receptor=dict(RECIPIENT), opciones={"papel_continuo": 57})
    request = parse_document_request(body, DocumentFamily.FACTURA, preview=True)

    doc = harness.pipeline().build_print_json(request, AdapterOperation.FACTURA)

    assert doc["documento"]["tipo"] == 33
    assert doc["metadata"]["ancho_papel"] == 57
    assert doc["ted"]["data_string"].startswith("<DD>")


def test_adapter_operation_rejects_unknown_names():
    with pytest.raises(ValidationError) as excinfo:
        AdapterOperation.from_name("guia")
    assert "'guia'" in excinfo.value.message
    assert AdapterOperation.from_name("nota_debito").family is DocumentFamily.NOTA_DEBITO


def _batch_body(cafs, folios_):
    return {
        "certificado": {"data": b64(make_p12()), "pass": P12_PASSWORD},
        "emisor": dict(ISSUER),
        "caratula": {"RutEnvia": RUT_FIRMANTE},
        "boletas": [
            {
                "caf": {"data": b64(caf)},
                "folio": folio,
                "detalle": [{"NmbItem": f"Item {folio}", "QtyItem": 1, "PrcItem": 1190}],
                "fecha_emision": "2024-05-10",
            }
            for caf, folio in zip(cafs, folios_)
        ],
    }


def test_receipt_batch_in_single_envelope(harness):
    batch = parse_batch_request(_batch_body([make_caf(39, 1, 50), make_caf(39, 51, 100)], [10, 60]))

    result = harness.pipeline().issue_receipts_batch(batch)

    assert result.folios == (10, 60)
    assert result.track_id == "4711"
    assert result.envelope_xml.count(b"<DTE ") == 2
    assert b"<EnvioBOLETA " in result.envelope_xml
    assert b"<NroDTE>2</NroDTE>" in result.envelope_xml
    assert Path(result.xml_path).name.startswith("envio_multiple_boletas_")


def test_receipt_batch_reports_bad_caf_index(harness):
    batch = parse_batch_request(_batch_body([make_caf(39, 1, 50), b"<nope/>"], [10, 60]))

    with pytest.raises(InvalidAuthorization) as excinfo:
        harness.pipeline().issue_receipts_batch(batch)

    assert excinfo.value.message.startswith("Archivo CAF inválido para boleta #1")
    assert harness.endpoint.sent == []


def test_configured_paper_width_is_print_default(harness):
    harness.config.default_paper_width = 110
    request = parse_document_request(request_body(), DocumentFamily.BOLETA, preview=False)

    result = harness.pipeline().process(request)

    assert result.print_data["metadata"]["ancho_papel"] == 110
