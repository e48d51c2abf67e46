from pathlib import Path
import sys

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from app.dte import folios, preparers, print_json, stamper
from app.dte.models import DocumentFamily

from _dte_fixtures import ISSUER, ITEMS, NOTE_REFERENCES, RECIPIENT, FakeIdentity, FakeSigner, make_caf


def _signed(family, tipo, folio, recipient=None, references=None, extras=None):
    auth = folios.parse(make_caf(tipo, 1, 500))
    prepared = preparers.prepare(
        family, ISSUER, recipient, ITEMS, folio, references, issue_date="2024-05-10", extras=extras
    )
    return stamper.stamp(prepared, auth, FakeIdentity(), FakeSigner())


def _format(signed, options=None):
    return print_json.format_print_json(signed.prepared.as_dict(), signed.ted_xml, ISSUER, options)


def test_prune_drops_none_false_and_empty_containers_but_keeps_zero_and_blank():
    data = {
        "a": None,
        "b": False,
        "c": 0,
        "d": "",
        "e": {"x": None, "y": {"z": False}},
        "f": [None, {}, [], {"k": 0}],
        "g": True,
    }
    assert print_json.prune(data) == {"c": 0, "d": "", "f": [{"k": 0}], "g": True}


def test_receipt_print_document_structure():
    doc = _format(_signed(DocumentFamily.BOLETA, 39, 100))

    assert doc["metadata"]["ancho_papel"] == 80
    assert doc["metadata"]["version"] == "1.0"
    assert doc["documento"] == {
        "tipo": 39,
        "folio": 100,
        "fecha_emision": "2024-05-10",
        "tipo_nombre": "BOLETA ELECTRÓNICA",
    }
    assert doc["emisor"]["razon_social"] == ISSUER["RznSoc"]
    assert doc["emisor"]["resolucion"] == {"numero": 0, "fecha": "2014-08-22"}
    assert doc["receptor"] == {"rut": "66666666-6", "razon_social": "SIN DETALLE"}
    assert doc["totales"] == {"neto": 2500, "iva": 475, "tasa_iva": 19, "total": 2975}
    assert doc["impresion"]["copia"] == "COPIA CLIENTE"
    assert "pago" not in doc

    first = doc["detalle"][0]
    assert first == {"nombre": "Cuaderno universitario", "cantidad": 2, "precio_unitario": 1190, "monto": 2380}


def test_ted_data_string_is_the_namespace_free_dd():
    doc = _format(_signed(DocumentFamily.BOLETA, 39, 100))

    data = doc["ted"]["data_string"]
    assert data.startswith("<DD><RE>76192083-9</RE><TD>39</TD><F>100</F>")
    assert "xmlns" not in data
    assert doc["ted"]["texto_verificacion"] == "Verifique documento: www.sii.cl"


def test_ted_data_string_fallbacks():
    assert print_json.ted_data_string(None) == "TED no disponible"
    assert print_json.ted_data_string(b"<roto") == "Error parseando TED"
    assert print_json.ted_data_string(b"<TED><FRMT/></TED>") == "Nodo DD no encontrado"


def test_invoice_payment_block_and_paper_override():
    signed = _signed(
        DocumentFamily.FACTURA, 33, 15, RECIPIENT, extras={"FmaPago": 2, "FchVenc": "2024-06-10"}
    )
    doc = _format(signed, {"papel_continuo": 57})

    assert doc["metadata"]["ancho_papel"] == 57
    assert doc["documento"]["fecha_vencimiento"] == "2024-06-10"
    assert doc["pago"] == {"forma": 2, "vencimiento": "2024-06-10"}
    assert doc["receptor"]["giro"] == "Servicios"
    assert doc["impresion"]["titulo"] == "FACTURA ELECTRÓNICA"


def test_credit_note_references():
    doc = _format(_signed(DocumentFamily.NOTA_CREDITO, 61, 5, RECIPIENT, NOTE_REFERENCES))

    assert doc["documento"]["tipo_nombre"] == "NOTA DE CRÉDITO ELECTRÓNICA"
    assert doc["referencias"] == [{
        "numero_linea": 1,
        "tipo_documento": 33,
        "tipo_documento_nombre": "FACTURA ELECTRÓNICA",
        "folio": 15,
        "fecha": "2024-05-02",
        "codigo": 1,
        "razon": "Anula factura",
    }]


def test_kind_name_for_unknown_codes():
    assert print_json.kind_name(None) == "DOCUMENTO DESCONOCIDO"
    assert print_json.kind_name(99) == "DOCUMENTO TIPO 99"
