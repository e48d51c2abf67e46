"""
Sobre de envío EnvioDTE / EnvioBOLETA

El sobre se arma siempre como EnvioDTE; cuando todos los documentos son
boletas (39/41) se renombra la raíz a EnvioBOLETA sin tocar el contenido.
"""
import logging
import re
from datetime import datetime
from typing import Any, Dict, Iterable, List

from lxml import etree

from . import xml_builder
from .config import DteConfig
from .exceptions import DteException, EnvelopeError, join_diagnostics
from .models import Envelope, SignedDocument

logger = logging.getLogger(__name__)

ENVIO_DTE_OPEN = (
    '<EnvioDTE xmlns="http://www.sii.cl/SiiDte" '
    'xmlns:xsi="http://www.w3.org/2001/XMLSchema-instance" '
    'xsi:schemaLocation="http://www.sii.cl/SiiDte EnvioDTE_v10.xsd" version="1.0">'
)
ENVIO_DTE_CLOSE = "</EnvioDTE>"
ENVIO_BOLETA_OPEN = (
    '<EnvioBOLETA xmlns="http://www.sii.cl/SiiDte" '
    'xmlns:xsi="http://www.w3.org/2001/XMLSchema-instance" '
    'xsi:schemaLocation="http://www.sii.cl/SiiDte EnvioBOLETA_v11.xsd" version="1.0">'
)
ENVIO_BOLETA_CLOSE = "</EnvioBOLETA>"

XML_DECLARATION = b'<?xml version="1.0" encoding="ISO-8859-1"?>\n'

_OPEN_TAG_RE = re.compile(rb"<EnvioDTE\b[^>]*>")

ORDER_CARATULA = ("RutEmisor", "RutEnvia", "RutReceptor", "FchResol", "NroResol", "TmstFirmaEnv", "SubTotDTE")


def to_envio_boleta(xml: bytes) -> bytes:
    """
    Renombra la raíz EnvioDTE a EnvioBOLETA (esquema v11)

    Solo reemplaza la marca de apertura exacta y el cierre; el contenido
    interno queda idéntico byte a byte.
    """
    open_marker = ENVIO_DTE_OPEN.encode("ascii")
    if open_marker not in xml:
        raise EnvelopeError("El XML no contiene la apertura EnvioDTE esperada")
    converted = xml.replace(open_marker, ENVIO_BOLETA_OPEN.encode("ascii"), 1)
    return converted.replace(ENVIO_DTE_CLOSE.encode("ascii"), ENVIO_BOLETA_CLOSE.encode("ascii"))


def sub_totals(documents: Iterable[SignedDocument]) -> List[Dict[str, int]]:
    """Conteo por tipo de DTE, en orden de primera aparición"""
    counts: Dict[int, int] = {}
    for doc in documents:
        counts[doc.kind.value] = counts.get(doc.kind.value, 0) + 1
    return [{"TpoDTE": tipo, "NroDTE": n} for tipo, n in counts.items()]


def build_caratula(
    documents: List[SignedDocument],
    cover: Dict[str, Any],
    identity=None,
) -> Dict[str, Any]:
    """
    Carátula del sobre

    cover: RutEmisor, FchResol, NroResol (obligatorios) y opcionalmente
    RutEnvia/RutReceptor para sobrescribir los valores por defecto.
    """
    rut_emisor = cover.get("RutEmisor") or documents[0].prepared.emisor.get("RUTEmisor")
    if not rut_emisor:
        raise EnvelopeError("Falta RutEmisor para la carátula")

    fch_resol = cover.get("FchResol")
    nro_resol = cover.get("NroResol")
    if not fch_resol or nro_resol is None or str(nro_resol).strip() == "":
        raise EnvelopeError("Faltan datos de resolución (FchResol/NroResol) para la carátula")
    try:
        nro_resol = int(nro_resol)
    except (TypeError, ValueError):
        raise EnvelopeError(f"NroResol debe ser numérico (recibido: {nro_resol!r})")

    rut_envia = cover.get("RutEnvia") or (identity.id() if identity is not None else None)
    if not rut_envia:
        raise EnvelopeError("No se pudo determinar RutEnvia (RUT del certificado)")

    return {
        "RutEmisor": rut_emisor,
        "RutEnvia": rut_envia,
        "RutReceptor": cover.get("RutReceptor") or DteConfig.RUT_RECEPTOR_SII,
        "FchResol": fch_resol,
        "NroResol": nro_resol,
        "TmstFirmaEnv": cover.get("TmstFirmaEnv") or datetime.now().strftime("%Y-%m-%dT%H:%M:%S"),
        "SubTotDTE": sub_totals(documents),
    }


def _caratula_xml(caratula: Dict[str, Any]) -> bytes:
    el = etree.Element(f"{{{xml_builder.NS_SII}}}Caratula", version="1.0", nsmap={None: xml_builder.NS_SII})
    xml_builder.append_fields(el, caratula, ORDER_CARATULA)
    return etree.tostring(el, encoding="ISO-8859-1", xml_declaration=False)


def _restore_open_marker(xml: bytes) -> bytes:
    """La re-serialización de lxml puede variar la etiqueta raíz; se deja la marca exacta."""
    return _OPEN_TAG_RE.sub(ENVIO_DTE_OPEN.encode("ascii"), xml, count=1)


def build(
    documents: Iterable[SignedDocument],
    cover: Dict[str, Any],
    identity,
    signer,
) -> Envelope:
    """
    Arma y firma el sobre

    Raises:
        EnvelopeError: sin documentos, sin resolución, o serialización vacía
    """
    documents = list(documents or [])
    if not documents:
        raise EnvelopeError("El sobre debe contener al menos un DTE")

    caratula = build_caratula(documents, cover, identity)

    parts = [_caratula_xml(caratula)]
    for doc in documents:
        if not isinstance(doc.xml, bytes) or not doc.xml.strip():
            raise EnvelopeError(f"DTE sin XML firmado ({doc.prepared.document_id})")
        parts.append(xml_builder.strip_declaration(doc.xml))

    unsigned = (
        XML_DECLARATION
        + ENVIO_DTE_OPEN.encode("ascii")
        + b'<SetDoc ID="SetDoc">'
        + b"".join(parts)
        + b"</SetDoc>"
        + ENVIO_DTE_CLOSE.encode("ascii")
    )

    try:
        signed = signer.sign_envelope(unsigned, identity, "SetDoc")
    except DteException as e:
        raise EnvelopeError(
            join_diagnostics("Error al generar XML EnvioDTE", e.diagnostics or [e.message]),
            diagnostics=e.diagnostics,
        )

    if not isinstance(signed, bytes) or not signed.strip():
        raise EnvelopeError("El XML generado no es válido (está vacío o no es una cadena)")

    xml = _restore_open_marker(signed)
    is_receipt = all(doc.kind.is_receipt for doc in documents)
    if is_receipt:
        xml = to_envio_boleta(xml)

    logger.info(
        f"Sobre {'EnvioBOLETA' if is_receipt else 'EnvioDTE'} generado: "
        f"{len(documents)} DTE, subtotales={caratula['SubTotDTE']}"
    )
    return Envelope(
        documents=tuple(documents),
        caratula=caratula,
        xml=xml,
        is_receipt_envelope=is_receipt,
    )
