"""
Generación del XML de DTE (Documento, TED) según el esquema SiiDte

El orden de los campos importa para el XSD del SII; los campos desconocidos
se agregan al final en el orden recibido.
"""
from decimal import Decimal
from typing import Any, Dict, Iterable, Optional

from lxml import etree

from .models import PreparedDocument

NS_SII = "http://www.sii.cl/SiiDte"

ORDER_ID_DOC = (
    "TipoDTE", "Folio", "FchEmis", "IndNoRebaja", "TipoDespacho", "IndTraslado",
    "TpoImpresion", "IndServicio", "MntBruto", "TpoTranCompra", "TpoTranVenta",
    "FmaPago", "FchCancel", "MntCancel", "SaldoInsol", "MedioPago", "TermPagoDias",
    "FchVenc",
)
ORDER_EMISOR = (
    "RUTEmisor", "RznSoc", "RznSocEmisor", "GiroEmis", "GiroEmisor", "Telefono",
    "CorreoEmisor", "Acteco", "CdgSIISucur", "DirOrigen", "CmnaOrigen", "CiudadOrigen",
    "CdgVendedor",
)
ORDER_RECEPTOR = (
    "RUTRecep", "CdgIntRecep", "RznSocRecep", "GiroRecep", "Contacto", "CorreoRecep",
    "DirRecep", "CmnaRecep", "CiudadRecep", "DirPostal", "CmnaPostal", "CiudadPostal",
)
ORDER_TOTALES = (
    "MntNeto", "MntExe", "MntBase", "TasaIVA", "IVA", "IVANoRet", "ImptoReten",
    "MntTotal", "MontoNF", "SaldoAnterior", "VlrPagar",
)
ORDER_DETALLE = (
    "NroLinDet", "CdgItem", "IndExe", "NmbItem", "DscItem", "QtyItem", "UnmdItem",
    "PrcItem", "DescuentoPct", "DescuentoMonto", "RecargoPct", "RecargoMonto",
    "CodImpAdic", "MontoItem",
)
ORDER_REFERENCIA = (
    "NroLinRef", "TpoDocRef", "IndGlobal", "FolioRef", "RUTOtr", "FchRef", "CodRef",
    "RazonRef",
)


def format_value(value: Any) -> str:
    if isinstance(value, bool):
        return "1" if value else "0"
    if isinstance(value, float):
        value = Decimal(str(value))
    if isinstance(value, Decimal):
        if value == value.to_integral_value():
            return str(int(value))
        return format(value.normalize(), "f")
    return str(value)


def _q(tag: str, ns: Optional[str]) -> str:
    return f"{{{ns}}}{tag}" if ns else tag


def _ordered_keys(data: Dict[str, Any], order: Iterable[str]):
    order = tuple(order)
    known = [k for k in order if k in data]
    extra = [k for k in data if k not in order]
    return known + extra


def append_fields(
    parent: etree._Element,
    data: Dict[str, Any],
    order: Iterable[str] = (),
    ns: Optional[str] = NS_SII,
) -> None:
    """Agrega campos (dict) como subelementos; listas se repiten, dicts se anidan."""
    for key in _ordered_keys(data, order):
        value = data[key]
        if value is None:
            continue
        values = value if isinstance(value, (list, tuple)) else [value]
        for v in values:
            el = etree.SubElement(parent, _q(key, ns))
            if isinstance(v, dict):
                append_fields(el, v, (), ns)
            else:
                el.text = format_value(v)


def clone(element: etree._Element, ns: Optional[str]) -> etree._Element:
    """Copia un árbol sin namespace (ej: CAF) al namespace indicado."""
    tag = etree.QName(element).localname
    copy = etree.Element(_q(tag, ns), attrib=dict(element.attrib))
    copy.text = element.text
    for child in element:
        if not isinstance(child.tag, str):
            continue
        sub = clone(child, ns)
        sub.tail = None
        copy.append(sub)
    return copy


def build_dd(
    prepared: PreparedDocument,
    caf_element: etree._Element,
    tsted: str,
    ns: Optional[str] = None,
) -> etree._Element:
    """
    Nodo DD del TED (datos del documento firmados con la llave del CAF)
    """
    primer_item = str(prepared.detalle[0].get("NmbItem", "")) if prepared.detalle else ""
    dd = etree.Element(_q("DD", ns))
    append_fields(dd, {
        "RE": prepared.emisor.get("RUTEmisor"),
        "TD": prepared.kind.value,
        "F": prepared.folio,
        "FE": prepared.issue_date,
        "RR": prepared.receptor.get("RUTRecep"),
        "RSR": str(prepared.receptor.get("RznSocRecep", ""))[:40],
        "MNT": prepared.totales.get("MntTotal", 0),
        "IT1": primer_item[:40],
    }, ns=ns)
    dd.append(clone(caf_element, ns))
    etree.SubElement(dd, _q("TSTED", ns)).text = tsted
    return dd


def build_ted(dd: etree._Element, frmt: str, ns: Optional[str] = NS_SII) -> etree._Element:
    ted = etree.Element(_q("TED", ns), version="1.0", nsmap={None: ns} if ns else None)
    ted.append(clone(dd, ns))
    etree.SubElement(ted, _q("FRMT", ns), algoritmo="SHA1withRSA").text = frmt
    return ted


def build_dte(prepared: PreparedDocument, ted: etree._Element, tmst_firma: str) -> etree._Element:
    """
    <DTE version="1.0"><Documento ID="T{tipo}F{folio}">...</Documento></DTE>
    """
    dte = etree.Element(_q("DTE", NS_SII), version="1.0", nsmap={None: NS_SII})
    doc = etree.SubElement(dte, _q("Documento", NS_SII), ID=prepared.document_id)

    enc = etree.SubElement(doc, _q("Encabezado", NS_SII))
    append_fields(etree.SubElement(enc, _q("IdDoc", NS_SII)), prepared.id_doc, ORDER_ID_DOC)
    append_fields(etree.SubElement(enc, _q("Emisor", NS_SII)), prepared.emisor, ORDER_EMISOR)
    append_fields(etree.SubElement(enc, _q("Receptor", NS_SII)), prepared.receptor, ORDER_RECEPTOR)
    append_fields(etree.SubElement(enc, _q("Totales", NS_SII)), prepared.totales, ORDER_TOTALES)

    for item in prepared.detalle:
        append_fields(etree.SubElement(doc, _q("Detalle", NS_SII)), item, ORDER_DETALLE)
    for ref in prepared.referencias:
        append_fields(etree.SubElement(doc, _q("Referencia", NS_SII)), ref, ORDER_REFERENCIA)

    doc.append(clone(ted, NS_SII))
    etree.SubElement(doc, _q("TmstFirma", NS_SII)).text = tmst_firma
    return dte


def strip_declaration(xml: bytes) -> bytes:
    """Quita la declaración <?xml ...?> para incrustar el XML en otro documento."""
    data = xml.lstrip()
    if data.startswith(b"<?xml"):
        end = data.find(b"?>")
        if end != -1:
            data = data[end + 2:].lstrip()
    return data
