"""
JSON de impresión de un DTE (para impresoras térmicas / apps cliente)

Se construye desde la estructura SII del documento (Encabezado/Detalle/...)
y el TED. Al final se eliminan recursivamente los valores None/False y los
contenedores que queden vacíos; 0 y "" se conservan.
"""
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from lxml import etree

from .models import DocumentKind
from .xml_builder import clone

logger = logging.getLogger(__name__)

TEXTO_VERIFICACION = "Verifique documento: www.sii.cl"

IMPRESION_BASE = {
    "copia": "COPIA CLIENTE - NO VÁLIDA COMO DOCUMENTO TRIBUTARIO",
    "tipo_letra_titulo": "b",
    "tamaño_letra_titulo": 12,
}


def kind_name(tipo: Any) -> str:
    """Nombre impreso de un tipo de DTE"""
    if tipo is None or tipo == "":
        return "DOCUMENTO DESCONOCIDO"
    try:
        return DocumentKind.from_code(tipo).print_name
    except ValueError:
        return f"DOCUMENTO TIPO {tipo}"


def prune(value: Any) -> Any:
    """
    Quita None y False de dicts/listas, y los contenedores que quedan vacíos
    """
    if isinstance(value, dict):
        cleaned = {}
        for k, v in value.items():
            if v is None or v is False:
                continue
            if isinstance(v, (dict, list)):
                v = prune(v)
                if not v:
                    continue
            cleaned[k] = v
        return cleaned
    if isinstance(value, list):
        cleaned_list = []
        for v in value:
            if v is None or v is False:
                continue
            if isinstance(v, (dict, list)):
                v = prune(v)
                if not v:
                    continue
            cleaned_list.append(v)
        return cleaned_list
    return value


def _as_list(value: Any, marker: str) -> List[Dict[str, Any]]:
    """Acepta un único dict (con `marker`) o una lista de dicts"""
    if not value:
        return []
    if isinstance(value, dict):
        if marker in value:
            return [value]
        logger.warning(f"Formato inesperado (se esperaba lista o dict con {marker}): {value!r}")
        return []
    if isinstance(value, (list, tuple)):
        return [v for v in value if isinstance(v, dict)]
    logger.warning(f"Formato inesperado (se esperaba lista con {marker}): {value!r}")
    return []


def ted_data_string(ted_xml: Optional[bytes]) -> str:
    """Nodo DD del TED como XML (lo que se codifica en el timbre impreso)"""
    if not ted_xml:
        logger.warning("El documento no tiene TED")
        return "TED no disponible"
    parser = etree.XMLParser(remove_blank_text=True, resolve_entities=False, no_network=True)
    try:
        root = etree.fromstring(ted_xml, parser=parser)
    except (etree.XMLSyntaxError, ValueError) as e:
        logger.warning(f"No se pudo parsear el TED: {e}")
        return "Error parseando TED"

    dd = root if etree.QName(root).localname == "DD" else None
    if dd is None:
        found = root.xpath("./*[local-name()='DD']")
        dd = found[0] if found else None
    if dd is None:
        logger.warning("El TED no contiene el nodo <DD>")
        return "Nodo DD no encontrado"

    # Sin namespace, igual a lo firmado en FRMT
    data = etree.tostring(clone(dd, None), encoding="unicode")
    if not data.strip():
        return "Error extrayendo contenido DD como XML"
    return data


def _receptor(receptor: Dict[str, Any]) -> Dict[str, Any]:
    if not receptor:
        return {}
    return {
        "rut": receptor.get("RUTRecep"),
        "razon_social": receptor.get("RznSocRecep"),
        "giro": receptor.get("GiroRecep"),
        "direccion": receptor.get("DirRecep"),
        "comuna": receptor.get("CmnaRecep"),
        "ciudad": receptor.get("CiudadRecep"),
        "contacto": receptor.get("Contacto"),
        "email": receptor.get("CorreoRecep"),
    }


def _codigos(codigos: Any) -> List[Dict[str, Any]]:
    result = []
    for codigo in _as_list(codigos, "TpoCodigo"):
        if codigo.get("VlrCodigo"):
            result.append({
                "tipo": codigo.get("TpoCodigo") or "INTERNO",
                "valor": codigo["VlrCodigo"],
            })
    return result


def _detalle(detalle: Any) -> List[Dict[str, Any]]:
    result = []
    for item in _as_list(detalle, "NmbItem"):
        formatted = {
            "nombre": item.get("NmbItem"),
            "cantidad": item.get("QtyItem", 1),
            "precio_unitario": item.get("PrcItem"),
            "monto": item.get("MontoItem"),
            "descuento": item.get("DescuentoMonto"),
            "descuento_porcentaje": item.get("DescuentoPct"),
            "recargo": item.get("RecargoMonto"),
            "recargo_porcentaje": item.get("RecargoPct"),
            "unidad": item.get("UnmdItem"),
            "es_exento": str(item.get("IndExe", "")).strip() == "1",
            "descripcion": item.get("DscItem"),
        }
        if item.get("CdgItem"):
            formatted["codigos"] = _codigos(item["CdgItem"])
        result.append(formatted)
    return result


def _totales(totales: Dict[str, Any]) -> Dict[str, Any]:
    if not totales:
        return {}
    formatted = {
        "neto": totales.get("MntNeto"),
        "exento": totales.get("MntExe"),
        "iva": totales.get("IVA"),
        "tasa_iva": totales.get("TasaIVA"),
        "iva_no_retenido": totales.get("IVANoRet"),
        "total": totales.get("MntTotal"),
    }
    if totales.get("ImptoReten"):
        formatted["impuestos_adicionales"] = [
            {"tipo": imp["TipoImp"], "tasa": imp.get("TasaImp"), "monto": imp.get("MontoImp")}
            for imp in _as_list(totales["ImptoReten"], "TipoImp")
            if imp.get("TipoImp")
        ]
    return formatted


def _referencias(referencias: Any) -> List[Dict[str, Any]]:
    result = []
    for ref in _as_list(referencias, "NroLinRef"):
        tipo = ref.get("TpoDocRef")
        result.append({
            "numero_linea": ref.get("NroLinRef"),
            "tipo_documento": tipo,
            "tipo_documento_nombre": kind_name(tipo) if tipo else "REFERENCIA",
            "folio": ref.get("FolioRef"),
            "fecha": ref.get("FchRef"),
            "codigo": ref.get("CodRef"),
            "razon": ref.get("RazonRef"),
        })
    return result


def _descuentos_recargos(items: Any) -> List[Dict[str, Any]]:
    result = []
    for dr in _as_list(items, "TpoMov"):
        if not dr.get("TpoMov"):
            continue
        result.append({
            "tipo": "descuento" if dr.get("TpoMov") == "D" else "recargo",
            "glosa": dr.get("GlosaDR"),
            "valor": dr.get("ValorDR"),
            "es_porcentaje": dr.get("TpoValor") == "%",
            "afecta_exento": bool(dr.get("IndExeDR")),
        })
    return result


def _info_por_tipo(doc: Dict[str, Any], datos: Dict[str, Any]) -> None:
    id_doc = datos.get("Encabezado", {}).get("IdDoc", {}) or {}
    tipo = id_doc.get("TipoDTE")
    if tipo is None:
        return
    try:
        tipo = int(tipo)
    except (TypeError, ValueError):
        return

    if tipo in (39, 41):
        doc["impresion"] = {**IMPRESION_BASE, "titulo": kind_name(tipo), "copia": "COPIA CLIENTE"}
    elif tipo in (33, 34):
        doc["impresion"] = {**IMPRESION_BASE, "titulo": kind_name(tipo)}
        pago = {
            "medio": id_doc.get("MedioPago"),
            "forma": id_doc.get("FmaPago"),
            "dias": id_doc.get("TermPagoDias"),
            "vencimiento": id_doc.get("FchVenc"),
        }
        if any(pago.values()):
            doc["pago"] = pago
    elif tipo in (56, 61):
        doc["impresion"] = {**IMPRESION_BASE, "titulo": kind_name(tipo)}
    elif tipo == 52:
        doc["impresion"] = {**IMPRESION_BASE, "titulo": kind_name(tipo)}
        if id_doc.get("TipoDespacho"):
            despacho = {"tipo": id_doc.get("TipoDespacho"), "ind_traslado": id_doc.get("IndTraslado")}
            if any(despacho.values()):
                doc["despacho"] = despacho
        transporte = datos.get("Encabezado", {}).get("Transporte")
        if transporte:
            doc["transporte"] = transporte


def paper_width(options: Optional[Dict[str, Any]], default: int = 80) -> int:
    options = options or {}
    if options.get("papel_continuo") is not None:
        return int(options["papel_continuo"])
    return options.get("ancho_papel", default)


def format_print_json(
    datos: Dict[str, Any],
    ted_xml: Optional[bytes],
    issuer: Dict[str, Any],
    options: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    """
    Arma el JSON de impresión

    Args:
        datos: Estructura SII del DTE (Encabezado, Detalle, Referencia, DscRcgGlobal)
        ted_xml: XML del TED
        issuer: Datos del emisor (se usan NroResol/FchResol)
        options: papel_continuo / ancho_papel
    """
    encabezado = datos.get("Encabezado", {}) or {}
    id_doc = encabezado.get("IdDoc", {}) or {}
    emisor = encabezado.get("Emisor", {}) or {}
    tipo = id_doc.get("TipoDTE")

    doc: Dict[str, Any] = {
        "metadata": {
            "ancho_papel": paper_width(options),
            "version": "1.0",
            "fecha_generacion": datetime.now().strftime("%Y-%m-%d %H:%M:%S"),
        },
        "documento": {
            "tipo": tipo,
            "folio": id_doc.get("Folio"),
            "fecha_emision": id_doc.get("FchEmis"),
            "tipo_nombre": kind_name(tipo),
            "fecha_vencimiento": id_doc.get("FchVenc"),
        },
        "emisor": {
            "rut": emisor.get("RUTEmisor"),
            "razon_social": emisor.get("RznSoc") or emisor.get("RznSocEmisor") or "",
            "giro": emisor.get("GiroEmis") or emisor.get("GiroEmisor") or "",
            "direccion": emisor.get("DirOrigen"),
            "comuna": emisor.get("CmnaOrigen"),
            "ciudad": emisor.get("CiudadOrigen") or emisor.get("CmnaOrigen"),
            "telefono": emisor.get("Telefono"),
            "email": emisor.get("CorreoEmisor"),
            "resolucion": {
                "numero": issuer.get("NroResol"),
                "fecha": issuer.get("FchResol"),
            },
        },
        "receptor": _receptor(encabezado.get("Receptor", {}) or {}),
        "detalle": _detalle(datos.get("Detalle")),
        "totales": _totales(encabezado.get("Totales", {}) or {}),
        "ted": {
            "data_string": ted_data_string(ted_xml),
            "resolucion_numero": issuer.get("NroResol"),
            "resolucion_fecha": issuer.get("FchResol"),
            "texto_verificacion": TEXTO_VERIFICACION,
        },
    }

    if datos.get("Referencia"):
        doc["referencias"] = _referencias(datos["Referencia"])
    if datos.get("DscRcgGlobal"):
        doc["descuentos_recargos"] = _descuentos_recargos(datos["DscRcgGlobal"])

    _info_por_tipo(doc, datos)
    return prune(doc)
