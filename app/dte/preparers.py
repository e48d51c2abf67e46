"""
Preparación de documentos por tipo (Boleta, Factura, Nota de Crédito/Débito)

Cada variante aporta solo sus reglas (emisor, receptor, referencias, tipo de
DTE); la normalización de detalle, referencias y totales es común. Las
variantes se despachan con una tabla, sin jerarquía de clases.
"""
import logging
from dataclasses import dataclass
from datetime import date
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Callable, Dict, List, Optional, Tuple

from .exceptions import ValidationError
from .models import DocumentFamily, DocumentKind, PreparedDocument

logger = logging.getLogger(__name__)

TASA_IVA = 19
RUT_SIN_RECEPTOR = "66666666-6"
RZN_SIN_RECEPTOR = "SIN DETALLE"
IND_SERVICIO_DEFAULT = 3
COD_REF_VALIDOS = (1, 2, 3)

# Campos de IdDoc que se copian desde extras cuando vienen informados
_ID_DOC_EXTRAS = ("FchVenc", "FmaPago", "MedioPago", "TermPagoDias", "TpoTranVenta", "IndTraslado")


def _blank(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return not value.strip()
    if isinstance(value, (list, dict, tuple)):
        return len(value) == 0
    return False


def _compact(block: Dict[str, Any]) -> Dict[str, Any]:
    return {k: v for k, v in block.items() if v is not None}


def _round_int(value: Decimal) -> int:
    return int(value.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def _to_decimal(value: Any, label: str) -> Decimal:
    try:
        number = Decimal(str(value))
    except ArithmeticError:
        raise ValidationError(f"Valor numérico inválido en {label}: {value!r}")
    if not number.is_finite():
        raise ValidationError(f"Valor numérico inválido en {label}: {value!r}")
    return number


def is_exempt(item: Dict[str, Any]) -> bool:
    return str(item.get("IndExe", "")).strip() == "1"


# ---------------------------------------------------------------------------
# Normalización común
# ---------------------------------------------------------------------------

def normalize_line_items(line_items: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """
    Completa NroLinDet, QtyItem y MontoItem

    Raises:
        ValidationError: detalle vacío, sin NmbItem o sin precio/monto
    """
    if not line_items:
        raise ValidationError("El detalle debe contener al menos un ítem")

    normalized = []
    for idx, raw in enumerate(line_items, start=1):
        if not isinstance(raw, dict):
            raise ValidationError(f"Detalle línea {idx} debe ser un objeto")
        item = dict(raw)
        if _blank(item.get("NmbItem")):
            raise ValidationError(f"Falta 'NmbItem' en detalle línea {idx}")

        has_price = not _blank(item.get("PrcItem"))
        has_amount = not _blank(item.get("MontoItem"))
        if not has_price and not has_amount:
            raise ValidationError(f"Falta 'PrcItem' o 'MontoItem' en detalle línea {idx}")

        if has_price and _blank(item.get("QtyItem")):
            item["QtyItem"] = 1

        if not has_amount:
            qty = _to_decimal(item["QtyItem"], f"detalle línea {idx}")
            price = _to_decimal(item["PrcItem"], f"detalle línea {idx}")
            amount = qty * price
            if not _blank(item.get("DescuentoMonto")):
                amount -= _to_decimal(item["DescuentoMonto"], f"detalle línea {idx}")
            if not _blank(item.get("RecargoMonto")):
                amount += _to_decimal(item["RecargoMonto"], f"detalle línea {idx}")
            item["MontoItem"] = _round_int(amount)

        item.setdefault("NroLinDet", idx)
        normalized.append(item)
    return normalized


def normalize_references(references: Optional[List[Dict[str, Any]]]) -> List[Dict[str, Any]]:
    normalized = []
    for idx, raw in enumerate(references or [], start=1):
        if not isinstance(raw, dict):
            raise ValidationError(f"Referencia línea {idx} debe ser un objeto")
        ref = dict(raw)
        ref.setdefault("NroLinRef", idx)
        normalized.append(ref)
    return normalized


def compute_totals(line_items: List[Dict[str, Any]], *, vat_included: bool) -> Dict[str, Any]:
    """
    Totales del documento

    En boletas los montos incluyen IVA; en el resto son netos.
    """
    exento = Decimal(0)
    afecto = Decimal(0)
    for item in line_items:
        monto = _to_decimal(item["MontoItem"], f"detalle línea {item.get('NroLinDet')}")
        if is_exempt(item):
            exento += monto
        else:
            afecto += monto

    totales: Dict[str, Any] = {}
    if afecto:
        if vat_included:
            neto = _round_int(afecto / Decimal("1.19"))
            iva = _round_int(afecto) - neto
        else:
            neto = _round_int(afecto)
            iva = _round_int(afecto * TASA_IVA / Decimal(100))
        totales["MntNeto"] = neto
        totales["TasaIVA"] = TASA_IVA
        totales["IVA"] = iva
    if exento:
        totales["MntExe"] = _round_int(exento)
    totales["MntTotal"] = totales.get("MntNeto", 0) + totales.get("IVA", 0) + totales.get("MntExe", 0)
    return totales


# ---------------------------------------------------------------------------
# Emisor
# ---------------------------------------------------------------------------

_ISSUER_REQUIRED = ("RUTEmisor", "RznSoc", "GiroEmis", "DirOrigen", "CmnaOrigen")


def _check_issuer(issuer: Dict[str, Any]) -> None:
    if not isinstance(issuer, dict):
        raise ValidationError("Los datos del emisor deben ser un objeto")
    for key in _ISSUER_REQUIRED:
        if _blank(issuer.get(key)):
            raise ValidationError(f"Falta 'emisor.{key}'")


def _issuer_receipt(issuer: Dict[str, Any]) -> Dict[str, Any]:
    _check_issuer(issuer)
    return _compact({
        "RUTEmisor": issuer["RUTEmisor"],
        "RznSocEmisor": issuer["RznSoc"],
        "GiroEmisor": issuer["GiroEmis"],
        "Acteco": issuer.get("Acteco"),
        "DirOrigen": issuer["DirOrigen"],
        "CmnaOrigen": issuer["CmnaOrigen"],
        "CiudadOrigen": issuer.get("CiudadOrigen") or issuer["CmnaOrigen"],
    })


def _issuer_standard(issuer: Dict[str, Any]) -> Dict[str, Any]:
    _check_issuer(issuer)
    return _compact({
        "RUTEmisor": issuer["RUTEmisor"],
        "RznSoc": issuer["RznSoc"],
        "GiroEmis": issuer["GiroEmis"],
        "Telefono": issuer.get("Telefono"),
        "CorreoEmisor": issuer.get("CorreoEmisor"),
        "Acteco": issuer.get("Acteco"),
        "DirOrigen": issuer["DirOrigen"],
        "CmnaOrigen": issuer["CmnaOrigen"],
        "CiudadOrigen": issuer.get("CiudadOrigen") or issuer["CmnaOrigen"],
    })


# ---------------------------------------------------------------------------
# Receptor
# ---------------------------------------------------------------------------

def _recipient_receipt(recipient: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    recipient = recipient or {}
    return _compact({
        "RUTRecep": RUT_SIN_RECEPTOR if _blank(recipient.get("RUTRecep")) else recipient["RUTRecep"],
        "RznSocRecep": RZN_SIN_RECEPTOR if _blank(recipient.get("RznSocRecep")) else recipient["RznSocRecep"],
        "DirRecep": recipient.get("DirRecep"),
        "CmnaRecep": recipient.get("CmnaRecep"),
        "CiudadRecep": recipient.get("CiudadRecep"),
    })


def _recipient_invoice(recipient: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    if not isinstance(recipient, dict) or not recipient:
        raise ValidationError("Falta 'receptor' (obligatorio para facturas)")
    for key in ("RUTRecep", "RznSocRecep", "GiroRecep"):
        if _blank(recipient.get(key)):
            raise ValidationError(f"Falta 'receptor.{key}'")
    return _compact(dict(recipient))


def _recipient_note(recipient: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    if not isinstance(recipient, dict) or not recipient:
        raise ValidationError("Falta 'receptor' (obligatorio para notas de crédito/débito)")
    for key in ("RUTRecep", "RznSocRecep"):
        if _blank(recipient.get(key)):
            raise ValidationError(f"Falta 'receptor.{key}'")
    if "GiroRecep" in recipient and _blank(recipient.get("GiroRecep")):
        raise ValidationError("'receptor.GiroRecep' no puede estar vacío")
    return _compact(dict(recipient))


# ---------------------------------------------------------------------------
# Referencias
# ---------------------------------------------------------------------------

def _check_reference_fields(references: List[Dict[str, Any]], fields: Tuple[str, ...]) -> None:
    for ref in references:
        n = ref["NroLinRef"]
        for key in fields:
            if _blank(ref.get(key)):
                raise ValidationError(f"Falta '{key}' en referencia línea {n}")


def _references_none(references: List[Dict[str, Any]]) -> None:
    return None


def _references_invoice(references: List[Dict[str, Any]]) -> None:
    _check_reference_fields(references, ("TpoDocRef", "FolioRef", "FchRef"))


def _references_note(references: List[Dict[str, Any]]) -> None:
    if not references:
        raise ValidationError(
            "Debe incluir al menos una referencia al documento que se corrige"
        )
    _check_reference_fields(references, ("TpoDocRef", "FolioRef", "FchRef", "CodRef"))
    for ref in references:
        n = ref["NroLinRef"]
        try:
            cod = int(str(ref["CodRef"]).strip())
        except ValueError:
            cod = None
        if cod not in COD_REF_VALIDOS:
            raise ValidationError(
                f"'CodRef' en referencia línea {n} debe ser 1, 2 o 3 (recibido: {ref['CodRef']!r})"
            )
        ref["CodRef"] = cod
        if _blank(ref.get("RazonRef")):
            raise ValidationError(f"Falta 'RazonRef' en referencia línea {n}")


# ---------------------------------------------------------------------------
# Tipo de DTE
# ---------------------------------------------------------------------------

def _kind_receipt(line_items: List[Dict[str, Any]]) -> DocumentKind:
    if all(is_exempt(item) for item in line_items):
        return DocumentKind.BOLETA_EXENTA
    return DocumentKind.BOLETA


@dataclass(frozen=True)
class _Variant:
    issuer: Callable[[Dict[str, Any]], Dict[str, Any]]
    recipient: Callable[[Optional[Dict[str, Any]]], Dict[str, Any]]
    references: Callable[[List[Dict[str, Any]]], None]
    kind: Callable[[List[Dict[str, Any]]], DocumentKind]
    vat_included: bool = False


VARIANTS: Dict[DocumentFamily, _Variant] = {
    DocumentFamily.BOLETA: _Variant(
        issuer=_issuer_receipt,
        recipient=_recipient_receipt,
        references=_references_none,
        kind=_kind_receipt,
        vat_included=True,
    ),
    DocumentFamily.FACTURA: _Variant(
        issuer=_issuer_standard,
        recipient=_recipient_invoice,
        references=_references_invoice,
        kind=lambda items: DocumentKind.FACTURA,
    ),
    DocumentFamily.NOTA_CREDITO: _Variant(
        issuer=_issuer_standard,
        recipient=_recipient_note,
        references=_references_note,
        kind=lambda items: DocumentKind.NOTA_CREDITO,
    ),
    DocumentFamily.NOTA_DEBITO: _Variant(
        issuer=_issuer_standard,
        recipient=_recipient_note,
        references=_references_note,
        kind=lambda items: DocumentKind.NOTA_DEBITO,
    ),
}


def prepare(
    family: DocumentFamily,
    issuer: Dict[str, Any],
    recipient: Optional[Dict[str, Any]],
    line_items: List[Dict[str, Any]],
    folio: int,
    references: Optional[List[Dict[str, Any]]] = None,
    *,
    issue_date: Optional[str] = None,
    extras: Optional[Dict[str, Any]] = None,
) -> PreparedDocument:
    """
    Construye el documento canónico para un tipo

    Args:
        family: Variante (boleta, factura, nota_credito, nota_debito)
        issuer: Datos del emisor (RUTEmisor, RznSoc, GiroEmis, ...)
        recipient: Datos del receptor (opcional en boletas)
        line_items: Detalle
        folio: Folio ya validado contra el CAF
        references: Referencias (obligatorias en notas)
        issue_date: Fecha de emisión YYYY-MM-DD (default: hoy)
        extras: Campos adicionales de IdDoc (FchVenc, FmaPago, ...)

    Raises:
        ValidationError
    """
    try:
        variant = VARIANTS[family]
    except KeyError:
        raise ValidationError(f"Tipo de documento no soportado: {family!r}")

    extras = extras or {}
    emisor = variant.issuer(issuer)
    receptor = variant.recipient(recipient)
    detalle = normalize_line_items(line_items)
    referencias = normalize_references(references)
    variant.references(referencias)

    kind = variant.kind(detalle)
    fch_emis = issue_date or extras.get("FchEmis") or date.today().isoformat()

    id_doc: Dict[str, Any] = {"TipoDTE": kind.value, "Folio": folio, "FchEmis": fch_emis}
    if family is DocumentFamily.BOLETA:
        ind_servicio = extras.get("IndServicio", issuer.get("IndServicio"))
        id_doc["IndServicio"] = IND_SERVICIO_DEFAULT if _blank(ind_servicio) else ind_servicio
    for key in _ID_DOC_EXTRAS:
        if not _blank(extras.get(key)):
            id_doc[key] = extras[key]

    totales = compute_totals(detalle, vat_included=variant.vat_included)

    logger.debug(f"Documento preparado: tipo={kind.value}, folio={folio}, total={totales['MntTotal']}")
    return PreparedDocument(
        kind=kind,
        folio=folio,
        issue_date=fch_emis,
        id_doc=id_doc,
        emisor=emisor,
        receptor=receptor,
        totales=totales,
        detalle=tuple(detalle),
        referencias=tuple(referencias),
    )
