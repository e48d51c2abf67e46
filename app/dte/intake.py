"""
Validación de la forma del cuerpo JSON antes del pipeline

Convierte el JSON de una solicitud (certificado, caf, emisor, receptor,
detalle, referencias, folio, opciones) en un DocumentRequest o ReceiptBatch.
Todas las fallas son ValidationError (400).
"""
import base64
import binascii
import math
import re
from typing import Any, Dict, List, Optional

from .exceptions import ValidationError
from .models import (
    Credential,
    DocumentFamily,
    DocumentRequest,
    Environment,
    Mode,
    ReceiptBatch,
    ReceiptBatchItem,
)
from .rut import is_valid_rut

PAPEL_CONTINUO_VALIDOS = (0, 57, 75, 80, 110)

_ISSUER_FIELDS = ("RUTEmisor", "RznSoc", "GiroEmis", "DirOrigen", "CmnaOrigen")
_RESOLUTION_FIELDS = ("FchResol", "NroResol")
_B64_RE = re.compile(r"^[A-Za-z0-9/\r\n+]*={0,2}$")
_DATE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")

_NOTE_LABEL = {
    DocumentFamily.NOTA_CREDITO: "notas de crédito",
    DocumentFamily.NOTA_DEBITO: "notas de débito",
}


def _missing(value: Any) -> bool:
    return value is None or value == ""


def _is_number(value: Any) -> bool:
    if isinstance(value, bool):
        return False
    if isinstance(value, int):
        return True
    try:
        return math.isfinite(float(str(value)))
    except ValueError:
        return False


def decode_base64(value: Any, label: str) -> bytes:
    if not isinstance(value, str) or not value or not _B64_RE.match(value):
        raise ValidationError(f"El contenido de '{label}' debe estar codificado en base64.")
    try:
        return base64.b64decode(value.replace("\r", "").replace("\n", ""), validate=True)
    except (binascii.Error, ValueError):
        raise ValidationError(f"El contenido de '{label}' debe estar codificado en base64.")


def _credential(data: Dict[str, Any], *, require_password: bool = False) -> Credential:
    cert = data.get("certificado")
    if not isinstance(cert, dict) or not cert:
        raise ValidationError("El campo 'certificado' es requerido y debe ser un objeto.")
    if _missing(cert.get("data")):
        raise ValidationError("El campo 'certificado.data' (contenido en base64) es requerido.")
    password = cert.get("pass")
    if password is None or (require_password and password == ""):
        raise ValidationError("El campo 'certificado.pass' (contraseña) es requerido.")
    return Credential(data=decode_base64(cert["data"], "certificado.data"), password=str(password))


def _caf(caf: Any, prefix: str = "") -> bytes:
    if not isinstance(caf, dict) or not caf:
        raise ValidationError(f"El campo '{prefix}caf' es requerido y debe ser un objeto.")
    if _missing(caf.get("data")):
        raise ValidationError(f"El campo '{prefix}caf.data' (contenido en base64) es requerido.")
    return decode_base64(caf["data"], f"{prefix}caf.data")


def _issuer(data: Dict[str, Any], *, with_resolution: bool) -> Dict[str, Any]:
    issuer = data.get("emisor")
    if not isinstance(issuer, dict) or not issuer:
        raise ValidationError("El campo 'emisor' es requerido y debe ser un objeto.")
    fields = _ISSUER_FIELDS + (_RESOLUTION_FIELDS if with_resolution else ())
    for key in fields:
        if _missing(issuer.get(key)):
            suffix = " (puede ser 0)" if key == "NroResol" else ""
            raise ValidationError(f"El campo 'emisor.{key}' es requerido y no puede estar vacío{suffix}.")
    if not is_valid_rut(str(issuer["RUTEmisor"])):
        raise ValidationError("El formato de 'emisor.RUTEmisor' no es válido.")
    return issuer


def _check_recipient_rut(recipient: Dict[str, Any], label: str = "receptor") -> None:
    rut = recipient.get("RUTRecep")
    if rut and not is_valid_rut(str(rut)):
        raise ValidationError(f"El formato de '{label}.RUTRecep' no es válido.")


def check_line_items(items: Any, label: str = "detalle") -> List[Dict[str, Any]]:
    if not isinstance(items, list) or not items:
        raise ValidationError(f"El campo '{label}' es requerido y debe ser un arreglo no vacío.")
    for index, item in enumerate(items):
        if not isinstance(item, dict):
            raise ValidationError(f"Cada elemento en '{label}' debe ser un objeto. Error en índice {index}.")
        if not item.get("NmbItem"):
            raise ValidationError(f"Cada item en '{label}' debe contener 'NmbItem'. Error en índice {index}.")
        if item.get("PrcItem") is None and item.get("MontoItem") is None:
            raise ValidationError(
                f"Cada item en '{label}' debe contener 'PrcItem' o 'MontoItem'. Error en índice {index}."
            )
        monto = item.get("MontoItem")
        if monto is not None and (not _is_number(monto) or float(monto) <= 0):
            raise ValidationError(
                f"Si se proporciona 'MontoItem', debe ser un número positivo en el detalle. Error en índice {index}."
            )
        if item.get("PrcItem") is not None and not _is_number(item["PrcItem"]):
            raise ValidationError(f"Si se proporciona 'PrcItem', debe ser un número. Error en índice {index}.")
        qty = item.get("QtyItem")
        if qty is not None and (not _is_number(qty) or float(qty) <= 0):
            raise ValidationError(
                f"Si se proporciona 'QtyItem', debe ser un número positivo. Error en índice {index}."
            )
        if item.get("IndExe") not in (1, None, ""):
            raise ValidationError(
                "Si se proporciona 'IndExe', debe ser 1 (exento) o no incluirse/ser null/vacío (afecto). "
                f"Error en índice {index}."
            )
    return items


def _reference_list(refs: Any, label: str = "referencias") -> List[Dict[str, Any]]:
    if _missing(refs) or refs == []:
        return []
    if not isinstance(refs, list):
        raise ValidationError(f"El campo '{label}' debe ser un arreglo.")
    for index, ref in enumerate(refs):
        if not isinstance(ref, dict):
            raise ValidationError(f"Cada elemento en '{label}' debe ser un objeto. Error en índice {index}.")
    return refs


def _check_ref_date(ref: Dict[str, Any], index: int) -> None:
    fch = ref.get("FchRef")
    if fch is not None and not _DATE_RE.match(str(fch)):
        raise ValidationError(f"El formato de 'referencias[{index}].FchRef' debe ser YYYY-MM-DD.")


def _papel_continuo(options: Dict[str, Any]) -> None:
    if "papel_continuo" not in options or options["papel_continuo"] is None:
        return
    try:
        papel = int(str(options["papel_continuo"]).strip())
    except ValueError:
        papel = None
    if papel not in PAPEL_CONTINUO_VALIDOS:
        raise ValidationError("El valor de 'opciones.papel_continuo' debe ser 0 (carta), 57, 75, 80 o 110.")
    options["papel_continuo"] = papel


def _folio(value: Any, label: str = "folio") -> Optional[int]:
    if _missing(value):
        return None
    try:
        return int(str(value).strip())
    except ValueError:
        raise ValidationError(f"El campo '{label}' debe ser un número entero.")


def _environment(options: Dict[str, Any]) -> Environment:
    return Environment.CERTIFICACION if options.get("certificacion", True) else Environment.PRODUCCION


# ---------------------------------------------------------------------------
# Reglas por tipo
# ---------------------------------------------------------------------------

def _recipient_for(family: DocumentFamily, data: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    recipient = data.get("receptor")

    if family is DocumentFamily.BOLETA:
        if recipient is None or recipient == [] or recipient == {}:
            return None
        if not isinstance(recipient, dict):
            raise ValidationError("Si se proporciona 'receptor', debe ser un objeto.")
        _check_recipient_rut(recipient)
        return recipient

    if family is DocumentFamily.FACTURA:
        required, where = ("RUTRecep", "RznSocRecep", "GiroRecep"), "facturas"
    else:
        required, where = ("RUTRecep", "RznSocRecep"), _NOTE_LABEL[family]

    if not isinstance(recipient, dict) or not recipient:
        raise ValidationError(f"El campo 'receptor' es requerido y debe ser un objeto para {where}.")
    for key in required:
        if _missing(recipient.get(key)):
            raise ValidationError(f"El campo 'receptor.{key}' es requerido y no puede estar vacío para {where}.")
    _check_recipient_rut(recipient)
    return recipient


def _references_for(family: DocumentFamily, data: Dict[str, Any]) -> List[Dict[str, Any]]:
    refs = _reference_list(data.get("referencias"))

    if family is DocumentFamily.BOLETA:
        return refs

    if family is DocumentFamily.FACTURA:
        for index, ref in enumerate(refs):
            for key in ("TpoDocRef", "FolioRef", "FchRef"):
                if _missing(ref.get(key)):
                    raise ValidationError(
                        f"El campo 'referencias[{index}].{key}' es requerido cuando se incluyen referencias en facturas."
                    )
            _check_ref_date(ref, index)
        return refs

    where = _NOTE_LABEL[family]
    if not refs:
        raise ValidationError(f"El campo 'referencias' es requerido y debe ser un arreglo no vacío para {where}.")
    for index, ref in enumerate(refs):
        for key in ("TpoDocRef", "FolioRef", "FchRef", "CodRef", "RazonRef"):
            if _missing(ref.get(key)):
                raise ValidationError(f"El campo 'referencias[{index}].{key}' es requerido para {where}.")
        try:
            cod = int(str(ref["CodRef"]).strip())
        except ValueError:
            cod = None
        if cod not in (1, 2, 3):
            raise ValidationError(
                f"El campo 'referencias[{index}].CodRef' debe ser 1 (Anula), 2 (Corrige Texto) o 3 (Corrige Monto)."
            )
        _check_ref_date(ref, index)
    return refs


def parse_document_request(data: Any, family: DocumentFamily, *, preview: bool) -> DocumentRequest:
    """
    Valida el cuerpo de emisión/vista previa de un documento

    Args:
        data: JSON ya decodificado
        family: Tipo de documento de la ruta
        preview: True para vista previa / JSON de impresión (sin datos de resolución)

    Raises:
        ValidationError
    """
    if not isinstance(data, dict):
        raise ValidationError("No se recibieron datos JSON válidos en el cuerpo de la solicitud.")

    credential = _credential(data)
    caf = _caf(data.get("caf"))
    issuer = _issuer(data, with_resolution=not preview)
    line_items = check_line_items(data.get("detalle"))

    options = dict(data.get("opciones") or {})
    _papel_continuo(options)
    if "generate_print_data" in data:
        options["generate_print_data"] = bool(data["generate_print_data"])

    extras = data.get("IdDoc") or {}
    if not isinstance(extras, dict):
        raise ValidationError("El campo 'IdDoc' debe ser un objeto.")

    return DocumentRequest(
        family=family,
        issuer=issuer,
        line_items=line_items,
        credential=credential,
        caf=caf,
        recipient=_recipient_for(family, data),
        references=_references_for(family, data),
        requested_folio=_folio(data.get("folio")),
        environment=_environment(options),
        mode=Mode.PREVIEW if preview else Mode.ISSUE,
        options=options,
        extras=dict(extras),
    )


def parse_batch_request(data: Any) -> ReceiptBatch:
    """
    Valida el cuerpo del envío múltiple de boletas

    Raises:
        ValidationError
    """
    if not isinstance(data, dict):
        raise ValidationError("No se recibieron datos JSON válidos en el cuerpo de la solicitud.")

    credential = _credential(data, require_password=True)
    issuer = _issuer(data, with_resolution=True)

    cover = data.get("caratula")
    if not isinstance(cover, dict) or not cover:
        raise ValidationError("El campo 'caratula' es requerido y debe ser un objeto.")

    boletas = data.get("boletas")
    if not isinstance(boletas, list) or not boletas:
        raise ValidationError("El campo 'boletas' es requerido y debe ser un arreglo no vacío.")

    receipts = []
    for index, boleta in enumerate(boletas):
        prefix = f"boletas[{index}]."
        if not isinstance(boleta, dict):
            raise ValidationError(f"Cada elemento en 'boletas' debe ser un objeto. Error en índice {index}.")
        caf = _caf(boleta.get("caf"), prefix)
        folio = _folio(boleta.get("folio"), f"{prefix}folio")
        if folio is None:
            raise ValidationError(f"El campo '{prefix}folio' es requerido y debe ser un número entero.")

        recipient = boleta.get("receptor")
        if recipient is not None and not isinstance(recipient, dict):
            raise ValidationError(f"El campo '{prefix}receptor' debe ser un objeto.")
        if recipient:
            _check_recipient_rut(recipient, f"{prefix}receptor")

        receipts.append(ReceiptBatchItem(
            caf=caf,
            folio=folio,
            line_items=check_line_items(boleta.get("detalle"), f"{prefix}detalle"),
            recipient=recipient or None,
            references=_reference_list(boleta.get("referencias"), f"{prefix}referencias"),
            issue_date=boleta.get("fecha_emision"),
            ind_servicio=boleta.get("IndServicio"),
        ))

    options = dict(data.get("opciones") or {})
    _papel_continuo(options)

    return ReceiptBatch(
        issuer=issuer,
        credential=credential,
        receipts=receipts,
        cover=cover,
        environment=_environment(options),
        options=options,
    )
