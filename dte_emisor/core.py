from __future__ import annotations

import base64
import logging
import traceback
from typing import Any, Callable, Dict, Optional

from app.dte import (
    AdapterOperation,
    DocumentFamily,
    DtePipeline,
    DteException,
    parse_batch_request,
    parse_document_request,
)

logger = logging.getLogger(__name__)

# Segmento de ruta (plural) -> variante
TIPOS = {
    "boletas": DocumentFamily.BOLETA,
    "facturas": DocumentFamily.FACTURA,
    "notas_credito": DocumentFamily.NOTA_CREDITO,
    "notas_debito": DocumentFamily.NOTA_DEBITO,
}


def _b64(content: Optional[bytes]) -> Optional[str]:
    return base64.b64encode(content).decode("ascii") if content else None


def family_for(tipo: str) -> DocumentFamily:
    key = (tipo or "").strip().lower()
    if key in TIPOS:
        return TIPOS[key]
    try:
        return DocumentFamily(key)
    except ValueError:
        raise ValueError(f"Tipo de documento inválido: {tipo!r}. Usar {', '.join(TIPOS)}")


def _ok(message: str, data: Any, meta: Dict[str, Any]) -> dict:
    return {
        "ok": True,
        "success": True,
        "message": message,
        "data": data,
        "http_status": 200,
        "meta": meta,
    }


def _error(exc: Exception, internal_prefix: str, meta: Dict[str, Any]) -> dict:
    if isinstance(exc, DteException):
        status = exc.http_status
        message = exc.message if status < 500 else f"{internal_prefix}: {exc.message}"
        meta = {**meta, "error_type": type(exc).__name__, "code": exc.code, "diagnostics": exc.diagnostics}
    else:
        status = 500
        message = f"{internal_prefix}: {exc}"
        meta = {**meta, "error_type": type(exc).__name__, "traceback": traceback.format_exc()}
        logger.error(f"{internal_prefix}: {exc}", exc_info=True)
    return {
        "ok": False,
        "success": False,
        "message": message,
        "data": None,
        "http_status": status,
        "meta": meta,
    }


def _run(fn: Callable[[], dict], internal_prefix: str, meta: Dict[str, Any]) -> dict:
    try:
        return fn()
    except Exception as exc:
        return _error(exc, internal_prefix, meta)


def emitir(data: Any, tipo: str, *, pipeline: Optional[DtePipeline] = None) -> dict:
    """
    Emite un documento y lo envía al SII. Nunca lanza: retorna ok/error.
    """
    family = family_for(tipo)
    meta = {"operation": "emitir", "tipo": family.value}

    def run() -> dict:
        request = parse_document_request(data, family, preview=False)
        result = (pipeline or DtePipeline()).process(request)
        payload = {
            "track_id": result.track_id,
            "folio": result.folios[0] if result.folios else None,
            "tipo": result.kind.value if result.kind else None,
            "xml_path": result.xml_path,
            "pdf_path": result.pdf_path,
            "xml_content": _b64(result.envelope_xml),
            "pdf_content": _b64(result.pdf),
        }
        out = _ok(f"{family.display_name} emitida y envío iniciado correctamente al SII.", payload, meta)
        if result.render_error:
            out["meta"] = {**meta, "render_error": result.render_error}
        if result.print_data is not None:
            out["print_data"] = result.print_data
        if result.print_data_error:
            out["print_data_error"] = result.print_data_error
        return out

    return _run(run, f"Error interno al procesar la {family.display_name.lower()}", meta)


def preview(data: Any, tipo: str, *, pipeline: Optional[DtePipeline] = None) -> dict:
    """
    Vista previa sin envío. data.pdf_content viene en base64 cuando se generó el PDF.
    """
    family = family_for(tipo)
    meta = {"operation": "preview", "tipo": family.value}

    def run() -> dict:
        request = parse_document_request(data, family, preview=True)
        result = (pipeline or DtePipeline()).process(request)
        payload = {
            "folio": result.signed.folio,
            "tipo": result.signed.kind.value,
            "xml_content": _b64(result.xml),
            "pdf_content": _b64(result.pdf),
            "xml_path": result.xml_path,
            "pdf_path": result.pdf_path,
        }
        return _ok(f"Vista previa de {family.display_name.lower()} generada.", payload, meta)

    return _run(run, "Error interno al generar la vista previa", meta)


def json_impresion(data: Any, tipo: str, *, pipeline: Optional[DtePipeline] = None) -> dict:
    family = family_for(tipo)
    meta = {"operation": "json_impresion", "tipo": family.value}

    def run() -> dict:
        operation = AdapterOperation.from_name(family.value)
        request = parse_document_request(data, family, preview=True)
        doc = (pipeline or DtePipeline()).build_print_json(request, operation)
        return _ok("Datos para impresión térmica generados correctamente.", doc, meta)

    return _run(run, "Error interno al generar datos para impresión", meta)


def envio_multiple(data: Any, *, pipeline: Optional[DtePipeline] = None) -> dict:
    meta = {"operation": "envio_multiple", "tipo": DocumentFamily.BOLETA.value}

    def run() -> dict:
        batch = parse_batch_request(data)
        result = (pipeline or DtePipeline()).issue_receipts_batch(batch)
        payload = {
            "track_id": result.track_id,
            "xml_path": result.xml_path,
            "xml_content": _b64(result.envelope_xml),
            "folios": list(result.folios),
        }
        return _ok("Múltiples boletas emitidas y envío iniciado correctamente al SII.", payload, meta)

    return _run(run, "Error interno al procesar el envío múltiple", meta)
