import base64
import io
import logging
import os
import sys
from pathlib import Path

from flask import Flask, jsonify, request, send_file

# Asegurar imports desde repo root (evitar conflicto con webui/app.py)
SCRIPT_DIR = Path(__file__).resolve().parent
if str(SCRIPT_DIR) in sys.path:
    sys.path.remove(str(SCRIPT_DIR))
REPO_ROOT = Path(__file__).resolve().parents[1]
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))

from app.dte import get_dte_config
from dte_emisor import core

APP_TITLE = "DTE Emisor (SII Chile)"

app = Flask(__name__)
logger = logging.getLogger(__name__)


def _body():
    return request.get_json(silent=True)


def _respond(result: dict):
    """Respuesta JSON estilo {success, message, data} con el status del resultado."""
    payload = {"success": result["success"], "message": result["message"]}
    if result.get("data") is not None:
        payload["data"] = result["data"]
    for key in ("print_data", "print_data_error"):
        if key in result:
            payload[key] = result[key]
    return jsonify(payload), result.get("http_status", 200)


def _unknown_tipo(tipo: str):
    return jsonify({"success": False, "message": f"Tipo de documento no soportado: {tipo}"}), 404


@app.route("/health")
@app.route("/healthz")
def health():
    cfg = get_dte_config()
    return jsonify({"ok": True, "app": APP_TITLE, "env": cfg.env, "sii_host": cfg.sii_host})


@app.route("/<tipo>/emitir", methods=["POST"])
def emitir(tipo: str):
    if tipo not in core.TIPOS:
        return _unknown_tipo(tipo)
    return _respond(core.emitir(_body(), tipo))


@app.route("/<tipo>/preview", methods=["POST"])
def preview(tipo: str):
    if tipo not in core.TIPOS:
        return _unknown_tipo(tipo)
    data = _body()
    result = core.preview(data, tipo)
    if not result["ok"]:
        return _respond(result)

    opciones = (data or {}).get("opciones") or {}
    formato = opciones.get("formato") or "pdf"
    doc = result["data"]
    if formato == "pdf" and doc.get("pdf_content"):
        family = core.family_for(tipo)
        filename = f"{family.value}_preview_{doc['tipo']}_{doc['folio']}.pdf"
        return send_file(
            io.BytesIO(base64.b64decode(doc["pdf_content"])),
            mimetype="application/pdf",
            as_attachment=False,
            download_name=filename,
        )

    result["data"] = {
        "folio": doc["folio"],
        "tipo": doc["tipo"],
        "xml_content": doc["xml_content"],
        "pdf_content": doc["pdf_content"] if formato != "pdf" else None,
    }
    return _respond(result)


@app.route("/<tipo>/json_impresion", methods=["POST"])
def json_impresion(tipo: str):
    if tipo not in core.TIPOS:
        return _unknown_tipo(tipo)
    return _respond(core.json_impresion(_body(), tipo))


@app.route("/boletas/envio_multiple", methods=["POST"])
def envio_multiple():
    return _respond(core.envio_multiple(_body()))


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)
    try:
        app.run(
            host=os.environ.get("DTE_WEBUI_HOST", "127.0.0.1"),
            port=int(os.environ.get("DTE_WEBUI_PORT", "5055")),
            debug=False,
            use_reloader=False,
        )
    except Exception as exc:
        print(f"APP_RUN_ERROR: {exc!r}", file=sys.stderr)
        raise
