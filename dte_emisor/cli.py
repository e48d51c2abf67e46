import argparse
import base64
import json
import logging
import sys
from pathlib import Path

from . import core


def _load_json(path: Path) -> dict:
    try:
        return json.loads(Path(path).expanduser().read_text(encoding="utf-8"))
    except (OSError, ValueError) as exc:
        raise SystemExit(f"ERROR: no se pudo leer {path}: {exc}")


def _print(result: dict) -> None:
    print(json.dumps(result, indent=2, ensure_ascii=False, default=str))


def _write_b64(content_b64, out: Path) -> None:
    out = Path(out).expanduser()
    out.parent.mkdir(parents=True, exist_ok=True)
    out.write_bytes(base64.b64decode(content_b64))
    print(f"archivo: {out}", file=sys.stderr)


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(prog="dte_emisor")
    parser.add_argument("-v", "--verbose", action="store_true")
    sub = parser.add_subparsers(dest="cmd", required=True)

    p_emitir = sub.add_parser("emitir")
    p_emitir.add_argument("tipo", choices=sorted(core.TIPOS))
    p_emitir.add_argument("request_json", type=Path)
    p_emitir.add_argument("--out-xml", type=Path, default=None)

    p_preview = sub.add_parser("preview")
    p_preview.add_argument("tipo", choices=sorted(core.TIPOS))
    p_preview.add_argument("request_json", type=Path)
    p_preview.add_argument("--out-pdf", type=Path, default=None)
    p_preview.add_argument("--out-xml", type=Path, default=None)

    p_json = sub.add_parser("json-impresion")
    p_json.add_argument("tipo", choices=sorted(core.TIPOS))
    p_json.add_argument("request_json", type=Path)

    p_multi = sub.add_parser("envio-multiple")
    p_multi.add_argument("request_json", type=Path)
    p_multi.add_argument("--out-xml", type=Path, default=None)

    args = parser.parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    data = _load_json(args.request_json)

    if args.cmd == "emitir":
        result = core.emitir(data, args.tipo)
    elif args.cmd == "preview":
        result = core.preview(data, args.tipo)
    elif args.cmd == "json-impresion":
        result = core.json_impresion(data, args.tipo)
    elif args.cmd == "envio-multiple":
        result = core.envio_multiple(data)
    else:
        return 2

    if result["ok"]:
        payload = result.get("data") or {}
        if getattr(args, "out_xml", None) and payload.get("xml_content"):
            _write_b64(payload["xml_content"], args.out_xml)
        if getattr(args, "out_pdf", None):
            if payload.get("pdf_content"):
                _write_b64(payload["pdf_content"], args.out_pdf)
            else:
                print("WARN: no se generó PDF de la vista previa", file=sys.stderr)

    _print(result)
    return 0 if result["ok"] else 1
