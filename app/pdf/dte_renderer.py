from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import pdf417gen
from reportlab.lib import colors
from reportlab.lib.pagesizes import letter
from reportlab.lib.units import mm
from reportlab.lib.utils import ImageReader, simpleSplit
from reportlab.pdfgen import canvas

logger = logging.getLogger(__name__)

_ND = "N/D"

GRAY_BORDER = colors.HexColor("#D9D9D9")
GRAY_TEXT = colors.HexColor("#666666")
RED_SII = colors.HexColor("#C0392B")

PAPEL_CONTINUO = (57, 75, 80, 110)
TED_COLUMNS = 12


def _clean(value: Any) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, str):
        value = value.strip()
        return value or None
    return str(value)


def _safe(value: Any, fallback: str = _ND) -> str:
    return _clean(value) or fallback


def _fmt_num(value: Any, fallback: str = "0") -> str:
    """Miles con punto, sin decimales (formato CLP)"""
    cleaned = _clean(value)
    if cleaned is None:
        return fallback
    try:
        num = float(cleaned)
    except ValueError:
        return cleaned
    return f"{int(round(num)):,}".replace(",", ".")


def _fmt_qty(value: Any) -> str:
    cleaned = _clean(value) or "1"
    try:
        num = float(cleaned)
    except ValueError:
        return cleaned
    if num == int(num):
        return str(int(num))
    return f"{num:.2f}".rstrip("0").replace(".", ",")


def _format_date(value: Any) -> str:
    cleaned = _clean(value)
    if not cleaned:
        return _ND
    parts = cleaned.split("T")[0].split("-")
    if len(parts) == 3:
        y, m, d = parts
        return f"{d}/{m}/{y}"
    return cleaned


def _format_rut(value: Any) -> str:
    cleaned = _clean(value)
    if not cleaned or "-" not in cleaned:
        return _safe(cleaned)
    body, dv = cleaned.split("-", 1)
    if not body.isdigit():
        return cleaned
    return f"{int(body):,}".replace(",", ".") + f"-{dv}"


def _draw_pdf417(c: canvas.Canvas, x: float, top: float, width: float, value: str) -> float:
    """
    Dibuja el timbre como PDF417 (nivel de seguridad 5, ISO-8859-1)

    Returns:
        Alto dibujado (0 si no hay datos)
    """
    if width <= 0 or not value:
        return 0
    codes = pdf417gen.encode(value, columns=TED_COLUMNS, security_level=5, encoding="ISO-8859-1")
    image = pdf417gen.render_image(codes, scale=2, ratio=3, padding=0)
    height = width * image.height / image.width
    c.drawImage(ImageReader(image), x, top - height, width=width, height=height)
    return height


def page_size(paper: int, line_count: int) -> Tuple[float, float]:
    """
    0 = hoja carta; 57/75/80/110 = rollo continuo de ese ancho (mm)
    """
    if not paper:
        return letter
    height = (150 + 8 * max(line_count, 1)) * mm
    return paper * mm, height


class _Layout:
    """Cursor vertical y anchos útiles de la página"""

    def __init__(self, c: canvas.Canvas, width: float, height: float, margin: float):
        self.c = c
        self.left = margin
        self.right = width - margin
        self.y = height - margin
        self.narrow = width < 120 * mm

    @property
    def width(self) -> float:
        return self.right - self.left

    def text(self, value: str, *, font: str = "Helvetica", size: float = 8, center: bool = False) -> None:
        self.c.setFont(font, size)
        for line in simpleSplit(value, font, size, self.width) or [""]:
            if center:
                self.c.drawCentredString((self.left + self.right) / 2, self.y, line)
            else:
                self.c.drawString(self.left, self.y, line)
            self.y -= size + 2

    def pair(self, left: str, right: str, *, font: str = "Helvetica", size: float = 8) -> None:
        self.c.setFont(font, size)
        self.c.drawString(self.left, self.y, left)
        self.c.drawRightString(self.right, self.y, right)
        self.y -= size + 2

    def hr(self) -> None:
        self.y -= 1 * mm
        self.c.setStrokeColor(GRAY_BORDER)
        self.c.setLineWidth(0.6)
        self.c.line(self.left, self.y, self.right, self.y)
        self.c.setStrokeColor(colors.black)
        self.y -= 3 * mm


def _draw_header_box(lay: _Layout, doc: Dict[str, Any], emisor: Dict[str, Any]) -> None:
    """Recuadro rojo SII: RUT, tipo de documento y folio"""
    box_w = lay.width if lay.narrow else 70 * mm
    box_h = 24 * mm
    x = lay.left if lay.narrow else lay.right - box_w
    top = lay.y + 4 * mm
    c = lay.c
    c.setStrokeColor(RED_SII)
    c.setLineWidth(1.5)
    c.rect(x, top - box_h, box_w, box_h)
    c.setFillColor(RED_SII)
    cx = x + box_w / 2
    c.setFont("Helvetica-Bold", 10)
    c.drawCentredString(cx, top - 7 * mm, f"R.U.T.: {_format_rut(emisor.get('rut'))}")
    c.setFont("Helvetica-Bold", 9 if lay.narrow else 10)
    c.drawCentredString(cx, top - 13 * mm, _safe(doc.get("tipo_nombre")))
    c.setFont("Helvetica-Bold", 10)
    c.drawCentredString(cx, top - 19 * mm, f"N° {_safe(doc.get('folio'))}")
    c.setFillColor(colors.black)
    c.setStrokeColor(colors.black)
    c.setLineWidth(1)

    comuna = _clean(emisor.get("comuna"))
    if comuna:
        c.setFont("Helvetica-Bold", 8)
        c.setFillColor(RED_SII)
        c.drawCentredString(cx, top - box_h - 4 * mm, f"S.I.I. - {comuna.upper()}")
        c.setFillColor(colors.black)

    if lay.narrow:
        lay.y = top - box_h - 9 * mm


def _draw_issuer(lay: _Layout, emisor: Dict[str, Any], logo_path: Optional[str]) -> None:
    if logo_path:
        try:
            img = ImageReader(logo_path)
            iw, ih = img.getSize()
            h = 14 * mm
            w = h * iw / ih if ih else h
            lay.c.drawImage(img, lay.left, lay.y - h + 4 * mm, width=w, height=h, mask="auto")
            lay.y -= h + 1 * mm
        except (OSError, ValueError) as e:
            logger.warning(f"No se pudo cargar el logo {logo_path}: {e}")

    saved_right = lay.right
    if not lay.narrow:
        lay.right = lay.right - 75 * mm
    lay.text(_safe(emisor.get("razon_social")), font="Helvetica-Bold", size=10)
    giro = _clean(emisor.get("giro"))
    if giro:
        lay.text(giro, size=8)
    direccion = ", ".join(v for v in (_clean(emisor.get("direccion")), _clean(emisor.get("comuna"))) if v)
    if direccion:
        lay.text(direccion, size=8)
    for label, key in (("Teléfono", "telefono"), ("Email", "email")):
        value = _clean(emisor.get(key))
        if value:
            lay.text(f"{label}: {value}", size=8)
    lay.right = saved_right


def _draw_recipient(lay: _Layout, doc: Dict[str, Any], receptor: Dict[str, Any]) -> None:
    lay.pair(f"Fecha emisión: {_format_date(doc.get('fecha_emision'))}",
             f"Vencimiento: {_format_date(doc.get('fecha_vencimiento'))}" if doc.get("fecha_vencimiento") else "")
    if not receptor:
        return
    rows: List[Tuple[str, Any]] = [
        ("Señor(es)", receptor.get("razon_social")),
        ("R.U.T.", _format_rut(receptor.get("rut"))),
        ("Giro", receptor.get("giro")),
        ("Dirección", receptor.get("direccion")),
        ("Comuna", receptor.get("comuna")),
        ("Ciudad", receptor.get("ciudad")),
        ("Contacto", receptor.get("contacto")),
    ]
    for label, value in rows:
        if _clean(value):
            lay.text(f"{label}: {value}", size=8)


def _draw_items(lay: _Layout, detalle: List[Dict[str, Any]]) -> None:
    c = lay.c
    size = 7 if lay.narrow else 8
    c.setFont("Helvetica-Bold", size)
    if lay.narrow:
        c.drawString(lay.left, lay.y, "Detalle")
        c.drawRightString(lay.right, lay.y, "Total")
    else:
        c.drawString(lay.left, lay.y, "Cant.")
        c.drawString(lay.left + 15 * mm, lay.y, "Detalle")
        c.drawRightString(lay.right - 30 * mm, lay.y, "P. Unitario")
        c.drawRightString(lay.right, lay.y, "Total")
    lay.y -= size + 4

    for item in detalle:
        nombre = _safe(item.get("nombre"))
        if item.get("es_exento"):
            nombre += " (E)"
        qty = _fmt_qty(item.get("cantidad"))
        monto = _fmt_num(item.get("monto"))
        if lay.narrow:
            lay.text(nombre, size=size)
            lay.pair(f"{qty} x {_fmt_num(item.get('precio_unitario'), fallback='')}", monto, size=size)
        else:
            c.setFont("Helvetica", size)
            c.drawString(lay.left, lay.y, qty)
            desc_w = lay.width - 15 * mm - 50 * mm
            lines = simpleSplit(nombre, "Helvetica", size, desc_w) or [""]
            c.drawRightString(lay.right - 30 * mm, lay.y, _fmt_num(item.get("precio_unitario"), fallback=""))
            c.drawRightString(lay.right, lay.y, monto)
            for line in lines:
                c.drawString(lay.left + 15 * mm, lay.y, line)
                lay.y -= size + 2
        descripcion = _clean(item.get("descripcion"))
        if descripcion:
            lay.c.setFillColor(GRAY_TEXT)
            lay.text(descripcion, size=size - 1)
            lay.c.setFillColor(colors.black)


def _draw_references(lay: _Layout, referencias: List[Dict[str, Any]]) -> None:
    lay.text("Referencias", font="Helvetica-Bold", size=8)
    for ref in referencias:
        parts = [
            _safe(ref.get("tipo_documento_nombre"), "REFERENCIA"),
            f"N° {_safe(ref.get('folio'))}",
            f"del {_format_date(ref.get('fecha'))}",
        ]
        razon = _clean(ref.get("razon"))
        if razon:
            parts.append(f"- {razon}")
        lay.text(" ".join(parts), size=7)


def _draw_totals(lay: _Layout, totales: Dict[str, Any]) -> None:
    rows = [
        ("Monto Neto", totales.get("neto")),
        ("Monto Exento", totales.get("exento")),
        (f"IVA ({totales.get('tasa_iva')}%)" if totales.get("tasa_iva") is not None else "IVA", totales.get("iva")),
    ]
    for imp in totales.get("impuestos_adicionales", []) or []:
        rows.append((f"Impuesto {imp.get('tipo')}", imp.get("monto")))
    for label, value in rows:
        if value is not None:
            lay.pair(label, f"$ {_fmt_num(value)}", size=8)
    lay.pair("TOTAL", f"$ {_fmt_num(totales.get('total'))}", font="Helvetica-Bold", size=10)


def _draw_stamp(lay: _Layout, ted: Dict[str, Any]) -> None:
    """Timbre electrónico (datos del DD) y leyenda de resolución"""
    size = min(70 * mm, lay.width)
    x = (lay.left + lay.right - size) / 2 if lay.narrow else lay.left
    height = _draw_pdf417(lay.c, x, lay.y, size, _clean(ted.get("data_string")) or "")
    lay.y -= height + 2 * mm
    if not lay.narrow:
        saved = lay.right
        lay.right = lay.left + size
    lay.text("Timbre Electrónico SII", font="Helvetica-Bold", size=7, center=True)
    numero = ted.get("resolucion_numero")
    fecha = _clean(ted.get("resolucion_fecha"))
    if numero is not None and fecha:
        lay.text(f"Res. {numero} de {fecha[:4]}", size=7, center=True)
    lay.text(_safe(ted.get("texto_verificacion"), ""), size=7, center=True)
    if not lay.narrow:
        lay.right = saved


def render_dte_pdf(
    doc: Dict[str, Any],
    out_path: Path,
    *,
    paper: int = 0,
    logo_path: Optional[str] = None,
) -> None:
    """
    Dibuja el PDF de un DTE a partir de su JSON de impresión

    Args:
        doc: JSON de impresión (ver app.dte.print_json)
        out_path: Ruta del PDF
        paper: 0 = carta; 57/75/80/110 = papel continuo (mm)
        logo_path: Logo del emisor (opcional)
    """
    out_path = Path(out_path)
    out_path.parent.mkdir(parents=True, exist_ok=True)

    if paper and paper not in PAPEL_CONTINUO:
        raise ValueError(f"Ancho de papel no soportado: {paper}")
    if logo_path and not Path(logo_path).exists():
        logger.warning(f"Logo no encontrado: {logo_path}")
        logo_path = None

    detalle = doc.get("detalle", []) or []
    width, height = page_size(paper, len(detalle))
    margin = 4 * mm if paper else 15 * mm

    c = canvas.Canvas(str(out_path), pagesize=(width, height))
    documento = doc.get("documento", {}) or {}
    c.setTitle(f"{_safe(documento.get('tipo_nombre'))} N° {_safe(documento.get('folio'))}")
    lay = _Layout(c, width, height, margin)

    emisor = doc.get("emisor", {}) or {}
    _draw_header_box(lay, documento, emisor)
    _draw_issuer(lay, emisor, logo_path)
    if not lay.narrow:
        lay.y = min(lay.y, height - margin - 30 * mm)
    lay.hr()
    _draw_recipient(lay, documento, doc.get("receptor", {}) or {})
    lay.hr()
    _draw_items(lay, detalle)
    lay.hr()
    if doc.get("referencias"):
        _draw_references(lay, doc["referencias"])
        lay.hr()
    _draw_totals(lay, doc.get("totales", {}) or {})
    lay.hr()
    _draw_stamp(lay, doc.get("ted", {}) or {})

    c.showPage()
    c.save()
