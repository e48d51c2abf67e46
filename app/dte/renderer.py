"""
Artefactos de un DTE: XML, PDF y JSON de impresión

El XML de una vista previa es obligatorio (su fallo es fatal); el PDF es
best-effort y nunca impide una vista previa ni un envío exitoso.
"""
import logging
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Optional

from app.pdf.dte_renderer import render_dte_pdf

from . import print_json
from .exceptions import RenderError
from .models import PreviewResult, SignedDocument
from .scratch import safe_slug

logger = logging.getLogger(__name__)


def _stamp() -> str:
    return datetime.now().strftime("%Y%m%d%H%M%S")


class ArtifactRenderer:
    """
    Escribe los artefactos bajo <output_dir>/docs/<tipo>s/{xml,pdf}
    """

    def __init__(self, output_dir: Path):
        self.output_dir = Path(output_dir)

    def _dir(self, slug: str, sub: str) -> Path:
        d = self.output_dir / "docs" / f"{safe_slug(slug)}s" / sub
        d.mkdir(parents=True, exist_ok=True)
        return d

    def render_print_json(
        self,
        signed: SignedDocument,
        issuer: Dict[str, Any],
        options: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        return print_json.format_print_json(signed.prepared.as_dict(), signed.ted_xml, issuer, options)

    def _render_pdf(
        self,
        signed: SignedDocument,
        issuer: Dict[str, Any],
        options: Dict[str, Any],
        target: Path,
    ) -> bytes:
        doc = self.render_print_json(signed, issuer, options)
        render_dte_pdf(
            doc,
            target,
            paper=int(options.get("papel_continuo") or 0),
            logo_path=options.get("logo_path"),
        )
        return target.read_bytes()

    def render_preview(
        self,
        signed: SignedDocument,
        issuer: Dict[str, Any],
        options: Optional[Dict[str, Any]] = None,
    ) -> PreviewResult:
        """
        XML (fatal si falla) + PDF opcional (formato == 'pdf', default)

        Raises:
            RenderError
        """
        options = options or {}
        slug = signed.kind.slug
        tipo, folio = signed.kind.value, signed.folio
        name = f"{slug}_preview_{tipo}_{folio}_{_stamp()}"

        try:
            xml_path = self._dir(slug, "xml") / f"{name}.xml"
            xml_path.write_bytes(signed.xml)
        except OSError as e:
            raise RenderError(f"No se pudo guardar XML preview (Tipo: {tipo}, Folio: {folio}): {e}")

        pdf_bytes = None
        pdf_path = None
        if (options.get("formato") or "pdf") == "pdf":
            target = self._dir(slug, "pdf") / f"{name}.pdf"
            try:
                pdf_bytes = self._render_pdf(signed, issuer, options, target)
                pdf_path = str(target)
            except Exception as e:
                logger.warning(f"Falló la generación del PDF preview (Tipo: {tipo}, Folio: {folio}): {e}")

        return PreviewResult(
            signed=signed,
            xml=signed.xml,
            xml_path=str(xml_path),
            pdf=pdf_bytes,
            pdf_path=pdf_path,
        )

    def render_submitted_artifact(
        self,
        signed: SignedDocument,
        issuer: Dict[str, Any],
        kind_slug: str,
        options: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """
        PDF post-envío. Nunca lanza: ante cualquier error retorna Nones.
        """
        options = options or {}
        tipo, folio = signed.kind.value, signed.folio
        try:
            target = self._dir(kind_slug, "pdf") / f"{safe_slug(kind_slug)}_{tipo}_{folio}_{_stamp()}.pdf"
            pdf_bytes = self._render_pdf(signed, issuer, options, target)
        except Exception as e:
            logger.warning(f"Falló la generación del PDF post-envío (Folio: {folio}, Tipo: {tipo}): {e}")
            return {"pdf_path": None, "pdf": None, "error": str(e)}
        return {"pdf_path": str(target), "pdf": pdf_bytes, "error": None}
