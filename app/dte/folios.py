"""
Lectura y validación de CAF (Código de Autorización de Folios)

El CAF es un XML emitido por el SII:
  AUTORIZACION/CAF/DA/{RE, RS, TD, RNG/{D,H}, FA, RSAPK, IDK}
  AUTORIZACION/CAF/FRMA
  AUTORIZACION/RSASK   (clave privada para el TED)
"""
import logging
from typing import Optional

from lxml import etree

from .exceptions import FolioOutOfRange, InvalidAuthorization
from .models import DocumentKind, FolioAuthorization

logger = logging.getLogger(__name__)


def _text(root: etree._Element, path: str) -> Optional[str]:
    node = root.find(path)
    if node is None or node.text is None:
        return None
    value = node.text.strip()
    return value or None


def _int_field(root: etree._Element, path: str, label: str) -> int:
    value = _text(root, path)
    if value is None:
        raise InvalidAuthorization(f"CAF inválido: falta {label}")
    try:
        return int(value)
    except ValueError:
        raise InvalidAuthorization(f"CAF inválido: {label} no es numérico ({value!r})")


def parse(raw: bytes) -> FolioAuthorization:
    """
    Parsea los bytes de un CAF

    Raises:
        InvalidAuthorization: bytes vacíos, XML ilegible o sin TD/RNG
    """
    if not raw or not raw.strip():
        raise InvalidAuthorization("Archivo CAF vacío")

    parser = etree.XMLParser(remove_blank_text=True, resolve_entities=False, no_network=True)
    try:
        root = etree.fromstring(raw.strip(), parser=parser)
    except etree.XMLSyntaxError as e:
        raise InvalidAuthorization(f"Error al parsear CAF: {e}")

    caf = root if root.tag == "CAF" else root.find("CAF")
    if caf is None:
        raise InvalidAuthorization("CAF inválido: no se encontró el nodo <CAF>")

    td = _int_field(caf, "DA/TD", "TD")
    desde = _int_field(caf, "DA/RNG/D", "RNG/D")
    hasta = _int_field(caf, "DA/RNG/H", "RNG/H")

    try:
        kind = DocumentKind.from_code(td)
    except ValueError as e:
        raise InvalidAuthorization(f"CAF inválido: {e}")

    if desde < 1 or desde > hasta:
        raise InvalidAuthorization(f"CAF inválido: rango de folios {desde}-{hasta}")

    rsask = _text(root, "RSASK") if root.tag == "AUTORIZACION" else None

    auth = FolioAuthorization(
        kind=kind,
        range_start=desde,
        range_end=hasta,
        raw=raw,
        issuer_rut=_text(caf, "DA/RE"),
        issuer_name=_text(caf, "DA/RS"),
        authorized_on=_text(caf, "DA/FA"),
        caf_xml=etree.tostring(caf, encoding="UTF-8"),
        private_key_pem=(rsask or "").encode("ascii", errors="ignore"),
    )
    logger.info(f"CAF cargado: tipo={td}, rango={desde}-{hasta}")
    return auth


def validate(folio: int, authorization: FolioAuthorization) -> None:
    """
    Valida que el folio esté dentro del rango del CAF

    Raises:
        FolioOutOfRange
    """
    if isinstance(folio, bool) or not isinstance(folio, int):
        raise FolioOutOfRange(folio, authorization.range_start, authorization.range_end)
    if not authorization.contains(folio):
        raise FolioOutOfRange(folio, authorization.range_start, authorization.range_end)


def resolve_folio(requested: Optional[int], authorization: FolioAuthorization) -> int:
    """Folio a usar: el solicitado o, si no hay, el inicio del rango."""
    folio = authorization.range_start if requested is None else requested
    validate(folio, authorization)
    return folio
