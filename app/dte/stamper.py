"""
Timbraje y firma de un documento preparado
"""
import logging

from . import folios
from .exceptions import DteException, SigningError, StampingError, join_diagnostics
from .models import FolioAuthorization, PreparedDocument, SignedDocument

logger = logging.getLogger(__name__)


def stamp(prepared: PreparedDocument, authorization: FolioAuthorization, identity, signer) -> SignedDocument:
    """
    Valida el folio, genera el TED y firma el DTE

    Args:
        prepared: Documento preparado
        authorization: CAF del tipo de documento
        identity: Firma cargada (signer.load)
        signer: Firmador (stamp/sign/diagnostics)

    Raises:
        FolioOutOfRange: el firmador no llega a invocarse
        StampingError: CAF de otro tipo o falla del TED
        SigningError: falla de la firma XML
    """
    folios.validate(prepared.folio, authorization)

    if authorization.kind is not prepared.kind:
        raise StampingError(
            f"El CAF es de tipo {authorization.kind.value} y el documento de tipo {prepared.kind.value}",
            code="CAF_TIPO_DISTINTO",
        )

    label = f"(Tipo: {prepared.kind.value}, Folio: {prepared.folio})"

    try:
        ted_xml = signer.stamp(prepared, authorization)
    except DteException as e:
        raise StampingError(
            join_diagnostics(f"Error al timbrar DTE {label}", e.diagnostics or [e.message]),
            diagnostics=e.diagnostics,
        )

    try:
        xml = signer.sign(prepared, ted_xml, identity)
    except DteException as e:
        raise SigningError(
            join_diagnostics(f"Error al firmar DTE {label}", e.diagnostics or [e.message]),
            diagnostics=e.diagnostics,
        )

    logger.info(f"DTE timbrado y firmado: {prepared.document_id}")
    return SignedDocument(prepared=prepared, ted_xml=ted_xml, xml=xml)
