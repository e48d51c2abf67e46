"""
Pipeline de emisión de DTE

request -> CAF (parse/validate) -> preparación por tipo -> timbre + firma
        -> vista previa (XML/PDF)  |  sobre -> autenticación -> envío SII

Cada invocación trabaja en su propio directorio temporal; el certificado y
el CAF decodificados se borran siempre al terminar.
"""
import logging
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, Optional, Tuple, Union

from . import envelope as envelope_builder
from . import folios, preparers, stamper
from .config import DteConfig, get_dte_config
from .exceptions import EnvelopeError, InvalidAuthorization, ValidationError
from .models import (
    DocumentFamily,
    DocumentRequest,
    FolioAuthorization,
    Mode,
    PreviewResult,
    ReceiptBatch,
    SignedDocument,
    SubmissionResult,
)
from .renderer import ArtifactRenderer
from .scratch import ScratchDir
from .signer import Signer
from .submission import SiiEndpoint, SubmissionClient

logger = logging.getLogger(__name__)


class AdapterOperation(Enum):
    """Operación de emisión usada para el JSON de impresión"""
    BOLETA = "boleta"
    FACTURA = "factura"
    NOTA_CREDITO = "nota_credito"
    NOTA_DEBITO = "nota_debito"

    @property
    def family(self) -> DocumentFamily:
        return DocumentFamily(self.value)

    @classmethod
    def from_name(cls, name: str) -> "AdapterOperation":
        try:
            return cls(name)
        except ValueError:
            raise ValidationError(
                f"Tipo de documento '{name}' no compatible con generación de JSON para impresión"
            )


def require_resolution(issuer: Dict[str, Any]) -> None:
    """FchResol y NroResol (puede ser 0) son obligatorios para enviar al SII."""
    nro = issuer.get("NroResol")
    if nro is None or (isinstance(nro, str) and not nro.strip()):
        raise ValidationError("El campo 'emisor.NroResol' es requerido para enviar al SII.")
    if not issuer.get("FchResol"):
        raise ValidationError("El campo 'emisor.FchResol' es requerido para enviar al SII.")


def _cover_from_issuer(issuer: Dict[str, Any], overrides: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    overrides = overrides or {}
    nro = overrides.get("NroResol")
    return {
        "RutEmisor": issuer.get("RUTEmisor"),
        "RutEnvia": overrides.get("RutEnvia"),
        "RutReceptor": overrides.get("RutReceptor"),
        "FchResol": overrides.get("FchResol") or issuer.get("FchResol"),
        "NroResol": issuer.get("NroResol") if nro is None else nro,
    }


def _ts() -> str:
    return datetime.now().strftime("%Y%m%d%H%M%S")


EndpointFactory = Callable[[DteConfig, Any], Any]


def _default_endpoint(config: DteConfig, signer) -> SiiEndpoint:
    return SiiEndpoint(config, signer=signer)


class DtePipeline:
    """
    Orquestador de la emisión

    Args:
        config: Configuración base (scratch, timeouts)
        signer_factory: Crea el firmador (uno por invocación)
        endpoint_factory: Crea el transporte SII para un ambiente
    """

    def __init__(
        self,
        config: Optional[DteConfig] = None,
        signer_factory: Callable[[], Any] = Signer,
        endpoint_factory: EndpointFactory = _default_endpoint,
    ):
        self.config = config or get_dte_config()
        self.signer_factory = signer_factory
        self.endpoint_factory = endpoint_factory

    def _env_config(self, environment) -> DteConfig:
        if environment.value == self.config.env:
            return self.config
        return DteConfig(environment.value)

    def _print_options(self, options: Dict[str, Any]) -> Dict[str, Any]:
        return {"ancho_papel": self.config.default_paper_width, **options}

    def _load_identity(self, credential, signer, scratch: ScratchDir, rut: Optional[str] = None):
        cert_path = scratch.save_sensitive(credential.data, "firma.p12")
        return signer.load(cert_path.read_bytes(), credential.password, rut=rut)

    def _load_authorization(self, caf: bytes, scratch: ScratchDir, label: str = "caf.xml") -> FolioAuthorization:
        caf_path = scratch.save_sensitive(caf, label)
        return folios.parse(caf_path.read_bytes())

    def _submit(self, env, identity, environment, signer) -> str:
        endpoint = self.endpoint_factory(self._env_config(environment), signer)
        try:
            return SubmissionClient(endpoint).submit(env, identity)
        finally:
            close = getattr(endpoint, "close", None)
            if close is not None:
                close()

    def _stamp_request(
        self,
        request: DocumentRequest,
        family: DocumentFamily,
        signer,
        scratch: ScratchDir,
    ) -> Tuple[SignedDocument, Any]:
        identity = self._load_identity(request.credential, signer, scratch, request.options.get("rut_firmante"))
        authorization = self._load_authorization(request.caf, scratch)

        folio = folios.resolve_folio(request.requested_folio, authorization)
        prepared = preparers.prepare(
            family,
            request.issuer,
            request.recipient,
            request.line_items,
            folio,
            request.references,
            extras=request.extras,
        )
        signed = stamper.stamp(prepared, authorization, identity, signer)
        return signed, identity

    def process(self, request: DocumentRequest) -> Union[PreviewResult, SubmissionResult]:
        """
        Vista previa o emisión según request.mode

        Raises:
            DteException (ValidationError, InvalidAuthorization, FolioOutOfRange,
            StampingError, SigningError, EnvelopeError, AuthError,
            SubmissionError, RenderError)
        """
        if request.mode is Mode.ISSUE:
            require_resolution(request.issuer)

        signer = self.signer_factory()
        with ScratchDir(self.config.scratch_root, prefix=request.family.value) as scratch:
            signed, identity = self._stamp_request(request, request.family, signer, scratch)
            renderer = ArtifactRenderer(scratch.path)

            if request.mode is Mode.PREVIEW:
                logger.info(f"Vista previa generada: {signed.prepared.document_id}")
                return renderer.render_preview(signed, request.issuer, request.options)

            return self._issue(request, signed, identity, signer, renderer, scratch)

    def _issue(self, request, signed, identity, signer, renderer, scratch) -> SubmissionResult:
        slug = request.family.value
        env = envelope_builder.build([signed], _cover_from_issuer(request.issuer), identity, signer)

        tipo, folio = signed.kind.value, signed.folio
        try:
            xml_path = scratch.write_bytes(
                env.xml, "docs", f"{slug}s", "xml", f"envio_{slug}_{tipo}_{folio}_{_ts()}.xml"
            )
        except OSError as e:
            raise EnvelopeError(f"No se pudo guardar XML envío: {e}")

        track_id = self._submit(env, identity, request.environment, signer)

        artifact = renderer.render_submitted_artifact(signed, request.issuer, slug, request.options)

        print_data = None
        print_data_error = None
        if request.options.get("generate_print_data", True):
            try:
                print_data = renderer.render_print_json(signed, request.issuer, self._print_options(request.options))
            except Exception as e:
                logger.warning(f"Error generando datos para impresión (Folio: {folio}): {e}")
                print_data_error = f"Error generando datos para impresión: {e}"

        return SubmissionResult(
            track_id=track_id,
            envelope_xml=env.xml,
            folios=(folio,),
            kind=signed.kind,
            xml_path=str(xml_path),
            pdf_path=artifact["pdf_path"],
            pdf=artifact["pdf"],
            render_error=artifact["error"],
            signed=(signed,),
            print_data=print_data,
            print_data_error=print_data_error,
        )

    def build_print_json(self, request: DocumentRequest, operation: AdapterOperation) -> Dict[str, Any]:
        """
        JSON de impresión de un documento generado en modo vista previa
        """
        signer = self.signer_factory()
        with ScratchDir(self.config.scratch_root, prefix=f"json_{operation.value}") as scratch:
            signed, _ = self._stamp_request(request, operation.family, signer, scratch)
            renderer = ArtifactRenderer(scratch.path)
            renderer.render_preview(signed, request.issuer, {**request.options, "formato": "xml"})
            return renderer.render_print_json(signed, request.issuer, self._print_options(request.options))

    def issue_receipts_batch(self, batch: ReceiptBatch) -> SubmissionResult:
        """
        Emite varias boletas (cada una con su CAF y folio) en un solo EnvioBOLETA
        """
        if not batch.receipts:
            raise ValidationError("El campo 'boletas' es requerido y debe ser un arreglo no vacío.")
        cover = _cover_from_issuer(batch.issuer, batch.cover)
        require_resolution({"FchResol": cover["FchResol"], "NroResol": cover["NroResol"]})

        signer = self.signer_factory()
        with ScratchDir(self.config.scratch_root, prefix="envio_multiple") as scratch:
            identity = self._load_identity(batch.credential, signer, scratch, batch.options.get("rut_firmante"))

            signed_docs = []
            for index, item in enumerate(batch.receipts):
                try:
                    authorization = self._load_authorization(item.caf, scratch, f"caf_{index}.xml")
                except InvalidAuthorization as e:
                    raise InvalidAuthorization(f"Archivo CAF inválido para boleta #{index}: {e.message}")

                folio = folios.resolve_folio(item.folio, authorization)
                extras: Dict[str, Any] = {}
                if item.ind_servicio is not None:
                    extras["IndServicio"] = item.ind_servicio
                prepared = preparers.prepare(
                    DocumentFamily.BOLETA,
                    batch.issuer,
                    item.recipient,
                    item.line_items,
                    folio,
                    item.references,
                    issue_date=item.issue_date,
                    extras=extras,
                )
                signed_docs.append(stamper.stamp(prepared, authorization, identity, signer))

            env = envelope_builder.build(signed_docs, cover, identity, signer)
            try:
                xml_path = scratch.write_bytes(
                    env.xml, "docs", "boletas", "xml", f"envio_multiple_boletas_{_ts()}.xml"
                )
            except OSError as e:
                raise EnvelopeError(f"No se pudo guardar XML envío: {e}")

            track_id = self._submit(env, identity, batch.environment, signer)

            folio_list = tuple(doc.folio for doc in signed_docs)
            logger.info(f"Envío múltiple aceptado: TrackID={track_id}, folios={list(folio_list)}")
            return SubmissionResult(
                track_id=track_id,
                envelope_xml=env.xml,
                folios=folio_list,
                kind=signed_docs[0].kind,
                xml_path=str(xml_path),
                signed=tuple(signed_docs),
            )
