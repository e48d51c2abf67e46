"""
Modelos de datos para la emisión de DTE
"""
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple


class DocumentKind(Enum):
    """Códigos de tipo de DTE del SII"""
    FACTURA = 33
    FACTURA_EXENTA = 34
    BOLETA = 39
    BOLETA_EXENTA = 41
    GUIA_DESPACHO = 52
    NOTA_DEBITO = 56
    NOTA_CREDITO = 61

    @property
    def print_name(self) -> str:
        return PRINT_NAMES[self]

    @property
    def slug(self) -> str:
        """Nombre usado para directorios y nombres de archivo"""
        if self in (DocumentKind.BOLETA, DocumentKind.BOLETA_EXENTA):
            return "boleta"
        if self in (DocumentKind.FACTURA, DocumentKind.FACTURA_EXENTA):
            return "factura"
        if self is DocumentKind.NOTA_CREDITO:
            return "nota_credito"
        if self is DocumentKind.NOTA_DEBITO:
            return "nota_debito"
        return "documento"

    @property
    def is_receipt(self) -> bool:
        return self in (DocumentKind.BOLETA, DocumentKind.BOLETA_EXENTA)

    @classmethod
    def from_code(cls, code: Any) -> "DocumentKind":
        try:
            return cls(int(code))
        except (TypeError, ValueError):
            raise ValueError(f"Tipo de DTE desconocido: {code!r}")


PRINT_NAMES = {
    DocumentKind.FACTURA: "FACTURA ELECTRÓNICA",
    DocumentKind.FACTURA_EXENTA: "FACTURA EXENTA ELECTRÓNICA",
    DocumentKind.BOLETA: "BOLETA ELECTRÓNICA",
    DocumentKind.BOLETA_EXENTA: "BOLETA EXENTA ELECTRÓNICA",
    DocumentKind.NOTA_DEBITO: "NOTA DE DÉBITO ELECTRÓNICA",
    DocumentKind.NOTA_CREDITO: "NOTA DE CRÉDITO ELECTRÓNICA",
    DocumentKind.GUIA_DESPACHO: "GUÍA DE DESPACHO ELECTRÓNICA",
}


class DocumentFamily(Enum):
    """Variantes de preparación de documento"""
    BOLETA = "boleta"
    FACTURA = "factura"
    NOTA_CREDITO = "nota_credito"
    NOTA_DEBITO = "nota_debito"

    @property
    def display_name(self) -> str:
        return {
            DocumentFamily.BOLETA: "Boleta",
            DocumentFamily.FACTURA: "Factura",
            DocumentFamily.NOTA_CREDITO: "Nota de Crédito",
            DocumentFamily.NOTA_DEBITO: "Nota de Débito",
        }[self]


class Environment(Enum):
    CERTIFICACION = "certificacion"
    PRODUCCION = "produccion"


class Mode(Enum):
    PREVIEW = "preview"
    ISSUE = "issue"


@dataclass(frozen=True)
class Credential:
    """Certificado digital PKCS#12 (bytes) y su contraseña"""
    data: bytes
    password: str = ""


@dataclass(frozen=True)
class FolioAuthorization:
    """CAF: rango de folios autorizado por el SII para un tipo de DTE"""
    kind: DocumentKind
    range_start: int
    range_end: int
    raw: bytes = field(repr=False)
    issuer_rut: Optional[str] = None
    issuer_name: Optional[str] = None
    authorized_on: Optional[str] = None
    caf_xml: bytes = field(default=b"", repr=False)
    private_key_pem: bytes = field(default=b"", repr=False)

    def contains(self, folio: int) -> bool:
        return self.range_start <= folio <= self.range_end


@dataclass
class DocumentRequest:
    """Intención del llamador: datos de negocio + credenciales"""
    family: DocumentFamily
    issuer: Dict[str, Any]
    line_items: List[Dict[str, Any]]
    credential: Credential
    caf: bytes
    recipient: Optional[Dict[str, Any]] = None
    references: List[Dict[str, Any]] = field(default_factory=list)
    requested_folio: Optional[int] = None
    environment: Environment = Environment.CERTIFICACION
    mode: Mode = Mode.PREVIEW
    options: Dict[str, Any] = field(default_factory=dict)
    extras: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class PreparedDocument:
    """Documento canónico, normalizado por tipo, listo para timbrar"""
    kind: DocumentKind
    folio: int
    issue_date: str
    id_doc: Dict[str, Any]
    emisor: Dict[str, Any]
    receptor: Dict[str, Any]
    totales: Dict[str, Any]
    detalle: Tuple[Dict[str, Any], ...]
    referencias: Tuple[Dict[str, Any], ...] = ()

    @property
    def document_id(self) -> str:
        return f"T{self.kind.value}F{self.folio}"

    def as_dict(self) -> Dict[str, Any]:
        """Estructura SII (Encabezado/Detalle/Referencia)"""
        data: Dict[str, Any] = {
            "Encabezado": {
                "IdDoc": dict(self.id_doc),
                "Emisor": dict(self.emisor),
                "Receptor": dict(self.receptor),
                "Totales": dict(self.totales),
            },
            "Detalle": [dict(item) for item in self.detalle],
        }
        if self.referencias:
            data["Referencia"] = [dict(ref) for ref in self.referencias]
        return data


@dataclass(frozen=True)
class SignedDocument:
    """DTE timbrado y firmado. Inmutable."""
    prepared: PreparedDocument
    ted_xml: bytes = field(repr=False)
    xml: bytes = field(repr=False)

    @property
    def kind(self) -> DocumentKind:
        return self.prepared.kind

    @property
    def folio(self) -> int:
        return self.prepared.folio


@dataclass(frozen=True)
class Envelope:
    """Sobre de envío con carátula y uno o más DTE firmados"""
    documents: Tuple[SignedDocument, ...]
    caratula: Dict[str, Any]
    xml: bytes = field(repr=False)
    is_receipt_envelope: bool = False

    @property
    def sender_id(self) -> str:
        return str(self.caratula["RutEnvia"])

    @property
    def issuer_id(self) -> str:
        return str(self.caratula["RutEmisor"])


@dataclass
class ReceiptBatchItem:
    """Una boleta dentro de un envío múltiple (CAF y folio propios)"""
    caf: bytes
    folio: int
    line_items: List[Dict[str, Any]]
    recipient: Optional[Dict[str, Any]] = None
    references: List[Dict[str, Any]] = field(default_factory=list)
    issue_date: Optional[str] = None
    ind_servicio: Optional[int] = None


@dataclass
class ReceiptBatch:
    """Varias boletas en un solo sobre EnvioBOLETA"""
    issuer: Dict[str, Any]
    credential: Credential
    receipts: List[ReceiptBatchItem]
    cover: Dict[str, Any] = field(default_factory=dict)
    environment: Environment = Environment.CERTIFICACION
    options: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class PreviewResult:
    signed: SignedDocument
    xml: bytes = field(repr=False)
    xml_path: Optional[str] = None
    pdf: Optional[bytes] = field(default=None, repr=False)
    pdf_path: Optional[str] = None


@dataclass(frozen=True)
class SubmissionResult:
    """Resultado de un envío aceptado por el SII (trackid)"""
    track_id: str
    envelope_xml: bytes = field(repr=False)
    folios: Tuple[int, ...] = ()
    kind: Optional[DocumentKind] = None
    xml_path: Optional[str] = None
    pdf_path: Optional[str] = None
    pdf: Optional[bytes] = field(default=None, repr=False)
    render_error: Optional[str] = None
    signed: Tuple[SignedDocument, ...] = ()
    print_data: Optional[Dict[str, Any]] = None
    print_data_error: Optional[str] = None
    submitted_at: datetime = field(default_factory=datetime.now)
