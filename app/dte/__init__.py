"""
Emisión de Documentos Tributarios Electrónicos (DTE) para el SII de Chile
"""
from .config import DteConfig, get_dte_config
from .models import (
    DocumentKind,
    DocumentFamily,
    Environment,
    Mode,
    Credential,
    FolioAuthorization,
    DocumentRequest,
    PreparedDocument,
    SignedDocument,
    Envelope,
    ReceiptBatch,
    ReceiptBatchItem,
    PreviewResult,
    SubmissionResult,
)
from .exceptions import (
    DteException,
    ValidationError,
    InvalidAuthorization,
    FolioOutOfRange,
    StampingError,
    SigningError,
    EnvelopeError,
    AuthError,
    SubmissionError,
    RenderError,
)
from .signer import Signer, SigningIdentity
from .submission import SiiEndpoint, SubmissionClient
from .renderer import ArtifactRenderer
from .pipeline import AdapterOperation, DtePipeline
from .intake import parse_document_request, parse_batch_request

__all__ = [
    'DteConfig',
    'get_dte_config',
    'DocumentKind',
    'DocumentFamily',
    'Environment',
    'Mode',
    'Credential',
    'FolioAuthorization',
    'DocumentRequest',
    'PreparedDocument',
    'SignedDocument',
    'Envelope',
    'ReceiptBatch',
    'ReceiptBatchItem',
    'PreviewResult',
    'SubmissionResult',
    'DteException',
    'ValidationError',
    'InvalidAuthorization',
    'FolioOutOfRange',
    'StampingError',
    'SigningError',
    'EnvelopeError',
    'AuthError',
    'SubmissionError',
    'RenderError',
    'Signer',
    'SigningIdentity',
    'SiiEndpoint',
    'SubmissionClient',
    'ArtifactRenderer',
    'AdapterOperation',
    'DtePipeline',
    'parse_document_request',
    'parse_batch_request',
]
