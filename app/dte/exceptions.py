"""
Excepciones personalizadas para la emisión de DTE
"""
from typing import Iterable, List, Optional


class DteException(Exception):
    """Excepción base para errores de emisión DTE"""

    http_status = 500

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        diagnostics: Optional[Iterable[str]] = None,
    ):
        self.message = message
        self.code = code
        self.diagnostics: List[str] = [str(d) for d in (diagnostics or []) if str(d).strip()]
        super().__init__(self.message)

    def to_dict(self) -> dict:
        data = {"error": type(self).__name__, "message": self.message}
        if self.code:
            data["code"] = self.code
        if self.diagnostics:
            data["diagnostics"] = list(self.diagnostics)
        return data


def join_diagnostics(message: str, diagnostics: Optional[Iterable[str]]) -> str:
    """Concatena los mensajes del firmador/SII al mensaje de la etapa que falló."""
    items = [str(d).strip() for d in (diagnostics or []) if str(d).strip()]
    if not items:
        return message
    return f"{message}: {', '.join(items)}"


class ValidationError(DteException):
    """Datos de entrada faltantes o mal formados"""
    http_status = 400


class InvalidAuthorization(DteException):
    """CAF vacío, ilegible o sin rango de folios"""
    http_status = 400


class FolioOutOfRange(DteException):
    """Folio solicitado fuera del rango autorizado por el CAF"""
    http_status = 400

    def __init__(self, folio: int, range_start: int, range_end: int):
        self.folio = folio
        self.range_start = range_start
        self.range_end = range_end
        message = (
            f"El folio solicitado {folio} está fuera del rango del CAF "
            f"({range_start}-{range_end})."
        )
        super().__init__(message, code="FOLIO_FUERA_DE_RANGO")


class StampingError(DteException):
    """Error al timbrar (generar TED)"""
    pass


class SigningError(DteException):
    """Error al cargar la firma o al firmar"""
    pass


class EnvelopeError(DteException):
    """Error al generar el sobre EnvioDTE/EnvioBOLETA"""
    pass


class AuthError(DteException):
    """Error al obtener token del SII"""
    http_status = 502


class SubmissionError(DteException):
    """Error al enviar el sobre al SII"""
    http_status = 502


class RenderError(DteException):
    """Error al generar XML/PDF/JSON de un DTE"""
    pass
