"""
Cliente de envío al SII

Flujo: semilla (CrSeed.jws) -> semilla firmada -> token (GetTokenFromSeed.jws)
-> upload multipart del sobre (DTEUpload) -> TRACKID.

Sin reintentos: un fallo de autenticación no transmite nada y un fallo de
envío se informa con los diagnósticos del SII.
"""
import logging
from typing import Optional

import requests
from lxml import etree

from .config import DteConfig, get_dte_config
from .exceptions import AuthError, DteException, SubmissionError, join_diagnostics
from .models import Envelope
from .rut import split_rut

logger = logging.getLogger(__name__)

USER_AGENT = "Mozilla/4.0 (compatible; PROG 1.0; dte-emisor)"

# Códigos STATUS de DTEUpload
UPLOAD_STATUS = {
    "1": "El Sender no tiene permiso para enviar",
    "2": "Error en tamaño del archivo (muy grande o muy chico)",
    "3": "Archivo cortado (tamaño distinto al parámetro 'size')",
    "5": "No está autenticado",
    "6": "Empresa no autorizada a enviar archivos",
    "7": "Esquema inválido",
    "8": "Firma del documento",
    "9": "Sistema bloqueado",
}

_SOAP_ENV = (
    '<?xml version="1.0" encoding="UTF-8"?>'
    '<soapenv:Envelope xmlns:soapenv="http://schemas.xmlsoap.org/soap/envelope/" '
    'xmlns:def="http://DefaultNamespace">'
    "<soapenv:Header/><soapenv:Body>{body}</soapenv:Body></soapenv:Envelope>"
)


def _local_text(root: etree._Element, name: str) -> Optional[str]:
    """Texto del primer nodo con ese nombre local (ignora namespaces)"""
    found = root.xpath(f"//*[local-name()='{name}']")
    if not found:
        return None
    text = found[0].text
    return text.strip() if text else None


def _parse_xml(content: bytes, context: str, exc_class) -> etree._Element:
    parser = etree.XMLParser(resolve_entities=False, no_network=True, recover=False)
    try:
        return etree.fromstring(content, parser=parser)
    except (etree.XMLSyntaxError, ValueError) as e:
        raise exc_class(f"Respuesta inválida del SII ({context})", diagnostics=[str(e)])


def _unwrap_return(soap_root: etree._Element, return_name: str, exc_class) -> etree._Element:
    """Las respuestas de los .jws traen el XML útil escapado dentro de *Return."""
    inner = _local_text(soap_root, return_name)
    if not inner:
        fault = _local_text(soap_root, "faultstring")
        raise exc_class(f"Respuesta SII sin {return_name}", diagnostics=[fault] if fault else None)
    return _parse_xml(inner.encode("utf-8"), return_name, exc_class)


class SiiEndpoint:
    """
    Transporte HTTP hacia los servicios del SII (maullin/palena)
    """

    def __init__(self, config: Optional[DteConfig] = None, signer=None, session: Optional[requests.Session] = None):
        self.config = config or get_dte_config()
        self.signer = signer
        self.session = session or requests.Session()
        self.session.headers.update({"User-Agent": USER_AGENT})

    def _post_soap(self, url: str, body: str, exc_class) -> etree._Element:
        payload = _SOAP_ENV.format(body=body).encode("utf-8")
        headers = {"Content-Type": "text/xml; charset=utf-8", "SOAPAction": ""}
        try:
            resp = self.session.post(url, data=payload, headers=headers, timeout=self.config.request_timeout)
            resp.raise_for_status()
        except requests.exceptions.RequestException as e:
            raise exc_class(f"Error de comunicación con el SII ({url})", diagnostics=[str(e)])
        return _parse_xml(resp.content, url, exc_class)

    def get_seed(self) -> str:
        soap = self._post_soap(self.config.seed_url, "<def:getSeed/>", AuthError)
        resp = _unwrap_return(soap, "getSeedReturn", AuthError)
        estado = _local_text(resp, "ESTADO")
        seed = _local_text(resp, "SEMILLA")
        if estado != "00" or not seed:
            raise AuthError("No se pudo obtener la semilla", diagnostics=[f"ESTADO={estado}"])
        return seed

    def get_token(self, signed_seed: bytes) -> str:
        body = "<def:getToken><pszXml><![CDATA[{}]]></pszXml></def:getToken>".format(
            signed_seed.decode("utf-8")
        )
        soap = self._post_soap(self.config.token_url, body, AuthError)
        resp = _unwrap_return(soap, "getTokenReturn", AuthError)
        estado = _local_text(resp, "ESTADO")
        token = _local_text(resp, "TOKEN")
        if estado != "00" or not token:
            glosa = _local_text(resp, "GLOSA")
            raise AuthError("No se pudo obtener el token", diagnostics=[f"ESTADO={estado}", glosa or ""])
        return token

    def authenticate(self, identity) -> str:
        """
        Obtiene un token de sesión

        Raises:
            AuthError
        """
        if self.signer is None:
            raise AuthError("No hay firmador configurado para la semilla")
        seed = self.get_seed()
        signed_seed = self.signer.sign_seed(seed, identity)
        token = self.get_token(signed_seed)
        logger.info(f"Token SII obtenido ({self.config.env})")
        return token

    def submit(self, sender_id: str, issuer_id: str, envelope_xml: bytes, token: str) -> str:
        """
        Sube el sobre y retorna el TRACKID

        Raises:
            SubmissionError
        """
        try:
            rut_sender, dv_sender = split_rut(sender_id)
            rut_company, dv_company = split_rut(issuer_id)
        except ValueError as e:
            raise SubmissionError("RUT inválido para el envío", diagnostics=[str(e)])

        data = {
            "rutSender": rut_sender,
            "dvSender": dv_sender,
            "rutCompany": rut_company,
            "dvCompany": dv_company,
        }
        files = {"archivo": (f"{rut_company}{dv_company}.xml", envelope_xml, "text/xml")}
        try:
            resp = self.session.post(
                self.config.upload_url,
                data=data,
                files=files,
                cookies={"TOKEN": token},
                timeout=self.config.request_timeout,
            )
            resp.raise_for_status()
        except requests.exceptions.RequestException as e:
            raise SubmissionError("Error de comunicación con el SII (DTEUpload)", diagnostics=[str(e)])

        root = _parse_xml(resp.content, "DTEUpload", SubmissionError)
        status = _local_text(root, "STATUS")
        track_id = _local_text(root, "TRACKID")
        if status != "0" or not track_id:
            diagnostics = [f"STATUS={status}"]
            if status in UPLOAD_STATUS:
                diagnostics.append(UPLOAD_STATUS[status])
            for detail in root.xpath("//*[local-name()='ERROR']"):
                if detail.text:
                    diagnostics.append(detail.text.strip())
            raise SubmissionError("El SII rechazó el envío", diagnostics=diagnostics)
        return track_id

    def close(self) -> None:
        self.session.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()


class SubmissionClient:
    """
    Autentica y envía un sobre firmado

    endpoint: objeto con authenticate(identity) y
    submit(sender_id, issuer_id, xml, token)
    """

    def __init__(self, endpoint):
        self.endpoint = endpoint

    def submit(self, envelope: Envelope, identity) -> str:
        try:
            token = self.endpoint.authenticate(identity)
        except DteException as e:
            raise AuthError(
                join_diagnostics("Error al obtener token SII", e.diagnostics or [e.message]),
                diagnostics=e.diagnostics,
            )
        if not token:
            raise AuthError("Error al obtener token SII: token vacío")

        try:
            track_id = self.endpoint.submit(envelope.sender_id, envelope.issuer_id, envelope.xml, token)
        except DteException as e:
            raise SubmissionError(
                join_diagnostics("Error al enviar al SII", e.diagnostics or [e.message]),
                diagnostics=e.diagnostics,
            )
        if not track_id:
            raise SubmissionError("Error al enviar al SII: respuesta sin TRACKID")

        logger.info(f"Sobre enviado al SII. TrackID={track_id}")
        return str(track_id)
