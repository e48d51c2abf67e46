"""
Firma electrónica de DTE

- Carga de certificado PKCS#12 (cryptography)
- Timbre electrónico (TED): DD firmado RSA-SHA1 con la llave del CAF
- Firma XMLDSig enveloped RSA-SHA1 (signxml) del DTE, del sobre y de la semilla
"""
import base64
import logging
import re
from datetime import datetime
from typing import List, Optional

from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding, rsa
from cryptography.hazmat.primitives.serialization import pkcs12
from cryptography.x509.oid import NameOID
from lxml import etree
from signxml import XMLSigner, methods

from . import xml_builder
from .exceptions import SigningError, StampingError
from .models import FolioAuthorization, PreparedDocument

logger = logging.getLogger(__name__)

C14N = "http://www.w3.org/TR/2001/REC-xml-c14n-20010315"
_RUT_IN_TEXT = re.compile(r"(\d{7,8})-?([0-9Kk])")


class SiiXMLSigner(XMLSigner):
    """XMLSigner con RSA-SHA1 habilitado (exigido por el esquema del SII)"""

    def check_deprecated_methods(self):
        pass


def timestamp() -> str:
    """Formato SII: YYYY-MM-DDTHH:MM:SS"""
    return datetime.now().strftime("%Y-%m-%dT%H:%M:%S")


def _rut_from_text(value: str) -> Optional[str]:
    m = _RUT_IN_TEXT.search(value or "")
    if not m:
        return None
    return f"{m.group(1)}-{m.group(2).upper()}"


class SigningIdentity:
    """Certificado + llave privada del firmante"""

    def __init__(self, private_key, certificate: x509.Certificate, rut: Optional[str] = None):
        self.private_key = private_key
        self.certificate = certificate
        self.rut = rut

    def id(self) -> Optional[str]:
        """RUT del firmante (RutEnvia)"""
        return self.rut

    @property
    def certificate_pem(self) -> str:
        return self.certificate.public_bytes(serialization.Encoding.PEM).decode("ascii")

    def get_certificate_info(self) -> dict:
        cert = self.certificate
        return {
            "subject": cert.subject.rfc4514_string(),
            "issuer": cert.issuer.rfc4514_string(),
            "serial_number": str(cert.serial_number),
            "not_valid_before": cert.not_valid_before_utc.isoformat(),
            "not_valid_after": cert.not_valid_after_utc.isoformat(),
            "rut": self.rut,
        }


def rut_from_certificate(certificate: x509.Certificate) -> Optional[str]:
    """
    Extrae el RUT del titular

    Los certificados chilenos lo traen en subjectAltName (otherName),
    en serialNumber del subject o dentro del CN.
    """
    try:
        san = certificate.extensions.get_extension_for_class(x509.SubjectAlternativeName)
        for name in san.value:
            if isinstance(name, x509.OtherName):
                rut = _rut_from_text(name.value.decode("latin-1", errors="ignore"))
                if rut:
                    return rut
    except x509.ExtensionNotFound:
        pass

    for oid in (NameOID.SERIAL_NUMBER, NameOID.COMMON_NAME):
        for attr in certificate.subject.get_attributes_for_oid(oid):
            rut = _rut_from_text(str(attr.value))
            if rut:
                return rut
    return None


class Signer:
    """
    Firmador de DTE

    Los errores se acumulan en `diagnostics` (lista plana de mensajes) y se
    propagan como SigningError/StampingError con esa lista adjunta.
    """

    def __init__(self):
        self.diagnostics: List[str] = []

    def _fail(self, exc_class, message: str, detail: Optional[str] = None):
        self.diagnostics.append(detail or message)
        return exc_class(message, diagnostics=list(self.diagnostics))

    def load(self, p12_data: bytes, password: str = "", rut: Optional[str] = None) -> SigningIdentity:
        """
        Carga la firma desde bytes PKCS#12

        Args:
            p12_data: Contenido del .p12/.pfx
            password: Contraseña
            rut: RUT del firmante (si no se puede leer del certificado)

        Raises:
            SigningError
        """
        if not p12_data:
            raise self._fail(SigningError, "No se pudo cargar la firma electrónica", "Certificado vacío")
        try:
            private_key, certificate, _ = pkcs12.load_key_and_certificates(
                p12_data,
                password.encode() if password else None,
            )
        except (ValueError, TypeError) as e:
            raise self._fail(
                SigningError,
                "No se pudo cargar la firma electrónica",
                f"Error al leer certificado PKCS#12: {e}",
            )

        if private_key is None:
            raise self._fail(SigningError, "No se pudo cargar la firma electrónica",
                             "No se pudo extraer la clave privada del certificado")
        if certificate is None:
            raise self._fail(SigningError, "No se pudo cargar la firma electrónica",
                             "No se pudo extraer el certificado del archivo")
        if not isinstance(private_key, rsa.RSAPrivateKey):
            raise self._fail(SigningError, "No se pudo cargar la firma electrónica",
                             "La clave privada debe ser RSA")

        identity = SigningIdentity(private_key, certificate, rut or rut_from_certificate(certificate))
        logger.info(f"Firma cargada. Titular: {identity.rut or 'RUT no informado'}, "
                    f"válida hasta: {certificate.not_valid_after_utc}")
        return identity

    def stamp(
        self,
        prepared: PreparedDocument,
        authorization: FolioAuthorization,
        tsted: Optional[str] = None,
    ) -> bytes:
        """
        Genera el TED del documento

        Returns:
            XML del TED (bytes, namespace SiiDte)

        Raises:
            StampingError
        """
        parser = etree.XMLParser(remove_blank_text=True, resolve_entities=False, no_network=True)
        try:
            caf = etree.fromstring(authorization.caf_xml, parser=parser)
        except (etree.XMLSyntaxError, ValueError) as e:
            raise self._fail(StampingError, "CAF no utilizable para timbrar", f"CAF ilegible: {e}")

        try:
            caf_key = serialization.load_pem_private_key(authorization.private_key_pem, password=None)
        except (ValueError, TypeError) as e:
            raise self._fail(StampingError, "CAF no utilizable para timbrar",
                             f"No se pudo leer la llave privada del CAF (RSASK): {e}")

        dd = xml_builder.build_dd(prepared, caf, tsted or timestamp(), ns=None)
        dd_flat = etree.tostring(dd, encoding="ISO-8859-1", xml_declaration=False)
        signature = caf_key.sign(dd_flat, padding.PKCS1v15(), hashes.SHA1())
        frmt = base64.b64encode(signature).decode("ascii")

        ted = xml_builder.build_ted(dd, frmt)
        return etree.tostring(ted, encoding="UTF-8")

    def _xml_signer(self) -> XMLSigner:
        return SiiXMLSigner(
            method=methods.enveloped,
            signature_algorithm="rsa-sha1",
            digest_algorithm="sha1",
            c14n_algorithm=C14N,
        )

    def _sign_tree(self, root: etree._Element, identity: SigningIdentity, reference_uri: Optional[str]):
        return self._xml_signer().sign(
            root,
            key=identity.private_key,
            cert=identity.certificate_pem,
            reference_uri=reference_uri,
            always_add_key_value=True,
        )

    def sign(
        self,
        prepared: PreparedDocument,
        ted_xml: bytes,
        identity: SigningIdentity,
        tmst_firma: Optional[str] = None,
    ) -> bytes:
        """
        Serializa y firma el DTE (referencia #T{tipo}F{folio})

        Raises:
            SigningError
        """
        try:
            ted = etree.fromstring(ted_xml)
            dte = xml_builder.build_dte(prepared, ted, tmst_firma or timestamp())
            signed = self._sign_tree(dte, identity, f"#{prepared.document_id}")
        except etree.XMLSyntaxError as e:
            raise self._fail(SigningError, "TED inválido", str(e))
        except (ValueError, TypeError) as e:
            raise self._fail(SigningError, "No se pudo firmar el DTE", str(e))
        return etree.tostring(signed, encoding="ISO-8859-1", xml_declaration=True)

    def sign_envelope(self, xml: bytes, identity: SigningIdentity, reference_id: str = "SetDoc") -> bytes:
        """
        Firma el SetDoc de un sobre EnvioDTE

        Raises:
            SigningError
        """
        parser = etree.XMLParser(remove_blank_text=False, resolve_entities=False, no_network=True)
        try:
            root = etree.fromstring(xml, parser=parser)
            signed = self._sign_tree(root, identity, f"#{reference_id}")
        except etree.XMLSyntaxError as e:
            raise self._fail(SigningError, "Sobre inválido", str(e))
        except (ValueError, TypeError) as e:
            raise self._fail(SigningError, "No se pudo firmar el sobre", str(e))
        return etree.tostring(signed, encoding="ISO-8859-1", xml_declaration=True)

    def sign_seed(self, seed: str, identity: SigningIdentity) -> bytes:
        """
        Firma la semilla del SII para solicitar token

        <getToken><item><Semilla>...</Semilla></item></getToken>
        """
        root = etree.Element("getToken")
        item = etree.SubElement(root, "item")
        etree.SubElement(item, "Semilla").text = seed
        try:
            signed = self._sign_tree(root, identity, None)
        except (ValueError, TypeError) as e:
            raise self._fail(SigningError, "No se pudo firmar la semilla", str(e))
        return etree.tostring(signed, encoding="UTF-8", xml_declaration=True)
