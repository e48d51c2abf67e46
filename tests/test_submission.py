from pathlib import Path
from xml.sax.saxutils import escape
import sys

import pytest
import requests

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from app.dte.config import DteConfig
from app.dte.exceptions import AuthError, SubmissionError
from app.dte.models import Envelope
from app.dte.submission import SiiEndpoint, SubmissionClient

from _dte_fixtures import FakeEndpoint, FakeIdentity, FakeSigner


def _soap_return(name: str, inner: str) -> bytes:
    return (
        '<soapenv:Envelope xmlns:soapenv="http://schemas.xmlsoap.org/soap/envelope/">'
        f"<soapenv:Body><ns1:{name}Response xmlns:ns1=\"http://DefaultNamespace\">"
        f"<ns1:{name}Return>{escape(inner)}</ns1:{name}Return>"
        f"</ns1:{name}Response></soapenv:Body></soapenv:Envelope>"
    ).encode("utf-8")


SEED_OK = _soap_return(
    "getSeed",
    '<?xml version="1.0" encoding="UTF-8"?><SII:RESPUESTA xmlns:SII="http://www.sii.cl/XMLSchema">'
    "<SII:RESP_BODY><SEMILLA>033114503920</SEMILLA></SII:RESP_BODY>"
    "<SII:RESP_HDR><ESTADO>00</ESTADO></SII:RESP_HDR></SII:RESPUESTA>",
)
TOKEN_OK = _soap_return(
    "getToken",
    '<?xml version="1.0" encoding="UTF-8"?><SII:RESPUESTA xmlns:SII="http://www.sii.cl/XMLSchema">'
    "<SII:RESP_BODY><TOKEN>ABC123TOKEN</TOKEN></SII:RESP_BODY>"
    "<SII:RESP_HDR><ESTADO>00</ESTADO><GLOSA>Token Creado</GLOSA></SII:RESP_HDR></SII:RESPUESTA>",
)
UPLOAD_OK = (
    b'<?xml version="1.0"?><RECEPCIONDTE><RUTSENDER>11111111-1</RUTSENDER>'
    b"<RUTCOMPANY>76192083-9</RUTCOMPANY><FILE>76192083-9.xml</FILE>"
    b"<TIMESTAMP>2024-05-10 10:00:05</TIMESTAMP><STATUS>0</STATUS>"
    b"<TRACKID>0211463387</TRACKID></RECEPCIONDTE>"
)


class FakeResponse:
    def __init__(self, content: bytes, status_code: int = 200):
        self.content = content
        self.status_code = status_code

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.exceptions.HTTPError(f"{self.status_code} Server Error")


class FakeSession:
    def __init__(self, responses):
        self.responses = dict(responses)
        self.headers = {}
        self.posts = []
        self.closed = False

    def post(self, url, **kwargs):
        self.posts.append((url, kwargs))
        for suffix, resp in self.responses.items():
            if url.endswith(suffix):
                if isinstance(resp, Exception):
                    raise resp
                return resp
        raise AssertionError(f"URL inesperada: {url}")

    def close(self):
        self.closed = True


def _endpoint(**overrides):
    responses = {
        "CrSeed.jws": FakeResponse(SEED_OK),
        "GetTokenFromSeed.jws": FakeResponse(TOKEN_OK),
        "DTEUpload": FakeResponse(UPLOAD_OK),
    }
    responses.update(overrides)
    session = FakeSession(responses)
    return SiiEndpoint(DteConfig("certificacion"), signer=FakeSigner(), session=session), session


def _envelope():
    return Envelope(
        documents=(),
        caratula={"RutEnvia": "11111111-1", "RutEmisor": "76192083-9"},
        xml=b"<EnvioBOLETA/>",
        is_receipt_envelope=True,
    )


def test_authenticate_signs_the_seed_and_returns_token():
    endpoint, session = _endpoint()

    token = endpoint.authenticate(FakeIdentity())

    assert token == "ABC123TOKEN"
    assert ("sign_seed", "033114503920") in endpoint.signer.calls
    token_url, token_kwargs = session.posts[1]
    assert token_url == "https://maullin.sii.cl/DTEWS/GetTokenFromSeed.jws"
    assert b"<![CDATA[<getToken><item><Semilla>033114503920</Semilla>" in token_kwargs["data"]


def test_seed_with_error_state_is_auth_error():
    bad_seed = _soap_return(
        "getSeed",
        "<SII:RESPUESTA xmlns:SII=\"http://www.sii.cl/XMLSchema\"><SII:RESP_HDR><ESTADO>-1</ESTADO>"
        "</SII:RESP_HDR></SII:RESPUESTA>",
    )
    endpoint, _ = _endpoint(**{"CrSeed.jws": FakeResponse(bad_seed)})
    with pytest.raises(AuthError):
        endpoint.authenticate(FakeIdentity())


def test_upload_sends_multipart_with_token_cookie():
    endpoint, session = _endpoint()

    track_id = endpoint.submit("11111111-1", "76192083-9", b"<EnvioDTE/>", "ABC123TOKEN")

    assert track_id == "0211463387"
    url, kwargs = session.posts[-1]
    assert url == "https://maullin.sii.cl/cgi_dte/UPL/DTEUpload"
    assert kwargs["data"] == {"rutSender": "11111111", "dvSender": "1", "rutCompany": "76192083", "dvCompany": "9"}
    assert kwargs["cookies"] == {"TOKEN": "ABC123TOKEN"}
    assert kwargs["files"]["archivo"][1] == b"<EnvioDTE/>"


def test_upload_rejection_maps_status_code():
    rejected = b"<RECEPCIONDTE><STATUS>5</STATUS></RECEPCIONDTE>"
    endpoint, _ = _endpoint(DTEUpload=FakeResponse(rejected))

    with pytest.raises(SubmissionError) as exc:
        endpoint.submit("11111111-1", "76192083-9", b"<EnvioDTE/>", "T")
    assert "No está autenticado" in exc.value.diagnostics


def test_network_error_on_upload_is_submission_error():
    endpoint, _ = _endpoint(DTEUpload=requests.exceptions.ConnectionError("timeout"))
    with pytest.raises(SubmissionError):
        endpoint.submit("11111111-1", "76192083-9", b"<EnvioDTE/>", "T")


def test_production_uses_palena():
    endpoint, _ = _endpoint()
    prod = SiiEndpoint(DteConfig("produccion"), session=FakeSession({}))
    assert prod.config.upload_url == "https://palena.sii.cl/cgi_dte/UPL/DTEUpload"
    assert endpoint.config.seed_url == "https://maullin.sii.cl/DTEWS/CrSeed.jws"


def test_client_auth_failure_transmits_nothing():
    endpoint = FakeEndpoint(fail_auth=True)

    with pytest.raises(AuthError) as exc:
        SubmissionClient(endpoint).submit(_envelope(), FakeIdentity())

    assert endpoint.sent == []
    assert exc.value.message.startswith("Error al obtener token SII")
    assert exc.value.http_status == 502


def test_client_auth_failure_over_http_never_reaches_upload():
    endpoint, session = _endpoint(**{"CrSeed.jws": FakeResponse(b"", status_code=503)})

    with pytest.raises(AuthError):
        SubmissionClient(endpoint).submit(_envelope(), FakeIdentity())
    assert all(not url.endswith("DTEUpload") for url, _ in session.posts)


def test_client_empty_token_is_auth_error():
    with pytest.raises(AuthError):
        SubmissionClient(FakeEndpoint(token="")).submit(_envelope(), FakeIdentity())


def test_client_returns_track_id_and_uses_envelope_ids():
    endpoint = FakeEndpoint(track_id="99")

    assert SubmissionClient(endpoint).submit(_envelope(), FakeIdentity()) == "99"
    assert endpoint.sent[0]["sender"] == "11111111-1"
    assert endpoint.sent[0]["issuer"] == "76192083-9"
    assert endpoint.sent[0]["token"] == "TOKEN123"


def test_client_submission_failure_keeps_authority_diagnostics():
    with pytest.raises(SubmissionError) as exc:
        SubmissionClient(FakeEndpoint(fail_submit=True)).submit(_envelope(), FakeIdentity())
    assert "STATUS 5: No está autenticado" in exc.value.message
