from pathlib import Path
import sys

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from app.dte import folios
from app.dte.exceptions import FolioOutOfRange, InvalidAuthorization
from app.dte.models import DocumentKind

from _dte_fixtures import RUT_EMISOR, make_caf


def test_parse_reads_kind_range_and_key():
    auth = folios.parse(make_caf(39, 100, 200))

    assert auth.kind is DocumentKind.BOLETA
    assert (auth.range_start, auth.range_end) == (100, 200)
    assert auth.issuer_rut == RUT_EMISOR
    assert auth.authorized_on == "2024-01-10"
    assert b"BEGIN RSA PRIVATE KEY" in auth.private_key_pem
    assert auth.caf_xml.startswith(b"<CAF")


@pytest.mark.parametrize("raw", [b"", b"   ", b"no es xml", b"<AUTORIZACION><OTRO/></AUTORIZACION>"])
def test_parse_rejects_unusable_bytes(raw):
    with pytest.raises(InvalidAuthorization):
        folios.parse(raw)


def test_parse_rejects_missing_range():
    raw = b"<AUTORIZACION><CAF><DA><TD>39</TD><RNG><D>1</D></RNG></DA></CAF></AUTORIZACION>"
    with pytest.raises(InvalidAuthorization) as exc:
        folios.parse(raw)
    assert "RNG/H" in exc.value.message


def test_parse_rejects_inverted_range():
    with pytest.raises(InvalidAuthorization):
        folios.parse(make_caf(39, 200, 100))


def test_parse_rejects_unknown_document_code():
    with pytest.raises(InvalidAuthorization):
        folios.parse(make_caf(99, 1, 10))


def test_validate_bounds_are_inclusive():
    auth = folios.parse(make_caf(39, 100, 200))
    folios.validate(100, auth)
    folios.validate(200, auth)

    for folio in (99, 201):
        with pytest.raises(FolioOutOfRange) as exc:
            folios.validate(folio, auth)
        assert exc.value.code == "FOLIO_FUERA_DE_RANGO"
        assert exc.value.http_status == 400


def test_resolve_folio_defaults_to_range_start():
    auth = folios.parse(make_caf(33, 15, 30))
    assert folios.resolve_folio(None, auth) == 15
    assert folios.resolve_folio(22, auth) == 22
    with pytest.raises(FolioOutOfRange):
        folios.resolve_folio(31, auth)
