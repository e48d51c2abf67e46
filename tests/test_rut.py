from pathlib import Path
import sys

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from app.dte.rut import calc_dv, clean_rut, format_rut, is_valid_rut, split_rut


@pytest.mark.parametrize(
    "body,dv",
    [("76192083", "9"), ("11111111", "1"), ("60803000", "K"), ("66666666", "6"), ("12345678", "5")],
)
def test_calc_dv_mod11(body, dv):
    assert calc_dv(body) == dv


def test_clean_and_split_accept_dots_and_lowercase_k():
    assert clean_rut("60.803.000-k") == "60803000K"
    assert split_rut("60.803.000-k") == ("60803000", "K")


def test_is_valid_rut_rejects_wrong_dv_and_garbage():
    assert is_valid_rut("76192083-9")
    assert not is_valid_rut("76192083-8")
    assert not is_valid_rut("abc")
    assert not is_valid_rut("")


def test_format_rut_strips_dots():
    assert format_rut("76.192.083-9") == "76192083-9"


def test_calc_dv_requires_digits():
    with pytest.raises(ValueError):
        calc_dv("12a45")
