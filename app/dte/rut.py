"""
Utilidades para RUT (Rol Único Tributario)

El RUT es un número de 7-8 dígitos seguido de un dígito verificador (DV)
calculado con módulo 11 (pesos 2..7). El DV puede ser 0-9 o 'K'.
"""
import re
from typing import Tuple

_RUT_RE = re.compile(r"^(\d{7,8})([0-9K])$")


def clean_rut(rut: str) -> str:
    """Quita puntos, guión y espacios; DV en mayúscula."""
    return re.sub(r"[^0-9kK]", "", str(rut or "")).upper()


def calc_dv(body: str) -> str:
    """
    Calcula el dígito verificador de un RUT

    Args:
        body: Parte numérica del RUT (sin DV)

    Returns:
        DV ('0'-'9' o 'K')
    """
    digits = str(body).strip()
    if not digits.isdigit():
        raise ValueError(f"RUT debe ser numérico: {body!r}")

    total = 0
    weight = 2
    for ch in reversed(digits):
        total += int(ch) * weight
        weight = 2 if weight == 7 else weight + 1

    dv = 11 - (total % 11)
    if dv == 11:
        return "0"
    if dv == 10:
        return "K"
    return str(dv)


def split_rut(rut: str) -> Tuple[str, str]:
    """Retorna (cuerpo, dv) de un RUT con formato válido"""
    cleaned = clean_rut(rut)
    m = _RUT_RE.match(cleaned)
    if not m:
        raise ValueError(f"Formato de RUT inválido: {rut!r}")
    return m.group(1), m.group(2)


def is_valid_rut(rut: str) -> bool:
    try:
        body, dv = split_rut(rut)
    except ValueError:
        return False
    return calc_dv(body) == dv


def format_rut(rut: str) -> str:
    """Formato SII: cuerpo-DV sin puntos (ej: 76192083-9)"""
    body, dv = split_rut(rut)
    return f"{body}-{dv}"
