"""
Configuración para la emisión de DTE
"""
import os
import tempfile
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

load_dotenv()


def _env_int(name: str, default: int) -> int:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"{name} debe ser un entero. Recibido: {raw!r}")


class DteConfig:
    """Configuración del pipeline DTE por ambiente"""

    ENV_CERT = "certificacion"
    ENV_PROD = "produccion"

    # Servidores SII (maullin = certificación, palena = producción)
    SII_HOSTS = {
        "certificacion": os.getenv("DTE_SII_HOST_CERT", "maullin.sii.cl"),
        "produccion": os.getenv("DTE_SII_HOST_PROD", "palena.sii.cl"),
    }

    # RUT del SII como receptor de los sobres
    RUT_RECEPTOR_SII = os.getenv("DTE_RUT_RECEPTOR_SII", "60803000-K")

    SEED_PATH = "/DTEWS/CrSeed.jws"
    TOKEN_PATH = "/DTEWS/GetTokenFromSeed.jws"
    UPLOAD_PATH = "/cgi_dte/UPL/DTEUpload"

    def __init__(self, env: str = ENV_CERT):
        """
        Inicializa la configuración DTE

        Args:
            env: Ambiente ('certificacion' o 'produccion')
        """
        if env not in [self.ENV_CERT, self.ENV_PROD]:
            raise ValueError(f"Ambiente inválido: {env}. Debe ser 'certificacion' o 'produccion'")

        self.env = env
        self.sii_host = self.SII_HOSTS[env]
        self.request_timeout = _env_int("DTE_REQUEST_TIMEOUT", 30)

        scratch = (os.getenv("DTE_SCRATCH_DIR") or "").strip()
        self.scratch_root: Path = (
            Path(scratch).expanduser() if scratch else Path(tempfile.gettempdir()) / "dte_emisor"
        )

        # Papel por defecto para el JSON de impresión (mm)
        self.default_paper_width = _env_int("DTE_ANCHO_PAPEL", 80)

    @property
    def is_certificacion(self) -> bool:
        return self.env == self.ENV_CERT

    def sii_url(self, path: str) -> str:
        return f"https://{self.sii_host}{path}"

    @property
    def seed_url(self) -> str:
        return self.sii_url(self.SEED_PATH)

    @property
    def token_url(self) -> str:
        return self.sii_url(self.TOKEN_PATH)

    @property
    def upload_url(self) -> str:
        return self.sii_url(self.UPLOAD_PATH)


def get_dte_config(env: Optional[str] = None) -> DteConfig:
    """
    Obtiene la configuración DTE desde variables de entorno

    Args:
        env: Ambiente. Si None, usa DTE_ENV (default 'certificacion')
    """
    if env is None:
        env = os.getenv("DTE_ENV", DteConfig.ENV_CERT)
    return DteConfig(env)
