"""
Directorio temporal por solicitud

Cada invocación del pipeline crea su propio subdirectorio (nombre con
timestamp + token aleatorio) para escribir certificados/CAF decodificados y
los XML/PDF generados. Los archivos sensibles (certificado, CAF) se eliminan
siempre al cerrar el scope; los errores de limpieza solo se registran.
"""
from __future__ import annotations

import logging
import os
import re
import secrets
import shutil
from datetime import datetime
from pathlib import Path
from typing import List, Union

logger = logging.getLogger(__name__)

PathLike = Union[str, Path]


def _safe_token(value: str, *, fallback: str) -> str:
    token = re.sub(r"[^A-Za-z0-9._-]+", "-", (value or "").strip()).strip("-")
    return token or fallback


def safe_slug(value: str) -> str:
    """Nombre de tipo de documento apto para rutas (a-z, 0-9, _)."""
    return re.sub(r"[^a-z0-9_]", "_", (value or "").lower()) or "documento"


class ScratchDir:
    """Scope de archivos temporales de una solicitud"""

    def __init__(self, root: PathLike, prefix: str = "req", *, keep_outputs: bool = True):
        self.root = Path(root).expanduser()
        ts = datetime.now().strftime("%Y%m%d_%H%M%S_%f")
        name = f"{_safe_token(prefix, fallback='req')}_{ts}_{secrets.token_hex(4)}"
        self.path = self.root / name
        self.keep_outputs = keep_outputs
        self._sensitive: List[Path] = []
        self._closed = False

    def __enter__(self) -> "ScratchDir":
        self.path.mkdir(parents=True, exist_ok=True)
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.cleanup()

    def subdir(self, *parts: str) -> Path:
        d = self.path.joinpath(*parts)
        d.mkdir(parents=True, exist_ok=True)
        return d

    def write_bytes(self, content: bytes, *parts: str) -> Path:
        target = self.path.joinpath(*parts)
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_bytes(content)
        return target

    def save_sensitive(self, content: bytes, filename: str, subdir: str = "secrets") -> Path:
        """
        Guarda bytes de certificado/CAF con permisos 600; se borran en cleanup().
        """
        unique = f"{secrets.token_hex(6)}_{_safe_token(filename, fallback='blob')}"
        target = self.write_bytes(content, subdir, unique)
        try:
            os.chmod(target, 0o600)
        except OSError as e:
            logger.warning(f"No se pudo ajustar permisos de {target.name}: {e}")
        self._sensitive.append(target)
        return target

    def cleanup(self) -> None:
        if self._closed:
            return
        self._closed = True

        for p in self._sensitive:
            try:
                if p.exists():
                    p.unlink()
            except OSError as e:
                logger.warning(f"No se pudo eliminar archivo temporal {p.name}: {e}")

        secrets_dir = self.path / "secrets"
        try:
            if secrets_dir.exists() and not any(secrets_dir.iterdir()):
                secrets_dir.rmdir()
        except OSError as e:
            logger.warning(f"No se pudo eliminar directorio temporal {secrets_dir}: {e}")

        if not self.keep_outputs:
            try:
                shutil.rmtree(self.path)
            except FileNotFoundError:
                pass
            except OSError as e:
                logger.warning(f"No se pudo eliminar scratch {self.path}: {e}")

    @property
    def sensitive_files(self) -> List[Path]:
        return list(self._sensitive)
