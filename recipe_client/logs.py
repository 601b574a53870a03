"""Configuración de logging del cliente."""
from __future__ import annotations

import logging
import sys
from typing import Optional

from .config import Settings, settings as default_settings

LOGGER_NAME = "recipe_client"
_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"


def setup_logging(cfg: Optional[Settings] = None) -> logging.Logger:
    """
    Configura el logger raíz del paquete con el nivel de ``cfg.log_level``.
    Idempotente: si ya tiene handlers solo ajusta el nivel.
    """
    cfg = cfg or default_settings
    log = logging.getLogger(LOGGER_NAME)
    log.setLevel(cfg.log_level.upper())
    if log.handlers:
        return log

    h = logging.StreamHandler(sys.stderr)
    h.setFormatter(logging.Formatter(_FORMAT, datefmt="%Y-%m-%d %H:%M:%S"))
    log.addHandler(h)
    return log
