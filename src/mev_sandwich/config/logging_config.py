"""Logging setup for the sandwich service."""
import logging
import logging.handlers
import sys
from pathlib import Path
from typing import List, Optional

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
MAX_LOG_BYTES = 10 * 1024 * 1024
LOG_BACKUP_COUNT = 5


def configure_logging(level: str = "INFO", log_dir: Optional[str] = None) -> None:
    """
    Configure root logging for the service.
    
    Always logs to stdout. When ``log_dir`` is given, a rotating combined log
    and a rotating error-only log are written there as well.
    """
    handlers: List[logging.Handler] = [logging.StreamHandler(sys.stdout)]
    
    if log_dir:
        path = Path(log_dir)
        path.mkdir(parents=True, exist_ok=True)
        
        handlers.append(logging.handlers.RotatingFileHandler(
            path / "combined.log", maxBytes=MAX_LOG_BYTES, backupCount=LOG_BACKUP_COUNT
        ))
        
        error_handler = logging.handlers.RotatingFileHandler(
            path / "error.log", maxBytes=MAX_LOG_BYTES, backupCount=LOG_BACKUP_COUNT
        )
        error_handler.setLevel(logging.ERROR)
        handlers.append(error_handler)
    
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format=LOG_FORMAT,
        handlers=handlers,
        force=True
    )
    
    # web3 and aiohttp are chatty at DEBUG
    logging.getLogger("web3").setLevel(logging.WARNING)
    logging.getLogger("aiohttp").setLevel(logging.WARNING)
