"""
Logging setup shared by the CLI and chunk workers.
"""

import logging
from pathlib import Path
from typing import Any, Dict

DEFAULT_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def setup_logging(cfg: Dict[str, Any]) -> None:
    """
    Setup logging configuration.

    Args:
        cfg: Configuration dictionary (the root config or its ``logging`` section)
    """
    log_cfg = cfg.get("logging", cfg) or {}
    log_level = str(log_cfg.get("level", "INFO"))
    log_format = log_cfg.get("format", DEFAULT_FORMAT)

    handlers = [logging.StreamHandler()]
    if log_cfg.get("log_to_file", False):
        log_file = Path(log_cfg.get("log_file") or "fedavg_sim.log")
        log_file.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_file))

    logging.basicConfig(
        level=getattr(logging, log_level.upper()),
        format=log_format,
        handlers=handlers,
        force=True
    )

    # Set specific logger levels
    logging.getLogger("ray").setLevel(logging.WARNING)
