"""
Checkpoint persistence for resumable experiments.

One file per experiment configuration, overwritten after every completed round
through a temporary file and ``os.replace`` so a crash never leaves a
half-written checkpoint behind. Configurations sharing a checkpoint directory
each get their own ``<dataset>_<model>_<partition>_E<E>_B<B>`` subdirectory.
"""

import logging
import os
import pickle
import re
from pathlib import Path
from typing import Any, Dict, Optional

import numpy as np
import torch

from ..core.exceptions import CheckpointError
from ..core.types import Checkpoint, ExperimentConfig

logger = logging.getLogger(__name__)

CHECKPOINT_FILENAME = "checkpoint_latest.pt"


def experiment_key(fingerprint: Dict[str, Any]) -> str:
    """Directory name identifying one configuration, e.g. ``mnist_2NN_IID_E5_B10``."""
    key = (f"{fingerprint['dataset']}_{fingerprint['model']}_{fingerprint['partition']}"
           f"_E{fingerprint['E']}_B{fingerprint['B']}")
    return re.sub(r"[^A-Za-z0-9_.-]", "-", key)


class CheckpointStore:
    """
    Reads and writes ``checkpoint_latest.pt``.

    With a ``fingerprint`` the file lives in that configuration's own
    subdirectory of ``checkpoint_dir`` and loads are checked against it.
    """

    def __init__(self, checkpoint_dir: str, fingerprint: Optional[Dict[str, Any]] = None):
        self.root_dir = Path(checkpoint_dir)
        self.fingerprint = dict(fingerprint) if fingerprint is not None else None
        if self.fingerprint is None:
            self.checkpoint_dir = self.root_dir
        else:
            self.checkpoint_dir = self.root_dir / experiment_key(self.fingerprint)

    @classmethod
    def for_config(cls, checkpoint_dir: str, config: ExperimentConfig) -> "CheckpointStore":
        return cls(checkpoint_dir, config.fingerprint())

    @property
    def path(self) -> Path:
        return self.checkpoint_dir / CHECKPOINT_FILENAME

    def exists(self) -> bool:
        return self.path.is_file()

    def save(self, checkpoint: Checkpoint) -> Path:
        """Atomically replace the stored checkpoint."""
        self.checkpoint_dir.mkdir(parents=True, exist_ok=True)
        payload = {
            "parameters": torch.from_numpy(np.asarray(checkpoint.parameters, dtype=np.float64).copy()),
            "learning_rate": float(checkpoint.learning_rate),
            "last_round": int(checkpoint.last_round),
            "fingerprint": dict(checkpoint.fingerprint),
        }
        tmp_path = self.path.with_name(self.path.name + ".tmp")
        torch.save(payload, tmp_path)
        os.replace(tmp_path, self.path)
        logger.debug(f"Checkpoint written: round {checkpoint.last_round} -> {self.path}")
        return self.path

    def load(self, expected_fingerprint: Optional[Dict[str, Any]] = None) -> Optional[Checkpoint]:
        """
        Read the stored checkpoint.

        Args:
            expected_fingerprint: Configuration the checkpoint must belong to
                (the store's own fingerprint when omitted)

        Returns:
            Checkpoint, or None when no checkpoint file exists

        Raises:
            CheckpointError: If the file is unreadable or belongs to another configuration
        """
        if not self.exists():
            return None
        if expected_fingerprint is None:
            expected_fingerprint = self.fingerprint

        try:
            payload = torch.load(self.path, map_location="cpu", weights_only=True)
            checkpoint = Checkpoint(
                parameters=payload["parameters"].to(torch.float64).numpy().copy(),
                learning_rate=float(payload["learning_rate"]),
                last_round=int(payload["last_round"]),
                fingerprint=dict(payload.get("fingerprint", {})),
            )
        except (OSError, EOFError, RuntimeError, KeyError, AttributeError, TypeError,
                pickle.UnpicklingError) as e:
            raise CheckpointError(f"Checkpoint store: cannot read {self.path}: {e}",
                                  checkpoint_path=str(self.path)) from e

        if expected_fingerprint is not None and checkpoint.fingerprint != dict(expected_fingerprint):
            raise CheckpointError(
                f"Checkpoint store: {self.path} was written for {checkpoint.fingerprint}, "
                f"not {dict(expected_fingerprint)}",
                checkpoint_path=str(self.path)
            )
        return checkpoint

    def clear(self) -> None:
        if self.exists():
            self.path.unlink()
            logger.info(f"Removed checkpoint {self.path}")
