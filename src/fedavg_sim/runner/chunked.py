"""
Chunked, crash-tolerant execution of long experiments.

A long experiment is run as a sequence of bounded chunks of rounds, each in a
fresh worker process. Before every chunk the next round is recomputed from the
round-record log and the checkpoint, so a crashed or killed chunk is simply
picked up again. A failed chunk is retried once after a backoff; a second
consecutive failure stops the experiment.
"""

import logging
import os
import subprocess
import sys
import tempfile
import time
from typing import Callable, Dict, List, Optional, Sequence

from omegaconf import DictConfig, OmegaConf

from ..config.schemas import build_experiment_config, validate_configuration
from ..core.exceptions import ChunkExecutionError, FedAvgSimError, UnsafeResumeError
from ..core.types import ExperimentConfig
from ..utils.checkpoint import CheckpointStore
from ..utils.metrics_logger import last_completed_round

logger = logging.getLogger(__name__)

Launcher = Callable[[DictConfig], int]
"""Runs one chunk described by a config and returns the process exit code."""


def subprocess_launcher(chunk_cfg: DictConfig) -> int:
    """Write ``chunk_cfg`` to a temporary YAML file and run the worker on it."""
    handle = tempfile.NamedTemporaryFile("w", suffix=".yaml", prefix="fedavg_chunk_", delete=False)
    try:
        handle.close()
        OmegaConf.save(chunk_cfg, handle.name)
        completed = subprocess.run([sys.executable, "-m", "fedavg_sim.worker", handle.name])
        return completed.returncode
    finally:
        if os.path.exists(handle.name):
            os.remove(handle.name)


class ChunkedRunner:
    """Supervises one experiment as a sequence of worker chunks."""

    def __init__(
        self,
        cfg: DictConfig,
        launcher: Optional[Launcher] = None,
        sleep: Callable[[float], None] = time.sleep
    ):
        """
        Initialize the runner.

        Args:
            cfg: Full experiment configuration
            launcher: Chunk launcher (a worker subprocess by default)
            sleep: Sleep function, replaceable in tests
        """
        validate_configuration(cfg)
        self.cfg = cfg
        self.config: ExperimentConfig = build_experiment_config(cfg)
        self.launcher = launcher or subprocess_launcher
        self.sleep = sleep
        self.log_path = cfg.persistence.log_path
        self.store = CheckpointStore.for_config(cfg.persistence.checkpoint_dir, self.config)
        self.resume_policy = str(cfg.persistence.resume_policy).lower()

    def next_start_round(self) -> int:
        """
        First round that still has to run.

        The log gives the last completed round; the checkpoint decides where
        training can actually continue. Without a checkpoint the experiment
        restarts from round 1 or, with the ``refuse`` policy, stops.
        """
        logged = last_completed_round(self.log_path, self.config)
        if logged == 0:
            return 1

        checkpoint = self.store.load(self.config.fingerprint())
        if checkpoint is None:
            if self.resume_policy == "refuse":
                raise UnsafeResumeError(
                    f"Chunked runner: log shows {logged} rounds but no checkpoint at {self.store.path}",
                    start_round=logged + 1, checkpoint_path=str(self.store.path)
                )
            logger.warning(f"Checkpoint missing but log shows progress up to round {logged}; "
                           f"resetting to round 1 (the log will contain duplicate rounds)")
            return 1

        if checkpoint.last_round != logged:
            logger.warning(f"Log shows round {logged} but checkpoint holds round "
                           f"{checkpoint.last_round}; continuing from the checkpoint")
        return checkpoint.last_round + 1

    def _chunk_config(self, start_round: int, end_round: int) -> DictConfig:
        chunk_cfg = OmegaConf.create(OmegaConf.to_container(self.cfg, resolve=True))
        chunk_cfg.persistence.start_round = start_round
        chunk_cfg.persistence.end_round = end_round
        chunk_cfg.runner.enabled = False
        return chunk_cfg

    def _launch(self, start_round: int) -> int:
        end_round = min(start_round + self.cfg.runner.chunk_size - 1, self.config.num_rounds)
        logger.info(f"Chunk: rounds {start_round}-{end_round}")
        return self.launcher(self._chunk_config(start_round, end_round))

    def run(self) -> Dict[str, object]:
        """
        Run chunks until the last round is logged.

        Returns:
            Summary with the number of chunks run and the last completed round

        Raises:
            ChunkExecutionError: If a chunk fails twice in a row
            UnsafeResumeError: If resuming is impossible and the policy is ``refuse``
        """
        total = self.config.num_rounds
        chunks = 0

        start_round = self.next_start_round()
        if start_round > total:
            logger.info(f"Already completed ({total}/{total} rounds). Skipping.")

        while start_round <= total:
            exit_code = self._launch(start_round)
            if exit_code != 0:
                logger.error(f"Chunk starting at round {start_round} failed (exit code {exit_code}); "
                             f"retrying in {self.cfg.runner.retry_backoff}s")
                self.sleep(self.cfg.runner.retry_backoff)
                start_round = self.next_start_round()
                exit_code = self._launch(start_round)
                if exit_code != 0:
                    end_round = min(start_round + self.cfg.runner.chunk_size - 1, total)
                    raise ChunkExecutionError(
                        f"Chunked runner: rounds {start_round}-{end_round} failed after retry "
                        f"(exit code {exit_code})",
                        start_round=start_round, end_round=end_round, exit_code=exit_code
                    )
            chunks += 1

            previous_start, start_round = start_round, self.next_start_round()
            if start_round <= previous_start:
                raise ChunkExecutionError(
                    f"Chunked runner: chunk starting at round {previous_start} exited cleanly "
                    f"but no round was completed",
                    start_round=previous_start, exit_code=0
                )
            if start_round <= total and self.cfg.runner.pause > 0:
                self.sleep(self.cfg.runner.pause)

        last_round = last_completed_round(self.log_path, self.config)
        logger.info(f"Experiment completed: {self.config.partition.value} E={self.config.local_epochs} "
                    f"B={self.config.batch_size} ({chunks} chunks)")
        return {"status": "completed", "chunks": chunks, "last_round": last_round}


def run_experiment_queue(
    configs: Sequence[DictConfig],
    launcher: Optional[Launcher] = None,
    sleep: Callable[[float], None] = time.sleep
) -> List[Dict[str, object]]:
    """
    Run several experiments one after another through the chunked runner.

    A failing experiment is logged and skipped; the rest of the queue still runs.

    Returns:
        One status entry per configuration, in order
    """
    summary = []
    for index, cfg in enumerate(configs, start=1):
        label = (f"{cfg.dataset.name}/{cfg.model.name} {cfg.federated.partition} "
                 f"E={cfg.federated.local_epochs} B={cfg.federated.batch_size}")
        logger.info(f"[{index}/{len(configs)}] Starting: {label}")
        try:
            result = ChunkedRunner(cfg, launcher=launcher, sleep=sleep).run()
            summary.append({"experiment": label, "error": None, **result})
        except FedAvgSimError as e:
            logger.error(f"[{index}/{len(configs)}] Failed: {label}: {e}")
            summary.append({"experiment": label, "status": "failed", "error": str(e)})
    return summary
