"""
Unit tests for chunked, crash-tolerant experiment execution.
"""

import unittest
import tempfile
from unittest import mock
import numpy as np
import torch
from omegaconf import OmegaConf
import sys
from pathlib import Path

# Add the source tree to Python path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root / "src"))

from fedavg_sim.config.schemas import build_experiment_config, default_config
from fedavg_sim.core.exceptions import ChunkExecutionError, ConfigurationError, UnsafeResumeError
from fedavg_sim.core.types import Checkpoint, RoundRecord
from fedavg_sim.runner.chunked import ChunkedRunner, run_experiment_queue
from fedavg_sim.utils.checkpoint import CheckpointStore
from fedavg_sim.utils.metrics_logger import (
    RoundRecordLogger,
    accuracy_history,
    last_completed_round,
    read_round_records,
)
from fedavg_sim.worker import run_from_config


def make_cfg(root, **federated):
    overrides = {
        "dataset": {"name": "synthetic",
                    "synthetic": {"n_train": 120, "n_test": 60, "n_features": 8, "n_classes": 3}},
        "model": {"name": "MLP", "hidden_dims": [16]},
        "federated": {"num_clients": 4, "client_fraction": 0.5, "local_epochs": 1,
                      "batch_size": "10", "lr_grid": [0.1], "num_rounds": 5, "seed": 3,
                      "partition": "iid", **federated},
        "persistence": {"log_path": str(Path(root) / "metrics.csv"),
                        "checkpoint_dir": str(Path(root) / "ckpt")},
        "runner": {"enabled": True, "chunk_size": 2, "retry_backoff": 5.0, "pause": 0.0},
    }
    return OmegaConf.merge(default_config(), overrides)


class FakeWorker:
    """
    Launcher that writes log rows and checkpoints without training.

    ``script`` maps a call index to ``(rounds_to_complete, exit_code)``;
    unscripted calls complete their whole chunk and exit cleanly.
    """

    def __init__(self, script=None):
        self.script = script or {}
        self.calls = []

    def __call__(self, chunk_cfg):
        start = chunk_cfg.persistence.start_round
        end = chunk_cfg.persistence.end_round
        self.calls.append((start, end))
        completed, exit_code = self.script.get(len(self.calls) - 1, (end - start + 1, 0))
        write_rounds(chunk_cfg, range(start, start + completed))
        return exit_code


def write_rounds(cfg, rounds):
    config = build_experiment_config(cfg)
    store = CheckpointStore.for_config(cfg.persistence.checkpoint_dir, config)
    with RoundRecordLogger(cfg.persistence.log_path) as log:
        for r in rounds:
            store.save(Checkpoint(np.full(3, float(r)), 0.1, r, config.fingerprint()))
            log.log_record(RoundRecord(
                dataset=config.dataset, model=config.model, partition=config.partition.value,
                method=config.method, round=r, test_accuracy=0.1 * r, chosen_learning_rate=0.1,
                E=config.local_epochs, B=config.batch_size, client_fraction=config.client_fraction,
                clients_selected=config.clients_per_round, u=config.u, target=config.target
            ))


class TestChunkedRunner(unittest.TestCase):

    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.cfg = make_cfg(self.tmp.name)
        self.config = build_experiment_config(self.cfg)
        self.sleeps = []

    def tearDown(self):
        self.tmp.cleanup()

    def make_runner(self, launcher, cfg=None):
        return ChunkedRunner(cfg or self.cfg, launcher=launcher, sleep=self.sleeps.append)

    def test_runs_all_chunks(self):
        worker = FakeWorker()
        result = self.make_runner(worker).run()

        self.assertEqual(worker.calls, [(1, 2), (3, 4), (5, 5)])
        self.assertEqual(result, {"status": "completed", "chunks": 3, "last_round": 5})
        self.assertEqual(self.sleeps, [])

    def test_chunk_config_disables_runner(self):
        seen = []

        def launcher(chunk_cfg):
            seen.append(chunk_cfg)
            return FakeWorker()(chunk_cfg)

        self.make_runner(launcher).run()
        self.assertFalse(seen[0].runner.enabled)
        self.assertTrue(self.cfg.runner.enabled)

    def test_retry_recomputes_start_round(self):
        # Second chunk crashes after completing round 3
        worker = FakeWorker({1: (1, 137)})
        result = self.make_runner(worker).run()

        self.assertEqual(worker.calls, [(1, 2), (3, 4), (4, 5)])
        self.assertEqual(self.sleeps, [5.0])
        self.assertEqual(result["last_round"], 5)

    def test_second_failure_stops_experiment(self):
        worker = FakeWorker({1: (0, 1), 2: (0, 1)})
        with self.assertRaises(ChunkExecutionError) as ctx:
            self.make_runner(worker).run()

        self.assertEqual(ctx.exception.start_round, 3)
        self.assertEqual(ctx.exception.exit_code, 1)
        self.assertEqual(len(worker.calls), 3)
        self.assertEqual(last_completed_round(self.cfg.persistence.log_path, self.config), 2)

    def test_clean_exit_without_progress(self):
        worker = FakeWorker({0: (0, 0)})
        with self.assertRaises(ChunkExecutionError):
            self.make_runner(worker).run()

    def test_completed_experiment_is_skipped(self):
        write_rounds(self.cfg, range(1, 6))
        worker = FakeWorker()
        result = self.make_runner(worker).run()
        self.assertEqual(worker.calls, [])
        self.assertEqual(result["last_round"], 5)

    def test_resumes_from_existing_progress(self):
        write_rounds(self.cfg, range(1, 4))
        worker = FakeWorker()
        self.make_runner(worker).run()
        self.assertEqual(worker.calls, [(4, 5)])

    def test_checkpoint_ahead_of_log(self):
        write_rounds(self.cfg, range(1, 3))
        store = CheckpointStore.for_config(self.cfg.persistence.checkpoint_dir, self.config)
        store.save(Checkpoint(np.zeros(3), 0.1, 3, self.config.fingerprint()))

        runner = self.make_runner(FakeWorker())
        with self.assertLogs("fedavg_sim", level="WARNING"):
            self.assertEqual(runner.next_start_round(), 4)

    def test_missing_checkpoint_restarts(self):
        write_rounds(self.cfg, range(1, 3))
        CheckpointStore.for_config(self.cfg.persistence.checkpoint_dir, self.config).clear()

        runner = self.make_runner(FakeWorker())
        with self.assertLogs("fedavg_sim", level="WARNING"):
            self.assertEqual(runner.next_start_round(), 1)

    def test_missing_checkpoint_refused(self):
        cfg = make_cfg(self.tmp.name)
        cfg.persistence.resume_policy = "refuse"
        write_rounds(cfg, range(1, 3))
        CheckpointStore.for_config(cfg.persistence.checkpoint_dir, build_experiment_config(cfg)).clear()

        with self.assertRaises(UnsafeResumeError):
            self.make_runner(FakeWorker(), cfg).run()

    def test_pause_between_chunks(self):
        cfg = make_cfg(self.tmp.name)
        cfg.runner.pause = 0.5
        self.make_runner(FakeWorker(), cfg).run()
        self.assertEqual(self.sleeps, [0.5, 0.5])

    def test_requires_persistence_paths(self):
        cfg = make_cfg(self.tmp.name)
        cfg.persistence.checkpoint_dir = None
        with self.assertRaises(ConfigurationError):
            ChunkedRunner(cfg, launcher=FakeWorker())


class TestInProcessWorker(unittest.TestCase):
    """Drive the chunked runner with the real worker running in-process."""

    def setUp(self):
        torch.manual_seed(42)
        self.tmp = tempfile.TemporaryDirectory()

    def tearDown(self):
        self.tmp.cleanup()

    def test_chunked_training_matches_single_run(self):
        chunked_cfg = make_cfg(Path(self.tmp.name) / "chunked", lr_grid=[0.05, 0.1])

        def launcher(chunk_cfg):
            run_from_config(chunk_cfg)
            return 0

        result = ChunkedRunner(chunked_cfg, launcher=launcher, sleep=lambda s: None).run()
        self.assertEqual(result["last_round"], 5)

        single_cfg = make_cfg(Path(self.tmp.name) / "single", lr_grid=[0.05, 0.1])
        single_cfg.runner.enabled = False
        single = run_from_config(single_cfg)

        config = build_experiment_config(chunked_cfg)
        chunked_history = accuracy_history(chunked_cfg.persistence.log_path, config)
        single_history = [(r.round, r.test_accuracy) for r in single.records]
        self.assertEqual([r for r, _ in chunked_history], [1, 2, 3, 4, 5])
        for (_, a), (_, b) in zip(chunked_history, single_history):
            self.assertAlmostEqual(a, b)

        checkpoint = CheckpointStore.for_config(chunked_cfg.persistence.checkpoint_dir, config).load()
        np.testing.assert_allclose(checkpoint.parameters, single.final_state.parameters,
                                   rtol=1e-6, atol=1e-9)

    def test_crash_before_checkpoint_keeps_every_round(self):
        cfg = make_cfg(self.tmp.name)
        config = build_experiment_config(cfg)
        save = CheckpointStore.save
        starts = []

        def crash_at_round_two(store, checkpoint):
            if checkpoint.last_round == 2:
                raise RuntimeError("worker killed")
            return save(store, checkpoint)

        def launcher(chunk_cfg):
            starts.append(chunk_cfg.persistence.start_round)
            if len(starts) == 1:
                with mock.patch.object(CheckpointStore, "save", crash_at_round_two):
                    with self.assertRaises(RuntimeError):
                        run_from_config(chunk_cfg)
                return 1
            run_from_config(chunk_cfg)
            return 0

        result = ChunkedRunner(cfg, launcher=launcher, sleep=lambda s: None).run()

        self.assertEqual(result["last_round"], 5)
        # Round 2 was logged but not checkpointed, so the retry replays it
        self.assertEqual(starts, [1, 2, 4])
        logged = read_round_records(cfg.persistence.log_path)
        self.assertEqual(list(logged["round"]), [1, 2, 2, 3, 4, 5])
        self.assertEqual([r for r, _ in accuracy_history(cfg.persistence.log_path, config)],
                         [1, 2, 3, 4, 5])


class TestExperimentQueue(unittest.TestCase):

    def test_failed_experiment_does_not_stop_queue(self):
        with tempfile.TemporaryDirectory() as tmp:
            failing = make_cfg(Path(tmp) / "a", local_epochs=5)
            passing = make_cfg(Path(tmp) / "b", local_epochs=1)
            healthy = FakeWorker()

            def launcher(chunk_cfg):
                if chunk_cfg.federated.local_epochs == 5:
                    return 1
                return healthy(chunk_cfg)

            summary = run_experiment_queue([failing, passing], launcher=launcher, sleep=lambda s: None)

        self.assertEqual([entry["status"] for entry in summary], ["failed", "completed"])
        self.assertIn("CHUNK_ERROR", summary[0]["error"])
        self.assertIsNone(summary[1]["error"])
        self.assertEqual(summary[1]["last_round"], 5)
        self.assertIn("E=5", summary[0]["experiment"])

    def test_configurations_sharing_directories_resume_independently(self):
        with tempfile.TemporaryDirectory() as tmp:
            interrupted = make_cfg(tmp, local_epochs=1)
            finished = make_cfg(tmp, local_epochs=2)
            # The E=1 experiment completes rounds 1-2, then its next chunk fails twice
            workers = {1: FakeWorker({1: (0, 1), 2: (0, 1)}), 2: FakeWorker()}

            def launcher(chunk_cfg):
                return workers[chunk_cfg.federated.local_epochs](chunk_cfg)

            summary = run_experiment_queue([interrupted, finished], launcher=launcher,
                                           sleep=lambda s: None)
            self.assertEqual([entry["status"] for entry in summary], ["failed", "completed"])

            workers[1] = FakeWorker()
            summary = run_experiment_queue([interrupted], launcher=launcher, sleep=lambda s: None)

            self.assertEqual(summary[0]["status"], "completed")
            self.assertIsNone(summary[0]["error"])
            self.assertEqual(workers[1].calls, [(3, 4), (5, 5)])

            first = CheckpointStore.for_config(Path(tmp) / "ckpt", build_experiment_config(interrupted))
            second = CheckpointStore.for_config(Path(tmp) / "ckpt", build_experiment_config(finished))
            self.assertNotEqual(first.path, second.path)
            self.assertEqual(first.load().last_round, 5)
            self.assertEqual(second.load().last_round, 5)


if __name__ == '__main__':
    unittest.main()
