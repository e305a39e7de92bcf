"""
Round orchestrator for federated averaging experiments.

This module drives the per-round FedAvg protocol:
- Partition the training data among K clients once per experiment
- Select the learning rate once, before round 1 of a fresh run
- Sample clients, train them, aggregate, evaluate, checkpoint and log
- Resume from the latest checkpoint when continuing an interrupted run

All randomness is derived from (experiment seed, round, client), so a run
split into chunks reproduces the parameters of one continuous run.
"""

import logging
import time
from pathlib import Path
from typing import Callable, Dict, List, Optional, Sequence, Tuple, Union

import numpy as np
import pandas as pd
import torch
from torch.utils.data import Dataset

from ..clients.executors import ClientExecutor, ClientTask, LocalTrainingPlan, SequentialExecutor
from ..clients.trainer import ClientTrainer, ModelFactory
from ..core.exceptions import ConfigurationError, UnsafeResumeError
from ..core.types import (
    BatchSize,
    Checkpoint,
    ChunkResult,
    ExperimentConfig,
    OrchestratorState,
    ParameterVector,
    PartitionType,
    RoundRecord,
    RoundState,
    clients_per_round,
)
from ..strategies.fedavg import FedAvgStrategy
from ..utils.checkpoint import CheckpointStore
from ..utils.convergence import ConvergenceTracker
from ..utils.data_utils import evaluate_accuracy
from ..utils.metrics_logger import CSVLogger, RoundRecordLogger, accuracy_history
from ..utils.parameters import flatten, unflatten
from ..utils.partitioning import (
    PartitionerRegistry,
    derive_seed,
    draw_clients,
    sample_clients,
)

logger = logging.getLogger(__name__)

LR_SELECTION_ROUND = 0

_PARTITIONER_NAMES = {
    PartitionType.IID: "iid",
    PartitionType.NON_IID: "noniid",
}


class RoundOrchestrator:
    """
    Owns the global parameter vector and moves it through the round protocol.

    States: INITIALIZING -> SELECTING_LR -> ROUND_ACTIVE -> EVALUATING ->
    LOGGING -> (ROUND_ACTIVE | TERMINATED), with RESUMING replacing
    INITIALIZING and SELECTING_LR when a checkpoint is resumed.
    """

    def __init__(
        self,
        config: ExperimentConfig,
        train_dataset: Dataset,
        test_dataset: Dataset,
        model_fn: ModelFactory,
        log_path: Optional[str] = None,
        checkpoint_dir: Optional[str] = None,
        resume_policy: str = "restart",
        executor: Optional[ClientExecutor] = None,
        device: str = "cpu",
        partitions: Optional[List[np.ndarray]] = None
    ):
        """
        Initialize the orchestrator.

        Args:
            config: Immutable experiment configuration
            train_dataset: Dataset the client partitions index into
            test_dataset: Held-out dataset for global accuracy
            model_fn: Builds a fresh model instance
            log_path: Round-record CSV log (None disables logging)
            checkpoint_dir: Checkpoint root; this configuration writes into its own
                subdirectory (None disables checkpoints)
            resume_policy: ``restart`` or ``refuse`` when a resume has no checkpoint
            executor: Client execution backend (sequential by default)
            device: Torch device
            partitions: Precomputed client partitions (computed from the config otherwise)
        """
        if resume_policy not in ("restart", "refuse"):
            raise ConfigurationError(f"Configuration: unknown resume policy '{resume_policy}'",
                                     "persistence.resume_policy", "restart | refuse", resume_policy)

        self.state = OrchestratorState.INITIALIZING
        self.config = config
        self.train_dataset = train_dataset
        self.test_dataset = test_dataset
        self.model_fn = model_fn
        self.log_path = log_path
        self.store = CheckpointStore.for_config(checkpoint_dir, config) if checkpoint_dir else None
        self.resume_policy = resume_policy
        self.executor = executor or SequentialExecutor()
        self.device = device

        self.strategy = FedAvgStrategy()
        self.trainer = ClientTrainer(train_dataset, model_fn, device)
        self.partitions = partitions if partitions is not None else self._partition()
        self._eval_model = None

    def _transition(self, new_state: OrchestratorState) -> None:
        logger.debug(f"Orchestrator: {self.state.name} -> {new_state.name}")
        self.state = new_state

    def _partition(self) -> List[np.ndarray]:
        partitioner = PartitionerRegistry.get_partitioner(_PARTITIONER_NAMES[self.config.partition])
        return partitioner.partition(self.train_dataset, self.config.num_clients,
                                     seed=self.config.seed,
                                     shards_per_client=self.config.shards_per_client)

    def initial_parameters(self) -> ParameterVector:
        """Parameters of a model built under the experiment seed."""
        with torch.random.fork_rng(devices=[]):
            torch.manual_seed(self.config.seed)
            model = self.model_fn()
        return flatten(model)

    def evaluate(self, params: ParameterVector) -> float:
        """Test accuracy of ``params``."""
        if self._eval_model is None:
            self._eval_model = self.model_fn().to(self.device)
        unflatten(self._eval_model, params)
        return evaluate_accuracy(self._eval_model, self.test_dataset, device=self.device)

    def select_learning_rate(self, init_params: ParameterVector) -> Tuple[float, float]:
        """
        Pick the learning rate once for the whole experiment.

        Each candidate warm-trains a copy of ``init_params`` for one epoch,
        chained through a small fixed set of clients, and is scored on the
        test set. The highest accuracy wins; ties keep the earlier candidate.

        Returns:
            (learning_rate, accuracy)
        """
        self._transition(OrchestratorState.SELECTING_LR)
        grid = self.config.lr_grid
        if len(grid) == 1:
            logger.info(f"Single learning rate configured: {grid[0]}")
            return grid[0], float("nan")

        count = min(self.config.lr_selection_clients, self.config.clients_per_round)
        selection_clients = draw_clients(self.config.num_clients, count, self.config.seed)
        logger.debug(f"Learning-rate selection clients: {selection_clients}")

        best_lr, best_acc = grid[0], -1.0
        for candidate in grid:
            params = init_params
            for client_id in selection_clients:
                update = self.trainer.train(
                    self.partitions[client_id - 1], params, epochs=1,
                    batch_size=self.config.batch_size, learning_rate=candidate,
                    momentum=self.config.momentum,
                    seed=derive_seed(self.config.seed, LR_SELECTION_ROUND, client_id),
                    client_id=client_id
                )
                params = update.parameters
            accuracy = self.evaluate(params)
            logger.info(f"LR candidate {candidate}: accuracy {accuracy:.4f}")
            if accuracy > best_acc:
                best_lr, best_acc = candidate, accuracy

        logger.info(f"Selected LR: {best_lr} (acc: {best_acc:.4f}) - will use for all rounds")
        return best_lr, best_acc

    def prepare(self, start_round: int = 1) -> Tuple[RoundState, ConvergenceTracker]:
        """
        Produce the state the first round of this run starts from.

        A fresh run (``start_round == 1``) initializes parameters and selects
        the learning rate. A resume loads the checkpoint, trusting its round
        counter over ``start_round``, and reloads earlier accuracies from the
        round-record log. A resume without a checkpoint either restarts from
        round 1 (logged loudly; the log may then hold duplicate rounds) or
        raises, depending on the resume policy.

        Raises:
            UnsafeResumeError: If resuming is impossible and the policy is ``refuse``
            CheckpointError: If the checkpoint belongs to another configuration
        """
        if start_round < 1:
            raise ConfigurationError("Configuration: start_round must be >= 1",
                                     "persistence.start_round", ">= 1", start_round)

        checkpoint = None
        if start_round > 1:
            if self.store is not None:
                checkpoint = self.store.load(self.config.fingerprint())
            if checkpoint is None:
                location = str(self.store.path) if self.store is not None else None
                if self.resume_policy == "refuse":
                    raise UnsafeResumeError(
                        f"Orchestrator: cannot resume at round {start_round}, no checkpoint at {location}",
                        start_round=start_round, checkpoint_path=location
                    )
                logger.warning(
                    f"Unsafe resume: no checkpoint at {location} for round {start_round}; "
                    f"restarting from round 1. The round-record log may contain duplicate rounds."
                )
                start_round = 1

        if checkpoint is not None:
            self._transition(OrchestratorState.RESUMING)
            if checkpoint.last_round + 1 != start_round:
                logger.warning(f"Requested start round {start_round} but checkpoint holds round "
                               f"{checkpoint.last_round}; resuming at round {checkpoint.last_round + 1}")
            state = RoundState(checkpoint.last_round, checkpoint.parameters, checkpoint.learning_rate)
            history = accuracy_history(self.log_path, self.config,
                                       before_round=checkpoint.last_round + 1) if self.log_path else []
            logger.info(f"Resumed at round {state.last_round + 1} with LR {state.learning_rate} "
                        f"({len(history)} earlier rounds in the log)")
            return state, ConvergenceTracker(self.config.target, history)

        logger.info("Initializing model...")
        params = self.initial_parameters()
        learning_rate, _ = self.select_learning_rate(params)
        return RoundState(0, params, learning_rate), ConvergenceTracker(self.config.target)

    def run_round(
        self,
        state: RoundState,
        tracker: ConvergenceTracker,
        round_logger: Optional[RoundRecordLogger] = None
    ) -> RoundRecord:
        """
        Execute round ``state.last_round + 1`` and advance ``state`` in place.

        The round record is appended to ``round_logger`` before the checkpoint
        is replaced, so a checkpoint never runs ahead of the log. A crash in
        between replays the round on resume and the reader keeps its last row.
        """
        self._transition(OrchestratorState.ROUND_ACTIVE)
        round_number = state.last_round + 1
        cfg = self.config
        started = time.time()

        selected = sample_clients(cfg.num_clients, cfg.client_fraction,
                                  derive_seed(cfg.seed, round_number))
        logger.debug(f"Round {round_number} clients: {selected}")

        tasks = [ClientTask(client_id=cid, seed=derive_seed(cfg.seed, round_number, cid),
                            indices=self.partitions[cid - 1])
                 for cid in selected]
        plan = LocalTrainingPlan(cfg.local_epochs, cfg.batch_size, state.learning_rate, cfg.momentum)
        updates = self.executor.run_round(tasks, self.train_dataset, self.model_fn,
                                          state.parameters, plan, self.device)
        new_params = self.strategy.aggregate_updates(updates)

        self._transition(OrchestratorState.EVALUATING)
        accuracy = self.evaluate(new_params)
        rtt = tracker.record(round_number, accuracy)

        self._transition(OrchestratorState.LOGGING)
        record = RoundRecord(
            dataset=cfg.dataset, model=cfg.model, partition=cfg.partition.value,
            method=cfg.method, round=round_number, test_accuracy=accuracy,
            chosen_learning_rate=state.learning_rate, E=cfg.local_epochs, B=cfg.batch_size,
            client_fraction=cfg.client_fraction, clients_selected=len(selected), u=cfg.u,
            target=cfg.target, rounds_to_target=rtt
        )
        if round_logger is not None:
            round_logger.log_record(record)
        if self.store is not None:
            self.store.save(Checkpoint(new_params, state.learning_rate, round_number,
                                       cfg.fingerprint()))
        state.parameters = new_params
        state.last_round = round_number

        logger.info(f"Round {round_number}/{cfg.num_rounds}: test accuracy {accuracy:.4f} "
                    f"({time.time() - started:.1f}s)")
        return record

    def run_chunk(self, start_round: int, end_round: Optional[int] = None) -> ChunkResult:
        """
        Run rounds ``start_round`` .. ``end_round`` (inclusive).

        Args:
            start_round: First round to run; resumes from the checkpoint when > 1
            end_round: Last round (defaults to ``num_rounds``; capped by it)

        Returns:
            ChunkResult with the final state and the records of this chunk
        """
        end_round = self.config.num_rounds if end_round is None else min(end_round, self.config.num_rounds)
        state, tracker = self.prepare(start_round)

        records: List[RoundRecord] = []
        round_logger = RoundRecordLogger(self.log_path) if self.log_path else None
        try:
            while state.last_round < end_round:
                records.append(self.run_round(state, tracker, round_logger))
        finally:
            if round_logger is not None:
                round_logger.close()

        self._transition(OrchestratorState.TERMINATED)
        return ChunkResult(state, records)

    def run(self, start_round: int = 1) -> ChunkResult:
        """Run the experiment from ``start_round`` to the last round."""
        return self.run_chunk(start_round, self.config.num_rounds)


def run_chunk(
    config: ExperimentConfig,
    start_round: int,
    end_round: int,
    train_dataset: Dataset,
    test_dataset: Dataset,
    model_fn: ModelFactory,
    **options
) -> ChunkResult:
    """
    Run one contiguous range of rounds of an experiment.

    Keyword options are passed to :class:`RoundOrchestrator`.
    """
    orchestrator = RoundOrchestrator(config, train_dataset, test_dataset, model_fn, **options)
    return orchestrator.run_chunk(start_round, end_round)


def fedavg_simulation(
    client_datasets: Sequence[Dataset],
    model_fn: ModelFactory,
    evaluation_fn: Callable[[torch.nn.Module], Dict[str, float]],
    rounds: int = 10,
    client_fraction: float = 0.1,
    local_epochs: int = 1,
    batch_size: Union[int, str, BatchSize] = 32,
    lr_scheduler: Callable[[int], float] = lambda r: 0.1,
    momentum: float = 0.0,
    seed: int = 123,
    device: str = "cpu",
    log_file: Optional[str] = None,
    save_model: Optional[str] = None,
    executor: Optional[ClientExecutor] = None
) -> Dict[str, object]:
    """
    FedAvg over pre-built client datasets.

    Uses the same client sampler, trainer and aggregator as the orchestrator
    but takes the learning rate for every round from ``lr_scheduler`` and
    scores the global model with ``evaluation_fn``.

    Args:
        client_datasets: One dataset per client
        model_fn: Builds a fresh model instance
        evaluation_fn: Maps the global model to a dict of metrics
        rounds: Number of communication rounds
        client_fraction: Fraction of clients per round (C)
        local_epochs: Local epochs (E)
        batch_size: Local batch size, ``"inf"`` for full batch
        lr_scheduler: Maps a round number to its learning rate
        momentum: SGD momentum
        seed: Experiment seed
        device: Torch device
        log_file: Optional CSV path, one row appended per round
        save_model: Optional path for the final model's state dict
        executor: Client execution backend

    Returns:
        Dict with ``history`` (DataFrame), ``final_params`` and, when saved, ``model_path``
    """
    num_clients = len(client_datasets)
    if num_clients < 1:
        raise ConfigurationError("Configuration: at least one client dataset is required",
                                 "client_datasets", ">= 1", num_clients)
    if not (0 < client_fraction <= 1):
        raise ConfigurationError("Configuration: client_fraction (C) must be in (0, 1]",
                                 "client_fraction", "(0, 1]", client_fraction)
    batch_size = BatchSize.parse(batch_size)
    executor = executor or SequentialExecutor()

    logger.info(f"Starting FedAvg simulation: K={num_clients}, C={client_fraction:.2f}, "
                f"E={local_epochs}, B={batch_size}, rounds={rounds}, "
                f"m={clients_per_round(num_clients, client_fraction)}")

    with torch.random.fork_rng(devices=[]):
        torch.manual_seed(seed)
        global_model = model_fn().to(device)
    global_params = flatten(global_model)

    metrics_logger = CSVLogger(log_file) if log_file else None
    history = []
    try:
        for r in range(1, rounds + 1):
            started = time.time()
            selected = sample_clients(num_clients, client_fraction, derive_seed(seed, r))
            tasks = [ClientTask(client_id=cid, seed=derive_seed(seed, r, cid),
                                dataset=client_datasets[cid - 1])
                     for cid in selected]
            plan = LocalTrainingPlan(local_epochs, batch_size, float(lr_scheduler(r)), momentum)
            updates = executor.run_round(tasks, None, model_fn, global_params, plan, device)
            global_params = FedAvgStrategy().aggregate_updates(updates)

            unflatten(global_model, global_params)
            metrics = dict(evaluation_fn(global_model))
            elapsed = time.time() - started

            summary = ", ".join(f"{k}={v:.4f}" for k, v in metrics.items())
            logger.info(f"Round {r}/{rounds}: {summary} ({elapsed:.1f}s)")

            row = {"round": r, "time": elapsed, **metrics}
            history.append(row)
            if metrics_logger is not None:
                metrics_logger.log_dict({"timestamp": pd.Timestamp.now().isoformat(), **row})
    finally:
        if metrics_logger is not None:
            metrics_logger.close()

    result = {"history": pd.DataFrame(history), "final_params": global_params}
    if save_model:
        path = Path(save_model)
        path.parent.mkdir(parents=True, exist_ok=True)
        torch.save(global_model.state_dict(), path)
        logger.info(f"Model saved to: {path}")
        result["model_path"] = str(path)
    return result
