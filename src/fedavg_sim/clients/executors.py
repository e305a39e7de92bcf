"""
Client execution backends.

Every backend trains the round's clients from the same global vector and
returns only after all of them have finished, so aggregation always sees the
complete round. Each client builds its own model and derives its shuffling
from its task seed, so sequential and Ray execution produce the same values.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import numpy as np
from torch.utils.data import Dataset, Subset

from ..core.exceptions import ConfigurationError
from ..core.types import BatchSize, ClientUpdate, ParameterVector
from .trainer import ModelFactory, train_on_dataset

logger = logging.getLogger(__name__)


@dataclass
class ClientTask:
    """One client's share of a round: either indices into the shared dataset or its own dataset."""
    client_id: int
    seed: int
    indices: Optional[np.ndarray] = None
    dataset: Optional[Dataset] = None


@dataclass(frozen=True)
class LocalTrainingPlan:
    """Hyperparameters every client of a round trains with."""
    epochs: int
    batch_size: BatchSize
    learning_rate: float
    momentum: float = 0.0


def run_client_task(
    task: ClientTask,
    shared_dataset: Optional[Dataset],
    model_fn: ModelFactory,
    init_params: ParameterVector,
    plan: LocalTrainingPlan,
    device: str = "cpu"
) -> ClientUpdate:
    """Train one client; used as-is by the sequential backend and as a Ray task."""
    if task.dataset is not None:
        local = task.dataset
    else:
        local = Subset(shared_dataset, [int(i) for i in task.indices])
    return train_on_dataset(local, model_fn, init_params, plan.epochs, plan.batch_size,
                            plan.learning_rate, plan.momentum, task.seed, device, task.client_id)


class ClientExecutor(ABC):
    """Abstract base class for round execution backends."""

    name = "base"

    @abstractmethod
    def run_round(
        self,
        tasks: List[ClientTask],
        shared_dataset: Optional[Dataset],
        model_fn: ModelFactory,
        init_params: ParameterVector,
        plan: LocalTrainingPlan,
        device: str = "cpu"
    ) -> List[ClientUpdate]:
        """
        Train every task and return updates in task order.

        Args:
            tasks: Clients sampled for the round
            shared_dataset: Dataset that task indices refer to
            model_fn: Builds a fresh model instance
            init_params: Current global parameters (read-only)
            plan: Local training hyperparameters
            device: Torch device

        Returns:
            One ClientUpdate per task
        """
        pass

    def close(self) -> None:
        """Release backend resources."""
        pass


class SequentialExecutor(ClientExecutor):
    """Trains clients one after another in the calling process."""

    name = "sequential"

    def run_round(self, tasks, shared_dataset, model_fn, init_params, plan, device="cpu"):
        return [run_client_task(task, shared_dataset, model_fn, init_params, plan, device)
                for task in tasks]


class RayExecutor(ClientExecutor):
    """
    Trains the round's clients as parallel Ray tasks.

    The shared dataset and the global vector are placed in the object store
    once per round; ``ray.get`` on all task references is the barrier before
    aggregation.
    """

    name = "ray"

    def __init__(self, ray_config: Optional[Dict[str, Any]] = None, num_cpus_per_client: float = 1):
        import ray
        from ..utils.ray_utils import RayResourceManager

        self._ray = ray
        self.manager = RayResourceManager(ray_config or {})
        self.manager.initialize()
        self._remote = ray.remote(num_cpus=num_cpus_per_client)(run_client_task)
        self._dataset_ref = None
        self._dataset_id = None

    def _put_dataset(self, dataset: Optional[Dataset]):
        if dataset is None:
            return None
        if self._dataset_id != id(dataset):
            self._dataset_ref = self._ray.put(dataset)
            self._dataset_id = id(dataset)
        return self._dataset_ref

    def run_round(self, tasks, shared_dataset, model_fn, init_params, plan, device="cpu"):
        dataset_ref = self._put_dataset(shared_dataset)
        params_ref = self._ray.put(np.asarray(init_params))
        futures = [self._remote.remote(task, dataset_ref, model_fn, params_ref, plan, device)
                   for task in tasks]
        logger.debug(f"Dispatched {len(futures)} client tasks to Ray")
        return self._ray.get(futures)

    def close(self) -> None:
        self._dataset_ref = None
        self._dataset_id = None
        self.manager.cleanup()


def create_executor(name: str, ray_config: Optional[Dict[str, Any]] = None) -> ClientExecutor:
    """
    Build an executor by name (``sequential`` or ``ray``).

    Raises:
        ConfigurationError: If the name is unknown
    """
    key = name.lower()
    if key == "sequential":
        return SequentialExecutor()
    if key == "ray":
        return RayExecutor(ray_config)
    raise ConfigurationError(f"Configuration: unknown executor '{name}'", "env.executor",
                             "sequential | ray", name)
