"""
OmegaConf structured configuration schemas for fedavg-sim.

This module defines dataclass-based schemas for automatic validation
of configuration parameters at startup, registers them with Hydra's
ConfigStore and converts a composed configuration into the immutable
ExperimentConfig the simulator runs with.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Union

from hydra.core.config_store import ConfigStore
from omegaconf import DictConfig, OmegaConf

from ..core.exceptions import ConfigurationError
from ..core.types import ExperimentConfig

logger = logging.getLogger(__name__)

RESUME_POLICIES = ("restart", "refuse")
EXECUTORS = ("sequential", "ray")


@dataclass
class SyntheticConfig:
    """Synthetic dataset shape."""
    n_train: int = 600
    n_test: int = 200
    n_features: int = 20
    n_classes: int = 10
    seed: int = 0


@dataclass
class DatasetConfig:
    """Dataset configuration schema."""
    name: str = "MNIST"
    path: str = "./data/MNIST"
    synthetic: SyntheticConfig = field(default_factory=SyntheticConfig)


@dataclass
class ModelConfig:
    """Model configuration schema."""
    name: str = "2NN"
    input_dim: Optional[int] = None
    output_dim: Optional[int] = None
    hidden_dims: Optional[List[int]] = None


@dataclass
class FederatedConfig:
    """Federated averaging configuration schema."""
    num_clients: int = 100
    client_fraction: float = 0.1
    local_epochs: int = 5
    batch_size: str = "10"
    lr_grid: List[float] = field(default_factory=lambda: [0.03, 0.05, 0.1])
    momentum: float = 0.0
    target: float = 0.97
    num_rounds: int = 3
    seed: int = 123
    partition: str = "noniid"
    shards_per_client: int = 2
    lr_selection_clients: int = 2
    fedsgd: bool = False


@dataclass
class RayConfig:
    """Ray configuration schema."""
    num_cpus: Optional[int] = None
    num_gpus: int = 0
    object_store_memory: Optional[int] = None
    include_dashboard: bool = False
    ignore_reinit_error: bool = True
    log_to_driver: bool = False


@dataclass
class EnvConfig:
    """Environment configuration schema."""
    device: str = "cpu"
    executor: str = "sequential"
    ray: RayConfig = field(default_factory=RayConfig)


@dataclass
class PersistenceConfig:
    """Round-record log and checkpoint configuration schema."""
    log_path: Optional[str] = "outputs/metrics.csv"
    checkpoint_dir: Optional[str] = None
    start_round: int = 1
    end_round: Optional[int] = None
    resume_policy: str = "restart"


@dataclass
class RunnerConfig:
    """Chunked execution configuration schema."""
    enabled: bool = False
    chunk_size: int = 50
    retry_backoff: float = 10.0
    pause: float = 0.0


@dataclass
class LoggingConfig:
    """Logging configuration schema."""
    level: str = "INFO"
    format: str = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    log_to_file: bool = False
    log_file: Optional[str] = None


@dataclass
class Config:
    """Root configuration schema."""
    dataset: DatasetConfig = field(default_factory=DatasetConfig)
    model: ModelConfig = field(default_factory=ModelConfig)
    federated: FederatedConfig = field(default_factory=FederatedConfig)
    env: EnvConfig = field(default_factory=EnvConfig)
    persistence: PersistenceConfig = field(default_factory=PersistenceConfig)
    runner: RunnerConfig = field(default_factory=RunnerConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)


def register_configs() -> None:
    """Register the root schema with Hydra's ConfigStore under ``config``."""
    cs = ConfigStore.instance()
    cs.store(name="config", node=Config)


def default_config() -> DictConfig:
    """Structured config populated with every default."""
    return OmegaConf.structured(Config)


def _require(condition: bool, key: str, expected: str, actual: Any) -> None:
    if not condition:
        raise ConfigurationError(f"Configuration: {key} must be {expected}, got {actual!r}",
                                 config_key=key, expected=expected, actual_value=actual)


def validate_configuration(cfg: Union[DictConfig, Dict[str, Any]]) -> None:
    """
    Validate the non-experiment sections before anything runs.

    Raises:
        ConfigurationError: Naming the offending key and constraint
    """
    env = cfg["env"]
    persistence = cfg["persistence"]
    runner = cfg["runner"]

    _require(str(env["executor"]).lower() in EXECUTORS, "env.executor",
             " | ".join(EXECUTORS), env["executor"])
    _require(str(persistence["resume_policy"]).lower() in RESUME_POLICIES,
             "persistence.resume_policy", " | ".join(RESUME_POLICIES), persistence["resume_policy"])
    _require(persistence["start_round"] >= 1, "persistence.start_round", ">= 1",
             persistence["start_round"])
    _require(runner["chunk_size"] >= 1, "runner.chunk_size", ">= 1", runner["chunk_size"])
    _require(runner["retry_backoff"] >= 0, "runner.retry_backoff", ">= 0", runner["retry_backoff"])
    _require(runner["pause"] >= 0, "runner.pause", ">= 0", runner["pause"])
    if runner["enabled"]:
        _require(bool(persistence["log_path"]), "persistence.log_path",
                 "set when the chunked runner is enabled", persistence["log_path"])
        _require(bool(persistence["checkpoint_dir"]), "persistence.checkpoint_dir",
                 "set when the chunked runner is enabled", persistence["checkpoint_dir"])

    logger.debug("Configuration validation passed")


def build_experiment_config(cfg: Union[DictConfig, Dict[str, Any]]) -> ExperimentConfig:
    """
    Convert a composed configuration into an immutable ExperimentConfig.

    ``federated.fedsgd`` forces full-batch, single-epoch training.

    Raises:
        ConfigurationError: If any experiment invariant is violated
    """
    fed = cfg["federated"]
    batch_size = "inf" if fed["fedsgd"] else fed["batch_size"]
    local_epochs = 1 if fed["fedsgd"] else fed["local_epochs"]

    return ExperimentConfig(
        num_clients=int(fed["num_clients"]),
        client_fraction=float(fed["client_fraction"]),
        local_epochs=int(local_epochs),
        batch_size=batch_size,
        lr_grid=tuple(fed["lr_grid"]),
        target=float(fed["target"]),
        num_rounds=int(fed["num_rounds"]),
        seed=int(fed["seed"]),
        partition=fed["partition"],
        shards_per_client=int(fed["shards_per_client"]),
        momentum=float(fed["momentum"]),
        lr_selection_clients=int(fed["lr_selection_clients"]),
        dataset=str(cfg["dataset"]["name"]),
        model=str(cfg["model"]["name"]),
    )
