"""
Chunk worker entry point.

Runs one chunk of rounds described by a YAML configuration file in a fresh
process, so memory held by the training framework is returned to the system
when the chunk ends:

    python -m fedavg_sim.worker chunk.yaml

Exit code 0 means every round of the chunk completed, checkpointed and logged.
"""

import functools
import logging
import sys
from typing import Any, Dict, Tuple

from omegaconf import DictConfig, OmegaConf
from torch.utils.data import Dataset

from .clients.executors import create_executor
from .clients.trainer import ModelFactory
from .config.schemas import build_experiment_config, default_config, validate_configuration
from .core.exceptions import FedAvgSimError
from .core.types import ChunkResult, ExperimentConfig
from .models.model import create_model
from .server.orchestrator import run_chunk
from .utils.data_utils import load_dataset
from .utils.logging_utils import setup_logging

logger = logging.getLogger(__name__)


def build_model_factory(cfg: DictConfig, train_dataset: Dataset) -> ModelFactory:
    """Picklable factory for the configured model."""
    model_cfg = cfg.model
    name = str(model_cfg.name).lower()
    if name != "mlp":
        return functools.partial(create_model, name)

    features, _ = train_dataset[0]
    input_dim = model_cfg.input_dim or int(features.numel())
    output_dim = model_cfg.output_dim or int(cfg.dataset.synthetic.n_classes)
    kwargs: Dict[str, Any] = {"input_dim": input_dim, "output_dim": output_dim}
    if model_cfg.hidden_dims is not None:
        kwargs["hidden_dims"] = list(model_cfg.hidden_dims)
    return functools.partial(create_model, name, **kwargs)


def prepare_experiment(cfg: DictConfig) -> Tuple[ExperimentConfig, Dataset, Dataset, ModelFactory]:
    """Validate ``cfg`` and load everything one experiment needs."""
    validate_configuration(cfg)
    config = build_experiment_config(cfg)
    synthetic = OmegaConf.to_container(cfg.dataset.synthetic, resolve=True)
    train_dataset, test_dataset = load_dataset(cfg.dataset.name, cfg.dataset.path, synthetic)
    return config, train_dataset, test_dataset, build_model_factory(cfg, train_dataset)


def run_from_config(cfg: DictConfig) -> ChunkResult:
    """
    Run rounds ``persistence.start_round`` .. ``persistence.end_round``.

    ``end_round`` defaults to ``federated.num_rounds``.
    """
    config, train_dataset, test_dataset, model_fn = prepare_experiment(cfg)
    end_round = cfg.persistence.end_round or config.num_rounds
    ray_config = OmegaConf.to_container(cfg.env.ray, resolve=True)
    executor = create_executor(cfg.env.executor, ray_config)

    logger.info(f"Running rounds {cfg.persistence.start_round}-{end_round} of "
                f"{config.dataset}/{config.model} {config.partition.value} "
                f"{config.method} E={config.local_epochs} B={config.batch_size}")
    try:
        return run_chunk(
            config,
            cfg.persistence.start_round,
            end_round,
            train_dataset,
            test_dataset,
            model_fn,
            log_path=cfg.persistence.log_path,
            checkpoint_dir=cfg.persistence.checkpoint_dir,
            resume_policy=str(cfg.persistence.resume_policy).lower(),
            executor=executor,
            device=cfg.env.device,
        )
    finally:
        executor.close()


def load_config(path: str) -> DictConfig:
    """Merge a YAML file over the structured defaults."""
    return OmegaConf.merge(default_config(), OmegaConf.load(path))


def main(argv=None) -> int:
    argv = sys.argv[1:] if argv is None else argv
    if len(argv) != 1:
        sys.stderr.write("usage: python -m fedavg_sim.worker CONFIG.yaml\n")
        return 2

    cfg = load_config(argv[0])
    setup_logging(cfg)
    try:
        result = run_from_config(cfg)
    except FedAvgSimError as e:
        logger.error(f"Chunk failed: {e}")
        return 1

    logger.info(f"Chunk finished at round {result.final_state.last_round}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
