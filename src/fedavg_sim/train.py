"""
Main entry point for fedavg-sim federated averaging experiments.

This module serves as the Hydra entry point. It loads configuration, validates
settings and either runs the experiment in-process or supervises it as a
sequence of chunked worker processes.

Usage:
    fedavg-sim                                             # 2NN on non-IID MNIST, defaults
    fedavg-sim model.name=CNN federated.target=0.99        # CNN
    fedavg-sim federated.partition=iid federated.local_epochs=20
    fedavg-sim federated.fedsgd=true                       # FedSGD baseline (B=inf, E=1)
    fedavg-sim runner.enabled=true persistence.checkpoint_dir=ckpt federated.num_rounds=1000
    fedavg-sim env.executor=ray                            # parallel clients with Ray
    fedavg-sim --multirun federated.local_epochs=1,5,20    # sweep with Hydra
"""

import logging
from typing import Any, Dict

import hydra
from omegaconf import DictConfig

from .config.schemas import build_experiment_config, register_configs, validate_configuration
from .runner.chunked import ChunkedRunner
from .utils.logging_utils import setup_logging
from .worker import run_from_config

logger = logging.getLogger(__name__)

register_configs()


@hydra.main(version_base="1.3", config_path=None, config_name="config")
def main(cfg: DictConfig) -> Dict[str, Any]:
    """
    Run one federated averaging experiment.

    Args:
        cfg: Hydra DictConfig containing all configuration parameters

    Returns:
        Dictionary containing the run summary
    """
    setup_logging(cfg)

    logger.info("=" * 60)
    logger.info("FedAvg Simulation Started")
    logger.info("=" * 60)

    try:
        validate_configuration(cfg)
        config = build_experiment_config(cfg)
        _log_configuration_summary(cfg, config)

        if cfg.runner.enabled:
            results = ChunkedRunner(cfg).run()
        else:
            chunk = run_from_config(cfg)
            records = chunk.records
            results = {
                "status": "completed",
                "last_round": chunk.final_state.last_round,
                "learning_rate": chunk.final_state.learning_rate,
                "final_accuracy": records[-1].test_accuracy if records else None,
                "rounds_to_target": records[-1].rounds_to_target if records else None,
            }

        _log_results(results)
        return results

    except Exception as e:
        logger.error(f"Training failed with error: {e}")
        logger.error("Traceback:", exc_info=True)
        raise


def _log_configuration_summary(cfg: DictConfig, config) -> None:
    """
    Log a summary of the current configuration.

    Args:
        cfg: Hydra configuration
        config: Validated experiment configuration
    """
    logger.info("Configuration Summary:")
    logger.info(f"  Dataset: {config.dataset}")
    logger.info(f"  Model: {config.model}")
    logger.info(f"  Partition: {config.partition.value}")
    logger.info(f"  Method: {config.method}")
    logger.info(f"  Clients: K={config.num_clients}, C={config.client_fraction} "
                f"({config.clients_per_round} per round)")
    logger.info(f"  Local training: E={config.local_epochs}, B={config.batch_size}, u={config.u:.2f}")
    logger.info(f"  LR grid: {list(config.lr_grid)}")
    logger.info(f"  Rounds: {config.num_rounds} (target {config.target})")
    logger.info(f"  Executor: {cfg.env.executor}")
    logger.info(f"  Chunked runner: {cfg.runner.enabled}")


def _log_results(results: Dict[str, Any]) -> None:
    logger.info("=" * 60)
    logger.info("Run Summary:")
    for key, value in results.items():
        logger.info(f"  {key}: {value}")
    logger.info("=" * 60)


if __name__ == "__main__":
    main()
