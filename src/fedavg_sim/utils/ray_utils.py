"""
Ray resource management for parallel client training.

This module provides a resource manager for Ray initialization and cleanup.
The Ray executor initializes it on construction and cleans it up on close,
shutting down only a cluster it started itself.
"""

import gc
import logging
from typing import Any, Dict

import ray
import torch

logger = logging.getLogger(__name__)


class RayResourceManager:
    """Manager for Ray resources with automatic cleanup."""

    def __init__(self, ray_config: Dict[str, Any]):
        """
        Initialize Ray resource manager.

        Args:
            ray_config: Ray configuration dictionary
        """
        self.ray_config = dict(ray_config or {})
        self.is_initialized = False

    def initialize(self) -> None:
        """Initialize Ray with configuration, unless something else already did."""
        if self.is_initialized or ray.is_initialized():
            logger.info("Ray already initialized, skipping")
            return

        logger.info(f"Initializing Ray with config: {self.ray_config}")
        init_kwargs = {
            "num_cpus": self.ray_config.get("num_cpus"),
            "num_gpus": self.ray_config.get("num_gpus", 0),
            "include_dashboard": self.ray_config.get("include_dashboard", False),
            "ignore_reinit_error": self.ray_config.get("ignore_reinit_error", True),
            "log_to_driver": self.ray_config.get("log_to_driver", False),
        }
        if self.ray_config.get("object_store_memory"):
            init_kwargs["object_store_memory"] = self.ray_config["object_store_memory"]

        ray.init(**init_kwargs)
        self.is_initialized = True
        logger.info("Ray initialized successfully")

    def cleanup(self) -> None:
        """Shut down Ray if this manager started it."""
        if not self.is_initialized:
            return

        try:
            logger.info("Cleaning up Ray resources")
            if ray.is_initialized():
                ray.shutdown()
                logger.info("Ray shutdown completed")
            self.is_initialized = False
        finally:
            self._cleanup_memory()

    def _cleanup_memory(self) -> None:
        if torch.cuda.is_available():
            torch.cuda.empty_cache()
            logger.debug("CUDA cache cleared")
        gc.collect()

