"""Chunked, crash-tolerant experiment execution."""

from .chunked import ChunkedRunner, run_experiment_queue, subprocess_launcher

__all__ = ["ChunkedRunner", "run_experiment_queue", "subprocess_launcher"]
