"""Server-side round orchestration."""

from .orchestrator import RoundOrchestrator, fedavg_simulation, run_chunk

__all__ = ["RoundOrchestrator", "fedavg_simulation", "run_chunk"]
