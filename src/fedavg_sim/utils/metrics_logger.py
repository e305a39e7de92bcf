"""
Metrics logging system for fedavg-sim.

This module provides:
- An append-only CSV logger (header written once, flushed after every row)
- The round-record log used to resume long experiments
- pandas-based readers that recover progress and accuracy history
"""

import csv
import logging
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import pandas as pd

from ..core.types import ExperimentConfig, LOG_FIELDS, RoundRecord

logger = logging.getLogger(__name__)


class MetricsLogger(ABC):
    """Abstract base class for metrics logging."""

    @abstractmethod
    def log_dict(self, metrics: Dict[str, Any]) -> None:
        """Log a dictionary of metrics."""
        pass

    @abstractmethod
    def close(self) -> None:
        """Close the logger and cleanup resources."""
        pass

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()


class CSVLogger(MetricsLogger):
    """
    Append-only CSV metrics logger.

    Existing rows are never rewritten. The header is written only when the
    file is new or empty; when ``fieldnames`` is omitted the columns come from
    the existing header or, failing that, from the first logged row.
    """

    def __init__(self, log_file: str, fieldnames: Optional[List[str]] = None):
        """
        Initialize CSV logger.

        Args:
            log_file: Path to CSV log file
            fieldnames: Column order
        """
        self.log_file = Path(log_file)
        self.log_file.parent.mkdir(parents=True, exist_ok=True)

        has_content = self.log_file.exists() and self.log_file.stat().st_size > 0
        if fieldnames is None and has_content:
            with open(self.log_file, newline="") as handle:
                fieldnames = next(csv.reader(handle), None)

        self.fieldnames = fieldnames
        self._needs_header = not has_content
        self.file_handle = open(self.log_file, "a", newline="")
        self.writer = None

        logger.info(f"CSV logger initialized: {self.log_file}")

    def _ensure_writer(self, row: Dict[str, Any]) -> None:
        if self.writer is not None:
            return
        if self.fieldnames is None:
            self.fieldnames = list(row.keys())
        self.writer = csv.DictWriter(self.file_handle, fieldnames=self.fieldnames,
                                     extrasaction="ignore")
        if self._needs_header:
            self.writer.writeheader()
            self._needs_header = False

    def log_dict(self, metrics: Dict[str, Any]) -> None:
        """Append one row and flush it to disk."""
        self._ensure_writer(metrics)
        self.writer.writerow(metrics)
        self.file_handle.flush()

    def close(self) -> None:
        """Close CSV file."""
        if not self.file_handle.closed:
            self.file_handle.close()


class RoundRecordLogger(CSVLogger):
    """Durable, one-row-per-round training history."""

    def __init__(self, log_file: str):
        super().__init__(log_file, fieldnames=list(LOG_FIELDS))

    def log_record(self, record: RoundRecord) -> None:
        self.log_dict(record.to_row())


def read_round_records(log_file: str) -> pd.DataFrame:
    """
    Load the round-record log.

    ``B`` is read as text so the unbounded marker survives; ``NA`` in
    ``rounds_to_target`` becomes NaN. A missing or empty file yields an empty
    frame; any other read failure propagates.
    """
    path = Path(log_file)
    if not path.exists():
        return pd.DataFrame(columns=LOG_FIELDS)
    try:
        return pd.read_csv(path, dtype={"B": str, "partition": str, "method": str,
                                        "dataset": str, "model": str})
    except pd.errors.EmptyDataError:
        return pd.DataFrame(columns=LOG_FIELDS)


def matching_records(records: pd.DataFrame, config: ExperimentConfig) -> pd.DataFrame:
    """
    Rows belonging to ``config``, one per round (the last written wins).

    Rows match on dataset, model, partition, method, E and B.
    """
    if records.empty:
        return records

    mask = (
        (records["dataset"].astype(str) == config.dataset)
        & (records["model"].astype(str) == config.model)
        & (records["partition"].astype(str) == config.partition.value)
        & (records["method"].astype(str) == config.method)
        & (pd.to_numeric(records["E"], errors="coerce") == config.local_epochs)
        & (records["B"].astype(str) == str(config.batch_size))
    )
    selected = records.loc[mask]
    return selected.drop_duplicates(subset="round", keep="last").sort_values("round")


def last_completed_round(log_file: str, config: ExperimentConfig) -> int:
    """Highest round logged for ``config``, or 0 when there is none."""
    selected = matching_records(read_round_records(log_file), config)
    if selected.empty:
        return 0
    return int(selected["round"].max())


def accuracy_history(log_file: str, config: ExperimentConfig,
                     before_round: Optional[int] = None) -> List[Tuple[int, float]]:
    """
    Logged (round, test_accuracy) pairs for ``config`` in round order.

    Args:
        log_file: Round-record log path
        config: Experiment whose rows are wanted
        before_round: Keep only rounds strictly below this one
    """
    selected = matching_records(read_round_records(log_file), config)
    if before_round is not None and not selected.empty:
        selected = selected[selected["round"] < before_round]
    return [(int(r), float(a)) for r, a in zip(selected["round"], selected["test_accuracy"])]
