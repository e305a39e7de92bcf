"""Client-side local training and execution backends."""

from .executors import ClientTask, LocalTrainingPlan, SequentialExecutor, create_executor
from .trainer import ClientTrainer, train_on_dataset

__all__ = [
    "ClientTask",
    "LocalTrainingPlan",
    "SequentialExecutor",
    "create_executor",
    "ClientTrainer",
    "train_on_dataset",
]
