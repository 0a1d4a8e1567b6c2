"""Pools de travailleurs distincts pour l'entraînement et l'inférence."""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from typing import Any

from concordbank.config import MLConfig

logger = logging.getLogger(__name__)


class WorkerPools:
    """
    Deux exécuteurs sans file commune : un entraînement long ne bloque jamais
    les requêtes d'inférence.
    """

    def __init__(self, training_workers: int = 2, inference_workers: int = 4) -> None:
        self.training = ThreadPoolExecutor(max_workers=training_workers, thread_name_prefix="concordbank-training")
        self.inference = ThreadPoolExecutor(max_workers=inference_workers, thread_name_prefix="concordbank-inference")
        logger.debug("Pools démarrés: %d entraînement, %d inférence", training_workers, inference_workers)

    @classmethod
    def from_config(cls, config: MLConfig) -> WorkerPools:
        return cls(training_workers=config.training_workers, inference_workers=config.inference_workers)

    def shutdown(self, *, wait: bool = True) -> None:
        self.inference.shutdown(wait=wait, cancel_futures=not wait)
        self.training.shutdown(wait=wait, cancel_futures=not wait)

    def __enter__(self) -> WorkerPools:
        return self

    def __exit__(self, *exc: Any) -> None:
        self.shutdown()
