"""Diabetic retinopathy severity classes and result interpretation."""

from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass

import numpy as np

logger = logging.getLogger(__name__)

CONDITION_LABELS: tuple[str, ...] = (
    "No DR",
    "Mild",
    "Moderate",
    "Severe",
    "Proliferative DR",
)

UNKNOWN_CONDITION = "Unknown"


@dataclass(frozen=True)
class ClassificationResult:
    """Arg-max prediction plus the full confidence vector it was taken from."""

    top_index: int
    top_confidence: float
    all_confidences: tuple[float, ...]
    condition_label: str

    @property
    def confidence_percent(self) -> float:
        return round(self.top_confidence * 100, 2)


def condition_label(index: int) -> str:
    """Map a class index to its condition name, or "Unknown" if out of range."""
    if 0 <= index < len(CONDITION_LABELS):
        return CONDITION_LABELS[index]
    logger.warning("Invalid classification index: %s", index)
    return UNKNOWN_CONDITION


def argmax(values: Sequence[float]) -> int:
    """Index of the largest value; ties resolve to the lowest index."""
    return int(np.argmax(values))


def interpret(confidences: Sequence[float]) -> ClassificationResult:
    """Turn a raw confidence vector into a ranked classification result.

    Never raises for a non-empty vector; an index outside the label table is
    reported as "Unknown".
    """
    vector = tuple(float(c) for c in confidences)
    if not vector:
        return ClassificationResult(
            top_index=-1,
            top_confidence=0.0,
            all_confidences=(),
            condition_label=UNKNOWN_CONDITION,
        )
    top = argmax(vector)
    return ClassificationResult(
        top_index=top,
        top_confidence=vector[top],
        all_confidences=vector,
        condition_label=condition_label(top),
    )
