"""
evaluation.py
~~~~~~~~~~~~~

Classification of patterns with a trained network.

A pattern is recognized as class ``k`` when output neuron ``k`` is the
only one above ``1 - radius``. No neuron above the threshold, or more
than one, makes the pattern undecidable.
"""

import logging
from dataclasses import dataclass
from typing import List, Optional, Sequence

import numpy as np

from caveboy.network import Network
from caveboy.patterns import PatternSet

logger = logging.getLogger(__name__)

UNDECIDABLE = -1


def decide(outputs: Sequence[float], radius: float) -> int:
    """
    Apply the radius decision rule to one output layer.

    Returns:
        int: the recognized class code, or UNDECIDABLE (-1)
    """
    outputs = np.asarray(outputs)
    active = np.flatnonzero(outputs > 1.0 - radius)
    if active.size != 1:
        return UNDECIDABLE
    return int(active[0])


def classify(network: Network, inputs: Sequence[Sequence[float]], radius: float) -> np.ndarray:
    """Decide a code for every input, in order."""
    codes = np.full(len(inputs), UNDECIDABLE, dtype=np.int64)
    for i, pattern in enumerate(inputs):
        codes[i] = decide(network.feedforward(pattern), radius)
        logger.debug(f"Pattern {i}: raw output {network.output.tolist()} -> {codes[i]}")
    return codes


@dataclass
class ClassificationReport:
    """Predicted codes for a set, plus stats when true codes are known."""

    predicted: np.ndarray
    names: List[str]
    expected: Optional[np.ndarray] = None

    @property
    def total(self) -> int:
        return len(self.predicted)

    @property
    def undecidable(self) -> int:
        return int(np.sum(self.predicted == UNDECIDABLE))

    @property
    def recognized(self) -> int:
        return self.total - self.undecidable

    @property
    def correct(self) -> Optional[int]:
        if self.expected is None:
            return None
        return int(np.sum(self.predicted == self.expected))

    @property
    def accuracy(self) -> Optional[float]:
        if self.expected is None or self.total == 0:
            return None
        return self.correct / self.total

    def label(self, code: int) -> str:
        if 0 <= code < len(self.names):
            return self.names[code]
        return str(code)

    def lines(self) -> List[str]:
        out = []
        for i, code in enumerate(self.predicted):
            if code == UNDECIDABLE:
                out.append(f"Pattern {i} is undecidable")
            else:
                out.append(f"Pattern {i} recognized as {self.label(code)} ({code})")
        return out

    def summary(self) -> str:
        text = (f"{self.recognized} of {self.total} pattern(s) recognized, "
                f"{self.undecidable} undecidable")
        if self.accuracy is not None:
            text += f", accuracy {self.accuracy:.2%} ({self.correct}/{self.total})"
        return text


def format_report(report: ClassificationReport) -> str:
    return '\n'.join(report.lines() + [report.summary()]) + '\n'


def evaluate(
    network: Network,
    pattern_set: PatternSet,
    radius: float,
    with_expected: bool = True
) -> ClassificationReport:
    """
    Classify a whole set.

    Args:
        network: Trained network
        pattern_set: Patterns to classify; its names label the codes
        radius: Decision radius
        with_expected: Compare against the set's own codes
    """
    predicted = classify(network, pattern_set.inputs, radius)
    expected = pattern_set.codes if with_expected else None
    return ClassificationReport(predicted, list(pattern_set.names), expected)
