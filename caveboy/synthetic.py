"""
synthetic.py
~~~~~~~~~~~~

Synthetic pattern sources: noisy copies of random bipolar prototypes,
either in memory or written out as a PNG pattern directory.
"""

import os
import logging
from typing import List, Optional, Sequence

import numpy as np
from PIL import Image

from caveboy.patterns import PatternSet

logger = logging.getLogger(__name__)


def prototypes(n_classes: int, n_in: int, rng: np.random.Generator) -> np.ndarray:
    """
    One random +-1 vector per class, all distinct.

    Raises:
        ValueError: If there are fewer than ``n_classes`` distinct vectors
            of length ``n_in``
    """
    if n_in <= 0 or n_classes > 2 ** n_in:
        raise ValueError(
            f"Cannot draw {n_classes} distinct prototypes of length {n_in}"
        )
    if 2 * n_classes > 2 ** n_in:
        # dense draw: sample distinct vector indices instead
        picks = rng.choice(2 ** n_in, size=n_classes, replace=False)
        bits = (picks[:, np.newaxis] >> np.arange(n_in)) & 1
        return np.where(bits == 1, 1.0, -1.0)
    while True:
        protos = rng.choice([-1.0, 1.0], size=(n_classes, n_in))
        if len({tuple(p) for p in protos}) == n_classes:
            return protos


def noisy_copies(proto: np.ndarray, count: int, noise: float,
                 rng: np.random.Generator) -> np.ndarray:
    """Copies of ``proto`` with each value flipped with probability ``noise``."""
    flips = rng.random((count, proto.size)) < noise
    return np.where(flips, -proto, proto)


def make_pattern_set(
    n_classes: int = 2,
    per_class: int = 10,
    n_in: int = 16,
    noise: float = 0.1,
    seed: Optional[int] = None,
    names: Optional[Sequence[str]] = None
) -> PatternSet:
    """
    In-memory set of ``n_classes * per_class`` bipolar patterns, grouped
    by class.
    """
    rng = np.random.default_rng(seed)
    names = list(names) if names is not None else [f"class{c}" for c in range(n_classes)]
    pattern_set = PatternSet(names)
    for code, proto in enumerate(prototypes(n_classes, n_in, rng)):
        for values in noisy_copies(proto, per_class, noise, rng):
            pattern_set.add(values, code)
    return pattern_set


def write_pattern_directory(
    dir_path: str,
    n_classes: int = 2,
    per_class: int = 5,
    width: int = 8,
    height: int = 8,
    noise: float = 0.05,
    seed: Optional[int] = None
) -> List[str]:
    """
    Write a PNG pattern directory (one sub directory per class) of 8 bit
    grayscale images, black for -1 and white for +1.

    Returns:
        list: the class directory names, in code order
    """
    rng = np.random.default_rng(seed)
    names = [f"class{c}" for c in range(n_classes)]
    for name, proto in zip(names, prototypes(n_classes, width * height, rng)):
        class_dir = os.path.join(dir_path, name)
        os.makedirs(class_dir, exist_ok=True)
        for i, values in enumerate(noisy_copies(proto, per_class, noise, rng)):
            pixels = np.where(values > 0, 255, 0).astype(np.uint8).reshape(height, width)
            Image.fromarray(pixels).save(os.path.join(class_dir, f"{i:04d}.png"))
    logger.info(f"Wrote {n_classes * per_class} PNG pattern(s) under '{dir_path}'")
    return names
