"""
patterns.py
~~~~~~~~~~~

Patterns, pattern sets and the training info side channel.

A pattern is one labeled sample: ``n_in`` doubles plus an integer class
code. A pattern set keeps patterns in order together with the class
names (``names[code]``) and the sample shape every pattern must share.
"""

import logging
from dataclasses import dataclass, field
from typing import Iterator, List, Optional, Sequence, Tuple, Union

import numpy as np

from caveboy.errors import DataError
from caveboy.layout import DTYPE

logger = logging.getLogger(__name__)

MAX_BYTES_PER_PIXEL = 8


@dataclass
class Pattern:
    values: np.ndarray
    code: int


@dataclass
class TrainingInfo:
    """Ordered class names produced by training, read back before testing."""

    names: List[str] = field(default_factory=list)

    @property
    def n_out(self) -> int:
        return len(self.names)


class PatternSet:
    """
    Ordered collection of patterns sharing one shape.

    Args:
        names: Class names indexed by code
        width: Sample width in pixels (0 when not image based)
        height: Sample height in pixels
        bpp: Bytes per pixel of the original samples
    """

    def __init__(
        self,
        names: Optional[Sequence[str]] = None,
        width: int = 0,
        height: int = 0,
        bpp: int = 0
    ):
        self.names: List[str] = list(names or [])
        self.width = width
        self.height = height
        self.bpp = bpp
        self.patterns: List[Pattern] = []
        self._n_in: Optional[int] = None

    @classmethod
    def from_arrays(
        cls,
        inputs: Union[np.ndarray, Sequence[Sequence[float]]],
        codes: Sequence[int],
        names: Optional[Sequence[str]] = None
    ) -> 'PatternSet':
        """
        Build a set from an ``(n_patterns, n_in)`` array and a code vector.

        Class names default to the string form of each code.
        """
        inputs = np.asarray(inputs, dtype=DTYPE)
        codes = [int(c) for c in codes]
        if inputs.ndim != 2:
            raise DataError(f"Expected a 2D input array, got shape {inputs.shape}")
        if len(codes) != inputs.shape[0]:
            raise DataError(f"{inputs.shape[0]} patterns but {len(codes)} codes")
        if names is None:
            names = [str(c) for c in range(max(codes) + 1)] if codes else []

        pset = cls(names=names)
        pset._n_in = inputs.shape[1]
        for values, code in zip(inputs, codes):
            pset.add(values, code)
        return pset

    # ------------------------------------------------------------------
    # Building
    # ------------------------------------------------------------------
    def add_class(self, name: str) -> int:
        """Register a class name and return its code."""
        self.names.append(name)
        return len(self.names) - 1

    def add(self, values: Sequence[float], code: int) -> Pattern:
        """
        Append a pattern.

        Raises:
            DataError: If the length differs from earlier patterns or the
                code has no class name
        """
        values = np.array(values, dtype=DTYPE).ravel()
        if self._n_in is None:
            self._n_in = values.size
        elif values.size != self._n_in:
            raise DataError(
                f"Pattern of length {values.size} does not match set length {self._n_in}"
            )
        if not 0 <= code < len(self.names):
            raise DataError(
                f"Class code {code} outside [0, {len(self.names)})"
            )
        pattern = Pattern(values, int(code))
        self.patterns.append(pattern)
        return pattern

    # ------------------------------------------------------------------
    # Sizes and data
    # ------------------------------------------------------------------
    @property
    def n_in(self) -> int:
        return self._n_in or 0

    @property
    def n_out(self) -> int:
        return len(self.names)

    @property
    def shape(self) -> Tuple[int, int, int]:
        return (self.width, self.height, self.bpp)

    @property
    def inputs(self) -> np.ndarray:
        """All pattern values as an ``(n_patterns, n_in)`` array."""
        if not self.patterns:
            return np.zeros((0, self.n_in), dtype=DTYPE)
        return np.vstack([p.values for p in self.patterns])

    @property
    def codes(self) -> np.ndarray:
        return np.array([p.code for p in self.patterns], dtype=np.int64)

    def __len__(self) -> int:
        return len(self.patterns)

    def __iter__(self) -> Iterator[Pattern]:
        return iter(self.patterns)

    def __getitem__(self, index: int) -> Pattern:
        return self.patterns[index]

    # ------------------------------------------------------------------
    # Training info
    # ------------------------------------------------------------------
    def training_info(self) -> TrainingInfo:
        return TrainingInfo(list(self.names))

    def set_training_info(self, info: Union[TrainingInfo, 'PatternSet']) -> None:
        """
        Take class names (and so the output size) from a trained set or
        from training info read back from disk.

        Pattern codes are remapped by class name, so a set scanned from a
        directory holding only some of the trained classes keeps the right
        expected labels.

        Raises:
            DataError: If the info is empty or lacks a class of this set
        """
        names = list(info.names)
        if not names:
            raise DataError("Training info holds no class names")
        index = {name: code for code, name in enumerate(names)}
        unknown = [name for name in self.names if name not in index]
        if unknown:
            raise DataError(f"Classes not in training info: {', '.join(unknown)}")

        remap = [index[name] for name in self.names]
        for pattern in self.patterns:
            pattern.code = remap[pattern.code]
        self.names = names

    def normalize(self) -> None:
        """Rescale every value into [-1, 1] by the largest pixel value."""
        if self.bpp <= 0:
            raise DataError("Cannot normalize a set without bytes per pixel")
        for pattern in self.patterns:
            pattern.values = normalize_pattern(pattern.values, self.bpp)

    def __repr__(self) -> str:
        return (f"PatternSet(patterns={len(self)}, n_in={self.n_in}, "
                f"n_out={self.n_out}, shape={self.shape})")


def pixels_to_pattern(raw: Union[bytes, np.ndarray], bpp: int) -> np.ndarray:
    """
    Convert raw image bytes to a pattern, one double per pixel.

    The ``bpp`` bytes of each pixel are joined little-endian into one
    unsigned integer.

    Raises:
        DataError: If the data is not a whole number of pixels or the
            pixel does not fit in 64 bits
    """
    data = np.frombuffer(raw, dtype=np.uint8) if isinstance(raw, (bytes, bytearray)) \
        else np.asarray(raw, dtype=np.uint8).ravel()
    if bpp <= 0 or bpp > MAX_BYTES_PER_PIXEL:
        raise DataError(f"Too many bytes per pixel ({bpp}) to perform conversion")
    if data.size % bpp != 0:
        raise DataError(f"Unaligned raw data and bpp ({data.size} and {bpp})")

    pixels = data.reshape(-1, bpp).astype(np.uint64)
    shifts = np.arange(bpp, dtype=np.uint64) * np.uint64(8)
    combined = np.bitwise_or.reduce(pixels << shifts, axis=1)
    return combined.astype(DTYPE)


def normalize_pattern(values: np.ndarray, bpp: int) -> np.ndarray:
    """Map [0, 2**(8*bpp) - 1] onto [-1, 1]."""
    top = float(2 ** (8 * bpp) - 1)
    return 2.0 * np.asarray(values, dtype=DTYPE) / top - 1.0
