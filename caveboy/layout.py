"""
layout.py
~~~~~~~~~

Packed numeric layout of a three layer perceptron.

Activations live in one flat buffer of ``n_in+1 + n_hidden+1 + n_out``
doubles, the ``+1`` slots being the bias units at the end of the input
and hidden layers. Weights live in one flat buffer of
``(n_in+1)*n_hidden + (n_hidden+1)*n_out`` doubles, logically the cube
``w[stage][from_neuron][to_neuron]``.

Views into a buffer are never stored: they are derived from the buffer
passed in on every call, so a reallocated buffer cannot be read through
a stale view.
"""

from dataclasses import dataclass
from typing import List, Tuple

import numpy as np

from caveboy.errors import ConfigurationError, DataError

BIAS = 1.0
DTYPE = np.float64


@dataclass(frozen=True)
class NetworkLayout:
    """Sizes, offsets and strides for a given ``(n_in, n_hidden, n_out)``."""

    n_in: int
    n_hidden: int
    n_out: int

    def __post_init__(self):
        for name, value in zip(('n_in', 'n_hidden', 'n_out'), self.sizes):
            if isinstance(value, bool) or not isinstance(value, (int, np.integer)) or value <= 0:
                raise ConfigurationError(
                    f"Layer size {name} must be a positive integer, got {value!r}"
                )

    @property
    def sizes(self) -> Tuple[int, int, int]:
        return (self.n_in, self.n_hidden, self.n_out)

    # ------------------------------------------------------------------
    # Activation buffer
    # ------------------------------------------------------------------
    @property
    def layer_lengths(self) -> Tuple[int, int, int]:
        """Slots per layer, bias included for input and hidden layers."""
        return (self.n_in + 1, self.n_hidden + 1, self.n_out)

    @property
    def net_size(self) -> int:
        return sum(self.layer_lengths)

    @property
    def layer_offsets(self) -> Tuple[int, int, int]:
        a, b, _ = self.layer_lengths
        return (0, a, a + b)

    @property
    def bias_indices(self) -> Tuple[int, int]:
        """Flat indices of the input and hidden bias slots."""
        return (self.n_in, self.n_in + 1 + self.n_hidden)

    def allocate_net(self) -> np.ndarray:
        """New activation buffer, zeros everywhere but the bias slots."""
        net = np.zeros(self.net_size, dtype=DTYPE)
        net[list(self.bias_indices)] = BIAS
        return net

    def layer_views(self, net: np.ndarray) -> List[np.ndarray]:
        """Three views into ``net``: input, hidden and output layers."""
        self._check(net, self.net_size, 'activation')
        return [net[offset:offset + length]
                for offset, length in zip(self.layer_offsets, self.layer_lengths)]

    # ------------------------------------------------------------------
    # Weight buffer
    # ------------------------------------------------------------------
    @property
    def stage_shapes(self) -> Tuple[Tuple[int, int], Tuple[int, int]]:
        """Shape of each weight matrix as ``(from_neurons, to_neurons)``."""
        return ((self.n_in + 1, self.n_hidden), (self.n_hidden + 1, self.n_out))

    @property
    def stage_offsets(self) -> Tuple[int, int]:
        rows, cols = self.stage_shapes[0]
        return (0, rows * cols)

    @property
    def weight_size(self) -> int:
        return sum(rows * cols for rows, cols in self.stage_shapes)

    def allocate_weights(self) -> np.ndarray:
        return np.zeros(self.weight_size, dtype=DTYPE)

    def stage_views(self, weights: np.ndarray) -> List[np.ndarray]:
        """Two matrix views into a flat weight (or delta) buffer."""
        self._check(weights, self.weight_size, 'weight')
        views = []
        for offset, (rows, cols) in zip(self.stage_offsets, self.stage_shapes):
            view = weights[offset:offset + rows * cols].reshape(rows, cols)
            views.append(view)
        return views

    def weight_index(self, stage: int, source: int, dest: int) -> int:
        """Flat offset of ``w[stage][source][dest]``."""
        rows, cols = self.stage_shapes[stage]
        if not (0 <= source < rows and 0 <= dest < cols):
            raise IndexError(f"w[{stage}][{source}][{dest}] out of range {rows}x{cols}")
        return self.stage_offsets[stage] + source * cols + dest

    @staticmethod
    def _check(buffer: np.ndarray, size: int, kind: str) -> None:
        if buffer is None:
            raise DataError(f"{kind} buffer is not allocated")
        if buffer.ndim != 1 or buffer.shape[0] != size:
            raise DataError(
                f"{kind} buffer of shape {buffer.shape} does not match layout size {size}"
            )
        if not buffer.flags['C_CONTIGUOUS']:
            raise DataError(f"{kind} buffer must be contiguous")
