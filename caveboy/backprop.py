"""
backprop.py
~~~~~~~~~~~

Backpropagation with the generalized delta rule.

For an output neuron k and hidden neuron j:

    d_out[k]    = (target[k] - y[k]) * f'(y_in[k])
    dw[1][j][k] = lrate * d_out[k] * z[j]
    d_hid[j]    = (sum_k d_out[k] * w[1][j][k]) * f'(z_in[j])
    dw[0][i][j] = lrate * d_hid[j] * x[i]

where target is +1 for the neuron matching the class code and -1 for
every other. Deltas can be applied to the weights immediately (single
process training) or left unapplied so they can be summed across
patterns and workers before being applied once.
"""

import logging
from typing import Iterable, Optional, Sequence, Tuple

import numpy as np

from caveboy.errors import DataError, DeltaBufferError
from caveboy.functions import bipolar_target
from caveboy.layout import DTYPE, NetworkLayout
from caveboy.network import Network

logger = logging.getLogger(__name__)


class DeltaBuffer:
    """Per-weight corrections laid out exactly like the weight buffer."""

    def __init__(self, layout: NetworkLayout, values: Optional[np.ndarray] = None):
        self.layout = layout
        if values is None:
            values = layout.allocate_weights()
        else:
            values = np.array(values, dtype=DTYPE)
            if values.shape != (layout.weight_size,):
                raise DeltaBufferError(
                    f"Delta vector of shape {values.shape} does not fit layout "
                    f"{list(layout.sizes)}"
                )
        self.values = values

    @classmethod
    def for_network(cls, network: Network) -> 'DeltaBuffer':
        return cls(network.layout)

    @property
    def stages(self):
        return self.layout.stage_views(self.values)

    def reset(self) -> None:
        self.values[:] = 0.0

    def fits(self, network: Network) -> bool:
        return self.layout == network.layout

    def copy(self) -> 'DeltaBuffer':
        return DeltaBuffer(self.layout, self.values)

    def __iadd__(self, other: 'DeltaBuffer') -> 'DeltaBuffer':
        if other.layout != self.layout:
            raise DeltaBufferError(
                f"Cannot add deltas for {list(other.layout.sizes)} "
                f"to deltas for {list(self.layout.sizes)}"
            )
        self.values += other.values
        return self

    def __add__(self, other: 'DeltaBuffer') -> 'DeltaBuffer':
        total = self.copy()
        total += other
        return total

    def __repr__(self) -> str:
        return f"DeltaBuffer(sizes={list(self.layout.sizes)}, norm={np.linalg.norm(self.values):.6g})"


class Backpropagation:
    """
    Backpropagation engine bound to one network shape.

    The engine owns the scratch delta buffer; it is reset on every call
    to :meth:`backpropagate` and the returned buffer is only valid until
    the next call. Use :meth:`accumulate` to obtain an owned sum.
    """

    def __init__(self, network: Optional[Network] = None):
        self.layout = None
        self.deltas = None
        if network is not None:
            self.allocate(network)

    def allocate(self, network: Network) -> None:
        """(Re)allocate the delta buffer for the network's current shape."""
        self.layout = network.layout
        self.deltas = DeltaBuffer(network.layout)

    def check(self, network: Network) -> None:
        if self.deltas is None:
            raise DeltaBufferError("Couldn't find space for deltas: buffers not allocated")
        if not self.deltas.fits(network):
            raise DeltaBufferError(
                f"Delta buffers allocated for {list(self.layout.sizes)} "
                f"but network is {network.sizes}"
            )

    def backpropagate(
        self,
        network: Network,
        pattern: Sequence[float],
        code: int,
        learning_rate: float,
        update: bool = True
    ) -> DeltaBuffer:
        """
        Compute weight deltas for one pattern.

        Args:
            network: Network to train
            pattern: n_in input values
            code: Class code, the output neuron that should be active
            learning_rate: Learning rate
            update: Apply the deltas to the weights (True) or leave them
                unapplied for external aggregation (False)

        Returns:
            DeltaBuffer: the engine's scratch buffer holding the deltas

        Raises:
            DeltaBufferError: If no buffers are allocated for this network
        """
        self.check(network)
        n_hidden = network.n_hidden
        f = network.activation

        self.deltas.reset()
        raw_hidden, raw_out = network.propagate(pattern)
        net_in, net_hidden, net_out = network.layers
        w_out = network.stages[1]
        dw_in, dw_out = self.deltas.stages

        target = bipolar_target(code, network.n_out)
        d_out = (target - net_out) * f.prime(raw_out)
        dw_out[:] = learning_rate * np.outer(net_hidden, d_out)

        # The hidden bias row feeds no hidden neuron, so it is left out
        d_hidden = (w_out[:n_hidden] @ d_out) * f.prime(raw_hidden)
        dw_in[:] = learning_rate * np.outer(net_in, d_hidden)

        if update:
            network.add_to_weights(self.deltas.values)
        return self.deltas

    def accumulate(
        self,
        network: Network,
        inputs: Iterable[Sequence[float]],
        codes: Iterable[int],
        learning_rate: float,
        into: Optional[DeltaBuffer] = None
    ) -> Tuple[DeltaBuffer, float, int]:
        """
        Deferred backpropagation over a run of patterns.

        Weights are never touched; every pattern sees the same weights.

        Returns:
            tuple: (summed deltas, summed pattern error, pattern count)
        """
        self.check(network)
        total = into if into is not None else DeltaBuffer(network.layout)
        if not total.fits(network):
            raise DeltaBufferError("Accumulator does not match network shape")

        error = 0.0
        count = 0
        for pattern, code in zip(inputs, codes):
            total += self.backpropagate(network, pattern, code, learning_rate, update=False)
            error += network.pattern_error(code)
            count += 1
        return total, error, count


def backpropagate(
    network: Network,
    pattern: Sequence[float],
    code: int,
    learning_rate: float,
    update: bool = True
) -> DeltaBuffer:
    """One-shot backpropagation returning an owned copy of the deltas."""
    engine = Backpropagation(network)
    return engine.backpropagate(network, pattern, code, learning_rate, update).copy()


def accumulate_deltas(
    network: Network,
    inputs: Sequence[Sequence[float]],
    codes: Sequence[int],
    learning_rate: float
) -> DeltaBuffer:
    """Sum of deferred deltas over every pattern, weights left untouched."""
    if len(inputs) != len(codes):
        raise DataError(f"{len(inputs)} patterns but {len(codes)} codes")
    deltas, _, _ = Backpropagation(network).accumulate(network, inputs, codes, learning_rate)
    return deltas
