"""
network.py
~~~~~~~~~~

Three layer perceptron (input, hidden, output) and its forward
propagation.

The network exclusively owns two contiguous buffers, one for neuron
activations and one for connection weights. Layer and stage views are
derived from the current buffers on every access, so resizing the
network (which reallocates both buffers) can never leave a caller
holding a view into freed storage through the network's own API.
"""

import logging
from typing import List, Optional, Sequence

import numpy as np

from caveboy.errors import DataError
from caveboy.functions import get_activation, get_error, get_initializer
from caveboy.layout import BIAS, DTYPE, NetworkLayout

logger = logging.getLogger(__name__)


class Network:
    """
    Multilayer perceptron with exactly one hidden layer.

    Example:
        >>> net = Network(2, 4, 2, seed=1)
        >>> net.sizes
        [2, 4, 2]
        >>> out = net.feedforward([1.0, -1.0])
    """

    def __init__(
        self,
        n_in: int,
        n_hidden: int,
        n_out: int,
        activation: str = 'bipolar_sigmoid',
        error: str = 'mean_square_error',
        init: str = 'uniform',
        seed: Optional[int] = None
    ):
        self.activation = get_activation(activation)
        self.error = get_error(error)
        self.init = get_initializer(init)
        self.rng = np.random.default_rng(seed)

        self.layout = None
        self._net = None
        self._weights = None
        self._allocate(NetworkLayout(n_in, n_hidden, n_out))
        self.reset()

    # ------------------------------------------------------------------
    # Allocation
    # ------------------------------------------------------------------
    def _allocate(self, layout: NetworkLayout) -> None:
        self.layout = layout
        self._net = layout.allocate_net()
        self._weights = layout.allocate_weights()

    def resize(self, n_in: int, n_hidden: int, n_out: int) -> None:
        """
        Reallocate both buffers for new layer sizes.

        Weights are re-initialized; views obtained before the call
        must not be used afterwards.
        """
        layout = NetworkLayout(n_in, n_hidden, n_out)
        if layout == self.layout:
            return
        logger.debug(f"Resizing network {self.sizes} -> {list(layout.sizes)}")
        self._allocate(layout)
        self.reset()

    def reset(self, rng: Optional[np.random.Generator] = None) -> None:
        """Zero all activations (bias slots back to 1.0) and draw new weights."""
        rng = rng if rng is not None else self.rng
        self._net[:] = 0.0
        self._net[list(self.layout.bias_indices)] = BIAS
        self._weights[:] = self.init(self.layout.weight_size, rng)

    # ------------------------------------------------------------------
    # Sizes and views
    # ------------------------------------------------------------------
    @property
    def n_in(self) -> int:
        return self.layout.n_in

    @property
    def n_hidden(self) -> int:
        return self.layout.n_hidden

    @property
    def n_out(self) -> int:
        return self.layout.n_out

    @property
    def sizes(self) -> List[int]:
        return list(self.layout.sizes)

    @property
    def net(self) -> np.ndarray:
        """The flat activation buffer."""
        return self._net

    @property
    def weights(self) -> np.ndarray:
        """The flat weight buffer, stage 0 followed by stage 1."""
        return self._weights

    @property
    def layers(self) -> List[np.ndarray]:
        return self.layout.layer_views(self._net)

    @property
    def stages(self) -> List[np.ndarray]:
        return self.layout.stage_views(self._weights)

    @property
    def output(self) -> np.ndarray:
        return self.layers[2]

    def load_weights(self, weights: Sequence[float]) -> None:
        """Copy a flat weight vector into the network's own buffer."""
        weights = np.asarray(weights, dtype=DTYPE)
        if weights.shape != (self.layout.weight_size,):
            raise DataError(
                f"Weight vector of shape {weights.shape} does not fit network "
                f"{self.sizes} ({self.layout.weight_size} weights)"
            )
        self._weights[:] = weights

    def add_to_weights(self, deltas: np.ndarray) -> None:
        """Add a flat delta vector onto the weights in place."""
        deltas = np.asarray(deltas, dtype=DTYPE)
        if deltas.shape != self._weights.shape:
            raise DataError(
                f"Delta vector of shape {deltas.shape} does not fit network {self.sizes}"
            )
        self._weights += deltas

    def copy(self) -> 'Network':
        clone = Network.__new__(Network)
        clone.activation = self.activation
        clone.error = self.error
        clone.init = self.init
        clone.rng = np.random.default_rng()
        clone.layout = self.layout
        clone._net = self._net.copy()
        clone._weights = self._weights.copy()
        return clone

    # ------------------------------------------------------------------
    # Forward propagation
    # ------------------------------------------------------------------
    def set_pattern(self, pattern: Sequence[float]) -> None:
        """Copy a pattern into the input layer, leaving the bias slot alone."""
        pattern = np.asarray(pattern, dtype=DTYPE)
        if pattern.shape != (self.n_in,):
            raise DataError(
                f"Pattern of length {pattern.size} does not fit input layer of {self.n_in}"
            )
        self.layers[0][:self.n_in] = pattern

    def propagate(self, pattern: Sequence[float]) -> List[np.ndarray]:
        """
        Forward pass keeping the pre-activation sums.

        Args:
            pattern: n_in input values

        Returns:
            list: raw weighted sums at the hidden and at the output neurons
        """
        self.set_pattern(pattern)
        layers = self.layers
        stages = self.stages
        f = self.activation

        raw = []
        for i in range(2):
            sums = layers[i] @ stages[i]
            raw.append(sums)
            # Bias slot (last of hidden) is not a destination neuron
            layers[i + 1][:self.layout.sizes[i + 1]] = f(sums)
        return raw

    def feedforward(self, pattern: Sequence[float]) -> np.ndarray:
        """
        Compute the output layer for ``pattern``.

        Returns:
            np.ndarray: a copy of the n_out output activations
        """
        self.propagate(pattern)
        return self.output.copy()

    def pattern_error(self, code: int) -> float:
        """Error of the current output layer against ``code``."""
        return self.error(self.output, code)

    def __repr__(self) -> str:
        return f"Network(n_in={self.n_in}, n_hidden={self.n_hidden}, n_out={self.n_out})"


def feed_forward(network: Network, pattern: Sequence[float]) -> np.ndarray:
    """Module level form of :meth:`Network.feedforward`."""
    return network.feedforward(pattern)
