"""
functions.py
~~~~~~~~~~~~

The closed set of rule slots a network is built with: activation
(transition) function, error function and weight initializer.

Each slot is chosen by name at construction time from a small registry.
"""

from typing import Optional

import numpy as np

from caveboy.errors import ConfigurationError


class BipolarSigmoid:
    """f(x) = 2 / (1 + e^-x) - 1, bounded in (-1, 1)."""

    name = 'bipolar_sigmoid'

    def __call__(self, x):
        return 2.0 / (1.0 + np.exp(-x)) - 1.0

    def prime(self, x):
        """Derivative from the activation value, no second exponential."""
        fx = self(x)
        return 0.5 * (1.0 + fx) * (1.0 - fx)


class MeanSquareError:
    """0.5 * mean((actual - target)^2) against the bipolar one-hot target."""

    name = 'mean_square_error'

    def __call__(self, actual: np.ndarray, code: int) -> float:
        n = len(actual)
        if n == 0:
            return 0.0
        diff = actual - bipolar_target(code, n)
        return 0.5 * float(np.dot(diff, diff)) / n


class UniformInit:
    """Uniform random values in [-1, 1]."""

    name = 'uniform'

    def __call__(self, size: int, rng: Optional[np.random.Generator] = None) -> np.ndarray:
        rng = rng if rng is not None else np.random.default_rng()
        return rng.uniform(-1.0, 1.0, size)


def bipolar_target(code: int, n_out: int) -> np.ndarray:
    """+1.0 at ``code``, -1.0 everywhere else."""
    target = np.full(n_out, -1.0)
    if 0 <= code < n_out:
        target[code] = 1.0
    return target


ACTIVATIONS = {BipolarSigmoid.name: BipolarSigmoid}
ERRORS = {MeanSquareError.name: MeanSquareError}
INITIALIZERS = {UniformInit.name: UniformInit}


def _lookup(registry, kind, name):
    try:
        return registry[name]()
    except KeyError:
        raise ConfigurationError(
            f"Unknown {kind} function '{name}', expected one of {sorted(registry)}"
        ) from None


def get_activation(name: str = BipolarSigmoid.name) -> BipolarSigmoid:
    return _lookup(ACTIVATIONS, 'activation', name)


def get_error(name: str = MeanSquareError.name) -> MeanSquareError:
    return _lookup(ERRORS, 'error', name)


def get_initializer(name: str = UniformInit.name) -> UniformInit:
    return _lookup(INITIALIZERS, 'init', name)
