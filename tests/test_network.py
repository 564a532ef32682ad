"""
test_network.py
~~~~~~~~~~~~~~~

Unit tests for the packed layout, the rule slots and forward propagation.
"""

import pytest
import os
import sys

import numpy as np

# Add repository root to path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from caveboy.errors import ConfigurationError, DataError
from caveboy.functions import (
    BipolarSigmoid,
    MeanSquareError,
    bipolar_target,
    get_activation,
    get_initializer
)
from caveboy.layout import NetworkLayout
from caveboy.network import Network, feed_forward


@pytest.fixture
def small_network():
    """Create a 2-3-2 network with a fixed seed."""
    return Network(2, 3, 2, seed=7)


@pytest.mark.unit
class TestLayout:
    """Test buffer sizes, offsets and views."""

    def test_buffer_sizes(self):
        """Test activation and weight buffer lengths."""
        layout = NetworkLayout(2, 3, 2)
        assert layout.net_size == 3 + 4 + 2
        assert layout.weight_size == 3 * 3 + 4 * 2
        assert layout.stage_shapes == ((3, 3), (4, 2))

    def test_bias_slots_start_at_one(self):
        """Test that a new activation buffer has ones in the bias slots only."""
        layout = NetworkLayout(2, 3, 2)
        net = layout.allocate_net()
        assert net[2] == 1.0
        assert net[6] == 1.0
        assert np.count_nonzero(net) == 2

    def test_weight_index_matches_stage_view(self):
        """Test that flat offsets agree with the stage matrices."""
        layout = NetworkLayout(2, 3, 2)
        weights = np.arange(layout.weight_size, dtype=float)
        stages = layout.stage_views(weights)
        assert weights[layout.weight_index(0, 2, 1)] == stages[0][2][1]
        assert weights[layout.weight_index(1, 3, 0)] == stages[1][3][0]

    def test_stage_views_share_memory(self):
        """Test that writing through a view changes the flat buffer."""
        layout = NetworkLayout(2, 3, 2)
        weights = layout.allocate_weights()
        layout.stage_views(weights)[1][0][1] = 5.0
        assert weights[layout.weight_index(1, 0, 1)] == 5.0

    def test_wrong_buffer_rejected(self):
        """Test that a buffer of the wrong size is refused."""
        layout = NetworkLayout(2, 3, 2)
        with pytest.raises(DataError):
            layout.stage_views(np.zeros(5))

    @pytest.mark.parametrize("sizes", [(0, 3, 2), (2, -1, 2), (2, 3, 0)])
    def test_invalid_sizes(self, sizes):
        """Test that non-positive layer sizes are a configuration error."""
        with pytest.raises(ConfigurationError):
            NetworkLayout(*sizes)


@pytest.mark.unit
class TestFunctions:
    """Test the activation, error and init rules."""

    def test_bipolar_sigmoid_values(self):
        """Test the sigmoid at zero and its bounds."""
        f = BipolarSigmoid()
        assert f(0.0) == pytest.approx(0.0)
        assert -1.0 < f(-30.0) < -0.99
        assert 0.99 < f(30.0) < 1.0

    def test_bipolar_sigmoid_prime(self):
        """Test the derivative against a numerical estimate."""
        f = BipolarSigmoid()
        for x in (-2.0, 0.0, 0.7):
            numeric = (f(x + 1e-6) - f(x - 1e-6)) / 2e-6
            assert f.prime(x) == pytest.approx(numeric, rel=1e-5)

    def test_bipolar_sigmoid_strictly_increasing(self):
        """Test that the sigmoid rises everywhere on a dense grid."""
        f = BipolarSigmoid()
        values = f(np.linspace(-20.0, 20.0, 4001))
        assert np.all(np.diff(values) > 0)
        assert np.all(np.abs(values) < 1.0)

    def test_bipolar_target(self):
        """Test that the target is +1 at the code and -1 elsewhere."""
        assert bipolar_target(1, 3).tolist() == [-1.0, 1.0, -1.0]

    def test_mean_square_error(self):
        """Test the error of a perfect and an imperfect output."""
        error = MeanSquareError()
        assert error(np.array([1.0, -1.0]), 0) == 0.0
        assert error(np.array([0.0, 0.0]), 0) == pytest.approx(0.5)

    def test_uniform_init_range(self):
        """Test that initial weights lie in [-1, 1]."""
        values = get_initializer()(1000, np.random.default_rng(0))
        assert values.min() >= -1.0
        assert values.max() <= 1.0

    def test_unknown_rule(self):
        """Test that an unknown rule name is a configuration error."""
        with pytest.raises(ConfigurationError):
            get_activation('relu')


@pytest.mark.unit
class TestNetwork:
    """Test construction and forward propagation."""

    def test_sizes(self, small_network):
        """Test reported sizes and buffer lengths."""
        assert small_network.sizes == [2, 3, 2]
        assert small_network.net.size == 9
        assert small_network.weights.size == 17

    def test_seed_is_reproducible(self):
        """Test that equal seeds give equal weights."""
        a = Network(4, 5, 3, seed=11)
        b = Network(4, 5, 3, seed=11)
        assert np.array_equal(a.weights, b.weights)

    def test_feedforward_matches_manual_computation(self, small_network):
        """Test the output against an explicit matrix computation."""
        f = BipolarSigmoid()
        w0, w1 = small_network.stages
        x = np.array([0.5, -0.25, 1.0])
        hidden = np.append(f(x @ w0), 1.0)
        expected = f(hidden @ w1)

        output = small_network.feedforward([0.5, -0.25])
        assert np.allclose(output, expected)

    def test_bias_slots_unchanged(self, small_network):
        """Test that propagation never overwrites the bias slots."""
        small_network.feedforward([3.0, -2.0])
        small_network.feedforward([-1.0, 4.0])
        layers = small_network.layers
        assert layers[0][-1] == 1.0
        assert layers[1][-1] == 1.0

    def test_feedforward_is_deterministic(self, small_network):
        """Test that the same weights and input give bit-identical activations."""
        first = small_network.feedforward([0.3, -0.8])
        net_first = small_network.net.copy()
        second = small_network.feedforward([0.3, -0.8])
        assert np.array_equal(first, second)
        assert np.array_equal(small_network.net, net_first)

    def test_outputs_bounded(self, small_network):
        """Test that outputs stay inside (-1, 1)."""
        output = feed_forward(small_network, [100.0, -100.0])
        assert np.all(output > -1.0)
        assert np.all(output < 1.0)

    def test_feedforward_returns_copy(self, small_network):
        """Test that the returned output is not a view of the buffer."""
        output = small_network.feedforward([1.0, 1.0])
        output[:] = 42.0
        assert not np.any(small_network.output == 42.0)

    def test_wrong_pattern_length(self, small_network):
        """Test that a pattern of the wrong length is a data error."""
        with pytest.raises(DataError):
            small_network.feedforward([1.0, 2.0, 3.0])

    def test_resize_reallocates(self, small_network):
        """Test that resizing changes both buffers and keeps bias slots."""
        old_weights = small_network.weights
        small_network.resize(4, 6, 3)
        assert small_network.sizes == [4, 6, 3]
        assert small_network.weights.size == 5 * 6 + 7 * 3
        assert small_network.weights is not old_weights
        assert small_network.layers[0][-1] == 1.0

    def test_load_weights_size_check(self, small_network):
        """Test that a weight vector of the wrong length is refused."""
        with pytest.raises(DataError):
            small_network.load_weights(np.zeros(3))

    def test_copy_is_independent(self, small_network):
        """Test that a copy does not share buffers with the original."""
        clone = small_network.copy()
        clone.weights[:] = 0.0
        assert np.any(small_network.weights != 0.0)
