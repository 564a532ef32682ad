"""
test_training.py
~~~~~~~~~~~~~~~~

Tests for the single process training loop and its error log.
"""

import pytest
import io
import os
import sys

# Add repository root to path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from caveboy.errors import DataError
from caveboy.network import Network
from caveboy.patterns import PatternSet
from caveboy.synthetic import make_pattern_set
from caveboy.training import (
    LOG_HEADER,
    check_compatible,
    fit,
    format_log_record,
    read_error_log,
    train
)


@pytest.fixture
def opposite_patterns():
    """Two patterns with opposite signs, one per class."""
    return PatternSet.from_arrays([[1.0, -1.0], [-1.0, 1.0]], [0, 1], ['left', 'right'])


@pytest.mark.unit
class TestErrorLog:
    """Test the tab separated error log."""

    def test_record_format(self):
        """Test the fixed record layout."""
        assert format_log_record(3, 4, 0.1, 0.25) == "3\t4\t0.100000\t0.250000\n"

    def test_header_and_records(self, opposite_patterns):
        """Test that a run writes the header and one record per epoch."""
        stream = io.StringIO()
        result = fit(Network(2, 4, 2, seed=0), opposite_patterns, 0.1,
                     max_epochs=5, log_stream=stream)

        lines = stream.getvalue().splitlines(keepends=True)
        assert lines[0] == LOG_HEADER
        assert len(lines) == 1 + result.epochs

        records = read_error_log(io.StringIO(stream.getvalue()))
        assert [epoch for epoch, _ in records] == list(range(result.epochs))
        assert records[-1][1] == pytest.approx(result.error, abs=1e-6)


@pytest.mark.unit
class TestCompatibility:
    """Test the checks run before training."""

    def test_empty_set(self):
        """Test that an empty set is refused."""
        with pytest.raises(DataError):
            check_compatible(Network(2, 2, 2), PatternSet(['a', 'b']))

    def test_input_size_mismatch(self, opposite_patterns):
        """Test that the input layer must match the pattern length."""
        with pytest.raises(DataError):
            check_compatible(Network(3, 4, 2), opposite_patterns)

    def test_too_many_outputs(self, opposite_patterns):
        """Test that the network may not have more outputs than classes."""
        with pytest.raises(DataError):
            check_compatible(Network(2, 4, 3), opposite_patterns)

    def test_fewer_outputs_allowed(self, opposite_patterns):
        """Test that fewer outputs than classes is accepted."""
        check_compatible(Network(2, 4, 1), opposite_patterns)

    def test_train_reports_failure(self, opposite_patterns):
        """Test that the wrapper returns False instead of raising."""
        assert train(Network(3, 4, 2), opposite_patterns, 0.1, max_epochs=1) is False


@pytest.mark.integration
class TestFit:
    """Test that training actually learns."""

    def test_learns_opposite_patterns(self, opposite_patterns):
        """Test convergence on two linearly separable patterns."""
        network = Network(2, 4, 2, seed=0)
        result = fit(network, opposite_patterns, 0.2, error_threshold=0.05, max_epochs=2000)

        assert result.converged is True
        assert result.error <= 0.05
        assert network.feedforward([1.0, -1.0])[0] > 0.5
        assert network.feedforward([-1.0, 1.0])[1] > 0.5

    @pytest.mark.parametrize("seed", [0, 1, 2])
    def test_converges_within_500_epochs(self, opposite_patterns, seed):
        """Test that a rate of 0.1 reaches an error below 0.05 in 500 epochs."""
        network = Network(2, 4, 2, seed=seed)
        result = fit(network, opposite_patterns, 0.1, error_threshold=0.0, max_epochs=500)
        assert result.epochs == 500
        assert result.error < 0.05

    def test_stops_at_threshold(self, opposite_patterns):
        """Test that training stops on the first epoch at or below the threshold."""
        result = fit(Network(2, 4, 2, seed=0), opposite_patterns, 0.2,
                     error_threshold=0.1, max_epochs=2000)
        assert result.errors[-1] <= 0.1
        assert all(error > 0.1 for error in result.errors[:-1])

    def test_epoch_limit(self, opposite_patterns):
        """Test that the epoch limit is honored."""
        result = fit(Network(2, 4, 2, seed=0), opposite_patterns, 0.001, max_epochs=3)
        assert result.epochs == 3
        assert result.converged is False

    def test_error_decreases(self):
        """Test that the error falls over a run on noisy data."""
        pset = make_pattern_set(n_classes=3, per_class=8, n_in=12, noise=0.1, seed=4)
        result = fit(Network(12, 6, 3, seed=4), pset, 0.05, max_epochs=100)
        assert result.errors[-1] < result.errors[0]

    def test_callback_and_yield(self, opposite_patterns):
        """Test that the callback and yield function run every epoch."""
        updates = []
        yields = []
        fit(Network(2, 4, 2, seed=0), opposite_patterns, 0.1, max_epochs=4,
            callback=updates.append, yield_func=lambda: yields.append(1))

        assert [u['epoch'] for u in updates] == [1, 2, 3, 4]
        assert all(u['total_epochs'] == 4 for u in updates)
        assert len(yields) == 4
