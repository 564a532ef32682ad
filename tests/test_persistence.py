"""
test_persistence.py
~~~~~~~~~~~~~~~~~~~

Unit tests for the weight file and training info codecs.
"""

import pytest
import io
import os
import sys

import numpy as np

# Add repository root to path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from caveboy.errors import WeightFileError
from caveboy.network import Network
from caveboy.patterns import TrainingInfo
from caveboy.persistence import (
    format_network,
    format_training_info,
    load_training_info,
    load_weights,
    parse_network,
    parse_training_info,
    read_network,
    save_training_info,
    save_weights
)


@pytest.fixture
def network():
    """Create a 3-2-2 network with a fixed seed."""
    return Network(3, 2, 2, seed=21)


@pytest.mark.unit
class TestWeightFile:
    """Test the plain text weight format."""

    def test_layout(self, network):
        """Test the header and one line per source neuron."""
        lines = format_network(network).splitlines()
        assert lines[0] == "3 2 2"
        assert len(lines) == 1 + (3 + 1) + (2 + 1)
        assert all(len(line.split()) == 2 for line in lines[1:])

    def test_values_survive_exactly(self, network):
        """Test that parsed weights are bit-identical to the originals."""
        loaded = parse_network(format_network(network))
        assert loaded.sizes == network.sizes
        assert np.array_equal(loaded.weights, network.weights)
        assert format_network(loaded) == format_network(network)

    def test_read_from_stream(self, network):
        """Test reading from an open text stream."""
        loaded = read_network(io.StringIO(format_network(network)))
        assert np.array_equal(loaded.weights, network.weights)

    @pytest.mark.parametrize("header", ["3 2", "3 2 2 1", "a b c", "3 0 2", "-1 2 2"])
    def test_bad_header(self, network, header):
        """Test that a malformed header is refused."""
        body = format_network(network).split('\n', 1)[1]
        with pytest.raises(WeightFileError):
            parse_network(f"{header}\n{body}")

    def test_missing_weights(self, network):
        """Test that a truncated file is refused."""
        text = format_network(network)
        with pytest.raises(WeightFileError):
            parse_network(text.rsplit('\n', 2)[0])

    def test_trailing_weights(self, network):
        """Test that extra values after the last weight are refused."""
        with pytest.raises(WeightFileError):
            parse_network(format_network(network) + "0.5\n")

    def test_non_numeric_weight(self, network):
        """Test that a non numeric token is refused."""
        text = format_network(network).replace('\n', '\nxyz ', 1)
        text = text.rsplit(' ', 1)[0] + '\n'
        with pytest.raises(WeightFileError):
            parse_network(text)

    def test_save_and_load(self, network, tmp_path):
        """Test the path based wrappers."""
        path = str(tmp_path / "weights.dat")
        assert save_weights(network, path) is True
        loaded = load_weights(path)
        assert loaded is not None
        assert np.array_equal(loaded.weights, network.weights)

    def test_load_missing_file(self, tmp_path):
        """Test that a missing file gives None instead of raising."""
        assert load_weights(str(tmp_path / "nope.dat")) is None

    def test_load_malformed_file(self, tmp_path):
        """Test that a malformed file gives None instead of raising."""
        path = tmp_path / "bad.dat"
        path.write_text("1 1 1\n0.5\n")
        assert load_weights(str(path)) is None

    def test_save_to_unwritable_path(self, network, tmp_path):
        """Test that a failed write reports False."""
        assert save_weights(network, str(tmp_path / "missing" / "w.dat")) is False


@pytest.mark.unit
class TestTrainingInfo:
    """Test the class name file."""

    def test_format(self):
        """Test the count line followed by one name per line."""
        assert format_training_info(TrainingInfo(['a', 'b'])) == "2\na\nb\n"

    def test_names_with_spaces(self):
        """Test that names keep inner spaces."""
        info = parse_training_info("2\nbig cat\nsmall dog\n")
        assert info.names == ['big cat', 'small dog']

    def test_without_final_newline(self):
        """Test a file whose last name has no newline."""
        assert parse_training_info("2\na\nb").names == ['a', 'b']

    def test_fewer_names_than_count(self):
        """Test that a short file is refused."""
        with pytest.raises(WeightFileError):
            parse_training_info("3\na\nb\n")

    @pytest.mark.parametrize("text", ["", "x\na\n", "0\n", "-2\na\nb\n"])
    def test_bad_count(self, text):
        """Test that a missing or non positive count is refused."""
        with pytest.raises(WeightFileError):
            parse_training_info(text)

    def test_save_and_load(self, tmp_path):
        """Test the path based wrappers."""
        path = str(tmp_path / "tinfo.dat")
        assert save_training_info(TrainingInfo(['circle', 'cross']), path) is True
        assert load_training_info(path).names == ['circle', 'cross']

    def test_refuse_empty(self, tmp_path):
        """Test that empty training info is not written."""
        path = tmp_path / "tinfo.dat"
        assert save_training_info(TrainingInfo([]), str(path)) is False
        assert not path.exists()

    def test_load_missing_file(self, tmp_path):
        """Test that a missing file gives None."""
        assert load_training_info(str(tmp_path / "nope.dat")) is None
