"""
persistence.py
~~~~~~~~~~~~~~

Plain text codecs for trained networks and training info.

Weight file::

    NI NH NO
    w[0][0][0] ... w[0][0][NH-1]        (NI + 1 lines, bias last)
    ...
    w[1][0][0] ... w[1][0][NO-1]        (NH + 1 lines, bias last)
    ...

Training info file::

    n
    name0
    ...
    name{n-1}

Codecs raise; the path based wrappers log and return a success signal.
"""

import io
import logging
from typing import Optional, TextIO

from caveboy.errors import CaveboyError, ResourceError, WeightFileError
from caveboy.network import Network
from caveboy.patterns import TrainingInfo

logger = logging.getLogger(__name__)


# ============================================================================
# WEIGHT FILE
# ============================================================================

def write_network(network: Network, stream: TextIO) -> None:
    """Dump sizes and weights, one line per source neuron."""
    stream.write(f"{network.n_in} {network.n_hidden} {network.n_out}\n")
    for stage in network.stages:
        for row in stage:
            stream.write(' '.join(repr(float(w)) for w in row))
            stream.write('\n')


def format_network(network: Network) -> str:
    buffer = io.StringIO()
    write_network(network, buffer)
    return buffer.getvalue()


def _parse_header(line: str):
    fields = line.split()
    if len(fields) != 3:
        raise WeightFileError(f"Couldn't get file header: expected 3 sizes, got {line!r}")
    try:
        sizes = [int(value) for value in fields]
    except ValueError:
        raise WeightFileError(f"Couldn't get file header: non integer sizes {line!r}") from None
    if any(size <= 0 for size in sizes):
        raise WeightFileError(
            "Incorrect header values input: {}, hidden: {}, output: {}".format(*sizes)
        )
    return sizes


def parse_network(text: str, **network_kwargs) -> Network:
    """
    Build a network from weight file text.

    Everything is parsed before the network is constructed, so a failure
    never yields a partially filled network.

    Raises:
        WeightFileError: On a bad header, a non numeric weight, or a
            weight count that does not match the header
    """
    header, _, body = text.partition('\n')
    n_in, n_hidden, n_out = _parse_header(header)

    expected = (n_in + 1) * n_hidden + (n_hidden + 1) * n_out
    tokens = body.split()
    if len(tokens) < expected:
        raise WeightFileError(
            f"Couldn't finish reading layer values: {len(tokens)} of {expected} weights"
        )
    if len(tokens) > expected:
        raise WeightFileError(
            f"Trailing data after {expected} weights ({len(tokens) - expected} extra values)"
        )
    try:
        weights = [float(token) for token in tokens]
    except ValueError as e:
        raise WeightFileError(f"Couldn't read weight value: {e}") from None

    network = Network(n_in, n_hidden, n_out, **network_kwargs)
    network.load_weights(weights)
    return network


def read_network(stream: TextIO, **network_kwargs) -> Network:
    return parse_network(stream.read(), **network_kwargs)


def save_weights(network: Network, path: str) -> bool:
    """
    Write a network to a weight file.

    Returns:
        bool: True if the file was written, False otherwise
    """
    try:
        with open(path, 'w') as stream:
            write_network(network, stream)
    except OSError as e:
        logger.error(str(ResourceError.from_os_error('write', path, e)))
        return False

    logger.info(f"Saved network {network.sizes} weights to '{path}'")
    return True


def load_weights(path: str, **network_kwargs) -> Optional[Network]:
    """
    Read a network from a weight file.

    Returns:
        Network or None if the file could not be read or parsed
    """
    try:
        with open(path, 'r') as stream:
            network = read_network(stream, **network_kwargs)
    except OSError as e:
        logger.error(str(ResourceError.from_os_error('open', path, e)))
        return None
    except CaveboyError as e:
        logger.error(f"Malformed weight file '{path}': {e}")
        return None

    logger.info(f"Loaded network {network.sizes} from '{path}'")
    return network


# ============================================================================
# TRAINING INFO
# ============================================================================

def write_training_info(info: TrainingInfo, stream: TextIO) -> None:
    stream.write(f"{len(info.names)}\n")
    for name in info.names:
        stream.write(f"{name}\n")


def format_training_info(info: TrainingInfo) -> str:
    buffer = io.StringIO()
    write_training_info(info, buffer)
    return buffer.getvalue()


def parse_training_info(text: str) -> TrainingInfo:
    """
    Raises:
        WeightFileError: If the count is missing, not positive, or more
            names are announced than present
    """
    if text.endswith('\n'):
        text = text[:-1]
    lines = text.split('\n')
    try:
        count = int(lines[0].strip())
    except ValueError:
        raise WeightFileError(f"Couldn't read label count from {lines[0]!r}") from None
    if count <= 0:
        raise WeightFileError(f"Label count must be positive, got {count}")

    names = lines[1:count + 1]
    if len(names) < count:
        raise WeightFileError(f"Expected {count} class names, found {len(names)}")
    return TrainingInfo(names)


def save_training_info(info: TrainingInfo, path: str) -> bool:
    if not info.names:
        logger.error(f"Refusing to write empty training info to '{path}'")
        return False
    try:
        with open(path, 'w') as stream:
            write_training_info(info, stream)
    except OSError as e:
        logger.error(str(ResourceError.from_os_error('write', path, e)))
        return False

    logger.info(f"Saved {info.n_out} class names to '{path}'")
    return True


def load_training_info(path: str) -> Optional[TrainingInfo]:
    try:
        with open(path, 'r', newline='\n') as stream:
            info = parse_training_info(stream.read())
    except OSError as e:
        logger.error(str(ResourceError.from_os_error('open', path, e)))
        return None
    except WeightFileError as e:
        logger.error(f"Malformed training info file '{path}': {e}")
        return None

    logger.info(f"Loaded {info.n_out} class names from '{path}'")
    return info
