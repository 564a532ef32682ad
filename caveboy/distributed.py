"""
distributed.py
~~~~~~~~~~~~~~

Data parallel training and testing over a communicator group.

Training protocol:

1. The coordinator broadcasts the run header: layer sizes, pattern
   count and class names. No worker allocates anything before it.
2. Patterns (and their codes) are scattered in contiguous blocks. Every
   rank gets ``n_patterns // size`` patterns; the coordinator's block
   also absorbs the ``n_patterns % size`` remainder.
3. Each epoch the coordinator broadcasts its weights; every rank runs
   deferred backpropagation over its own block; the per-rank delta
   sums (and error sums) are reduced onto the coordinator, which adds
   them to its weights.

Testing scatters the patterns the same way, classifies each block
locally and gathers the codes back in rank order.

Only the coordinator touches files.
"""

import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Sequence, TextIO, Tuple

import numpy as np

from caveboy.backprop import Backpropagation
from caveboy.comm import Communicator
from caveboy.config import RunConfig
from caveboy.errors import CaveboyError, DataError
from caveboy.evaluation import ClassificationReport, classify
from caveboy.layout import DTYPE
from caveboy.network import Network
from caveboy.patterns import PatternSet
from caveboy.persistence import load_training_info, load_weights, save_training_info, save_weights
from caveboy.training import LOG_HEADER, TrainingResult, check_compatible, format_log_record

logger = logging.getLogger(__name__)


@dataclass
class RunHeader:
    """What every rank needs before allocating: sizes, count, names."""

    n_in: int
    n_hidden: int
    n_out: int
    n_patterns: int
    names: List[str]

    @property
    def sizes(self) -> Tuple[int, int, int]:
        return (self.n_in, self.n_hidden, self.n_out)


@dataclass
class Slice:
    offset: int
    count: int

    @property
    def stop(self) -> int:
        return self.offset + self.count


# ============================================================================
# PARTITIONING
# ============================================================================

def partition(n_items: int, size: int) -> List[Slice]:
    """
    Contiguous blocks of ``n_items // size``; rank 0 also takes the
    remainder. Used for patterns and codes alike.
    """
    if size <= 0:
        raise DataError(f"Cannot partition over {size} ranks")
    part = n_items // size
    root = part + n_items % size
    slices = [Slice(0, root)]
    for rank in range(1, size):
        slices.append(Slice(root + (rank - 1) * part, part))
    return slices


def split(array: np.ndarray, slices: Sequence[Slice]) -> List[np.ndarray]:
    return [array[s.offset:s.stop] for s in slices]


# ============================================================================
# PROTOCOL STEPS
# ============================================================================

def broadcast_header(comm: Communicator, header: Optional[RunHeader] = None) -> Optional[RunHeader]:
    """
    Share the coordinator's header. A coordinator that failed to set up
    broadcasts None so workers can leave instead of deadlocking.
    """
    payload = None
    if comm.is_coordinator and header is not None:
        payload = {
            'sizes': list(header.sizes),
            'n_patterns': header.n_patterns,
            'names': list(header.names)
        }
    payload = comm.broadcast(payload)
    if payload is None:
        return None
    return RunHeader(*payload['sizes'], payload['n_patterns'], payload['names'])


def distribute_patterns(
    comm: Communicator,
    header: RunHeader,
    pattern_set: Optional[PatternSet] = None,
    with_codes: bool = True
) -> Tuple[np.ndarray, Optional[np.ndarray]]:
    """
    Scatter the coordinator's patterns (and codes when training).

    Returns:
        tuple: this rank's ``(inputs, codes)``; codes is None when
        ``with_codes`` is False. A rank may receive zero patterns.
    """
    input_chunks = code_chunks = None
    if comm.is_coordinator:
        slices = partition(header.n_patterns, comm.size)
        input_chunks = split(pattern_set.inputs, slices)
        if with_codes:
            code_chunks = split(pattern_set.codes, slices)

    inputs = np.asarray(comm.scatter(input_chunks), dtype=DTYPE).reshape(-1, header.n_in)
    codes = None
    if with_codes:
        codes = np.asarray(comm.scatter(code_chunks), dtype=np.int64)
    logger.debug(f"Rank {comm.rank}: received {len(inputs)} pattern(s)")
    return inputs, codes


def broadcast_weights(comm: Communicator, network: Network) -> None:
    """Mirror the coordinator's weights into every rank's own buffer."""
    weights = comm.broadcast(network.weights if comm.is_coordinator else None)
    if not comm.is_coordinator:
        network.load_weights(weights)


def reduce_deltas(
    comm: Communicator,
    deltas: np.ndarray,
    error: float,
    count: int
) -> Optional[Tuple[np.ndarray, float, int]]:
    """
    Sum deltas, error sums and pattern counts onto the coordinator in
    one reduction.

    Returns:
        tuple: ``(deltas, error, count)`` on the coordinator, None elsewhere
    """
    packed = np.concatenate([deltas, [error, float(count)]])
    total = comm.reduce(packed)
    if total is None:
        return None
    return total[:-2], float(total[-2]), int(round(total[-1]))


def gather_codes(comm: Communicator, codes: np.ndarray) -> Optional[np.ndarray]:
    """Concatenate every rank's codes in rank order on the coordinator."""
    parts = comm.gather(np.asarray(codes, dtype=np.int64))
    if parts is None:
        return None
    return np.concatenate(parts) if parts else np.zeros(0, dtype=np.int64)


# ============================================================================
# TRAINING
# ============================================================================

def parallel_fit(
    comm: Communicator,
    learning_rate: float,
    error_threshold: float = 0.0,
    max_epochs: int = 2000,
    network: Optional[Network] = None,
    pattern_set: Optional[PatternSet] = None,
    log_stream: Optional[TextIO] = None,
    callback: Optional[Callable[[Dict[str, Any]], None]] = None
) -> Optional[TrainingResult]:
    """
    Train the coordinator's network with every rank's help.

    The coordinator passes ``network`` and ``pattern_set``; workers pass
    neither. Every rank must call this function.

    Returns:
        TrainingResult on the coordinator, None on workers

    Raises:
        DataError: On the coordinator, if the set is empty or does not
            fit the network (workers return None)
    """
    header = None
    if comm.is_coordinator:
        try:
            if network is None or pattern_set is None:
                raise DataError("The coordinator needs a network and a pattern set")
            check_compatible(network, pattern_set)
        except DataError:
            broadcast_header(comm, None)
            raise
        header = RunHeader(*network.sizes, len(pattern_set), list(pattern_set.names))

    header = broadcast_header(comm, header)
    if header is None:
        logger.warning(f"Rank {comm.rank}: coordinator aborted the run")
        return None

    if not comm.is_coordinator:
        network = Network(*header.sizes)
    inputs, codes = distribute_patterns(comm, header, pattern_set, with_codes=True)
    engine = Backpropagation(network)

    result = TrainingResult() if comm.is_coordinator else None
    if comm.is_coordinator:
        logger.info(
            f"Parallel training of {network.sizes} on {header.n_patterns} patterns "
            f"over {comm.size} rank(s): lrate={learning_rate}, max_epochs={max_epochs}"
        )
        if log_stream is not None:
            log_stream.write(LOG_HEADER)

    start_time = time.time()
    keep_going = True
    epoch = 0
    while True:
        keep_going = comm.broadcast(keep_going and epoch < max_epochs)
        if not keep_going:
            break
        broadcast_weights(comm, network)

        deltas, error, count = engine.accumulate(network, inputs, codes, learning_rate)
        reduced = reduce_deltas(comm, deltas.values, error, count)

        if comm.is_coordinator:
            total_deltas, total_error, total_count = reduced
            network.add_to_weights(total_deltas)
            error = total_error / total_count

            result.epochs = epoch + 1
            result.error = error
            result.errors.append(error)
            logger.debug(f"Epoch {epoch}: error {error:.6f}")
            if log_stream is not None:
                log_stream.write(format_log_record(epoch, network.n_hidden, learning_rate, error))
            if callback is not None:
                callback({
                    'epoch': epoch + 1,
                    'total_epochs': max_epochs,
                    'error': error,
                    'elapsed_time': time.time() - start_time
                })
            if error <= error_threshold:
                result.converged = True
                keep_going = False
        epoch += 1

    if comm.is_coordinator:
        result.elapsed_time = time.time() - start_time
        logger.info(
            f"Parallel training finished after {result.epochs} epoch(s): "
            f"error {result.error:.6f}, converged={result.converged}"
        )
    return result


# ============================================================================
# TESTING
# ============================================================================

def parallel_classify(
    comm: Communicator,
    radius: float,
    network: Optional[Network] = None,
    pattern_set: Optional[PatternSet] = None
) -> Optional[ClassificationReport]:
    """
    Classify the coordinator's patterns across the group.

    Returns:
        ClassificationReport on the coordinator, None on workers
    """
    header = None
    if comm.is_coordinator:
        if network is None or pattern_set is None or len(pattern_set) == 0:
            broadcast_header(comm, None)
            raise DataError("The coordinator needs a network and a non empty pattern set")
        if network.n_in != pattern_set.n_in:
            broadcast_header(comm, None)
            raise DataError(
                f"Incompatible input layer sizes for perceptron and patterns "
                f"({network.n_in} != {pattern_set.n_in})"
            )
        header = RunHeader(*network.sizes, len(pattern_set), list(pattern_set.names))

    header = broadcast_header(comm, header)
    if header is None:
        return None

    if not comm.is_coordinator:
        network = Network(*header.sizes)
    broadcast_weights(comm, network)
    inputs, _ = distribute_patterns(comm, header, pattern_set, with_codes=False)

    codes = gather_codes(comm, classify(network, inputs, radius))
    if not comm.is_coordinator:
        return None
    return ClassificationReport(codes, header.names, pattern_set.codes)


# ============================================================================
# RUN TARGETS
# ============================================================================

def training_run(comm: Communicator, config: RunConfig,
                 pattern_set: Optional[PatternSet] = None) -> bool:
    """
    Group target for a full training run. The coordinator builds the
    network from ``config`` and ``pattern_set`` and writes the weight,
    training info and error log files; workers only compute.
    """
    network = None
    error_file = None
    if comm.is_coordinator:
        try:
            config.resolve_sizes(pattern_set.n_in, pattern_set.n_out)
            network = Network(*config.sizes, seed=config.seed)
        except CaveboyError as e:
            logger.error(f"Couldn't create perceptron: {e}")
            broadcast_header(comm, None)
            return False
        if config.error_log_path:
            try:
                error_file = open(config.error_log_path, 'w')
            except OSError as e:
                logger.error(f"Couldn't open file {config.error_log_path}; {e.strerror}")

    try:
        result = parallel_fit(
            comm,
            config.learning_rate,
            config.error_threshold,
            config.max_epochs,
            network=network,
            pattern_set=pattern_set,
            log_stream=error_file
        )
    except CaveboyError as e:
        logger.error(f"Rank {comm.rank}: training failed: {e}")
        return False
    finally:
        if error_file is not None:
            error_file.close()

    if not comm.is_coordinator:
        return result is None

    ok = save_training_info(pattern_set.training_info(), config.training_info_path)
    return save_weights(network, config.weights_path) and ok


def testing_run(comm: Communicator, config: RunConfig,
                pattern_set: Optional[PatternSet] = None) -> Optional[ClassificationReport]:
    """
    Group target for a testing run. The coordinator reads the training
    info and weights, then the group classifies the set.
    """
    network = None
    if comm.is_coordinator:
        info = load_training_info(config.training_info_path)
        network = load_weights(config.weights_path) if info is not None else None
        if info is None or network is None:
            broadcast_header(comm, None)
            return None
        try:
            pattern_set.set_training_info(info)
        except CaveboyError as e:
            logger.error(f"Testing failed: {e}")
            broadcast_header(comm, None)
            return None

    try:
        return parallel_classify(comm, config.radius, network=network, pattern_set=pattern_set)
    except CaveboyError as e:
        logger.error(f"Rank {comm.rank}: testing failed: {e}")
        return None
