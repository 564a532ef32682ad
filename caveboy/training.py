"""
training.py
~~~~~~~~~~~

Single process training loop.

Each epoch backpropagates every pattern in order, applying the deltas
immediately, and averages the per-pattern mean square error. Training
stops as soon as the epoch error is at or below the threshold, or when
the epoch limit is reached.
"""

import time
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, TextIO, Tuple

from caveboy.backprop import Backpropagation
from caveboy.errors import CaveboyError, DataError
from caveboy.network import Network
from caveboy.patterns import PatternSet

logger = logging.getLogger(__name__)

LOG_HEADER = "#epoch\tneurons\talpha\terror\n"

EpochCallback = Callable[[Dict[str, Any]], None]


@dataclass
class TrainingResult:
    epochs: int = 0
    error: float = float('inf')
    converged: bool = False
    errors: List[float] = field(default_factory=list)
    elapsed_time: float = 0.0


def check_compatible(network: Network, pattern_set: PatternSet) -> None:
    """
    Raises:
        DataError: If the set is empty or its sizes do not fit the network
    """
    if len(pattern_set) == 0:
        raise DataError("Empty patternset")
    if network.n_out > pattern_set.n_out:
        raise DataError(
            "Incompatible output layer sizes for perceptron and patterns "
            f"({network.n_out} > {pattern_set.n_out})"
        )
    if network.n_in != pattern_set.n_in:
        raise DataError(
            f"Incompatible input layer sizes for perceptron and patterns "
            f"({network.n_in} != {pattern_set.n_in})"
        )


def format_log_record(epoch: int, n_hidden: int, learning_rate: float, error: float) -> str:
    return f"{epoch}\t{n_hidden}\t{learning_rate:f}\t{error:f}\n"


def read_error_log(stream: TextIO) -> List[Tuple[int, float]]:
    """Parse an error log back into ``(epoch, error)`` pairs."""
    records = []
    for line in stream:
        if not line.strip() or line.startswith('#'):
            continue
        fields = line.split('\t')
        records.append((int(fields[0]), float(fields[3])))
    return records


def fit(
    network: Network,
    pattern_set: PatternSet,
    learning_rate: float,
    error_threshold: float = 0.0,
    max_epochs: int = 2000,
    log_stream: Optional[TextIO] = None,
    callback: Optional[EpochCallback] = None,
    yield_func: Optional[Callable[[], None]] = None
) -> TrainingResult:
    """
    Train ``network`` in place on ``pattern_set``.

    Args:
        network: Network to train, mutated in place
        pattern_set: Training patterns
        learning_rate: Learning rate
        error_threshold: Stop once the epoch error is at or below this
        max_epochs: Epoch limit
        log_stream: Optional stream receiving the tab separated error log
        callback: Called after each epoch with a progress dict
        yield_func: Called after each epoch, lets cooperative schedulers
            run other tasks

    Returns:
        TrainingResult: epochs run, final error and the per-epoch errors

    Raises:
        DataError: If the set is empty or incompatible with the network
        DeltaBufferError: If backpropagation has no buffers to work with
    """
    check_compatible(network, pattern_set)
    engine = Backpropagation(network)
    inputs = pattern_set.inputs
    codes = pattern_set.codes
    n_patterns = len(codes)

    if log_stream is not None:
        log_stream.write(LOG_HEADER)

    logger.info(
        f"Training network {network.sizes} on {n_patterns} patterns: "
        f"lrate={learning_rate}, threshold={error_threshold}, max_epochs={max_epochs}"
    )

    result = TrainingResult()
    start_time = time.time()
    for epoch in range(max_epochs):
        error = 0.0
        for i in range(n_patterns):
            engine.backpropagate(network, inputs[i], codes[i], learning_rate, update=True)
            error += network.pattern_error(codes[i])
        error /= n_patterns

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
        if yield_func is not None:
            yield_func()

        if error <= error_threshold:
            result.converged = True
            break

    result.elapsed_time = time.time() - start_time
    logger.info(
        f"Training finished after {result.epochs} epoch(s): error {result.error:.6f}, "
        f"converged={result.converged}"
    )
    return result


def train(
    network: Network,
    pattern_set: PatternSet,
    learning_rate: float,
    error_threshold: float = 0.0,
    max_epochs: int = 2000,
    log_stream: Optional[TextIO] = None
) -> bool:
    """
    Train and report success instead of raising.

    Returns:
        bool: True if training ran to completion, False otherwise
    """
    try:
        fit(network, pattern_set, learning_rate, error_threshold, max_epochs, log_stream)
    except CaveboyError as e:
        logger.error(f"Training failed: {e}")
        return False
    return True
