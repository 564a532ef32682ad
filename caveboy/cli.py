"""
cli.py
~~~~~~

Command line launcher for training and testing runs.

Usage:
    caveboy [options] PATTERN_DIR

Training (``-t``) reads the pattern directory, trains a new network and
writes the weight, training info and error log files. Without ``-t`` the
same files are read back and every pattern is classified.
"""

import sys
import argparse
import logging
from typing import List, Optional

from caveboy import __version__
from caveboy.comm import run_process_group
from caveboy.config import (
    DEFAULT_ERROR_LOG_PATH,
    DEFAULT_LEARNING_RATE,
    DEFAULT_MAX_EPOCHS,
    DEFAULT_RADIUS,
    DEFAULT_TRAINING_INFO_PATH,
    DEFAULT_WEIGHTS_PATH,
    RunConfig,
    configure_logging
)
from caveboy.distributed import testing_run, training_run
from caveboy.errors import CaveboyError, ConfigurationError
from caveboy.evaluation import evaluate, format_report
from caveboy.loaders import load_pattern_directory
from caveboy.network import Network
from caveboy.patterns import PatternSet
from caveboy.persistence import (
    load_training_info,
    load_weights,
    save_training_info,
    save_weights
)
from caveboy.training import fit

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    # -h selects the hidden layer size, so help is --help only
    parser = argparse.ArgumentParser(
        prog='caveboy',
        description='Train or test a three layer perceptron on a PNG pattern directory.',
        add_help=False
    )
    parser.add_argument('pattern_dir', metavar='PATTERN_DIR',
                        help='directory with one sub directory of PNG images per class')
    parser.add_argument('--help', action='help', help='show this help message and exit')
    parser.add_argument('--version', action='version', version=f'%(prog)s {__version__}')

    sizes = parser.add_argument_group('layer sizes (default: taken from the patterns)')
    sizes.add_argument('-i', '--inputs', dest='n_in', type=int, help='input layer size')
    sizes.add_argument('-h', '--hidden', dest='n_hidden', type=int,
                       help='hidden layer size (default: twice the output size)')
    sizes.add_argument('-o', '--outputs', dest='n_out', type=int, help='output layer size')

    training = parser.add_argument_group('training')
    training.add_argument('-t', '--train', dest='training', action='store_true',
                          help='train a new network instead of testing')
    training.add_argument('-a', '--alpha', dest='learning_rate', type=float,
                          default=DEFAULT_LEARNING_RATE, help='learning rate')
    training.add_argument('-m', '--max-epochs', dest='max_epochs', type=int,
                          default=DEFAULT_MAX_EPOCHS, help='maximum number of epochs')
    training.add_argument('-s', '--threshold', dest='error_threshold', type=float,
                          default=0.0, help='stop once the epoch error is at or below this')
    training.add_argument('--seed', type=int, help='seed for the initial weights')
    training.add_argument('-p', '--workers', type=int, default=1,
                          help='number of ranks (1 runs in this process only)')

    testing = parser.add_argument_group('testing')
    testing.add_argument('-r', '--radius', type=float, default=DEFAULT_RADIUS,
                         help='decision radius: an output above 1 - radius is active')

    files = parser.add_argument_group('files')
    files.add_argument('-w', '--weights', dest='weights_path', default=DEFAULT_WEIGHTS_PATH,
                       help='weight file')
    files.add_argument('-z', '--training-info', dest='training_info_path',
                       default=DEFAULT_TRAINING_INFO_PATH, help='training info file')
    files.add_argument('-e', '--error-log', dest='error_log_path',
                       default=DEFAULT_ERROR_LOG_PATH, help='error log written while training')

    parser.add_argument('-n', '--normalize', action='store_true',
                        help='rescale pixel values into [-1, 1]')
    parser.add_argument('-v', '--verbose', action='store_true', help='debug logging')
    return parser


def parse_config(argv: Optional[List[str]] = None) -> RunConfig:
    """
    Parse and validate the command line.

    Raises:
        ConfigurationError: If a size, rate or count is out of range
    """
    args = build_parser().parse_args(argv)
    config = RunConfig(
        pattern_dir=args.pattern_dir,
        n_in=args.n_in,
        n_hidden=args.n_hidden,
        n_out=args.n_out,
        learning_rate=args.learning_rate,
        max_epochs=args.max_epochs,
        error_threshold=args.error_threshold,
        radius=args.radius,
        weights_path=args.weights_path,
        training_info_path=args.training_info_path,
        error_log_path=args.error_log_path,
        training=args.training,
        verbose=args.verbose,
        normalize=args.normalize,
        workers=args.workers,
        seed=args.seed
    )
    config.validate()
    return config


def run_training(config: RunConfig, pattern_set: PatternSet) -> bool:
    """Train in this process and write the output files."""
    try:
        config.resolve_sizes(pattern_set.n_in, pattern_set.n_out)
        network = Network(*config.sizes, seed=config.seed)
    except CaveboyError as e:
        logger.error(f"Couldn't create perceptron: {e}")
        return False

    error_file = None
    if config.error_log_path:
        try:
            error_file = open(config.error_log_path, 'w')
        except OSError as e:
            logger.error(f"Couldn't open file {config.error_log_path}; {e.strerror}")

    try:
        fit(network, pattern_set, config.learning_rate, config.error_threshold,
            config.max_epochs, log_stream=error_file)
    except CaveboyError as e:
        logger.error(f"Training failed: {e}")
        return False
    finally:
        if error_file is not None:
            error_file.close()

    ok = save_training_info(pattern_set.training_info(), config.training_info_path)
    return save_weights(network, config.weights_path) and ok


def run_testing(config: RunConfig, pattern_set: PatternSet) -> bool:
    """Classify the set with the saved network and print the report."""
    info = load_training_info(config.training_info_path)
    if info is None:
        return False
    network = load_weights(config.weights_path)
    if network is None:
        return False

    try:
        pattern_set.set_training_info(info)
        report = evaluate(network, pattern_set, config.radius)
    except CaveboyError as e:
        logger.error(f"Testing failed: {e}")
        return False

    sys.stdout.write(format_report(report))
    return True


def main(argv: Optional[List[str]] = None) -> int:
    try:
        config = parse_config(argv)
    except ConfigurationError as e:
        configure_logging()
        logger.error(str(e))
        return 1

    configure_logging(config.verbose)
    logger.debug(f"Run configuration: {config.to_dict()}")

    pattern_set = load_pattern_directory(config.pattern_dir, config.normalize)
    if pattern_set is None:
        return 1

    if config.workers == 1:
        ok = run_training(config, pattern_set) if config.training else run_testing(config, pattern_set)
        return 0 if ok else 1

    logger.info(f"Starting {config.workers} ranks")
    try:
        if config.training:
            ok = run_process_group(config.workers, training_run, config,
                                   root_kwargs={'pattern_set': pattern_set})
        else:
            report = run_process_group(config.workers, testing_run, config,
                                       root_kwargs={'pattern_set': pattern_set})
            ok = report is not None
            if ok:
                sys.stdout.write(format_report(report))
    except CaveboyError as e:
        logger.error(f"Run failed: {e}")
        return 1
    return 0 if ok else 1


if __name__ == '__main__':
    sys.exit(main())
