"""
config.py
~~~~~~~~~

Logging setup, environment driven defaults and the run configuration
shared by the command line launcher and the training service.
"""

import os
import logging
from dataclasses import dataclass, asdict
from typing import Optional, Dict, Any

from caveboy.errors import ConfigurationError

DEFAULT_LEARNING_RATE = 0.001
DEFAULT_MAX_EPOCHS = 2000
DEFAULT_RADIUS = 0.1
DEFAULT_WEIGHTS_PATH = 'weights.dat'
DEFAULT_TRAINING_INFO_PATH = 'tinfo.dat'
DEFAULT_ERROR_LOG_PATH = 'error.dat'

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'


def configure_logging(verbose: bool = False) -> None:
    """
    Set up logging based on environment.

    - LOG_LEVEL selects the level (INFO by default), verbose forces DEBUG
    - In production (FLASK_ENV=production) third-party loggers are quieted
    """
    log_level_str = os.getenv('LOG_LEVEL', 'INFO').upper()
    log_level = getattr(logging, log_level_str, logging.INFO)
    if verbose:
        log_level = logging.DEBUG

    logging.basicConfig(level=log_level, format=LOG_FORMAT)
    logging.getLogger('caveboy').setLevel(log_level)

    if is_production():
        for logger_name in ['socketio', 'engineio', 'engineio.server',
                            'socketio.server', 'werkzeug']:
            logging.getLogger(logger_name).setLevel(logging.WARNING)


def is_production() -> bool:
    return os.getenv('FLASK_ENV') == 'production'


def model_dir() -> str:
    """Directory holding the model store database."""
    return os.getenv('CAVEBOY_MODEL_DIR', 'models')


def server_port() -> int:
    return int(os.getenv('PORT', 8000))


@dataclass
class RunConfig:
    """
    Everything a training or testing run needs.

    Layer sizes left as None are derived from the pattern set by
    :meth:`resolve_sizes`.
    """
    pattern_dir: Optional[str] = None
    n_in: Optional[int] = None
    n_hidden: Optional[int] = None
    n_out: Optional[int] = None
    learning_rate: float = DEFAULT_LEARNING_RATE
    max_epochs: int = DEFAULT_MAX_EPOCHS
    error_threshold: float = 0.0
    radius: float = DEFAULT_RADIUS
    weights_path: str = DEFAULT_WEIGHTS_PATH
    training_info_path: str = DEFAULT_TRAINING_INFO_PATH
    error_log_path: Optional[str] = DEFAULT_ERROR_LOG_PATH
    training: bool = False
    verbose: bool = False
    normalize: bool = False
    workers: int = 1
    seed: Optional[int] = None

    def validate(self) -> None:
        """
        Check the configuration before anything heavy is allocated.

        Raises:
            ConfigurationError: If a size, rate or count is out of range
        """
        for name in ('n_in', 'n_hidden', 'n_out'):
            value = getattr(self, name)
            if value is not None and (not isinstance(value, int) or value <= 0):
                raise ConfigurationError(
                    f"Invalid net sizes: {name} must be a positive integer, got {value}"
                )
        if self.learning_rate <= 0:
            raise ConfigurationError(
                f"Invalid learning rate: must be positive, got {self.learning_rate}"
            )
        if self.max_epochs <= 0:
            raise ConfigurationError(
                f"max_epochs must be a positive integer, got {self.max_epochs}"
            )
        if self.error_threshold < 0:
            raise ConfigurationError(
                f"error_threshold must be non-negative, got {self.error_threshold}"
            )
        if not 0 < self.radius < 2:
            raise ConfigurationError(
                f"radius must be in (0, 2), got {self.radius}"
            )
        if self.workers <= 0:
            raise ConfigurationError(
                f"workers must be a positive integer, got {self.workers}"
            )

    def resolve_sizes(self, n_in: int, n_out: int) -> None:
        """Fill unset layer sizes from the pattern set dimensions."""
        if self.n_in is None:
            self.n_in = n_in
        if self.n_out is None:
            self.n_out = n_out
        if self.n_hidden is None:
            self.n_hidden = 2 * self.n_out

    @property
    def sizes(self):
        return (self.n_in, self.n_hidden, self.n_out)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)
