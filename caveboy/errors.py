"""
errors.py
~~~~~~~~~

Exception taxonomy shared by the perceptron engine, the codecs and the
launchers. Core code raises these; the public wrappers log them and
return a success signal.
"""

import os
from typing import Optional


class CaveboyError(Exception):
    """Base class for every error raised by this package."""


class ConfigurationError(CaveboyError):
    """Invalid layer sizes, learning rate or command line options."""


class ResourceError(CaveboyError):
    """A file could not be opened, read, written or closed."""

    def __init__(self, message: str, path: Optional[str] = None,
                 errno: Optional[int] = None):
        if errno is not None:
            message = f"{message}; {os.strerror(errno)}"
        super().__init__(message)
        self.path = path
        self.errno = errno

    @classmethod
    def from_os_error(cls, action: str, path: str, exc: OSError,
                      kind: str = 'file') -> 'ResourceError':
        """Build a ResourceError carrying the system reason string."""
        return cls(f"Couldn't {action} {kind} '{path}'", path=path, errno=exc.errno)


class DataError(CaveboyError):
    """Empty pattern sets, incompatible sizes, mismatched pattern shapes."""


class WeightFileError(DataError):
    """Malformed weight file or training info file."""


class DeltaBufferError(CaveboyError):
    """Delta buffers are missing or do not match the network shape."""


class ProtocolError(CaveboyError):
    """A collective operation was misused or a peer went away."""
