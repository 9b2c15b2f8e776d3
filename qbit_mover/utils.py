"""Provides utility functions and custom exceptions for the application.

This module contains common helper utilities that are used across various parts
of the qbit_mover package.

Classes:
    QbitMoverError: Base class for every error raised by the package.
    ConfigError, AuthError, TransportError: Startup and per-cycle failures.
    ResolutionError, UnmappedCategory, UnsupportedLayout: Per-torrent lookup failures.
    MoveError and its subclasses: Per-torrent filesystem move failures.

Functions:
    retry: A decorator that retries a function call upon failure with
           configurable delay and backoff.
    parse_size: Converts a human size string such as '10M' into bytes.
"""
import os
import time
import logging
from functools import wraps
from typing import Callable, Any, Optional, Tuple, Type, TypeVar

# A generic TypeVar to preserve function signatures in the decorator
F = TypeVar('F', bound=Callable[..., Any])


class Timeouts:
    REQUEST = int(os.getenv('QM_REQUEST_TIMEOUT', '20'))
    AUTH_RETRY_DELAY = int(os.getenv('QM_AUTH_RETRY_DELAY', '5'))


def retry(tries: int = 2, delay: int = 5, backoff: int = 1,
          exceptions: Tuple[Type[BaseException], ...] = (Exception,),
          stop_event_attr: Optional[str] = None) -> Callable[[F], F]:
    """Creates a decorator that retries a function upon failure.

    This decorator will re-invoke the decorated function if it raises one of
    `exceptions`. It supports a configurable number of attempts, an initial
    delay, and an exponential backoff factor.

    Args:
        tries: The maximum number of attempts to make.
        delay: The initial delay between retries in seconds.
        backoff: The factor by which the delay is multiplied after each failed
            attempt. A value of 1 results in a fixed delay.
        exceptions: The exception types that trigger a retry. Anything else
            propagates immediately.
        stop_event_attr: For methods, the name of an instance attribute holding a
            `threading.Event`. Once the event is set, the wait between attempts
            ends early and the last error is raised.

    Returns:
        A decorator that can be applied to a function to make it resilient to
        transient failures.
    """
    def deco_retry(f: F) -> F:
        @wraps(f)
        def f_retry(*args: Any, **kwargs: Any) -> Any:
            _delay = delay
            for attempt in range(1, tries + 1):
                try:
                    return f(*args, **kwargs)
                except exceptions as e:
                    if attempt == tries:
                        logging.error(f"'{f.__name__}' failed on the final attempt ({attempt}/{tries}): {e}")
                        raise

                    logging.warning(f"'{f.__name__}' failed with '{e}'. Attempt {attempt}/{tries}. "
                                    f"Retrying in {_delay} seconds...")
                    stop_event = getattr(args[0], stop_event_attr, None) if stop_event_attr and args else None
                    if stop_event is not None:
                        if stop_event.wait(_delay):
                            logging.info(f"'{f.__name__}' not retried: shutdown requested.")
                            raise
                    else:
                        time.sleep(_delay)
                    _delay *= backoff
            raise RuntimeError("Exited retry loop unexpectedly.")
        return f_retry  # type: ignore
    return deco_retry


_SIZE_UNITS = {
    'K': 1024,
    'M': 1024 ** 2,
    'G': 1024 ** 3,
}


def parse_size(size: str) -> int:
    """Parses a size string like '10M', '1G' or '512000' into a byte count.

    A trailing 'B' is tolerated ('10MB', '512B'). Units are binary (1M = 1024**2).

    Raises:
        ValueError: If the string is empty, negative or not a number.
    """
    text = str(size).strip().upper()
    if text.endswith('B'):
        text = text[:-1]
    multiplier = 1
    if text and text[-1] in _SIZE_UNITS:
        multiplier = _SIZE_UNITS[text[-1]]
        text = text[:-1]
    if not text.isdigit():
        raise ValueError(f"Invalid size value: '{size}'")
    return int(text) * multiplier


class QbitMoverError(Exception):
    """Base class for all errors raised by qbit_mover."""
    pass


class ConfigError(QbitMoverError):
    """The configuration is missing, unparsable or semantically invalid. Fatal at startup."""
    pass


class AuthError(QbitMoverError):
    """The torrent client rejected our credentials or session."""
    pass


class TransportError(QbitMoverError):
    """The torrent client could not be reached or returned an unexpected response."""
    pass


class ResolutionError(QbitMoverError):
    """A torrent could not be mapped to its source path or destination directory."""
    pass


class UnmappedCategory(ResolutionError):
    """The torrent has no category, or its category is not in the server's map."""

    def __init__(self, category: str, server_name: str):
        self.category = category
        self.server_name = server_name
        label = f"'{category}'" if category else "(uncategorized)"
        super().__init__(f"Category {label} is not mapped on server '{server_name}'")


class UnsupportedLayout(ResolutionError):
    """The torrent's files sit directly in its save path, with no top-level file or folder to move."""
    pass


class MoveError(QbitMoverError):
    """Raised by the Mover. Never retried internally; the Poller decides what to do."""

    def __init__(self, message: str, source: Any = None, destination: Any = None):
        super().__init__(message)
        self.source = source
        self.destination = destination


class SourceNotFound(MoveError):
    pass


class PermissionDenied(MoveError):
    pass


class InsufficientSpace(MoveError):
    pass


class CrossVolumeCopyFailed(MoveError):
    """A copy between volumes failed. The partial destination has been removed."""
    pass
