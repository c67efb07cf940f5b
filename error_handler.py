"""
Transport Error Handler
=======================
Error taxonomy and retry helpers for device connections and command
transmission.

Patterns:
- Exponential backoff
- Transient vs permanent classification
- Statistics tracking
- Context-aware logging

Transport errors are reported up from the hardware boundary. They never
change recipe or trigger state.
"""
import asyncio
import functools
import logging
from typing import Any, Callable, Dict, Optional

logger = logging.getLogger("error_handler")


class TransportError(Exception):
    """Base class for device connect/transmit failures."""
    transient = False


class ConnectError(TransportError):
    """Raised when a device connection or login handshake fails."""
    transient = True


class TransmitError(TransportError):
    """Raised when a hardware command cannot be built or delivered."""

    def __init__(self, message: str, transient: bool = False):
        super().__init__(message)
        self.transient = transient


class RetryExhausted(TransportError):
    """Raised when max retries exceeded."""
    pass


class ErrorHandler:
    """
    Centralised retry handling for hardware operations.

    Features:
    - Automatic retries with exponential backoff
    - Error classification (transient vs permanent)
    - Statistics tracking
    """

    # Substrings that mark an error as worth retrying
    TRANSIENT_ERRORS = {
        'TIMED OUT',
        'CONNECTION RESET',
        'BROKEN PIPE',
        'TEMPORARILY UNAVAILABLE',
    }

    # Substrings that mark an error as permanent
    PERMANENT_ERRORS = {
        'NOT FOUND',
        'INVALID',
        'UNSUPPORTED',
    }

    def __init__(self):
        self.stats = {
            'total_attempts': 0,
            'total_retries': 0,
            'total_successes': 0,
            'total_failures': 0,
            'errors_by_type': {},
        }

    def is_transient(self, error: Exception) -> bool:
        """
        Determine if an error is transient (should be retried).

        Args:
            error: The exception

        Returns:
            True if error is transient
        """
        if isinstance(error, TransportError):
            return error.transient

        if isinstance(error, (asyncio.TimeoutError, ConnectionError)):
            return True

        error_str = str(error).upper()

        for pattern in self.PERMANENT_ERRORS:
            if pattern in error_str:
                return False

        for pattern in self.TRANSIENT_ERRORS:
            if pattern in error_str:
                return True

        # Socket level errors that are not covered above
        if isinstance(error, OSError):
            return True

        # Default to non-transient to avoid infinite retries
        return False

    def record_error(self, error: Exception):
        """Record error in statistics."""
        error_type = type(error).__name__
        self.stats['errors_by_type'][error_type] = \
            self.stats['errors_by_type'].get(error_type, 0) + 1

    async def retry_operation(
            self,
            operation: Callable,
            *args,
            max_retries: int = 3,
            backoff_base: float = 1.0,
            backoff_max: float = 30.0,
            timeout: Optional[float] = None,
            context: Optional[str] = None,
            **kwargs
    ) -> Any:
        """
        Execute operation with automatic retries.

        Args:
            operation: The async function to execute
            *args: Positional arguments for operation
            max_retries: Maximum number of retry attempts
            backoff_base: Base delay for exponential backoff (seconds)
            backoff_max: Maximum backoff delay (seconds)
            timeout: Optional timeout for each attempt (seconds)
            context: Optional context string for logging
            **kwargs: Keyword arguments for operation

        Returns:
            Result from operation

        Raises:
            RetryExhausted: If max retries exceeded
            Exception: If error is permanent (non-retryable)
        """
        self.stats['total_attempts'] += 1
        suffix = f" ({context})" if context else ""

        last_error = None

        for attempt in range(max_retries + 1):
            try:
                if attempt > 0:
                    backoff = min(backoff_base * (2 ** (attempt - 1)), backoff_max)
                    logger.debug(f"Retry #{attempt} after {backoff:.1f}s{suffix}")
                    await asyncio.sleep(backoff)
                    self.stats['total_retries'] += 1

                if timeout:
                    result = await asyncio.wait_for(operation(*args, **kwargs), timeout=timeout)
                else:
                    result = await operation(*args, **kwargs)

                if attempt > 0:
                    logger.info(f"Operation succeeded after {attempt} retries{suffix}")

                self.stats['total_successes'] += 1
                return result

            except asyncio.CancelledError:
                raise
            except Exception as e:
                last_error = e
                self.record_error(e)

                if attempt == 0:
                    logger.warning(f"Operation failed: {e}{suffix}")
                else:
                    logger.warning(f"Retry #{attempt} failed: {e}{suffix}")

                if not self.is_transient(e):
                    logger.error(f"Permanent error, not retrying: {e}{suffix}")
                    self.stats['total_failures'] += 1
                    raise

                if attempt >= max_retries:
                    logger.error(f"Max retries ({max_retries}) exceeded{suffix}")
                    self.stats['total_failures'] += 1
                    raise RetryExhausted(
                        f"Operation failed after {max_retries} retries: {last_error}"
                    ) from last_error

        raise RetryExhausted(f"Unexpected retry exhaustion: {last_error}")

    def get_stats(self) -> Dict[str, Any]:
        """Get error handling statistics."""
        total = self.stats['total_attempts']
        if total > 0:
            success_rate = (self.stats['total_successes'] / total) * 100
            retry_rate = (self.stats['total_retries'] / total) * 100
        else:
            success_rate = 0
            retry_rate = 0

        return {
            **self.stats,
            'success_rate': success_rate,
            'retry_rate': retry_rate,
        }


# Global error handler instance
_error_handler = ErrorHandler()


def get_error_handler() -> ErrorHandler:
    return _error_handler


def with_retries(
        max_retries: int = 3,
        backoff_base: float = 1.0,
        timeout: Optional[float] = None
):
    """
    Decorator to add automatic retries to async functions.

    Usage:
        @with_retries(max_retries=3, backoff_base=2.0, timeout=10.0)
        async def open_connection(self, device):
            ...
    """

    def decorator(func: Callable) -> Callable:
        @functools.wraps(func)
        async def wrapper(*args, **kwargs):
            context = f"{func.__name__}"
            for arg in args:
                if hasattr(arg, 'address') and hasattr(arg, 'name'):
                    context += f"({arg.name} @ {arg.address})"
                    break

            return await _error_handler.retry_operation(
                func,
                *args,
                max_retries=max_retries,
                backoff_base=backoff_base,
                timeout=timeout,
                context=context,
                **kwargs
            )

        return wrapper

    return decorator


def get_error_stats() -> Dict[str, Any]:
    """Get global error handling statistics."""
    return _error_handler.get_stats()
