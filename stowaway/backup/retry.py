"""
Retry-with-backoff wrapper for remote storage operations.

Every call the uploader makes against an object store goes through
RetryRunner. Failed attempts are logged as warnings; once the configured
number of retries is used up the last error is raised wrapped in a
RetryExhaustedError.
"""

import logging
import time
from dataclasses import dataclass
from typing import Any, Callable

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RetryPolicy:
    """
    How often and how patiently to retry a failing operation.

    Attributes:
        max_retries: Additional attempts after the first one
        wait_seconds: Seconds to sleep between attempts
    """

    max_retries: int = 10
    wait_seconds: float = 30.0

    def __post_init__(self):
        if self.max_retries < 0:
            raise ValueError(f"max_retries must be >= 0, got {self.max_retries}")
        if self.wait_seconds < 0:
            raise ValueError(f"wait_seconds must be >= 0, got {self.wait_seconds}")


class RetryExhaustedError(Exception):
    """Raised when an operation still fails after all retries."""

    def __init__(self, operation: str, retries: int, last_error: BaseException):
        self.operation = operation
        self.retries = retries
        self.last_error = last_error
        super().__init__(
            f"Max Retries ({retries}) Exceeded!\n"
            f"  Operation: {operation}\n"
            f"  Be sure to check the log messages for each retry attempt.\n"
            f"--- Wrapped Exception ---\n"
            f"{_describe(last_error)}"
        )


def _describe(error: BaseException) -> str:
    return f"{type(error).__name__}: {error}"


class RetryRunner:
    """
    Runs callables under a RetryPolicy.
    """

    def __init__(self, policy: RetryPolicy):
        """
        Initialize retry runner.

        Args:
            policy: Retry limits shared by every operation run through this runner
        """
        self.policy = policy

    def run(self, operation: str, func: Callable[..., Any], *args, **kwargs) -> Any:
        """
        Call func until it succeeds or the policy's retries are exhausted.

        Args:
            operation: Human-readable operation name, used in log messages and errors
            func: Callable to execute
            *args, **kwargs: Passed through to func

        Returns:
            Whatever func returns

        Raises:
            RetryExhaustedError: If the initial attempt and every retry failed
        """
        retries = 0
        while True:
            try:
                return func(*args, **kwargs)
            except Exception as e:
                if retries >= self.policy.max_retries:
                    raise RetryExhaustedError(operation, self.policy.max_retries, e) from e

                retries += 1
                logger.warning(
                    "Retry #%d of %d\n  Operation: %s\n--- Wrapped Exception ---\n%s",
                    retries, self.policy.max_retries, operation, _describe(e)
                )
                time.sleep(self.policy.wait_seconds)


def with_retries(operation: str, policy: RetryPolicy, func: Callable[..., Any], *args, **kwargs) -> Any:
    """Run func once under a throwaway RetryRunner."""
    return RetryRunner(policy).run(operation, func, *args, **kwargs)
