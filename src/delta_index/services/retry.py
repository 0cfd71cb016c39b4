"""
Retry with exponential backoff.

One policy shared by every outbound call site: embedding backends, the
vector database and any LLM client a caller wires in.

Usage:
    policy = RetryPolicy(max_attempts=3, base_delay=1.0)

    @with_retry(policy, error_cls=VectorBackendError, operation="qdrant upsert")
    def upsert(...):
        ...
"""

import time
from dataclasses import dataclass, field
from functools import wraps
from typing import Any, Callable, Dict, Optional, Tuple, Type, TypeVar

from ..logging_config import configure_logger_for_debug_trace

logger = configure_logger_for_debug_trace(__name__)

F = TypeVar('F', bound=Callable[..., Any])


@dataclass
class RetryPolicy:
    """
    Retry-with-backoff policy.

    ::: This is-in-layer Utility-Layer.
    ::: This is a policy.
    ::: This is stateless.

    The delay before attempt n+1 is base_delay * 2^(n-1), capped at max_delay.

    Attributes:
        max_attempts: Total attempts including the first call
        base_delay: Delay in seconds after the first failure
        max_delay: Upper bound for any single delay
        retry_on: Exception types that trigger another attempt
        sleep: Sleep function (injectable for tests)
    """
    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 30.0
    retry_on: Tuple[Type[BaseException], ...] = (Exception,)
    sleep: Callable[[float], None] = field(default=time.sleep, repr=False)

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.base_delay < 0 or self.max_delay < 0:
            raise ValueError("delays must be >= 0")

    @classmethod
    def from_config(cls, config: Dict[str, Any]) -> "RetryPolicy":
        """Build a policy from ConfigLoader.get_retry_config() output."""
        return cls(
            max_attempts=int(config.get("retry_max_attempts", 3)),
            base_delay=float(config.get("retry_base_delay", 1.0)),
            max_delay=float(config.get("retry_max_delay", 30.0)),
        )

    def delay_for(self, attempt: int) -> float:
        """Backoff delay after the given (1-based) failed attempt."""
        return min(self.base_delay * (2 ** (attempt - 1)), self.max_delay)

    def call(
        self,
        func: Callable[..., Any],
        *args: Any,
        error_cls: Optional[Type[Exception]] = None,
        operation: str = "",
        **kwargs: Any
    ) -> Any:
        """
        Call func under this policy.

        Args:
            func: Callable to invoke
            error_cls: If given, the final failure is re-raised as this type
                (chained to the original) unless it already is one
            operation: Label used in log and error messages

        Returns:
            Whatever func returns

        Raises:
            The last exception (or error_cls wrapping it) once attempts run out
        """
        label = operation or getattr(func, "__name__", "call")
        last_error: Optional[BaseException] = None

        for attempt in range(1, self.max_attempts + 1):
            try:
                return func(*args, **kwargs)
            except self.retry_on as e:
                last_error = e
                if attempt >= self.max_attempts:
                    break
                delay = self.delay_for(attempt)
                logger.warning(
                    f"[Retry] {label} failed (attempt {attempt}/{self.max_attempts}): "
                    f"{e}; retrying in {delay:.2f}s"
                )
                self.sleep(delay)

        logger.error(f"[Retry] {label} failed after {self.max_attempts} attempts: {last_error}")
        if error_cls is not None and not isinstance(last_error, error_cls):
            raise error_cls(
                f"{label} failed after {self.max_attempts} attempts: {last_error}"
            ) from last_error
        raise last_error


def with_retry(
    policy: Optional[RetryPolicy] = None,
    error_cls: Optional[Type[Exception]] = None,
    operation: str = ""
) -> Callable[[F], F]:
    """
    Decorator applying a RetryPolicy to a function or method.

    When used on a method and `policy` is None, the instance attribute
    `retry_policy` is used, so each facade can carry its own policy.
    """
    def decorator(func: F) -> F:
        @wraps(func)
        def wrapper(*args, **kwargs):
            active = policy
            if active is None and args:
                active = getattr(args[0], "retry_policy", None)
            if active is None:
                active = RetryPolicy()
            return active.call(
                func, *args,
                error_cls=error_cls,
                operation=operation or func.__name__,
                **kwargs
            )
        return wrapper  # type: ignore[return-value]
    return decorator


__all__ = ["RetryPolicy", "with_retry"]
