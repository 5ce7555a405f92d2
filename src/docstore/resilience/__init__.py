from .backoff import RetryPolicy, compute_backoff
from .circuit_breaker import CircuitBreaker, CircuitBreakerPolicy, CircuitState
from .retry import RetryExecutor

__all__ = [
    "RetryPolicy",
    "compute_backoff",
    "CircuitBreaker",
    "CircuitBreakerPolicy",
    "CircuitState",
    "RetryExecutor",
]
