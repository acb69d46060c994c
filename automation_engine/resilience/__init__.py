"""Circuit breakers and rate limiters for external dependencies."""

from automation_engine.resilience.circuit_breaker import CircuitBreaker, CircuitState
from automation_engine.resilience.rate_limiter import RateLimiter
from automation_engine.resilience.registry import ResilienceRegistry

__all__ = ["CircuitBreaker", "CircuitState", "RateLimiter", "ResilienceRegistry"]
