"""
Per-dependency circuit breakers and rate limiters.

One ResilienceRegistry is built per process (see EngineServices) and handed
to whatever needs it, so tests always start from fresh breaker state.
"""

import logging
from typing import Any, Callable, Optional

from automation_engine.resilience.circuit_breaker import CircuitBreaker
from automation_engine.resilience.rate_limiter import RateLimiter

logger = logging.getLogger(__name__)

MINUTE = 60.0
HOUR = 60 * MINUTE
DAY = 24 * HOUR

DEFAULT_CIRCUIT: dict[str, Any] = {
    "timeout": 10.0,
    "error_threshold_percentage": 50.0,
    "reset_timeout": 30.0,
    "volume_threshold": 5,
}

CIRCUIT_PRESETS: dict[str, dict[str, Any]] = {
    # Lenient timeout, calls are often delayed by rate limiting
    "twitter": {"timeout": 15.0, "error_threshold_percentage": 60.0, "reset_timeout": 60.0, "volume_threshold": 3},
    # Quota-bound, back off longer
    "youtube": {"timeout": 10.0, "error_threshold_percentage": 50.0, "reset_timeout": 120.0, "volume_threshold": 3},
    # Generation can take 30+ seconds
    "openai": {"timeout": 60.0, "error_threshold_percentage": 50.0, "reset_timeout": 30.0, "volume_threshold": 3},
    "instagram": {"timeout": 10.0, "error_threshold_percentage": 50.0, "reset_timeout": 60.0, "volume_threshold": 3},
    "rapidapi": {"timeout": 10.0, "error_threshold_percentage": 50.0, "reset_timeout": 60.0, "volume_threshold": 5},
    "wordpress": {"timeout": 15.0, "error_threshold_percentage": 50.0, "reset_timeout": 60.0, "volume_threshold": 3},
}

RATE_LIMIT_PRESETS: dict[str, dict[str, Any]] = {
    # 60 requests per minute per OAuth client
    "reddit": {"max_concurrent": 1, "min_time": 1.0, "reservoir": 60, "reservoir_refresh_interval": MINUTE},
    # App level: 300 requests per 15 minutes
    "twitter": {"max_concurrent": 1, "min_time": 3.0, "reservoir": 300, "reservoir_refresh_interval": 15 * MINUTE},
    # User-level posting, more conservative
    "twitter-user": {"max_concurrent": 1, "min_time": 30.0, "reservoir": 50, "reservoir_refresh_interval": HOUR},
    # 10,000 quota units per day
    "youtube": {"max_concurrent": 1, "min_time": 10.0, "reservoir": 10000, "reservoir_refresh_interval": DAY},
    # Tier 1: 500 RPM
    "openai": {"max_concurrent": 3, "min_time": 0.15, "reservoir": 500, "reservoir_refresh_interval": MINUTE},
    "instagram": {"max_concurrent": 1, "min_time": 20.0, "reservoir": 200, "reservoir_refresh_interval": HOUR},
    "rapidapi": {"max_concurrent": 1, "min_time": 1.0, "reservoir": 100, "reservoir_refresh_interval": MINUTE},
    # 50 posts per hour
    "wordpress": {"max_concurrent": 1, "min_time": 72.0, "reservoir": 50, "reservoir_refresh_interval": HOUR},
}


class ResilienceRegistry:
    """Owns the breakers and limiters of one process, keyed by dependency name."""

    def __init__(
        self,
        circuit_presets: Optional[dict[str, dict[str, Any]]] = None,
        rate_limit_presets: Optional[dict[str, dict[str, Any]]] = None,
        clock: Optional[Callable[[], float]] = None,
    ):
        self.circuit_presets = CIRCUIT_PRESETS if circuit_presets is None else circuit_presets
        self.rate_limit_presets = RATE_LIMIT_PRESETS if rate_limit_presets is None else rate_limit_presets
        self._clock = clock
        self._breakers: dict[str, CircuitBreaker] = {}
        self._limiters: dict[str, RateLimiter] = {}

    def breaker(self, name: str, **overrides: Any) -> CircuitBreaker:
        """Get or create the breaker for a dependency (preset, else defaults)."""
        if name not in self._breakers:
            options = {**DEFAULT_CIRCUIT, **self.circuit_presets.get(name, {}), **overrides}
            if self._clock is not None:
                options["clock"] = self._clock
            self._breakers[name] = CircuitBreaker(name, **options)
            logger.debug(f"Created circuit breaker {name}: {options}")
        return self._breakers[name]

    def limiter(self, name: str, **overrides: Any) -> Optional[RateLimiter]:
        """
        Get or create the limiter for a dependency.

        Returns None when no preset or override describes one.
        """
        if name not in self._limiters:
            preset = self.rate_limit_presets.get(name)
            if preset is None and not overrides:
                return None
            options = {**(preset or {}), **overrides}
            if "reservoir" in options:
                options.setdefault("reservoir_refresh_amount", options["reservoir"])
            if self._clock is not None:
                options["clock"] = self._clock
            self._limiters[name] = RateLimiter(name, **options)
            logger.debug(f"Created rate limiter {name}")
        return self._limiters[name]

    def register_limiter(self, limiter: RateLimiter) -> RateLimiter:
        self._limiters[limiter.name] = limiter
        return limiter

    def get_status(self) -> dict[str, Any]:
        return {
            "circuits": {name: b.get_status() for name, b in self._breakers.items()},
            "limiters": {name: l.get_status() for name, l in self._limiters.items()},
        }
