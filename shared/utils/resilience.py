"""
shared/utils/resilience.py
Circuit breakers and retry policy for downstream services
(payment gateway, message providers).
"""

import logging

from pybreaker import CircuitBreaker, CircuitBreakerListener
from tenacity import retry, stop_after_attempt, wait_exponential

logger = logging.getLogger(__name__)


class _LoggingListener(CircuitBreakerListener):
    def state_change(self, cb, old_state, new_state):
        logger.warning(f"Circuit '{cb.name}' changed {old_state.name} -> {new_state.name}")


class CircuitBreakerManager:
    """Manages circuit breakers for each downstream service."""

    def __init__(self, fail_max: int = 5, reset_timeout: int = 60):
        self.fail_max = fail_max
        self.reset_timeout = reset_timeout
        self.breakers: dict[str, CircuitBreaker] = {}

    def get_breaker(self, service_name: str) -> CircuitBreaker:
        """Get or create a circuit breaker for a service."""
        if service_name not in self.breakers:
            self.breakers[service_name] = CircuitBreaker(
                fail_max=self.fail_max,          # Open after 5 failures
                reset_timeout=self.reset_timeout,  # Try again after 60 seconds
                listeners=[_LoggingListener()],
                name=service_name,
            )
        return self.breakers[service_name]


circuit_breaker_manager = CircuitBreakerManager()


# Gateway reads are idempotent, so they may be retried
retry_gateway_read = retry(
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=0.2, max=2),
    reraise=True,
)
