"""
Reliability layer.

``ReliableInvoker`` decorates any adapter call with a hard per-attempt
timeout, bounded exponential-backoff retries for retriable results of
idempotent operations, and a circuit breaker per adapter identifier.
Adapters stay free of policy.
"""

import asyncio
import math
import time
from typing import Optional

from shared.circuit_breaker import CircuitBreakerManager
from shared.errors import ErrorKind
from shared.logging import get_logger
from shared.metrics import MetricsCollector
from shared.retry import retry_on_result

from ..adapters.base import AdapterRequest, BackendAdapter, BackendCallResult
from ..registry.models import IDEMPOTENT_CAPABILITIES, CallPolicy

# Outcomes showing the backend is alive even though the call did not succeed.
BREAKER_NEUTRAL_KINDS = frozenset({ErrorKind.UPSTREAM_REJECTED})


class ReliableInvoker:
    """Wraps single backend invocations with timeout, retry and circuit breaking."""

    def __init__(self, breakers: CircuitBreakerManager, metrics: Optional[MetricsCollector] = None):
        self.breakers = breakers
        self.metrics = metrics
        self.logger = get_logger("gateway.reliability")

    async def invoke(self, adapter: BackendAdapter, request: AdapterRequest, policy: CallPolicy,
                     deadline: Optional[float] = None) -> BackendCallResult:
        """Call ``adapter`` under ``policy``; ``deadline`` is an event-loop timestamp."""
        loop = asyncio.get_running_loop()
        breaker = self.breakers.get_circuit_breaker(
            adapter.adapter_id,
            failure_threshold=policy.failure_threshold,
            recovery_timeout=policy.recovery_timeout_seconds,
        )

        repeatable = request.operation in IDEMPOTENT_CAPABILITIES

        def time_left() -> float:
            return math.inf if deadline is None else deadline - loop.time()

        async def attempt(number: int) -> BackendCallResult:
            budget = min(policy.timeout_seconds, time_left())
            if budget <= 0:
                return BackendCallResult.failure(
                    adapter.adapter_id, ErrorKind.TIMEOUT, "request deadline exceeded", retriable=False
                ).with_attempts(number)

            if not breaker.try_acquire():
                self._count(adapter.adapter_id, ErrorKind.CIRCUIT_OPEN.value)
                return BackendCallResult.failure(
                    adapter.adapter_id, ErrorKind.CIRCUIT_OPEN, "circuit breaker is open"
                ).with_attempts(number)

            result = await self._attempt(adapter, request, budget, breaker)
            return result.with_attempts(number)

        def on_retry(number: int, result: BackendCallResult, delay: float) -> None:
            self.logger.warning(
                "Backend call failed, retrying",
                adapter=adapter.adapter_id,
                attempt=number,
                max_attempts=policy.max_attempts,
                delay=round(delay, 3),
                error_kind=result.error_kind.value,
            )
            if self.metrics:
                self.metrics.increment_counter("backend_retries_total", adapter=adapter.adapter_id)

        return await retry_on_result(
            attempt,
            lambda result: result.retriable and repeatable,
            policy.retry_config(),
            time_left=time_left,
            on_retry=on_retry,
        )

    async def _attempt(self, adapter: BackendAdapter, request: AdapterRequest, budget: float,
                       breaker) -> BackendCallResult:
        started = time.perf_counter()
        try:
            result = await asyncio.wait_for(adapter.invoke(request, budget), timeout=budget)
        except asyncio.TimeoutError:
            result = BackendCallResult.failure(
                adapter.adapter_id, ErrorKind.TIMEOUT, f"no answer within {budget:.3f}s"
            )
        except asyncio.CancelledError:
            # Cancelled by the aggregate deadline or a faster sibling; says
            # nothing about backend health.
            breaker.release_probe()
            raise
        except Exception as exc:
            self.logger.error(
                "Adapter raised unexpectedly",
                adapter=adapter.adapter_id,
                error=str(exc),
                exc_info=True,
            )
            result = BackendCallResult.failure(
                adapter.adapter_id, ErrorKind.MALFORMED_UPSTREAM_RESPONSE, f"adapter error: {exc}"
            )

        if self.metrics:
            self.metrics.observe_histogram(
                "backend_call_duration_seconds", time.perf_counter() - started, adapter=adapter.adapter_id
            )

        if result.ok or result.error_kind in BREAKER_NEUTRAL_KINDS:
            breaker.record_success()
        else:
            breaker.record_failure()

        self._count(adapter.adapter_id, "ok" if result.ok else result.error_kind.value)
        if not result.ok:
            self.logger.info(
                "Backend call failed",
                adapter=adapter.adapter_id,
                error_kind=result.error_kind.value,
                message=result.message,
            )
        return result

    def _count(self, adapter_id: str, outcome: str) -> None:
        if self.metrics:
            self.metrics.increment_counter("backend_calls_total", adapter=adapter_id, outcome=outcome)
