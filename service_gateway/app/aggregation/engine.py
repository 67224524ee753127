"""
Aggregation engine.

Invokes the adapters of a binding through the reliability layer and
combines their results according to the binding's strategy. Mutating
operations are never fanned out: they go to the binding's first-listed
adapter whatever the strategy.
"""

import asyncio
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from shared.errors import AllBackendsFailedError, ErrorKind, PartialFailureError
from shared.logging import get_logger

from ..adapters.base import BackendCallResult
from ..registry.models import AdapterRef, AggregationStrategy, ServiceBinding
from ..registry.registry import RegistrySnapshot
from ..reliability.invoker import ReliableInvoker
from ..routing.context import RequestContext

ROOT_MERGE_KEY = "$"


@dataclass(frozen=True)
class AggregateResult:
    """Payload handed back to the router."""
    payload: Any
    strategy: AggregationStrategy
    adapters: Tuple[str, ...]
    warnings: Tuple[str, ...] = ()


class AggregationEngine:
    """Composes responses from the adapters of a service binding."""

    def __init__(self, invoker: ReliableInvoker):
        self.invoker = invoker
        self.logger = get_logger("gateway.aggregation")

    async def execute(self, binding: ServiceBinding, context: RequestContext,
                      snapshot: RegistrySnapshot) -> AggregateResult:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + snapshot.reliability.request_deadline_seconds

        if binding.strategy is AggregationStrategy.SINGLE or context.mutating:
            if context.mutating and len(binding.adapters) > 1:
                self.logger.info(
                    "Routing mutating operation to primary adapter",
                    method=context.method.value,
                    resource=context.resource,
                    adapter=binding.primary.adapter_id,
                )
            return await self._single(binding, context, snapshot, deadline)

        if binding.strategy is AggregationStrategy.FAN_OUT_MERGE:
            return await self._fan_out_merge(binding, context, snapshot, deadline)
        return await self._fan_out_first_success(binding, context, snapshot, deadline)

    def _call(self, ref: AdapterRef, context: RequestContext, snapshot: RegistrySnapshot, deadline: float):
        return self.invoker.invoke(
            snapshot.adapter(ref.adapter_id),
            context.adapter_request(),
            snapshot.policy_for(ref.adapter_id),
            deadline=deadline,
        )

    async def _single(self, binding: ServiceBinding, context: RequestContext,
                      snapshot: RegistrySnapshot, deadline: float) -> AggregateResult:
        ref = binding.primary
        result = await self._call(ref, context, snapshot, deadline)
        if not result.ok:
            raise result.to_error()
        return AggregateResult(payload=result.payload, strategy=binding.strategy, adapters=(ref.adapter_id,))

    async def _fan_out_merge(self, binding: ServiceBinding, context: RequestContext,
                             snapshot: RegistrySnapshot, deadline: float) -> AggregateResult:
        loop = asyncio.get_running_loop()
        tasks = {
            ref.adapter_id: asyncio.create_task(self._call(ref, context, snapshot, deadline))
            for ref in binding.adapters
        }
        try:
            await asyncio.wait(tasks.values(), timeout=max(0.0, deadline - loop.time()))
        finally:
            # Calls still running at the deadline count as timed out.
            await _cancel([t for t in tasks.values() if not t.done()])

        results = {adapter_id: _task_result(adapter_id, task) for adapter_id, task in tasks.items()}
        merged, warnings = merge_payloads(binding.adapters, results)

        failed_required = [
            ref.adapter_id for ref in binding.adapters
            if ref.required and not results[ref.adapter_id].ok
        ]
        if failed_required:
            reasons = {a: results[a].reason for a in failed_required}
            self.logger.warning(
                "Required backends failed during fan-out",
                resource=context.resource,
                failed=failed_required,
            )
            succeeded = any(r.ok for r in results.values())
            raise PartialFailureError(
                failed_required, reasons, partial=merged if succeeded else None, succeeded=succeeded
            )

        return AggregateResult(
            payload=merged,
            strategy=binding.strategy,
            adapters=binding.adapter_ids,
            warnings=tuple(warnings),
        )

    async def _fan_out_first_success(self, binding: ServiceBinding, context: RequestContext,
                                     snapshot: RegistrySnapshot, deadline: float) -> AggregateResult:
        loop = asyncio.get_running_loop()
        # Started in declared priority order; dict order is that order.
        tasks = {
            ref.adapter_id: asyncio.create_task(self._call(ref, context, snapshot, deadline))
            for ref in binding.adapters
        }
        priority = {task: adapter_id for adapter_id, task in tasks.items()}
        failures: Dict[str, BackendCallResult] = {}
        pending = set(tasks.values())
        try:
            while pending:
                done, pending = await asyncio.wait(
                    pending,
                    timeout=max(0.0, deadline - loop.time()),
                    return_when=asyncio.FIRST_COMPLETED,
                )
                if not done:
                    break
                # Several may finish together; prefer the higher-priority one.
                for task in sorted(done, key=lambda t: binding.adapter_ids.index(priority[t])):
                    adapter_id = priority[task]
                    result = _task_result(adapter_id, task)
                    if result.ok:
                        return AggregateResult(
                            payload=result.payload,
                            strategy=binding.strategy,
                            adapters=(adapter_id,),
                        )
                    failures[adapter_id] = result
        finally:
            await _cancel([t for t in tasks.values() if not t.done()])

        reasons = {}
        for adapter_id in binding.adapter_ids:
            result = failures.get(adapter_id)
            reasons[adapter_id] = result.reason if result else f"{ErrorKind.TIMEOUT.value}: request deadline exceeded"
        self.logger.warning("Every backend failed", resource=context.resource, adapters=list(reasons))
        raise AllBackendsFailedError(reasons)


async def _cancel(tasks: Iterable[asyncio.Task]) -> None:
    """Cancel in-flight calls and wait for them to unwind."""
    tasks = list(tasks)
    for task in tasks:
        task.cancel()
    if tasks:
        await asyncio.gather(*tasks, return_exceptions=True)


def _task_result(adapter_id: str, task: asyncio.Task) -> BackendCallResult:
    if task.cancelled() or not task.done():
        return BackendCallResult.failure(
            adapter_id, ErrorKind.TIMEOUT, "request deadline exceeded", retriable=False
        )
    return task.result()


def merge_payloads(refs: Sequence[AdapterRef],
                   results: Dict[str, BackendCallResult]) -> Tuple[Dict[str, Any], List[str]]:
    """Merge successful payloads in binding order.

    Each payload lands under its merge key (dotted path) or its adapter id;
    the key ``$`` spreads an object payload into the root. On a key clash
    the adapter listed first in the binding wins and the later payload is
    dropped with a warning. Optional adapter failures become warnings.
    """
    merged: Dict[str, Any] = {}
    owners: Dict[str, str] = {}
    warnings: List[str] = []

    for ref in refs:
        result = results[ref.adapter_id]
        if not result.ok:
            if not ref.required:
                warnings.append(f"{ref.adapter_id}: {result.reason}")
            continue

        key = ref.merge_key or ref.adapter_id
        if key == ROOT_MERGE_KEY and isinstance(result.payload, dict):
            for field_name, value in result.payload.items():
                owner = owners.get(field_name) or next(
                    (o for k, o in owners.items() if k.startswith(f"{field_name}.")), None
                )
                if owner is not None:
                    warnings.append(f"{ref.adapter_id}: field '{field_name}' already provided by '{owner}'")
                    continue
                merged[field_name] = value
                owners[field_name] = ref.adapter_id
            continue
        if key == ROOT_MERGE_KEY:
            key = ref.adapter_id

        owner = _claim(merged, owners, key, result.payload, ref.adapter_id)
        if owner is not None:
            warnings.append(f"{ref.adapter_id}: merge key '{key}' already provided by '{owner}'")

    return merged, warnings


def _claim(merged: Dict[str, Any], owners: Dict[str, str], key: str, payload: Any,
           adapter_id: str) -> Optional[str]:
    """Place ``payload`` at dotted ``key``; returns the existing owner on conflict."""
    parts = key.split(".")
    for depth in range(1, len(parts) + 1):
        prefix = ".".join(parts[:depth])
        if prefix in owners:
            return owners[prefix]
    nested_owner = next((o for k, o in owners.items() if k.startswith(f"{key}.")), None)
    if nested_owner is not None:
        return nested_owner

    node = merged
    for part in parts[:-1]:
        node = node.setdefault(part, {})
    node[parts[-1]] = payload
    owners[key] = adapter_id
    return None
