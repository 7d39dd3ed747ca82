"""
Coordinator - Debounce, dedup, cancellation and timeout for suggestion requests

One coordinator serves one client selection lane: at most one logical
request is outstanding at a time. Rapid repeated calls are coalesced on
the trailing edge of a quiet window; a call for a different request
supersedes whatever was pending or in flight. Identical requests from
other coordinators share one computation through the InFlightRegistry.

Superseded and cancelled calls raise CancellationError; callers treat it
as a silent no-op.

Author: Olivier Vitrac, PhD, HDR | olivier.vitrac@adservio.fr | Adservio | 2025-12-04
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Hashable, List, Optional

from promptlens_core.errors import CancellationError, SuggestionError, SuggestionTimeoutError
from promptlens_core.pipeline import PipelineContext, SuggestionPipeline
from promptlens_core.registry import InFlight, InFlightRegistry
from promptlens_core.resilience import with_timeout
from promptlens_core.types import SuggestionRequest, SuggestionResult, SuggestionSource

logger = logging.getLogger(__name__)

__all__ = ["RequestCoordinator", "InFlightRegistry"]


@dataclass(eq=False)
class _Lane:
    """The one logical request a coordinator is working on."""
    req: SuggestionRequest
    identity: Hashable
    waiters: List[asyncio.Future] = field(default_factory=list)
    timer: Optional[asyncio.TimerHandle] = None
    task: Optional[asyncio.Task] = None
    entry: Optional[InFlight] = None
    settled: bool = False

    @property
    def dispatched(self) -> bool:
        return self.task is not None


class RequestCoordinator:
    """
    Decides whether and when a suggestion request reaches the pipeline.

    Args:
        context: shared PipelineContext
        pipeline: pipeline to run (built from context if None)
        debounce_ms: quiet window before dispatch
        timeout_ms: hard ceiling from dispatch to result
    """

    def __init__(
        self,
        context: PipelineContext,
        pipeline: Optional[SuggestionPipeline] = None,
        debounce_ms: Optional[int] = None,
        timeout_ms: Optional[int] = None,
    ):
        self.context = context
        self.pipeline = pipeline or SuggestionPipeline(context)
        settings = context.config.coordinator
        self.debounce_ms = settings.debounce_ms if debounce_ms is None else debounce_ms
        self.timeout_ms = settings.timeout_ms if timeout_ms is None else timeout_ms
        self._lane: Optional[_Lane] = None
        self._disposed = False

    async def request_suggestions(self, req: SuggestionRequest) -> SuggestionResult:
        """
        Get suggestions for a request.

        Raises:
            ValidationError: malformed request
            CancellationError: superseded by a newer call, or cancel()/dispose()
            SuggestionTimeoutError: no result within timeout_ms of dispatch
            GenerationFailure: both generation strategies failed
        """
        if self._disposed:
            raise CancellationError("Coordinator disposed")
        req.validate()
        loop = asyncio.get_running_loop()
        identity = req.identity()
        lane = self._lane

        if lane is not None and lane.identity == identity and not lane.settled:
            if not lane.dispatched:
                self._schedule(lane, loop)
            waiter = loop.create_future()
            lane.waiters.append(waiter)
            logger.debug(f"Joined {'in-flight' if lane.dispatched else 'pending'} request")
            return await self._wait(lane, waiter)

        if lane is not None:
            self._cancel_lane(lane, "superseded")

        if not req.debug:
            key = self.context.key_factory.build_key(req)
            hit = self.context.cache.peek_local(key)
            if hit is not None:
                self.context.monitor.record_cache_hit("fast")
                return hit.with_source(SuggestionSource.CACHE, cache_tier="fast", cache_key=key, latency_ms=0.0)

        lane = _Lane(req=req, identity=identity)
        self._lane = lane
        waiter = loop.create_future()
        lane.waiters.append(waiter)
        self._schedule(lane, loop)
        return await self._wait(lane, waiter)

    def cancel(self):
        """Cancel whatever is pending or in flight."""
        if self._lane is not None:
            self._cancel_lane(self._lane, "cancelled")

    def dispose(self):
        """Cancel everything and refuse further requests."""
        self.cancel()
        self._disposed = True

    def in_flight(self, req: SuggestionRequest) -> bool:
        """True when a computation for this request's identity is running anywhere."""
        return req.identity() in self.context.registry

    @property
    def pending(self) -> bool:
        return self._lane is not None and not self._lane.settled

    # ------------------------------------------------------------------

    def _schedule(self, lane: _Lane, loop: asyncio.AbstractEventLoop):
        """(Re)start the trailing-edge quiet window."""
        if lane.timer is not None:
            lane.timer.cancel()
        lane.timer = loop.call_later(self.debounce_ms / 1000.0, self._dispatch, lane)

    def _dispatch(self, lane: _Lane):
        lane.timer = None
        if lane.settled:
            return
        lane.task = asyncio.ensure_future(self._run_lane(lane))
        lane.task.add_done_callback(lambda _t: self._on_lane_done(lane))

    def _on_lane_done(self, lane: _Lane):
        if not lane.settled:
            self._settle(lane, error=CancellationError("Request cancelled"))

    async def _run_lane(self, lane: _Lane):
        registry = self.context.registry
        entry, created = registry.acquire(lane.identity, lambda: asyncio.ensure_future(self.pipeline.run(lane.req)))
        lane.entry = entry
        if not created:
            logger.debug("Deduplicated against an in-flight computation")

        try:
            result = await with_timeout(asyncio.shield(entry.task), self.timeout_ms)
        except SuggestionTimeoutError as e:
            registry.discard(entry)
            registry.release(entry)
            logger.warning(f"Suggestion request timed out after {self.timeout_ms}ms")
            self.context.monitor.record_error(e.reason)
            self._settle(lane, error=e)
            return
        except asyncio.CancelledError:
            registry.release(entry)
            raise
        except SuggestionError as e:
            registry.release(entry)
            self.context.monitor.record_error(e.reason)
            self._settle(lane, error=e)
            return
        except Exception as e:
            registry.release(entry)
            logger.error(f"Suggestion pipeline failed: {e}")
            self.context.monitor.record_error("internal")
            self._settle(lane, error=e)
            return

        registry.release(entry)
        self._settle(lane, result=result)

    def _settle(self, lane: _Lane, result: Optional[SuggestionResult] = None, error: Optional[BaseException] = None):
        lane.settled = True
        if self._lane is lane:
            self._lane = None
        for waiter in lane.waiters:
            if waiter.done():
                continue
            if error is not None:
                waiter.set_exception(error)
            else:
                waiter.set_result(result)

    def _cancel_lane(self, lane: _Lane, reason: str):
        if lane.settled:
            return
        logger.debug(f"Cancelling {'in-flight' if lane.dispatched else 'pending'} request: {reason}")
        if lane.timer is not None:
            lane.timer.cancel()
            lane.timer = None
        if lane.task is not None and not lane.task.done():
            lane.task.cancel()
        self._settle(lane, error=CancellationError(f"Request {reason}", reason=reason))

    async def _wait(self, lane: _Lane, waiter: asyncio.Future) -> SuggestionResult:
        try:
            return await waiter
        except asyncio.CancelledError:
            # Caller went away; stop the work once nobody else waits for it.
            if waiter in lane.waiters:
                lane.waiters.remove(waiter)
            if not lane.waiters:
                self._cancel_lane(lane, "abandoned")
            raise
