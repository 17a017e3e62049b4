"""Dispatching of chain steps.

A step is never awaited by the step that dispatches it. Two transports exist:

- ``ChainQueue``: in-process asyncio queue drained by a small worker pool.
  A failing step is retried with exponential backoff.
- ``HttpSelfDispatcher``: fire-and-forget POST to our own ``/api/fraud-check``
  endpoint, for deployments where each request may land on another instance.
  Dispatch is retried when the request cannot be delivered.

When a step finally cannot be delivered or run, the error is written to the
run's ``last_error`` and the reconciler picks the run up later.
"""

import asyncio
import logging
from typing import Awaitable, Callable, Optional, Set

import httpx
from tenacity import (
    retry,
    retry_if_exception_type,
    retry_if_not_exception_type,
    stop_after_attempt,
    wait_exponential,
)
from fraudcheck.errors import DispatchError, FraudCheckError, StaleStepError
from fraudcheck.schemas import StepPayload

logger = logging.getLogger(__name__)

StepRunner = Callable[[StepPayload], Awaitable[object]]
FailureRecorder = Callable[[str, str], Awaitable[None]]

# Strong references so fire-and-forget tasks are not garbage collected mid-flight
_background_tasks: Set[asyncio.Task] = set()


def spawn(coro) -> asyncio.Task:
    task = asyncio.get_running_loop().create_task(coro)
    _background_tasks.add(task)
    task.add_done_callback(_background_tasks.discard)
    return task


class ChainDispatcher:
    """Schedules the next chain step without waiting for it."""

    def __init__(
        self,
        retries: int = 2,
        backoff_seconds: float = 2.0,
        delay_seconds: float = 0.0,
        on_failure: Optional[FailureRecorder] = None,
    ):
        self.retries = retries
        self.backoff_seconds = backoff_seconds
        self.delay_seconds = delay_seconds
        self.on_failure = on_failure

    async def dispatch(self, payload: StepPayload) -> None:
        raise NotImplementedError

    async def start(self) -> None:
        pass

    async def stop(self) -> None:
        pass

    def _retrying(self, retry_on, payload: StepPayload):
        """Decorator retrying up to ``retries`` extra times with exponential backoff."""
        def log_retry(retry_state):
            logger.warning(
                f"[Dispatch] Retry {retry_state.attempt_number}/{self.retries} for step "
                f"{payload.current_index} of verification {payload.verification_id}: "
                f"{retry_state.outcome.exception()}"
            )

        return retry(
            stop=stop_after_attempt(self.retries + 1),
            wait=wait_exponential(multiplier=self.backoff_seconds),
            retry=retry_on,
            before_sleep=log_retry,
            reraise=True,
        )

    async def _give_up(self, payload: StepPayload, error: str) -> None:
        logger.error(
            f"[Dispatch] Step {payload.current_index + 1}/{len(payload.document_ids)} of "
            f"verification {payload.verification_id} abandoned: {error}"
        )
        if self.on_failure is None:
            return
        try:
            await self.on_failure(payload.verification_id, error)
        except Exception:
            logger.exception(f"[Dispatch] Could not record failure on {payload.verification_id}")


class ChainQueue(ChainDispatcher):
    """In-process step queue with a worker pool."""

    def __init__(self, step_runner: StepRunner, workers: int = 2, **kwargs):
        super().__init__(**kwargs)
        self.step_runner = step_runner
        self.workers = max(1, workers)
        self.queue: "asyncio.Queue[StepPayload]" = asyncio.Queue()
        self._tasks = []

    async def start(self) -> None:
        if self._tasks:
            return
        self._tasks = [spawn(self._worker(n)) for n in range(self.workers)]
        logger.info(f"[Dispatch] Chain queue started with {self.workers} workers")

    async def stop(self) -> None:
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        logger.info("[Dispatch] Chain queue stopped")

    async def dispatch(self, payload: StepPayload) -> None:
        if not self._tasks:
            await self.start()
        self.queue.put_nowait(payload)

    async def join(self) -> None:
        """Wait until every queued step (and the steps they enqueue) is done."""
        await self.queue.join()

    async def _worker(self, number: int) -> None:
        while True:
            payload = await self.queue.get()
            try:
                await self._run(payload)
            finally:
                self.queue.task_done()

    async def _run(self, payload: StepPayload) -> None:
        if self.delay_seconds:
            await asyncio.sleep(self.delay_seconds)

        # Rejected steps are final; anything else (locked DB, provider hiccup) is retried
        run_step = self._retrying(retry_if_not_exception_type(FraudCheckError), payload)(self.step_runner)
        try:
            await run_step(payload)
        except StaleStepError as e:
            logger.warning(f"[Dispatch] Dropping stale step: {e.message}")
        except FraudCheckError as e:
            await self._give_up(payload, e.message)
        except Exception as e:
            logger.exception(f"[Dispatch] Step {payload.current_index} of {payload.verification_id} failed")
            await self._give_up(payload, str(e) or type(e).__name__)


class HttpSelfDispatcher(ChainDispatcher):
    """Re-invokes our own endpoint for every step."""

    def __init__(
        self,
        base_url: str,
        timeout: float = 10.0,
        headers: Optional[dict] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        **kwargs,
    ):
        super().__init__(**kwargs)
        self.url = f"{base_url.rstrip('/')}/api/fraud-check"
        self.timeout = timeout
        self.headers = headers or {}
        self.transport = transport

    async def dispatch(self, payload: StepPayload) -> None:
        spawn(self._send(payload))

    async def _send(self, payload: StepPayload) -> None:
        if self.delay_seconds:
            await asyncio.sleep(self.delay_seconds)

        post = self._retrying(retry_if_exception_type((httpx.TransportError, DispatchError)), payload)(self._post)
        try:
            await post(payload)
        except httpx.TransportError as e:
            await self._give_up(payload, f"transport error: {e}")
        except DispatchError as e:
            await self._give_up(payload, str(e))

    async def _post(self, payload: StepPayload) -> None:
        """One delivery attempt. Raises only for failures worth retrying."""
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                response = await client.post(self.url, json=payload.to_request_body(), headers=self.headers)
        except httpx.ConnectTimeout:
            raise
        except httpx.TimeoutException:
            # Delivered; the step keeps running on the receiving side
            return

        if response.status_code >= 500:
            raise DispatchError(f"HTTP {response.status_code}: {response.text[:300]}")
        if response.status_code >= 400:
            logger.warning(
                f"[Dispatch] Step {payload.current_index} of {payload.verification_id} "
                f"rejected with HTTP {response.status_code}: {response.text[:300]}"
            )


_dispatcher: Optional[ChainDispatcher] = None


def set_dispatcher(dispatcher: Optional[ChainDispatcher]) -> None:
    global _dispatcher
    _dispatcher = dispatcher


def get_dispatcher() -> ChainDispatcher:
    """Get the process-wide dispatcher configured at startup."""
    if _dispatcher is None:
        raise RuntimeError("Chain dispatcher not configured")
    return _dispatcher
