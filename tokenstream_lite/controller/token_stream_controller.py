"""
Single-flight token stream controller.

The controller is an asyncio actor in front of one InferenceSession:

  - at most one request is in flight; while busy, a new submission takes
    the single pending slot (displacing any earlier pending request) and
    raises the cancel flag of the in-flight one
  - the cancel flag is only checked between generation steps
  - every session call runs on one dedicated worker thread, so the event
    loop never blocks and the session only ever has one caller
  - events are broadcast to subscribers in order; consumers filter by
    request id
"""

import asyncio
import functools
import logging
import time
from concurrent.futures import ThreadPoolExecutor
from typing import AsyncIterator, Callable, List, Optional

from tokenstream_lite.config import ControllerConfig, SessionConfig
from tokenstream_lite.controller.events import (
    CancelledEvent,
    DoneEvent,
    ErrorEvent,
    StreamEvent,
    TokenEvent,
    WarmupEvent,
)
from tokenstream_lite.controller.request import ControllerState, Request
from tokenstream_lite.core.inference_session import InferenceSession
from tokenstream_lite.prompt.budget_builder import PromptBudgetBuilder
from tokenstream_lite.runtime.base import ModelRuntime
from tokenstream_lite.streaming.stop_buffer import StopSequenceBuffer


SessionFactory = Callable[[str], InferenceSession]


class TokenStreamController:
    """Schedules requests onto one inference session and streams events.

    Args:
        session_factory: Creates a session for a model path (defaults to
            InferenceSession.init with ``session_config`` and ``runtime``)
        config: Request-level defaults, stop markers and prompt budget
        session_config: Session configuration for the default factory
        runtime: Model runtime for the default factory
        logger: Logger to use instead of the module logger
    """

    def __init__(
        self,
        session_factory: Optional[SessionFactory] = None,
        config: Optional[ControllerConfig] = None,
        session_config: Optional[SessionConfig] = None,
        runtime: Optional[ModelRuntime] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.log = logger or logging.getLogger(__name__)
        self.config = config or ControllerConfig()
        if session_factory is None:
            session_factory = functools.partial(
                InferenceSession.init,
                config=session_config or SessionConfig(context_size=self.config.context_size),
                runtime=runtime,
                logger=logger,
            )
        self.session_factory = session_factory

        self.state = ControllerState.IDLE
        self.session: Optional[InferenceSession] = None
        self.model_path: Optional[str] = None

        self._in_flight: Optional[Request] = None
        self._pending: Optional[Request] = None
        self._pending_preload: Optional[str] = None
        self._cancel_requested = False

        self._subscribers: List[asyncio.Queue] = []
        self._executor: Optional[ThreadPoolExecutor] = None
        self._wakeup: Optional[asyncio.Event] = None
        self._task: Optional[asyncio.Task] = None

    # Lifecycle

    async def start(self) -> None:
        if self._task is not None:
            return
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="tokenstream-worker")
        self._wakeup = asyncio.Event()
        self._task = asyncio.create_task(self._loop())

    async def stop(self) -> None:
        """Stop the actor, cancel outstanding requests and free the session."""
        if self._task is None:
            return

        self._drop_pending()
        self._cancel_requested = True
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None

        # Queued behind any session call still running on the worker
        await self._call(self._release_session)
        self._executor.shutdown(wait=True)
        self._executor = None
        self.state = ControllerState.IDLE

    @property
    def is_running(self) -> bool:
        return self._task is not None

    @property
    def is_busy(self) -> bool:
        return self._in_flight is not None

    @property
    def in_flight(self) -> Optional[Request]:
        return self._in_flight

    @property
    def pending(self) -> Optional[Request]:
        return self._pending

    # Subscriptions

    def subscribe(self) -> asyncio.Queue:
        """Return a queue receiving every event emitted from now on."""
        queue: asyncio.Queue = asyncio.Queue()
        self._subscribers.append(queue)
        return queue

    def unsubscribe(self, queue: asyncio.Queue) -> None:
        if queue in self._subscribers:
            self._subscribers.remove(queue)

    def _emit(self, event: StreamEvent) -> None:
        for queue in self._subscribers:
            queue.put_nowait(event)

    # Control plane

    def submit(self, request: Request) -> None:
        """Schedule ``request``; never blocks.

        While a request is in flight the new one replaces the pending slot
        and the in-flight request is asked to cancel.
        """
        self._require_running()
        displaced = self._pending
        self._pending = request
        if displaced is not None:
            self.log.info("Request %s superseded by %s", displaced.request_id, request.request_id)
            self._emit(CancelledEvent(request_id=displaced.request_id))
        if self._in_flight is not None:
            self._cancel_requested = True
        self._wakeup.set()

    def cancel(self, request_id: Optional[str] = None) -> None:
        """Cancel the pending request and the in-flight one.

        Args:
            request_id: Only cancel the request with this id, if given
        """
        if self._pending is not None and request_id in (None, self._pending.request_id):
            self._drop_pending()
        if self._in_flight is not None and request_id in (None, self._in_flight.request_id):
            self._cancel_requested = True

    def preload(self, model_path: str) -> None:
        """Load ``model_path`` ahead of the first request; answered by a WarmupEvent."""
        self._require_running()
        self._pending_preload = model_path
        self._wakeup.set()

    async def stream(
        self, request: Request, inactivity_timeout: Optional[float] = None
    ) -> AsyncIterator[StreamEvent]:
        """Submit ``request`` and yield its events up to and including the terminal one.

        If no event for the request arrives within ``inactivity_timeout``
        seconds the request is cancelled once, and the resulting terminal
        event is still yielded.
        """
        queue = self.subscribe()
        timeout = inactivity_timeout
        try:
            self.submit(request)
            while True:
                try:
                    event = await asyncio.wait_for(queue.get(), timeout=timeout)
                except asyncio.TimeoutError:
                    self.log.warning(
                        "No event for %s within %.1fs, cancelling", request.request_id, inactivity_timeout
                    )
                    self.cancel(request.request_id)
                    timeout = None
                    continue
                if event.request_id != request.request_id:
                    continue
                yield event
                if event.is_terminal:
                    return
        finally:
            self.unsubscribe(queue)

    def _require_running(self) -> None:
        if self._task is None:
            raise RuntimeError("TokenStreamController is not started")

    def _drop_pending(self) -> None:
        if self._pending is not None:
            self.log.info("Dropping pending request %s", self._pending.request_id)
            self._emit(CancelledEvent(request_id=self._pending.request_id))
            self._pending = None

    # Actor

    async def _call(self, fn, *args):
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self._executor, functools.partial(fn, *args))

    async def _loop(self) -> None:
        while True:
            await self._wakeup.wait()
            self._wakeup.clear()
            while True:
                if self._pending is not None:
                    request = self._pending
                    self._pending = None
                    await self._process(request)
                elif self._pending_preload is not None:
                    model_path = self._pending_preload
                    self._pending_preload = None
                    await self._warmup(model_path)
                else:
                    break

    async def _warmup(self, model_path: str) -> None:
        self.state = ControllerState.LOADING
        try:
            await self._call(self._ensure_model, model_path)
        except Exception as e:
            self.log.error("Preload of %s failed: %s", model_path, e)
            self._emit(WarmupEvent(model_path=model_path, error=str(e)))
        else:
            self._emit(WarmupEvent(model_path=model_path))
        finally:
            self.state = ControllerState.IDLE

    async def _process(self, request: Request) -> None:
        self._in_flight = request
        self._cancel_requested = False
        self.log.info("Processing request %s for %s", request.request_id, request.model_path)

        try:
            if request.model_path != self.model_path:
                self.state = ControllerState.LOADING
                await self._call(self._ensure_model, request.model_path)

            self.state = ControllerState.PREPARING
            await self._call(self._prepare, request)

            self.state = ControllerState.GENERATING
            await self._generate(request)
        except asyncio.CancelledError:
            self._emit(CancelledEvent(request_id=request.request_id))
            raise
        except Exception as e:
            self.log.error("Request %s failed: %s", request.request_id, e)
            self._emit(ErrorEvent(request_id=request.request_id, message=str(e)))
        finally:
            self._in_flight = None
            self._cancel_requested = False
            self.state = ControllerState.IDLE

    async def _generate(self, request: Request) -> None:
        buffer = StopSequenceBuffer(self.config.stop_markers)
        started = time.perf_counter()
        n_tokens = 0

        for _ in range(request.max_tokens):
            if self._cancel_requested:
                self.state = ControllerState.DRAINING
                self.log.info("Request %s cancelled", request.request_id)
                self._emit(CancelledEvent(request_id=request.request_id))
                return

            piece = await self._call(self.session.get_next_token, request.temperature, request.top_p)
            if piece is None:
                self.log.info("Request %s reached end of generation", request.request_id)
                break

            text = buffer.feed(piece)
            if buffer.stopped:
                self.log.info("Request %s hit a stop marker", request.request_id)
                break
            if text:
                self._emit(TokenEvent(request_id=request.request_id, text=text))
            n_tokens += 1

        elapsed = time.perf_counter() - started
        tokens_per_second = n_tokens / elapsed if elapsed > 0 else 0.0
        self.log.info("Request %s done: %d tokens, %.2f tok/s", request.request_id, n_tokens, tokens_per_second)
        self._emit(DoneEvent(request_id=request.request_id, tokens_per_second=tokens_per_second))

    # Worker-thread helpers; only ever run on the executor

    def _ensure_model(self, model_path: str) -> None:
        if self.session is not None and self.model_path == model_path:
            return
        self.log.info("Swapping model %s -> %s", self.model_path, model_path)
        self._release_session()
        self.session = self.session_factory(model_path)
        self.model_path = model_path

    def _release_session(self) -> None:
        if self.session is not None:
            self.session.free()
        self.session = None
        self.model_path = None

    def _prepare(self, request: Request) -> None:
        if request.has_history:
            builder = PromptBudgetBuilder(
                self.session.tokenize,
                context_size=self.session.n_ctx,
                reserved_for_generation=self.config.reserved_for_generation,
            )
            prompt = builder.build(request.turns, request.system_prompt)
            self.log.info("Built budgeted prompt: %d chars", len(prompt))
        else:
            prompt = request.prompt
        self.session.prepare_prompt(prompt)
