"""Crawl engine: frontier dispatch, bounded concurrency, retries, stage routing."""

from __future__ import annotations

import contextvars
import itertools
import time
import uuid
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from enum import Enum
from queue import Queue
from threading import Event, Lock
from typing import TYPE_CHECKING, Callable, Iterable

import structlog

from ..config import EngineSettings
from ..errors import EngineStateError, InvariantViolation, ParseError, StageError
from ..pipeline.base import Stage, spider_name
from ..pipeline.chain import StageChain, build_chain
from ..types import Emit, FetchRequest, FetchResponse, Follow
from .frontier import Frontier
from .retry import RetryPolicy
from .stats import CrawlStats
from .thread_pool import ThreadPoolManager

if TYPE_CHECKING:  # pragma: no cover
    from ..spiders.base import Spider


class EngineState(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    DRAINING = "draining"
    STOPPED = "stopped"


class EventKind(str, Enum):
    REQUEST_SENT = "request_sent"
    RESPONSE_RECEIVED = "response_received"
    RETRY = "retry"
    RECORD = "record"
    DISCOVERED = "discovered"
    ABANDONED = "abandoned"
    DONE = "done"


@dataclass(frozen=True, slots=True)
class TaskEvent:
    """Message from a worker task to the controller."""

    task_id: int
    kind: EventKind
    request: FetchRequest | None = None
    accepted: bool = False
    error: BaseException | None = None


class CrawlerEngine:
    """Drive a spider until its frontier is exhausted.

    A single controller (the thread calling :meth:`crawl`) owns the frontier,
    the in-flight set and the stats. Worker tasks run on a thread pool sized to
    the concurrency limit and report back exclusively through a message queue:
    discovered requests, record outcomes and completion. Records are pushed
    through the stage chain on the worker that parsed them.
    """

    def __init__(
        self,
        settings: EngineSettings | None = None,
        stages: Iterable[Stage] | StageChain | None = None,
        *,
        thread_pool: ThreadPoolManager | None = None,
        retry_policy: RetryPolicy | None = None,
        logger: structlog.BoundLogger | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.settings = settings or EngineSettings()
        if stages is None:
            stages = self.settings.build_stages()
        self.chain = build_chain(stages)
        self.retry_policy = retry_policy or self.settings.retry_policy()
        self.thread_pool = thread_pool or ThreadPoolManager(self.settings.concurrency_limit)
        self.logger = logger or structlog.get_logger("crawlflow.engine")
        self.frontier = Frontier()
        self._sleep = sleep
        self._stats = CrawlStats()
        self._stats_lock = Lock()
        self._state = EngineState.IDLE
        self._stop_event = Event()
        self._events: Queue[TaskEvent] = Queue()
        self._in_flight: dict[int, FetchRequest] = {}
        self._task_ids = itertools.count(1)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    @property
    def state(self) -> EngineState:
        return self._state

    @property
    def stats(self) -> CrawlStats:
        with self._stats_lock:
            return self._stats.snapshot()

    @property
    def in_flight(self) -> int:
        return len(self._in_flight)

    @property
    def concurrency_limit(self) -> int:
        return self.settings.concurrency_limit

    def stop(self) -> None:
        """Stop dispatching new requests; in-flight tasks run to completion."""

        if self._state is not EngineState.RUNNING:
            return
        self._stop_event.set()
        self._state = EngineState.DRAINING
        self.logger.info("crawl_stopping", in_flight=len(self._in_flight), pending=len(self.frontier))

    def crawl(self, spider: "Spider") -> CrawlStats:
        """Run ``spider`` to completion and return the final stats."""

        if self._state in (EngineState.RUNNING, EngineState.DRAINING):
            raise EngineStateError(f"engine is already {self._state.value}")
        name = spider_name(spider)
        run_id = uuid.uuid4().hex[:12]
        log = self.logger.bind(spider=name)
        self._reset()
        self._state = EngineState.RUNNING

        # Worker tasks run inside a copy of this context, so every event
        # logged for the crawl carries spider and run_id.
        with structlog.contextvars.bound_contextvars(spider=name, run_id=run_id):
            log.info(
                "crawl_started",
                concurrency=self.concurrency_limit,
                retry_limit=self.retry_policy.retry_limit,
                delay=self.retry_policy.delay,
                stages=self.chain.names,
            )
            pool_key = f"{name}:{run_id}"
            opened = False
            failure: BaseException | None = None
            try:
                self.chain.open_all(spider)
                opened = True
                self.frontier.extend(spider.initial_requests())
                executor = self.thread_pool.get(pool_key, max_workers=self.concurrency_limit)
                self._run_loop(executor, spider, log)
            except BaseException as exc:
                failure = exc
                raise
            finally:
                self._finish(spider, pool_key, log, opened=opened, failure=failure)
        return self.stats

    # ------------------------------------------------------------------
    # Controller
    # ------------------------------------------------------------------
    def _reset(self) -> None:
        with self._stats_lock:
            self._stats.reset()
        self.frontier.clear()
        self._in_flight.clear()
        self._stop_event.clear()
        self._events = Queue()

    def _run_loop(self, executor: ThreadPoolExecutor, spider: "Spider", log: structlog.BoundLogger) -> None:
        limit = self.concurrency_limit
        fatal: BaseException | None = None
        while True:
            while (
                fatal is None
                and not self._stop_event.is_set()
                and self.frontier
                and len(self._in_flight) < limit
            ):
                self._dispatch(executor, spider, self.frontier.pop(), log)
            if len(self._in_flight) > limit:
                raise InvariantViolation(
                    f"{len(self._in_flight)} tasks in flight exceeds limit {limit}"
                )
            if not self._in_flight:
                break
            error = self._apply(self._events.get(), log)
            if error is not None and fatal is None:
                fatal = error
                log.error("crawl_aborting", error=str(error), in_flight=len(self._in_flight))
                self._stop_event.set()
                self._state = EngineState.DRAINING
        if fatal is not None:
            raise fatal

    def _dispatch(
        self,
        executor: ThreadPoolExecutor,
        spider: "Spider",
        request: FetchRequest,
        log: structlog.BoundLogger,
    ) -> None:
        task_id = next(self._task_ids)
        self._in_flight[task_id] = request
        log.debug("request_dispatched", url=request.url, task=task_id, in_flight=len(self._in_flight))
        context = contextvars.copy_context()
        executor.submit(context.run, self._run_task, task_id, spider, request, log)

    def _apply(self, event: TaskEvent, log: structlog.BoundLogger) -> BaseException | None:
        """Fold one worker message into controller state; return a fatal error if reported."""

        kind = event.kind
        if kind is EventKind.DISCOVERED:
            if self._state is EngineState.RUNNING and event.request is not None:
                self.frontier.push(event.request)
            else:
                log.debug("request_discarded", url=getattr(event.request, "url", None))
            return None
        if kind is EventKind.DONE:
            if self._in_flight.pop(event.task_id, None) is None:
                raise InvariantViolation(f"task {event.task_id} completed twice")
            return event.error
        with self._stats_lock:
            if kind is EventKind.REQUEST_SENT:
                self._stats.requests_sent += 1
            elif kind is EventKind.RESPONSE_RECEIVED:
                self._stats.responses_received += 1
            elif kind is EventKind.RETRY:
                self._stats.retries += 1
            elif kind is EventKind.RECORD:
                if event.accepted:
                    self._stats.records_accepted += 1
                else:
                    self._stats.records_dropped += 1
            elif kind is EventKind.ABANDONED:
                self._stats.requests_abandoned += 1
        return None

    def _drain(self, log: structlog.BoundLogger) -> None:
        """Wait for whatever is still in flight after the loop exited abnormally."""

        while self._in_flight:
            error = self._apply(self._events.get(), log)
            if error is not None:
                log.error("task_failed_during_drain", error=str(error))

    def _finish(
        self,
        spider: "Spider",
        pool_key: str,
        log: structlog.BoundLogger,
        *,
        opened: bool,
        failure: BaseException | None,
    ) -> None:
        self._state = EngineState.DRAINING
        try:
            self._drain(log)
        finally:
            self.thread_pool.release(pool_key)
        if self.frontier:
            log.info("frontier_not_empty", pending=len(self.frontier))
        try:
            if opened:
                self._close_stages(spider, log, failure)
        finally:
            try:
                spider.closed()
            except Exception as exc:
                if failure is None:
                    raise
                log.error("spider_close_failed", error=str(exc))
            finally:
                self._state = EngineState.STOPPED
                log.info(
                    "crawl_finished",
                    failed=failure is not None,
                    queued=self.frontier.total_pushed,
                    **self.stats.as_dict(),
                )

    def _close_stages(
        self, spider: "Spider", log: structlog.BoundLogger, failure: BaseException | None
    ) -> None:
        try:
            self.chain.close_all(spider)
        except StageError as exc:
            if failure is None:
                raise
            # The run is already failing; report the close error without masking it.
            log.error("stage_close_failed_after_error", stage=exc.stage, error=str(exc))

    # ------------------------------------------------------------------
    # Worker side
    # ------------------------------------------------------------------
    def _post(self, task_id: int, kind: EventKind, **payload) -> None:
        self._events.put(TaskEvent(task_id=task_id, kind=kind, **payload))

    def _run_task(
        self, task_id: int, spider: "Spider", request: FetchRequest, log: structlog.BoundLogger
    ) -> None:
        fatal: BaseException | None = None
        try:
            self._fetch_with_retry(task_id, spider, request, log)
        except (StageError, InvariantViolation) as exc:
            fatal = exc
        except Exception as exc:  # noqa: BLE001
            # A broken spider affects only the request it was handling.
            log.error("request_crashed", url=request.url, error=repr(exc), exc_info=True)
            self._post(task_id, EventKind.ABANDONED)
        finally:
            self._post(task_id, EventKind.DONE, error=fatal)

    def _fetch_with_retry(
        self, task_id: int, spider: "Spider", request: FetchRequest, log: structlog.BoundLogger
    ) -> None:
        policy = self.retry_policy
        failures = 0
        while True:
            delay = policy.next_delay()
            if delay > 0:
                self._sleep(delay)
            self._post(task_id, EventKind.REQUEST_SENT)
            log.debug("request_sent", url=request.url, attempt=failures + 1)
            try:
                response = spider.fetch(request)
                self._post(task_id, EventKind.RESPONSE_RECEIVED)
                self._route(task_id, spider, response)
                return
            except Exception as exc:
                if not policy.is_retryable(exc):
                    raise
                failures += 1
                log.warning(
                    "request_failed",
                    url=request.url,
                    attempt=failures,
                    error_type=type(exc).__name__,
                    error=str(exc),
                )
                if not policy.should_retry(failures):
                    log.error("request_abandoned", url=request.url, attempts=failures, error=str(exc))
                    self._post(task_id, EventKind.ABANDONED)
                    return
                log.info(
                    "request_retry",
                    url=request.url,
                    attempt=failures + 1,
                    max_attempts=policy.max_attempts,
                )
                self._post(task_id, EventKind.RETRY)

    def _route(self, task_id: int, spider: "Spider", response: FetchResponse) -> None:
        """Consume parse output; anything it raises, other than engine errors, is a ParseError."""

        try:
            results = iter(spider.parse(response))
        except _PASSTHROUGH_ERRORS:
            raise
        except Exception as exc:
            raise _parse_failure(exc, response) from exc
        try:
            while True:
                try:
                    item = next(results)
                except StopIteration:
                    return
                except _PASSTHROUGH_ERRORS:
                    raise
                except Exception as exc:
                    raise _parse_failure(exc, response) from exc
                if isinstance(item, Follow):
                    self._post(task_id, EventKind.DISCOVERED, request=item.request)
                elif isinstance(item, Emit):
                    processed = self.chain.process(item.record, spider)
                    self._post(task_id, EventKind.RECORD, accepted=processed is not None)
                else:
                    raise ParseError(
                        f"parse yielded {type(item).__name__}; expected Emit or Follow",
                        url=response.url,
                    )
        finally:
            close = getattr(results, "close", None)
            if callable(close):
                close()


# Raised from inside parse but never reclassified as parse failures.
_PASSTHROUGH_ERRORS = (ParseError, StageError, InvariantViolation)


def _parse_failure(exc: Exception, response: FetchResponse) -> ParseError:
    return ParseError(
        f"parse of {response.url} failed: {type(exc).__name__}: {exc}", url=response.url
    )


__all__ = ["CrawlerEngine", "EngineState", "EventKind", "TaskEvent"]
