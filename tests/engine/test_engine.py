from __future__ import annotations

import itertools
import threading
import time

import pytest
import structlog

from crawlflow.config import EngineSettings
from crawlflow.engine import CrawlerEngine, EngineState, ThreadPoolManager
from crawlflow.errors import EngineStateError, ParseError, StageError
from crawlflow.types import Emit, Follow, Record


def make_engine(stages=(), **settings) -> CrawlerEngine:
    return CrawlerEngine(EngineSettings(**settings), list(stages))


def test_retry_scenario_counts_every_attempt(scripted_spider, make_stage) -> None:
    spider = scripted_spider(["R1", "R2", "R3"], failures={"R2": 1})
    engine = make_engine([make_stage("accept")], concurrency_limit=2, retry_limit=1, delay_seconds=0)

    stats = engine.crawl(spider)

    assert stats.requests_sent == 4
    assert stats.responses_received == 3
    assert stats.records_accepted == 3
    assert stats.records_dropped == 0
    assert stats.retries == 1
    assert stats.requests_abandoned == 0
    assert spider.calls_for("R2") == 2
    assert engine.state is EngineState.STOPPED


def test_dropping_stage_scenario(scripted_spider, make_stage) -> None:
    spider = scripted_spider(["R1", "R2", "R3"], failures={"R2": 1})
    stage = make_stage("drop-r2", drop=lambda record: "R2" in record["origin"])
    engine = make_engine([stage], concurrency_limit=2, retry_limit=1)

    stats = engine.crawl(spider)

    assert stats.records_accepted == 2
    assert stats.records_dropped == 1


def test_delay_applies_before_every_attempt(scripted_spider) -> None:
    sleeps: list[float] = []
    engine = CrawlerEngine(
        EngineSettings(concurrency_limit=1, retry_limit=3, delay_seconds=0.5, delay_jitter_fraction=0.5),
        [],
        sleep=sleeps.append,
    )
    spider = scripted_spider(["a"], failures={"a": 2})

    stats = engine.crawl(spider)

    assert spider.calls_for("a") == 3
    assert len(sleeps) == 3
    assert all(0.5 <= value <= 0.75 for value in sleeps)
    assert stats.responses_received == 1
    assert stats.retries == 2


def test_zero_delay_never_sleeps(scripted_spider) -> None:
    sleeps: list[float] = []
    engine = CrawlerEngine(EngineSettings(delay_seconds=0), [], sleep=sleeps.append)

    engine.crawl(scripted_spider(["a", "b"]))

    assert sleeps == []


def test_request_that_always_fails_is_abandoned(scripted_spider) -> None:
    spider = scripted_spider(["bad", "good"], failures={"bad": -1})
    engine = make_engine(retry_limit=2)

    stats = engine.crawl(spider)

    assert spider.calls_for("bad") == 3
    assert spider.calls_for("good") == 1
    assert stats.requests_abandoned == 1
    assert stats.requests_sent == 4
    assert stats.responses_received == 1
    assert engine.state is EngineState.STOPPED


def test_run_terminates_when_every_request_fails(scripted_spider) -> None:
    spider = scripted_spider(["a", "b"], failures={"a": -1, "b": -1})
    stats = make_engine(retry_limit=0).crawl(spider)

    assert stats.requests_sent == 2
    assert stats.responses_received == 0
    assert stats.records_total == 0
    assert stats.requests_abandoned == 2
    assert spider.closed_calls == 1


def test_in_flight_tasks_never_exceed_limit(scripted_spider, make_stage) -> None:
    # A task is live from its pre-fetch delay until its parse output is exhausted.
    lock = threading.Lock()
    counters = {"active": 0, "peak": 0}
    observed_in_flight: list[int] = []
    holder: dict[str, CrawlerEngine] = {}

    def task_started(seconds: float) -> None:
        with lock:
            counters["active"] += 1
            counters["peak"] = max(counters["peak"], counters["active"])
        time.sleep(0.005)

    def slow_stage(record: Record) -> Record:
        observed_in_flight.append(holder["engine"].in_flight)
        time.sleep(0.005)
        return record

    spider = scripted_spider([f"page-{index}" for index in range(12)], fetch_delay=0.005)
    original_parse = spider.parse

    def tracked_parse(response):
        try:
            yield from original_parse(response)
        finally:
            with lock:
                counters["active"] -= 1

    spider.parse = tracked_parse
    engine = CrawlerEngine(
        EngineSettings(concurrency_limit=3, delay_seconds=0.001, delay_jitter_fraction=0, retry_limit=0),
        [make_stage("slow", transform=slow_stage)],
        sleep=task_started,
    )
    holder["engine"] = engine

    stats = engine.crawl(spider)

    assert 1 <= counters["peak"] <= 3
    assert counters["active"] == 0
    assert observed_in_flight and max(observed_in_flight) <= 3
    assert stats.responses_received == 12


def test_single_worker_dispatches_in_frontier_order(scripted_spider) -> None:
    spider = scripted_spider(["a", "e"], links={"a": ["b", "c"], "b": ["d"]})

    make_engine(concurrency_limit=1).crawl(spider)

    assert spider.fetch_calls == ["a", "e", "b", "c", "d"]


def test_discovered_requests_are_crawled(scripted_spider, make_stage) -> None:
    spider = scripted_spider(["root"], links={"root": ["child"], "child": ["grandchild"]})
    stage = make_stage("collect")

    make_engine([stage]).crawl(spider)

    assert sorted(spider.fetch_calls) == ["child", "grandchild", "root"]
    assert {record["url"] for record in stage.seen} == {"root", "child", "grandchild"}


def test_chain_order_and_short_circuit(scripted_spider, make_stage) -> None:
    counter = itertools.count(1)
    dropped: list[Record] = []

    def every_third(record: Record) -> bool:
        if next(counter) % 3 == 0:
            dropped.append(record)
            return True
        return False

    stage_a = make_stage("A", transform=lambda record: record.replace(seen_by_a=True))
    stage_b = make_stage("B", drop=every_third)
    stage_c = make_stage("C")
    spider = scripted_spider([f"u{index}" for index in range(9)])

    stats = make_engine([stage_a, stage_b, stage_c], concurrency_limit=4).crawl(spider)

    assert len(stage_a.seen) == 9
    assert not any(record.get("seen_by_a") for record in stage_a.seen)
    assert len(stage_b.seen) == 9
    assert all(record["seen_by_a"] for record in stage_b.seen)
    assert len(dropped) == 3
    assert len(stage_c.seen) == 6
    assert not any(seen is gone for seen in stage_c.seen for gone in dropped)
    assert stats.records_accepted == 6
    assert stats.records_dropped == 3


def test_accepted_plus_dropped_equals_records_yielded(scripted_spider, make_stage) -> None:
    spider = scripted_spider(
        ["a", "b"],
        links={"a": ["c", "d"], "c": ["e"]},
        records_per_page=3,
    )
    stage = make_stage("drop-middle", drop=lambda record: record["index"] == 1)

    stats = make_engine([stage], concurrency_limit=3).crawl(spider)

    assert stats.records_accepted + stats.records_dropped == spider.records_yielded
    assert spider.records_yielded == 15
    assert stats.records_dropped == 5


def test_stages_open_and_close_in_chain_order(scripted_spider, make_stage, journal) -> None:
    stages = [make_stage("A"), make_stage("B"), make_stage("C")]
    spider = scripted_spider(["a"])

    make_engine(stages).crawl(spider)

    assert journal == ["open:A", "open:B", "open:C", "close:A", "close:B", "close:C"]
    assert spider.closed_calls == 1


def test_stage_process_failure_is_fatal_but_still_closes(scripted_spider, make_stage, journal) -> None:
    stages = [make_stage("A"), make_stage("B", fail_on="process")]
    spider = scripted_spider(["a", "b", "c"])
    engine = make_engine(stages, concurrency_limit=1)

    with pytest.raises(StageError) as info:
        engine.crawl(spider)

    assert info.value.stage == "B"
    assert info.value.phase == "process"
    assert spider.fetch_calls == ["a"]
    assert journal[-2:] == ["close:A", "close:B"]
    assert spider.closed_calls == 1
    assert engine.state is EngineState.STOPPED


def test_stage_open_failure_closes_already_opened(scripted_spider, make_stage, journal) -> None:
    stages = [make_stage("A"), make_stage("B", fail_on="open"), make_stage("C")]
    spider = scripted_spider(["a"])

    with pytest.raises(StageError) as info:
        make_engine(stages).crawl(spider)

    assert info.value.phase == "open"
    assert journal == ["open:A", "open:B", "close:A"]
    assert spider.fetch_calls == []
    assert spider.closed_calls == 1


def test_stage_close_failure_still_closes_the_rest(scripted_spider, make_stage, journal) -> None:
    stages = [make_stage("A", fail_on="close"), make_stage("B")]
    spider = scripted_spider(["a"])
    engine = make_engine(stages)

    with pytest.raises(StageError) as info:
        engine.crawl(spider)

    assert info.value.phase == "close"
    assert journal == ["open:A", "open:B", "close:A", "close:B"]
    assert spider.closed_calls == 1


def test_stop_lets_in_flight_work_finish(scripted_spider, make_stage) -> None:
    spider = scripted_spider(["a", "b", "c", "d", "e"], links={"a": ["late"]})
    holder: dict[str, CrawlerEngine] = {}

    def stop_engine(record: Record) -> Record:
        holder["engine"].stop()
        return record

    engine = make_engine([make_stage("stopper", transform=stop_engine)], concurrency_limit=1)
    holder["engine"] = engine

    stats = engine.crawl(spider)

    assert spider.fetch_calls == ["a"]
    assert stats.records_accepted == 1
    assert len(engine.frontier) == 4
    assert "late" not in [request.url for request in engine.frontier]
    assert engine.state is EngineState.STOPPED
    assert spider.closed_calls == 1


def test_parse_error_triggers_refetch(scripted_spider) -> None:
    spider = scripted_spider(["a"])
    original = spider.parse
    calls = {"count": 0}

    def flaky(response):
        calls["count"] += 1
        if calls["count"] == 1:
            raise ParseError("truncated markup", url=response.url)
        return original(response)

    spider.parse = flaky

    stats = make_engine(retry_limit=2).crawl(spider)

    assert spider.calls_for("a") == 2
    assert stats.responses_received == 2
    assert stats.records_accepted == 1
    assert stats.retries == 1


def test_records_before_a_mid_stream_parse_error_are_kept(scripted_spider) -> None:
    spider = scripted_spider(["a"])
    calls = {"count": 0}

    def half_broken(response):
        calls["count"] += 1
        yield Emit(Record(url=response.url, attempt=calls["count"]))
        if calls["count"] == 1:
            raise ParseError("lost the rest", url=response.url)

    spider.parse = half_broken

    stats = make_engine(retry_limit=1).crawl(spider)

    assert stats.records_accepted == 2
    assert stats.requests_abandoned == 0


def test_unknown_parse_output_is_a_parse_error(scripted_spider) -> None:
    spider = scripted_spider(["a"])
    spider.parse = lambda response: iter([Record(url=response.url)])

    stats = make_engine(retry_limit=1).crawl(spider)

    assert spider.calls_for("a") == 2
    assert stats.records_total == 0
    assert stats.requests_abandoned == 1


def test_any_error_while_consuming_parse_output_is_retried(scripted_spider) -> None:
    spider = scripted_spider(["a"])
    calls = {"count": 0}

    def brittle(response):
        calls["count"] += 1
        yield Emit(Record(url=response.url, attempt=calls["count"]))
        if calls["count"] == 1:
            missing_node = None
            missing_node.text()  # type: ignore[attr-defined]

    spider.parse = brittle

    stats = make_engine(retry_limit=2).crawl(spider)

    assert spider.calls_for("a") == 2
    assert stats.retries == 1
    assert stats.records_accepted == 2
    assert stats.requests_abandoned == 0


def test_error_creating_parse_output_is_retried(scripted_spider) -> None:
    spider = scripted_spider(["a"])

    def not_a_parser(response):
        raise KeyError("selector")

    spider.parse = not_a_parser

    stats = make_engine(retry_limit=1).crawl(spider)

    assert spider.calls_for("a") == 2
    assert stats.retries == 1
    assert stats.requests_abandoned == 1


def test_follow_is_dispatched_while_parent_is_still_parsing(scripted_spider) -> None:
    child_parsed = threading.Event()
    spider = scripted_spider(["root"])

    def streaming_parse(response):
        if response.url == "child":
            child_parsed.set()
            yield Emit(Record(url=response.url))
            return
        yield Follow(response.request.follow("child"))
        child_parsed.wait(timeout=5)
        yield Emit(Record(url=response.url, child_seen=child_parsed.is_set()))

    spider.parse = streaming_parse

    stats = make_engine(concurrency_limit=2).crawl(spider)

    assert child_parsed.is_set()
    assert spider.fetch_calls == ["root", "child"]
    assert stats.records_accepted == 2


def test_worker_events_carry_crawl_context(scripted_spider) -> None:
    contexts: list[dict] = []
    spider = scripted_spider(["a", "b"])
    original_fetch = spider.fetch

    def fetch_with_context(request):
        contexts.append(structlog.contextvars.get_contextvars())
        return original_fetch(request)

    spider.fetch = fetch_with_context

    make_engine(concurrency_limit=2).crawl(spider)

    assert len(contexts) == 2
    assert {context["spider"] for context in contexts} == {"scripted"}
    assert len({context["run_id"] for context in contexts}) == 1
    assert "run_id" not in structlog.contextvars.get_contextvars()


def test_engines_sharing_a_pool_manager_keep_their_own_executors(scripted_spider) -> None:
    manager = ThreadPoolManager(default_workers=2)
    other_executor = manager.get("scripted", max_workers=1)
    engine = CrawlerEngine(EngineSettings(concurrency_limit=3), [], thread_pool=manager)

    stats = engine.crawl(scripted_spider(["a", "b"]))

    assert stats.responses_received == 2
    assert manager.active() == ["scripted"]
    assert other_executor.submit(lambda: "still running").result(timeout=5) == "still running"
    manager.shutdown(wait=True)


def test_parallel_crawls_with_same_spider_name(scripted_spider) -> None:
    manager = ThreadPoolManager(default_workers=2)
    results: dict[str, int] = {}
    errors: list[BaseException] = []

    def run(label: str, limit: int) -> None:
        try:
            engine = CrawlerEngine(EngineSettings(concurrency_limit=limit), [], thread_pool=manager)
            spider = scripted_spider([f"{label}-{index}" for index in range(6)], fetch_delay=0.01)
            results[label] = engine.crawl(spider).responses_received
        except BaseException as exc:  # noqa: BLE001
            errors.append(exc)

    threads = [threading.Thread(target=run, args=("x", 2)), threading.Thread(target=run, args=("y", 3))]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=10)

    assert errors == []
    assert results == {"x": 6, "y": 6}
    assert manager.active() == []


def test_unexpected_spider_error_is_isolated(scripted_spider) -> None:
    spider = scripted_spider(["a", "b", "c"])
    original = spider.fetch

    def broken_fetch(request):
        if request.url == "b":
            raise ValueError("spider bug")
        return original(request)

    spider.fetch = broken_fetch

    stats = make_engine(retry_limit=2).crawl(spider)

    assert stats.requests_abandoned == 1
    assert stats.responses_received == 2
    assert stats.records_accepted == 2
    assert stats.retries == 0


def test_crawl_rejects_reentry_while_running(scripted_spider, make_stage) -> None:
    spider = scripted_spider(["a"])
    holder: dict[str, CrawlerEngine] = {}

    def reenter(record: Record) -> Record:
        holder["engine"].crawl(spider)
        return record

    engine = make_engine([make_stage("reenter", transform=reenter)])
    holder["engine"] = engine

    with pytest.raises(StageError) as info:
        engine.crawl(spider)

    assert isinstance(info.value.__cause__, EngineStateError)


def test_stats_reset_between_runs(scripted_spider) -> None:
    engine = make_engine()

    first = engine.crawl(scripted_spider(["a", "b"]))
    second = engine.crawl(scripted_spider(["c"]))

    assert first.requests_sent == 2
    assert second.requests_sent == 1
    assert second.records_accepted == 1


def test_stats_snapshot_is_detached(scripted_spider, make_stage) -> None:
    snapshots = []
    holder: dict[str, CrawlerEngine] = {}

    def capture(record: Record) -> Record:
        snapshots.append(holder["engine"].stats)
        return record

    engine = make_engine([make_stage("capture", transform=capture)], concurrency_limit=1)
    holder["engine"] = engine

    final = engine.crawl(scripted_spider(["a", "b"]))

    assert len(snapshots) == 2
    assert snapshots[0].records_accepted == 0
    assert snapshots[0] is not final
    assert final.records_accepted == 2


def test_engine_builds_stages_from_settings(scripted_spider) -> None:
    settings = EngineSettings(stages=["crawlflow.pipeline.stages:ValidationStage"])
    engine = CrawlerEngine(settings)

    stats = engine.crawl(scripted_spider(["a"]))

    assert engine.chain.names == ["ValidationStage"]
    assert stats.records_accepted == 1
