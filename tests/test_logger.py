import asyncio
import csv
import logging
import threading

from oracle_sync.logger import AsyncAuditLogger, FanoutSink, LoggerSink, MemorySink


def test_memory_sink_keeps_latest_entries() -> None:
    sink = MemorySink(max_entries=3)
    for i in range(5):
        sink.record("info", "Test", f"message {i}")

    assert [e.message for e in sink.entries()] == ["message 2", "message 3", "message 4"]


def test_memory_sink_find_and_text() -> None:
    sink = MemorySink()
    sink.record("warning", "OracleEngine", "Insufficient data sources", {"valid_sources": 1})
    sink.record("info", "GapDetector", "scan")

    (entry,) = sink.find(level="warning")
    assert entry.source == "OracleEngine"
    assert sink.find(source="GapDetector")[0].message == "scan"
    assert sink.find("error") == []
    assert '[WARNING] [OracleEngine] Insufficient data sources | Data: {"valid_sources": 1}' in sink.as_text()


def test_memory_sink_listeners() -> None:
    sink = MemorySink()
    seen = []
    unsubscribe = sink.subscribe(lambda entries: seen.append(len(entries)))

    sink.record("info", "Test", "one")
    sink.record("info", "Test", "two")
    sink.clear()
    unsubscribe()
    sink.record("info", "Test", "three")

    assert seen == [1, 2, 0]


def test_fanout_and_logger_sink(caplog) -> None:
    caplog.set_level(logging.DEBUG, logger="oracle_sync.tests")
    memory = MemorySink()
    sink = FanoutSink([LoggerSink(logging.getLogger("oracle_sync.tests")), memory])

    sink.record("warning", "GapDetector", "Unknown exchange fee structure", {"fee_percent": 0.1})

    assert len(memory.entries()) == 1
    (record,) = caplog.records
    assert record.levelno == logging.WARNING
    assert record.getMessage() == "[GapDetector] Unknown exchange fee structure | fee_percent=0.1"


def test_audit_logger_writes_header_once(tmp_path) -> None:
    path = tmp_path / "audit.csv"

    async def session(row):
        audit = AsyncAuditLogger(str(path), ["timestamp", "kind"])
        await audit.start()
        await audit.log_row(row)
        await audit.stop()

    asyncio.run(session(["t1", "oracle"]))
    asyncio.run(session(["t2", "gap"]))

    with open(path, newline="") as f:
        rows = list(csv.reader(f))
    assert rows == [["timestamp", "kind"], ["t1", "oracle"], ["t2", "gap"]]


def test_memory_sink_reads_while_another_thread_records() -> None:
    sink = MemorySink(max_entries=50)
    done = threading.Event()

    def writer():
        for i in range(20_000):
            sink.record("info", "CorrelationEngine", f"pair {i}")
        done.set()

    thread = threading.Thread(target=writer)
    thread.start()
    while not done.is_set():
        sink.find(level="info", source="CorrelationEngine")
        sink.as_text()
    thread.join()

    assert len(sink.find("info")) == 50
