"""
tests/test_cdc.py -- CDC message normalization and the consumer loop.

The consumer is driven by in-process fakes standing in for aiokafka's
AIOKafkaConsumer and AIOKafkaAdminClient, so no broker is needed.

Covers:
  - canal-json INSERT on users -> one structured log line
  - non-JSON and non-object payloads are still logged
  - a record that blows up during processing does not stop the loop
  - broker probe retries, then gives up with ResourceUnavailable
  - run() consumes until the stop event is set and always stops the consumer
  - SIGINT/SIGTERM set the stop event; run_consumer() maps fatal errors to exit 1
"""

from __future__ import annotations

import asyncio
import json
import os
import signal
from types import SimpleNamespace

import pytest
from aiokafka.errors import KafkaConnectionError

import cdc.consumer as consumer_module
from cdc.consumer import CdcConsumer, run_consumer
from cdc.processor import SOURCE, decode_value, normalize, process_message
from core.config import Settings
from core.retry import ResourceUnavailable


def _record(value, topic: str = "tidb-cdc", partition: int = 0, offset: int = 0):
    return SimpleNamespace(topic=topic, partition=partition, offset=offset, value=value)


class _ExplodingRecord:
    topic = "tidb-cdc"
    partition = 0
    offset = 7

    @property
    def value(self):
        raise RuntimeError("corrupt record")


@pytest.fixture
def settings() -> Settings:
    return Settings(_env_file=None, kafka_connect_attempts=3, kafka_connect_interval=0)


# ---------------------------------------------------------------------------
# Processor
# ---------------------------------------------------------------------------


class TestProcessMessage:
    def test_insert_users_scenario(self, cdc_log: list[dict]) -> None:
        payload = {
            "type": "INSERT",
            "database": "helfy",
            "table": "users",
            "data": [{"id": "3", "email": "a@x.com", "username": "a"}],
        }
        entry = process_message(_record(json.dumps(payload).encode(), partition=2, offset=41))

        assert cdc_log == [entry]
        assert entry["source"] == SOURCE
        assert entry["topic"] == "tidb-cdc"
        assert entry["partition"] == 2
        assert entry["offset"] == 41
        assert entry["operation"] == "INSERT"
        assert entry["table"] == "users"
        assert entry["database"] == "helfy"
        assert entry["data"] == payload["data"]
        assert "timestamp" in entry

    def test_malformed_json_is_wrapped_as_raw(self, cdc_log: list[dict]) -> None:
        entry = process_message(_record(b"not json {"))
        assert entry["data"] == {"raw": "not json {"}
        assert entry["operation"] == "UNKNOWN"
        assert entry["table"] == "unknown"
        assert entry["database"] == "helfy"
        assert len(cdc_log) == 1

    def test_non_object_json_kept_as_data(self) -> None:
        entry = process_message(_record(b"[1, 2, 3]"))
        assert entry["data"] == [1, 2, 3]
        assert entry["operation"] == "UNKNOWN"

    def test_object_without_data_logs_whole_payload(self) -> None:
        entry = process_message(_record(b'{"type": "DELETE", "table": "user_tokens"}'))
        assert entry["operation"] == "DELETE"
        assert entry["table"] == "user_tokens"
        assert entry["data"] == {"type": "DELETE", "table": "user_tokens"}

    def test_tombstone_value(self) -> None:
        assert decode_value(None) == {"raw": None}

    def test_invalid_utf8_is_replaced(self) -> None:
        assert decode_value(b"\xff\xfe") == {"raw": "\ufffd\ufffd"}

    def test_processing_error_returns_none(self, cdc_log: list[dict], caplog) -> None:
        assert process_message(_ExplodingRecord()) is None
        assert cdc_log == []
        assert "corrupt record" in caplog.text

    @pytest.mark.parametrize("falsy", [0, "", False, None])
    def test_falsy_data_falls_back_to_payload(self, falsy) -> None:
        payload = {"type": "UPDATE", "table": "users", "data": falsy}
        assert normalize(payload, "t", 0, 0)["data"] == payload

    @pytest.mark.parametrize("empty", [[], {}])
    def test_empty_container_data_is_kept(self, empty) -> None:
        assert normalize({"type": "UPDATE", "data": empty}, "t", 0, 0)["data"] == empty

    def test_normalize_defaults(self) -> None:
        entry = normalize({"data": {"k": "v"}}, "t", 1, 5)
        assert (entry["operation"], entry["table"], entry["database"]) == ("UNKNOWN", "unknown", "helfy")
        assert entry["data"] == {"k": "v"}


# ---------------------------------------------------------------------------
# Consumer loop
# ---------------------------------------------------------------------------


class FakeAdmin:
    """Admin client whose list_topics() fails a set number of times."""

    failures = 0
    calls = 0

    def __init__(self, **kwargs) -> None:
        self.kwargs = kwargs
        self.closed = False

    async def start(self) -> None:
        pass

    async def list_topics(self) -> list[str]:
        type(self).calls += 1
        if type(self).calls <= type(self).failures:
            raise ConnectionError("broker not ready")
        return ["tidb-cdc"]

    async def close(self) -> None:
        self.closed = True


def _admin_factory(failures: int):
    return type("Admin", (FakeAdmin,), {"failures": failures, "calls": 0})


class FakeConsumer:
    """Returns each queued batch from getmany(), then sets the stop event."""

    def __init__(self, batches: list[dict], stop: asyncio.Event) -> None:
        self.batches = list(batches)
        self.stop_event = stop
        self.started = False
        self.stopped = False
        self.args = None
        self.kwargs = None

    def __call__(self, *args, **kwargs):
        self.args, self.kwargs = args, kwargs
        return self

    async def start(self) -> None:
        self.started = True

    async def getmany(self, timeout_ms: int = 0) -> dict:
        if self.batches:
            return self.batches.pop(0)
        self.stop_event.set()
        return {}

    async def stop(self) -> None:
        self.stopped = True


class TestCdcConsumer:
    def test_handle_batch_counts(self, settings: Settings) -> None:
        consumer = CdcConsumer(settings)
        consumer.handle_batch({"tp0": [_record(b"{}"), _ExplodingRecord()], "tp1": [_record(b"1")]})
        assert consumer.processed == 2
        assert consumer.failed == 1

    def test_run_consumes_until_stopped(self, settings: Settings, cdc_log: list[dict]) -> None:
        async def scenario():
            stop = asyncio.Event()
            fake = FakeConsumer(
                [{"tp": [_record(b'{"type": "INSERT", "table": "users", "data": []}', offset=0)]},
                 {"tp": [_record(b"garbage", offset=1), _ExplodingRecord()]}],
                stop,
            )
            consumer = CdcConsumer(settings, consumer_factory=fake, admin_factory=_admin_factory(0))
            await consumer.run(stop)
            return consumer, fake

        consumer, fake = asyncio.run(scenario())

        assert fake.started and fake.stopped
        assert fake.args == ("tidb-cdc",)
        assert fake.kwargs["group_id"] == "cdc-consumer-group"
        assert fake.kwargs["auto_offset_reset"] == "earliest"
        assert consumer.processed == 2
        assert consumer.failed == 1
        assert [e["offset"] for e in cdc_log] == [0, 1]

    def test_consumer_stopped_when_poll_fails(self, settings: Settings) -> None:
        class BrokenConsumer(FakeConsumer):
            async def getmany(self, timeout_ms: int = 0) -> dict:
                raise ConnectionError("lost broker")

        async def scenario():
            stop = asyncio.Event()
            fake = BrokenConsumer([], stop)
            consumer = CdcConsumer(settings, consumer_factory=fake, admin_factory=_admin_factory(0))
            with pytest.raises(ConnectionError):
                await consumer.run(stop)
            return fake

        assert asyncio.run(scenario()).stopped

    def test_broker_probe_retries(self, settings: Settings) -> None:
        admin = _admin_factory(failures=2)
        asyncio.run(CdcConsumer(settings, admin_factory=admin).wait_for_broker())
        assert admin.calls == 3

    def test_broker_unreachable_is_fatal(self, settings: Settings) -> None:
        admin = _admin_factory(failures=100)
        with pytest.raises(ResourceUnavailable):
            asyncio.run(CdcConsumer(settings, admin_factory=admin).wait_for_broker())
        assert admin.calls == 3


# ---------------------------------------------------------------------------
# Process entry point
# ---------------------------------------------------------------------------


@pytest.fixture
def quiet_cdc_logging(monkeypatch):
    """Keep the JSON-line handler off pytest's per-test stdout capture."""
    monkeypatch.setattr(consumer_module, "configure_cdc_logging", lambda: None)


def _consumer_running(run):
    """A CdcConsumer stand-in whose run() is the given coroutine function."""
    return type("StubConsumer", (), {"__init__": lambda self, settings: None, "run": run})


class TestRunConsumer:
    def test_clean_stop_exits_zero(self, settings, monkeypatch, quiet_cdc_logging) -> None:
        async def run(self, stop):
            stop.set()

        monkeypatch.setattr(consumer_module, "CdcConsumer", _consumer_running(run))
        assert run_consumer(settings) == 0

    @pytest.mark.parametrize(
        "error",
        [ResourceUnavailable("Kafka", 3), KafkaConnectionError("broker went away")],
        ids=["broker-unreachable", "kafka-error"],
    )
    def test_fatal_error_exits_one(self, settings, monkeypatch, quiet_cdc_logging, caplog, error) -> None:
        async def run(self, stop):
            raise error

        monkeypatch.setattr(consumer_module, "CdcConsumer", _consumer_running(run))
        assert run_consumer(settings) == 1
        assert "Fatal error" in caplog.text

    @pytest.mark.parametrize("sig", [signal.SIGTERM, signal.SIGINT], ids=["SIGTERM", "SIGINT"])
    def test_signal_sets_stop_event(self, settings, monkeypatch, quiet_cdc_logging, sig) -> None:
        seen = []

        async def run(self, stop):
            os.kill(os.getpid(), sig)
            await asyncio.wait_for(stop.wait(), timeout=5)
            seen.append(stop.is_set())

        monkeypatch.setattr(consumer_module, "CdcConsumer", _consumer_running(run))
        assert run_consumer(settings) == 0
        assert seen == [True]
