"""
cdc/processor.py -- Normalize one CDC message into a structured log line.

TiCDC publishes canal-json style payloads, e.g.

    {"type": "INSERT", "database": "helfy", "table": "users", "data": [{...}]}

Each consumed message becomes one JSON line on the "helfy.cdc.events" logger:

    {"timestamp", "source": "tidb-cdc", "topic", "partition", "offset",
     "operation", "table", "database", "data"}

Anything that is not JSON is wrapped as {"raw": <text>} and still logged.
Processing is log-only: no state is rebuilt from the stream, and a single bad
message never stops the consumer.
"""

from __future__ import annotations

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any

CDC_LOGGER_NAME = "helfy.cdc.events"
SOURCE = "tidb-cdc"

logger = logging.getLogger("helfy.cdc.consumer")
cdc_logger = logging.getLogger(CDC_LOGGER_NAME)


def configure_cdc_logging(stream=None) -> logging.Logger:
    """Attach a bare "%(message)s" handler so each record is one JSON line."""
    if not any(getattr(h, "_helfy_cdc", False) for h in cdc_logger.handlers):
        handler = logging.StreamHandler(stream or sys.stdout)
        handler.setFormatter(logging.Formatter("%(message)s"))
        handler._helfy_cdc = True  # type: ignore[attr-defined]
        cdc_logger.addHandler(handler)
    cdc_logger.setLevel(logging.INFO)
    cdc_logger.propagate = False
    return cdc_logger


def decode_value(value: bytes | str | None) -> Any:
    """Decode a message value, falling back to {"raw": text} on bad JSON."""
    if value is None:
        return {"raw": None}
    text = value.decode("utf-8", errors="replace") if isinstance(value, (bytes, bytearray)) else str(value)
    try:
        return json.loads(text)
    except ValueError:
        return {"raw": text}


def normalize(payload: Any, topic: str, partition: int, offset: int) -> dict:
    if isinstance(payload, dict):
        operation = payload.get("type") or "UNKNOWN"
        table = payload.get("table") or "unknown"
        database = payload.get("database") or "helfy"
        data = payload.get("data")
        # Null, zero, false and "" fall back to the whole payload; empty containers are kept.
        if not isinstance(data, (dict, list)) and not data:
            data = payload
    else:
        # Valid JSON that is not an object (a bare number, a list): keep it as data.
        operation, table, database, data = "UNKNOWN", "unknown", "helfy", payload
    return {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "source": SOURCE,
        "topic": topic,
        "partition": partition,
        "offset": offset,
        "operation": operation,
        "table": table,
        "database": database,
        "data": data,
    }


def process_message(record) -> dict | None:
    """Log one consumer record. Returns the entry, or None if it failed.

    `record` is anything with topic/partition/offset/value attributes, which
    aiokafka's ConsumerRecord has.
    """
    try:
        entry = normalize(decode_value(record.value), record.topic, record.partition, record.offset)
        cdc_logger.info(json.dumps(entry, default=str))
        return entry
    except Exception as exc:
        logger.error("Error processing message at %s/%s/%s: %s",
                     getattr(record, "topic", "?"), getattr(record, "partition", "?"),
                     getattr(record, "offset", "?"), exc)
        return None
