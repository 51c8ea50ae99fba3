import json
import logging
import sys
from uuid import uuid4

import pytest
from loguru import logger
from opentelemetry import trace
from opentelemetry.trace import NonRecordingSpan, SpanContext

from loyalty_engine.core.logging import configure_logging, loyalty_context


@pytest.fixture
def json_logs(capsys):
    configure_logging(service_name="loyalty-engine", environment="test", version="0.1.0")

    def read() -> list[dict]:
        return [json.loads(line) for line in capsys.readouterr().out.splitlines() if line]

    try:
        yield read
    finally:
        logger.remove()
        logger.add(sys.stderr)
        logging.getLogger().handlers.clear()


def test_loyalty_identifiers_are_grouped_under_context(json_logs) -> None:
    customer_id = uuid4()

    with loyalty_context(operation="ledger.record_transaction", customer_id=customer_id, job_id=None):
        logger.info("Recorded ledger entry", points=25)
    logger.info("Outside any operation")

    inside, outside = json_logs()
    assert inside["message"] == "Recorded ledger entry"
    assert inside["service"] == "loyalty-engine"
    assert inside["environment"] == "test"
    assert inside["context"] == {"operation": "ledger.record_transaction", "customer_id": str(customer_id)}
    assert inside["points"] == 25
    assert "context" not in outside


def test_active_span_ids_are_attached(json_logs) -> None:
    span = NonRecordingSpan(SpanContext(trace_id=0xABC, span_id=0x12, is_remote=False))

    with trace.use_span(span):
        logger.warning("Segment refresh failed; retrying")
    logger.warning("No span")

    with_span, without_span = json_logs()
    assert with_span["trace_id"] == f"{0xABC:032x}"
    assert with_span["span_id"] == f"{0x12:016x}"
    assert with_span["level"] == "warning"
    assert "trace_id" not in without_span


def test_stdlib_records_are_bridged(json_logs) -> None:
    logging.getLogger("apscheduler.scheduler").warning("Run time of job %s was missed", "segment_refresh")
    logging.getLogger("apscheduler.scheduler").info("Added job")

    [record] = json_logs()
    assert record["message"] == "Run time of job segment_refresh was missed"
    assert record["stdlib_logger"] == "apscheduler.scheduler"
