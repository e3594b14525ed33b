from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, List, Optional

import pytest

from hatchflight.interfaces import Field, HandlerError, Record, Schema
from hatchflight.prepared_statement_handler import (
    PreparedStatementHandler,
    extract_parameters,
)

ID_SCHEMA = Schema((Field("id", "int64"),))
PARAM_SCHEMA = Schema((Field("param1", "int64"),))


@dataclass
class Statement:
    handle: str
    result_set_schema: Optional[Schema] = None
    parameter_schema: Optional[Schema] = None


@dataclass
class QueryResult:
    schema: Optional[Schema]
    records: List[Record]
    total_rows: int = 0
    execution_time: timedelta = timedelta(seconds=0.5)


@dataclass
class UpdateResult:
    rows_affected: int
    execution_time: timedelta = timedelta(seconds=0.25)


@dataclass
class FakeService:
    error: Optional[Exception] = None
    statement: Optional[Statement] = None
    query_result: Optional[QueryResult] = None
    update_result: Optional[UpdateResult] = None
    calls: List[tuple] = field(default_factory=list)

    def _check(self):
        if self.error is not None:
            raise self.error

    def create(self, query, transaction_id):
        self.calls.append(("create", query, transaction_id))
        self._check()
        return self.statement

    def close(self, handle):
        self.calls.append(("close", handle))
        self._check()

    def get(self, handle):
        self.calls.append(("get", handle))
        self._check()
        return self.statement

    def execute_query(self, handle, params):
        self.calls.append(("execute_query", handle, params))
        self._check()
        return self.query_result

    def execute_update(self, handle, params):
        self.calls.append(("execute_update", handle, params))
        self._check()
        return self.update_result

    def set_parameters(self, handle, params):
        self.calls.append(("set_parameters", handle, params))
        self._check()


class _Timer:
    def __init__(self, metrics, name):
        self._metrics = metrics
        self._name = name

    def stop(self):
        self._metrics.timers[self._name] += 1


class RecordingMetrics:
    def __init__(self):
        self.counters = Counter()
        self.histograms: dict = {}
        self.timers = Counter()

    def increment_counter(self, name, *tags):
        self.counters[name] += 1

    def record_histogram(self, name, value, *tags):
        self.histograms.setdefault(name, []).append(value)

    def record_gauge(self, name, value, *tags):
        pass

    def start_timer(self, name):
        return _Timer(self, name)


def make_handler(service):
    metrics = RecordingMetrics()
    return PreparedStatementHandler(service, metrics=metrics), metrics


def test_create_success():
    service = FakeService(statement=Statement("stmt123", ID_SCHEMA))
    handler, metrics = make_handler(service)
    handle, schema = handler.create("SELECT * FROM test WHERE id = ?", "tx123")
    assert handle == "stmt123"
    assert schema == ID_SCHEMA
    assert service.calls == [("create", "SELECT * FROM test WHERE id = ?", "tx123")]
    assert metrics.counters["handler_prepared_statements_created"] == 1


def test_create_failure():
    handler, metrics = make_handler(FakeService(error=RuntimeError("boom")))
    with pytest.raises(HandlerError) as info:
        handler.create("SELECT * FROM test WHERE id = ?", "tx123")
    assert str(info.value) == "failed to create prepared statement: boom"
    assert metrics.counters["handler_prepared_statement_create_errors"] == 1


def test_close_success():
    service = FakeService()
    handler, metrics = make_handler(service)
    handler.close("stmt123")
    assert service.calls == [("close", "stmt123")]
    assert metrics.counters["handler_prepared_statements_closed"] == 1


def test_close_failure():
    handler, _ = make_handler(FakeService(error=RuntimeError("boom")))
    with pytest.raises(HandlerError, match="failed to close prepared statement: boom"):
        handler.close("stmt123")


@pytest.mark.parametrize(
    "call",
    [
        lambda h: h.close(""),
        lambda h: h.execute_query("", None),
        lambda h: h.execute_update("", None),
        lambda h: h.get_schema(""),
        lambda h: h.get_parameter_schema(""),
        lambda h: h.set_parameters("", None),
    ],
)
def test_empty_handle_rejected(call):
    service = FakeService()
    handler, metrics = make_handler(service)
    with pytest.raises(HandlerError, match="invalid prepared statement handle"):
        call(handler)
    assert service.calls == []
    assert metrics.counters["handler_prepared_statement_invalid_handle"] == 1


def test_execute_query_success_streams_records():
    rec = Record.from_rows(ID_SCHEMA, [(1,), (2,)])
    service = FakeService(query_result=QueryResult(ID_SCHEMA, [rec, rec]))
    handler, metrics = make_handler(service)
    schema, chunks = handler.execute_query("stmt123", None)
    assert schema == ID_SCHEMA
    data = [chunk.data for chunk in chunks]
    assert data == [rec, rec]
    assert service.calls == [("execute_query", "stmt123", None)]
    assert metrics.histograms["handler_prepared_query_records"] == [2.0]
    assert metrics.histograms["handler_prepared_query_duration"] == [0.5]


def test_execute_query_failure():
    handler, metrics = make_handler(FakeService(error=RuntimeError("boom")))
    with pytest.raises(HandlerError, match="failed to execute prepared query: boom"):
        handler.execute_query("stmt123", None)
    assert metrics.counters["handler_prepared_statement_query_errors"] == 1


def test_execute_query_without_schema():
    handler, _ = make_handler(FakeService(query_result=QueryResult(None, [])))
    with pytest.raises(HandlerError, match="prepared query returned no schema"):
        handler.execute_query("stmt123", None)


def test_execute_query_passes_extracted_parameters():
    params = Record.from_rows(PARAM_SCHEMA, [(7,)])
    service = FakeService(query_result=QueryResult(ID_SCHEMA, []))
    handler, _ = make_handler(service)
    _, chunks = handler.execute_query("stmt123", params)
    assert list(chunks) == []
    assert service.calls == [("execute_query", "stmt123", [[7]])]


def test_execute_update_success():
    service = FakeService(update_result=UpdateResult(5))
    handler, metrics = make_handler(service)
    assert handler.execute_update("stmt123", None) == 5
    assert metrics.histograms["handler_prepared_update_rows"] == [5.0]
    assert metrics.histograms["handler_prepared_update_duration"] == [0.25]


def test_execute_update_failure():
    handler, _ = make_handler(FakeService(error=RuntimeError("boom")))
    with pytest.raises(HandlerError, match="failed to execute prepared update: boom"):
        handler.execute_update("stmt123", None)


def test_get_schema_success():
    handler, _ = make_handler(FakeService(statement=Statement("stmt123", ID_SCHEMA)))
    assert handler.get_schema("stmt123") == ID_SCHEMA


def test_get_schema_failure():
    handler, _ = make_handler(FakeService(error=RuntimeError("boom")))
    with pytest.raises(HandlerError, match="failed to get prepared statement: boom"):
        handler.get_schema("stmt123")


def test_get_schema_missing():
    handler, metrics = make_handler(FakeService(statement=Statement("stmt123")))
    with pytest.raises(HandlerError, match="prepared statement has no schema"):
        handler.get_schema("stmt123")
    assert metrics.counters["handler_prepared_statement_no_schema"] == 1


def test_get_parameter_schema_success():
    stmt = Statement("stmt123", ID_SCHEMA, PARAM_SCHEMA)
    handler, _ = make_handler(FakeService(statement=stmt))
    assert handler.get_parameter_schema("stmt123") == PARAM_SCHEMA


def test_get_parameter_schema_empty_when_none():
    handler, _ = make_handler(FakeService(statement=Statement("stmt123", ID_SCHEMA)))
    assert handler.get_parameter_schema("stmt123") == Schema(())


def test_get_parameter_schema_failure():
    handler, _ = make_handler(FakeService(error=RuntimeError("boom")))
    with pytest.raises(HandlerError, match="failed to get prepared statement"):
        handler.get_parameter_schema("stmt123")


def test_set_parameters_success():
    service = FakeService()
    handler, metrics = make_handler(service)
    handler.set_parameters("stmt123", None)
    assert service.calls == [("set_parameters", "stmt123", None)]
    assert metrics.counters["handler_prepared_statement_parameters_set"] == 1


def test_set_parameters_failure():
    handler, _ = make_handler(FakeService(error=RuntimeError("boom")))
    with pytest.raises(
        HandlerError, match="failed to set parameters for prepared statement: boom"
    ):
        handler.set_parameters("stmt123", None)


def test_set_parameters_unsupported_type():
    schema = Schema((Field("x", "list<int64>"),))
    params = Record.from_rows(schema, [([1],)])
    service = FakeService()
    handler, metrics = make_handler(service)
    with pytest.raises(HandlerError, match="failed to extract parameters"):
        handler.set_parameters("stmt123", params)
    assert service.calls == []
    assert metrics.counters["handler_prepared_statement_parameter_errors"] == 1


def test_extract_parameters_none():
    assert extract_parameters(None) is None


def test_extract_parameters_rows_and_nulls():
    schema = Schema((Field("id", "int64"), Field("name", "utf8")))
    rec = Record.from_rows(schema, [(1, "a"), (None, "b")])
    assert extract_parameters(rec) == [[1, "a"], [None, "b"]]


def test_extract_parameters_unsupported_type_message():
    schema = Schema((Field("x", "list<int64>"),))
    rec = Record.from_rows(schema, [([1],)])
    with pytest.raises(HandlerError) as info:
        extract_parameters(rec)
    assert str(info.value) == (
        "failed to extract value at row 0, col 0: unsupported array type: list<int64>"
    )


def test_extract_parameters_null_in_unsupported_column():
    schema = Schema((Field("x", "list<int64>"),))
    rec = Record.from_rows(schema, [(None,)])
    assert extract_parameters(rec) == [[None]]


def test_extract_parameters_temporal_values():
    schema = Schema(
        (Field("ts", "timestamp[s]"), Field("d32", "date32"), Field("d64", "date64"))
    )
    rec = Record.from_rows(schema, [(60, 1, 1000)])
    epoch = datetime(1970, 1, 1, tzinfo=timezone.utc)
    assert extract_parameters(rec) == [
        [epoch + timedelta(minutes=1), epoch + timedelta(days=1), epoch + timedelta(seconds=1)]
    ]