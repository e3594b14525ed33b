"""Handler that runs SQL queries and updates and streams their results."""

from __future__ import annotations

import enum
from collections import OrderedDict
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Iterable, Iterator, Optional, Protocol, Tuple

from hatchflight.interfaces import (
    HandlerError,
    Logger,
    MetricsCollector,
    NullLogger,
    NullMetrics,
    Record,
    Schema,
    StreamChunk,
)

_MAX_LOGGED_QUERY = 100
_SCHEMA_CACHE_SIZE = 100


class ErrorCode(enum.Enum):
    """Error categories a service may report."""

    INVALID_REQUEST = "invalid_request"
    NOT_FOUND = "not_found"
    ALREADY_EXISTS = "already_exists"
    UNAUTHORIZED = "unauthorized"
    PERMISSION_DENIED = "permission_denied"
    DEADLINE_EXCEEDED = "deadline_exceeded"
    CANCELED = "canceled"
    RESOURCE_EXHAUSTED = "resource_exhausted"
    INTERNAL = "internal"
    UNAVAILABLE = "unavailable"
    UNIMPLEMENTED = "unimplemented"
    UNKNOWN = "unknown"


_CODE_PREFIXES = {
    ErrorCode.INVALID_REQUEST: "invalid argument",
    ErrorCode.NOT_FOUND: "not found",
    ErrorCode.ALREADY_EXISTS: "already exists",
    ErrorCode.UNAUTHORIZED: "unauthenticated",
    ErrorCode.PERMISSION_DENIED: "permission denied",
    ErrorCode.DEADLINE_EXCEEDED: "deadline exceeded",
    ErrorCode.CANCELED: "canceled",
    ErrorCode.RESOURCE_EXHAUSTED: "resource exhausted",
    ErrorCode.INTERNAL: "internal error",
    ErrorCode.UNAVAILABLE: "unavailable",
    ErrorCode.UNIMPLEMENTED: "unimplemented",
}


class FlightError(Exception):
    """An error carrying a category code, raised by services and handlers."""

    def __init__(
        self, code: ErrorCode, message: str, details: Optional[dict] = None
    ) -> None:
        self.code = code
        self.message = message
        self.details = dict(details) if details else {}
        super().__init__(message)


@dataclass(frozen=True)
class QueryRequest:
    """A request to run a query."""

    query: str
    transaction_id: str = ""
    max_rows: int = 0


@dataclass(frozen=True)
class UpdateRequest:
    """A request to run a data-modifying statement."""

    statement: str
    transaction_id: str = ""


@dataclass(frozen=True)
class FlightEndpoint:
    """Where and how a result stream can be fetched."""

    ticket: bytes = b""
    locations: Tuple[str, ...] = ()


@dataclass(frozen=True)
class FlightInfo:
    """Description of a query's result: its schema and endpoints."""

    schema: bytes
    endpoints: Tuple[FlightEndpoint, ...] = ()
    total_records: int = -1
    total_bytes: int = -1


class _QueryService(Protocol):
    def execute_query(self, request: QueryRequest) -> Any: ...

    def execute_update(self, request: UpdateRequest) -> Any: ...

    def validate_query(self, query: str) -> None: ...


def _find_flight_error(err: BaseException) -> Optional[FlightError]:
    seen = set()
    current: Optional[BaseException] = err
    while current is not None and id(current) not in seen:
        if isinstance(current, FlightError):
            return current
        seen.add(id(current))
        current = current.__cause__ or getattr(current, "cause", None)
    return None


def map_service_error(err: Optional[BaseException]) -> Optional[HandlerError]:
    """Translate a service error into a handler error with a category prefix."""
    if err is None:
        return None
    flight_err = _find_flight_error(err)
    if flight_err is not None:
        prefix = _CODE_PREFIXES.get(flight_err.code, "unknown error")
        return HandlerError(f"{prefix}: {flight_err.message}")
    return HandlerError("internal error", err)


def truncate_query(query: str) -> str:
    """Shorten long queries for logging."""
    if len(query) <= _MAX_LOGGED_QUERY:
        return query
    return query[:_MAX_LOGGED_QUERY] + "..."


def _seconds(duration: Any) -> float:
    if duration is None:
        return 0.0
    if isinstance(duration, timedelta):
        return duration.total_seconds()
    return float(duration)


class _SchemaCache:
    """A bounded least-recently-used set of schemas."""

    def __init__(self, capacity: int) -> None:
        self._capacity = capacity
        self._entries: "OrderedDict[Schema, Schema]" = OrderedDict()

    def get(self, schema: Schema) -> Optional[Schema]:
        cached = self._entries.get(schema)
        if cached is not None:
            self._entries.move_to_end(schema)
        return cached

    def put(self, schema: Schema) -> None:
        self._entries[schema] = schema
        self._entries.move_to_end(schema)
        while len(self._entries) > self._capacity:
            self._entries.popitem(last=False)

    def __len__(self) -> int:
        return len(self._entries)


class QueryHandler:
    """Runs queries and updates through a query service."""

    def __init__(
        self,
        query_service: _QueryService,
        logger: Optional[Logger] = None,
        metrics: Optional[MetricsCollector] = None,
    ) -> None:
        self._service = query_service
        self._logger = logger if logger is not None else NullLogger()
        self._metrics = metrics if metrics is not None else NullMetrics()
        self._schema_cache = _SchemaCache(_SCHEMA_CACHE_SIZE)

    def _cached_schema(self, schema: Schema) -> Schema:
        cached = self._schema_cache.get(schema)
        if cached is not None:
            self._metrics.increment_counter("handler_schema_cache_hit")
            return cached
        self._metrics.increment_counter("handler_schema_cache_miss")
        self._schema_cache.put(schema)
        return schema

    def execute_statement(
        self, query: str, transaction_id: str = ""
    ) -> Tuple[Schema, Iterator[StreamChunk]]:
        """Run a query and return its schema and a stream of result chunks."""
        timer = self._metrics.start_timer("handler_execute_statement")
        try:
            self._logger.debug(
                "Executing statement",
                query=truncate_query(query),
                transaction_id=transaction_id,
            )
            request = QueryRequest(query=query, transaction_id=transaction_id)
            try:
                result = self._service.execute_query(request)
            except Exception as err:
                self._metrics.increment_counter("handler_query_errors")
                self._logger.error("Failed to execute query", error=str(err))
                raise map_service_error(err) from err

            schema = result.schema
            if schema is None:
                self._metrics.increment_counter("handler_empty_schema")
                raise FlightError(ErrorCode.INTERNAL, "query returned no schema")
            schema = self._cached_schema(schema)
            return schema, self._stream_statement(result)
        finally:
            timer.stop()

    def _stream_statement(self, result: Any) -> Iterator[StreamChunk]:
        sent = 0
        try:
            for record in result.records:
                if record is None:
                    continue
                yield StreamChunk(data=record)
                sent += 1
        except GeneratorExit:
            self._logger.warn("Query streaming cancelled", records_sent=sent)
            raise
        self._logger.info(
            "Query streaming completed",
            records_sent=sent,
            total_rows=getattr(result, "total_rows", None),
            execution_time=getattr(result, "execution_time", None),
        )
        self._metrics.record_histogram("handler_query_records", float(sent))
        self._metrics.record_histogram(
            "handler_query_duration",
            _seconds(getattr(result, "execution_time", None)),
        )

    def execute_update(self, query: str, transaction_id: str = "") -> int:
        """Run a data-modifying statement and return the affected row count."""
        timer = self._metrics.start_timer("handler_execute_update")
        try:
            self._logger.debug(
                "Executing update",
                query=truncate_query(query),
                transaction_id=transaction_id,
            )
            request = UpdateRequest(statement=query, transaction_id=transaction_id)
            try:
                result = self._service.execute_update(request)
            except Exception as err:
                self._metrics.increment_counter("handler_update_errors")
                self._logger.error("Failed to execute update", error=str(err))
                raise map_service_error(err) from err

            rows = int(result.rows_affected)
            duration = _seconds(getattr(result, "execution_time", None))
            self._logger.info(
                "Update executed successfully",
                rows_affected=rows,
                execution_time=duration,
            )
            self._metrics.record_histogram("handler_update_rows", float(rows))
            self._metrics.record_histogram("handler_update_duration", duration)
            return rows
        finally:
            timer.stop()

    def get_flight_info(self, query: str) -> FlightInfo:
        """Validate a query and describe its result schema."""
        timer = self._metrics.start_timer("handler_get_flight_info")
        try:
            self._logger.debug("Getting flight info", query=truncate_query(query))
            try:
                self._service.validate_query(query)
            except Exception as err:
                self._metrics.increment_counter("handler_validation_errors")
                raise map_service_error(err) from err

            try:
                result = self._service.execute_query(
                    QueryRequest(query=query, max_rows=0)
                )
            except Exception as err:
                self._logger.error("Failed to get schema", error=str(err))
                self._metrics.increment_counter("handler_internal_errors")
                raise map_service_error(err) from err

            schema = result.schema
            if schema is None:
                self._metrics.increment_counter("handler_internal_errors")
                cause = FlightError(ErrorCode.INTERNAL, "schema is nil")
                raise map_service_error(cause) from cause
            schema = self._cached_schema(schema)
            return FlightInfo(
                schema=schema.to_bytes(),
                endpoints=(FlightEndpoint(ticket=b""),),
                total_records=-1,
                total_bytes=-1,
            )
        finally:
            timer.stop()

    def execute_query_and_stream(
        self, query: str
    ) -> Tuple[Schema, Iterator[StreamChunk]]:
        """Run a query and stream its non-empty batches under the query's schema."""
        timer = self._metrics.start_timer("handler_execute_query_and_stream")
        try:
            self._logger.debug(
                "Executing query for streaming", query=truncate_query(query)
            )
            try:
                result = self._service.execute_query(QueryRequest(query=query))
            except Exception as err:
                self._metrics.increment_counter("handler_query_errors")
                self._logger.error("Failed to execute query", error=str(err))
                raise map_service_error(err) from err

            schema = result.schema
            if schema is None:
                self._metrics.increment_counter("handler_internal_errors")
                cause = FlightError(ErrorCode.INTERNAL, "schema is nil")
                raise map_service_error(cause) from cause
            schema = self._cached_schema(schema)
            return schema, self._stream_copies(schema, result.records)
        finally:
            timer.stop()

    def _stream_copies(
        self, schema: Schema, records: Iterable[Optional[Record]]
    ) -> Iterator[StreamChunk]:
        sent = 0
        try:
            for record in records:
                if record is None:
                    continue
                copy = Record(schema, record.columns)
                if copy.num_rows == 0:
                    continue
                yield StreamChunk(data=copy)
                sent += 1
                self._metrics.record_histogram(
                    "handler_record_rows", float(copy.num_rows)
                )
        except GeneratorExit:
            self._logger.info(
                "Context cancelled during chunk send", records_sent=sent
            )
            raise
        self._logger.info("Query streaming completed", records_sent=sent)
        self._metrics.record_histogram("handler_stream_records", float(sent))