"""Handler for creating, running and closing prepared statements."""

from __future__ import annotations

from datetime import date, datetime, timedelta, timezone
from typing import Any, Iterator, List, Optional, Protocol, Tuple

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

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)

_PLAIN_TYPES = frozenset(
    {
        "bool",
        "boolean",
        "int8",
        "int16",
        "int32",
        "int64",
        "uint8",
        "uint16",
        "uint32",
        "uint64",
        "float",
        "float32",
        "double",
        "float64",
        "string",
        "utf8",
        "binary",
        "time32",
        "time64",
    }
)

_TIMESTAMP_UNITS = {
    "s": lambda v: timedelta(seconds=v),
    "ms": lambda v: timedelta(milliseconds=v),
    "us": lambda v: timedelta(microseconds=v),
    "ns": lambda v: timedelta(microseconds=v // 1000),
}


class _PreparedStatementService(Protocol):
    def create(self, query: str, transaction_id: str) -> Any: ...

    def close(self, handle: str) -> None: ...

    def get(self, handle: str) -> Any: ...

    def execute_query(self, handle: str, params: Optional[List[List[Any]]]) -> Any: ...

    def execute_update(self, handle: str, params: Optional[List[List[Any]]]) -> Any: ...

    def set_parameters(self, handle: str, params: Optional[List[List[Any]]]) -> None: ...


def _split_type(type_name: str) -> Tuple[str, Optional[str]]:
    lowered = type_name.strip().lower()
    if "[" in lowered and lowered.endswith("]"):
        base, _, unit = lowered[:-1].partition("[")
        return base.strip(), unit.split(",")[0].strip()
    return lowered, None


def _extract_value(type_name: str, value: Any) -> Any:
    base, unit = _split_type(type_name)
    if base in _PLAIN_TYPES:
        return value
    if base == "timestamp":
        if isinstance(value, datetime):
            return value
        convert = _TIMESTAMP_UNITS.get(unit or "us")
        if convert is None:
            raise ValueError(f"unsupported timestamp unit: {unit}")
        return _EPOCH + convert(int(value))
    if base == "date32":
        if isinstance(value, date):
            return value
        return _EPOCH + timedelta(days=int(value))
    if base == "date64":
        if isinstance(value, date):
            return value
        return _EPOCH + timedelta(milliseconds=int(value))
    raise ValueError(f"unsupported array type: {type_name}")


def extract_parameters(params: Optional[Record]) -> Optional[List[List[Any]]]:
    """Turn a parameter record into a list of rows of Python values.

    Returns None when no record is given.
    """
    if params is None:
        return None
    result: List[List[Any]] = [[None] * params.num_cols for _ in range(params.num_rows)]
    for col_idx, (fld, column) in enumerate(zip(params.schema.fields, params.columns)):
        for row_idx, value in enumerate(column):
            if value is None:
                continue
            try:
                result[row_idx][col_idx] = _extract_value(fld.type, value)
            except (ValueError, TypeError) as err:
                raise HandlerError(
                    f"failed to extract value at row {row_idx}, col {col_idx}", err
                ) from err
    return result


def _seconds(duration: Any) -> float:
    if duration is None:
        return 0.0
    if isinstance(duration, timedelta):
        return duration.total_seconds()
    return float(duration)


class PreparedStatementHandler:
    """Validates prepared-statement requests and delegates them to a service."""

    def __init__(
        self,
        prepared_statement_service: _PreparedStatementService,
        query_service: Any = None,
        logger: Optional[Logger] = None,
        metrics: Optional[MetricsCollector] = None,
    ) -> None:
        self._service = prepared_statement_service
        self._query_service = query_service
        self._logger = logger if logger is not None else NullLogger()
        self._metrics = metrics if metrics is not None else NullMetrics()

    def _require_handle(self, handle: str) -> None:
        if not handle:
            self._metrics.increment_counter("handler_prepared_statement_invalid_handle")
            raise HandlerError("invalid prepared statement handle")

    def _parameters(self, params: Optional[Record]) -> Optional[List[List[Any]]]:
        try:
            return extract_parameters(params)
        except HandlerError as err:
            self._metrics.increment_counter("handler_prepared_statement_parameter_errors")
            raise HandlerError("failed to extract parameters", err) from err

    def create(self, query: str, transaction_id: str = "") -> Tuple[str, Optional[Schema]]:
        """Create a prepared statement and return its handle and result schema."""
        timer = self._metrics.start_timer("handler_prepared_statement_create")
        try:
            self._logger.debug(
                "Creating prepared statement",
                query=query if len(query) <= 100 else query[:100] + "...",
                transaction_id=transaction_id,
            )
            try:
                stmt = self._service.create(query, transaction_id)
            except Exception as err:
                self._metrics.increment_counter("handler_prepared_statement_create_errors")
                self._logger.error("Failed to create prepared statement", error=str(err))
                raise HandlerError("failed to create prepared statement", err) from err
            self._logger.info(
                "Prepared statement created",
                handle=stmt.handle,
                has_parameters=getattr(stmt, "parameter_schema", None) is not None,
            )
            self._metrics.increment_counter("handler_prepared_statements_created")
            return stmt.handle, getattr(stmt, "result_set_schema", None)
        finally:
            timer.stop()

    def close(self, handle: str) -> None:
        """Close the prepared statement with the given handle."""
        timer = self._metrics.start_timer("handler_prepared_statement_close")
        try:
            self._logger.debug("Closing prepared statement", handle=handle)
            self._require_handle(handle)
            try:
                self._service.close(handle)
            except Exception as err:
                self._metrics.increment_counter("handler_prepared_statement_close_errors")
                self._logger.error(
                    "Failed to close prepared statement", error=str(err), handle=handle
                )
                raise HandlerError("failed to close prepared statement", err) from err
            self._logger.info("Prepared statement closed", handle=handle)
            self._metrics.increment_counter("handler_prepared_statements_closed")
        finally:
            timer.stop()

    def execute_query(
        self, handle: str, params: Optional[Record] = None
    ) -> Tuple[Schema, Iterator[StreamChunk]]:
        """Run a prepared query and return its schema and a stream of chunks."""
        timer = self._metrics.start_timer("handler_prepared_statement_execute_query")
        try:
            self._logger.debug("Executing prepared query", handle=handle)
            self._require_handle(handle)
            values = self._parameters(params)
            try:
                result = self._service.execute_query(handle, values)
            except Exception as err:
                self._metrics.increment_counter("handler_prepared_statement_query_errors")
                self._logger.error(
                    "Failed to execute prepared query", error=str(err), handle=handle
                )
                raise HandlerError("failed to execute prepared query", err) from err
            schema = getattr(result, "schema", None)
            if schema is None:
                self._metrics.increment_counter("handler_prepared_statement_empty_schema")
                raise HandlerError("prepared query returned no schema")
            return schema, self._stream(handle, result)
        finally:
            timer.stop()

    def _stream(self, handle: str, result: Any) -> Iterator[StreamChunk]:
        sent = 0
        try:
            for record in result.records:
                yield StreamChunk(data=record)
                sent += 1
        except GeneratorExit:
            self._logger.warn("Prepared query streaming cancelled", records_sent=sent)
            raise
        duration = _seconds(getattr(result, "execution_time", None))
        self._logger.info(
            "Prepared query streaming completed",
            handle=handle,
            records_sent=sent,
            total_rows=getattr(result, "total_rows", None),
            execution_time=duration,
        )
        self._metrics.record_histogram("handler_prepared_query_records", float(sent))
        self._metrics.record_histogram("handler_prepared_query_duration", duration)

    def execute_update(self, handle: str, params: Optional[Record] = None) -> int:
        """Run a prepared update and return the number of affected rows."""
        timer = self._metrics.start_timer("handler_prepared_statement_execute_update")
        try:
            self._logger.debug("Executing prepared update", handle=handle)
            self._require_handle(handle)
            values = self._parameters(params)
            try:
                result = self._service.execute_update(handle, values)
            except Exception as err:
                self._metrics.increment_counter("handler_prepared_statement_update_errors")
                self._logger.error(
                    "Failed to execute prepared update", error=str(err), handle=handle
                )
                raise HandlerError("failed to execute prepared update", err) from err
            rows = int(result.rows_affected)
            duration = _seconds(getattr(result, "execution_time", None))
            self._logger.info(
                "Prepared update executed successfully",
                handle=handle,
                rows_affected=rows,
                execution_time=duration,
            )
            self._metrics.record_histogram("handler_prepared_update_rows", float(rows))
            self._metrics.record_histogram("handler_prepared_update_duration", duration)
            return rows
        finally:
            timer.stop()

    def _get_statement(self, handle: str) -> Any:
        try:
            return self._service.get(handle)
        except Exception as err:
            self._metrics.increment_counter("handler_prepared_statement_get_errors")
            self._logger.error(
                "Failed to get prepared statement", error=str(err), handle=handle
            )
            raise HandlerError("failed to get prepared statement", err) from err

    def get_schema(self, handle: str) -> Schema:
        """Return the result-set schema of a prepared statement."""
        timer = self._metrics.start_timer("handler_prepared_statement_get_schema")
        try:
            self._logger.debug("Getting prepared statement schema", handle=handle)
            self._require_handle(handle)
            stmt = self._get_statement(handle)
            schema = getattr(stmt, "result_set_schema", None)
            if schema is None:
                self._metrics.increment_counter("handler_prepared_statement_no_schema")
                raise HandlerError("prepared statement has no schema")
            self._logger.info("Retrieved prepared statement schema", handle=handle)
            return schema
        finally:
            timer.stop()

    def get_parameter_schema(self, handle: str) -> Schema:
        """Return the parameter schema, or an empty schema when there are none."""
        timer = self._metrics.start_timer(
            "handler_prepared_statement_get_parameter_schema"
        )
        try:
            self._logger.debug(
                "Getting prepared statement parameter schema", handle=handle
            )
            self._require_handle(handle)
            stmt = self._get_statement(handle)
            schema = getattr(stmt, "parameter_schema", None)
            if schema is None:
                self._logger.info("Prepared statement has no parameters", handle=handle)
                return Schema(())
            self._logger.info(
                "Retrieved prepared statement parameter schema",
                handle=handle,
                num_params=len(schema.fields),
            )
            return schema
        finally:
            timer.stop()

    def set_parameters(self, handle: str, params: Optional[Record]) -> None:
        """Bind parameter values to a prepared statement."""
        timer = self._metrics.start_timer("handler_prepared_statement_set_parameters")
        try:
            self._logger.debug("Setting parameters for prepared statement", handle=handle)
            self._require_handle(handle)
            values = self._parameters(params)
            try:
                self._service.set_parameters(handle, values)
            except Exception as err:
                self._metrics.increment_counter(
                    "handler_prepared_statement_set_parameters_errors"
                )
                self._logger.error(
                    "Failed to set parameters for prepared statement",
                    error=str(err),
                    handle=handle,
                )
                raise HandlerError(
                    "failed to set parameters for prepared statement", err
                ) from err
            self._logger.info("Parameters set for prepared statement", handle=handle)
            self._metrics.increment_counter("handler_prepared_statement_parameters_set")
        finally:
            timer.stop()