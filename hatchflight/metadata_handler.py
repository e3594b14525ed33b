"""Handler that answers catalog, schema, table and key discovery requests."""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import Any, Iterable, Iterator, List, Mapping, Optional, Protocol, Sequence, Tuple

from hatchflight.interfaces import (
    Field,
    HandlerError,
    Logger,
    MetricsCollector,
    NullLogger,
    NullMetrics,
    Record,
    Schema,
    StreamChunk,
)


@dataclass(frozen=True)
class TableRef:
    """Identifies a table, optionally qualified by catalog and schema."""

    table: str
    catalog: Optional[str] = None
    db_schema: Optional[str] = None


@dataclass(frozen=True)
class GetTablesOptions:
    """Filters for a table listing."""

    catalog: Optional[str] = None
    schema_filter_pattern: Optional[str] = None
    table_name_filter_pattern: Optional[str] = None
    table_types: Tuple[str, ...] = field(default_factory=tuple)
    include_schema: bool = False

    def __post_init__(self) -> None:
        object.__setattr__(self, "table_types", tuple(self.table_types or ()))


class _MetadataService(Protocol):
    def get_catalogs(self) -> Sequence[Any]: ...

    def get_schemas(self, catalog: str, pattern: str) -> Sequence[Any]: ...

    def get_tables(self, options: GetTablesOptions) -> Sequence[Any]: ...

    def get_table_types(self) -> Sequence[str]: ...

    def get_primary_keys(self, table_ref: TableRef) -> Sequence[Any]: ...

    def get_imported_keys(self, table_ref: TableRef) -> Sequence[Any]: ...

    def get_exported_keys(self, table_ref: TableRef) -> Sequence[Any]: ...

    def get_type_info(self, data_type: Optional[int]) -> Sequence[Any]: ...

    def get_sql_info(self, info: Sequence[int]) -> Sequence[Any]: ...


def catalogs_schema() -> Schema:
    """Schema of a catalog listing."""
    return Schema((Field("catalog_name", "utf8", False),))


def db_schemas_schema() -> Schema:
    """Schema of a database-schema listing."""
    return Schema(
        (
            Field("catalog_name", "utf8", True),
            Field("db_schema_name", "utf8", False),
        )
    )


def tables_schema(include_schema: bool) -> Schema:
    """Schema of a table listing, with a serialized-schema column if requested."""
    fields = [
        Field("catalog_name", "utf8", True),
        Field("db_schema_name", "utf8", True),
        Field("table_name", "utf8", False),
        Field("table_type", "utf8", False),
    ]
    if include_schema:
        fields.append(Field("table_schema", "binary", True))
    return Schema(tuple(fields))


def table_types_schema() -> Schema:
    """Schema of a table-type listing."""
    return Schema((Field("table_type", "utf8", False),))


def primary_keys_schema() -> Schema:
    """Schema of a primary-key listing."""
    return Schema(
        (
            Field("catalog_name", "utf8", True),
            Field("db_schema_name", "utf8", True),
            Field("table_name", "utf8", False),
            Field("column_name", "utf8", False),
            Field("key_sequence", "int32", False),
            Field("key_name", "utf8", True),
        )
    )


def foreign_keys_schema() -> Schema:
    """Schema of an imported or exported foreign-key listing."""
    return Schema(
        (
            Field("pk_catalog_name", "utf8", True),
            Field("pk_db_schema_name", "utf8", True),
            Field("pk_table_name", "utf8", False),
            Field("pk_column_name", "utf8", False),
            Field("fk_catalog_name", "utf8", True),
            Field("fk_db_schema_name", "utf8", True),
            Field("fk_table_name", "utf8", False),
            Field("fk_column_name", "utf8", False),
            Field("key_sequence", "int32", False),
            Field("fk_key_name", "utf8", True),
            Field("pk_key_name", "utf8", True),
            Field("update_rule", "uint8", False),
            Field("delete_rule", "uint8", False),
        )
    )


_XDBC_FIELDS: Tuple[Field, ...] = (
    Field("type_name", "utf8", False),
    Field("data_type", "int32", False),
    Field("column_size", "int32", True),
    Field("literal_prefix", "utf8", True),
    Field("literal_suffix", "utf8", True),
    Field("create_params", "list<utf8>", True),
    Field("nullable", "int32", False),
    Field("case_sensitive", "bool", False),
    Field("searchable", "int32", False),
    Field("unsigned_attribute", "bool", True),
    Field("fixed_prec_scale", "bool", False),
    Field("auto_increment", "bool", True),
    Field("local_type_name", "utf8", True),
    Field("minimum_scale", "int32", True),
    Field("maximum_scale", "int32", True),
    Field("sql_data_type", "int32", False),
    Field("datetime_subcode", "int32", True),
    Field("num_prec_radix", "int32", True),
    Field("interval_precision", "int32", True),
)

_SQL_INFO_FIELDS: Tuple[Field, ...] = (
    Field("info_name", "uint32", False),
    Field("value", "dense_union", False),
)


def _xdbc_type_info_schema() -> Schema:
    return Schema(_XDBC_FIELDS)


def _sql_info_schema() -> Schema:
    return Schema(_SQL_INFO_FIELDS)


def _attr(item: Any, name: str, default: Any = None) -> Any:
    if isinstance(item, Mapping):
        return item.get(name, default)
    return getattr(item, name, default)


def _or_null(value: Any) -> Any:
    return value if value else None


def _rule(value: Any) -> int:
    if isinstance(value, enum.Enum) and not isinstance(value, int):
        value = value.value
    return int(value) & 0xFF


class MetadataHandler:
    """Answers metadata discovery requests through a metadata service."""

    def __init__(
        self,
        metadata_service: _MetadataService,
        logger: Optional[Logger] = None,
        metrics: Optional[MetricsCollector] = None,
    ) -> None:
        self._service = metadata_service
        self._logger = logger if logger is not None else NullLogger()
        self._metrics = metrics if metrics is not None else NullMetrics()

    def _fetch(self, operation: str, description: str, call: Any) -> Any:
        try:
            return call()
        except Exception as err:
            self._metrics.increment_counter(
                "handler_metadata_errors", "operation", operation
            )
            raise HandlerError(f"failed to get {description}", err) from err

    def _emit(
        self,
        schema: Schema,
        rows: Iterable[Sequence[Any]],
        message: str,
        histogram: Optional[str],
        count: int,
    ) -> Iterator[StreamChunk]:
        yield StreamChunk(data=Record.from_rows(schema, rows))
        self._logger.info(message, count=count)
        if histogram is not None:
            self._metrics.record_histogram(histogram, float(count))

    def get_catalogs(self) -> Tuple[Schema, Iterator[StreamChunk]]:
        """Return the catalog listing."""
        timer = self._metrics.start_timer("handler_get_catalogs")
        try:
            self._logger.debug("Getting catalogs")
            catalogs = list(
                self._fetch("get_catalogs", "catalogs", self._service.get_catalogs)
            )
            schema = catalogs_schema()
            rows = [(_attr(c, "name"),) for c in catalogs]
            return schema, self._emit(
                schema, rows, "Catalogs retrieved", "handler_catalogs_count", len(rows)
            )
        finally:
            timer.stop()

    def get_schemas(
        self, catalog: Optional[str] = None, schema_pattern: Optional[str] = None
    ) -> Tuple[Schema, Iterator[StreamChunk]]:
        """Return the database schemas matching the filter."""
        timer = self._metrics.start_timer("handler_get_schemas")
        try:
            self._logger.debug("Getting schemas", catalog=catalog, pattern=schema_pattern)
            catalog_value = catalog if catalog is not None else ""
            pattern_value = schema_pattern if schema_pattern is not None else ""
            schemas = list(
                self._fetch(
                    "get_schemas",
                    "schemas",
                    lambda: self._service.get_schemas(catalog_value, pattern_value),
                )
            )
            schema = db_schemas_schema()
            rows = [(_or_null(_attr(s, "catalog_name")), _attr(s, "name")) for s in schemas]
            return schema, self._emit(
                schema, rows, "Schemas retrieved", "handler_schemas_count", len(rows)
            )
        finally:
            timer.stop()

    def get_tables(
        self,
        catalog: Optional[str] = None,
        schema_pattern: Optional[str] = None,
        table_pattern: Optional[str] = None,
        table_types: Optional[Sequence[str]] = None,
        include_schema: bool = False,
    ) -> Tuple[Schema, Iterator[StreamChunk]]:
        """Return the tables matching the filter."""
        timer = self._metrics.start_timer("handler_get_tables")
        try:
            self._logger.debug(
                "Getting tables",
                catalog=catalog,
                schema_pattern=schema_pattern,
                table_pattern=table_pattern,
                table_types=table_types,
                include_schema=include_schema,
            )
            options = GetTablesOptions(
                catalog=catalog,
                schema_filter_pattern=schema_pattern,
                table_name_filter_pattern=table_pattern,
                table_types=tuple(table_types or ()),
                include_schema=include_schema,
            )
            tables = list(
                self._fetch("get_tables", "tables", lambda: self._service.get_tables(options))
            )
            schema = tables_schema(include_schema)
            rows: List[Tuple[Any, ...]] = []
            for table in tables:
                row: Tuple[Any, ...] = (
                    _or_null(_attr(table, "catalog_name")),
                    _attr(table, "schema_name"),
                    _attr(table, "name"),
                    _attr(table, "type"),
                )
                if include_schema:
                    # The serialized table schema is not produced; the column is null.
                    row += (None,)
                rows.append(row)
            return schema, self._emit(
                schema, rows, "Tables retrieved", "handler_tables_count", len(rows)
            )
        finally:
            timer.stop()

    def get_table_types(self) -> Tuple[Schema, Iterator[StreamChunk]]:
        """Return the available table types."""
        timer = self._metrics.start_timer("handler_get_table_types")
        try:
            self._logger.debug("Getting table types")
            types = list(
                self._fetch("get_table_types", "table types", self._service.get_table_types)
            )
            schema = table_types_schema()
            rows = [(t,) for t in types]
            return schema, self._emit(
                schema, rows, "Table types retrieved", "handler_table_types_count", len(rows)
            )
        finally:
            timer.stop()

    def get_primary_keys(
        self, catalog: Optional[str], schema: Optional[str], table: str
    ) -> Tuple[Schema, Iterator[StreamChunk]]:
        """Return the primary-key columns of a table."""
        timer = self._metrics.start_timer("handler_get_primary_keys")
        try:
            self._logger.debug(
                "Getting primary keys", catalog=catalog, schema=schema, table=table
            )
            ref = TableRef(table=table, catalog=catalog, db_schema=schema)
            keys = list(
                self._fetch(
                    "get_primary_keys",
                    "primary keys",
                    lambda: self._service.get_primary_keys(ref),
                )
            )
            result_schema = primary_keys_schema()
            rows = [
                (
                    _or_null(_attr(k, "catalog_name")),
                    _attr(k, "schema_name"),
                    _attr(k, "table_name"),
                    _attr(k, "column_name"),
                    int(_attr(k, "key_sequence", 0)),
                    _or_null(_attr(k, "key_name")),
                )
                for k in keys
            ]
            return result_schema, self._emit(
                result_schema,
                rows,
                "Primary keys retrieved",
                "handler_primary_keys_count",
                len(rows),
            )
        finally:
            timer.stop()

    def _foreign_key_rows(self, keys: Iterable[Any]) -> List[Tuple[Any, ...]]:
        return [
            (
                _or_null(_attr(k, "pk_catalog_name")),
                _attr(k, "pk_schema_name"),
                _attr(k, "pk_table_name"),
                _attr(k, "pk_column_name"),
                _or_null(_attr(k, "fk_catalog_name")),
                _attr(k, "fk_schema_name"),
                _attr(k, "fk_table_name"),
                _attr(k, "fk_column_name"),
                int(_attr(k, "key_sequence", 0)),
                _or_null(_attr(k, "fk_key_name")),
                _or_null(_attr(k, "pk_key_name")),
                _rule(_attr(k, "update_rule", 0)),
                _rule(_attr(k, "delete_rule", 0)),
            )
            for k in keys
        ]

    def _foreign_keys(
        self,
        kind: str,
        catalog: Optional[str],
        schema: Optional[str],
        table: str,
        call: Any,
    ) -> Tuple[Schema, Iterator[StreamChunk]]:
        timer = self._metrics.start_timer(f"handler_get_{kind}_keys")
        try:
            self._logger.debug(
                f"Getting {kind} keys", catalog=catalog, schema=schema, table=table
            )
            ref = TableRef(table=table, catalog=catalog, db_schema=schema)
            keys = list(
                self._fetch(f"get_{kind}_keys", f"{kind} keys", lambda: call(ref))
            )
            result_schema = foreign_keys_schema()
            rows = self._foreign_key_rows(keys)
            return result_schema, self._emit(
                result_schema,
                rows,
                f"{kind.capitalize()} keys retrieved",
                f"handler_{kind}_keys_count",
                len(rows),
            )
        finally:
            timer.stop()

    def get_imported_keys(
        self, catalog: Optional[str], schema: Optional[str], table: str
    ) -> Tuple[Schema, Iterator[StreamChunk]]:
        """Return the foreign keys a table imports."""
        return self._foreign_keys(
            "imported", catalog, schema, table, self._service.get_imported_keys
        )

    def get_exported_keys(
        self, catalog: Optional[str], schema: Optional[str], table: str
    ) -> Tuple[Schema, Iterator[StreamChunk]]:
        """Return the foreign keys that reference a table."""
        return self._foreign_keys(
            "exported", catalog, schema, table, self._service.get_exported_keys
        )

    def get_xdbc_type_info(
        self, data_type: Optional[int] = None
    ) -> Tuple[Schema, Iterator[StreamChunk]]:
        """Return XDBC type information, optionally for one data type."""
        timer = self._metrics.start_timer("handler_get_xdbc_type_info")
        try:
            self._logger.debug("Getting XDBC type info", data_type=data_type)
            types = list(
                self._fetch(
                    "get_xdbc_type_info",
                    "XDBC type info",
                    lambda: self._service.get_type_info(data_type),
                )
            )
            schema = _xdbc_type_info_schema()
            rows = [tuple(_attr(t, f.name) for f in _XDBC_FIELDS) for t in types]
            return schema, self._xdbc_stream(schema, rows)
        finally:
            timer.stop()

    def _xdbc_stream(
        self, schema: Schema, rows: List[Tuple[Any, ...]]
    ) -> Iterator[StreamChunk]:
        yield StreamChunk(data=Record.from_rows(schema, rows))
        self._logger.info("XDBC type info retrieved")
        self._metrics.increment_counter("handler_xdbc_type_info_retrieved")

    def get_sql_info(self, info: Sequence[int]) -> Tuple[Schema, Iterator[StreamChunk]]:
        """Return server SQL information for the requested codes."""
        timer = self._metrics.start_timer("handler_get_sql_info")
        try:
            codes = list(info or ())
            self._logger.debug("Getting SQL info", info_codes=codes)
            entries = list(
                self._fetch(
                    "get_sql_info", "SQL info", lambda: self._service.get_sql_info(codes)
                )
            )
            schema = _sql_info_schema()
            rows = [(int(_attr(e, "info_name")), _attr(e, "value")) for e in entries]
            return schema, self._sql_info_stream(schema, rows, len(codes))
        finally:
            timer.stop()

    def _sql_info_stream(
        self, schema: Schema, rows: List[Tuple[Any, ...]], requested: int
    ) -> Iterator[StreamChunk]:
        yield StreamChunk(data=Record.from_rows(schema, rows))
        self._logger.info("SQL info retrieved", info_count=requested)
        self._metrics.record_histogram("handler_sql_info_count", float(requested))