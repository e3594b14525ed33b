# hatchflight

This package provides request handlers for a Flight SQL style database
front-end. Each handler sits between a protocol layer and a service
object that you supply. A handler checks its input, times each call and
counts outcomes through a metrics collector, and writes log lines. It
returns results as a `Schema` and, for result sets, a lazy iterator of
`StreamChunk` objects that each hold a columnar `Record`.

## Installation

```
pip install hatchflight
```

For development:

```
pip install "hatchflight[test]"
pytest
```

The package has no runtime dependencies.

## Handlers

Every handler takes its service first. It then takes an optional
`logger` and an optional `metrics`. If you leave them out, the handler
uses `NullLogger()` and `NullMetrics()`. A failed call raises
`HandlerError`, and the service's exception is chained as its cause.

### `TransactionHandler` (`hatchflight.transaction_handler`)

- `begin(read_only=False)` calls `service.begin(TransactionOptions(read_only=...))`
  and returns the transaction id.
- `commit(transaction_id)` and `rollback(transaction_id)` raise
  `HandlerError("invalid transaction ID")` when the id is empty.

### `QueryHandler` (`hatchflight.query_handler`)

The service must provide `execute_query(QueryRequest)`,
`execute_update(UpdateRequest)` and `validate_query(query)`.

- `execute_statement(query, transaction_id="")` returns
  `(schema, chunks)`. Records that are `None` are skipped.
- `execute_update(query, transaction_id="")` returns the service
  result's `rows_affected`.
- `get_flight_info(query)` first validates the query. It returns a
  `FlightInfo` that holds the serialised schema and one `FlightEndpoint`
  with an empty ticket. `total_records` and `total_bytes` are both -1.
- `execute_query_and_stream(query)` re-labels each batch with the
  query's schema and drops batches that have no rows.

A bounded cache of up to 100 schemas counts hits and misses.

Service errors are translated by `map_service_error(err)`. If the error
is a `FlightError`, or has one in its cause chain, the result is a
`HandlerError` whose message starts with a prefix chosen by its
`ErrorCode`, for example `"not found: ..."`. Any other error becomes
`"internal error: ..."`. `truncate_query(query)` shortens a query to 100
characters plus `"..."` for logging.

### `PreparedStatementHandler` (`hatchflight.prepared_statement_handler`)

Methods:

- `create(query, transaction_id="")` returns `(handle, result_set_schema)`.
- `close(handle)`
- `execute_query(handle, params=None)` returns `(schema, chunks)`.
- `execute_update(handle, params=None)` returns the row count.
- `get_schema(handle)`
- `get_parameter_schema(handle)` returns an empty `Schema` when the
  statement has no parameters.
- `set_parameters(handle, params)`

An empty handle raises `HandlerError("invalid prepared statement handle")`.

`extract_parameters(params)` turns a parameter `Record` into a list of
rows of Python values, and returns `None` when `params` is `None`. How
values are converted depends on the field type:

| Field type | Result |
| --- | --- |
| boolean, integer, float, string, binary, time | passed through unchanged |
| `timestamp[s\|ms\|us\|ns]` | UTC `datetime` |
| `date32` | UTC `datetime`, counted in days |
| `date64` | UTC `datetime`, counted in milliseconds |
| any other type | `HandlerError` |

### `MetadataHandler` (`hatchflight.metadata_handler`)

Each of these methods returns `(schema, chunks)`, where the stream holds
a single record:

- `get_catalogs()`
- `get_schemas(catalog, schema_pattern)`
- `get_tables(catalog, schema_pattern, table_pattern, table_types, include_schema)`
- `get_table_types()`
- `get_primary_keys(catalog, schema, table)`
- `get_imported_keys(catalog, schema, table)`
- `get_exported_keys(catalog, schema, table)`
- `get_xdbc_type_info(data_type)`
- `get_sql_info(info)`

Service items may be objects or mappings. Empty catalog names and empty
key names become nulls. The result-set schemas are available from these
functions:

- `catalogs_schema()`
- `db_schemas_schema()`
- `tables_schema(include_schema)`
- `table_types_schema()`
- `primary_keys_schema()`
- `foreign_keys_schema()`

`TableRef` and `GetTablesOptions` are the request objects passed to the
service.

## Shared types (`hatchflight.interfaces`)

- `Field(name, type, nullable=True)` describes one column. `Schema(fields)`
  is an ordered set of fields with `field(index)` and `index_of(name)`.
  `to_bytes()` and `Schema.from_bytes(data)` give a JSON round trip.
- `Record(schema, columns)` is a columnar batch with `num_rows`,
  `num_cols`, `column(i)`, `column_name(i)` and `rows()`.
  `Record.from_rows(schema, rows)` builds one from row tuples.
- `StreamChunk(data, app_metadata=None)` is one unit of a result stream.
- `Logger`, `MetricsCollector` and `Timer` are the protocols the handlers
  use.
- `NullLogger` forwards to the standard `logging` logger named
  `hatchflight`.
- `NullMetrics` keeps `counters`, `histograms`, `gauges` and `timers` in
  memory.
- `HandlerError` carries `message` and `cause`.

## Example

```python
from types import SimpleNamespace

from hatchflight.interfaces import Field, Record, Schema
from hatchflight.query_handler import QueryHandler

schema = Schema((Field("id", "int64"), Field("name", "utf8")))


class Service:
    def execute_query(self, request):
        batch = Record.from_rows(schema, [(1, "a"), (2, "b")])
        return SimpleNamespace(schema=schema, records=[batch],
                               total_rows=2, execution_time=0.01)

    def execute_update(self, request):
        return SimpleNamespace(rows_affected=1, execution_time=0.0)

    def validate_query(self, query):
        pass


handler = QueryHandler(Service())
result_schema, chunks = handler.execute_statement("SELECT id, name FROM t")
for chunk in chunks:
    print(list(chunk.data.rows()))   # [(1, 'a'), (2, 'b')]
```

Streams are generators. The metrics and log lines that report how a
stream ended are recorded only once the stream has been consumed or
closed.

## What this package does not do

The package contains the handlers only:

- It has no network server or wire protocol, and no command to run.
- It has no database engine. You supply the services that run queries,
  manage transactions and prepared statements, and read metadata.
- `get_tables(..., include_schema=True)` adds a `table_schema` column,
  but that column is always null.