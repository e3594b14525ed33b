"""Shared data types and collaborator protocols used by the Flight SQL handlers."""

from __future__ import annotations

import json
import logging
import time
from collections import defaultdict
from dataclasses import dataclass, field
from typing import (
    Any,
    DefaultDict,
    Dict,
    Iterable,
    Iterator,
    List,
    Optional,
    Protocol,
    Sequence,
    Tuple,
)

_log = logging.getLogger("hatchflight")
_log.addHandler(logging.NullHandler())


class HandlerError(Exception):
    """Raised when a handler operation fails.

    The message carries the handler's description and, when present, the
    text of the underlying cause, joined by a colon.
    """

    def __init__(self, message: str, cause: Optional[BaseException] = None) -> None:
        self.message = message
        self.cause = cause
        text = f"{message}: {cause}" if cause is not None else message
        super().__init__(text)


@dataclass(frozen=True)
class Field:
    """A named, typed column in a schema."""

    name: str
    type: str
    nullable: bool = True


@dataclass(frozen=True)
class Schema:
    """An ordered collection of fields describing a result set."""

    fields: Tuple[Field, ...] = ()

    def __post_init__(self) -> None:
        object.__setattr__(self, "fields", tuple(self.fields))

    def __len__(self) -> int:
        return len(self.fields)

    def __iter__(self) -> Iterator[Field]:
        return iter(self.fields)

    @property
    def names(self) -> Tuple[str, ...]:
        return tuple(f.name for f in self.fields)

    def field(self, index: int) -> Field:
        """Return the field at ``index``."""
        return self.fields[index]

    def index_of(self, name: str) -> int:
        """Return the position of the field called ``name``.

        Raises KeyError when no such field exists.
        """
        for position, candidate in enumerate(self.fields):
            if candidate.name == name:
                return position
        raise KeyError(name)

    def to_bytes(self) -> bytes:
        """Serialize the schema to a compact byte form."""
        payload = {
            "fields": [
                {"name": f.name, "type": f.type, "nullable": f.nullable}
                for f in self.fields
            ]
        }
        return json.dumps(payload, separators=(",", ":")).encode("utf-8")

    @classmethod
    def from_bytes(cls, data: bytes) -> "Schema":
        """Rebuild a schema produced by :meth:`to_bytes`.

        Raises ValueError when the bytes do not describe a schema.
        """
        try:
            payload = json.loads(data.decode("utf-8"))
            fields = [
                Field(
                    name=str(entry["name"]),
                    type=str(entry["type"]),
                    nullable=bool(entry.get("nullable", True)),
                )
                for entry in payload["fields"]
            ]
        except (UnicodeDecodeError, json.JSONDecodeError) as err:
            raise ValueError(f"invalid schema bytes: {err}") from err
        except (KeyError, TypeError, AttributeError) as err:
            raise ValueError(f"malformed schema payload: {err}") from err
        return cls(tuple(fields))


@dataclass(frozen=True)
class Record:
    """A batch of rows stored column by column."""

    schema: Schema
    columns: Tuple[Tuple[Any, ...], ...] = ()

    def __post_init__(self) -> None:
        columns = tuple(tuple(col) for col in self.columns)
        if not columns and self.schema.fields:
            columns = tuple(() for _ in self.schema.fields)
        if len(columns) != len(self.schema.fields):
            raise ValueError(
                f"record has {len(columns)} columns but schema has "
                f"{len(self.schema.fields)} fields"
            )
        lengths = {len(col) for col in columns}
        if len(lengths) > 1:
            raise ValueError("record columns differ in length")
        object.__setattr__(self, "columns", columns)

    @property
    def num_rows(self) -> int:
        return len(self.columns[0]) if self.columns else 0

    @property
    def num_cols(self) -> int:
        return len(self.columns)

    def column(self, index: int) -> Tuple[Any, ...]:
        """Return the values of the column at ``index``."""
        return self.columns[index]

    def column_name(self, index: int) -> str:
        """Return the name of the column at ``index``."""
        return self.schema.field(index).name

    def rows(self) -> Iterator[Tuple[Any, ...]]:
        """Yield the record's rows as tuples."""
        return iter(zip(*self.columns)) if self.columns else iter(())

    @classmethod
    def from_rows(cls, schema: Schema, rows: Iterable[Sequence[Any]]) -> "Record":
        """Build a record from row sequences matching ``schema``."""
        width = len(schema.fields)
        materialized = []
        for number, row in enumerate(rows):
            row = tuple(row)
            if len(row) != width:
                raise ValueError(
                    f"row {number} has {len(row)} values, expected {width}"
                )
            materialized.append(row)
        if materialized:
            columns = tuple(zip(*materialized))
        else:
            columns = tuple(() for _ in range(width))
        return cls(schema, columns)


@dataclass(frozen=True)
class StreamChunk:
    """One batch of a result stream."""

    data: Record
    app_metadata: Optional[bytes] = field(default=None)


class Logger(Protocol):
    """Structured logging interface used by the handlers."""

    def debug(self, msg: str, **fields: Any) -> None: ...

    def info(self, msg: str, **fields: Any) -> None: ...

    def warn(self, msg: str, **fields: Any) -> None: ...

    def error(self, msg: str, **fields: Any) -> None: ...


class Timer(Protocol):
    """A running timing measurement."""

    def stop(self) -> None: ...


class MetricsCollector(Protocol):
    """Metrics interface used by the handlers."""

    def increment_counter(self, name: str, *tags: str) -> None: ...

    def record_histogram(self, name: str, value: float, *tags: str) -> None: ...

    def record_gauge(self, name: str, value: float, *tags: str) -> None: ...

    def start_timer(self, name: str) -> Timer: ...


def _format(msg: str, fields: Dict[str, Any]) -> str:
    if not fields:
        return msg
    pairs = " ".join(f"{key}={value!r}" for key, value in fields.items())
    return f"{msg} {pairs}"


class NullLogger:
    """A logger that forwards to the ``hatchflight`` standard logger.

    Output is discarded unless the application configures logging.
    """

    def __init__(self, logger: Optional[logging.Logger] = None) -> None:
        self._logger = logger or _log

    def debug(self, msg: str, **fields: Any) -> None:
        self._logger.debug(_format(msg, fields))

    def info(self, msg: str, **fields: Any) -> None:
        self._logger.info(_format(msg, fields))

    def warn(self, msg: str, **fields: Any) -> None:
        self._logger.warning(_format(msg, fields))

    def error(self, msg: str, **fields: Any) -> None:
        self._logger.error(_format(msg, fields))


class _NullTimer:
    def __init__(self, name: str, sink: Dict[str, List[float]]) -> None:
        self._name = name
        self._sink = sink
        self._start = time.perf_counter()

    def stop(self) -> None:
        self._sink[self._name].append(time.perf_counter() - self._start)


class NullMetrics:
    """A metrics collector that keeps values in memory and exports nothing."""

    def __init__(self) -> None:
        self.counters: DefaultDict[str, int] = defaultdict(int)
        self.histograms: DefaultDict[str, List[float]] = defaultdict(list)
        self.gauges: Dict[str, float] = {}
        self.timers: DefaultDict[str, List[float]] = defaultdict(list)

    def increment_counter(self, name: str, *tags: str) -> None:
        self.counters[name] += 1

    def record_histogram(self, name: str, value: float, *tags: str) -> None:
        self.histograms[name].append(value)

    def record_gauge(self, name: str, value: float, *tags: str) -> None:
        self.gauges[name] = value

    def start_timer(self, name: str) -> Timer:
        return _NullTimer(name, self.timers)