"""Handler for beginning, committing and rolling back transactions."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Protocol

from hatchflight.interfaces import (
    HandlerError,
    Logger,
    MetricsCollector,
    NullLogger,
    NullMetrics,
)


@dataclass(frozen=True)
class TransactionOptions:
    """Options passed to the transaction service when a transaction begins."""

    read_only: bool = False
    isolation_level: Optional[str] = None


class _TransactionService(Protocol):
    def begin(self, options: TransactionOptions) -> str: ...

    def commit(self, transaction_id: str) -> None: ...

    def rollback(self, transaction_id: str) -> None: ...


class TransactionHandler:
    """Validates transaction requests and delegates them to a service."""

    def __init__(
        self,
        transaction_service: _TransactionService,
        logger: Optional[Logger] = None,
        metrics: Optional[MetricsCollector] = None,
    ) -> None:
        self._service = transaction_service
        self._logger = logger if logger is not None else NullLogger()
        self._metrics = metrics if metrics is not None else NullMetrics()

    def begin(self, read_only: bool = False) -> str:
        """Start a transaction and return its identifier."""
        timer = self._metrics.start_timer("handler_transaction_begin")
        try:
            self._logger.debug("Beginning transaction", read_only=read_only)
            options = TransactionOptions(read_only=read_only)
            try:
                transaction_id = self._service.begin(options)
            except Exception as err:
                self._metrics.increment_counter("handler_transaction_begin_errors")
                self._logger.error("Failed to begin transaction", error=str(err))
                raise HandlerError("failed to begin transaction", err) from err

            self._logger.info("Transaction started", transaction_id=transaction_id)
            self._metrics.increment_counter("handler_transactions_started")
            return transaction_id
        finally:
            timer.stop()

    def commit(self, transaction_id: str) -> None:
        """Commit the given transaction."""
        timer = self._metrics.start_timer("handler_transaction_commit")
        try:
            self._logger.debug("Committing transaction", transaction_id=transaction_id)
            if not transaction_id:
                self._metrics.increment_counter("handler_transaction_invalid_id")
                raise HandlerError("invalid transaction ID")
            try:
                self._service.commit(transaction_id)
            except Exception as err:
                self._metrics.increment_counter("handler_transaction_commit_errors")
                self._logger.error(
                    "Failed to commit transaction",
                    error=str(err),
                    transaction_id=transaction_id,
                )
                raise HandlerError("failed to commit transaction", err) from err

            self._logger.info("Transaction committed", transaction_id=transaction_id)
            self._metrics.increment_counter("handler_transactions_committed")
        finally:
            timer.stop()

    def rollback(self, transaction_id: str) -> None:
        """Roll back the given transaction."""
        timer = self._metrics.start_timer("handler_transaction_rollback")
        try:
            self._logger.debug("Rolling back transaction", transaction_id=transaction_id)
            if not transaction_id:
                self._metrics.increment_counter("handler_transaction_invalid_id")
                raise HandlerError("invalid transaction ID")
            try:
                self._service.rollback(transaction_id)
            except Exception as err:
                self._metrics.increment_counter("handler_transaction_rollback_errors")
                self._logger.error(
                    "Failed to rollback transaction",
                    error=str(err),
                    transaction_id=transaction_id,
                )
                raise HandlerError("failed to rollback transaction", err) from err

            self._logger.info("Transaction rolled back", transaction_id=transaction_id)
            self._metrics.increment_counter("handler_transactions_rolled_back")
        finally:
            timer.stop()