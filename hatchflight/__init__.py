"""Flight SQL style handlers for queries, transactions, prepared statements and metadata, with shared columnar data types."""

__version__ = "0.1.0"

__all__ = [
    "interfaces",
    "transaction_handler",
    "query_handler",
    "prepared_statement_handler",
    "metadata_handler",
]