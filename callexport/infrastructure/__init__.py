"""
Infrastructure package for callexport.

Centralizes database connectivity concerns (connection factories, procedure
introspection). Keep this layer focused on I/O, decoupled from the export
engine's batching and coordination logic.
"""

from callexport.infrastructure.db_factory import (
    ConnectionFactory,
    build_dsn,
    connect,
    connection_factory,
    fetch_procedure_schema,
)

__all__ = [
    "ConnectionFactory",
    "build_dsn",
    "connect",
    "connection_factory",
    "fetch_procedure_schema",
]
