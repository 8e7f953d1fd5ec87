"""
Custom exceptions for the telemetry exporter.

Backend failures are classified as connection-level (reconnect + breaker)
or data-level (batch rejected). None of these ever reach an ingest call site.
"""


class ExporterError(Exception):
    """Base error for the exporter."""

    pass


class StoreConnectionError(ExporterError):
    """Backend unreachable, connection dropped, or not yet connected."""

    pass


class StoreDataError(ExporterError):
    """Backend rejected the batch contents."""

    pass


class JournalWriteError(ExporterError):
    """Local WAL/DLQ file could not be written."""

    pass


_CONNECTION_MARKERS = (
    "not connected",
    "connection refused",
    "connection reset",
    "server closed the connection",
    "pool is closed",
    "the connection is closed",
    "could not connect",
    "timeout",
)


def map_store_error(e: Exception) -> ExporterError:
    """Classify a raw backend exception."""
    if isinstance(e, ExporterError):
        return e

    import psycopg
    import psycopg.errors as E
    from psycopg_pool import PoolTimeout

    if isinstance(e, (psycopg.OperationalError, psycopg.InterfaceError, PoolTimeout)):
        return StoreConnectionError(str(e))
    if isinstance(e, (E.IntegrityError, E.DataError, E.ProgrammingError)):
        return StoreDataError(str(e))

    if isinstance(e, (ConnectionError, TimeoutError)):
        return StoreConnectionError(str(e))

    msg = str(e).lower()
    if any(marker in msg for marker in _CONNECTION_MARKERS):
        return StoreConnectionError(str(e))
    return StoreDataError(str(e))


def is_connection_error(e: Exception) -> bool:
    """True when the failure should trigger a reconnect."""
    return isinstance(map_store_error(e), StoreConnectionError)
