"""Exception hierarchy for remote dataset access.

Every error surfaces synchronously to the immediate caller. Nothing here is
retried; network failures are wrapped once and re-raised with the original
exception chained.
"""


class RemoteDatasetError(Exception):
    """Base exception for all remote dataset failures."""


class ConfigurationError(RemoteDatasetError, ValueError):
    """Raised for conflicting or missing credential/endpoint configuration."""


class UnsupportedPredicateError(RemoteDatasetError, ValueError):
    """Raised when a filter or aggregation falls outside the supported set."""


class NetworkError(RemoteDatasetError):
    """Raised for unreachable endpoints, timeouts and permission denials."""


class SchemaMismatchError(RemoteDatasetError):
    """Raised when declared and observed schemas or raster grids disagree."""


class EmptyResultError(RemoteDatasetError):
    """Raised when a selection receives zero candidates."""
