"""
Exception hierarchy for perfwatch.

Exceptions are used for signalling inside a component. Component boundaries
(collector, processor, analyzer, orchestrator) convert them into structured
result objects so callers never see a raw exception.
"""

# ============================================================================
# Exit Codes
# ============================================================================

EXIT_SUCCESS = 0
EXIT_CONFIGURATION_ERROR = 10
EXIT_SOURCE_ERROR = 20
EXIT_SERIES_ERROR = 30
EXIT_STORAGE_ERROR = 40
EXIT_GENERAL_ERROR = 199


# ============================================================================
# Exceptions
# ============================================================================

class PerfwatchError(Exception):
    """Base exception for the monitoring core."""
    exit_code = EXIT_GENERAL_ERROR


class ConfigurationError(PerfwatchError, ValueError):
    """Configuration could not be loaded or is inconsistent."""
    exit_code = EXIT_CONFIGURATION_ERROR


class SourceCollectionError(PerfwatchError):
    """A metric source failed or returned an unusable payload."""
    exit_code = EXIT_SOURCE_ERROR

    def __init__(self, source: str, message: str):
        super().__init__(f"{source}: {message}")
        self.source = source


class OutOfOrderSnapshotError(PerfwatchError):
    """A snapshot older than the newest stored one was appended to a series."""
    exit_code = EXIT_SERIES_ERROR


class StorageError(PerfwatchError):
    """The injected persistence backend failed."""
    exit_code = EXIT_STORAGE_ERROR
