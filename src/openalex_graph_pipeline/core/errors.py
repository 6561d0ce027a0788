"""Error taxonomy and process exit codes shared by the pipeline stages."""

from enum import IntEnum


class ExitCode(IntEnum):
    """Process exit statuses understood by the calling automation."""

    OK = 0
    NO_WORK = 1  # nothing left to do: no stubs, backfill finished, empty staging log
    PARTIAL_FAILURE = 2  # some unit failed; artifacts (failed log, cursors) left for inspection
    CONFIG_ERROR = 3
    FATAL = 4  # graph store unreachable or an unexpected error; the run stopped


class PipelineError(Exception):
    """Base class for all pipeline errors."""


class ConfigError(PipelineError):
    """Fatal configuration problem (missing contact address, credentials, bad state file)."""


class UpstreamError(PipelineError):
    """The upstream API did not return a usable response."""

    def __init__(self, message: str, status_code: int | None = None, url: str | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.url = url


class InvalidRecordError(PipelineError):
    """An upstream record cannot be normalized (no identity)."""


class GraphStoreError(PipelineError):
    """The graph store could not be read or reached."""


class GraphWriteError(GraphStoreError):
    """A batch could not be committed to the graph store; nothing from it was applied."""
