class PiperunError(Exception):
    pass


class ConfigurationError(PiperunError, ValueError):
    """Malformed workflow or runner configuration. Fatal before any job starts."""


class StepExecutionError(PiperunError):
    """A step could not be run to completion (tool missing, timeout, cancelled...)."""

    def __init__(self, message: str, exit_code: int | None = None, output: str = ""):
        super().__init__(message)
        self.exit_code = exit_code
        self.output = output


class ActionSkipped(PiperunError):
    """An action step was deliberately not run by the executor."""


class EventError(PiperunError, ValueError):
    """The incoming event could not be determined."""
