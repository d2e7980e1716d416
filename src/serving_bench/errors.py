"""
Failure taxonomy for benchmark trials.

Each class decides what happens to the run:

- EnvironmentPrecondition: the trial is skipped and the run stops.
- FatalTrialError and subclasses: the run is aborted immediately.
- TrialError and subclasses: the trial is recorded as failed and the run
  continues with the next trial.
"""


class BenchmarkError(Exception):
    """Base class for benchmark failures, carrying captured process output."""

    def __init__(self, message: str, output: str = ""):
        super().__init__(message)
        self.output = output or ""


class EnvironmentPrecondition(BenchmarkError):
    """Raised when the host is not set up to run a fair measurement."""
    pass


class FatalTrialError(BenchmarkError):
    """Raised when the environment is broken and no more trials should run."""
    pass


class AcquisitionFailure(FatalTrialError):
    """Raised when no machine could be acquired."""
    pass


class StartupFailure(FatalTrialError):
    """Raised when the server container fails to launch or exits early."""
    pass


class ReadinessTimeout(FatalTrialError):
    """Raised when the readiness pattern never shows up in time."""
    pass


class TrialError(BenchmarkError):
    """Raised for failures attributable to a single trial."""
    pass


class WorkloadExecutionFailure(TrialError):
    """Raised when the client workload fails, exits non-zero or times out."""
    pass


class ExtractionFailure(TrialError):
    """Raised when the client's result file cannot be turned into metrics."""
    pass


class NotFound(ExtractionFailure):
    pass


class ReadError(ExtractionFailure):
    pass


class ParseError(ExtractionFailure):
    pass
