"""Exception classes for the transaction replay engine.

Business-rule rejections are never raised; they are reported as diagnostics.
Everything here is systemic and aborts the run that raised it.
"""


class ReplayError(Exception):
    """Base exception for the replay engine."""
    pass


class ConfigurationError(ReplayError):
    """Invalid tuning parameters (worker count, channel capacity)."""
    pass


class TransactionParseError(ReplayError):
    """A transaction record could not be decoded."""

    def __init__(self, field: str, line: int):
        super().__init__(f"Missing or invalid {field} in line {line}")
        self.field = field
        self.line = line


class PipelineError(ReplayError):
    """Base class for failures that abort a pipeline run."""
    pass


class SourceReadError(PipelineError):
    """The transaction source raised while being read."""
    pass


class ChannelDeliveryError(PipelineError):
    """A transaction could not be delivered to its worker."""

    def __init__(self, worker_id: int, message: str = "worker channel is unavailable"):
        super().__init__(f"Worker {worker_id}: {message}")
        self.worker_id = worker_id


class WorkerFailedError(PipelineError):
    """A worker terminated with an error before yielding its shard."""

    def __init__(self, worker_id: int):
        super().__init__(f"Worker {worker_id} failed")
        self.worker_id = worker_id
