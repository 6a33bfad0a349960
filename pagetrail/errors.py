class PagetrailError(Exception):
    """Base class for all pagetrail errors."""


class InvalidRequestError(PagetrailError):
    """The execution payload is missing fields or carries unusable values."""


class LogStoreError(PagetrailError):
    """A read or write against the execution log store failed."""


class ExecutionInitError(PagetrailError):
    """
    The parent execution record could not be created.

    Raised synchronously from PaginatedExecutor.run(); no background task
    is started when this is raised.
    """

    def __init__(self, message: str, code: str = "LOG_STORE_UNAVAILABLE") -> None:
        super().__init__(message)
        self.code = code


class SinkError(PagetrailError):
    """A single item could not be written to its sink table."""
