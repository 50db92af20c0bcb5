class PaperAdvisorError(RuntimeError):
    pass


class ProviderUnavailableError(PaperAdvisorError):
    """Market data could not be obtained for a symbol (or at all)."""

    def __init__(self, message: str, symbol: str | None = None) -> None:
        super().__init__(message)
        self.symbol = symbol


class VerdictError(PaperAdvisorError):
    """The verdict generator failed or returned an unusable payload."""


class VerdictTimeoutError(VerdictError):
    pass


class CircuitOpenError(PaperAdvisorError):
    def __init__(self, name: str, retry_in_seconds: float) -> None:
        super().__init__(f"Circuit '{name}' is open; retry in {retry_in_seconds:.0f}s")
        self.name = name
        self.retry_in_seconds = retry_in_seconds


class ExecutionError(PaperAdvisorError):
    pass


class InsufficientFundsError(ExecutionError):
    pass


class InsufficientQuantityError(ExecutionError):
    pass


class PersistenceError(ExecutionError):
    pass


class EngineShutdownError(ExecutionError):
    pass


class StageBusyError(PaperAdvisorError):
    def __init__(self, stage: str) -> None:
        super().__init__(f"Stage '{stage}' is already running")
        self.stage = stage
