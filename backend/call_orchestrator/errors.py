class OrchestratorError(Exception):
    """Base class for failures raised inside the call orchestrator."""


class UnresolvedIdentity(OrchestratorError):
    """No lookup path produced a valid call id; the write must be skipped."""

    def __init__(self, known_ids=None) -> None:
        self.known_ids = {k: v for k, v in (known_ids or {}).items() if v}
        super().__init__(f"Could not resolve a call id from {self.known_ids or 'no ids'}")


class ProviderUnavailable(OrchestratorError):
    """Transient network or auth failure talking to the telephony provider."""

    def __init__(self, operation: str, detail: str = "", status_code=None) -> None:
        self.operation = operation
        self.status_code = status_code
        message = f"Provider call '{operation}' failed"
        if status_code is not None:
            message += f" ({status_code})"
        if detail:
            message += f": {detail}"
        super().__init__(message)


class PollTimeout(OrchestratorError):
    """A bounded wait ran out of attempts; the job is still pending."""

    def __init__(self, resource_id: str, attempts: int) -> None:
        self.resource_id = resource_id
        self.attempts = attempts
        super().__init__(f"{resource_id} not ready after {attempts} attempts")


class SynthesisFailure(OrchestratorError):
    """The generative summarizer errored or returned unusable output."""
