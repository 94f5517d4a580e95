"""
Error taxonomy for the settlement engine.

Per-transaction problems (ValidationError) are absorbed by the caller.
Everything else is fatal to the attempt that raised it and tells the caller
what to do next: rebuild, retry, re-propose, or recompile.
"""


class SettlementError(Exception):
    """Base class for all settlement engine errors."""


class ValidationError(SettlementError):
    """A transaction broke a validity rule. Dropped, never fatal to a batch."""

    def __init__(self, reason: str, tx_id: bytes = None):
        super().__init__(reason)
        self.reason = reason
        self.tx_id = tx_id


class CompileError(SettlementError):
    """A compilation attempt failed as a whole; the batch must be rebuilt."""


class ProvingError(SettlementError):
    """Base class for proof generation failures."""
    retryable = False


class WitnessError(ProvingError):
    """Malformed witness. Fatal: the batch must be recompiled."""


class ProvingTimeout(ProvingError):
    """Proof construction exceeded its time budget."""
    retryable = True


class ResourceExhausted(ProvingError):
    """No proving capacity left; retry after reducing concurrency."""
    retryable = True


class ConsensusTimeout(SettlementError):
    """The voting window closed without quorum."""


class StaleRootError(SettlementError):
    """The previous root no longer matches the committed root."""

    def __init__(self, expected: bytes, actual: bytes):
        super().__init__(
            f"Stale root: expected {expected.hex()[:16]}, committed is {actual.hex()[:16]}"
        )
        self.expected = expected
        self.actual = actual


class StateCorruptionError(SettlementError):
    """The node store is missing data that a committed root refers to."""


class SubmissionError(SettlementError):
    """The external settlement layer refused a batch."""


class DisputeError(SettlementError):
    """Dispute evidence or request is malformed; the dispute is dismissed."""


class SystemHalted(SettlementError):
    """New proposals are blocked until an operator clears the alert."""
