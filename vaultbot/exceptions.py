"""Exception types shared by the trading engine and its collaborators."""


class VaultError(RuntimeError):
    """Base class for vault adapter failures."""


class VaultReadError(VaultError):
    """A read against the vault (or its RPC) failed or timed out."""


class VaultWriteError(VaultError):
    """An open/close/sweep transaction reverted, threw or timed out."""

    def __init__(self, message: str, tx_hash: str | None = None):
        super().__init__(message)
        self.tx_hash = tx_hash


class LedgerWriteError(RuntimeError):
    """Persisting a ledger change failed; the change must be treated as not applied."""


class SignalUnavailable(RuntimeError):
    """The signal feed could not produce an answer. Callers treat it as no signal."""


class InvariantViolation(RuntimeError):
    """A protective invariant would be broken by the requested action."""
