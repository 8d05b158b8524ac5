# === MODULE PURPOSE ===
# Exception taxonomy for ledger operations.
# Callers (web layer, sync engine) map these to responses or log lines.

# === KEY CONCEPTS ===
# - ValidationError: malformed or out-of-range input, raised before any mutation
# - StateConflictError: operation not allowed for the position's status/shape
# - NotFoundError: position missing or owned by another user


class LedgerError(Exception):
    """Base class for all ledger errors."""

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class ValidationError(LedgerError):
    """Input rejected before touching any position."""


class StateConflictError(LedgerError):
    """Operation disallowed by the current status or shape of a position."""


class ConcurrentUpdateError(StateConflictError):
    """Stored version changed between read and write."""

    def __init__(self, position_id: str, expected_version: int):
        self.position_id = position_id
        self.expected_version = expected_version
        super().__init__(
            f"Position {position_id} was modified concurrently (expected version {expected_version})"
        )


class NotFoundError(LedgerError):
    """Referenced position does not exist for the caller."""

    def __init__(self, position_id: str):
        self.position_id = position_id
        super().__init__(f"Position {position_id} not found")
