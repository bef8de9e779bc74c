"""
Custom exceptions for the synchronization engine with operator-facing messages.
"""

from typing import Optional


class SyncException(Exception):
    """Base exception for synchronization errors."""
    kind = "SyncError"

    def __init__(self, message: str, user_message: str = None):
        super().__init__(message)
        self.user_message = user_message or message

class InvalidDelta(SyncException):
    """Raised when a match result carries a negative or non-integer delta."""
    kind = "InvalidDelta"

    def __init__(self, delta):
        super().__init__(
            f"Invalid score delta {delta!r}: must be a non-negative integer",
            "❌ Score increments must be whole, non-negative numbers."
        )
        self.delta = delta

class InvalidScheduleError(SyncException):
    """Raised when a week configuration is mis-ordered or already exists."""
    kind = "InvalidSchedule"

    def __init__(self, week: int, reason: str):
        super().__init__(
            f"Invalid schedule for week {week}: {reason}",
            f"❌ Week {week} cannot be created: {reason}"
        )
        self.week = week

class WeekNotFoundError(SyncException):
    """Raised when a week has no stored configuration."""
    kind = "WeekNotFound"

    def __init__(self, week: Optional[int]):
        if week is None:
            super().__init__("No tournament week has started yet", "❌ No week is running. Schedule one first.")
        else:
            super().__init__(
                f"Week {week} not found",
                f"❌ Week {week} is not scheduled."
            )
        self.week = week

class ChainError(SyncException):
    """Base class for failures talking to the on-chain ledger."""
    kind = "ChainError"

class ChainUnavailable(ChainError):
    """Transient failure: RPC unreachable, timed out or returned a server error."""
    kind = "ChainUnavailable"

    def __init__(self, operation: str, details: str = None):
        super().__init__(
            f"Chain unavailable during {operation}: {details}",
            "❌ Blockchain node unreachable. The engine will retry."
        )
        self.operation = operation

class ChainRevert(ChainError):
    """Business-rule failure: the contract rejected the call."""
    kind = "ChainRevert"

    def __init__(self, operation: str, reason: str):
        super().__init__(
            f"Contract reverted {operation}: {reason}",
            f"❌ Contract rejected the update ({reason}). Fix the contract state and resync."
        )
        self.operation = operation
        self.reason = reason

class AuthorizationError(ChainError):
    """The configured signing key is not the contract's authorized writer."""
    kind = "AuthorizationError"

    def __init__(self, configured_address: Optional[str], authorized_address: Optional[str]):
        super().__init__(
            f"Signer {configured_address} is not authorized; contract trusts {authorized_address}",
            "❌ Server key does not match the contract's authorized signer. "
            "Update PRIVATE_KEY or the contract before resyncing."
        )
        self.configured_address = configured_address
        self.authorized_address = authorized_address

class ConfirmationTimeout(ChainError):
    """A submitted transaction was not mined within the allowed polling cycles."""
    kind = "ConfirmationTimeout"

    def __init__(self, tx_hash: str, cycles: int):
        super().__init__(
            f"Transaction {tx_hash} unconfirmed after {cycles} polling cycles",
            "❌ Transaction still pending. Check the explorer, then force a resync."
        )
        self.tx_hash = tx_hash
        self.cycles = cycles

class OnChainAheadError(SyncException):
    """On-chain totals exceed the off-chain totals for some players."""
    kind = "OnChainAhead"

    def __init__(self, week: int, players: list):
        super().__init__(
            f"On-chain score exceeds off-chain score for {len(players)} player(s) in week {week}",
            "❌ On-chain scores are ahead of recorded results. Manual review required."
        )
        self.week = week
        self.players = players

class ChainNotConfiguredError(SyncException):
    """Raised when chain settings are missing."""
    kind = "ChainNotConfigured"

    def __init__(self, missing: list):
        super().__init__(
            f"Chain gateway not configured, missing: {', '.join(missing)}",
            "❌ Contract features disabled. Set the missing environment variables."
        )
        self.missing = missing

class InvalidPlayerAddress(SyncException):
    """Raised when a player identifier is not a well-formed wallet address."""
    kind = "InvalidPlayerAddress"

    def __init__(self, players: list, week: Optional[int] = None):
        where = f" in week {week}" if week is not None else ""
        super().__init__(
            f"Malformed wallet address(es){where}: {', '.join(repr(p) for p in players)}",
            "❌ Player wallets must be 0x-prefixed 20-byte hex addresses."
        )
        self.players = players
        self.week = week

class RegistrationClosedError(SyncException):
    """Raised when a player tries to join a week outside its registration window."""
    kind = "RegistrationClosed"

    def __init__(self, week: int, phase: str):
        super().__init__(
            f"Registration for week {week} is not open (phase: {phase})",
            f"❌ Week {week} is not accepting registrations right now."
        )
        self.week = week
        self.phase = phase

class TicketVerificationError(SyncException):
    """Raised when a ticket purchase transaction does not check out on-chain."""
    kind = "TicketVerificationFailed"

    def __init__(self, player: str, tx_hash: Optional[str], reason: str):
        super().__init__(
            f"Ticket {tx_hash} for {player} rejected: {reason}",
            "❌ Ticket purchase could not be verified on-chain."
        )
        self.player = player
        self.tx_hash = tx_hash
        self.reason = reason
