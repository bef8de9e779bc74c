"""
Engine-wide constants for the tournament synchronization engine.

This module contains the fixed values used throughout the codebase that are
not meant to be tuned through the environment.
"""

class ScoringConstants:
    """Constants related to match scoring."""

    # Points awarded per finalized 1v1 match
    WIN_POINTS = 3
    LOSS_POINTS = 1  # Participation

class ScheduleConstants:
    """Default weekly schedule, expressed in the tournament timezone."""

    REGISTRATION_START_HOUR = 16
    REGISTRATION_HOURS = 5  # 16:00 - 21:00

    # Point collection opens one minute after registration closes
    POINT_COLLECTION_GAP_MINUTES = 1
    POINT_COLLECTION_END_HOUR = 12  # Next day

    CADENCE_DAYS = 7

class ChainConstants:
    """Constants for the wrapped tournament contract."""

    # Custom errors the contract may revert with
    KNOWN_ERRORS = (
        "InvalidGameMode()", "GameNotFound()", "GameNotWaiting()", "GameNotActive()",
        "GameFull()", "AlreadyJoined()", "IncorrectBidAmount()", "NotBackendSigner()",
        "NoPlayersToRefund()", "InvalidWinnerCount()", "InvalidScoreCount()",
        "TransferFailed()", "ZeroAddress()", "NoTreasuryBalance()",
    )

    # Poll interval while waiting for a receipt (seconds)
    RECEIPT_POLL_LATENCY = 2.0

class RegistrationConstants:
    """Week registration and room assignment."""

    # Players are seated in join order, ten to a room
    PLAYERS_PER_ROOM = 10
