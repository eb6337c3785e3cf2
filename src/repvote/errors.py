"""
repvote/errors.py

Error taxonomy for repvote.

Every failure surfaced to a caller is one of five categories:

- ValidationError: the request itself is malformed
- StateError: the request conflicts with poll or voter state
- ResourceError: the voter lacks tokens or spend allowance
- TransportError: a confirmation or read did not complete in time
- UserCancelled: the voter declined a required step
"""

from typing import Any, Dict


class RepVoteError(Exception):
    """Base exception for repvote errors."""
    category = "error"
    code = "error"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error": str(self) or self.code,
            "category": self.category,
            "code": self.code,
        }


# ============================================================================
# VALIDATION
# ============================================================================

class ValidationError(RepVoteError):
    category = "validation"
    code = "validation"


class InvalidCredits(ValidationError):
    """Credits are not a positive integer."""
    code = "invalid_credits"


class CreditsExceedMax(ValidationError):
    """Credits exceed the per-vote maximum."""
    code = "credits_exceed_max"


class InvalidOption(ValidationError):
    """Option index outside [0, option_count)."""
    code = "invalid_option"


class InvalidPollConfig(ValidationError):
    """Poll creation parameters out of bounds."""
    code = "invalid_poll_config"


# ============================================================================
# STATE
# ============================================================================

class StateError(RepVoteError):
    category = "state"
    code = "state"


class AlreadyVoted(StateError):
    code = "already_voted"


class PollClosed(StateError):
    code = "poll_closed"


class PollStillActive(StateError):
    code = "poll_still_active"


class AlreadyClaimed(StateError):
    code = "already_claimed"


class NothingToClaim(StateError):
    code = "nothing_to_claim"


class PollNotFound(StateError):
    code = "poll_not_found"


# ============================================================================
# RESOURCES
# ============================================================================

class ResourceError(RepVoteError):
    category = "resource"
    code = "resource"


class InsufficientBalance(ResourceError):
    code = "insufficient_balance"


class InsufficientAllowance(ResourceError):
    code = "insufficient_allowance"


# ============================================================================
# TRANSPORT
# ============================================================================

class TransportError(RepVoteError):
    category = "transport"
    code = "transport"


class ConfirmationTimeout(TransportError):
    """Confirmation was not observed in time; the outcome is unknown."""
    code = "confirmation_timeout"


class TransientReadError(TransportError):
    code = "transient_read_error"


# ============================================================================
# USER
# ============================================================================

class UserCancelled(RepVoteError):
    category = "cancelled"
    code = "user_cancelled"


class InvalidTransition(RuntimeError):
    """Raised when a settlement state machine is driven out of order."""
    pass
