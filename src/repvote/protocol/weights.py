"""
repvote/protocol/weights.py

Quadratic vote weight calculation.

A vote's raw weight is ``sqrt(credits) * multiplier``. Weights and
multipliers are fixed-point integers scaled by WAD (10**18) and every
division rounds toward zero, so an off-line preview and the ledger always
agree on the recorded weight.

The weight cap clamps a vote to ``max_weight_cap * average`` where the
average is taken over the votes recorded before it. The first vote of a
poll sets the baseline and is never capped.

Example:
    >>> from repvote.protocol.weights import quadratic_weight, WAD
    >>> quadratic_weight(9, WAD)  # sqrt(9) * 1.0x
    3000000000000000000
    >>> quadratic_weight(16, 2 * WAD) // WAD
    8
"""

import logging
import math
from decimal import Decimal
from typing import Union

from ..config import WAD, MIN_MULTIPLIER, MAX_MULTIPLIER
from ..errors import InvalidCredits, CreditsExceedMax, InvalidOption

logger = logging.getLogger("repvote.protocol.weights")


def to_wad(value: Union[int, float, str, Decimal]) -> int:
    """Convert a human-readable number (e.g. ``1.5``) to fixed-point."""
    return int(Decimal(str(value)) * WAD)


def to_float(wad: int) -> float:
    """Convert a fixed-point integer to float for display only."""
    return wad / WAD


def format_weight(wad: int) -> str:
    """Format a fixed-point weight with two decimals, truncated."""
    hundredths = wad * 100 // WAD
    return f"{hundredths // 100}.{hundredths % 100:02d}"


def clamp_multiplier(multiplier: int) -> int:
    """Bound a multiplier to [0.3x, 3.0x]."""
    if multiplier < MIN_MULTIPLIER:
        logger.warning(f"Multiplier {multiplier} below minimum, clamped")
        return MIN_MULTIPLIER
    if multiplier > MAX_MULTIPLIER:
        logger.warning(f"Multiplier {multiplier} above maximum, clamped")
        return MAX_MULTIPLIER
    return multiplier


def validate_credits(credits: int, max_credits: int) -> None:
    """
    Check a credit amount against the per-vote bounds.

    Raises:
        InvalidCredits: credits is not a positive integer
        CreditsExceedMax: credits is above max_credits
    """
    if isinstance(credits, bool) or not isinstance(credits, int):
        raise InvalidCredits(f"Credits must be a whole number, got {credits!r}")
    if credits <= 0:
        raise InvalidCredits(f"Credits must be positive, got {credits}")
    if credits > max_credits:
        raise CreditsExceedMax(f"Credits {credits} exceed the per-vote maximum of {max_credits}")


def validate_option(option: int, option_count: int) -> None:
    """Raises InvalidOption unless 0 <= option < option_count."""
    if isinstance(option, bool) or not isinstance(option, int):
        raise InvalidOption(f"Option must be an index, got {option!r}")
    if option < 0 or option >= option_count:
        raise InvalidOption(f"Option {option} out of range [0, {option_count})")


def validate_vote_request(option: int, option_count: int, credits: int, max_credits: int) -> None:
    """Validate option and credits of a vote request."""
    validate_option(option, option_count)
    validate_credits(credits, max_credits)


def quadratic_weight(credits: int, multiplier: int) -> int:
    """
    Raw (uncapped) weight of a vote.

    Args:
        credits: Whole credits spent (positive)
        multiplier: Reputation multiplier, fixed-point

    Returns:
        floor(sqrt(credits) * multiplier), fixed-point
    """
    root = math.isqrt(credits * WAD * WAD)  # sqrt(credits) scaled by WAD
    return root * multiplier // WAD


def weight_cap(max_weight_cap: int, total_weighted: int, total_voters: int) -> int:
    """Largest weight a new vote may carry, or -1 when uncapped."""
    if total_voters == 0:
        return -1
    return max_weight_cap * total_weighted // total_voters


def apply_weight_cap(raw_weight: int, max_weight_cap: int, total_weighted: int, total_voters: int) -> int:
    """
    Clamp a raw weight to the poll's running-average cap.

    Args:
        raw_weight: Uncapped weight
        max_weight_cap: Poll cap factor (2-20)
        total_weighted: Poll total before this vote
        total_voters: Voters before this vote

    Returns:
        Weight to record
    """
    cap = weight_cap(max_weight_cap, total_weighted, total_voters)
    if cap < 0 or raw_weight <= cap:
        return raw_weight
    logger.debug(f"Weight {raw_weight} capped to {cap}")
    return cap


def preview_vote_weight(
    credits: int,
    multiplier: int,
    max_weight_cap: int,
    total_weighted: int = 0,
    total_voters: int = 0,
) -> int:
    """
    Weight a vote would be recorded with against the given poll totals.

    This is the exact computation ``PollLedger.record_vote`` performs.
    """
    raw = quadratic_weight(credits, clamp_multiplier(multiplier))
    return apply_weight_cap(raw, max_weight_cap, total_weighted, total_voters)
