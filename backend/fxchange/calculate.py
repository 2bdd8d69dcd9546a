"""
Point / reputation penalty calculator.

Pure, deterministic functions with no I/O. Penalties grow with how far a
transaction had progressed (pending vs ongoing) and, for barter, with the
cancelling party's distrust (100 - reputation), since barter has no price
to take a percentage of.

Key formulas:
    Market pending:    price - floor(price * 90 / 100)        (~10%)
    Market ongoing:    price - floor(price * 80 / 100)        (~20%)
    Exchange pending:  point - floor(point * (100 - p) / 100),  p = 100 - reputation
    Exchange ongoing:  same with p = 100 - reputation + 5

A reputation of 100 never pays an exchange penalty.
"""

from dataclasses import dataclass


MARKET_PENDING_KEEP_PCT = 90
MARKET_ONGOING_KEEP_PCT = 80
EXCHANGE_ONGOING_SURCHARGE_PCT = 5


def _percentage_cut(amount: int, keep_pct: int) -> int:
    """amount minus the floor of keep_pct percent of it."""
    return amount - (amount * keep_pct) // 100


def reduce_market_pending(price: int) -> int:
    """Penalty for cancelling a priced sale before the item was deposited."""
    return _percentage_cut(price, MARKET_PENDING_KEEP_PCT)


def reduce_market_ongoing(price: int) -> int:
    """Penalty for cancelling a priced sale after the item was deposited."""
    return _percentage_cut(price, MARKET_ONGOING_KEEP_PCT)


def _exchange_penalty(reputation: int, point: int, surcharge_pct: int) -> int:
    if reputation == 100:
        return 0
    # ((100 - reputation) / 10) * 10 in whole percentage points
    pct = max(0, 100 - reputation + surcharge_pct)
    pct = min(pct, 100)
    return _percentage_cut(point, 100 - pct)


def reduce_exchange_pending(reputation: int, point: int) -> int:
    """Penalty for cancelling a barter while pending.

    Args:
        reputation: Cancelling party's reputation (0-100).
        point: Cancelling party's current point balance.

    Returns:
        Points to deduct (0 when reputation is 100).
    """
    return _exchange_penalty(reputation, point, 0)


def reduce_exchange_ongoing(reputation: int, point: int) -> int:
    """Penalty for cancelling a barter while ongoing (+5 percentage points)."""
    return _exchange_penalty(reputation, point, EXCHANGE_ONGOING_SURCHARGE_PCT)


@dataclass(frozen=True)
class CancellationSettlement:
    """Signed point deltas for both parties of a cancelled transaction."""
    owner_delta: int
    customer_delta: int
    penalty: int


def cancellation_settlement(
    canceller_is_owner: bool,
    ongoing: bool,
    priced: bool,
    amount: int,
    canceller_reputation: int,
    canceller_point: int,
) -> CancellationSettlement:
    """Resolve the cancellation table into point deltas.

    Priced (market/auction) sales: the buyer already paid ``amount``.
    An owner cancellation refunds the buyer in full and charges the owner
    the market penalty; a customer cancellation refunds ``amount`` minus
    the penalty. Barter cancellations charge the canceller a
    reputation-scaled share of their own balance.
    """
    if priced:
        penalty = reduce_market_ongoing(amount) if ongoing else reduce_market_pending(amount)
        if canceller_is_owner:
            return CancellationSettlement(owner_delta=-penalty, customer_delta=amount, penalty=penalty)
        return CancellationSettlement(owner_delta=0, customer_delta=amount - penalty, penalty=penalty)

    if ongoing:
        penalty = reduce_exchange_ongoing(canceller_reputation, canceller_point)
    else:
        penalty = reduce_exchange_pending(canceller_reputation, canceller_point)
    if canceller_is_owner:
        return CancellationSettlement(owner_delta=-penalty, customer_delta=0, penalty=penalty)
    return CancellationSettlement(owner_delta=0, customer_delta=-penalty, penalty=penalty)
