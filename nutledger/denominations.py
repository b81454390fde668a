"""Amount splitting for Cashu outputs based on keyset denominations."""

from __future__ import annotations

import math

from .types import ValidationError

# Standard powers of 2 used when a keyset does not advertise its amounts
DEFAULT_DENOMINATIONS = [2**i for i in range(15)]


def calculate_optimal_split(
    amount: int, available_denominations: list[int] | None = None
) -> dict[int, int]:
    """Calculate denomination breakdown for an amount.

    Uses a greedy algorithm to minimize the number of outputs.

    Args:
        amount: Total amount to split
        available_denominations: Denominations offered by the keyset

    Returns:
        Dict of denomination -> count
    """
    if amount < 0:
        raise ValidationError(f"Cannot split negative amount {amount}")

    denominations: dict[int, int] = {}
    remaining = amount

    for denom in sorted(available_denominations or DEFAULT_DENOMINATIONS, reverse=True):
        if remaining >= denom:
            count = remaining // denom
            denominations[denom] = count
            remaining -= denom * count

    if remaining > 0:
        raise ValidationError(
            f"Amount {amount} cannot be represented with denominations "
            f"{sorted(available_denominations or DEFAULT_DENOMINATIONS)}"
        )

    return denominations


def split_amount(amount: int, available_denominations: list[int] | None = None) -> list[int]:
    """Split an amount into output amounts, largest first."""
    split = calculate_optimal_split(amount, available_denominations)
    amounts: list[int] = []
    for denom in sorted(split, reverse=True):
        amounts.extend([denom] * split[denom])
    return amounts


def blank_outputs_count(fee_reserve: int) -> int:
    """Number of blank outputs to attach to a melt for fee change (NUT-08)."""
    if fee_reserve <= 1:
        return 1
    return max(1, math.ceil(math.log2(fee_reserve)))
