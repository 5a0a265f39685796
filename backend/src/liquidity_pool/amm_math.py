from __future__ import annotations

from math import isqrt

from liquidity_pool.errors import InsufficientLiquidity, InsufficientShares, InvalidAmount

U64_MAX = 2**64 - 1


def require_amount(name: str, value: int) -> int:
    """
    Validate a caller-supplied token amount: a positive integer that fits in u64.
    """
    if isinstance(value, bool) or not isinstance(value, int):
        raise InvalidAmount(f"{name} must be an integer, got {type(value).__name__}")
    if value <= 0:
        raise InvalidAmount(f"{name} must be greater than zero, got {value}")
    if value > U64_MAX:
        raise InvalidAmount(f"{name} overflows u64: {value}")
    return value


def _require_u64(name: str, value: int) -> int:
    if value < 0 or value > U64_MAX:
        raise InvalidAmount(f"{name} out of u64 range: {value}")
    return value


def quote_initial_shares(amount_a: int, amount_b: int) -> int:
    """
    Shares minted for the first deposit: floor(sqrt(amount_a * amount_b)).
    """
    require_amount("amount_a", amount_a)
    require_amount("amount_b", amount_b)
    return isqrt(amount_a * amount_b)


def quote_add_liquidity(amount_a: int, amount_b: int, reserve_a: int, reserve_b: int, total_shares: int) -> int:
    """
    Shares minted for a deposit into an existing pool.

    The smaller of the two per-side share counts wins; the over-supplied side's
    excess stays in the pool and is not refunded.
    """
    if total_shares == 0:
        return quote_initial_shares(amount_a, amount_b)

    require_amount("amount_a", amount_a)
    require_amount("amount_b", amount_b)
    if reserve_a <= 0 or reserve_b <= 0:
        raise InsufficientLiquidity(f"Pool has shares but empty reserves ({reserve_a}/{reserve_b})")

    shares_from_a = amount_a * total_shares // reserve_a
    shares_from_b = amount_b * total_shares // reserve_b
    minted = min(shares_from_a, shares_from_b)
    if minted == 0:
        raise InvalidAmount(f"Deposit {amount_a}/{amount_b} too small to mint any shares")
    _require_u64("reserve_a after deposit", reserve_a + amount_a)
    _require_u64("reserve_b after deposit", reserve_b + amount_b)
    _require_u64("total shares after deposit", total_shares + minted)
    return minted


def quote_remove_liquidity(share_amount: int, reserve_a: int, reserve_b: int, total_shares: int) -> tuple[int, int]:
    """
    Returns (amount_a_out, amount_b_out) for burning share_amount shares.
    """
    require_amount("share_amount", share_amount)
    if share_amount > total_shares:
        raise InsufficientShares(f"Cannot burn {share_amount} shares; only {total_shares} outstanding")
    amount_a_out = reserve_a * share_amount // total_shares
    amount_b_out = reserve_b * share_amount // total_shares
    return amount_a_out, amount_b_out


def quote_swap(amount_in: int, reserve_in: int, reserve_out: int) -> int:
    """
    Constant product x*y=k, no fee.

    The output is floor(reserve_out - k / (reserve_in + amount_in)), i.e. the
    post-swap output reserve is rounded up so k never decreases.
    """
    require_amount("amount_in", amount_in)
    if reserve_in <= 0 or reserve_out <= 0:
        raise InsufficientLiquidity(f"Pool reserves are empty ({reserve_in}/{reserve_out})")

    k = reserve_in * reserve_out
    new_reserve_in = reserve_in + amount_in
    _require_u64("reserve_in after swap", new_reserve_in)
    new_reserve_out = -(-k // new_reserve_in)
    amount_out = reserve_out - new_reserve_out
    if amount_out <= 0 or amount_out >= reserve_out:
        raise InsufficientLiquidity(
            f"Swap of {amount_in} yields {amount_out} against reserve {reserve_out}"
        )
    return amount_out


def spot_price(reserve_base: int, reserve_quote: int) -> float:
    """
    Units of quote received per unit of base at the current reserves.
    """
    if reserve_base == 0:
        return 0.0
    return reserve_quote / reserve_base


def calculate_price_impact(amount_in: int, reserve_in: int, reserve_out: int) -> float:
    """
    Returns price impact as decimal (0.01 = 1%).
    """
    if reserve_in == 0 or reserve_out == 0 or amount_in == 0:
        return 0.0
    spot = reserve_out / reserve_in
    try:
        output = quote_swap(amount_in, reserve_in, reserve_out)
    except InsufficientLiquidity:
        return 1.0
    exec_price = output / amount_in
    return 1 - (exec_price / spot)


def share_of_pool_bps(shares: int, total_shares: int) -> int:
    if total_shares == 0:
        return 0
    return shares * 10_000 // total_shares
