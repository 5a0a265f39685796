"""
In-memory pool used for previews and demos. Every figure comes from the
functions in ``amm_math``, so a preview here is exactly what the quote
functions (and the on-chain program) compute.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import Dict, Optional

from liquidity_pool import amm_math
from liquidity_pool.errors import InsufficientShares, InvalidAmount
from liquidity_pool.layout import PoolState


@dataclass
class PoolSnapshot:
    reserve_a: int
    reserve_b: int
    k: int
    total_shares: int
    price_a_in_b: float
    price_b_in_a: float

    def to_dict(self) -> dict:
        return asdict(self)


class PoolSimulator:
    def __init__(self, reserve_a: int = 0, reserve_b: int = 0, total_shares: int = 0):
        empty = (reserve_a == 0, reserve_b == 0, total_shares == 0)
        if any(empty) and not all(empty):
            raise InvalidAmount(
                f"Reserves {reserve_a}/{reserve_b} inconsistent with {total_shares} shares"
            )
        self.reserve_a = reserve_a
        self.reserve_b = reserve_b
        self.total_shares = total_shares
        self.provider_shares: Dict[str, int] = {}

    @classmethod
    def from_pool_state(cls, state: PoolState, holdings: Optional[Dict[str, int]] = None) -> "PoolSimulator":
        sim = cls(state.reserve_a, state.reserve_b, state.total_shares)
        sim.provider_shares.update(holdings or {})
        return sim

    def add_liquidity(self, provider: str, amount_a: int, amount_b: int) -> int:
        minted = amm_math.quote_add_liquidity(
            amount_a, amount_b, self.reserve_a, self.reserve_b, self.total_shares
        )
        self.reserve_a += amount_a
        self.reserve_b += amount_b
        self.total_shares += minted
        self.provider_shares[provider] = self.provider_shares.get(provider, 0) + minted
        return minted

    def remove_liquidity(self, provider: str, share_amount: int) -> tuple[int, int]:
        held = self.provider_shares.get(provider, 0)
        if share_amount > held:
            raise InsufficientShares(f"Provider {provider} holds {held} shares, cannot burn {share_amount}")
        amount_a, amount_b = amm_math.quote_remove_liquidity(
            share_amount, self.reserve_a, self.reserve_b, self.total_shares
        )
        self.reserve_a -= amount_a
        self.reserve_b -= amount_b
        self.total_shares -= share_amount
        self.provider_shares[provider] = held - share_amount
        return amount_a, amount_b

    def swap_a_for_b(self, amount_in: int) -> int:
        amount_out = amm_math.quote_swap(amount_in, self.reserve_a, self.reserve_b)
        self.reserve_a += amount_in
        self.reserve_b -= amount_out
        return amount_out

    def swap_b_for_a(self, amount_in: int) -> int:
        amount_out = amm_math.quote_swap(amount_in, self.reserve_b, self.reserve_a)
        self.reserve_b += amount_in
        self.reserve_a -= amount_out
        return amount_out

    def shares_of(self, provider: str) -> int:
        return self.provider_shares.get(provider, 0)

    def snapshot(self) -> PoolSnapshot:
        return PoolSnapshot(
            reserve_a=self.reserve_a,
            reserve_b=self.reserve_b,
            k=self.reserve_a * self.reserve_b,
            total_shares=self.total_shares,
            price_a_in_b=amm_math.spot_price(self.reserve_a, self.reserve_b),
            price_b_in_a=amm_math.spot_price(self.reserve_b, self.reserve_a),
        )
