"""
Deterministic addresses for pools and their custody accounts.

A pool lives at the program address found for
``b"liquidity_pool" + sorted(asset ids)``; the bump search guarantees the
address is off the ed25519 curve, so no private key can ever sign for it.
Custody accounts are the associated token accounts owned by that address.
"""

from __future__ import annotations

from dataclasses import dataclass

from solders.pubkey import Pubkey
from spl.token.instructions import get_associated_token_address

from liquidity_pool.cache import AddressCache

POOL_SEED = b"liquidity_pool"


@dataclass(frozen=True)
class PoolAddresses:
    pool: Pubkey
    nonce: int
    asset_a: Pubkey
    asset_b: Pubkey
    custody_a: Pubkey
    custody_b: Pubkey


def canonical_pair(asset_x: Pubkey, asset_y: Pubkey) -> tuple[Pubkey, Pubkey]:
    """
    Order two asset ids by their raw bytes; the pool's asset A is the smaller.
    """
    if asset_x == asset_y:
        raise ValueError(f"A pool needs two distinct assets, got {asset_x} twice")
    if bytes(asset_x) < bytes(asset_y):
        return asset_x, asset_y
    return asset_y, asset_x


def pool_seeds(asset_x: Pubkey, asset_y: Pubkey) -> list[bytes]:
    asset_a, asset_b = canonical_pair(asset_x, asset_y)
    return [POOL_SEED, bytes(asset_a), bytes(asset_b)]


def derive_pool_address(asset_x: Pubkey, asset_y: Pubkey, program_id: Pubkey) -> tuple[Pubkey, int]:
    return Pubkey.find_program_address(pool_seeds(asset_x, asset_y), program_id)


def derive_custody_address(owner: Pubkey, asset: Pubkey) -> Pubkey:
    return get_associated_token_address(owner, asset)


class AddressDeriver:
    """
    Session-scoped deriver that caches per unordered asset pair.
    """

    def __init__(self, program_id: Pubkey, cache_size: int = 256):
        self.program_id = program_id
        self.cache = AddressCache(max_size=cache_size)

    def pool_addresses(self, asset_x: Pubkey, asset_y: Pubkey) -> PoolAddresses:
        asset_a, asset_b = canonical_pair(asset_x, asset_y)
        cache_key = (bytes(asset_a), bytes(asset_b))
        cached = self.cache.get(cache_key)
        if cached:
            return cached

        pool, nonce = derive_pool_address(asset_a, asset_b, self.program_id)
        addresses = PoolAddresses(
            pool=pool,
            nonce=nonce,
            asset_a=asset_a,
            asset_b=asset_b,
            custody_a=derive_custody_address(pool, asset_a),
            custody_b=derive_custody_address(pool, asset_b),
        )
        self.cache.set(cache_key, addresses)
        return addresses

    def user_account(self, owner: Pubkey, asset: Pubkey) -> Pubkey:
        return derive_custody_address(owner, asset)
