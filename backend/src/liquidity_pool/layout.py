from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional, Union

from construct import Bytes, ConstructError, Int8ul, Int64ul, Struct
from solders.pubkey import Pubkey

from liquidity_pool.errors import InvalidAmount, MalformedState

# Pool state account, 122 bytes, little-endian. Field order is fixed by the program.
POOL_STATE_LAYOUT = Struct(
    "initialized" / Int8ul,
    "asset_a" / Bytes(32),
    "asset_b" / Bytes(32),
    "reserve_a" / Int64ul,
    "reserve_b" / Int64ul,
    "share_asset" / Bytes(32),
    "total_shares" / Int64ul,
    "address_nonce" / Int8ul,
)
POOL_STATE_SIZE = POOL_STATE_LAYOUT.sizeof()

TWO_AMOUNTS_LAYOUT = Struct("amount_a" / Int64ul, "amount_b" / Int64ul)
SHARE_AMOUNT_LAYOUT = Struct("share_amount" / Int64ul)
AMOUNT_IN_LAYOUT = Struct("amount_in" / Int64ul)


@dataclass
class PoolState:
    initialized: bool
    asset_a: Pubkey
    asset_b: Pubkey
    reserve_a: int
    reserve_b: int
    share_asset: Pubkey
    total_shares: int
    address_nonce: int
    # Not part of the account data; set by whoever fetched it.
    address: Optional[Pubkey] = field(default=None, compare=False)

    @property
    def k(self) -> int:
        return self.reserve_a * self.reserve_b

    def reserves_for(self, asset_in: Pubkey) -> tuple[int, int]:
        """
        Returns (reserve_in, reserve_out) for a swap paying in asset_in.
        """
        if asset_in == self.asset_a:
            return self.reserve_a, self.reserve_b
        if asset_in == self.asset_b:
            return self.reserve_b, self.reserve_a
        raise ValueError(f"Asset {asset_in} not in pool {self.address}")

    def to_dict(self) -> dict:
        return {
            "address": str(self.address) if self.address else None,
            "initialized": self.initialized,
            "asset_a": str(self.asset_a),
            "asset_b": str(self.asset_b),
            "reserve_a": self.reserve_a,
            "reserve_b": self.reserve_b,
            "share_asset": str(self.share_asset),
            "total_shares": self.total_shares,
            "address_nonce": self.address_nonce,
        }


def encode_pool_state(state: PoolState) -> bytes:
    try:
        return POOL_STATE_LAYOUT.build(
            dict(
                initialized=1 if state.initialized else 0,
                asset_a=bytes(state.asset_a),
                asset_b=bytes(state.asset_b),
                reserve_a=state.reserve_a,
                reserve_b=state.reserve_b,
                share_asset=bytes(state.share_asset),
                total_shares=state.total_shares,
                address_nonce=state.address_nonce,
            )
        )
    except ConstructError as e:
        raise InvalidAmount(f"Pool state field out of range: {e}") from e


def decode_pool_state(raw: bytes, address: Optional[Pubkey] = None) -> PoolState:
    if len(raw) != POOL_STATE_SIZE:
        raise MalformedState(f"Pool state must be {POOL_STATE_SIZE} bytes, got {len(raw)}")
    parsed = POOL_STATE_LAYOUT.parse(raw)
    if parsed.initialized not in (0, 1):
        raise MalformedState(f"Invalid initialized flag {parsed.initialized}")
    return PoolState(
        initialized=bool(parsed.initialized),
        asset_a=Pubkey.from_bytes(parsed.asset_a),
        asset_b=Pubkey.from_bytes(parsed.asset_b),
        reserve_a=int(parsed.reserve_a),
        reserve_b=int(parsed.reserve_b),
        share_asset=Pubkey.from_bytes(parsed.share_asset),
        total_shares=int(parsed.total_shares),
        address_nonce=int(parsed.address_nonce),
        address=address,
    )


# Instruction payloads. Each variant owns exactly one discriminator.


@dataclass(frozen=True)
class InitializePool:
    amount_a: int
    amount_b: int
    DISCRIMINATOR = 0


@dataclass(frozen=True)
class AddLiquidity:
    amount_a: int
    amount_b: int
    DISCRIMINATOR = 1


@dataclass(frozen=True)
class RemoveLiquidity:
    share_amount: int
    DISCRIMINATOR = 2


@dataclass(frozen=True)
class SwapAForB:
    amount_in: int
    DISCRIMINATOR = 3


@dataclass(frozen=True)
class SwapBForA:
    amount_in: int
    DISCRIMINATOR = 4


PoolInstruction = Union[InitializePool, AddLiquidity, RemoveLiquidity, SwapAForB, SwapBForA]

INSTRUCTION_LAYOUTS = {
    InitializePool.DISCRIMINATOR: (InitializePool, TWO_AMOUNTS_LAYOUT),
    AddLiquidity.DISCRIMINATOR: (AddLiquidity, TWO_AMOUNTS_LAYOUT),
    RemoveLiquidity.DISCRIMINATOR: (RemoveLiquidity, SHARE_AMOUNT_LAYOUT),
    SwapAForB.DISCRIMINATOR: (SwapAForB, AMOUNT_IN_LAYOUT),
    SwapBForA.DISCRIMINATOR: (SwapBForA, AMOUNT_IN_LAYOUT),
}


def encode_instruction(ix: PoolInstruction) -> bytes:
    _cls, layout = INSTRUCTION_LAYOUTS[ix.DISCRIMINATOR]
    try:
        args = layout.build(vars(ix))
    except ConstructError as e:
        raise InvalidAmount(f"{type(ix).__name__} argument out of u64 range: {e}") from e
    return bytes([ix.DISCRIMINATOR]) + args


def decode_instruction(data: bytes) -> PoolInstruction:
    if not data:
        raise MalformedState("Empty instruction data")
    entry = INSTRUCTION_LAYOUTS.get(data[0])
    if entry is None:
        raise MalformedState(f"Unknown instruction discriminator {data[0]}")
    cls, layout = entry
    if len(data) != 1 + layout.sizeof():
        raise MalformedState(f"{cls.__name__} expects {1 + layout.sizeof()} bytes, got {len(data)}")
    parsed = layout.parse(data[1:])
    return cls(**{name: int(parsed[name]) for name in cls.__dataclass_fields__})
