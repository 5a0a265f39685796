from .amm_math import (
    quote_initial_shares,
    quote_add_liquidity,
    quote_remove_liquidity,
    quote_swap,
    spot_price,
    calculate_price_impact,
    share_of_pool_bps,
)
from .layout import (
    POOL_STATE_SIZE,
    PoolState,
    encode_pool_state,
    decode_pool_state,
    encode_instruction,
    decode_instruction,
)
from .pda import AddressDeriver, PoolAddresses, canonical_pair, derive_pool_address
from .config import ClientConfig, load_keypair_from_env
from .errors import (
    LiquidityPoolError,
    InvalidAmount,
    InsufficientLiquidity,
    InsufficientShares,
    InsufficientFunds,
    PoolAlreadyExists,
    PoolNotFound,
    MalformedState,
    PriceImpactExceeded,
    ProgramRejected,
    SubmissionError,
    SubmissionTimeout,
    TransientSubmissionError,
)
from .simulator import PoolSimulator, PoolSnapshot
from .client import LiquidityPoolClient, TxReceipt, InitializeReceipt, PoolPosition

__all__ = [
    "quote_initial_shares",
    "quote_add_liquidity",
    "quote_remove_liquidity",
    "quote_swap",
    "spot_price",
    "calculate_price_impact",
    "share_of_pool_bps",
    "POOL_STATE_SIZE",
    "PoolState",
    "encode_pool_state",
    "decode_pool_state",
    "encode_instruction",
    "decode_instruction",
    "AddressDeriver",
    "PoolAddresses",
    "canonical_pair",
    "derive_pool_address",
    "ClientConfig",
    "load_keypair_from_env",
    "LiquidityPoolError",
    "InvalidAmount",
    "InsufficientLiquidity",
    "InsufficientShares",
    "InsufficientFunds",
    "PoolAlreadyExists",
    "PoolNotFound",
    "MalformedState",
    "PriceImpactExceeded",
    "ProgramRejected",
    "SubmissionError",
    "SubmissionTimeout",
    "TransientSubmissionError",
    "PoolSimulator",
    "PoolSnapshot",
    "LiquidityPoolClient",
    "TxReceipt",
    "InitializeReceipt",
    "PoolPosition",
]
