"""
Error types raised by the liquidity pool client, plus RPC failure classification.
"""

from __future__ import annotations

import re
from typing import Any, List, Optional


class LiquidityPoolError(Exception):
    """Base for every error this package raises.

    ``phase`` names the initialize phase that failed (if any), ``receipts``
    holds the phases that were already confirmed before the failure and
    ``share_mint`` is the share mint keypair to pass when resuming.
    """

    def __init__(self, message: str = "", *, phase: Optional[str] = None):
        super().__init__(message)
        self.phase = phase
        self.receipts: List[Any] = []
        self.share_mint: Optional[Any] = None


class InvalidAmount(LiquidityPoolError, ValueError):
    pass


class InsufficientLiquidity(LiquidityPoolError):
    pass


class InsufficientShares(LiquidityPoolError):
    pass


class InsufficientFunds(LiquidityPoolError):
    pass


class PoolAlreadyExists(LiquidityPoolError):
    pass


class PoolNotFound(LiquidityPoolError):
    pass


class MalformedState(LiquidityPoolError):
    pass


class PriceImpactExceeded(LiquidityPoolError):
    pass


class ProgramRejected(LiquidityPoolError):
    """The on-chain program refused the instruction for a non-economic reason."""


class SubmissionError(LiquidityPoolError):
    pass


class SubmissionTimeout(SubmissionError):
    """Confirmation did not arrive in time. The transaction may still land."""


class TransientSubmissionError(SubmissionError):
    """Transient failures persisted through every retry."""


# Custom error codes in the order of the on-chain program's error enum.
PROGRAM_ERROR_CODES = {
    0: (ProgramRejected, "invalid instruction"),
    1: (InsufficientFunds, "not rent exempt / insufficient funds"),
    2: (PoolAlreadyExists, "pool already initialized"),
    3: (PoolNotFound, "pool not initialized"),
    4: (InvalidAmount, "invalid token A amount"),
    5: (InvalidAmount, "invalid token B amount"),
    6: (InsufficientLiquidity, "insufficient liquidity"),
    7: (InsufficientShares, "invalid LP token amount"),
    8: (ProgramRejected, "invalid pool state account"),
    9: (ProgramRejected, "invalid mint account"),
    10: (ProgramRejected, "invalid token account"),
    11: (ProgramRejected, "invalid owner"),
    12: (InvalidAmount, "zero reserves"),
    13: (InsufficientLiquidity, "slippage tolerance exceeded"),
}

TRANSIENT_MARKERS = (
    "blockhash not found",
    "block height exceeded",
    "blockhash expired",
    "node is behind",
    "too many requests",
    "connection reset",
    "connection refused",
    "service unavailable",
)

_CUSTOM_CODE_RE = re.compile(r"custom program error: (0x[0-9a-fA-F]+)")
# Confirmed-status form, e.g. "InstructionError((0, Custom(2)))"
_CUSTOM_STATUS_RE = re.compile(r"Custom\((\d+)\)")


def is_transient(message: str) -> bool:
    err = message.lower()
    return any(marker in err for marker in TRANSIENT_MARKERS)


def classify_rpc_error(message: str) -> LiquidityPoolError:
    """
    Map the text of an RPC / preflight failure onto the error hierarchy.
    Transient failures come back as TransientSubmissionError.
    """
    err = message.lower()
    if is_transient(err):
        return TransientSubmissionError(message)
    if "already in use" in err:
        return PoolAlreadyExists(message)
    if "timeout" in err or "timed out" in err:
        return SubmissionTimeout(message)

    code: Optional[int] = None
    match = _CUSTOM_CODE_RE.search(message)
    if match:
        code = int(match.group(1), 16)
    else:
        match = _CUSTOM_STATUS_RE.search(message)
        if match:
            code = int(match.group(1))
    if code is not None:
        error_cls, label = PROGRAM_ERROR_CODES.get(code, (ProgramRejected, f"program error {code}"))
        return error_cls(f"{label}: {message}")

    if "insufficient" in err:
        return InsufficientFunds(message)
    return ProgramRejected(message)
