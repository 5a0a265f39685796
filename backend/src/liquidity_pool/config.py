from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass
from typing import Optional

from base58 import b58decode
from solders.keypair import Keypair
from solders.pubkey import Pubkey

logger = logging.getLogger(__name__)

DEFAULT_PROGRAM_ID = "64Kd3NVVfKLcfxXsNLEvriNSiuzGpeTaBqSLwk4vXx2Y"
DEFAULT_RPC_URL = "https://api.devnet.solana.com"


def _env_bool(name: str, default: bool = False) -> bool:
    return os.getenv(name, str(default)).strip().lower() in {"1", "true", "yes", "on"}


@dataclass
class ClientConfig:
    rpc_url: str = DEFAULT_RPC_URL
    program_id: str = DEFAULT_PROGRAM_ID
    max_submit_retries: int = 3
    retry_backoff_seconds: float = 0.5  # doubled on each retry
    confirm_timeout_seconds: float = 60.0
    skip_preflight: bool = False
    dry_run: bool = False
    max_price_impact_bps: int = 0  # 0 = disabled
    address_cache_size: int = 256

    @property
    def program_pubkey(self) -> Pubkey:
        return Pubkey.from_string(self.program_id)

    @classmethod
    def from_env(cls) -> "ClientConfig":
        return cls(
            rpc_url=os.getenv("SOLANA_RPC_URL", DEFAULT_RPC_URL),
            program_id=os.getenv("LIQUIDITY_POOL_PROGRAM_ID", DEFAULT_PROGRAM_ID),
            max_submit_retries=int(os.getenv("MAX_SUBMIT_RETRIES", "3")),
            retry_backoff_seconds=float(os.getenv("RETRY_BACKOFF_SECONDS", "0.5")),
            confirm_timeout_seconds=float(os.getenv("CONFIRM_TIMEOUT_SECONDS", "60")),
            skip_preflight=_env_bool("SKIP_PREFLIGHT", False),
            dry_run=_env_bool("POOL_DRY_RUN", False),
            max_price_impact_bps=int(os.getenv("MAX_PRICE_IMPACT_BPS", "0") or 0),
            address_cache_size=int(os.getenv("ADDRESS_CACHE_SIZE", "256")),
        )


def load_keypair_from_env() -> Optional[Keypair]:
    """
    Load a Keypair from WALLET_PRIVATE_KEY (base58-encoded secret key), or from
    the Solana CLI JSON file at WALLET_KEYPAIR_PATH.
    """
    secret = os.getenv("WALLET_PRIVATE_KEY", "").strip()
    if secret:
        try:
            secret_bytes = b58decode(secret)
        except ValueError as e:
            logger.error(f"[Config] WALLET_PRIVATE_KEY is not valid base58: {e}")
            return None
        if len(secret_bytes) != 64:
            logger.error(f"[Config] Invalid key length {len(secret_bytes)}; expected 64-byte secret key.")
            return None
        try:
            return Keypair.from_bytes(secret_bytes)
        except ValueError as e:
            logger.error(f"[Config] WALLET_PRIVATE_KEY rejected: {e}")
            return None

    path = os.getenv("WALLET_KEYPAIR_PATH", "").strip()
    if not path or not os.path.exists(path):
        return None
    try:
        with open(path, "r", encoding="utf-8") as f:
            raw = json.load(f)
        return Keypair.from_bytes(bytes(raw))
    except (OSError, ValueError, TypeError) as e:
        logger.error(f"[Config] Failed to load keypair from {path}: {e}")
        return None
