from __future__ import annotations

import asyncio
import base64
import logging
from dataclasses import asdict, dataclass, field
from time import perf_counter
from typing import Any, Dict, List, Optional

import httpx
from solana.rpc.async_api import AsyncClient
from solana.rpc.commitment import Confirmed
from solana.rpc.core import RPCException, TransactionExpiredBlockheightExceededError, UnconfirmedTxError
from solana.rpc.types import TxOpts
from solders.instruction import Instruction
from solders.keypair import Keypair
from solders.pubkey import Pubkey
from solders.signature import Signature
from spl.token.constants import ACCOUNT_LEN, MINT_LEN, TOKEN_PROGRAM_ID
from spl.token.instructions import create_associated_token_account

from liquidity_pool.amm_math import (
    calculate_price_impact,
    quote_add_liquidity,
    quote_initial_shares,
    quote_remove_liquidity,
    quote_swap,
    require_amount,
    share_of_pool_bps,
)
from liquidity_pool.config import ClientConfig, load_keypair_from_env
from liquidity_pool.errors import (
    InsufficientFunds,
    LiquidityPoolError,
    MalformedState,
    PoolAlreadyExists,
    PoolNotFound,
    PriceImpactExceeded,
    SubmissionTimeout,
    TransientSubmissionError,
    classify_rpc_error,
)
from liquidity_pool.ix_builder import (
    build_add_liquidity_instruction,
    build_initialize_instruction,
    build_remove_liquidity_instruction,
    build_swap_instruction,
    build_transaction,
    create_state_account_ix,
    ensure_ata_ix,
)
from liquidity_pool.layout import POOL_STATE_SIZE, PoolState, decode_pool_state
from liquidity_pool.pda import AddressDeriver, PoolAddresses, derive_custody_address
from liquidity_pool.simulator import PoolSimulator

logger = logging.getLogger(__name__)

PHASE_CREATE_STATE = "create_state_accounts"
PHASE_CREATE_CUSTODY = "create_custody_accounts"
PHASE_INITIALIZE = "initialize"


@dataclass
class TxReceipt:
    operation: str
    pool_address: str
    signature: Optional[str]
    attempts: int
    submit_ms: float
    quote: Dict[str, Any] = field(default_factory=dict)
    dry_run: bool = False
    serialized_tx_base64: Optional[str] = None

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class InitializeReceipt:
    pool_address: str
    asset_a: str
    asset_b: str
    share_asset: str
    address_nonce: int
    expected_shares: int
    phases: List[TxReceipt]

    @property
    def signature(self) -> Optional[str]:
        return self.phases[-1].signature if self.phases else None

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class PoolPosition:
    owner: str
    pool_address: str
    share_balance: int
    total_shares: int
    share_of_pool_bps: int
    redeemable_a: int
    redeemable_b: int

    def to_dict(self) -> dict:
        return asdict(self)


class LiquidityPoolClient:
    """
    Session object for one wallet talking to one deployed pool program.

    Holds the RPC client, the default signer, the config and the derived
    address cache. Every operation may override the signer per call.
    """

    def __init__(self, rpc_client: AsyncClient, signer: Keypair, config: Optional[ClientConfig] = None):
        self.rpc = rpc_client
        self.signer = signer
        self.config = config or ClientConfig()
        self.program_id = self.config.program_pubkey
        self.deriver = AddressDeriver(self.program_id, cache_size=self.config.address_cache_size)

    @classmethod
    def from_env(cls) -> "LiquidityPoolClient":
        config = ClientConfig.from_env()
        keypair = load_keypair_from_env()
        if not keypair:
            raise RuntimeError("WALLET_PRIVATE_KEY or WALLET_KEYPAIR_PATH must provide a signing keypair.")
        return cls(AsyncClient(config.rpc_url), keypair, config)

    async def close(self):
        await self.rpc.close()

    def pool_addresses(self, asset_x: Pubkey, asset_y: Pubkey) -> PoolAddresses:
        return self.deriver.pool_addresses(asset_x, asset_y)

    # ------------------------------------------------------------------ #
    # Reads
    # ------------------------------------------------------------------ #
    async def fetch_pool_state(self, asset_x: Pubkey, asset_y: Pubkey) -> Optional[PoolState]:
        """
        Decode the pool account for the pair, or None if it was never created.
        """
        addresses = self.pool_addresses(asset_x, asset_y)
        resp = await self.rpc.get_account_info(addresses.pool)
        if resp.value is None:
            return None
        return decode_pool_state(bytes(resp.value.data), address=addresses.pool)

    async def fetch_all_pools(self) -> List[PoolState]:
        resp = await self.rpc.get_program_accounts(
            self.program_id,
            encoding="base64",
            filters=[POOL_STATE_SIZE],
        )
        pools: List[PoolState] = []
        for keyed in resp.value:
            try:
                state = decode_pool_state(bytes(keyed.account.data), address=keyed.pubkey)
            except MalformedState as e:
                logger.warning(f"[Scan] Skipping account {keyed.pubkey}: {e}")
                continue
            if not state.initialized:
                logger.info(f"[Scan] Skipping uninitialized pool account {keyed.pubkey}")
                continue
            pools.append(state)
        logger.info(f"[Scan] Found {len(pools)} initialized pools out of {len(resp.value)} accounts")
        return pools

    async def fetch_position(
        self, asset_x: Pubkey, asset_y: Pubkey, owner: Optional[Pubkey] = None
    ) -> PoolPosition:
        owner = owner or self.signer.pubkey()
        addresses, state = await self._require_pool(asset_x, asset_y)
        share_account = derive_custody_address(owner, state.share_asset)

        balance = 0
        info = await self.rpc.get_account_info(share_account)
        if info.value is not None:
            balance_resp = await self.rpc.get_token_account_balance(share_account)
            balance = int(balance_resp.value.amount)

        redeemable_a, redeemable_b = (0, 0)
        if balance > 0:
            redeemable_a, redeemable_b = quote_remove_liquidity(
                balance, state.reserve_a, state.reserve_b, state.total_shares
            )
        return PoolPosition(
            owner=str(owner),
            pool_address=str(addresses.pool),
            share_balance=balance,
            total_shares=state.total_shares,
            share_of_pool_bps=share_of_pool_bps(balance, state.total_shares),
            redeemable_a=redeemable_a,
            redeemable_b=redeemable_b,
        )

    async def simulator_for(
        self, asset_x: Pubkey, asset_y: Pubkey, owner: Optional[Pubkey] = None
    ) -> PoolSimulator:
        """
        Offline copy of the live pool (canonical A/B orientation) seeded with the
        owner's share balance, for previewing trades before submitting them.
        """
        owner = owner or self.signer.pubkey()
        _addresses, state = await self._require_pool(asset_x, asset_y)
        position = await self.fetch_position(asset_x, asset_y, owner)
        return PoolSimulator.from_pool_state(state, holdings={str(owner): position.share_balance})

    async def preview_add_liquidity(self, asset_x: Pubkey, asset_y: Pubkey, amount_x: int, amount_y: int) -> int:
        addresses = self.pool_addresses(asset_x, asset_y)
        amount_a, amount_b = self._canonical_amounts(addresses, asset_x, amount_x, amount_y)
        sim = await self.simulator_for(asset_x, asset_y)
        return sim.add_liquidity(str(self.signer.pubkey()), amount_a, amount_b)

    async def preview_remove_liquidity(
        self, asset_x: Pubkey, asset_y: Pubkey, share_amount: int, owner: Optional[Pubkey] = None
    ) -> tuple[int, int]:
        """Returns (amount_a, amount_b) in the pool's canonical order."""
        owner = owner or self.signer.pubkey()
        sim = await self.simulator_for(asset_x, asset_y, owner)
        return sim.remove_liquidity(str(owner), share_amount)

    async def preview_swap(self, asset_in: Pubkey, asset_out: Pubkey, amount_in: int) -> int:
        addresses = self.pool_addresses(asset_in, asset_out)
        sim = await self.simulator_for(asset_in, asset_out)
        if asset_in == addresses.asset_a:
            return sim.swap_a_for_b(amount_in)
        return sim.swap_b_for_a(amount_in)

    # ------------------------------------------------------------------ #
    # Writes
    # ------------------------------------------------------------------ #
    async def initialize_pool(
        self,
        asset_x: Pubkey,
        asset_y: Pubkey,
        amount_x: int,
        amount_y: int,
        initiator: Optional[Keypair] = None,
        share_mint: Optional[Keypair] = None,
    ) -> InitializeReceipt:
        """
        Create and seed the pool for a pair in three confirmed transactions:
        state + share mint accounts, custody token accounts, then Initialize.

        A failure aborts the sequence. Accounts created by earlier phases stay
        on-chain; the raised error carries ``phase``, the earlier ``receipts``
        and the ``share_mint`` keypair used. Calling again for the same pair
        (passing that ``share_mint``) resumes: accounts that already exist are
        not recreated and empty phases are skipped.
        """
        initiator = initiator or self.signer
        share_mint = share_mint or Keypair()
        require_amount("amount_x", amount_x)
        require_amount("amount_y", amount_y)

        addresses = self.pool_addresses(asset_x, asset_y)
        amount_a, amount_b = self._canonical_amounts(addresses, asset_x, amount_x, amount_y)
        expected_shares = quote_initial_shares(amount_a, amount_b)
        payer = initiator.pubkey()

        # Optimization only: a concurrent initializer can still win the race,
        # in which case phase 1 or 3 reports PoolAlreadyExists.
        existing = await self.rpc.get_account_info(addresses.pool)
        state_allocated = existing.value is not None
        if state_allocated:
            state = decode_pool_state(bytes(existing.value.data), address=addresses.pool)
            if state.initialized:
                raise PoolAlreadyExists(
                    f"Pool {addresses.pool} already exists for {addresses.asset_a}/{addresses.asset_b}"
                )
            logger.info(f"[Pool] Resuming initialize of {addresses.pool}; state account already allocated")
        mint_allocated = (await self.rpc.get_account_info(share_mint.pubkey())).value is not None

        custody_ixs: List[Instruction] = []
        for owner, mint in (
            (payer, addresses.asset_a),
            (payer, addresses.asset_b),
            (addresses.pool, addresses.asset_a),
            (addresses.pool, addresses.asset_b),
            (payer, share_mint.pubkey()),
        ):
            if mint == share_mint.pubkey() and not mint_allocated:
                # A new mint has no holder accounts yet.
                custody_ixs.append(create_associated_token_account(payer=payer, owner=owner, mint=mint))
                continue
            _ata, create_ix = await ensure_ata_ix(self.rpc, owner, mint, payer)
            if create_ix:
                custody_ixs.append(create_ix)

        state_rent = (await self.rpc.get_minimum_balance_for_rent_exemption(POOL_STATE_SIZE)).value
        mint_rent = (await self.rpc.get_minimum_balance_for_rent_exemption(MINT_LEN)).value
        token_rent = (await self.rpc.get_minimum_balance_for_rent_exemption(ACCOUNT_LEN)).value

        create_ixs: List[Instruction] = []
        create_signers: List[Keypair] = []
        if not state_allocated:
            create_ixs.append(
                create_state_account_ix(payer, addresses.pool, state_rent, POOL_STATE_SIZE, self.program_id)
            )
        if not mint_allocated:
            create_ixs.append(create_state_account_ix(payer, share_mint.pubkey(), mint_rent, MINT_LEN, TOKEN_PROGRAM_ID))
            create_signers.append(share_mint)

        rent_required = (
            (0 if state_allocated else state_rent)
            + (0 if mint_allocated else mint_rent)
            + token_rent * len(custody_ixs)
        )
        balance = (await self.rpc.get_balance(payer)).value
        if balance < rent_required:
            raise InsufficientFunds(
                f"Initializer {payer} holds {balance} lamports; {rent_required} needed for new accounts"
            )
        logger.info(
            f"[Pool] Initializing {addresses.pool} (nonce {addresses.nonce}) "
            f"a={amount_a} b={amount_b} rent={rent_required} custody_accounts={len(custody_ixs)}"
        )

        plan = [
            (PHASE_CREATE_STATE, create_ixs, create_signers, {}),
            (PHASE_CREATE_CUSTODY, custody_ixs, [], {}),
            (
                PHASE_INITIALIZE,
                [
                    build_initialize_instruction(
                        self.program_id, addresses, payer, share_mint.pubkey(), amount_a, amount_b
                    )
                ],
                [],
                {"expected_shares": expected_shares, "amount_a": amount_a, "amount_b": amount_b},
            ),
        ]

        phases: List[TxReceipt] = []
        for phase, instructions, extra_signers, quote in plan:
            if not instructions:
                logger.info(f"[Pool] Phase {phase} has nothing to create; skipping")
                continue
            try:
                receipt = await self._submit(
                    phase, addresses.pool, instructions, initiator, extra_signers=extra_signers, quote=quote
                )
            except LiquidityPoolError as e:
                e.phase = phase
                e.receipts = list(phases)
                e.share_mint = share_mint
                logger.error(f"[Pool] Initialize of {addresses.pool} aborted at {phase}: {e}")
                raise
            phases.append(receipt)
            logger.info(f"[Pool] Phase {phase} confirmed: {receipt.signature}")

        return InitializeReceipt(
            pool_address=str(addresses.pool),
            asset_a=str(addresses.asset_a),
            asset_b=str(addresses.asset_b),
            share_asset=str(share_mint.pubkey()),
            address_nonce=addresses.nonce,
            expected_shares=expected_shares,
            phases=phases,
        )

    async def add_liquidity(
        self,
        asset_x: Pubkey,
        asset_y: Pubkey,
        amount_x: int,
        amount_y: int,
        provider: Optional[Keypair] = None,
    ) -> TxReceipt:
        provider = provider or self.signer
        require_amount("amount_x", amount_x)
        require_amount("amount_y", amount_y)
        addresses, state = await self._require_pool(asset_x, asset_y)
        amount_a, amount_b = self._canonical_amounts(addresses, asset_x, amount_x, amount_y)

        # Estimate only; the program recomputes the minted amount itself.
        expected_shares = quote_add_liquidity(
            amount_a, amount_b, state.reserve_a, state.reserve_b, state.total_shares
        )

        owner = provider.pubkey()
        instructions: List[Instruction] = []
        _share_account, create_ix = await ensure_ata_ix(self.rpc, owner, state.share_asset, owner)
        if create_ix:
            instructions.append(create_ix)
        instructions.append(
            build_add_liquidity_instruction(
                self.program_id, addresses, owner, state.share_asset, amount_a, amount_b
            )
        )
        return await self._submit(
            "add_liquidity",
            addresses.pool,
            instructions,
            provider,
            quote={"expected_shares": expected_shares, "amount_a": amount_a, "amount_b": amount_b},
        )

    async def remove_liquidity(
        self,
        asset_x: Pubkey,
        asset_y: Pubkey,
        share_amount: int,
        provider: Optional[Keypair] = None,
    ) -> TxReceipt:
        provider = provider or self.signer
        require_amount("share_amount", share_amount)
        addresses, state = await self._require_pool(asset_x, asset_y)
        expected_a, expected_b = quote_remove_liquidity(
            share_amount, state.reserve_a, state.reserve_b, state.total_shares
        )

        owner = provider.pubkey()
        instructions: List[Instruction] = []
        for asset in (addresses.asset_a, addresses.asset_b):
            _ata, create_ix = await ensure_ata_ix(self.rpc, owner, asset, owner)
            if create_ix:
                instructions.append(create_ix)
        instructions.append(
            build_remove_liquidity_instruction(
                self.program_id, addresses, owner, state.share_asset, share_amount
            )
        )
        return await self._submit(
            "remove_liquidity",
            addresses.pool,
            instructions,
            provider,
            quote={"share_amount": share_amount, "expected_a": expected_a, "expected_b": expected_b},
        )

    async def swap(
        self,
        asset_in: Pubkey,
        asset_out: Pubkey,
        amount_in: int,
        swapper: Optional[Keypair] = None,
    ) -> TxReceipt:
        """
        Swap amount_in of asset_in for asset_out. The direction (A to B or
        B to A) follows from where asset_in sits in the pool's canonical order.
        """
        swapper = swapper or self.signer
        require_amount("amount_in", amount_in)
        addresses, state = await self._require_pool(asset_in, asset_out)
        a_to_b = asset_in == addresses.asset_a

        reserve_in, reserve_out = state.reserves_for(asset_in)
        expected_out = quote_swap(amount_in, reserve_in, reserve_out)
        price_impact_bps = int(calculate_price_impact(amount_in, reserve_in, reserve_out) * 10_000)
        max_impact = self.config.max_price_impact_bps
        if max_impact and price_impact_bps > max_impact:
            logger.warning(f"[Pool] Price impact {price_impact_bps} bps exceeds max {max_impact}; aborting swap")
            raise PriceImpactExceeded(f"Price impact {price_impact_bps} bps exceeds max {max_impact} bps")

        owner = swapper.pubkey()
        instructions: List[Instruction] = []
        _dest, create_ix = await ensure_ata_ix(self.rpc, owner, asset_out, owner)
        if create_ix:
            instructions.append(create_ix)
        instructions.append(build_swap_instruction(self.program_id, addresses, owner, a_to_b, amount_in))
        return await self._submit(
            "swap_a_for_b" if a_to_b else "swap_b_for_a",
            addresses.pool,
            instructions,
            swapper,
            quote={
                "amount_in": amount_in,
                "expected_out": expected_out,
                "reserve_in": reserve_in,
                "reserve_out": reserve_out,
                "price_impact_bps": price_impact_bps,
            },
        )

    # ------------------------------------------------------------------ #
    # Internals
    # ------------------------------------------------------------------ #
    async def _require_pool(self, asset_x: Pubkey, asset_y: Pubkey) -> tuple[PoolAddresses, PoolState]:
        addresses = self.pool_addresses(asset_x, asset_y)
        state = await self.fetch_pool_state(asset_x, asset_y)
        if state is None or not state.initialized:
            raise PoolNotFound(f"No initialized pool for {addresses.asset_a}/{addresses.asset_b}")
        return addresses, state

    @staticmethod
    def _canonical_amounts(addresses: PoolAddresses, asset_x: Pubkey, amount_x: int, amount_y: int) -> tuple[int, int]:
        if asset_x == addresses.asset_a:
            return amount_x, amount_y
        return amount_y, amount_x

    async def _submit(
        self,
        operation: str,
        pool: Pubkey,
        instructions: List[Instruction],
        payer: Keypair,
        extra_signers: Optional[List[Keypair]] = None,
        quote: Optional[Dict[str, Any]] = None,
    ) -> TxReceipt:
        """
        Sign with a fresh blockhash, send, and wait for confirmation.

        Only transient failures are retried, each time with a new blockhash.
        Program rejections propagate unchanged. A confirmation timeout raises
        SubmissionTimeout without retrying, since the transaction may land.
        """
        t0 = perf_counter()
        last_error: Optional[Exception] = None
        max_attempts = self.config.max_submit_retries + 1

        for attempt in range(max_attempts):
            if attempt:
                delay = self.config.retry_backoff_seconds * (2 ** (attempt - 1))
                logger.warning(
                    f"[Submit] {operation} attempt {attempt} failed ({last_error}); retrying in {delay:.2f}s"
                )
                await asyncio.sleep(delay)

            try:
                blockhash_resp = await self.rpc.get_latest_blockhash()
                latest = blockhash_resp.value
                tx = build_transaction(instructions, payer, latest.blockhash, extra_signers)

                if self.config.dry_run:
                    logger.info(f"[Submit] Dry-run {operation} pool={pool} instructions={len(instructions)}")
                    return TxReceipt(
                        operation=operation,
                        pool_address=str(pool),
                        signature=None,
                        attempts=attempt + 1,
                        submit_ms=(perf_counter() - t0) * 1000,
                        quote=dict(quote or {}),
                        dry_run=True,
                        serialized_tx_base64=base64.b64encode(bytes(tx)).decode(),
                    )

                send_resp = await self.rpc.send_raw_transaction(
                    bytes(tx),
                    opts=TxOpts(skip_preflight=self.config.skip_preflight, preflight_commitment=Confirmed),
                )
            except RPCException as e:
                error = classify_rpc_error(str(e))
                if isinstance(error, TransientSubmissionError):
                    last_error = error
                    continue
                raise error from e
            except httpx.TimeoutException as e:
                raise SubmissionTimeout(f"{operation} send timed out; re-fetch state before retrying") from e
            except httpx.TransportError as e:
                last_error = e
                continue

            signature = send_resp.value
            try:
                await self._await_confirmation(signature, latest.last_valid_block_height)
            except TransactionExpiredBlockheightExceededError as e:
                last_error = e
                continue

            return TxReceipt(
                operation=operation,
                pool_address=str(pool),
                signature=str(signature),
                attempts=attempt + 1,
                submit_ms=(perf_counter() - t0) * 1000,
                quote=dict(quote or {}),
            )

        raise TransientSubmissionError(f"{operation} failed after {max_attempts} attempts: {last_error}")

    async def _await_confirmation(self, signature: Signature, last_valid_block_height: int):
        timeout = self.config.confirm_timeout_seconds
        try:
            resp = await asyncio.wait_for(
                self.rpc.confirm_transaction(
                    signature,
                    commitment=Confirmed,
                    last_valid_block_height=last_valid_block_height,
                ),
                timeout=timeout,
            )
        except asyncio.TimeoutError as e:
            raise SubmissionTimeout(
                f"No confirmation for {signature} within {timeout}s; re-fetch state before retrying"
            ) from e
        except UnconfirmedTxError as e:
            raise SubmissionTimeout(str(e)) from e

        statuses = resp.value
        status = statuses[0] if statuses else None
        if status is not None and status.err is not None:
            raise classify_rpc_error(str(status.err))
