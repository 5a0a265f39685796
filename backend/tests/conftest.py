"""
In-memory stand-in for the RPC node and the on-chain pool program.

Submitted transactions are decoded with solders and applied atomically, using
the package's own codec and math for the pool instructions, so client tests
exercise real serialization end to end.
"""

from __future__ import annotations

import asyncio
import struct
from dataclasses import dataclass
from types import SimpleNamespace
from typing import Dict, List, Optional, Tuple

import pytest
from solana.rpc.core import RPCException
from solders.hash import Hash
from solders.keypair import Keypair
from solders.pubkey import Pubkey
from solders.signature import Signature
from solders.system_program import ID as SYSTEM_PROGRAM_ID
from solders.transaction import Transaction
from spl.token.constants import ASSOCIATED_TOKEN_PROGRAM_ID, TOKEN_PROGRAM_ID

from liquidity_pool import amm_math
from liquidity_pool.config import ClientConfig
from liquidity_pool.client import LiquidityPoolClient
from liquidity_pool.errors import InsufficientLiquidity, InsufficientShares, InvalidAmount
from liquidity_pool.layout import (
    AddLiquidity,
    InitializePool,
    PoolState,
    RemoveLiquidity,
    SwapAForB,
    decode_instruction,
    decode_pool_state,
    encode_pool_state,
)
from liquidity_pool.pda import canonical_pair, derive_custody_address, derive_pool_address

LAMPORTS_PER_SOL = 1_000_000_000

# Engine error codes used by the fake program.
ERR_NOT_RENT_EXEMPT = 1
ERR_ALREADY_INITIALIZED = 2
ERR_NOT_INITIALIZED = 3
ERR_INSUFFICIENT_LIQUIDITY = 6
ERR_INVALID_LP_AMOUNT = 7
ERR_INVALID_POOL_STATE = 8
ERR_INVALID_TOKEN_ACCOUNT = 10
ERR_ZERO_RESERVES = 12

_MATH_ERROR_CODES = (
    (InsufficientShares, ERR_INVALID_LP_AMOUNT),
    (InsufficientLiquidity, ERR_INSUFFICIENT_LIQUIDITY),
    (InvalidAmount, ERR_ZERO_RESERVES),
)


class ProgramFailure(Exception):
    def __init__(self, code: int):
        super().__init__(code)
        self.code = code


@dataclass(frozen=True)
class StoredAccount:
    owner: Pubkey
    data: bytes


class FakeLedger:
    def __init__(self, program_id: Pubkey):
        self.program_id = program_id
        self.accounts: Dict[Pubkey, StoredAccount] = {}
        self.token_balances: Dict[Pubkey, int] = {}
        self.token_meta: Dict[Pubkey, Tuple[Pubkey, Pubkey]] = {}
        self.lamports: Dict[Pubkey, int] = {}
        self.hidden: set = set()
        self.fail_at: Dict[int, Exception] = {}
        self.confirm_delay = 0.0
        self.confirm_error: Optional[str] = None
        self.sends = 0
        self.blockhash_requests = 0
        self.landed: List[Transaction] = []
        self.unsigned_derived_signers: List[Pubkey] = []
        self.closed = False

    # -- helpers for tests --------------------------------------------------
    def fund(self, owner: Pubkey, lamports: int = 10 * LAMPORTS_PER_SOL):
        self.lamports[owner] = self.lamports.get(owner, 0) + lamports

    def mint_to(self, owner: Pubkey, mint: Pubkey, amount: int) -> Pubkey:
        ata = derive_custody_address(owner, mint)
        self.token_meta.setdefault(ata, (owner, mint))
        self.token_balances[ata] = self.token_balances.get(ata, 0) + amount
        return ata

    def balance_of(self, owner: Pubkey, mint: Pubkey) -> int:
        return self.token_balances.get(derive_custody_address(owner, mint), 0)

    def pool_state(self, asset_x: Pubkey, asset_y: Pubkey) -> Optional[PoolState]:
        pool, _nonce = derive_pool_address(asset_x, asset_y, self.program_id)
        stored = self.accounts.get(pool)
        return decode_pool_state(stored.data, address=pool) if stored else None

    def put_raw_account(self, address: Pubkey, data: bytes, owner: Optional[Pubkey] = None):
        self.accounts[address] = StoredAccount(owner or self.program_id, data)

    # -- RPC surface --------------------------------------------------------
    async def get_account_info(self, pubkey: Pubkey, *args, **kwargs):
        if pubkey in self.hidden:
            return SimpleNamespace(value=None)
        if pubkey in self.accounts:
            stored = self.accounts[pubkey]
            return SimpleNamespace(value=SimpleNamespace(data=stored.data, owner=stored.owner))
        if pubkey in self.token_balances:
            return SimpleNamespace(value=SimpleNamespace(data=b"\x00" * 165, owner=TOKEN_PROGRAM_ID))
        return SimpleNamespace(value=None)

    async def get_program_accounts(self, program_id: Pubkey, encoding=None, filters=None, **kwargs):
        sizes = [f for f in (filters or []) if isinstance(f, int)]
        keyed = [
            SimpleNamespace(pubkey=address, account=SimpleNamespace(data=stored.data))
            for address, stored in self.accounts.items()
            if stored.owner == program_id and all(len(stored.data) == size for size in sizes)
        ]
        return SimpleNamespace(value=keyed)

    async def get_token_account_balance(self, pubkey: Pubkey, *args, **kwargs):
        return SimpleNamespace(value=SimpleNamespace(amount=str(self.token_balances[pubkey])))

    async def get_minimum_balance_for_rent_exemption(self, size: int, *args, **kwargs):
        return SimpleNamespace(value=(128 + size) * 6960)

    async def get_balance(self, pubkey: Pubkey, *args, **kwargs):
        return SimpleNamespace(value=self.lamports.get(pubkey, 0))

    async def get_latest_blockhash(self, *args, **kwargs):
        self.blockhash_requests += 1
        return SimpleNamespace(
            value=SimpleNamespace(blockhash=Hash.new_unique(), last_valid_block_height=1_000 + self.blockhash_requests)
        )

    async def send_raw_transaction(self, raw: bytes, opts=None):
        self.sends += 1
        injected = self.fail_at.pop(self.sends, None)
        if injected is not None:
            raise injected

        tx = Transaction.from_bytes(raw)
        self._check_signatures(tx)
        snapshot = (
            dict(self.accounts),
            dict(self.token_balances),
            dict(self.token_meta),
            dict(self.lamports),
        )
        message = tx.message
        keys = list(message.account_keys)
        for index, ix in enumerate(message.instructions):
            program = keys[ix.program_id_index]
            accounts = [keys[i] for i in bytes(ix.accounts)]
            try:
                self._execute(program, accounts, bytes(ix.data))
            except ProgramFailure as e:
                self._restore(snapshot)
                raise RPCException(
                    f"Transaction simulation failed: Error processing Instruction {index}: "
                    f"custom program error: 0x{e.code:x}"
                )
            except RPCException:
                self._restore(snapshot)
                raise
        self.landed.append(tx)
        return SimpleNamespace(value=tx.signatures[0])

    async def confirm_transaction(self, signature, commitment=None, sleep_seconds=None, last_valid_block_height=None):
        if self.confirm_delay:
            await asyncio.sleep(self.confirm_delay)
        return SimpleNamespace(value=[SimpleNamespace(err=self.confirm_error)])

    async def close(self):
        self.closed = True

    # -- execution ----------------------------------------------------------
    def _check_signatures(self, tx: Transaction):
        """
        Verify every signer slot. A real cluster also rejects an empty slot for
        a program-derived signer (the pool state account created in the first
        initialize phase, which the deployed program expects pre-allocated);
        here such slots are only recorded in ``unsigned_derived_signers``.
        """
        message = tx.message
        payload = bytes(message)
        signer_keys = list(message.account_keys)[: message.header.num_required_signatures]
        for key, signature in zip(signer_keys, tx.signatures):
            if not key.is_on_curve():
                assert signature == Signature.default()
                self.unsigned_derived_signers.append(key)
            elif not signature.verify(key, payload):
                raise RPCException("Transaction signature verification failure")

    def _restore(self, snapshot):
        self.accounts, self.token_balances, self.token_meta, self.lamports = snapshot

    def _execute(self, program: Pubkey, accounts: List[Pubkey], data: bytes):
        if program == SYSTEM_PROGRAM_ID:
            self._create_account(accounts, data)
        elif program == ASSOCIATED_TOKEN_PROGRAM_ID:
            self._create_ata(accounts)
        elif program == self.program_id:
            self._run_pool_program(accounts, data)
        else:
            raise ProgramFailure(0)

    def _exists(self, address: Pubkey) -> bool:
        return address in self.accounts or address in self.token_balances

    def _create_account(self, accounts: List[Pubkey], data: bytes):
        _kind, lamports, space = struct.unpack_from("<IQQ", data, 0)
        owner = Pubkey.from_bytes(data[20:52])
        payer, new_account = accounts[0], accounts[1]
        if self._exists(new_account):
            raise RPCException(
                f"Transaction simulation failed: Allocate: account Address {{ address: {new_account}, "
                f"base: None }} already in use"
            )
        if self.lamports.get(payer, 0) < lamports:
            raise ProgramFailure(ERR_NOT_RENT_EXEMPT)
        self.lamports[payer] -= lamports
        self.accounts[new_account] = StoredAccount(owner, bytes(space))

    def _create_ata(self, accounts: List[Pubkey]):
        ata, owner, mint = accounts[1], accounts[2], accounts[3]
        if self._exists(ata):
            raise RPCException(f"Transaction simulation failed: account {ata} already in use")
        self.token_meta[ata] = (owner, mint)
        self.token_balances[ata] = 0

    def _transfer(self, source: Pubkey, dest: Pubkey, amount: int):
        if source not in self.token_balances or dest not in self.token_balances:
            raise ProgramFailure(ERR_INVALID_TOKEN_ACCOUNT)
        if self.token_balances[source] < amount:
            raise ProgramFailure(1)
        self.token_balances[source] -= amount
        self.token_balances[dest] += amount

    def _mint(self, dest: Pubkey, amount: int):
        if dest not in self.token_balances:
            raise ProgramFailure(ERR_INVALID_TOKEN_ACCOUNT)
        self.token_balances[dest] += amount

    def _burn(self, source: Pubkey, amount: int):
        if self.token_balances.get(source, 0) < amount:
            raise ProgramFailure(ERR_INVALID_LP_AMOUNT)
        self.token_balances[source] -= amount

    def _load_state(self, pool: Pubkey) -> PoolState:
        stored = self.accounts.get(pool)
        if stored is None or stored.owner != self.program_id:
            raise ProgramFailure(ERR_INVALID_POOL_STATE)
        state = decode_pool_state(stored.data, address=pool)
        if not state.initialized:
            raise ProgramFailure(ERR_NOT_INITIALIZED)
        return state

    def _store_state(self, pool: Pubkey, state: PoolState):
        self.accounts[pool] = StoredAccount(self.program_id, encode_pool_state(state))

    def _run_pool_program(self, accounts: List[Pubkey], data: bytes):
        payload = decode_instruction(data)
        try:
            if isinstance(payload, InitializePool):
                self._initialize(accounts, payload)
            elif isinstance(payload, AddLiquidity):
                self._add(accounts, payload)
            elif isinstance(payload, RemoveLiquidity):
                self._remove(accounts, payload)
            else:
                self._swap(accounts, payload)
        except (InvalidAmount, InsufficientLiquidity, InsufficientShares) as e:
            for error_cls, code in _MATH_ERROR_CODES:
                if isinstance(e, error_cls):
                    raise ProgramFailure(code) from e
            raise

    def _initialize(self, accounts: List[Pubkey], payload: InitializePool):
        _signer, pool, mint_a, mint_b, custody_a, custody_b, share_mint, user_a, user_b, user_share = accounts[:10]
        expected_pool, nonce = derive_pool_address(mint_a, mint_b, self.program_id)
        if pool != expected_pool or (mint_a, mint_b) != canonical_pair(mint_a, mint_b):
            raise ProgramFailure(ERR_INVALID_POOL_STATE)
        stored = self.accounts.get(pool)
        if stored is None:
            raise ProgramFailure(ERR_INVALID_POOL_STATE)
        if decode_pool_state(stored.data).initialized:
            raise ProgramFailure(ERR_ALREADY_INITIALIZED)

        minted = amm_math.quote_initial_shares(payload.amount_a, payload.amount_b)
        self._transfer(user_a, custody_a, payload.amount_a)
        self._transfer(user_b, custody_b, payload.amount_b)
        self._mint(user_share, minted)
        self._store_state(
            pool,
            PoolState(
                initialized=True,
                asset_a=mint_a,
                asset_b=mint_b,
                reserve_a=payload.amount_a,
                reserve_b=payload.amount_b,
                share_asset=share_mint,
                total_shares=minted,
                address_nonce=nonce,
            ),
        )

    def _add(self, accounts: List[Pubkey], payload: AddLiquidity):
        _signer, pool, custody_a, custody_b, _share_mint, user_a, user_b, user_share = accounts[:8]
        state = self._load_state(pool)
        minted = amm_math.quote_add_liquidity(
            payload.amount_a, payload.amount_b, state.reserve_a, state.reserve_b, state.total_shares
        )
        self._transfer(user_a, custody_a, payload.amount_a)
        self._transfer(user_b, custody_b, payload.amount_b)
        self._mint(user_share, minted)
        state.reserve_a += payload.amount_a
        state.reserve_b += payload.amount_b
        state.total_shares += minted
        self._store_state(pool, state)

    def _remove(self, accounts: List[Pubkey], payload: RemoveLiquidity):
        _signer, pool, custody_a, custody_b, _share_mint, user_a, user_b, user_share = accounts[:8]
        state = self._load_state(pool)
        amount_a, amount_b = amm_math.quote_remove_liquidity(
            payload.share_amount, state.reserve_a, state.reserve_b, state.total_shares
        )
        self._burn(user_share, payload.share_amount)
        self._transfer(custody_a, user_a, amount_a)
        self._transfer(custody_b, user_b, amount_b)
        state.reserve_a -= amount_a
        state.reserve_b -= amount_b
        state.total_shares -= payload.share_amount
        self._store_state(pool, state)

    def _swap(self, accounts: List[Pubkey], payload):
        _signer, pool, custody_a, custody_b, source, dest = accounts[:6]
        state = self._load_state(pool)
        a_to_b = isinstance(payload, SwapAForB)
        if a_to_b:
            amount_out = amm_math.quote_swap(payload.amount_in, state.reserve_a, state.reserve_b)
            self._transfer(source, custody_a, payload.amount_in)
            self._transfer(custody_b, dest, amount_out)
            state.reserve_a += payload.amount_in
            state.reserve_b -= amount_out
        else:
            amount_out = amm_math.quote_swap(payload.amount_in, state.reserve_b, state.reserve_a)
            self._transfer(source, custody_b, payload.amount_in)
            self._transfer(custody_a, dest, amount_out)
            state.reserve_b += payload.amount_in
            state.reserve_a -= amount_out
        self._store_state(pool, state)


@pytest.fixture
def config():
    return ClientConfig(retry_backoff_seconds=0.0, confirm_timeout_seconds=5.0)


@pytest.fixture
def ledger(config):
    return FakeLedger(config.program_pubkey)


@pytest.fixture
def payer(ledger):
    keypair = Keypair()
    ledger.fund(keypair.pubkey())
    return keypair


@pytest.fixture
def assets():
    """Two fresh asset ids in canonical (A, B) order."""
    return canonical_pair(Keypair().pubkey(), Keypair().pubkey())


@pytest.fixture
def client(ledger, payer, config):
    return LiquidityPoolClient(ledger, payer, config)
