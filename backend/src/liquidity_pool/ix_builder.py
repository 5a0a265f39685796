from __future__ import annotations

from typing import List, Optional

from solders.instruction import AccountMeta, Instruction
from solders.message import Message
from solders.hash import Hash
from solders.keypair import Keypair
from solders.pubkey import Pubkey
from solders.system_program import ID as SYSTEM_PROGRAM
from solders.system_program import CreateAccountParams, create_account
from solders.sysvar import RENT
from solders.transaction import Transaction
from spl.token.constants import TOKEN_PROGRAM_ID
from spl.token.instructions import create_associated_token_account

from liquidity_pool.layout import (
    AddLiquidity,
    InitializePool,
    PoolInstruction,
    RemoveLiquidity,
    SwapAForB,
    SwapBForA,
    encode_instruction,
)
from liquidity_pool.pda import PoolAddresses, derive_custody_address


async def ensure_ata_ix(
    rpc_client,
    wallet: Pubkey,
    mint: Pubkey,
    payer: Pubkey,
) -> tuple[Pubkey, Optional[Instruction]]:
    """
    Check if ATA exists, return (ata_address, create_ix or None).
    """
    ata = derive_custody_address(wallet, mint)
    resp = await rpc_client.get_account_info(ata)
    if resp.value is not None:
        return ata, None
    return ata, create_associated_token_account(payer=payer, owner=wallet, mint=mint)


def create_state_account_ix(payer: Pubkey, new_account: Pubkey, lamports: int, space: int, owner: Pubkey) -> Instruction:
    return create_account(
        CreateAccountParams(
            from_pubkey=payer,
            to_pubkey=new_account,
            lamports=lamports,
            space=space,
            owner=owner,
        )
    )


def _pool_instruction(program_id: Pubkey, payload: PoolInstruction, accounts: List[AccountMeta]) -> Instruction:
    return Instruction(program_id=program_id, data=encode_instruction(payload), accounts=accounts)


def build_initialize_instruction(
    program_id: Pubkey,
    addresses: PoolAddresses,
    initializer: Pubkey,
    share_mint: Pubkey,
    amount_a: int,
    amount_b: int,
) -> Instruction:
    accounts = [
        AccountMeta(initializer, is_signer=True, is_writable=False),
        AccountMeta(addresses.pool, is_signer=False, is_writable=True),
        AccountMeta(addresses.asset_a, is_signer=False, is_writable=False),
        AccountMeta(addresses.asset_b, is_signer=False, is_writable=False),
        AccountMeta(addresses.custody_a, is_signer=False, is_writable=True),
        AccountMeta(addresses.custody_b, is_signer=False, is_writable=True),
        AccountMeta(share_mint, is_signer=False, is_writable=True),
        AccountMeta(derive_custody_address(initializer, addresses.asset_a), is_signer=False, is_writable=True),
        AccountMeta(derive_custody_address(initializer, addresses.asset_b), is_signer=False, is_writable=True),
        AccountMeta(derive_custody_address(initializer, share_mint), is_signer=False, is_writable=True),
        AccountMeta(TOKEN_PROGRAM_ID, is_signer=False, is_writable=False),
        AccountMeta(RENT, is_signer=False, is_writable=False),
        AccountMeta(SYSTEM_PROGRAM, is_signer=False, is_writable=False),
    ]
    return _pool_instruction(program_id, InitializePool(amount_a=amount_a, amount_b=amount_b), accounts)


def _liquidity_accounts(addresses: PoolAddresses, provider: Pubkey, share_mint: Pubkey) -> List[AccountMeta]:
    return [
        AccountMeta(provider, is_signer=True, is_writable=False),
        AccountMeta(addresses.pool, is_signer=False, is_writable=True),
        AccountMeta(addresses.custody_a, is_signer=False, is_writable=True),
        AccountMeta(addresses.custody_b, is_signer=False, is_writable=True),
        AccountMeta(share_mint, is_signer=False, is_writable=True),
        AccountMeta(derive_custody_address(provider, addresses.asset_a), is_signer=False, is_writable=True),
        AccountMeta(derive_custody_address(provider, addresses.asset_b), is_signer=False, is_writable=True),
        AccountMeta(derive_custody_address(provider, share_mint), is_signer=False, is_writable=True),
        AccountMeta(TOKEN_PROGRAM_ID, is_signer=False, is_writable=False),
    ]


def build_add_liquidity_instruction(
    program_id: Pubkey,
    addresses: PoolAddresses,
    provider: Pubkey,
    share_mint: Pubkey,
    amount_a: int,
    amount_b: int,
) -> Instruction:
    return _pool_instruction(
        program_id,
        AddLiquidity(amount_a=amount_a, amount_b=amount_b),
        _liquidity_accounts(addresses, provider, share_mint),
    )


def build_remove_liquidity_instruction(
    program_id: Pubkey,
    addresses: PoolAddresses,
    provider: Pubkey,
    share_mint: Pubkey,
    share_amount: int,
) -> Instruction:
    return _pool_instruction(
        program_id,
        RemoveLiquidity(share_amount=share_amount),
        _liquidity_accounts(addresses, provider, share_mint),
    )


def build_swap_instruction(
    program_id: Pubkey,
    addresses: PoolAddresses,
    swapper: Pubkey,
    a_to_b: bool,
    amount_in: int,
) -> Instruction:
    """
    Accounts 4 and 5 are the swapper's source and destination token accounts,
    so their order flips with the direction.
    """
    user_a = derive_custody_address(swapper, addresses.asset_a)
    user_b = derive_custody_address(swapper, addresses.asset_b)
    source, dest = (user_a, user_b) if a_to_b else (user_b, user_a)
    payload: PoolInstruction = SwapAForB(amount_in=amount_in) if a_to_b else SwapBForA(amount_in=amount_in)

    accounts = [
        AccountMeta(swapper, is_signer=True, is_writable=False),
        AccountMeta(addresses.pool, is_signer=False, is_writable=True),
        AccountMeta(addresses.custody_a, is_signer=False, is_writable=True),
        AccountMeta(addresses.custody_b, is_signer=False, is_writable=True),
        AccountMeta(source, is_signer=False, is_writable=True),
        AccountMeta(dest, is_signer=False, is_writable=True),
        AccountMeta(TOKEN_PROGRAM_ID, is_signer=False, is_writable=False),
    ]
    return _pool_instruction(program_id, payload, accounts)


def build_transaction(
    instructions: List[Instruction],
    payer: Keypair,
    recent_blockhash: Hash,
    extra_signers: Optional[List[Keypair]] = None,
) -> Transaction:
    """
    Sign with every keypair we hold. Signer slots for program-derived
    addresses (the pool state account in its create instruction) stay empty.
    """
    signers = [payer] + list(extra_signers or [])
    message = Message.new_with_blockhash(instructions, payer.pubkey(), recent_blockhash)
    tx = Transaction.new_unsigned(message)
    tx.partial_sign(signers, recent_blockhash)
    return tx
