"""
Token account helpers for SPL tokens.

Address validation, Associated Token Account (ATA) derivation and the raw
SPL Token / Associated Token Program instructions used by reward claims.
Both the classic Token program and Token-2022 are supported; the program
is passed explicitly wherever it matters.
"""

import logging

from solders.instruction import AccountMeta, Instruction
from solders.pubkey import Pubkey

logger = logging.getLogger(__name__)

# SPL Token Program ID
TOKEN_PROGRAM_ID = Pubkey.from_string("TokenkegQfeZyiNwAJbNbGKPFXCWuBvf9Ss623VQ5DA")
# Token-2022 Program ID
TOKEN_2022_PROGRAM_ID = Pubkey.from_string("TokenzQdBNbLqP5VEhdkAS6EPFLC1PHnBqCXEpPxuEb")
# Associated Token Program ID
ASSOCIATED_TOKEN_PROGRAM_ID = Pubkey.from_string("ATokenGPvbdGVxr1b2hvZbsiqW5xWH25efTNsLJA8knL")
# System Program ID
SYSTEM_PROGRAM_ID = Pubkey.from_string("11111111111111111111111111111111")

TOKEN_PROGRAMS = (TOKEN_PROGRAM_ID, TOKEN_2022_PROGRAM_ID)

# SPL Token instruction discriminator for Transfer
_TRANSFER_INSTRUCTION = 3


def is_valid_solana_address(address) -> bool:
    """
    Check that a string is a base58-encoded 32-byte public key
    (Pubkey.from_string rejects bad base58 and wrong lengths).

    Args:
        address: Candidate wallet/mint address

    Returns:
        True if the address is well-formed
    """
    if not address or not isinstance(address, str):
        return False
    address = address.strip()
    if len(address) < 30 or len(address) > 48:
        return False
    try:
        Pubkey.from_string(address)
        return True
    except Exception:
        return False


def get_associated_token_address(
    wallet: Pubkey,
    mint: Pubkey,
    token_program_id: Pubkey = TOKEN_PROGRAM_ID
) -> Pubkey:
    """
    Derive the Associated Token Account (ATA) address for a wallet and mint.

    Seeds: [wallet, token_program, mint] under the Associated Token Program.

    Args:
        wallet: Wallet public key
        mint: Token mint public key
        token_program_id: Token program owning the mint

    Returns:
        Associated Token Account public key
    """
    ata, _bump = Pubkey.find_program_address(
        [bytes(wallet), bytes(token_program_id), bytes(mint)],
        ASSOCIATED_TOKEN_PROGRAM_ID
    )
    return ata


def create_associated_token_account_instruction(
    payer: Pubkey,
    wallet: Pubkey,
    mint: Pubkey,
    token_program_id: Pubkey = TOKEN_PROGRAM_ID
) -> Instruction:
    """
    Build instruction to create an Associated Token Account (ATA).

    Args:
        payer: Account that will pay for the ATA creation (rent)
        wallet: Wallet that will own the ATA
        mint: Token mint address
        token_program_id: Token program owning the mint

    Returns:
        Instruction to create ATA
    """
    ata = get_associated_token_address(wallet, mint, token_program_id)

    # Accounts: [payer, ata, wallet, mint, system_program, token_program]
    accounts = [
        AccountMeta(pubkey=payer, is_signer=True, is_writable=True),
        AccountMeta(pubkey=ata, is_signer=False, is_writable=True),
        AccountMeta(pubkey=wallet, is_signer=False, is_writable=False),
        AccountMeta(pubkey=mint, is_signer=False, is_writable=False),
        AccountMeta(pubkey=SYSTEM_PROGRAM_ID, is_signer=False, is_writable=False),
        AccountMeta(pubkey=token_program_id, is_signer=False, is_writable=False),
    ]

    return Instruction(
        program_id=ASSOCIATED_TOKEN_PROGRAM_ID,
        data=bytes(),  # Empty data = Create
        accounts=accounts
    )


def create_transfer_instruction(
    source: Pubkey,
    destination: Pubkey,
    owner: Pubkey,
    amount: int,
    token_program_id: Pubkey = TOKEN_PROGRAM_ID
) -> Instruction:
    """
    Build an SPL Token Transfer instruction.

    Args:
        source: Source token account
        destination: Destination token account
        owner: Owner of the source account (must sign)
        amount: Raw amount (smallest units)
        token_program_id: Token program of both accounts

    Returns:
        Transfer instruction
    """
    if amount < 0:
        raise ValueError("Transfer amount must be non-negative")

    accounts = [
        AccountMeta(pubkey=source, is_signer=False, is_writable=True),
        AccountMeta(pubkey=destination, is_signer=False, is_writable=True),
        AccountMeta(pubkey=owner, is_signer=True, is_writable=False),
    ]
    data = bytes([_TRANSFER_INSTRUCTION]) + amount.to_bytes(8, byteorder="little")

    return Instruction(program_id=token_program_id, data=data, accounts=accounts)
