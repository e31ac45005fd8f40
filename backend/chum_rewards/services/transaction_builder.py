"""
Transaction builder for reward claim transfers.

Builds the unsigned vault -> player $CHUM transfer and adds the authority's
co-signature once the player has signed. The player is fee payer and signs
first; the authority signs second.
"""

import base64
import hashlib
import logging
from typing import Any, Dict, List, Optional

from solders.hash import Hash
from solders.instruction import Instruction
from solders.keypair import Keypair
from solders.message import Message
from solders.pubkey import Pubkey
from solders.transaction import Transaction

from chum_rewards.services.balances import TokenAccount
from chum_rewards.services.solana_client import SolanaClient, get_solana_client
from chum_rewards.services.token_accounts import (
    create_associated_token_account_instruction,
    create_transfer_instruction,
    get_associated_token_address,
)

logger = logging.getLogger(__name__)


class TransactionBuilder:
    """
    Service for building Solana transactions.

    Handles transaction construction, blockhash fetching, and
    transaction serialization for signing.
    """

    def __init__(self, solana_client: Optional[SolanaClient] = None):
        self.solana_client = solana_client if solana_client is not None else get_solana_client()

    def build_transaction(
        self,
        instructions: List[Instruction],
        payer: Pubkey,
        recent_blockhash: str
    ) -> Transaction:
        """
        Build an unsigned Solana transaction from instructions.

        Args:
            instructions: List of instructions to include
            payer: Payer account (fee payer)
            recent_blockhash: Recent blockhash

        Returns:
            Transaction object ready for signing
        """
        message = Message.new_with_blockhash(
            instructions,
            payer,
            Hash.from_string(recent_blockhash)
        )
        return Transaction.new_unsigned(message)

    def serialize_transaction(self, transaction: Transaction) -> bytes:
        return bytes(transaction)

    def message_digest(self, transaction: Transaction) -> str:
        """SHA-256 of the message; identical before and after signing."""
        return hashlib.sha256(bytes(transaction.message)).hexdigest()

    def deserialize_transaction(self, transaction_bytes: bytes) -> Transaction:
        return Transaction.from_bytes(transaction_bytes)

    async def build_claim_transaction(
        self,
        vault_account: TokenAccount,
        authority: Pubkey,
        player_wallet: str,
        mint: str,
        raw_amount: int
    ) -> Dict[str, Any]:
        """
        Build the unsigned claim transfer from the vault to the player.

        The player's token account for the vault's token program is created
        in the same transaction when missing (player pays rent and fees).

        Args:
            vault_account: Funded vault token account (source)
            authority: Owner of the vault account
            player_wallet: Destination wallet
            mint: Token mint
            raw_amount: Amount in smallest units

        Returns:
            Dict with base64 transaction, blockhash, last_valid_block_height,
            message_digest, player_ata and creates_ata
        """
        player = Pubkey.from_string(player_wallet)
        mint_pubkey = Pubkey.from_string(mint)
        token_program = vault_account.program_pubkey

        player_ata = get_associated_token_address(player, mint_pubkey, token_program)

        instructions = []
        creates_ata = await self.solana_client.get_account_info(player_ata) is None
        if creates_ata:
            logger.info(f"Creating ATA for player: {player_ata}")
            instructions.append(
                create_associated_token_account_instruction(player, player, mint_pubkey, token_program)
            )

        instructions.append(
            create_transfer_instruction(
                vault_account.address_pubkey,
                player_ata,
                authority,
                raw_amount,
                token_program
            )
        )

        latest = await self.solana_client.get_latest_blockhash()
        if latest is None:
            raise ValueError("Failed to get recent blockhash")
        blockhash, last_valid_block_height = latest

        transaction = self.build_transaction(instructions, player, blockhash)
        transaction_b64 = base64.b64encode(self.serialize_transaction(transaction)).decode("utf-8")

        return {
            "transaction": transaction_b64,
            "blockhash": blockhash,
            "last_valid_block_height": last_valid_block_height,
            "message_digest": self.message_digest(transaction),
            "player_ata": str(player_ata),
            "creates_ata": creates_ata,
        }

    def cosign(self, signed_transaction_b64: str, authority: Keypair) -> str:
        """
        Add the authority signature to a player-signed transaction.

        Args:
            signed_transaction_b64: Base64 transaction already signed by the player
            authority: Vault authority keypair

        Returns:
            Base64 fully-signed transaction
        """
        transaction = self.deserialize_transaction(base64.b64decode(signed_transaction_b64))
        transaction.partial_sign([authority], transaction.message.recent_blockhash)
        return base64.b64encode(self.serialize_transaction(transaction)).decode("utf-8")


#global transaction builder instance
_transaction_builder: Optional[TransactionBuilder] = None


def get_transaction_builder() -> TransactionBuilder:
    """
    Get or create the global transaction builder instance.

    Returns:
        TransactionBuilder instance
    """
    global _transaction_builder

    if _transaction_builder is None:
        _transaction_builder = TransactionBuilder()

    return _transaction_builder
