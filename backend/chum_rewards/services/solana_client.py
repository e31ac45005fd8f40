"""
Solana RPC client for interacting with the Solana blockchain.

Wraps solana-py's AsyncClient so balance lookups and confirmation polling
never block the event loop. Query helpers log failures and return empty
results; callers treat "nothing found" and "lookup failed" alike.
find_signature_status is the exception: it lets RPC errors propagate.
"""

import logging
from typing import Any, Dict, List, Optional, Tuple

from solana.rpc.async_api import AsyncClient
from solana.rpc.commitment import Commitment, Confirmed
from solana.rpc.models import TokenAccountOpts
from solders.pubkey import Pubkey
from solders.signature import Signature
from solders.transaction_status import TransactionConfirmationStatus

from chum_rewards.config import get_settings

logger = logging.getLogger(__name__)

_CONFIRMATION_NAMES = {
    TransactionConfirmationStatus.Processed: "processed",
    TransactionConfirmationStatus.Confirmed: "confirmed",
    TransactionConfirmationStatus.Finalized: "finalized",
}


class SolanaClient:
    """
    Client for interacting with Solana RPC endpoints.

    Handles connection to the Solana network and provides the queries the
    rewards backend needs: token accounts, blockhashes and signature status.
    """

    def __init__(self, rpc_url: Optional[str] = None, commitment: str = "confirmed"):
        """
        Initialize Solana RPC client.

        Args:
            rpc_url: Solana RPC endpoint URL (defaults to settings.rpc_url)
            commitment: Commitment level ("processed", "confirmed", "finalized")
        """
        self.rpc_url = rpc_url or get_settings().rpc_url
        self.commitment = Commitment(commitment)
        self.client = AsyncClient(self.rpc_url, commitment=self.commitment)

        logger.info(f"Initialized Solana client: {self.rpc_url.split('?')[0]} (commitment: {commitment})")

    async def close(self) -> None:
        await self.client.close()

    async def get_parsed_token_accounts(
        self,
        owner: str,
        program_id: Optional[Pubkey] = None,
        mint: Optional[str] = None
    ) -> List[Dict[str, Any]]:
        """
        List an owner's token accounts, filtered by token program or mint.

        Args:
            owner: Owner wallet address
            program_id: Token program to scan (exclusive with mint)
            mint: Mint to filter by

        Returns:
            List of dicts with address, mint, amount (raw), ui_amount, decimals
        """
        try:
            if mint is not None:
                opts = TokenAccountOpts(mint=Pubkey.from_string(mint))
            else:
                opts = TokenAccountOpts(program_id=program_id)

            response = await self.client.get_token_accounts_by_owner_json_parsed(
                Pubkey.from_string(owner), opts, commitment=Confirmed
            )
        except Exception as e:
            logger.error(f"Error listing token accounts for {owner}: {e}")
            return []

        accounts = []
        for keyed in response.value:
            parsed = getattr(keyed.account.data, "parsed", None) or {}
            info = parsed.get("info") if isinstance(parsed, dict) else None
            if not info:
                continue
            token_amount = info.get("tokenAmount") or {}
            ui_string = token_amount.get("uiAmountString")
            ui_amount = float(ui_string) if ui_string else float(token_amount.get("uiAmount") or 0)
            accounts.append({
                "address": str(keyed.pubkey),
                "mint": info.get("mint"),
                "program_id": str(keyed.account.owner),
                "amount": int(token_amount.get("amount") or 0),
                "ui_amount": ui_amount,
                "decimals": int(token_amount.get("decimals") or 0),
            })
        return accounts

    async def get_account_info(self, pubkey: Pubkey) -> Optional[Dict[str, Any]]:
        """
        Get account information for a given public key.

        Returns:
            Account info dictionary or None if account doesn't exist
        """
        try:
            response = await self.client.get_account_info(pubkey, commitment=Confirmed)

            if response.value is None:
                return None

            return {
                "lamports": response.value.lamports,
                "owner": str(response.value.owner),
                "executable": response.value.executable,
            }
        except Exception as e:
            logger.error(f"Error getting account info for {pubkey}: {e}")
            return None

    async def get_latest_blockhash(self) -> Optional[Tuple[str, int]]:
        """
        Get the latest blockhash for transaction building.

        Returns:
            (blockhash, last valid block height), or None on error
        """
        try:
            response = await self.client.get_latest_blockhash(commitment=Confirmed)
            return str(response.value.blockhash), response.value.last_valid_block_height
        except Exception as e:
            logger.error(f"Error getting latest blockhash: {e}")
            return None

    async def find_signature_status(self, signature: str) -> Optional[str]:
        """
        Look up a signature's status, searching history.

        Unlike get_signature_status, an RPC failure raises instead of reading
        as "not found".

        Returns:
            "processed", "confirmed", "finalized" or "failed"; None when the
            cluster has no record of the signature
        """
        response = await self.client.get_signature_statuses(
            [Signature.from_string(signature)],
            search_transaction_history=True
        )
        status = response.value[0] if response.value else None
        if status is None:
            return None
        if status.err is not None:
            return "failed"
        return _CONFIRMATION_NAMES.get(status.confirmation_status)

    async def get_signature_status(self, signature: str) -> Optional[str]:
        """
        Look up a signature's confirmation status, searching history.

        Returns:
            "processed", "confirmed" or "finalized"; None if unknown, failed
            on-chain, or the lookup errored
        """
        try:
            status = await self.find_signature_status(signature)
        except Exception as e:
            logger.warning(f"Signature status lookup failed for {signature[:20]}...: {e}")
            return None
        return None if status == "failed" else status

    async def get_transaction(self, signature: str) -> Optional[Dict[str, Any]]:
        """
        Get a transaction by signature.

        Returns:
            {"slot": ..., "block_time": ..., "err": ...} or None
        """
        try:
            response = await self.client.get_transaction(
                Signature.from_string(signature),
                commitment=Confirmed,
                max_supported_transaction_version=0
            )
        except Exception as e:
            logger.warning(f"Transaction lookup failed for {signature[:20]}...: {e}")
            return None

        if response.value is None:
            return None

        meta = response.value.transaction.meta
        return {
            "slot": response.value.slot,
            "block_time": response.value.block_time,
            "err": meta.err if meta else None,
        }


#global Solana client instance
_solana_client: Optional[SolanaClient] = None


def get_solana_client() -> SolanaClient:
    """
    Get or create the global Solana client instance.

    Returns:
        SolanaClient instance
    """
    global _solana_client

    if _solana_client is None:
        settings = get_settings()
        _solana_client = SolanaClient(rpc_url=settings.rpc_url, commitment=settings.commitment)

    return _solana_client

