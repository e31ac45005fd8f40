"""
Transaction confirmation polling.

Used by the claim workflow to decide whether a player-submitted transfer
has landed. The budget is small and fixed: a status check, one delayed
re-check, then a delayed lookup of the transaction itself.
"""

import asyncio
import logging
from typing import Optional

from chum_rewards.config import get_settings
from chum_rewards.services.solana_client import SolanaClient, get_solana_client

logger = logging.getLogger(__name__)

CONFIRMED_STATUSES = ("confirmed", "finalized")


class TransactionConfirmer:
    """Polls the RPC for a signature's confirmation."""

    def __init__(
        self,
        solana_client: Optional[SolanaClient] = None,
        retry_delay: Optional[float] = None,
        fallback_delay: Optional[float] = None
    ):
        settings = get_settings()
        self.solana_client = solana_client if solana_client is not None else get_solana_client()
        self.retry_delay = settings.confirm_retry_delay_seconds if retry_delay is None else retry_delay
        self.fallback_delay = settings.confirm_fallback_delay_seconds if fallback_delay is None else fallback_delay

    async def is_confirmed(self, signature: str) -> bool:
        """
        Check whether signature reached confirmed/finalized commitment.

        Args:
            signature: Transaction signature

        Returns:
            True if confirmed within the polling budget, False otherwise
        """
        status = await self.solana_client.get_signature_status(signature)
        if status in CONFIRMED_STATUSES:
            return True

        await asyncio.sleep(self.retry_delay)
        status = await self.solana_client.get_signature_status(signature)
        if status in CONFIRMED_STATUSES:
            return True

        # Status lookups can lag; fall back to fetching the transaction
        await asyncio.sleep(self.fallback_delay)
        transaction = await self.solana_client.get_transaction(signature)
        if transaction is not None and not transaction.get("err"):
            logger.info(f"Transaction {signature[:20]}... confirmed via getTransaction fallback")
            return True

        logger.warning(f"Transaction not confirmed yet: {signature[:20]}... (last status: {status})")
        return False

    async def lookup(self, signature: str) -> Optional[str]:
        """
        Single status lookup with no polling.

        Returns:
            "processed", "confirmed", "finalized", "failed" or None (unknown)

        Raises:
            Exception: the RPC lookup itself failed
        """
        return await self.solana_client.find_signature_status(signature)


#global transaction confirmer instance
_transaction_confirmer: Optional[TransactionConfirmer] = None


def get_transaction_confirmer() -> TransactionConfirmer:
    """
    get or create the global transaction confirmer instance

    Returns:
        TransactionConfirmer instance
    """
    global _transaction_confirmer

    if _transaction_confirmer is None:
        _transaction_confirmer = TransactionConfirmer()

    return _transaction_confirmer
