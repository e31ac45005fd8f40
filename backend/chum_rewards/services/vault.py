"""
Reward vault.

The vault is the authority wallet's $CHUM token account. The authority
keypair comes from AUTHORITY_KEYPAIR (a JSON array secret key, as written by
solana-keygen); without it claims cannot be built or co-signed.
"""

import json
import logging
from typing import Any, Dict, Optional

from solders.keypair import Keypair
from solders.pubkey import Pubkey

from chum_rewards.config import get_settings
from chum_rewards.services.balances import BalanceService, TokenAccount, get_balance_service
from chum_rewards.services.token_accounts import get_associated_token_address

logger = logging.getLogger(__name__)


def load_authority_keypair(secret: Optional[str]) -> Optional[Keypair]:
    """
    Parse a JSON array secret key into a Keypair.

    Returns:
        Keypair, or None if unset or malformed
    """
    if not secret:
        logger.warning("AUTHORITY_KEYPAIR not set; reward claims are disabled")
        return None
    try:
        return Keypair.from_bytes(bytes(json.loads(secret)))
    except Exception as e:
        logger.error(f"Failed to load authority keypair: {e}")
        return None


class VaultService:
    """Authority keypair plus lookups of the vault's token account."""

    def __init__(
        self,
        authority: Optional[Keypair] = None,
        balance_service: Optional[BalanceService] = None,
        mint: Optional[str] = None
    ):
        settings = get_settings()
        self.authority = authority if authority is not None else load_authority_keypair(settings.authority_keypair)
        self.balance_service = balance_service if balance_service is not None else get_balance_service()
        self.mint = mint or settings.chum_mint

        if self.authority is not None:
            logger.info(f"Authority loaded: {self.authority.pubkey()}")

    @property
    def authority_pubkey(self) -> Optional[Pubkey]:
        return self.authority.pubkey() if self.authority is not None else None

    async def get_vault_account(self) -> Optional[TokenAccount]:
        """The authority's funded $CHUM token account, if any."""
        if self.authority is None:
            return None
        return await self.balance_service.find_token_account(str(self.authority.pubkey()), self.mint)

    async def get_vault_info(self) -> Dict[str, Any]:
        """
        Describe the vault for operators (where to send $CHUM, current balance).
        """
        if self.authority is None:
            return {"funded": False, "error": "Authority keypair not loaded"}

        try:
            account = await self.get_vault_account()
            standard_ata = get_associated_token_address(
                self.authority.pubkey(),
                Pubkey.from_string(self.mint)
            )
            return {
                "funded": account is not None and account.balance > 0,
                "vaultBalance": account.balance if account else 0,
                "authorityWallet": str(self.authority.pubkey()),
                "authorityAta": str(standard_ata),
                "actualTokenAccount": account.address if account else None,
                "tokenProgram": account.program_id if account else None,
                "mint": self.mint,
            }
        except Exception as e:
            logger.error(f"Error reading vault info: {e}")
            return {"funded": False, "error": str(e)}


#global vault service instance
_vault_service: Optional[VaultService] = None


def get_vault_service() -> VaultService:
    """
    Get or create the global vault service instance.

    Returns:
        VaultService instance
    """
    global _vault_service

    if _vault_service is None:
        _vault_service = VaultService()

    return _vault_service
