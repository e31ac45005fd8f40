"""
Token balance service.

Answers "how many $CHUM does this wallet hold" for eligibility checks,
tournament registration and claim re-verification. Balances are summed over
every token account the owner has for the mint, across both the classic
Token program and Token-2022.

Tokens launched on pump.fun live on a bonding curve until they graduate to
an AMM pool; for those only the standard token-account balance is used.
"""

import logging
from typing import Any, Dict, Optional

import httpx
from pydantic import BaseModel
from solders.pubkey import Pubkey

from chum_rewards.config import get_settings
from chum_rewards.services.solana_client import SolanaClient, get_solana_client
from chum_rewards.services.token_accounts import TOKEN_PROGRAMS, is_valid_solana_address

logger = logging.getLogger(__name__)

PUMPFUN_COIN_API = "https://frontend-api.pump.fun/coins"


class TokenAccount(BaseModel):
    """A funded token account found for an owner/mint pair."""
    address: str
    balance: float
    raw_balance: int
    decimals: int
    program_id: str

    @property
    def address_pubkey(self) -> Pubkey:
        return Pubkey.from_string(self.address)

    @property
    def program_pubkey(self) -> Pubkey:
        return Pubkey.from_string(self.program_id)


class BalanceService:
    """
    Token balance lookups over the Solana RPC.

    All lookups degrade to 0 / None on RPC failure.
    """

    def __init__(
        self,
        solana_client: Optional[SolanaClient] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        mint: Optional[str] = None
    ):
        settings = get_settings()
        self.solana_client = solana_client if solana_client is not None else get_solana_client()
        self.http_client = http_client or httpx.AsyncClient(timeout=settings.http_timeout_seconds)
        self.mint = mint or settings.chum_mint

    async def close(self) -> None:
        await self.http_client.aclose()

    async def get_token_balance(self, owner: str, mint: Optional[str] = None) -> float:
        """
        Sum the ui balance of every token account owner holds for mint.

        Args:
            owner: Wallet address
            mint: Token mint (defaults to $CHUM)

        Returns:
            Total balance in ui units (0 if none)
        """
        mint = mint or self.mint
        total = 0.0
        for program_id in TOKEN_PROGRAMS:
            accounts = await self.solana_client.get_parsed_token_accounts(owner, program_id=program_id)
            for account in accounts:
                if account["mint"] != mint:
                    continue
                total += account["ui_amount"]
        return total

    async def check_pumpfun_token(self, mint: str) -> Dict[str, Any]:
        """
        Ask the pump.fun API whether mint is a bonding-curve token.

        Returns:
            {"is_pumpfun": bool|None, "graduated": bool|None, ...}; None values
            mean the API could not tell (timeout, 5xx, unexpected body)
        """
        unknown = {"is_pumpfun": None, "graduated": None}
        try:
            response = await self.http_client.get(
                f"{PUMPFUN_COIN_API}/{mint}",
                headers={"User-Agent": "Mozilla/5.0", "Accept": "application/json"}
            )
        except httpx.HTTPError as e:
            logger.debug(f"pump.fun lookup failed for {mint}: {e}")
            return unknown

        if response.status_code == 404:
            return {"is_pumpfun": False, "graduated": None}
        if response.status_code != 200:
            return unknown

        try:
            data = response.json()
        except ValueError:
            return unknown

        if not isinstance(data, dict) or not data.get("mint"):
            return unknown

        return {
            "is_pumpfun": True,
            "graduated": bool(data.get("raydium_pool")),
            "market_cap": float(data.get("usd_market_cap") or 0),
            "bonding_curve": data.get("bonding_curve"),
            "raydium_pool": data.get("raydium_pool"),
        }

    async def get_comprehensive_token_balance(self, wallet: str, mint: Optional[str] = None) -> float:
        """
        Best-effort balance used for every eligibility decision.

        Non-graduated bonding-curve tokens use the standard account balance.
        Otherwise the standard balance is used, falling back to a mint-filtered
        account scan when it comes back empty.

        Returns:
            Balance in ui units, 0 when nothing is found or on error
        """
        mint = mint or self.mint
        if not is_valid_solana_address(wallet) or not is_valid_solana_address(mint):
            return 0.0

        try:
            pump_info = await self.check_pumpfun_token(mint)
            if pump_info["is_pumpfun"] and not pump_info["graduated"]:
                return await self.get_token_balance(wallet, mint)

            balance = await self.get_token_balance(wallet, mint)
            if balance > 0:
                return balance

            accounts = await self.solana_client.get_parsed_token_accounts(wallet, mint=mint)
            return sum(account["ui_amount"] for account in accounts)
        except Exception as e:
            logger.error(f"Balance lookup failed for {wallet}: {e}", exc_info=True)
            return 0.0

    async def find_token_account(self, owner: str, mint: Optional[str] = None) -> Optional[TokenAccount]:
        """
        Find the owner's first funded token account for mint.

        Handles non-standard (non-ATA) accounts by scanning both token
        programs instead of deriving the ATA.

        Returns:
            TokenAccount, or None if the owner holds none of the token
        """
        mint = mint or self.mint
        for program_id in TOKEN_PROGRAMS:
            accounts = await self.solana_client.get_parsed_token_accounts(owner, program_id=program_id)
            for account in accounts:
                if account["mint"] != mint or account["amount"] <= 0:
                    continue
                return TokenAccount(
                    address=account["address"],
                    balance=account["ui_amount"],
                    raw_balance=account["amount"],
                    decimals=account["decimals"] or 6,
                    program_id=str(program_id)
                )
        return None


#global balance service instance
_balance_service: Optional[BalanceService] = None


def get_balance_service() -> BalanceService:
    """
    Get or create the global balance service instance.

    Returns:
        BalanceService instance
    """
    global _balance_service

    if _balance_service is None:
        _balance_service = BalanceService()

    return _balance_service
