"""
Claim workflow service.

Claims are a two-phase commit driven by on-chain confirmation, because the
transfer itself is signed and submitted by the player:

1. Build: re-verify the player's holdings, resolve the amount and hand back
   an unsigned vault -> player transfer. The ledger is not touched.
   (Co-sign: once the player has signed, the authority adds its signature.)
2. Confirm: poll for the submitted signature; only a confirmed transfer is
   applied to the ledger. An unconfirmed one leaves the ledger as it was and
   the caller retries later.

Co-signing is what lets a transfer land, so it is also where pending rewards
are reserved: a wallet's co-signed claims never add up to more than it has
pending. A co-signed claim stays reserved until it is seen on-chain or its
blockhash lifetime has passed without it landing. Building a new claim
supersedes the wallet's earlier claims that were never co-signed.
"""

import base64
import logging
import math
from collections import OrderedDict
from typing import Any, Dict, List, Optional

from solders.signature import Signature

from chum_rewards.config import Settings, get_settings
from chum_rewards.errors import (
    IneligibleError,
    InsufficientPendingError,
    NotFoundError,
    UnconfirmedError,
    ValidationError,
    VaultError,
)
from chum_rewards.records import ClaimRecord, ClaimStatus, PlayerRecord, new_session_id, now_ms, short_wallet
from chum_rewards.services.balances import BalanceService, get_balance_service
from chum_rewards.services.ledger_store import LedgerStore, get_ledger_store
from chum_rewards.services.reward_ledger import EPSILON, RewardLedger, get_reward_ledger, resolve_claim_amount
from chum_rewards.services.token_accounts import is_valid_solana_address
from chum_rewards.services.transaction_builder import TransactionBuilder, get_transaction_builder
from chum_rewards.services.transaction_confirmer import (
    CONFIRMED_STATUSES,
    TransactionConfirmer,
    get_transaction_confirmer,
)
from chum_rewards.services.vault import VaultService, get_vault_service

logger = logging.getLogger(__name__)

CLAIMS_COLLECTION = "claims"
EXPLORER_TX_URL = "https://solscan.io/tx/{signature}"

# Claims that may still move tokens
OUTSTANDING_STATUSES = (ClaimStatus.BUILT, ClaimStatus.COSIGNED)
# Recently finished claims kept in memory for repeat lookups
FINISHED_CACHE_SIZE = 1000


def to_raw_amount(amount: float, decimals: int) -> int:
    """Convert ui units to the token's smallest unit, rounding down."""
    # round() first so 0.3 * 10**6 does not floor to 299999
    return int(math.floor(round(amount * (10 ** decimals), 6)))


class ClaimWorkflow:
    """
    Orchestrates claim build, co-sign and confirmation.

    Outstanding claims are kept in memory (and persisted under
    claims/<claimId>) so a confirmation can be matched to its amount and
    applied at most once. Final claims move to a bounded cache of recent
    ones; older lookups read them back from the store.
    """

    def __init__(
        self,
        store: Optional[LedgerStore] = None,
        ledger: Optional[RewardLedger] = None,
        balance_service: Optional[BalanceService] = None,
        vault: Optional[VaultService] = None,
        transaction_builder: Optional[TransactionBuilder] = None,
        confirmer: Optional[TransactionConfirmer] = None,
        settings: Optional[Settings] = None
    ):
        self.settings = settings if settings is not None else get_settings()
        self.store = store if store is not None else get_ledger_store()
        self.ledger = ledger if ledger is not None else get_reward_ledger()
        self.balance_service = balance_service if balance_service is not None else get_balance_service()
        self.vault = vault if vault is not None else get_vault_service()
        self.transaction_builder = transaction_builder if transaction_builder is not None else get_transaction_builder()
        self.confirmer = confirmer if confirmer is not None else get_transaction_confirmer()
        self._claims: Dict[str, ClaimRecord] = {}
        self._claims_by_digest: Dict[str, str] = {}
        self._finished: "OrderedDict[str, ClaimRecord]" = OrderedDict()

    def outstanding_count(self) -> int:
        return len(self._claims)

    async def get_claim(self, claim_id: str) -> Optional[ClaimRecord]:
        claim = self._claims.get(claim_id)
        if claim is None:
            claim = self._finished.get(claim_id)
        if claim is not None:
            return claim
        data = await self.store.store.load(f"{CLAIMS_COLLECTION}/{claim_id}")
        if not data:
            return None
        claim = ClaimRecord.from_document(data)
        if claim.status in OUTSTANDING_STATUSES:
            self._remember(claim)
        return claim

    def _remember(self, claim: ClaimRecord) -> None:
        self._claims[claim.claim_id] = claim
        if claim.message_digest:
            self._claims_by_digest[claim.message_digest] = claim.claim_id

    def _forget(self, claim: ClaimRecord) -> None:
        self._claims.pop(claim.claim_id, None)
        if claim.message_digest and self._claims_by_digest.get(claim.message_digest) == claim.claim_id:
            del self._claims_by_digest[claim.message_digest]
        self._finished[claim.claim_id] = claim
        self._finished.move_to_end(claim.claim_id)
        while len(self._finished) > FINISHED_CACHE_SIZE:
            self._finished.popitem(last=False)

    def _save_claim(self, claim: ClaimRecord) -> None:
        """Persist a claim; final claims move to the recent cache."""
        if claim.status in OUTSTANDING_STATUSES:
            self._remember(claim)
        else:
            self._forget(claim)
        self.store.schedule(f"{CLAIMS_COLLECTION}/{claim.claim_id}", claim.to_document())

    def _claim_for_signature(self, signature: str) -> Optional[ClaimRecord]:
        for claim in self._claims.values():
            if claim.signature == signature:
                return claim
        return None

    def outstanding(self, wallet: str) -> List[ClaimRecord]:
        return [c for c in self._claims.values() if c.wallet == wallet and c.status in OUTSTANDING_STATUSES]

    def reserved_amount(self, wallet: str, exclude: Optional[str] = None) -> float:
        """Pending $CHUM held by the wallet's co-signed, unconfirmed claims."""
        return sum(
            c.amount for c in self.outstanding(wallet)
            if c.status == ClaimStatus.COSIGNED and c.claim_id != exclude
        )

    async def load_outstanding(self) -> int:
        """
        Reload built and co-signed claims from the store.

        Returns:
            Number of outstanding claims loaded
        """
        try:
            documents = await self.store.store.load_collection(CLAIMS_COLLECTION)
        except Exception as e:
            logger.error(f"Could not load outstanding claims: {e}", exc_info=True)
            return 0

        loaded = 0
        for data in documents.values():
            if not isinstance(data, dict):
                continue
            claim = ClaimRecord.from_document(data)
            if claim.status in OUTSTANDING_STATUSES:
                self._remember(claim)
                loaded += 1
        logger.info(f"Loaded {loaded} outstanding claims")
        return loaded

    def expire_stale(self, at: Optional[int] = None) -> int:
        """
        Expire built claims whose blockhash lifetime has passed.

        Co-signed claims are left alone; only a chain lookup may release them.

        Returns:
            Number of claims expired
        """
        at = at if at is not None else now_ms()
        stale = [c for c in self._claims.values() if c.status == ClaimStatus.BUILT and c.is_expired(at)]
        for claim in stale:
            claim.status = ClaimStatus.EXPIRED
            self._save_claim(claim)
        if stale:
            logger.info(f"Expired {len(stale)} unsigned claims")
        return len(stale)

    async def reconcile(self, wallet: str) -> None:
        """
        Settle the wallet's co-signed claims against the chain.

        A claim seen confirmed is applied to the ledger. One past its expiry
        that the cluster has no record of (or that failed) is expired and its
        reservation released. Anything else, including a failed lookup, stays
        reserved.
        """
        for claim in self.outstanding(wallet):
            if claim.status != ClaimStatus.COSIGNED or not claim.signature:
                continue
            try:
                status = await self.confirmer.lookup(claim.signature)
            except Exception as e:
                logger.warning(f"Status lookup for claim {claim.claim_id} failed, keeping it reserved: {e}")
                continue

            if status in CONFIRMED_STATUSES:
                logger.info(f"Co-signed claim {claim.claim_id} landed; applying it")
                await self._apply_confirmed(claim, claim.signature)
            elif claim.is_expired() and status in (None, "failed"):
                logger.info(f"Co-signed claim {claim.claim_id} expired without landing ({status})")
                claim.status = ClaimStatus.EXPIRED
                self._save_claim(claim)

    async def build_claim(self, wallet: str, requested_amount: Optional[float] = None) -> Dict[str, Any]:
        """
        Build an unsigned claim transaction for a player's pending rewards.

        Args:
            wallet: Player wallet
            requested_amount: Partial claim amount (None = everything pending
                that is not reserved by a co-signed claim)

        Returns:
            Dict with claimId, claimAmount, transaction (base64), blockhash,
            lastValidBlockHeight

        Raises:
            ValidationError, VaultError, NotFoundError, InsufficientPendingError,
            IneligibleError
        """
        if not is_valid_solana_address(wallet):
            raise ValidationError("Invalid wallet address", code="INVALID_WALLET", wallet=wallet)

        authority = self.vault.authority
        if authority is None:
            raise VaultError(
                "Server reward authority not configured. Contact admin.",
                code="AUTHORITY_NOT_CONFIGURED",
                status_code=500
            )

        record = await self.store.get(wallet)
        if record is None:
            raise NotFoundError("No pending rewards to claim", code="PLAYER_NOT_FOUND", pendingRewards=0)

        # Holdings are re-checked on every claim
        balance = await self.balance_service.get_comprehensive_token_balance(wallet)
        required = self.settings.min_hold_requirement
        if balance < required:
            raise IneligibleError(
                f"Need at least {required:,.0f} $CHUM to claim rewards",
                balance=balance,
                required=required,
                pendingRewards=round(record.pending_rewards, 4)
            )

        self.expire_stale()
        await self.reconcile(wallet)

        async with self.store.lock(wallet):
            record = await self.store.get(wallet)
            amount = self._resolve_available(record, requested_amount)

        vault_account = await self.vault.get_vault_account()
        if vault_account is None:
            raise VaultError(
                "Reward vault has no $CHUM tokens. Admin needs to fund it.",
                code="VAULT_NOT_FUNDED",
                status_code=500,
                authorityWallet=str(authority.pubkey())
            )

        raw_amount = to_raw_amount(amount, vault_account.decimals)
        if raw_amount <= 0:
            raise ValidationError(
                f"Claim amount {amount} is below the token's smallest unit",
                code="AMOUNT_TOO_SMALL",
                claimAmount=amount
            )
        if vault_account.raw_balance < raw_amount:
            raise VaultError(
                f"Vault only has {vault_account.balance:.4f} $CHUM, need {amount:.4f}",
                code="VAULT_INSUFFICIENT",
                status_code=500,
                vaultBalance=vault_account.balance
            )

        logger.info(f"Building claim TX: {amount:.4f} $CHUM ({raw_amount} raw, {vault_account.decimals} decimals) "
                    f"from {vault_account.address} to {short_wallet(wallet)}")

        built = await self.transaction_builder.build_claim_transaction(
            vault_account=vault_account,
            authority=authority.pubkey(),
            player_wallet=wallet,
            mint=self.settings.chum_mint,
            raw_amount=raw_amount
        )

        claim = ClaimRecord(
            claim_id=new_session_id("claim"),
            wallet=wallet,
            amount=amount,
            raw_amount=raw_amount,
            message_digest=built["message_digest"],
            expires_at=now_ms() + int(self.settings.claim_ttl_seconds * 1000)
        )

        for previous in self.outstanding(wallet):
            if previous.status == ClaimStatus.BUILT:
                logger.info(f"Claim {previous.claim_id} superseded by {claim.claim_id}")
                previous.status = ClaimStatus.SUPERSEDED
                self._save_claim(previous)
        self._save_claim(claim)

        # Ledger is updated only in confirm_claim, after the transfer lands
        logger.info(f"Claim TX built (unsigned): {claim.claim_id} | {amount:.4f} $CHUM -> {short_wallet(wallet)}")

        return {
            "claimId": claim.claim_id,
            "claimAmount": round(amount, 4),
            "rawAmount": raw_amount,
            "transaction": built["transaction"],
            "blockhash": built["blockhash"],
            "lastValidBlockHeight": built["last_valid_block_height"],
            "message": f"Sign the transaction to claim {amount:.4f} $CHUM",
        }

    def _resolve_available(self, record: PlayerRecord, requested_amount: Optional[float]) -> float:
        reserved = self.reserved_amount(record.wallet)
        if reserved > EPSILON and record.pending_rewards - reserved <= EPSILON:
            raise InsufficientPendingError(
                f"A claim of {reserved:.4f} $CHUM is still being processed",
                code="CLAIM_IN_PROGRESS",
                status_code=409,
                reservedAmount=round(reserved, 4),
                pendingRewards=round(record.pending_rewards, 4)
            )
        return resolve_claim_amount(record, requested_amount, reserved=reserved)

    async def cosign_claim(self, signed_transaction: str, claim_id: Optional[str] = None) -> str:
        """
        Add the authority signature to a player-signed claim transaction.

        Only transactions built by build_claim are co-signed, and only while
        the claim is outstanding, unexpired and covered by the wallet's
        pending rewards net of its other co-signed claims.

        Returns:
            Base64 fully-signed transaction
        """
        authority = self.vault.authority
        if authority is None:
            raise VaultError("Authority not configured", code="AUTHORITY_NOT_CONFIGURED", status_code=500)

        try:
            transaction = self.transaction_builder.deserialize_transaction(base64.b64decode(signed_transaction))
        except Exception as e:
            raise ValidationError(f"Malformed transaction: {e}", code="INVALID_TRANSACTION")

        digest = self.transaction_builder.message_digest(transaction)
        claim = await self.get_claim(claim_id) if claim_id else None
        if claim is None and digest in self._claims_by_digest:
            claim = self._claims.get(self._claims_by_digest[digest])
        if claim is None or claim.message_digest != digest:
            raise ValidationError("Transaction does not match a pending claim", code="UNKNOWN_CLAIM_TRANSACTION")
        if claim.status == ClaimStatus.CONFIRMED:
            raise ValidationError("Claim already confirmed", code="CLAIM_ALREADY_CONFIRMED", claimId=claim.claim_id)
        if claim.status not in OUTSTANDING_STATUSES or claim.is_expired():
            raise ValidationError(
                "Claim is no longer valid, build a new one",
                code="CLAIM_NOT_PENDING",
                claimId=claim.claim_id,
                status=ClaimStatus.EXPIRED.value if claim.is_expired() else claim.status.value
            )

        player_signature = transaction.signatures[0]
        if player_signature == Signature.default():
            raise ValidationError("Transaction is not signed by the player", code="PLAYER_SIGNATURE_MISSING")

        async with self.store.lock(claim.wallet):
            record = await self.store.get(claim.wallet)
            pending = record.pending_rewards if record else 0.0
            reserved = self.reserved_amount(claim.wallet, exclude=claim.claim_id)
            if claim.amount > pending - reserved + EPSILON:
                raise InsufficientPendingError(
                    f"Claim of {claim.amount:.4f} $CHUM exceeds {max(0.0, pending - reserved):.4f} available",
                    code="CLAIM_IN_PROGRESS",
                    status_code=409,
                    claimId=claim.claim_id,
                    reservedAmount=round(reserved, 4),
                    pendingRewards=round(pending, 4)
                )
            fully_signed = self.transaction_builder.cosign(signed_transaction, authority)
            claim.status = ClaimStatus.COSIGNED
            claim.signature = str(player_signature)
            self._save_claim(claim)

        logger.info(f"Authority co-signed claim transaction {claim.claim_id}")
        return fully_signed

    async def confirm_claim(
        self,
        wallet: str,
        claim_id: Optional[str],
        signature: str,
        amount: Optional[float] = None
    ) -> Dict[str, Any]:
        """
        Apply a claim to the ledger once its transfer is confirmed on-chain.

        The amount applied is the built claim's amount when the claim id is
        known (or the signature is a co-signed claim's), else the amount given,
        else everything pending. An amount above what is pending, net of
        co-signed claims, is rejected. Confirming a claim (or signature) a
        second time changes nothing.

        Raises:
            UnconfirmedError: not confirmed within the polling budget (retry later)
            InsufficientPendingError: amount exceeds what is pending
        """
        if not wallet or not signature:
            raise ValidationError("Missing playerWallet or signature", code="MISSING_FIELDS")

        claim = await self.get_claim(claim_id) if claim_id else None
        if claim is None:
            claim = self._claim_for_signature(signature)
            if claim is not None:
                claim_id = claim.claim_id
        if claim is not None:
            if claim.wallet != wallet:
                raise ValidationError("Claim belongs to a different wallet", code="CLAIM_WALLET_MISMATCH", claimId=claim_id)
            if claim.status == ClaimStatus.CONFIRMED:
                logger.info(f"Claim {claim_id} already confirmed; ignoring repeat confirmation")
                return await self._confirm_result(wallet, claim_id, signature, claim.amount, applied=False)
            if claim.status not in OUTSTANDING_STATUSES:
                raise ValidationError(
                    f"Claim is {claim.status.value}, build a new one",
                    code="CLAIM_NOT_PENDING",
                    claimId=claim_id,
                    status=claim.status.value
                )
            if claim.signature and claim.signature != signature:
                raise ValidationError(
                    "Signature does not belong to this claim's transaction",
                    code="SIGNATURE_MISMATCH",
                    claimId=claim_id
                )
        else:
            record = await self.store.get(wallet)
            if record is None:
                raise NotFoundError(f"Player {short_wallet(wallet)} not found", code="PLAYER_NOT_FOUND")
            if self.ledger.is_claim_applied(record, claim_id, signature):
                return await self._confirm_result(wallet, claim_id, signature, amount, applied=False)
            amount = resolve_claim_amount(record, amount, reserved=self.reserved_amount(wallet))

        logger.info(f"Confirming claim: {claim_id} | sig: {signature[:20]}...")

        if not await self.confirmer.is_confirmed(signature):
            raise UnconfirmedError(
                "Transaction not confirmed yet. It may still be processing, check your wallet.",
                signature=signature,
                claimId=claim_id
            )

        if claim is not None:
            if amount is not None and abs(amount - claim.amount) > EPSILON:
                logger.warning(f"Claim {claim_id}: confirm amount {amount} differs from built amount {claim.amount}")
            amount = claim.amount
            applied = await self._apply_confirmed(claim, signature)
        else:
            applied = await self.ledger.mark_claimed(wallet, amount, claim_id, signature)

        if applied:
            logger.info(f"Claim confirmed! {amount:.4f} $CHUM -> {short_wallet(wallet)} | sig: {signature[:20]}...")

        return await self._confirm_result(wallet, claim_id, signature, amount, applied)

    async def _apply_confirmed(self, claim: ClaimRecord, signature: str) -> bool:
        applied = await self.ledger.mark_claimed(claim.wallet, claim.amount, claim.claim_id, signature)
        claim.status = ClaimStatus.CONFIRMED
        claim.confirmed_at = now_ms()
        claim.signature = signature
        self._save_claim(claim)
        return applied

    async def _confirm_result(
        self,
        wallet: str,
        claim_id: Optional[str],
        signature: str,
        amount: Optional[float],
        applied: bool
    ) -> Dict[str, Any]:
        record = await self.store.get(wallet)
        explorer_url = EXPLORER_TX_URL.format(signature=signature)
        return {
            "success": True,
            "claimId": claim_id,
            "signature": signature,
            "claimAmount": round(amount or 0, 4),
            "alreadyConfirmed": not applied,
            "remainingPending": round(record.pending_rewards if record else 0, 4),
            "totalClaimed": round(record.total_claimed if record else 0, 4),
            "totalEarned": round(record.total_earned if record else 0, 4),
            "explorerUrl": explorer_url,
            "message": f"Successfully claimed! View on Solscan: {explorer_url}",
        }


#global claim workflow instance
_claim_workflow: Optional[ClaimWorkflow] = None


def get_claim_workflow() -> ClaimWorkflow:
    """
    Get or create the global claim workflow instance.

    Returns:
        ClaimWorkflow instance
    """
    global _claim_workflow

    if _claim_workflow is None:
        _claim_workflow = ClaimWorkflow()

    return _claim_workflow
