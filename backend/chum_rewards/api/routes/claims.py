"""
Claim API endpoints.

Flow for the client:
1. POST /claim-rewards to get the unsigned claim transaction
2. Sign it with the player's wallet
3. POST /cosign-claim for the authority signature, then submit it
4. POST /confirm-claim with the signature to update the ledger
"""

from fastapi import APIRouter, Depends

from chum_rewards.schemas import (
    ClaimRewardsRequest,
    ConfirmClaimRequest,
    CosignClaimRequest,
    CosignClaimResponse,
)
from chum_rewards.services.claims import ClaimWorkflow, get_claim_workflow
from chum_rewards.services.vault import VaultService, get_vault_service

router = APIRouter()


@router.post("/claim-rewards")
async def claim_rewards(
    request: ClaimRewardsRequest,
    claims: ClaimWorkflow = Depends(get_claim_workflow)
):
    """
    Build an unsigned claim transaction (player is fee payer).

    The ledger is not changed until the claim is confirmed.
    """
    result = await claims.build_claim(request.player_wallet, request.claim_amount)
    return {"success": True, **result}


@router.post("/cosign-claim", response_model=CosignClaimResponse)
async def cosign_claim(
    request: CosignClaimRequest,
    claims: ClaimWorkflow = Depends(get_claim_workflow)
):
    """Add the authority signature to a player-signed claim transaction."""
    transaction = await claims.cosign_claim(request.signed_transaction, request.claim_id)
    return CosignClaimResponse(transaction=transaction)


@router.post("/confirm-claim")
async def confirm_claim(
    request: ConfirmClaimRequest,
    claims: ClaimWorkflow = Depends(get_claim_workflow)
):
    """
    Confirm a submitted claim on-chain and apply it to the ledger.

    Returns 202 with retryable=true while the transaction is not yet
    confirmed; the ledger is untouched in that case.
    """
    return await claims.confirm_claim(
        request.player_wallet,
        request.claim_id,
        request.signature,
        request.claim_amount
    )


@router.get("/vault-info")
async def vault_info(vault: VaultService = Depends(get_vault_service)):
    """Where to send $CHUM to fund rewards, and the current vault balance."""
    return await vault.get_vault_info()
