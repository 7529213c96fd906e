# app/api/v1/endpoints/upsell.py

from fastapi import APIRouter

from app.api.deps import UpsellManagerDep
from app.core.logging_setup import logger
from app.db.schemas.upsell_schemas import (
    UpsellAcceptRequest, UpsellOutcome, UpsellRefuseRequest, UpsellTokenRequest, UpsellTokenResponse,
)

router = APIRouter()


@router.post("/token", response_model=UpsellTokenResponse, summary="Issue a one-click upsell token")
async def issue_token(body: UpsellTokenRequest, manager: UpsellManagerDep):
    return await manager.issue_for_sale(body.external_reference, body.offer_slug)


@router.post("/accept", response_model=UpsellOutcome, summary="Accept the upsell (one-click charge)")
async def accept_upsell(body: UpsellAcceptRequest, manager: UpsellManagerDep):
    """
    Declines and expired links are reported in the body with `success=false`.
    Only provider outages and data-store errors produce an error status.
    """
    outcome = await manager.accept(body.token, body.chosen_item_id, body.offer_id)
    if not outcome.success:
        logger.info(f"Upsell accept not completed: {outcome.reason}")
    return outcome


@router.post("/refuse", response_model=UpsellOutcome, summary="Refuse the upsell")
async def refuse_upsell(body: UpsellRefuseRequest, manager: UpsellManagerDep):
    return await manager.refuse(body.token, body.offer_id)
