"""Credit balance and transaction API endpoints."""

import logging
from typing import List

from fastapi import APIRouter, Depends, Query

from app.context import AppContext, get_context, get_current_user
from app.models.schemas import (
    CostResponse,
    CreditBalanceResponse,
    PurchaseRequest,
    TransactionResponse,
)
from app.services.credit_ledger import calculate_credit_cost

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("/balance", response_model=CreditBalanceResponse)
async def get_balance(
    user_id: str = Depends(get_current_user),
    ctx: AppContext = Depends(get_context),
):
    return CreditBalanceResponse.model_validate(await ctx.ledger.get_balance(user_id))


@router.get("/history", response_model=List[TransactionResponse])
async def get_history(
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
    user_id: str = Depends(get_current_user),
    ctx: AppContext = Depends(get_context),
):
    transactions = await ctx.ledger.history(user_id, limit=limit, offset=offset)
    return [TransactionResponse.model_validate(tx) for tx in transactions]


@router.post("/purchase", response_model=CreditBalanceResponse)
async def purchase_credits(
    request: PurchaseRequest,
    user_id: str = Depends(get_current_user),
    ctx: AppContext = Depends(get_context),
):
    """
    Record a credit purchase.

    Payment capture happens upstream; this only books the credits.
    """
    balance = await ctx.ledger.credit(user_id, request.amount, description=request.description)
    logger.info(f"User {user_id} purchased {request.amount} credits")
    return CreditBalanceResponse.model_validate(balance)


@router.get("/cost", response_model=CostResponse)
async def estimate_cost(
    duration: float = Query(..., ge=0, description="Video duration in seconds"),
    clips: int = Query(..., ge=0, description="Number of clips"),
):
    return CostResponse(duration=duration, clips=clips, cost=calculate_credit_cost(duration, clips))
