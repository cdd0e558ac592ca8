"""
Credits Router
Credit balance, history and (mock) purchase
"""
from fastapi import APIRouter, Depends, Query

from comicstudio.core.dependencies import get_current_account_id
from comicstudio.core.exceptions import ValidationError
from comicstudio.models.dto import (
    BalanceResponse,
    PurchaseRequest,
    PurchaseResponse,
    TransactionResponse,
)
from comicstudio.services.ledger import credit_ledger

router = APIRouter()


@router.get("", response_model=BalanceResponse)
async def get_credits(
    account_id: str = Depends(get_current_account_id),
):
    """Current credit balance"""
    balance = await credit_ledger.get_balance(account_id)
    return BalanceResponse(credits_balance=balance)


@router.get("/transactions", response_model=list[TransactionResponse])
async def get_transactions(
    limit: int = Query(10, ge=1, le=100),
    account_id: str = Depends(get_current_account_id),
):
    """Transaction history, most recent first"""
    await credit_ledger.get_balance(account_id)  # 404 for unknown accounts
    entries = await credit_ledger.list_history(account_id, limit=limit)
    return [TransactionResponse.from_entry(entry) for entry in entries]


@router.post("/purchase", response_model=PurchaseResponse)
async def purchase_credits(
    request: PurchaseRequest,
    account_id: str = Depends(get_current_account_id),
):
    """
    Purchase credits (mock)

    - No payment gateway: credits are granted directly
    """
    try:
        new_balance = await credit_ledger.purchase(account_id, request.amount)
    except ValueError as e:
        raise ValidationError(str(e))

    return PurchaseResponse(new_balance=new_balance, amount_purchased=request.amount)
