from fastapi import APIRouter, Depends, Query

from app.core.pagination import Page, clamp_page
from app.deps import get_credit_payer
from app.services import credits as credits_service
from app.services.gateway import Payer
from app.services.pricing import price_list

router = APIRouter()


@router.get("/balance")
async def credits_balance(payer: Payer = Depends(get_credit_payer)):
    """Return the current balance of the session user or API key."""
    owner = payer.owner
    balance = await credits_service.get_balance(owner)
    return {"owner_type": owner.owner_type, "credits": balance}


@router.get("/ledger")
async def credits_ledger(
    payer: Payer = Depends(get_credit_payer),
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
):
    """Return credit transactions (newest first)."""
    limit, offset = clamp_page(limit, offset)
    items, total = await credits_service.list_transactions(payer.owner, limit, offset)
    out = [
        {
            "id": str(t.id),
            "kind": t.kind,
            "amount": t.signed_amount,
            "status": t.status,
            "reason": t.reason,
            "reference_type": t.reference_type,
            "reference_id": t.reference_id,
            "failure_reason": t.failure_reason,
            "created_at": t.created_at.isoformat(),
        }
        for t in items
    ]
    return Page[dict](items=out, limit=limit, offset=offset, total=total)


@router.get("/pricing")
async def credits_pricing():
    """Credit prices of the generation routes and credit packs."""
    return price_list()
