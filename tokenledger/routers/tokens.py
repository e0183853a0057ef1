"""Token balance routes."""

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from tokenledger.db.session import get_db
from tokenledger.schemas.ledger import BalanceOut, ProvisionOut
from tokenledger.services.auth_service import CurrentUser, get_current_user
from tokenledger.services.ledger_service import get_balance, provision

router = APIRouter(prefix="/api/tokens", tags=["tokens"])


@router.get("", response_model=BalanceOut)
async def token_balance(
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    return BalanceOut(token_count=await get_balance(db, user.user_id))


@router.post("/init", response_model=ProvisionOut)
async def init_tokens(
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Self-heal for users the identity webhook never reached."""
    sub, created = await provision(db, user.user_id)
    return ProvisionOut(token_count=sub.token, created=created)
