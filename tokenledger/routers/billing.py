"""Stripe checkout and customer-portal routes."""

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from tokenledger.db.session import get_db
from tokenledger.schemas.billing import CheckoutOut, CheckoutRequest, PortalOut
from tokenledger.services.auth_service import CurrentUser, get_current_user
from tokenledger.services.billing_service import create_checkout_session, create_portal_session

router = APIRouter(prefix="/api/stripe", tags=["billing"])


@router.post("/checkout", response_model=CheckoutOut)
async def billing_checkout(
    body: CheckoutRequest,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    session = await create_checkout_session(db, user, body.price_id)
    return CheckoutOut(session_id=session.id, url=session.url)


@router.post("/portal", response_model=PortalOut)
async def billing_portal(
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    return PortalOut(url=await create_portal_session(db, user.user_id))
