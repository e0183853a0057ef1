"""Content routes — every create spends exactly one token."""

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from tokenledger.db.session import get_db
from tokenledger.schemas.ledger import ContentCreate, ContentCreated, ContentDeleted, ContentList, ContentOut
from tokenledger.services.auth_service import CurrentUser, get_current_user
from tokenledger.services.ledger_service import debit_and_create_content, delete_content, list_content

router = APIRouter(prefix="/api/content", tags=["content"])


@router.get("", response_model=ContentList)
async def get_content(
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    items = await list_content(db, user.user_id)
    return ContentList(content=[ContentOut.model_validate(item) for item in items])


@router.post("", response_model=ContentCreated)
async def create_content(
    body: ContentCreate,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    item, remaining = await debit_and_create_content(db, user.user_id, body.content, user.display_name)
    return ContentCreated(content=ContentOut.model_validate(item), remaining_tokens=remaining)


@router.delete("/{content_id}", response_model=ContentDeleted)
async def remove_content(
    content_id: int,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    item = await delete_content(db, content_id, user.user_id)
    return ContentDeleted(deleted_content=ContentOut.model_validate(item))
