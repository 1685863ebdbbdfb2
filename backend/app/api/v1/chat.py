from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from app.database import get_db
from app.dependencies import get_current_user
from app.models.user import User
from app.schemas.chat import ChatContext
from app.services.chat_context import build_chat_context

router = APIRouter()


@router.get("/context", response_model=ChatContext)
async def get_chat_context(
    current_view: str | None = Query(None),
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Accounts, hierarchy and 30-day campaign summaries for the AI assistant."""
    return await build_chat_context(db, user.id, current_view)
