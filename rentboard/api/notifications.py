from fastapi import APIRouter, Depends

from ..context import MarketplaceContext
from ..core.security import get_session_context

router = APIRouter(prefix="/api/notifications", tags=["notifications"])


@router.get("", response_model=list[dict])
async def drain_notifications(context: MarketplaceContext = Depends(get_session_context)):
  return [
    {"role": toast.role, "title": toast.title, "message": toast.message, "createdAt": toast.createdAt}
    for toast in context.notifier.drain()
  ]
