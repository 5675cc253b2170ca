"""Upload queue status endpoints.

Endpoints:
    GET /uploads/status: Whole-queue snapshot (backlog, active, counters)
    GET /uploads/status/{user_id}: Per-user counts
    GET /uploads/items/{item_id}: A single live or recently finished item

The queue instance is created by the application lifespan and kept on
``app.state.upload_queue``; nothing here touches a module-level global.
"""
from fastapi import APIRouter, Depends, HTTPException, Request

from .queue import UploadQueue
from .schemas import ItemView, QueueStatus, UserStatus

router = APIRouter(prefix="/uploads", tags=["uploads"])


def get_upload_queue(request: Request) -> UploadQueue:
    queue = getattr(request.app.state, "upload_queue", None)
    if queue is None:
        raise HTTPException(status_code=503, detail="Upload queue is not running")
    return queue


@router.get("/status", response_model=QueueStatus)
async def queue_status(queue: UploadQueue = Depends(get_upload_queue)) -> QueueStatus:
    return queue.get_status()


@router.get("/status/{user_id}", response_model=UserStatus)
async def user_status(user_id: str, queue: UploadQueue = Depends(get_upload_queue)) -> UserStatus:
    return queue.get_user_status(user_id)


@router.get("/items/{item_id}", response_model=ItemView)
async def item_detail(item_id: str, queue: UploadQueue = Depends(get_upload_queue)) -> ItemView:
    item = queue.get_item(item_id)
    if item is None:
        raise HTTPException(status_code=404, detail=f"Upload item {item_id} not found")
    return item.to_view()
