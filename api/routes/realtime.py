"""
实时事件 HTTP 路由 - 无 WebSocket 时的补拉、确认与在线状态
"""
from typing import Any, List, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel

from api.dependencies import get_current_user_id, get_realtime_service
from application.ports.realtime import Envelope
from application.services.realtime_service import RealtimeService
from core.response import Response as ApiResponse, success_response

router = APIRouter(
    prefix="/realtime",
    tags=["实时事件"]
)


class MissedEventsDTO(BaseModel):
    events: List[dict[str, Any]]
    count: int


class AckDTO(BaseModel):
    event_id: str
    acknowledged: bool


class AckAllDTO(BaseModel):
    acknowledged: int


class UnreadCountDTO(BaseModel):
    unread: int


class PresenceDTO(BaseModel):
    user_id: int
    online: bool
    connections: int


@router.get("/missed", summary="补拉未确认事件", response_model=ApiResponse[MissedEventsDTO])
async def missed_events(
    since_event_id: Optional[str] = Query(None, description="最后收到的事件ID；为空时返回全部保留事件"),
    channels: Optional[List[str]] = Query(None, description="频道列表，默认仅个人频道"),
    user_id: int = Depends(get_current_user_id),
    service: RealtimeService = Depends(get_realtime_service),
):
    """
    返回当前用户在指定频道上尚未确认的事件（按发布顺序）

    事件不会因补拉而被确认，客户端需对每个事件调用 ack。
    """
    events = await service.missed_events(user_id, since_event_id, channels)
    frames = [Envelope.from_event(e, replay=True).to_wire() for e in events]
    return success_response(data=MissedEventsDTO(events=frames, count=len(frames)))


@router.post("/events/{event_id}/ack", summary="确认事件", response_model=ApiResponse[AckDTO])
async def acknowledge_event(
    event_id: str,
    user_id: int = Depends(get_current_user_id),
    service: RealtimeService = Depends(get_realtime_service),
):
    """确认已处理事件；重复确认返回 acknowledged=false，无权访问事件频道时返回 403"""
    acked = await service.acknowledge(user_id, event_id)
    return success_response(data=AckDTO(event_id=event_id, acknowledged=acked))


@router.post("/events/ack-all", summary="全部确认", response_model=ApiResponse[AckAllDTO])
async def acknowledge_all_events(
    channels: Optional[List[str]] = Query(None, description="频道列表，默认仅个人频道"),
    user_id: int = Depends(get_current_user_id),
    service: RealtimeService = Depends(get_realtime_service),
):
    """确认指定频道上所有已保留的事件，返回本次新确认的数量"""
    count = await service.acknowledge_all(user_id, channels)
    return success_response(data=AckAllDTO(acknowledged=count))


@router.get("/unread-count", summary="未确认事件数", response_model=ApiResponse[UnreadCountDTO])
async def unread_count(
    user_id: int = Depends(get_current_user_id),
    service: RealtimeService = Depends(get_realtime_service),
):
    return success_response(data=UnreadCountDTO(unread=service.unread_count(user_id)))


@router.get("/presence/{target_user_id}", summary="用户在线状态", response_model=ApiResponse[PresenceDTO])
async def presence(
    target_user_id: int,
    user_id: int = Depends(get_current_user_id),
    service: RealtimeService = Depends(get_realtime_service),
):
    return success_response(data=PresenceDTO(**service.presence(target_user_id)))


@router.get("/stats", summary="连接与投递统计")
async def stats(
    user_id: int = Depends(get_current_user_id),
    service: RealtimeService = Depends(get_realtime_service),
):
    return success_response(data=service.stats())
