import json
import logging
from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from fastapi.responses import StreamingResponse
from typing import Any, Dict, List, Optional

from ...agents.agent_interface import ArenaAction
from ...competition.manager import SessionManager
from ...config import config
from ...data.event_bus import StreamMessage
from ...data.events import EventType
from .models import (
    ControlResponse,
    RankingResponse,
    SessionCreate,
    SessionCreated,
    SessionListItem,
    StrategyExtract,
    StrategyResponse,
)

logger = logging.getLogger(__name__)

router = APIRouter()


def get_manager(request: Request) -> SessionManager:
    """Dependency returning the process-wide SessionManager built by create_app"""
    manager = getattr(request.app.state, "manager", None)
    if manager is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Arena is not initialized"
        )
    return manager


def format_sse(message: StreamMessage) -> str:
    """Render one stream message as a server-sent event frame."""
    if message.kind == "event":
        name = message.data.type.value
        data = message.data.to_dict()
    elif message.kind == "event_replay":
        name = "event_replay"
        data = [event.to_dict() for event in message.data]
    else:
        name = message.kind
        data = message.data
    return f"event: {name}\ndata: {json.dumps(data, default=str)}\n\n"


@router.post("/session", response_model=SessionCreated, status_code=status.HTTP_201_CREATED)
async def create_session(
    body: SessionCreate,
    manager: SessionManager = Depends(get_manager)
):
    """Create a session and generate its roster"""
    handle = await manager.create_session(body.to_config(config.default_model))
    return SessionCreated(
        session_id=handle.session_id,
        agent_ids=list(handle.agent_ids),
        status=manager.status.value,
        roster=manager.roster_intro,
    )


@router.post("/session/start", response_model=ControlResponse)
async def start_session(manager: SessionManager = Depends(get_manager)):
    changed = await manager.start()
    return ControlResponse(changed=changed, status=manager.status.value, session_id=manager.session_id)


@router.post("/session/pause", response_model=ControlResponse)
async def pause_session(manager: SessionManager = Depends(get_manager)):
    changed = await manager.pause()
    return ControlResponse(changed=changed, status=manager.status.value, session_id=manager.session_id)


@router.post("/session/resume", response_model=ControlResponse)
async def resume_session(manager: SessionManager = Depends(get_manager)):
    changed = await manager.resume()
    return ControlResponse(changed=changed, status=manager.status.value, session_id=manager.session_id)


@router.post("/session/stop")
async def stop_session(manager: SessionManager = Depends(get_manager)):
    """Stop the session and return its final summary"""
    summary = await manager.stop()
    return summary.to_dict()


@router.get("/status")
async def get_status(manager: SessionManager = Depends(get_manager)):
    return manager.get_status_snapshot()


@router.get("/agents")
async def get_agents(manager: SessionManager = Depends(get_manager)) -> List[Dict[str, Any]]:
    return [state.to_dict() for state in manager.get_agent_snapshots()]


@router.get("/agents/{agent_id}")
async def get_agent(
    agent_id: str,
    positions: int = Query(20, ge=0, le=100),
    manager: SessionManager = Depends(get_manager)
):
    """Agent config and state with its most recent closed positions"""
    detail = await manager.get_agent_detail(agent_id, positions)
    if detail is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Agent not found")
    return detail.to_dict()


@router.get("/agents/{agent_id}/log")
async def get_agent_log(
    agent_id: str,
    action: Optional[str] = Query(None, alias="type"),
    limit: int = Query(50, ge=1, le=100),
    offset: int = Query(0, ge=0),
    manager: SessionManager = Depends(get_manager)
):
    """Decision log, newest first; ``type`` filters by action, ``all`` or absent for every action"""
    try:
        action_filter = None if action in (None, "all") else ArenaAction(action)
    except ValueError:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=f"Unknown action {action!r}"
        ) from None
    page = await manager.get_agent_log(agent_id, action_filter, limit, offset)
    if page is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Agent not found")
    return page.to_dict()


@router.get("/rankings", response_model=List[RankingResponse])
async def get_rankings(manager: SessionManager = Depends(get_manager)):
    return [RankingResponse.from_ranking(r) for r in manager.get_rankings()]


@router.get("/events")
async def get_events(
    limit: int = Query(100, ge=1, le=500),
    event_type: Optional[EventType] = Query(None, alias="type"),
    manager: SessionManager = Depends(get_manager)
) -> List[Dict[str, Any]]:
    """Recent events from the replay buffer, newest last"""
    events = manager.get_event_buffer()
    if event_type is not None:
        events = [e for e in events if e.type == event_type]
    return [e.to_dict() for e in events[-limit:]]


@router.get("/config")
async def get_config(manager: SessionManager = Depends(get_manager)):
    session_config = manager.config
    if session_config is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="No session")
    return {
        "session": session_config.to_dict(),
        "agents": {agent_id: c.to_dict() for agent_id, c in manager.get_agent_configs().items()},
    }


@router.get("/roster")
async def get_roster(manager: SessionManager = Depends(get_manager)):
    roster = manager.roster_intro
    if roster is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="No roster generated yet")
    return roster


@router.get("/sessions", response_model=List[SessionListItem])
async def list_sessions(
    limit: int = Query(20, ge=1, le=100),
    manager: SessionManager = Depends(get_manager)
):
    return await manager.list_sessions(limit)


@router.get("/sessions/{session_id}")
async def get_session(session_id: str, manager: SessionManager = Depends(get_manager)):
    view = await manager.load_session_view(session_id)
    if view is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Session not found")
    return view.to_dict()


@router.post("/strategies", response_model=StrategyResponse, status_code=status.HTTP_201_CREATED)
async def extract_strategy(body: StrategyExtract, manager: SessionManager = Depends(get_manager)):
    """Extract and rate the strategy of an agent"""
    strategy = await manager.extract_strategy(body.agent_id)
    if strategy is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Agent not found")
    return StrategyResponse.from_strategy(strategy)


@router.get("/strategies", response_model=List[StrategyResponse])
async def list_strategies(manager: SessionManager = Depends(get_manager)):
    """Active strategies, best rated first"""
    return [StrategyResponse.from_strategy(s) for s in await manager.list_strategies()]


@router.delete("/strategies/{strategy_id}")
async def delete_strategy(strategy_id: str, manager: SessionManager = Depends(get_manager)):
    if not await manager.deactivate_strategy(strategy_id):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Strategy not found")
    return {"success": True}


@router.get("/stream")
async def stream_events(request: Request, manager: SessionManager = Depends(get_manager)):
    """
    Server-sent events: connected, agent_update, leaderboard, event_replay,
    then live events. A comment line is sent as heartbeat when idle.
    """
    stream = manager.connect_observer()
    heartbeat = manager.settings.heartbeat_seconds

    async def event_source():
        try:
            while not stream.closed:
                if await request.is_disconnected():
                    break
                message = await stream.get(timeout=heartbeat)
                if message is None:
                    yield ": heartbeat\n\n"
                    continue
                yield format_sse(message)
        finally:
            if stream.dropped:
                logger.warning(f"Observer fell behind, {stream.dropped} messages dropped")
            stream.close()

    return StreamingResponse(
        event_source(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )
