# routes/api.py
import logging

from fastapi import APIRouter, Depends, HTTPException, Request

from app.errors import OperationInProgress
from app.state import SessionController
from models.session import (
    AnswerRequest,
    ConnectionConfig,
    JoinRequest,
    PingRequest,
    RemoteCursorState,
    ShareRequest,
    ToggleRequest,
)

logger = logging.getLogger("api")
router = APIRouter()


def get_controller(request: Request) -> SessionController:
    return request.app.state.controller


def _failed(controller: SessionController, action: str) -> HTTPException:
    detail = controller.last_error or f"Failed to {action}"
    return HTTPException(status_code=500, detail=detail)


@router.get("/ice_config")
async def get_ice_config(controller: SessionController = Depends(get_controller)):
    """Returns current ICE server list."""
    config = await controller.get_ice_config_state()
    logger.debug("ICE config requested")
    return config


@router.post("/ice_config")
async def update_ice_config(config: ConnectionConfig, controller: SessionController = Depends(get_controller)):
    """Replaces the ICE server list used by the next session."""
    updated_config = await controller.update_ice_config_state(config.model_dump())
    logger.info("ICE config updated")
    return updated_config


@router.post("/session/share")
async def start_sharing(params: ShareRequest, controller: SessionController = Depends(get_controller)):
    """Starts sharing the screen and returns the offer URL."""
    logger.info(f"Start sharing requested by {params.username}")
    try:
        url = await controller.start_sharing(params.username, params.microphone_enabled_on_connect)
    except OperationInProgress as e:
        raise HTTPException(status_code=409, detail=str(e))
    if url is None:
        raise _failed(controller, "start sharing")
    return {"url": url}


@router.post("/session/join")
async def join_session(params: JoinRequest, controller: SessionController = Depends(get_controller)):
    """Answers an offer URL (from the body or the clipboard) and returns the answer URL."""
    logger.info(f"Join requested by {params.username}")
    try:
        url = await controller.join_session(params.username, params.url, params.microphone_enabled_on_connect)
    except OperationInProgress as e:
        raise HTTPException(status_code=409, detail=str(e))
    if url is None:
        raise _failed(controller, "join session")
    return {"url": url}


@router.post("/session/answer")
async def accept_answer(params: AnswerRequest, controller: SessionController = Depends(get_controller)):
    """Applies the watcher's answer URL on the sharer side."""
    try:
        accepted = await controller.accept_answer(params.url)
    except OperationInProgress as e:
        raise HTTPException(status_code=409, detail=str(e))
    if not accepted:
        raise _failed(controller, "accept answer")
    return {"accepted": True}


@router.post("/session/disconnect")
async def disconnect(controller: SessionController = Depends(get_controller)):
    await controller.disconnect()
    return {"status": "disconnected"}


@router.post("/session/reset")
async def reset(controller: SessionController = Depends(get_controller)):
    await controller.reset()
    return {"status": "idle"}


@router.get("/session/status")
async def session_status(controller: SessionController = Depends(get_controller)):
    return controller.get_status()


@router.get("/session/events")
async def session_events(controller: SessionController = Depends(get_controller)):
    return {"events": controller.get_events()}


@router.post("/cursors/toggle")
async def toggle_cursors(params: ToggleRequest, controller: SessionController = Depends(get_controller)):
    manager = controller.manager
    if manager is None:
        return {"enabled": False}
    return {"enabled": manager.toggle_remote_cursors(params.enabled)}


@router.post("/cursors/update")
async def update_cursor(cursor: RemoteCursorState, controller: SessionController = Depends(get_controller)):
    manager = controller.manager
    return {"sent": manager is not None and manager.update_remote_cursor(cursor)}


@router.post("/cursors/ping")
async def ping_cursor(params: PingRequest, controller: SessionController = Depends(get_controller)):
    manager = controller.manager
    return {"sent": manager is not None and manager.ping_remote_cursor(params.id)}


@router.post("/media/microphone")
async def set_microphone(params: ToggleRequest, controller: SessionController = Depends(get_controller)):
    manager = controller.manager
    if manager is None:
        return {"enabled": False}
    manager.set_microphone_enabled(params.enabled)
    return {"enabled": manager.is_microphone_active()}


@router.post("/media/display")
async def set_display(params: ToggleRequest, controller: SessionController = Depends(get_controller)):
    manager = controller.manager
    if manager is None:
        return {"enabled": False}
    manager.set_display_stream_enabled(params.enabled)
    return {"enabled": manager.is_display_stream_active()}
