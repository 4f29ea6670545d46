# app/api/sessions.py
import logging

from fastapi import APIRouter, Depends, HTTPException

from app.api.deps import get_store
from app.state.session_store import SessionStore

logger = logging.getLogger("ivr-flow-engine.api.sessions")
router = APIRouter()


@router.get("/", summary="List active sessions")
async def list_sessions(store: SessionStore = Depends(get_store)):
    sessions = await store.list()
    return {"sessions": [s.model_dump(mode="json") for s in sessions]}


@router.get("/{call_id}", summary="Get session by call_id")
async def get_session(call_id: str, store: SessionStore = Depends(get_store)):
    session = await store.get(call_id)
    if not session:
        raise HTTPException(status_code=404, detail="session not found")
    return session.model_dump(mode="json")


@router.delete("/{call_id}", summary="Drop a session")
async def delete_session(call_id: str, store: SessionStore = Depends(get_store)):
    if not await store.terminate(call_id):
        raise HTTPException(status_code=404, detail="session not found")
    logger.info("Session %s removed via API", call_id)
    return {"status": "ok", "call_id": call_id}
