import logging
import time

from fastapi import APIRouter, HTTPException, WebSocket, WebSocketDisconnect
from pydantic import BaseModel, Field

from roomscribe.services.microphone import list_input_devices
from roomscribe.services.orchestrator import SessionStartError
from roomscribe.services.session_manager import SessionManager


class StartSessionRequest(BaseModel):
    room_name: str = Field(..., min_length=1, description="Room to join and transcribe")


def create_sessions_router(manager: SessionManager) -> APIRouter:
    router = APIRouter(tags=["sessions"])
    logger = logging.getLogger("roomscribe.api.sessions")

    def lookup(session_id: str):
        try:
            return manager.get(session_id)
        except KeyError:
            raise HTTPException(status_code=404, detail=f"Unknown session: {session_id}") from None

    @router.get("/api/audio/devices")
    def list_devices() -> list[dict]:
        try:
            return list_input_devices()
        except Exception as exc:
            logger.warning("Audio device query failed: %s", exc)
            raise HTTPException(status_code=503, detail="Audio devices unavailable") from exc

    @router.get("/api/sessions")
    def list_sessions() -> dict:
        return {"sessions": manager.list_sessions()}

    @router.post("/api/sessions")
    async def start_session(payload: StartSessionRequest) -> dict:
        start_time = time.perf_counter()
        logger.debug("start_session received: %s", payload.model_dump())
        try:
            orchestrator = await manager.start_session(payload.room_name.strip())
        except SessionStartError as exc:
            duration_ms = (time.perf_counter() - start_time) * 1000
            logger.warning("start_session failed in %.2f ms: %s", duration_ms, exc)
            raise HTTPException(status_code=502, detail=str(exc)) from exc
        duration_ms = (time.perf_counter() - start_time) * 1000
        logger.info("start_session completed in %.2f ms", duration_ms)
        return orchestrator.status()

    @router.get("/api/sessions/{session_id}")
    def session_status(session_id: str) -> dict:
        return lookup(session_id).status()

    @router.get("/api/sessions/{session_id}/transcript")
    def session_transcript(session_id: str) -> dict:
        orchestrator = lookup(session_id)
        return {
            "session_id": session_id,
            "text": orchestrator.transcript,
            "participants": orchestrator.by_participant.to_dict(),
        }

    @router.delete("/api/sessions/{session_id}")
    async def stop_session(session_id: str) -> dict:
        start_time = time.perf_counter()
        lookup(session_id)
        result = await manager.stop_session(session_id)
        duration_ms = (time.perf_counter() - start_time) * 1000
        logger.info("stop_session completed in %.2f ms", duration_ms)
        return result

    @router.websocket("/ws/sessions/{session_id}/transcript")
    async def transcript_feed(websocket: WebSocket, session_id: str) -> None:
        try:
            orchestrator = manager.get(session_id)
            broadcast = manager.broadcast(session_id)
        except KeyError:
            await websocket.close(code=4404)
            return
        await websocket.accept()
        viewer = broadcast.attach()
        logger.debug("Transcript viewer attached: session=%s viewers=%d", session_id, broadcast.viewer_count)
        try:
            await websocket.send_json({"text": orchestrator.transcript, "participant": None, "fragment": ""})
            while True:
                update = await viewer.get()
                await websocket.send_json(
                    {
                        "text": update.full_text,
                        "participant": update.fragment.participant,
                        "fragment": update.fragment.text,
                        "index": update.index,
                    }
                )
        except WebSocketDisconnect:
            pass
        finally:
            broadcast.detach(viewer)
            logger.debug("Transcript viewer detached: session=%s", session_id)

    return router
