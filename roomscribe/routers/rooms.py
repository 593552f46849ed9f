import logging

from fastapi import APIRouter, HTTPException, WebSocket, WebSocketDisconnect
from pydantic import BaseModel, ConfigDict, Field

from roomscribe.services.membership import RoomHub


class JoinRoomRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    room_name: str = Field(..., min_length=1, alias="roomName")


def create_rooms_router(hub: RoomHub) -> APIRouter:
    router = APIRouter(tags=["rooms"])
    logger = logging.getLogger("roomscribe.api.rooms")

    @router.post("/api/rooms/join")
    def join_room(payload: JoinRoomRequest) -> dict:
        room_name = payload.room_name.strip()
        if not room_name:
            raise HTTPException(status_code=400, detail="roomName is required")
        credential = hub.issue_credential(room_name)
        logger.info("Credential issued: room=%s", room_name)
        return {"token": credential.token}

    @router.get("/api/rooms")
    def list_rooms() -> dict:
        return {
            "rooms": [
                {"name": name, "participants": hub.room(name).participant_identities()}
                for name in hub.rooms()
            ]
        }

    @router.websocket("/ws/rooms/{room_name}/participants/{identity}")
    async def participant_audio(websocket: WebSocket, room_name: str, identity: str, channels: int = 1) -> None:
        """Remote participant feed: binary frames are int16 PCM; text "mute"/"unmute" toggles the track."""
        room = hub.room(room_name)
        if identity in room.participant_identities():
            await websocket.close(code=4409)
            return
        await websocket.accept()
        room.connect_participant(identity)
        room.publish_audio(identity)
        frames = 0
        try:
            while True:
                message = await websocket.receive()
                if message["type"] == "websocket.disconnect":
                    break
                data = message.get("bytes")
                if data:
                    frames += 1
                    room.push_audio(identity, data, channels)
                    continue
                command = (message.get("text") or "").strip().lower()
                if command == "mute":
                    room.unpublish_audio(identity)
                elif command == "unmute":
                    room.publish_audio(identity)
        except WebSocketDisconnect:
            pass
        finally:
            room.disconnect_participant(identity)
            hub.discard_if_idle(room_name)
            logger.info("Participant feed closed: %s/%s frames=%d", room_name, identity, frames)

    return router
