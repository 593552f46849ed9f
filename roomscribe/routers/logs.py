import logging

from fastapi import APIRouter
from pydantic import BaseModel


class ClientLogRequest(BaseModel):
    level: str = "error"
    message: str
    context: dict = {}


def create_logs_router() -> APIRouter:
    """Lets the browser page report its own failures into the server log."""
    router = APIRouter(tags=["logs"])
    logger = logging.getLogger("roomscribe.client")

    @router.post("/api/logs/client")
    def client_log(payload: ClientLogRequest) -> dict:
        message = f"[client] {payload.message}"
        if payload.context:
            message = f"{message} | context={payload.context}"
        level = logging.getLevelName(payload.level.upper())
        if not isinstance(level, int):
            level = logging.ERROR
        logger.log(level, message)
        return {"status": "ok"}

    return router
