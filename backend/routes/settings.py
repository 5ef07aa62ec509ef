"""Health check and model connection check endpoints."""

from fastapi import APIRouter, Request

from chatgroup.llm import check_connection

router = APIRouter()


@router.get("/health")
async def health():
    """Health check."""
    return {"status": "ok"}


@router.post("/check-connection")
async def check_connection_endpoint(request: Request):
    """Send a trivial prompt to the configured model."""
    return {"ok": await check_connection(request.app.state.llm)}
