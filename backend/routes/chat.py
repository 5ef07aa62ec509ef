"""The director chat turn: stateless, the client sends the whole room."""

import logging

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from chatgroup.pipeline.orchestrator import TurnError, parse_turn, run_turn

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/chat")
async def chat(request: Request):
    """Pick responders for one user message and return their replies.

    Errors come back as {"error": "..."} with status 400 or 500.
    """
    try:
        body = await request.json()
    except ValueError:
        return JSONResponse({"error": "Missing required fields"}, status_code=400)

    try:
        turn = parse_turn(body)
        result = await run_turn(turn=turn, llm=request.app.state.llm)
    except TurnError as e:
        return JSONResponse({"error": e.message}, status_code=e.status)
    except Exception:
        logger.exception("Chat turn failed")
        return JSONResponse({"error": "Internal server error"}, status_code=500)

    return result.model_dump(by_alias=True)
