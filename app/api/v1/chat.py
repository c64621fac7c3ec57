"""OpenAI-compatible chat completions and model listing."""

from fastapi import APIRouter, Depends
from fastapi.responses import StreamingResponse
from starlette.background import BackgroundTask

from app.core.dependencies import get_current_account, get_gateway
from app.gateway.gateway import ChatGateway
from app.gateway.router import PUBLIC_ROUTES
from app.models.account import Account
from app.schemas.chat import ChatCompletionRequest, ChatCompletionResponse, ModelCard, ModelList

router = APIRouter(tags=["chat"])

# Listing timestamps are fixed so clients can cache the model list
_MODEL_CREATED = {
    "salesmanchatbot-pro": 1677610602,
    "salesmanchatbot-flash": 1709251200,
    "salesmanchatbot-lite": 1709251200,
}

SSE_HEADERS = {"Cache-Control": "no-cache", "Connection": "keep-alive", "X-Accel-Buffering": "no"}


@router.post("/chat/completions", response_model=ChatCompletionResponse)
async def create_chat_completion(
    body: ChatCompletionRequest,
    account: Account = Depends(get_current_account),
    gateway: ChatGateway = Depends(get_gateway),
):
    """Generate a reply. With ``stream: true`` the reply is sent as server-sent events."""
    messages = [message.model_dump() for message in body.messages]
    prepared = await gateway.prepare(account, messages, body.model)

    if body.stream:
        events = await gateway.open_stream(prepared)
        return StreamingResponse(
            events,
            media_type="text/event-stream",
            headers=SSE_HEADERS,
            background=BackgroundTask(events.aclose),
        )

    return await gateway.complete(prepared)


@router.get("/models", response_model=ModelList)
async def list_models(account: Account = Depends(get_current_account)):
    return ModelList(
        data=[
            ModelCard(id=r.public_model_name, created=_MODEL_CREATED.get(r.public_model_name, 1709251200))
            for r in PUBLIC_ROUTES
        ]
    )
