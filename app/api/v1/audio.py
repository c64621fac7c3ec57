"""Standalone audio transcription, billed at a fixed price per call."""

from fastapi import APIRouter, Depends

from app.core.dependencies import get_current_account, get_gateway
from app.gateway.gateway import ChatGateway
from app.models.account import Account
from app.schemas.usage import TranscriptionRequest, TranscriptionResponse

router = APIRouter(prefix="/audio", tags=["audio"])


@router.post("/transcriptions", response_model=TranscriptionResponse)
async def create_transcription(
    body: TranscriptionRequest,
    account: Account = Depends(get_current_account),
    gateway: ChatGateway = Depends(get_gateway),
):
    text = await gateway.transcribe(account, body.url)
    return TranscriptionResponse(text=text)
