from fastapi import APIRouter, Depends, Request
from fastapi.responses import StreamingResponse

from ...engine import completions
from ...services.auth import Authenticator, get_authenticator
from ...services.chat_pipeline import ChatPipeline, StreamOpener
from ...services.persister import TurnPersister
from ...services.store_factory import StoreFactory, get_store_factory


router = APIRouter()


def get_stream_opener() -> StreamOpener:
    return completions.open_chat_stream


def get_persister(request: Request) -> TurnPersister:
    return request.app.state.persister


@router.post("/api/chat")
async def chat(
    request: Request,
    authenticator: Authenticator = Depends(get_authenticator),
    store_factory: StoreFactory = Depends(get_store_factory),
    persister: TurnPersister = Depends(get_persister),
    open_stream: StreamOpener = Depends(get_stream_opener),
):
    """
    Stream one assistant reply for the posted turns.
    The body is a sequence of `0:`-prefixed JSON lines ending in `finish` or `error`.
    """
    pipeline = ChatPipeline(
        authenticator,
        store_factory,
        persister,
        open_stream,
        request_id=getattr(request.state, "request_id", None),
    )
    stream = await pipeline.start(request)

    headers = {"Cache-Control": "no-cache", "Connection": "keep-alive", "X-Accel-Buffering": "no"}
    if stream.conversation_id:
        headers["X-Conversation-Id"] = stream.conversation_id
    return StreamingResponse(stream.lines(), media_type="text/plain; charset=utf-8", headers=headers)
