from fastapi import APIRouter, Request

router = APIRouter()


@router.get("/status")
async def get_voice_status(request: Request):
    return request.app.state.conversation.status()


@router.post("/start")
async def start_voice(request: Request):
    """Open the microphone and listen until the user stops talking."""
    conversation = request.app.state.conversation
    await conversation.start_voice_conversation()
    return conversation.status()


@router.post("/stop")
async def stop_voice(request: Request):
    """Stop recording now and run the turn to completion."""
    conversation = request.app.state.conversation
    await conversation.stop_and_converse()
    return conversation.status()


@router.post("/force-stop")
async def force_stop_voice(request: Request):
    """Abandon the current turn, whatever phase it is in."""
    conversation = request.app.state.conversation
    conversation.force_stop()
    return conversation.status()
