"""Session endpoints: status, start, choice, continue, reset, ending image."""

from fastapi import APIRouter, HTTPException, Request

from xiantu.config import Config
from xiantu.models import SessionSettings, SessionStatus
from xiantu.session import InvalidSettings, SessionBusy, SessionController, SessionStateError
from xiantu.storage import CorruptSave, NoSaveData

from .models import ChoiceBody, EndingImage, StartBody

router = APIRouter()


def _controller(request: Request) -> SessionController:
    return request.app.state.controller


@router.get("/session")
async def get_session(request: Request) -> SessionStatus:
    """Current session status (scene, turn counters, loading/error flags)."""
    return _controller(request).status()


@router.post("/session/start")
async def start_session(request: Request, body: StartBody) -> SessionStatus:
    """Start a new journey. Discards any saved one."""
    controller = _controller(request)
    config: Config = request.app.state.config

    if body.max_turns is not None:
        settings = SessionSettings(attributes=body.attributes, max_turns=body.max_turns)
    else:
        try:
            settings = SessionSettings.for_length(
                body.attributes, body.length or "medium", config.turn_lengths
            )
        except ValueError as e:
            raise HTTPException(400, str(e))

    try:
        await controller.start(settings)
    except InvalidSettings as e:
        raise HTTPException(400, str(e))
    except SessionBusy as e:
        raise HTTPException(409, str(e))
    return controller.status()


@router.post("/session/choice")
async def send_choice(request: Request, body: ChoiceBody) -> SessionStatus:
    """Advance the story with one of the current scene's options."""
    controller = _controller(request)
    try:
        await controller.send_choice(body.choice)
    except (SessionBusy, SessionStateError) as e:
        raise HTTPException(409, str(e))
    return controller.status()


@router.post("/session/continue")
async def continue_session(request: Request) -> SessionStatus:
    """Resume the saved journey."""
    controller = _controller(request)
    try:
        await controller.continue_game()
    except (SessionBusy, SessionStateError) as e:
        raise HTTPException(409, str(e))
    except NoSaveData:
        raise HTTPException(404, controller.error)
    except CorruptSave:
        raise HTTPException(422, controller.error)
    return controller.status()


@router.post("/session/reset")
async def reset_session(request: Request) -> SessionStatus:
    """Abandon the current journey and delete its save."""
    controller = _controller(request)
    controller.reset()
    return controller.status()


@router.post("/session/ending-image")
async def ending_image(request: Request) -> EndingImage:
    """Look up an illustration for the ending keyword."""
    controller = _controller(request)
    try:
        url = await controller.fetch_ending_image()
    except SessionStateError as e:
        raise HTTPException(409, str(e))
    return EndingImage(url=url, error=controller.status().image_error)
