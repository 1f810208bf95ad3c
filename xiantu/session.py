"""Session controller — owns one play-through from start to ending.

Phases:
  IDLE                 no active session
  AWAITING_GENERATION  a generation call is in flight
  SCENE_READY          a valid scene is held (ongoing: waiting for a choice;
                       ended: waiting for reset)
  ERROR                the last generation failed; cleared by start,
                       continue_game or reset

Turn flow (start / send_choice):
  1. Build the user turn (opening context, or the choice plus turn counters;
     the final turn also carries the forced-ending instruction).
  2. Call the generation client with the history so far, retrying overload.
  3. Parse and repair the scene (forced ending on the final turn).
  4. Commit atomically: scene, history (user turn + slimmed model turn), then
     save the snapshot while ongoing or delete it once ended.

The turn counter is advanced before the call and is not refunded when the
call fails. start, continue_game and reset bump an epoch counter; a response
that resolves under an older epoch is discarded.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from datetime import datetime, timezone

from pydantic import ValidationError

from xiantu import prompts
from xiantu.images import ImageLookupFailure, UnsplashImageSearch
from xiantu.llm import (
    LLM,
    InvalidCredential,
    LLMError,
    MissingCredential,
    TransientUpstreamOverload,
    is_overloaded,
)
from xiantu.models import (
    ConversationTurn,
    Phase,
    Scene,
    SessionSettings,
    SessionSnapshot,
    SessionStatus,
    TurnState,
)
from xiantu.retry import DEFAULT_BASE_DELAY, DEFAULT_MAX_RETRIES, with_retry
from xiantu.scene import MalformedOutput, parse_scene, slim_for_history
from xiantu.storage import CorruptSave, KeyValueStore, NoSaveData, SaveError

logger = logging.getLogger(__name__)

SNAPSHOT_KEY = "xiantu_game_save"
DEFAULT_TALENT_POINTS = 10

Listener = Callable[[SessionStatus], None]


class SessionError(Exception):
    """Base class for misuse of the session controller."""


class SessionBusy(SessionError):
    """An operation was requested while a generation call is in flight."""


class SessionStateError(SessionError):
    """The operation is not valid in the current phase."""


class InvalidSettings(SessionError, ValueError):
    """The session settings break the talent point budget."""


def user_message(exc: BaseException) -> str:
    """The user-facing error string for a failed operation."""
    if isinstance(exc, MissingCredential):
        return "No Gemini API key is configured. Add one in Settings."
    if isinstance(exc, InvalidCredential):
        return "The Gemini API key was rejected. Check that it is correct."
    if isinstance(exc, TransientUpstreamOverload):
        return "The storyteller is overloaded right now. Please try again shortly."
    if isinstance(exc, NoSaveData):
        return "There is no saved journey to continue."
    if isinstance(exc, CorruptSave):
        return "The saved journey could not be read and has been discarded."
    return "Something went wrong while weaving the story. Please try again."


class SessionController:
    def __init__(
        self,
        llm: LLM,
        store: KeyValueStore,
        *,
        image_search: UnsplashImageSearch | None = None,
        talent_points: int = DEFAULT_TALENT_POINTS,
        max_retries: int = DEFAULT_MAX_RETRIES,
        retry_base_delay: float = DEFAULT_BASE_DELAY,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.llm = llm
        self._store = store
        self.image_search = image_search
        self._talent_points = talent_points
        self._max_retries = max_retries
        self._retry_base_delay = retry_base_delay
        self._sleep = sleep

        self._phase = Phase.IDLE
        self._error: str | None = None
        self._scene: Scene | None = None
        self._history: list[ConversationTurn] = []
        self._turn = TurnState()
        self._epoch = 0
        self._ending_image_url: str | None = None
        self._image_error: str | None = None
        self._listeners: list[Listener] = []
        self._has_save = self._probe_save()

    # ------------------------------------------------------------------
    # Observable state
    # ------------------------------------------------------------------

    @property
    def phase(self) -> Phase:
        return self._phase

    @property
    def is_loading(self) -> bool:
        return self._phase is Phase.AWAITING_GENERATION

    @property
    def error(self) -> str | None:
        return self._error

    @property
    def current_scene(self) -> Scene | None:
        return self._scene

    @property
    def current_turn(self) -> int:
        return self._turn.current_turn

    @property
    def max_turns(self) -> int:
        return self._turn.max_turns

    @property
    def has_save(self) -> bool:
        return self._has_save

    @property
    def history(self) -> list[ConversationTurn]:
        return list(self._history)

    @property
    def ending_image_url(self) -> str | None:
        return self._ending_image_url

    def status(self) -> SessionStatus:
        return SessionStatus(
            phase=self._phase,
            is_loading=self.is_loading,
            error=self._error,
            current_scene=self._scene,
            current_turn=self._turn.current_turn,
            max_turns=self._turn.max_turns,
            has_save=self._has_save,
            ending_image_url=self._ending_image_url,
            image_error=self._image_error,
        )

    def add_listener(self, listener: Listener) -> Callable[[], None]:
        """Call listener with the new status after every transition.

        Returns a function that unregisters it.
        """
        self._listeners.append(listener)

        def _remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _remove

    def _notify(self) -> None:
        if not self._listeners:
            return
        status = self.status()
        for listener in list(self._listeners):
            listener(status)

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    async def start(self, settings: SessionSettings) -> None:
        """Begin a new session, discarding any previous one and its save."""
        self._ensure_not_busy()
        total = settings.attributes.total()
        if total != self._talent_points:
            raise InvalidSettings(
                f"Attributes must total {self._talent_points} points, got {total}"
            )

        self._clear()
        self._turn = TurnState(current_turn=0, max_turns=settings.max_turns)
        logger.info("Starting session max_turns=%d", settings.max_turns)

        turn = prompts.opening_turn(settings.attributes, self._turn)
        await self._generate(turn, prompts.SYSTEM_INSTRUCTION, force_end=False)

    async def send_choice(self, choice: str) -> None:
        """Advance the story with the player's choice."""
        self._ensure_not_busy()
        if self._phase is not Phase.SCENE_READY or self._scene is None:
            raise SessionStateError(f"Cannot choose while {self._phase.value}")
        if self._scene.is_ended:
            raise SessionStateError("The story has ended")

        new_turn = self._turn.current_turn + 1
        max_turns = self._turn.max_turns
        is_final_turn = new_turn >= max_turns
        self._turn = TurnState(current_turn=new_turn, max_turns=max_turns)
        logger.info("Turn %d/%d%s", new_turn, max_turns, " (final)" if is_final_turn else "")

        turn = prompts.choice_turn(choice, new_turn, max_turns, final=is_final_turn)
        await self._generate(turn, None, force_end=is_final_turn)

    async def continue_game(self) -> None:
        """Restore the saved session.

        Raises NoSaveData when there is nothing to continue and CorruptSave
        (after deleting the save) when it cannot be read.
        """
        self._ensure_not_busy()
        if self._phase not in (Phase.IDLE, Phase.ERROR):
            raise SessionStateError(f"Cannot continue while {self._phase.value}")

        self._epoch += 1
        try:
            snapshot = self._load_snapshot()
        except SaveError as e:
            logger.warning("Cannot continue: %s", e)
            self._has_save = False
            self._error = user_message(e)
            self._notify()
            raise

        self._scene = snapshot.current_scene
        self._history = list(snapshot.conversation_history)
        self._turn = snapshot.turn_state
        self._error = None
        self._ending_image_url = None
        self._image_error = None
        self._has_save = True
        self._phase = Phase.SCENE_READY
        logger.info(
            "Continued session at turn %d/%d (saved %s)",
            self._turn.current_turn, self._turn.max_turns, snapshot.timestamp.isoformat(),
        )
        self._notify()

    def reset(self) -> None:
        """Drop the session and its save. Safe in every phase."""
        self._clear()
        self._phase = Phase.IDLE
        logger.info("Session reset")
        self._notify()

    async def fetch_ending_image(self) -> str | None:
        """Look up an illustration for the current ending.

        Lookup failures never touch the session phase or error; they are
        logged and exposed as image_error in the status.
        """
        scene = self._scene
        if scene is None or not scene.is_ended or not scene.ending_keyword:
            raise SessionStateError("There is no ending to illustrate")
        if self.image_search is None:
            return None

        epoch = self._epoch
        try:
            url = await self.image_search.search(scene.ending_keyword)
        except ImageLookupFailure as e:
            logger.warning("Ending image lookup failed for %r: %s", scene.ending_keyword, e)
            if epoch == self._epoch:
                self._image_error = str(e)
                self._notify()
            return None

        if epoch != self._epoch:
            return None
        self._ending_image_url = url
        self._image_error = None
        self._notify()
        return url

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _ensure_not_busy(self) -> None:
        if self._phase is Phase.AWAITING_GENERATION:
            raise SessionBusy("A scene is still being generated")

    def _clear(self) -> None:
        self._epoch += 1
        self._store.remove(SNAPSHOT_KEY)
        self._has_save = False
        self._error = None
        self._scene = None
        self._history = []
        self._turn = TurnState()
        self._ending_image_url = None
        self._image_error = None

    async def _generate(
        self,
        turn: ConversationTurn,
        system_instruction: str | None,
        *,
        force_end: bool,
    ) -> None:
        epoch = self._epoch
        history = list(self._history)
        self._phase = Phase.AWAITING_GENERATION
        self._error = None
        self._notify()

        try:
            raw = await with_retry(
                lambda: self.llm(history, turn, system_instruction),
                is_transient=is_overloaded,
                max_retries=self._max_retries,
                base_delay=self._retry_base_delay,
                sleep=self._sleep,
            )
            scene = parse_scene(raw, force_end=force_end)
        except (LLMError, MalformedOutput) as e:
            self._fail(epoch, e)
            return
        except Exception as e:
            self._fail(epoch, e)
            raise

        if epoch != self._epoch:
            logger.info("Discarding scene from a session that was reset")
            return

        self._scene = scene
        self._history = [*history, turn, slim_for_history(scene)]
        self._phase = Phase.SCENE_READY
        self._persist()
        logger.info("Scene ready: %r (%s)", scene.title, scene.state)
        self._notify()

    def _fail(self, epoch: int, exc: BaseException) -> None:
        if epoch != self._epoch:
            logger.info("Discarding failure from a session that was reset: %s", exc)
            return
        logger.error("Scene generation failed: %s", exc, exc_info=exc)
        self._phase = Phase.ERROR
        self._error = user_message(exc)
        self._notify()

    def _persist(self) -> None:
        """Save the snapshot while ongoing, delete it once ended.

        Best effort: a failed write is logged and the in-memory state stands.
        """
        assert self._scene is not None
        if self._scene.is_ended:
            self._store.remove(SNAPSHOT_KEY)
            self._has_save = False
            return

        snapshot = SessionSnapshot(
            current_scene=self._scene,
            conversation_history=self._history,
            turn_state=self._turn,
            timestamp=datetime.now(timezone.utc),
        )
        if self._store.set(SNAPSHOT_KEY, snapshot.model_dump(mode="json")):
            self._has_save = True
        else:
            logger.warning("Snapshot write failed; turn %d not saved", self._turn.current_turn)

    def _load_snapshot(self) -> SessionSnapshot:
        try:
            data = self._store.get(SNAPSHOT_KEY)
        except CorruptSave:
            self._store.remove(SNAPSHOT_KEY)
            raise
        if data is None:
            raise NoSaveData("No saved session")
        try:
            return SessionSnapshot.model_validate(data)
        except ValidationError as e:
            self._store.remove(SNAPSHOT_KEY)
            raise CorruptSave(f"Saved session is invalid: {e.error_count()} errors") from e

    def _probe_save(self) -> bool:
        try:
            return self._store.get(SNAPSHOT_KEY) is not None
        except CorruptSave:
            # continue_game will report and delete it
            return True
