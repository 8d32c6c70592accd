"""Detect when a streaming assistant message has stopped growing.

The host reveals generated text incrementally, so the last transcript entry
keeps changing until generation ends. A :class:`StreamFinalizer` polls that
entry and declares it final when one of these happens, checked in order on
every tick:

1. the transcript now ends with a user message ("swapped");
2. the text has not changed for ``stable_ms`` ("stable");
3. ``max_wait_ms`` elapsed since the session started ("max wait").

Only one session exists at a time. Starting a new one drops the previous
session without finalizing it, unless ``finalize_on_supersede`` is set.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Callable, Optional, Sequence

from .timestamps import now_ms
from .typing import ChatMessage

logger = logging.getLogger(__name__)

REASON_SWAPPED = "swapped to user message"
REASON_STABLE = "stable"
REASON_MAX_WAIT = "max wait reached"
REASON_SUPERSEDED = "superseded"
REASON_FORCED = "forced"


@dataclass
class FinalizationSession:
    message_id: str
    character_name: str
    started_at: float
    last_text: str
    last_change_at: float
    poll_handle: Optional[asyncio.Task] = None


FinalizeCallback = Callable[[FinalizationSession, str], None]


class StreamFinalizer:
    """Polls the live transcript and finalizes one in-flight assistant message.

    Parameters
    ----------
    read_chat : Callable[[], Sequence[ChatMessage]]
        Returns the live transcript; only the last entry is inspected.
    on_finalize : Callable[[FinalizationSession, str], None]
        Called once per finalized session with the session and the reason.
        ``session.last_text`` holds the final text.
    autostart : bool
        Start an asyncio polling task on :meth:`start`. Disable to drive
        :meth:`poll_once` by hand.
    """

    def __init__(
        self,
        read_chat: Callable[[], Sequence[ChatMessage]],
        on_finalize: FinalizeCallback,
        *,
        poll_ms: int = 250,
        stable_ms: int = 1200,
        max_wait_ms: int = 300_000,
        finalize_on_supersede: bool = False,
        clock: Callable[[], float] = now_ms,
        autostart: bool = True,
    ) -> None:
        self.read_chat = read_chat
        self.on_finalize = on_finalize
        self.poll_ms = poll_ms or 250
        self.stable_ms = stable_ms or 1200
        self.max_wait_ms = max_wait_ms or 300_000
        self.finalize_on_supersede = finalize_on_supersede
        self._clock = clock
        self._autostart = autostart
        self._session: Optional[FinalizationSession] = None

    @property
    def session(self) -> Optional[FinalizationSession]:
        return self._session

    def start(self, message_id: str, character_name: str) -> Optional[FinalizationSession]:
        """Begin tracking the last transcript entry as ``message_id``."""
        chat = self.read_chat()
        if not chat:
            return None
        initial_text = chat[-1].get("mes") or ""

        previous = self._session
        if previous is not None:
            if self.finalize_on_supersede:
                self._finalize(previous, REASON_SUPERSEDED)
            else:
                logger.debug("Dropping unfinished finalization for %s", previous.message_id)
                self.cancel()

        now = self._clock()
        session = FinalizationSession(
            message_id=message_id,
            character_name=character_name,
            started_at=now,
            last_text=initial_text,
            last_change_at=now,
        )
        self._session = session
        if self._autostart:
            session.poll_handle = asyncio.get_running_loop().create_task(self._poll(session))
        return session

    def poll_once(self) -> Optional[str]:
        """Run one poll tick. Returns the finalization reason, if any."""
        session = self._session
        if session is None:
            return None

        chat = self.read_chat()
        last: ChatMessage | dict = chat[-1] if chat else {}
        swapped = bool(last.get("is_user"))
        # a user entry in the last slot is not the assistant's text
        current_text = session.last_text if swapped else (last.get("mes") or session.last_text or "")
        now = self._clock()

        if current_text != session.last_text:
            session.last_text = current_text
            session.last_change_at = now

        stable_for = now - session.last_change_at
        total = now - session.started_at

        if swapped:
            reason = REASON_SWAPPED
        elif stable_for >= self.stable_ms:
            reason = REASON_STABLE
        elif total >= self.max_wait_ms:
            logger.warning("Max wait reached while finalizing assistant message %s", session.message_id)
            reason = REASON_MAX_WAIT
        else:
            return None

        self._finalize(session, reason)
        return reason

    def finalize_now(self, reason: str = REASON_FORCED) -> Optional[FinalizationSession]:
        """Finalize the current session immediately with the freshest assistant text."""
        session = self._session
        if session is None:
            return None
        chat = self.read_chat()
        last = chat[-1] if chat else {}
        if not last.get("is_user") and last.get("mes"):
            session.last_text = last["mes"]
        self._finalize(session, reason)
        return session

    def cancel(self) -> None:
        """Stop polling and forget the current session without finalizing it."""
        session = self._session
        self._session = None
        if session is not None:
            self._stop(session)

    # --------- internals ----------
    async def _poll(self, session: FinalizationSession) -> None:
        while self._session is session:
            await asyncio.sleep(self.poll_ms / 1000)
            if self._session is not session:
                break
            try:
                self.poll_once()
            except Exception:
                logger.exception("Error while polling assistant message %s", session.message_id)
                self.cancel()

    def _stop(self, session: FinalizationSession) -> None:
        task = session.poll_handle
        session.poll_handle = None
        if task is not None and task is not _current_task() and not task.done():
            task.cancel()

    def _finalize(self, session: FinalizationSession, reason: str) -> None:
        if self._session is session:
            self._session = None
        self._stop(session)
        logger.debug("Finalized assistant message %s (%s)", session.message_id, reason)
        self.on_finalize(session, reason)


def _current_task() -> Optional[asyncio.Task]:
    try:
        return asyncio.current_task()
    except RuntimeError:
        return None
