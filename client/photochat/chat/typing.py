"""Typing indicator timers.

``TypingDebouncer`` is the sending side: each keystroke emits a typing
signal and restarts a quiet timer; when the timer fires a single stop signal
goes out. ``TypingIndicator`` is the receiving side: it remembers who is
typing and, because a stop event can be lost, drops each entry after a local
TTL even when no stop arrives.
"""
import asyncio
import logging
from typing import Awaitable, Callable, Dict, List, Optional

logger = logging.getLogger(__name__)

Emitter = Callable[[], Awaitable[None]]


class TypingDebouncer:
    """Emits typing on every poke and stop-typing once per quiet period."""

    def __init__(self, emit_typing: Emitter, emit_stop: Emitter, timeout: float) -> None:
        self._emit_typing = emit_typing
        self._emit_stop = emit_stop
        self.timeout = timeout
        self._timer: Optional[asyncio.Task] = None  # type: ignore[type-arg]

    @property
    def active(self) -> bool:
        """True while a quiet-period timer is pending."""
        return self._timer is not None and not self._timer.done()

    async def poke(self) -> None:
        """Signal typing and restart the quiet-period timer."""
        await self._emit_typing()
        self.cancel()
        self._timer = asyncio.create_task(self._expire())

    async def stop(self) -> None:
        """Cancel the timer and emit stop-typing immediately."""
        self.cancel()
        await self._emit_stop()

    def cancel(self) -> None:
        """Drop the pending timer without emitting anything."""
        if self._timer is not None and not self._timer.done():
            self._timer.cancel()
        self._timer = None

    async def _expire(self) -> None:
        await asyncio.sleep(self.timeout)
        # Detach first so cancel() during the emit can't abort it.
        self._timer = None
        try:
            await self._emit_stop()
        except Exception as exc:  # pylint: disable=broad-except
            logger.warning("Failed to emit stop-typing: %s", exc)


class TypingIndicator:
    """Tracks which remote participants are currently typing."""

    def __init__(
        self,
        ttl: float,
        on_change: Optional[Callable[[], None]] = None,
    ) -> None:
        self.ttl = ttl
        self._on_change = on_change
        # identity -> display name
        self._typing: Dict[str, str] = {}
        # identity -> TTL expiry task
        self._expiry: Dict[str, asyncio.Task] = {}  # type: ignore[type-arg]

    @property
    def is_typing(self) -> bool:
        return bool(self._typing)

    @property
    def typing_names(self) -> List[str]:
        return [name or identity for identity, name in self._typing.items()]

    def start(self, identity: str, name: str = "") -> None:
        """Mark *identity* as typing and (re)arm its TTL."""
        changed = identity not in self._typing
        self._typing[identity] = name
        self._cancel_expiry(identity)
        self._expiry[identity] = asyncio.create_task(self._expire(identity))
        if changed:
            self._notify()

    def stop(self, identity: str) -> None:
        """Clear *identity*'s typing state (explicit stop event)."""
        self._cancel_expiry(identity)
        if self._typing.pop(identity, None) is not None:
            self._notify()

    def clear(self) -> None:
        for identity in list(self._expiry):
            self._cancel_expiry(identity)
        if self._typing:
            self._typing.clear()
            self._notify()

    def _cancel_expiry(self, identity: str) -> None:
        task = self._expiry.pop(identity, None)
        if task is not None and not task.done():
            task.cancel()

    async def _expire(self, identity: str) -> None:
        await asyncio.sleep(self.ttl)
        self._expiry.pop(identity, None)
        if self._typing.pop(identity, None) is not None:
            logger.debug("Typing state for %s expired without a stop event", identity)
            self._notify()

    def _notify(self) -> None:
        if self._on_change is not None:
            self._on_change()
