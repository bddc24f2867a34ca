"""
Session Registry — lifecycle of live voice sessions across connections.

Explicit map of session id → SessionStateMachine:
1. insert when a connection opens
2. lookup by id
3. evict when the connection closes (stops the session)
4. a background sweep evicts sessions idle longer than the timeout
"""
from __future__ import annotations

import asyncio
import time
import structlog
from typing import Any, Optional

from config.settings import SessionConfig
from voice.session import SessionStateMachine

logger = structlog.get_logger()


class SessionRegistry:
    """
    Manages all live sessions.

    Usage:
        registry = SessionRegistry(config)
        registry.start_sweeper()

        registry.insert(machine)          # connection opened
        registry.lookup(session_id)
        await registry.evict(session_id)  # connection closed

        await registry.shutdown()
    """

    def __init__(self, config: SessionConfig = None):
        self.config = config or SessionConfig()
        self._sessions: dict[str, SessionStateMachine] = {}
        self._sweep_task: Optional[asyncio.Task] = None

    @property
    def active_count(self) -> int:
        return len(self._sessions)

    # ── Lifecycle ──────────────────────────────────────────

    def insert(self, machine: SessionStateMachine) -> None:
        if machine.session_id in self._sessions:
            raise ValueError(f"Session already registered: {machine.session_id}")
        self._sessions[machine.session_id] = machine
        logger.info("session_registered", session_id=machine.session_id, active=self.active_count)

    def lookup(self, session_id: str) -> Optional[SessionStateMachine]:
        return self._sessions.get(session_id)

    async def evict(self, session_id: str, reason: str = "disconnected") -> bool:
        machine = self._sessions.pop(session_id, None)
        if machine is None:
            return False
        await machine.close()
        logger.info("session_evicted", session_id=session_id, reason=reason, active=self.active_count)
        return True

    # ── Idle sweep ─────────────────────────────────────────

    async def sweep(self, now: Optional[float] = None) -> list[str]:
        """Evict every session idle longer than the timeout. Returns evicted ids."""
        now = time.monotonic() if now is None else now
        stale = [
            sid for sid, machine in self._sessions.items()
            if now - machine.last_activity > self.config.idle_timeout_s
        ]
        for sid in stale:
            await self.evict(sid, reason="idle_timeout")
        if stale:
            logger.info("session_sweep_complete", evicted=len(stale), active=self.active_count)
        return stale

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self.config.sweep_interval_s)
            try:
                await self.sweep()
            except Exception as e:
                logger.error("session_sweep_failed", error=str(e))

    def start_sweeper(self) -> None:
        if self._sweep_task is None or self._sweep_task.done():
            self._sweep_task = asyncio.create_task(self._sweep_loop(), name="session_sweeper")

    async def shutdown(self) -> None:
        if self._sweep_task is not None:
            self._sweep_task.cancel()
            try:
                await self._sweep_task
            except asyncio.CancelledError:
                pass
            self._sweep_task = None
        for sid in list(self._sessions):
            await self.evict(sid, reason="shutdown")
        logger.info("session_registry_shutdown")

    def to_dict(self) -> dict[str, Any]:
        return {
            "active_sessions": self.active_count,
            "sessions": [m.to_dict() for m in self._sessions.values()],
        }
