"""
wacast.engine.control

Pause/resume/cancel token shared between an operator and one send loop.

Cancel is terminal: once set it stays set, and resume() after cancel is
ignored. The loop only observes the token between recipients, so a dispatch
that is already in flight always finishes.
"""

from __future__ import annotations

import enum
import threading


class SendState(str, enum.Enum):
    IDLE = "idle"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


TERMINAL_STATES = (SendState.COMPLETED, SendState.CANCELLED)


class SendControl:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._cancel = threading.Event()
        self._resume = threading.Event()
        self._resume.set()
        self._state = SendState.IDLE

    # -- operator side ------------------------------------------------------
    def pause(self) -> None:
        with self._lock:
            if self._state in TERMINAL_STATES or self._cancel.is_set():
                return
            self._resume.clear()
            if self._state == SendState.RUNNING:
                self._state = SendState.PAUSED

    def resume(self) -> None:
        with self._lock:
            if self._cancel.is_set() or self._state in TERMINAL_STATES:
                return
            self._resume.set()
            if self._state == SendState.PAUSED:
                self._state = SendState.RUNNING

    def cancel(self) -> None:
        with self._lock:
            if self._state == SendState.COMPLETED:
                return
            self._cancel.set()
            # Wake anything sleeping on the pause gate.
            self._resume.set()

    # -- loop side ----------------------------------------------------------
    @property
    def state(self) -> SendState:
        return self._state

    @property
    def cancelled(self) -> bool:
        return self._cancel.is_set()

    @property
    def paused(self) -> bool:
        return not self._resume.is_set() and not self._cancel.is_set()

    def mark_running(self) -> None:
        with self._lock:
            if self._state == SendState.IDLE:
                self._state = SendState.PAUSED if not self._resume.is_set() else SendState.RUNNING

    def mark_finished(self, all_attempted: bool) -> SendState:
        """COMPLETED only if every recipient was attempted, else CANCELLED."""
        with self._lock:
            if self._state not in TERMINAL_STATES:
                self._state = SendState.COMPLETED if all_attempted else SendState.CANCELLED
            return self._state

    def wait_if_paused(self, poll_seconds: float) -> bool:
        """
        Block while paused, waking every `poll_seconds` to recheck cancel.

        Returns False if the run was cancelled (before or during the wait).
        """
        while not self._resume.is_set():
            if self._cancel.is_set():
                return False
            self._resume.wait(poll_seconds)
        return not self._cancel.is_set()

    def sleep(self, seconds: float) -> bool:
        """Pacing sleep that returns early (False) on cancel."""
        if seconds <= 0:
            return not self._cancel.is_set()
        return not self._cancel.wait(seconds)
