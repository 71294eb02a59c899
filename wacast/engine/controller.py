"""
wacast.engine.controller

The per-recipient dispatch loop.

SendController.run() is a generator: it yields one SendOutcome per attempted
recipient, in list order, and never lets a per-recipient failure escape.
Between recipients it honours the SendControl token (pause waits, cancel
stops) and sleeps for the configured pace. There is never more than one
dispatch in flight.

On success the recipient is flagged as sent in its origin shard on a
background worker. That write is best-effort: a failure is logged and the
send still counts.
"""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, Iterator, List, Optional, Sequence, Union

from ..config import PAUSE_POLL_MS, resolve_pace
from ..errors import AuthError, DispatchError, RecipientNotFound, ShardUnavailable
from ..models import SendOutcome
from ..shards.resolver import ShardResolver
from ..util import utcnow
from .control import SendControl, SendState

logger = logging.getLogger(__name__)

# (recipient_id, live record, origin shard) -> external message id
DispatchFn = Callable[[str, Dict[str, Any], str], Optional[str]]
AuthAlertFn = Callable[[AuthError], None]


class SendController:
    def __init__(
        self,
        resolver: ShardResolver,
        shard_keys: Sequence[str],
        *,
        template_name: Optional[str] = None,
        pause_poll_ms: int = PAUSE_POLL_MS,
        on_auth_error: Optional[AuthAlertFn] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.resolver = resolver
        self.shard_keys: List[str] = list(shard_keys)
        # None disables the mark-sent write.
        self.template_name = template_name
        self.pause_poll_seconds = max(pause_poll_ms, 1) / 1000.0
        self.on_auth_error = on_auth_error
        self.clock = clock
        self.control: Optional[SendControl] = None
        self._auth_alerted = False

    @property
    def state(self) -> SendState:
        return self.control.state if self.control else SendState.IDLE

    # ------------------------------------------------------------------
    # Loop
    # ------------------------------------------------------------------
    def run(
        self,
        recipients: Iterable[str],
        dispatch_one: DispatchFn,
        pace_millis: Union[int, str, None] = None,
        control: Optional[SendControl] = None,
    ) -> Iterator[SendOutcome]:
        control = control or SendControl()
        self.control = control
        self._auth_alerted = False
        pace_seconds = resolve_pace(pace_millis) / 1000.0
        ids = [str(r) for r in recipients]
        total = len(ids)
        attempted = 0

        marker = ThreadPoolExecutor(max_workers=1, thread_name_prefix="wacast-mark") if self.template_name else None
        control.mark_running()
        logger.info("Send loop starting: %d recipients, pace=%.3fs, shards=%s", total, pace_seconds, self.shard_keys)
        try:
            for idx, rid in enumerate(ids):
                if control.cancelled:
                    break
                if not control.wait_if_paused(self.pause_poll_seconds):
                    break

                outcome = self._attempt(idx, rid, dispatch_one)
                attempted += 1
                if outcome.success and marker is not None and outcome.source_shard:
                    marker.submit(self._mark_sent, rid, outcome.source_shard, outcome.sent_at)
                yield outcome

                if idx < total - 1 and not control.sleep(pace_seconds):
                    break
        finally:
            if marker is not None:
                marker.shutdown(wait=True)
            state = control.mark_finished(attempted == total)
            logger.info("Send loop %s: attempted %d/%d", state.value, attempted, total)

    def _attempt(self, index: int, recipient_id: str, dispatch_one: DispatchFn) -> SendOutcome:
        try:
            hit = self.resolver.resolve(recipient_id, self.shard_keys)
        except Exception as e:
            logger.exception("Resolution failed for %s", recipient_id)
            return SendOutcome(
                index=index,
                recipient_id=recipient_id,
                success=False,
                sent_at=self.clock(),
                error=str(e) or repr(e),
                error_kind="ShardUnavailable" if isinstance(e, ShardUnavailable) else "UnexpectedError",
            )
        if hit is None:
            err = RecipientNotFound(recipient_id, self.shard_keys)
            logger.warning("%s", err)
            return SendOutcome(
                index=index,
                recipient_id=recipient_id,
                success=False,
                sent_at=self.clock(),
                error=str(err),
                error_kind="RecipientNotFound",
            )

        def _failed(message: str, kind: str, code: Optional[int] = None) -> SendOutcome:
            return SendOutcome(
                index=index,
                recipient_id=recipient_id,
                success=False,
                sent_at=self.clock(),
                source_shard=hit.origin_shard,
                error=message,
                error_kind=kind,
                error_code=code,
            )

        try:
            message_id = dispatch_one(recipient_id, hit.record, hit.origin_shard)
        except AuthError as e:
            logger.error("Auth failure sending to %s: %s", recipient_id, e.message)
            self._alert_auth(e)
            return _failed(e.message, e.kind, e.code)
        except DispatchError as e:
            logger.warning("%s sending to %s: %s", e.kind, recipient_id, e.message)
            return _failed(e.message, e.kind, e.code)
        except Exception as e:
            logger.exception("Unexpected error dispatching to %s", recipient_id)
            return _failed(str(e) or repr(e), "UnexpectedError")

        return SendOutcome(
            index=index,
            recipient_id=recipient_id,
            success=True,
            sent_at=self.clock(),
            source_shard=hit.origin_shard,
            external_message_id=message_id,
        )

    def _alert_auth(self, err: AuthError) -> None:
        if self._auth_alerted or self.on_auth_error is None:
            return
        self._auth_alerted = True
        try:
            self.on_auth_error(err)
        except Exception:
            logger.exception("Auth alert hook failed")

    def _mark_sent(self, recipient_id: str, shard_key: str, sent_at: datetime) -> None:
        try:
            n = self.resolver.mark_sent(recipient_id, shard_key, self.template_name or "", sent_at)
            if not n:
                logger.warning("Mark-sent touched no rows for %s in %s", recipient_id, shard_key)
        except Exception as e:
            logger.warning("Mark-sent failed for %s in %s: %s", recipient_id, shard_key, e)
