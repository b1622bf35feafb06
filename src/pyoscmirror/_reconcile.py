"""Full-state reconciliation over OSCQuery.

The live OSC feed only carries changes. After a (re)connect or an avatar
change the current value of every parameter is pulled once through the
discovery side channel and merged in without overwriting anything the live
feed already delivered.

Attempts are identified by an increasing integer token. Starting a new
attempt or calling :meth:`BulkReconciler.invalidate` makes every older
attempt stale: a stale attempt stops retrying at its next check and drops
any result that arrives late. Requests already in flight are never aborted.
"""

from __future__ import annotations

import asyncio
import logging

from pyoscmirror._constants import BULK_RETRY_DELAY_S, BULK_TIMEOUT_S, parameter_name
from pyoscmirror._oscquery import Discovery
from pyoscmirror.state.store import ParameterStore

_logger = logging.getLogger(__name__)


class BulkReconciler:
    """Pulls the peer's full parameter state into a :class:`ParameterStore`."""

    def __init__(
        self,
        store: ParameterStore,
        discovery: Discovery,
        *,
        timeout: float = BULK_TIMEOUT_S,
        retry_delay: float = BULK_RETRY_DELAY_S,
    ) -> None:
        self._store = store
        self._discovery = discovery
        self._timeout = timeout
        self._retry_delay = retry_delay
        self._token = 0
        self._running_token: int | None = None
        self._tasks: set[asyncio.Task[None]] = set()

    @property
    def token(self) -> int:
        """Identity of the current attempt."""
        return self._token

    @property
    def in_progress(self) -> bool:
        return self._running_token is not None and self._running_token == self._token

    def invalidate(self) -> None:
        """Make any running attempt stale without starting a new one."""
        self._token += 1

    def start(self) -> asyncio.Task[None]:
        """Begin a new attempt, superseding any previous one."""
        self._token += 1
        token = self._token
        self._running_token = token
        task = asyncio.get_running_loop().create_task(self._run(token))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def shutdown(self) -> None:
        """Invalidate and cancel every outstanding attempt."""
        self.invalidate()
        for task in list(self._tasks):
            task.cancel()
        self._tasks.clear()
        self._running_token = None

    async def _run(self, token: int) -> None:
        _logger.debug("Bulk reconciliation attempt %s started", token)
        try:
            while True:
                try:
                    entries = await asyncio.wait_for(self._discovery.fetch_bulk_state(), self._timeout)
                except Exception:
                    _logger.debug("Bulk state fetch failed (attempt %s)", token, exc_info=True)
                    await asyncio.sleep(self._retry_delay)
                    if token != self._token:
                        _logger.debug("Bulk reconciliation attempt %s superseded", token)
                        return
                    continue

                if token != self._token:
                    _logger.debug("Discarding stale bulk state from attempt %s", token)
                    return
                self._apply(entries)
                return
        finally:
            if self._running_token == token:
                self._running_token = None

    def _apply(self, entries: list[tuple[str, object]]) -> None:
        applied = 0
        for path, value in entries:
            name = parameter_name(path)
            if name is None:
                continue
            if self._store.update(name, value, only_if_absent=True):
                applied += 1
        _logger.info("Bulk reconciliation merged %s of %s values", applied, len(entries))
