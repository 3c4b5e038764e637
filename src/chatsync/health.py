"""
Connection health state machine.

States::

    CONNECTING --push live--> CONNECTED
    CONNECTED --push closed--> CONNECTING  (+ immediate reachability probe)

While not CONNECTED the state is re-derived on every evaluation:

    host network unreachable          -> DEGRADED_NETWORK
    network reachable, probe fails    -> DEGRADED_SERVER
    network reachable, probe succeeds -> CONNECTING

Evaluations run on a fixed tick and immediately whenever the push
transport or the host network signal changes.  There is no terminal state;
the machine runs for the whole session and is expected to oscillate.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, List

from chatsync.models import ConnectionState

logger = logging.getLogger("chatsync.health")

Probe = Callable[[], Awaitable[bool]]
StateListener = Callable[[ConnectionState, ConnectionState], None]

DEFAULT_TICK_SECONDS = 2.0


class ConnectionHealthMonitor:
    """Owns the session's :class:`ConnectionState`.

    Args:
        probe: Async callable checking the remote service is reachable.
        tick_seconds: Interval between periodic re-evaluations.
    """

    def __init__(self, probe: Probe, tick_seconds: float = DEFAULT_TICK_SECONDS) -> None:
        self._probe = probe
        self._tick_seconds = max(0.05, tick_seconds)
        self._state = ConnectionState.CONNECTING
        self._push_live = False
        self._network_reachable = True
        self._listeners: List[StateListener] = []
        self._task: asyncio.Task[None] | None = None

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def network_reachable(self) -> bool:
        return self._network_reachable

    def add_listener(self, listener: StateListener) -> None:
        """Register ``listener(old, new)``, called synchronously on change."""
        self._listeners.append(listener)

    def _set_state(self, new: ConnectionState) -> None:
        old = self._state
        if new is old:
            return
        self._state = new
        logger.info("Connection state %s -> %s", old.value, new.value)
        for listener in list(self._listeners):
            try:
                listener(old, new)
            except Exception:
                logger.warning("Connection state listener failed", exc_info=True)

    # ------------------------------------------------------------------
    # Signals
    # ------------------------------------------------------------------

    async def on_push_open(self) -> None:
        self._push_live = True
        self._set_state(ConnectionState.CONNECTED)

    async def on_push_closed(self) -> None:
        self._push_live = False
        if self._state is ConnectionState.CONNECTED:
            self._set_state(ConnectionState.CONNECTING)
        await self.evaluate()

    async def on_network_change(self, reachable: bool) -> None:
        changed = reachable != self._network_reachable
        self._network_reachable = reachable
        if changed:
            await self.evaluate()

    # ------------------------------------------------------------------
    # Evaluation
    # ------------------------------------------------------------------

    async def _run_probe(self) -> bool:
        try:
            return bool(await self._probe())
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.debug("Reachability probe raised", exc_info=True)
            return False

    async def evaluate(self) -> ConnectionState:
        """Re-derive the state from the current signals and a fresh probe."""
        if self._push_live:
            self._set_state(ConnectionState.CONNECTED)
            return self._state

        if not self._network_reachable:
            self._set_state(ConnectionState.DEGRADED_NETWORK)
            return self._state

        ok = await self._run_probe()
        # Push may have come up while the probe was in flight.
        if self._push_live:
            self._set_state(ConnectionState.CONNECTED)
        elif not self._network_reachable:
            self._set_state(ConnectionState.DEGRADED_NETWORK)
        elif ok:
            self._set_state(ConnectionState.CONNECTING)
        else:
            self._set_state(ConnectionState.DEGRADED_SERVER)
        return self._state

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self._tick_seconds)
            try:
                await self.evaluate()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.warning("Health evaluation failed", exc_info=True)

    def start(self) -> None:
        if self._task is None:
            self._task = asyncio.get_running_loop().create_task(
                self._run(), name="chatsync-health-tick"
            )

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
