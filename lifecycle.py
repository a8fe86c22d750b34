"""Connection lifecycle: supervises the transport session.

The supervisor consumes the session's typed event stream, forwards chat
messages to the intake queue, and decides after every disconnect whether
to reconnect with the stored credentials or to discard them and pair again.
"""

from __future__ import annotations

import asyncio
import enum
import io
import logging
import sys
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TextIO

import qrcode

from channels import (
    ConnectionClosed,
    ConnectionOpened,
    InboundEvent,
    MessageReceived,
    PairingRequested,
    Transport,
    TransportError,
    TransportEvent,
    TransportSession,
)
from noise import write_clean

log = logging.getLogger(__name__)

MAX_RECONNECTS = 3
RECONNECT_DELAY = 3.0

# Close status meaning the linked device was logged out
STATUS_LOGGED_OUT = 401


class Phase(enum.Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    OPEN = "open"
    AUTH_EXPIRED = "auth_expired"


class CloseKind(enum.Enum):
    TRANSIENT = "transient"
    TERMINAL = "terminal"


class Action(enum.Enum):
    CONTINUE = "continue"
    RECONNECT = "reconnect"
    RESTART_FRESH = "restart_fresh"
    STOP = "stop"


@dataclass
class ConnectionState:
    phase: Phase = Phase.DISCONNECTED
    reconnect_attempts: int = 0


def classify_close(event: ConnectionClosed) -> CloseKind:
    """Only an explicit logout is terminal; unknown reasons are retried."""
    if event.logged_out or event.status_code == STATUS_LOGGED_OUT:
        return CloseKind.TERMINAL
    return CloseKind.TRANSIENT


def render_pairing(code: str, stream: TextIO | None = None) -> None:
    """Print the pairing code as a terminal QR code."""
    qr = qrcode.QRCode(border=1)
    qr.add_data(code)
    qr.make(fit=True)
    buf = io.StringIO()
    qr.print_ascii(out=buf, invert=True)
    write_clean(stream or sys.stdout, buf.getvalue())


class SessionSlot:
    """Holds at most one live transport session."""

    def __init__(self) -> None:
        self._current: TransportSession | None = None

    @property
    def current(self) -> TransportSession:
        if self._current is None:
            raise TransportError("not connected")
        return self._current

    @property
    def occupied(self) -> bool:
        return self._current is not None

    async def teardown(self) -> None:
        old, self._current = self._current, None
        if old is None:
            return
        try:
            await old.close()
        except Exception as e:
            log.debug("Closing previous session failed: %s", e)

    async def replace(self, factory: Callable[[], Awaitable[TransportSession]]) -> TransportSession:
        """Tear down the old session, then install a new one."""
        await self.teardown()
        session = await factory()
        self._current = session
        return session


class ConnectionSupervisor:
    def __init__(
        self,
        transport: Transport,
        inbox: asyncio.Queue[InboundEvent],
        max_attempts: int = MAX_RECONNECTS,
        reconnect_delay: float = RECONNECT_DELAY,
        on_pairing: Callable[[str], None] = render_pairing,
    ):
        self.transport = transport
        self.inbox = inbox
        self.max_attempts = max_attempts
        self.reconnect_delay = reconnect_delay
        self.on_pairing = on_pairing
        self.state = ConnectionState()
        self.slot = SessionSlot()
        self._running = False

    def handle(self, event: TransportEvent) -> Action:
        """Apply one lifecycle event to the state; return what to do next."""
        if isinstance(event, PairingRequested):
            log.info("Scan QR code with WhatsApp (Settings > Linked Devices > Link a Device):")
            try:
                self.on_pairing(event.code)
            except Exception as e:
                log.error("Could not render pairing code: %s", e)
            self.state.reconnect_attempts = 0
            return Action.CONTINUE

        if isinstance(event, ConnectionOpened):
            if self.state.phase is not Phase.OPEN:
                log.info("Connected to WhatsApp!")
            self.state.phase = Phase.OPEN
            self.state.reconnect_attempts = 0
            return Action.CONTINUE

        if isinstance(event, ConnectionClosed):
            kind = classify_close(event)
            log.info("Connection closed (status: %s, %s, %s)",
                     event.status_code, event.reason or "no reason", kind.value)
            if event.final:
                self.state.phase = Phase.DISCONNECTED
                return Action.STOP
            if kind is CloseKind.TERMINAL:
                self.state.phase = Phase.AUTH_EXPIRED
                return Action.RESTART_FRESH
            self.state.phase = Phase.DISCONNECTED
            self.state.reconnect_attempts += 1
            if self.state.reconnect_attempts >= self.max_attempts:
                log.warning("Failed to reconnect after %d attempts. Clearing session.",
                            self.max_attempts)
                self.state.phase = Phase.AUTH_EXPIRED
                return Action.RESTART_FRESH
            log.info("Reconnecting (%d/%d)...", self.state.reconnect_attempts, self.max_attempts)
            return Action.RECONNECT

        return Action.CONTINUE

    async def _pump(self, session: TransportSession) -> Action:
        try:
            async for event in session.events():
                if isinstance(event, MessageReceived):
                    await self.inbox.put(event.event)
                    continue
                action = self.handle(event)
                if action is not Action.CONTINUE:
                    return action
        except asyncio.CancelledError:
            raise
        except Exception as e:
            if not self._running:
                return Action.STOP
            log.warning("Transport event stream failed: %s", e)
            return self.handle(ConnectionClosed(reason=str(e)))
        if not self._running:
            return Action.STOP
        return self.handle(ConnectionClosed(reason="event stream ended"))

    async def _start_fresh(self) -> None:
        log.info("Clearing expired session... Please scan QR code again.")
        try:
            await self.transport.discard_credentials()
        except Exception as e:
            log.error("Discarding credentials failed: %s", e)
        self.state.reconnect_attempts = 0

    async def run(self) -> None:
        """Connect, pump events, and recover until stopped.

        The last session stays in the slot after a STOP so queued replies can
        still be delivered; stop() tears it down.
        """
        self._running = True
        try:
            while self._running:
                self.state.phase = Phase.CONNECTING
                try:
                    session = await self.slot.replace(self.transport.open_session)
                except asyncio.CancelledError:
                    raise
                except Exception as e:
                    log.error("Could not open transport session: %s", e)
                    action = self.handle(ConnectionClosed(reason=str(e)))
                else:
                    action = await self._pump(session)

                if action is Action.STOP or not self._running:
                    break
                if action is Action.RESTART_FRESH:
                    await self.slot.teardown()
                    await self._start_fresh()
                elif action is Action.RECONNECT:
                    await asyncio.sleep(self.reconnect_delay)
        finally:
            self._running = False

    async def stop(self) -> None:
        self._running = False
        await self.slot.teardown()
