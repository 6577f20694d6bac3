"""
IRMA Session Engine
===================

Phiên xác thực thuộc tính IRMA

State machine for one attribute-verification attempt:

    Initialized -> Pending -> [Connected] -> Done | Cancelled | TimedOut | Error

- Pending: the IRMA server accepted the request, waiting for the IRMA app
- Connected: the IRMA app picked up the session
- Done, Cancelled, TimedOut, Error are terminal

Only Done yields data that may become a claim.
"""

import asyncio
import logging
import math
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from .errors import (
    SessionCancelled,
    SessionError,
    SessionProtocolError,
    SessionRegistrationFailed,
    SessionStateError,
    SessionTimedOut,
)
from .irma_client import IrmaClient, SessionPackage


class SessionStatus(Enum):
    INITIALIZED = "Initialized"
    PENDING = "Pending"
    CONNECTED = "Connected"
    DONE = "Done"
    CANCELLED = "Cancelled"
    TIMED_OUT = "TimedOut"
    ERROR = "Error"

    @property
    def terminal(self) -> bool:
        return self in TERMINAL_STATES


TERMINAL_STATES = frozenset({
    SessionStatus.DONE,
    SessionStatus.CANCELLED,
    SessionStatus.TIMED_OUT,
    SessionStatus.ERROR,
})

_ABORTS = {SessionStatus.CANCELLED, SessionStatus.TIMED_OUT, SessionStatus.ERROR}

_TRANSITIONS = {
    SessionStatus.INITIALIZED: {SessionStatus.PENDING} | _ABORTS,
    SessionStatus.PENDING: {SessionStatus.CONNECTED, SessionStatus.DONE} | _ABORTS,
    SessionStatus.CONNECTED: {SessionStatus.DONE} | _ABORTS,
}

# IRMA server status -> session status
SERVER_STATUS = {
    "INITIALIZED": SessionStatus.PENDING,
    "PAIRING": SessionStatus.PENDING,
    "CONNECTED": SessionStatus.CONNECTED,
    "DONE": SessionStatus.DONE,
    "CANCELLED": SessionStatus.CANCELLED,
    "TIMEOUT": SessionStatus.TIMED_OUT,
}


@dataclass
class SessionPolicy:
    """Polling frequency and per-state waiting bounds, in seconds"""
    poll_interval: float = 1.0
    pending_timeout: float = 300.0
    connected_timeout: float = 300.0

    def __post_init__(self):
        for name in ("poll_interval", "pending_timeout", "connected_timeout"):
            value = getattr(self, name)
            if not (value > 0 and math.isfinite(value)):
                raise ValueError(f"{name} must be a positive finite number, got {value}")

    def timeout_for(self, status: SessionStatus) -> float:
        if status is SessionStatus.CONNECTED:
            return self.connected_timeout
        return self.pending_timeout


@dataclass
class SessionResult:
    """Terminal payload of a Done session"""
    session_type: str
    attributes: Dict[str, Any] = field(default_factory=dict)
    raw: Dict[str, Any] = field(default_factory=dict)


StatusListener = Callable[["VerificationSession", SessionStatus, SessionStatus], None]


class VerificationSession:
    """
    One IRMA session, from registration to its terminal state

    Usage:
        session = VerificationSession(client, IssuanceRequest(...))
        await session.start()       # session.session_ptr -> QR for the IRMA app
        result = await session.wait()

    Listeners registered with add_listener see every transition; that is
    the status stream presentation layers render from.
    """

    def __init__(
        self,
        client: IrmaClient,
        request,
        policy: Optional[SessionPolicy] = None,
        interaction_mode: str = "popup",
        locale: str = "en",
        logger: Optional[logging.Logger] = None
    ):
        self.client = client
        self.request = request
        self.policy = policy or SessionPolicy()
        self.interaction_mode = interaction_mode
        self.locale = locale
        self.logger = logger or logging.getLogger(__name__)

        self.status = SessionStatus.INITIALIZED
        self.history: List[SessionStatus] = [self.status]
        self.token: Optional[str] = None
        self.session_ptr: Optional[Dict[str, Any]] = None
        self.result: Optional[SessionResult] = None
        self.error: Optional[SessionError] = None
        self._listeners: List[StatusListener] = []

    def add_listener(self, listener: StatusListener):
        self._listeners.append(listener)

    # ==================== STATE MACHINE ====================

    def _transition(self, new_status: SessionStatus):
        old_status = self.status
        if new_status not in _TRANSITIONS.get(old_status, set()):
            raise SessionStateError(
                f"Illegal transition {old_status.value} -> {new_status.value}", token=self.token
            )

        self.status = new_status
        self.history.append(new_status)
        self.logger.debug("Session %s: %s -> %s", self.token, old_status.value, new_status.value)

        for listener in list(self._listeners):
            listener(self, old_status, new_status)

    def _terminate(self, status: SessionStatus, error: SessionError) -> SessionError:
        self.error = error
        self._transition(status)
        return error

    def _outcome(self) -> SessionResult:
        """Result of a terminal session, or its error raised again"""
        if self.status is SessionStatus.DONE:
            return self.result
        raise self.error

    # ==================== PROTOCOL ====================

    async def start(self) -> SessionPackage:
        """
        Register the request with the IRMA server

        Raises:
            SessionRegistrationFailed: session moved to Error, not retried
        """
        if self.status is not SessionStatus.INITIALIZED:
            raise SessionStateError(f"Session already {self.status.value}", token=self.token)

        try:
            package = await self.client.start_session(self.request)
        except SessionRegistrationFailed as e:
            self.logger.warning("Session registration failed: %s", e)
            raise self._terminate(SessionStatus.ERROR, e)
        except asyncio.CancelledError:
            self._terminate(SessionStatus.CANCELLED, SessionCancelled("Cancelled during registration"))
            raise

        self.token = package.token
        self.session_ptr = package.session_ptr
        self._transition(SessionStatus.PENDING)
        return package

    async def wait(self) -> SessionResult:
        """
        Follow the session until it is terminal

        Returns:
            SessionResult when Done

        Raises:
            SessionCancelled, SessionTimedOut, SessionProtocolError
        """
        if self.status is SessionStatus.INITIALIZED:
            raise SessionStateError("Session has not been started")
        if self.status.terminal:
            return self._outcome()

        try:
            return await self._poll()
        except asyncio.CancelledError:
            if not self.status.terminal:
                self.logger.info("Caller stopped waiting for session %s", self.token)
                await self._abort()
                self._terminate(SessionStatus.CANCELLED, SessionCancelled("Cancelled by caller", token=self.token))
            raise

    async def run(self) -> SessionResult:
        await self.start()
        return await self.wait()

    async def cancel(self):
        """Abort the session locally and at the server"""
        if self.status.terminal:
            return
        if self.token is not None:
            await self._abort()
        if not self.status.terminal:
            self._terminate(SessionStatus.CANCELLED, SessionCancelled("Session aborted", token=self.token))

    async def _abort(self):
        try:
            await asyncio.shield(self.client.cancel(self.token))
        except SessionProtocolError as e:
            self.logger.warning("Could not abort session %s at the server: %s", self.token, e)

    async def _poll(self) -> SessionResult:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.policy.timeout_for(self.status)

        while True:
            if self.status.terminal:
                return self._outcome()

            remaining = deadline - loop.time()
            if remaining <= 0:
                return await self._time_out()

            try:
                server_status = await asyncio.wait_for(self.client.get_status(self.token), timeout=remaining)
            except asyncio.TimeoutError:
                return await self._time_out()
            except SessionProtocolError as e:
                if self.status.terminal:
                    return self._outcome()
                raise self._terminate(SessionStatus.ERROR, e)

            if self.status.terminal:
                return self._outcome()

            new_status = SERVER_STATUS.get(server_status)
            if new_status is None:
                raise self._terminate(
                    SessionStatus.ERROR,
                    SessionProtocolError(f"Unknown session status {server_status!r}", token=self.token)
                )

            if new_status is SessionStatus.DONE:
                return await self._finish()
            if new_status is SessionStatus.CANCELLED:
                await self._abort()
                if self.status.terminal:
                    return self._outcome()
                raise self._terminate(
                    SessionStatus.CANCELLED, SessionCancelled("Session cancelled by the holder", token=self.token)
                )
            if new_status is SessionStatus.TIMED_OUT:
                raise self._terminate(
                    SessionStatus.TIMED_OUT, SessionTimedOut("IRMA server timed out the session", token=self.token)
                )
            if new_status is SessionStatus.CONNECTED and self.status is SessionStatus.PENDING:
                self._transition(SessionStatus.CONNECTED)
                deadline = loop.time() + self.policy.timeout_for(self.status)

            await asyncio.sleep(min(self.policy.poll_interval, max(deadline - loop.time(), 0)))

    async def _time_out(self) -> SessionResult:
        self.logger.info("Session %s timed out while %s", self.token, self.status.value)
        await self._abort()
        if self.status.terminal:
            return self._outcome()
        raise self._terminate(
            SessionStatus.TIMED_OUT,
            SessionTimedOut(f"No terminal event while {self.status.value}", token=self.token)
        )

    async def _finish(self) -> SessionResult:
        try:
            raw = await self.client.get_result(self.token)
            result = self._parse_result(raw)
        except SessionProtocolError as e:
            if self.status.terminal:
                return self._outcome()
            raise self._terminate(SessionStatus.ERROR, e)

        # cancel() may have run while the result was in flight
        if self.status.terminal:
            return self._outcome()

        self.result = result
        self._transition(SessionStatus.DONE)
        return result

    def _parse_result(self, raw: Dict[str, Any]) -> SessionResult:
        session_type = self.request.session_type
        if session_type == "issuing":
            return SessionResult(session_type, dict(self.request.attributes), raw)

        if raw.get("proofStatus") != "VALID":
            raise SessionProtocolError(f"Disclosure proof is {raw.get('proofStatus')}", token=self.token)

        attributes = {}
        try:
            for conjunction in raw.get("disclosed") or []:
                entries = conjunction if isinstance(conjunction, list) else [conjunction]
                for entry in entries:
                    attributes[entry["id"]] = entry.get("rawvalue", entry.get("value"))
        except (KeyError, TypeError, AttributeError) as e:
            raise SessionProtocolError(f"Malformed disclosure result: {e}", token=self.token) from e

        return SessionResult(session_type, attributes, raw)
