"""
Call signaling coordinator.

One call attempt at a time per session:

    IDLE -> REQUESTING (caller) / RINGING (callee)
         -> ACCEPTED | REJECTED | TIMED_OUT | CANCELLED
         -> CONNECTED -> ENDED

Access is checked against the ledger before a request is sent and again,
independently, before the attempt is promoted to CONNECTED. The signaling
channel is the only source that can start an accept flow; invites reported
by the media SDK are informational. Events for a room that is not the
current attempt, or that arrive in a state that does not expect them, are
ignored.
"""
import asyncio
import logging
import secrets
import string
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple

from ..core.config import settings
from ..core.errors import (
    ConsentLinkError,
    InvalidTransition,
    LedgerUnavailable,
    MediaSessionError,
    PermissionDenied,
    RecipientOffline,
    SignalingUnavailable,
    TimedOut,
)
from ..core.permissions import CAP_START_CALL
from ..models.ledger import Role, utcnow
from .access_control import AccessControlGate, AccessDecision
from .identity_resolver import Counterparty
from .media_client import MediaSession, MediaSessionClient
from .signaling import (
    CALL_ACCEPT,
    CALL_CANCELLED,
    CALL_ERROR,
    CALL_REJECT,
    CALL_REQUEST,
    CALL_STARTED,
    CALL_TIMED_OUT,
    INCOMING_CALL,
    RECIPIENT_OFFLINE,
    RealtimeChannel,
)

logger = logging.getLogger(__name__)


class CallState(str, Enum):
    IDLE = "idle"
    REQUESTING = "requesting"
    RINGING = "ringing"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    TIMED_OUT = "timed_out"
    CANCELLED = "cancelled"
    CONNECTED = "connected"
    ENDED = "ended"


TERMINAL_STATES = frozenset(
    {CallState.REJECTED, CallState.TIMED_OUT, CallState.CANCELLED, CallState.ENDED}
)
# States waiting on the other party; the timeout window applies to these
WAITING_STATES = frozenset({CallState.REQUESTING, CallState.RINGING, CallState.ACCEPTED})

TRANSITIONS: Dict[CallState, frozenset] = {
    CallState.IDLE: frozenset({CallState.REQUESTING, CallState.RINGING}),
    CallState.REQUESTING: frozenset(
        {CallState.ACCEPTED, CallState.REJECTED, CallState.TIMED_OUT, CallState.CANCELLED, CallState.IDLE}
    ),
    CallState.RINGING: frozenset(
        {CallState.ACCEPTED, CallState.REJECTED, CallState.TIMED_OUT, CallState.CANCELLED, CallState.IDLE}
    ),
    CallState.ACCEPTED: frozenset(
        {CallState.CONNECTED, CallState.TIMED_OUT, CallState.CANCELLED, CallState.IDLE}
    ),
    CallState.CONNECTED: frozenset({CallState.ENDED}),
}

OUTGOING = "outgoing"
INCOMING = "incoming"

_ROOM_ALPHABET = string.ascii_lowercase + string.digits


def generate_room_id() -> str:
    """Room ids look like ``ehr-{millis}-{7 random base36 chars}``."""
    suffix = "".join(secrets.choice(_ROOM_ALPHABET) for _ in range(7))
    return f"ehr-{int(time.time() * 1000)}-{suffix}"


@dataclass
class CallSession:
    room_id: str
    caller_id: str
    callee_id: str
    patient_id: str
    clinician_id: str
    direction: str
    counterparty: Counterparty
    requested_at: datetime
    expires_at: datetime
    state: CallState = CallState.IDLE
    history: List[CallState] = field(default_factory=list)
    error: Optional[ConsentLinkError] = None
    media: Optional[MediaSession] = None


@dataclass
class CallNotice:
    kind: str
    room_id: Optional[str]
    message: str
    error: Optional[ConsentLinkError] = None


def _gate_error(decision: AccessDecision) -> ConsentLinkError:
    if decision == AccessDecision.UNVERIFIED:
        return LedgerUnavailable("Could not verify permission on the blockchain. Check your connection and retry.")
    return PermissionDenied("Access Denied: Patient has not granted permission to this doctor.")


class CallSignalingCoordinator:
    def __init__(
        self,
        session,
        gate: AccessControlGate,
        channel: RealtimeChannel,
        media: MediaSessionClient,
        timeout_seconds: Optional[float] = None,
    ):
        self.session = session
        self.gate = gate
        self.channel = channel
        self.media = media
        self.timeout_seconds = (
            timeout_seconds if timeout_seconds is not None else settings.CALL_REQUEST_TIMEOUT_SECONDS
        )
        self.last_attempt: Optional[CallSession] = None
        self._attempt: Optional[CallSession] = None
        self._pending = False
        self._closed = False
        self._timer: Optional[asyncio.Task] = None
        self._waiters: List[Tuple[CallSession, asyncio.Future]] = []
        self._listeners: List[Callable[[CallNotice], None]] = []
        self._handlers = {
            INCOMING_CALL: self._on_incoming_call,
            CALL_ACCEPT: self._on_call_accept,
            CALL_REJECT: self._on_call_reject,
            CALL_CANCELLED: self._on_call_cancelled,
            CALL_STARTED: self._on_call_started,
            CALL_TIMED_OUT: self._on_call_timed_out,
            RECIPIENT_OFFLINE: self._on_recipient_offline,
            CALL_ERROR: self._on_call_error,
        }
        for event, handler in self._handlers.items():
            channel.on(event, handler)
        session.on_teardown(self.close)

    # ------------------------------------------------------------------
    # Observation
    # ------------------------------------------------------------------

    @property
    def state(self) -> CallState:
        if self._attempt is None:
            return CallState.IDLE
        return self._attempt.state

    @property
    def current(self) -> Optional[CallSession]:
        return self._attempt

    @property
    def is_pending(self) -> bool:
        return self._pending or self.state in (CallState.REQUESTING, CallState.RINGING)

    def add_listener(self, listener: Callable[[CallNotice], None]) -> None:
        self._listeners.append(listener)

    def _notify(self, kind: str, room_id: Optional[str], message: str, error: Optional[ConsentLinkError] = None):
        notice = CallNotice(kind, room_id, message, error)
        for listener in list(self._listeners):
            try:
                listener(notice)
            except Exception:
                logger.exception("Call listener failed on %s", kind)

    async def wait(self) -> CallSession:
        """
        Wait for the current attempt to connect or finish. Returns the attempt
        (CONNECTED, REJECTED or CANCELLED) or raises the error that ended it.
        """
        attempt = self._attempt
        if attempt is None:
            if self.last_attempt is None:
                raise InvalidTransition("There is no call attempt to wait for.")
            if self.last_attempt.error is not None:
                raise self.last_attempt.error
            return self.last_attempt
        if attempt.state == CallState.CONNECTED:
            return attempt
        future = asyncio.get_running_loop().create_future()
        self._waiters.append((attempt, future))
        return await future

    # ------------------------------------------------------------------
    # State bookkeeping
    # ------------------------------------------------------------------

    def _transition(self, attempt: CallSession, target: CallState) -> None:
        allowed = TRANSITIONS.get(attempt.state, frozenset())
        if target not in allowed:
            raise InvalidTransition(
                f"Call {attempt.room_id} cannot move from {attempt.state.value} to {target.value}."
            )
        logger.info("Call %s: %s -> %s", attempt.room_id, attempt.state.value, target.value)
        attempt.state = target
        attempt.history.append(target)

    def _is_live(self, attempt: CallSession, state: CallState) -> bool:
        return attempt is self._attempt and attempt.state == state

    def _match(self, payload: Dict[str, Any], direction: str, *states: CallState) -> Optional[CallSession]:
        attempt = self._attempt
        if attempt is None or attempt.room_id != payload.get("roomId"):
            return None
        if attempt.direction != direction or attempt.state not in states:
            return None
        return attempt

    def _ensure_open(self) -> None:
        """Raise once the coordinator or its session has been closed."""
        if self._closed:
            raise InvalidTransition("The call was abandoned because the session ended.")
        self.session.require_active()

    def _begin(self, attempt: CallSession) -> None:
        self._attempt = attempt

    def _resolve_waiters(self, attempt: CallSession) -> None:
        remaining = []
        for owner, future in self._waiters:
            if owner is not attempt:
                remaining.append((owner, future))
                continue
            if future.done():
                continue
            if attempt.error is not None:
                future.set_exception(attempt.error)
            else:
                future.set_result(attempt)
        self._waiters = remaining

    def _finish(self, attempt: CallSession, error: Optional[ConsentLinkError] = None) -> None:
        """End the attempt. Non-terminal states fall back to IDLE."""
        if attempt.state not in TERMINAL_STATES:
            self._transition(attempt, CallState.IDLE)
        attempt.error = error
        if self._attempt is attempt:
            self._cancel_timer()
            self._attempt = None
            self.last_attempt = attempt
        self._resolve_waiters(attempt)

    def _start_timer(self, attempt: CallSession) -> None:
        self._cancel_timer()
        self._timer = asyncio.get_running_loop().create_task(self._expire(attempt))

    def _cancel_timer(self) -> None:
        timer, self._timer = self._timer, None
        if timer is not None and timer is not asyncio.current_task() and not timer.done():
            timer.cancel()

    async def _expire(self, attempt: CallSession) -> None:
        await asyncio.sleep(self.timeout_seconds)
        if attempt is not self._attempt or attempt.state not in WAITING_STATES:
            return
        self._timer = None
        await self._time_out(attempt, notify_remote=True)

    async def _time_out(self, attempt: CallSession, notify_remote: bool) -> None:
        self._transition(attempt, CallState.TIMED_OUT)
        if notify_remote:
            await self._safe_emit(CALL_TIMED_OUT, {"roomId": attempt.room_id})
        error = TimedOut()
        self._finish(attempt, error)
        self._notify("timed_out", attempt.room_id, error.message, error)

    async def _safe_emit(self, event: str, payload: Dict[str, Any]) -> bool:
        """Emit where a failure must not mask the outcome already decided locally."""
        try:
            await self.channel.emit(event, payload)
            return True
        except Exception as exc:
            logger.warning("Could not emit %s for %s: %s", event, payload.get("roomId"), exc)
            return False

    async def _safe_leave(self, media: Optional[MediaSession]) -> None:
        if media is None:
            return
        try:
            await self.media.leave(media)
        except Exception as exc:
            logger.warning("Leaving media room %s failed: %s", media.room_id, exc)

    async def _abort(self, attempt: CallSession, error: ConsentLinkError, kind: str = "error") -> None:
        await self._safe_leave(attempt.media)
        attempt.media = None
        self._finish(attempt, error)
        self._notify(kind, attempt.room_id, error.message, error)

    def _pair_for(self, counterpart_id: str) -> Tuple[str, str]:
        """(patient_id, clinician_id) for a call between this session and ``counterpart_id``."""
        me = self.session.identity
        if self.session.role == Role.PATIENT:
            return me.short_id, counterpart_id
        return counterpart_id, me.short_id

    # ------------------------------------------------------------------
    # Caller side
    # ------------------------------------------------------------------

    async def request_call(self, counterpart_id: str) -> CallSession:
        """
        Start a call to ``counterpart_id``. Raises PermissionDenied (or
        LedgerUnavailable) without touching the signaling channel when the
        ledger does not confirm the grant.
        """
        self._ensure_open()
        identity = self.session.require(CAP_START_CALL)
        if self._pending or self.state in (CallState.REQUESTING, CallState.RINGING):
            raise InvalidTransition("A call request is already pending.")
        if self._attempt is not None:
            raise InvalidTransition("A call is already in progress.")

        self._pending = True
        try:
            counterpart_role = Role.CLINICIAN if self.session.role == Role.PATIENT else Role.PATIENT
            counterpart = await self.session.resolver.resolve(counterpart_id, counterpart_role)
            self._ensure_open()
            patient_id, clinician_id = self._pair_for(counterpart.short_id)

            decision = await self.gate.verify(clinician_id, patient_id)
            # Teardown may have run while the ledger read was outstanding
            self._ensure_open()
            if decision != AccessDecision.GRANTED:
                raise _gate_error(decision)

            now = utcnow()
            attempt = CallSession(
                room_id=generate_room_id(),
                caller_id=identity.short_id,
                callee_id=counterpart.short_id,
                patient_id=patient_id,
                clinician_id=clinician_id,
                direction=OUTGOING,
                counterparty=self.session.resolver.counterparty(counterpart.wallet_address),
                requested_at=now,
                expires_at=now + timedelta(seconds=self.timeout_seconds),
            )
            self._begin(attempt)
            self._transition(attempt, CallState.REQUESTING)
            try:
                await self.channel.emit(
                    CALL_REQUEST,
                    {
                        "roomId": attempt.room_id,
                        "fromHH": identity.short_id,
                        "toHH": counterpart.short_id,
                        "fromWallet": self.session.wallet_address,
                        "toWallet": counterpart.wallet_address,
                        "role": self.session.role,
                    },
                )
            except Exception as exc:
                error = SignalingUnavailable(f"Error starting video call: {exc}")
                self._finish(attempt, error)
                raise error from exc

            if self._is_live(attempt, CallState.REQUESTING):
                self._start_timer(attempt)
            self._notify("requesting", attempt.room_id, "Call request sent. Waiting for recipient...")
            return attempt
        finally:
            self._pending = False

    async def cancel(self) -> None:
        """Withdraw a pending request, or decline a ringing one."""
        attempt = self._attempt
        if attempt is None or attempt.state not in WAITING_STATES:
            raise InvalidTransition("There is no pending call to cancel.")
        if attempt.direction == INCOMING and attempt.state == CallState.RINGING:
            await self.decline_incoming()
            return
        self._transition(attempt, CallState.CANCELLED)
        await self._safe_emit(CALL_CANCELLED, {"roomId": attempt.room_id, "reason": "cancelled"})
        await self._safe_leave(attempt.media)
        self._finish(attempt)
        self._notify("cancelled", attempt.room_id, "Call request cancelled.")

    async def _on_call_accept(self, payload: Dict[str, Any]) -> None:
        attempt = self._match(payload, OUTGOING, CallState.REQUESTING)
        if attempt is None:
            logger.debug("Ignoring call_accept for room %s", payload.get("roomId"))
            return
        self._cancel_timer()
        self._transition(attempt, CallState.ACCEPTED)
        self._notify("accepted", attempt.room_id, "Call accepted. Connecting...")
        await self._promote(attempt, announce=True)

    async def _on_call_reject(self, payload: Dict[str, Any]) -> None:
        attempt = self._match(payload, OUTGOING, CallState.REQUESTING)
        if attempt is None:
            logger.debug("Ignoring call_reject for room %s", payload.get("roomId"))
            return
        reason = payload.get("reason") or "declined"
        self._transition(attempt, CallState.REJECTED)
        self._finish(attempt)
        message = "Recipient is busy on another call." if reason == "busy" else "Call was rejected."
        self._notify("rejected", attempt.room_id, message)

    async def _on_recipient_offline(self, payload: Dict[str, Any]) -> None:
        attempt = self._match(payload, OUTGOING, CallState.REQUESTING)
        if attempt is None:
            return
        error = RecipientOffline()
        self._finish(attempt, error)
        self._notify("offline", attempt.room_id, error.message, error)

    # ------------------------------------------------------------------
    # Callee side
    # ------------------------------------------------------------------

    async def _on_incoming_call(self, payload: Dict[str, Any]) -> None:
        room_id = payload.get("roomId")
        from_id = payload.get("fromHH")
        from_wallet = payload.get("fromWallet") or ""
        if self.session.role not in (Role.PATIENT, Role.CLINICIAN) or not room_id or not from_id:
            await self._safe_emit(CALL_REJECT, {"roomId": room_id, "reason": "unsupported"})
            return
        if self._pending or self._attempt is not None:
            await self._safe_emit(CALL_REJECT, {"roomId": room_id, "reason": "busy"})
            self._notify("busy", room_id, "Declined an incoming call while another call is active.")
            return

        caller_role = Role.CLINICIAN if self.session.role == Role.PATIENT else Role.PATIENT
        try:
            await self.session.resolver.find(from_id, caller_role)
        except ConsentLinkError as exc:
            logger.warning("Could not resolve caller %s: %s", from_id, exc)
        if self._closed:
            logger.info("Dropping incoming call %s after close", room_id)
            return
        counterparty = self.session.resolver.counterparty(from_wallet)
        if counterparty.identity is not None and counterparty.identity.short_id != from_id:
            counterparty = Counterparty(wallet_address=from_wallet)

        patient_id, clinician_id = self._pair_for(from_id)
        now = utcnow()
        attempt = CallSession(
            room_id=room_id,
            caller_id=from_id,
            callee_id=self.session.identity.short_id,
            patient_id=patient_id,
            clinician_id=clinician_id,
            direction=INCOMING,
            counterparty=counterparty,
            requested_at=now,
            expires_at=now + timedelta(seconds=self.timeout_seconds),
        )
        self._begin(attempt)
        self._transition(attempt, CallState.RINGING)
        self._start_timer(attempt)
        self._notify("incoming", room_id, f"Incoming call from {counterparty.display_name}.")

    async def accept_incoming(self) -> CallSession:
        attempt = self._attempt
        if attempt is None or attempt.direction != INCOMING or attempt.state != CallState.RINGING:
            raise InvalidTransition("There is no incoming call to accept.")

        decision = await self.gate.verify(attempt.clinician_id, attempt.patient_id)
        if not self._is_live(attempt, CallState.RINGING):
            raise InvalidTransition("The call is no longer available.")
        if decision != AccessDecision.GRANTED:
            error = _gate_error(decision)
            await self._safe_emit(CALL_REJECT, {"roomId": attempt.room_id, "reason": "permission"})
            self._transition(attempt, CallState.REJECTED)
            self._finish(attempt, error)
            self._notify("error", attempt.room_id, error.message, error)
            raise error

        self._transition(attempt, CallState.ACCEPTED)
        if not await self._safe_emit(CALL_ACCEPT, {"roomId": attempt.room_id}):
            error = SignalingUnavailable("Error accepting call. Please try again.")
            self._finish(attempt, error)
            raise error
        self._notify("accepted", attempt.room_id, "Accepting call...")
        return attempt

    async def decline_incoming(self) -> None:
        attempt = self._attempt
        if attempt is None or attempt.direction != INCOMING or attempt.state != CallState.RINGING:
            raise InvalidTransition("There is no incoming call to decline.")
        self._transition(attempt, CallState.REJECTED)
        await self._safe_emit(CALL_REJECT, {"roomId": attempt.room_id, "reason": "declined"})
        self._finish(attempt)
        self._notify("rejected", attempt.room_id, "Declined call.")

    async def _on_call_started(self, payload: Dict[str, Any]) -> None:
        attempt = self._match(payload, INCOMING, CallState.ACCEPTED)
        if attempt is None:
            logger.debug("Ignoring call_started for room %s", payload.get("roomId"))
            return
        self._cancel_timer()
        await self._promote(attempt, announce=False)

    # ------------------------------------------------------------------
    # Both sides
    # ------------------------------------------------------------------

    async def _promote(self, attempt: CallSession, announce: bool) -> None:
        """ACCEPTED -> CONNECTED: re-verify access, then join the shared room."""
        decision = await self.gate.verify(attempt.clinician_id, attempt.patient_id)
        if not self._is_live(attempt, CallState.ACCEPTED):
            return
        if decision != AccessDecision.GRANTED:
            error = _gate_error(decision)
            await self._safe_emit(CALL_ERROR, {"roomId": attempt.room_id, "message": error.message})
            await self._abort(attempt, error)
            return

        try:
            media = await self.media.join(attempt.room_id, self.session.identity)
        except MediaSessionError as exc:
            await self._safe_emit(CALL_ERROR, {"roomId": attempt.room_id, "message": exc.message})
            await self._abort(attempt, exc)
            return
        except Exception as exc:
            error = MediaSessionError(f"Error connecting to call: {exc}")
            await self._safe_emit(CALL_ERROR, {"roomId": attempt.room_id, "message": error.message})
            await self._abort(attempt, error)
            return

        if not self._is_live(attempt, CallState.ACCEPTED):
            await self._safe_leave(media)
            return
        attempt.media = media

        if announce and not await self._safe_emit(CALL_STARTED, {"roomId": attempt.room_id}):
            await self._abort(attempt, SignalingUnavailable("Lost the call server while connecting."))
            return

        self._transition(attempt, CallState.CONNECTED)
        self._resolve_waiters(attempt)
        self._notify("connected", attempt.room_id, "Video call connected.")

    async def _on_call_cancelled(self, payload: Dict[str, Any]) -> None:
        attempt = self._attempt
        if attempt is None or attempt.room_id != payload.get("roomId"):
            return
        if attempt.state == CallState.CONNECTED:
            await self._end(attempt, None, notify_remote=False, message="The other party left the call.")
            return
        if attempt.state not in WAITING_STATES:
            return
        self._transition(attempt, CallState.CANCELLED)
        await self._safe_leave(attempt.media)
        self._finish(attempt)
        self._notify("cancelled", attempt.room_id, "The other party cancelled the call.")

    async def _on_call_timed_out(self, payload: Dict[str, Any]) -> None:
        attempt = self._attempt
        if attempt is None or attempt.room_id != payload.get("roomId"):
            return
        if attempt.state == CallState.CONNECTED:
            # The peer gave up just as this side promoted; nobody is left on the other end
            error = TimedOut("The other party's call request timed out before the call connected.")
            await self._end(attempt, error, notify_remote=False, message=error.message)
            return
        if attempt.state not in WAITING_STATES:
            return
        await self._time_out(attempt, notify_remote=False)

    async def _on_call_error(self, payload: Dict[str, Any]) -> None:
        attempt = self._attempt
        if attempt is None or attempt.room_id != payload.get("roomId"):
            return
        message = payload.get("message") or "Call error."
        if attempt.state == CallState.CONNECTED:
            await self._end(attempt, MediaSessionError(message), notify_remote=False, message=message)
            return
        await self._abort(attempt, SignalingUnavailable(message))

    async def _end(
        self,
        attempt: CallSession,
        error: Optional[ConsentLinkError],
        notify_remote: bool,
        message: str,
    ) -> None:
        await self._safe_leave(attempt.media)
        attempt.media = None
        self._transition(attempt, CallState.ENDED)
        if notify_remote:
            await self._safe_emit(CALL_CANCELLED, {"roomId": attempt.room_id, "reason": "left"})
        self._finish(attempt, error)
        self._notify("ended", attempt.room_id, message, error)

    async def leave(self) -> None:
        attempt = self._attempt
        if attempt is None or attempt.state != CallState.CONNECTED:
            raise InvalidTransition("You are not in a call.")
        await self._end(attempt, None, notify_remote=True, message="You left the call.")

    async def handle_media_left(self, room_id: str, error: Optional[Exception] = None) -> None:
        """The media SDK reports the session dropped or was left from its own controls."""
        attempt = self._attempt
        if attempt is None or attempt.room_id != room_id or attempt.state != CallState.CONNECTED:
            return
        failure = MediaSessionError(f"Media session ended: {error}") if error else None
        await self._end(attempt, failure, notify_remote=True, message="The call has ended.")

    def handle_media_invite(self, room_id: str, from_user_id: Optional[str] = None) -> None:
        """
        Invite surfaced by the media SDK. Informational only: accepting is
        driven exclusively by the signaling channel's incoming_call.
        """
        attempt = self._attempt
        if attempt is not None and attempt.room_id == room_id:
            logger.debug("Media invite for current room %s ignored", room_id)
            return
        logger.info("Media invite for room %s from %s has no signaling counterpart", room_id, from_user_id)
        self._notify("media_invite", room_id, "A call invite arrived without a matching call request.")

    async def abort(self) -> None:
        """Leave whatever is in progress, telling the other side. Used on navigation."""
        attempt = self._attempt
        if attempt is None:
            return
        if attempt.state == CallState.CONNECTED:
            await self.leave()
        elif attempt.state in WAITING_STATES:
            await self.cancel()

    async def close(self) -> None:
        self._closed = True
        await self.abort()
        self._cancel_timer()
        for event, handler in self._handlers.items():
            self.channel.off(event, handler)
