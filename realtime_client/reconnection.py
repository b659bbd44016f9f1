"""Client-side reconnection state machine.

The controller owns no sockets and no timers. Callers feed it signals
(``handle``) and the current time (``tick``) and execute the actions it
returns, which keeps backoff and cooldown logic testable with a fake
clock.

Legal transitions are declared on ``ReconnectMachine``; a signal with no
transition from the current state is ignored. Attempt counters, deadlines
and channel bookkeeping stay on ``ReconnectController``.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Set

import structlog
from pydantic import BaseModel, ConfigDict, Field, model_validator
from statemachine import State, StateMachine
from statemachine.exceptions import TransitionNotAllowed


logger = structlog.get_logger(__name__)


class ReconnectPolicy(BaseModel):
    """Backoff tuning, in seconds."""

    model_config = ConfigDict(frozen=True)

    base_delay: float = Field(default=3.0, gt=0)
    multiplier: float = Field(default=2.0, ge=1.0)
    max_delay: float = Field(default=15.0, gt=0)
    # minimum gap between two attempt starts, whatever the cause
    min_interval: float = Field(default=10.0, ge=0)
    max_attempts: int = Field(default=3, ge=1)
    extended_cooldown: float = Field(default=30.0, ge=0)

    @model_validator(mode="after")
    def _check_cap(self):
        if self.max_delay < self.base_delay:
            raise ValueError("max_delay must be >= base_delay")
        return self

    def delay_for(self, attempt: int) -> float:
        """Backoff before attempt number ``attempt + 1``; capped."""
        n = max(1, int(attempt))
        return min(self.max_delay, self.base_delay * (self.multiplier ** (n - 1)))


class ReconnectState(str, Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    AUTHENTICATING = "authenticating"
    CONNECTED = "connected"
    BACKOFF = "backoff"
    COOLDOWN = "cooldown"
    AWAITING_CREDENTIAL = "awaiting_credential"


class Signal(str, Enum):
    CONNECT = "connect"
    TRANSPORT_OPENED = "transport_opened"
    TRANSPORT_FAILED = "transport_failed"
    TRANSPORT_CLOSED = "transport_closed"
    AUTHENTICATED = "authenticated"
    AUTH_ERROR = "auth_error"
    RATE_LIMITED = "rate_limited"
    CREDENTIAL_REFRESHED = "credential_refreshed"
    CREDENTIAL_REFRESH_FAILED = "credential_refresh_failed"
    DISCONNECT = "disconnect"


class ActionType(str, Enum):
    OPEN_TRANSPORT = "open_transport"
    SEND_AUTHENTICATE = "send_authenticate"
    REJOIN_CHANNELS = "rejoin_channels"
    REQUEST_CATCH_UP = "request_catch_up"
    REFRESH_CREDENTIAL = "refresh_credential"
    SURFACE_AUTH_ERROR = "surface_auth_error"
    CLOSE_TRANSPORT = "close_transport"


@dataclass(frozen=True)
class Action:
    type: ActionType
    data: Dict[str, Any] = field(default_factory=dict)


_ACTIVE = (ReconnectState.CONNECTING, ReconnectState.AUTHENTICATING, ReconnectState.CONNECTED)
_WAITING = (ReconnectState.BACKOFF, ReconnectState.COOLDOWN)


class ReconnectMachine(StateMachine):
    """
    States:
    - idle: 未连接，也不会自动重连
    - connecting: 正在建立 transport
    - authenticating: transport 已建立，等待 authenticated / auth-error
    - connected: 已认证，正在接收事件
    - backoff: 等待下一次重连
    - cooldown: 连续失败达到 max_attempts 后的长等待
    - awaiting_credential: 凭证被拒绝，等待刷新或由调用方处理

    Transitions:
    - idle -> connecting: connect
    - connecting -> authenticating: opened
    - authenticating -> connected: authenticated
    - connecting / authenticating / connected -> backoff | cooldown: transport_lost, rate_limited
    - backoff / cooldown -> connecting: retry
    - connecting / authenticating -> awaiting_credential: auth_rejected
    - awaiting_credential -> backoff: credential_refreshed
    - any -> idle: disconnect
    """

    idle = State("Idle", initial=True)
    connecting = State("Connecting")
    authenticating = State("Authenticating")
    connected = State("Connected")
    backoff = State("Backoff")
    cooldown = State("Cooldown")
    awaiting_credential = State("Awaiting credential")

    connect = idle.to(connecting)
    opened = connecting.to(authenticating)
    authenticated = authenticating.to(connected)
    transport_lost = (
        connecting.to(cooldown, cond="attempts_exhausted")
        | connecting.to(backoff)
        | authenticating.to(cooldown, cond="attempts_exhausted")
        | authenticating.to(backoff)
        | connected.to(cooldown, cond="attempts_exhausted")
        | connected.to(backoff)
    )
    rate_limited = (
        connecting.to(cooldown, cond="attempts_exhausted")
        | connecting.to(backoff)
        | authenticating.to(cooldown, cond="attempts_exhausted")
        | authenticating.to(backoff)
        | connected.to(cooldown, cond="attempts_exhausted")
        | connected.to(backoff)
        | backoff.to.itself()
        | cooldown.to.itself()
    )
    retry = backoff.to(connecting) | cooldown.to(connecting)
    auth_rejected = connecting.to(awaiting_credential) | authenticating.to(awaiting_credential)
    credential_refreshed = awaiting_credential.to(backoff)
    refresh_failed = awaiting_credential.to.itself()
    disconnect = (
        idle.to.itself()
        | connecting.to(idle)
        | authenticating.to(idle)
        | connected.to(idle)
        | backoff.to(idle)
        | cooldown.to(idle)
        | awaiting_credential.to(idle)
    )

    def __init__(self, controller: "ReconnectController") -> None:
        # 必须在 super().__init__() 之前设置，条件函数会读取它
        self.controller = controller
        super().__init__()

    def attempts_exhausted(self) -> bool:
        return self.controller.attempts >= self.controller.policy.max_attempts

    def after_transition(self, event: str, source: State, target: State) -> None:
        if source is None or source is target:
            return
        logger.info(
            "reconnect_state_changed",
            trigger_event=str(event),
            from_state=source.id,
            to_state=target.id,
            attempts=self.controller.attempts,
        )


_SIGNAL_EVENTS: Dict[Signal, str] = {
    Signal.CONNECT: "connect",
    Signal.TRANSPORT_OPENED: "opened",
    Signal.TRANSPORT_FAILED: "transport_lost",
    Signal.TRANSPORT_CLOSED: "transport_lost",
    Signal.AUTHENTICATED: "authenticated",
    Signal.AUTH_ERROR: "auth_rejected",
    Signal.RATE_LIMITED: "rate_limited",
    Signal.CREDENTIAL_REFRESHED: "credential_refreshed",
    Signal.CREDENTIAL_REFRESH_FAILED: "refresh_failed",
    Signal.DISCONNECT: "disconnect",
}


class ReconnectController:
    def __init__(self, policy: Optional[ReconnectPolicy] = None) -> None:
        self.policy = policy or ReconnectPolicy()
        self.attempts = 0
        self.last_attempt_at: Optional[float] = None
        self.deadline: Optional[float] = None
        self.backoff_interval = 0.0
        self.last_event_id: Optional[str] = None
        self.last_auth_error: Optional[str] = None
        self._channels: Set[str] = set()
        self._machine = ReconnectMachine(self)
        self._handlers: Dict[Signal, Callable[..., List[Action]]] = {
            Signal.CONNECT: self._open,
            Signal.TRANSPORT_OPENED: self._on_opened,
            Signal.TRANSPORT_FAILED: self._on_failure,
            Signal.TRANSPORT_CLOSED: self._on_failure,
            Signal.AUTHENTICATED: self._on_authenticated,
            Signal.AUTH_ERROR: self._on_auth_error,
            Signal.RATE_LIMITED: self._on_rate_limited,
            Signal.CREDENTIAL_REFRESHED: self._on_credential,
            Signal.CREDENTIAL_REFRESH_FAILED: self._on_refresh_failed,
            Signal.DISCONNECT: self._on_disconnect,
        }

    @property
    def state(self) -> ReconnectState:
        return ReconnectState(self._machine.current_state.id)

    # ---------------- channel bookkeeping ----------------

    @property
    def channels(self) -> List[str]:
        return sorted(self._channels)

    def remember_channel(self, channel: str) -> None:
        self._channels.add(channel)

    def forget_channel(self, channel: str) -> None:
        self._channels.discard(channel)

    def record_event(self, event_id: str) -> None:
        self.last_event_id = event_id

    # ---------------- entry points ----------------

    def handle(self, signal: Signal, now: float, **data: Any) -> List[Action]:
        previous = self.state
        if not self._fire(_SIGNAL_EVENTS[signal], signal.value):
            return []
        return self._handlers[signal](now, previous, **data)

    def tick(self, now: float) -> List[Action]:
        """Fire the pending attempt once its deadline has passed."""
        previous = self.state
        if previous not in _WAITING or self.deadline is None or now < self.deadline:
            return []
        self._fire("retry", "tick")
        if previous is ReconnectState.COOLDOWN:
            logger.info("reconnect_cooldown_finished", attempts=self.attempts)
            self.attempts = 0
        return self._open(now, previous)

    def seconds_until_due(self, now: float) -> Optional[float]:
        if self.state not in _WAITING or self.deadline is None:
            return None
        return max(0.0, self.deadline - now)

    # ---------------- transitions ----------------

    def _fire(self, event: str, signal: str) -> bool:
        try:
            self._machine.send(event)
        except TransitionNotAllowed:
            logger.debug("reconnect_signal_ignored", state=self.state.value, signal=signal)
            return False
        return True

    def _open(self, now: float, previous: ReconnectState, **_: Any) -> List[Action]:
        self.attempts += 1
        self.last_attempt_at = now
        self.deadline = None
        return [Action(ActionType.OPEN_TRANSPORT, {"attempt": self.attempts})]

    def _on_opened(self, now: float, previous: ReconnectState, **_: Any) -> List[Action]:
        return [Action(ActionType.SEND_AUTHENTICATE)]

    def _on_authenticated(self, now: float, previous: ReconnectState, **_: Any) -> List[Action]:
        self.attempts = 0
        self.backoff_interval = 0.0
        self.deadline = None
        self.last_auth_error = None
        return [
            Action(ActionType.REJOIN_CHANNELS, {"channels": self.channels}),
            Action(ActionType.REQUEST_CATCH_UP, {"since_event_id": self.last_event_id}),
        ]

    def _floor(self, now: float) -> float:
        if self.last_attempt_at is None:
            return now
        return max(now, self.last_attempt_at + self.policy.min_interval)

    def _schedule(self, now: float, not_before: float = 0.0) -> None:
        # the machine has already picked backoff or cooldown from the attempt count
        if self.state is ReconnectState.COOLDOWN:
            wait = self.policy.extended_cooldown
        else:
            wait = self.policy.delay_for(self.attempts)
        self.deadline = max(now + wait, self._floor(now), not_before)
        self.backoff_interval = self.deadline - now
        logger.info(
            "reconnect_scheduled",
            state=self.state.value,
            attempts=self.attempts,
            delay=round(self.backoff_interval, 3),
        )

    def _on_failure(self, now: float, previous: ReconnectState, **_: Any) -> List[Action]:
        self._schedule(now)
        if previous is ReconnectState.AUTHENTICATING:
            # the pending credential check is abandoned with its transport
            return [Action(ActionType.CLOSE_TRANSPORT)]
        return []

    def _on_rate_limited(
        self, now: float, previous: ReconnectState, retry_after: float = 0.0, **_: Any
    ) -> List[Action]:
        target = now + max(0.0, float(retry_after))
        if previous in _WAITING:
            if self.deadline is None or target > self.deadline:
                self.deadline = target
                self.backoff_interval = target - now
                logger.info("reconnect_cooldown_extended", delay=round(self.backoff_interval, 3))
            return []
        self._schedule(now, not_before=target)
        return [Action(ActionType.CLOSE_TRANSPORT)]

    def _on_auth_error(
        self, now: float, previous: ReconnectState, kind: str = "invalid", **_: Any
    ) -> List[Action]:
        self.last_auth_error = kind
        self.deadline = None
        actions = [Action(ActionType.CLOSE_TRANSPORT)]
        if kind == "expired":
            actions.append(Action(ActionType.REFRESH_CREDENTIAL))
        else:
            logger.warning("reconnect_auth_rejected", kind=kind)
            actions.append(Action(ActionType.SURFACE_AUTH_ERROR, {"kind": kind}))
        return actions

    def _on_credential(self, now: float, previous: ReconnectState, **_: Any) -> List[Action]:
        self.last_auth_error = None
        self.deadline = self._floor(now)
        self.backoff_interval = self.deadline - now
        return []

    def _on_refresh_failed(self, now: float, previous: ReconnectState, **_: Any) -> List[Action]:
        return [Action(ActionType.SURFACE_AUTH_ERROR, {"kind": self.last_auth_error or "expired"})]

    def _on_disconnect(self, now: float, previous: ReconnectState, **_: Any) -> List[Action]:
        self.deadline = None
        self.attempts = 0
        self.backoff_interval = 0.0
        return [Action(ActionType.CLOSE_TRANSPORT)] if previous in _ACTIVE else []
