"""Device session state machine.

The machine is a pure function of ``(Machine, MachineEvent)``. It never touches
a transport; callers execute the returned effects in order.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from enum import Enum


class ConnectionState(Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    CONFIGURING = "configuring"
    READY = "ready"
    DISCONNECTED = "disconnected"
    FAILED = "failed"


class MachineEvent(Enum):
    OPEN = "open"
    LINK_CONNECTED = "link_connected"
    RETRY_DUE = "retry_due"
    CONFIGURED = "configured"
    POLL_CONFIGURED = "poll_configured"
    LINK_DISCONNECTED = "link_disconnected"
    TIMEOUT = "timeout"
    CLOSE = "close"


class Effect(Enum):
    REQUEST_CONFIG = "request_config"
    SCHEDULE_CONFIG_RETRY = "schedule_config_retry"
    MARK_READY = "mark_ready"
    FAIL_TIMEOUT = "fail_timeout"
    FAIL_DISCONNECTED = "fail_disconnected"
    CLOSE_TRANSPORT = "close_transport"
    NOTIFY_DISCONNECTED = "notify_disconnected"


HANDSHAKE_STATES = frozenset(
    {ConnectionState.CONNECTING, ConnectionState.CONNECTED, ConnectionState.CONFIGURING}
)
TERMINAL_STATES = frozenset({ConnectionState.DISCONNECTED, ConnectionState.FAILED})


@dataclass(frozen=True, slots=True)
class Machine:
    state: ConnectionState = ConnectionState.IDLE
    config_retried: bool = False
    transport_closed: bool = False


Transition = tuple[Machine, tuple[Effect, ...]]


def _fail(machine: Machine, reason: Effect) -> Transition:
    effects = (reason,) if machine.transport_closed else (reason, Effect.CLOSE_TRANSPORT)
    return replace(machine, state=ConnectionState.FAILED, transport_closed=True), effects


def transition(machine: Machine, event: MachineEvent) -> Transition:
    """Advance the machine by one event. Unexpected events leave it unchanged."""
    state = machine.state

    if event is MachineEvent.CLOSE:
        skip_close = machine.transport_closed or state is ConnectionState.IDLE
        effects = () if skip_close else (Effect.CLOSE_TRANSPORT,)
        next_state = state if state is ConnectionState.FAILED else ConnectionState.DISCONNECTED
        return replace(machine, state=next_state, transport_closed=True), effects

    if state is ConnectionState.IDLE:
        if event is MachineEvent.OPEN:
            return replace(machine, state=ConnectionState.CONNECTING), ()
        return machine, ()

    if state in HANDSHAKE_STATES:
        if event is MachineEvent.LINK_CONNECTED:
            if state is ConnectionState.CONNECTING and not machine.config_retried:
                # The first config request can race the link coming up; re-issue it once.
                return (
                    replace(machine, state=ConnectionState.CONNECTED, config_retried=True),
                    (Effect.SCHEDULE_CONFIG_RETRY,),
                )
            if state is ConnectionState.CONNECTING:
                return replace(machine, state=ConnectionState.CONNECTED), ()
            return machine, ()
        if event is MachineEvent.RETRY_DUE:
            return replace(machine, state=ConnectionState.CONFIGURING), (Effect.REQUEST_CONFIG,)
        if event in (MachineEvent.CONFIGURED, MachineEvent.POLL_CONFIGURED):
            return replace(machine, state=ConnectionState.READY), (Effect.MARK_READY,)
        if event is MachineEvent.TIMEOUT:
            return _fail(machine, Effect.FAIL_TIMEOUT)
        if event is MachineEvent.LINK_DISCONNECTED:
            return _fail(machine, Effect.FAIL_DISCONNECTED)
        return machine, ()

    if state is ConnectionState.READY:
        if event is MachineEvent.LINK_DISCONNECTED:
            disconnected = replace(machine, state=ConnectionState.DISCONNECTED)
            return disconnected, (Effect.NOTIFY_DISCONNECTED,)
        return machine, ()

    return machine, ()
