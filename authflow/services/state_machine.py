"""
Flow State-Machine Kernel.

Each flow (password sign-in, OTP sign-in, reset) is one instance of
``FlowStateMachine`` parametrised by its state enum and an explicit
transition table.  A transition not listed in the table raises
``IllegalTransition``; flows never assign their state directly.

``InFlightGuard`` is the per-challenge action slot: while one backend
call (send, verify, submit) is awaiting a response, a second one on the
same slot is refused with ``ActionInFlight``.
"""

from __future__ import annotations

from collections.abc import Iterator, Mapping
from contextlib import contextmanager
from enum import StrEnum
from typing import Generic, Optional, TypeVar

from authflow.exceptions import ActionInFlight, IllegalTransition
from authflow.logger import StructuredLogger

S = TypeVar("S", bound=StrEnum)

TransitionTable = Mapping[S, frozenset[S]]


class FlowStateMachine(Generic[S]):
    """Explicit-transition state holder for one flow instance.

    Parameters
    ----------
    flow_key:
        Identifier of the flow instance, used in logs and errors.
    initial:
        Starting state.
    transitions:
        ``{from_state: allowed target states}``.  States absent from the
        table are terminal.
    logger:
        Structured logger instance.
    """

    def __init__(
        self,
        flow_key: str,
        initial: S,
        transitions: TransitionTable[S],
        logger: StructuredLogger,
    ) -> None:
        self._flow_key = flow_key
        self._state: S = initial
        self._transitions = transitions
        self._logger = logger

    @property
    def state(self) -> S:
        return self._state

    def can(self, target: S) -> bool:
        return target in self._transitions.get(self._state, frozenset())

    def transition(self, target: S) -> S:
        """Move to *target*, or raise ``IllegalTransition``."""
        if not self.can(target):
            self._logger.error(
                "Illegal transition %s -> %s",
                self._state,
                target,
                extra={"flow_key": self._flow_key},
            )
            raise IllegalTransition(self._flow_key, str(self._state), str(target))
        self._logger.debug(
            "%s -> %s",
            self._state,
            target,
            extra={"flow_key": self._flow_key},
        )
        self._state = target
        return target


class InFlightGuard:
    """One exclusive action slot.

    Usage::

        with guard.hold("send"):
            await backend.send_otp(...)
    """

    def __init__(self) -> None:
        self._busy: Optional[str] = None

    @property
    def busy(self) -> Optional[str]:
        """Name of the action currently in flight, if any."""
        return self._busy

    @contextmanager
    def hold(self, action: str) -> Iterator[None]:
        if self._busy is not None:
            raise ActionInFlight(action, self._busy)
        self._busy = action
        try:
            yield
        finally:
            self._busy = None
