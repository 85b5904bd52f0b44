"""Cooperative cancellation shared by the scheduler, runner and signal handlers."""
from __future__ import annotations

import logging
import signal
import threading
from types import FrameType
from typing import Any, Dict, Sequence

logger = logging.getLogger(__name__)


def _default_signals() -> tuple[signal.Signals, ...]:
    names = ("SIGINT", "SIGTERM", "SIGQUIT")
    return tuple(getattr(signal, name) for name in names if hasattr(signal, name))


class CancellationToken:
    """One-shot cancellation flag that is safe to share between threads."""

    def __init__(self) -> None:
        self._event = threading.Event()
        self._lock = threading.RLock()
        self._reason: str | None = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> str | None:
        return self._reason

    def cancel(self, reason: str | None = None) -> bool:
        """Fire the token. Returns ``True`` only for the call that fired it."""

        with self._lock:
            if self._event.is_set():
                return False
            self._reason = reason
            self._event.set()
        return True

    def wait(self, timeout: float | None = None) -> bool:
        return self._event.wait(timeout)

    def __repr__(self) -> str:  # pragma: no cover - debugging helper
        state = f"cancelled ({self._reason})" if self.cancelled else "active"
        return f"<CancellationToken {state}>"


class CancellationController:
    """Translate termination signals into a single firing of a token.

    The controller is owned by the top-level run: it is started once, fires
    the token on the first signal it receives, ignores any later signals and
    restores the previous handlers when closed. It never stops workers
    itself; the runner terminates child processes and the scheduler stops
    issuing trials once the token has fired.

    Signal handlers can only be installed from the main thread, so
    :meth:`start` must be called there.
    """

    def __init__(
        self,
        token: CancellationToken,
        signals: Sequence[signal.Signals] | None = None,
    ) -> None:
        self.token = token
        self._signals: tuple[signal.Signals, ...] = (
            tuple(signals) if signals is not None else _default_signals()
        )
        self._previous: Dict[signal.Signals, Any] = {}
        self._lock = threading.RLock()
        self._received: signal.Signals | None = None
        self._started = False
        self._closed = False

    @property
    def received_signal(self) -> signal.Signals | None:
        """The signal that fired the token, if any."""

        return self._received

    @property
    def active(self) -> bool:
        return self._started and not self._closed

    def start(self) -> "CancellationController":
        if self._started:
            return self
        for sig in self._signals:
            self._previous[sig] = signal.signal(sig, self._handle)
        self._started = True
        logger.debug(
            "Cancellation handlers installed for %s",
            ", ".join(sig.name for sig in self._signals),
        )
        return self

    def close(self) -> None:
        if not self._started or self._closed:
            return
        for sig, previous in self._previous.items():
            # Handlers set from C code come back as None and cannot be reinstalled.
            signal.signal(sig, previous if previous is not None else signal.SIG_DFL)
        self._previous.clear()
        self._closed = True
        logger.debug("Cancellation handlers restored")

    def trigger(self, sig: signal.Signals | int) -> bool:
        """Fire the token on behalf of ``sig``; later calls have no effect."""

        resolved = signal.Signals(sig)
        with self._lock:
            if self._received is not None or self.token.cancelled:
                logger.debug("Ignoring %s; cancellation already requested", resolved.name)
                return False
            self._received = resolved
        fired = self.token.cancel(reason=f"signal:{resolved.name}")
        if fired:
            logger.warning("Caught %s; cancelling running trials", resolved.name)
        return fired

    def _handle(self, signum: int, frame: FrameType | None) -> None:
        self.trigger(signum)

    def __enter__(self) -> "CancellationController":
        return self.start()

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()


__all__ = ["CancellationController", "CancellationToken"]
