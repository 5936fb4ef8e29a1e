"""
Event dispatcher for the push reception model.

Observers are plain callables registered per event name. Dispatch is
synchronous: ``emit`` returns only after every observer for the event ran,
in registration order.

Unhandled error policy:
    When ``error`` is emitted and no ``error`` observer is registered, the
    dispatcher raises the error from ``emit`` if ``raise_unhandled_errors`` is
    True (the default), or logs it at ERROR level otherwise. Register an
    ``error`` observer before ``start_listening`` to avoid the raise.
"""
import logging
from typing import Any, Callable, Dict, List, Optional, Tuple

from canstream import metrics
from canstream.constants import EVENT_ERROR, EVENT_NAMES
from canstream.exceptions import ErrorCode, SocketCanError

logger = logging.getLogger(__name__)

Observer = Callable[..., Any]


class EventDispatcher:
    """Observer registry keyed by event name.

    Attributes:
        raise_unhandled_errors: Raise ``error`` events nobody observes
    """

    def __init__(self, raise_unhandled_errors: bool = True):
        self.raise_unhandled_errors = raise_unhandled_errors
        # (observer, once) pairs per event, in registration order
        self._observers: Dict[str, List[Tuple[Observer, bool]]] = {name: [] for name in EVENT_NAMES}

    @staticmethod
    def _check_event(event: str) -> None:
        if event not in EVENT_NAMES:
            raise SocketCanError(
                f"Unknown event: {event!r}. Must be one of {', '.join(sorted(EVENT_NAMES))}",
                ErrorCode.INVALID_PARAMETERS,
            )

    def on(self, event: str, observer: Observer) -> "EventDispatcher":
        self._check_event(event)
        self._observers[event].append((observer, False))
        return self

    def once(self, event: str, observer: Observer) -> "EventDispatcher":
        self._check_event(event)
        self._observers[event].append((observer, True))
        return self

    def off(self, event: str, observer: Observer) -> "EventDispatcher":
        """Remove the most recently added registration of ``observer``."""
        self._check_event(event)
        entries = self._observers[event]
        for idx in range(len(entries) - 1, -1, -1):
            if entries[idx][0] is observer or entries[idx][0] == observer:
                del entries[idx]
                break
        return self

    def remove_all(self, event: Optional[str] = None) -> None:
        if event is None:
            for entries in self._observers.values():
                entries.clear()
            return
        self._check_event(event)
        self._observers[event].clear()

    def observer_count(self, event: str) -> int:
        self._check_event(event)
        return len(self._observers[event])

    def emit(self, event: str, *args: Any) -> bool:
        """Invoke every observer of ``event``; return True if there was one.

        Observer failures don't stop later observers. Once all ran, each
        failure is logged and re-emitted as an ``error`` event coded
        OBSERVER_ERROR (failures of ``error`` observers are only logged).
        """
        self._check_event(event)
        entries = list(self._observers[event])
        if not entries:
            if event == EVENT_ERROR:
                self._unhandled(args[0] if args else None)
            return False

        # drop once-observers before calling them so re-entrant emits skip them
        self._observers[event] = [e for e in self._observers[event] if not e[1]]

        failures = []
        for observer, _once in entries:
            try:
                observer(*args)
            except Exception as e:
                logger.error(f"Observer {observer!r} for '{event}' raised: {e}", exc_info=True)
                metrics.inc("observer_errors")
                failures.append(e)

        if event != EVENT_ERROR:
            for e in failures:
                self.emit(EVENT_ERROR, SocketCanError(
                    f"Observer for '{event}' event raised: {e}",
                    ErrorCode.OBSERVER_ERROR,
                    operation=event,
                    original_error=e,
                ))
        return True

    def _unhandled(self, error: Any) -> None:
        if not isinstance(error, BaseException):
            error = SocketCanError(f"Unhandled error event: {error!r}", ErrorCode.LISTENING_ERROR)
        if self.raise_unhandled_errors:
            raise error
        logger.error(f"Unhandled error event (no 'error' observer registered): {error}")
