"""Activation observers: notifications after package state changes"""

import logging
import threading
from pathlib import Path
from typing import List

logger = logging.getLogger(__name__)


class ActivationObserver:
    """
    Base class for observers; override only the hooks you need

    Hooks run after the state change is durable. Exceptions raised by a
    hook are logged by the registry and never undo the change.
    """

    def on_activated(self, extension_key: str) -> None:
        pass

    def on_deactivated(self, extension_key: str) -> None:
        pass

    def on_data_imported(self, extension_key: str, import_path: Path) -> None:
        pass


class ObserverRegistry:
    """Explicit list of observers notified in registration order"""

    def __init__(self):
        self._observers: List[ActivationObserver] = []
        self._lock = threading.Lock()

    def register(self, observer: ActivationObserver) -> None:
        with self._lock:
            if observer not in self._observers:
                self._observers.append(observer)

    def unregister(self, observer: ActivationObserver) -> None:
        with self._lock:
            if observer in self._observers:
                self._observers.remove(observer)

    def __len__(self) -> int:
        return len(self._observers)

    def _notify(self, hook: str, *args) -> None:
        with self._lock:
            observers = list(self._observers)

        for observer in observers:
            try:
                getattr(observer, hook)(*args)
            except Exception as e:
                logger.error(
                    f"Observer {type(observer).__name__}.{hook} failed for {args[0]}: {e}",
                    exc_info=True,
                )

    def notify_activated(self, extension_key: str) -> None:
        self._notify("on_activated", extension_key)

    def notify_deactivated(self, extension_key: str) -> None:
        self._notify("on_deactivated", extension_key)

    def notify_data_imported(self, extension_key: str, import_path: Path) -> None:
        self._notify("on_data_imported", extension_key, import_path)
