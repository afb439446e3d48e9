from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Iterable
from typing import Any

NOTIFY_LOGGER = logging.getLogger("equipment_ledger.notifications")

Listener = Callable[[dict[str, Any]], None]


class ChangeNotifier:
    """Fan-out of committed ledger changes, keyed by equipment id and show id.

    Readers subscribe to the keys they render; a commit only wakes the
    listeners of the equipment it touched and the shows it changed.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._listeners: dict[tuple[str, int], list[Listener]] = {}

    def subscribe(self, topic: str, key: int, listener: Listener) -> Callable[[], None]:
        if topic not in {"equipment", "show"}:
            raise ValueError(f"Unknown notification topic: {topic}")
        slot = (topic, int(key))
        with self._lock:
            self._listeners.setdefault(slot, []).append(listener)

        def unsubscribe() -> None:
            with self._lock:
                listeners = self._listeners.get(slot) or []
                if listener in listeners:
                    listeners.remove(listener)
                if not listeners:
                    self._listeners.pop(slot, None)

        return unsubscribe

    def publish(self, equipment_id: int, show_ids: Iterable[int] = (), *, action: str = "", version: int = 0) -> int:
        event = {
            "equipmentID": int(equipment_id),
            "showIDs": sorted({int(show_id) for show_id in show_ids}),
            "action": action,
            "ledgerVersion": version,
        }
        slots = [("equipment", event["equipmentID"])] + [("show", show_id) for show_id in event["showIDs"]]
        with self._lock:
            targets = [listener for slot in slots for listener in self._listeners.get(slot, [])]

        delivered = 0
        for listener in targets:
            try:
                listener(dict(event))
                delivered += 1
            except Exception:
                # The change is already committed; a broken reader must not undo it.
                NOTIFY_LOGGER.exception("Change listener failed equipment=%s action=%s", equipment_id, action)
        return delivered

    def clear(self) -> None:
        with self._lock:
            self._listeners.clear()


NOTIFIER = ChangeNotifier()
