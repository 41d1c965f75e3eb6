"""In-process change notification for store collections.

Writers call ``publish(collection)`` after committing. Readers remember the
last version they saw and block in ``wait_for_change`` until it moves. A
notification carries no data: subscribers re-query, so missed, duplicated or
coalesced notifications never produce a wrong snapshot.
"""

import threading
from collections import defaultdict
from typing import Optional


class SnapshotBroker:
    def __init__(self):
        self._cond = threading.Condition()
        self._versions: dict[str, int] = defaultdict(int)

    def version(self, collection: str) -> int:
        with self._cond:
            return self._versions[collection]

    def publish(self, *collections: str) -> None:
        with self._cond:
            for name in collections:
                self._versions[name] += 1
            self._cond.notify_all()

    def wait_for_change(self, collection: str, seen_version: int, timeout: Optional[float] = None) -> Optional[int]:
        """Block until ``collection`` moves past ``seen_version``.

        Returns the new version, or None on timeout.
        """
        with self._cond:
            changed = self._cond.wait_for(
                lambda: self._versions[collection] > seen_version, timeout=timeout
            )
            return self._versions[collection] if changed else None


broker = SnapshotBroker()
