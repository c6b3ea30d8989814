"""
hedgekeeper Infrastructure: State Store

Persists the bot state snapshot and the heartbeat in the shared key-value
store. The snapshot is always written as one JSON document; there are no
partial field updates. Cross-process consistency comes from the controller
lock, not from the store.
"""

import json
import logging
import time
from typing import Any, Dict, Optional

from infra.kv_store import KeyValueStore

logger = logging.getLogger(__name__)

DEFAULT_NAMESPACE = "hedgekeeper"


class StateDecodeError(ValueError):
    """Stored snapshot exists but is not a JSON object."""


class StateStore:
    """
    JSON snapshot storage on top of a KeyValueStore.

    Keys:
    - {namespace}:state      full bot state snapshot
    - {namespace}:heartbeat  epoch seconds of the last loop iteration
    """

    def __init__(self, backend: KeyValueStore, namespace: str = DEFAULT_NAMESPACE):
        self._backend = backend
        self.namespace = namespace
        self.state_key = f"{namespace}:state"
        self.heartbeat_key = f"{namespace}:heartbeat"
        logger.info(f"Initialized StateStore ({backend.describe()}, namespace={namespace})")

    @property
    def backend(self) -> KeyValueStore:
        return self._backend

    def load(self) -> Optional[Dict[str, Any]]:
        """
        Read the stored snapshot.

        Returns:
            Snapshot dict, or None when nothing is stored

        Raises:
            StateDecodeError: stored value is not a JSON object
            TransientExternalError: store unavailable
        """
        raw = self._backend.get(self.state_key)
        if raw is None:
            return None
        try:
            data = json.loads(raw)
        except (TypeError, ValueError) as exc:
            raise StateDecodeError(f"Invalid JSON in {self.state_key}: {exc}") from exc
        if not isinstance(data, dict):
            raise StateDecodeError(f"Expected object in {self.state_key}, got {type(data).__name__}")
        return data

    def save(self, snapshot: Dict[str, Any]) -> None:
        """Replace the stored snapshot. Errors propagate to the caller."""
        self._backend.set(self.state_key, json.dumps(snapshot, sort_keys=True))
        logger.debug("Saved state snapshot (%s)", snapshot.get("current_state"))

    def clear(self) -> None:
        self._backend.delete(self.state_key)
        logger.warning("State snapshot cleared (%s)", self.state_key)

    def write_heartbeat(self, timestamp: Optional[float] = None) -> float:
        ts = time.time() if timestamp is None else float(timestamp)
        self._backend.set(self.heartbeat_key, repr(ts))
        return ts

    def read_heartbeat(self) -> Optional[float]:
        raw = self._backend.get(self.heartbeat_key)
        if raw is None:
            return None
        try:
            return float(raw)
        except ValueError:
            logger.warning("Unparseable heartbeat value %r", raw)
            return None

    def ping(self) -> bool:
        return self._backend.ping()

    def close(self) -> None:
        self._backend.close()


__all__ = ["DEFAULT_NAMESPACE", "StateDecodeError", "StateStore"]
