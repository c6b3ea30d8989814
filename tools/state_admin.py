"""Operator tool for the persisted bot state.

Usage:
    python -m tools.state_admin show                # snapshot, heartbeat age, lock holder
    python -m tools.state_admin reset               # ERROR_RECOVERY -> IDLE, counters cleared
    python -m tools.state_admin clear               # delete the snapshot
    python -m tools.state_admin --config config/prod.yaml show

reset and clear take the controller lock first, so they refuse to run while
a bot instance is active.
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
import time
from typing import Iterable, Optional, TextIO

from core.exceptions import ConfigurationError, LockContention
from core.state_machine import BotState, StateMachine
from infra.distributed_lock import DistributedLock
from infra.kv_store import KeyValueStore, create_kv_store_from_config
from infra.state_store import StateStore
from tools.config_check import DEFAULT_CONFIG_PATH, BotConfig, load_config

logger = logging.getLogger(__name__)


class StateAdmin:
    def __init__(self, config: BotConfig, kv_store: KeyValueStore, out: Optional[TextIO] = None):
        self.config = config
        self.kv_store = kv_store
        self.state_store = StateStore(kv_store, namespace=config.app.namespace)
        self.state_machine = StateMachine(self.state_store, failure_threshold=config.loop.failure_threshold)
        self.out = out or sys.stdout

    def _lock(self) -> DistributedLock:
        return DistributedLock(
            self.kv_store,
            self.config.lock.name,
            ttl_seconds=self.config.lock.ttl_seconds,
            renewal_seconds=self.config.lock.renewal_seconds,
            namespace=self.config.app.namespace,
        )

    def show(self) -> int:
        state = self.state_machine.load()
        heartbeat = self.state_store.read_heartbeat()
        lock_key = self._lock().key
        report = {
            "state": state.to_dict(),
            "load_error": self.state_machine.last_load_error,
            "heartbeat": heartbeat,
            "heartbeat_age_seconds": round(time.time() - heartbeat, 1) if heartbeat is not None else None,
            "lock_key": lock_key,
            "lock_holder": self.kv_store.get(lock_key),
        }
        print(json.dumps(report, indent=2, sort_keys=True), file=self.out)
        return 0

    def reset(self) -> int:
        with self._lock():
            state = self.state_machine.load()
            updated = self.state_machine.transition(
                state,
                BotState.IDLE,
                consecutive_failures=0,
                last_error=None,
            )
        print(f"State reset: {state.current_state} -> {updated.current_state}", file=self.out)
        return 0

    def clear(self) -> int:
        with self._lock():
            self.state_machine.clear()
        print(f"State cleared ({self.state_store.state_key})", file=self.out)
        return 0


def main(argv: Optional[Iterable[str]] = None, kv_store: Optional[KeyValueStore] = None) -> int:
    parser = argparse.ArgumentParser(description="Inspect or repair hedgekeeper state")
    parser.add_argument("--config", default=DEFAULT_CONFIG_PATH, help="Path to app.yaml")
    parser.add_argument("command", choices=["show", "reset", "clear"])
    args = parser.parse_args(list(argv) if argv is not None else None)

    logging.basicConfig(level=logging.WARNING, format="%(levelname)s: %(message)s")

    try:
        config = load_config(args.config)
    except ConfigurationError as exc:
        print(f"✖ {exc}", file=sys.stderr)
        return 2

    store = kv_store or create_kv_store_from_config(config.store.model_dump())
    admin = StateAdmin(config, store)
    try:
        return getattr(admin, args.command)()
    except LockContention:
        print("✖ The bot is running (controller lock held). Stop it first.", file=sys.stderr)
        return 1
    finally:
        if kv_store is None:
            store.close()


if __name__ == "__main__":
    sys.exit(main())
