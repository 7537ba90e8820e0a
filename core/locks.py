"""
core/locks.py -- Per-rule mutual exclusion between rule edits and evaluation.

A rule edit reconciles existing vulnerabilities against the new tree and then
writes the rule. Without serialization, an assessment processed concurrently
could judge against the pre-edit tree and create a vulnerability the edit
would have removed. RuleLocks hands out one lock per rule id; both the Rule
Manager and the Assessment Processor hold it while they touch that rule.

Scope: one process. Multi-process deployments rely on the optimistic version
check in StorageGateway.update_rule instead.
"""

import threading
from collections.abc import Iterator
from contextlib import contextmanager


class RuleLocks:
    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[str, threading.Lock] = {}

    def _lock_for(self, rule_id: str) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(rule_id)
            if lock is None:
                lock = threading.Lock()
                self._locks[rule_id] = lock
            return lock

    @contextmanager
    def hold(self, rule_id: str) -> Iterator[None]:
        lock = self._lock_for(rule_id)
        with lock:
            yield

    def discard(self, rule_id: str) -> None:
        """Forget the lock of a deleted rule."""
        with self._guard:
            self._locks.pop(rule_id, None)
