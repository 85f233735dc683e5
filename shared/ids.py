"""
Identifier generation.

Ids are produced by an injected generator instead of timestamp+random strings,
so tests can use the sequential variant and get stable ids.
"""

import itertools
import threading
from uuid import uuid4


class IdGenerator:
    """Random ids of the form ``<prefix>_<32 hex chars>``."""

    def new_id(self, prefix: str) -> str:
        return f"{prefix}_{uuid4().hex}"


class SequentialIdGenerator(IdGenerator):
    """Deterministic ids (``ord_0001``, ``ord_0002`` ...), one counter per prefix."""

    def __init__(self):
        self._counters: dict[str, itertools.count] = {}
        self._lock = threading.Lock()

    def new_id(self, prefix: str) -> str:
        with self._lock:
            counter = self._counters.setdefault(prefix, itertools.count(1))
            return f"{prefix}_{next(counter):04d}"
