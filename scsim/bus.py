from __future__ import annotations

import json
import logging
import threading
from dataclasses import dataclass, field
from enum import Enum
from queue import Empty, Full, Queue
from typing import Any, Callable, Dict, List, Optional, Set

import numpy as np

logger = logging.getLogger('scsim.bus')


class EventType(Enum):
    TICK_TRACE = 'tick_trace'
    NUMERIC_DEGENERACY = 'numeric_degeneracy'
    RESOURCE_EXHAUSTION = 'resource_exhaustion'
    RUN_STOPPED = 'run_stopped'


@dataclass
class TraceEvent:
    """Structured record handed to trace subscribers."""
    type: EventType
    tick: int
    payload: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {'type': self.type.value, 'tick': self.tick, 'payload': self.payload}


def _json_default(obj):
    if isinstance(obj, np.ndarray):
        return obj.tolist()
    if isinstance(obj, np.generic):
        return obj.item()
    if isinstance(obj, Enum):
        return obj.value
    raise TypeError(f"not JSON serializable: {type(obj).__name__}")


def _write_jsonl_safe(path, obj):
    try:
        with open(path, 'a', encoding='utf-8') as f:
            f.write(json.dumps(obj, ensure_ascii=False, default=_json_default) + "\n")
    except (OSError, TypeError, ValueError) as e:
        logger.warning(f"trace log write failed ({path}): {e}")


Handler = Callable[[TraceEvent], None]


class TraceBus:
    """
    Fan-out of trace events to the external metrics collaborator.

    Modules either register for a bounded inbox and drain it, or subscribe a
    callback that runs synchronously on publish. Full inboxes drop the event
    and count it; a failing callback is logged and skipped. Publishing never
    blocks or aborts the tick.
    """

    def __init__(self, capacity: int = 10000, log_path: Optional[str] = None):
        self.capacity = capacity
        self.inboxes: Dict[str, Queue] = {}
        self.modules: Set[str] = set()
        self._handlers: List[Handler] = []
        self._lock = threading.Lock()
        self.log_path = log_path
        self._stats: Dict[str, int] = {'published': 0, 'dropped': 0}

    def register_module(self, name: str):
        """Register a module to receive events in its inbox."""
        with self._lock:
            if name not in self.modules:
                self.modules.add(name)
                self.inboxes[name] = Queue(maxsize=self.capacity)

    def subscribe(self, handler: Handler) -> Handler:
        with self._lock:
            self._handlers.append(handler)
        return handler

    def unsubscribe(self, handler: Handler) -> None:
        with self._lock:
            if handler in self._handlers:
                self._handlers.remove(handler)

    def publish(self, event: TraceEvent) -> None:
        with self._lock:
            self._stats['published'] += 1
            for name in sorted(self.modules):
                try:
                    self.inboxes[name].put_nowait(event)
                except Full:
                    self._stats['dropped'] += 1
            handlers = list(self._handlers)
        if self.log_path:
            _write_jsonl_safe(self.log_path, event.to_dict())
        for handler in handlers:
            try:
                handler(event)
            except Exception as e:
                logger.warning(f"trace handler {getattr(handler, '__name__', handler)!r} failed on {event.type.value} at tick {event.tick}: {e}")

    def receive(self, module_name: str, timeout: float = 0.001) -> Optional[TraceEvent]:
        """Non-blocking receive with short timeout"""
        if module_name in self.inboxes:
            try:
                return self.inboxes[module_name].get(timeout=timeout)
            except Empty:
                return None
        return None

    def receive_all(self, module_name: str, max_msgs: int = 100000) -> List[TraceEvent]:
        """Drain inbox up to max_msgs"""
        msgs = []
        inbox = self.inboxes.get(module_name)
        if inbox is None:
            return msgs
        for _ in range(max_msgs):
            try:
                msgs.append(inbox.get_nowait())
            except Empty:
                break
        return msgs

    def get_stats(self) -> Dict[str, Any]:
        with self._lock:
            return {
                'modules': len(self.modules),
                'handlers': len(self._handlers),
                'published': self._stats['published'],
                'dropped': self._stats['dropped'],
                'inbox_sizes': {name: self.inboxes[name].qsize() for name in self.modules},
            }


__all__ = ['EventType', 'TraceEvent', 'TraceBus']
