# savethesquare/services/sessions.py
"""In-process registry of live selection stores for the HTTP selection API."""

from __future__ import annotations

import logging
import threading
import time
import uuid
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Mapping, Optional

from flask import current_app

from savethesquare.core.geometry import PropertyBoundary
from savethesquare.core.local_state import LocalState
from savethesquare.core.rasterizer import TextModeConfig, TextPreview
from savethesquare.core.selection import PersistenceBackend, SelectionStore

log = logging.getLogger(__name__)

REGISTRY_EXT_KEY = "savethesquare.selections"


@dataclass
class SelectionSession:
    id: str
    store: SelectionStore
    preview: TextPreview
    created: float = field(default_factory=time.time)


class SelectionRegistry:
    """Bounded, least-recently-used map of session id -> SelectionSession."""

    def __init__(
        self,
        boundary: PropertyBoundary,
        backend_factory: Callable[[], PersistenceBackend],
        *,
        limit: int = 500,
        price_per_cell: int = 20,
        debounce_s: float = 0.25,
        state: Optional[LocalState] = None,
    ) -> None:
        self.boundary = boundary
        self.backend_factory = backend_factory
        self.limit = max(1, int(limit))
        self.price_per_cell = int(price_per_cell)
        self.debounce_s = float(debounce_s)
        self.state = state or LocalState()
        self._lock = threading.Lock()
        self._sessions: "OrderedDict[str, SelectionSession]" = OrderedDict()

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)

    def create(self, donated=None, text_config: Optional[Mapping[str, Any]] = None) -> SelectionSession:
        """New session; ``text_config`` is the visitor's own saved settings, if any.

        Raises ValueError/TypeError when ``text_config`` cannot be parsed.
        """
        config = TextModeConfig.from_dict(text_config)
        session_id = uuid.uuid4().hex
        store = SelectionStore(
            self.boundary,
            self.backend_factory(),
            price_per_cell=self.price_per_cell,
            donated=donated,
        )
        preview = TextPreview(
            store,
            delay_s=self.debounce_s,
            config=config,
            on_config_change=lambda cfg: self.state.save_text_config(cfg.as_dict(), scope=session_id),
        )
        session = SelectionSession(id=session_id, store=store, preview=preview)

        evicted = []
        with self._lock:
            self._sessions[session.id] = session
            while len(self._sessions) > self.limit:
                evicted.append(self._sessions.popitem(last=False)[0])
        for old in evicted:
            self.state.forget_text_config(scope=old)
            log.info("selection session %s evicted (limit %d)", old, self.limit)
        return session

    def saved_text_config(self, session_id: str) -> Optional[Dict[str, Any]]:
        return self.state.load_text_config(scope=session_id)

    def get(self, session_id: str) -> Optional[SelectionSession]:
        with self._lock:
            session = self._sessions.get(session_id)
            if session is not None:
                self._sessions.move_to_end(session_id)
            return session

    def discard(self, session_id: str) -> None:
        with self._lock:
            self._sessions.pop(session_id, None)
        self.state.forget_text_config(scope=session_id)


def get_registry() -> SelectionRegistry:
    return current_app.extensions[REGISTRY_EXT_KEY]


__all__ = ["SelectionSession", "SelectionRegistry", "get_registry", "REGISTRY_EXT_KEY"]
