# savethesquare/core/local_state.py
"""Small JSON-file key/value store for client-side state.

Holds the saved text mode configuration and the last good donated snapshot
(used when the backend cannot be read).
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
import threading
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Union

from .selection import DonatedCellRecord, provenance_from_mode_data

log = logging.getLogger(__name__)

TEXT_MODE_CONFIG = "textModeConfig"
DONATED_CACHE = "donatedCache"


class LocalState:
    def __init__(self, path: Union[str, Path, None] = None) -> None:
        self.path = Path(path) if path else None
        self._lock = threading.Lock()
        self._memory: Dict[str, Any] = {}

    # ---- raw access
    def _read_all(self) -> Dict[str, Any]:
        if self.path is None:
            return dict(self._memory)
        try:
            raw = self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return {}
        try:
            data = json.loads(raw or "{}")
        except json.JSONDecodeError:
            log.warning("local state file %s is corrupt; starting empty", self.path)
            return {}
        return data if isinstance(data, dict) else {}

    def _write_all(self, data: Dict[str, Any]) -> None:
        if self.path is None:
            self._memory = dict(data)
            return
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(prefix=".state-", dir=str(self.path.parent))
        with os.fdopen(fd, "w", encoding="utf-8") as fh:
            json.dump(data, fh, ensure_ascii=False, indent=2)
        os.replace(tmp, self.path)

    def get(self, key: str, default: Any = None) -> Any:
        with self._lock:
            return self._read_all().get(key, default)

    def set(self, key: str, value: Any) -> None:
        with self._lock:
            data = self._read_all()
            data[key] = value
            self._write_all(data)

    def remove(self, key: str) -> None:
        with self._lock:
            data = self._read_all()
            if data.pop(key, None) is not None:
                self._write_all(data)

    # ---- text mode config (one entry per visitor scope)
    @staticmethod
    def text_config_key(scope: Optional[str] = None) -> str:
        return f"{TEXT_MODE_CONFIG}:{scope}" if scope else TEXT_MODE_CONFIG

    def load_text_config(self, scope: Optional[str] = None) -> Optional[Dict[str, Any]]:
        value = self.get(self.text_config_key(scope))
        return value if isinstance(value, dict) else None

    def save_text_config(self, config: Dict[str, Any], scope: Optional[str] = None) -> None:
        self.set(self.text_config_key(scope), dict(config))

    def forget_text_config(self, scope: Optional[str] = None) -> None:
        self.remove(self.text_config_key(scope))

    # ---- donated snapshot
    def save_donated(self, records: Iterable[DonatedCellRecord]) -> None:
        payload = {
            r.key: {
                "donor": r.donor_name,
                "email": r.donor_email,
                "greeting": r.greeting,
                "timestamp": r.timestamp,
                "donationId": r.donation_id,
                "modeData": r.provenance.as_mode_data(),
            }
            for r in records
        }
        self.set(DONATED_CACHE, payload)

    def load_donated(self) -> List[DonatedCellRecord]:
        raw = self.get(DONATED_CACHE) or {}
        if not isinstance(raw, dict):
            return []
        out: List[DonatedCellRecord] = []
        for key, item in raw.items():
            if not isinstance(item, dict):
                continue
            out.append(
                DonatedCellRecord(
                    key=str(key),
                    donor_name=str(item.get("donor") or ""),
                    donor_email=str(item.get("email") or ""),
                    greeting=item.get("greeting"),
                    timestamp=str(item.get("timestamp") or ""),
                    provenance=provenance_from_mode_data(item.get("modeData")),
                    donation_id=item.get("donationId"),
                )
            )
        return out


__all__ = ["LocalState", "TEXT_MODE_CONFIG", "DONATED_CACHE"]
