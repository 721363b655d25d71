# savethesquare/blueprints/common.py
"""Request parsing and JSON response helpers shared by the API blueprints."""

from __future__ import annotations

from typing import Any, Dict, List, Optional, cast

from flask import jsonify, request

from savethesquare.core.geometry import is_cell_key
from savethesquare.core.selection import DonorInfo

_TRUTHY = {"1", "true", "yes", "on", "y"}


def truthy(v: Any) -> bool:
    if isinstance(v, bool):
        return v
    if v is None:
        return False
    return str(v).strip().lower() in _TRUTHY


def is_email(s: str) -> bool:
    s = (s or "").strip()
    return ("@" in s) and ("." in s.split("@")[-1])


def request_payload() -> Dict[str, Any]:
    data = request.get_json(silent=True)
    if isinstance(data, dict) and data:
        return cast(Dict[str, Any], data)
    if request.form:
        return cast(Dict[str, Any], request.form.to_dict(flat=True))
    return {}


def json_response(payload: Dict[str, Any], status: int = 200):
    resp = jsonify(payload)
    resp.status_code = int(status)
    resp.headers.setdefault("Cache-Control", "no-store, no-cache, must-revalidate, max-age=0")
    resp.headers.setdefault("Pragma", "no-cache")
    resp.headers.setdefault("Expires", "0")
    return resp


def json_ok(payload: Optional[Dict[str, Any]] = None, status: int = 200):
    body = dict(payload or {})
    body.setdefault("ok", True)
    return json_response(body, status)


def json_error(message: str, status: int, extra: Optional[Dict[str, Any]] = None):
    body: Dict[str, Any] = {"ok": False, "message": message, "error": {"message": message}}
    if extra:
        body["error"].update(extra)
        for k, v in extra.items():
            body.setdefault(k, v)
    return json_response(body, status)


def parse_donor(data: Dict[str, Any]) -> DonorInfo:
    """DonorInfo from ``donorName``/``donorEmail``/``donorGreeting``; ValueError if unusable."""
    name = str(data.get("donorName") or data.get("name") or "").strip()
    email = str(data.get("donorEmail") or data.get("email") or "").strip()
    greeting = str(data.get("donorGreeting") or data.get("greeting") or "").strip() or None
    if not name:
        raise ValueError("Namn saknas")
    if not is_email(email):
        raise ValueError("Ogiltig e-postadress")
    if greeting and len(greeting) > 500:
        raise ValueError("Hälsningen får vara högst 500 tecken")
    return DonorInfo(name=name[:160], email=email[:160], greeting=greeting)


def parse_keys(raw: Any, field: str = "squares") -> List[str]:
    """A list of well-formed cell keys; ValueError otherwise."""
    if raw is None:
        return []
    if isinstance(raw, str):
        raw = [k for k in raw.split(",") if k.strip()]
    if not isinstance(raw, (list, tuple)):
        raise ValueError(f"{field} must be a list of cell keys")
    keys = [str(k).strip() for k in raw]
    bad = [k for k in keys if not is_cell_key(k)]
    if bad:
        raise ValueError(f"Invalid cell key(s) in {field}: {', '.join(bad[:5])}")
    return keys
