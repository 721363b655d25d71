# savethesquare/services/notifications.py
"""Donation confirmation email.

In email test mode nothing is sent; the composed message comes back as a
preview so the checkout flow can be exercised end to end.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass
from datetime import date
from typing import Any, Dict, Iterable, Optional
from urllib.parse import quote

from flask import current_app

from savethesquare.extensions import render_email, send_email_async

SUBJECT = "Tack för din donation till {property_name}! 🌿"
TEXT_TEMPLATE = "donation_confirmation.txt"
HTML_TEMPLATE = "donation_confirmation.html"


@dataclass(frozen=True)
class EmailPreview:
    to: str
    sender: str
    subject: str
    text: str
    html: str
    highlight_url: str

    def as_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["from"] = data.pop("sender")
        data["highlightUrl"] = data.pop("highlight_url")
        return data


def highlight_url(site_url: str, keys: Iterable[str]) -> str:
    """Link that opens the map with ``keys`` highlighted."""
    joined = ",".join(keys)
    return f"{site_url.rstrip('/')}/?highlight={quote(joined, safe=',_-')}"


def compose_confirmation(
    *,
    donor_name: str,
    donor_email: str,
    squares: Iterable[str],
    amount: int,
    greeting: Optional[str] = None,
    site_url: Optional[str] = None,
    on: Optional[date] = None,
) -> EmailPreview:
    cfg = current_app.config
    keys = list(squares)
    url = highlight_url(site_url or cfg.get("SITE_URL") or "", keys)
    ctx = {
        "donor_name": donor_name,
        "greeting": (greeting or "").strip() or None,
        "square_count": len(keys),
        "amount": int(amount),
        "date": (on or date.today()).isoformat(),
        "highlight_url": url,
        "property_name": cfg.get("PROPERTY_NAME") or "Visne Ängar",
    }
    return EmailPreview(
        to=donor_email,
        sender=cfg.get("DEFAULT_MAIL_SENDER") or "",
        subject=SUBJECT.format(property_name=ctx["property_name"]),
        text=render_email(TEXT_TEMPLATE, **ctx),
        html=render_email(HTML_TEMPLATE, **ctx),
        highlight_url=url,
    )


def send_confirmation(preview: EmailPreview, *, test_mode: Optional[bool] = None) -> Dict[str, Any]:
    """Queue the email, or return the preview when in email test mode."""
    if test_mode is None:
        test_mode = bool(current_app.config.get("EMAIL_TEST_MODE"))

    if test_mode:
        current_app.logger.info("Email test mode: confirmation for %s not sent", preview.to)
        return {"sent": False, "testMode": True, "preview": preview.as_dict()}

    app = current_app._get_current_object()
    send_email_async(
        app,
        preview.subject,
        [preview.to],
        html=preview.html,
        body=preview.text,
        sender=preview.sender or None,
    )
    return {"sent": True, "testMode": False}


__all__ = ["EmailPreview", "SUBJECT", "highlight_url", "compose_confirmation", "send_confirmation"]
