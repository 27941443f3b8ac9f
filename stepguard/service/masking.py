"""Masked renderings of identifiers for logs, audit events and API responses."""

from __future__ import annotations

from stepguard.storage.models import ChannelKind

_MASK = "***"


def mask_email(email: str) -> str:
    """Keep only the first and last character of the local part.

    ``john.doe@example.com`` becomes ``j***e@example.com``.
    """
    if not email or "@" not in email:
        return _MASK
    local, domain = email.rsplit("@", 1)
    if not local:
        return f"{_MASK}@{domain}"
    if len(local) <= 2:
        return f"{local[0]}{_MASK}@{domain}"
    return f"{local[0]}{_MASK}{local[-1]}@{domain}"


def mask_phone(phone: str) -> str:
    """Keep the first four and last three digits: ``6285***661``."""
    digits = "".join(ch for ch in phone or "" if ch.isdigit())
    if len(digits) <= 7:
        # Too short to show a prefix without revealing most of the number
        return f"{_MASK}{digits[-3:]}" if len(digits) > 3 else _MASK
    return f"{digits[:4]}{_MASK}{digits[-3:]}"


def mask_destination(kind: ChannelKind, destination: str) -> str:
    if kind is ChannelKind.EMAIL:
        return mask_email(destination)
    return mask_phone(destination)


def mask_identifier(value: str | None, visible: int = 6) -> str:
    """Shorten opaque ids (session ids, token ids) to a correlatable prefix."""
    if not value:
        return _MASK
    if len(value) <= visible:
        return _MASK
    return f"{value[:visible]}{_MASK}"


def mask_login_identifier(identifier: str) -> str:
    """Mask whatever the caller typed as a login identifier."""
    if "@" in (identifier or ""):
        return mask_email(identifier)
    return mask_phone(identifier)
