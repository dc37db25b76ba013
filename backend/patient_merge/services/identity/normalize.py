from __future__ import annotations

import logging
import re
import unicodedata
from datetime import date, datetime

from patient_merge.services.identity.errors import NormalizationFailure

__all__ = [
    "is_placeholder_id",
    "normalize_birthday",
    "normalize_name",
    "normalize_phone",
]

logger = logging.getLogger(__name__)

_NON_DIGIT_RE = re.compile(r"[^0-9]")
_WHITESPACE_RE = re.compile(r"\s+", re.UNICODE)
_CARRIER_PREFIXES = ("0080", "0090", "0070")
_BIRTHDAY_FORMATS = ("%Y-%m-%d", "%Y/%m/%d", "%Y%m%d")


def _phone_step(digits: str) -> str:
    if digits.startswith(_CARRIER_PREFIXES):
        return digits[1:]
    if digits.startswith("00"):
        return digits[1:]
    if digits.startswith("81") and len(digits) >= 11:
        return "0" + digits[2:]
    if digits[0] in "789":
        return "0" + digits
    return digits


def normalize_phone(raw: object) -> str:
    """Return the canonical digit form of a Japanese phone number, or "".

    Rules are applied until the value stops changing, so the result is a
    fixed point and normalizing twice gives the same answer.
    """
    if raw is None:
        return ""
    text = unicodedata.normalize("NFKC", str(raw))
    digits = _NON_DIGIT_RE.sub("", text)
    while digits:
        stepped = _phone_step(digits)
        if stepped == digits:
            break
        digits = stepped
    return digits


def normalize_name(raw: object) -> str:
    if raw is None:
        return ""
    text = unicodedata.normalize("NFKC", str(raw))
    return _WHITESPACE_RE.sub(" ", text).strip()


def _parse_birthday(raw: object) -> date:
    if isinstance(raw, datetime):
        return raw.date()
    if isinstance(raw, date):
        return raw
    text = unicodedata.normalize("NFKC", str(raw)).strip()
    for fmt in _BIRTHDAY_FORMATS:
        try:
            return datetime.strptime(text, fmt).date()
        except ValueError:
            continue
    raise NormalizationFailure(f"Unparseable birthday: {raw!r}")


def normalize_birthday(raw: object) -> date | None:
    if raw is None or raw == "":
        return None
    try:
        return _parse_birthday(raw)
    except NormalizationFailure as exc:
        logger.debug("Birthday left empty", extra={"reason": str(exc)})
        return None


def is_placeholder_id(person_id: str | None, prefix: str) -> bool:
    if not person_id:
        return True
    return person_id.startswith(prefix)
