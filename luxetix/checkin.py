"""
Scan decoding for the check-in desk.

Scanners hand us whatever the camera read: a bare ticket code, the payload
printed on the ticket (`TICKET:<code>|EVENT:<id>`), or a link carrying
`?code=`. Only a successful decode reaches redemption; a garbled read is
reported as UNREADABLE and the desk keeps scanning.
"""
from __future__ import annotations
import re
from typing import Optional
from urllib.parse import parse_qs, urlparse

from .errors import ScanDecodeError
from .model.tickets import CODE_LENGTH, CODE_PREFIX

_CODE_RE = re.compile(
    rf"{re.escape(CODE_PREFIX)}[0-9A-HJKMNP-TV-Z]{{{CODE_LENGTH}}}"
)


def _match(candidate: Optional[str]) -> Optional[str]:
    if not candidate:
        return None
    m = _CODE_RE.fullmatch(candidate.strip().upper())
    return m.group(0) if m else None


def decode_scan(raw: Optional[str]) -> str:
    if raw is None or not raw.strip():
        raise ScanDecodeError("empty scan")
    raw = raw.strip()

    code = _match(raw)
    if code:
        return code

    if raw.upper().startswith("TICKET:"):
        for part in raw.split("|"):
            key, _, value = part.partition(":")
            if key.strip().upper() == "TICKET":
                code = _match(value)
                if code:
                    return code

    if "://" in raw:
        query = parse_qs(urlparse(raw).query)
        for value in query.get("code", []):
            code = _match(value)
            if code:
                return code

    raise ScanDecodeError("no ticket code in scan")
