"""Invoice-number extraction from e-invoice notification emails.

Both levels are ordered strategy lists evaluated first-match-wins: text
patterns from most to least specific, and message sources from subject line
to decoded body.
"""

from __future__ import annotations

import base64
import binascii
import re
from typing import Any, Callable, Dict, Iterator, List, Sequence
from urllib.parse import unquote

from .models import EmailCandidate, InvoiceNumberMatch, MessageDetail

TextStrategy = Callable[[str], InvoiceNumberMatch | None]
MessageStrategy = Callable[[MessageDetail], InvoiceNumberMatch | None]

LABELED_PATTERN = re.compile(r"發票號碼[:：\s]*([A-Z]{2}[- ]?\d{8})")
STRICT_PATTERN = re.compile(r"[A-Z]{2}[- ]?(\d{8})")
LOOSE_PATTERN = re.compile(r"號碼[:：\s]*([A-Z0-9-]{8,11})")

FILENAME_STAR_PATTERN = re.compile(r"filename\*\s*=\s*([^;]+)", re.IGNORECASE)
FILENAME_PATTERN = re.compile(r"filename\s*=\s*\"?([^\";]+)\"?", re.IGNORECASE)
NAME_PATTERN = re.compile(r"name\s*=\s*\"?([^\";]+)\"?", re.IGNORECASE)

BODY_MIME_PREFIXES = ("text/plain", "text/html")


def _digits(text: str) -> str:
    return "".join(ch for ch in text if ch.isdigit())


def match_labeled(text: str) -> InvoiceNumberMatch | None:
    match = LABELED_PATTERN.search(text)
    if not match:
        return None
    full_number = match.group(1)
    parsed = _digits(full_number)
    if len(parsed) != 8:
        return None
    return InvoiceNumberMatch(parsed_number=parsed, full_number=full_number)


def match_strict(text: str) -> InvoiceNumberMatch | None:
    match = STRICT_PATTERN.search(text)
    if not match:
        return None
    return InvoiceNumberMatch(parsed_number=match.group(1), full_number=match.group(0))


def match_loose(text: str) -> InvoiceNumberMatch | None:
    match = LOOSE_PATTERN.search(text)
    if not match:
        return None
    full_number = match.group(1)
    parsed = _digits(full_number)
    if len(parsed) != 8:
        return None
    return InvoiceNumberMatch(parsed_number=parsed, full_number=full_number)


TEXT_STRATEGIES: Sequence[TextStrategy] = (match_labeled, match_strict, match_loose)


def extract_invoice_number(
    text: str | None,
    strategies: Sequence[TextStrategy] = TEXT_STRATEGIES,
) -> InvoiceNumberMatch | None:
    if not text:
        return None
    normalized = text.upper()
    for strategy in strategies:
        found = strategy(normalized)
        if found:
            return found
    return None


def decode_base64url(data: str | None) -> str:
    if not data:
        return ""
    padded = data + "=" * (-len(data) % 4)
    try:
        raw = base64.urlsafe_b64decode(padded)
    except (binascii.Error, ValueError):
        return ""
    try:
        return raw.decode("utf-8")
    except UnicodeDecodeError:
        return raw.decode("latin-1")


def filenames_from_header(value: str) -> List[str]:
    if not value:
        return []
    names: List[str] = []

    star_match = FILENAME_STAR_PATTERN.search(value)
    if star_match:
        raw = star_match.group(1).strip()
        raw = re.sub(r"^UTF-8''", "", raw, flags=re.IGNORECASE).strip('"')
        names.append(unquote(raw))

    filename_match = FILENAME_PATTERN.search(value)
    if filename_match:
        names.append(filename_match.group(1).strip())

    name_match = NAME_PATTERN.search(value)
    if name_match:
        names.append(name_match.group(1).strip())

    return names


def filename_candidates(part: Dict[str, Any]) -> List[str]:
    candidates: List[str] = []
    if part.get("filename"):
        candidates.append(str(part["filename"]))

    headers = part.get("headers")
    for header in headers if isinstance(headers, list) else []:
        if not isinstance(header, dict):
            continue
        name, value = header.get("name"), header.get("value")
        if not isinstance(name, str) or not isinstance(value, str):
            continue
        if name.lower() in {"content-disposition", "content-type"}:
            candidates.extend(filenames_from_header(value))

    return [name for name in candidates if name]


def iter_parts(payload: Dict[str, Any] | None) -> Iterator[Dict[str, Any]]:
    if not payload:
        return
    stack: List[Dict[str, Any]] = [payload]
    while stack:
        part = stack.pop()
        if not isinstance(part, dict):
            continue
        children = part.get("parts")
        if isinstance(children, list):
            stack.extend(children)
        yield part


def from_subject(detail: MessageDetail) -> InvoiceNumberMatch | None:
    return extract_invoice_number(detail.subject)


def from_filenames(detail: MessageDetail) -> InvoiceNumberMatch | None:
    for part in iter_parts(detail.payload):
        for name in filename_candidates(part):
            found = extract_invoice_number(name)
            if found:
                return found
    return None


def from_snippet(detail: MessageDetail) -> InvoiceNumberMatch | None:
    return extract_invoice_number(detail.snippet)


def from_body(detail: MessageDetail) -> InvoiceNumberMatch | None:
    for part in iter_parts(detail.payload):
        mime_type = str(part.get("mimeType") or "")
        body = part.get("body") if isinstance(part.get("body"), dict) else {}
        data = body.get("data")
        if data and mime_type.startswith(BODY_MIME_PREFIXES):
            found = extract_invoice_number(decode_base64url(data))
            if found:
                return found
    return None


MESSAGE_STRATEGIES: Sequence[MessageStrategy] = (from_subject, from_filenames, from_snippet, from_body)


def extract_from_message(
    detail: MessageDetail,
    strategies: Sequence[MessageStrategy] = MESSAGE_STRATEGIES,
) -> EmailCandidate:
    found: InvoiceNumberMatch | None = None
    for strategy in strategies:
        found = strategy(detail)
        if found:
            break

    return EmailCandidate(
        id=detail.id,
        internal_date=detail.internal_date,
        subject=detail.subject,
        snippet=detail.snippet,
        parsed_number=found.parsed_number if found else None,
        full_number=(found.full_number or found.parsed_number) if found else None,
    )
