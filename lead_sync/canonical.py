"""Normalization of raw provider values into comparable canonical forms."""
from __future__ import annotations

import re
import unicodedata
from typing import Any, Mapping, Optional, Tuple

from phonenumbers import COUNTRY_CODE_TO_REGION_CODE

from .config import CanonicalizationConfig
from .errors import CanonicalizationError
from .models import CanonicalFields, EntityRecord, Field, IncomingRecord

_NON_DIGIT = re.compile(r"\D")
_NON_ALNUM = re.compile(r"[^0-9a-z]+")
_NON_NAME = re.compile(r"[^a-z\s]")
_MIN_PHONE_DIGITS = 7


def _fold_accents(text: str) -> str:
    decomposed = unicodedata.normalize("NFKD", text)
    return "".join(char for char in decomposed if not unicodedata.combining(char))


def _text(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _known_calling_code(digits: str) -> Optional[str]:
    # E.164 country codes are prefix-free, so the first hit is the only one.
    for length in (1, 2, 3):
        prefix = digits[:length]
        if len(prefix) == length and not prefix.startswith("0") and int(prefix) in COUNTRY_CODE_TO_REGION_CODE:
            return prefix
    return None


class Canonicalizer:
    """Pure, deterministic projection of raw field maps into :class:`CanonicalFields`."""

    def __init__(self, config: Optional[CanonicalizationConfig] = None) -> None:
        self.config = config or CanonicalizationConfig()

    def canonicalize(self, record: IncomingRecord) -> CanonicalFields:
        """Canonicalize an incoming record.

        Raises :class:`CanonicalizationError` when the record carries none of
        the discriminating fields (email, phone, or company plus name).
        """

        canonical = self.project(record.fields)
        if canonical.dedup_key() is None:
            raise CanonicalizationError(
                f"Record {record.describe()} has no usable email, phone, or company and name",
                provider=record.provider,
                record_id=record.record_id,
            )
        return canonical

    def canonicalize_entity(self, entity: EntityRecord) -> CanonicalFields:
        return self.project(entity.fields)

    def project(self, fields: Mapping[str, Any]) -> CanonicalFields:
        """Canonicalize a raw field map without enforcing discriminating fields."""

        phone, calling_code = self.phone(fields.get(Field.PHONE.value))
        return CanonicalFields(
            email=self.email(fields.get(Field.EMAIL.value)),
            phone=phone,
            calling_code=calling_code,
            company=self.company(fields.get(Field.COMPANY_NAME.value)),
            full_name=self.full_name(
                fields.get(Field.FULL_NAME.value),
                fields.get(Field.FIRST_NAME.value),
                fields.get(Field.LAST_NAME.value),
            ),
        )

    def email(self, value: Any) -> Optional[str]:
        text = _text(value)
        if text is None:
            return None
        local, _, domain = text.lower().rpartition("@")
        if not local or not domain or "@" in local or "." not in domain or " " in text:
            return None
        domain = self.config.domain_aliases.get(domain, domain)
        if domain in self.config.plus_tag_domains:
            local = local.partition("+")[0]
            if not local:
                return None
        if domain in self.config.dot_insensitive_domains:
            local = local.replace(".", "")
        return f"{local}@{domain}"

    def phone(self, value: Any) -> Tuple[Optional[str], Optional[str]]:
        """Return ``(digits, calling_code)``; the calling code is a best guess."""

        text = _text(value)
        if text is None:
            return None, None
        digits = _NON_DIGIT.sub("", text)
        international = text.startswith("+")
        if text.startswith("00"):
            digits = digits[2:]
            international = True
        if len(digits) < _MIN_PHONE_DIGITS:
            return None, None

        if international or len(digits) > 11:
            code = _known_calling_code(digits)
        elif len(digits) == 11 and digits.startswith("1"):
            code = "1"
        elif len(digits) == 10:
            code = self.config.default_calling_code
        else:
            code = None
        return digits, code

    def company(self, value: Any) -> Optional[str]:
        text = _text(value)
        if text is None:
            return None
        tokens = _NON_ALNUM.sub(" ", _fold_accents(text).lower()).split()
        while len(tokens) > 1 and tokens[-1] in self.config.legal_suffixes:
            tokens.pop()
        return "".join(tokens) or None

    def full_name(self, full: Any, first: Any = None, last: Any = None) -> Optional[str]:
        text = _text(full) or " ".join(filter(None, [_text(first), _text(last)]))
        if not text:
            return None
        cleaned = _NON_NAME.sub("", _fold_accents(text).lower())
        return " ".join(cleaned.split()) or None


__all__ = ["Canonicalizer"]
