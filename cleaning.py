"""
Data cleaning utilities shared by the quality analyzer and the clean export.

The analyzer's suggested values and the "clean" export both come from the
functions below, so a clean export always matches what the analyzer recommends.
"""

import re
import unicodedata
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, Optional, Tuple

from dateutil import parser as dtparser

from entities import Entity, EntityType

LEGAL_FORMS = ("SA", "SAS", "SARL", "SASU", "SNC", "EURL", "GIE", "SCI", "ESN", "SSII")
_LEGAL_FORM_RE = re.compile(r"\b(" + "|".join(LEGAL_FORMS) + r")\b", re.IGNORECASE)

_EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
_PHONE_RE = re.compile(r"^\+?\d{9,15}$")
_ISO_DATE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")
_DEFAULTS = (datetime(2000, 1, 1), datetime(2001, 2, 2))


# ==================== NORMALIZERS ====================

def normalize_email(email: Optional[str]) -> str:
    """Lower-case and trim"""
    if not email:
        return ""
    return email.strip().lower()


def normalize_phone(phone: Optional[str]) -> str:
    """
    Canonical E.164 form without spaces.

    "06.12.34.56.78" -> "+33612345678"; "0033 6 12 34 56 78" -> "+33612345678".
    Numbers that cannot be interpreted are returned with separators removed.
    """
    if not phone:
        return ""

    cleaned = re.sub(r"[^\d+]", "", phone)
    plus = cleaned.startswith("+")
    digits = cleaned.replace("+", "")

    if plus:
        return "+" + digits if digits else phone.strip()
    if digits.startswith("00") and len(digits) > 4:
        return "+" + digits[2:]
    if digits.startswith("0") and len(digits) == 10:
        return "+33" + digits[1:]
    if digits.startswith("33") and len(digits) == 11:
        return "+" + digits
    if len(digits) == 9:
        return "+33" + digits
    return digits or phone.strip()


def normalize_name(name: Optional[str]) -> str:
    """Title-case each word, keeping hyphens: " jean-PIERRE  dupont" -> "Jean-Pierre Dupont" """
    if not name:
        return ""
    words = name.strip().lower().split()
    return " ".join(
        "-".join(part[:1].upper() + part[1:] for part in word.split("-"))
        for word in words
    )


def normalize_company_name(name: Optional[str]) -> str:
    """Collapse whitespace and upper-case French legal forms"""
    if not name:
        return ""
    normalized = re.sub(r"\s+", " ", name.strip())
    return _LEGAL_FORM_RE.sub(lambda m: m.group(1).upper(), normalized)


def normalize_date(value: Optional[str]) -> str:
    """ISO YYYY-MM-DD, or the input unchanged when it cannot be parsed"""
    if not value:
        return ""
    parsed = parse_date(value)
    if parsed is None:
        return value
    return parsed.date().isoformat()


def dedup_key(value: Any) -> str:
    """Deterministic grouping key: diacritics stripped, case-folded, whitespace collapsed"""
    if value is None:
        return ""
    text = unicodedata.normalize("NFKD", str(value))
    text = "".join(ch for ch in text if not unicodedata.combining(ch))
    return re.sub(r"\s+", " ", text.casefold().strip())


# ==================== VALIDATORS ====================

def is_valid_email(email: str) -> bool:
    return bool(_EMAIL_RE.match(email or ""))


def is_valid_phone(phone: str) -> bool:
    cleaned = re.sub(r"[\s.\-()/]", "", phone or "")
    return bool(_PHONE_RE.match(cleaned))


def parse_date(value: str) -> Optional[datetime]:
    if _ISO_DATE_RE.match(value.strip()):
        try:
            return datetime.strptime(value.strip(), "%Y-%m-%d")
        except ValueError:
            return None
    # dateutil fills missing parts from the default; a full date parses the same under both
    try:
        first = dtparser.parse(value, dayfirst=True, default=_DEFAULTS[0])
        second = dtparser.parse(value, dayfirst=True, default=_DEFAULTS[1])
    except (ValueError, OverflowError):
        return None
    if first.date() != second.date():
        return None
    return first


# ==================== FIELD RULES ====================

@dataclass(frozen=True)
class FieldRules:
    """Which attributes of an entity type get which checks and normalizations"""
    required: Tuple[str, ...] = ()
    emails: Tuple[str, ...] = ()
    phones: Tuple[str, ...] = ()
    names: Tuple[str, ...] = ()
    company_names: Tuple[str, ...] = ()
    dates: Tuple[str, ...] = ()
    dedup: Tuple[str, ...] = ()


FIELD_RULES: Dict[EntityType, FieldRules] = {
    EntityType.CANDIDATE: FieldRules(
        required=("firstName", "lastName", "email"),
        emails=("email",),
        phones=("phone1", "phone2"),
        names=("firstName", "lastName"),
        dates=("dateOfBirth", "availabilityDate"),
        dedup=("email",),
    ),
    EntityType.RESOURCE: FieldRules(
        required=("firstName", "lastName", "email"),
        emails=("email",),
        phones=("phone1", "phone2"),
        names=("firstName", "lastName"),
        dates=("dateOfBirth",),
        dedup=("email",),
    ),
    EntityType.CONTACT: FieldRules(
        required=("firstName", "lastName"),
        emails=("email",),
        phones=("phone1", "phone2"),
        names=("firstName", "lastName"),
        dedup=("email",),
    ),
    EntityType.COMPANY: FieldRules(
        required=("name",),
        emails=("email",),
        phones=("phone1", "phone2"),
        company_names=("name",),
        dedup=("name",),
    ),
    EntityType.OPPORTUNITY: FieldRules(
        required=("title",),
        dates=("startDate", "endDate"),
    ),
    EntityType.PROJECT: FieldRules(
        required=("title",),
        dates=("startDate", "endDate"),
    ),
}


def field_normalizers(entity_type: EntityType) -> Dict[str, Callable[[Optional[str]], str]]:
    """Attribute name -> normalization function for one entity type"""
    rules = FIELD_RULES.get(entity_type, FieldRules())
    normalizers: Dict[str, Callable[[Optional[str]], str]] = {}
    for name in rules.names:
        normalizers[name] = normalize_name
    for name in rules.company_names:
        normalizers[name] = normalize_company_name
    for name in rules.emails:
        normalizers[name] = normalize_email
    for name in rules.phones:
        normalizers[name] = normalize_phone
    for name in rules.dates:
        normalizers[name] = normalize_date
    return normalizers


def suggest(entity_type: EntityType, field: str, value: Any) -> Any:
    """Cleaned value for one attribute, or the value itself when no rule applies"""
    if not isinstance(value, str) or not value:
        return value
    normalizer = field_normalizers(entity_type).get(field)
    return normalizer(value) if normalizer else value


def clean_entity(entity: Entity) -> Entity:
    """Copy of the entity with every normalizable string attribute cleaned"""
    cleaned = entity.copy()
    for field in field_normalizers(entity.type):
        if field in cleaned.attributes:
            cleaned.attributes[field] = suggest(entity.type, field, cleaned.attributes[field])
    return cleaned
