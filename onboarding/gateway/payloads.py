"""
CM request assembly.

Pure functions: given a record and a translation-table snapshot they always
produce the same payload and never touch Redis or the network.
"""
from __future__ import annotations

from typing import Any, Dict, List

from onboarding.mapping.translation_table import CodeTranslationTable
from onboarding.store.models import OnboardingRecord

# (source field, fixed CM medium type). Order is the order of the slots in the request.
CONTACT_SLOTS = (
    ("mobile", "MOBILE"),
    ("phone", "PHONE"),
    ("fax", "FAX"),
    ("email", "EMAIL"),
)

# (source field, MZ mapping group key, CM relatedParty role)
RELATED_PARTY_FIELDS = (
    ("category", "CATEGORY", "CATEGORY"),
    ("division", "DIVISION", "DIVISION"),
    ("salesOrg", "SALES_ORG", "SALES_ORGANISATION"),
)

BILLING = "BILLING"
INSTALLATION = "INSTALLATION"


def _clean(v: Any) -> str:
    return str(v or "").strip()


def build_contact_media(record: OnboardingRecord) -> List[Dict[str, str]]:
    out: List[Dict[str, str]] = []
    for attr, medium_type in CONTACT_SLOTS:
        value = _clean(getattr(record, attr, ""))
        if value:
            out.append({"mediumType": medium_type, "value": value})
    return out


def build_addresses(record: OnboardingRecord) -> List[Dict[str, str]]:
    country = _clean(record.country)
    if not country:
        return []
    base = {
        "country": country,
        "city": _clean(record.city),
        "street": _clean(record.street),
        "postalCode": _clean(record.postalCode),
    }
    out = [dict(base, addressType=BILLING)]
    locality = _clean(record.locality)
    if locality:
        out.append(dict(base, addressType=INSTALLATION, locality=locality))
    return out


def build_related_parties(record: OnboardingRecord, table: CodeTranslationTable) -> List[Dict[str, str]]:
    """Resolve coded fields. A TranslationMiss propagates: CM must never get a half-coded party."""
    out: List[Dict[str, str]] = []
    for attr, group_key, role in RELATED_PARTY_FIELDS:
        value = _clean(getattr(record, attr, ""))
        if not value:
            continue
        out.append({"role": role, "code": table.resolve(record.entityKind, group_key, value)})
    return out


def build_create_request(record: OnboardingRecord, table: CodeTranslationTable) -> Dict[str, Any]:
    payload: Dict[str, Any] = {
        "externalReference": record.id,
        "partyType": record.entityKind,
        "partySubType": record.typeDiscriminator,
        "name": record.name,
        "taxNumber": record.taxNumber,
        "identification": [],
        "contactMedium": build_contact_media(record),
        "address": build_addresses(record),
        "relatedParty": build_related_parties(record, table),
    }
    if _clean(record.idNumber):
        payload["identification"].append({"type": record.idType, "value": record.idNumber})
    return payload


def build_update_request(record: OnboardingRecord, table: CodeTranslationTable) -> Dict[str, Any]:
    payload = build_create_request(record, table)
    payload["id"] = record.externalPartyId
    return payload
