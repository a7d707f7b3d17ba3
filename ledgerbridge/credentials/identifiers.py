"""
Tenant identifier normalization.

Callers identify a tenant by whatever they have at hand: "acme",
"acme.pipedrive.com", "https://acme.pipedrive.com/", or a numeric user id.
All of these reduce to the same canonical key.
"""

import re
from typing import Optional

CRM_DOMAIN_SUFFIX = ".pipedrive.com"

_SCHEME = re.compile(r"^https?://", re.IGNORECASE)


def normalize_identifier(identifier: Optional[object]) -> Optional[str]:
    """
    Reduce an identifier to its canonical key.

    Strips whitespace, a leading http(s)://, trailing slashes and the CRM
    domain suffix, then lower-cases. Returns None when nothing is left.
    """
    if identifier is None:
        return None
    value = str(identifier).strip()
    value = _SCHEME.sub("", value).rstrip("/").lower()
    if value.endswith(CRM_DOMAIN_SUFFIX):
        value = value[: -len(CRM_DOMAIN_SUFFIX)]
    return value or None


def identifier_variants(identifier: Optional[object]) -> list[str]:
    """
    Syntactic variants to try as exact keys, most specific first.

    raw, normalized, normalized + suffix, and both https-qualified forms.
    """
    if identifier is None:
        return []
    raw = str(identifier).strip()
    normalized = normalize_identifier(raw)

    candidates = [raw]
    if normalized:
        candidates.extend([
            normalized,
            f"{normalized}{CRM_DOMAIN_SUFFIX}",
            f"https://{normalized}",
            f"https://{normalized}{CRM_DOMAIN_SUFFIX}",
        ])

    variants = []
    for candidate in candidates:
        if candidate and candidate not in variants:
            variants.append(candidate)
    return variants


def is_numeric_identifier(identifier: Optional[object]) -> bool:
    return identifier is not None and str(identifier).strip().isdigit()


def identifier_matches(
    normalized: str,
    tenant_key: Optional[str],
    domain_key: Optional[str],
    alternate_numeric_id: Optional[str],
) -> bool:
    """
    Loose match used by the last-resort scan.

    True on canonical key equality, substring containment in either
    direction against the record's domain key, or alternate id equality.
    """
    if not normalized:
        return False
    if tenant_key and normalize_identifier(tenant_key) == normalized:
        return True
    if domain_key and (normalized in domain_key or domain_key in normalized):
        return True
    if alternate_numeric_id and str(alternate_numeric_id).strip() == normalized:
        return True
    return False
