"""
Blood type compatibility lookups.

Determines which donor blood types can give an organ to which receiver
blood types, following standard ABO/Rh transfusion compatibility.
"""
from __future__ import annotations

from typing import Optional

# donor type -> receiver types it can give to
COMPATIBILITY: dict[str, frozenset[str]] = {
    'O-': frozenset({'O-', 'O+', 'A-', 'A+', 'B-', 'B+', 'AB-', 'AB+'}),  # universal donor
    'O+': frozenset({'O+', 'A+', 'B+', 'AB+'}),
    'A-': frozenset({'A-', 'A+', 'AB-', 'AB+'}),
    'A+': frozenset({'A+', 'AB+'}),
    'B-': frozenset({'B-', 'B+', 'AB-', 'AB+'}),
    'B+': frozenset({'B+', 'AB+'}),
    'AB-': frozenset({'AB-', 'AB+'}),
    'AB+': frozenset({'AB+'}),
}

BLOOD_TYPES = tuple(COMPATIBILITY)


def normalize_blood_type(value) -> Optional[str]:
    """Return the canonical spelling of ``value`` or None if it is not a known type."""
    if not isinstance(value, str):
        return None
    value = value.strip().upper()
    return value if value in COMPATIBILITY else None


def is_compatible(donor_blood_type, receiver_blood_type) -> bool:
    """
    Check if an organ from a donor of ``donor_blood_type`` may go to a
    receiver of ``receiver_blood_type``.

    Unknown or malformed types are never compatible; the function does
    not raise.
    """
    donor = normalize_blood_type(donor_blood_type)
    receiver = normalize_blood_type(receiver_blood_type)
    if donor is None or receiver is None:
        return False
    return receiver in COMPATIBILITY[donor]


def compatible_donor_types(receiver_blood_type) -> list[str]:
    """Blood types that can donate to ``receiver_blood_type``, in table order."""
    receiver = normalize_blood_type(receiver_blood_type)
    if receiver is None:
        return []
    return [donor for donor, receivers in COMPATIBILITY.items() if receiver in receivers]


def compatible_receiver_types(donor_blood_type) -> list[str]:
    """Blood types that can receive from ``donor_blood_type``, in table order."""
    donor = normalize_blood_type(donor_blood_type)
    if donor is None:
        return []
    return [t for t in BLOOD_TYPES if t in COMPATIBILITY[donor]]
