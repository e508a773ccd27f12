"""
Compatibility scoring between a donor organ and a receiver.

The score is a weighted sum on a 0-100 scale:

- blood type compatibility: 40 points
- HLA marker overlap: up to 30 points
- receiver urgency: up to 16 points (urgency 1 is the most urgent)
- donor/receiver age proximity: 2 to 10 points

Scoring is pure: the same inputs and the same ``today`` always give the
same result.  Ages are computed against the date of scoring and are not
recomputed later for a stored score.
"""
from __future__ import annotations

import datetime
from dataclasses import dataclass
from typing import Optional

from django.utils import timezone

from allocation.services.blood import is_compatible

BLOOD_WEIGHT = 40
HLA_WEIGHT = 30
URGENCY_STEP = 4
LEAST_URGENT = 5
AGE_WEIGHT = 10
MAX_SCORE = 100

# (max age difference in years, factor applied to AGE_WEIGHT)
AGE_BANDS = (
    (10, 1.0),
    (20, 0.8),
    (30, 0.6),
    (40, 0.4),
)
AGE_FLOOR_FACTOR = 0.2


@dataclass(frozen=True)
class DonorAttributes:
    blood_type: str
    date_of_birth: Optional[datetime.date] = None
    hla_type: Optional[str] = None


@dataclass(frozen=True)
class ReceiverAttributes:
    blood_type: str
    urgency_status: int
    date_of_birth: Optional[datetime.date] = None
    hla_type: Optional[str] = None


@dataclass(frozen=True)
class ScoreBreakdown:
    blood: float
    hla: float
    urgency: float
    age: float

    @property
    def total(self) -> float:
        raw = self.blood + self.hla + self.urgency + self.age
        return round(max(0.0, min(float(MAX_SCORE), raw)), 2)

    def as_dict(self) -> dict:
        return {
            'blood': self.blood,
            'hla': self.hla,
            'urgency': self.urgency,
            'age': self.age,
            'total': self.total,
        }


def parse_hla_markers(hla_type: Optional[str]) -> frozenset[str]:
    """Split a comma separated HLA string into a set of markers."""
    if not hla_type:
        return frozenset()
    return frozenset(m.strip().upper() for m in hla_type.split(',') if m.strip())


def hla_match_ratio(donor_hla: Optional[str], receiver_hla: Optional[str]) -> float:
    """Shared markers over the larger marker set; 0 when either side has none."""
    donor = parse_hla_markers(donor_hla)
    receiver = parse_hla_markers(receiver_hla)
    if not donor or not receiver:
        return 0.0
    return len(donor & receiver) / max(len(donor), len(receiver))


def age_on(date_of_birth: datetime.date, today: datetime.date) -> int:
    """Whole years between ``date_of_birth`` and ``today``."""
    if isinstance(date_of_birth, datetime.datetime):
        date_of_birth = date_of_birth.date()
    years = today.year - date_of_birth.year
    if (today.month, today.day) < (date_of_birth.month, date_of_birth.day):
        years -= 1
    return years


def age_factor(age_difference: int) -> float:
    for limit, factor in AGE_BANDS:
        if age_difference <= limit:
            return factor
    return AGE_FLOOR_FACTOR


def score_breakdown(donor, receiver, *, today: Optional[datetime.date] = None) -> ScoreBreakdown:
    """
    Compute every term of the compatibility score.

    Args:
        donor: object with ``blood_type``, ``hla_type`` and ``date_of_birth``
            (a :class:`DonorAttributes` or a ``Donor`` model instance)
        receiver: same attributes plus ``urgency_status``
        today: reference date for ages; defaults to the current local date

    Returns:
        ScoreBreakdown with one value per term
    """
    today = today or timezone.localdate()

    blood = float(BLOOD_WEIGHT) if is_compatible(donor.blood_type, receiver.blood_type) else 0.0
    hla = HLA_WEIGHT * hla_match_ratio(donor.hla_type, receiver.hla_type)
    urgency = float(URGENCY_STEP * (LEAST_URGENT - int(receiver.urgency_status)))

    age = 0.0
    if donor.date_of_birth and receiver.date_of_birth:
        difference = abs(age_on(donor.date_of_birth, today) - age_on(receiver.date_of_birth, today))
        age = AGE_WEIGHT * age_factor(difference)

    return ScoreBreakdown(blood=blood, hla=round(hla, 4), urgency=urgency, age=round(age, 4))


def score(donor, receiver, *, today: Optional[datetime.date] = None) -> float:
    """Return the compatibility score of ``donor`` and ``receiver`` in [0, 100]."""
    return score_breakdown(donor, receiver, today=today).total
