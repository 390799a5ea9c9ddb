"""
Age computation from a provider date of birth. The DOB is used here and then dropped.
"""
from dataclasses import dataclass
from datetime import date, datetime


@dataclass(frozen=True)
class VerificationOutcome:
    is_adult: bool
    age_threshold: int
    subject_age: int
    computed_at: datetime


def compute_age(dob: date, today: date) -> int:
    """Whole years between dob and today; birthday not yet reached this year counts one less."""
    return today.year - dob.year - ((today.month, today.day) < (dob.month, dob.day))


def evaluate_age(dob: date, threshold: int, now: datetime) -> VerificationOutcome:
    age = compute_age(dob, now.date())
    return VerificationOutcome(
        is_adult=age >= threshold,
        age_threshold=threshold,
        subject_age=age,
        computed_at=now,
    )
