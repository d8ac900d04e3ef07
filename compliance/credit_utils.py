"""
Pure credit rules: hour-to-credit conversion, the evidence gate, and the
effective-credit resolver that decides what a submission counts for.

Everything that reports or sums credits goes through
``calculate_effective_credits``; nothing reads stored credit values
directly.
"""

from decimal import Decimal, ROUND_HALF_UP

from .models import ActivityRecord

ZERO = Decimal('0.00')
CREDIT_PRECISION = Decimal('0.01')


def quantize_credits(value) -> Decimal:
    return Decimal(value).quantize(CREDIT_PRECISION, rounding=ROUND_HALF_UP)


def to_decimal(value, field: str = 'hours') -> Decimal:
    """Coerce a numeric value to Decimal; reject anything that is not a finite number."""
    if isinstance(value, bool) or not isinstance(value, (int, float, Decimal)):
        raise TypeError(f"{field} must be a number, got {type(value).__name__}")
    if isinstance(value, float):
        value = Decimal(str(value))
    value = Decimal(value)
    if not value.is_finite():
        raise TypeError(f"{field} must be a finite number")
    return value


def convert_hours(hours, ratio, min_hours=None, max_hours=None) -> Decimal:
    """
    Apply the max-hours clamp, the min-hours qualification and the
    conversion ratio. Result is rounded to two places and never negative.
    """
    hours = to_decimal(hours)
    ratio = to_decimal(ratio, 'conversion_ratio')

    if max_hours is not None and hours > to_decimal(max_hours, 'max_hours'):
        hours = to_decimal(max_hours, 'max_hours')
    if min_hours is not None and hours < to_decimal(min_hours, 'min_hours'):
        return ZERO

    credits = hours * ratio
    if credits <= 0:
        return ZERO
    return quantize_credits(credits)


def calculate_credits(entry, hours) -> Decimal:
    """
    Credits a catalog entry awards for ``hours``.

    Ad-hoc activities (no entry) and records without hours do not
    auto-calculate and return 0.
    """
    if entry is None or hours is None:
        return ZERO
    return convert_hours(hours, entry.conversion_ratio, entry.min_hours, entry.max_hours)


def is_evidence_satisfied(required, evidence_ref) -> bool:
    if not required:
        return True
    return isinstance(evidence_ref, str) and len(evidence_ref.strip()) > 0


def calculate_effective_credits(submission, entry=None) -> Decimal:
    """
    The credit value a submission counts for toward compliance.

    0 unless the submission is approved and its entry's evidence requirement
    is met. The stored credit value wins when present; otherwise credits are
    derived from hours (ratio 1 and no thresholds for ad-hoc submissions).

    ``submission`` and ``entry`` may be model instances or the row types in
    ``compliance.queries``.
    """
    if submission.status != ActivityRecord.Status.APPROVED:
        return ZERO

    required = entry.evidence_required if entry is not None else False
    if not is_evidence_satisfied(required, submission.evidence_ref):
        return ZERO

    if submission.credits is not None:
        stored = to_decimal(submission.credits, 'credits')
        return quantize_credits(stored) if stored > 0 else ZERO

    if submission.hours is None:
        return ZERO
    if entry is None:
        return convert_hours(submission.hours, Decimal('1'))
    return calculate_credits(entry, submission.hours)
