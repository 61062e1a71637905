"""
Recurrence arithmetic for compliance runs.

Pure date functions, no I/O. An anchor day larger than the target month
rolls forward into the following month (anchor 31 in April gives 1 May),
the same way the anchor is applied everywhere else in the engine.
"""
from datetime import date, timedelta
from typing import Optional

from legalops.models.compliance_run import RunFrequency

# Months added per period for the month-based frequencies
PERIOD_MONTHS = {
    RunFrequency.MONTHLY: 1,
    RunFrequency.BIMONTHLY: 2,
    RunFrequency.QUARTERLY: 3,
    RunFrequency.ANNUALLY: 12,
}


def _coerce_frequency(frequency) -> Optional[RunFrequency]:
    if isinstance(frequency, RunFrequency):
        return frequency
    try:
        return RunFrequency(frequency)
    except ValueError:
        return None


def add_months(year: int, month: int, months: int) -> tuple[int, int]:
    """Shift a (year, month) pair by a number of months"""
    index = year * 12 + (month - 1) + months
    return index // 12, index % 12 + 1


def apply_anchor(year: int, month: int, anchor_day: int) -> date:
    """Day `anchor_day` of the given month, rolling over past month end"""
    return date(year, month, 1) + timedelta(days=anchor_day - 1)


def _next_weekly(anchor_day: int, reference_date: date) -> date:
    # isoweekday: Monday=1 .. Sunday=7
    distance = (anchor_day - reference_date.isoweekday()) % 7
    if distance == 0:
        distance = 7
    return reference_date + timedelta(days=distance)


def _next_month_based(months: int, anchor_day: int, reference_date: date) -> date:
    candidate = apply_anchor(reference_date.year, reference_date.month, anchor_day)
    step = 0
    # A rolled-over anchor can still land on or before the reference date
    while candidate <= reference_date:
        step += months
        year, month = add_months(reference_date.year, reference_date.month, step)
        candidate = apply_anchor(year, month, anchor_day)
    return candidate


def default_anchor_day(frequency, due_date: date) -> int:
    """Anchor implied by a due date when none is configured"""
    if _coerce_frequency(frequency) == RunFrequency.WEEKLY:
        return due_date.isoweekday()
    return due_date.day


def next_occurrence(frequency, anchor_day: Optional[int], reference_date: date) -> date:
    """
    Next date strictly after `reference_date` matching the frequency and anchor.

    weekly:    next date whose ISO weekday equals anchor_day (1-7)
    monthly, bimonthly, quarterly, annually:
               anchor_day of the reference month, or of the following
               period(s) when that is not after the reference date
    once, or an unrecognised frequency:
               the reference date itself (there is no next occurrence)
    """
    freq = _coerce_frequency(frequency)
    if freq is None or freq == RunFrequency.ONCE:
        return reference_date

    if anchor_day is None:
        anchor_day = default_anchor_day(freq, reference_date)

    if freq == RunFrequency.WEEKLY:
        return _next_weekly(anchor_day, reference_date)
    if freq in PERIOD_MONTHS:
        return _next_month_based(PERIOD_MONTHS[freq], anchor_day, reference_date)
    return reference_date


def validate_anchor_day(frequency, anchor_day: Optional[int]) -> Optional[str]:
    """Return an error message when the anchor is out of range, else None"""
    if anchor_day is None:
        return None
    freq = _coerce_frequency(frequency)
    if freq == RunFrequency.WEEKLY and not 1 <= anchor_day <= 7:
        return "anchor_day must be between 1 and 7 for weekly runs"
    if not 1 <= anchor_day <= 31:
        return "anchor_day must be between 1 and 31"
    return None
