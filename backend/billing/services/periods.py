"""Calendar-month helpers for recurring billing periods.

Periods are represented by the first day of their month.
"""

from collections.abc import Iterator
from datetime import date

from billing.config import settings

MONTH_NAMES = {
    "en": [
        "January", "February", "March", "April", "May", "June",
        "July", "August", "September", "October", "November", "December",
    ],
    "es": [
        "enero", "febrero", "marzo", "abril", "mayo", "junio",
        "julio", "agosto", "septiembre", "octubre", "noviembre", "diciembre",
    ],
}

RECURRING_CONCEPTS = {
    "en": "Recurring fee — {month} {year}",
    "es": "Mensualidad {month} de {year}",
}


def first_of_month(d: date) -> date:
    return d.replace(day=1)


def add_months(d: date, months: int) -> date:
    """Shift a first-of-month date by a number of calendar months."""
    index = d.year * 12 + (d.month - 1) + months
    return date(index // 12, index % 12 + 1, 1)


def iter_months(start: date, end: date) -> Iterator[date]:
    """Yield every period from `start` to `end`, both inclusive."""
    month = first_of_month(start)
    last = first_of_month(end)
    while month <= last:
        yield month
        month = add_months(month, 1)


def month_label(period: date, locale: str | None = None) -> tuple[str, int]:
    names = MONTH_NAMES.get(locale or settings.invoice_locale, MONTH_NAMES["en"])
    return names[period.month - 1], period.year


def recurring_concept(period: date, locale: str | None = None) -> str:
    """Concept line for the recurring invoice covering `period`."""
    locale = locale or settings.invoice_locale
    template = RECURRING_CONCEPTS.get(locale, RECURRING_CONCEPTS["en"])
    month, year = month_label(period, locale)
    return template.format(month=month, year=year)
