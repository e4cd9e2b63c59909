"""Parse legacy contribution spreadsheets into per-case and per-contributor aggregates."""

from __future__ import annotations

import csv
import io
import logging
import re
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal, InvalidOperation
from typing import Iterable, Optional, Sequence

logger = logging.getLogger(__name__)

UNKNOWN_CONTRIBUTOR_ID = 100
UNKNOWN_CONTRIBUTOR_NAME = "Unknown Contributor"

COLUMN_CASE_ID = "ID"
COLUMN_DESCRIPTION = "Description"
COLUMN_CONTRIBUTOR = "Contributor"
COLUMN_CONTRIBUTOR_ID = "ContributorID"
COLUMN_AMOUNT = "Amount"
COLUMN_MONTH = "Month"

REQUIRED_COLUMNS = (
    COLUMN_CASE_ID,
    COLUMN_DESCRIPTION,
    COLUMN_CONTRIBUTOR,
    COLUMN_CONTRIBUTOR_ID,
    COLUMN_AMOUNT,
)

_PLACEHOLDER_NAME_PATTERN = re.compile(r"^-+$")
_AMOUNT_NOISE_PATTERN = re.compile(r"[,\"']")
# Contributions are stored as NUMERIC(12, 2).
AMOUNT_QUANTUM = Decimal("0.01")
MAX_AMOUNT = Decimal("9999999999.99")

CATEGORY_KEYWORDS: tuple[tuple[str, tuple[str, ...]], ...] = (
    (
        "medical",
        (
            "مريض", "دوا", "أدويه", "علاج", "عمليه", "كانسر", "مستشفي", "أشعه", "سنان",
            "ضروس", "قلب", "حروق", "روماتيزم", "تخاطب", "جلسات", "سكر", "شهريات",
        ),
    ),
    ("educational", ("مدرسه", "مدارس", "دروس", "تعليم", "مصاريف", "لاب توب")),
    ("housing", ("ايجار", "إيجار", "شقه", "بيت", "سقف", "ارضيه", "مرتبه", "سباكه", "حمام")),
    (
        "appliances",
        (
            "تلاجه", "غساله", "مروحه", "بوتاجاز", "فريزر", "كولدير", "شاشه", "دولاب", "سرير",
            "جهاز", "أنبوبه", "ماكينه", "خياطه", "اوفر",
        ),
    ),
    ("emergency", ("طوارئ", "طارئ", "حاله", "مساعده", "دين", "مشلول")),
    ("livelihood", ("مشروع", "تجاره", "عمل", "زراعه", "طيور", "مخبز", "خبز")),
    (
        "community",
        (
            "مسجد", "جامع", "سجاجيد", "منبر", "حلويات", "مولد", "أكفان", "لعب", "أطفال",
            "چواكت", "شتوي", "لبس",
        ),
    ),
    ("basic_needs", ("ملابس", "احتياجات", "خاصه", "بطاطين", "جواكيت")),
)
DEFAULT_CATEGORY = "other"

TITLE_GLOSSARY: tuple[tuple[str, str], ...] = (
    ("مريض", "Patient"),
    ("دوا", "Medicine"),
    ("أدويه", "Medicines"),
    ("علاج", "Treatment"),
    ("عمليه", "Surgery"),
    ("كانسر", "Cancer"),
    ("مستشفي", "Hospital"),
    ("أشعه", "X-ray"),
    ("سنان", "Dental"),
    ("مدرسه", "School"),
    ("مدارس", "Schools"),
    ("دروس", "Lessons"),
    ("مصاريف", "Expenses"),
    ("ايجار", "Rent"),
    ("إيجار", "Rent"),
    ("شقه", "Apartment"),
    ("بيت", "House"),
    ("تلاجه", "Refrigerator"),
    ("غساله", "Washing Machine"),
    ("مروحه", "Fan"),
    ("بوتاجاز", "Stove"),
    ("فريزر", "Freezer"),
    ("مساعده", "Assistance"),
    ("دين", "Debt"),
    ("مشروع", "Project"),
    ("مسجد", "Mosque"),
    ("جامع", "Mosque"),
    ("أرمله", "Widow"),
    ("أيتام", "Orphans"),
    ("معاق", "Disabled"),
    ("شهريات", "Monthly Payments"),
)
MAX_TITLE_LENGTH = 200


class CsvFormatError(ValueError):
    """Raised when the spreadsheet is structurally unusable (e.g. missing columns)."""


class RowValidationError(ValueError):
    """Raised for a single malformed row; the row is dropped and the import continues."""


@dataclass
class ContributorRecord:
    contributor_id: int
    display_name: str
    identity_id: Optional[object] = None


@dataclass(frozen=True)
class ContributionRow:
    line_number: int
    case_id: str
    contributor_id: int
    contributor_name: str
    amount: Decimal
    contributed_on: Optional[date]


@dataclass
class CaseAggregate:
    external_id: str
    title_ar: str
    category: str
    total_amount: Decimal = Decimal("0")
    contributions: list[ContributionRow] = field(default_factory=list)
    earliest_date: Optional[date] = None

    def add(self, row: ContributionRow) -> None:
        self.contributions.append(row)
        self.total_amount += row.amount
        if row.contributed_on and (self.earliest_date is None or row.contributed_on < self.earliest_date):
            self.earliest_date = row.contributed_on


@dataclass(frozen=True)
class RowRejection:
    line_number: int
    reason: str


@dataclass
class AggregationResult:
    cases: dict[str, CaseAggregate] = field(default_factory=dict)
    contributors: dict[int, ContributorRecord] = field(default_factory=dict)
    rejected_rows: list[RowRejection] = field(default_factory=list)
    total_rows: int = 0

    @property
    def accepted_rows(self) -> int:
        return sum(len(aggregate.contributions) for aggregate in self.cases.values())


def parse_amount(raw: Optional[str]) -> Decimal:
    cleaned = _AMOUNT_NOISE_PATTERN.sub("", raw or "").strip()
    if not cleaned:
        raise RowValidationError("amount is empty")
    try:
        amount = Decimal(cleaned)
    except InvalidOperation as exc:
        raise RowValidationError(f"amount '{raw}' is not a number") from exc
    if not amount.is_finite():
        raise RowValidationError(f"amount '{raw}' is not finite")
    if amount <= 0:
        raise RowValidationError(f"amount '{raw}' must be greater than zero")
    if amount > MAX_AMOUNT:
        raise RowValidationError(f"amount '{raw}' exceeds {MAX_AMOUNT}")
    if amount != amount.quantize(AMOUNT_QUANTUM):
        raise RowValidationError(f"amount '{raw}' has more than two decimal places")
    return amount


def parse_contributor_id(raw: Optional[str]) -> int:
    value = (raw or "").strip()
    try:
        contributor_id = int(value)
    except ValueError as exc:
        raise RowValidationError(f"contributor id '{raw}' is not an integer") from exc
    if contributor_id < 0:
        raise RowValidationError(f"contributor id {contributor_id} is negative")
    return contributor_id


def parse_legacy_date(raw: Optional[str]) -> Optional[date]:
    """Parse ``DD/MM/YYYY``; impossible calendar dates yield ``None``."""

    value = (raw or "").strip()
    if not value:
        return None
    parts = value.split("/")
    if len(parts) != 3:
        return None
    try:
        day, month, year = (int(part) for part in parts)
    except ValueError:
        return None
    try:
        parsed = date(year, month, day)
    except ValueError:
        return None
    if (parsed.day, parsed.month, parsed.year) != (day, month, year):
        return None
    return parsed


def is_placeholder_name(name: str) -> bool:
    return not name or bool(_PLACEHOLDER_NAME_PATTERN.match(name))


def categorize_case(title_ar: Optional[str]) -> str:
    if not title_ar:
        return DEFAULT_CATEGORY
    title = title_ar.lower()
    for category, keywords in CATEGORY_KEYWORDS:
        if any(keyword in title for keyword in keywords):
            return category
    return DEFAULT_CATEGORY


def english_case_title(title_ar: Optional[str]) -> str:
    title = (title_ar or "").strip()
    translated = title
    for arabic, english in TITLE_GLOSSARY:
        if arabic in translated:
            translated = translated.replace(arabic, english, 1)
    if translated == title:
        translated = f"Case: {title[:50]}"
    return translated[:MAX_TITLE_LENGTH]


def _read_rows(text: str) -> tuple[list[str], list[tuple[int, list[str]]]]:
    reader = csv.reader(io.StringIO(text.lstrip("\ufeff")))
    header: Optional[list[str]] = None
    rows: list[tuple[int, list[str]]] = []
    for values in reader:
        cleaned = [value.strip() for value in values]
        if not any(cleaned):
            continue
        if header is None:
            header = cleaned
            continue
        rows.append((reader.line_num, cleaned))
    if header is None:
        raise CsvFormatError("CSV file is empty")
    return header, rows


def _column_indexes(header: Sequence[str]) -> dict[str, int]:
    indexes = {name: position for position, name in enumerate(header) if name}
    missing = [column for column in REQUIRED_COLUMNS if column not in indexes]
    if missing:
        raise CsvFormatError(f"Invalid CSV format: missing required columns ({', '.join(missing)})")
    return indexes


def _value(values: Sequence[str], indexes: dict[str, int], column: str) -> str:
    position = indexes.get(column)
    if position is None or position >= len(values):
        return ""
    return values[position]


def _build_row(line_number: int, values: Sequence[str], indexes: dict[str, int]) -> ContributionRow:
    case_id = _value(values, indexes, COLUMN_CASE_ID)
    if not case_id:
        raise RowValidationError("case id is empty")

    contributor_id = parse_contributor_id(_value(values, indexes, COLUMN_CONTRIBUTOR_ID))
    contributor_name = _value(values, indexes, COLUMN_CONTRIBUTOR)
    if contributor_id == UNKNOWN_CONTRIBUTOR_ID:
        if is_placeholder_name(contributor_name):
            contributor_name = UNKNOWN_CONTRIBUTOR_NAME
    elif is_placeholder_name(contributor_name):
        raise RowValidationError(f"contributor {contributor_id} has no name")

    amount = parse_amount(_value(values, indexes, COLUMN_AMOUNT))
    return ContributionRow(
        line_number=line_number,
        case_id=case_id,
        contributor_id=contributor_id,
        contributor_name=contributor_name,
        amount=amount,
        contributed_on=parse_legacy_date(_value(values, indexes, COLUMN_MONTH)),
    )


def _remember_contributor(contributors: dict[int, ContributorRecord], row: ContributionRow) -> None:
    record = contributors.get(row.contributor_id)
    if record is None:
        contributors[row.contributor_id] = ContributorRecord(
            contributor_id=row.contributor_id,
            display_name=row.contributor_name,
        )
    elif len(row.contributor_name) > len(record.display_name):
        record.display_name = row.contributor_name


def aggregate_contributions(text: str) -> AggregationResult:
    """Group the spreadsheet rows by case and by contributor.

    Malformed rows are logged and reported in ``rejected_rows``; only a missing
    required column aborts with :class:`CsvFormatError`.
    """

    header, rows = _read_rows(text)
    indexes = _column_indexes(header)
    result = AggregationResult(total_rows=len(rows))

    for line_number, values in rows:
        try:
            row = _build_row(line_number, values, indexes)
        except RowValidationError as exc:
            logger.warning("Skipping CSV line %d: %s", line_number, exc)
            result.rejected_rows.append(RowRejection(line_number=line_number, reason=str(exc)))
            continue

        _remember_contributor(result.contributors, row)
        aggregate = result.cases.get(row.case_id)
        if aggregate is None:
            title_ar = _value(values, indexes, COLUMN_DESCRIPTION)
            aggregate = CaseAggregate(
                external_id=row.case_id,
                title_ar=title_ar,
                category=categorize_case(title_ar),
            )
            result.cases[row.case_id] = aggregate
        aggregate.add(row)

    logger.info(
        "Aggregated %d rows into %d cases and %d contributors (%d rejected)",
        result.total_rows,
        len(result.cases),
        len(result.contributors),
        len(result.rejected_rows),
    )
    return result


def iter_contribution_rows(cases: Iterable[CaseAggregate]) -> Iterable[tuple[CaseAggregate, ContributionRow]]:
    for aggregate in cases:
        for row in aggregate.contributions:
            yield aggregate, row


__all__ = [
    "AggregationResult",
    "CaseAggregate",
    "ContributionRow",
    "ContributorRecord",
    "CsvFormatError",
    "RowRejection",
    "RowValidationError",
    "UNKNOWN_CONTRIBUTOR_ID",
    "UNKNOWN_CONTRIBUTOR_NAME",
    "aggregate_contributions",
    "categorize_case",
    "english_case_title",
    "iter_contribution_rows",
    "parse_amount",
    "parse_contributor_id",
    "parse_legacy_date",
]
