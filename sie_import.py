"""
SIE Import - Validate parsed SIE documents and prepare them for a ledger.

Takes a ``sie_parser.ParsedDocument`` and produces plain, import-ready
records: accounts, fiscal years and balanced journal entries (including one
opening-balance entry per fiscal year). Nothing here writes to a ledger; the
caller hands the batches to its ledger store and owns that transaction.

Every stage reports problems as data. Validation gives errors and warnings,
and the builders return an ``ImportBatch`` with the records that succeeded
next to the issues for the ones that did not, so a caller can import
everything that worked and report the rest.

Example usage:
    from sie_parser import parse_sie
    from sie_import import (FiscalYearResolver, validate_sie,
                            prepare_journal_entries_for_import)

    document = parse_sie(content, filename)
    validation = validate_sie(document)

    fiscal_year_map = FiscalYearResolver.from_records(ledger_fiscal_years,
                                                      document.fiscal_years)
    batch = prepare_journal_entries_for_import(
        document.vouchers, organization_id, account_map, fiscal_year_map)
    ledger.insert_journal_entries(batch.to_records())
"""

import logging
import re
from collections import Counter
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Set, Tuple

from sie_parser import (
    BALANCE_TOLERANCE,
    AccountClass,
    BalanceRecord,
    CalendarYear,
    ParsedDocument,
    SieAccount,
    SieFiscalYear,
    SieFormat,
    SieVoucher,
    YearIndex,
    YearRef,
    calendar_year_of,
    is_iso_date,
    normalize_date,
)

logger = logging.getLogger(__name__)

SOURCE_TYPE = "sie_import"
ENTRY_STATUS = "posted"
ACCOUNT_NUMBER_PATTERN = re.compile(r'^\d{4,6}$')


# Validation
@dataclass
class ValidationResult:
    """Outcome of ``validate_sie``. Only errors make a document invalid."""
    is_valid: bool
    errors: List[str]
    warnings: List[str]
    summary: Dict[str, Any]


def validate_sie(document: ParsedDocument) -> ValidationResult:
    """Check a parsed document before import.

    Parser errors make the document invalid. Everything else is a warning
    that the caller may show before letting the user proceed: missing company
    name, no accounts, duplicate or malformed account numbers, vouchers that
    do not balance within one öre and vouchers without a valid date.

    Args:
        document: Parsed SIE document

    Returns:
        ValidationResult with errors, warnings and per-category counts
    """
    errors = [str(issue) for issue in document.errors]
    warnings = []

    if not document.company.name:
        warnings.append("Company name not found in file")

    if not document.accounts:
        warnings.append("No accounts found in file")

    seen = set()
    for account in document.accounts:
        if account.account_number in seen:
            warnings.append(f"Duplicate account number: {account.account_number}")
        seen.add(account.account_number)

    for account in document.accounts:
        if not ACCOUNT_NUMBER_PATTERN.match(account.account_number):
            warnings.append(f"Invalid account number format: {account.account_number}")

    unbalanced = 0
    for voucher in document.vouchers:
        if not is_iso_date(voucher.date):
            warnings.append(f"Voucher {voucher.reference} has an invalid date: {voucher.date!r}")
        if not voucher.transactions:
            continue
        difference = voucher.balance
        if abs(difference) > BALANCE_TOLERANCE:
            unbalanced += 1
            warnings.append(f"Voucher {voucher.reference} is unbalanced (difference {abs(difference):.2f})")

    class_counts = Counter(account.account_class.value for account in document.accounts)
    summary = {
        'format': document.format.value,
        'company': document.company.name,
        'account_count': len(document.accounts),
        'fiscal_year_count': len(document.fiscal_years),
        'voucher_count': len(document.vouchers),
        'transaction_count': sum(len(v.transactions) for v in document.vouchers),
        'opening_balance_count': len(document.opening_balances),
        'closing_balance_count': len(document.closing_balances),
        'has_opening_balances': bool(document.opening_balances),
        'has_closing_balances': bool(document.closing_balances),
        'unbalanced_voucher_count': unbalanced,
        'account_classes': {account_class.value: class_counts.get(account_class.value, 0)
                            for account_class in AccountClass},
        'error_count': len(errors),
        'warning_count': len(warnings),
    }

    return ValidationResult(
        is_valid=not errors,
        errors=errors,
        warnings=warnings,
        summary=summary,
    )


# Fiscal years
@dataclass(frozen=True)
class LedgerFiscalYear:
    """A fiscal year that already exists in the target ledger."""
    id: Any
    start_date: str
    end_date: str

    @classmethod
    def from_record(cls, record) -> 'LedgerFiscalYear':
        """Build from a ledger store record with id, start_date and end_date."""
        if isinstance(record, cls):
            return record
        return cls(
            id=record['id'],
            start_date=normalize_date(record.get('start_date')) or "",
            end_date=normalize_date(record.get('end_date'), is_end_date=True) or "",
        )

    def contains(self, iso_date: str) -> bool:
        return bool(self.start_date and self.end_date) and self.start_date <= iso_date <= self.end_date


class FiscalYearResolver:
    """Resolve SIE fiscal-year references to fiscal years in the ledger.

    SIE4 addresses years relative to the current one (``YearIndex``) through
    its ``#RAR`` records, SIE5 by calendar year (``CalendarYear``). Both end
    up in a lookup by calendar year built from the ledger's years: a year is
    found by the calendar year it starts in, or ends in when no other ledger
    year starts in that calendar year.
    """

    def __init__(self, ledger_years: Iterable[LedgerFiscalYear] = (),
                 sie_fiscal_years: Iterable[SieFiscalYear] = ()):
        self.ledger_years = [LedgerFiscalYear.from_record(year) for year in ledger_years]
        self.sie_fiscal_years = list(sie_fiscal_years)

        self._by_calendar_year: Dict[int, LedgerFiscalYear] = {}
        for year in self.ledger_years:
            start_year = calendar_year_of(year.start_date)
            if start_year is not None:
                self._by_calendar_year.setdefault(start_year, year)
        for year in self.ledger_years:
            end_year = calendar_year_of(year.end_date)
            if end_year is not None:
                self._by_calendar_year.setdefault(end_year, year)

    @classmethod
    def from_records(cls, records: Iterable[Mapping[str, Any]],
                     sie_fiscal_years: Iterable[SieFiscalYear] = ()) -> 'FiscalYearResolver':
        return cls([LedgerFiscalYear.from_record(record) for record in records], sie_fiscal_years)

    def with_sie_fiscal_years(self, sie_fiscal_years: Iterable[SieFiscalYear]) -> 'FiscalYearResolver':
        return FiscalYearResolver(self.ledger_years, sie_fiscal_years)

    @property
    def calendar_years(self) -> Set[int]:
        """Calendar years covered by the ledger."""
        return set(self._by_calendar_year)

    def resolve(self, ref: YearRef) -> Optional[LedgerFiscalYear]:
        """Return the ledger fiscal year for a SIE year reference, or None."""
        if isinstance(ref, YearIndex):
            sie_year = next((fy for fy in self.sie_fiscal_years if fy.index == ref.index), None)
            if sie_year is None:
                return None
            for year in self.ledger_years:
                if year.start_date == sie_year.start and year.end_date == sie_year.end:
                    return year
            return self._by_calendar_year.get(sie_year.calendar_year)
        if isinstance(ref, CalendarYear):
            return self._by_calendar_year.get(ref.year)
        raise TypeError(f"Unsupported fiscal year reference: {ref!r}")

    def resolve_date(self, iso_date: Optional[str]) -> Optional[LedgerFiscalYear]:
        """Return the ledger fiscal year containing a date, or the one for its calendar year."""
        if not iso_date:
            return None
        for year in self.ledger_years:
            if year.contains(iso_date):
                return year
        calendar_year = calendar_year_of(iso_date)
        if calendar_year is None:
            return None
        return self._by_calendar_year.get(calendar_year)


@dataclass(frozen=True)
class MissingYear:
    year: str
    in_sie_file: bool
    sie_fiscal_year: Optional[SieFiscalYear] = None


@dataclass(frozen=True)
class MissingFiscalYears:
    required_years: List[str]
    missing_years: List[MissingYear]
    can_create_from_sie: bool
    all_can_be_created_from_sie: bool


def _sie_year_for(year: int, sie_fiscal_years: Sequence[SieFiscalYear]) -> Optional[SieFiscalYear]:
    complete = [fy for fy in sie_fiscal_years if is_iso_date(fy.start) and is_iso_date(fy.end)]
    for fy in complete:
        if calendar_year_of(fy.start) == year:
            return fy
    for fy in complete:
        if calendar_year_of(fy.end) == year:
            return fy
    return None


def detect_missing_fiscal_years(vouchers: Iterable[SieVoucher],
                                existing_fiscal_years: Iterable[Any],
                                sie_fiscal_years: Sequence[SieFiscalYear]) -> MissingFiscalYears:
    """Find the calendar years vouchers need that the ledger does not have.

    For each missing year, report whether the SIE file declares a fiscal year
    with start and end dates that could be used to create it.

    Args:
        vouchers: Vouchers about to be imported
        existing_fiscal_years: Ledger fiscal years (records or LedgerFiscalYear)
        sie_fiscal_years: Fiscal years declared in the SIE file

    Returns:
        MissingFiscalYears
    """
    required = sorted({str(year) for year in (calendar_year_of(v.date) for v in vouchers)
                       if year is not None})
    existing = FiscalYearResolver(existing_fiscal_years).calendar_years

    missing = []
    for year in required:
        if int(year) in existing:
            continue
        sie_year = _sie_year_for(int(year), sie_fiscal_years)
        missing.append(MissingYear(year=year, in_sie_file=sie_year is not None, sie_fiscal_year=sie_year))

    return MissingFiscalYears(
        required_years=required,
        missing_years=missing,
        can_create_from_sie=any(m.in_sie_file for m in missing),
        all_can_be_created_from_sie=all(m.in_sie_file for m in missing),
    )


# Journal entries
@dataclass(frozen=True)
class BalancePolicy:
    """How an entry builder treats imbalance and unknown accounts.

    reject_unbalanced: drop entries whose debits and credits differ by more
        than ``tolerance`` (an error), instead of emitting them (a warning).
    drop_unmapped_lines: drop only the rows whose account is not in the
        ledger (an error per row), instead of failing the whole entry.
    """
    reject_unbalanced: bool
    drop_unmapped_lines: bool
    tolerance: float = BALANCE_TOLERANCE


# Vouchers must balance and be complete.
STRICT = BalancePolicy(reject_unbalanced=True, drop_unmapped_lines=False)
# Opening balances often reference accounts missing from the chart.
LENIENT = BalancePolicy(reject_unbalanced=False, drop_unmapped_lines=True)


@dataclass(frozen=True)
class JournalLine:
    account_id: Any
    debit_amount: float
    credit_amount: float
    description: str
    line_order: int


@dataclass(frozen=True)
class JournalEntry:
    """A journal entry ready for the ledger store."""
    organization_id: Any
    fiscal_year_id: Any
    entry_date: str
    description: str
    source_reference: str
    lines: Tuple[JournalLine, ...]
    source_type: str = SOURCE_TYPE
    status: str = ENTRY_STATUS

    @property
    def total_debit(self) -> float:
        return round(sum(line.debit_amount for line in self.lines), 2)

    @property
    def total_credit(self) -> float:
        return round(sum(line.credit_amount for line in self.lines), 2)

    def to_record(self) -> Dict[str, Any]:
        record = asdict(self)
        record['lines'] = list(record['lines'])
        return record


@dataclass(frozen=True)
class ImportIssue:
    """A problem preparing one voucher, balance group or record."""
    error: str
    voucher: str = ""
    account_number: str = ""
    fiscal_year: str = ""

    def __str__(self) -> str:
        subject = self.voucher or self.fiscal_year
        return f"{subject}: {self.error}" if subject else self.error


@dataclass
class ImportBatch:
    """Records that are ready for import plus what went wrong with the rest."""
    records: List[Any] = field(default_factory=list)
    errors: List[ImportIssue] = field(default_factory=list)
    warnings: List[ImportIssue] = field(default_factory=list)

    @property
    def entries(self) -> List[Any]:
        return self.records

    def to_records(self) -> List[Dict[str, Any]]:
        return [record.to_record() if isinstance(record, JournalEntry) else dict(record)
                for record in self.records]


def _split_amount(amount: float) -> Tuple[float, float]:
    """Split a signed SIE amount into (debit, credit)."""
    value = round(amount, 2)
    if value > 0:
        return value, 0.0
    return 0.0, -value


def _build_entry(batch: ImportBatch, rows: Iterable[Tuple[str, float, str]], *,
                 organization_id: Any, fiscal_year: LedgerFiscalYear, entry_date: str,
                 description: str, source_reference: str, account_map: Mapping[str, Any],
                 policy: BalancePolicy, context: Dict[str, str]) -> Optional[JournalEntry]:
    """Turn (account number, signed amount, text) rows into a journal entry.

    Issues go into ``batch`` according to ``policy``; returns None when the
    entry must not be emitted.
    """
    lines = []
    unmapped = []
    for account_number, amount, text in rows:
        account_id = account_map.get(account_number)
        if account_id is None:
            unmapped.append(account_number)
            continue
        debit, credit = _split_amount(amount)
        if not debit and not credit:
            continue
        lines.append(JournalLine(
            account_id=account_id,
            debit_amount=debit,
            credit_amount=credit,
            description=text,
            line_order=len(lines) + 1,
        ))

    for account_number in unmapped:
        batch.errors.append(ImportIssue(
            error=f"Account {account_number} not found",
            account_number=account_number,
            **context,
        ))
    if unmapped and not policy.drop_unmapped_lines:
        return None

    if not lines:
        batch.errors.append(ImportIssue(error="No lines with a non-zero amount", **context))
        return None

    entry = JournalEntry(
        organization_id=organization_id,
        fiscal_year_id=fiscal_year.id,
        entry_date=entry_date,
        description=description,
        source_reference=source_reference,
        lines=tuple(lines),
    )

    difference = round(entry.total_debit - entry.total_credit, 2)
    if abs(difference) > policy.tolerance:
        issue = ImportIssue(error=f"Entry is unbalanced (difference {abs(difference):.2f})", **context)
        if policy.reject_unbalanced:
            batch.errors.append(issue)
            return None
        logger.warning("Emitting unbalanced entry %s: difference %.2f", source_reference, difference)
        batch.warnings.append(issue)
    return entry


def build_journal_entries(vouchers: Iterable[SieVoucher], organization_id: Any,
                          account_map: Mapping[str, Any], fiscal_year_map: FiscalYearResolver,
                          policy: BalancePolicy = STRICT) -> ImportBatch:
    """Convert vouchers into balanced journal entries.

    A voucher is skipped with an error when its date is not a valid ISO
    date, when that date falls in no ledger fiscal year, when any of its
    accounts is unknown, or when it does not balance. Partial vouchers are
    never emitted under the default policy.

    Args:
        vouchers: Parsed vouchers
        organization_id: Target organization
        account_map: Account number to ledger account id
        fiscal_year_map: Resolver over the ledger's fiscal years
        policy: Balance policy, STRICT by default

    Returns:
        ImportBatch whose records are JournalEntry objects
    """
    batch = ImportBatch()
    for voucher in vouchers:
        reference = voucher.reference
        context = {'voucher': reference}

        if not voucher.transactions:
            batch.errors.append(ImportIssue(error="Voucher has no transactions", **context))
            continue

        if not is_iso_date(voucher.date):
            batch.errors.append(ImportIssue(error=f"Invalid voucher date {voucher.date!r}", **context))
            continue

        fiscal_year = fiscal_year_map.resolve_date(voucher.date)
        if fiscal_year is None:
            batch.errors.append(ImportIssue(error=f"No fiscal year found for date {voucher.date}", **context))
            continue

        description = f"{reference} - {voucher.text}" if voucher.text else reference
        entry = _build_entry(
            batch,
            ((t.account_number, t.amount, t.text or voucher.text) for t in voucher.transactions),
            organization_id=organization_id,
            fiscal_year=fiscal_year,
            entry_date=voucher.date,
            description=description,
            source_reference=reference,
            account_map=account_map,
            policy=policy,
            context=context,
        )
        if entry is None:
            logger.debug("Skipped voucher %s", reference)
            continue
        batch.records.append(entry)

    logger.info("Prepared %d journal entries, %d errors", len(batch.records), len(batch.errors))
    return batch


def build_opening_balance_entries(opening_balances: Iterable[BalanceRecord],
                                  fiscal_years: Iterable[SieFiscalYear], organization_id: Any,
                                  account_map: Mapping[str, Any], fiscal_year_map: FiscalYearResolver,
                                  policy: BalancePolicy = LENIENT) -> ImportBatch:
    """Create one opening-balance entry per fiscal year.

    Balances are grouped by their year reference and dated on the start of
    the resolved ledger fiscal year. Under the default policy rows for
    unknown accounts are dropped with an error and an unbalanced entry is
    still emitted with a warning, since historical charts are often partial.

    Args:
        opening_balances: IB records (result balances are ignored)
        fiscal_years: Fiscal years declared in the SIE file
        organization_id: Target organization
        account_map: Account number to ledger account id
        fiscal_year_map: Resolver over the ledger's fiscal years
        policy: Balance policy, LENIENT by default

    Returns:
        ImportBatch whose records are JournalEntry objects
    """
    resolver = fiscal_year_map.with_sie_fiscal_years(fiscal_years)

    groups: Dict[YearRef, List[BalanceRecord]] = {}
    for balance in opening_balances:
        if balance.is_result:
            continue
        groups.setdefault(balance.year_ref, []).append(balance)

    batch = ImportBatch()
    for year_ref, balances in groups.items():
        context = {'fiscal_year': str(year_ref)}
        fiscal_year = resolver.resolve(year_ref)
        if fiscal_year is None:
            batch.errors.append(ImportIssue(error="No fiscal year found for opening balances", **context))
            continue

        entry_date = fiscal_year.start_date
        entry = _build_entry(
            batch,
            ((b.account_number, b.amount, "Opening balance") for b in balances),
            organization_id=organization_id,
            fiscal_year=fiscal_year,
            entry_date=entry_date,
            description=f"Opening balance {entry_date}",
            source_reference=f"IB {entry_date}",
            account_map=account_map,
            policy=policy,
            context=context,
        )
        if entry is not None:
            batch.records.append(entry)

    logger.info("Prepared %d opening balance entries, %d errors, %d warnings",
                len(batch.records), len(batch.errors), len(batch.warnings))
    return batch


# Import preparation
def prepare_accounts_for_import(accounts: Iterable[SieAccount], organization_id: Any) -> ImportBatch:
    """Convert parsed accounts to ledger records, keeping the first of any duplicates."""
    batch = ImportBatch()
    seen = set()
    for account in accounts:
        if account.account_number in seen:
            batch.warnings.append(ImportIssue(
                error=f"Duplicate account number {account.account_number} skipped",
                account_number=account.account_number,
            ))
            continue
        seen.add(account.account_number)
        batch.records.append({
            'organization_id': organization_id,
            'account_number': account.account_number,
            'name': account.name,
            'name_en': None,  # SIE files don't carry English names
            'account_class': account.account_class.value,
            'account_type': account.account_type or 'detail',
            'sru_code': account.sru_code or None,
            'is_system': False,
            'is_active': True,
            'default_vat_rate': None,
        })
    return batch


def prepare_fiscal_years_for_import(fiscal_years: Iterable[SieFiscalYear], organization_id: Any) -> ImportBatch:
    """Convert SIE fiscal years to ledger records; years without valid dates are errors."""
    batch = ImportBatch()
    for fiscal_year in fiscal_years:
        if not (is_iso_date(fiscal_year.start) and is_iso_date(fiscal_year.end)):
            batch.errors.append(ImportIssue(
                error=f"Fiscal year has invalid dates ({fiscal_year.start} - {fiscal_year.end})",
                fiscal_year=str(fiscal_year.ref),
            ))
            continue
        start_year, end_year = fiscal_year.start[:4], fiscal_year.end[:4]
        batch.records.append({
            'organization_id': organization_id,
            'name': start_year if start_year == end_year else f"{start_year}/{end_year}",
            'start_date': fiscal_year.start,
            'end_date': fiscal_year.end,
            'is_closed': fiscal_year.closed,
        })
    return batch


def prepare_journal_entries_for_import(vouchers: Iterable[SieVoucher], organization_id: Any,
                                       account_map: Mapping[str, Any],
                                       fiscal_year_map: FiscalYearResolver) -> ImportBatch:
    return build_journal_entries(vouchers, organization_id, account_map, fiscal_year_map, policy=STRICT)


def prepare_opening_balances_for_import(opening_balances: Iterable[BalanceRecord],
                                        fiscal_years: Iterable[SieFiscalYear], organization_id: Any,
                                        account_map: Mapping[str, Any],
                                        fiscal_year_map: FiscalYearResolver) -> ImportBatch:
    return build_opening_balance_entries(opening_balances, fiscal_years, organization_id,
                                         account_map, fiscal_year_map, policy=LENIENT)


# Summary
@dataclass(frozen=True)
class CategorySummary:
    count: int
    can_import: bool


@dataclass(frozen=True)
class ImportSummary:
    """What a document offers for import, per category."""
    format: SieFormat
    company_name: str
    accounts: CategorySummary
    fiscal_years: CategorySummary
    vouchers: CategorySummary
    opening_balances: CategorySummary
    transaction_count: int
    closing_balance_count: int


def get_import_summary(document: ParsedDocument) -> ImportSummary:
    opening = [b for b in document.opening_balances if not b.is_result]
    importable_years = [fy for fy in document.fiscal_years if is_iso_date(fy.start) and is_iso_date(fy.end)]
    vouchers_with_rows = [v for v in document.vouchers if v.transactions]
    return ImportSummary(
        format=document.format,
        company_name=document.company.name,
        accounts=CategorySummary(len(document.accounts), bool(document.accounts)),
        fiscal_years=CategorySummary(len(document.fiscal_years), bool(importable_years)),
        vouchers=CategorySummary(len(document.vouchers), bool(vouchers_with_rows)),
        opening_balances=CategorySummary(len(opening), bool(opening)),
        transaction_count=sum(len(v.transactions) for v in document.vouchers),
        closing_balance_count=len(document.closing_balances),
    )


__all__ = [
    "validate_sie",
    "ValidationResult",
    "LedgerFiscalYear",
    "FiscalYearResolver",
    "MissingYear",
    "MissingFiscalYears",
    "detect_missing_fiscal_years",
    "BalancePolicy",
    "STRICT",
    "LENIENT",
    "JournalLine",
    "JournalEntry",
    "ImportIssue",
    "ImportBatch",
    "build_journal_entries",
    "build_opening_balance_entries",
    "prepare_accounts_for_import",
    "prepare_fiscal_years_for_import",
    "prepare_journal_entries_for_import",
    "prepare_opening_balances_for_import",
    "CategorySummary",
    "ImportSummary",
    "get_import_summary",
]
