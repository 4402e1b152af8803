"""
SIE Parser - Parse Swedish SIE accounting files into a format-agnostic document.

Both dialects of the SIE (Standard Import Export) format are supported:

- SIE4, the line-oriented text format (``#TAG arg "quoted text"``), usually
  shipped as ``.se`` files in CP437 (PC8) encoding.
- SIE5, the namespaced XML format (``http://www.sie.se/sie5``), usually
  shipped as ``.sie`` files in UTF-8.

Both parsers produce the same immutable ``ParsedDocument``, so validation and
import preparation (see ``sie_import``) never need to know which dialect a
file was written in. Parsing is best-effort: a bad SIE4 line is recorded in
``ParsedDocument.errors`` and parsing continues, while malformed SIE5 XML
yields a document carrying errors only.

Example usage:
    from sie_parser import parse_sie, parse_sie_file

    # Parse already-decoded text
    document = parse_sie(content, filename='export.se')

    # Or read and decode a file (CP437 for SIE4, UTF-8 for SIE5)
    document = parse_sie_file('accounting.se')

    print(f"Company: {document.company.name}")
    print(f"Accounts: {len(document.accounts)}")
"""

__version__ = "0.2.0"

import calendar
import logging
import os
import re
from dataclasses import dataclass, field, replace
from datetime import date
from enum import Enum
from typing import Callable, Dict, Iterator, List, Optional, Tuple, TextIO, Union

from lxml import etree

logger = logging.getLogger(__name__)

# Amounts are considered equal when they differ by at most one öre.
BALANCE_TOLERANCE = 0.01
# The SIE 4B specification mandates IBM PC 8-bit extended ASCII.
DEFAULT_ENCODING = "cp437"
DEFAULT_SERIES = "A"
SIE5_NAMESPACE = "http://www.sie.se/sie5"


# Enums
class SieFormat(Enum):
    """Dialect of a SIE document."""
    SIE4 = "SIE4"
    SIE5 = "SIE5"
    UNKNOWN = "unknown"

    def __str__(self) -> str:
        return self.value


class AccountClass(Enum):
    """Accounting class of an account in the target ledger."""
    ASSETS = "assets"
    LIABILITIES = "liabilities"
    EQUITY = "equity"
    REVENUE = "revenue"
    EXPENSES = "expenses"
    FINANCIAL = "financial"

    def __str__(self) -> str:
        return self.value

    @classmethod
    def from_ktyp(cls, code: str, account_number: str) -> 'AccountClass':
        """Create an AccountClass from a SIE4 ``#KTYP`` code.

        SIE4 only distinguishes T (tillgång), S (skuld), I (intäkt) and
        K (kostnad). Equity and liabilities share the S code, so the BAS range
        of the account decides between them.
        """
        code = code.strip().upper()
        if code == "T":
            return cls.ASSETS
        if code == "S":
            if classify_account(account_number) is cls.EQUITY:
                return cls.EQUITY
            return cls.LIABILITIES
        if code == "I":
            return cls.REVENUE
        if code == "K":
            return cls.EXPENSES
        raise ValueError(f"Unknown SIE account type code: {code}")


class RecordKind(Enum):
    """SIE4 record types understood by the text parser."""
    FLAGGA = "FLAGGA"
    FORMAT = "FORMAT"
    SIETYP = "SIETYP"
    PROGRAM = "PROGRAM"
    GEN = "GEN"
    FNAMN = "FNAMN"
    FNR = "FNR"
    ORGNR = "ORGNR"
    ADRESS = "ADRESS"
    VALUTA = "VALUTA"
    RAR = "RAR"
    KPTYP = "KPTYP"
    KONTO = "KONTO"
    KTYP = "KTYP"
    SRU = "SRU"
    IB = "IB"
    UB = "UB"
    RES = "RES"
    VER = "VER"
    TRANS = "TRANS"

    @classmethod
    def from_tag(cls, tag: str) -> Optional['RecordKind']:
        """Return the kind for a ``#TAG`` token, or None for unsupported tags."""
        return cls.__members__.get(tag.lstrip('#').upper())


# Exceptions
class SieError(Exception):
    """Base class for SIE errors."""


class SieParseError(SieError):
    """Raised when a single SIE record cannot be parsed."""

    def __init__(self, message: str, line_number: int = None, line_content: str = None):
        self.line_number = line_number
        self.line_content = line_content

        if line_number is not None:
            message = f"Line {line_number}: {message}"
            if line_content:
                message += f" ('{line_content.strip()}')"

        super().__init__(message)


class SieFormatError(SieError):
    """Raised when a whole document is unrecognized or structurally malformed."""


# Data Models
@dataclass(frozen=True)
class YearIndex:
    """SIE4 relative fiscal year: 0 is the current year, -1 the one before."""
    index: int

    def __str__(self) -> str:
        return f"year index {self.index}"


@dataclass(frozen=True)
class CalendarYear:
    """SIE5 fiscal year addressed by the calendar year it starts in."""
    year: int

    def __str__(self) -> str:
        return str(self.year)


YearRef = Union[YearIndex, CalendarYear]


@dataclass(frozen=True)
class Company:
    """Company information from the file header."""
    name: str = ""
    organization_number: str = ""
    client_id: str = ""
    address: Tuple[str, ...] = ()  # contact, street, postal address, phone


@dataclass(frozen=True)
class SieFiscalYear:
    """A fiscal year declared by the file (``#RAR`` or ``<FiscalYear>``)."""
    index: int
    start: Optional[str]
    end: Optional[str]
    ref: YearRef
    closed: bool = False
    primary: bool = False

    @property
    def calendar_year(self) -> Optional[int]:
        """Calendar year the fiscal year starts in."""
        return calendar_year_of(self.start)


@dataclass(frozen=True)
class SieAccount:
    """Represents an account in the chart of accounts."""
    account_number: str
    name: str
    account_class: AccountClass
    account_type: str = "detail"
    sru_code: str = ""  # Tax reporting code


@dataclass(frozen=True)
class SieTransaction:
    """A signed transaction row; positive amounts are debits."""
    account_number: str
    amount: float
    date: Optional[str]
    text: str = ""


@dataclass(frozen=True)
class SieVoucher:
    """A voucher (verifikation) grouping balanced transaction rows."""
    series: str
    number: int
    date: Optional[str]
    text: str = ""
    transactions: Tuple[SieTransaction, ...] = ()

    @property
    def reference(self) -> str:
        """Series and number, e.g. ``A1``."""
        return f"{self.series}{self.number}"

    @property
    def balance(self) -> float:
        """Sum of all rows, rounded to öre. Zero for a balanced voucher."""
        return round(sum(t.amount for t in self.transactions), 2)


@dataclass(frozen=True)
class BalanceRecord:
    """Represents a balance record (IB, UB, RES or a SIE5 balance element)."""
    account_number: str
    year_ref: YearRef
    amount: float
    is_result: bool = False
    month: str = ""  # SIE5 source month, e.g. "2016-01"


@dataclass(frozen=True)
class ParseIssue:
    """A problem found while parsing; parsing continues past it."""
    error: str
    line: Optional[int] = None
    content: str = ""
    details: str = ""

    def __str__(self) -> str:
        message = f"{self.error}: {self.details}" if self.details else self.error
        if self.line is not None:
            message = f"Line {self.line}: {message}"
        return message


@dataclass(frozen=True)
class ParsedDocument:
    """Represents a parsed SIE document of either dialect."""
    format: SieFormat
    company: Company = field(default_factory=Company)
    fiscal_years: Tuple[SieFiscalYear, ...] = ()
    accounts: Tuple[SieAccount, ...] = ()
    opening_balances: Tuple[BalanceRecord, ...] = ()
    closing_balances: Tuple[BalanceRecord, ...] = ()
    vouchers: Tuple[SieVoucher, ...] = ()
    errors: Tuple[ParseIssue, ...] = ()

    # File metadata
    program: str = ""
    generated: Optional[str] = None
    sie_type: Optional[int] = None
    flag: Optional[int] = None
    file_format: str = ""
    chart_type: str = ""
    currency: str = ""

    def fiscal_year(self, index: int = 0) -> Optional[SieFiscalYear]:
        """Return the fiscal year with the given relative index, if declared."""
        return next((fy for fy in self.fiscal_years if fy.index == index), None)


# Utility Functions
_SIE_TYPE_CLASSES = {
    "asset": AccountClass.ASSETS,
    "liability": AccountClass.LIABILITIES,
    "equity": AccountClass.EQUITY,
    "income": AccountClass.REVENUE,
    "cost": AccountClass.EXPENSES,
}

# BAS 2025 ranges, upper bound exclusive. The whole 8xxx group maps to
# FINANCIAL even though 83xx is interest income and 84xx interest cost.
_BAS_RANGES = (
    (1000, 2000, AccountClass.ASSETS),
    (2000, 2100, AccountClass.EQUITY),
    (2100, 3000, AccountClass.LIABILITIES),
    (3000, 4000, AccountClass.REVENUE),
    (4000, 8000, AccountClass.EXPENSES),
    (8000, 9000, AccountClass.FINANCIAL),
)


def classify_account(account_number: str, sie_type: Optional[str] = None) -> AccountClass:
    """Get the account class for an account.

    An explicit SIE5 type tag (asset, liability, equity, income, cost) wins.
    Otherwise the class follows the BAS chart of accounts:

    - 1000-1999: Tillgångar (assets)
    - 2000-2099: Eget kapital (equity)
    - 2100-2999: Skulder (liabilities)
    - 3000-3999: Rörelsens intäkter (revenue)
    - 4000-7999: Kostnader (expenses)
    - 8000-8999: Finansiella poster (financial)

    Sub-accounts longer than four digits are classified by their first four
    digits. Anything else defaults to expenses.

    Args:
        account_number: The account number
        sie_type: Optional SIE5 ``type`` attribute

    Returns:
        AccountClass: Account class enum value
    """
    if sie_type:
        tagged = _SIE_TYPE_CLASSES.get(sie_type.strip().lower())
        if tagged is not None:
            return tagged

    digits = str(account_number or "").strip()
    if not digits.isdigit():
        return AccountClass.EXPENSES

    number = int(digits[:4]) if len(digits) > 4 else int(digits)
    for low, high, account_class in _BAS_RANGES:
        if low <= number < high:
            return account_class
    return AccountClass.EXPENSES


_ISO_DATE = re.compile(r'^\d{4}-\d{2}-\d{2}$')
_COMPACT_DATE = re.compile(r'^\d{8}$')
_YEAR_MONTH = re.compile(r'^(\d{4})-?(\d{2})$')


def normalize_date(date_str: Optional[str], is_end_date: bool = False) -> Optional[str]:
    """Convert a SIE date to an ISO ``YYYY-MM-DD`` string.

    Accepts ISO dates unchanged, SIE4 ``YYYYMMDD`` dates and SIE5 partial
    ``YYYY-MM`` months. A month becomes its first day, or its last day when
    ``is_end_date`` is set. Unrecognized values are returned unchanged so the
    caller can report them; empty values give None.
    """
    if date_str is None:
        return None
    value = str(date_str).strip()
    if not value:
        return None

    if _ISO_DATE.match(value):
        return value
    if _COMPACT_DATE.match(value):
        return f"{value[:4]}-{value[4:6]}-{value[6:8]}"

    month_match = _YEAR_MONTH.match(value)
    if month_match:
        year, month = int(month_match.group(1)), int(month_match.group(2))
        if 1 <= month <= 12:
            day = calendar.monthrange(year, month)[1] if is_end_date else 1
            return f"{year:04d}-{month:02d}-{day:02d}"
    return value


def is_iso_date(value: Optional[str]) -> bool:
    """True if value is a real calendar date in ISO format."""
    if not value or not _ISO_DATE.match(value):
        return False
    try:
        date.fromisoformat(value)
    except ValueError:
        return False
    return True


def calendar_year_of(date_str: Optional[str]) -> Optional[int]:
    """Year of an ISO date or ``YYYY-MM`` month, or None."""
    if date_str and len(date_str) >= 4 and date_str[:4].isdigit():
        return int(date_str[:4])
    return None


def detect_format(content: str) -> SieFormat:
    """Sniff the dialect of a SIE document from its text.

    Looks at how the document starts first, then for characteristic
    substrings. Returns ``SieFormat.UNKNOWN`` when nothing matches.
    """
    trimmed = (content or "").strip().lstrip('\ufeff').lstrip()
    if trimmed.startswith('<?xml') or trimmed.startswith('<Sie'):
        return SieFormat.SIE5
    if trimmed.startswith('#FLAGGA') or trimmed.startswith('#FORMAT'):
        return SieFormat.SIE4

    if '<Account' in trimmed or '<Voucher' in trimmed:
        return SieFormat.SIE5
    if '#KONTO' in trimmed or '#VER' in trimmed:
        return SieFormat.SIE4
    return SieFormat.UNKNOWN


_EXTENSION_FORMATS = {
    '.se': SieFormat.SIE4,
    '.si': SieFormat.SIE4,
    '.sio': SieFormat.SIE4,
    '.sie': SieFormat.SIE5,
}


def detect_format_from_filename(filename: str) -> SieFormat:
    """Guess the dialect from a file extension (``.se`` SIE4, ``.sie`` SIE5)."""
    extension = os.path.splitext(filename or "")[1].lower()
    return _EXTENSION_FORMATS.get(extension, SieFormat.UNKNOWN)


def _tokenize(line: str) -> List[str]:
    """Split a SIE4 line into tokens.

    Tokens are separated by spaces or tabs. Quoted strings become one token
    without their quotes (``\\"`` is an escaped quote, ``""`` an empty
    token). An object list such as ``{1 "456" 7 "47"}`` is kept as a single
    token including its braces.
    """
    tokens = []
    current = []
    has_token = False
    in_quotes = False
    in_braces = False

    i = 0
    while i < len(line):
        char = line[i]
        if in_quotes:
            if char == '\\' and i + 1 < len(line) and line[i + 1] == '"':
                current.append('"')
                i += 1
            elif char == '"':
                in_quotes = False
            else:
                current.append(char)
        elif in_braces:
            current.append(char)
            if char == '}':
                in_braces = False
        elif char == '"':
            in_quotes = True
            has_token = True
        elif char == '{':
            in_braces = True
            has_token = True
            current.append(char)
        elif char in (' ', '\t'):
            if has_token:
                tokens.append(''.join(current))
                current = []
                has_token = False
        else:
            current.append(char)
            has_token = True
        i += 1

    if has_token:
        tokens.append(''.join(current))
    return tokens


def _arg(args: List[str], index: int, default: str = "") -> str:
    return args[index] if len(args) > index else default


def _require(args: List[str], index: int, what: str) -> str:
    value = _arg(args, index).strip()
    if not value:
        raise SieParseError(f"Missing {what}")
    return value


def _parse_int(value: str, what: str) -> int:
    try:
        return int(value)
    except ValueError:
        raise SieParseError(f"Invalid {what}: {value!r}")


def _parse_amount(value: Optional[str]) -> float:
    """Parse a SIE amount (may use . or , as decimal separator)."""
    if value is None or not value.strip():
        raise SieParseError("Missing amount")
    try:
        return float(value.strip().replace(',', '.'))
    except ValueError:
        raise SieParseError(f"Invalid amount: {value!r}")


# SIE4 text parser
@dataclass
class _VoucherDraft:
    series: str
    number: int
    date: Optional[str]
    text: str
    transactions: List[SieTransaction] = field(default_factory=list)

    def build(self) -> SieVoucher:
        return SieVoucher(
            series=self.series,
            number=self.number,
            date=self.date,
            text=self.text,
            transactions=tuple(self.transactions),
        )


@dataclass
class Sie4State:
    """Accumulator threaded through the SIE4 line fold.

    ``current_voucher`` is the only state that spans lines: it is opened by
    ``#VER`` and collects ``#TRANS`` rows until the next ``#VER`` or the end
    of input.
    """
    company: Company = field(default_factory=Company)
    metadata: Dict[str, object] = field(default_factory=dict)
    fiscal_years: List[SieFiscalYear] = field(default_factory=list)
    accounts: List[SieAccount] = field(default_factory=list)
    account_types: Dict[str, str] = field(default_factory=dict)
    opening_balances: List[BalanceRecord] = field(default_factory=list)
    closing_balances: List[BalanceRecord] = field(default_factory=list)
    vouchers: List[SieVoucher] = field(default_factory=list)
    errors: List[ParseIssue] = field(default_factory=list)
    current_voucher: Optional[_VoucherDraft] = None

    def close_voucher(self) -> None:
        if self.current_voucher is not None:
            self.vouchers.append(self.current_voucher.build())
            self.current_voucher = None


def _handle_flagga(state: Sie4State, args: List[str]) -> None:
    state.metadata['flag'] = _parse_int(_require(args, 0, "flag"), "flag")


def _handle_format(state: Sie4State, args: List[str]) -> None:
    state.metadata['file_format'] = _arg(args, 0)


def _handle_sietyp(state: Sie4State, args: List[str]) -> None:
    state.metadata['sie_type'] = _parse_int(_require(args, 0, "SIE type"), "SIE type")


def _handle_program(state: Sie4State, args: List[str]) -> None:
    # #PROGRAM name version
    state.metadata['program'] = ' '.join(part for part in args[:2] if part)


def _handle_gen(state: Sie4State, args: List[str]) -> None:
    state.metadata['generated'] = normalize_date(_require(args, 0, "generation date"))


def _handle_fnamn(state: Sie4State, args: List[str]) -> None:
    state.company = replace(state.company, name=_arg(args, 0))


def _handle_fnr(state: Sie4State, args: List[str]) -> None:
    state.company = replace(state.company, client_id=_arg(args, 0))


def _handle_orgnr(state: Sie4State, args: List[str]) -> None:
    # #ORGNR orgnr [förvärvsnummer] [verksamhetsnummer]
    state.company = replace(state.company, organization_number=_arg(args, 0))


def _handle_adress(state: Sie4State, args: List[str]) -> None:
    state.company = replace(state.company, address=tuple(args[:4]))


def _handle_valuta(state: Sie4State, args: List[str]) -> None:
    state.metadata['currency'] = _arg(args, 0)


def _handle_rar(state: Sie4State, args: List[str]) -> None:
    # #RAR 0 20160101 20161231
    index = _parse_int(_require(args, 0, "year index"), "year index")
    start = normalize_date(_require(args, 1, "start date"))
    end = normalize_date(_require(args, 2, "end date"), is_end_date=True)
    state.fiscal_years.append(SieFiscalYear(
        index=index,
        start=start,
        end=end,
        ref=YearIndex(index),
        primary=index == 0,
    ))


def _handle_kptyp(state: Sie4State, args: List[str]) -> None:
    state.metadata['chart_type'] = _arg(args, 0)


def _handle_konto(state: Sie4State, args: List[str]) -> None:
    # #KONTO 1510 "Kundfordringar"
    number = _require(args, 0, "account number")
    state.accounts.append(SieAccount(
        account_number=number,
        name=_arg(args, 1),
        account_class=classify_account(number),
    ))


def _handle_ktyp(state: Sie4State, args: List[str]) -> None:
    # Applied after the scan since #KTYP may precede #KONTO
    number = _require(args, 0, "account number")
    code = _require(args, 1, "account type").upper()
    if code not in ("T", "S", "I", "K"):
        raise SieParseError(f"Unknown account type code: {code}")
    state.account_types[number] = code


def _handle_sru(state: Sie4State, args: List[str]) -> None:
    # #SRU 1510 7251 belongs to the account declared just before it
    number = _require(args, 0, "account number")
    code = _require(args, 1, "SRU code")
    if state.accounts and state.accounts[-1].account_number == number:
        state.accounts[-1] = replace(state.accounts[-1], sru_code=code)
    else:
        logger.debug("Ignoring #SRU for %s, not preceded by its #KONTO", number)


def _balance_record(args: List[str], is_result: bool = False) -> BalanceRecord:
    # #IB 0 1510 432056 [quantity]
    index = _parse_int(_require(args, 0, "year index"), "year index")
    return BalanceRecord(
        account_number=_require(args, 1, "account number"),
        year_ref=YearIndex(index),
        amount=_parse_amount(_arg(args, 2)),
        is_result=is_result,
    )


def _handle_ib(state: Sie4State, args: List[str]) -> None:
    state.opening_balances.append(_balance_record(args))


def _handle_ub(state: Sie4State, args: List[str]) -> None:
    state.closing_balances.append(_balance_record(args))


def _handle_res(state: Sie4State, args: List[str]) -> None:
    state.closing_balances.append(_balance_record(args, is_result=True))


def _handle_ver(state: Sie4State, args: List[str]) -> None:
    # #VER "A" 1 20140102 "Text" [regdate] [sign]; the series may be bare
    state.close_voucher()
    number = _parse_int(_require(args, 1, "voucher number"), "voucher number")
    if number <= 0:
        raise SieParseError(f"Invalid voucher number: {number}")
    state.current_voucher = _VoucherDraft(
        series=_arg(args, 0).strip() or DEFAULT_SERIES,
        number=number,
        date=normalize_date(_require(args, 2, "voucher date")),
        text=_arg(args, 3),
    )


def _handle_trans(state: Sie4State, args: List[str]) -> None:
    # #TRANS 1510 {} 100.00 [transdate] [transtext] [quantity] [sign]
    voucher = state.current_voucher
    if voucher is None:
        raise SieParseError("#TRANS outside of a voucher")

    account_number = _require(args, 0, "account number")
    rest = args[1:]
    if rest and rest[0].startswith('{'):
        rest = rest[1:]  # object list, not used

    voucher.transactions.append(SieTransaction(
        account_number=account_number,
        amount=_parse_amount(_arg(rest, 0)),
        date=normalize_date(_arg(rest, 1)) or voucher.date,
        text=_arg(rest, 2) or voucher.text,
    ))


RecordHandler = Callable[[Sie4State, List[str]], None]

RECORD_HANDLERS: Dict[RecordKind, RecordHandler] = {
    RecordKind.FLAGGA: _handle_flagga,
    RecordKind.FORMAT: _handle_format,
    RecordKind.SIETYP: _handle_sietyp,
    RecordKind.PROGRAM: _handle_program,
    RecordKind.GEN: _handle_gen,
    RecordKind.FNAMN: _handle_fnamn,
    RecordKind.FNR: _handle_fnr,
    RecordKind.ORGNR: _handle_orgnr,
    RecordKind.ADRESS: _handle_adress,
    RecordKind.VALUTA: _handle_valuta,
    RecordKind.RAR: _handle_rar,
    RecordKind.KPTYP: _handle_kptyp,
    RecordKind.KONTO: _handle_konto,
    RecordKind.KTYP: _handle_ktyp,
    RecordKind.SRU: _handle_sru,
    RecordKind.IB: _handle_ib,
    RecordKind.UB: _handle_ub,
    RecordKind.RES: _handle_res,
    RecordKind.VER: _handle_ver,
    RecordKind.TRANS: _handle_trans,
}


class Sie4Parser:
    """Parse SIE4 text as a fold over its lines."""

    def __init__(self, handlers: Optional[Dict[RecordKind, RecordHandler]] = None):
        self.handlers = handlers or RECORD_HANDLERS

    def parse(self, content: str) -> ParsedDocument:
        """Parse SIE4 content and return the document.

        Malformed lines are recorded in ``errors`` and never stop the parse.
        """
        if content.startswith('\ufeff'):  # Remove BOM if present
            content = content[1:]

        state = Sie4State()
        for line_number, line in enumerate(content.splitlines(), 1):
            state = self.feed_line(state, line_number, line)

        document = self.finish(state)
        logger.info(
            "Parsed SIE4 document: %d accounts, %d vouchers, %d errors",
            len(document.accounts), len(document.vouchers), len(document.errors),
        )
        return document

    def feed_line(self, state: Sie4State, line_number: int, line: str) -> Sie4State:
        """Apply one line to the accumulator and return it."""
        line = line.strip()
        if not line or not line.startswith('#'):
            return state

        tokens = _tokenize(line)
        kind = RecordKind.from_tag(tokens[0]) if tokens else None
        if kind is None:
            logger.debug("Line %d: ignoring unsupported record %s", line_number, tokens[0] if tokens else line)
            return state

        try:
            self.handlers[kind](state, tokens[1:])
        except (SieParseError, ValueError, IndexError) as e:
            state.errors.append(ParseIssue(
                error=str(e),
                line=line_number,
                content=line[:50],
            ))
        return state

    def finish(self, state: Sie4State) -> ParsedDocument:
        """Close the open voucher and freeze the accumulator into a document."""
        state.close_voucher()

        accounts = []
        for account in state.accounts:
            code = state.account_types.get(account.account_number)
            if code:
                account = replace(account, account_class=AccountClass.from_ktyp(code, account.account_number))
            accounts.append(account)

        return ParsedDocument(
            format=SieFormat.SIE4,
            company=state.company,
            fiscal_years=tuple(state.fiscal_years),
            accounts=tuple(accounts),
            opening_balances=tuple(state.opening_balances),
            closing_balances=tuple(state.closing_balances),
            vouchers=tuple(state.vouchers),
            errors=tuple(state.errors),
            **state.metadata,
        )


# SIE5 XML parser
_XML_DECLARATION = re.compile(r'^\s*<\?xml[^>]*\?>')
_VOUCHER_ID = re.compile(r'^\s*(.*?)[\s\-:]*(\d+)\s*$')


def _local_name(element) -> str:
    tag = element.tag
    if not isinstance(tag, str):  # comments and processing instructions
        return ""
    return etree.QName(tag).localname


def _children(element, name: str) -> List:
    if element is None:
        return []
    return [child for child in element if _local_name(child) == name]


def _child(element, name: str):
    children = _children(element, name)
    return children[0] if children else None


def _descendants(element, name: str) -> List:
    if element is None:
        return []
    return [node for node in element.iter() if _local_name(node) == name]


def _is_true(value: Optional[str]) -> bool:
    return (value or "").strip().lower() in ("true", "1")


def _describe(element) -> str:
    attributes = ' '.join(f'{key}="{value}"' for key, value in element.attrib.items())
    return f"<{_local_name(element)} {attributes}>"[:50]


class Sie5Parser:
    """Parse SIE5 XML with lxml.

    Elements are matched by local name so documents with and without the
    ``http://www.sie.se/sie5`` namespace parse the same way.
    """

    def parse(self, content: str) -> ParsedDocument:
        """Parse SIE5 content and return the document.

        Malformed XML gives a document with errors only and no partial data.
        """
        try:
            root = self._load_root(content)
        except SieFormatError as e:
            logger.warning("Rejected SIE5 document: %s", e)
            return ParsedDocument(
                format=SieFormat.SIE5,
                errors=(ParseIssue(error="XML parse error", details=str(e)),),
            )

        issues: List[ParseIssue] = []
        file_info = _child(root, 'FileInfo')

        program = ""
        software = _child(file_info, 'SoftwareProduct')
        if software is not None:
            program = ' '.join(part for part in (software.get('name'), software.get('version')) if part)

        company = Company()
        company_node = _child(file_info, 'Company')
        if company_node is not None:
            company = Company(
                name=company_node.get('name') or "",
                organization_number=company_node.get('organizationId') or "",
                client_id=company_node.get('clientId') or "",
            )

        currency = ""
        currency_node = _child(file_info, 'AccountingCurrency')
        if currency_node is not None:
            currency = currency_node.get('currency') or ""

        fiscal_years = self._read_fiscal_years(file_info, issues)
        accounts, opening_balances, closing_balances = self._read_accounts(root, issues)
        vouchers = self._read_vouchers(root, issues)

        document = ParsedDocument(
            format=SieFormat.SIE5,
            company=company,
            fiscal_years=tuple(fiscal_years),
            accounts=tuple(accounts),
            opening_balances=tuple(opening_balances),
            closing_balances=tuple(closing_balances),
            vouchers=tuple(vouchers),
            errors=tuple(issues),
            program=program,
            currency=currency,
        )
        logger.info(
            "Parsed SIE5 document: %d accounts, %d vouchers, %d errors",
            len(document.accounts), len(document.vouchers), len(document.errors),
        )
        return document

    def _load_root(self, content: str):
        # lxml refuses str input that carries an encoding declaration
        text = _XML_DECLARATION.sub('', content.lstrip('\ufeff'), count=1)
        parser = etree.XMLParser(resolve_entities=False, no_network=True)
        try:
            root = etree.fromstring(text, parser=parser)
        except etree.XMLSyntaxError as e:
            raise SieFormatError(f"Malformed XML: {e}") from e

        if _local_name(root) not in ('Sie', 'SieEntry'):
            raise SieFormatError(f"Unexpected root element <{_local_name(root)}>")
        return root

    def _read_fiscal_years(self, file_info, issues: List[ParseIssue]) -> List[SieFiscalYear]:
        nodes = []
        for node in _descendants(file_info, 'FiscalYear'):
            if calendar_year_of(node.get('start')) is None:
                issues.append(ParseIssue(
                    error="Fiscal year without a valid start month",
                    line=node.sourceline,
                    content=_describe(node),
                ))
                continue
            nodes.append(node)

        primaries = [_is_true(node.get('primary')) for node in nodes]
        if nodes and not any(primaries):
            latest = max(range(len(nodes)), key=lambda i: nodes[i].get('start'))
            primaries[latest] = True

        fiscal_years = []
        prior_index = 0
        for node, primary in zip(nodes, primaries):
            if primary:
                index = 0
            else:
                prior_index -= 1
                index = prior_index
            start = normalize_date(node.get('start'))
            fiscal_years.append(SieFiscalYear(
                index=index,
                start=start,
                end=normalize_date(node.get('end'), is_end_date=True),
                ref=CalendarYear(calendar_year_of(start)),
                closed=_is_true(node.get('closed')),
                primary=primary,
            ))
        return fiscal_years

    def _read_accounts(self, root, issues: List[ParseIssue]):
        accounts = []
        opening_balances = []
        closing_balances = []

        for container in _children(root, 'Accounts'):
            for node in _children(container, 'Account'):
                number = (node.get('id') or "").strip()
                if not number:
                    issues.append(ParseIssue(error="Account without id", line=node.sourceline, content=_describe(node)))
                    continue

                accounts.append(SieAccount(
                    account_number=number,
                    name=node.get('name') or "",
                    account_class=classify_account(number, node.get('type')),
                ))

                for balance_node in _children(node, 'OpeningBalance'):
                    record = self._read_balance(number, balance_node, issues)
                    if record is not None:
                        opening_balances.append(record)
                for balance_node in _children(node, 'ClosingBalance'):
                    record = self._read_balance(number, balance_node, issues)
                    if record is not None:
                        closing_balances.append(record)

        return accounts, opening_balances, closing_balances

    def _read_balance(self, account_number: str, node, issues: List[ParseIssue]) -> Optional[BalanceRecord]:
        month = (node.get('month') or "").strip()
        year = calendar_year_of(month)
        try:
            if year is None:
                raise SieParseError(f"Invalid balance month: {month!r}")
            amount = _parse_amount(node.get('amount'))
        except SieParseError as e:
            issues.append(ParseIssue(error=str(e), line=node.sourceline, content=_describe(node)))
            return None

        return BalanceRecord(
            account_number=account_number,
            year_ref=CalendarYear(year),
            amount=amount,
            month=month,
        )

    def _voucher_nodes(self, root) -> Iterator[Tuple[str, object, str, str, List, str]]:
        """Yield (series, id, date, text, rows, row date attribute) per voucher.

        Covers both ``Vouchers/Voucher/Transaction`` and the standard
        ``Journal/JournalEntry/LedgerEntry`` layout.
        """
        for container in _children(root, 'Vouchers'):
            for node in _children(container, 'Voucher'):
                yield ("", node.get('id') or "", node.get('date'), node.get('text') or "",
                       _children(node, 'Transaction'), 'date')
        for journal in _children(root, 'Journal'):
            series = (journal.get('id') or "").strip()
            for node in _children(journal, 'JournalEntry'):
                yield (series, node.get('id') or "", node.get('journalDate'), node.get('text') or "",
                       _children(node, 'LedgerEntry'), 'ledgerDate')

    def _read_vouchers(self, root, issues: List[ParseIssue]) -> List[SieVoucher]:
        vouchers = []
        for position, (series, voucher_id, voucher_date, text, rows, date_attribute) in enumerate(
                self._voucher_nodes(root), 1):
            parsed_series, number = "", 0
            match = _VOUCHER_ID.match(voucher_id)
            if match:
                parsed_series, number = match.group(1).strip(), int(match.group(2))
            if number <= 0:
                number = position

            voucher_date = normalize_date(voucher_date)
            transactions = []
            for row in rows:
                try:
                    account_number = (row.get('accountId') or "").strip()
                    if not account_number:
                        raise SieParseError("Transaction without accountId")
                    transactions.append(SieTransaction(
                        account_number=account_number,
                        amount=_parse_amount(row.get('amount')),
                        date=normalize_date(row.get(date_attribute)) or voucher_date,
                        text=row.get('text') or text,
                    ))
                except SieParseError as e:
                    issues.append(ParseIssue(error=str(e), line=row.sourceline, content=_describe(row)))

            vouchers.append(SieVoucher(
                series=series or parsed_series or DEFAULT_SERIES,
                number=number,
                date=voucher_date,
                text=text,
                transactions=tuple(transactions),
            ))
        return vouchers


# Main Parser Functions
def parse_sie(source: Union[str, TextIO], filename: str = "") -> ParsedDocument:
    """
    Parse SIE content of either dialect and return structured data.

    The dialect is sniffed from the content; the filename extension is only
    consulted when sniffing is inconclusive.

    Args:
        source: Decoded SIE text, or a text file-like object
        filename: Original filename, used as a format hint

    Returns:
        ParsedDocument. Unrecognized input gives a document with format
        ``SieFormat.UNKNOWN`` and a single error.
    """
    if hasattr(source, 'read'):
        filename = filename or getattr(source, 'name', "") or ""
        content = source.read()
    else:
        content = source or ""

    sie_format = detect_format(content)
    if sie_format is SieFormat.UNKNOWN:
        sie_format = detect_format_from_filename(filename)

    if sie_format is SieFormat.SIE4:
        return Sie4Parser().parse(content)
    if sie_format is SieFormat.SIE5:
        return Sie5Parser().parse(content)

    logger.info("Unable to detect SIE format of %r", filename or "<content>")
    return ParsedDocument(
        format=SieFormat.UNKNOWN,
        errors=(ParseIssue(error="Unable to detect SIE format"),),
    )


def read_sie_file(file_path: str, encoding: str = None) -> str:
    """
    Read and decode a SIE file.

    SIE4 files use CP437 (IBM PC 8-bits extended ASCII) per the SIE 4B
    specification; SIE5 files are XML and default to UTF-8.

    Args:
        file_path: Path to the SIE file
        encoding: Explicit encoding, overriding the default

    Returns:
        The decoded text

    Raises:
        SieFormatError: If the file cannot be decoded
        FileNotFoundError: If the file doesn't exist
    """
    with open(file_path, 'rb') as f:
        raw = f.read()

    if encoding is None:
        looks_like_xml = raw.lstrip(b'\xef\xbb\xbf \t\r\n').startswith(b'<')
        encoding = 'utf-8-sig' if looks_like_xml else DEFAULT_ENCODING

    try:
        return raw.decode(encoding)
    except UnicodeDecodeError as e:
        raise SieFormatError(
            f"File is not properly encoded in {encoding}. "
            f"SIE4 files are expected in CP437 and SIE5 files in UTF-8. Error: {e}"
        )


def parse_sie_file(file_path: str, encoding: str = None) -> ParsedDocument:
    """
    Parse a SIE file from a file path.

    Args:
        file_path: Path to the SIE file
        encoding: File encoding (default: cp437 for SIE4, utf-8 for SIE5)

    Returns:
        ParsedDocument containing parsed data

    Raises:
        SieFormatError: If the file cannot be decoded or its format is unknown
        FileNotFoundError: If the file doesn't exist
    """
    document = parse_sie(read_sie_file(file_path, encoding), filename=os.path.basename(file_path))
    if document.format is SieFormat.UNKNOWN:
        raise SieFormatError(f"Unable to detect SIE format of {file_path}")
    return document


# Public API
__all__ = [
    # Main parsing functions
    "parse_sie",
    "parse_sie_file",
    "read_sie_file",
    "detect_format",
    "detect_format_from_filename",
    "Sie4Parser",
    "Sie4State",
    "Sie5Parser",
    "RECORD_HANDLERS",
    # Data models
    "ParsedDocument",
    "Company",
    "SieFiscalYear",
    "SieAccount",
    "SieVoucher",
    "SieTransaction",
    "BalanceRecord",
    "ParseIssue",
    "YearIndex",
    "CalendarYear",
    "YearRef",
    # Enums
    "SieFormat",
    "AccountClass",
    "RecordKind",
    # Exceptions
    "SieError",
    "SieParseError",
    "SieFormatError",
    # Utility functions
    "classify_account",
    "normalize_date",
    "is_iso_date",
    "calendar_year_of",
    # Constants
    "BALANCE_TOLERANCE",
    "DEFAULT_ENCODING",
    "DEFAULT_SERIES",
    "SIE5_NAMESPACE",
]
