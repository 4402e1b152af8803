#!/usr/bin/env python3
"""
SIE CLI - Command line interface for SIE file analysis.

Provides functionality to summarize, validate and list accounts and vouchers
from SIE4 and SIE5 files with optional CSV output format.
"""

import argparse
import csv
import logging
import sys
from collections import defaultdict
from typing import Dict

import sie_import
import sie_parser


def _account_balances(document: sie_parser.ParsedDocument) -> Dict[str, float]:
    """Transactions plus current-year opening balances, per account."""
    account_balances: Dict[str, float] = defaultdict(float)
    for voucher in document.vouchers:
        for transaction in voucher.transactions:
            account_balances[transaction.account_number] += transaction.amount

    current_year = document.fiscal_year(0)
    current_ref = current_year.ref if current_year else sie_parser.YearIndex(0)
    for balance in document.opening_balances:
        if balance.year_ref == current_ref and not balance.is_result:
            account_balances[balance.account_number] += balance.amount
    return account_balances


def list_accounts(document: sie_parser.ParsedDocument, non_zero_only: bool = False, csv_output: bool = False) -> None:
    """List accounts with their balances and classes."""
    account_balances = _account_balances(document)

    account_data = []
    for account in document.accounts:
        balance = round(account_balances.get(account.account_number, 0.0), 2)

        if non_zero_only and abs(balance) < sie_parser.BALANCE_TOLERANCE:
            continue

        account_data.append({
            'number': account.account_number,
            'name': account.name,
            'class': account.account_class.value,
            'balance': balance,
            'sru_code': account.sru_code,
        })

    account_data.sort(key=lambda x: x['number'])

    if csv_output:
        writer = csv.DictWriter(sys.stdout, fieldnames=['number', 'name', 'class', 'balance', 'sru_code'])
        writer.writeheader()
        writer.writerows(account_data)
    else:
        print(f"{'Account':<10} {'Name':<30} {'Class':<12} {'Balance':<15} {'SRU':<8}")
        print("-" * 79)
        for account in account_data:
            print(f"{account['number']:<10} {account['name']:<30} {account['class']:<12} "
                  f"{account['balance']:>15.2f} {account['sru_code']:<8}")

        print(f"\nTotal accounts: {len(account_data)}")


def show_summary(document: sie_parser.ParsedDocument, csv_output: bool = False) -> None:
    """Show a summary of the SIE file and what it offers for import."""
    import_summary = sie_import.get_import_summary(document)
    account_balances = _account_balances(document)
    non_zero_accounts = sum(1 for balance in account_balances.values()
                            if abs(balance) >= sie_parser.BALANCE_TOLERANCE)
    balanced_vouchers = sum(1 for voucher in document.vouchers
                            if abs(voucher.balance) <= sie_parser.BALANCE_TOLERANCE)

    current_year = document.fiscal_year(0)
    summary_data = {
        'format': document.format.value,
        'company_name': document.company.name,
        'organization_number': document.company.organization_number,
        'period_start': current_year.start if current_year else '',
        'period_end': current_year.end if current_year else '',
        'sie_type': document.sie_type if document.sie_type is not None else '',
        'currency': document.currency,
        'program': document.program,
        'generation_date': document.generated or '',
        'total_accounts': import_summary.accounts.count,
        'non_zero_accounts': non_zero_accounts,
        'fiscal_years': import_summary.fiscal_years.count,
        'total_vouchers': import_summary.vouchers.count,
        'balanced_vouchers': balanced_vouchers,
        'total_transactions': import_summary.transaction_count,
        'opening_balances': import_summary.opening_balances.count,
        'closing_balances': import_summary.closing_balance_count,
        'parse_errors': len(document.errors),
    }

    if csv_output:
        writer = csv.DictWriter(sys.stdout, fieldnames=summary_data.keys())
        writer.writeheader()
        writer.writerow(summary_data)
    else:
        print("SIE File Summary")
        print("=" * 50)
        print()

        # Company Information
        print("Company Information:")
        print(f"  Name: {summary_data['company_name']}")
        print(f"  Org. number: {summary_data['organization_number']}")
        print(f"  Period: {summary_data['period_start']} - {summary_data['period_end']}")
        if summary_data['currency']:
            print(f"  Currency: {summary_data['currency']}")
        print()

        # File Information
        print("File Information:")
        print(f"  Format: {summary_data['format']}")
        if summary_data['sie_type'] != '':
            print(f"  SIE Type: {summary_data['sie_type']}")
        if summary_data['program']:
            print(f"  Generated by: {summary_data['program']}")
        if summary_data['generation_date']:
            print(f"  Generated on: {summary_data['generation_date']}")
        print()

        # Data Summary
        print("Data Summary:")
        print(f"  Total Accounts: {summary_data['total_accounts']}")
        print(f"  Non-zero Accounts: {summary_data['non_zero_accounts']}")
        print(f"  Fiscal Years: {summary_data['fiscal_years']}")
        print(f"  Total Transactions: {summary_data['total_transactions']}")
        print(f"  Total Vouchers: {summary_data['total_vouchers']}")
        print(f"  Balanced Vouchers: {summary_data['balanced_vouchers']}/{summary_data['total_vouchers']}")

        if summary_data['opening_balances'] > 0:
            print(f"  Opening Balances: {summary_data['opening_balances']}")
        if summary_data['closing_balances'] > 0:
            print(f"  Closing Balances: {summary_data['closing_balances']}")
        if summary_data['parse_errors'] > 0:
            print(f"  Parse Errors: {summary_data['parse_errors']}")


def list_vouchers(document: sie_parser.ParsedDocument, csv_output: bool = False) -> None:
    """List all vouchers with their transaction summaries."""
    voucher_data = []
    for voucher in document.vouchers:
        balance = voucher.balance
        voucher_data.append({
            'voucher': voucher.reference,
            'date': voucher.date or '',
            'description': voucher.text,
            'transactions': len(voucher.transactions),
            'total_amount': round(sum(abs(t.amount) for t in voucher.transactions), 2),
            'balance': balance,
            'balanced': 'Yes' if abs(balance) <= sie_parser.BALANCE_TOLERANCE else 'No',
        })

    if csv_output:
        writer = csv.DictWriter(sys.stdout, fieldnames=['voucher', 'date', 'description', 'transactions', 'total_amount', 'balance', 'balanced'])
        writer.writeheader()
        writer.writerows(voucher_data)
    else:
        print(f"{'Voucher':<10} {'Date':<10} {'Description':<25} {'Trans':<6} {'Amount':<12} {'Balance':<12} {'Bal?':<5}")
        print("-" * 85)
        for voucher in voucher_data:
            print(f"{voucher['voucher']:<10} {voucher['date']:<10} {voucher['description']:<25} "
                  f"{voucher['transactions']:>6} {voucher['total_amount']:>12.2f} "
                  f"{voucher['balance']:>12.2f} {voucher['balanced']:<5}")

        print(f"\nTotal vouchers: {len(voucher_data)}")
        balanced_count = sum(1 for v in voucher_data if v['balanced'] == 'Yes')
        print(f"Balanced vouchers: {balanced_count}/{len(voucher_data)}")


def show_validation(document: sie_parser.ParsedDocument, csv_output: bool = False) -> bool:
    """Print validation errors and warnings. Returns whether the file is valid."""
    result = sie_import.validate_sie(document)

    if csv_output:
        writer = csv.DictWriter(sys.stdout, fieldnames=['severity', 'message'])
        writer.writeheader()
        writer.writerows({'severity': 'error', 'message': message} for message in result.errors)
        writer.writerows({'severity': 'warning', 'message': message} for message in result.warnings)
    else:
        print(f"Validation: {'OK' if result.is_valid else 'FAILED'}")
        if result.errors:
            print("\nErrors:")
            for message in result.errors:
                print(f"  {message}")
        if result.warnings:
            print("\nWarnings:")
            for message in result.warnings:
                print(f"  {message}")
        print(f"\n{len(result.errors)} errors, {len(result.warnings)} warnings")

    return result.is_valid


def main():
    """Main CLI entry point."""
    parser = argparse.ArgumentParser(
        description="SIE file analyzer - Inspect and validate Swedish SIE4/SIE5 accounting files",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s summary file.se                     # Show file summary
  %(prog)s accounts file.se                    # List all accounts
  %(prog)s accounts file.se --non-zero         # List only accounts with balances
  %(prog)s accounts file.sie --csv             # Output as CSV
  %(prog)s vouchers file.se                    # List all vouchers
  %(prog)s validate file.sie                   # Check the file before import
        """
    )

    parser.add_argument('command', choices=['accounts', 'vouchers', 'summary', 'validate'],
                       help='Command to execute')
    parser.add_argument('file', help='SIE file to analyze')
    parser.add_argument('--csv', action='store_true',
                       help='Output in CSV format')
    parser.add_argument('--non-zero', action='store_true',
                       help='For accounts: only show accounts with non-zero balances')
    parser.add_argument('--encoding', default=None,
                       help='File encoding (default: cp437 for SIE4, utf-8 for SIE5)')
    parser.add_argument('--log-level', default='WARNING',
                       choices=['DEBUG', 'INFO', 'WARNING', 'ERROR'],
                       help='Logging level (default: WARNING)')

    args = parser.parse_args()

    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format='%(levelname)s %(name)s: %(message)s',
        stream=sys.stderr,
    )

    try:
        document = sie_parser.parse_sie_file(args.file, encoding=args.encoding)

        if args.command == 'accounts':
            list_accounts(document, non_zero_only=args.non_zero, csv_output=args.csv)
        elif args.command == 'vouchers':
            list_vouchers(document, csv_output=args.csv)
        elif args.command == 'summary':
            show_summary(document, csv_output=args.csv)
        elif args.command == 'validate':
            if not show_validation(document, csv_output=args.csv):
                sys.exit(1)

    except FileNotFoundError:
        print(f"Error: File '{args.file}' not found", file=sys.stderr)
        sys.exit(1)
    except sie_parser.SieError as e:
        print(f"Error parsing SIE file: {e}", file=sys.stderr)
        sys.exit(1)
    except Exception as e:
        print(f"Unexpected error: {e}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
