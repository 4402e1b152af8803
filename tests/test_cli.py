"""Tests for SIE CLI functionality.

These tests ensure the CLI commands work correctly and catch regressions
during refactoring.
"""

import pytest
import sys
import os
from io import StringIO
from unittest.mock import patch

# Add the parent directory to the path so we can import modules
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import sie_cli
import sie_parser
from sie_parser import AccountClass, BalanceRecord, SieAccount, SieTransaction, SieVoucher, YearIndex


@pytest.fixture
def sample_document():
    """Create a sample ParsedDocument for testing."""
    return sie_parser.ParsedDocument(
        format=sie_parser.SieFormat.SIE4,
        company=sie_parser.Company(
            name="Test Company AB",
            organization_number="555555-5555",
            address=("Test Person", "Test Street 1", "123 45 Test City", "08-123 45 67"),
        ),
        fiscal_years=(
            sie_parser.SieFiscalYear(0, "2024-01-01", "2024-12-31", YearIndex(0), primary=True),
        ),
        accounts=(
            SieAccount("1910", "Kassa", AccountClass.ASSETS),
            SieAccount("2610", "Leverantörsskulder", AccountClass.LIABILITIES),
            SieAccount("3010", "Försäljning", AccountClass.REVENUE, sru_code="3001"),
            SieAccount("4010", "Kostnader", AccountClass.EXPENSES),
        ),
        opening_balances=(
            BalanceRecord("1910", YearIndex(0), 5000.0),
            BalanceRecord("2610", YearIndex(0), -1000.0),
            BalanceRecord("4010", YearIndex(-1), 300.0),
        ),
        vouchers=(
            SieVoucher("A", 1, "2024-03-15", "Test transaction 1", (
                SieTransaction("1910", 1000.0, "2024-03-15"),
                SieTransaction("2610", -500.0, "2024-03-15"),
                SieTransaction("4010", -500.0, "2024-03-15"),
            )),
            SieVoucher("A", 2, "2024-03-16", "Test transaction 2", (
                SieTransaction("3010", -2000.0, "2024-03-16"),
                SieTransaction("1910", 1900.0, "2024-03-16"),
            )),
        ),
        program="Test Program",
        generated="2024-03-15",
        sie_type=4,
        file_format="PC8",
        currency="SEK",
    )


class TestListAccounts:
    """Test the list_accounts function."""

    def test_list_accounts_basic_output(self, sample_document, capsys):
        """Test basic accounts listing output."""
        sie_cli.list_accounts(sample_document, non_zero_only=False, csv_output=False)

        output = capsys.readouterr().out

        # Check header
        assert "Account" in output
        assert "Name" in output
        assert "Class" in output
        assert "Balance" in output

        # Check account data
        assert "1910" in output
        assert "Kassa" in output
        assert "assets" in output
        assert "Leverantörsskulder" in output
        assert "liabilities" in output

        # Check total count
        assert "Total accounts: 4" in output

    def test_list_accounts_non_zero_filter(self, sample_document, capsys):
        """Test accounts listing with non-zero filter."""
        document = sie_parser.ParsedDocument(
            format=sample_document.format,
            accounts=sample_document.accounts + (SieAccount("1510", "Kundfordringar", AccountClass.ASSETS),),
            opening_balances=sample_document.opening_balances,
            vouchers=sample_document.vouchers,
        )
        sie_cli.list_accounts(document, non_zero_only=True, csv_output=False)

        output = capsys.readouterr().out
        assert "1510" not in output
        assert "Total accounts: 4" in output

    def test_list_accounts_csv_output(self, sample_document, capsys):
        """Test accounts listing with CSV output."""
        sie_cli.list_accounts(sample_document, non_zero_only=False, csv_output=True)

        output = capsys.readouterr().out

        # Check CSV header
        assert "number,name,class,balance,sru_code" in output

        lines = output.strip().split('\n')
        assert len(lines) == 5  # Header + four accounts

        # Transactions plus current-year opening balance
        assert "1910,Kassa,assets,7900.0," in output
        assert "2610,Leverantörsskulder,liabilities,-1500.0," in output
        # Prior-year opening balance is ignored
        assert "4010,Kostnader,expenses,-500.0," in output
        assert "3010,Försäljning,revenue,-2000.0,3001" in output


class TestListVouchers:
    """Test the list_vouchers function."""

    def test_list_vouchers_basic_output(self, sample_document, capsys):
        """Test basic vouchers listing output."""
        sie_cli.list_vouchers(sample_document, csv_output=False)

        output = capsys.readouterr().out

        # Check header
        assert "Voucher" in output
        assert "Date" in output
        assert "Description" in output
        assert "Trans" in output
        assert "Balance" in output

        # Check voucher data
        assert "A1" in output
        assert "A2" in output
        assert "2024-03-15" in output
        assert "2024-03-16" in output

        # Check summary
        assert "Total vouchers: 2" in output
        assert "Balanced vouchers: 1/2" in output

    def test_list_vouchers_csv_output(self, sample_document, capsys):
        """Test vouchers listing with CSV output."""
        sie_cli.list_vouchers(sample_document, csv_output=True)

        output = capsys.readouterr().out

        # Check CSV header
        assert "voucher,date,description,transactions,total_amount,balance,balanced" in output

        # Check voucher data in CSV format
        assert "A1,2024-03-15,Test transaction 1,3,2000.0,0.0,Yes" in output
        assert "A2,2024-03-16,Test transaction 2,2,3900.0,-100.0,No" in output


class TestShowSummary:
    """Test the show_summary function."""

    def test_show_summary_basic_output(self, sample_document, capsys):
        """Test basic summary output."""
        sie_cli.show_summary(sample_document, csv_output=False)

        output = capsys.readouterr().out

        # Check main sections
        assert "SIE File Summary" in output
        assert "Company Information:" in output
        assert "File Information:" in output
        assert "Data Summary:" in output

        # Check company info
        assert "Test Company AB" in output
        assert "555555-5555" in output
        assert "2024-01-01 - 2024-12-31" in output
        assert "SEK" in output

        # Check file info
        assert "SIE4" in output
        assert "Test Program" in output

        # Check data summary
        assert "Total Accounts: 4" in output
        assert "Total Transactions: 5" in output
        assert "Total Vouchers: 2" in output
        assert "Balanced Vouchers: 1/2" in output
        assert "Opening Balances: 3" in output

    def test_show_summary_csv_output(self, sample_document, capsys):
        """Test summary with CSV output."""
        sie_cli.show_summary(sample_document, csv_output=True)

        output = capsys.readouterr().out

        # Check CSV header contains expected fields
        assert "company_name" in output
        assert "total_accounts" in output
        assert "total_transactions" in output
        assert "total_vouchers" in output

        lines = output.strip().split('\n')
        assert len(lines) == 2  # Header + one data line

        assert "Test Company AB" in output
        assert "555555-5555" in output


class TestShowValidation:
    """Test the show_validation function."""

    def test_validation_warnings(self, sample_document, capsys):
        assert sie_cli.show_validation(sample_document)

        output = capsys.readouterr().out
        assert "Validation: OK" in output
        assert "Voucher A2 is unbalanced (difference 100.00)" in output
        assert "0 errors, 1 warnings" in output

    def test_validation_errors_csv(self, capsys):
        document = sie_parser.parse_sie("#FLAGGA 0\n#TRANS 1910 {} 100\n")

        assert not sie_cli.show_validation(document, csv_output=True)

        output = capsys.readouterr().out
        assert "severity,message" in output
        assert "error,Line 2: #TRANS outside of a voucher" in output


class TestCLIMain:
    """Test the main CLI function and argument parsing."""

    @patch('sie_cli.sie_parser.parse_sie_file')
    def test_main_accounts_command(self, mock_parse, sample_document):
        """Test main function with accounts command."""
        mock_parse.return_value = sample_document

        with patch('sys.argv', ['sie_cli.py', 'accounts', 'test.se']):
            with patch('sys.stdout', new_callable=StringIO) as mock_stdout:
                sie_cli.main()

        mock_parse.assert_called_once_with('test.se', encoding=None)
        output = mock_stdout.getvalue()
        assert "Account" in output
        assert "Total accounts:" in output

    @patch('sie_cli.sie_parser.parse_sie_file')
    def test_main_vouchers_command(self, mock_parse, sample_document):
        """Test main function with vouchers command."""
        mock_parse.return_value = sample_document

        with patch('sys.argv', ['sie_cli.py', 'vouchers', 'test.se']):
            with patch('sys.stdout', new_callable=StringIO) as mock_stdout:
                sie_cli.main()

        output = mock_stdout.getvalue()
        assert "Voucher" in output
        assert "Total vouchers:" in output

    @patch('sie_cli.sie_parser.parse_sie_file')
    def test_main_summary_command(self, mock_parse, sample_document):
        """Test main function with summary command."""
        mock_parse.return_value = sample_document

        with patch('sys.argv', ['sie_cli.py', 'summary', 'test.se']):
            with patch('sys.stdout', new_callable=StringIO) as mock_stdout:
                sie_cli.main()

        output = mock_stdout.getvalue()
        assert "SIE File Summary" in output
        assert "Company Information:" in output

    @patch('sie_cli.sie_parser.parse_sie_file')
    def test_main_validate_command_fails_on_errors(self, mock_parse):
        """Test that validate exits with 1 when the file has errors."""
        mock_parse.return_value = sie_parser.parse_sie("#FLAGGA 0\n#IB 0 1910 abc\n")

        with patch('sys.argv', ['sie_cli.py', 'validate', 'bad.se']):
            with patch('sys.stdout', new_callable=StringIO) as mock_stdout:
                with pytest.raises(SystemExit) as exc_info:
                    sie_cli.main()

        assert exc_info.value.code == 1
        assert "Validation: FAILED" in mock_stdout.getvalue()

    @patch('sie_cli.sie_parser.parse_sie_file')
    def test_main_with_csv_flag(self, mock_parse, sample_document):
        """Test main function with CSV output flag."""
        mock_parse.return_value = sample_document

        with patch('sys.argv', ['sie_cli.py', 'accounts', 'test.se', '--csv']):
            with patch('sys.stdout', new_callable=StringIO) as mock_stdout:
                sie_cli.main()

        assert "number,name,class,balance" in mock_stdout.getvalue()

    @patch('sie_cli.sie_parser.parse_sie_file')
    def test_main_with_custom_encoding(self, mock_parse, sample_document):
        """Test main function with custom encoding."""
        mock_parse.return_value = sample_document

        with patch('sys.argv', ['sie_cli.py', 'summary', 'test.se', '--encoding', 'utf-8']):
            with patch('sys.stdout', new_callable=StringIO):
                sie_cli.main()

        mock_parse.assert_called_once_with('test.se', encoding='utf-8')

    @patch('sie_cli.sie_parser.parse_sie_file')
    def test_main_file_not_found_error(self, mock_parse):
        """Test main function handles file not found error."""
        mock_parse.side_effect = FileNotFoundError("File not found")

        with patch('sys.argv', ['sie_cli.py', 'summary', 'nonexistent.se']):
            with patch('sys.stderr', new_callable=StringIO) as mock_stderr:
                with pytest.raises(SystemExit) as exc_info:
                    sie_cli.main()

        assert exc_info.value.code == 1
        assert "File 'nonexistent.se' not found" in mock_stderr.getvalue()

    @patch('sie_cli.sie_parser.parse_sie_file')
    def test_main_format_error(self, mock_parse):
        """Test main function handles unreadable files."""
        mock_parse.side_effect = sie_parser.SieFormatError("Unable to detect SIE format of bad.txt")

        with patch('sys.argv', ['sie_cli.py', 'summary', 'bad.txt']):
            with patch('sys.stderr', new_callable=StringIO) as mock_stderr:
                with pytest.raises(SystemExit) as exc_info:
                    sie_cli.main()

        assert exc_info.value.code == 1
        error_output = mock_stderr.getvalue()
        assert "Error parsing SIE file:" in error_output
        assert "Unable to detect SIE format" in error_output


class TestCLIIntegration:
    """Integration tests using real test files."""

    def test_cli_with_sie4_test_file(self):
        """Test CLI commands with the SIE4 test file."""
        test_file_path = os.path.join(os.path.dirname(__file__), 'test_sie4.se')

        with patch('sys.argv', ['sie_cli.py', 'summary', test_file_path]):
            with patch('sys.stdout', new_callable=StringIO) as mock_stdout:
                sie_cli.main()

        summary_output = mock_stdout.getvalue()
        assert "SIE File Summary" in summary_output
        assert "Testforetaget AB" in summary_output
        assert "Non-zero Accounts: 7" in summary_output

        with patch('sys.argv', ['sie_cli.py', 'accounts', test_file_path, '--non-zero', '--csv']):
            with patch('sys.stdout', new_callable=StringIO) as mock_stdout:
                sie_cli.main()

        accounts_output = mock_stdout.getvalue()
        assert "1910,Kassa,assets,6250.0,7281" in accounts_output
        assert "1930,Foretagskonto,assets,10000.0," in accounts_output
        assert "8310" not in accounts_output

        with patch('sys.argv', ['sie_cli.py', 'validate', test_file_path]):
            with patch('sys.stdout', new_callable=StringIO) as mock_stdout:
                sie_cli.main()

        assert "Validation: OK" in mock_stdout.getvalue()

    def test_cli_with_sie5_test_file(self):
        """Test CLI commands with the SIE5 test file."""
        test_file_path = os.path.join(os.path.dirname(__file__), 'test_sie5.sie')

        with patch('sys.argv', ['sie_cli.py', 'accounts', test_file_path, '--csv']):
            with patch('sys.stdout', new_callable=StringIO) as mock_stdout:
                sie_cli.main()

        accounts_output = mock_stdout.getvalue()
        assert "1930,Företagskonto,assets,1100.0," in accounts_output
        assert "2091,Balanserad vinst,equity,-500.0," in accounts_output

        with patch('sys.argv', ['sie_cli.py', 'vouchers', test_file_path]):
            with patch('sys.stdout', new_callable=StringIO) as mock_stdout:
                sie_cli.main()

        vouchers_output = mock_stdout.getvalue()
        assert "Total vouchers: 2" in vouchers_output
        assert "Balanced vouchers: 2/2" in vouchers_output


if __name__ == "__main__":
    pytest.main([__file__])
