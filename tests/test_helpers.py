"""Tests for formatting and config parsing helpers."""

from datetime import date

import pytest

from helpers import (
    calculate_gross_from_net, format_currency, format_date, format_number,
    format_percent, month_key_label, parse_account_managers, parse_amount,
    parse_date, parse_list,
)


class TestFormatting:
    def test_number(self):
        assert format_number(1234.5) == '1.234,50'
        assert format_number(None) == ''

    def test_currency(self):
        assert format_currency(1035) == '1.035,00 €'
        assert format_currency(None) == '0,00 €'

    def test_percent(self):
        assert format_percent(0.035) == '3,5 %'
        assert format_percent(0.03571, 2) == '3,57 %'
        assert format_percent(None) == '–'

    def test_date(self):
        assert format_date(date(2024, 6, 1)) == '01.06.2024'
        assert format_date('2024-06-01') == '01.06.2024'
        assert format_date(None) == ''

    def test_month_key_label(self):
        assert month_key_label('03/2024') == 'März 2024'
        assert month_key_label('2024') == '2024'
        assert month_key_label(None) == ''


class TestParsing:
    def test_parse_date(self):
        assert parse_date('2024-06-01') == date(2024, 6, 1)
        assert parse_date('') is None
        with pytest.raises(ValueError):
            parse_date('01.06.2024')

    def test_parse_amount(self):
        assert parse_amount('1.035,50') == 1035.5
        assert parse_amount('1035.50') == 1035.5
        assert parse_amount('1 035,50 €') == 1035.5
        assert parse_amount('') is None
        assert parse_amount(12) == 12.0

    def test_gross_from_net(self):
        assert calculate_gross_from_net(1000, 19) == 1190.0
        assert calculate_gross_from_net(1000, 0) == 1000.0
        assert calculate_gross_from_net(None, 19) is None


class TestConfigParsing:
    def test_account_managers(self):
        assert parse_account_managers('BKO:8, cfr:12,broken,XYZ:abc') == {'BKO': 8, 'CFR': 12}
        assert parse_account_managers('') == {}

    def test_list(self):
        assert parse_list('Fund IV, Eagle,,') == ['Fund IV', 'Eagle']
        assert parse_list(None) == []
