from datetime import date, datetime


def format_number(value, decimals=2):
    """Format a number the German way: 1.234,56"""
    if value is None:
        return ''
    return f'{value:,.{decimals}f}'.replace(',', 'X').replace('.', ',').replace('X', '.')


def format_currency(value):
    """Format a number as Euro currency string."""
    if value is None:
        return '0,00 €'
    return f'{format_number(value, 2)} €'


def format_percent(ratio, decimals=1):
    """Format a ratio (0.035) as German percentage string (3,5 %)."""
    if ratio is None:
        return '–'
    return f'{format_number(ratio * 100, decimals)} %'


def format_date(d):
    """Format a date as DD.MM.YYYY."""
    if d is None or d == '':
        return ''
    if isinstance(d, str):
        d = datetime.strptime(d[:10], '%Y-%m-%d').date()
    return d.strftime('%d.%m.%Y')


def parse_date(date_str, default=None):
    """Parse a date string from HTML date input (YYYY-MM-DD)."""
    if not date_str:
        return default
    return datetime.strptime(str(date_str).strip()[:10], '%Y-%m-%d').date()


def parse_amount(amount_str):
    """Parse a monetary amount string, handling both comma and dot decimals."""
    if amount_str is None or amount_str == '':
        return None
    if isinstance(amount_str, (int, float)) and not isinstance(amount_str, bool):
        return float(amount_str)
    amount_str = str(amount_str).strip().replace(' ', '').replace('€', '')
    if ',' in amount_str:
        # German notation: dots are thousands separators
        amount_str = amount_str.replace('.', '').replace(',', '.')
    return float(amount_str)


def calculate_gross_from_net(net_amount, tax_rate):
    """Gross amount from net amount and tax rate in percent."""
    if net_amount is None:
        return None
    if tax_rate <= 0:
        return round(net_amount, 2)
    return round(net_amount * (1 + tax_rate / 100), 2)


def parse_account_managers(raw):
    """
    Parse "BKO:8,CFR:12" into {'BKO': 8, 'CFR': 12}.

    Entries without a numeric Odoo user id are skipped.
    """
    managers = {}
    for part in (raw or '').split(','):
        code, _, user_id = part.strip().partition(':')
        code = code.strip().upper()
        if code and user_id.strip().isdigit():
            managers[code] = int(user_id.strip())
    return managers


def parse_list(raw):
    """Split a comma separated config value into a list of names."""
    return [item.strip() for item in (raw or '').split(',') if item.strip()]


def get_month_names():
    """Return German month names."""
    return {
        1: 'Januar', 2: 'Februar', 3: 'März', 4: 'April',
        5: 'Mai', 6: 'Juni', 7: 'Juli', 8: 'August',
        9: 'September', 10: 'Oktober', 11: 'November', 12: 'Dezember'
    }


def month_key_label(key):
    """'06/2024' -> 'Juni 2024'"""
    try:
        month, year = key.split('/')
        return f'{get_month_names()[int(month)]} {year}'
    except (AttributeError, ValueError, KeyError):
        return key or ''
