"""
Verbraucherpreisindex (VPI) lookup tables.

Published values of the German consumer price index, base year 2020 = 100
(Destatis, Tabelle 61111-0002 / 61111-0001). The tables are a fixed lookup:
add new rows here (or point INDEX_TABLE_PATH at a JSON file with the same
shape) when Destatis publishes a new month.
"""

import json
import math
from dataclasses import dataclass, field


# =============================================================================
# MONTHLY VALUES  ("MM/YYYY" -> index)
# =============================================================================

VPI_MONTHLY = {
    # 2020
    '01/2020': 99.5, '02/2020': 99.9, '03/2020': 100.0, '04/2020': 100.4,
    '05/2020': 100.4, '06/2020': 100.6, '07/2020': 100.1, '08/2020': 100.0,
    '09/2020': 99.8, '10/2020': 99.7, '11/2020': 99.5, '12/2020': 100.0,
    # 2021
    '01/2021': 101.1, '02/2021': 101.6, '03/2021': 102.1, '04/2021': 102.4,
    '05/2021': 102.9, '06/2021': 103.0, '07/2021': 103.9, '08/2021': 104.0,
    '09/2021': 104.1, '10/2021': 104.3, '11/2021': 104.5, '12/2021': 104.8,
    # 2022
    '01/2022': 106.2, '02/2022': 107.0, '03/2022': 109.5, '04/2022': 110.3,
    '05/2022': 111.2, '06/2022': 111.1, '07/2022': 111.5, '08/2022': 112.0,
    '09/2022': 114.1, '10/2022': 115.0, '11/2022': 115.0, '12/2022': 114.2,
    # 2023
    '01/2023': 114.3, '02/2023': 115.2, '03/2023': 116.1, '04/2023': 116.6,
    '05/2023': 116.5, '06/2023': 116.8, '07/2023': 117.1, '08/2023': 117.5,
    '09/2023': 117.8, '10/2023': 117.8, '11/2023': 117.3, '12/2023': 117.4,
    # 2024
    '01/2024': 117.6, '02/2024': 118.1, '03/2024': 118.6, '04/2024': 119.2,
    '05/2024': 119.3, '06/2024': 119.4, '07/2024': 119.8, '08/2024': 119.7,
    '09/2024': 119.7, '10/2024': 120.2, '11/2024': 119.9, '12/2024': 120.5,
    # 2025
    '01/2025': 120.3, '02/2025': 120.8, '03/2025': 121.2, '04/2025': 121.7,
    '05/2025': 121.8, '06/2025': 121.8, '07/2025': 122.2, '08/2025': 122.3,
    '09/2025': 122.6,
}


# =============================================================================
# ANNUAL AVERAGES  ("YYYY" -> index)
# =============================================================================

VPI_ANNUAL = {
    '2015': 94.5,
    '2016': 95.0,
    '2017': 96.4,
    '2018': 98.1,
    '2019': 99.5,
    '2020': 100.0,
    '2021': 103.1,
    '2022': 110.2,
    '2023': 116.7,
    '2024': 119.3,
}


def _published(value):
    """Return the value if it is a finite number, else None."""
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    if not math.isfinite(value):
        return None
    return float(value)


@dataclass
class IndexTable:
    """Monthly and annual index values keyed by calendar key."""
    monthly: dict = field(default_factory=dict)
    annual: dict = field(default_factory=dict)

    def monthly_value(self, key):
        if not key:
            return None
        return _published(self.monthly.get(key))

    def annual_value(self, key):
        if not key:
            return None
        return _published(self.annual.get(key))

    @classmethod
    def from_json(cls, path):
        """Load a table from {"monthly": {...}, "annual": {...}}."""
        with open(path, 'r', encoding='utf-8') as f:
            data = json.load(f)
        return cls(monthly=dict(data.get('monthly') or {}),
                   annual=dict(data.get('annual') or {}))


GERMAN_VPI = IndexTable(monthly=VPI_MONTHLY, annual=VPI_ANNUAL)


def get_index_table(app=None):
    """The table configured for ``app`` (INDEX_TABLE_PATH) or the built-in one."""
    if app is not None:
        table = app.extensions.get('index_table')
        if table is not None:
            return table
        path = app.config.get('INDEX_TABLE_PATH')
        if path:
            table = IndexTable.from_json(path)
            app.extensions['index_table'] = table
            return table
    return GERMAN_VPI
