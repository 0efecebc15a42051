"""Shared fixtures: app with in-memory SQLite, fake Odoo, temporary archive."""

import copy

import pytest

from app import create_app
from models import db

API_KEY = 'test-api-key'


class FakeOdoo:
    """
    In-memory stand-in for OdooClient.

    Records are kept per model as {id: values}. Many2one values are stored
    the way Odoo returns them ([id, name]). ``fail`` maps (method, model) to
    an exception raised instead of running the call.
    """

    def __init__(self):
        self.records = {}
        self.writes = []
        self.fail = {}

    def add(self, model, record_id, **values):
        values['id'] = record_id
        self.records.setdefault(model, {})[record_id] = values
        return values

    def _check(self, method, model):
        error = self.fail.get((method, model))
        if error is not None:
            raise error

    @staticmethod
    def _matches(record, domain):
        for field, op, value in domain:
            current = record.get(field)
            if isinstance(current, (list, tuple)):
                current = current[0] if current else None
            if op != '=' or current != value:
                return False
        return True

    def read(self, model, ids, fields):
        self._check('read', model)
        table = self.records.get(model, {})
        return [copy.deepcopy(table[i]) for i in ids if i in table]

    def search(self, model, domain, order=None, limit=None):
        self._check('search', model)
        ids = [r['id'] for r in self.records.get(model, {}).values() if self._matches(r, domain)]
        ids.sort(reverse=bool(order and order.endswith('desc')))
        return ids[:limit] if limit else ids

    def search_read(self, model, domain, fields, limit=None):
        self._check('search_read', model)
        return self.read(model, self.search(model, domain, limit=limit), fields)

    def write(self, model, ids, values):
        self._check('write', model)
        self.writes.append((model, list(ids), dict(values)))
        for i in ids:
            self.records.get(model, {}).get(i, {}).update(values)
        return True

    def written(self, model):
        return [w for w in self.writes if w[0] == model]


def seed_tenancy(fake, tenancy_id=101, **overrides):
    """A VPI tenancy adjusted 01/2024, with property, tenant, taxes and rent record."""
    fake.add('property.property', 11,
             name='Hauptstraße 1', sales_person_id=[8, 'Berta Kowalski'],
             company_id=[3, 'Fund IV'], entity_id=[21, 'Objekt GmbH'],
             reference_id='AC01', internal_label=False,
             street='Hauptstraße 1', zip='10115', city='Berlin', country_id=[57, 'Germany'])
    fake.add('res.partner', 501, name='Max Mustermann', commercial_partner_id=[500, 'Muster GmbH'])
    fake.add('res.partner', 500, name='Muster GmbH', commercial_partner_id=False,
             street='Musterweg 5', street2=False, zip='10117', city='Berlin', country_id=[57, 'Germany'])
    fake.add('product.product', 900, taxes_id=[1])
    fake.add('account.tax', 1, amount_type='percent', amount=19.0)
    tenancy = dict(
        name='AC01 - 09 - Muster GmbH',
        main_property_id=[11, 'Hauptstraße 1'],
        partner_id=[501, 'Max Mustermann'],
        rent_product_id=[900, 'Miete'],
        indexing_rent=1000.0,
        current_rent=1000.0,
        index_id=[1, 'VPI'],
        lock_date=False,
        adjustment_period=12,
        adjustment_date='2024-01-01',
        threshold=0.03,
        partially_passing_on=1,
        maximal_percentage=0,
        waiting_time=3,
        date_end_display='31.12.2030',
        is_indexing_rent=True,
        current_ancillary_costs=200.0,
        ancillary_cost_type_id=[4, 'Nebenkosten 19%'],
    )
    tenancy.update(overrides)
    fake.add('property.tenancy', tenancy_id, **tenancy)
    fake.add('property.rent', 7001, tenancy_id=[tenancy_id, tenancy['name']], rent=900.0)
    fake.add('property.rent', 7002, tenancy_id=[tenancy_id, tenancy['name']], rent=1000.0)
    return fake


@pytest.fixture
def fake_odoo():
    return seed_tenancy(FakeOdoo())


@pytest.fixture
def app(tmp_path, fake_odoo):
    app = create_app({
        'TESTING': True,
        'SECRET_KEY': 'test',
        'SQLALCHEMY_DATABASE_URI': 'sqlite://',
        'ARCHIVE_FOLDER': str(tmp_path / 'archive'),
        'API_KEY': API_KEY,
        'ADMIN_USERNAME': 'admin',
        'ADMIN_PASSWORD': 'secret',
        'ACCOUNT_MANAGERS': {'BKO': 8, 'CFR': 12},
        'ALLOWED_COMPANIES': ['Fund IV', 'Eagle'],
        'LETTER_TEMPLATE_PATH': '',
        'LETTER_FONT_REGULAR': '',
        'LETTER_FONT_BOLD': '',
    })
    app.extensions['odoo_client'] = fake_odoo
    with app.app_context():
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def auth_headers():
    return {'Authorization': f'Bearer {API_KEY}'}


@pytest.fixture
def logged_in(client):
    client.post('/login', data={'username': 'admin', 'password': 'secret'})
    return client


@pytest.fixture
def seed():
    return seed_tenancy
