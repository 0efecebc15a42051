"""
Thin Odoo JSON-RPC client.

Only what the indexation desk needs: authenticate once, then
``execute_kw`` read / search / search_read / write on the property models.
"""

import itertools
import logging

import httpx
from flask import current_app

from indexation import TenancyIndexation


logger = logging.getLogger(__name__)

TENANCY_FIELDS = [
    'name',
    'main_property_id',
    'indexing_rent',
    'current_rent',
    'index_id',
    'lock_date',
    'adjustment_period',
    'adjustment_date',
    'threshold',
    'partially_passing_on',
    'maximal_percentage',
    'waiting_time',
    'date_end_display',
    'is_indexing_rent',
    'current_ancillary_costs',
]

DEFAULT_ALLOWED_COMPANIES = ('Fund IV', 'Eagle')


class OdooError(Exception):
    """Any failure talking to Odoo (transport, RPC error, bad response)."""


def m2o_id(value):
    """Id of a many2one value ``[id, name]``, else None."""
    if isinstance(value, (list, tuple)) and value and isinstance(value[0], int) \
            and not isinstance(value[0], bool):
        return value[0]
    return None


def m2o_name(value):
    if isinstance(value, (list, tuple)) and len(value) > 1 and value[1]:
        return str(value[1])
    return None


def has_odoo_env(config):
    return bool(config.get('ODOO_URL') and config.get('ODOO_DB')
                and config.get('ODOO_USER') and config.get('ODOO_PASSWORD'))


class OdooClient:
    def __init__(self, url, db, user, password, timeout=30.0, transport=None):
        if not (url and db and user and password):
            raise OdooError('Odoo-Zugangsdaten fehlen (ODOO_URL/DB/USER/API oder PWD).')
        self.url = url.rstrip('/')
        self.db = db
        self.user = user
        self._password = password
        self._uid = None
        self._ids = itertools.count(1)
        self._http = httpx.Client(timeout=timeout, transport=transport)

    @classmethod
    def from_config(cls, config, transport=None):
        return cls(
            config.get('ODOO_URL'),
            config.get('ODOO_DB'),
            config.get('ODOO_USER'),
            config.get('ODOO_PASSWORD'),
            timeout=config.get('ODOO_TIMEOUT', 30.0),
            transport=transport,
        )

    def close(self):
        self._http.close()

    def _call(self, service, method, args):
        payload = {
            'jsonrpc': '2.0',
            'method': 'call',
            'id': next(self._ids),
            'params': {'service': service, 'method': method, 'args': args},
        }
        try:
            resp = self._http.post(f'{self.url}/jsonrpc', json=payload)
            resp.raise_for_status()
            data = resp.json()
        except httpx.HTTPError as e:
            raise OdooError(f'Odoo nicht erreichbar: {e}') from e
        except ValueError as e:
            raise OdooError('Odoo-Antwort ist kein gültiges JSON.') from e

        if data.get('error'):
            err = data['error']
            message = err.get('message') or 'unbekannter Fehler'
            debug = (err.get('data') or {}).get('debug')
            if debug:
                logger.debug('Odoo RPC debug: %s', debug)
            raise OdooError(f'Odoo RPC error: {message}')
        if 'result' not in data:
            raise OdooError('Odoo RPC: result undefined')
        return data['result']

    def authenticate(self):
        """Log in and cache the numeric user id."""
        if self._uid:
            return self._uid
        uid = self._call('common', 'authenticate', [self.db, self.user, self._password, {}])
        if not uid or not isinstance(uid, int) or uid <= 0:
            raise OdooError('Odoo-Authentifizierung fehlgeschlagen.')
        self._uid = uid
        return uid

    def execute_kw(self, model, method, args, kwargs=None):
        uid = self.authenticate()
        return self._call('object', 'execute_kw', [
            self.db, uid, self._password, model, method, args, kwargs or {},
        ])

    def read(self, model, ids, fields):
        if not ids:
            return []
        return self.execute_kw(model, 'read', [list(ids), list(fields)])

    def search(self, model, domain, order=None, limit=None):
        kwargs = {}
        if order:
            kwargs['order'] = order
        if limit:
            kwargs['limit'] = limit
        return self.execute_kw(model, 'search', [domain], kwargs)

    def search_read(self, model, domain, fields, limit=None):
        kwargs = {'fields': list(fields)}
        if limit:
            kwargs['limit'] = limit
        return self.execute_kw(model, 'search_read', [domain], kwargs)

    def write(self, model, ids, values):
        return bool(self.execute_kw(model, 'write', [list(ids), values]))


def get_odoo_client(app=None):
    """The client registered on the app, created from config on first use."""
    app = app or current_app
    client = app.extensions.get('odoo_client')
    if client is None:
        client = OdooClient.from_config(app.config)
        app.extensions['odoo_client'] = client
    return client


def load_tenancies(client, allowed_companies=DEFAULT_ALLOWED_COMPANIES, limit=20000):
    """
    Tenancies under indexation for the allowed companies.

    Vacant units and tenancies without the indexing flag are skipped. The
    account manager (``sales_person_id``) comes from the main property.
    """
    rows = client.search_read('property.tenancy', [], TENANCY_FIELDS, limit=limit)

    prop_ids = sorted({m2o_id(r.get('main_property_id')) for r in rows} - {None})
    sales_by_prop = {}
    allowed_props = set()
    allowed = set(allowed_companies or ())
    for prop in client.read('property.property', prop_ids, ['sales_person_id', 'company_id']):
        sales_by_prop[prop['id']] = prop.get('sales_person_id') or None
        if m2o_name(prop.get('company_id')) in allowed:
            allowed_props.add(prop['id'])

    tenancies = []
    for row in rows:
        prop_id = m2o_id(row.get('main_property_id'))
        if prop_id not in allowed_props:
            continue
        if 'vacant' in str(row.get('name') or '').lower():
            continue
        tenancy = TenancyIndexation.from_record(row, sales_by_prop.get(prop_id))
        if not tenancy.is_indexing_rent:
            continue
        tenancies.append(tenancy)

    logger.info('Loaded %d of %d tenancies from Odoo', len(tenancies), len(rows))
    return tenancies


def load_tenancy(client, tenancy_id):
    """A single tenancy with its account manager, or None."""
    rows = client.read('property.tenancy', [tenancy_id], TENANCY_FIELDS)
    if not rows:
        return None
    row = rows[0]
    sales_person = None
    prop_id = m2o_id(row.get('main_property_id'))
    if prop_id:
        props = client.read('property.property', [prop_id], ['sales_person_id'])
        if props:
            sales_person = props[0].get('sales_person_id') or None
    return TenancyIndexation.from_record(row, sales_person)
