"""Tests for the REST API blueprint."""

from sqlalchemy.exc import OperationalError

import confirmation
from models import AuditLog, Indexation
from odoo import OdooError


CONFIRM_BODY = {
    'tenancy_id': 101,
    'old_rent': 1000,
    'new_rent': 1035,
    'applied_pct': 0.035,
    'effective_date': '2025-07-01',
    'ui_row': {'waiting_time': 12, 'adjustment_month_key': '01/2024', 'current_month_key': '05/2025',
               'adjustment_index': 117.6, 'current_index': 121.8, 'delta': 0.0357},
}


def confirm(client, headers, **overrides):
    body = dict(CONFIRM_BODY)
    body.update(overrides)
    return client.post('/api/v1/indexations/confirm', json=body, headers=headers)


class TestAuthentication:
    def test_missing_key(self, client):
        resp = client.get('/api/v1/tenancies')
        assert resp.status_code == 401
        assert resp.get_json()['ok'] is False

    def test_wrong_key(self, client):
        resp = client.get('/api/v1/tenancies', headers={'Authorization': 'Bearer nope'})
        assert resp.status_code == 401

    def test_api_not_configured(self, app, client, auth_headers):
        app.config['API_KEY'] = ''
        resp = client.get('/api/v1/tenancies', headers=auth_headers)
        assert resp.status_code == 503


class TestTenancies:
    def test_list_with_reference_month(self, client, auth_headers):
        resp = client.get('/api/v1/tenancies?refMonth=05/2025', headers=auth_headers)
        assert resp.status_code == 200
        data = resp.get_json()
        assert data['count'] == 1
        assert data['ref_month'] == '05/2025'
        assert data['ref_year'] == '2025'
        item = data['items'][0]
        assert item['id'] == 101
        assert item['eligible_now'] is True
        assert item['adjustment_month_key'] == '01/2024'
        assert item['adjustment_index'] == 117.6
        assert item['current_index'] == 121.8

    def test_account_manager_filter(self, client, auth_headers):
        assert client.get('/api/v1/tenancies?am=bko', headers=auth_headers).get_json()['count'] == 1
        assert client.get('/api/v1/tenancies?am=CFR', headers=auth_headers).get_json()['count'] == 0
        assert client.get('/api/v1/tenancies?am=NO-AM', headers=auth_headers).get_json()['count'] == 0
        assert client.get('/api/v1/tenancies?am=XYZ', headers=auth_headers).status_code == 404

    def test_eligible_filter(self, client, auth_headers):
        data = client.get('/api/v1/tenancies?refMonth=02/2024&eligible=1', headers=auth_headers).get_json()
        assert data['count'] == 0
        data = client.get('/api/v1/tenancies?refMonth=02/2024', headers=auth_headers).get_json()
        assert data['items'][0]['reason'] == 'delta below threshold'

    def test_odoo_unavailable(self, client, auth_headers, fake_odoo):
        fake_odoo.fail[('search_read', 'property.tenancy')] = OdooError('connection refused')
        resp = client.get('/api/v1/tenancies', headers=auth_headers)
        assert resp.status_code == 502
        assert 'connection refused' in resp.get_json()['error']


class TestConfirm:
    def test_confirm(self, client, auth_headers, fake_odoo):
        resp = confirm(client, auth_headers)
        assert resp.status_code == 200
        data = resp.get_json()
        assert data['ok'] is True
        assert data['ind'] == 'IND-2025-0001'
        assert data['pdf_upload_ok'] is True
        assert data['odoo_update']['wrote_rent'] is True
        assert data['steps']['erp_adjustment_date'] == {
            'status': 'succeeded', 'detail': {'adjustment_date': '2025-07-01'}}

        row = Indexation.query.one()
        assert row.created_by == 'api'
        entry = AuditLog.query.filter_by(action='CREATE', entity_type='Indexation').one()
        assert entry.source == 'api'

    def test_dry_run_returns_pdf(self, client, auth_headers):
        data = confirm(client, auth_headers, dry_run=True).get_json()
        assert data['dry_run'] is True
        assert data['pdf_base64']
        assert Indexation.query.count() == 0

    def test_validation_error(self, client, auth_headers, fake_odoo):
        resp = confirm(client, auth_headers, effective_date=None)
        assert resp.status_code == 400
        assert resp.get_json() == {'ok': False, 'error': 'effective_date is required'}
        assert fake_odoo.writes == []

    def test_unknown_tenancy(self, client, auth_headers):
        resp = confirm(client, auth_headers, tenancy_id=999)
        assert resp.status_code == 404

    def test_snapshot_failure(self, client, auth_headers, fake_odoo):
        fake_odoo.fail[('read', 'property.tenancy')] = OdooError('timeout')
        resp = confirm(client, auth_headers)
        assert resp.status_code == 502
        assert resp.get_json()['steps']['snapshot']['status'] == 'failed'

    def test_odoo_not_configured(self, app, client, auth_headers):
        del app.extensions['odoo_client']
        app.config['ODOO_URL'] = ''
        resp = confirm(client, auth_headers)
        assert resp.status_code == 502
        data = resp.get_json()
        assert data['ok'] is False
        assert data['steps']['snapshot']['status'] == 'failed'
        assert Indexation.query.count() == 0

    def test_ledger_failure(self, client, auth_headers, fake_odoo, monkeypatch):
        def broken(year):
            raise OperationalError('SELECT', {}, Exception('disk I/O error'))
        monkeypatch.setattr(confirmation, 'next_indexation_number', broken)
        resp = confirm(client, auth_headers)
        assert resp.status_code == 500
        assert resp.get_json()['steps']['ledger']['status'] == 'failed'
        assert fake_odoo.writes == []


class TestLedger:
    def test_list_and_detail(self, client, auth_headers):
        confirm(client, auth_headers)
        data = client.get('/api/v1/indexations', headers=auth_headers).get_json()
        assert data['total'] == 1
        row = data['indexations'][0]
        assert row['ind'] == 'IND-2025-0001'
        assert row['tenancy_uuid'] == 101

        detail = client.get(f"/api/v1/indexations/{row['id']}", headers=auth_headers).get_json()
        assert len(detail['documents']) == 1

    def test_filters(self, client, auth_headers):
        confirm(client, auth_headers)
        assert client.get('/api/v1/indexations?year=2024', headers=auth_headers).get_json()['total'] == 0
        assert client.get('/api/v1/indexations?tenancy_id=101', headers=auth_headers).get_json()['total'] == 1

    def test_unknown_row(self, client, auth_headers):
        assert client.get('/api/v1/indexations/999', headers=auth_headers).status_code == 404
        assert client.get('/api/v1/indexations/999/letter', headers=auth_headers).status_code == 404

    def test_letter_download(self, client, auth_headers):
        row_id = confirm(client, auth_headers).get_json()['indexation_row_id']
        resp = client.get(f'/api/v1/indexations/{row_id}/letter', headers=auth_headers)
        assert resp.status_code == 200
        assert resp.mimetype == 'application/pdf'
        assert resp.data.startswith(b'%PDF')

    def test_letter_missing(self, client, auth_headers, monkeypatch):
        def broken(params):
            raise RuntimeError('no fonts')
        monkeypatch.setattr(confirmation, 'render_letter', broken)
        row_id = confirm(client, auth_headers).get_json()['indexation_row_id']
        resp = client.get(f'/api/v1/indexations/{row_id}/letter', headers=auth_headers)
        assert resp.status_code == 404


class TestRentUpdate:
    def test_update(self, client, auth_headers, fake_odoo):
        resp = client.post('/api/v1/tenancies/101/rent', json={'new_rent': 1050.0}, headers=auth_headers)
        assert resp.status_code == 200
        data = resp.get_json()
        assert data['wrote_rent'] is True
        assert data['old_rent'] == 1000.0
        assert fake_odoo.written('property.rent') == [('property.rent', [7002], {'rent': 1050.0})]

    def test_invalid_rent(self, client, auth_headers):
        for body in ({}, {'new_rent': -5}, {'new_rent': 'abc'}, {'new_rent': True}):
            resp = client.post('/api/v1/tenancies/101/rent', json=body, headers=auth_headers)
            assert resp.status_code == 400

    def test_no_rent_record(self, client, auth_headers, fake_odoo):
        fake_odoo.records['property.rent'] = {}
        resp = client.post('/api/v1/tenancies/101/rent', json={'new_rent': 1050.0}, headers=auth_headers)
        assert resp.status_code == 404
