"""Tests for confirming an indexation: ledger, letter, archive, ERP write-back."""

import os
from datetime import date, datetime

import pytest
from sqlalchemy import update
from sqlalchemy.exc import OperationalError

import confirmation
from audit import ImmutableRecordError, verify_integrity
from confirmation import (
    ConfirmationAborted, ConfirmationRequest, RentRecordNotFound, TenancyNotFound,
    ValidationError, build_archive_filename, confirm_indexation, extract_tenant_no,
    next_indexation_number, percent_from_rents, update_rent,
)
from models import AuditLog, Document, Indexation, RentUpdate, db
from odoo import OdooError


TODAY = date(2025, 6, 20)

UI_ROW = {
    'id': 101,
    'name': 'AC01 - 09 - Muster GmbH',
    'waiting_time': 12,
    'threshold': 0.03,
    'partially_passing_on': 1.0,
    'adjustment_period': 12,
    'date_end_display': '31.12.2030',
    'adjustment_month_key': '01/2024',
    'current_month_key': '05/2025',
    'adjustment_index': 117.6,
    'current_index': 121.8,
    'delta': 0.0357,
    'reason': 'eligible',
    'sales_person_id': [8, 'Berta Kowalski'],
}


def make_request(**overrides):
    data = {
        'tenancy_id': 101,
        'old_rent': 1000.0,
        'new_rent': 1035.0,
        'applied_pct': 0.035,
        'effective_date': '2025-07-01',
        'ui_row': dict(UI_ROW),
    }
    data.update(overrides)
    return ConfirmationRequest.from_json(data)


def archived_files(app):
    folder = app.config['ARCHIVE_FOLDER']
    return os.listdir(folder) if os.path.isdir(folder) else []


class TestRequestValidation:
    def test_required_fields(self):
        with pytest.raises(ValidationError, match='effective_date is required'):
            make_request(effective_date=None)
        with pytest.raises(ValidationError, match='new_rent is required'):
            make_request(new_rent='')

    def test_tenancy_id_must_be_positive_integer(self):
        with pytest.raises(ValidationError):
            make_request(tenancy_id=0)
        with pytest.raises(ValidationError):
            make_request(tenancy_id=1.5)

    def test_bad_values(self):
        with pytest.raises(ValidationError):
            make_request(new_rent=-1)
        with pytest.raises(ValidationError):
            make_request(old_rent='abc')
        with pytest.raises(ValidationError):
            make_request(effective_date='01.07.2025')
        with pytest.raises(ValidationError):
            make_request(ui_row=['not', 'a', 'dict'])
        with pytest.raises(ValidationError):
            ConfirmationRequest.from_json(None)

    def test_applied_pct_derived_from_rents(self):
        req = make_request(applied_pct=None)
        assert req.applied_pct == pytest.approx(0.035)
        assert percent_from_rents(0, 100) is None

    def test_german_decimal_strings(self):
        req = make_request(new_rent='1035,50', comment='  ')
        assert req.new_rent == 1035.5
        assert req.comment is None


class TestNaming:
    def test_tenant_number(self):
        assert extract_tenant_no('AC01 - 09 - Deichmann') == '9'
        assert extract_tenant_no('AC01 - 2.5 - X') == '2.5'
        assert extract_tenant_no('AC01') is None
        assert extract_tenant_no('AC01 - x - Y') is None

    def test_archive_filename(self):
        name = build_archive_filename('AC01 - 09 - Muster', 'AC 01/B', date(2025, 7, 1))
        assert name == ('m(ttype=1.7.6.9)(tasset=AC%2001%2FB)(tname=Indexation%20Letter)'
                        '(tscope=asset)(tdate=2025-07-01)(tmail=automatic).pdf')

    def test_archive_filename_fallbacks(self):
        name = build_archive_filename(None, None, date(2025, 7, 1))
        assert '(ttype=1.7.6.0)' in name
        assert '(tasset=UNKNOWN)' in name


class TestConfirm:
    def test_all_steps_succeed(self, app, fake_odoo):
        result = confirm_indexation(make_request(), fake_odoo, created_by='tester', today=TODAY)

        assert {name: s.status for name, s in result.steps.items()} == {
            'snapshot': 'succeeded', 'ledger': 'succeeded', 'letter': 'succeeded',
            'archive': 'succeeded', 'erp_rent': 'succeeded', 'erp_adjustment_date': 'succeeded',
        }

        row = Indexation.query.one()
        assert row.ind == 'IND-2025-0001'
        assert row.tenancy_id == 101
        assert row.fund == 'Fund IV'
        assert row.entity == 'Objekt GmbH'
        assert row.slate_id == 'AC01'
        assert row.tenant == 'Muster GmbH'
        assert row.address == 'Hauptstraße 1, 10115, Berlin, Germany'
        assert row.rent_after_indexation == 1035.0
        assert row.last_index_date == '2024-01-01'
        assert row.current_index_date == '2025-05-01'
        assert row.next_possible_indexation_date == date(2026, 7, 1)
        assert row.year == 2025
        assert row.created_by == 'tester'

        assert fake_odoo.written('property.rent') == [('property.rent', [7002], {'rent': 1035.0})]
        assert fake_odoo.written('property.tenancy') == [
            ('property.tenancy', [101], {'adjustment_date': '2025-07-01'})]

        assert archived_files(app) == [result.file_name]
        doc = Document.query.one()
        assert doc.entity_id == row.id
        assert doc.original_filename == 'Mietanpassung_IND-2025-0001.pdf'
        assert result.pdf_bytes.startswith(b'%PDF')

    def test_response_shape(self, app, fake_odoo):
        result = confirm_indexation(make_request(), fake_odoo, today=TODAY)
        response = result.to_response(return_pdf=False)

        assert response['ok'] is True
        assert response['ind'] == 'IND-2025-0001'
        assert response['pdf_upload_ok'] is True
        assert response['pdf_base64'] is None
        assert response['odoo_update'] == {
            'rent_record_id': 7002, 'wrote_rent': True, 'wrote_adjustment_date': True, 'error': None,
        }
        assert response['payload_used']['tenancy_uuid'] == 101
        assert response['payload_used']['effective_date'] == '2025-07-01'
        assert response['payload_used']['ind'] == 'IND-2025-0001'
        assert result.to_response(return_pdf=True)['pdf_base64']

    def test_sequence_numbers_per_year(self, app, fake_odoo):
        confirm_indexation(make_request(), fake_odoo, today=TODAY)
        result = confirm_indexation(make_request(effective_date='2025-08-01'), fake_odoo, today=TODAY)
        assert result.indexation.ind == 'IND-2025-0002'
        assert next_indexation_number(2026) == 'IND-2026-0001'

    def test_sequence_continues_past_four_digits(self, app):
        for ind in ('IND-2025-9999', 'IND-2025-10000'):
            db.session.add(Indexation(ind=ind, tenancy_id=101, rent_before_indexation=1000.0,
                                      rent_after_indexation=1035.0, effective_date=date(2025, 7, 1),
                                      year=2025))
        db.session.commit()
        assert next_indexation_number(2025) == 'IND-2025-10001'

    def test_reference_date_moves_adjustment_date(self, app, fake_odoo):
        confirm_indexation(make_request(reference_date='2025-06-01'), fake_odoo, today=TODAY)
        assert fake_odoo.written('property.tenancy')[0][2] == {'adjustment_date': '2025-06-01'}

    def test_ancillary_costs_indexed(self, app, fake_odoo):
        result = confirm_indexation(make_request(index_nebenkosten=True), fake_odoo, today=TODAY)
        assert result.indexation.ancillary_before == 200.0
        assert result.indexation.ancillary_after == 207.0

    def test_explicit_new_ancillary(self, app, fake_odoo):
        result = confirm_indexation(make_request(index_nebenkosten=True, new_ancillary=210),
                                    fake_odoo, today=TODAY)
        assert result.indexation.ancillary_after == 210.0


class TestDryRun:
    def test_nothing_is_written(self, app, fake_odoo):
        result = confirm_indexation(make_request(dry_run=True), fake_odoo, today=TODAY)

        assert result.steps['ledger'].status == 'skipped'
        assert result.steps['archive'].status == 'skipped'
        assert result.steps['erp_rent'].status == 'skipped'
        assert result.steps['letter'].status == 'succeeded'
        assert Indexation.query.count() == 0
        assert fake_odoo.writes == []
        assert archived_files(app) == []

        response = result.to_response()
        assert response['dry_run'] is True
        assert response['indexation_row_id'] is None
        assert response['pdf_base64']


class TestFailures:
    def test_unknown_tenancy(self, app, fake_odoo):
        with pytest.raises(TenancyNotFound):
            confirm_indexation(make_request(tenancy_id=999), fake_odoo, today=TODAY)
        assert Indexation.query.count() == 0

    def test_snapshot_failure_aborts(self, app, fake_odoo):
        fake_odoo.fail[('read', 'property.tenancy')] = OdooError('timeout')
        with pytest.raises(ConfirmationAborted) as exc:
            confirm_indexation(make_request(), fake_odoo, today=TODAY)
        assert exc.value.result.steps['snapshot'].status == 'failed'
        assert Indexation.query.count() == 0
        assert fake_odoo.writes == []

    def test_ledger_failure_leaves_no_archive_and_no_erp_write(self, app, fake_odoo, monkeypatch):
        def broken(year):
            raise OperationalError('SELECT', {}, Exception('database is locked'))
        monkeypatch.setattr(confirmation, 'next_indexation_number', broken)

        with pytest.raises(ConfirmationAborted) as exc:
            confirm_indexation(make_request(), fake_odoo, today=TODAY)

        assert exc.value.result.steps['ledger'].status == 'failed'
        assert 'letter' not in exc.value.result.steps
        assert archived_files(app) == []
        assert fake_odoo.writes == []

    def test_archive_failure_still_writes_to_odoo(self, app, fake_odoo):
        name = build_archive_filename('AC01 - 09 - Muster GmbH', 'AC01', date(2025, 7, 1))
        os.makedirs(app.config['ARCHIVE_FOLDER'], exist_ok=True)
        with open(os.path.join(app.config['ARCHIVE_FOLDER'], name), 'wb') as f:
            f.write(b'existing')

        result = confirm_indexation(make_request(), fake_odoo, today=TODAY)

        assert result.steps['archive'].status == 'failed'
        assert result.steps['erp_rent'].ok
        assert result.steps['erp_adjustment_date'].ok
        assert Document.query.count() == 0
        assert Indexation.query.count() == 1
        response = result.to_response()
        assert response['pdf_upload_ok'] is False
        assert response['pdf_upload_error']

    def test_rent_and_adjustment_date_reported_separately(self, app, fake_odoo):
        fake_odoo.fail[('write', 'property.rent')] = OdooError('Access denied')

        result = confirm_indexation(make_request(), fake_odoo, today=TODAY)

        assert result.steps['erp_rent'].status == 'failed'
        assert result.steps['erp_adjustment_date'].status == 'succeeded'
        update = result.to_response()['odoo_update']
        assert update['wrote_rent'] is False
        assert update['wrote_adjustment_date'] is True
        assert update['error'] == 'Access denied'

    def test_missing_rent_record(self, app, fake_odoo):
        fake_odoo.records['property.rent'] = {}
        result = confirm_indexation(make_request(), fake_odoo, today=TODAY)
        assert result.steps['erp_rent'].status == 'failed'
        assert 'No property.rent record' in result.steps['erp_rent'].error
        assert result.steps['erp_adjustment_date'].ok

    def test_letter_failure_skips_archive(self, app, fake_odoo, monkeypatch):
        def broken(params):
            raise RuntimeError('font missing')
        monkeypatch.setattr(confirmation, 'render_letter', broken)

        result = confirm_indexation(make_request(), fake_odoo, today=TODAY)

        assert result.steps['letter'].status == 'failed'
        assert result.steps['archive'].status == 'skipped'
        assert result.steps['erp_rent'].ok
        assert Indexation.query.count() == 1


class TestLedgerIntegrity:
    def test_rows_cannot_be_modified(self, app, fake_odoo):
        result = confirm_indexation(make_request(), fake_odoo, today=TODAY)
        row = result.indexation
        row.rent_after_indexation = 2000.0
        with pytest.raises(ImmutableRecordError):
            db.session.commit()
        db.session.rollback()
        assert db.session.get(Indexation, row.id).rent_after_indexation == 1035.0

    def test_rows_cannot_be_deleted(self, app, fake_odoo):
        result = confirm_indexation(make_request(), fake_odoo, today=TODAY)
        db.session.delete(result.indexation)
        with pytest.raises(ImmutableRecordError):
            db.session.commit()
        db.session.rollback()
        assert Indexation.query.count() == 1

    def test_audit_chain_verifies(self, app, fake_odoo):
        confirm_indexation(make_request(), fake_odoo, today=TODAY)
        confirm_indexation(make_request(effective_date='2025-08-01'), fake_odoo, today=TODAY)

        actions = [e.action for e in AuditLog.query.order_by(AuditLog.id).all()]
        assert 'LETTER_ARCHIVED' in actions
        assert actions.count('ERP_WRITE') == 2
        assert ('CREATE', 'Indexation') in {(e.action, e.entity_type) for e in AuditLog.query.all()}

        is_valid, total, broken_id, _ = verify_integrity(db)
        assert is_valid is True
        assert broken_id is None
        assert total == len(actions)

    def test_tampering_breaks_the_chain(self, app, fake_odoo):
        confirm_indexation(make_request(), fake_odoo, today=TODAY)
        entry = AuditLog.query.filter_by(action='ERP_WRITE').one()
        db.session.execute(
            update(AuditLog).where(AuditLog.id == entry.id).values(new_values='{"rent": 1}'))
        db.session.commit()
        db.session.expire_all()

        is_valid, _, broken_id, _ = verify_integrity(db)
        assert is_valid is False
        assert broken_id == entry.id


class TestUpdateRent:
    def test_writes_rent_and_tracks_update(self, app, fake_odoo):
        result = update_rent(fake_odoo, 101, 1050.0, ui_row=dict(UI_ROW), by_user='api',
                             now=datetime(2025, 6, 20, 9, 30))

        assert result['ok'] is True
        assert result['rent_record_id'] == 7002
        assert result['old_rent'] == 1000.0
        assert result['delta_abs'] == 50.0
        assert result['delta_pct'] == pytest.approx(0.05)
        assert result['last_adjustment_prev'] == '2024-01-01'
        assert result['last_adjustment_new'] == '2025-07-01'
        assert result['am_id'] == 8
        assert result['am_name'] == 'Berta Kowalski'

        assert fake_odoo.written('property.rent') == [('property.rent', [7002], {'rent': 1050.0})]
        tracked = RentUpdate.query.one()
        assert tracked.tenancy_id == 101
        assert tracked.by_user == 'api'
        assert '"tracker_meta"' in tracked.payload_json

    def test_missing_rent_record(self, app, fake_odoo):
        fake_odoo.records['property.rent'] = {}
        with pytest.raises(RentRecordNotFound):
            update_rent(fake_odoo, 101, 1050.0)
        assert fake_odoo.writes == []
