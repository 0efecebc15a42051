"""
Confirming an indexation: ledger row, notice letter, archive, ERP write-back.

The steps run in a fixed order and each one reports its own outcome:

    snapshot             read tenancy / property / tenant / taxes from Odoo
    ledger               insert the immutable Indexation row
    letter               render the notice letter (embeds the ledger ``ind``)
    archive              store the letter write-once in ARCHIVE_FOLDER
    erp_rent             write the new rent onto the latest property.rent
    erp_adjustment_date  move the tenancy's adjustment_date

A failing snapshot or ledger step aborts the confirmation; nothing has been
written at that point. Later steps are best effort: they never undo the
ledger row, a failure is logged and reported in the step result.
"""

import base64
import json
import math
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Optional
from urllib.parse import quote

from flask import current_app
from sqlalchemy.exc import SQLAlchemyError

from audit import archive_file, log_action
from datekeys import add_months_to_first_of_month, first_day_of_next_month, key_to_date
from helpers import parse_date
from letter import LetterParams, build_indexation_pdf
from models import Document, Indexation, RentUpdate, db
from odoo import OdooError, m2o_id, m2o_name


TENANCY_TYPE = 'residential'
STEP_ORDER = ('snapshot', 'ledger', 'letter', 'archive', 'erp_rent', 'erp_adjustment_date')


class ValidationError(Exception):
    """Invalid confirmation input. Nothing was read or written."""


class RecordNotFound(Exception):
    pass


class TenancyNotFound(RecordNotFound):
    pass


class RentRecordNotFound(RecordNotFound):
    pass


class ConfirmationAborted(Exception):
    """A blocking step failed; ``result`` carries the step statuses so far."""

    def __init__(self, message, result):
        super().__init__(message)
        self.result = result


# =============================================================================
# NUMERIC DERIVATIONS
# =============================================================================

def suggest_rent(old_rent, applied_pct):
    """New rent for an applied ratio, rounded to cents."""
    if old_rent is None or applied_pct is None:
        return None
    return round(old_rent * (1 + applied_pct), 2)


def percent_from_rents(old_rent, new_rent):
    """Applied ratio implied by an operator-entered new rent."""
    if not old_rent or new_rent is None:
        return None
    return new_rent / old_rent - 1


def rent_from_percent(old_rent, pct):
    return suggest_rent(old_rent, pct)


def ancillary_vat_rate_from_type(type_name):
    """19, 0 or None from the name of the ancillary cost type."""
    name = (type_name or '').lower()
    if '19' in name:
        return 19
    if '0' in name or 'zero' in name:
        return 0
    return None


def extract_tenant_no(name):
    """'AC01 - 09 - Deichmann' -> '9'"""
    if not name:
        return None
    parts = name.split(' - ')
    if len(parts) < 2:
        return None
    try:
        number = float(parts[1].strip())
    except ValueError:
        return None
    if not math.isfinite(number):
        return None
    return str(int(number)) if number.is_integer() else str(number)


def build_archive_filename(tenancy_name, slate_id, effective_date):
    tenant_no = extract_tenant_no(tenancy_name) or '0'
    asset = quote(slate_id or 'UNKNOWN', safe="-_.!~*'()")
    return (
        f'm(ttype=1.7.6.{tenant_no})'
        f'(tasset={asset})'
        f'(tname=Indexation%20Letter)'
        f'(tscope=asset)'
        f'(tdate={effective_date.isoformat()})'
        f'(tmail=automatic).pdf'
    )


def next_indexation_number(year):
    """Next ledger identifier, e.g. IND-2024-0001."""
    pattern = f'IND-{year}-%'
    last = (Indexation.query
            .filter(Indexation.ind.like(pattern))
            .order_by(Indexation.id.desc())
            .first())
    seq = 1
    if last:
        try:
            seq = int(last.ind.rsplit('-', 1)[1]) + 1
        except (ValueError, IndexError):
            seq = 1
    return f'IND-{year}-{seq:04d}'


# =============================================================================
# REQUEST
# =============================================================================

def _number(data, key, required=False):
    value = data.get(key)
    if value is None or value == '':
        if required:
            raise ValidationError(f'{key} is required')
        return None
    if isinstance(value, bool):
        raise ValidationError(f'{key} must be a number')
    try:
        number = float(str(value).replace(',', '.')) if isinstance(value, str) else float(value)
    except (TypeError, ValueError):
        raise ValidationError(f'{key} must be a number')
    if not math.isfinite(number):
        raise ValidationError(f'{key} must be a finite number')
    return number


def _iso_date(data, key, required=False):
    value = data.get(key)
    if not value:
        if required:
            raise ValidationError(f'{key} is required')
        return None
    try:
        return parse_date(value)
    except (TypeError, ValueError):
        raise ValidationError(f'Invalid {key}. Use YYYY-MM-DD.')


@dataclass
class ConfirmationRequest:
    tenancy_id: int
    old_rent: float
    new_rent: float
    effective_date: date
    applied_pct: Optional[float] = None
    reference_date: Optional[date] = None
    comment: Optional[str] = None
    ui_row: dict = field(default_factory=dict)
    return_pdf: bool = False
    dry_run: bool = False
    index_nebenkosten: bool = False
    new_ancillary: Optional[float] = None
    ancillary_applied_pct: Optional[float] = None

    @classmethod
    def from_json(cls, data):
        if not isinstance(data, dict):
            raise ValidationError('JSON body required')

        tenancy_id = _number(data, 'tenancy_id', required=True)
        if tenancy_id <= 0 or not tenancy_id.is_integer():
            raise ValidationError('tenancy_id must be a positive integer')
        old_rent = _number(data, 'old_rent', required=True)
        new_rent = _number(data, 'new_rent', required=True)
        if new_rent < 0:
            raise ValidationError('new_rent must not be negative')
        effective_date = _iso_date(data, 'effective_date', required=True)

        ui_row = data.get('ui_row') or {}
        if not isinstance(ui_row, dict):
            raise ValidationError('ui_row must be an object')

        applied_pct = _number(data, 'applied_pct')
        if applied_pct is None:
            applied_pct = percent_from_rents(old_rent, new_rent)

        comment = data.get('comment')
        return cls(
            tenancy_id=int(tenancy_id),
            old_rent=old_rent,
            new_rent=new_rent,
            effective_date=effective_date,
            applied_pct=applied_pct,
            reference_date=_iso_date(data, 'reference_date'),
            comment=(str(comment).strip() or None) if comment is not None else None,
            ui_row=ui_row,
            return_pdf=bool(data.get('return_pdf')),
            dry_run=bool(data.get('dry_run')),
            index_nebenkosten=bool(data.get('index_nebenkosten')),
            new_ancillary=_number(data, 'new_ancillary'),
            ancillary_applied_pct=_number(data, 'ancillary_applied_pct'),
        )


# =============================================================================
# STEP RESULTS
# =============================================================================

@dataclass
class StepResult:
    status: str                      # 'succeeded' | 'failed' | 'skipped'
    error: Optional[str] = None
    detail: Optional[dict] = None

    @classmethod
    def succeeded(cls, **detail):
        return cls('succeeded', detail=detail or None)

    @classmethod
    def failed(cls, error, **detail):
        return cls('failed', error=str(error), detail=detail or None)

    @classmethod
    def skipped(cls, reason):
        return cls('skipped', error=reason)

    @property
    def ok(self):
        return self.status == 'succeeded'

    def to_dict(self):
        d = {'status': self.status}
        if self.error:
            d['error'] = self.error
        if self.detail:
            d['detail'] = self.detail
        return d


@dataclass
class ConfirmationResult:
    dry_run: bool = False
    steps: dict = field(default_factory=dict)
    indexation: Optional[Indexation] = None
    payload: Optional[dict] = None
    pdf_bytes: Optional[bytes] = None
    file_name: Optional[str] = None
    rent_record_id: Optional[int] = None

    def step(self, name):
        return self.steps.get(name) or StepResult.skipped('not run')

    def to_response(self, return_pdf=False):
        archive = self.step('archive')
        rent = self.step('erp_rent')
        adj = self.step('erp_adjustment_date')
        erp_errors = [s.error for s in (rent, adj) if s.status == 'failed']
        include_pdf = (return_pdf or self.dry_run) and self.pdf_bytes is not None
        return {
            'ok': True,
            'dry_run': self.dry_run,
            'indexation_row_id': self.indexation.id if self.indexation else None,
            'ind': self.indexation.ind if self.indexation else None,
            'pdf_upload_ok': archive.ok,
            'pdf_upload_error': archive.error if archive.status == 'failed' else None,
            'pdf_file_name': self.file_name,
            'pdf_base64': base64.b64encode(self.pdf_bytes).decode('ascii') if include_pdf else None,
            'odoo_update': {
                'rent_record_id': self.rent_record_id,
                'wrote_rent': rent.ok,
                'wrote_adjustment_date': adj.ok,
                'error': '; '.join(erp_errors) or None,
            },
            'steps': {name: self.step(name).to_dict() for name in STEP_ORDER},
            'payload_used': self.payload,
        }


# =============================================================================
# SNAPSHOT (ERP reads)
# =============================================================================

@dataclass
class TenancySnapshot:
    tenancy_id: int
    tenancy_name: Optional[str] = None
    property_id: Optional[int] = None
    property_label: Optional[str] = None
    fund: Optional[str] = None
    company_id: Optional[int] = None
    entity: Optional[str] = None
    slate_id: Optional[str] = None
    property_address: Optional[str] = None
    tenant_name: Optional[str] = None
    tenant_address_lines: list = field(default_factory=list)
    is_gross_19: bool = False
    ancillary_current: Optional[float] = None
    ancillary_vat_rate: Optional[int] = None


def _text(value):
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def read_snapshot(client, tenancy_id):
    """Collect everything the ledger row and the letter need from Odoo."""
    rows = client.read('property.tenancy', [tenancy_id], [
        'main_property_id', 'partner_id', 'rent_product_id', 'name',
        'current_ancillary_costs', 'ancillary_cost_type_id',
    ])
    if not rows:
        raise TenancyNotFound(f'Tenancy {tenancy_id} not found in Odoo')
    tenancy = rows[0]

    snap = TenancySnapshot(tenancy_id=tenancy_id, tenancy_name=_text(tenancy.get('name')))

    main_property = tenancy.get('main_property_id')
    snap.property_id = m2o_id(main_property)
    if snap.property_id:
        snap.property_label = m2o_name(main_property) or str(snap.property_id)
        props = client.read('property.property', [snap.property_id], [
            'company_id', 'entity_id', 'reference_id', 'internal_label',
            'street', 'zip', 'city', 'country_id',
        ])
        if props:
            prop = props[0]
            company = prop.get('company_id')
            if m2o_id(company):
                snap.company_id = m2o_id(company)
                snap.fund = m2o_name(company) or str(snap.company_id)
            entity = prop.get('entity_id')
            if m2o_id(entity):
                snap.entity = m2o_name(entity) or str(m2o_id(entity))
            snap.slate_id = _text(prop.get('reference_id')) or _text(prop.get('internal_label'))
            parts = [_text(prop.get('street')), _text(prop.get('zip')), _text(prop.get('city')),
                     m2o_name(prop.get('country_id'))]
            snap.property_address = ', '.join(p for p in parts if p) or None

    partner_id = m2o_id(tenancy.get('partner_id'))
    if partner_id:
        partners = client.read('res.partner', [partner_id], ['name', 'commercial_partner_id'])
        if partners:
            commercial_id = m2o_id(partners[0].get('commercial_partner_id')) or partners[0]['id']
            commercial = client.read('res.partner', [commercial_id],
                                     ['name', 'street', 'street2', 'zip', 'city', 'country_id'])
            if commercial:
                comm = commercial[0]
                snap.tenant_name = _text(comm.get('name'))
                city_line = ' '.join(p for p in (_text(comm.get('zip')), _text(comm.get('city'))) if p)
                snap.tenant_address_lines = [
                    line for line in (_text(comm.get('street')), _text(comm.get('street2')),
                                      city_line or None, m2o_name(comm.get('country_id')))
                    if line
                ]

    rent_product_id = m2o_id(tenancy.get('rent_product_id'))
    if rent_product_id:
        products = client.read('product.product', [rent_product_id], ['taxes_id'])
        tax_ids = products[0].get('taxes_id') if products else None
        if isinstance(tax_ids, list) and tax_ids:
            taxes = client.read('account.tax', tax_ids, ['amount_type', 'amount'])
            snap.is_gross_19 = any(
                t.get('amount_type') == 'percent' and abs((t.get('amount') or 0) - 19) < 0.01
                for t in taxes
            )

    ancillary = tenancy.get('current_ancillary_costs')
    if isinstance(ancillary, (int, float)) and not isinstance(ancillary, bool):
        snap.ancillary_current = float(ancillary)
    snap.ancillary_vat_rate = ancillary_vat_rate_from_type(m2o_name(tenancy.get('ancillary_cost_type_id')))
    return snap


# =============================================================================
# DERIVED VALUES
# =============================================================================

def _ui_number(ui_row, key):
    value = ui_row.get(key)
    if isinstance(value, (int, float)) and not isinstance(value, bool) and math.isfinite(value):
        return value
    return None


def _ui_key(ui_row, month_field, year_field):
    return ui_row.get(month_field) or ui_row.get(year_field) or None


def new_ancillary_costs(req, snapshot):
    """Indexed ancillary costs, or None when ancillary costs stay unchanged."""
    if not req.index_nebenkosten or snapshot.ancillary_current is None:
        return None
    if req.new_ancillary is not None:
        return round(req.new_ancillary, 2)
    pct = req.ancillary_applied_pct if req.ancillary_applied_pct is not None else req.applied_pct
    return rent_from_percent(snapshot.ancillary_current, pct)


def build_ledger_values(req, snapshot):
    """Column values of the Indexation row (without ``ind``)."""
    ui = req.ui_row
    waiting = _ui_number(ui, 'waiting_time')
    if waiting is not None:
        next_possible = add_months_to_first_of_month(req.effective_date, int(waiting))
    else:
        next_possible = parse_date(ui.get('next_wait_date')) if ui.get('next_wait_date') else None

    return {
        'tenancy_id': req.tenancy_id,
        'tenancy_name': snapshot.tenancy_name or ui.get('name'),
        'fund': snapshot.fund,
        'entity': snapshot.entity,
        'slate_id': snapshot.slate_id,
        'property_id': snapshot.property_id,
        'address': snapshot.property_address,
        'tenant': snapshot.tenant_name,
        'type': TENANCY_TYPE,
        'company_id': snapshot.company_id,
        'rent_before_indexation': req.old_rent,
        'rent_after_indexation': req.new_rent,
        'ancillary_before': snapshot.ancillary_current,
        'ancillary_after': new_ancillary_costs(req, snapshot),
        'last_index_date': key_to_date(_ui_key(ui, 'adjustment_month_key', 'adjustment_year_key')),
        'last_index_score': _ui_number(ui, 'adjustment_index'),
        'current_index_date': key_to_date(_ui_key(ui, 'current_month_key', 'current_year_key')),
        'current_index_score': _ui_number(ui, 'current_index'),
        'indexation_trigger': ui.get('reason'),
        'threshold': _ui_number(ui, 'threshold'),
        'pause_between_indexation': int(waiting) if waiting is not None else None,
        'percent_increase': _ui_number(ui, 'delta'),
        'percent_applied': req.applied_pct,
        'adjustment_period': str(ui['adjustment_period']) if ui.get('adjustment_period') is not None else None,
        'effective_date': req.effective_date,
        'next_possible_indexation_date': next_possible,
        'end_of_contract': ui.get('date_end_display'),
        'year': req.effective_date.year,
        'indexation_comment': req.comment,
    }


def _payload(values):
    """JSON view of the ledger values, as echoed to the client."""
    payload = {}
    for key, value in values.items():
        if isinstance(value, date):
            value = value.isoformat()
        payload['tenancy_uuid' if key == 'tenancy_id' else key] = value
    return payload


def build_letter_params(req, snapshot, ind, letter_date):
    ui = req.ui_row
    cfg = current_app.config
    return LetterParams(
        tenant_name=snapshot.tenant_name or '',
        tenant_address_lines=snapshot.tenant_address_lines,
        tenancy_label=str(req.tenancy_id),
        property_label=snapshot.property_label or '',
        indexation_id=ind or '',
        letter_date=letter_date,
        effective_date=req.effective_date,
        old_rent=req.old_rent,
        new_rent=req.new_rent,
        applied_pct=req.applied_pct or 0.0,
        index_change=_ui_number(ui, 'delta'),
        pass_through_ratio=_ui_number(ui, 'partially_passing_on'),
        previous_index_label=_ui_key(ui, 'adjustment_month_key', 'adjustment_year_key') or '',
        previous_index_value=_ui_number(ui, 'adjustment_index'),
        current_index_label=_ui_key(ui, 'current_month_key', 'current_year_key') or '',
        current_index_value=_ui_number(ui, 'current_index'),
        is_gross_19=snapshot.is_gross_19,
        ancillary_current=snapshot.ancillary_current,
        ancillary_new=new_ancillary_costs(req, snapshot),
        ancillary_vat_rate=snapshot.ancillary_vat_rate,
        city=cfg.get('LETTER_CITY', 'Berlin'),
        signatory=cfg.get('LETTER_SIGNATORY', 'Jakob Webb'),
    )


def render_letter(params):
    cfg = current_app.config
    return build_indexation_pdf(
        params,
        template_path=cfg.get('LETTER_TEMPLATE_PATH') or None,
        font_regular=cfg.get('LETTER_FONT_REGULAR') or None,
        font_bold=cfg.get('LETTER_FONT_BOLD') or None,
    )


# =============================================================================
# SAGA
# =============================================================================

def _write_latest_rent(client, tenancy_id, new_rent):
    """Returns (rent_record_id, wrote)."""
    rent_ids = client.search('property.rent', [['tenancy_id', '=', tenancy_id]],
                             order='id desc', limit=1)
    if not rent_ids:
        raise RentRecordNotFound(f'No property.rent record for tenancy {tenancy_id}')
    rent_id = rent_ids[0]
    return rent_id, client.write('property.rent', [rent_id], {'rent': new_rent})


def confirm_indexation(req, client, created_by=None, today=None):
    """
    Run the confirmation steps for ``req``.

    Raises TenancyNotFound when Odoo has no such tenancy and
    ConfirmationAborted when the snapshot or the ledger insert fails.
    """
    log = current_app.logger
    today = today or date.today()
    result = ConfirmationResult(dry_run=req.dry_run)
    steps = result.steps

    # 1) snapshot
    try:
        snapshot = read_snapshot(client, req.tenancy_id)
    except OdooError as e:
        log.error('Confirmation %s: snapshot failed: %s', req.tenancy_id, e)
        steps['snapshot'] = StepResult.failed(e)
        raise ConfirmationAborted(f'Odoo read failed: {e}', result) from e
    steps['snapshot'] = StepResult.succeeded()

    values = build_ledger_values(req, snapshot)
    result.payload = _payload(values)
    result.file_name = build_archive_filename(
        snapshot.tenancy_name or req.ui_row.get('name'), snapshot.slate_id, req.effective_date)

    # 2) ledger
    ind = None
    if req.dry_run:
        steps['ledger'] = StepResult.skipped('dry run')
    else:
        try:
            ind = next_indexation_number(req.effective_date.year)
            indexation = Indexation(ind=ind, created_by=created_by, **values)
            db.session.add(indexation)
            db.session.commit()
        except SQLAlchemyError as e:
            db.session.rollback()
            log.error('Confirmation %s: ledger insert failed: %s', req.tenancy_id, e)
            steps['ledger'] = StepResult.failed(e)
            raise ConfirmationAborted('Ledger insert failed', result) from e
        result.indexation = indexation
        result.payload['ind'] = ind
        steps['ledger'] = StepResult.succeeded(id=indexation.id, ind=ind)

    # 3) letter
    try:
        result.pdf_bytes = render_letter(build_letter_params(req, snapshot, ind, today))
        steps['letter'] = StepResult.succeeded(size=len(result.pdf_bytes))
    except Exception as e:
        log.exception('Confirmation %s: letter rendering failed', req.tenancy_id)
        steps['letter'] = StepResult.failed(e)

    if req.dry_run:
        for name in ('archive', 'erp_rent', 'erp_adjustment_date'):
            steps[name] = StepResult.skipped('dry run')
        return result

    # 4) archive
    if result.pdf_bytes is None:
        steps['archive'] = StepResult.skipped('letter not rendered')
    else:
        try:
            archive_file(current_app.config['ARCHIVE_FOLDER'], result.file_name, result.pdf_bytes)
            db.session.add(Document(
                filename=result.file_name,
                original_filename=f'Mietanpassung_{ind}.pdf',
                entity_type='indexation',
                entity_id=result.indexation.id,
            ))
            log_action('LETTER_ARCHIVED', 'Indexation', result.indexation.id,
                       new_values={'file': result.file_name})
            db.session.commit()
            steps['archive'] = StepResult.succeeded(file=result.file_name)
        except (OSError, ValueError, SQLAlchemyError) as e:
            db.session.rollback()
            log.error('Confirmation %s: archive failed: %s', req.tenancy_id, e)
            steps['archive'] = StepResult.failed(e)

    # 5) rent write-back
    try:
        result.rent_record_id, wrote = _write_latest_rent(client, req.tenancy_id, req.new_rent)
        steps['erp_rent'] = (StepResult.succeeded(rent_record_id=result.rent_record_id) if wrote
                             else StepResult.failed('Odoo rejected the rent write'))
    except (OdooError, RentRecordNotFound) as e:
        log.error('Confirmation %s: rent write failed: %s', req.tenancy_id, e)
        steps['erp_rent'] = StepResult.failed(e)

    # 6) adjustment date
    adjustment_date = (req.reference_date or req.effective_date).isoformat()
    try:
        wrote = client.write('property.tenancy', [req.tenancy_id], {'adjustment_date': adjustment_date})
        steps['erp_adjustment_date'] = (StepResult.succeeded(adjustment_date=adjustment_date) if wrote
                                        else StepResult.failed('Odoo rejected the adjustment_date write'))
    except OdooError as e:
        log.error('Confirmation %s: adjustment_date write failed: %s', req.tenancy_id, e)
        steps['erp_adjustment_date'] = StepResult.failed(e)

    try:
        log_action('ERP_WRITE', 'Tenancy', req.tenancy_id, new_values={
            'ind': ind,
            'rent_record_id': result.rent_record_id,
            'rent': req.new_rent if steps['erp_rent'].ok else None,
            'adjustment_date': adjustment_date if steps['erp_adjustment_date'].ok else None,
        })
        db.session.commit()
    except SQLAlchemyError as e:
        db.session.rollback()
        log.error('Confirmation %s: audit entry for ERP write failed: %s', req.tenancy_id, e)

    log.info('Indexation %s confirmed for tenancy %s (%s)', ind, req.tenancy_id,
             ', '.join(f'{k}={v.status}' for k, v in steps.items()))
    return result


# =============================================================================
# QUICK RENT UPDATE
# =============================================================================

def update_rent(client, tenancy_id, new_rent, ui_row=None, by_user=None, now=None):
    """
    Write a new rent directly, without ledger row or letter.

    The tenancy's adjustment_date moves to the first day of next month and a
    RentUpdate tracker row is stored.
    """
    now = now or datetime.utcnow()
    ui_row = ui_row or {}

    tenancy = client.read('property.tenancy', [tenancy_id], ['adjustment_date'])
    previous_adjustment = (tenancy[0].get('adjustment_date') or None) if tenancy else None

    rent_ids = client.search('property.rent', [['tenancy_id', '=', tenancy_id]],
                             order='id desc', limit=1)
    if not rent_ids:
        raise RentRecordNotFound(f'No property.rent record for tenancy {tenancy_id}')
    rent_id = rent_ids[0]

    rent_rows = client.read('property.rent', [rent_id], ['rent'])
    old_rent = rent_rows[0].get('rent') if rent_rows else None
    if isinstance(old_rent, bool):
        old_rent = None

    wrote_rent = client.write('property.rent', [rent_id], {'rent': new_rent})
    new_adjustment = first_day_of_next_month(now).isoformat()
    wrote_adjustment = client.write('property.tenancy', [tenancy_id], {'adjustment_date': new_adjustment})

    sales = ui_row.get('sales_person_id')
    am_id = m2o_id(sales)
    am_name = m2o_name(sales)
    delta_abs = round(new_rent - old_rent, 2) if old_rent is not None else None
    delta_pct = round(new_rent / old_rent - 1, 6) if old_rent else None

    payload = dict(ui_row)
    payload['tracker_meta'] = {
        'at': now.isoformat(),
        'am_id': am_id,
        'am_name': am_name,
        'by_user': by_user,
        'last_adjustment_prev': previous_adjustment,
        'last_adjustment_new': new_adjustment,
    }

    db.session.add(RentUpdate(
        tenancy_id=tenancy_id,
        rent_record_id=rent_id,
        old_rent=old_rent,
        new_rent=new_rent,
        delta_abs=delta_abs,
        delta_pct=delta_pct,
        am_id=am_id,
        am_name=am_name,
        by_user=by_user,
        previous_adjustment_date=previous_adjustment,
        new_adjustment_date=new_adjustment,
        payload_json=json.dumps(payload, ensure_ascii=False, default=str),
    ))
    db.session.commit()

    return {
        'ok': True,
        'tenancy_id': tenancy_id,
        'rent_record_id': rent_id,
        'wrote_rent': bool(wrote_rent),
        'wrote_adjustment_date': bool(wrote_adjustment),
        'old_rent': old_rent,
        'new_rent': new_rent,
        'delta_abs': delta_abs,
        'delta_pct': delta_pct,
        'last_adjustment_prev': previous_adjustment,
        'last_adjustment_new': new_adjustment,
        'am_id': am_id,
        'am_name': am_name,
    }
