"""
REST API blueprint for the indexation desk.

Authentication: API key via header  Authorization: Bearer <API_KEY>
The API key is set via the environment variable API_KEY.

All responses are JSON. Monetary values are in EUR (float), ratios are
decimals (0.035 = 3.5 %). Dates are ISO 8601 (YYYY-MM-DD).
"""

import os
from datetime import date
from functools import wraps

from flask import Blueprint, current_app, jsonify, request, send_from_directory

from confirmation import (
    ConfirmationAborted, ConfirmationRequest, RecordNotFound, StepResult, ValidationError,
    confirm_indexation, update_rent,
)
from indexation import evaluate_all, resolve_reference_keys, sort_verdicts
from indexes import get_index_table
from models import Document, Indexation
from odoo import OdooError, get_odoo_client, load_tenancies, m2o_id

api_bp = Blueprint('api', __name__)

NO_ACCOUNT_MANAGER = 'NO-AM'


# ---------------------------------------------------------------------------
# Authentication
# ---------------------------------------------------------------------------

def require_api_key(f):
    """Decorator: require a valid API key in the Authorization header."""
    @wraps(f)
    def decorated(*args, **kwargs):
        api_key = current_app.config.get('API_KEY', '')
        if not api_key:
            return jsonify({'ok': False, 'error': 'API not configured. Set API_KEY environment variable.'}), 503

        auth = request.headers.get('Authorization', '')
        if not auth.startswith('Bearer ') or auth[7:] != api_key:
            return jsonify({'ok': False, 'error': 'Unauthorized. Provide header: Authorization: Bearer <API_KEY>'}), 401

        return f(*args, **kwargs)
    return decorated


# ---------------------------------------------------------------------------
# Shared: tenancy verdicts (also used by the admin UI)
# ---------------------------------------------------------------------------

class UnknownAccountManager(Exception):
    pass


def collect_verdicts(ref_month=None, ref_year=None, am=None, eligible_only=False, now=None):
    """
    Load tenancies from Odoo and evaluate them.

    Returns (verdicts, ref_month_key, ref_year_key). ``am`` filters by
    account manager code; NO-AM selects tenancies without one.
    """
    app = current_app
    now = now or date.today()
    month_key, year_key = resolve_reference_keys(ref_month, ref_year, now)

    tenancies = load_tenancies(get_odoo_client(), app.config.get('ALLOWED_COMPANIES'))

    if am:
        code = am.strip().upper()
        if code == NO_ACCOUNT_MANAGER:
            tenancies = [t for t in tenancies if t.sales_person is None]
        else:
            managers = app.config.get('ACCOUNT_MANAGERS') or {}
            if code not in managers:
                raise UnknownAccountManager(code)
            tenancies = [t for t in tenancies if m2o_id(t.sales_person) == managers[code]]

    verdicts = evaluate_all(tenancies, get_index_table(app), month_key, year_key, now)
    if eligible_only:
        verdicts = [v for v in verdicts if v.eligible_now]
    return sort_verdicts(verdicts), month_key, year_key


def _bool_arg(name):
    return request.args.get(name, '').strip().lower() in ('1', 'true', 'yes', 'y')


# ---------------------------------------------------------------------------
# Tenancies
# ---------------------------------------------------------------------------

@api_bp.route('/tenancies', methods=['GET'])
@require_api_key
def list_tenancies():
    """
    Tenancies with their indexation verdict.
    Query params:
      refMonth – reference month MM/YYYY for monthly indexes (default: previous month)
      refYear  – reference year YYYY for annual indexes
      am       – account manager code, NO-AM for tenancies without one
      eligible – 1 to return only tenancies eligible now
    """
    try:
        verdicts, month_key, year_key = collect_verdicts(
            request.args.get('refMonth'), request.args.get('refYear'),
            request.args.get('am'), _bool_arg('eligible'))
    except UnknownAccountManager as e:
        return jsonify({'ok': False, 'error': f'Unknown account manager {e}'}), 404
    except OdooError as e:
        current_app.logger.error('Loading tenancies failed: %s', e)
        return jsonify({'ok': False, 'error': str(e)}), 502

    items = [v.to_dict() for v in verdicts]
    return jsonify({
        'count': len(items),
        'items': items,
        'ref_month': month_key,
        'ref_year': year_key,
    })


@api_bp.route('/tenancies/<int:tenancy_id>/rent', methods=['POST'])
@require_api_key
def update_tenancy_rent(tenancy_id):
    """Write a new rent directly. Body: {"new_rent": float, "ui_row": {...}}"""
    data = request.get_json(silent=True) or {}
    new_rent = data.get('new_rent')
    if isinstance(new_rent, bool) or not isinstance(new_rent, (int, float)) or new_rent < 0:
        return jsonify({'ok': False, 'error': 'new_rent must be a non-negative number'}), 400
    ui_row = data.get('ui_row') or {}
    if not isinstance(ui_row, dict):
        return jsonify({'ok': False, 'error': 'ui_row must be an object'}), 400

    try:
        result = update_rent(get_odoo_client(), tenancy_id, float(new_rent), ui_row, by_user='api')
    except RecordNotFound as e:
        return jsonify({'ok': False, 'error': str(e)}), 404
    except OdooError as e:
        current_app.logger.error('Rent update for tenancy %s failed: %s', tenancy_id, e)
        return jsonify({'ok': False, 'error': str(e)}), 502
    return jsonify(result)


# ---------------------------------------------------------------------------
# Indexations
# ---------------------------------------------------------------------------

@api_bp.route('/indexations/confirm', methods=['POST'])
@require_api_key
def confirm():
    """
    Confirm an indexation.
    Body: tenancy_id, old_rent, new_rent, effective_date (YYYY-MM-DD) required;
    applied_pct, reference_date, comment, ui_row, return_pdf, dry_run,
    index_nebenkosten, new_ancillary, ancillary_applied_pct optional.
    """
    try:
        req = ConfirmationRequest.from_json(request.get_json(silent=True))
    except ValidationError as e:
        return jsonify({'ok': False, 'error': str(e)}), 400

    try:
        result = confirm_indexation(req, get_odoo_client(), created_by='api')
    except RecordNotFound as e:
        return jsonify({'ok': False, 'error': str(e)}), 404
    except OdooError as e:
        current_app.logger.error('Confirmation for tenancy %s: Odoo unavailable: %s', req.tenancy_id, e)
        return jsonify({
            'ok': False,
            'error': str(e),
            'steps': {'snapshot': StepResult.failed(e).to_dict()},
        }), 502
    except ConfirmationAborted as e:
        status = 502 if e.result.step('snapshot').status == 'failed' else 500
        return jsonify({
            'ok': False,
            'error': str(e),
            'steps': {name: step.to_dict() for name, step in e.result.steps.items()},
        }), status

    return jsonify(result.to_response(return_pdf=req.return_pdf))


@api_bp.route('/indexations', methods=['GET'])
@require_api_key
def list_indexations():
    """
    Ledger rows, newest first.
    Query params: tenancy_id, year, limit (default 100), offset
    """
    q = Indexation.query
    tenancy_id = request.args.get('tenancy_id', type=int)
    if tenancy_id:
        q = q.filter(Indexation.tenancy_id == tenancy_id)
    year = request.args.get('year', type=int)
    if year:
        q = q.filter(Indexation.year == year)

    total = q.count()
    limit = min(request.args.get('limit', 100, type=int), 1000)
    offset = request.args.get('offset', 0, type=int)
    rows = q.order_by(Indexation.id.desc()).limit(limit).offset(offset).all()
    return jsonify({
        'indexations': [r.to_dict() for r in rows],
        'total': total,
        'limit': limit,
        'offset': offset,
    })


@api_bp.route('/indexations/<int:indexation_id>', methods=['GET'])
@require_api_key
def get_indexation(indexation_id):
    row = Indexation.query.get(indexation_id)
    if not row:
        return jsonify({'ok': False, 'error': f'Indexation {indexation_id} not found'}), 404
    d = row.to_dict()
    docs = Document.query.filter_by(entity_type='indexation', entity_id=row.id).all()
    d['documents'] = [{'id': doc.id, 'filename': doc.filename,
                       'created_at': doc.created_at.isoformat() if doc.created_at else None}
                      for doc in docs]
    return jsonify(d)


@api_bp.route('/indexations/<int:indexation_id>/letter', methods=['GET'])
@require_api_key
def download_letter(indexation_id):
    """Download the archived notice letter of a ledger row."""
    row = Indexation.query.get(indexation_id)
    if not row:
        return jsonify({'ok': False, 'error': f'Indexation {indexation_id} not found'}), 404

    doc = (Document.query.filter_by(entity_type='indexation', entity_id=row.id)
           .order_by(Document.id.desc()).first())
    if not doc:
        return jsonify({'ok': False, 'error': 'No letter archived for this indexation.'}), 404

    archive_folder = current_app.config['ARCHIVE_FOLDER']
    if not os.path.exists(os.path.join(archive_folder, doc.filename)):
        return jsonify({'ok': False, 'error': 'Letter file not found on disk.'}), 404

    return send_from_directory(archive_folder, doc.filename, mimetype='application/pdf',
                               as_attachment=True, download_name=doc.original_filename or doc.filename)
