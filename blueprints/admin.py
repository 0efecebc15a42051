import io
import os
from datetime import date, datetime

from flask import (
    Blueprint, render_template, redirect, url_for, request, flash, current_app,
    send_file, send_from_directory, session as flask_session,
)
from flask_login import login_required, current_user

from models import db, User, Indexation, RentUpdate, Document, AuditLog
from audit import verify_integrity
from helpers import parse_amount, parse_date
from datekeys import month_key_choices, is_valid_month_key
from indexation import evaluate, resolve_reference_keys
from indexes import get_index_table
from odoo import OdooError, get_odoo_client, has_odoo_env, load_tenancy, m2o_id
from confirmation import (
    ConfirmationAborted, ConfirmationRequest, RecordNotFound, ValidationError,
    confirm_indexation, suggest_rent,
)
from blueprints.api import NO_ACCOUNT_MANAGER, UnknownAccountManager, collect_verdicts

admin_bp = Blueprint('admin', __name__, template_folder='../templates/admin')

STEP_LABELS = {
    'snapshot': 'Odoo-Daten',
    'ledger': 'Indexierungsbuch',
    'letter': 'Anschreiben',
    'archive': 'Archiv',
    'erp_rent': 'Miete in Odoo',
    'erp_adjustment_date': 'Anpassungsdatum in Odoo',
}


@admin_bp.before_request
@login_required
def require_login():
    """All admin routes require authentication."""
    pass


# --- Dashboard ---

@admin_bp.route('/')
def dashboard():
    managers = current_app.config.get('ACCOUNT_MANAGERS') or {}
    counts = None

    if has_odoo_env(current_app.config) or 'odoo_client' in current_app.extensions:
        try:
            verdicts, _, _ = collect_verdicts()
            counts = {code: {'total': 0, 'eligible': 0} for code in list(managers) + [NO_ACCOUNT_MANAGER]}
            codes_by_user = {user_id: code for code, user_id in managers.items()}
            for v in verdicts:
                user_id = m2o_id(v.tenancy.sales_person)
                if user_id is None:
                    code = NO_ACCOUNT_MANAGER
                else:
                    code = codes_by_user.get(user_id)
                if code is None:
                    continue
                counts[code]['total'] += 1
                if v.eligible_now:
                    counts[code]['eligible'] += 1
        except OdooError as e:
            current_app.logger.error('Dashboard: loading tenancies failed: %s', e)
            flash(f'Odoo nicht erreichbar: {str(e)}', 'error')
    else:
        flash('Odoo ist nicht konfiguriert (ODOO_URL/DB/USER/API).', 'warning')

    recent = Indexation.query.order_by(Indexation.id.desc()).limit(10).all()
    return render_template('dashboard.html',
                           managers=managers,
                           no_am=NO_ACCOUNT_MANAGER,
                           counts=counts,
                           recent_indexations=recent,
                           indexation_count=Indexation.query.count())


# --- Tenancies ---

@admin_bp.route('/tenancies')
def tenancies():
    am = request.args.get('am', '')
    ref_month = request.args.get('refMonth', '')
    ref_year = request.args.get('refYear', '')
    eligible_only = request.args.get('eligible', '') == '1'

    if ref_month and not is_valid_month_key(ref_month):
        flash(f'Ungültiger Referenzmonat "{ref_month}", Vormonat wird verwendet.', 'warning')
        ref_month = ''

    verdicts = []
    month_key, year_key = resolve_reference_keys(ref_month or None, ref_year or None, date.today())
    try:
        verdicts, month_key, year_key = collect_verdicts(ref_month or None, ref_year or None,
                                                         am or None, eligible_only)
    except UnknownAccountManager as e:
        flash(f'Unbekannter Account Manager: {e}', 'error')
    except OdooError as e:
        current_app.logger.error('Tenancy list failed: %s', e)
        flash(f'Odoo nicht erreichbar: {str(e)}', 'error')

    return render_template('tenancies.html',
                           verdicts=verdicts,
                           am=am,
                           managers=current_app.config.get('ACCOUNT_MANAGERS') or {},
                           no_am=NO_ACCOUNT_MANAGER,
                           ref_month=month_key,
                           ref_year=year_key,
                           eligible_only=eligible_only,
                           month_choices=month_key_choices(date.today()))


# --- Indexation form ---

def _form_request(verdict, dry_run):
    """Translate the indexation form into a confirmation request."""
    form = request.form
    applied = parse_amount(form.get('applied_pct'))
    new_ancillary = parse_amount(form.get('new_ancillary'))
    return ConfirmationRequest.from_json({
        'tenancy_id': verdict.tenancy.id,
        'old_rent': parse_amount(form.get('old_rent')),
        'new_rent': parse_amount(form.get('new_rent')),
        'applied_pct': applied / 100 if applied is not None else None,
        'effective_date': form.get('effective_date', '').strip(),
        'reference_date': form.get('reference_date', '').strip() or None,
        'comment': form.get('comment', ''),
        'ui_row': verdict.to_dict(),
        'dry_run': dry_run,
        'index_nebenkosten': form.get('index_nebenkosten') == '1',
        'new_ancillary': new_ancillary,
    })


@admin_bp.route('/tenancies/<int:tenancy_id>/indexation', methods=['GET', 'POST'])
def indexation_form(tenancy_id):
    ref_month = request.args.get('refMonth') or None
    ref_year = request.args.get('refYear') or None
    today = date.today()

    try:
        client = get_odoo_client()
        tenancy = load_tenancy(client, tenancy_id)
    except OdooError as e:
        flash(f'Odoo nicht erreichbar: {str(e)}', 'error')
        return redirect(url_for('admin.tenancies'))
    if tenancy is None:
        flash(f'Mietverhältnis {tenancy_id} wurde in Odoo nicht gefunden.', 'error')
        return redirect(url_for('admin.tenancies'))

    month_key, year_key = resolve_reference_keys(ref_month, ref_year, today)
    verdict = evaluate(tenancy, get_index_table(current_app), month_key, year_key, today)

    if request.method == 'POST':
        preview = request.form.get('action') == 'preview'
        try:
            req = _form_request(verdict, dry_run=preview)
        except (ValidationError, ValueError) as e:
            flash(f'Ungültige Eingabe: {str(e)}', 'error')
            return redirect(request.url)

        try:
            result = confirm_indexation(req, client, created_by=current_user.username)
        except RecordNotFound as e:
            flash(f'Nicht gefunden: {str(e)}', 'error')
            return redirect(request.url)
        except ConfirmationAborted as e:
            flash(f'Indexierung abgebrochen: {str(e)}', 'error')
            return redirect(request.url)

        if preview:
            if result.pdf_bytes is None:
                flash(f'Vorschau fehlgeschlagen: {result.step("letter").error}', 'error')
                return redirect(request.url)
            return send_file(io.BytesIO(result.pdf_bytes), mimetype='application/pdf',
                             download_name=result.file_name, as_attachment=False)

        ind = result.indexation
        flash(f'Indexierung {ind.ind} wurde gespeichert.', 'success')
        for name, step in result.steps.items():
            if step.status == 'failed':
                flash(f'{STEP_LABELS.get(name, name)}: {step.error}', 'warning')
        return redirect(url_for('admin.indexation_detail', indexation_id=ind.id))

    applied = verdict.applied_percentage
    return render_template('indexation_form.html',
                           verdict=verdict,
                           tenancy=tenancy,
                           ref_month=month_key,
                           ref_year=year_key,
                           suggested_rent=suggest_rent(tenancy.base_rent, applied),
                           applied_pct=applied * 100 if applied is not None else None,
                           effective_date=today.replace(day=1).isoformat())


# --- Ledger ---

@admin_bp.route('/indexations')
def indexations():
    page = request.args.get('page', 1, type=int)
    per_page = 50
    year = request.args.get('year', 0, type=int)
    search = request.args.get('q', '').strip()

    query = Indexation.query
    if year:
        query = query.filter(Indexation.year == year)
    if search:
        like = f'%{search}%'
        query = query.filter(db.or_(Indexation.ind.ilike(like),
                                    Indexation.tenancy_name.ilike(like),
                                    Indexation.tenant.ilike(like)))

    total_count = query.count()
    total_pages = max(1, (total_count + per_page - 1) // per_page)
    page = min(page, total_pages)
    rows = query.order_by(Indexation.id.desc()).offset((page - 1) * per_page).limit(per_page).all()

    years = [r[0] for r in db.session.query(Indexation.year).distinct().order_by(Indexation.year.desc()).all()]
    return render_template('indexations.html',
                           indexations=rows, page=page, total_pages=total_pages,
                           total_count=total_count, year=year, years=years, q=search)


@admin_bp.route('/indexations/<int:indexation_id>')
def indexation_detail(indexation_id):
    ind = Indexation.query.get_or_404(indexation_id)
    rent_updates = (RentUpdate.query.filter_by(tenancy_id=ind.tenancy_id)
                    .order_by(RentUpdate.id.desc()).limit(20).all())
    return render_template('indexation_detail.html', ind=ind, rent_updates=rent_updates)


@admin_bp.route('/indexations/<int:indexation_id>/letter')
def indexation_letter(indexation_id):
    ind = Indexation.query.get_or_404(indexation_id)
    doc = (Document.query.filter_by(entity_type='indexation', entity_id=ind.id)
           .order_by(Document.id.desc()).first())
    archive_folder = current_app.config['ARCHIVE_FOLDER']
    if not doc or not os.path.exists(os.path.join(archive_folder, doc.filename)):
        flash('Für diese Indexierung ist kein Anschreiben archiviert.', 'error')
        return redirect(url_for('admin.indexation_detail', indexation_id=ind.id))
    return send_from_directory(archive_folder, doc.filename, mimetype='application/pdf',
                               as_attachment=True, download_name=doc.original_filename or doc.filename)


# --- Audit Log ---

@admin_bp.route('/audit')
def audit_log():
    """Display the full audit trail with filters and pagination."""
    if not current_user.is_admin:
        flash('Nur Administratoren können das Änderungsprotokoll einsehen.', 'error')
        return redirect(url_for('admin.dashboard'))

    page = request.args.get('page', 1, type=int)
    per_page = 50

    filters = {
        'entity_type': request.args.get('entity_type', ''),
        'action': request.args.get('action', ''),
        'source': request.args.get('source', ''),
        'user': request.args.get('user', ''),
        'date_from': request.args.get('date_from', ''),
        'date_to': request.args.get('date_to', ''),
        'entity_id': request.args.get('entity_id', ''),
    }

    query = AuditLog.query
    for column in ('entity_type', 'action', 'source'):
        if filters[column]:
            query = query.filter(getattr(AuditLog, column) == filters[column])
    if filters['user']:
        query = query.filter_by(username=filters['user'])
    if filters['entity_id'].isdigit():
        query = query.filter_by(entity_id=int(filters['entity_id']))
    try:
        date_from = parse_date(filters['date_from'])
        date_to = parse_date(filters['date_to'])
    except ValueError:
        flash('Ungültiges Datum im Filter.', 'warning')
        date_from = date_to = None
    if date_from:
        query = query.filter(AuditLog.timestamp >= datetime.combine(date_from, datetime.min.time()))
    if date_to:
        query = query.filter(AuditLog.timestamp <= datetime.combine(date_to, datetime.max.time()))

    total_count = query.count()
    total_pages = max(1, (total_count + per_page - 1) // per_page)
    page = min(page, total_pages)
    entries = query.order_by(AuditLog.id.desc()).offset((page - 1) * per_page).limit(per_page).all()

    actions = [r[0] for r in db.session.query(AuditLog.action).distinct().order_by(AuditLog.action).all()]
    entity_types = [r[0] for r in db.session.query(AuditLog.entity_type).distinct().order_by(AuditLog.entity_type).all()]
    users = User.query.order_by(User.username).all()

    integrity = flask_session.pop('audit_integrity', None)

    return render_template('audit_log.html',
                           entries=entries, page=page, total_pages=total_pages,
                           total_count=total_count, filters=filters,
                           actions=actions, entity_types=entity_types,
                           users=users, integrity=integrity)


@admin_bp.route('/audit/verify', methods=['POST'])
def audit_verify():
    """Verify the hash chain integrity of the audit log."""
    if not current_user.is_admin:
        flash('Nur Administratoren können die Integrität prüfen.', 'error')
        return redirect(url_for('admin.dashboard'))

    is_valid, total, broken_id, message = verify_integrity(db)
    flask_session['audit_integrity'] = {
        'valid': is_valid,
        'total': total,
        'broken_id': broken_id,
        'message': message,
    }
    return redirect(url_for('admin.audit_log'))

