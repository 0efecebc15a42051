"""
Audit trail module: automatic, hash-chained logging of all DB changes.

Provides:
- SQLAlchemy session event listener (captures CREATE / UPDATE / DELETE)
- Ledger immutability (confirmed indexations cannot be changed or deleted)
- Write-once archive for generated letters
- Hash chain integrity verification

Notes:
- Every mutation is recorded with before/after JSON snapshots
- Entries are chained via SHA-256 hashes, so tampering breaks the chain
- Archived letters are never overwritten
"""

import hashlib
import json
import os
from datetime import datetime

from flask import has_request_context, request
from flask_login import current_user
from sqlalchemy import event
from sqlalchemy.orm.attributes import get_history


AUDITED_MODELS = set()  # populated by init_audit()

# Rows that may only ever be inserted
IMMUTABLE_MODELS = set()  # populated by init_audit()

SKIP_MODELS = {'AuditLog'}

SKIP_COLUMNS = {'password_hash'}

GENESIS_HASH = '0' * 64


class ImmutableRecordError(Exception):
    """Raised when a flush would update or delete an append-only row."""


# ── Serialisation helper ──────────────────────────────────────────────────

def _plain(val):
    if isinstance(val, datetime):
        return val.isoformat()
    if isinstance(val, (type(None), int, float, bool, str)):
        return val
    return str(val)


def _snapshot(obj):
    """Return a JSON-serialisable dict of all column values."""
    data = {}
    for col in obj.__table__.columns:
        if col.name in SKIP_COLUMNS:
            continue
        data[col.name] = _plain(getattr(obj, col.name, None))
    return data


def _diff(old, new):
    """Return only changed keys (for UPDATE actions)."""
    changed_old, changed_new = {}, {}
    for key in set(old) | set(new):
        ov, nv = old.get(key), new.get(key)
        if ov != nv:
            changed_old[key] = ov
            changed_new[key] = nv
    return changed_old, changed_new


# ── Hash chain ─────────────────────────────────────────────────────────────

def _compute_hash(previous_hash, timestamp_iso, action, entity_type, entity_id,
                  old_json, new_json):
    """SHA-256 over deterministic concatenation of entry fields."""
    payload = '|'.join([
        previous_hash,
        timestamp_iso,
        action,
        entity_type,
        str(entity_id or ''),
        old_json or '',
        new_json or '',
    ])
    return hashlib.sha256(payload.encode('utf-8')).hexdigest()


def _get_previous_hash_from_session(db_session):
    """Get previous hash, considering unflushed audit entries in the session."""
    from models import AuditLog
    pending = [obj for obj in db_session.new if isinstance(obj, AuditLog)]
    if pending:
        # session.new is unordered: the tail is the entry nobody points at yet
        referenced = {obj.previous_hash for obj in pending}
        tails = [obj for obj in pending if obj.entry_hash not in referenced]
        return (tails or pending)[0].entry_hash
    with db_session.no_autoflush:
        last = db_session.query(AuditLog.entry_hash) \
            .order_by(AuditLog.id.desc()).first()
    return last[0] if last else GENESIS_HASH


# ── Request context helpers ────────────────────────────────────────────────

def _detect_source():
    if not has_request_context():
        return 'system'
    if request.path.startswith('/api/'):
        return 'api'
    return 'web'


def _current_user_info():
    """Return (user_id, username) or (None, 'system')."""
    if has_request_context():
        if request.path.startswith('/api/'):
            return None, 'api'
        if current_user and current_user.is_authenticated:
            return current_user.id, current_user.username
    return None, 'system'


def _current_ip():
    if has_request_context():
        return request.remote_addr
    return None


# ── Core: write an audit entry ─────────────────────────────────────────────

def _write_audit(db_session, action, entity_type, entity_id,
                 old_values=None, new_values=None, archived_files=None):
    """Insert one AuditLog row with hash chain."""
    from models import AuditLog

    user_id, username = _current_user_info()
    now = datetime.utcnow()
    ts_iso = now.isoformat()
    old_json = json.dumps(old_values, ensure_ascii=False, sort_keys=True) if old_values else None
    new_json = json.dumps(new_values, ensure_ascii=False, sort_keys=True) if new_values else None
    archived_json = json.dumps(archived_files, ensure_ascii=False) if archived_files else None

    prev_hash = _get_previous_hash_from_session(db_session)
    entry_hash = _compute_hash(prev_hash, ts_iso, action, entity_type,
                               entity_id, old_json, new_json)

    db_session.add(AuditLog(
        timestamp=now,
        user_id=user_id,
        username=username,
        ip_address=_current_ip(),
        source=_detect_source(),
        action=action,
        entity_type=entity_type,
        entity_id=entity_id,
        old_values=old_json,
        new_values=new_json,
        archived_files=archived_json,
        previous_hash=prev_hash,
        entry_hash=entry_hash,
    ))


# ── SQLAlchemy session event listener ──────────────────────────────────────

_pending_creates = []
_pending_updates = []
_pending_deletes = []


def _tracked(obj):
    return type(obj).__name__ not in SKIP_MODELS and type(obj) in AUDITED_MODELS


def _on_before_flush(session, flush_context, instances):
    """Reject changes to append-only rows, then capture snapshots."""
    global _pending_creates, _pending_updates, _pending_deletes
    _pending_creates = []
    _pending_updates = []
    _pending_deletes = []

    for obj in list(session.deleted):
        if type(obj) in IMMUTABLE_MODELS:
            raise ImmutableRecordError(
                f'{type(obj).__name__} #{obj.id} darf nicht gelöscht werden.')
    for obj in list(session.dirty):
        if type(obj) in IMMUTABLE_MODELS and session.is_modified(obj, include_collections=False):
            raise ImmutableRecordError(
                f'{type(obj).__name__} #{obj.id} darf nicht geändert werden.')

    for obj in list(session.new):
        if _tracked(obj):
            _pending_creates.append(obj)

    for obj in list(session.dirty):
        if not _tracked(obj) or not session.is_modified(obj, include_collections=False):
            continue
        old_snap = {}
        new_snap = _snapshot(obj)
        has_changes = False
        for col in obj.__table__.columns:
            if col.name in SKIP_COLUMNS:
                continue
            history = get_history(obj, col.name)
            if history.has_changes():
                has_changes = True
                if history.deleted:
                    val = history.deleted[0]
                elif history.unchanged:
                    val = history.unchanged[0]
                else:
                    val = None
                old_snap[col.name] = _plain(val)
            else:
                old_snap[col.name] = new_snap.get(col.name)

        if has_changes:
            diff_old, diff_new = _diff(old_snap, new_snap)
            if diff_old or diff_new:
                _pending_updates.append((type(obj).__name__, new_snap.get('id'), diff_old, diff_new))

    for obj in list(session.deleted):
        if _tracked(obj):
            snap = _snapshot(obj)
            _pending_deletes.append((type(obj).__name__, snap.get('id'), snap))


def _on_after_flush(session, flush_context):
    """Write audit entries after flush, when IDs are available for CREATEs."""
    global _pending_creates, _pending_updates, _pending_deletes

    for obj in _pending_creates:
        snap = _snapshot(obj)
        _write_audit(session, 'CREATE', type(obj).__name__, snap.get('id'), None, snap)

    for cls_name, entity_id, diff_old, diff_new in _pending_updates:
        _write_audit(session, 'UPDATE', cls_name, entity_id, diff_old, diff_new)

    for cls_name, entity_id, snap in _pending_deletes:
        _write_audit(session, 'DELETE', cls_name, entity_id, snap, None)

    _pending_creates = []
    _pending_updates = []
    _pending_deletes = []


# ── Letter archive ─────────────────────────────────────────────────────────

def archive_file(archive_folder, filename, data):
    """
    Store ``data`` under ``filename`` in the archive folder.

    Write-once: raises FileExistsError if the name is already taken.
    Returns the absolute path of the stored file.
    """
    if os.path.basename(filename) != filename or filename in ('', '.', '..'):
        raise ValueError(f'Ungültiger Dateiname: {filename!r}')
    os.makedirs(archive_folder, exist_ok=True)
    path = os.path.join(archive_folder, filename)
    with open(path, 'xb') as f:
        f.write(data)
    return path


# ── Integrity verification ─────────────────────────────────────────────────

def verify_integrity(db):
    """
    Walk the entire audit_log table and verify the hash chain.

    Returns:
        (is_valid: bool, total: int, first_broken_id: int | None, message: str)
    """
    from models import AuditLog

    entries = db.session.query(AuditLog).order_by(AuditLog.id.asc()).all()
    if not entries:
        return True, 0, None, 'Keine Einträge vorhanden.'

    prev_hash = GENESIS_HASH
    for entry in entries:
        if entry.previous_hash != prev_hash:
            return (False, len(entries), entry.id,
                    f'Kettenbruch bei Eintrag #{entry.id}: '
                    f'previous_hash stimmt nicht überein.')

        expected = _compute_hash(
            entry.previous_hash,
            entry.timestamp.isoformat(),
            entry.action,
            entry.entity_type,
            entry.entity_id,
            entry.old_values,
            entry.new_values,
        )
        if entry.entry_hash != expected:
            return (False, len(entries), entry.id,
                    f'Hash-Fehler bei Eintrag #{entry.id}: '
                    f'Daten wurden möglicherweise manipuliert.')

        prev_hash = entry.entry_hash

    return True, len(entries), None, f'Alle {len(entries)} Einträge sind integer.'


# ── Initialisation ─────────────────────────────────────────────────────────

def log_action(action: str, entity_type: str, entity_id,
               old_values=None, new_values=None, archived_files=None):
    """Public helper: write an explicit audit entry (e.g. LOGIN, ERP_WRITE).

    Unlike the automatic SQLAlchemy listener, this lets callers record
    events that are not simple CRUD on a model row. The caller commits.
    """
    from models import db as _db
    # pending rows need their CREATE entries in the chain first
    _db.session.flush()
    _write_audit(
        _db.session, action, entity_type, entity_id,
        old_values, new_values, archived_files,
    )


def init_audit(app, db):
    """
    Register the SQLAlchemy event listener.  Call this once after db.init_app().
    """
    from models import User, Indexation, RentUpdate, Document

    global AUDITED_MODELS, IMMUTABLE_MODELS
    AUDITED_MODELS = {User, Indexation, RentUpdate, Document}
    IMMUTABLE_MODELS = {Indexation}

    # Listeners are global to the Session class; register them only once
    # even when several apps are created (tests).
    session_cls = db.session.__class__
    if not event.contains(session_cls, 'before_flush', _on_before_flush):
        event.listen(session_cls, 'before_flush', _on_before_flush)
        event.listen(session_cls, 'after_flush', _on_after_flush)
    app.logger.info('Audit trail initialised (hash-chained, %d models tracked).',
                    len(AUDITED_MODELS))
