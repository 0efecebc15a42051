from flask_sqlalchemy import SQLAlchemy
from flask_login import UserMixin
from datetime import datetime

db = SQLAlchemy()


class User(UserMixin, db.Model):
    """Operator account for the indexation desk."""
    __tablename__ = 'users'

    id = db.Column(db.Integer, primary_key=True)
    username = db.Column(db.String(100), unique=True, nullable=False)
    password_hash = db.Column(db.String(256), nullable=False)
    display_name = db.Column(db.String(200), default='')
    is_admin = db.Column(db.Boolean, default=False)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    def __repr__(self):
        return f'<User {self.username}>'


class Indexation(db.Model):
    """
    A confirmed rent indexation (ledger row).

    Rows are append-only: once flushed, updates and deletes are rejected
    by the session listener in audit.py. A correction is a new row.
    """
    __tablename__ = 'indexations'

    id = db.Column(db.Integer, primary_key=True)
    ind = db.Column(db.String(30), unique=True, nullable=False)   # IND-2024-0001

    # Tenancy / property snapshot (from Odoo at confirmation time)
    tenancy_id = db.Column(db.Integer, nullable=False, index=True)
    tenancy_name = db.Column(db.String(300), nullable=True)
    fund = db.Column(db.String(200), nullable=True)
    entity = db.Column(db.String(200), nullable=True)
    slate_id = db.Column(db.String(100), nullable=True)           # asset reference
    property_id = db.Column(db.Integer, nullable=True)
    address = db.Column(db.String(500), nullable=True)
    tenant = db.Column(db.String(300), nullable=True)
    type = db.Column(db.String(30), default='residential')
    company_id = db.Column(db.Integer, nullable=True)

    # Rent
    rent_before_indexation = db.Column(db.Float, nullable=False)
    rent_after_indexation = db.Column(db.Float, nullable=False)
    ancillary_before = db.Column(db.Float, nullable=True)
    ancillary_after = db.Column(db.Float, nullable=True)

    # Index
    last_index_date = db.Column(db.String(10), nullable=True)     # YYYY-MM-DD
    last_index_score = db.Column(db.Float, nullable=True)
    current_index_date = db.Column(db.String(10), nullable=True)
    current_index_score = db.Column(db.Float, nullable=True)
    indexation_trigger = db.Column(db.String(200), nullable=True)
    threshold = db.Column(db.Float, nullable=True)
    pause_between_indexation = db.Column(db.Integer, nullable=True)  # months
    percent_increase = db.Column(db.Float, nullable=True)         # raw index change (ratio)
    percent_applied = db.Column(db.Float, nullable=True)          # applied ratio
    adjustment_period = db.Column(db.String(50), nullable=True)

    # Dates
    effective_date = db.Column(db.Date, nullable=False)
    next_possible_indexation_date = db.Column(db.Date, nullable=True)
    end_of_contract = db.Column(db.String(30), nullable=True)
    year = db.Column(db.Integer, nullable=False)

    indexation_comment = db.Column(db.Text, nullable=True)
    created_by = db.Column(db.String(100), nullable=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    def to_dict(self):
        return {
            'id': self.id,
            'ind': self.ind,
            'tenancy_uuid': self.tenancy_id,
            'tenancy_name': self.tenancy_name,
            'fund': self.fund,
            'entity': self.entity,
            'slate_id': self.slate_id,
            'property_id': self.property_id,
            'address': self.address,
            'tenant': self.tenant,
            'type': self.type,
            'company_id': self.company_id,
            'rent_before_indexation': self.rent_before_indexation,
            'rent_after_indexation': self.rent_after_indexation,
            'ancillary_before': self.ancillary_before,
            'ancillary_after': self.ancillary_after,
            'last_index_date': self.last_index_date,
            'last_index_score': self.last_index_score,
            'current_index_date': self.current_index_date,
            'current_index_score': self.current_index_score,
            'indexation_trigger': self.indexation_trigger,
            'threshold': self.threshold,
            'pause_between_indexation': self.pause_between_indexation,
            'percent_increase': self.percent_increase,
            'percent_applied': self.percent_applied,
            'adjustment_period': self.adjustment_period,
            'effective_date': self.effective_date.isoformat() if self.effective_date else None,
            'next_possible_indexation_date': (self.next_possible_indexation_date.isoformat()
                                              if self.next_possible_indexation_date else None),
            'end_of_contract': self.end_of_contract,
            'year': self.year,
            'indexation_comment': self.indexation_comment,
            'created_by': self.created_by,
            'created_at': self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self):
        return f'<Indexation {self.ind} tenancy={self.tenancy_id}>'


class RentUpdate(db.Model):
    """Tracker row for a direct rent change without a full indexation."""
    __tablename__ = 'rent_updates'

    id = db.Column(db.Integer, primary_key=True)
    tenancy_id = db.Column(db.Integer, nullable=False, index=True)
    rent_record_id = db.Column(db.Integer, nullable=True)
    old_rent = db.Column(db.Float, nullable=True)
    new_rent = db.Column(db.Float, nullable=False)
    delta_abs = db.Column(db.Float, nullable=True)
    delta_pct = db.Column(db.Float, nullable=True)
    am_id = db.Column(db.Integer, nullable=True)                  # Odoo account manager
    am_name = db.Column(db.String(200), nullable=True)
    by_user = db.Column(db.String(100), nullable=True)
    previous_adjustment_date = db.Column(db.String(10), nullable=True)
    new_adjustment_date = db.Column(db.String(10), nullable=True)
    payload_json = db.Column(db.Text, nullable=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    def __repr__(self):
        return f'<RentUpdate tenancy={self.tenancy_id} {self.old_rent} -> {self.new_rent}>'


class Document(db.Model):
    """
    A generated file in the archive folder, linked to a ledger row.
    Archived files are never overwritten.
    """
    __tablename__ = 'documents'

    id = db.Column(db.Integer, primary_key=True)
    filename = db.Column(db.String(300), nullable=False, unique=True)  # stored filename on disk
    original_filename = db.Column(db.String(300), nullable=True)
    entity_type = db.Column(db.String(20), nullable=False)             # 'indexation'
    entity_id = db.Column(db.Integer, nullable=False)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    def __repr__(self):
        return f'<Document {self.filename} ({self.entity_type}:{self.entity_id})>'


class AuditLog(db.Model):
    """
    Immutable audit trail for all data changes.

    Each entry records who changed what, when, and stores before/after
    snapshots as JSON.  Entries form a hash chain: each entry_hash is
    computed from the previous hash + entry data, so tampering with any
    row invalidates all subsequent hashes.
    """
    __tablename__ = 'audit_log'

    id = db.Column(db.Integer, primary_key=True)
    timestamp = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
    user_id = db.Column(db.Integer, nullable=True)          # NULL for system actions
    username = db.Column(db.String(100), nullable=True)
    ip_address = db.Column(db.String(45), nullable=True)
    source = db.Column(db.String(20), nullable=False, default='web')  # 'web', 'api', 'system'
    action = db.Column(db.String(20), nullable=False)        # 'CREATE', 'LOGIN', 'ERP_WRITE', ...
    entity_type = db.Column(db.String(50), nullable=False)   # e.g. 'Indexation', 'Tenancy'
    entity_id = db.Column(db.Integer, nullable=True)
    old_values = db.Column(db.Text, nullable=True)
    new_values = db.Column(db.Text, nullable=True)
    archived_files = db.Column(db.Text, nullable=True)       # JSON list of archived filenames
    previous_hash = db.Column(db.String(64), nullable=False, default='0' * 64)
    entry_hash = db.Column(db.String(64), nullable=False)

    def __repr__(self):
        return f'<AuditLog {self.id} {self.action} {self.entity_type}:{self.entity_id}>'
