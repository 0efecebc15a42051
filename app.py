import os
import json
import logging
from flask import Flask, redirect, url_for
from flask_login import LoginManager
from dotenv import load_dotenv
from models import db, User, Document
from werkzeug.security import generate_password_hash
from helpers import (
    format_currency, format_date, format_number, format_percent,
    month_key_label, parse_account_managers, parse_list,
)
from audit import init_audit

load_dotenv()


def _env_float(name, default):
    try:
        return float(os.environ.get(name, default))
    except ValueError:
        return default


def create_app(test_config=None):
    app = Flask(__name__, instance_relative_config=True)

    # Configuration
    app.config['SECRET_KEY'] = os.environ.get('SECRET_KEY', 'dev-secret-key-change-in-production')
    app.config['SQLALCHEMY_DATABASE_URI'] = os.environ.get(
        'DATABASE_URL', 'sqlite:///' + os.path.join(app.instance_path, 'indexation.db'))
    app.config['SQLALCHEMY_TRACK_MODIFICATIONS'] = False
    app.config['ARCHIVE_FOLDER'] = os.environ.get(
        'ARCHIVE_FOLDER', os.path.join(app.instance_path, 'archive'))

    # Odoo
    app.config['ODOO_URL'] = os.environ.get('ODOO_URL', '')
    app.config['ODOO_DB'] = os.environ.get('ODOO_DB', '')
    app.config['ODOO_USER'] = os.environ.get('ODOO_USER', '')
    app.config['ODOO_PASSWORD'] = os.environ.get('ODOO_API') or os.environ.get('ODOO_PWD', '')
    app.config['ODOO_TIMEOUT'] = _env_float('ODOO_TIMEOUT', 30.0)
    app.config['ALLOWED_COMPANIES'] = parse_list(os.environ.get('ALLOWED_COMPANIES', 'Fund IV,Eagle'))
    app.config['ACCOUNT_MANAGERS'] = parse_account_managers(
        os.environ.get('ACCOUNT_MANAGERS', 'BKO:8,CFR:12,FKE:7,MSC:9'))

    # API / letter
    app.config['API_KEY'] = os.environ.get('API_KEY', '')
    app.config['INDEX_TABLE_PATH'] = os.environ.get('INDEX_TABLE_PATH', '')
    app.config['LETTER_TEMPLATE_PATH'] = os.environ.get('LETTER_TEMPLATE_PATH', '')
    app.config['LETTER_FONT_REGULAR'] = os.environ.get('LETTER_FONT_REGULAR', '')
    app.config['LETTER_FONT_BOLD'] = os.environ.get('LETTER_FONT_BOLD', '')
    app.config['LETTER_SIGNATORY'] = os.environ.get('LETTER_SIGNATORY', 'Jakob Webb')
    app.config['LETTER_CITY'] = os.environ.get('LETTER_CITY', 'Berlin')
    app.config['LOG_LEVEL'] = os.environ.get('LOG_LEVEL', 'INFO')

    if test_config:
        app.config.update(test_config)

    logging.basicConfig(
        level=app.config['LOG_LEVEL'],
        format='%(asctime)s %(levelname)s [%(name)s] %(message)s',
    )
    app.logger.setLevel(app.config['LOG_LEVEL'])

    # Ensure instance and archive folders exist
    os.makedirs(app.instance_path, exist_ok=True)
    os.makedirs(app.config['ARCHIVE_FOLDER'], exist_ok=True)

    # Initialize extensions
    db.init_app(app)
    login_manager = LoginManager()
    login_manager.init_app(app)
    login_manager.login_view = 'auth.login'
    login_manager.login_message = 'Bitte melden Sie sich an.'
    login_manager.login_message_category = 'info'

    @login_manager.user_loader
    def load_user(user_id):
        return db.session.get(User, int(user_id))

    # Initialize audit trail (must be before first commit)
    init_audit(app, db)

    with app.app_context():
        db.create_all()
        _seed_defaults(app)

    # Template filters
    app.jinja_env.filters['currency'] = format_currency
    app.jinja_env.filters['date_format'] = format_date
    app.jinja_env.filters['percent'] = format_percent
    app.jinja_env.filters['number'] = format_number
    app.jinja_env.filters['month_label'] = month_key_label

    def pretty_json_filter(value):
        """Format a JSON string for display in the audit log."""
        if not value:
            return value
        try:
            obj = json.loads(value) if isinstance(value, str) else value
        except ValueError:
            return value
        return json.dumps(obj, indent=2, ensure_ascii=False, sort_keys=True)
    app.jinja_env.filters['pretty_json'] = pretty_json_filter

    def get_documents(entity_type, entity_id):
        return Document.query.filter_by(entity_type=entity_type, entity_id=entity_id).all()
    app.jinja_env.globals['get_documents'] = get_documents

    # Register blueprints
    from blueprints.auth import auth_bp
    from blueprints.admin import admin_bp
    from blueprints.api import api_bp
    app.register_blueprint(auth_bp)
    app.register_blueprint(admin_bp, url_prefix='/admin')
    app.register_blueprint(api_bp, url_prefix='/api/v1')

    # Redirect root to admin (no public pages in this app)
    @app.route('/')
    def index():
        return redirect(url_for('admin.dashboard'))

    app.logger.info('Indexation desk ready (Odoo: %s)', app.config['ODOO_URL'] or 'nicht konfiguriert')
    return app


def _seed_defaults(app):
    """Create the default admin user if no admin exists."""
    admin_username = app.config.get('ADMIN_USERNAME') or os.environ.get('ADMIN_USERNAME', 'admin')
    admin_password = app.config.get('ADMIN_PASSWORD') or os.environ.get('ADMIN_PASSWORD', '')

    if User.query.filter_by(username=admin_username).first():
        return
    if User.query.filter_by(is_admin=True).first():
        return
    if not admin_password:
        admin_password = 'password123'
        app.logger.warning('ADMIN_PASSWORD not set; seeded admin "%s" with the default password.',
                           admin_username)
    db.session.add(User(
        username=admin_username,
        password_hash=generate_password_hash(admin_password),
        display_name='Administrator',
        is_admin=True,
    ))
    db.session.commit()
