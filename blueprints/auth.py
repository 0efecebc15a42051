from flask import Blueprint, render_template, redirect, url_for, request, flash
from flask_login import login_user, logout_user, login_required, current_user
from werkzeug.security import check_password_hash
from models import db, User
from audit import log_action

auth_bp = Blueprint('auth', __name__, template_folder='../templates/auth')


def _safe_next(target):
    """Only allow relative redirects inside this app."""
    if target and target.startswith('/') and not target.startswith('//'):
        return target
    return None


@auth_bp.route('/login', methods=['GET', 'POST'])
def login():
    if current_user.is_authenticated:
        return redirect(url_for('admin.dashboard'))

    if request.method == 'POST':
        username = request.form.get('username', '').strip()
        password = request.form.get('password', '')

        user = User.query.filter_by(username=username).first()
        if user and check_password_hash(user.password_hash, password):
            login_user(user)
            log_action('LOGIN', 'User', user.id,
                       new_values={'username': user.username})
            db.session.commit()
            return redirect(_safe_next(request.args.get('next')) or url_for('admin.dashboard'))
        else:
            log_action('LOGIN_FAILED', 'User', None,
                       new_values={'username_attempted': username})
            db.session.commit()
            flash('Benutzername oder Passwort ungültig.', 'error')

    return render_template('login.html')


@auth_bp.route('/logout')
@login_required
def logout():
    log_action('LOGOUT', 'User', current_user.id,
               new_values={'username': current_user.username})
    db.session.commit()
    logout_user()
    flash('Sie wurden erfolgreich abgemeldet.', 'success')
    return redirect(url_for('auth.login'))
