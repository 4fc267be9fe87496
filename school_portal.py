"""
School Portal - Form Drafts and Bulk Student Import

Flask web application backing the portal's admin pages: tiered form-draft
storage with debounced auto-save (so in-progress input survives refreshes
and tab switches), bulk student import from CSV/Excel, and export of the
login credentials created by an import.
"""

from flask import Flask, request, redirect, url_for, session, jsonify, Response, current_app
from flask_wtf import FlaskForm
from flask_wtf.csrf import CSRFProtect, CSRFError, generate_csrf
from flask_wtf.file import FileField, FileRequired
from wtforms import StringField, validators
import re
import secrets
from contextlib import contextmanager
from datetime import datetime, timedelta
from functools import wraps
from werkzeug.security import generate_password_hash, check_password_hash

import os
import logging
from dotenv import load_dotenv

from draft_registry import DraftRegistry
from student_import import (
    ImportFileError,
    build_credentials_csv,
    build_credentials_xlsx,
    credentials_filename,
    filter_credentials,
    parse_student_file,
    prepare_import_rows,
    run_bulk_import,
    sample_import_csv,
)

load_dotenv()

app = Flask(__name__)
ALLOW_INSECURE_DEFAULTS = os.environ.get('ALLOW_INSECURE_DEFAULTS', '').strip().lower() in ('1', 'true', 'yes')
secret_key = os.environ.get('SECRET_KEY')
if not secret_key:
    if ALLOW_INSECURE_DEFAULTS:
        # Explicitly opt-in fallback for local/dev only.
        secret_key = 'dev-secret-key-change-me'
    else:
        raise RuntimeError("SECRET_KEY is required in production. Set SECRET_KEY or enable ALLOW_INSECURE_DEFAULTS for local development.")
if not ALLOW_INSECURE_DEFAULTS and len(secret_key) < 32:
    raise RuntimeError("SECRET_KEY is too short. Use at least 32 characters in production.")
app.secret_key = secret_key
app.config['WTF_CSRF_TIME_LIMIT'] = None
app.config['MAX_CONTENT_LENGTH'] = 10 * 1024 * 1024

# Initialize CSRF Protection
csrf = CSRFProtect(app)

DATABASE_URL = os.environ.get('DATABASE_URL', '').strip()
if not DATABASE_URL.startswith(('postgres://', 'postgresql://')):
    raise RuntimeError("PostgreSQL is required. Set DATABASE_URL to a postgresql:// connection string.")
SUPER_ADMIN_USERNAME = os.environ.get('SUPER_ADMIN_USERNAME', 'super admin').strip().lower()
SUPER_ADMIN_PASSWORD = os.environ.get('SUPER_ADMIN_PASSWORD', '').strip()
if not SUPER_ADMIN_PASSWORD:
    raise RuntimeError("SUPER_ADMIN_PASSWORD is required. Set it in environment variables.")
if len(SUPER_ADMIN_PASSWORD) < 12:
    raise RuntimeError("SUPER_ADMIN_PASSWORD is too short. Use at least 12 characters.")


def _env_int(name, default, minimum=0):
    raw = os.environ.get(name, '').strip()
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError:
        raise RuntimeError(f"{name} must be an integer, got {raw!r}.")
    if value < minimum:
        raise RuntimeError(f"{name} must be at least {minimum}.")
    return value


FORM_DRAFT_MAX_STORAGE_BYTES = _env_int('FORM_DRAFT_MAX_STORAGE_BYTES', 5 * 1024 * 1024, minimum=1024)
FORM_DRAFT_MAX_AGE_HOURS = _env_int('FORM_DRAFT_MAX_AGE_HOURS', 24, minimum=1)
FORM_AUTOSAVE_INTERVAL_MS = _env_int('FORM_AUTOSAVE_INTERVAL_MS', 2000, minimum=100)
FORM_DEBOUNCE_DELAY_MS = _env_int('FORM_DEBOUNCE_DELAY_MS', 500, minimum=0)
FORM_DRAFT_SESSION_IDLE_MINUTES = _env_int('FORM_DRAFT_SESSION_IDLE_MINUTES', 120, minimum=1)
BULK_IMPORT_BATCH_SIZE = _env_int('BULK_IMPORT_BATCH_SIZE', 5, minimum=1)
PORTAL_ROLES = {'super_admin', 'school_admin', 'teacher', 'student'}
FORM_ID_PATTERN = re.compile(r'^[A-Za-z0-9._:-]{1,120}$')

def _adapt_query(query):
    return query.replace('?', '%s')

def db_execute(cursor, query, params=None):
    if params is None:
        return cursor.execute(_adapt_query(query))
    return cursor.execute(_adapt_query(query), params)

def get_db():
    """Create a PostgreSQL DB connection."""
    try:
        import psycopg2
        from psycopg2.extras import DictCursor
    except ImportError as exc:
        raise RuntimeError("PostgreSQL backend requires psycopg2-binary") from exc
    return psycopg2.connect(DATABASE_URL, cursor_factory=DictCursor, connect_timeout=10)

@contextmanager
def db_connection(commit=False):
    """Context manager for DB connections with optional commit."""
    conn = get_db()
    try:
        yield conn
        if commit:
            conn.commit()
    finally:
        conn.close()

# Set up logging
logging.basicConfig(filename=os.environ.get('LOG_FILE', 'app.log'), level=logging.INFO,
                    format='%(asctime)s - %(levelname)s - %(name)s - %(message)s')
if ALLOW_INSECURE_DEFAULTS:
    logging.warning("ALLOW_INSECURE_DEFAULTS is enabled. Development-only fallbacks may be active.")

app.extensions['form_drafts'] = DraftRegistry(
    connect=db_connection,
    max_storage_size=FORM_DRAFT_MAX_STORAGE_BYTES,
    max_age_ms=FORM_DRAFT_MAX_AGE_HOURS * 60 * 60 * 1000,
    auto_save_interval=FORM_AUTOSAVE_INTERVAL_MS,
    debounce_delay=FORM_DEBOUNCE_DELAY_MS,
    session_idle_ms=FORM_DRAFT_SESSION_IDLE_MINUTES * 60 * 1000,
)

def get_draft_registry():
    return current_app.extensions['form_drafts']

# Short-lived in-memory store for credentials created by a bulk import.
CREDENTIAL_EXPORTS = {}

def _cleanup_credential_exports():
    cutoff = datetime.now() - timedelta(minutes=30)
    stale_tokens = [tok for tok, item in CREDENTIAL_EXPORTS.items() if item.get('created_at') and item['created_at'] < cutoff]
    for tok in stale_tokens:
        CREDENTIAL_EXPORTS.pop(tok, None)
    # Keep memory bounded in long-running process.
    if len(CREDENTIAL_EXPORTS) > 100:
        for tok, _item in sorted(CREDENTIAL_EXPORTS.items(), key=lambda kv: kv[1].get('created_at', datetime.min))[:len(CREDENTIAL_EXPORTS) - 100]:
            CREDENTIAL_EXPORTS.pop(tok, None)

def _store_credential_export(credentials, owner):
    _cleanup_credential_exports()
    token = secrets.token_urlsafe(18)
    CREDENTIAL_EXPORTS[token] = {
        'credentials': list(credentials),
        'owner': owner,
        'created_at': datetime.now(),
    }
    return token

STUDENTS_SCHOOL_FK_SQL = '''DO $$
BEGIN
    IF NOT EXISTS (SELECT 1 FROM pg_constraint WHERE conname = 'fk_students_school') THEN
        ALTER TABLE students ADD CONSTRAINT fk_students_school
            FOREIGN KEY (school_id) REFERENCES schools(school_id) ON DELETE CASCADE NOT VALID;
    END IF;
END $$'''

def init_db():
    """Create the tables used by the portal if they don't exist."""
    with db_connection(commit=True) as conn:
        c = conn.cursor()
        db_execute(c, '''CREATE TABLE IF NOT EXISTS users (
                        id SERIAL PRIMARY KEY,
                        username TEXT UNIQUE NOT NULL,
                        password_hash TEXT NOT NULL,
                        role TEXT DEFAULT 'student',
                        school_id TEXT,
                        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                    )''')
        db_execute(c, '''CREATE TABLE IF NOT EXISTS schools (
                        id SERIAL PRIMARY KEY,
                        school_id TEXT UNIQUE NOT NULL,
                        school_name TEXT NOT NULL,
                        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                    )''')
        db_execute(c, '''CREATE TABLE IF NOT EXISTS students (
                        id SERIAL PRIMARY KEY,
                        school_id TEXT NOT NULL,
                        student_id TEXT NOT NULL,
                        firstname TEXT,
                        classname TEXT,
                        parent_name TEXT,
                        phone TEXT,
                        email TEXT,
                        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                        UNIQUE(school_id, student_id)
                    )''')
        db_execute(c, '''CREATE TABLE IF NOT EXISTS form_drafts (
                        owner TEXT NOT NULL,
                        storage_key TEXT NOT NULL,
                        value TEXT NOT NULL,
                        updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                        PRIMARY KEY (owner, storage_key)
                    )''')
        db_execute(c, 'CREATE INDEX IF NOT EXISTS idx_students_school_class ON students(school_id, classname)')
        db_execute(c, 'CREATE INDEX IF NOT EXISTS idx_users_username_lower ON users(LOWER(username))')
        db_execute(c, 'CREATE INDEX IF NOT EXISTS idx_form_drafts_owner_updated ON form_drafts(owner, updated_at)')
        db_execute(c, STUDENTS_SCHOOL_FK_SQL)
    logging.info("Database schema verified.")

RUN_STARTUP_DDL = os.environ.get('RUN_STARTUP_DDL', '1').strip().lower() in ('1', 'true', 'yes')
if RUN_STARTUP_DDL:
    init_db()
else:
    logging.warning("RUN_STARTUP_DDL is disabled. Ensure schema is already migrated before startup.")

def hash_password(password):
    """Hash a password."""
    return generate_password_hash(password)

def check_password(hashed, password):
    """Verify a password."""
    return check_password_hash(hashed, password)

def get_user(username):
    with db_connection() as conn:
        c = conn.cursor()
        db_execute(c, 'SELECT username, password_hash, role, school_id FROM users WHERE LOWER(username) = LOWER(?)',
                   ((username or '').strip(),))
        row = c.fetchone()
    if not row:
        return None
    return {'username': row[0], 'password_hash': row[1], 'role': row[2], 'school_id': row[3]}

def upsert_user_with_cursor(c, username, password_hash, role='student', school_id=None):
    db_execute(
        c,
        '''INSERT INTO users (username, password_hash, role, school_id)
           VALUES (?, ?, ?, ?)
           ON CONFLICT(username) DO UPDATE SET
             password_hash = excluded.password_hash,
             role = excluded.role,
             school_id = excluded.school_id''',
        (username, password_hash, role, school_id),
    )

def create_super_admin():
    """Ensure the configured super admin account exists."""
    existing = get_user(SUPER_ADMIN_USERNAME)
    if existing:
        if existing.get('role') != 'super_admin':
            logging.warning("User %s exists but is not a super admin; leaving it unchanged.", SUPER_ADMIN_USERNAME)
        return
    with db_connection(commit=True) as conn:
        upsert_user_with_cursor(conn.cursor(), SUPER_ADMIN_USERNAME, hash_password(SUPER_ADMIN_PASSWORD), 'super_admin', None)
    logging.info("Super admin user created: %s", SUPER_ADMIN_USERNAME)

RUN_STARTUP_BOOTSTRAP = os.environ.get('RUN_STARTUP_BOOTSTRAP', '1').strip().lower() in ('1', 'true', 'yes')
if RUN_STARTUP_BOOTSTRAP:
    create_super_admin()

def get_school(school_id):
    if not school_id:
        return None
    with db_connection() as conn:
        c = conn.cursor()
        db_execute(c, 'SELECT school_id, school_name FROM schools WHERE school_id = ?', (school_id,))
        row = c.fetchone()
    if not row:
        return None
    return {'school_id': row[0], 'school_name': row[1]}

def save_student_with_cursor(c, school_id, student_id, student_data):
    """Save one student using an existing DB cursor/transaction."""
    db_execute(
        c,
        '''INSERT INTO students (school_id, student_id, firstname, classname, parent_name, phone, email)
           VALUES (?, ?, ?, ?, ?, ?, ?)
           ON CONFLICT(school_id, student_id) DO UPDATE SET
             firstname = excluded.firstname,
             classname = excluded.classname,
             parent_name = excluded.parent_name,
             phone = excluded.phone,
             email = excluded.email''',
        (
            school_id,
            student_id,
            student_data.get('firstname', ''),
            student_data.get('classname', ''),
            student_data.get('parent_name') or None,
            student_data.get('phone') or None,
            student_data.get('email') or None,
        ),
    )

def create_student(school, row):
    """Create one student and its login; returns the credentials for export."""
    school_id = school['school_id']
    username = row['username']
    # Keep student row + login row atomic to avoid partial writes.
    with db_connection(commit=True) as conn:
        c = conn.cursor()
        db_execute(c, 'SELECT role, school_id FROM users WHERE LOWER(username) = LOWER(?)', (username,))
        existing = c.fetchone()
        if existing:
            raise ValueError(f'Username "{username}" is already used by another account ({existing[0] or "unknown"}).')
        save_student_with_cursor(c, school_id, username, {
            'firstname': row['student_name'],
            'classname': row['grade'],
            'parent_name': row.get('father_name'),
            'phone': row.get('phone_number'),
            'email': row.get('email'),
        })
        upsert_user_with_cursor(c, username, hash_password(row['password']), 'student', school_id)
    return {
        'name': row['student_name'],
        'username': username,
        'password': row['password'],
        'school': school.get('school_name') or school_id,
        'grade': row['grade'],
    }

def api_error(message, status=400, **extra):
    payload = {'error': message}
    payload.update(extra)
    return jsonify(payload), status

def login_required(view):
    @wraps(view)
    def wrapped(*args, **kwargs):
        if 'user_id' not in session:
            return api_error('Login required.', 401)
        return view(*args, **kwargs)
    return wrapped

def import_admin_required(view):
    @wraps(view)
    def wrapped(*args, **kwargs):
        if 'user_id' not in session:
            return api_error('Login required.', 401)
        if session.get('role') not in {'school_admin', 'super_admin'}:
            return api_error('Only school admins can import students.', 403)
        return view(*args, **kwargs)
    return wrapped

def draft_session_token():
    """Token naming this login session's session-tier draft storage."""
    token = session.get('draft_session')
    if not token:
        token = secrets.token_urlsafe(18)
        session['draft_session'] = token
    return token

def _truthy(value):
    if isinstance(value, bool):
        return value
    return str(value or '').strip().lower() in ('1', 'true', 'yes', 'on')

def _use_session_flag(payload=None):
    if payload and 'use_session' in payload:
        return _truthy(payload.get('use_session'))
    return _truthy(request.args.get('session', ''))

def _bounded_ms(value, default, low=0, high=60 * 60 * 1000):
    try:
        return max(low, min(int(value), high))
    except (TypeError, ValueError):
        return default

def _valid_form_id(form_id):
    return bool(FORM_ID_PATTERN.fullmatch(form_id or ''))

def _resolve_import_school(requested_school_id):
    """School admins import into their own school; super admins pick one."""
    if session.get('role') == 'school_admin':
        school_id = session.get('school_id')
    else:
        school_id = (requested_school_id or '').strip()
    if not school_id:
        return None, 'Please select a school for all students.'
    school = get_school(school_id)
    if not school:
        return None, f'School "{school_id}" was not found.'
    return school, None

class StudentImportForm(FlaskForm):
    file = FileField('Student list', validators=[FileRequired('Please choose a CSV or Excel file to upload.')])
    school_id = StringField('School', [validators.Optional(), validators.Length(max=64)])

@app.errorhandler(CSRFError)
def csrf_error(error):
    """Handle CSRF token errors."""
    return api_error('Form token expired/invalid. Please retry your last action.', 400)

@app.route('/')
def home():
    return jsonify({'app': 'school-portal', 'user': session.get('user_id'), 'role': session.get('role')})

@app.route('/api/csrf-token')
def csrf_token():
    return jsonify({'csrf_token': generate_csrf()})

@app.route('/login', methods=['POST'])
def login():
    """Single login for all users - no role selection."""
    payload = request.get_json(silent=True) or request.form
    username = (payload.get('username') or '').strip().lower()
    password = payload.get('password') or ''
    if not username or not password:
        return api_error('Please enter username and password.', 400)

    user = get_user(username)
    if not user or not check_password(user['password_hash'], password):
        logging.info("Failed login for %s", username)
        return api_error('Invalid username or password.', 401)
    role = user.get('role')
    if role not in PORTAL_ROLES:
        return api_error('Invalid account role configuration. Contact system administrator.', 403)
    if role != 'super_admin' and not user.get('school_id'):
        return api_error('Account is missing school assignment. Contact administrator.', 403)

    session.clear()
    session['user_id'] = user['username']
    session['role'] = role
    session['school_id'] = user.get('school_id')
    draft_session_token()
    return jsonify({'ok': True, 'role': role})

@app.route('/logout')
def logout():
    owner = session.get('user_id')
    token = session.get('draft_session')
    if owner and token:
        get_draft_registry().forget_session(owner, token)
    session.clear()
    return redirect(url_for('home'))

# ==================== FORM DRAFT ROUTES ====================

@app.route('/api/form-drafts', methods=['GET'])
@login_required
def form_drafts_overview():
    store = get_draft_registry().store_for(session['user_id'], draft_session_token())
    return jsonify({
        'registered': store.registered_form_ids(),
        'unsaved': store.unsaved_form_ids(),
        'has_unsaved': store.has_unsaved_forms(),
    })

@app.route('/api/form-drafts', methods=['DELETE'])
@login_required
def form_drafts_clear_all():
    registry = get_draft_registry()
    registry.persistence(session['user_id'], draft_session_token()).clear_all()
    return jsonify({'cleared': True})

@app.route('/api/form-drafts/<form_id>', methods=['GET'])
@login_required
def form_draft_load(form_id):
    if not _valid_form_id(form_id):
        return api_error('Invalid form id.')
    registry = get_draft_registry()
    persistence = registry.persistence(session['user_id'], draft_session_token())
    data = persistence.load(form_id, _use_session_flag())
    return jsonify({
        'form_id': form_id,
        'found': data is not None,
        'data': data,
        'status': persistence.store.get_autosave_status(form_id),
    })

@app.route('/api/form-drafts/<form_id>', methods=['PUT'])
@login_required
def form_draft_save(form_id):
    if not _valid_form_id(form_id):
        return api_error('Invalid form id.')
    payload = request.get_json(silent=True)
    if not isinstance(payload, dict) or not isinstance(payload.get('data'), dict):
        return api_error('Request body must be JSON with a "data" object.')
    registry = get_draft_registry()
    persistence = registry.persistence(session['user_id'], draft_session_token())
    saved = persistence.save(form_id, payload['data'], _use_session_flag(payload))
    return jsonify({
        'form_id': form_id,
        'saved': saved,
        'status': persistence.store.get_autosave_status(form_id),
    })

@app.route('/api/form-drafts/<form_id>', methods=['DELETE'])
@login_required
def form_draft_clear(form_id):
    if not _valid_form_id(form_id):
        return api_error('Invalid form id.')
    registry = get_draft_registry()
    owner = session['user_id']
    token = draft_session_token()
    use_session = _use_session_flag()
    saver = registry.get_autosaver(owner, token, form_id)
    if saver is not None:
        saver.clear_saved_data()
    registry.persistence(owner, token).clear(form_id, use_session)
    return jsonify({'form_id': form_id, 'cleared': True})

@app.route('/api/form-drafts/<form_id>/exists', methods=['GET'])
@login_required
def form_draft_exists(form_id):
    if not _valid_form_id(form_id):
        return api_error('Invalid form id.')
    persistence = get_draft_registry().persistence(session['user_id'], draft_session_token())
    return jsonify({'form_id': form_id, 'exists': persistence.has_data(form_id)})

def _saver_payload(saver):
    return {
        'form_id': saver.form_id,
        'state': saver.state,
        'is_dirty': saver.is_dirty,
        'status': saver.status,
    }

@app.route('/api/form-drafts/<form_id>/live', methods=['POST'])
@login_required
def form_draft_live(form_id):
    """Receive the live form state; the durable write is debounced."""
    if not _valid_form_id(form_id):
        return api_error('Invalid form id.')
    payload = request.get_json(silent=True)
    if not isinstance(payload, dict) or not isinstance(payload.get('data'), dict):
        return api_error('Request body must be JSON with a "data" object.')
    registry = get_draft_registry()
    saver = registry.autosaver(
        session['user_id'],
        draft_session_token(),
        form_id,
        use_session=_use_session_flag(payload),
        auto_save_interval=_bounded_ms(payload.get('auto_save_interval'), registry.auto_save_interval, low=100),
        debounce_delay=_bounded_ms(payload.get('debounce_delay'), registry.debounce_delay),
    )
    saver.update(payload['data'])
    return jsonify(_saver_payload(saver))

@app.route('/api/form-drafts/<form_id>/save', methods=['POST'])
@login_required
def form_draft_save_now(form_id):
    if not _valid_form_id(form_id):
        return api_error('Invalid form id.')
    saver = get_draft_registry().get_autosaver(session['user_id'], draft_session_token(), form_id)
    if saver is None:
        return api_error('No open auto-save for this form.', 404)
    payload = request.get_json(silent=True) or {}
    if isinstance(payload.get('data'), dict):
        saver.update(payload['data'])
    saved = saver.save_now()
    body = _saver_payload(saver)
    body['saved'] = saved
    return jsonify(body)

@app.route('/api/form-drafts/<form_id>/close', methods=['POST'])
@login_required
def form_draft_close(form_id):
    if not _valid_form_id(form_id):
        return api_error('Invalid form id.')
    closed = get_draft_registry().close(session['user_id'], draft_session_token(), form_id)
    return jsonify({'form_id': form_id, 'closed': closed})

# ==================== BULK STUDENT IMPORT ROUTES ====================

@app.route('/school-admin/students/bulk-import/preview', methods=['POST'])
@import_admin_required
def bulk_import_preview():
    """Parse an uploaded student list so the admin can review it before import."""
    form = StudentImportForm()
    if not form.validate_on_submit():
        return api_error('Invalid upload.', 400, fields=form.errors)
    school, error = _resolve_import_school(form.school_id.data)
    if error:
        return api_error(error)
    upload = form.file.data
    try:
        parsed = parse_student_file(upload.filename, upload.stream, default_school_name=school['school_name'])
    except ImportFileError as e:
        return api_error(str(e))
    return jsonify(parsed)

@app.route('/school-admin/students/bulk-import', methods=['POST'])
@import_admin_required
def bulk_import_students():
    payload = request.get_json(silent=True) or {}
    rows = payload.get('rows')
    if not isinstance(rows, list) or not rows:
        return api_error('No data to import. Please upload a file first.')
    school, error = _resolve_import_school(payload.get('school_id'))
    if error:
        return api_error(error)

    ready, errors = prepare_import_rows(rows, school['school_id'])
    if errors:
        return api_error(
            f'{len(errors)} row(s) are missing required fields or are invalid. Please fix them and retry.',
            400,
            errors=errors,
        )

    results = run_bulk_import(ready, lambda row: create_student(school, row), batch_size=BULK_IMPORT_BATCH_SIZE)
    logging.info(
        "Bulk import by %s into %s: %s created, %s failed",
        session.get('user_id'), school['school_id'], results['success'], results['failed'],
    )
    token = ''
    if results['credentials']:
        token = _store_credential_export(results['credentials'], session.get('user_id'))
    status = 200 if results['success'] else 422
    return jsonify({
        'success': results['success'],
        'failed': results['failed'],
        'errors': results['errors'],
        'credentials_token': token,
        'credentials_url': url_for('bulk_import_credentials', token=token) if token else '',
    }), status

@app.route('/school-admin/students/bulk-import/credentials/<token>')
@import_admin_required
def bulk_import_credentials(token):
    _cleanup_credential_exports()
    item = CREDENTIAL_EXPORTS.get((token or '').strip())
    if not item or item.get('owner') != session.get('user_id'):
        return api_error('Credential export link expired. Re-run the import to generate it again.', 404)

    schools = request.args.getlist('school')
    grades = request.args.getlist('grade')
    credentials = filter_credentials(item['credentials'], schools, grades)
    if not credentials:
        return api_error('No students found matching the selected criteria.', 404)

    export_format = (request.args.get('format') or 'csv').strip().lower()
    if export_format == 'xlsx':
        return Response(
            build_credentials_xlsx(credentials),
            mimetype='application/vnd.openxmlformats-officedocument.spreadsheetml.sheet',
            headers={'Content-Disposition': f'attachment; filename={credentials_filename(schools, grades, "xlsx")}'},
        )
    if export_format != 'csv':
        return api_error(f'Unsupported export format: {export_format}.')
    return Response(
        build_credentials_csv(credentials),
        mimetype='text/csv',
        headers={'Content-Disposition': f'attachment; filename={credentials_filename(schools, grades, "csv")}'},
    )

@app.route('/school-admin/students/bulk-import/sample.csv')
@import_admin_required
def bulk_import_sample():
    return Response(
        sample_import_csv(),
        mimetype='text/csv',
        headers={'Content-Disposition': 'attachment; filename=student_import_sample.csv'},
    )

# ==================== MAIN ====================

if __name__ == '__main__':
    port = int(os.environ.get('PORT', 5000))
    debug = os.environ.get('FLASK_DEBUG', '0').strip().lower() in ('1', 'true', 'yes')
    app.run(host='0.0.0.0', port=port, debug=debug)
