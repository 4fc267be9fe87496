"""
Bulk student import and login-credential export.

Upload files (CSV or Excel) are parsed into candidate rows with flexible,
case-insensitive column matching. Rows are then validated, given usernames
and temporary passwords where missing, and created in small concurrent
batches where every row succeeds or fails on its own.
"""

import concurrent.futures
import csv
import logging
import re
import secrets
from io import BytesIO, StringIO

import openpyxl
from openpyxl.styles import Font
from openpyxl.utils import get_column_letter

logger = logging.getLogger(__name__)

BULK_IMPORT_BATCH_SIZE = 5

COLUMN_ALIASES = {
    'student_name': ['Student Name', 'student_name', 'StudentName', 'Name', 'Full Name', 'full_name'],
    'father_name': ['Father Name', 'father_name', 'Father', 'Parent Name', 'parent_name'],
    'phone_number': ['Phone Number', 'phone_number', 'Phone', 'Contact'],
    'grade': ['Grade', 'Class', 'Level'],
    'school_name': ['School', 'School Name', 'school_name'],
    'email': ['Email', 'Email Address', 'Username'],
    'password': ['Password', 'Temp Password'],
}

CREDENTIAL_HEADERS = ['Name', 'Username', 'Password', 'School', 'Grade']


class ImportFileError(ValueError):
    """The uploaded file cannot be turned into student rows."""


def normalize_key(name):
    """Header key for matching: 'Student_Name ' -> 'studentname'."""
    return re.sub(r'[\s_-]+', '', str(name or '').strip().lower())


def get_value(row, candidates):
    by_normalized = {normalize_key(k): v for k, v in (row or {}).items() if k is not None}
    for candidate in candidates:
        value = by_normalized.get(normalize_key(candidate))
        if value is not None:
            return str(value).strip()
    return ''


def normalize_person_name(value):
    """Collapse spaces and title-case each part of a name."""
    parts = ' '.join(str(value or '').strip().split()).split(' ')
    return ' '.join(p[:1].upper() + p[1:].lower() for p in parts if p)


def is_valid_email(value):
    email = (value or '').strip()
    return bool(re.fullmatch(r'^[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}$', email))


def generate_temp_password(length=10):
    """Generate a temporary password."""
    alphabet = "ABCDEFGHJKLMNPQRSTUVWXYZabcdefghijkmnopqrstuvwxyz23456789!@#$"
    return ''.join(secrets.choice(alphabet) for _ in range(max(8, length)))


def generate_username(student_name, school_id, index):
    """Username for a student without an email, e.g. 'ada.okafor.12.sch1'."""
    base = re.sub(r'[^a-z0-9]+', '.', (student_name or '').strip().lower()).strip('.') or 'student'
    school_part = re.sub(r'[^A-Za-z0-9_-]+', '', (school_id or '').strip()).lower() or 'school'
    return f'{base}.{index}.{school_part}'


# ---------- parsing ----------

def parse_csv(content):
    """Return (rows, headers) from CSV text or bytes."""
    if isinstance(content, bytes):
        try:
            content = content.decode('utf-8-sig')
        except UnicodeDecodeError as exc:
            raise ImportFileError('CSV file must be UTF-8 encoded.') from exc
    elif content.startswith('\ufeff'):
        content = content[1:]
    reader = csv.DictReader(StringIO(content))
    if not reader.fieldnames:
        raise ImportFileError('CSV is empty or has no header row.')
    headers = [h for h in reader.fieldnames if h]
    rows = []
    for row in reader:
        if not any(str(v or '').strip() for k, v in row.items() if k is not None):
            continue
        rows.append(row)
    return rows, headers


def _cell_text(value):
    if value is None:
        return ''
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def parse_excel(stream):
    """Return (rows, headers) from the first worksheet of an .xlsx file."""
    try:
        workbook = openpyxl.load_workbook(stream, read_only=True, data_only=True)
    except Exception as exc:
        raise ImportFileError(f'Error parsing Excel file: {exc}') from exc
    try:
        if not workbook.worksheets:
            raise ImportFileError('Excel file appears to be empty or invalid. Please check the file and try again.')
        sheet = workbook.worksheets[0]
        rows_iter = sheet.iter_rows(values_only=True)
        header_row = next(rows_iter, None)
        headers = [_cell_text(v).strip() for v in (header_row or [])]
        if not any(headers):
            raise ImportFileError('No data found in Excel file. Please ensure the file contains student data with headers.')
        rows = []
        for values in rows_iter:
            row = {}
            for col, value in enumerate(values or []):
                if value is None:
                    continue
                name = headers[col] if col < len(headers) and headers[col] else f'Column{col + 1}'
                row[name] = _cell_text(value)
            if row:
                rows.append(row)
    finally:
        workbook.close()
    if not rows:
        raise ImportFileError('No data found in Excel file. Please ensure the file contains student data with headers.')
    return rows, [h for h in headers if h]


def map_student_row(row, index, default_school_name=''):
    return {
        'id': f'temp-{index}',
        'student_name': normalize_person_name(get_value(row, COLUMN_ALIASES['student_name'])),
        'father_name': normalize_person_name(get_value(row, COLUMN_ALIASES['father_name'])),
        'phone_number': get_value(row, COLUMN_ALIASES['phone_number']),
        'grade': get_value(row, COLUMN_ALIASES['grade']),
        'school_name': get_value(row, COLUMN_ALIASES['school_name']) or default_school_name,
        'email': get_value(row, COLUMN_ALIASES['email']).lower(),
        'password': get_value(row, COLUMN_ALIASES['password']),
        'status': 'pending',
    }


def parse_student_file(filename, stream, default_school_name=''):
    """Parse an uploaded student list into mapped rows.

    Returns ``{'rows': [...], 'headers': [...], 'skipped': n}``. Rows without
    a student name or grade are skipped; a file where every row is skipped
    raises ImportFileError naming the headers that were found.
    """
    extension = (filename or '').rsplit('.', 1)[-1].lower() if '.' in (filename or '') else ''
    if extension == 'csv':
        raw_rows, headers = parse_csv(stream.read())
    elif extension == 'xlsx':
        data = stream.read()
        raw_rows, headers = parse_excel(BytesIO(data))
    elif extension == 'xls':
        raise ImportFileError('Legacy Excel (.xls) files are not supported. Save the sheet as .xlsx or CSV.')
    elif extension == 'pdf':
        raise ImportFileError('PDF parsing is not supported. Please use CSV or Excel (.xlsx) format.')
    else:
        raise ImportFileError(f'Unsupported file format: {extension or "unknown"}. Please use CSV or XLSX.')

    mapped = [map_student_row(row, idx, default_school_name) for idx, row in enumerate(raw_rows)]
    rows = [r for r in mapped if r['student_name'] and r['grade']]
    if not rows:
        raise ImportFileError(
            'No valid rows found. Ensure the file has columns like "Student Name" and "Grade" '
            f'and at least one row with values. Detected headers: {", ".join(headers) or "(none)"}'
        )
    logger.info('Parsed %s student row(s) from %s (%s skipped)', len(rows), filename, len(mapped) - len(rows))
    return {'rows': rows, 'headers': headers, 'skipped': len(mapped) - len(rows)}


# ---------- import ----------

def prepare_import_rows(rows, school_id):
    """Validate rows and fill in usernames and temporary passwords.

    Returns (ready_rows, errors); errors are 'Row n: message' strings.
    """
    ready = []
    errors = []
    seen_usernames = set()
    for idx, row in enumerate(rows or [], start=1):
        if not isinstance(row, dict):
            errors.append(f'Row {idx}: invalid row data.')
            continue
        name = normalize_person_name(row.get('student_name'))
        grade = str(row.get('grade') or '').strip()
        email = str(row.get('email') or '').strip().lower()
        if not name or not grade:
            errors.append(f'Row {idx}: student name and grade are required.')
            continue
        if email and not is_valid_email(email):
            errors.append(f'Row {idx}: "{email}" is not a valid email address.')
            continue
        username = email or generate_username(name, school_id, idx)
        if username in seen_usernames:
            errors.append(f'Row {idx}: duplicate username "{username}" in the submitted rows.')
            continue
        seen_usernames.add(username)
        prepared = dict(row)
        prepared.update({
            'student_name': name,
            'grade': grade,
            'email': email,
            'username': username,
            'password': str(row.get('password') or '').strip() or generate_temp_password(),
            'father_name': normalize_person_name(row.get('father_name')),
            'phone_number': str(row.get('phone_number') or '').strip(),
        })
        ready.append(prepared)
    return ready, errors


def run_bulk_import(rows, create_student, batch_size=BULK_IMPORT_BATCH_SIZE):
    """Create students batch by batch; one failing row never stops the others.

    ``create_student(row)`` returns a credentials dict or raises. The result
    is ``{'success', 'failed', 'errors', 'credentials'}``.
    """
    results = {'success': 0, 'failed': 0, 'errors': [], 'credentials': []}
    batch_size = max(1, int(batch_size or 1))
    for start in range(0, len(rows), batch_size):
        batch = rows[start:start + batch_size]
        with concurrent.futures.ThreadPoolExecutor(max_workers=len(batch)) as executor:
            futures = [(row, executor.submit(create_student, row)) for row in batch]
            for row, future in futures:
                try:
                    credentials = future.result()
                except Exception as e:
                    results['failed'] += 1
                    results['errors'].append(f"{row.get('student_name')}: {str(e) or 'Unknown error'}")
                    logger.warning('Error importing %s: %s', row.get('student_name'), e)
                    row['status'] = 'failed'
                    continue
                results['success'] += 1
                results['credentials'].append(credentials)
                row['status'] = 'created'
    logger.info('Bulk import finished: %s created, %s failed', results['success'], results['failed'])
    return results


# ---------- credential export ----------

def filter_credentials(credentials, schools=None, grades=None):
    schools = {s.strip().lower() for s in (schools or []) if s and s.strip()}
    grades = {g.strip().lower() for g in (grades or []) if g and g.strip()}
    return [
        c for c in credentials
        if (not schools or (c.get('school') or '').strip().lower() in schools)
        and (not grades or (c.get('grade') or '').strip().lower() in grades)
    ]


def credentials_filename(schools=None, grades=None, extension='csv'):
    filename = 'student_credentials'
    if schools:
        filename += '_' + '_'.join(schools)
    if grades:
        filename += '_' + '_'.join(grades)
    filename = re.sub(r'\s+', '_', filename)
    filename = re.sub(r'[^A-Za-z0-9_.-]+', '', filename)
    return f'{filename}.{extension}'


def _credential_row(c):
    return [
        c.get('name', ''),
        c.get('username', ''),
        c.get('password', ''),
        c.get('school') or 'N/A',
        c.get('grade') or 'N/A',
    ]


def build_credentials_csv(credentials):
    output = StringIO()
    writer = csv.writer(output, quoting=csv.QUOTE_ALL)
    writer.writerow(CREDENTIAL_HEADERS)
    for c in credentials:
        writer.writerow(_credential_row(c))
    return output.getvalue()


def build_credentials_xlsx(credentials):
    wb = openpyxl.Workbook()
    ws = wb.active
    ws.title = 'Credentials'
    ws.append(CREDENTIAL_HEADERS)
    for cell in ws[1]:
        cell.font = Font(bold=True)
    for c in credentials:
        ws.append(_credential_row(c))
    for col in range(1, len(CREDENTIAL_HEADERS) + 1):
        width = max(len(str(cell.value or '')) for cell in ws[get_column_letter(col)])
        ws.column_dimensions[get_column_letter(col)].width = min(max(12, width + 2), 50)
    output = BytesIO()
    wb.save(output)
    return output.getvalue()


def sample_import_csv():
    output = StringIO()
    writer = csv.writer(output)
    writer.writerow(['Student Name', 'Father Name', 'Phone Number', 'Grade', 'Email'])
    writer.writerow(['Ada Okafor', 'Emeka Okafor', '08030000000', 'JSS1', ''])
    writer.writerow(['Tunde Bello', 'Musa Bello', '08031111111', 'JSS1', 'tunde.bello@example.com'])
    return output.getvalue()
