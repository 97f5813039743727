"""
CSV / Excel import and export for students, parents and menu items.
"""

import csv
from io import BytesIO, StringIO

from flask import current_app
from openpyxl import Workbook, load_workbook
from openpyxl.styles import Font, PatternFill

from models import db, Student, MenuItem, User, MENU_CATEGORIES
from validators import sanitize_string, sanitize_email, parse_price, validate_price, validate_stock_quantity

STUDENT_REQUIRED_COLUMNS = ['first_name', 'last_name', 'grade_level']
STUDENT_COLUMNS = ['code', 'first_name', 'last_name', 'grade_level', 'section', 'allergies',
                   'dietary_restrictions', 'parent_email', 'is_active']
PARENT_COLUMNS = ['user_id', 'first_name', 'last_name', 'email', 'phone', 'address', 'balance',
                  'students', 'is_active']
MENU_REQUIRED_COLUMNS = ['name', 'price', 'category']
MENU_COLUMNS = ['name', 'description', 'price', 'category', 'allergens', 'is_vegetarian', 'is_vegan',
                'is_gluten_free', 'is_available', 'stock_quantity', 'calories']

TRUE_VALUES = {'1', 'true', 'yes', 'y', 'on'}


class ImportFileError(Exception):
    pass


def detect_file_type(filename):
    name = (filename or '').lower()
    if name.endswith('.csv'):
        return 'csv'
    if name.endswith('.xlsx'):
        return 'xlsx'
    if name.endswith('.xls'):
        return 'xls'
    return 'unknown'


def normalize_header(header):
    return '_'.join(str(header or '').strip().lower().split())


def _rows_to_dicts(rows):
    rows = [row for row in rows]
    if not rows:
        return []
    headers = [normalize_header(h) for h in rows[0]]
    records = []
    for row in rows[1:]:
        values = ['' if v is None else str(v).strip() for v in row]
        values += [''] * (len(headers) - len(values))
        record = dict(zip(headers, values))
        if any(record.values()):
            records.append(record)
    return records


def parse_csv(data):
    if isinstance(data, bytes):
        try:
            data = data.decode('utf-8-sig')
        except UnicodeDecodeError:
            raise ImportFileError('File is not valid UTF-8 text, save it as CSV UTF-8')
    return _rows_to_dicts(csv.reader(StringIO(data)))


def parse_excel(data):
    try:
        workbook = load_workbook(BytesIO(data), read_only=True, data_only=True)
    except Exception as e:
        raise ImportFileError(f'Could not read Excel file: {e}')
    sheet = workbook.active
    return _rows_to_dicts(sheet.iter_rows(values_only=True))


def parse_upload(filename, data):
    file_type = detect_file_type(filename)
    if file_type == 'csv':
        return parse_csv(data)
    if file_type == 'xlsx':
        return parse_excel(data)
    if file_type == 'xls':
        raise ImportFileError('Legacy .xls files are not supported, save the sheet as .xlsx')
    raise ImportFileError('Unsupported file type, upload a .csv or .xlsx file')


def validate_structure(rows, required_columns, min_rows=1):
    if len(rows) < min_rows:
        raise ImportFileError(f'File must contain at least {min_rows} data row(s)')
    missing = [c for c in required_columns if c not in rows[0]]
    if missing:
        raise ImportFileError(f"Missing required columns: {', '.join(missing)}")


def _flag(value, default=False):
    if value is None or str(value).strip() == '':
        return default
    return str(value).strip().lower() in TRUE_VALUES


def import_students(rows):
    """Create students from parsed rows. Duplicates (name + grade or code) are skipped."""
    validate_structure(rows, STUDENT_REQUIRED_COLUMNS)
    result = {'imported': 0, 'skipped': 0, 'errors': []}

    for index, row in enumerate(rows, start=2):  # row 1 is the header
        first_name = sanitize_string(row.get('first_name'))
        last_name = sanitize_string(row.get('last_name'))
        grade_level = sanitize_string(row.get('grade_level'))
        if not first_name or not last_name or not grade_level:
            result['errors'].append({'row': index, 'error': 'first_name, last_name and grade_level are required'})
            continue

        code = sanitize_string(row.get('code')).upper() or None
        if Student.find_duplicate(first_name, last_name, grade_level) or \
                (code and Student.query.filter_by(code=code).first()):
            result['skipped'] += 1
            continue

        parent_user_id = None
        parent_email = sanitize_email(row.get('parent_email'))
        if parent_email:
            user = User.query.filter_by(email=parent_email).first()
            if not user or not user.parent_profile:
                result['errors'].append({'row': index, 'error': f'No parent account for {parent_email}'})
                continue
            parent_user_id = user.id

        student = Student(
            code=code or Student.generate_code(),
            first_name=first_name,
            last_name=last_name,
            grade_level=grade_level,
            section=sanitize_string(row.get('section')) or None,
            allergies=sanitize_string(row.get('allergies')) or None,
            dietary_restrictions=sanitize_string(row.get('dietary_restrictions')) or None,
            parent_user_id=parent_user_id,
            is_active=_flag(row.get('is_active'), default=True),
        )
        db.session.add(student)
        db.session.flush()
        result['imported'] += 1

    db.session.commit()
    current_app.logger.info('Student import: %(imported)s imported, %(skipped)s skipped', result)
    return result


def import_menu_items(rows):
    validate_structure(rows, MENU_REQUIRED_COLUMNS)
    result = {'imported': 0, 'skipped': 0, 'errors': []}

    for index, row in enumerate(rows, start=2):
        name = sanitize_string(row.get('name'))
        category = sanitize_string(row.get('category'))
        error = None
        if not name:
            error = 'name is required'
        elif category not in MENU_CATEGORIES:
            error = f"category must be one of {', '.join(MENU_CATEGORIES)}"
        else:
            error = validate_price(row.get('price')) or validate_stock_quantity(row.get('stock_quantity'))
        if error:
            result['errors'].append({'row': index, 'error': error})
            continue

        if MenuItem.query.filter(db.func.lower(MenuItem.name) == name.lower()).first():
            result['skipped'] += 1
            continue

        stock = row.get('stock_quantity')
        calories = row.get('calories')
        db.session.add(MenuItem(
            name=name,
            description=sanitize_string(row.get('description')),
            price=parse_price(row.get('price')),
            category=category,
            allergens=[a.strip() for a in (row.get('allergens') or '').split(',') if a.strip()],
            is_vegetarian=_flag(row.get('is_vegetarian')),
            is_vegan=_flag(row.get('is_vegan')),
            is_gluten_free=_flag(row.get('is_gluten_free')),
            is_available=_flag(row.get('is_available'), default=True),
            stock_quantity=int(stock) if stock not in (None, '') else None,
            calories=int(calories) if calories and str(calories).isdigit() else None,
        ))
        result['imported'] += 1

    db.session.commit()
    current_app.logger.info('Menu import: %(imported)s imported, %(skipped)s skipped', result)
    return result


def student_rows(students):
    return [{
        'code': s.code,
        'first_name': s.first_name,
        'last_name': s.last_name,
        'grade_level': s.grade_level,
        'section': s.section or '',
        'allergies': s.allergies or '',
        'dietary_restrictions': s.dietary_restrictions or '',
        'parent_email': s.parent.user.email if s.parent and s.parent.user else '',
        'is_active': 'yes' if s.is_active else 'no',
    } for s in students]


def parent_rows(parents):
    return [{
        'user_id': p.user_id,
        'first_name': p.user.first_name,
        'last_name': p.user.last_name,
        'email': p.user.email,
        'phone': p.phone or '',
        'address': p.address or '',
        'balance': f'{p.balance:.2f}',
        'students': ', '.join(s.full_name for s in p.students),
        'is_active': 'yes' if p.user.is_active else 'no',
    } for p in parents]


def generate_csv(rows, columns):
    buffer = StringIO()
    writer = csv.DictWriter(buffer, fieldnames=columns, extrasaction='ignore')
    writer.writeheader()
    for row in rows:
        writer.writerow({c: '' if row.get(c) is None else row.get(c) for c in columns})
    return buffer.getvalue()


def generate_excel(rows, columns, title='Export'):
    wb = Workbook()
    ws = wb.active
    ws.title = title[:31]

    for col, header in enumerate(columns, 1):
        cell = ws.cell(row=1, column=col, value=header)
        cell.font = Font(bold=True)
        cell.fill = PatternFill(start_color="CCCCCC", end_color="CCCCCC", fill_type="solid")

    for row_index, row in enumerate(rows, 2):
        for col, key in enumerate(columns, 1):
            ws.cell(row=row_index, column=col, value=row.get(key))

    buffer = BytesIO()
    wb.save(buffer)
    buffer.seek(0)
    return buffer.getvalue()
