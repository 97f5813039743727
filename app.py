from datetime import date, datetime, timedelta
from functools import wraps
import os
import json
import time
import secrets
import qrcode
from io import BytesIO
import base64

import click
from flask import Flask, jsonify, request, send_file, send_from_directory, Response, abort
from flask_login import LoginManager, login_user, logout_user, login_required, current_user
from flask_wtf.csrf import CSRFProtect, CSRFError, generate_csrf
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from werkzeug.exceptions import HTTPException
from werkzeug.utils import secure_filename

from config import config
from models import (db, User, Role, Permission, Parent, Student, MenuItem, WeeklyMenu, Order, OrderItem,
                    ParentTransaction, Topup, Cart, CartItem, Notification,
                    MENU_CATEGORIES, MEAL_TYPE_MAX_ITEMS, ORDER_STATUS_FLOW, PAYMENT_METHODS,
                    TRANSACTION_REASONS, TOPUP_STATUSES, WEEKDAYS, money, utc_now)
from validators import (sanitize_string, sanitize_email, sanitize_phone, parse_price, validate_email,
                        validate_password, validate_strong_password, validate_required, validate_phone,
                        validate_price, validate_balance, validate_stock_quantity, validate_integer,
                        validate_length, validate_file_extension, first_error)
from wallet import (WalletError, place_order, place_weekly_order, cancel_order, approve_topup,
                    decline_topup, adjust_balance)
from weekly_cart import CartError, normalize_date, week_start_for
import weekly_cart
import weekly_menu
from weekly_menu import WeeklyMenuError
from import_export import (ImportFileError, parse_upload, import_students, import_menu_items, student_rows,
                           parent_rows, generate_csv, generate_excel, STUDENT_COLUMNS, PARENT_COLUMNS,
                           MENU_COLUMNS)
import reports

XLSX_MIMETYPE = 'application/vnd.openxmlformats-officedocument.spreadsheetml.sheet'

# Initialize Flask app
app = Flask(__name__)
app.config.from_object(config[os.environ.get('FLASK_CONFIG', 'default')])

# Initialize CSRF Protection
csrf = CSRFProtect(app)

# Initialize Rate Limiter for brute force protection (limits come from RATELIMIT_* settings)
limiter = Limiter(
    key_func=get_remote_address,
    app=app,
)

# Initialize extensions
db.init_app(app)
login_manager = LoginManager()
login_manager.init_app(app)


@login_manager.user_loader
def load_user(user_id):
    return db.session.get(User, int(user_id))


@login_manager.unauthorized_handler
def unauthorized():
    return jsonify({'success': False, 'error': 'Please log in first'}), 401


def format_currency(value):
    """Format as Philippine peso"""
    try:
        return f"{app.config.get('CURRENCY_SYMBOL', '₱')}{money(value):,.2f}"
    except (ValueError, TypeError, ArithmeticError):
        return value


# Permission decorator
def permission_required(permission):
    def decorator(f):
        @wraps(f)
        def decorated_function(*args, **kwargs):
            if not current_user.is_authenticated:
                return unauthorized()
            if not current_user.has_permission(permission):
                app.logger.warning('User %s denied %s (missing %s)', current_user.id, request.path, permission)
                return jsonify({'success': False, 'error': 'Access denied'}), 403
            return f(*args, **kwargs)
        return decorated_function
    return decorator


def role_required(*roles):
    def decorator(f):
        @wraps(f)
        def decorated_function(*args, **kwargs):
            if not current_user.is_authenticated:
                return unauthorized()
            if not any(current_user.has_role(role) for role in roles):
                app.logger.warning('User %s denied %s (needs role %s)', current_user.id, request.path,
                                   ', '.join(roles))
                return jsonify({'success': False, 'error': 'Access denied'}), 403
            return f(*args, **kwargs)
        return decorated_function
    return decorator


# Prevent caching for dynamic pages and add security headers
@app.after_request
def add_header(response):
    """Add headers to prevent caching for HTML pages and security headers"""
    if 'text/html' in response.content_type:
        response.headers['Cache-Control'] = 'no-cache, no-store, must-revalidate, private'
        response.headers['Pragma'] = 'no-cache'
        response.headers['Expires'] = '0'

    # Security headers
    response.headers['X-Content-Type-Options'] = 'nosniff'
    response.headers['X-Frame-Options'] = 'SAMEORIGIN'
    response.headers['X-XSS-Protection'] = '1; mode=block'
    response.headers['Referrer-Policy'] = 'strict-origin-when-cross-origin'

    return response


# ==================== ERROR HANDLERS ====================

@app.errorhandler(CSRFError)
def handle_csrf_error(e):
    return jsonify({'success': False, 'error': 'CSRF token missing or invalid'}), 400


@app.errorhandler(429)
def ratelimit_handler(e):
    """Custom handler for rate limit exceeded"""
    return jsonify({
        'success': False,
        'error': 'Too many requests. Please wait a moment and try again.'
    }), 429


@app.errorhandler(WalletError)
def handle_wallet_error(e):
    return jsonify(e.to_dict()), e.status


@app.errorhandler(CartError)
@app.errorhandler(WeeklyMenuError)
def handle_validation_error(e):
    return jsonify({'success': False, 'error': e.message}), e.status


@app.errorhandler(ImportFileError)
def handle_import_error(e):
    return jsonify({'success': False, 'error': str(e)}), 400


@app.errorhandler(400)
@app.errorhandler(403)
@app.errorhandler(404)
@app.errorhandler(405)
@app.errorhandler(409)
@app.errorhandler(413)
def handle_http_error(e):
    return jsonify({'success': False, 'error': e.description}), e.code


@app.errorhandler(500)
def internal_server_error(e):
    db.session.rollback()
    original = getattr(e, 'original_exception', None)
    if original is not None and not isinstance(original, HTTPException):
        app.logger.error('Unhandled error on %s: %s', request.path, original, exc_info=original)
    return jsonify({'success': False, 'error': 'Internal server error'}), 500


# ==================== HELPERS ====================

def get_payload():
    """JSON body, falling back to form fields"""
    data = request.get_json(silent=True)
    if data is None:
        data = request.form.to_dict()
    return data


def error_response(message, status=400):
    return jsonify({'success': False, 'error': message}), status


def to_int(value):
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def arg_flag(name):
    """Query-string boolean: True, False, or None when absent"""
    value = request.args.get(name)
    if value is None or value == '':
        return None
    return value.lower() in ('1', 'true', 'yes', 'on')


def parse_date_arg(name, default=None):
    value = request.args.get(name)
    if not value:
        return default
    try:
        return datetime.strptime(value[:10], '%Y-%m-%d').date()
    except ValueError:
        abort(400, description=f'Invalid {name}: {value}')


def landing_route(user):
    if user.is_admin:
        return '/admin/dashboard'
    if user.needs_onboarding:
        return '/parent/onboarding'
    return '/parent/dashboard'


def current_parent():
    parent = current_user.parent_profile
    if parent is None:
        abort(403, description='Parent account required')
    return parent


def student_to_dict(student):
    data = student.to_dict()
    data['parent_name'] = student.parent.user.full_name if student.parent and student.parent.user else None
    return data


def allowed_file(filename):
    """Check if file extension is allowed"""
    return '.' in filename and \
           filename.rsplit('.', 1)[1].lower() in app.config.get('ALLOWED_EXTENSIONS', {'png', 'jpg', 'jpeg', 'gif', 'webp'})


def save_uploaded_image(file, subfolder='menu'):
    """Save uploaded image and return the URL path"""
    if file and file.filename and allowed_file(file.filename):
        filename = secure_filename(file.filename)
        # Add timestamp to avoid duplicate names
        filename = f"{int(time.time())}_{filename}"

        upload_folder = app.config.get('UPLOAD_FOLDER', 'uploads')
        target_folder = os.path.join(upload_folder, subfolder)
        os.makedirs(target_folder, exist_ok=True)

        file.save(os.path.join(target_folder, filename))
        return f"/uploads/{subfolder}/{filename}"
    return None


def read_import_file():
    file = request.files.get('file')
    if not file or not file.filename:
        raise ImportFileError('No file uploaded')
    error = validate_file_extension(file.filename, app.config.get('IMPORT_EXTENSIONS', {'csv', 'xlsx'}))
    if error:
        raise ImportFileError(error)
    return parse_upload(file.filename, file.read())


def export_response(rows, columns, name):
    stamp = date.today().strftime('%Y%m%d')
    if request.args.get('format', 'csv') == 'xlsx':
        return send_file(
            BytesIO(generate_excel(rows, columns, title=name.title())),
            as_attachment=True,
            download_name=f'{name}_{stamp}.xlsx',
            mimetype=XLSX_MIMETYPE
        )
    return Response(
        generate_csv(rows, columns),
        mimetype='text/csv',
        headers={'Content-Disposition': f'attachment; filename={name}_{stamp}.csv'}
    )


def create_notification(type, title, message, user_id=None, data=None):
    """Helper function to create a notification"""
    notification = Notification(
        type=type,
        title=title,
        message=message,
        user_id=user_id,
        data=json.dumps(data) if data else None
    )
    db.session.add(notification)
    db.session.commit()
    return notification


# Generate QR Code for a student's link code
def generate_student_qr(student):
    qr = qrcode.QRCode(version=1, box_size=10, border=5)
    qr.add_data(student.code)
    qr.make(fit=True)

    img = qr.make_image(fill_color="black", back_color="white")

    # Save to file
    qr_folder = app.config.get('QR_CODE_FOLDER', 'static/qrcodes')
    os.makedirs(qr_folder, exist_ok=True)
    qr_path = os.path.join(qr_folder, f"student_{student.code}.png")
    img.save(qr_path)

    # Also return base64 for display
    buffered = BytesIO()
    img.save(buffered, format="PNG")
    img_str = base64.b64encode(buffered.getvalue()).decode()

    return qr_path, img_str


def paginate(query):
    page = to_int(request.args.get('page')) or 1
    per_page = min(to_int(request.args.get('per_page')) or 20, 100)
    pagination = query.paginate(page=page, per_page=per_page, error_out=False)
    return pagination, {
        'page': pagination.page,
        'per_page': pagination.per_page,
        'total': pagination.total,
        'pages': pagination.pages,
    }


# ==================== DATABASE INIT ====================

PERMISSIONS = [
    ('manage_students', 'Can manage students'),
    ('manage_parents', 'Can manage parents and wallets'),
    ('manage_menu', 'Can manage menu items'),
    ('manage_weekly_menu', 'Can plan and publish weekly menus'),
    ('manage_orders', 'Can process orders'),
    ('manage_topups', 'Can approve or decline top-ups'),
    ('view_reports', 'Can view reports and exports'),
    ('place_orders', 'Can order for linked students'),
    ('request_topups', 'Can request wallet top-ups'),
]

ROLES = {
    'admin': {
        'description': 'Canteen staff with full access',
        'permissions': [p[0] for p in PERMISSIONS if p[0] not in ('place_orders', 'request_topups')],
    },
    'parent': {
        'description': 'Parent ordering for linked students',
        'permissions': ['place_orders', 'request_topups'],
    },
}

SAMPLE_MENU = [
    ('Champorado', 'Chocolate rice porridge', '35.00', 'Breakfast', [], True),
    ('Tapsilog', 'Beef tapa, garlic rice and egg', '75.00', 'Breakfast', ['egg'], False),
    ('Pandesal with Cheese', 'Two soft rolls with cheese', '25.00', 'Breakfast', ['gluten', 'dairy'], True),
    ('Chicken Adobo Rice', 'Braised chicken with steamed rice', '85.00', 'Lunch', ['soy'], False),
    ('Pancit Canton', 'Stir-fried noodles with vegetables', '60.00', 'Lunch', ['gluten', 'soy'], False),
    ('Vegetable Lumpia', 'Fried spring rolls', '30.00', 'Snacks', ['gluten'], True),
    ('Banana Cue', 'Caramelized banana on a stick', '20.00', 'Snacks', [], True),
    ('Turon', 'Banana and jackfruit spring roll', '20.00', 'Snacks', ['gluten'], True),
    ('Calamansi Juice', 'Fresh calamansi juice', '20.00', 'Drinks', [], True),
    ('Fresh Milk', '250ml chilled milk', '30.00', 'Drinks', ['dairy'], True),
]


def seed_menu_items():
    if MenuItem.query.first():
        return
    for name, description, price, category, allergens, vegetarian in SAMPLE_MENU:
        db.session.add(MenuItem(
            name=name,
            description=description,
            price=money(price),
            category=category,
            allergens=allergens,
            is_vegetarian=vegetarian,
            is_available=True,
        ))
    db.session.commit()


def init_db():
    with app.app_context():
        db.create_all()

        for perm_name, perm_desc in PERMISSIONS:
            if not Permission.query.filter_by(name=perm_name).first():
                db.session.add(Permission(name=perm_name, description=perm_desc))
        db.session.commit()

        for role_name, role_data in ROLES.items():
            role = Role.query.filter_by(name=role_name).first()
            if not role:
                role = Role(name=role_name, description=role_data['description'])
                db.session.add(role)
                db.session.commit()

            for perm_name in role_data['permissions']:
                perm = Permission.query.filter_by(name=perm_name).first()
                if perm and perm not in role.permissions:
                    role.permissions.append(perm)
        db.session.commit()

        if not User.query.filter_by(username='admin').first():
            admin = User(
                username='admin',
                email='admin@canteen.local',
                first_name='Canteen',
                last_name='Admin',
                force_password_change=True,
            )
            admin.set_password(app.config.get('DEFAULT_ADMIN_PASSWORD', 'admin123'))
            admin.roles.append(Role.query.filter_by(name='admin').first())
            db.session.add(admin)
            db.session.commit()
            app.logger.info('Created default admin account')

        seed_menu_items()


def seed_demo():
    """Demo parent with a linked student, some credit and a published menu for this week and next"""
    with app.app_context():
        parent_user = User.query.filter_by(username='parent').first()
        if not parent_user:
            parent_user = User(username='parent', email='parent@example.com',
                               first_name='Maria', last_name='Santos')
            parent_user.set_password('parent123')
            parent_user.roles.append(Role.query.filter_by(name='parent').first())
            parent_user.parent_profile = Parent(phone='09171234567', address='Quezon City')
            db.session.add(parent_user)
            db.session.commit()
            adjust_balance(parent_user.id, money('1000.00'), None, 'Demo credit')

        if not Student.query.filter_by(parent_user_id=parent_user.id).first():
            db.session.add(Student(code=Student.generate_code(), parent_user_id=parent_user.id,
                                   first_name='Juan', last_name='Santos', grade_level='Grade 3',
                                   section='Sampaguita'))
            db.session.commit()

        items = MenuItem.query.all()
        by_meal = {}
        for item in items:
            by_meal.setdefault(item.meal_type, []).append(item.id)
        content = {
            day: {meal_type: ids[:MEAL_TYPE_MAX_ITEMS[meal_type]] for meal_type, ids in by_meal.items()}
            for day in WEEKDAYS[:5]
        }
        this_week = week_start_for(date.today())
        for week in (this_week, this_week + timedelta(days=7)):
            menu = WeeklyMenu.query.filter_by(week_start=week).first()
            if not menu:
                menu, _ = weekly_menu.save(week, content)
            if not menu.is_published:
                weekly_menu.publish(menu)


@app.cli.command('init-db')
def init_db_command():
    """Create tables, roles, permissions, the default admin and sample menu."""
    init_db()
    click.echo('Database initialized.')


@app.cli.command('seed-demo')
def seed_demo_command():
    """Add a demo parent, student and published weekly menus."""
    init_db()
    seed_demo()
    click.echo('Demo data created. Parent login: parent / parent123')


# ==================== ROUTES ====================

@app.route('/')
def index():
    data = {'success': True, 'app': app.config.get('APP_NAME', 'School Canteen')}
    if current_user.is_authenticated:
        data['redirect'] = landing_route(current_user)
    return jsonify(data)


@app.route('/api/csrf-token')
def api_csrf_token():
    return jsonify({'csrf_token': generate_csrf()})


@app.route('/login', methods=['POST'])
@limiter.limit("10 per minute")
def login():
    data = get_payload()
    identifier = sanitize_string(data.get('username') or data.get('email'))
    password = data.get('password') or ''
    remember = bool(data.get('remember', False))

    if not identifier or not password:
        return error_response('Username and password are required')

    user = User.query.filter(db.or_(User.username == identifier,
                                    User.email == identifier.lower())).first()

    if not user or not user.check_password(password):
        app.logger.warning('Failed login for %s from %s', identifier, request.remote_addr)
        return error_response('Invalid username or password', 401)

    if not user.is_active:
        return error_response('Your account has been deactivated. Contact the canteen office.', 403)

    login_user(user, remember=remember)
    user.last_login = utc_now()
    db.session.commit()

    redirect_to = '/change-password' if user.force_password_change else landing_route(user)
    return jsonify({
        'success': True,
        'user': user.to_dict(),
        'redirect': redirect_to,
        'force_password_change': user.force_password_change,
    })


@app.route('/register', methods=['POST'])
@limiter.limit("5 per minute")
def register():
    data = get_payload()
    first_name = sanitize_string(data.get('first_name'))
    last_name = sanitize_string(data.get('last_name'))
    email = sanitize_email(data.get('email'))
    username = sanitize_string(data.get('username')) or email
    password = data.get('password') or ''
    confirm_password = data.get('confirm_password')
    phone = sanitize_phone(data.get('phone'))

    error = first_error(
        validate_required(first_name, 'First name'),
        validate_required(last_name, 'Last name'),
        validate_email(email),
        validate_password(password),
        validate_phone(phone),
        validate_length(username, 'Username', max_length=80),
    )
    if error:
        return error_response(error)
    if confirm_password is not None and password != confirm_password:
        return error_response('Passwords do not match')
    if User.query.filter_by(email=email).first():
        return error_response('Email is already registered', 409)
    if User.query.filter_by(username=username).first():
        return error_response('Username is already taken', 409)

    try:
        user = User(
            username=username,
            email=email,
            first_name=first_name,
            last_name=last_name,
            needs_onboarding=True,
        )
        user.set_password(password)
        parent_role = Role.query.filter_by(name='parent').first()
        if parent_role:
            user.roles.append(parent_role)
        user.parent_profile = Parent(phone=phone or None, address=sanitize_string(data.get('address')) or None)
        db.session.add(user)
        db.session.commit()
    except Exception:
        db.session.rollback()
        app.logger.exception('Registration failed for %s', email)
        return error_response('Registration failed', 500)

    login_user(user)
    app.logger.info('Parent %s registered', user.id)
    return jsonify({'success': True, 'user': user.to_dict(), 'redirect': landing_route(user)}), 201


@app.route('/logout', methods=['POST'])
@login_required
def logout():
    logout_user()
    return jsonify({'success': True, 'redirect': '/login'})


@app.route('/change-password', methods=['POST'])
@login_required
def change_password():
    data = get_payload()
    current_password = data.get('current_password')
    new_password = data.get('new_password') or ''
    confirm_password = data.get('confirm_password')

    if not current_user.check_password(current_password):
        return error_response('Current password is incorrect')

    error = validate_strong_password(new_password)
    if error:
        return error_response(error)

    if confirm_password is not None and new_password != confirm_password:
        return error_response('New passwords do not match')

    current_user.set_password(new_password)
    current_user.force_password_change = False
    db.session.commit()

    return jsonify({'success': True, 'redirect': landing_route(current_user)})


@app.route('/api/me')
@login_required
def api_me():
    data = current_user.to_dict()
    data['permissions'] = sorted({p.name for r in current_user.roles for p in r.permissions})
    data['landing_route'] = landing_route(current_user)
    parent = current_user.parent_profile
    if parent:
        data['parent'] = parent.to_dict(include_students=True)
        data['balance'] = float(money(parent.balance))
    return jsonify({'success': True, 'user': data})


@app.route('/api/me', methods=['PUT'])
@login_required
def api_update_me():
    data = get_payload()
    error = first_error(
        validate_required(data['first_name'], 'First name') if 'first_name' in data else None,
        validate_required(data['last_name'], 'Last name') if 'last_name' in data else None,
        validate_phone(data.get('phone')),
    )
    if error:
        return error_response(error)

    if 'first_name' in data:
        current_user.first_name = sanitize_string(data['first_name'])
    if 'last_name' in data:
        current_user.last_name = sanitize_string(data['last_name'])
    parent = current_user.parent_profile
    if parent:
        if 'phone' in data:
            parent.phone = sanitize_phone(data['phone']) or None
        if 'address' in data:
            parent.address = sanitize_string(data['address']) or None
    db.session.commit()
    return jsonify({'success': True, 'user': current_user.to_dict()})


# ==================== DASHBOARDS ====================

@app.route('/admin/dashboard')
@login_required
@role_required('admin')
def admin_dashboard():
    data = reports.dashboard_payload()
    data['recent_orders'] = [o.to_dict() for o in
                             Order.query.order_by(Order.created_at.desc()).limit(10).all()]
    data['recent_topups'] = [t.to_dict() for t in
                             Topup.query.filter_by(status='pending').order_by(Topup.request_date).limit(10).all()]
    return jsonify({'success': True, 'dashboard': data})


@app.route('/parent/dashboard')
@login_required
@role_required('parent')
def parent_dashboard():
    parent = current_parent()
    upcoming = parent.orders.filter(
        Order.delivery_date >= date.today(),
        Order.status != 'cancelled'
    ).order_by(Order.delivery_date).limit(20).all()
    cart = weekly_cart.get_or_create_cart(parent)

    return jsonify({
        'success': True,
        'dashboard': {
            'parent': parent.to_dict(include_students=True),
            'balance': float(money(parent.balance)),
            'upcoming_orders': [o.to_dict() for o in upcoming],
            'cart': weekly_cart.summary(cart),
            'pending_topups': parent.topups.filter_by(status='pending').count(),
            'unread_notifications': Notification.query.filter_by(user_id=current_user.id, is_read=False).count(),
        }
    })


@app.route('/parent/onboarding')
@login_required
@role_required('parent')
def parent_onboarding():
    parent = current_parent()
    return jsonify({
        'success': True,
        'needs_onboarding': current_user.needs_onboarding,
        'students': [s.to_dict() for s in parent.students],
        'next_step': 'link_student' if current_user.needs_onboarding else None,
    })


# ==================== STUDENTS (ADMIN) ====================

@app.route('/admin/students')
@login_required
@permission_required('manage_students')
def admin_list_students():
    query = Student.query
    grade = request.args.get('grade')
    if grade:
        query = query.filter(Student.grade_level == grade)
    is_active = arg_flag('active')
    if is_active is not None:
        query = query.filter(Student.is_active.is_(is_active))
    parent_id = to_int(request.args.get('parent_id'))
    if parent_id:
        query = query.filter(Student.parent_user_id == parent_id)
    if arg_flag('unlinked'):
        query = query.filter(Student.parent_user_id.is_(None))
    search = sanitize_string(request.args.get('search'))
    if search:
        pattern = f'%{search}%'
        query = query.filter(db.or_(
            Student.first_name.ilike(pattern),
            Student.last_name.ilike(pattern),
            Student.code.ilike(pattern),
        ))

    students = query.order_by(Student.last_name, Student.first_name).all()
    return jsonify({'success': True, 'students': [student_to_dict(s) for s in students], 'total': len(students)})


@app.route('/admin/students', methods=['POST'])
@login_required
@permission_required('manage_students')
def admin_create_student():
    data = get_payload()
    first_name = sanitize_string(data.get('first_name'))
    last_name = sanitize_string(data.get('last_name'))
    grade_level = sanitize_string(data.get('grade_level'))

    error = first_error(
        validate_required(first_name, 'First name'),
        validate_required(last_name, 'Last name'),
        validate_required(grade_level, 'Grade level'),
    )
    if error:
        return error_response(error)
    if Student.find_duplicate(first_name, last_name, grade_level):
        return error_response(f'{first_name} {last_name} already exists in {grade_level}', 409)

    code = sanitize_string(data.get('code')).upper()
    if code and Student.query.filter_by(code=code).first():
        return error_response('Student code is already in use', 409)

    parent_id = to_int(data.get('parent_id'))
    if parent_id and not db.session.get(Parent, parent_id):
        return error_response('Parent not found', 404)

    student = Student(
        code=code or Student.generate_code(),
        first_name=first_name,
        last_name=last_name,
        grade_level=grade_level,
        section=sanitize_string(data.get('section')) or None,
        allergies=sanitize_string(data.get('allergies')) or None,
        dietary_restrictions=sanitize_string(data.get('dietary_restrictions')) or None,
        parent_user_id=parent_id,
        is_active=True,
    )
    db.session.add(student)
    if parent_id:
        db.session.get(User, parent_id).needs_onboarding = False
    db.session.commit()
    app.logger.info('Student %s (%s) created', student.id, student.code)
    return jsonify({'success': True, 'student': student_to_dict(student)}), 201


@app.route('/admin/students/<int:student_id>')
@login_required
@permission_required('manage_students')
def admin_get_student(student_id):
    student = db.get_or_404(Student, student_id)
    data = student_to_dict(student)
    data['order_count'] = student.orders.count()
    return jsonify({'success': True, 'student': data})


@app.route('/admin/students/<int:student_id>', methods=['PUT'])
@login_required
@permission_required('manage_students')
def admin_update_student(student_id):
    student = db.get_or_404(Student, student_id)
    data = get_payload()

    first_name = sanitize_string(data.get('first_name', student.first_name))
    last_name = sanitize_string(data.get('last_name', student.last_name))
    grade_level = sanitize_string(data.get('grade_level', student.grade_level))
    error = first_error(
        validate_required(first_name, 'First name'),
        validate_required(last_name, 'Last name'),
        validate_required(grade_level, 'Grade level'),
    )
    if error:
        return error_response(error)
    if Student.find_duplicate(first_name, last_name, grade_level, exclude_id=student.id):
        return error_response(f'{first_name} {last_name} already exists in {grade_level}', 409)

    if data.get('code'):
        code = sanitize_string(data['code']).upper()
        if code != student.code and Student.query.filter_by(code=code).first():
            return error_response('Student code is already in use', 409)
        student.code = code

    student.first_name = first_name
    student.last_name = last_name
    student.grade_level = grade_level
    for field in ('section', 'allergies', 'dietary_restrictions'):
        if field in data:
            setattr(student, field, sanitize_string(data[field]) or None)
    db.session.commit()
    return jsonify({'success': True, 'student': student_to_dict(student)})


@app.route('/admin/students/<int:student_id>', methods=['DELETE'])
@login_required
@permission_required('manage_students')
def admin_delete_student(student_id):
    student = db.get_or_404(Student, student_id)
    if student.orders.count():
        return error_response('Student has order history; deactivate instead', 409)

    try:
        CartItem.query.filter_by(student_id=student.id).delete(synchronize_session=False)
        Topup.query.filter_by(student_id=student.id).update({'student_id': None}, synchronize_session=False)
        db.session.delete(student)
        db.session.commit()
    except Exception:
        db.session.rollback()
        app.logger.exception('Deleting student %s failed', student_id)
        return error_response('Could not delete student', 500)
    return jsonify({'success': True})


@app.route('/admin/students/<int:student_id>/toggle', methods=['POST'])
@login_required
@permission_required('manage_students')
def admin_toggle_student(student_id):
    student = db.get_or_404(Student, student_id)
    student.is_active = not student.is_active
    db.session.commit()
    return jsonify({'success': True, 'is_active': student.is_active})


@app.route('/admin/students/<int:student_id>/assign', methods=['POST'])
@login_required
@permission_required('manage_students')
def admin_assign_student(student_id):
    student = db.get_or_404(Student, student_id)
    parent_id = to_int(get_payload().get('parent_id'))
    if parent_id:
        parent = db.session.get(Parent, parent_id)
        if not parent:
            return error_response('Parent not found', 404)
        student.parent_user_id = parent.user_id
        parent.user.needs_onboarding = False
    else:
        student.parent_user_id = None
        CartItem.query.filter_by(student_id=student.id).delete(synchronize_session=False)
    db.session.commit()
    return jsonify({'success': True, 'student': student_to_dict(student)})


@app.route('/admin/students/<int:student_id>/qr')
@login_required
@permission_required('manage_students')
def admin_student_qr(student_id):
    student = db.get_or_404(Student, student_id)
    qr_path, img_str = generate_student_qr(student)
    if request.args.get('format') == 'png':
        return send_file(BytesIO(base64.b64decode(img_str)), mimetype='image/png',
                         download_name=f'student_{student.code}.png')
    return jsonify({'success': True, 'code': student.code, 'qr_code': img_str, 'path': qr_path})


@app.route('/admin/students/import', methods=['POST'])
@login_required
@permission_required('manage_students')
def admin_import_students():
    result = import_students(read_import_file())
    return jsonify({'success': True, **result})


@app.route('/admin/students/export')
@login_required
@permission_required('manage_students')
def admin_export_students():
    students = Student.query.order_by(Student.grade_level, Student.last_name, Student.first_name).all()
    return export_response(student_rows(students), STUDENT_COLUMNS, 'students')


# ==================== STUDENTS (PARENT) ====================

@app.route('/api/students')
@login_required
@role_required('parent')
def api_my_students():
    parent = current_parent()
    return jsonify({'success': True, 'students': [s.to_dict() for s in parent.students]})


def _own_student_or_404(parent, student_id):
    student = db.session.get(Student, student_id)
    if not student or student.parent_user_id != parent.user_id:
        abort(404, description='Student not found')
    return student


@app.route('/api/students/link', methods=['POST'])
@login_required
@role_required('parent')
def api_link_student():
    parent = current_parent()
    code = sanitize_string(get_payload().get('code')).upper()
    if not code:
        return error_response('Student code is required')

    student = Student.query.filter_by(code=code).first()
    if not student:
        return error_response('No student found with that code', 404)
    if not student.is_active:
        return error_response('This student is not active')
    if student.parent_user_id == parent.user_id:
        return error_response('This student is already linked to your account', 409)
    if student.parent_user_id is not None:
        app.logger.warning('Parent %s tried to link student %s owned by another parent', parent.user_id, student.id)
        return error_response('This student is already linked to another parent', 409)

    student.parent_user_id = parent.user_id
    current_user.needs_onboarding = False
    db.session.commit()
    app.logger.info('Parent %s linked student %s', parent.user_id, student.id)
    return jsonify({'success': True, 'student': student.to_dict(), 'redirect': landing_route(current_user)})


@app.route('/api/students/<int:student_id>', methods=['PUT'])
@login_required
@role_required('parent')
def api_update_my_student(student_id):
    parent = current_parent()
    student = _own_student_or_404(parent, student_id)
    data = get_payload()
    for field in ('section', 'allergies', 'dietary_restrictions'):
        if field in data:
            setattr(student, field, sanitize_string(data[field]) or None)
    db.session.commit()
    return jsonify({'success': True, 'student': student.to_dict()})


@app.route('/api/students/<int:student_id>/unlink', methods=['POST'])
@login_required
@role_required('parent')
def api_unlink_student(student_id):
    parent = current_parent()
    student = _own_student_or_404(parent, student_id)
    if student.orders.filter(Order.status.in_(['pending', 'confirmed', 'preparing', 'ready'])).count():
        return error_response('Student has open orders; cancel or wait for them first', 409)

    student.parent_user_id = None
    CartItem.query.filter_by(student_id=student.id).delete(synchronize_session=False)
    db.session.commit()
    return jsonify({'success': True})


# ==================== PARENTS (ADMIN) ====================

@app.route('/admin/parents')
@login_required
@permission_required('manage_parents')
def admin_list_parents():
    query = Parent.query.join(User)
    is_active = arg_flag('active')
    if is_active is not None:
        query = query.filter(User.is_active.is_(is_active))
    search = sanitize_string(request.args.get('search'))
    if search:
        pattern = f'%{search}%'
        query = query.filter(db.or_(
            User.first_name.ilike(pattern),
            User.last_name.ilike(pattern),
            User.email.ilike(pattern),
        ))
    parents = query.order_by(User.last_name, User.first_name).all()
    return jsonify({'success': True, 'parents': [p.to_dict(include_students=True) for p in parents],
                    'total': len(parents)})


@app.route('/admin/parents', methods=['POST'])
@login_required
@permission_required('manage_parents')
def admin_create_parent():
    data = get_payload()
    first_name = sanitize_string(data.get('first_name'))
    last_name = sanitize_string(data.get('last_name'))
    email = sanitize_email(data.get('email'))
    username = sanitize_string(data.get('username')) or email
    phone = sanitize_phone(data.get('phone'))
    raw_balance = data.get('initial_balance')
    initial_balance = money(parse_price(raw_balance) or 0)

    error = first_error(
        validate_required(first_name, 'First name'),
        validate_required(last_name, 'Last name'),
        validate_email(email),
        validate_phone(phone),
        validate_password(data['password']) if data.get('password') else None,
        validate_balance(raw_balance) if raw_balance not in (None, '') else None,
    )
    if error:
        return error_response(error)
    if User.query.filter(db.or_(User.email == email, User.username == username)).first():
        return error_response('A user with that email or username already exists', 409)

    student_ids = [i for i in (to_int(s) for s in data.get('student_ids') or []) if i]
    students = Student.query.filter(Student.id.in_(student_ids)).all() if student_ids else []
    if any(s.parent_user_id for s in students):
        return error_response('One of the students is already linked to another parent', 409)

    password = data.get('password')
    temporary_password = None
    if not password:
        temporary_password = password = secrets.token_urlsafe(8)

    try:
        user = User(
            username=username,
            email=email,
            first_name=first_name,
            last_name=last_name,
            needs_onboarding=not students,
            force_password_change=temporary_password is not None,
        )
        user.set_password(password)
        user.roles.append(Role.query.filter_by(name='parent').first())
        user.parent_profile = Parent(phone=phone or None, address=sanitize_string(data.get('address')) or None)
        db.session.add(user)
        db.session.flush()
        for student in students:
            student.parent_user_id = user.id
        db.session.commit()
    except Exception:
        db.session.rollback()
        app.logger.exception('Creating parent %s failed', email)
        return error_response('Could not create parent', 500)

    if initial_balance > 0:
        adjust_balance(user.id, initial_balance, current_user.id, 'Initial balance')

    response = {'success': True, 'parent': user.parent_profile.to_dict(include_students=True)}
    if temporary_password:
        response['temporary_password'] = temporary_password
    return jsonify(response), 201


@app.route('/admin/parents/<int:parent_id>')
@login_required
@permission_required('manage_parents')
def admin_get_parent(parent_id):
    parent = db.get_or_404(Parent, parent_id)
    data = parent.to_dict(include_students=True)
    data['recent_transactions'] = [t.to_dict() for t in
                                   parent.transactions.order_by(ParentTransaction.created_at.desc()).limit(10)]
    data['pending_orders'] = parent.orders.filter_by(status='pending').count()
    return jsonify({'success': True, 'parent': data})


@app.route('/admin/parents/<int:parent_id>', methods=['PUT'])
@login_required
@permission_required('manage_parents')
def admin_update_parent(parent_id):
    parent = db.get_or_404(Parent, parent_id)
    user = parent.user
    data = get_payload()

    if 'email' in data:
        email = sanitize_email(data['email'])
        error = validate_email(email)
        if error:
            return error_response(error)
        if email != user.email and User.query.filter_by(email=email).first():
            return error_response('Email is already registered', 409)
        user.email = email
    error = first_error(
        validate_required(data['first_name'], 'First name') if 'first_name' in data else None,
        validate_required(data['last_name'], 'Last name') if 'last_name' in data else None,
        validate_phone(data.get('phone')),
    )
    if error:
        return error_response(error)

    if 'first_name' in data:
        user.first_name = sanitize_string(data['first_name'])
    if 'last_name' in data:
        user.last_name = sanitize_string(data['last_name'])
    if 'phone' in data:
        parent.phone = sanitize_phone(data['phone']) or None
    if 'address' in data:
        parent.address = sanitize_string(data['address']) or None
    db.session.commit()
    return jsonify({'success': True, 'parent': parent.to_dict(include_students=True)})


@app.route('/admin/parents/<int:parent_id>/toggle', methods=['POST'])
@login_required
@permission_required('manage_parents')
def admin_toggle_parent(parent_id):
    parent = db.get_or_404(Parent, parent_id)
    parent.user.is_active = not parent.user.is_active
    db.session.commit()
    app.logger.info('Parent %s %s', parent_id, 'activated' if parent.user.is_active else 'deactivated')
    return jsonify({'success': True, 'is_active': parent.user.is_active})


@app.route('/admin/parents/<int:parent_id>', methods=['DELETE'])
@login_required
@permission_required('manage_parents')
def admin_delete_parent(parent_id):
    parent = db.get_or_404(Parent, parent_id)
    if money(parent.balance) != 0:
        return error_response('Parent still has a wallet balance', 409)
    if parent.orders.filter_by(status='pending').count():
        return error_response('Parent has pending orders', 409)
    if parent.orders.count():
        return error_response('Parent has order history; deactivate instead', 409)

    try:
        Student.query.filter_by(parent_user_id=parent_id).update({'parent_user_id': None}, synchronize_session=False)
        ParentTransaction.query.filter_by(parent_id=parent_id).delete(synchronize_session=False)
        Topup.query.filter_by(parent_id=parent_id).delete(synchronize_session=False)
        Notification.query.filter_by(user_id=parent_id).delete(synchronize_session=False)
        cart = Cart.query.filter_by(parent_id=parent_id).first()
        if cart:
            db.session.delete(cart)
        db.session.delete(parent.user)
        db.session.commit()
    except Exception:
        db.session.rollback()
        app.logger.exception('Deleting parent %s failed', parent_id)
        return error_response('Could not delete parent', 500)

    app.logger.info('Parent %s deleted by %s', parent_id, current_user.id)
    return jsonify({'success': True})


@app.route('/admin/parents/<int:parent_id>/adjust-balance', methods=['POST'])
@login_required
@permission_required('manage_parents')
def admin_adjust_balance(parent_id):
    db.get_or_404(Parent, parent_id)
    data = get_payload()
    amount = parse_price(data.get('amount'))
    reason = sanitize_string(data.get('reason') or data.get('description'))
    if amount is None:
        return error_response('Amount must be a number')
    if not reason:
        return error_response('Reason is required')

    transaction = adjust_balance(parent_id, amount, current_user.id, reason)
    create_notification('balance_adjusted', 'Wallet adjusted',
                        f'Your wallet was adjusted by {format_currency(amount)}: {reason}',
                        user_id=parent_id, data={'transaction_id': transaction.id})
    return jsonify({'success': True, 'transaction': transaction.to_dict(),
                    'balance': transaction.to_dict()['balance_after']})


@app.route('/admin/parents/<int:parent_id>/transactions')
@login_required
@permission_required('manage_parents')
def admin_parent_transactions(parent_id):
    db.get_or_404(Parent, parent_id)
    query = ParentTransaction.query.filter_by(parent_id=parent_id)
    reason = request.args.get('reason')
    if reason:
        query = query.filter_by(reason=reason)
    pagination, meta = paginate(query.order_by(ParentTransaction.created_at.desc(), ParentTransaction.id.desc()))
    return jsonify({'success': True, 'transactions': [t.to_dict() for t in pagination.items], **meta})


@app.route('/admin/parents/export')
@login_required
@permission_required('manage_parents')
def admin_export_parents():
    parents = Parent.query.join(User).order_by(User.last_name, User.first_name).all()
    return export_response(parent_rows(parents), PARENT_COLUMNS, 'parents')


# ==================== MENU ====================

def menu_item_errors(data, item=None):
    """Validate create (item is None) or partial update payloads"""
    def present(field):
        return item is None or field in data

    return first_error(
        validate_required(data.get('name'), 'Name') if present('name') else None,
        validate_price(data.get('price')) if present('price') else None,
        (None if data.get('category') in MENU_CATEGORIES
         else f"Category must be one of {', '.join(MENU_CATEGORIES)}") if present('category') else None,
        validate_stock_quantity(data.get('stock_quantity')),
        validate_integer(data['calories'], 'Calories') if data.get('calories') not in (None, '') else None,
    )


def _parse_flag(value):
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in ('1', 'true', 'yes', 'on')


def apply_menu_item_fields(item, data):
    if 'name' in data:
        item.name = sanitize_string(data['name'])
    if 'description' in data:
        item.description = sanitize_string(data['description'])
    if 'price' in data:
        item.price = money(parse_price(data['price']))
    if 'category' in data:
        item.category = data['category']
    if 'allergens' in data:
        allergens = data['allergens']
        if isinstance(allergens, str):
            allergens = allergens.split(',')
        item.allergens = [sanitize_string(a) for a in allergens or [] if sanitize_string(a)]
    for flag in ('is_vegetarian', 'is_vegan', 'is_gluten_free', 'is_available'):
        if flag in data:
            setattr(item, flag, _parse_flag(data[flag]))
    if 'stock_quantity' in data:
        stock = data['stock_quantity']
        item.stock_quantity = int(str(stock).strip()) if stock not in (None, '') else None
    if 'calories' in data:
        calories = data['calories']
        item.calories = int(str(calories).strip()) if calories not in (None, '') else None


@app.route('/api/menu')
def api_menu():
    query = MenuItem.query.filter_by(is_available=True)
    category = request.args.get('category')
    if category:
        query = query.filter_by(category=category)
    for flag in ('is_vegetarian', 'is_vegan', 'is_gluten_free'):
        if arg_flag(flag.replace('is_', '')) or arg_flag(flag):
            query = query.filter(getattr(MenuItem, flag).is_(True))
    search = sanitize_string(request.args.get('search'))
    if search:
        query = query.filter(MenuItem.name.ilike(f'%{search}%'))
    items = query.order_by(MenuItem.category, MenuItem.name).all()
    return jsonify({'success': True, 'items': [item.to_dict() for item in items]})


@app.route('/api/menu/<int:item_id>')
def api_menu_item(item_id):
    item = db.get_or_404(MenuItem, item_id)
    return jsonify({'success': True, 'item': item.to_dict()})


@app.route('/admin/menu')
@login_required
@permission_required('manage_menu')
def admin_list_menu():
    query = MenuItem.query
    category = request.args.get('category')
    if category:
        query = query.filter_by(category=category)
    available = arg_flag('available')
    if available is not None:
        query = query.filter(MenuItem.is_available.is_(available))
    items = query.order_by(MenuItem.category, MenuItem.name).all()
    return jsonify({'success': True, 'items': [item.to_dict() for item in items]})


@app.route('/admin/menu', methods=['POST'])
@login_required
@permission_required('manage_menu')
def admin_create_menu_item():
    data = get_payload()
    error = menu_item_errors(data)
    if error:
        return error_response(error)

    image = request.files.get('image')
    if image and image.filename and not allowed_file(image.filename):
        return error_response('Unsupported image type')

    item = MenuItem(is_available=True, allergens=[])
    apply_menu_item_fields(item, data)
    if image and image.filename:
        item.image_url = save_uploaded_image(image)
    db.session.add(item)
    db.session.commit()
    app.logger.info('Menu item %s created', item.id)
    return jsonify({'success': True, 'item': item.to_dict()}), 201


@app.route('/admin/menu/<int:item_id>', methods=['PUT'])
@login_required
@permission_required('manage_menu')
def admin_update_menu_item(item_id):
    item = db.get_or_404(MenuItem, item_id)
    data = get_payload()
    error = menu_item_errors(data, item)
    if error:
        return error_response(error)
    apply_menu_item_fields(item, data)
    db.session.commit()
    return jsonify({'success': True, 'item': item.to_dict()})


@app.route('/admin/menu/<int:item_id>', methods=['DELETE'])
@login_required
@permission_required('manage_menu')
def admin_delete_menu_item(item_id):
    item = db.get_or_404(MenuItem, item_id)
    try:
        # order lines keep their name/price snapshot
        OrderItem.query.filter_by(menu_item_id=item.id).update({'menu_item_id': None}, synchronize_session=False)
        weekly_menu.remove_menu_item(item.id)
        db.session.delete(item)
        db.session.commit()
    except Exception:
        db.session.rollback()
        app.logger.exception('Deleting menu item %s failed', item_id)
        return error_response('Could not delete menu item', 500)
    return jsonify({'success': True})


@app.route('/admin/menu/<int:item_id>/toggle', methods=['POST'])
@login_required
@permission_required('manage_menu')
def admin_toggle_menu_item(item_id):
    """Toggle menu item availability"""
    item = db.get_or_404(MenuItem, item_id)
    item.is_available = not item.is_available
    db.session.commit()
    return jsonify({'success': True, 'is_available': item.is_available})


@app.route('/admin/menu/<int:item_id>/image', methods=['POST'])
@login_required
@permission_required('manage_menu')
def admin_upload_menu_image(item_id):
    item = db.get_or_404(MenuItem, item_id)
    image = request.files.get('image')
    if not image or not image.filename:
        return error_response('No image uploaded')
    image_url = save_uploaded_image(image)
    if not image_url:
        return error_response('Unsupported image type')
    item.image_url = image_url
    db.session.commit()
    return jsonify({'success': True, 'image_url': image_url})


@app.route('/admin/menu/import', methods=['POST'])
@login_required
@permission_required('manage_menu')
def admin_import_menu():
    result = import_menu_items(read_import_file())
    return jsonify({'success': True, **result})


@app.route('/admin/menu/export')
@login_required
@permission_required('manage_menu')
def admin_export_menu():
    items = MenuItem.query.order_by(MenuItem.category, MenuItem.name).all()
    rows = []
    for item in items:
        row = item.to_dict()
        row['allergens'] = ', '.join(row['allergens'])
        rows.append(row)
    return export_response(rows, MENU_COLUMNS, 'menu')


# ==================== WEEKLY MENUS ====================

@app.route('/admin/weekly-menus')
@login_required
@permission_required('manage_weekly_menu')
def admin_get_weekly_menu():
    day = parse_date_arg('date', date.today())
    menu = weekly_menu.get_for_week(day)
    return jsonify({'success': True, 'week_start': week_start_for(day).isoformat(),
                    'menu': menu.to_dict() if menu else None})


@app.route('/admin/weekly-menus/history')
@login_required
@permission_required('manage_weekly_menu')
def admin_weekly_menu_history():
    limit = min(to_int(request.args.get('limit')) or 10, 100)
    return jsonify({'success': True, 'menus': [m.to_dict() for m in weekly_menu.history(limit)]})


@app.route('/admin/weekly-menus', methods=['PUT'])
@login_required
@permission_required('manage_weekly_menu')
def admin_save_weekly_menu():
    data = get_payload()
    menu, warnings = weekly_menu.save(normalize_date(data.get('week_start')), data.get('menu_items_by_day'))
    return jsonify({'success': True, 'menu': menu.to_dict(), 'warnings': warnings})


@app.route('/admin/weekly-menus/<int:menu_id>/publish', methods=['POST'])
@login_required
@permission_required('manage_weekly_menu')
def admin_publish_weekly_menu(menu_id):
    menu = weekly_menu.get_or_404(menu_id)
    content = (request.get_json(silent=True) or {}).get('menu_items_by_day')
    weekly_menu.publish(menu, current_user.id, content)
    return jsonify({'success': True, 'menu': menu.to_dict()})


@app.route('/admin/weekly-menus/<int:menu_id>/unpublish', methods=['POST'])
@login_required
@permission_required('manage_weekly_menu')
def admin_unpublish_weekly_menu(menu_id):
    menu = weekly_menu.unpublish(weekly_menu.get_or_404(menu_id))
    return jsonify({'success': True, 'menu': menu.to_dict()})


@app.route('/admin/weekly-menus/<int:menu_id>/archive', methods=['POST'])
@login_required
@permission_required('manage_weekly_menu')
def admin_archive_weekly_menu(menu_id):
    menu = weekly_menu.archive(weekly_menu.get_or_404(menu_id))
    return jsonify({'success': True, 'menu': menu.to_dict()})


@app.route('/admin/weekly-menus/<int:menu_id>/versions')
@login_required
@permission_required('manage_weekly_menu')
def admin_weekly_menu_versions(menu_id):
    menu = weekly_menu.get_or_404(menu_id)
    return jsonify({'success': True, 'versions': [v.to_dict() for v in weekly_menu.versions(menu)]})


@app.route('/admin/weekly-menus/<int:menu_id>/revert', methods=['POST'])
@login_required
@permission_required('manage_weekly_menu')
def admin_revert_weekly_menu(menu_id):
    version = to_int(get_payload().get('version'))
    if version is None:
        return error_response('Version is required')
    menu = weekly_menu.revert(weekly_menu.get_or_404(menu_id), version)
    return jsonify({'success': True, 'menu': menu.to_dict()})


@app.route('/admin/weekly-menus/copy-previous', methods=['POST'])
@login_required
@permission_required('manage_weekly_menu')
def admin_copy_previous_weekly_menu():
    menu = weekly_menu.copy_from_previous_week(normalize_date(get_payload().get('week_start')))
    return jsonify({'success': True, 'menu': menu.to_dict()})


@app.route('/admin/weekly-menus/<int:menu_id>', methods=['DELETE'])
@login_required
@permission_required('manage_weekly_menu')
def admin_delete_weekly_menu(menu_id):
    weekly_menu.delete(weekly_menu.get_or_404(menu_id))
    return jsonify({'success': True})


@app.route('/api/weekly-menu')
@login_required
def api_weekly_menu():
    day = parse_date_arg('date', date.today())
    return jsonify({'success': True, 'week_start': week_start_for(day).isoformat(),
                    'menu': weekly_menu.resolved_menu(day)})


@app.route('/api/weekly-menu/availability', methods=['POST'])
@login_required
def api_weekly_menu_availability():
    data = get_payload()
    ids = [i for i in (to_int(v) for v in data.get('menu_item_ids') or []) if i is not None]
    return jsonify({'success': True, **weekly_menu.check_availability(data.get('date'), ids)})


# ==================== WEEKLY CART ====================

@app.route('/api/cart')
@login_required
@role_required('parent')
def api_get_cart():
    """Get current cart items"""
    cart = weekly_cart.get_or_create_cart(current_parent())
    return jsonify({'success': True, 'cart': weekly_cart.cart_to_dict(cart)})


@app.route('/api/cart/add', methods=['POST'])
@login_required
@role_required('parent')
def api_add_to_cart():
    """Add item to cart"""
    parent = current_parent()
    data = get_payload()
    weekly_cart.add_item(
        parent,
        menu_item_id=to_int(data.get('menu_item_id')),
        delivery_date=data.get('delivery_date'),
        quantity=data.get('quantity', 1),
        student_id=to_int(data.get('student_id')),
        meal_type=data.get('meal_type'),
        time_slot=data.get('time_slot') or None,
    )
    cart = weekly_cart.get_or_create_cart(parent)
    return jsonify({'success': True, 'cart': weekly_cart.cart_to_dict(cart)})


@app.route('/api/cart/update/<int:item_id>', methods=['PUT'])
@login_required
@role_required('parent')
def api_update_cart_item(item_id):
    """Update cart item quantity"""
    cart = weekly_cart.update_quantity(current_parent(), item_id, get_payload().get('quantity'))
    return jsonify({'success': True, 'cart': weekly_cart.cart_to_dict(cart)})


@app.route('/api/cart/remove/<int:item_id>', methods=['DELETE'])
@login_required
@role_required('parent')
def api_remove_cart_item(item_id):
    """Remove item from cart"""
    cart = weekly_cart.remove_item(current_parent(), item_id)
    return jsonify({'success': True, 'cart': weekly_cart.cart_to_dict(cart)})


@app.route('/api/cart/day/<day>', methods=['DELETE'])
@login_required
@role_required('parent')
def api_clear_cart_day(day):
    cart = weekly_cart.clear_day(current_parent(), day)
    return jsonify({'success': True, 'cart': weekly_cart.cart_to_dict(cart)})


@app.route('/api/cart/clear', methods=['DELETE'])
@login_required
@role_required('parent')
def api_clear_cart():
    """Clear all items from cart"""
    cart = weekly_cart.clear_week(current_parent())
    return jsonify({'success': True, 'cart': weekly_cart.cart_to_dict(cart)})


@app.route('/api/cart/copy-day', methods=['POST'])
@login_required
@role_required('parent')
def api_copy_cart_day():
    parent = current_parent()
    data = get_payload()
    target_dates = data.get('target_dates') or []
    if not isinstance(target_dates, list):
        return error_response('target_dates must be a list of dates')
    result = weekly_cart.copy_day(parent, data.get('source_date'), target_dates)
    cart = weekly_cart.get_or_create_cart(parent)
    return jsonify({'success': True, **result, 'cart': weekly_cart.cart_to_dict(cart)})


@app.route('/api/cart/summary')
@login_required
@role_required('parent')
def api_cart_summary():
    cart = weekly_cart.get_or_create_cart(current_parent())
    return jsonify({'success': True, 'summary': weekly_cart.summary(cart)})


@app.route('/api/cart/checkout', methods=['POST'])
@login_required
@role_required('parent')
@limiter.limit("30 per minute")
def api_checkout_cart():
    result = place_weekly_order(current_user.id, current_user.id)
    create_notification('order_new', 'New weekly order',
                        f'{current_user.full_name} placed {len(result["order_ids"])} order(s) '
                        f'totalling {format_currency(result["total"])}',
                        data={'order_ids': result['order_ids']})
    return jsonify({'success': True, **result}), 201


# ==================== WALLET ====================

@app.route('/api/wallet')
@login_required
@role_required('parent')
def api_wallet():
    parent = current_parent()
    recent = parent.transactions.order_by(ParentTransaction.created_at.desc(),
                                          ParentTransaction.id.desc()).limit(10).all()
    return jsonify({
        'success': True,
        'balance': float(money(parent.balance)),
        'currency': app.config.get('CURRENCY_SYMBOL', '₱'),
        'transactions': [t.to_dict() for t in recent],
    })


@app.route('/api/wallet/transactions')
@login_required
@role_required('parent')
def api_wallet_transactions():
    parent = current_parent()
    query = ParentTransaction.query.filter_by(parent_id=parent.user_id)
    reason = request.args.get('reason')
    if reason:
        if reason not in TRANSACTION_REASONS:
            return error_response(f'Unknown reason: {reason}')
        query = query.filter_by(reason=reason)
    pagination, meta = paginate(query.order_by(ParentTransaction.created_at.desc(), ParentTransaction.id.desc()))
    return jsonify({'success': True, 'transactions': [t.to_dict() for t in pagination.items], **meta})


@app.route('/api/wallet/transactions/export')
@login_required
@role_required('parent')
def api_export_transactions():
    parent = current_parent()
    transactions = parent.transactions.order_by(ParentTransaction.created_at.desc()).all()
    return send_file(
        reports.export_transactions_excel(parent, transactions),
        as_attachment=True,
        download_name=f'transactions_{date.today():%Y%m%d}.xlsx',
        mimetype=XLSX_MIMETYPE
    )


# ==================== ORDERS (PARENT) ====================

def filter_orders(query):
    status = request.args.get('status')
    if status:
        query = query.filter(Order.status == status)
    day = parse_date_arg('date')
    if day:
        query = query.filter(Order.delivery_date == day)
    start_date = parse_date_arg('start_date')
    if start_date:
        query = query.filter(Order.delivery_date >= start_date)
    end_date = parse_date_arg('end_date')
    if end_date:
        query = query.filter(Order.delivery_date <= end_date)
    student_id = to_int(request.args.get('student_id'))
    if student_id:
        query = query.filter(Order.student_id == student_id)
    return query


@app.route('/api/orders')
@login_required
@role_required('parent')
def api_my_orders():
    parent = current_parent()
    query = filter_orders(Order.query.filter_by(parent_id=parent.user_id))
    orders = query.order_by(Order.delivery_date.desc(), Order.created_at.desc()).all()
    return jsonify({'success': True, 'orders': [o.to_dict() for o in orders]})


@app.route('/api/orders/<int:order_id>')
@login_required
@role_required('parent')
def api_my_order(order_id):
    parent = current_parent()
    order = db.session.get(Order, order_id)
    if not order or order.parent_id != parent.user_id:
        abort(404, description='Order not found')
    return jsonify({'success': True, 'order': order.to_dict()})


@app.route('/api/orders', methods=['POST'])
@login_required
@role_required('parent')
@limiter.limit("30 per minute")
def api_place_order():
    data = get_payload()
    items = data.get('items')
    if not isinstance(items, list) or not items:
        return error_response('Order must contain at least one item')

    result = place_order(
        current_user.id,
        current_user.id,
        to_int(data.get('student_id')),
        items,
        data.get('delivery_date'),
        delivery_time=sanitize_string(data.get('delivery_time')) or None,
        special_instructions=sanitize_string(data.get('special_instructions')) or None,
    )
    create_notification('order_new', 'New order',
                        f'Order {result["order_number"]} from {current_user.full_name}',
                        data={'order_id': result['order_id']})
    return jsonify({'success': True, **result}), 201


@app.route('/api/orders/<int:order_id>/cancel', methods=['POST'])
@login_required
@role_required('parent')
def api_cancel_my_order(order_id):
    order = cancel_order(order_id, current_user)
    return jsonify({'success': True, 'order': order.to_dict(),
                    'balance': float(money(current_parent().balance))})


# ==================== ORDERS (ADMIN) ====================

@app.route('/admin/orders')
@login_required
@permission_required('manage_orders')
def admin_list_orders():
    query = filter_orders(Order.query)
    parent_id = to_int(request.args.get('parent_id'))
    if parent_id:
        query = query.filter(Order.parent_id == parent_id)
    limit = min(to_int(request.args.get('limit')) or 100, 500)
    orders = query.order_by(Order.created_at.desc()).limit(limit).all()
    return jsonify({'success': True, 'orders': [o.to_dict() for o in orders]})


@app.route('/admin/orders/<int:order_id>')
@login_required
@permission_required('manage_orders')
def admin_get_order(order_id):
    order = db.get_or_404(Order, order_id)
    data = order.to_dict()
    data['parent_name'] = order.parent.user.full_name if order.parent and order.parent.user else None
    return jsonify({'success': True, 'order': data})


def notify_order_status(order):
    create_notification('order_status', f'Order {order.status}',
                        f'Order {order.order_number} for {order.student.full_name if order.student else "your child"} '
                        f'is now {order.status}',
                        user_id=order.parent_id, data={'order_id': order.id, 'status': order.status})


@app.route('/admin/orders/<int:order_id>/status', methods=['PUT'])
@login_required
@permission_required('manage_orders')
def admin_update_order_status(order_id):
    order = db.get_or_404(Order, order_id)
    new_status = get_payload().get('status')

    if new_status == 'cancelled':
        order = cancel_order(order_id, current_user)
        notify_order_status(order)
        return jsonify({'success': True, 'order': order.to_dict()})

    if new_status not in ORDER_STATUS_FLOW:
        return error_response(f'Unknown status: {new_status}')
    if order.status not in ORDER_STATUS_FLOW:
        return error_response(f'Order is {order.status}', 409)
    if ORDER_STATUS_FLOW.index(new_status) <= ORDER_STATUS_FLOW.index(order.status):
        return error_response(f'Cannot move an order from {order.status} to {new_status}', 409)

    order.status = new_status
    if new_status == 'completed':
        order.completed_at = utc_now()
    db.session.commit()
    app.logger.info('Order %s moved to %s by %s', order.order_number, new_status, current_user.id)
    notify_order_status(order)
    return jsonify({'success': True, 'order': order.to_dict()})


@app.route('/admin/orders/<int:order_id>/cancel', methods=['POST'])
@login_required
@permission_required('manage_orders')
def admin_cancel_order(order_id):
    order = cancel_order(order_id, current_user)
    notify_order_status(order)
    return jsonify({'success': True, 'order': order.to_dict()})


@app.route('/admin/orders/<int:order_id>', methods=['DELETE'])
@login_required
@permission_required('manage_orders')
def admin_delete_order(order_id):
    order = db.get_or_404(Order, order_id)
    if order.status not in ('cancelled', 'completed'):
        return error_response('Only cancelled or completed orders can be deleted', 409)
    db.session.delete(order)
    db.session.commit()
    return jsonify({'success': True})


# ==================== TOP-UPS ====================

@app.route('/api/topups')
@login_required
@role_required('parent')
def api_my_topups():
    parent = current_parent()
    query = parent.topups
    status = request.args.get('status')
    if status:
        query = query.filter_by(status=status)
    topups = query.order_by(Topup.request_date.desc()).all()
    return jsonify({'success': True, 'topups': [t.to_dict() for t in topups]})


@app.route('/api/topups', methods=['POST'])
@login_required
@role_required('parent')
@limiter.limit("20 per hour")
def api_request_topup():
    parent = current_parent()
    data = get_payload()
    amount = parse_price(data.get('amount'))
    minimum = money(app.config.get('MIN_TOPUP_AMOUNT', 100))
    maximum = money(app.config.get('MAX_TOPUP_AMOUNT', 50000))

    if amount is None:
        return error_response('Amount must be a number')
    if amount < minimum:
        return error_response(f'Minimum top-up is {format_currency(minimum)}')
    if amount > maximum:
        return error_response(f'Maximum top-up is {format_currency(maximum)}')

    payment_method = data.get('payment_method') or 'cash'
    if payment_method not in PAYMENT_METHODS:
        return error_response(f"Payment method must be one of {', '.join(PAYMENT_METHODS)}")

    student_id = to_int(data.get('student_id'))
    if student_id:
        _own_student_or_404(parent, student_id)

    proof = request.files.get('proof')
    proof_url = None
    if proof and proof.filename:
        proof_url = save_uploaded_image(proof, 'proofs')
        if not proof_url:
            return error_response('Unsupported proof image type')

    topup = Topup(
        parent_id=parent.user_id,
        student_id=student_id,
        amount=money(amount),
        status='pending',
        payment_method=payment_method,
        transaction_reference=sanitize_string(data.get('transaction_reference')) or None,
        proof_image_url=proof_url,
        notes=sanitize_string(data.get('notes')) or None,
    )
    db.session.add(topup)
    db.session.commit()
    app.logger.info('Top-up %s requested by parent %s: %s', topup.id, parent.user_id, topup.amount)

    create_notification('topup_new', 'New top-up request',
                        f'{current_user.full_name} requested {format_currency(topup.amount)} via {payment_method}',
                        data={'topup_id': topup.id})
    return jsonify({'success': True, 'topup': topup.to_dict()}), 201


@app.route('/admin/topups')
@login_required
@permission_required('manage_topups')
def admin_list_topups():
    query = Topup.query
    status = request.args.get('status')
    if status:
        if status not in TOPUP_STATUSES:
            return error_response(f'Unknown status: {status}')
        query = query.filter_by(status=status)
    start_date = parse_date_arg('start_date')
    if start_date:
        query = query.filter(Topup.request_date >= datetime.combine(start_date, datetime.min.time()))
    end_date = parse_date_arg('end_date')
    if end_date:
        query = query.filter(Topup.request_date < datetime.combine(end_date + timedelta(days=1),
                                                                   datetime.min.time()))
    topups = query.order_by(Topup.request_date.desc()).all()
    return jsonify({'success': True, 'topups': [t.to_dict() for t in topups]})


@app.route('/admin/topups/stats')
@login_required
@permission_required('manage_topups')
def admin_topup_stats():
    stats = reports.topup_statistics(parse_date_arg('start_date'), parse_date_arg('end_date'))
    return jsonify({'success': True, 'stats': stats})


@app.route('/admin/topups/<int:topup_id>')
@login_required
@permission_required('manage_topups')
def admin_get_topup(topup_id):
    topup = db.get_or_404(Topup, topup_id)
    return jsonify({'success': True, 'topup': topup.to_dict()})


@app.route('/admin/topups/<int:topup_id>/approve', methods=['POST'])
@login_required
@permission_required('manage_topups')
def admin_approve_topup(topup_id):
    admin_notes = sanitize_string(get_payload().get('admin_notes')) or None
    topup = approve_topup(topup_id, current_user.id, admin_notes)
    create_notification('topup_approved', 'Top-up approved',
                        f'{format_currency(topup.amount)} was added to your wallet',
                        user_id=topup.parent_id, data={'topup_id': topup.id})
    return jsonify({'success': True, 'topup': topup.to_dict(),
                    'balance': float(money(topup.parent.balance))})


@app.route('/admin/topups/<int:topup_id>/decline', methods=['POST'])
@login_required
@permission_required('manage_topups')
def admin_decline_topup(topup_id):
    reason = sanitize_string(get_payload().get('reason'))
    if not reason:
        return error_response('A reason is required to decline a top-up')
    topup = decline_topup(topup_id, current_user.id, reason)
    create_notification('topup_declined', 'Top-up declined',
                        f'Your top-up of {format_currency(topup.amount)} was declined: {reason}',
                        user_id=topup.parent_id, data={'topup_id': topup.id})
    return jsonify({'success': True, 'topup': topup.to_dict()})


@app.route('/admin/topups/<int:topup_id>', methods=['DELETE'])
@login_required
@permission_required('manage_topups')
def admin_delete_topup(topup_id):
    topup = db.get_or_404(Topup, topup_id)
    if topup.status not in ('pending', 'declined'):
        return error_response('Only pending or declined top-ups can be deleted', 409)
    db.session.delete(topup)
    db.session.commit()
    return jsonify({'success': True})


# ==================== REPORTS ====================

def report_range(default_days=30):
    today = date.today()
    start_date = parse_date_arg('start_date', today - timedelta(days=default_days - 1))
    end_date = parse_date_arg('end_date', today)
    if start_date > end_date:
        abort(400, description='start_date must not be after end_date')
    return start_date, end_date


@app.route('/admin/reports/orders')
@login_required
@permission_required('view_reports')
def admin_order_report():
    period = request.args.get('period')
    if period == 'today':
        stats = reports.today_statistics()
    elif period == 'week':
        stats = reports.week_statistics(parse_date_arg('start_date'))
    elif period == 'month':
        year, month = to_int(request.args.get('year')), to_int(request.args.get('month'))
        if month is not None and not 1 <= month <= 12:
            abort(400, description='Month must be between 1 and 12')
        if year is not None and not 1 <= year < 9999:
            abort(400, description=f'Invalid year: {year}')
        stats = reports.month_statistics(year, month)
    else:
        stats = reports.order_statistics(*report_range())
    return jsonify({'success': True, 'stats': stats})


@app.route('/admin/reports/revenue')
@login_required
@permission_required('view_reports')
def admin_revenue_report():
    start_date, end_date = report_range()
    return jsonify({'success': True, 'days': reports.revenue_by_day(start_date, end_date)})


@app.route('/admin/reports/weekly-menu')
@login_required
@permission_required('view_reports')
def admin_weekly_menu_report():
    week_start = week_start_for(parse_date_arg('week_start', date.today()))
    return jsonify({'success': True, 'analytics': reports.weekly_menu_analytics(week_start)})


@app.route('/admin/reports/export/pdf')
@login_required
@permission_required('view_reports')
def export_pdf():
    start_date, end_date = report_range()
    return send_file(
        reports.export_orders_pdf(start_date, end_date),
        as_attachment=True,
        download_name=f'orders_{start_date}_{end_date}.pdf',
        mimetype='application/pdf'
    )


@app.route('/admin/reports/export/excel')
@login_required
@permission_required('view_reports')
def export_excel():
    start_date, end_date = report_range()
    return send_file(
        reports.export_orders_excel(start_date, end_date),
        as_attachment=True,
        download_name=f'orders_{start_date}_{end_date}.xlsx',
        mimetype=XLSX_MIMETYPE
    )


# ========== NOTIFICATION SYSTEM ==========

def visible_notifications():
    if current_user.is_admin:
        return Notification.query.filter(
            (Notification.user_id == current_user.id) | (Notification.user_id.is_(None))
        )
    return Notification.query.filter(Notification.user_id == current_user.id)


@app.route('/api/notifications')
@login_required
def api_get_notifications():
    """Get notifications for current user"""
    notifications = visible_notifications().order_by(Notification.created_at.desc()).limit(50).all()
    unread_count = visible_notifications().filter(Notification.is_read.is_(False)).count()

    return jsonify({
        'notifications': [n.to_dict() for n in notifications],
        'unread_count': unread_count
    })


@app.route('/api/notifications/<int:notification_id>/read', methods=['POST'])
@login_required
def api_mark_notification_read(notification_id):
    """Mark a notification as read"""
    notification = visible_notifications().filter(Notification.id == notification_id).first_or_404()
    notification.is_read = True
    notification.read_at = utc_now()
    db.session.commit()
    return jsonify({'success': True})


@app.route('/api/notifications/read-all', methods=['POST'])
@login_required
def api_mark_all_notifications_read():
    """Mark all notifications as read for current user"""
    visible_notifications().filter(
        Notification.is_read.is_(False)
    ).update({'is_read': True, 'read_at': utc_now()}, synchronize_session=False)
    db.session.commit()
    return jsonify({'success': True})


@app.route('/uploads/<path:filename>')
@login_required
def uploaded_file(filename):
    """Serve uploaded files"""
    return send_from_directory(app.config.get('UPLOAD_FOLDER', 'uploads'), filename)


if __name__ == '__main__':
    os.makedirs(app.config.get('UPLOAD_FOLDER', 'uploads'), exist_ok=True)
    os.makedirs(app.config.get('QR_CODE_FOLDER', 'static/qrcodes'), exist_ok=True)

    # Initialize database
    init_db()

    print(f"""
    {app.config.get('APP_NAME', 'School Canteen')}
    ====================================
    Admin login: admin / {app.config.get('DEFAULT_ADMIN_PASSWORD', 'admin123')} (change on first login)
    Server: http://localhost:8000
    """)

    # Use debug mode only in development (controlled by environment variable)
    debug_mode = os.environ.get('FLASK_DEBUG', 'false').lower() == 'true'
    app.run(debug=debug_mode, host='0.0.0.0', port=8000, use_reloader=debug_mode)
