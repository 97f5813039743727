import secrets
from datetime import datetime, timezone
from decimal import Decimal


def utc_now():
    """Return current UTC time (timezone-aware)."""
    return datetime.now(timezone.utc)


from flask_sqlalchemy import SQLAlchemy
from flask_login import UserMixin
from werkzeug.security import generate_password_hash, check_password_hash

db = SQLAlchemy()

# Meal types used as keys inside a weekly menu day
MEAL_TYPES = ['breakfast', 'snack', 'lunch', 'drinks']

# Maximum number of distinct menu items per meal type per day on a weekly menu
MEAL_TYPE_MAX_ITEMS = {
    'breakfast': 5,
    'snack': 10,
    'lunch': 2,
    'drinks': 5,
}

MENU_CATEGORIES = ['Breakfast', 'Lunch', 'Snacks', 'Drinks']

CATEGORY_TO_MEAL_TYPE = {
    'Breakfast': 'breakfast',
    'Snacks': 'snack',
    'Lunch': 'lunch',
    'Drinks': 'drinks',
}

WEEKDAYS = ['Monday', 'Tuesday', 'Wednesday', 'Thursday', 'Friday', 'Saturday', 'Sunday']

PUBLISH_STATUSES = ['draft', 'published', 'archived']

# Forward-only order lifecycle; cancelled is reachable from pending/confirmed only
ORDER_STATUS_FLOW = ['pending', 'confirmed', 'preparing', 'ready', 'completed']
ORDER_STATUSES = ORDER_STATUS_FLOW + ['cancelled']
CANCELLABLE_STATUSES = ['pending', 'confirmed']

TOPUP_STATUSES = ['pending', 'approved', 'declined', 'completed']
PAYMENT_METHODS = ['cash', 'card', 'bank_transfer', 'online']

TRANSACTION_REASONS = ['topup', 'single_order', 'weekly_order', 'refund', 'adjustment']


def money(value):
    """Normalize a numeric value to a 2-decimal Decimal"""
    if value is None:
        return Decimal('0.00')
    return Decimal(str(value)).quantize(Decimal('0.01'))


def _iso(value):
    return value.isoformat() if value else None


# Association table for User-Role many-to-many relationship
user_roles = db.Table('user_roles',
    db.Column('user_id', db.Integer, db.ForeignKey('users.id'), primary_key=True),
    db.Column('role_id', db.Integer, db.ForeignKey('roles.id'), primary_key=True)
)

# Association table for Role-Permission many-to-many relationship
role_permissions = db.Table('role_permissions',
    db.Column('role_id', db.Integer, db.ForeignKey('roles.id'), primary_key=True),
    db.Column('permission_id', db.Integer, db.ForeignKey('permissions.id'), primary_key=True)
)


class Permission(db.Model):
    __tablename__ = 'permissions'

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(50), unique=True, nullable=False)
    description = db.Column(db.String(255))
    created_at = db.Column(db.DateTime, default=utc_now)

    def __repr__(self):
        return f'<Permission {self.name}>'


class Role(db.Model):
    __tablename__ = 'roles'

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(50), unique=True, nullable=False)
    description = db.Column(db.String(255))
    is_active = db.Column(db.Boolean, default=True)
    created_at = db.Column(db.DateTime, default=utc_now)

    permissions = db.relationship('Permission', secondary=role_permissions,
                                  backref=db.backref('roles', lazy='dynamic'))

    def has_permission(self, permission_name):
        return any(p.name == permission_name for p in self.permissions)

    def __repr__(self):
        return f'<Role {self.name}>'


class User(UserMixin, db.Model):
    __tablename__ = 'users'

    id = db.Column(db.Integer, primary_key=True)
    username = db.Column(db.String(80), unique=True, nullable=False)
    email = db.Column(db.String(120), unique=True, nullable=False)
    password_hash = db.Column(db.String(255), nullable=False)
    first_name = db.Column(db.String(80), nullable=False)
    last_name = db.Column(db.String(80), nullable=False)
    is_active = db.Column(db.Boolean, default=True)
    needs_onboarding = db.Column(db.Boolean, default=False)
    force_password_change = db.Column(db.Boolean, default=False)  # Force password change on first login
    created_at = db.Column(db.DateTime, default=utc_now)
    updated_at = db.Column(db.DateTime, default=utc_now, onupdate=utc_now)
    last_login = db.Column(db.DateTime)

    roles = db.relationship('Role', secondary=user_roles,
                           backref=db.backref('users', lazy='dynamic'))
    parent_profile = db.relationship('Parent', back_populates='user', uselist=False,
                                     cascade='all, delete-orphan')

    @property
    def full_name(self):
        return f'{self.first_name} {self.last_name}'.strip()

    @property
    def is_admin(self):
        return self.has_role('admin')

    def set_password(self, password):
        self.password_hash = generate_password_hash(password)

    def check_password(self, password):
        return check_password_hash(self.password_hash, password or '')

    def has_role(self, role_name):
        return any(r.name == role_name for r in self.roles)

    def has_permission(self, permission_name):
        for role in self.roles:
            if role.has_permission(permission_name):
                return True
        return False

    def get_primary_role(self):
        if self.roles:
            role_priority = {'admin': 0, 'parent': 1}
            sorted_roles = sorted(self.roles, key=lambda r: role_priority.get(r.name, 99))
            return sorted_roles[0].name
        return 'parent'

    def to_dict(self):
        return {
            'id': self.id,
            'username': self.username,
            'email': self.email,
            'first_name': self.first_name,
            'last_name': self.last_name,
            'full_name': self.full_name,
            'is_active': self.is_active,
            'needs_onboarding': self.needs_onboarding,
            'force_password_change': self.force_password_change,
            'role': self.get_primary_role(),
            'roles': [r.name for r in self.roles],
            'last_login': _iso(self.last_login),
            'created_at': _iso(self.created_at),
        }

    def __repr__(self):
        return f'<User {self.username}>'


class Parent(db.Model):
    """Wallet-holding profile of a parent account (one-to-one with User)"""
    __tablename__ = 'parents'

    user_id = db.Column(db.Integer, db.ForeignKey('users.id'), primary_key=True)
    phone = db.Column(db.String(20))
    address = db.Column(db.Text)
    balance = db.Column(db.Numeric(10, 2), nullable=False, default=Decimal('0.00'))
    photo_url = db.Column(db.String(500))
    created_at = db.Column(db.DateTime, default=utc_now)
    updated_at = db.Column(db.DateTime, default=utc_now, onupdate=utc_now)

    __table_args__ = (
        db.CheckConstraint('balance >= 0', name='ck_parents_balance_non_negative'),
    )

    user = db.relationship('User', back_populates='parent_profile')
    students = db.relationship('Student', backref='parent', lazy='select',
                               order_by='Student.first_name')

    def to_dict(self, include_students=False):
        data = {
            'user_id': self.user_id,
            'first_name': self.user.first_name if self.user else None,
            'last_name': self.user.last_name if self.user else None,
            'full_name': self.user.full_name if self.user else None,
            'email': self.user.email if self.user else None,
            'is_active': self.user.is_active if self.user else None,
            'phone': self.phone,
            'address': self.address,
            'balance': float(money(self.balance)),
            'photo_url': self.photo_url,
            'student_ids': [s.id for s in self.students],
            'created_at': _iso(self.created_at),
            'updated_at': _iso(self.updated_at),
        }
        if include_students:
            data['students'] = [s.to_dict() for s in self.students]
        return data

    def __repr__(self):
        return f'<Parent {self.user_id} balance={self.balance}>'


class Student(db.Model):
    __tablename__ = 'students'

    id = db.Column(db.Integer, primary_key=True)
    code = db.Column(db.String(20), unique=True, nullable=False, index=True)
    parent_user_id = db.Column(db.Integer, db.ForeignKey('parents.user_id'), nullable=True, index=True)
    first_name = db.Column(db.String(80), nullable=False)
    last_name = db.Column(db.String(80), nullable=False)
    grade_level = db.Column(db.String(30), nullable=False, index=True)
    section = db.Column(db.String(50))
    allergies = db.Column(db.Text)  # comma-separated
    dietary_restrictions = db.Column(db.Text)
    photo_url = db.Column(db.String(500))
    is_active = db.Column(db.Boolean, default=True)
    created_at = db.Column(db.DateTime, default=utc_now)
    updated_at = db.Column(db.DateTime, default=utc_now, onupdate=utc_now)

    # Excludes 0, O, 1 and I
    CODE_ALPHABET = 'ABCDEFGHJKLMNPQRSTUVWXYZ23456789'
    CODE_LENGTH = 8

    @property
    def full_name(self):
        return f'{self.first_name} {self.last_name}'.strip()

    @classmethod
    def generate_code(cls):
        """Random unique link code handed to parents"""
        while True:
            code = ''.join(secrets.choice(cls.CODE_ALPHABET) for _ in range(cls.CODE_LENGTH))
            if not cls.query.filter_by(code=code).first():
                return code

    @classmethod
    def find_duplicate(cls, first_name, last_name, grade_level, exclude_id=None):
        """Same first name, last name and grade (case-insensitive)"""
        query = cls.query.filter(
            db.func.lower(cls.first_name) == (first_name or '').strip().lower(),
            db.func.lower(cls.last_name) == (last_name or '').strip().lower(),
            db.func.lower(cls.grade_level) == (grade_level or '').strip().lower(),
        )
        if exclude_id is not None:
            query = query.filter(cls.id != exclude_id)
        return query.first()

    def to_dict(self):
        return {
            'id': self.id,
            'code': self.code,
            'parent_user_id': self.parent_user_id,
            'first_name': self.first_name,
            'last_name': self.last_name,
            'full_name': self.full_name,
            'grade_level': self.grade_level,
            'section': self.section,
            'allergies': self.allergies,
            'dietary_restrictions': self.dietary_restrictions,
            'photo_url': self.photo_url,
            'is_active': self.is_active,
            'created_at': _iso(self.created_at),
            'updated_at': _iso(self.updated_at),
        }

    def __repr__(self):
        return f'<Student {self.code} {self.full_name}>'


class MenuItem(db.Model):
    __tablename__ = 'menu_items'

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(200), nullable=False)
    description = db.Column(db.Text, default='')
    price = db.Column(db.Numeric(10, 2), nullable=False)
    category = db.Column(db.String(30), nullable=False, index=True)
    image_url = db.Column(db.String(500))
    allergens = db.Column(db.JSON, default=list)
    is_vegetarian = db.Column(db.Boolean, default=False)
    is_vegan = db.Column(db.Boolean, default=False)
    is_gluten_free = db.Column(db.Boolean, default=False)
    is_available = db.Column(db.Boolean, default=True, index=True)
    stock_quantity = db.Column(db.Integer, nullable=True)  # null means unlimited
    calories = db.Column(db.Integer, nullable=True)
    created_at = db.Column(db.DateTime, default=utc_now)
    updated_at = db.Column(db.DateTime, default=utc_now, onupdate=utc_now)

    @property
    def meal_type(self):
        return CATEGORY_TO_MEAL_TYPE.get(self.category, (self.category or '').lower())

    def has_stock(self, quantity):
        return self.stock_quantity is None or self.stock_quantity >= quantity

    def to_dict(self):
        return {
            'id': self.id,
            'name': self.name,
            'description': self.description,
            'price': float(money(self.price)),
            'category': self.category,
            'meal_type': self.meal_type,
            'image_url': self.image_url,
            'allergens': list(self.allergens or []),
            'is_vegetarian': self.is_vegetarian,
            'is_vegan': self.is_vegan,
            'is_gluten_free': self.is_gluten_free,
            'is_available': self.is_available,
            'stock_quantity': self.stock_quantity,
            'calories': self.calories,
            'created_at': _iso(self.created_at),
            'updated_at': _iso(self.updated_at),
        }

    def __repr__(self):
        return f'<MenuItem {self.name}>'


class WeeklyMenu(db.Model):
    """Menu plan for one school week: day -> meal type -> menu item ids"""
    __tablename__ = 'weekly_menus'

    id = db.Column(db.Integer, primary_key=True)
    week_start = db.Column(db.Date, unique=True, nullable=False, index=True)  # always a Monday
    menu_items_by_day = db.Column(db.JSON, nullable=False, default=dict)
    publish_status = db.Column(db.String(20), nullable=False, default='draft', index=True)
    current_version = db.Column(db.Integer, nullable=False, default=0)
    published_at = db.Column(db.DateTime, nullable=True)
    archived_at = db.Column(db.DateTime, nullable=True)
    created_at = db.Column(db.DateTime, default=utc_now)
    updated_at = db.Column(db.DateTime, default=utc_now, onupdate=utc_now)

    versions = db.relationship('WeeklyMenuVersion', backref='weekly_menu', lazy='dynamic',
                               cascade='all, delete-orphan')

    @property
    def is_published(self):
        return self.publish_status == 'published'

    def item_ids_for_day(self, day_name):
        """All menu item ids scheduled on a day, across meal types"""
        ids = []
        for item_ids in (self.menu_items_by_day or {}).get(day_name, {}).values():
            ids.extend(item_ids)
        return ids

    def all_item_ids(self):
        ids = set()
        for day_name in (self.menu_items_by_day or {}):
            ids.update(self.item_ids_for_day(day_name))
        return ids

    def to_dict(self):
        return {
            'id': self.id,
            'week_start': self.week_start.isoformat(),
            'menu_items_by_day': self.menu_items_by_day or {},
            'publish_status': self.publish_status,
            'current_version': self.current_version,
            'published_at': _iso(self.published_at),
            'archived_at': _iso(self.archived_at),
            'created_at': _iso(self.created_at),
            'updated_at': _iso(self.updated_at),
        }

    def __repr__(self):
        return f'<WeeklyMenu {self.week_start} {self.publish_status} v{self.current_version}>'


class WeeklyMenuVersion(db.Model):
    """Snapshot of a weekly menu taken every time it is published"""
    __tablename__ = 'weekly_menu_versions'

    id = db.Column(db.Integer, primary_key=True)
    weekly_menu_id = db.Column(db.Integer, db.ForeignKey('weekly_menus.id'), nullable=False)
    version = db.Column(db.Integer, nullable=False)
    week_start = db.Column(db.Date, nullable=False, index=True)
    menu_items_by_day = db.Column(db.JSON, nullable=False)
    created_by = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=True)
    created_at = db.Column(db.DateTime, default=utc_now)

    __table_args__ = (
        db.UniqueConstraint('weekly_menu_id', 'version', name='uq_weekly_menu_version'),
    )

    def to_dict(self):
        return {
            'id': self.id,
            'weekly_menu_id': self.weekly_menu_id,
            'version': self.version,
            'week_start': self.week_start.isoformat(),
            'menu_items_by_day': self.menu_items_by_day,
            'created_by': self.created_by,
            'created_at': _iso(self.created_at),
        }

    def __repr__(self):
        return f'<WeeklyMenuVersion {self.week_start} v{self.version}>'


class Order(db.Model):
    __tablename__ = 'orders'

    id = db.Column(db.Integer, primary_key=True)
    order_number = db.Column(db.String(50), unique=True, nullable=False)
    parent_id = db.Column(db.Integer, db.ForeignKey('parents.user_id'), nullable=False, index=True)
    student_id = db.Column(db.Integer, db.ForeignKey('students.id'), nullable=False, index=True)
    total_amount = db.Column(db.Numeric(10, 2), nullable=False, default=Decimal('0.00'))
    status = db.Column(db.String(20), nullable=False, default='pending', index=True)
    order_type = db.Column(db.String(20), nullable=False, default='one-time')  # one-time, weekly
    delivery_date = db.Column(db.Date, nullable=False, index=True)
    delivery_time = db.Column(db.String(20))
    special_instructions = db.Column(db.Text)
    created_at = db.Column(db.DateTime, default=utc_now, index=True)
    updated_at = db.Column(db.DateTime, default=utc_now, onupdate=utc_now)
    completed_at = db.Column(db.DateTime)
    cancelled_at = db.Column(db.DateTime)

    items = db.relationship('OrderItem', backref='order', lazy='select',
                            cascade='all, delete-orphan', order_by='OrderItem.id')
    parent = db.relationship('Parent', backref=db.backref('orders', lazy='dynamic'))
    student = db.relationship('Student', backref=db.backref('orders', lazy='dynamic'))

    def calculate_total(self):
        self.total_amount = sum((money(item.subtotal) for item in self.items), Decimal('0.00'))

    def to_dict(self):
        return {
            'id': self.id,
            'order_number': self.order_number,
            'parent_id': self.parent_id,
            'student_id': self.student_id,
            'student_name': self.student.full_name if self.student else None,
            'items': [item.to_dict() for item in self.items],
            'total_amount': float(money(self.total_amount)),
            'status': self.status,
            'order_type': self.order_type,
            'delivery_date': self.delivery_date.isoformat() if self.delivery_date else None,
            'delivery_time': self.delivery_time,
            'special_instructions': self.special_instructions,
            'completed_at': _iso(self.completed_at),
            'cancelled_at': _iso(self.cancelled_at),
            'created_at': _iso(self.created_at),
            'updated_at': _iso(self.updated_at),
        }

    def __repr__(self):
        return f'<Order {self.order_number}>'


class OrderItem(db.Model):
    __tablename__ = 'order_items'

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey('orders.id'), nullable=False)
    menu_item_id = db.Column(db.Integer, db.ForeignKey('menu_items.id'), nullable=True)
    name = db.Column(db.String(200), nullable=False)
    price = db.Column(db.Numeric(10, 2), nullable=False)
    quantity = db.Column(db.Integer, default=1)
    subtotal = db.Column(db.Numeric(10, 2), nullable=False)
    meal_type = db.Column(db.String(20))
    created_at = db.Column(db.DateTime, default=utc_now)

    menu_item = db.relationship('MenuItem')

    def to_dict(self):
        return {
            'id': self.id,
            'menu_item_id': self.menu_item_id,
            'name': self.name,
            'price': float(money(self.price)),
            'quantity': self.quantity,
            'subtotal': float(money(self.subtotal)),
            'meal_type': self.meal_type,
        }

    def __repr__(self):
        return f'<OrderItem {self.name} x{self.quantity}>'


class ParentTransaction(db.Model):
    """Ledger line for every change of a parent's wallet balance"""
    __tablename__ = 'parent_transactions'

    id = db.Column(db.Integer, primary_key=True)
    parent_id = db.Column(db.Integer, db.ForeignKey('parents.user_id'), nullable=False, index=True)
    type = db.Column(db.String(10), nullable=False)  # credit, debit
    amount = db.Column(db.Numeric(10, 2), nullable=False)  # positive for credits, negative for debits
    balance_before = db.Column(db.Numeric(10, 2), nullable=False)
    balance_after = db.Column(db.Numeric(10, 2), nullable=False)
    reason = db.Column(db.String(30), nullable=False)
    description = db.Column(db.String(255))
    reference_id = db.Column(db.String(50))
    order_ids = db.Column(db.JSON, default=list)
    status = db.Column(db.String(20), default='completed')
    created_by = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=True)
    created_at = db.Column(db.DateTime, default=utc_now, index=True)

    parent = db.relationship('Parent', backref=db.backref('transactions', lazy='dynamic'))

    def to_dict(self):
        return {
            'id': self.id,
            'parent_id': self.parent_id,
            'type': self.type,
            'amount': float(money(self.amount)),
            'balance_before': float(money(self.balance_before)),
            'balance_after': float(money(self.balance_after)),
            'reason': self.reason,
            'description': self.description,
            'reference_id': self.reference_id,
            'order_ids': list(self.order_ids or []),
            'status': self.status,
            'created_at': _iso(self.created_at),
        }

    def __repr__(self):
        return f'<ParentTransaction {self.id} {self.reason} {self.amount}>'


class Topup(db.Model):
    """Wallet top-up request, credited once an admin approves it"""
    __tablename__ = 'topups'

    id = db.Column(db.Integer, primary_key=True)
    parent_id = db.Column(db.Integer, db.ForeignKey('parents.user_id'), nullable=False, index=True)
    student_id = db.Column(db.Integer, db.ForeignKey('students.id'), nullable=True)
    amount = db.Column(db.Numeric(10, 2), nullable=False)
    status = db.Column(db.String(20), nullable=False, default='pending', index=True)
    payment_method = db.Column(db.String(20), nullable=False, default='cash')
    transaction_reference = db.Column(db.String(100))
    proof_image_url = db.Column(db.String(500))
    notes = db.Column(db.Text)
    admin_notes = db.Column(db.Text)
    processed_by = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=True)
    request_date = db.Column(db.DateTime, default=utc_now, index=True)
    processed_at = db.Column(db.DateTime)
    created_at = db.Column(db.DateTime, default=utc_now)
    updated_at = db.Column(db.DateTime, default=utc_now, onupdate=utc_now)

    parent = db.relationship('Parent', backref=db.backref('topups', lazy='dynamic'))
    student = db.relationship('Student')

    def to_dict(self):
        return {
            'id': self.id,
            'parent_id': self.parent_id,
            'parent_name': self.parent.user.full_name if self.parent and self.parent.user else None,
            'student_id': self.student_id,
            'student_name': self.student.full_name if self.student else None,
            'amount': float(money(self.amount)),
            'status': self.status,
            'payment_method': self.payment_method,
            'transaction_reference': self.transaction_reference,
            'proof_image_url': self.proof_image_url,
            'notes': self.notes,
            'admin_notes': self.admin_notes,
            'processed_by': self.processed_by,
            'request_date': _iso(self.request_date),
            'processed_at': _iso(self.processed_at),
        }

    def __repr__(self):
        return f'<Topup {self.id} {self.status} {self.amount}>'


class Cart(db.Model):
    """Weekly cart stored in database - one per parent, lines keyed by delivery date"""
    __tablename__ = 'carts'

    id = db.Column(db.Integer, primary_key=True)
    parent_id = db.Column(db.Integer, db.ForeignKey('parents.user_id'), unique=True, nullable=False)
    created_at = db.Column(db.DateTime, default=utc_now)
    updated_at = db.Column(db.DateTime, default=utc_now, onupdate=utc_now)

    items = db.relationship('CartItem', backref='cart', lazy='select',
                            cascade='all, delete-orphan',
                            order_by='CartItem.id')
    parent = db.relationship('Parent', backref=db.backref('cart', uselist=False))

    def __repr__(self):
        return f'<Cart {self.id} parent={self.parent_id}>'


class CartItem(db.Model):
    """Individual line in a weekly cart"""
    __tablename__ = 'cart_items'

    id = db.Column(db.Integer, primary_key=True)
    cart_id = db.Column(db.Integer, db.ForeignKey('carts.id'), nullable=False)
    menu_item_id = db.Column(db.Integer, db.ForeignKey('menu_items.id'), nullable=False)
    name = db.Column(db.String(200), nullable=False)
    price = db.Column(db.Numeric(10, 2), nullable=False)
    quantity = db.Column(db.Integer, default=1)
    category = db.Column(db.String(30))
    delivery_date = db.Column(db.Date, nullable=False, index=True)
    student_id = db.Column(db.Integer, db.ForeignKey('students.id'), nullable=True)
    student_name = db.Column(db.String(170))
    meal_type = db.Column(db.String(20))
    time_slot = db.Column(db.String(20))  # e.g. morning / afternoon for snacks
    added_at = db.Column(db.DateTime, default=utc_now)

    menu_item = db.relationship('MenuItem')

    @property
    def subtotal(self):
        return money(self.price) * self.quantity

    def same_line(self, menu_item_id, student_id, meal_type, time_slot):
        return (self.menu_item_id == menu_item_id and self.student_id == student_id
                and self.meal_type == meal_type and self.time_slot == time_slot)

    def to_dict(self):
        return {
            'id': self.id,
            'menu_item_id': self.menu_item_id,
            'name': self.name,
            'price': float(money(self.price)),
            'quantity': self.quantity,
            'subtotal': float(self.subtotal),
            'category': self.category,
            'delivery_date': self.delivery_date.isoformat(),
            'student_id': self.student_id,
            'student_name': self.student_name,
            'meal_type': self.meal_type,
            'time_slot': self.time_slot,
            'added_at': _iso(self.added_at),
        }

    def __repr__(self):
        return f'<CartItem {self.name} x{self.quantity} {self.delivery_date}>'


class Notification(db.Model):
    """Notification for admins (broadcast) or a single parent"""
    __tablename__ = 'notifications'

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=True)  # null = broadcast to admins
    type = db.Column(db.String(50), nullable=False)  # order_new, order_status, topup_new, topup_approved, topup_declined
    title = db.Column(db.String(200), nullable=False)
    message = db.Column(db.Text)
    data = db.Column(db.Text)  # JSON data for additional info
    is_read = db.Column(db.Boolean, default=False)
    created_at = db.Column(db.DateTime, default=utc_now)
    read_at = db.Column(db.DateTime, nullable=True)

    user = db.relationship('User', backref=db.backref('notifications', lazy='dynamic'))

    def to_dict(self):
        return {
            'id': self.id,
            'user_id': self.user_id,
            'type': self.type,
            'title': self.title,
            'message': self.message,
            'data': self.data,
            'is_read': self.is_read,
            'created_at': _iso(self.created_at),
            'read_at': _iso(self.read_at),
        }

    def __repr__(self):
        return f'<Notification {self.id} - {self.type}>'
