import os

os.environ['FLASK_CONFIG'] = 'testing'
os.environ['DATABASE_URL'] = 'sqlite://'
os.environ.setdefault('SECRET_KEY', 'test-secret-key')

from datetime import date, timedelta
from types import SimpleNamespace

import pytest

from app import app as flask_app, init_db
from models import db, User, Role, Parent, Student, MenuItem, MEAL_TYPE_MAX_ITEMS, WEEKDAYS, money
from weekly_cart import week_start_for
import weekly_menu

PARENT_PASSWORD = 'secret123'


def order_week():
    """A Monday far enough ahead that every weekday is still open for ordering"""
    return week_start_for(date.today() + timedelta(days=14))


def make_parent(username='parent', balance='0.00', needs_onboarding=False):
    user = User(
        username=username,
        email=f'{username}@example.com',
        first_name='Pat',
        last_name=username.title(),
        needs_onboarding=needs_onboarding,
    )
    user.set_password(PARENT_PASSWORD)
    user.roles.append(Role.query.filter_by(name='parent').first())
    user.parent_profile = Parent(phone='09171234567', balance=money(balance))
    db.session.add(user)
    db.session.commit()
    return user.parent_profile


def make_student(parent=None, first_name='Juan', last_name='Cruz', grade_level='Grade 3'):
    student = Student(
        code=Student.generate_code(),
        first_name=first_name,
        last_name=last_name,
        grade_level=grade_level,
        parent_user_id=parent.user_id if parent else None,
    )
    db.session.add(student)
    db.session.commit()
    return student


def menu_item(name):
    return MenuItem.query.filter_by(name=name).first()


def full_week_content(days=WEEKDAYS[:5]):
    by_meal = {}
    for item in MenuItem.query.order_by(MenuItem.id).all():
        by_meal.setdefault(item.meal_type, []).append(item.id)
    return {
        day: {meal_type: ids[:MEAL_TYPE_MAX_ITEMS[meal_type]] for meal_type, ids in by_meal.items()}
        for day in days
    }


def publish_week(week_start, content=None):
    menu, _ = weekly_menu.save(week_start, content or full_week_content())
    return weekly_menu.publish(menu)


def login(client, username, password):
    return client.post('/login', json={'username': username, 'password': password})


@pytest.fixture
def app(tmp_path):
    flask_app.config.update(
        UPLOAD_FOLDER=str(tmp_path / 'uploads'),
        QR_CODE_FOLDER=str(tmp_path / 'qrcodes'),
    )
    with flask_app.app_context():
        db.drop_all()
    init_db()
    yield flask_app
    with flask_app.app_context():
        db.session.remove()
        db.drop_all()


@pytest.fixture
def ctx(app):
    """App context for calling helper modules directly (not combined with the test client)"""
    with app.app_context():
        yield


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def family(app):
    """Parent with 500.00 in the wallet, one linked student and a published menu for the order week"""
    with app.app_context():
        parent = make_parent(balance='500.00')
        student = make_student(parent)
        week = order_week()
        publish_week(week)
        return SimpleNamespace(
            parent_id=parent.user_id,
            student_id=student.id,
            student_code=student.code,
            week=week,
            items={item.name: item.id for item in MenuItem.query.all()},
        )


@pytest.fixture
def admin_client(app):
    client = app.test_client()
    response = login(client, 'admin', app.config['DEFAULT_ADMIN_PASSWORD'])
    assert response.status_code == 200
    return client


@pytest.fixture
def parent_client(app, family):
    client = app.test_client()
    response = login(client, 'parent', PARENT_PASSWORD)
    assert response.status_code == 200
    return client
