from datetime import datetime, timedelta

import pytest

from conftest import make_parent, make_student, menu_item, order_week, publish_week, full_week_content
from models import db, Parent
import weekly_cart
from weekly_cart import CartError


@pytest.fixture
def cart_setup(ctx):
    parent = make_parent(balance='500.00')
    student = make_student(parent)
    week = order_week()
    publish_week(week)
    return parent, student, week


def test_adding_the_same_line_twice_merges_quantities(cart_setup):
    parent, student, week = cart_setup
    adobo = menu_item('Chicken Adobo Rice')

    weekly_cart.add_item(parent, adobo.id, week, quantity=1, student_id=student.id)
    line = weekly_cart.add_item(parent, adobo.id, week.isoformat(), quantity=2, student_id=student.id)

    cart = weekly_cart.get_or_create_cart(parent)
    assert len(cart.items) == 1
    assert line.quantity == 3
    assert line.meal_type == 'lunch'
    assert line.student_name == student.full_name


def test_different_time_slots_are_separate_lines(cart_setup):
    parent, student, week = cart_setup
    banana = menu_item('Banana Cue')

    weekly_cart.add_item(parent, banana.id, week, student_id=student.id, time_slot='morning')
    weekly_cart.add_item(parent, banana.id, week, student_id=student.id, time_slot='afternoon')

    assert len(weekly_cart.get_or_create_cart(parent).items) == 2


def test_item_must_be_on_published_menu(cart_setup):
    parent, student, week = cart_setup
    next_week = week + timedelta(days=7)

    with pytest.raises(CartError, match='not on the menu'):
        weekly_cart.add_item(parent, menu_item('Banana Cue').id, next_week, student_id=student.id)


def test_weekend_and_past_days_are_rejected(cart_setup):
    parent, student, week = cart_setup
    banana = menu_item('Banana Cue')

    with pytest.raises(CartError, match='closed'):
        weekly_cart.add_item(parent, banana.id, week + timedelta(days=6), student_id=student.id)
    with pytest.raises(CartError, match='closed'):
        weekly_cart.add_item(parent, banana.id, week - timedelta(days=14), student_id=student.id)


def test_student_must_belong_to_parent(cart_setup):
    parent, _, week = cart_setup
    other = make_parent(username='other')
    stranger = make_student(other, first_name='Ana')

    with pytest.raises(CartError) as exc:
        weekly_cart.add_item(parent, menu_item('Banana Cue').id, week, student_id=stranger.id)
    assert exc.value.status == 403


def test_update_to_zero_removes_line(cart_setup):
    parent, student, week = cart_setup
    line_id = weekly_cart.add_item(parent, menu_item('Turon').id, week, student_id=student.id).id

    cart = weekly_cart.update_quantity(parent, line_id, 0)
    assert cart.items == []

    with pytest.raises(CartError) as exc:
        weekly_cart.remove_item(parent, line_id)
    assert exc.value.status == 404


def test_clear_day_only_touches_that_day(cart_setup):
    parent, student, week = cart_setup
    turon = menu_item('Turon').id
    weekly_cart.add_item(parent, turon, week, student_id=student.id)
    weekly_cart.add_item(parent, turon, week + timedelta(days=1), student_id=student.id)

    cart = weekly_cart.clear_day(parent, week)
    assert [item.delivery_date for item in cart.items] == [week + timedelta(days=1)]


def test_copy_day_merges_and_skips_items_missing_from_target_menu(ctx):
    parent = make_parent(balance='500.00')
    student = make_student(parent)
    week = order_week()
    content = full_week_content()
    milk = menu_item('Fresh Milk').id
    content['Wednesday']['drinks'] = [i for i in content['Wednesday']['drinks'] if i != milk]
    publish_week(week, content)

    adobo = menu_item('Chicken Adobo Rice').id
    weekly_cart.add_item(parent, adobo, week, student_id=student.id)
    weekly_cart.add_item(parent, milk, week, student_id=student.id)
    weekly_cart.add_item(parent, adobo, week + timedelta(days=1), student_id=student.id)

    result = weekly_cart.copy_day(parent, week, [week + timedelta(days=1), week + timedelta(days=2)])

    assert result['copied'] == 3
    assert result['skipped'] == [{'date': (week + timedelta(days=2)).isoformat(), 'menu_item_id': milk,
                                  'name': 'Fresh Milk'}]
    tuesday = [i for i in weekly_cart.get_or_create_cart(parent).items if i.delivery_date == week + timedelta(days=1)]
    assert {i.menu_item_id: i.quantity for i in tuesday} == {adobo: 2, milk: 1}


def test_copy_day_from_empty_day_does_nothing(cart_setup):
    parent, student, week = cart_setup
    weekly_cart.add_item(parent, menu_item('Turon').id, week + timedelta(days=1), student_id=student.id)

    # the Saturday target is closed, but nothing is copied so it is never checked
    result = weekly_cart.copy_day(parent, week, [week + timedelta(days=2), week + timedelta(days=5)])

    assert result == {'copied': 0, 'skipped': []}
    cart = weekly_cart.get_or_create_cart(parent)
    assert [item.delivery_date for item in cart.items] == [week + timedelta(days=1)]


def test_summary_totals(cart_setup):
    parent, student, week = cart_setup
    weekly_cart.add_item(parent, menu_item('Chicken Adobo Rice').id, week, student_id=student.id)
    weekly_cart.add_item(parent, menu_item('Fresh Milk').id, week, quantity=2, student_id=student.id)
    weekly_cart.add_item(parent, menu_item('Banana Cue').id, week + timedelta(days=3), student_id=student.id)

    summary = weekly_cart.summary(weekly_cart.get_or_create_cart(db.session.get(Parent, parent.user_id)))

    assert summary['total_cost'] == 165.0
    assert summary['total_items'] == 4
    assert summary['daily_costs'] == {week.isoformat(): 145.0, (week + timedelta(days=3)).isoformat(): 20.0}
    assert summary['average_cost_per_day'] == 82.5
    assert summary['category_breakdown'] == {'Lunch': 1, 'Drinks': 2, 'Snacks': 1}
    assert summary['by_date'][week.isoformat()][0]['total'] == 145.0


def test_cutoff_is_previous_day_at_configured_hour(ctx):
    monday = order_week()
    sunday = monday - timedelta(days=1)

    assert weekly_cart.is_orderable_date(monday, now=datetime.combine(sunday, datetime.min.time()).replace(hour=17, minute=59))
    assert not weekly_cart.is_orderable_date(monday, now=datetime.combine(sunday, datetime.min.time()).replace(hour=18))


def test_invalid_date_string():
    with pytest.raises(CartError, match='Invalid date'):
        weekly_cart.normalize_date('next monday')


def test_week_start_is_monday():
    assert weekly_cart.week_start_for('2026-10-22').isoformat() == '2026-10-19'
    assert weekly_cart.day_name('2026-10-24') == 'Saturday'
