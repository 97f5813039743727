from datetime import timedelta

import pytest

from conftest import make_parent, make_student, menu_item, order_week, publish_week, full_week_content
from models import db, WeeklyMenu, CartItem
import weekly_cart
import weekly_menu
from weekly_menu import WeeklyMenuError


def test_lunch_is_capped_at_two_items(ctx):
    ids = [menu_item('Chicken Adobo Rice').id, menu_item('Pancit Canton').id, menu_item('Tapsilog').id]
    with pytest.raises(WeeklyMenuError, match='maximum of 2'):
        weekly_menu.save(order_week(), {'Monday': {'lunch': ids}})


@pytest.mark.parametrize('content, message', [
    ({'Funday': {'lunch': []}}, 'Unknown day'),
    ({'Monday': {'dinner': []}}, 'unknown meal type'),
    ({'Monday': {'snack': [99999]}}, 'Unknown menu item ids'),
    ({'Monday': {'snack': ['abc']}}, 'must be numbers'),
])
def test_invalid_menu_content(ctx, content, message):
    with pytest.raises(WeeklyMenuError, match=message):
        weekly_menu.save(order_week(), content)


def test_save_normalizes_week_and_warns_about_gaps(ctx):
    week = order_week()
    turon = menu_item('Turon')
    turon.is_available = False
    db.session.commit()

    menu, warnings = weekly_menu.save(week + timedelta(days=3), {
        'Monday': {'snack': [turon.id, turon.id], 'lunch': []},
    })

    assert menu.week_start == week
    assert menu.publish_status == 'draft'
    assert menu.menu_items_by_day == {'Monday': {'snack': [turon.id], 'lunch': []}}
    assert 'Monday - lunch: no items selected' in warnings
    assert '"Turon" is currently unavailable' in warnings


def test_publish_snapshots_every_version(ctx):
    week = order_week()
    menu = publish_week(week)
    assert menu.publish_status == 'published'
    assert menu.current_version == 1
    assert menu.published_at is not None

    weekly_menu.publish(menu, menu_items_by_day={'Monday': {'snack': [menu_item('Turon').id]}})

    versions = weekly_menu.versions(menu)
    assert [v.version for v in versions] == [2, 1]
    assert versions[0].menu_items_by_day == {'Monday': {'snack': [menu_item('Turon').id]}}


def test_empty_menu_cannot_be_published(ctx):
    menu, _ = weekly_menu.save(order_week(), {'Monday': {'snack': []}})
    with pytest.raises(WeeklyMenuError, match='empty'):
        weekly_menu.publish(menu)


def test_editing_a_published_menu_returns_it_to_draft(ctx):
    week = order_week()
    publish_week(week)

    menu, _ = weekly_menu.save(week, {'Tuesday': {'drinks': [menu_item('Fresh Milk').id]}})

    assert menu.publish_status == 'draft'
    assert menu.published_at is None
    assert menu.current_version == 1
    assert weekly_cart.published_menu_for(week) is None


def test_revert_restores_snapshot_as_draft(ctx):
    week = order_week()
    original = full_week_content()
    menu = publish_week(week, original)
    weekly_menu.save(week, {'Monday': {'drinks': [menu_item('Fresh Milk').id]}})

    reverted = weekly_menu.revert(menu, 1)
    assert reverted.menu_items_by_day == original
    assert reverted.publish_status == 'draft'

    with pytest.raises(WeeklyMenuError) as exc:
        weekly_menu.revert(menu, 7)
    assert exc.value.status == 404


def test_copy_from_previous_week(ctx):
    week = order_week()
    with pytest.raises(WeeklyMenuError, match='No menu found for previous week') as exc:
        weekly_menu.copy_from_previous_week(week)
    assert exc.value.status == 404

    source = publish_week(week)
    copy = weekly_menu.copy_from_previous_week(week + timedelta(days=9))

    assert copy.week_start == week + timedelta(days=7)
    assert copy.menu_items_by_day == source.menu_items_by_day
    assert copy.publish_status == 'draft'


def test_unpublish_and_archive(ctx):
    week = order_week()
    menu, _ = weekly_menu.save(week, full_week_content())
    with pytest.raises(WeeklyMenuError) as exc:
        weekly_menu.unpublish(menu)
    assert exc.value.status == 409

    weekly_menu.publish(menu)
    assert weekly_menu.unpublish(menu).publish_status == 'draft'
    archived = weekly_menu.archive(menu)
    assert archived.publish_status == 'archived'
    assert archived.archived_at is not None


def test_resolved_menu_hides_unavailable_items(ctx):
    week = order_week()
    assert weekly_menu.resolved_menu(week) is None

    publish_week(week)
    turon = menu_item('Turon')
    turon.is_available = False
    db.session.commit()

    resolved = weekly_menu.resolved_menu(week + timedelta(days=2))
    snack_names = [item['name'] for item in resolved['days']['Wednesday']['snack']]
    assert 'Turon' not in snack_names
    assert 'Banana Cue' in snack_names
    assert set(resolved['days']) == {'Monday', 'Tuesday', 'Wednesday', 'Thursday', 'Friday'}


def test_remove_menu_item_strips_menus_and_carts(ctx):
    parent = make_parent()
    student = make_student(parent)
    week = order_week()
    publish_week(week)
    turon = menu_item('Turon').id
    weekly_cart.add_item(parent, turon, week, student_id=student.id)

    weekly_menu.remove_menu_item(turon)
    db.session.commit()

    menu = WeeklyMenu.query.filter_by(week_start=week).first()
    assert turon not in menu.all_item_ids()
    assert CartItem.query.filter_by(menu_item_id=turon).count() == 0


def test_check_availability(ctx):
    week = order_week()
    content = full_week_content()
    milk = menu_item('Fresh Milk').id
    content['Friday']['drinks'] = [i for i in content['Friday']['drinks'] if i != milk]
    publish_week(week, content)
    friday = week + timedelta(days=4)

    result = weekly_menu.check_availability(friday.isoformat(), [milk, menu_item('Turon').id])

    assert result == {'date': friday.isoformat(), 'available': [menu_item('Turon').id], 'unavailable': [milk]}
