from io import BytesIO

from models import db, MenuItem, Order, OrderItem, WeeklyMenu
import wallet


def test_public_menu_lists_available_items(app, client):
    with app.app_context():
        MenuItem.query.filter_by(name='Turon').first().is_available = False
        db.session.commit()

    items = client.get('/api/menu').get_json()['items']
    names = [item['name'] for item in items]
    assert 'Turon' not in names
    assert 'Banana Cue' in names

    drinks = client.get('/api/menu?category=Drinks').get_json()['items']
    assert {item['category'] for item in drinks} == {'Drinks'}

    vegetarian = client.get('/api/menu?vegetarian=true').get_json()['items']
    assert all(item['is_vegetarian'] for item in vegetarian)
    assert 'Chicken Adobo Rice' not in [item['name'] for item in vegetarian]


def test_admin_creates_menu_item(admin_client):
    response = admin_client.post('/admin/menu', json={
        'name': 'Arroz Caldo',
        'description': 'Chicken rice porridge',
        'price': '₱45.50',
        'category': 'Breakfast',
        'allergens': 'egg, ginger',
        'stock_quantity': '20',
    })

    assert response.status_code == 201
    item = response.get_json()['item']
    assert item['price'] == 45.5
    assert item['meal_type'] == 'breakfast'
    assert item['allergens'] == ['egg', 'ginger']
    assert item['stock_quantity'] == 20


def test_admin_menu_validation(admin_client):
    bad_category = admin_client.post('/admin/menu', json={'name': 'Soup', 'price': 10, 'category': 'Dinner'})
    assert bad_category.status_code == 400

    bad_price = admin_client.post('/admin/menu', json={'name': 'Soup', 'price': '1.234', 'category': 'Lunch'})
    assert bad_price.get_json()['error'] == 'Price can have at most 2 decimal places'

    bad_stock = admin_client.post('/admin/menu', json={'name': 'Soup', 'price': 10, 'category': 'Lunch',
                                                       'stock_quantity': -1})
    assert bad_stock.status_code == 400

    not_a_number = admin_client.post('/admin/menu', data='{"name": "Soup", "price": NaN, "category": "Lunch"}',
                                     content_type='application/json')
    assert not_a_number.get_json()['error'] == 'Price must be a number'


def test_admin_updates_and_toggles_item(app, admin_client):
    with app.app_context():
        item_id = MenuItem.query.filter_by(name='Turon').first().id

    response = admin_client.put(f'/admin/menu/{item_id}', json={'price': 25, 'is_vegan': True})
    assert response.get_json()['item']['price'] == 25.0
    assert response.get_json()['item']['is_vegan'] is True

    assert admin_client.post(f'/admin/menu/{item_id}/toggle').get_json()['is_available'] is False


def test_menu_image_upload(app, admin_client):
    with app.app_context():
        item_id = MenuItem.query.filter_by(name='Turon').first().id

    rejected = admin_client.post(f'/admin/menu/{item_id}/image',
                                 data={'image': (BytesIO(b'x'), 'turon.exe')},
                                 content_type='multipart/form-data')
    assert rejected.status_code == 400

    response = admin_client.post(f'/admin/menu/{item_id}/image',
                                 data={'image': (BytesIO(b'\x89PNG fake'), 'turon.png')},
                                 content_type='multipart/form-data')
    assert response.status_code == 200
    assert response.get_json()['image_url'].startswith('/uploads/menu/')
    assert response.get_json()['image_url'].endswith('_turon.png')


def test_deleting_item_keeps_order_history(app, family, admin_client):
    turon = family.items['Turon']
    with app.app_context():
        result = wallet.place_order(family.parent_id, family.parent_id, family.student_id,
                                    [{'menu_item_id': turon, 'quantity': 2}], family.week)

    assert admin_client.delete(f'/admin/menu/{turon}').status_code == 200

    with app.app_context():
        assert db.session.get(MenuItem, turon) is None
        line = OrderItem.query.filter_by(order_id=result['order_id']).one()
        assert line.menu_item_id is None
        assert line.name == 'Turon'
        assert db.session.get(Order, result['order_id']).total_amount == 40
        menu = WeeklyMenu.query.filter_by(week_start=family.week).first()
        assert turon not in menu.all_item_ids()


def test_import_and_export_menu(admin_client):
    csv_data = (
        'name,price,category,allergens,is_vegetarian\n'
        'Puto,15,Snacks,,yes\n'
        'Turon,20,Snacks,,\n'
        'Sinigang,abc,Lunch,,\n'
    ).encode()

    result = admin_client.post('/admin/menu/import',
                               data={'file': (BytesIO(csv_data), 'menu.csv')},
                               content_type='multipart/form-data').get_json()

    assert result['imported'] == 1
    assert result['skipped'] == 1
    assert result['errors'] == [{'row': 4, 'error': 'Price must be a number'}]

    exported = admin_client.get('/admin/menu/export').get_data(as_text=True)
    assert 'Puto' in exported
