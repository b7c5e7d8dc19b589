# -*- coding: utf-8 -*-

import collections
import contextlib
import copy
import datetime
import threading
from decimal import Decimal

import bcrypt
import fakeredis
import pymysql
import pytest
import pytest_asyncio
from aiohttp.test_utils import TestClient, TestServer
from pymysql.constants import ER

import app
import const
import model

BASE_DATE = datetime.datetime(2024, 6, 1, 10, 0, 0)


def _money(value):
    return Decimal(str(value)).quantize(Decimal('0.01'))


def _check_range(column, value, maximum):
    # strict mode rejects out-of-range values
    if value > maximum:
        raise pymysql.err.DataError(1264, "Out of range value for column '%s' at row 1" % column)


class FakeStore(object):
    """In-memory tables behind FakePool."""

    def __init__(self):
        self.users = {}
        self.products = {}
        self.orders = {}
        self.order_items = {}
        self.ids = collections.Counter()
        self.lock = threading.RLock()

    def next_id(self, table):
        self.ids[table] += 1
        return self.ids[table]

    def snapshot(self):
        return copy.deepcopy((self.users, self.products, self.orders, self.order_items, self.ids))

    def restore(self, snap):
        self.users, self.products, self.orders, self.order_items, self.ids = snap

    def add_user(self, username, email, password, role=const.ROLE_USER):
        uid = self.next_id('users')
        hashed = bcrypt.hashpw(password.encode('utf-8'), bcrypt.gensalt(rounds=4)).decode('utf-8')
        self.users[uid] = {'id': uid, 'username': username, 'email': email,
                           'password': hashed, 'role': role}
        return uid

    def add_product(self, name, price, stock, category=None, description=None, image_url=None):
        pid = self.next_id('products')
        self.products[pid] = {'id': pid, 'name': name, 'description': description,
                              'price': _money(price), 'stock_quantity': stock,
                              'category': category, 'image_url': image_url}
        return pid


class FakeCursor(object):
    """Executes the statements defined in `model` against a FakeStore."""

    def __init__(self, store):
        self.store = store
        self.rows = []
        self.rowcount = 0
        self.lastrowid = None
        self.handlers = {
            "SELECT 1": lambda: self._result([{'1': 1}]),
            model.INSERT_USER: self._insert_user,
            model.SELECT_USER_BY_EMAIL: self._select_user_by_email,
            model.SELECT_PRODUCTS: self._select_products,
            model.SELECT_PRODUCTS_BY_CATEGORY: self._select_products_by_category,
            model.SELECT_PRODUCT: self._select_product,
            model.INSERT_PRODUCT: self._insert_product,
            model.UPDATE_PRODUCT: self._update_product,
            model.DELETE_PRODUCT: self._delete_product,
            model.SELECT_PRODUCT_PRICE: self._select_product_price,
            model.DEDUCT_STOCK: self._deduct_stock,
            model.INSERT_ORDER: self._insert_order,
            model.INSERT_ORDER_ITEM: self._insert_order_item,
            model.SELECT_USER_ORDERS: self._select_user_orders,
            model.SELECT_ALL_ORDERS: self._select_all_orders,
        }

    def execute(self, sql, args=()):
        self.rows = []
        self.rowcount = 0
        self.handlers[sql](*args)
        return self.rowcount

    def fetchone(self):
        return self.rows[0] if self.rows else None

    def fetchall(self):
        return list(self.rows)

    def _result(self, rows):
        self.rows = [dict(row) for row in rows]
        self.rowcount = len(self.rows)

    # users
    def _insert_user(self, username, email, password, role):
        if any(u['email'] == email for u in self.store.users.values()):
            raise pymysql.err.IntegrityError(ER.DUP_ENTRY, "Duplicate entry '%s' for key 'email'" % email)
        uid = self.store.next_id('users')
        self.store.users[uid] = {'id': uid, 'username': username, 'email': email,
                                 'password': password, 'role': role}
        self.lastrowid, self.rowcount = uid, 1

    def _select_user_by_email(self, email):
        self._result([u for u in self.store.users.values() if u['email'] == email])

    # products
    def _select_products(self):
        self._result(sorted(self.store.products.values(), key=lambda p: -p['id']))

    def _select_products_by_category(self, category):
        rows = [p for p in self.store.products.values() if p['category'] == category]
        self._result(sorted(rows, key=lambda p: -p['id']))

    def _select_product(self, product_id):
        product = self.store.products.get(product_id)
        self._result([product] if product else [])

    def _insert_product(self, name, description, price, stock, category, image_url):
        _check_range('price', price, const.MAX_PRICE)
        _check_range('stock_quantity', stock, const.MAX_INT)
        self.lastrowid = self.store.add_product(name, price, stock, category, description, image_url)
        self.rowcount = 1

    def _update_product(self, name, description, price, stock, category, image_url, product_id):
        product = self.store.products.get(product_id)
        if product is None:
            return
        _check_range('price', price, const.MAX_PRICE)
        _check_range('stock_quantity', stock, const.MAX_INT)
        product.update(name=name, description=description, price=_money(price),
                       stock_quantity=stock, category=category, image_url=image_url)
        self.rowcount = 1

    def _delete_product(self, product_id):
        if product_id not in self.store.products:
            return
        if any(i['product_id'] == product_id for i in self.store.order_items.values()):
            raise pymysql.err.IntegrityError(ER.ROW_IS_REFERENCED_2,
                                             'Cannot delete or update a parent row')
        del self.store.products[product_id]
        self.rowcount = 1

    # orders
    def _select_product_price(self, product_id):
        product = self.store.products.get(product_id)
        self._result([{'id': product_id, 'price': product['price']}] if product else [])

    def _deduct_stock(self, quantity, product_id, minimum):
        product = self.store.products.get(product_id)
        if product is None or product['stock_quantity'] < minimum:
            return
        product['stock_quantity'] -= quantity
        self.rowcount = 1

    def _insert_order(self, user_id, total, address, status):
        _check_range('total_amount', total, const.MAX_ORDER_TOTAL)
        oid = self.store.next_id('orders')
        self.store.orders[oid] = {'id': oid, 'user_id': user_id, 'total_amount': _money(total),
                                  'shipping_address': address, 'status': status,
                                  'order_date': BASE_DATE + datetime.timedelta(minutes=oid)}
        self.lastrowid, self.rowcount = oid, 1

    def _insert_order_item(self, order_id, product_id, quantity, price):
        iid = self.store.next_id('order_items')
        self.store.order_items[iid] = {'id': iid, 'order_id': order_id, 'product_id': product_id,
                                       'quantity': quantity, 'price': _money(price)}
        self.lastrowid, self.rowcount = iid, 1

    def _joined(self, user_id=None):
        orders = sorted(self.store.orders.values(), key=lambda o: (o['order_date'], o['id']), reverse=True)
        rows = []
        for order in orders:
            if user_id is not None and order['user_id'] != user_id:
                continue
            customer = self.store.users[order['user_id']]
            items = sorted((i for i in self.store.order_items.values() if i['order_id'] == order['id']),
                           key=lambda i: i['id'])
            for item in items:
                product = self.store.products[item['product_id']]
                rows.append({
                    'order_id': order['id'], 'order_date': order['order_date'],
                    'total_amount': order['total_amount'], 'status': order['status'],
                    'shipping_address': order['shipping_address'],
                    'customer_username': customer['username'], 'customer_email': customer['email'],
                    'product_id': item['product_id'], 'quantity': item['quantity'],
                    'item_price': item['price'], 'product_name': product['name'],
                    'image_url': product['image_url']})
        return rows

    def _select_user_orders(self, user_id):
        self._result(self._joined(user_id))

    def _select_all_orders(self):
        self._result(self._joined())


class FakePool(object):
    """Stands in for db.Pool; transactions are serialized and roll back by snapshot."""

    size = 1

    def __init__(self, store):
        self.store = store
        self.commits = 0
        self.rollbacks = 0

    @contextlib.contextmanager
    def cursor(self):
        with self.store.lock:
            yield FakeCursor(self.store)

    @contextlib.contextmanager
    def transaction(self):
        with self.store.lock:
            snap = self.store.snapshot()
            try:
                yield FakeCursor(self.store)
            except Exception:
                self.store.restore(snap)
                self.rollbacks += 1
                raise
            self.commits += 1

    async def run(self, func, *args, **kwargs):
        return func(*args, **kwargs)

    def close(self):
        pass


@pytest.fixture
def store():
    return FakeStore()


@pytest.fixture
def pool(monkeypatch, store):
    fake = FakePool(store)
    monkeypatch.setattr(model, 'pool', fake)
    return fake


@pytest_asyncio.fixture
async def redis(monkeypatch):
    fake = fakeredis.FakeAsyncRedis(server=fakeredis.FakeServer(), decode_responses=True)
    monkeypatch.setattr(model, 'r', fake)
    yield fake
    await fake.aclose()


@pytest_asyncio.fixture
async def client(pool, redis):
    async with TestClient(TestServer(app.make_app(cors_origin='http://localhost:3000'))) as c:
        yield c


@pytest.fixture
def username():
    return 'Asha Rao'


@pytest.fixture
def email():
    return 'asha@example.com'


@pytest.fixture
def password():
    return 'kadle-bajil'


@pytest.fixture
def user_id(store, username, email, password):
    return store.add_user(username, email, password)


@pytest.fixture
def admin_id(store):
    return store.add_user('Store Admin', 'admin@example.com', 'admin-pass', role=const.ROLE_ADMIN)


@pytest_asyncio.fixture
async def token(pool, redis, user_id, email, password):
    res = await model.login(email, password)
    return res['token']


@pytest_asyncio.fixture
async def admin_token(pool, redis, admin_id):
    res = await model.login('admin@example.com', 'admin-pass')
    return res['token']


@pytest.fixture
def products(store):
    return {
        'rotti': store.add_product('Kori Rotti', 180, 10, category='food'),
        'bajil': store.add_product('Kadle Bajil', 60, 5, category='food'),
        'saree': store.add_product('Udupi Saree', 2500, 2, category='clothing'),
    }


def auth(tk):
    return {'Authorization': 'Bearer %s' % tk}
