import json
import logging
import math
import os
import random
import string

import bcrypt
import pymysql
import redis.asyncio as aioredis
from pymysql.constants import ER

import const
import db

logger = logging.getLogger(__name__)

pool = None
r = None

### users
INSERT_USER = "INSERT INTO users (username, email, password, role) VALUES (%s, %s, %s, %s)"
SELECT_USER_BY_EMAIL = "SELECT id, username, email, password, role FROM users WHERE email = %s"

### products
PRODUCT_COLUMNS = "id, name, description, price, stock_quantity, category, image_url"
SELECT_PRODUCTS = "SELECT " + PRODUCT_COLUMNS + " FROM products ORDER BY id DESC"
SELECT_PRODUCTS_BY_CATEGORY = "SELECT " + PRODUCT_COLUMNS + " FROM products WHERE category = %s ORDER BY id DESC"
SELECT_PRODUCT = "SELECT " + PRODUCT_COLUMNS + " FROM products WHERE id = %s"
INSERT_PRODUCT = ("INSERT INTO products (name, description, price, stock_quantity, category, image_url) "
                  "VALUES (%s, %s, %s, %s, %s, %s)")
UPDATE_PRODUCT = ("UPDATE products SET name = %s, description = %s, price = %s, stock_quantity = %s, "
                  "category = %s, image_url = %s WHERE id = %s")
DELETE_PRODUCT = "DELETE FROM products WHERE id = %s"

### orders
SELECT_PRODUCT_PRICE = "SELECT id, price FROM products WHERE id = %s"
DEDUCT_STOCK = "UPDATE products SET stock_quantity = stock_quantity - %s WHERE id = %s AND stock_quantity >= %s"
INSERT_ORDER = "INSERT INTO orders (user_id, total_amount, shipping_address, status) VALUES (%s, %s, %s, %s)"
INSERT_ORDER_ITEM = "INSERT INTO order_items (order_id, product_id, quantity, price) VALUES (%s, %s, %s, %s)"
SELECT_USER_ORDERS = """
    SELECT o.id AS order_id, o.order_date, o.total_amount, o.status,
           oi.product_id, oi.quantity, oi.price AS item_price,
           p.name AS product_name, p.image_url
    FROM orders o
    JOIN order_items oi ON o.id = oi.order_id
    JOIN products p ON oi.product_id = p.id
    WHERE o.user_id = %s
    ORDER BY o.order_date DESC, o.id DESC, oi.id
"""
SELECT_ALL_ORDERS = """
    SELECT o.id AS order_id, o.order_date, o.total_amount, o.status, o.shipping_address,
           u.username AS customer_username, u.email AS customer_email,
           oi.product_id, oi.quantity, oi.price AS item_price,
           p.name AS product_name, p.image_url
    FROM orders o
    JOIN users u ON o.user_id = u.id
    JOIN order_items oi ON o.id = oi.order_id
    JOIN products p ON oi.product_id = p.id
    ORDER BY o.order_date DESC, o.id DESC, oi.id
"""

_random = random.SystemRandom()


def _check_db():
    with pool.cursor() as cursor:
        cursor.execute("SELECT 1")


async def init():
    global pool, r

    pool = db.Pool(size=int(os.getenv("DB_POOL_SIZE", 10)),
                   host=os.getenv("DB_HOST", "localhost"),
                   port=int(os.getenv("DB_PORT", 3306)),
                   user=os.getenv("DB_USER", "root"),
                   password=os.getenv("DB_PASS", "toor"),
                   database=os.getenv("DB_NAME", "tulunad"))
    try:
        await pool.run(_check_db)
    except pymysql.err.Error:
        logger.exception('error connecting to MySQL')
        raise
    logger.info('connected to MySQL pool (size %d)', pool.size)

    r = aioredis.Redis(host=os.getenv("REDIS_HOST", "localhost"),
                       port=int(os.getenv("REDIS_PORT", 6379)),
                       decode_responses=True)
    await r.ping()


async def close():
    global pool, r
    if r is not None:
        await r.aclose()
        r = None
    if pool is not None:
        pool.close()
        pool = None


# generate random string
def random_string(length=const.TOKEN_LENGTH):
    return ''.join([_random.choice(string.ascii_letters + string.digits) for n in range(length)])


def _is_text(value):
    return isinstance(value, str) and bool(value.strip())


def _optional_text(data, key):
    value = data.get(key)
    return value if _is_text(value) else None


def _to_int(value):
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        number = value
    elif isinstance(value, str):
        try:
            number = int(value)
        except ValueError:
            return None
    else:
        return None
    # signed INT column
    if not -const.MAX_INT - 1 <= number <= const.MAX_INT:
        return None
    return number


def _to_price(value):
    if isinstance(value, bool) or not isinstance(value, (int, float, str)):
        return None
    try:
        price = float(value)
    except ValueError:
        return None
    if not math.isfinite(price) or price < 0 or round(price, 2) > const.MAX_PRICE:
        return None
    return price


# signup
def _signup(email, password, username):
    hashed = bcrypt.hashpw(password.encode('utf-8'), bcrypt.gensalt(rounds=const.BCRYPT_ROUNDS))
    try:
        with pool.cursor() as cursor:
            cursor.execute(INSERT_USER, (username, email, hashed.decode('utf-8'), const.ROLE_USER))
            return {'user_id': cursor.lastrowid}
    except pymysql.err.IntegrityError as error:
        if error.args[0] == ER.DUP_ENTRY:
            return {'err': const.EMAIL_EXISTS}
        raise


async def signup(email, password, first_name, last_name):
    if not all(_is_text(v) for v in (email, password, first_name, last_name)):
        return {'err': const.MISSING_FIELDS}

    username = '%s %s' % (first_name.strip(), last_name.strip())
    res = await pool.run(_signup, email.strip(), password, username)
    if 'err' in res:
        logger.info('signup rejected for %s: %s', email, res['err']['code'])
    else:
        logger.info('user %s registered', res['user_id'])
    return res


# login
def _check_credentials(email, password):
    with pool.cursor() as cursor:
        cursor.execute(SELECT_USER_BY_EMAIL, (email,))
        user = cursor.fetchone()
    if user is None:
        return None

    try:
        match = bcrypt.checkpw(password.encode('utf-8'), user['password'].encode('utf-8'))
    except ValueError:
        logger.warning('user %s has an unreadable password hash', user['id'])
        match = False
    if not match:
        return None
    return {'id': user['id'], 'username': user['username'], 'email': user['email'], 'role': user['role']}


async def login(email, password):
    if not _is_text(email) or not _is_text(password):
        return {'err': const.MISSING_FIELDS}

    user = await pool.run(_check_credentials, email.strip(), password)
    if user is None:
        return {'err': const.INVALID_CREDENTIALS}

    token = random_string()
    await r.set(const.TOKEN_KEY % token, json.dumps(user), ex=const.TOKEN_TTL)
    return {'token': token, 'user': user}


async def get_token_user(token):
    raw = await r.get(const.TOKEN_KEY % token)
    if not raw:
        return None
    return json.loads(raw)


async def logout(token):
    await r.delete(const.TOKEN_KEY % token)


# products
def _product(row):
    product = dict(row)
    product['price'] = float(row['price'])
    product['stock_quantity'] = int(row['stock_quantity'])
    return product


def _parse_product(data):
    name = data.get('name')
    price = _to_price(data.get('price'))
    stock = _to_int(data.get('stock_quantity'))
    if not _is_text(name) or price is None or stock is None or stock < 0:
        return None
    return (name.strip(), _optional_text(data, 'description'), price, stock,
            _optional_text(data, 'category'), _optional_text(data, 'image_url'))


def _get_products(category):
    with pool.cursor() as cursor:
        if category:
            cursor.execute(SELECT_PRODUCTS_BY_CATEGORY, (category,))
        else:
            cursor.execute(SELECT_PRODUCTS)
        return [_product(row) for row in cursor.fetchall()]


async def get_products(category=None):
    return await pool.run(_get_products, category)


def _get_product(product_id):
    with pool.cursor() as cursor:
        cursor.execute(SELECT_PRODUCT, (product_id,))
        row = cursor.fetchone()
    return _product(row) if row else None


async def get_product(product_id):
    return await pool.run(_get_product, product_id)


def _create_product(values):
    with pool.cursor() as cursor:
        cursor.execute(INSERT_PRODUCT, values)
        return cursor.lastrowid


async def create_product(data):
    values = _parse_product(data)
    if values is None:
        return {'err': const.INVALID_PRODUCT}
    product_id = await pool.run(_create_product, values)
    logger.info('product %s created', product_id)
    return {'product_id': product_id}


def _update_product(product_id, values):
    with pool.cursor() as cursor:
        cursor.execute(UPDATE_PRODUCT, values + (product_id,))
        return cursor.rowcount


async def update_product(product_id, data):
    values = _parse_product(data)
    if values is None:
        return {'err': const.INVALID_PRODUCT}
    if await pool.run(_update_product, product_id, values) == 0:
        return {'err': const.PRODUCT_NOT_FOUND}
    logger.info('product %s updated', product_id)
    return {'product_id': product_id}


def _delete_product(product_id):
    try:
        with pool.cursor() as cursor:
            cursor.execute(DELETE_PRODUCT, (product_id,))
            if cursor.rowcount == 0:
                return {'err': const.PRODUCT_NOT_FOUND}
    except pymysql.err.IntegrityError as error:
        if error.args[0] == ER.ROW_IS_REFERENCED_2:
            return {'err': const.PRODUCT_IN_USE}
        raise
    return {'product_id': product_id}


async def delete_product(product_id):
    res = await pool.run(_delete_product, product_id)
    if 'err' not in res:
        logger.info('product %s deleted', product_id)
    return res


# orders
class OrderRejected(Exception):
    """Raised inside the order transaction to roll it back."""

    def __init__(self, err):
        super().__init__(err['message'])
        self.err = err


def _parse_items(items):
    if not isinstance(items, list) or not items:
        return None
    lines = []
    for item in items:
        if not isinstance(item, dict):
            return None
        product_id = _to_int(item.get('id'))
        quantity = _to_int(item.get('quantity'))
        if product_id is None or quantity is None or quantity < 1:
            return None
        lines.append((product_id, quantity))
    return lines


def _place_order(user_id, lines, address):
    with pool.transaction() as cursor:
        prices = {}
        total = 0
        for product_id, quantity in lines:
            if product_id not in prices:
                cursor.execute(SELECT_PRODUCT_PRICE, (product_id,))
                row = cursor.fetchone()
                if row is None:
                    raise OrderRejected(const.PRODUCT_NOT_FOUND)
                prices[product_id] = row['price']
            total += prices[product_id] * quantity
        if total > const.MAX_ORDER_TOTAL:
            raise OrderRejected(const.ORDER_TOO_LARGE)

        cursor.execute(INSERT_ORDER, (user_id, total, address, const.ORDER_STATUS_PENDING))
        order_id = cursor.lastrowid

        for product_id, quantity in lines:
            # no row matched: stock would go negative
            cursor.execute(DEDUCT_STOCK, (quantity, product_id, quantity))
            if cursor.rowcount == 0:
                err = dict(const.INSUFFICIENT_STOCK)
                err['message'] = err['message'] % product_id
                raise OrderRejected(err)
            cursor.execute(INSERT_ORDER_ITEM, (order_id, product_id, quantity, prices[product_id]))
    return order_id, total


async def place_order(user_id, items, shipping_address):
    lines = _parse_items(items)
    if lines is None:
        return {'err': const.INVALID_ORDER}
    if not (isinstance(shipping_address, dict) and shipping_address) and not _is_text(shipping_address):
        return {'err': const.INVALID_ORDER}

    try:
        order_id, total = await pool.run(_place_order, user_id, lines, json.dumps(shipping_address))
    except OrderRejected as error:
        logger.warning('order by user %s rolled back: %s', user_id, error)
        return {'err': error.err}

    logger.info('order %s placed by user %s, total %s', order_id, user_id, total)
    return {'order_id': order_id, 'total': float(total)}


def _group_orders(rows, admin=False):
    orders = {}
    for row in rows:
        order = orders.get(row['order_id'])
        if order is None:
            order = {
                'order_id': row['order_id'],
                'order_date': row['order_date'],
                'total_amount': float(row['total_amount']),
                'status': row['status'],
                'items': []
            }
            if admin:
                address = row['shipping_address']
                order['shipping_address'] = json.loads(address) if address else None
                order['customer'] = {'username': row['customer_username'], 'email': row['customer_email']}
            orders[row['order_id']] = order
        order['items'].append({
            'product_id': row['product_id'],
            'product_name': row['product_name'],
            'quantity': row['quantity'],
            'item_price': float(row['item_price']),
            'image_url': row['image_url']
        })
    return list(orders.values())


def _get_user_orders(user_id):
    with pool.cursor() as cursor:
        cursor.execute(SELECT_USER_ORDERS, (user_id,))
        return _group_orders(cursor.fetchall())


async def get_user_orders(user_id):
    return await pool.run(_get_user_orders, user_id)


def _get_all_orders():
    with pool.cursor() as cursor:
        cursor.execute(SELECT_ALL_ORDERS)
        return _group_orders(cursor.fetchall(), admin=True)


async def get_all_orders():
    return await pool.run(_get_all_orders)
