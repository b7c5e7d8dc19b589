#!/usr/bin/env python3

import functools
import json
import logging
import os
from datetime import date, datetime
from decimal import Decimal

from aiohttp import web
from dotenv import load_dotenv

import const
import model

logger = logging.getLogger(__name__)

CORS_ORIGIN = web.AppKey('cors_origin', str)

ERR_STATUS = {
    'MISSING_FIELDS': 400,
    'INVALID_PRODUCT': 400,
    'INVALID_ORDER': 400,
    'INSUFFICIENT_STOCK': 400,
    'ORDER_TOO_LARGE': 400,
    'INVALID_CREDENTIALS': 401,
    'PRODUCT_NOT_FOUND': 404,
    'EMAIL_EXISTS': 409,
    'PRODUCT_IN_USE': 409,
}


def _default(o):
    if isinstance(o, (datetime, date)):
        return o.isoformat()
    if isinstance(o, Decimal):
        return float(o)
    raise TypeError('%r is not JSON serializable' % (o,))


def json_response(data, status=200):
    return web.Response(status=status, body=bytes(json.dumps(data, default=_default), 'utf-8'),
                        content_type='application/json')


def error_response(err):
    return json_response(err, status=ERR_STATUS[err['code']])


async def parse_request_body(req):
    body = await req.read()
    if not body:
        return json_response(const.EMPTY_REQUEST, status=400)

    try:
        data = json.loads(body.decode('utf-8'))
    except ValueError:
        return json_response(const.MALFORMED_JSON, status=400)
    if not isinstance(data, dict):
        return json_response(const.MALFORMED_JSON, status=400)

    return data


def get_request_token(req):
    auth = req.headers.get('Authorization', '')
    if auth.startswith('Bearer '):
        return auth[len('Bearer '):].strip() or None
    return req.headers.get('Access-Token') or req.query.get('access_token')


def check_token(f):
    @functools.wraps(f)
    async def wrapper(req):
        token = get_request_token(req)
        if token:
            user = await model.get_token_user(token)
            if user:
                return await f(req, user)
        return json_response(const.INVALID_ACCESS_TOKEN, status=401)
    return wrapper


def admin_only(f):
    @functools.wraps(f)
    async def wrapper(req, user):
        if user.get('role') != const.ROLE_ADMIN:
            return json_response(const.PERMISSION_DENIED, status=403)
        return await f(req, user)
    return wrapper


def _add_cors_headers(req, resp):
    resp.headers['Access-Control-Allow-Origin'] = req.app[CORS_ORIGIN]
    resp.headers['Access-Control-Allow-Headers'] = 'Authorization, Access-Token, Content-Type'
    resp.headers['Access-Control-Allow-Methods'] = 'GET, POST, PUT, DELETE, OPTIONS'


@web.middleware
async def cors_middleware(req, handler):
    if req.method == 'OPTIONS':
        resp = web.Response(status=204)
    else:
        try:
            resp = await handler(req)
        except web.HTTPException as exc:
            _add_cors_headers(req, exc)
            raise
    _add_cors_headers(req, resp)
    return resp


@web.middleware
async def error_middleware(req, handler):
    try:
        return await handler(req)
    except web.HTTPNotFound:
        return json_response(const.NOT_FOUND, status=404)
    except web.HTTPMethodNotAllowed as exc:
        resp = json_response(const.METHOD_NOT_ALLOWED, status=405)
        resp.headers['Allow'] = exc.headers.get('Allow', '')
        return resp
    except web.HTTPException:
        raise
    except Exception:
        logger.exception('unhandled error on %s %s', req.method, req.path)
        return json_response(const.INTERNAL_ERROR, status=500)


async def get_index(req):
    return web.Response(text='Tulunad Store Backend API is running!')


### auth
async def post_signup(req):
    data = await parse_request_body(req)
    if not isinstance(data, dict): return data

    res = await model.signup(data.get('email'), data.get('password'),
                             data.get('firstName'), data.get('lastName'))
    if 'err' in res:
        return error_response(res['err'])
    return json_response({'message': 'User registered successfully!', 'userId': res['user_id']}, status=201)


async def post_login(req):
    data = await parse_request_body(req)
    if not isinstance(data, dict): return data

    res = await model.login(data.get('email'), data.get('password'))
    if 'err' in res:
        return error_response(res['err'])
    return json_response({'message': 'Logged in successfully', 'token': res['token'], 'user': res['user']})


@check_token
async def get_me(req, user):
    return json_response({'user': user})


@check_token
async def post_logout(req, user):
    await model.logout(get_request_token(req))
    return web.Response(status=204)


### products
async def get_products(req):
    res = await model.get_products(req.query.get('category') or None)
    return json_response(res)


async def get_product(req):
    res = await model.get_product(int(req.match_info['id']))
    if res is None:
        return error_response(const.PRODUCT_NOT_FOUND)
    return json_response(res)


@check_token
@admin_only
async def post_products(req, user):
    data = await parse_request_body(req)
    if not isinstance(data, dict): return data

    res = await model.create_product(data)
    if 'err' in res:
        return error_response(res['err'])
    return json_response({'message': 'Product created successfully', 'productId': res['product_id']}, status=201)


@check_token
@admin_only
async def put_product(req, user):
    data = await parse_request_body(req)
    if not isinstance(data, dict): return data

    res = await model.update_product(int(req.match_info['id']), data)
    if 'err' in res:
        return error_response(res['err'])
    return json_response({'message': 'Product updated successfully'})


@check_token
@admin_only
async def delete_product(req, user):
    res = await model.delete_product(int(req.match_info['id']))
    if 'err' in res:
        return error_response(res['err'])
    return json_response({'message': 'Product deleted successfully'})


### orders
@check_token
async def post_orders(req, user):
    data = await parse_request_body(req)
    if not isinstance(data, dict): return data

    res = await model.place_order(user['id'], data.get('items'), data.get('shippingAddress'))
    if 'err' in res:
        return error_response(res['err'])
    resp = {'message': 'Order placed successfully!', 'orderId': res['order_id'], 'total': res['total']}
    return json_response(resp, status=201)


@check_token
async def get_my_orders(req, user):
    res = await model.get_user_orders(user['id'])
    return json_response(res)


@check_token
@admin_only
async def get_admin_orders(req, user):
    res = await model.get_all_orders()
    return json_response(res)


def make_app(cors_origin=None):
    app = web.Application(middlewares=[cors_middleware, error_middleware])
    app[CORS_ORIGIN] = cors_origin or os.getenv("CORS_ORIGIN", "http://localhost:3000")

    app.router.add_route('GET',    '/',                          get_index)
    app.router.add_route('POST',   '/api/auth/signup',           post_signup)
    app.router.add_route('POST',   '/api/auth/login',            post_login)
    app.router.add_route('GET',    '/api/auth/me',               get_me)
    app.router.add_route('POST',   '/api/auth/logout',           post_logout)
    app.router.add_route('GET',    '/api/products',              get_products)
    app.router.add_route('POST',   '/api/products',              post_products)
    app.router.add_route('GET',    r'/api/products/{id:\d+}',    get_product)
    app.router.add_route('PUT',    r'/api/products/{id:\d+}',    put_product)
    app.router.add_route('DELETE', r'/api/products/{id:\d+}',    delete_product)
    app.router.add_route('POST',   '/api/orders',                post_orders)
    app.router.add_route('GET',    '/api/orders',                get_admin_orders)
    app.router.add_route('GET',    '/api/orders/my-orders',      get_my_orders)
    return app


async def on_startup(app):
    await model.init()


async def on_cleanup(app):
    await model.close()


def main():
    load_dotenv()
    logging.basicConfig(level=os.getenv("LOG_LEVEL", "INFO"),
                        format='%(asctime)s %(levelname)s %(name)s: %(message)s')

    host = os.getenv("APP_HOST", "localhost")
    port = int(os.getenv("APP_PORT", "8080"))

    app = make_app()
    app.on_startup.append(on_startup)
    app.on_cleanup.append(on_cleanup)
    web.run_app(app, host=host, port=port)


if __name__ == "__main__":
    main()
