#!/usr/bin/env python3

import argparse
import logging
import os

import bcrypt
import pymysql
import pymysql.cursors
from dotenv import load_dotenv

import const

logger = logging.getLogger(__name__)


def split_statements(script):
    return [s.strip() for s in script.split(';') if s.strip()]


def apply_schema(conn, path):
    with open(path) as f:
        statements = split_statements(f.read())
    with conn.cursor() as cursor:
        for statement in statements:
            cursor.execute(statement)
    logger.info('applied %d statements from %s', len(statements), path)


def ensure_admin(conn, email, password, username='Admin'):
    hashed = bcrypt.hashpw(password.encode('utf-8'), bcrypt.gensalt(rounds=const.BCRYPT_ROUNDS)).decode('utf-8')
    with conn.cursor() as cursor:
        cursor.execute("SELECT id FROM users WHERE email = %s", (email,))
        row = cursor.fetchone()
        if row:
            cursor.execute("UPDATE users SET password = %s, role = %s WHERE id = %s",
                           (hashed, const.ROLE_ADMIN, row['id']))
            logger.info('promoted user %s to admin', row['id'])
            return row['id']
        cursor.execute("INSERT INTO users (username, email, password, role) VALUES (%s, %s, %s, %s)",
                       (username, email, hashed, const.ROLE_ADMIN))
        logger.info('created admin user %s', cursor.lastrowid)
        return cursor.lastrowid


def main():
    load_dotenv()
    logging.basicConfig(level=logging.INFO)

    parser = argparse.ArgumentParser(description='Create the store tables and an admin account.')
    parser.add_argument('--schema', default=os.path.join(os.path.dirname(__file__), 'schema.sql'))
    parser.add_argument('--admin-email', default=os.getenv("ADMIN_EMAIL"))
    parser.add_argument('--admin-password', default=os.getenv("ADMIN_PASSWORD"))
    args = parser.parse_args()
    if bool(args.admin_email) != bool(args.admin_password):
        parser.error('--admin-email and --admin-password go together')

    conn = pymysql.connect(host=os.getenv("DB_HOST", "localhost"),
                           port=int(os.getenv("DB_PORT", 3306)),
                           user=os.getenv("DB_USER", "root"),
                           password=os.getenv("DB_PASS", "toor"),
                           database=os.getenv("DB_NAME", "tulunad"),
                           cursorclass=pymysql.cursors.DictCursor,
                           autocommit=True)
    try:
        apply_schema(conn, args.schema)
        if args.admin_email:
            ensure_admin(conn, args.admin_email, args.admin_password)
    finally:
        conn.close()


if __name__ == "__main__":
    main()
