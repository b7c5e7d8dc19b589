import asyncio
import contextlib
import functools
import logging
import queue
import threading
from concurrent.futures import ThreadPoolExecutor

import pymysql
import pymysql.cursors
from pymysql.constants import CLIENT, CR

logger = logging.getLogger(__name__)

# errors after which the connection itself is unusable
CONNECTION_LOST = (CR.CR_SERVER_GONE_ERROR, CR.CR_SERVER_LOST)


def is_broken(conn, error):
    if not isinstance(error, pymysql.err.OperationalError):
        return False
    code = error.args[0] if error.args else None
    return code in CONNECTION_LOST or not conn.open


class Pool:
    """A fixed-size pool of PyMySQL connections.

    Connections are opened lazily up to `size`; once all of them are checked
    out, acquire() blocks until one is released. PyMySQL is blocking, so
    coroutines go through run(), which executes the work on a thread pool.
    """

    def __init__(self, size=10, executor=None, **connect_kwargs):
        self.size = size
        self.connect_kwargs = dict(connect_kwargs)
        self.connect_kwargs.setdefault('cursorclass', pymysql.cursors.DictCursor)
        self.connect_kwargs.setdefault('autocommit', True)
        self.connect_kwargs.setdefault('charset', 'utf8mb4')
        # rowcount of an UPDATE counts matched rows, not changed rows
        self.connect_kwargs['client_flag'] = self.connect_kwargs.get('client_flag', 0) | CLIENT.FOUND_ROWS
        self.executor = executor or ThreadPoolExecutor(max_workers=size)
        self._idle = queue.LifoQueue()
        self._slots = threading.BoundedSemaphore(size)

    def _connect(self):
        return pymysql.connect(**self.connect_kwargs)

    def acquire(self):
        self._slots.acquire()
        try:
            try:
                conn = self._idle.get_nowait()
            except queue.Empty:
                conn = self._connect()
                logger.debug('connection opened')
            else:
                conn.ping(reconnect=True)
        except Exception:
            self._slots.release()
            raise
        logger.debug('connection acquired')
        return conn

    def release(self, conn, broken=False):
        try:
            if broken:
                self._discard(conn)
            else:
                self._idle.put(conn)
                logger.debug('connection released')
        finally:
            self._slots.release()

    def _discard(self, conn):
        try:
            conn.close()
        except pymysql.err.Error:
            logger.debug('connection was already closed')
        logger.warning('dropped a broken connection from the pool')

    @contextlib.contextmanager
    def cursor(self):
        """Autocommit cursor for a one-off statement."""
        conn = self.acquire()
        broken = False
        try:
            with conn.cursor() as cursor:
                yield cursor
        except Exception as error:
            broken = is_broken(conn, error)
            raise
        finally:
            self.release(conn, broken)

    @contextlib.contextmanager
    def transaction(self):
        """Run the with-block inside BEGIN ... COMMIT.

        Any exception raised in the block, or by COMMIT itself, rolls the
        transaction back and is re-raised. The connection always goes back
        to the pool.
        """
        conn = self.acquire()
        broken = False
        try:
            conn.begin()
            with conn.cursor() as cursor:
                yield cursor
            conn.commit()
        except Exception as error:
            broken = is_broken(conn, error)
            if not self._rollback(conn):
                broken = True
            raise
        finally:
            self.release(conn, broken)

    def _rollback(self, conn):
        try:
            conn.rollback()
        except pymysql.err.Error:
            logger.exception('rollback failed')
            return False
        return True

    async def run(self, func, *args, **kwargs):
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self.executor, functools.partial(func, *args, **kwargs))

    def close(self):
        while True:
            try:
                conn = self._idle.get_nowait()
            except queue.Empty:
                break
            try:
                conn.close()
            except pymysql.err.Error:
                logger.exception('error closing connection')
        self.executor.shutdown(wait=False)
