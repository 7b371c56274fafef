"""
Session lifecycle management for a single management endpoint
"""

import itertools
import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeoutError
from enum import Enum
from typing import Callable, Optional, TypeVar

from .base import BaseConnection
from ..config import Endpoint, Settings, env_credentials
from ..exceptions import AuthenticationError, ConnectionError, TimeoutError


logger = logging.getLogger(__name__)

T = TypeVar('T')

ConnectionFactory = Callable[[Endpoint, str, Settings], BaseConnection]


def _remaining(deadline: Optional[float]) -> Optional[float]:
    if deadline is None:
        return None
    return max(0.0, deadline - time.monotonic())


class SessionState(Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    AUTHENTICATED = "authenticated"


class Session:
    """One authenticated connection to an endpoint"""

    _ids = itertools.count(1)

    def __init__(self, endpoint: Endpoint, connection: BaseConnection, created_at: float):
        self.id = next(Session._ids)
        self.endpoint = endpoint
        self.connection = connection
        self.created_at = created_at
        self.last_used = created_at
        self.suspect = False
        self.request_lock = threading.Lock()

    def __repr__(self) -> str:
        return f"<Session {self.id} {self.endpoint.name}{' suspect' if self.suspect else ''}>"


class SessionManager:
    """
    Owns the session to one endpoint

    The session is created lazily by the first acquire(). Only one login runs
    at a time; callers arriving while it is in progress wait for it and share
    its outcome. Transport failures mark the session suspect so the next
    acquire() reconnects, and repeated failures tear it down completely.
    """

    def __init__(self, endpoint: Endpoint, connection_factory: ConnectionFactory,
                 settings: Optional[Settings] = None,
                 credentials: Callable[[Endpoint], str] = env_credentials,
                 sleep: Callable[[float], None] = time.sleep,
                 clock: Callable[[], float] = time.monotonic):
        self.endpoint = endpoint
        self.settings = settings or Settings()
        self._factory = connection_factory
        self._credentials = credentials
        self._sleep = sleep
        self._clock = clock

        self._cond = threading.Condition()
        self._state = SessionState.DISCONNECTED
        self._session: Optional[Session] = None
        self._attempt = 0
        self._last_error: Optional[Exception] = None
        self._failures = 0
        self._executor: Optional[ThreadPoolExecutor] = None
        self._closed = False

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def consecutive_failures(self) -> int:
        return self._failures

    def acquire(self, timeout: Optional[float] = None) -> Session:
        """
        Return the live session, logging in first if needed

        Args:
            timeout: Seconds to wait for a login in progress and for our own
                login's retries; None waits as long as the login takes

        Raises:
            AuthenticationError: Credentials rejected (never retried)
            MissingCredentialError: Credential reference cannot be resolved
            ConnectionError: Endpoint unreachable after the configured attempts
            TimeoutError: No session became available within timeout
        """
        deadline = None if timeout is None else time.monotonic() + timeout
        return self._acquire(deadline)

    def release(self, session: Session) -> None:
        with self._cond:
            session.last_used = self._clock()

    def invalidate(self, session: Session) -> None:
        """Mark session as failed so the next acquire() reconnects"""
        with self._cond:
            if session is not self._session or session.suspect:
                return
            session.suspect = True
            self._failures += 1
            teardown = self._failures >= self.settings.max_consecutive_failures
            if teardown:
                self._session = None
                self._state = SessionState.DISCONNECTED
                self._failures = 0

        if teardown:
            logger.error(f"{self.settings.max_consecutive_failures} consecutive failures on "
                         f"{self.endpoint.name}, tearing down session {session.id}")
            self._close_connection(session)
        else:
            logger.warning(f"Session {session.id} to {self.endpoint.name} marked suspect")

    def execute(self, operation: Callable[[BaseConnection], T], timeout: Optional[float] = None,
                retry: bool = True) -> T:
        """
        Run operation against the session's connection

        ConnectionError from the operation invalidates the session and the
        call is retried on a fresh one with exponential backoff, unless retry
        is False. Timeouts and every other error propagate immediately.

        Args:
            operation: Called with the live connection
            timeout: Seconds for the whole call, including login and waiting
                behind other requests; defaults to settings.request_timeout
            retry: Set to False for operations that must not run twice
        """
        if timeout is None:
            timeout = self.settings.request_timeout
        deadline = None if timeout is None else time.monotonic() + timeout
        attempts = self.settings.retry_attempts if retry else 1

        for attempt in range(1, attempts + 1):
            session = self._acquire(deadline)
            try:
                result = self._run(session, operation, deadline, timeout)
            except TimeoutError:
                raise
            except ConnectionError as e:
                self.invalidate(session)
                if attempt >= attempts:
                    raise
                delay = self.settings.backoff(attempt)
                remaining = _remaining(deadline)
                if remaining is not None and remaining <= delay:
                    raise TimeoutError(
                        f"Call to {self.endpoint.name} failed ({str(e)}) and no time is left "
                        f"for retry {attempt}/{attempts - 1}",
                        details={'endpoint': self.endpoint.name, 'timeout': timeout},
                    ) from e
                logger.warning(f"Request to {self.endpoint.name} failed ({str(e)}), "
                               f"retry {attempt}/{attempts - 1} in {delay:.1f}s")
                self._sleep(delay)
                continue
            finally:
                self.release(session)

            with self._cond:
                self._failures = 0
            return result

    def close(self) -> None:
        """Log out and release every resource held for the endpoint"""
        with self._cond:
            self._closed = True
            session, self._session = self._session, None
            self._state = SessionState.DISCONNECTED
            executor, self._executor = self._executor, None
            self._cond.notify_all()

        if session is not None:
            self._close_connection(session)
            logger.info(f"Logged out of {self.endpoint.name}")
        if executor is not None:
            executor.shutdown(wait=False)

    def _acquire(self, deadline: Optional[float]) -> Session:
        while True:
            session = self._checkout(deadline)
            if not self._keepalive_due(session):
                return session
            try:
                self._ping(session)
                return session
            except ConnectionError as e:
                logger.warning(f"Keep-alive to {self.endpoint.name} failed: {str(e)}")
                self.release(session)
                self.invalidate(session)

    def _checkout(self, deadline: Optional[float]) -> Session:
        with self._cond:
            while True:
                if self._closed:
                    raise ConnectionError(f"Session manager for {self.endpoint.name} is closed")

                session = self._session
                if self._state is SessionState.AUTHENTICATED and session is not None and not session.suspect:
                    return session

                if self._state is SessionState.CONNECTING:
                    attempt = self._attempt
                    while self._state is SessionState.CONNECTING:
                        remaining = _remaining(deadline)
                        if remaining == 0:
                            raise TimeoutError(
                                f"Timed out waiting for login to {self.endpoint.name}",
                                details={'endpoint': self.endpoint.name},
                            )
                        self._cond.wait(remaining)
                    # a login that ran out of its caller's time is retried with ours
                    if (self._state is SessionState.DISCONNECTED and self._attempt == attempt
                            and self._last_error is not None
                            and not isinstance(self._last_error, TimeoutError)):
                        raise self._last_error
                    continue

                self._state = SessionState.CONNECTING
                self._attempt += 1
                stale, self._session = self._session, None
                break

        if stale is not None:
            logger.info(f"Reconnecting to {self.endpoint.name}, replacing session {stale.id}")
            self._close_connection(stale)

        try:
            session = self._login(deadline)
        except Exception as e:
            with self._cond:
                self._state = SessionState.DISCONNECTED
                self._last_error = e
                self._cond.notify_all()
            raise

        with self._cond:
            if self._closed:
                self._state = SessionState.DISCONNECTED
                self._cond.notify_all()
                closed = True
            else:
                self._session = session
                self._state = SessionState.AUTHENTICATED
                self._last_error = None
                self._cond.notify_all()
                closed = False
        if closed:
            self._close_connection(session)
            raise ConnectionError(f"Session manager for {self.endpoint.name} is closed")
        return session

    def _login(self, deadline: Optional[float]) -> Session:
        password = self._credentials(self.endpoint)
        attempts = self.settings.retry_attempts

        for attempt in range(1, attempts + 1):
            connection = self._factory(self.endpoint, password, self.settings)
            try:
                connection.connect()
            except AuthenticationError:
                logger.error(f"Authentication to {self.endpoint.name} as {self.endpoint.username} rejected")
                raise
            except ConnectionError as e:
                if attempt >= attempts:
                    raise ConnectionError(
                        f"Could not connect to {self.endpoint.name} after {attempts} attempts: {str(e)}",
                        details={'endpoint': self.endpoint.name, 'attempts': attempts},
                    ) from e
                delay = self.settings.backoff(attempt)
                remaining = _remaining(deadline)
                if remaining is not None and remaining <= delay:
                    raise TimeoutError(
                        f"Could not connect to {self.endpoint.name} in time after {attempt} attempts: {str(e)}",
                        details={'endpoint': self.endpoint.name, 'attempts': attempt},
                    ) from e
                logger.warning(f"Connection attempt {attempt}/{attempts} to {self.endpoint.name} "
                               f"failed ({str(e)}), retrying in {delay:.1f}s")
                self._sleep(delay)
                continue

            session = Session(self.endpoint, connection, self._clock())
            logger.info(f"Session {session.id} established with {self.endpoint.name} "
                        f"as {self.endpoint.username}")
            return session

    def _keepalive_due(self, session: Session) -> bool:
        interval = self.settings.keepalive_interval
        return bool(interval) and self._clock() - session.last_used >= interval

    def _ping(self, session: Session) -> None:
        if self.settings.serialize_requests:
            # a request in flight keeps the session busy; no ping needed
            if not session.request_lock.acquire(blocking=False):
                return
            try:
                session.connection.ping()
            finally:
                session.request_lock.release()
        else:
            session.connection.ping()
        session.last_used = self._clock()

    def _run(self, session: Session, operation: Callable[[BaseConnection], T],
             deadline: Optional[float], timeout: Optional[float]) -> T:
        lock = session.request_lock if self.settings.serialize_requests else None

        if lock is not None:
            remaining = _remaining(deadline)
            if not lock.acquire(timeout=-1 if remaining is None else remaining):
                # nothing was sent, the session is fine
                raise TimeoutError(
                    f"Timed out after {timeout}s waiting for session {session.id} to {self.endpoint.name}",
                    details={'endpoint': self.endpoint.name, 'timeout': timeout},
                )

        if deadline is None:
            try:
                return operation(session.connection)
            finally:
                if lock is not None:
                    lock.release()

        try:
            future = self._pool().submit(operation, session.connection)
        except BaseException:
            if lock is not None:
                lock.release()
            raise
        if lock is not None:
            # held until the operation really ends, even after we give up on it
            future.add_done_callback(lambda _: lock.release())

        try:
            return future.result(timeout=_remaining(deadline))
        except FutureTimeoutError:
            if future.cancel():
                raise TimeoutError(
                    f"Call to {self.endpoint.name} did not start within {timeout}s",
                    details={'endpoint': self.endpoint.name, 'timeout': timeout},
                )
            logger.warning(f"Call to {self.endpoint.name} exceeded {timeout}s, cancelling")
            try:
                session.connection.cancel()
            except Exception as e:
                logger.debug(f"Cancel on {self.endpoint.name} failed: {str(e)}")
            self.invalidate(session)
            raise TimeoutError(
                f"Call to {self.endpoint.name} timed out after {timeout}s",
                details={'endpoint': self.endpoint.name, 'timeout': timeout},
            )

    def _pool(self) -> ThreadPoolExecutor:
        with self._cond:
            if self._executor is None:
                self._executor = ThreadPoolExecutor(
                    max_workers=self.settings.max_workers,
                    thread_name_prefix=f"hvctl-{self.endpoint.address}",
                )
            return self._executor

    def _close_connection(self, session: Session) -> None:
        try:
            session.connection.disconnect()
        except Exception as e:
            logger.debug(f"Logout from {self.endpoint.name} failed: {str(e)}")

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
