"""
Unit tests for session management
"""

import threading
import time

import pytest

from hvctl.config import Settings
from hvctl.connections.session import SessionManager, SessionState
from hvctl.exceptions import (
    AuthenticationError, ConnectionError, MissingCredentialError, NotFoundError, TimeoutError,
)
from hvctl.inventory.base import ObjectKind


def wait_for(predicate, timeout=5.0):
    deadline = time.monotonic() + timeout
    while not predicate():
        if time.monotonic() > deadline:
            raise AssertionError("condition not reached")
        time.sleep(0.01)


def make_manager(endpoint, fake_server, sleeps, clock, **overrides):
    settings = Settings(keepalive_interval=0)
    for name, value in overrides.items():
        setattr(settings, name, value)
    return SessionManager(endpoint, fake_server.factory, settings,
                          credentials=lambda ep: "secret", sleep=sleeps.append, clock=clock)


class TestSessionLifecycle:
    """Test cases for acquire, release and invalidate"""

    def test_lazy_login(self, session_manager, fake_server):
        """Test no connection is opened before the first acquire"""
        assert session_manager.state is SessionState.DISCONNECTED
        assert fake_server.connect_calls == 0

        session = session_manager.acquire()

        assert session_manager.state is SessionState.AUTHENTICATED
        assert fake_server.connect_calls == 1
        assert session.connection.password == "secret"
        assert session.endpoint.address == "esxi01.lab.local"

    def test_session_reused(self, session_manager, fake_server):
        """Test subsequent acquires share the live session"""
        first = session_manager.acquire()
        session_manager.release(first)
        second = session_manager.acquire()

        assert first is second
        assert fake_server.connect_calls == 1

    def test_unreachable_endpoint_retries_with_backoff(self, session_manager, fake_server, sleeps):
        """Test exactly 3 connection attempts with increasing delays"""
        fake_server.connect_error = ConnectionError("Connection refused")

        with pytest.raises(ConnectionError) as excinfo:
            session_manager.acquire()

        assert fake_server.connect_calls == 3
        assert sleeps == [1.0, 2.0]
        assert excinfo.value.details['attempts'] == 3
        assert session_manager.state is SessionState.DISCONNECTED

    def test_transient_failure_recovers(self, session_manager, fake_server, sleeps):
        """Test login succeeds after transient failures"""
        fake_server.connect_failures = [ConnectionError("reset"), ConnectionError("reset")]

        session = session_manager.acquire()

        assert session is not None
        assert fake_server.connect_calls == 3
        assert sleeps == [1.0, 2.0]

    def test_authentication_error_not_retried(self, session_manager, fake_server, sleeps):
        """Test bad credentials fail on the first attempt"""
        fake_server.connect_error = AuthenticationError("Invalid login")

        with pytest.raises(AuthenticationError):
            session_manager.acquire()

        assert fake_server.connect_calls == 1
        assert sleeps == []
        assert session_manager.state is SessionState.DISCONNECTED

    def test_missing_credential(self, endpoint, fake_server, sleeps, clock):
        """Test unresolved credential fails before any connection"""
        def no_credential(ep):
            raise MissingCredentialError(f"{ep.credential_ref} is not set")

        manager = SessionManager(endpoint, fake_server.factory, Settings(),
                                 credentials=no_credential, sleep=sleeps.append, clock=clock)

        with pytest.raises(MissingCredentialError):
            manager.acquire()
        assert fake_server.connect_calls == 0

    def test_invalidate_triggers_reconnect(self, session_manager, fake_server):
        """Test an invalidated session is replaced on next acquire"""
        first = session_manager.acquire()
        session_manager.release(first)
        session_manager.invalidate(first)

        second = session_manager.acquire()

        assert second is not first
        assert first.suspect is True
        assert fake_server.connect_calls == 2
        assert fake_server.disconnect_calls == 1

    def test_invalidate_stale_session_ignored(self, session_manager, fake_server):
        """Test invalidating an already replaced session does nothing"""
        first = session_manager.acquire()
        session_manager.invalidate(first)
        second = session_manager.acquire()

        session_manager.invalidate(first)

        assert second.suspect is False
        assert session_manager.consecutive_failures == 1

    def test_consecutive_failures_tear_down(self, endpoint, fake_server, sleeps, clock):
        """Test session is logged out after max_consecutive_failures"""
        manager = make_manager(endpoint, fake_server, sleeps, clock, max_consecutive_failures=2)

        first = manager.acquire()
        manager.invalidate(first)
        assert manager.state is SessionState.AUTHENTICATED

        second = manager.acquire()
        manager.invalidate(second)

        assert manager.state is SessionState.DISCONNECTED
        assert manager.consecutive_failures == 0
        assert fake_server.disconnect_calls == 2
        manager.close()

    def test_keepalive_ping(self, endpoint, fake_server, sleeps, clock):
        """Test idle session is pinged before reuse"""
        manager = make_manager(endpoint, fake_server, sleeps, clock, keepalive_interval=60)
        first = manager.acquire()
        manager.release(first)

        clock.advance(61)
        second = manager.acquire()

        assert second is first
        assert fake_server.ping_calls == 1
        manager.close()

    def test_keepalive_failure_reconnects(self, endpoint, fake_server, sleeps, clock):
        """Test failed keep-alive replaces the session"""
        manager = make_manager(endpoint, fake_server, sleeps, clock, keepalive_interval=60)
        first = manager.acquire()
        manager.release(first)
        fake_server.ping_error = ConnectionError("session expired")

        clock.advance(61)
        second = manager.acquire()

        assert second is not first
        assert fake_server.connect_calls == 2
        manager.close()

    def test_close(self, session_manager, fake_server):
        """Test close logs out and refuses further use"""
        session_manager.acquire()

        session_manager.close()

        assert session_manager.state is SessionState.DISCONNECTED
        assert fake_server.disconnect_calls == 1
        with pytest.raises(ConnectionError):
            session_manager.acquire()

    def test_context_manager(self, endpoint, fake_server, sleeps, clock):
        """Test context manager closes the session"""
        with make_manager(endpoint, fake_server, sleeps, clock) as manager:
            manager.acquire()

        assert fake_server.disconnect_calls == 1


class TestConcurrentAcquire:
    """Test cases for concurrent logins"""

    def test_single_login_for_concurrent_callers(self, session_manager, fake_server):
        """Test callers arriving during login wait instead of logging in again"""
        fake_server.connect_gate = threading.Event()
        sessions = []

        threads = [threading.Thread(target=lambda: sessions.append(session_manager.acquire()))
                   for _ in range(5)]
        for thread in threads:
            thread.start()
        assert fake_server.connect_started.wait(5)
        time.sleep(0.1)
        assert session_manager.state is SessionState.CONNECTING
        fake_server.connect_gate.set()
        for thread in threads:
            thread.join(5)

        assert fake_server.connect_calls == 1
        assert len(sessions) == 5
        assert all(s is sessions[0] for s in sessions)

    def test_waiters_share_login_failure(self, session_manager, fake_server):
        """Test callers waiting on a failed login get its error"""
        fake_server.connect_gate = threading.Event()
        fake_server.connect_error = AuthenticationError("Invalid login")
        errors = []

        def worker():
            try:
                session_manager.acquire()
            except AuthenticationError as e:
                errors.append(e)

        threads = [threading.Thread(target=worker) for _ in range(4)]
        for thread in threads:
            thread.start()
        assert fake_server.connect_started.wait(5)
        time.sleep(0.1)
        fake_server.connect_gate.set()
        for thread in threads:
            thread.join(5)

        assert fake_server.connect_calls == 1
        assert len(errors) == 4


class TestExecute:
    """Test cases for SessionManager.execute"""

    def test_execute(self, session_manager, fake_server):
        """Test operation runs against the live connection"""
        host = fake_server.default_host

        properties = session_manager.execute(lambda conn: conn.retrieve_properties(host, ["name"]))

        assert properties == {"name": "esxi01"}

    def test_connection_error_retried_on_new_session(self, session_manager, fake_server, sleeps):
        """Test transport failure invalidates the session and retries"""
        host = fake_server.default_host
        fake_server.fetch_failures = [ConnectionError("connection reset")]

        properties = session_manager.execute(lambda conn: conn.retrieve_properties(host, ["name"]))

        assert properties == {"name": "esxi01"}
        assert len(fake_server.fetch_calls) == 2
        assert fake_server.connect_calls == 2
        assert sleeps == [1.0]
        assert session_manager.consecutive_failures == 0

    def test_retries_exhausted(self, session_manager, fake_server, sleeps):
        """Test ConnectionError raised after the configured attempts"""
        host = fake_server.default_host
        fake_server.fetch_errors[host] = ConnectionError("connection reset")

        with pytest.raises(ConnectionError):
            session_manager.execute(lambda conn: conn.retrieve_properties(host, ["name"]))

        assert len(fake_server.fetch_calls) == 3
        assert sleeps == [1.0, 2.0]

    def test_not_found_not_retried(self, session_manager, fake_server, sleeps):
        """Test errors other than ConnectionError propagate immediately"""
        missing = fake_server.ref(ObjectKind.HOST, "host-99")

        with pytest.raises(NotFoundError):
            session_manager.execute(lambda conn: conn.retrieve_properties(missing, ["name"]))

        assert len(fake_server.fetch_calls) == 1
        assert sleeps == []

    def test_retry_disabled(self, session_manager, fake_server, sleeps):
        """Test retry=False runs the operation once"""
        host = fake_server.default_host
        fake_server.fetch_failures = [ConnectionError("connection reset")]

        with pytest.raises(ConnectionError):
            session_manager.execute(lambda conn: conn.retrieve_properties(host, ["name"]), retry=False)

        assert len(fake_server.fetch_calls) == 1

    def test_timeout_cancels_and_marks_suspect(self, session_manager, fake_server):
        """Test timed out call aborts the transport and forces a reconnect"""
        host = fake_server.default_host
        fake_server.fetch_gate = threading.Event()

        with pytest.raises(TimeoutError):
            session_manager.execute(lambda conn: conn.retrieve_properties(host, ["name"]), timeout=0.1)

        assert fake_server.cancel_calls == 1
        assert len(fake_server.fetch_calls) == 1
        fake_server.fetch_gate.set()
        fake_server.fetch_gate = None

        properties = session_manager.execute(lambda conn: conn.retrieve_properties(host, ["name"]))

        assert properties == {"name": "esxi01"}
        assert fake_server.connect_calls == 2

    def test_timeout_from_settings(self, endpoint, fake_server, sleeps, clock):
        """Test settings.request_timeout applies when no timeout is given"""
        manager = make_manager(endpoint, fake_server, sleeps, clock, request_timeout=0.1)
        host = fake_server.default_host
        fake_server.fetch_gate = threading.Event()

        try:
            with pytest.raises(TimeoutError):
                manager.execute(lambda conn: conn.retrieve_properties(host, ["name"]))
        finally:
            fake_server.fetch_gate.set()
            manager.close()


class TestBackoff:
    """Test cases for Settings.backoff"""

    def test_exponential(self):
        settings = Settings(backoff_base=1.0, backoff_factor=2.0, backoff_max=30.0)
        assert [settings.backoff(n) for n in range(1, 5)] == [1.0, 2.0, 4.0, 8.0]

    def test_capped(self):
        settings = Settings(backoff_base=10.0, backoff_factor=3.0, backoff_max=30.0)
        assert settings.backoff(3) == 30.0


class TestDeadlines:
    """Test cases for timeouts that expire before a call reaches the endpoint"""

    def test_queued_call_times_out_without_disturbing_running_call(self, session_manager, fake_server):
        """Test a call stuck behind another request neither cancels it nor runs later"""
        host = fake_server.default_host
        fake_server.fetch_gate = threading.Event()
        outcome = []
        ran = []

        running = threading.Thread(target=lambda: outcome.append(
            session_manager.execute(lambda conn: conn.retrieve_properties(host, ["name"]))))
        running.start()
        wait_for(lambda: fake_server.fetch_calls)

        try:
            with pytest.raises(TimeoutError):
                session_manager.execute(lambda conn: ran.append(1), timeout=0.1)
        finally:
            fake_server.fetch_gate.set()
            running.join(5)

        assert outcome == [{"name": "esxi01"}]
        assert fake_server.cancel_calls == 0
        assert session_manager.consecutive_failures == 0
        assert session_manager.state is SessionState.AUTHENTICATED
        time.sleep(0.1)
        assert ran == []

    def test_login_wait_honours_timeout(self, session_manager, fake_server):
        """Test a caller waiting on someone else's login gives up after its timeout"""
        fake_server.connect_gate = threading.Event()
        sessions = []

        leader = threading.Thread(target=lambda: sessions.append(session_manager.acquire()))
        leader.start()
        assert fake_server.connect_started.wait(5)

        try:
            with pytest.raises(TimeoutError):
                session_manager.acquire(timeout=0.1)
        finally:
            fake_server.connect_gate.set()
            leader.join(5)

        assert len(sessions) == 1
        assert fake_server.connect_calls == 1
        assert session_manager.acquire(timeout=0.1) is sessions[0]

    def test_login_retries_stop_at_deadline(self, session_manager, fake_server, sleeps):
        """Test backoff that would overrun the timeout ends the login"""
        fake_server.connect_error = ConnectionError("Connection refused")

        with pytest.raises(TimeoutError) as excinfo:
            session_manager.execute(lambda conn: conn.ping(), timeout=0.5)

        assert fake_server.connect_calls == 1
        assert sleeps == []
        assert isinstance(excinfo.value.__cause__, ConnectionError)

    def test_login_after_timed_out_login(self, session_manager, fake_server):
        """Test a login abandoned for lack of time does not fail the next caller"""
        fake_server.connect_failures = [ConnectionError("Connection refused")]

        with pytest.raises(TimeoutError):
            session_manager.acquire(timeout=0.5)

        assert session_manager.acquire() is not None
        assert fake_server.connect_calls == 2

    def test_release_records_last_use(self, session_manager, clock):
        session = session_manager.acquire()
        clock.advance(10)

        session_manager.release(session)

        assert session.last_used == clock.now

    def test_keepalive_skipped_while_request_in_flight(self, endpoint, fake_server, sleeps, clock):
        """Test acquire does not queue a ping behind a running request"""
        manager = make_manager(endpoint, fake_server, sleeps, clock, keepalive_interval=60)
        host = fake_server.default_host
        fake_server.fetch_gate = threading.Event()

        running = threading.Thread(target=lambda: manager.execute(
            lambda conn: conn.retrieve_properties(host, ["name"])))
        running.start()
        wait_for(lambda: fake_server.fetch_calls)
        clock.advance(61)

        try:
            session = manager.acquire(timeout=1)
        finally:
            fake_server.fetch_gate.set()
            running.join(5)

        assert session is not None
        assert fake_server.ping_calls == 0
        manager.close()
