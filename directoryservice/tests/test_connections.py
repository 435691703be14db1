# type: ignore
"""
Tests for the server sets, ConnectionPool and ConnectionManager.

Endpoint behaviour is tested against python-ldap-faker: only
``ldap://localhost:389`` has a directory registered, so any other URI behaves
like a server that is down.  Pool and TLS behaviour is tested with mocks.
"""

import threading
import unittest
from unittest.mock import MagicMock, patch

import ldap
from ldap_faker.unittest import LDAPFakerMixin

from directoryservice.config import SourceDescriptor
from directoryservice.connections import (
    ConnectionManager,
    ConnectionPool,
    FailoverServerSet,
    RoundRobinServerSet,
)
from directoryservice.exceptions import ConfigError, DirectoryConnectionError
from directoryservice.tests.utils import (
    ADMIN_DN,
    ECONOMICS,
    GROUPS,
    PEOPLE,
    configure_django,
    make_registry,
)

configure_django()


def make_source(**kwargs) -> SourceDescriptor:
    data = {"endpoints": "ldap.example.edu", "ports": "389"}
    data.update(kwargs)
    return SourceDescriptor.from_mapping("test", data)


class FakeServerSet:
    """A server set that hands out MagicMock connections."""

    def __init__(self):
        self.source = make_source()
        self.opened = []

    def connect(self):
        conn = MagicMock()
        self.opened.append(conn)
        return conn


class TestConnectionManagerWithFaker(LDAPFakerMixin, unittest.TestCase):
    """Test ConnectionManager against python-ldap-faker."""

    ldap_modules = ["directoryservice.connections"]
    ldap_fixtures = [("directory_data.json", "ldap://localhost:389", [])]

    def setUp(self):
        super().setUp()
        self.manager = ConnectionManager(make_registry())

    def tearDown(self):
        self.manager.close()
        super().tearDown()

    def test_connection_is_bound(self):
        conn = self.manager.acquire(PEOPLE)
        try:
            self.assertEqual(conn.whoami_s(), f"dn: {ADMIN_DN}")
        finally:
            self.manager.release(PEOPLE, conn)
        self.assertTrue(self.ldap_faker.has_connection("ldap://localhost:389"))

    def test_connection_options(self):
        conn = self.manager.acquire(PEOPLE)
        self.assertEqual(conn.get_option(ldap.OPT_REFERRALS), 0)
        self.assertEqual(conn.get_option(ldap.OPT_NETWORK_TIMEOUT), 15.0)
        self.assertEqual(conn.get_option(ldap.OPT_PROTOCOL_VERSION), ldap.VERSION3)
        self.manager.release(PEOPLE, conn)

    def test_failover_skips_unreachable_endpoint(self):
        """The first ``replicas`` endpoint is down, so we get the second."""
        with self.assertLogs("django-directoryservice", level="WARNING") as logs:
            with self.manager.connection(GROUPS) as conn:
                self.assertEqual(conn.uri, "ldap://localhost:389")
                self.assertEqual(conn.whoami_s(), f"dn: {ADMIN_DN}")
        self.assertTrue(
            any("directoryservice.connection.failover" in line for line in logs.output)
        )
        self.assertTrue(any("down.example.edu" in line for line in logs.output))

    def test_all_endpoints_down(self):
        manager = ConnectionManager(
            make_registry(
                directory={"endpoints": "down1.example.edu, down2.example.edu", "ports": "389, 389"}
            )
        )
        with self.assertLogs("django-directoryservice", level="WARNING"):
            with self.assertRaises(DirectoryConnectionError):
                manager.acquire(PEOPLE)

    def test_bind_failure_does_not_fail_over(self):
        manager = ConnectionManager(
            make_registry(
                directory={
                    "endpoints": "localhost, localhost",
                    "ports": "389, 389",
                    "bind_credential": "wrong",
                }
            )
        )
        with self.assertRaises(DirectoryConnectionError) as cm:
            manager.acquire(PEOPLE)
        self.assertIn("bind", str(cm.exception))
        self.assertEqual(len(self.ldap_faker.get_connections("ldap://localhost:389")), 1)

    def test_subordinate_base_uses_ancestor_source(self):
        with self.manager.connection(ECONOMICS) as conn:
            self.assertEqual(conn.uri, "ldap://localhost:389")

    def test_unknown_base(self):
        with self.assertRaises(ConfigError):
            self.manager.acquire("ou=people,dc=other,dc=org")

    def test_connection_unbinds_on_exit(self):
        with self.manager.connection(PEOPLE) as conn:
            self.assertIsNotNone(conn.bound_dn)
        self.assertIsNone(conn.bound_dn)

    def test_connection_unbinds_on_error(self):
        with self.assertRaises(RuntimeError):
            with self.manager.connection(PEOPLE) as conn:
                raise RuntimeError("boom")
        self.assertIsNone(conn.bound_dn)

    def test_pooled_source_reuses_connections(self):
        manager = ConnectionManager(
            make_registry(directory={"pooled": True, "pool_min": 1, "pool_max": 2})
        )
        with manager.connection(PEOPLE) as first:
            pass
        with manager.connection(PEOPLE) as second:
            pass
        self.assertIs(first, second)
        self.assertIsNotNone(second.bound_dn)
        self.assertEqual(manager.pools["directory"].size, 1)
        manager.close()
        self.assertIsNone(second.bound_dn)

    def test_server_set_is_cached(self):
        first = self.manager.server_set_for("directory")
        self.assertIs(first, self.manager.server_set_for("directory"))
        self.assertIsInstance(first, FailoverServerSet)

    def test_invalidate_rebuilds_server_set(self):
        first = self.manager.server_set_for("directory")
        self.manager.invalidate("directory")
        self.assertIsNot(first, self.manager.server_set_for("directory"))


class TestConnect(unittest.TestCase):
    """Test connection setup, with ``ldap.initialize`` mocked out."""

    def setUp(self):
        self.conn = MagicMock()
        patcher = patch("directoryservice.ldap.initialize", return_value=self.conn)
        self.initialize = patcher.start()
        self.addCleanup(patcher.stop)

    def test_plain_connection(self):
        FailoverServerSet(make_source()).connect()
        self.initialize.assert_called_once_with("ldap://ldap.example.edu:389")
        self.conn.set_option.assert_any_call(ldap.OPT_REFERRALS, 1)
        self.conn.start_tls_s.assert_not_called()
        self.conn.simple_bind_s.assert_called_once_with()

    def test_secure_transport(self):
        source = make_source(ports="636", use_secure_transport=True)
        FailoverServerSet(source).connect()
        self.initialize.assert_called_once_with("ldaps://ldap.example.edu:636")
        self.conn.set_option.assert_any_call(
            ldap.OPT_X_TLS_REQUIRE_CERT, ldap.OPT_X_TLS_DEMAND
        )
        self.conn.set_option.assert_any_call(ldap.OPT_X_TLS_NEWCTX, 0)

    def test_trust_any_certificate(self):
        source = make_source(use_secure_transport=True, trust_any_certificate=True)
        FailoverServerSet(source).connect()
        self.conn.set_option.assert_any_call(
            ldap.OPT_X_TLS_REQUIRE_CERT, ldap.OPT_X_TLS_NEVER
        )

    def test_start_tls(self):
        FailoverServerSet(make_source(start_tls=True)).connect()
        self.conn.start_tls_s.assert_called_once_with()

    def test_bind_with_credentials(self):
        source = make_source(bind_identity="cn=admin", bind_credential="secret")
        FailoverServerSet(source).connect()
        self.conn.simple_bind_s.assert_called_once_with("cn=admin", "secret")

    def test_secure_context_failure(self):
        def set_option(option, value):
            if option == ldap.OPT_X_TLS_NEWCTX:
                raise ldap.LDAPError({"desc": "Unknown error"})

        self.conn.set_option.side_effect = set_option
        with self.assertRaises(DirectoryConnectionError) as cm:
            FailoverServerSet(make_source(use_secure_transport=True)).connect()
        self.assertIn("secure context setup failed", str(cm.exception))
        self.conn.simple_bind_s.assert_not_called()
        self.conn.unbind_s.assert_called_once_with()

    def test_bind_failure_unbinds(self):
        self.conn.simple_bind_s.side_effect = ldap.INVALID_CREDENTIALS(
            {"desc": "Invalid credentials"}
        )
        source = make_source(
            endpoints="ldap1, ldap2",
            ports="389, 389",
            bind_identity="cn=admin",
            bind_credential="wrong",
        )
        with self.assertRaises(DirectoryConnectionError):
            FailoverServerSet(source).connect()
        self.initialize.assert_called_once_with("ldap://ldap1:389")
        self.conn.unbind_s.assert_called_once_with()

    def test_unreachable_during_bind_unbinds_before_failing_over(self):
        first = MagicMock()
        first.simple_bind_s.side_effect = ldap.SERVER_DOWN(
            {"desc": "Can't contact LDAP server"}
        )
        self.initialize.side_effect = [first, self.conn]
        source = make_source(endpoints="ldap1, ldap2", ports="389, 389")
        with self.assertLogs("django-directoryservice", level="WARNING"):
            self.assertIs(FailoverServerSet(source).connect(), self.conn)
        first.unbind_s.assert_called_once_with()
        self.conn.unbind_s.assert_not_called()

    def test_missing_ca_certfile(self):
        source = make_source(
            use_secure_transport=True, ca_certfile="/nonexistent/ca-bundle.pem"
        )
        with self.assertRaises(DirectoryConnectionError) as cm:
            FailoverServerSet(source).connect()
        self.assertIn("secure context setup failed", str(cm.exception))
        self.conn.unbind_s.assert_called_once_with()

    def test_round_robin_rotates_start(self):
        source = make_source(
            endpoints="ldap1, ldap2, ldap3", ports="389, 389, 389", strategy="round_robin"
        )
        server_set = RoundRobinServerSet(source)
        for _ in range(4):
            server_set.connect()
        uris = [c.args[0] for c in self.initialize.call_args_list]
        self.assertEqual(
            uris,
            ["ldap://ldap1:389", "ldap://ldap2:389", "ldap://ldap3:389", "ldap://ldap1:389"],
        )

    def test_round_robin_fails_over(self):
        source = make_source(
            endpoints="ldap1, ldap2", ports="389, 389", strategy="round_robin"
        )
        server_set = RoundRobinServerSet(source)
        server_set.connect()
        self.initialize.reset_mock()

        def initialize(uri):
            if uri == "ldap://ldap2:389":
                raise ldap.SERVER_DOWN({"desc": "Can't contact LDAP server"})
            return self.conn

        self.initialize.side_effect = initialize
        with self.assertLogs("django-directoryservice", level="WARNING"):
            server_set.connect()
        uris = [c.args[0] for c in self.initialize.call_args_list]
        self.assertEqual(uris, ["ldap://ldap2:389", "ldap://ldap1:389"])

    def test_manager_picks_strategy(self):
        manager = ConnectionManager(make_registry(directory={"strategy": "round_robin"}))
        self.assertIsInstance(manager.server_set_for("directory"), RoundRobinServerSet)

    def test_broken_pooled_connection_is_discarded(self):
        manager = ConnectionManager(
            make_registry(directory={"pooled": True, "pool_min": 0, "pool_max": 2})
        )
        with self.assertRaises(ldap.SERVER_DOWN):
            with manager.connection(PEOPLE):
                raise ldap.SERVER_DOWN({"desc": "Can't contact LDAP server"})
        pool = manager.pools["directory"]
        self.assertEqual(pool.size, 0)
        self.assertEqual(pool.idle, 0)
        self.conn.unbind_s.assert_called_once_with()

    def test_concurrent_first_access_builds_one_server_set(self):
        manager = ConnectionManager(make_registry())
        barrier = threading.Barrier(8)
        results = []

        def worker():
            barrier.wait()
            results.append(manager.server_set_for("directory"))

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()
        self.assertEqual(len(results), 8)
        self.assertEqual(len({id(server_set) for server_set in results}), 1)

    def test_concurrent_first_access_builds_one_pool(self):
        manager = ConnectionManager(
            make_registry(directory={"pooled": True, "pool_min": 1, "pool_max": 4})
        )
        barrier = threading.Barrier(8)
        results = []

        def worker():
            barrier.wait()
            results.append(manager.pool_for("directory"))

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()
        self.assertEqual(len({id(pool) for pool in results}), 1)
        self.assertEqual(self.initialize.call_count, 1)

    def test_slow_pool_does_not_block_other_sources(self):
        manager = ConnectionManager(
            make_registry(directory={"pooled": True, "pool_min": 1, "pool_max": 1})
        )
        opening = threading.Event()
        proceed = threading.Event()

        def initialize(uri):
            opening.set()
            proceed.wait(5)
            return self.conn

        self.initialize.side_effect = initialize
        builder = threading.Thread(target=manager.pool_for, args=("directory",))
        builder.start()
        self.assertTrue(opening.wait(5))
        other = threading.Thread(target=manager.server_set_for, args=("replicas",))
        other.start()
        other.join(2)
        self.assertFalse(other.is_alive())
        self.assertNotIn("directory", manager.pools)
        proceed.set()
        builder.join(5)
        self.assertIn("directory", manager.pools)


class TestConnectionPool(unittest.TestCase):
    """Test ConnectionPool checkout, checkin and exhaustion."""

    def setUp(self):
        self.server_set = FakeServerSet()

    def test_initial_connections_are_opened(self):
        pool = ConnectionPool(self.server_set, 2, 5)
        self.assertEqual(pool.size, 2)
        self.assertEqual(pool.idle, 2)
        self.assertEqual(len(self.server_set.opened), 2)

    def test_checkout_reuses_idle_connection(self):
        pool = ConnectionPool(self.server_set, 1, 5)
        conn = pool.checkout()
        pool.checkin(conn)
        self.assertIs(pool.checkout(), conn)
        self.assertEqual(len(self.server_set.opened), 1)

    def test_pool_grows_to_maximum(self):
        pool = ConnectionPool(self.server_set, 0, 2, timeout=0)
        first = pool.checkout()
        second = pool.checkout()
        self.assertIsNot(first, second)
        self.assertEqual(pool.size, 2)

    def test_exhausted_pool_raises(self):
        pool = ConnectionPool(self.server_set, 1, 1, timeout=0.1)
        pool.checkout()
        with self.assertLogs("django-directoryservice", level="WARNING"):
            with self.assertRaises(DirectoryConnectionError) as cm:
                pool.checkout()
        self.assertIn("connection pool exhausted", str(cm.exception))

    def test_checkout_waits_for_checkin(self):
        pool = ConnectionPool(self.server_set, 1, 1, timeout=5)
        conn = pool.checkout()
        timer = threading.Timer(0.1, pool.checkin, args=(conn,))
        timer.start()
        try:
            self.assertIs(pool.checkout(), conn)
        finally:
            timer.join()

    def test_discard_frees_slot(self):
        pool = ConnectionPool(self.server_set, 1, 1, timeout=0)
        conn = pool.checkout()
        pool.checkin(conn, discard=True)
        conn.unbind_s.assert_called_once_with()
        self.assertEqual(pool.size, 0)
        replacement = pool.checkout()
        self.assertIsNot(replacement, conn)

    def test_failed_open_frees_slot(self):
        self.server_set.connect = MagicMock(side_effect=DirectoryConnectionError("down"))
        pool = ConnectionPool(self.server_set, 0, 1, timeout=0)
        with self.assertRaises(DirectoryConnectionError):
            pool.checkout()
        self.assertEqual(pool.size, 0)

    def test_failed_initial_connection_closes_the_others(self):
        opened = []

        def connect():
            if len(opened) == 2:
                raise DirectoryConnectionError("down")
            conn = MagicMock()
            opened.append(conn)
            return conn

        self.server_set.connect = connect
        with self.assertRaises(DirectoryConnectionError):
            ConnectionPool(self.server_set, 3, 3)
        self.assertEqual(len(opened), 2)
        for conn in opened:
            conn.unbind_s.assert_called_once_with()

    def test_close(self):
        pool = ConnectionPool(self.server_set, 2, 2)
        pool.close()
        for conn in self.server_set.opened:
            conn.unbind_s.assert_called_once_with()
        self.assertTrue(pool.closed)
        with self.assertRaises(DirectoryConnectionError):
            pool.checkout()

    def test_checkin_after_close_unbinds(self):
        pool = ConnectionPool(self.server_set, 1, 1)
        conn = pool.checkout()
        pool.close()
        pool.checkin(conn)
        conn.unbind_s.assert_called_once_with()
