"""
Connection management for the directory service.

Every source in the registry gets at most one server set (the ordered list of
its endpoints, plus the policy for choosing among them) and, if the source is
pooled, at most one :py:class:`ConnectionPool`.  Both are built lazily the
first time a base location owned by the source is used.
"""

import logging
import threading
import time
from collections.abc import Iterator
from contextlib import contextmanager, suppress
from pathlib import Path
from typing import ClassVar

from directoryservice import ldap

from .config import ConfigRegistry, SourceDescriptor
from .exceptions import DirectoryConnectionError, describe_ldap_error

logger = logging.getLogger("django-directoryservice")

#: Errors that mean "this endpoint is unreachable; try the next one".
UNREACHABLE: tuple[type[Exception], ...] = (
    ldap.SERVER_DOWN,
    ldap.CONNECT_ERROR,
    ldap.TIMEOUT,
)


def _secure(ldap_object, source: SourceDescriptor, uri: str) -> None:
    """
    Set up the TLS context on ``ldap_object``, and do StartTLS if the source
    asks for it.

    Raises:
        DirectoryConnectionError: the TLS context could not be built

    """
    try:
        if source.trust_any_certificate:
            ldap_object.set_option(ldap.OPT_X_TLS_REQUIRE_CERT, ldap.OPT_X_TLS_NEVER)
        else:
            ldap_object.set_option(ldap.OPT_X_TLS_REQUIRE_CERT, ldap.OPT_X_TLS_DEMAND)
        if source.ca_certfile:
            ca_certfile = Path(source.ca_certfile)
            if not ca_certfile.exists():
                msg = f"CA Certificate file does not exist: {source.ca_certfile}"
                raise OSError(msg)
            if not ca_certfile.is_file():
                msg = f"CA Certificate file is not a file: {source.ca_certfile}"
                raise OSError(msg)
            ldap_object.set_option(ldap.OPT_X_TLS_CACERTFILE, source.ca_certfile)
        ldap_object.set_option(ldap.OPT_X_TLS_NEWCTX, 0)
        if source.start_tls and not source.use_secure_transport:
            ldap_object.start_tls_s()
    except UNREACHABLE:
        raise
    except ldap.LDAPError as e:
        msg = f"secure context setup failed for {uri}: {describe_ldap_error(e)}"
        raise DirectoryConnectionError(msg) from e
    except (OSError, ValueError) as e:
        msg = f"secure context setup failed for {uri}: {e}"
        raise DirectoryConnectionError(msg) from e


def _bind(ldap_object, source: SourceDescriptor, uri: str) -> None:
    try:
        if source.is_anonymous:
            ldap_object.simple_bind_s()
        else:
            ldap_object.simple_bind_s(source.bind_identity, source.bind_credential)
    except UNREACHABLE:
        raise
    except ldap.LDAPError as e:
        msg = (
            f'bind as "{source.bind_identity or "anonymous"}" to {uri} failed: '
            f"{describe_ldap_error(e)}"
        )
        raise DirectoryConnectionError(msg) from e


def connect(source: SourceDescriptor, uri: str):
    """
    Open and bind a new connection to ``uri`` using the policy from ``source``.

    Args:
        source: the source that owns ``uri``
        uri: the LDAP URI of one of the source's endpoints

    Raises:
        ldap.SERVER_DOWN: the endpoint is unreachable (also ``CONNECT_ERROR``
            and ``TIMEOUT``); callers use this to fail over
        DirectoryConnectionError: the TLS setup or the bind failed

    Returns:
        A bound ``ldap.ldapobject.LDAPObject``.

    """
    ldap_object = ldap.initialize(uri)
    ldap_object.set_option(ldap.OPT_PROTOCOL_VERSION, ldap.VERSION3)
    if source.follow_referrals:
        ldap_object.set_option(ldap.OPT_REFERRALS, 1)
    else:
        ldap_object.set_option(ldap.OPT_REFERRALS, 0)
    ldap_object.set_option(ldap.OPT_NETWORK_TIMEOUT, float(source.timeout))
    try:
        if source.use_secure_transport or source.start_tls:
            _secure(ldap_object, source, uri)
        _bind(ldap_object, source, uri)
    except BaseException:
        close_quietly(ldap_object)
        raise
    logger.debug(
        "directoryservice.connection.open source=%s uri=%s bind=%s",
        source.name,
        uri,
        source.bind_identity or "anonymous",
    )
    return ldap_object


def close_quietly(ldap_object) -> None:
    """Unbind ``ldap_object``, ignoring errors from an already dead connection."""
    with suppress(ldap.LDAPError):
        ldap_object.unbind_s()


class FailoverServerSet:
    """
    Try the endpoints of a source in listed order, moving on to the next one
    whenever an endpoint is unreachable.

    Args:
        source: the source whose endpoints we use

    """

    strategy: ClassVar[str] = "failover"

    def __init__(self, source: SourceDescriptor) -> None:
        self.source = source

    def ordered_uris(self) -> list[str]:
        return self.source.uris

    def connect(self):
        """
        Return a bound connection to the first reachable endpoint.

        Raises:
            DirectoryConnectionError: every endpoint is unreachable, or the TLS
                setup or bind failed on a reachable one

        """
        failures: list[str] = []
        for uri in self.ordered_uris():
            try:
                return connect(self.source, uri)
            except UNREACHABLE as e:
                logger.warning(
                    "directoryservice.connection.failover source=%s uri=%s error=%s",
                    self.source.name,
                    uri,
                    describe_ldap_error(e),
                )
                failures.append(f"{uri}: {describe_ldap_error(e)}")
        msg = (
            f'No endpoint for source "{self.source.name}" is reachable: '
            f"{'; '.join(failures)}"
        )
        raise DirectoryConnectionError(msg)


class RoundRobinServerSet(FailoverServerSet):
    """
    Like :py:class:`FailoverServerSet`, but each new connection starts at the
    endpoint after the one the previous connection started at.
    """

    strategy: ClassVar[str] = "round_robin"

    def __init__(self, source: SourceDescriptor) -> None:
        super().__init__(source)
        self._next = 0
        self._lock = threading.Lock()

    def ordered_uris(self) -> list[str]:
        uris = self.source.uris
        with self._lock:
            start = self._next % len(uris)
            self._next = start + 1
        return uris[start:] + uris[:start]


#: Server set classes by ``strategy`` name.
SERVER_SETS: dict[str, type[FailoverServerSet]] = {
    FailoverServerSet.strategy: FailoverServerSet,
    RoundRobinServerSet.strategy: RoundRobinServerSet,
}


class ConnectionPool:
    """
    A bounded pool of bound connections for one pooled source.

    ``initial`` connections are opened up front.  After that,
    :py:meth:`checkout` hands out an idle connection if there is one, opens a
    new one if fewer than ``maximum`` exist, and otherwise waits up to
    ``timeout`` seconds for one to be checked back in.

    Args:
        server_set: where new connections come from
        initial: how many connections to open now
        maximum: the most connections this pool will ever have open at once

    Keyword Args:
        timeout: how long :py:meth:`checkout` waits on an exhausted pool.
            ``None`` waits forever; ``0`` fails at once.

    """

    def __init__(
        self,
        server_set: FailoverServerSet,
        initial: int,
        maximum: int,
        timeout: float | None = 10.0,
    ) -> None:
        self.server_set = server_set
        self.maximum = maximum
        self.timeout = timeout
        self._idle: list = []
        self._created = 0
        self._closed = False
        self._condition = threading.Condition()
        try:
            for _ in range(min(initial, maximum)):
                self._idle.append(server_set.connect())
                self._created += 1
        except BaseException:
            for ldap_object in self._idle:
                close_quietly(ldap_object)
            raise
        logger.info(
            "directoryservice.pool.create source=%s initial=%d max=%d",
            server_set.source.name,
            self._created,
            maximum,
        )

    @property
    def size(self) -> int:
        """The number of connections this pool currently has open."""
        return self._created

    @property
    def idle(self) -> int:
        """The number of connections waiting to be checked out."""
        return len(self._idle)

    @property
    def closed(self) -> bool:
        return self._closed

    def checkout(self):
        """
        Return a bound connection from the pool.

        Raises:
            DirectoryConnectionError: the pool is closed, or it stayed exhausted
                for longer than our timeout

        """
        deadline = None if self.timeout is None else time.monotonic() + self.timeout
        with self._condition:
            while True:
                if self._closed:
                    msg = (
                        f'connection pool for source "{self.server_set.source.name}" '
                        "is closed"
                    )
                    raise DirectoryConnectionError(msg)
                if self._idle:
                    return self._idle.pop()
                if self._created < self.maximum:
                    self._created += 1
                    break
                remaining = None if deadline is None else deadline - time.monotonic()
                if remaining is not None and remaining <= 0:
                    logger.warning(
                        "directoryservice.pool.exhausted source=%s max=%d",
                        self.server_set.source.name,
                        self.maximum,
                    )
                    msg = (
                        "connection pool exhausted for source "
                        f'"{self.server_set.source.name}" (max={self.maximum})'
                    )
                    raise DirectoryConnectionError(msg)
                self._condition.wait(remaining)
        # We reserved a slot above; open the connection outside the lock.
        try:
            return self.server_set.connect()
        except Exception:
            with self._condition:
                self._created -= 1
                self._condition.notify()
            raise

    def checkin(self, ldap_object, discard: bool = False) -> None:
        """
        Return ``ldap_object`` to the pool.

        Keyword Args:
            discard: if ``True``, the connection is broken: close it and free
                its slot instead of keeping it

        """
        with self._condition:
            keep = not (discard or self._closed)
            if keep:
                self._idle.append(ldap_object)
            else:
                self._created -= 1
            self._condition.notify()
        if not keep:
            close_quietly(ldap_object)

    def close(self) -> None:
        """Close every idle connection and refuse further checkouts."""
        with self._condition:
            self._closed = True
            idle, self._idle = self._idle, []
            self._created -= len(idle)
            self._condition.notify_all()
        for ldap_object in idle:
            close_quietly(ldap_object)
        logger.info(
            "directoryservice.pool.close source=%s closed=%d",
            self.server_set.source.name,
            len(idle),
        )


class ConnectionManager:
    """
    Hand out bound connections for base locations.

    A base location is resolved to the nearest configured base at or above it,
    that base to its source, and the source to its server set (and pool, if
    the source is pooled).  Server sets and pools are cached per source name
    and built at most once, even when many threads ask for the same source at
    the same time.

    Example:
        .. code-block:: python

            manager = ConnectionManager(registry)
            with manager.connection("ou=people,dc=example,dc=edu") as conn:
                conn.search_s(...)

    Args:
        registry: our configuration

    """

    def __init__(self, registry: ConfigRegistry) -> None:
        self.registry = registry
        self._server_sets: dict[str, FailoverServerSet] = {}
        self._pools: dict[str, ConnectionPool] = {}
        self._pool_locks: dict[str, threading.Lock] = {}
        self._lock = threading.Lock()

    @property
    def pools(self) -> dict[str, ConnectionPool]:
        """The pools built so far, by source name."""
        return dict(self._pools)

    def source_for(self, base: str) -> SourceDescriptor:
        """
        Return the source that owns ``base`` or its nearest configured ancestor.

        Raises:
            ConfigError: no configured base covers ``base``

        """
        return self.registry.source_for(self.registry.resolve_base(base))

    def server_set_for(self, source_name: str) -> FailoverServerSet:
        """
        Return the server set for ``source_name``, building it on first use.

        Raises:
            ConfigError: no such source

        """
        server_set = self._server_sets.get(source_name)
        if server_set is None:
            with self._lock:
                server_set = self._server_sets.get(source_name)
                if server_set is None:
                    source = self.registry.source_named(source_name)
                    server_set = SERVER_SETS[source.strategy](source)
                    self._server_sets[source_name] = server_set
                    logger.info(
                        "directoryservice.server-set.create source=%s strategy=%s uris=%s",
                        source_name,
                        source.strategy,
                        ",".join(source.uris),
                    )
        return server_set

    def pool_for(self, source_name: str) -> ConnectionPool:
        """
        Return the pool for the pooled source ``source_name``, building it on
        first use.

        Raises:
            ConfigError: no such source
            DirectoryConnectionError: the initial connections could not be opened

        """
        pool = self._pools.get(source_name)
        if pool is None:
            server_set = self.server_set_for(source_name)
            with self._lock:
                pool_lock = self._pool_locks.setdefault(source_name, threading.Lock())
            # The initial connections are opened under the per-source lock only.
            with pool_lock:
                pool = self._pools.get(source_name)
                if pool is None:
                    source = server_set.source
                    pool = ConnectionPool(
                        server_set,
                        source.pool_min,
                        source.pool_max,
                        timeout=source.pool_timeout,
                    )
                    self._pools[source_name] = pool
        return pool

    def acquire(self, base: str):
        """
        Return a bound connection for ``base``.  Pair every call with
        :py:meth:`release`, or use :py:meth:`connection` instead.

        Raises:
            ConfigError: no configured base covers ``base``
            DirectoryConnectionError: no connection could be made

        """
        source = self.source_for(base)
        if source.pooled:
            return self.pool_for(source.name).checkout()
        return self.server_set_for(source.name).connect()

    def release(self, base: str, ldap_object, discard: bool = False) -> None:
        """
        Give back a connection from :py:meth:`acquire`: check it back into its
        pool, or unbind it if the source is not pooled.

        Keyword Args:
            discard: the connection is broken, so don't reuse it

        """
        source = self.source_for(base)
        pool = self._pools.get(source.name) if source.pooled else None
        if pool is not None:
            pool.checkin(ldap_object, discard=discard)
        else:
            close_quietly(ldap_object)

    @contextmanager
    def connection(self, base: str) -> Iterator:
        """
        Context manager that yields a bound connection for ``base`` and
        releases it however the block exits.  Connections that saw the server
        go away are discarded rather than pooled.
        """
        ldap_object = self.acquire(base)
        discard = False
        try:
            yield ldap_object
        except UNREACHABLE:
            discard = True
            raise
        finally:
            self.release(base, ldap_object, discard=discard)

    def invalidate(self, source_name: str) -> None:
        """
        Forget the cached server set for ``source_name`` and close its pool, so
        the next use rebuilds both.
        """
        with self._lock:
            self._server_sets.pop(source_name, None)
            pool = self._pools.pop(source_name, None)
        if pool is not None:
            pool.close()
        logger.info("directoryservice.server-set.invalidate source=%s", source_name)

    def close(self) -> None:
        """Close every pool and forget every server set."""
        with self._lock:
            pools = list(self._pools.values())
            self._pools.clear()
            self._server_sets.clear()
        for pool in pools:
            pool.close()
