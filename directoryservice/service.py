"""
The directory service facade.

:py:class:`DirectoryService` ties the pieces together: it reads the
configuration, owns the :py:class:`~directoryservice.connections.ConnectionManager`,
and exposes both explicit search methods and the naming-convention surface
(``findPeopleWhere``, ``getPerson``, ``findSubentriesWhere``, ...).

Example:
    .. code-block:: python

        from directoryservice import DirectoryService

        service = DirectoryService()
        person = service.getPerson("jdoe")
        people = service.findPeopleWhere({"sn": "Doe"}, {"sort": "givenName"})
        person.set("mail", "john.doe@example.edu")
        if not service.save(person):
            print(person.errors["save"])

"""

import logging
from collections.abc import Callable, Mapping
from functools import partial
from typing import Any

from ldap_filter import Filter

from directoryservice import ldap

from .config import ConfigRegistry
from .connections import ConnectionManager
from .entry import DirectoryEntry
from .exceptions import (
    ConfigError,
    DirectoryConnectionError,
    SaveError,
    UnresolvedOperation,
    describe_ldap_error,
)
from .router import MethodRouter, OperationKind, Resolution
from .search import SearchExecutor, SearchOptions, filter_from_attributes, parse_filter
from .typing import LDAPData

logger = logging.getLogger("django-directoryservice")

#: What a failed write can raise, short of a programming error.
WRITE_ERRORS: tuple[type[Exception], ...] = (
    ldap.LDAPError,
    DirectoryConnectionError,
    ConfigError,
)

Options = SearchOptions | Mapping[str, Any] | None


class DirectoryService:
    """
    Find, create and change entries across every configured directory source.

    Keyword Args:
        registry: our configuration.  If not given, it is read from
            ``settings.DIRECTORY_SERVICE``.
        manager: where connections come from.  If not given, we build one
            for ``registry``.

    Raises:
        ConfigError: ``registry`` was not given and the Django setting is
            missing or invalid

    """

    def __init__(
        self,
        registry: ConfigRegistry | None = None,
        manager: ConnectionManager | None = None,
    ) -> None:
        self.registry = registry if registry is not None else ConfigRegistry.from_settings()
        self.manager = manager if manager is not None else ConnectionManager(self.registry)
        self.executor = SearchExecutor(self.manager)
        self.router = MethodRouter(self.registry)

    # Naming-convention surface

    def __getattr__(self, name: str) -> Callable[..., Any]:
        if name.startswith("_"):
            raise AttributeError(name)
        router = self.__dict__.get("router")
        if router is None or not router.can_resolve(name):
            msg = f'"{type(self).__name__}" has no operation named "{name}"'
            raise UnresolvedOperation(msg)
        return partial(self.dispatch, name)

    def dispatch(self, name: str, *args: Any) -> Any:
        """
        Run the naming-convention operation ``name`` with ``args``.

        Example:
            ``service.dispatch("findPeopleWhere", {"sn": "Doe"})`` is the same
            as ``service.findPeopleWhere({"sn": "Doe"})``.

        Raises:
            UnresolvedOperation: ``name`` is not an operation we know, or
                ``args`` don't fit it

        Returns:
            A list of :py:class:`DirectoryEntry` for multi-result operations;
            a :py:class:`DirectoryEntry` or ``None`` for single-result ones.

        """
        resolution = self.router.resolve(name, args)
        if not resolution.resolved:
            msg = f'Could not resolve "{name}" with arguments {args!r}'
            raise UnresolvedOperation(msg)
        logger.debug(
            "directoryservice.dispatch name=%s kind=%s base=%s",
            name,
            resolution.kind.value,
            resolution.base,
        )
        return self.execute(resolution)

    def execute(self, resolution: Resolution) -> Any:
        """Run an already resolved operation."""
        base = resolution.base
        arguments = resolution.arguments
        options = resolution.options
        if resolution.kind is OperationKind.FIND_SUBENTRIES:
            if isinstance(arguments, Mapping):
                arguments = filter_from_attributes(arguments)
            return self.find_entries_using_filter(base, arguments, options)
        if resolution.kind in (
            OperationKind.GET_BY_ID,
            OperationKind.FIND_ONE_BY_ATTRIBUTES,
        ):
            return self.find_entry(base, arguments, options)
        if resolution.kind is OperationKind.FIND_MANY_BY_ATTRIBUTES:
            return self.find_entries(base, arguments, options)
        if resolution.kind is OperationKind.FIND_ONE_BY_FILTER:
            return self.find_entry_using_filter(base, arguments, options)
        if resolution.kind is OperationKind.FIND_MANY_BY_FILTER:
            return self.find_entries_using_filter(base, arguments, options)
        msg = f"Cannot execute an unresolved operation: {resolution!r}"
        raise UnresolvedOperation(msg)

    # Reading

    def search(self, base: str, search_filter: Filter | str, options: Options = None) -> list[LDAPData]:
        """Return the raw ``(dn, attrs)`` results of a search under ``base``."""
        return self.executor.search(base, search_filter, options)

    def find_entries_using_filter(
        self, base: str, search_filter: Filter | str, options: Options = None
    ) -> list[DirectoryEntry]:
        """
        Return every entry under ``base`` that matches ``search_filter``.

        Args:
            base: the search base
            search_filter: an ``ldap_filter`` expression or a filter string

        Keyword Args:
            options: a :py:class:`SearchOptions` or a mapping of option names

        Raises:
            ConfigError: no configured base covers ``base``
            DirectoryConnectionError: we could not get a connection
            SearchError: the search failed before any entry came back

        """
        return [
            DirectoryEntry.from_search_result(record, base)
            for record in self.executor.search(base, search_filter, options)
        ]

    def find_entry_using_filter(
        self, base: str, search_filter: Filter | str, options: Options = None
    ) -> DirectoryEntry | None:
        """Like :py:meth:`find_entries_using_filter`, but return only the first entry."""
        entries = self.find_entries_using_filter(base, search_filter, options)
        return entries[0] if entries else None

    def find_entries(
        self, base: str, attributes: Mapping[str, Any], options: Options = None
    ) -> list[DirectoryEntry]:
        """
        Return every entry under ``base`` whose attributes equal those in
        ``attributes``.

        Raises:
            ValueError: ``attributes`` is empty

        """
        return self.find_entries_using_filter(
            base, filter_from_attributes(attributes), options
        )

    def find_entry(
        self, base: str, attributes: Mapping[str, Any], options: Options = None
    ) -> DirectoryEntry | None:
        """Like :py:meth:`find_entries`, but return only the first entry."""
        entries = self.find_entries(base, attributes, options)
        return entries[0] if entries else None

    def create_filter(self, filterstr: str) -> Filter:
        """
        Parse ``filterstr`` into an ``ldap_filter`` expression.

        Raises:
            SearchError: ``filterstr`` is not a valid LDAP filter

        """
        return parse_filter(filterstr)

    # Building entries

    def entry_from_attributes(
        self, attributes: Mapping[str, Any], singular: str
    ) -> DirectoryEntry:
        """See :py:meth:`DirectoryEntry.from_attributes`."""
        return DirectoryEntry.from_attributes(attributes, singular, self.registry)

    def entry_from_ldap(self, record: LDAPData) -> DirectoryEntry:
        """See :py:meth:`DirectoryEntry.from_ldap_entry`."""
        return DirectoryEntry.from_ldap_entry(record, self.registry)

    # Writing

    def _write_failed(self, entry: DirectoryEntry, operation: str, error: Exception) -> bool:
        failure = SaveError(f"Could not {operation} {entry.dn}: {describe_ldap_error(error)}")
        entry.errors[operation] = str(failure)
        logger.error(
            "directoryservice.%s.failed dn=%s error=%s",
            operation,
            entry.dn,
            describe_ldap_error(error),
        )
        return False

    def save(self, entry: DirectoryEntry) -> bool:
        """
        Write the pending modifications of ``entry`` to its directory.

        If there is nothing to write we make no network call at all.  On
        success the entry's working copy becomes its new original.  On failure
        the error is recorded in ``entry.errors["save"]`` and the entry keeps
        its pending modifications.

        Returns:
            ``True`` if the entry is now saved, ``False`` if the write failed.

        """
        if not entry.is_dirty():
            logger.info("directoryservice.save.no-changes dn=%s", entry.dn)
            entry.cleanup_after_save()
            return True
        modlist = entry.modlist()
        try:
            with self.manager.connection(entry.base) as conn:
                conn.modify_s(entry.dn, modlist)
        except WRITE_ERRORS as e:
            return self._write_failed(entry, "save", e)
        logger.info(
            "directoryservice.save.success dn=%s modifications=%d",
            entry.dn,
            len(modlist),
        )
        entry.cleanup_after_save()
        return True

    def add(self, entry: DirectoryEntry) -> bool:
        """
        Create ``entry`` in its directory from its working attributes.

        On failure the error is recorded in ``entry.errors["add"]``.

        Returns:
            ``True`` if the entry was created, ``False`` if the write failed.

        """
        try:
            with self.manager.connection(entry.base) as conn:
                conn.add_s(entry.dn, entry.add_modlist())
        except WRITE_ERRORS as e:
            return self._write_failed(entry, "add", e)
        logger.info("directoryservice.add.success dn=%s", entry.dn)
        entry.cleanup_after_save()
        return True

    # Connections

    def connection(self, base: str):
        """
        Return a context manager yielding a bound connection for ``base``.
        See :py:meth:`ConnectionManager.connection`.
        """
        return self.manager.connection(base)

    def close(self) -> None:
        """Close every pooled connection."""
        self.manager.close()
