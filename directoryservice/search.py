"""
Searching the directory.

:py:class:`SearchExecutor` runs one search against the source that owns a
base location and returns the raw ``(dn, attrs)`` results.  It knows how to
page through large result sets with the Simple Paged Results control, how to
ask the server to sort with the Server-Side Sort control (RFC 2891), and how
to hand back whatever entries arrived before a search failed.
"""

import logging
from collections.abc import Mapping
from dataclasses import dataclass, fields
from typing import Any, ClassVar

from ldap_filter import Filter
from ldap_filter.parser import ParseError
from pyasn1.codec.ber import encoder  # type: ignore[import]
from pyasn1.type import namedtype, tag, univ  # type: ignore[import]

from directoryservice import ldap

from .connections import UNREACHABLE, ConnectionManager
from .exceptions import SearchError, describe_ldap_error
from .typing import LDAPData

logger = logging.getLogger("django-directoryservice")


# -----------------------
# Server-Side Sort control
# -----------------------


def _context_tag(number: int) -> tag.Tag:
    return tag.Tag(tag.tagClassContext, tag.tagFormatSimple, number)


class SortKey(univ.Sequence):
    """One RFC 2891 sort key."""

    componentType: ClassVar[namedtype.NamedTypes] = namedtype.NamedTypes(  # noqa: N815
        namedtype.NamedType("attributeType", univ.OctetString()),
        namedtype.OptionalNamedType(
            "orderingRule", univ.OctetString().subtype(explicitTag=_context_tag(0))
        ),
        namedtype.DefaultedNamedType(
            "reverseOrder",
            univ.Boolean(False).subtype(explicitTag=_context_tag(1)),  # noqa: FBT003
        ),
    )


class SortKeyList(univ.SequenceOf):
    componentType: ClassVar[SortKey] = SortKey()  # noqa: N815


def sort_key_for(sort_field: str) -> SortKey:
    """
    Turn ``"sn"`` or ``"-sn"`` into a :py:class:`SortKey`, ascending or
    descending on ``sn``.
    """
    key = SortKey()
    key["attributeType"] = sort_field.lstrip("-").encode("utf-8")
    if sort_field.startswith("-"):
        key["reverseOrder"] = True
    return key


def build_sort_control_value(sort_fields: list[str]) -> bytes:
    """
    Return the BER-encoded control value that asks the server to sort by
    ``sort_fields``, most significant first.  No fields gives ``b""``.
    """
    if not sort_fields:
        return b""
    sort_key_list = SortKeyList()
    sort_key_list.extend(sort_key_for(sort_field) for sort_field in sort_fields)
    return encoder.encode(sort_key_list)


class ServerSideSortControl(ldap.LDAPControl):
    """
    Ask the server to sort the results by the attributes in ``sort_key_list``.
    """

    control_type = "1.2.840.113556.1.4.473"

    def __init__(
        self,
        criticality: bool = False,
        sort_key_list: list[str] | None = None,
    ) -> None:
        self.sort_key_list = list(sort_key_list or [])
        control_value = build_sort_control_value(self.sort_key_list)
        # python-ldap sends encodedControlValue on the wire
        super().__init__(self.control_type, criticality, control_value, control_value)


# -----------------------
# Options and filters
# -----------------------


#: Scope names we accept, mapped to python-ldap scope constants.
SCOPES: dict[str, int] = {
    "base": ldap.SCOPE_BASE,
    "one": ldap.SCOPE_ONELEVEL,
    "onelevel": ldap.SCOPE_ONELEVEL,
    "sub": ldap.SCOPE_SUBTREE,
    "subtree": ldap.SCOPE_SUBTREE,
    "subordinate": ldap.SCOPE_SUBORDINATE,
    "subordinate_subtree": ldap.SCOPE_SUBORDINATE,
    "children": ldap.SCOPE_SUBORDINATE,
}


@dataclass
class SearchOptions:
    """
    Everything about a search other than its base and its filter.
    """

    #: One of the keys of :py:data:`SCOPES`
    scope: str | int = "sub"
    #: Attributes to return.  ``None`` means "whatever the dit entry says".
    attrs: list[str] | None = None
    #: An attribute name or list of them; a leading ``-`` means descending
    sort: str | list[str] | None = None
    #: The most entries the server should return; ``0`` is no limit
    size_limit: int = 0
    #: The most seconds the server should spend; ``0`` is no limit
    time_limit: int = 0
    #: Page through the results with the Simple Paged Results control
    paged_search: bool = False
    #: Entries per page when :py:attr:`paged_search` is on
    page_size: int = 500

    #: Alternate spellings accepted by :py:meth:`from_mapping`
    ALIASES: ClassVar[dict[str, str]] = {
        "sizeLimit": "size_limit",
        "timeLimit": "time_limit",
        "pagedSearch": "paged_search",
        "pageSize": "page_size",
    }

    def __post_init__(self) -> None:
        if not isinstance(self.scope, int) and self.scope.lower() not in SCOPES:
            msg = f'Unknown search scope "{self.scope}"'
            raise ValueError(msg)

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "SearchOptions":
        """
        Build options from a plain mapping like ``{"sort": "sn", "sizeLimit": 10}``.

        Raises:
            ValueError: a key is not a search option

        """
        known = {f.name for f in fields(cls)}
        kwargs: dict[str, Any] = {}
        for key, value in data.items():
            name = cls.ALIASES.get(key, key)
            if name not in known:
                msg = f'"{key}" is not a search option'
                raise ValueError(msg)
            kwargs[name] = value
        return cls(**kwargs)

    @classmethod
    def coerce(cls, options: "SearchOptions | Mapping[str, Any] | None") -> "SearchOptions":
        if options is None:
            return cls()
        if isinstance(options, SearchOptions):
            return options
        return cls.from_mapping(options)

    @property
    def scope_value(self) -> int:
        """
        The python-ldap scope constant for :py:attr:`scope`.
        """
        if isinstance(self.scope, int):
            return self.scope
        return SCOPES[self.scope.lower()]

    @property
    def sort_keys(self) -> list[str]:
        if not self.sort:
            return []
        if isinstance(self.sort, str):
            return [self.sort]
        return list(self.sort)


def _filter_value(value: Any) -> str:
    if isinstance(value, bytes):
        return value.decode("utf-8")
    if isinstance(value, bool):
        return "TRUE" if value else "FALSE"
    return str(value)


def filter_from_attributes(attributes: Mapping[str, Any]) -> Filter:
    """
    Build an equality filter from ``attributes``.

    One attribute gives a bare ``(attr=value)``; more give an AND of one
    equality clause per attribute, in the order of the mapping.  A list value
    contributes one clause per item.

    Example:
        >>> filter_from_attributes({"sn": "Doe", "givenName": "John"}).to_string()
        '(&(sn=Doe)(givenName=John))'

    Raises:
        ValueError: ``attributes`` is empty

    """
    clauses = []
    for attr, value in attributes.items():
        values = value if isinstance(value, list | tuple) else [value]
        clauses.extend(Filter.attribute(attr).equal_to(_filter_value(v)) for v in values)
    if not clauses:
        msg = "Cannot build a filter from an empty set of attributes"
        raise ValueError(msg)
    if len(clauses) == 1:
        return clauses[0]
    return Filter.AND(clauses)


def parse_filter(filterstr: str) -> Filter:
    """
    Parse ``filterstr`` into an ``ldap_filter`` expression.

    Raises:
        SearchError: ``filterstr`` is not a valid LDAP filter

    """
    try:
        return Filter.parse(filterstr)
    except ParseError as e:
        msg = f'"{filterstr}" is not a valid LDAP filter: {e}'
        raise SearchError(msg) from e


def filter_string(search_filter: "Filter | str") -> str:
    if isinstance(search_filter, str):
        return search_filter
    return search_filter.to_string()


# -----------------------
# Searching
# -----------------------


class SearchExecutor:
    """
    Run searches against whichever source owns the base location.

    Each call to :py:meth:`search` uses one connection (one for the whole
    paged loop, if paging) and releases it before returning.

    Args:
        manager: where our connections come from

    """

    def __init__(self, manager: ConnectionManager) -> None:
        self.manager = manager
        self.registry = manager.registry

    def attributes_for(self, base: str, options: SearchOptions) -> list[str]:
        """
        Return the attribute list to ask for: the options' ``attrs``, else the
        dit entry's ``attributes``, else ``["*"]``.
        """
        if options.attrs:
            return list(options.attrs)
        dit_entry = self.registry.dit_entry_for(self.registry.resolve_base(base))
        if dit_entry.attributes:
            return list(dit_entry.attributes)
        return ["*"]

    def search(
        self,
        base: str,
        search_filter: "Filter | str",
        options: SearchOptions | Mapping[str, Any] | None = None,
    ) -> list[LDAPData]:
        """
        Search under ``base`` for entries matching ``search_filter``.

        Args:
            base: the search base.  It need not be a configured base location
                itself, but it must live under one.
            search_filter: an ``ldap_filter`` expression or a filter string

        Keyword Args:
            options: a :py:class:`SearchOptions` or a mapping of option names

        Raises:
            ConfigError: no configured base covers ``base``
            DirectoryConnectionError: we could not get a connection
            SearchError: the search failed before any entry came back, or the
                server went away during the search

        Returns:
            A list of ``(dn, attrs)`` tuples.

        """
        options = SearchOptions.coerce(options)
        filterstr = filter_string(search_filter)
        attrlist = self.attributes_for(base, options)
        controls: list[ldap.LDAPControl] = []
        if options.sort_keys:
            controls.append(ServerSideSortControl(sort_key_list=options.sort_keys))
        logger.debug(
            "directoryservice.search.start base=%s filter=%s scope=%s paged=%s",
            base,
            filterstr,
            options.scope,
            options.paged_search,
        )
        try:
            with self.manager.connection(base) as conn:
                if options.paged_search:
                    return self._paged_search(
                        conn, base, filterstr, attrlist, options, controls
                    )
                return self._search(conn, base, filterstr, attrlist, options, controls)
        except UNREACHABLE as e:
            logger.warning(
                "directoryservice.search.server-down base=%s error=%s",
                base,
                describe_ldap_error(e),
            )
            msg = f"Search under {base} failed: {describe_ldap_error(e)}"
            raise SearchError(msg) from e

    def _search(
        self,
        conn,
        base: str,
        filterstr: str,
        attrlist: list[str],
        options: SearchOptions,
        controls: list[ldap.LDAPControl],
    ) -> list[LDAPData]:
        results: list[LDAPData] = []
        try:
            msgid = conn.search_ext(
                base,
                options.scope_value,
                filterstr,
                attrlist,
                serverctrls=controls or None,
                timeout=options.time_limit or -1,
                sizelimit=options.size_limit,
            )
            while True:
                rtype, rdata, _, _ = conn.result3(msgid, 0)
                # Referral continuations come back with a list of URLs instead
                # of an attribute dict; we don't chase them.
                results.extend((dn, attrs) for dn, attrs in rdata if isinstance(attrs, dict))
                if rtype == ldap.RES_SEARCH_RESULT:
                    break
        except UNREACHABLE:
            # ConnectionManager.connection discards the connection on these
            raise
        except ldap.LDAPError as e:
            return self._partial_results(base, results, e)
        logger.debug(
            "directoryservice.search.done base=%s entries=%d", base, len(results)
        )
        return results

    def _get_pctrls(self, serverctrls) -> list:
        """
        Return the paged results controls among the controls the server sent
        back.  The first one carries the cookie for the next page.
        """
        return [
            c
            for c in serverctrls or []
            if c.controlType == ldap.SimplePagedResultsControl.controlType
        ]

    def _paged_search(
        self,
        conn,
        base: str,
        filterstr: str,
        attrlist: list[str],
        options: SearchOptions,
        controls: list[ldap.LDAPControl],
    ) -> list[LDAPData]:
        # The cookie starts out empty; the server hands us a new one with
        # each page until there are no more pages.
        paging = ldap.SimplePagedResultsControl(True, size=options.page_size, cookie="")  # noqa: FBT003
        controls = [paging, *controls]
        results: list[LDAPData] = []
        pages = 0
        try:
            while True:
                msgid = conn.search_ext(
                    base,
                    options.scope_value,
                    filterstr,
                    attrlist,
                    serverctrls=controls,
                    timeout=options.time_limit or -1,
                    sizelimit=options.size_limit,
                )
                _, rdata, _, serverctrls = conn.result3(msgid)
                pages += 1
                results.extend((dn, attrs) for dn, attrs in rdata if isinstance(attrs, dict))
                paged_controls = self._get_pctrls(serverctrls)
                if not paged_controls:
                    # The server ignored paging, e.g. for a base scope search.
                    break
                controls[0].cookie = paged_controls[0].cookie
                if not paged_controls[0].cookie:
                    break
        except UNREACHABLE:
            raise
        except ldap.LDAPError as e:
            logger.info(
                "directoryservice.search.paged pages=%d entries=%d base=%s",
                pages,
                len(results),
                base,
            )
            return self._partial_results(base, results, e)
        logger.info(
            "directoryservice.search.paged pages=%d entries=%d base=%s",
            pages,
            len(results),
            base,
        )
        return results

    def _partial_results(
        self, base: str, results: list[LDAPData], error: Exception
    ) -> list[LDAPData]:
        """
        Decide what a failed search returns: the entries we already have, an
        empty list if the base doesn't exist, or a :py:exc:`SearchError`.
        """
        if results:
            logger.warning(
                "directoryservice.search.partial base=%s entries=%d error=%s",
                base,
                len(results),
                describe_ldap_error(error),
            )
            return results
        if isinstance(error, ldap.NO_SUCH_OBJECT):
            logger.info("directoryservice.search.no-such-object base=%s", base)
            return []
        msg = f"Search under {base} failed: {describe_ldap_error(error)}"
        raise SearchError(msg) from error
