"""
Naming-convention dispatch.

:py:class:`MethodRouter` turns an operation name like ``findPeopleWhere`` or
``getPerson`` plus its arguments into a :py:class:`Resolution`: which base
location to search, what kind of operation to run, and with what arguments.
The names it understands come from the ``singular`` and ``plural`` names in
the ``dit`` configuration:

* ``get<Singular>(identifier [, options])``
* ``find<Plural>Where(attributes | filter [, options])``
* ``find<Singular>Where(attributes | filter [, options])``
* ``findSubentriesWhere(base, attributes | filter [, options])``

Names are matched case-insensitively with underscores ignored, so
``find_people_where`` and ``findpeoplewhere`` both mean ``findPeopleWhere``.
"""

import enum
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from typing import Any

from ldap_filter import Filter
from ldap_filter.parser import ParseError

from .config import ConfigRegistry, DitEntry, normalize_name
from .search import SearchOptions

SUBENTRIES_OPERATION: str = "findsubentrieswhere"


class OperationKind(enum.Enum):
    FIND_MANY_BY_ATTRIBUTES = "find_many_by_attributes"
    FIND_ONE_BY_ATTRIBUTES = "find_one_by_attributes"
    FIND_MANY_BY_FILTER = "find_many_by_filter"
    FIND_ONE_BY_FILTER = "find_one_by_filter"
    GET_BY_ID = "get_by_id"
    FIND_SUBENTRIES = "find_subentries"
    UNRESOLVED = "unresolved"


@dataclass(frozen=True)
class Resolution:
    """
    The result of resolving an operation name.

    ``arguments`` is an attribute mapping for the ``*_BY_ATTRIBUTES`` kinds
    and for ``GET_BY_ID`` (identifying attribute to identifier), and an
    ``ldap_filter`` expression or filter string for the ``*_BY_FILTER`` kinds.
    For ``FIND_SUBENTRIES`` it may be either.
    """

    kind: OperationKind
    base: str | None = None
    arguments: Any = None
    options: SearchOptions | None = None

    @property
    def resolved(self) -> bool:
        return self.kind is not OperationKind.UNRESOLVED

    @property
    def single(self) -> bool:
        """``True`` if the operation returns one entry (or ``None``)."""
        return self.kind in (
            OperationKind.FIND_ONE_BY_ATTRIBUTES,
            OperationKind.FIND_ONE_BY_FILTER,
            OperationKind.GET_BY_ID,
        )


UNRESOLVED = Resolution(OperationKind.UNRESOLVED)


def is_filter(value: Any) -> bool:
    """
    Return ``True`` if ``value`` is an ``ldap_filter`` expression, or a string
    that parses as one.
    """
    if isinstance(value, Filter):
        return True
    if isinstance(value, str):
        try:
            Filter.parse(value)
        except ParseError:
            return False
        return True
    return False


class MethodRouter:
    """
    Resolve naming-convention operation names against a registry.

    The lookup tables are built once, here, from the registry's ``dit`` map.
    Where an entry uses the same word for its singular and plural names, the
    plural (multi-result) reading wins.

    Args:
        registry: our configuration

    """

    def __init__(self, registry: ConfigRegistry) -> None:
        self.registry = registry
        #: ``find<name>where`` to (dit entry, returns many?)
        self.finders: dict[str, tuple[DitEntry, bool]] = {}
        #: ``get<singular>`` to dit entry
        self.getters: dict[str, DitEntry] = {}
        for dit_entry in registry.dit.values():
            singular = normalize_name(dit_entry.singular)
            self.finders[f"find{singular}where"] = (dit_entry, False)
            self.getters[f"get{singular}"] = dit_entry
        for dit_entry in registry.dit.values():
            plural = normalize_name(dit_entry.plural)
            self.finders[f"find{plural}where"] = (dit_entry, True)

    def can_resolve(self, name: str) -> bool:
        key = normalize_name(name)
        return key == SUBENTRIES_OPERATION or key in self.finders or key in self.getters

    def resolve(self, name: str, args: Sequence[Any]) -> Resolution:
        """
        Resolve ``name`` called with positional arguments ``args``.

        Returns:
            A :py:class:`Resolution`.  Its kind is ``UNRESOLVED`` if ``name``
            is not an operation we know, or if ``args`` do not fit it.

        """
        key = normalize_name(name)
        args = list(args)
        if key == SUBENTRIES_OPERATION:
            return self._resolve_subentries(args)
        if key in self.getters:
            return self._resolve_get(self.getters[key], args)
        if key in self.finders:
            dit_entry, many = self.finders[key]
            return self._resolve_find(dit_entry, many, args)
        return UNRESOLVED

    def _options(self, extra: list[Any]) -> SearchOptions | None:
        """
        Return the options from the trailing arguments, or ``None`` if they
        don't look like options.
        """
        if not extra:
            return SearchOptions()
        if len(extra) > 1:
            return None
        try:
            return SearchOptions.coerce(extra[0])
        except (ValueError, TypeError, AttributeError):
            return None

    def _resolve_get(self, dit_entry: DitEntry, args: list[Any]) -> Resolution:
        if not args or not isinstance(args[0], str) or not args[0]:
            return UNRESOLVED
        options = self._options(args[1:])
        if options is None:
            return UNRESOLVED
        return Resolution(
            OperationKind.GET_BY_ID,
            base=dit_entry.base,
            arguments={dit_entry.identifying_attribute: args[0]},
            options=options,
        )

    def _resolve_find(
        self, dit_entry: DitEntry, many: bool, args: list[Any]
    ) -> Resolution:
        if not args:
            return UNRESOLVED
        options = self._options(args[1:])
        if options is None:
            return UNRESOLVED
        criteria = args[0]
        if isinstance(criteria, Mapping):
            if not criteria:
                return UNRESOLVED
            kind = (
                OperationKind.FIND_MANY_BY_ATTRIBUTES
                if many
                else OperationKind.FIND_ONE_BY_ATTRIBUTES
            )
        elif is_filter(criteria):
            kind = (
                OperationKind.FIND_MANY_BY_FILTER
                if many
                else OperationKind.FIND_ONE_BY_FILTER
            )
        else:
            return UNRESOLVED
        return Resolution(kind, base=dit_entry.base, arguments=criteria, options=options)

    def _resolve_subentries(self, args: list[Any]) -> Resolution:
        if len(args) < 2 or not isinstance(args[0], str) or not args[0]:
            return UNRESOLVED
        criteria = args[1]
        if isinstance(criteria, Mapping):
            if not criteria:
                return UNRESOLVED
        elif not is_filter(criteria):
            return UNRESOLVED
        options = self._options(args[2:])
        if options is None:
            return UNRESOLVED
        return Resolution(
            OperationKind.FIND_SUBENTRIES,
            base=args[0],
            arguments=criteria,
            options=options,
        )
