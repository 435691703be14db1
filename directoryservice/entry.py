"""
Directory entries and the attribute diff engine.

A :py:class:`DirectoryEntry` keeps two snapshots of an entry's attributes:

* the *original*, as it was fetched (or constructed, or last saved)
* the *working* copy, which :py:meth:`DirectoryEntry.set` changes

After every :py:meth:`DirectoryEntry.set` we diff the two snapshots and keep
the resulting list of :py:class:`Modification` objects, ready to be handed to
``modify_s``.  Attribute names are case-insensitive throughout; values are
held as lists of ``bytes``, the way python-ldap returns them.
"""

import datetime
import enum
from collections.abc import Mapping
from typing import TYPE_CHECKING, Any, NamedTuple

import pytz

from directoryservice import ldap

from .exceptions import ConfigError, ValidationError
from .typing import AddModlist, AttributeValue, LDAPAttributes, LDAPData, ModifyModList

if TYPE_CHECKING:
    from .config import ConfigRegistry


#: The format we write GeneralizedTime values in.
LDAP_DATETIME_FORMAT: str = "%Y%m%d%H%M%SZ"
#: The formats we accept when reading GeneralizedTime values.
LDAP_DATETIME_FORMATS: list[str] = [
    "%Y%m%d%H%M%SZ",
    "%Y%m%d%H%M%S.%fZ",
    "%Y%m%d%H%M%S+0000",
]
LDAP_TRUE: bytes = b"TRUE"
LDAP_FALSE: bytes = b"FALSE"


class Operation(enum.Enum):
    """The modification operations, valued as their python-ldap constants."""

    ADD = ldap.MOD_ADD
    DELETE = ldap.MOD_DELETE
    REPLACE = ldap.MOD_REPLACE


class Modification(NamedTuple):
    """
    One change to one attribute.  ``values`` is ``None`` for a DELETE that
    removes the whole attribute.
    """

    op: Operation
    attribute: str
    values: list[bytes] | None

    def to_modlist(self) -> tuple[int, str, list[bytes] | None]:
        """Return this modification as a python-ldap modlist entry."""
        return (self.op.value, self.attribute, self.values)


# -----------------------
# Value conversion
# -----------------------


def to_ldap_values(value: AttributeValue) -> list[bytes]:
    """
    Convert a Python value into a list of LDAP values.

    ``str`` is UTF-8 encoded, ``bool`` becomes ``TRUE``/``FALSE``, ``int``
    its decimal string, and :py:class:`datetime.datetime` GeneralizedTime in
    UTC (naive datetimes are taken to be UTC already).  Lists and tuples give
    one value per item.  ``None``, empty strings and empty lists give ``[]``.

    Raises:
        TypeError: ``value`` is of a type we can't store

    """
    if value is None:
        return []
    if isinstance(value, list | tuple | set | frozenset):
        values: list[bytes] = []
        for item in value:
            values.extend(to_ldap_values(item))
        return values
    if isinstance(value, bytes):
        return [value] if value else []
    if isinstance(value, str):
        return [value.encode("utf-8")] if value else []
    if isinstance(value, bool):
        return [LDAP_TRUE if value else LDAP_FALSE]
    if isinstance(value, int):
        return [str(value).encode("utf-8")]
    if isinstance(value, datetime.datetime):
        if value.tzinfo is None:
            value = pytz.utc.localize(value)
        return [value.astimezone(pytz.utc).strftime(LDAP_DATETIME_FORMAT).encode("utf-8")]
    msg = f"Cannot store a {type(value).__name__} as an LDAP attribute value"
    raise TypeError(msg)


def parse_generalized_time(value: bytes | str) -> datetime.datetime:
    """
    Parse an LDAP GeneralizedTime value into an aware UTC datetime.

    Raises:
        ValueError: ``value`` is not in a format we understand

    """
    if isinstance(value, bytes):
        value = value.decode("utf-8")
    for fmt in LDAP_DATETIME_FORMATS:
        try:
            dt = datetime.datetime.strptime(value, fmt)  # noqa: DTZ007
        except ValueError:  # noqa: PERF203
            pass
        else:
            return pytz.utc.localize(dt)
    msg = f'"{value}" is not an LDAP GeneralizedTime value'
    raise ValueError(msg)


def _snapshot(attributes: Mapping[str, Any]) -> ldap.cidict.cidict:
    """
    Copy ``attributes`` into a fresh case-insensitive dict of ``list[bytes]``,
    dropping attributes with no values.
    """
    snapshot = ldap.cidict.cidict()
    for attr, value in attributes.items():
        values = to_ldap_values(value)
        if values:
            snapshot[attr] = values
    return snapshot


# -----------------------
# Diff engine
# -----------------------


def _normalize(value: bytes, byte_for_byte: bool) -> bytes:
    if byte_for_byte:
        return value
    return value.strip().lower()


def diff(
    original: Mapping[str, list[bytes]],
    working: Mapping[str, list[bytes]],
    reversible: bool = True,
    byte_for_byte: bool = True,
) -> list[Modification]:
    """
    Compute the modifications that turn ``original`` into ``working``.

    * An attribute only in ``original`` gives a DELETE with no values.
    * An attribute only in ``working`` gives an ADD of all its values.
    * An attribute in both whose value sets differ gives, if ``reversible``,
      a DELETE of the values that went away followed by an ADD of the values
      that are new (each only when there are any); otherwise a REPLACE with
      all the working values.

    Attributes are visited in the order of ``original``, then attributes new
    in ``working`` in their order there.  Value order within an attribute
    does not count as a difference.

    Args:
        original: the attributes as they are on the server
        working: the attributes as we want them to be

    Keyword Args:
        reversible: emit DELETE/ADD pairs instead of REPLACE
        byte_for_byte: compare values exactly.  If ``False``, values that
            differ only in case or surrounding whitespace are equal.

    Returns:
        The modifications, in the order they should be applied.

    """
    modifications: list[Modification] = []
    for attr, old_values in original.items():
        if attr not in working:
            modifications.append(Modification(Operation.DELETE, attr, None))
            continue
        new_values = working[attr]
        old_keys = {_normalize(v, byte_for_byte) for v in old_values}
        new_keys = {_normalize(v, byte_for_byte) for v in new_values}
        if old_keys == new_keys:
            continue
        if not reversible:
            modifications.append(Modification(Operation.REPLACE, attr, list(new_values)))
            continue
        removed = [v for v in old_values if _normalize(v, byte_for_byte) not in new_keys]
        added = [v for v in new_values if _normalize(v, byte_for_byte) not in old_keys]
        if removed:
            modifications.append(Modification(Operation.DELETE, attr, removed))
        if added:
            modifications.append(Modification(Operation.ADD, attr, added))
    for attr, new_values in working.items():
        if attr not in original:
            modifications.append(Modification(Operation.ADD, attr, list(new_values)))
    return modifications


# -----------------------
# DirectoryEntry
# -----------------------


class DirectoryEntry:
    """
    One directory entry, with change tracking.

    Example:
        .. code-block:: python

            person = service.getPerson("jdoe")
            person.set("mail", "jdoe@example.edu")
            person.is_dirty("mail")      # True
            person.modifications         # (DELETE mail [old], ADD mail [new])
            service.save(person)

    Args:
        dn: the entry's distinguished name
        attributes: the entry's attributes, as python-ldap returns them
        base: the configured base location the entry lives under

    """

    def __init__(self, dn: str, attributes: Mapping[str, Any], base: str) -> None:
        self._dn = dn
        self._base = base
        self._original = _snapshot(attributes)
        self._working = _snapshot(attributes)
        #: Attribute name to the last value passed to :py:meth:`set`
        self.changes: ldap.cidict.cidict = ldap.cidict.cidict()
        #: Operation name (``"save"``, ``"add"``) to the error from its last failure
        self.errors: dict[str, str] = {}
        self._modifications: list[Modification] = []

    # Constructors

    @classmethod
    def from_search_result(cls, record: LDAPData, base: str) -> "DirectoryEntry":
        """Wrap a ``(dn, attrs)`` search result found under ``base``."""
        dn, attributes = record
        return cls(dn, attributes, base)

    @classmethod
    def from_attributes(
        cls,
        attributes: Mapping[str, Any],
        singular: str,
        registry: "ConfigRegistry",
    ) -> "DirectoryEntry":
        """
        Build a new entry (not yet on the server) for the entity ``singular``.

        The DN is ``<identifying attribute>=<value>,<base>``.  If the
        identifying attribute has several values, the first is used.  When
        ``attributes`` has no ``objectClass``, the dit entry's
        ``object_classes`` are used.

        Args:
            attributes: the new entry's attributes
            singular: the singular entity name, e.g. ``person``
            registry: our configuration

        Raises:
            ValidationError: ``singular`` is not configured, there are no
                objectClass values anywhere, the objectClass given is a single
                string instead of a list, or the identifying attribute is missing

        """
        dit_entry = registry.dit_entry_named(singular)
        if dit_entry is None:
            msg = f'Could not find the dit entry for "{singular}"'
            raise ValidationError(msg)
        given = ldap.cidict.cidict()
        for attr, value in attributes.items():
            given[attr] = value
        object_class = given.get("objectClass") or dit_entry.object_classes
        if not object_class:
            msg = (
                'Could not find "objectClass" values in either the attributes '
                f'or the dit entry for "{singular}"'
            )
            raise ValidationError(msg)
        if isinstance(object_class, str | bytes):
            msg = "objectClass values must be a list"
            raise ValidationError(msg)
        id_attr = dit_entry.identifying_attribute
        rdn_value = given.get(id_attr)
        if not rdn_value:
            msg = f'Could not find the identifying attribute "{id_attr}" in the attributes'
            raise ValidationError(msg)
        if isinstance(rdn_value, list | tuple):
            rdn_value = rdn_value[0]
        if isinstance(rdn_value, bytes):
            rdn_value = rdn_value.decode("utf-8")
        dn = f"{id_attr}={ldap.dn.escape_dn_chars(str(rdn_value))},{dit_entry.base}"
        snapshot = _snapshot(attributes)
        if "objectClass" not in snapshot:
            snapshot["objectClass"] = to_ldap_values(list(object_class))
        return cls(dn, snapshot, dit_entry.base)

    @classmethod
    def from_ldap_entry(
        cls, record: LDAPData, registry: "ConfigRegistry"
    ) -> "DirectoryEntry":
        """
        Wrap an arbitrary ``(dn, attrs)`` record.  Its base is the DN's
        direct parent, which must be a configured base location.

        Raises:
            ValidationError: the parent DN is not configured

        """
        dn, attributes = record
        try:
            parent = registry.parent_of(dn)
        except ConfigError as e:
            raise ValidationError(str(e)) from e
        if parent is None or parent not in registry.dit:
            msg = f'Could not find the dit entry for the parent DN "{parent}" of "{dn}"'
            raise ValidationError(msg)
        return cls(dn, attributes, parent)

    # Identity

    @property
    def dn(self) -> str:
        return self._dn

    @property
    def base(self) -> str:
        return self._base

    @property
    def attribute_names(self) -> list[str]:
        return list(self._working.keys())

    # Reading

    def get_raw_values(self, attribute: str) -> list[bytes]:
        return list(self._working.get(attribute) or [])

    def get_values(self, attribute: str) -> list[str]:
        return [v.decode("utf-8") for v in self.get_raw_values(attribute)]

    def get(self, attribute: str) -> str | None:
        """
        Return the first value of ``attribute`` as a string, or ``None`` if
        the entry doesn't have it.  Use :py:meth:`get_raw_values` for binary
        attributes.
        """
        values = self.get_raw_values(attribute)
        if not values:
            return None
        return values[0].decode("utf-8")

    def as_date(self, attribute: str) -> datetime.datetime | None:
        """
        Return the first value of ``attribute`` parsed as GeneralizedTime.

        Raises:
            ValueError: the value is not GeneralizedTime

        """
        values = self.get_raw_values(attribute)
        if not values:
            return None
        return parse_generalized_time(values[0])

    def as_boolean(self, attribute: str) -> bool | None:
        """
        Return the first value of ``attribute`` as a bool.

        Raises:
            ValueError: the value is neither ``TRUE`` nor ``FALSE``

        """
        values = self.get_raw_values(attribute)
        if not values:
            return None
        value = values[0].upper()
        if value == LDAP_TRUE:
            return True
        if value == LDAP_FALSE:
            return False
        msg = f'{attribute} value "{values[0]!r}" is not a boolean'
        raise ValueError(msg)

    def as_integer(self, attribute: str) -> int | None:
        values = self.get_raw_values(attribute)
        if not values:
            return None
        return int(values[0])

    def as_dict(self) -> dict[str, list[str]]:
        """Return the working attributes with string values, keyed by name."""
        return {attr: self.get_values(attr) for attr in self._working}

    # Writing

    def set(self, attribute: str, value: AttributeValue) -> None:
        """
        Change ``attribute`` in the working copy.  An empty value (``None``,
        ``""``, ``[]``) removes the attribute.  Either way the value is
        recorded in :py:attr:`changes` and the modifications are recomputed.

        Raises:
            TypeError: ``value`` is of a type we can't store

        """
        values = to_ldap_values(value)
        self.changes[attribute] = value
        if values:
            self._working[attribute] = values
        elif attribute in self._working:
            del self._working[attribute]
        self.update_modifications()

    def update_modifications(
        self, reversible: bool = True, byte_for_byte: bool = True
    ) -> tuple[Modification, ...]:
        """
        Recompute :py:attr:`modifications` from the two snapshots.  See
        :py:func:`diff` for what ``reversible`` and ``byte_for_byte`` do.
        """
        self._modifications = diff(
            self._original,
            self._working,
            reversible=reversible,
            byte_for_byte=byte_for_byte,
        )
        return self.modifications

    @property
    def modifications(self) -> tuple[Modification, ...]:
        return tuple(self._modifications)

    def modlist(self) -> ModifyModList:
        """Return :py:attr:`modifications` as a ``modify_s`` modlist."""
        return [m.to_modlist() for m in self._modifications]  # type: ignore[misc]

    def add_modlist(self) -> AddModlist:
        """Return the working attributes as an ``add_s`` modlist."""
        return [(attr, list(values)) for attr, values in self._working.items()]

    def is_dirty(self, attribute: str | None = None) -> bool:
        """
        Return ``True`` if there are pending modifications, or, given
        ``attribute``, if there are pending modifications to it.
        """
        if attribute is None:
            return bool(self._modifications)
        attribute = attribute.lower()
        return any(m.attribute.lower() == attribute for m in self._modifications)

    def _reset(self) -> None:
        self.changes = ldap.cidict.cidict()
        self.errors = {}
        self._modifications = []

    def discard(self) -> None:
        """Throw away every change since the entry was fetched or last saved."""
        self._working = _snapshot(self._original)
        self._reset()

    def cleanup_after_save(self) -> None:
        """Make the working copy the new original after a successful write."""
        self._original = _snapshot(self._working)
        self._reset()

    # Dunder methods

    def __getitem__(self, attribute: str) -> str | None:
        return self.get(attribute)

    def __setitem__(self, attribute: str, value: AttributeValue) -> None:
        self.set(attribute, value)

    def __contains__(self, attribute: object) -> bool:
        return isinstance(attribute, str) and attribute in self._working

    def __repr__(self) -> str:
        dirty = " dirty" if self.is_dirty() else ""
        return f"<DirectoryEntry: {self._dn}{dirty}>"

    @property
    def original(self) -> LDAPAttributes:
        """A copy of the original snapshot."""
        return {attr: list(values) for attr, values in self._original.items()}
