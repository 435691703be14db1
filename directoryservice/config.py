"""
Directory service configuration.

This module turns the ``DIRECTORY_SERVICE`` setting (or any mapping with the
same shape) into a read-only :py:class:`ConfigRegistry`.  The registry holds
two maps:

* ``sources``: how to reach and authenticate against each directory server
  (or group of replicas), keyed by source name
* ``dit``: which base locations in the naming hierarchy exist, what the
  entries under them are called, and which source owns them

Example:
    .. code-block:: python

        DIRECTORY_SERVICE = {
            "sources": {
                "directory": {
                    "endpoints": "ldap1.example.edu, ldap2.example.edu",
                    "ports": "636, 636",
                    "use_secure_transport": True,
                    "bind_identity": "cn=Directory Manager",
                    "bind_credential": "password",
                },
            },
            "dit": {
                "ou=people,dc=example,dc=edu": {
                    "singular": "person",
                    "plural": "people",
                    "identifying_attribute": "uid",
                    "source": "directory",
                },
            },
        }

"""

from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any

from django.conf import settings

from directoryservice import ldap

from .exceptions import ConfigError

#: The server set strategies a source may ask for.
STRATEGIES: tuple[str, ...] = ("failover", "round_robin")

#: Entity names taken by built-in operations (``findSubentriesWhere``).
RESERVED_NAMES: frozenset[str] = frozenset({"subentries"})


def normalize_name(name: str) -> str:
    """
    Normalize an entity or operation name for lookups: lowercase, with
    underscores removed, so that ``findPeopleWhere`` and ``find_people_where``
    compare equal.
    """
    return name.replace("_", "").lower()


def _split(value: Any) -> list[str]:
    """
    Turn either a comma separated string (``" 11389 ,33389"``) or an iterable
    into a list of stripped, non-empty strings.
    """
    if value is None:
        return []
    if isinstance(value, str):
        items: Iterable[Any] = value.split(",")
    elif isinstance(value, int):
        items = [value]
    else:
        items = value
    return [str(item).strip() for item in items if str(item).strip()]


def _optional_tuple(value: Any) -> tuple[str, ...] | None:
    if value is None:
        return None
    if isinstance(value, str):
        return (value,)
    return tuple(value)


@dataclass(frozen=True)
class SourceDescriptor:
    """
    Connection, authentication and pooling policy for one named source.

    ``endpoints`` and ``ports`` are parallel: the n-th host listens on the n-th
    port.  They are tried in listed order.
    """

    name: str
    endpoints: tuple[str, ...]
    ports: tuple[int, ...]
    use_secure_transport: bool = False
    trust_any_certificate: bool = False
    follow_referrals: bool = True
    pooled: bool = False
    pool_min: int = 1
    pool_max: int = 10
    bind_identity: str | None = None
    bind_credential: str | None = field(default=None, repr=False)
    strategy: str = "failover"
    start_tls: bool = False
    ca_certfile: str | None = None
    timeout: float = 15.0
    pool_timeout: float | None = 10.0

    @property
    def uris(self) -> list[str]:
        """
        The LDAP URIs for our endpoints, in failover order.
        """
        scheme = "ldaps" if self.use_secure_transport else "ldap"
        return [
            f"{scheme}://{host}:{port}"
            for host, port in zip(self.endpoints, self.ports, strict=True)
        ]

    @property
    def is_anonymous(self) -> bool:
        return not self.bind_identity

    @classmethod
    def from_mapping(cls, name: str, data: Mapping[str, Any]) -> "SourceDescriptor":
        """
        Build a :py:class:`SourceDescriptor` from one entry of the ``sources``
        setting.

        Args:
            name: the source name
            data: the settings for that source

        Raises:
            ConfigError: the endpoints and ports don't line up, a port is not an
                integer, the pool bounds make no sense, or the strategy is unknown

        """
        endpoints = _split(data.get("endpoints"))
        raw_ports = _split(data.get("ports"))
        if not endpoints:
            msg = f'Source "{name}" has no endpoints'
            raise ConfigError(msg)
        try:
            ports = [int(port) for port in raw_ports]
        except ValueError as e:
            msg = f'Source "{name}" has a non-integer port in {raw_ports}'
            raise ConfigError(msg) from e
        if len(endpoints) != len(ports):
            msg = (
                f'Source "{name}" has {len(endpoints)} endpoints but '
                f"{len(ports)} ports; they must match"
            )
            raise ConfigError(msg)
        strategy = data.get("strategy", "failover")
        if strategy not in STRATEGIES:
            msg = f'Source "{name}" has unknown strategy "{strategy}"'
            raise ConfigError(msg)
        pooled = bool(data.get("pooled", False))
        pool_min = int(data.get("pool_min", 1))
        pool_max = int(data.get("pool_max", 10))
        if pooled and (pool_min < 0 or pool_max < 1 or pool_min > pool_max):
            msg = (
                f'Source "{name}" has invalid pool bounds: pool_min={pool_min}, '
                f"pool_max={pool_max}"
            )
            raise ConfigError(msg)
        pool_timeout = data.get("pool_timeout", 10.0)
        return cls(
            name=name,
            endpoints=tuple(endpoints),
            ports=tuple(ports),
            use_secure_transport=bool(data.get("use_secure_transport", False)),
            trust_any_certificate=bool(data.get("trust_any_certificate", False)),
            follow_referrals=bool(data.get("follow_referrals", True)),
            pooled=pooled,
            pool_min=pool_min,
            pool_max=pool_max,
            bind_identity=data.get("bind_identity") or None,
            bind_credential=data.get("bind_credential"),
            strategy=strategy,
            start_tls=bool(data.get("start_tls", False)),
            ca_certfile=data.get("ca_certfile"),
            timeout=float(data.get("timeout", 15.0)),
            pool_timeout=None if pool_timeout is None else float(pool_timeout),
        )


@dataclass(frozen=True)
class DitEntry:
    """
    One routable base location, and what we call the entries under it.
    """

    #: The base location (search base).  This is the key in the ``dit`` map.
    base: str
    #: The name used for single-result operations, e.g. ``person``
    singular: str
    #: The name used for multi-result operations, e.g. ``people``
    plural: str
    #: The RDN attribute of entries under ``base``, e.g. ``uid``
    identifying_attribute: str
    #: The name of the source that owns ``base``
    source: str
    #: The attributes to ask for when searching, if not ``["*"]``
    attributes: tuple[str, ...] | None = None
    #: The objectClass values given to entries we construct under ``base``
    object_classes: tuple[str, ...] | None = None

    @classmethod
    def from_mapping(cls, base: str, data: Mapping[str, Any]) -> "DitEntry":
        """
        Build a :py:class:`DitEntry` from one entry of the ``dit`` setting.

        Raises:
            ConfigError: a required key is missing

        """
        missing = [
            key
            for key in ("singular", "plural", "identifying_attribute", "source")
            if not data.get(key)
        ]
        if missing:
            msg = f'dit entry "{base}" is missing {", ".join(missing)}'
            raise ConfigError(msg)
        return cls(
            base=base,
            singular=data["singular"],
            plural=data["plural"],
            identifying_attribute=data["identifying_attribute"],
            source=data["source"],
            attributes=_optional_tuple(data.get("attributes")),
            object_classes=_optional_tuple(data.get("object_classes")),
        )


class ConfigRegistry:
    """
    The read-only view of our ``sources`` and ``dit`` configuration.

    Once built, neither map can be changed: both are exposed as
    :py:class:`types.MappingProxyType` objects over frozen dataclasses, so one
    registry can be shared by every thread without locking.

    Args:
        sources: source name to source settings
        dit: base location to dit settings

    Keyword Args:
        subentry_depth: how many levels above a base location we will walk
            looking for a configured ancestor.  ``None`` walks to the root.

    Raises:
        ConfigError: the configuration is inconsistent

    """

    def __init__(
        self,
        sources: Mapping[str, Mapping[str, Any]],
        dit: Mapping[str, Mapping[str, Any]],
        subentry_depth: int | None = None,
    ) -> None:
        built_sources = {
            name: SourceDescriptor.from_mapping(name, data)
            for name, data in sources.items()
        }
        built_dit: dict[str, DitEntry] = {}
        names: dict[str, str] = {}
        for base, data in dit.items():
            entry = DitEntry.from_mapping(base, data)
            if entry.source not in built_sources:
                msg = f'dit entry "{base}" names unknown source "{entry.source}"'
                raise ConfigError(msg)
            for name in {normalize_name(entry.singular), normalize_name(entry.plural)}:
                if name in RESERVED_NAMES:
                    msg = f'dit entry "{base}" uses the reserved entity name "{name}"'
                    raise ConfigError(msg)
                if name in names:
                    msg = (
                        f'Entity name "{name}" is used by both "{names[name]}" '
                        f'and "{base}"'
                    )
                    raise ConfigError(msg)
                names[name] = base
            built_dit[base] = entry
        if subentry_depth is not None and subentry_depth < 0:
            msg = f"subentry_depth must be None or >= 0, not {subentry_depth}"
            raise ConfigError(msg)
        self._sources: Mapping[str, SourceDescriptor] = MappingProxyType(built_sources)
        self._dit: Mapping[str, DitEntry] = MappingProxyType(built_dit)
        self._subentry_depth = subentry_depth

    @classmethod
    def from_settings(cls, setting_name: str = "DIRECTORY_SERVICE") -> "ConfigRegistry":
        """
        Build a registry from the Django setting ``setting_name``.

        Raises:
            ConfigError: the setting does not exist or is malformed

        """
        try:
            config = getattr(settings, setting_name)
        except AttributeError as e:
            msg = f"settings.{setting_name} does not exist!"
            raise ConfigError(msg) from e
        try:
            return cls(
                config["sources"],
                config["dit"],
                subentry_depth=config.get("subentry_depth"),
            )
        except KeyError as e:
            msg = f"settings.{setting_name} has no {e} key"
            raise ConfigError(msg) from e

    @property
    def sources(self) -> Mapping[str, SourceDescriptor]:
        return self._sources

    @property
    def dit(self) -> Mapping[str, DitEntry]:
        return self._dit

    @property
    def subentry_depth(self) -> int | None:
        return self._subentry_depth

    def dit_entry_for(self, base: str) -> DitEntry:
        """
        Return the :py:class:`DitEntry` configured at exactly ``base``.

        Raises:
            ConfigError: ``base`` is not a configured base location

        """
        try:
            return self._dit[base]
        except KeyError as e:
            msg = f'unknown base location "{base}"'
            raise ConfigError(msg) from e

    def source_for(self, base: str) -> SourceDescriptor:
        """
        Return the source that owns the configured base location ``base``.

        Raises:
            ConfigError: ``base`` is not a configured base location

        """
        return self.source_named(self.dit_entry_for(base).source)

    def source_named(self, name: str) -> SourceDescriptor:
        try:
            return self._sources[name]
        except KeyError as e:
            msg = f'unknown source "{name}"'
            raise ConfigError(msg) from e

    def dit_entry_named(self, singular: str) -> DitEntry | None:
        """
        Return the :py:class:`DitEntry` whose singular name is ``singular``
        (case and underscores ignored), or ``None``.
        """
        wanted = normalize_name(singular)
        for entry in self._dit.values():
            if normalize_name(entry.singular) == wanted:
                return entry
        return None

    @staticmethod
    def parent_of(dn: str) -> str | None:
        """
        Return the DN of the direct parent of ``dn``, or ``None`` if ``dn`` has
        only one RDN.

        Raises:
            ConfigError: ``dn`` is not a well-formed DN

        """
        try:
            parts = ldap.dn.explode_dn(dn)
        except ldap.DECODING_ERROR as e:
            msg = f'"{dn}" is not a valid DN'
            raise ConfigError(msg) from e
        if len(parts) <= 1:
            return None
        return ",".join(parts[1:])

    def resolve_base(self, base: str) -> str:
        """
        Return ``base`` if it is configured, otherwise its nearest configured
        ancestor, walking up at most :py:attr:`subentry_depth` levels.

        Raises:
            ConfigError: neither ``base`` nor an ancestor within reach is
                configured

        """
        current: str | None = base
        depth = 0
        while current is not None:
            if current in self._dit:
                return current
            if self._subentry_depth is not None and depth >= self._subentry_depth:
                break
            current = self.parent_of(current)
            depth += 1
        msg = f'unknown base location "{base}"'
        raise ConfigError(msg)
