"""
Exceptions raised by the directory service.

Every exception here derives from :py:class:`DirectoryServiceError` so callers
can catch the whole family at once.
"""

from django.core.exceptions import ImproperlyConfigured


class DirectoryServiceError(Exception):
    """Base class for everything this package raises."""


class ConfigError(DirectoryServiceError, ImproperlyConfigured):
    """
    Raised when the configuration is invalid, or when a base location or
    source cannot be found in it.
    """


class DirectoryConnectionError(DirectoryServiceError):
    """
    Raised when we cannot produce a usable connection: the secure context
    could not be built, the bind failed, every endpoint is down, or the
    connection pool is exhausted.
    """


class SearchError(DirectoryServiceError):
    """
    Raised when a search fails before the server returned anything, or when a
    filter string cannot be parsed.
    """


class ValidationError(DirectoryServiceError, ValueError):
    """Raised when a :py:class:`~directoryservice.entry.DirectoryEntry` cannot be built."""


class SaveError(DirectoryServiceError):
    """
    Describes a failed write.  :py:meth:`DirectoryService.save` does not raise
    this; it records ``str(SaveError(...))`` in ``entry.errors`` instead.
    """


class UnresolvedOperation(DirectoryServiceError, AttributeError):
    """
    Raised when an operation name such as ``findPeopleWhere`` does not match
    any configured entity, or when its arguments do not fit the pattern.
    """


def describe_ldap_error(exc: Exception) -> str:
    """
    Return a one-line description of a python-ldap exception.  python-ldap
    puts a dict with ``desc`` and sometimes ``info`` keys in ``args[0]``.
    """
    if exc.args and isinstance(exc.args[0], dict):
        details = exc.args[0]
        desc = details.get("desc", exc.__class__.__name__)
        info = details.get("info")
        if info:
            return f"{desc}: {info}"
        return desc
    return str(exc) or exc.__class__.__name__
