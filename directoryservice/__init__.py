"""
A configuration-driven layer over one or more LDAP directories.

See :py:class:`directoryservice.service.DirectoryService`.
"""

from .config import ConfigRegistry
from .entry import DirectoryEntry, Modification, Operation
from .search import SearchOptions
from .service import DirectoryService

__version__ = "1.0.0"
