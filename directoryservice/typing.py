"""
Type aliases for the python-ldap data structures we pass around.
"""

from typing import Any

#: The attributes of a single LDAP entry as python-ldap returns them.
LDAPAttributes = dict[str, list[bytes]]
#: A single search result: ``(dn, attributes)``.
LDAPData = tuple[str, LDAPAttributes]
DeleteModListEntry = tuple[int, str, None]
ModifyModListEntry = tuple[int, str, list[bytes]]
ModifyModList = list[DeleteModListEntry | ModifyModListEntry]
AddModlist = list[tuple[str, list[bytes]]]
#: What callers may hand us as an attribute value.
AttributeValue = Any
