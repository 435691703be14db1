# This file is here so that we can patch the ldap module in our tests.
# python-ldap-faker patches ``directoryservice.ldap.initialize``, so every
# module in this package must reach python-ldap through here.
import ldap
from ldap import *  # noqa: F403
from ldap import cidict, dn
from ldap.controls import LDAPControl, SimplePagedResultsControl

__version__ = ldap.__version__
