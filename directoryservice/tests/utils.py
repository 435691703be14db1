"""
Configuration shared by the test modules.
"""

from copy import deepcopy
from typing import Any

import django
from django.conf import settings

from directoryservice.config import ConfigRegistry

PEOPLE = "ou=people,dc=example,dc=edu"
ACCOUNTS = "ou=accounts,dc=example,dc=edu"
GROUPS = "ou=groups,dc=example,dc=edu"
ECONOMICS = "ou=Economics,ou=accounts,dc=example,dc=edu"

ADMIN_DN = "cn=admin,dc=example,dc=edu"
ADMIN_PASSWORD = "admin"

#: ``directory`` has one endpoint; ``replicas`` lists an unreachable endpoint
#: before the same server, so anything under ``ou=groups`` fails over.
DIRECTORY_SERVICE: dict[str, Any] = {
    "subentry_depth": None,
    "sources": {
        "directory": {
            "endpoints": "localhost",
            "ports": "389",
            "follow_referrals": False,
            "bind_identity": ADMIN_DN,
            "bind_credential": ADMIN_PASSWORD,
        },
        "replicas": {
            "endpoints": "down.example.edu , localhost",
            "ports": " 389 ,389",
            "follow_referrals": False,
            "bind_identity": ADMIN_DN,
            "bind_credential": ADMIN_PASSWORD,
        },
    },
    "dit": {
        PEOPLE: {
            "singular": "person",
            "plural": "people",
            "identifying_attribute": "uid",
            "source": "directory",
            "object_classes": ["top", "person", "organizationalPerson", "inetOrgPerson"],
        },
        ACCOUNTS: {
            "singular": "account",
            "plural": "accounts",
            "identifying_attribute": "uid",
            "source": "directory",
        },
        GROUPS: {
            "singular": "group",
            "plural": "groups",
            "identifying_attribute": "cn",
            "source": "replicas",
            "object_classes": ["top", "groupOfNames"],
        },
    },
}


def configure_django() -> None:
    if not settings.configured:
        settings.configure(DIRECTORY_SERVICE=deepcopy(DIRECTORY_SERVICE))
        django.setup()


def make_config(**sources: dict[str, Any]) -> dict[str, Any]:
    """
    Return a deep copy of :py:data:`DIRECTORY_SERVICE` with the named source
    settings updated from ``sources``.
    """
    config = deepcopy(DIRECTORY_SERVICE)
    for name, overrides in sources.items():
        config["sources"].setdefault(name, {}).update(overrides)
    return config


def make_registry(subentry_depth: int | None = None, **sources: dict[str, Any]) -> ConfigRegistry:
    config = make_config(**sources)
    return ConfigRegistry(config["sources"], config["dit"], subentry_depth=subentry_depth)
