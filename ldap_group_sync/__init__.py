"""
LDAP Group Sync - Import and synchronize LDAP directory groups into a local group store.

Directory groups are matched against the groups already stored locally, by
DN or by a configurable synchronization attribute, then created or updated.
"""

__version__ = "1.0.0"
__author__ = "LDAP Group Sync Team"
