"""
Base group store interface.

A group store is the local datastore the directory groups are reconciled
against. Store modules live in this package and must define one subclass of
GroupStoreBase; the orchestrator loads them by module name.
"""

import logging
from abc import ABC, abstractmethod
from typing import Dict, List, Any, Optional

logger = logging.getLogger(__name__)

GROUP_COLUMNS = (
    'id', 'name', 'entities_id', 'is_recursive', 'ldap_field', 'ldap_value',
    'ldap_group_dn', 'sync_field_group',
)


class GroupStoreError(Exception):
    """Base exception for group store errors."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class GroupStoreAuthenticationError(GroupStoreError):
    """Raised when authentication to the group store fails."""
    pass


class GroupStoreBase(ABC):
    """
    Abstract base class for local group stores.

    Subclasses provide reading, scoping and writing of group records; lookups
    by sync field and DN are built on top of those here.
    """

    def __init__(self, config: Dict[str, Any]):
        """
        Initialize the store.

        Args:
            config: Store configuration dictionary
        """
        self.config = config
        self.name = config.get('name', type(self).__name__)
        self.authenticated = False

    @abstractmethod
    def authenticate(self) -> bool:
        """
        Open the store (log in, load files, ...).

        Returns:
            True if the store is ready for use

        Raises:
            GroupStoreAuthenticationError: If credentials are rejected
            GroupStoreError: If the store cannot be opened
        """
        pass

    @abstractmethod
    def get_known_groups(self, entities_id: int, is_recursive: bool = True) -> List[Dict[str, Any]]:
        """
        Get the groups of an entity, and of its sub-entities when recursive.

        Returns:
            Group rows, each with at least 'ldap_group_dn' and 'ldap_value'
        """
        pass

    @abstractmethod
    def find_groups(self, **criteria) -> List[Dict[str, Any]]:
        """
        Get all groups, in every entity, whose columns equal the given values.
        """
        pass

    @abstractmethod
    def get_group(self, group_id: int) -> Optional[Dict[str, Any]]:
        pass

    @abstractmethod
    def add_group(self, data: Dict[str, Any]) -> int:
        """
        Create a group.

        Args:
            data: Column values of the new group

        Returns:
            ID of the new group
        """
        pass

    @abstractmethod
    def update_group(self, group_id: int, data: Dict[str, Any]) -> bool:
        """
        Update the given columns of a group.

        Returns:
            True if the group was updated
        """
        pass

    def find_by_sync_field(self, value: Any) -> Optional[Dict[str, Any]]:
        """Get the group carrying this sync field value, if any."""
        if value is None or value == '':
            return None
        matches = self.find_groups(sync_field_group=value)
        return matches[0] if matches else None

    def find_by_dn(self, dn: str) -> Optional[Dict[str, Any]]:
        """
        Get the group imported from this DN, if any.

        The DN column is compared case-insensitively; the value column, used
        for groups found through user entries, is compared as is.
        """
        if not dn:
            return None
        lowered = dn.lower()
        for group in self.find_groups():
            if (group.get('ldap_group_dn') or '').lower() == lowered:
                return group
        matches = self.find_groups(ldap_value=dn)
        return matches[0] if matches else None

    def count_groups_with_sync_field(self) -> int:
        return sum(1 for group in self.find_groups() if group.get('sync_field_group') is not None)

    def close(self):
        """Release store resources."""
        self.authenticated = False

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
