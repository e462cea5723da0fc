"""
Synchronization of directory groups into a local group store.

GroupsSynchronizer fetches groups from the directory, reconciles them with
the groups already in the store and creates or updates local groups.
"""

import logging
from typing import Dict, Any, Optional, Tuple, Union

from ldap_group_sync.ldap_client import LDAPClient
from ldap_group_sync.logging_setup import audit_logger
from ldap_group_sync.models import ReconciliationResult, SyncFieldConfig, SEARCH_TYPE_USERS
from ldap_group_sync.reconciler import build_local_index, select_groups
from ldap_group_sync.stores.base import GroupStoreBase

logger = logging.getLogger(__name__)

GroupRow = Union[ReconciliationResult, Dict[str, Any]]


def _row_value(row: GroupRow, key: str, default: Any = None) -> Any:
    if isinstance(row, dict):
        return row.get(key, default)
    return getattr(row, key, default)


def _row_name(row: GroupRow) -> Optional[str]:
    if isinstance(row, dict):
        row = ReconciliationResult(dn=row.get('dn', ''), cn=row.get('cn'))
    return row.name


class GroupsSynchronizer:
    """
    Imports and synchronizes directory groups into a group store.

    Args:
        ldap_client: Connected directory client
        store: Opened group store
        ldap_config: LDAP configuration section (sync field, group field)
    """

    def __init__(self, ldap_client: LDAPClient, store: GroupStoreBase, ldap_config: Dict[str, Any]):
        self.ldap_client = ldap_client
        self.store = store
        self.ldap_config = ldap_config

    @property
    def sync_config(self) -> SyncFieldConfig:
        return SyncFieldConfig.from_config(self.ldap_config)

    def get_groups(self, entities_id: int, filter: str = '', filter2: str = '',
                   import_mode: bool = True, order: str = 'DESC',
                   is_recursive: bool = True) -> Tuple[Any, bool]:
        """
        Get the directory groups to import or to synchronize.

        When importing, groups already known in the entity scope are left
        out; when synchronizing, only those are kept.

        Args:
            entities_id: Working entity
            filter: LDAP filter for the group entry search
            filter2: LDAP filter for the user entry search
            import_mode: True to import new groups, False to synchronize known ones
            order: 'ASC' or 'DESC'
            is_recursive: Include the groups of sub-entities in the known groups

        Returns:
            Tuple of (ReconciliationResult list, limit exceeded flag)
        """
        ldap_groups, limit_exceeded = self.ldap_client.get_all_groups(filter, filter2, order)

        if not isinstance(ldap_groups, list) or not ldap_groups:
            return ldap_groups, limit_exceeded

        local_index = build_local_index(self.store.get_known_groups(entities_id, is_recursive))
        sync_lookup = self.store.find_by_sync_field if self.sync_config.enabled else None

        groups = select_groups(ldap_groups, local_index, self.sync_config, import_mode, sync_lookup)
        logger.info(f"{len(groups)} of {len(ldap_groups)} directory groups to "
                    f"{'import' if import_mode else 'synchronize'} in entity {entities_id}")
        return groups, limit_exceeded

    def get_group_sync_field_by_dn(self, group_dn: str) -> Optional[Any]:
        """Read the sync field of a directory group; None when sync by field is disabled."""
        if not self.sync_config.enabled:
            return None
        return self.ldap_client.get_group_sync_field_by_dn(group_dn, self.sync_config.field)

    def is_sync_field_group_used(self) -> bool:
        """Tell whether any local group carries a sync field value."""
        return self.store.count_groups_with_sync_field() > 0

    def find_existing_group(self, row: GroupRow) -> Optional[Dict[str, Any]]:
        """Find the local group matching a row, by sync field first, then by DN."""
        sync_key = _row_value(row, 'sync_field_group')
        if sync_key is not None:
            group = self.store.find_by_sync_field(sync_key)
            if group:
                return group
        return self.store.find_by_dn(_row_value(row, 'dn'))

    def add_ldap_group_dn(self, row: GroupRow, options: Dict[str, Any]) -> int:
        return self.store.add_group({
            'name': _row_name(row),
            'ldap_group_dn': _row_value(row, 'dn'),
            'sync_field_group': _row_value(row, 'sync_field_group'),
            'entities_id': options['entities_id'],
            'is_recursive': options['is_recursive'],
            'is_assign': 0,
            'is_task': 0,
            'is_notify': 0,
            'is_manager': 0,
        })

    def add_ldap_field(self, row: GroupRow, options: Dict[str, Any]) -> int:
        """Create a group found through the group attribute of user entries."""
        return self.store.add_group({
            'name': _row_name(row),
            'ldap_field': self.ldap_config.get('group_field'),
            'ldap_value': _row_value(row, 'dn'),
            'sync_field_group': _row_value(row, 'sync_field_group'),
            'entities_id': options['entities_id'],
            'is_recursive': options['is_recursive'],
            'is_assign': 0,
            'is_task': 0,
            'is_notify': 0,
            'is_manager': 0,
        })

    def update_ldap_group_dn(self, group: Dict[str, Any], row: GroupRow, options: Dict[str, Any]) -> bool:
        return self.store.update_group(group['id'], {
            'ldap_group_dn': _row_value(row, 'dn'),
            'sync_field_group': _row_value(row, 'sync_field_group'),
            'entities_id': options['entities_id'],
            'is_recursive': options['is_recursive'],
        })

    def update_ldap_field(self, group: Dict[str, Any], row: GroupRow, options: Dict[str, Any]) -> bool:
        return self.store.update_group(group['id'], {
            'ldap_field': self.ldap_config.get('group_field'),
            'ldap_value': _row_value(row, 'dn'),
            'sync_field_group': _row_value(row, 'sync_field_group'),
            'entities_id': options['entities_id'],
            'is_recursive': options['is_recursive'],
        })

    def import_group(self, row: GroupRow, options: Dict[str, Any]) -> Tuple[str, Optional[int]]:
        """
        Create or update the local group of one directory group.

        Groups found through user entries are stored in the ldap_field and
        ldap_value columns, others in ldap_group_dn.

        Args:
            row: Directory group selected by get_groups
            options: 'entities_id' and 'is_recursive' of the local group

        Returns:
            Tuple of ('added' or 'updated', group ID)
        """
        dn = _row_value(row, 'dn')
        by_field = _row_value(row, 'search_type') == SEARCH_TYPE_USERS
        group = self.find_existing_group(row)

        if group:
            if by_field:
                success = self.update_ldap_field(group, row, options)
            else:
                success = self.update_ldap_group_dn(group, row, options)
            audit_logger.log_group_operation('update', dn, group['id'], success)
            return 'updated', group['id'] if success else None

        if by_field:
            group_id = self.add_ldap_field(row, options)
        else:
            group_id = self.add_ldap_group_dn(row, options)
        audit_logger.log_group_operation('add', dn, group_id, bool(group_id))
        return 'added', group_id

