"""
YAML file group store.

Keeps the entity tree and the groups in a single YAML document:

    entities:
      - {id: 0, name: Root entity, entities_id: null}
      - {id: 1, name: Paris, entities_id: 0}
    groups:
      - {id: 1, name: Admins, entities_id: 0, is_recursive: 1,
         ldap_group_dn: 'CN=Admins,OU=Groups,DC=example,DC=com'}

The file is rewritten after every change.
"""

import os
import logging
from typing import Dict, List, Any, Optional, Set

import yaml

from .base import GroupStoreBase, GroupStoreError, GROUP_COLUMNS

logger = logging.getLogger(__name__)

ROOT_ENTITY_ID = 0


class YamlGroupStore(GroupStoreBase):
    """Group store backed by a YAML file."""

    def __init__(self, config: Dict[str, Any]):
        super().__init__(config)
        try:
            self.path = config['path']
        except KeyError:
            raise GroupStoreError("YAML store requires a 'path' setting")
        self.create_if_missing = config.get('create_if_missing', True)
        self.entities = []
        self.groups = []

    def authenticate(self) -> bool:
        """Load the YAML file."""
        if not os.path.exists(self.path):
            if not self.create_if_missing:
                raise GroupStoreError(f"Group store file not found: {self.path}")
            logger.info(f"Group store file {self.path} does not exist, starting empty")
            self.entities = [{'id': ROOT_ENTITY_ID, 'name': 'Root entity', 'entities_id': None}]
            self.groups = []
            self.authenticated = True
            return True

        try:
            with open(self.path, 'r') as f:
                data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise GroupStoreError(f"Invalid YAML in group store {self.path}: {e}") from e
        except OSError as e:
            raise GroupStoreError(f"Cannot read group store {self.path}: {e}") from e

        self.entities = data.get('entities') or [{'id': ROOT_ENTITY_ID, 'name': 'Root entity', 'entities_id': None}]
        self.groups = data.get('groups') or []
        self.authenticated = True
        logger.info(f"Loaded {len(self.groups)} groups and {len(self.entities)} entities from {self.path}")
        return True

    def _save(self):
        data = {'entities': self.entities, 'groups': self.groups}
        try:
            with open(self.path, 'w') as f:
                yaml.safe_dump(data, f, default_flow_style=False, sort_keys=False, allow_unicode=True)
        except OSError as e:
            raise GroupStoreError(f"Cannot write group store {self.path}: {e}") from e

    def _ensure_loaded(self):
        if not self.authenticated:
            raise GroupStoreError("Group store is not open")

    def entity_scope(self, entities_id: int, is_recursive: bool = True) -> Set[int]:
        """
        Get an entity and, when recursive, all of its descendants.

        Args:
            entities_id: Entity ID
            is_recursive: Include sub-entities

        Returns:
            Set of entity IDs
        """
        scope = {entities_id}
        if not is_recursive:
            return scope

        children = {}
        for entity in self.entities:
            children.setdefault(entity.get('entities_id'), []).append(entity['id'])

        pending = [entities_id]
        while pending:
            for child in children.get(pending.pop(), []):
                if child not in scope:
                    scope.add(child)
                    pending.append(child)
        return scope

    def get_known_groups(self, entities_id: int, is_recursive: bool = True) -> List[Dict[str, Any]]:
        self._ensure_loaded()
        scope = self.entity_scope(entities_id, is_recursive)
        rows = [
            {
                'id': group.get('id'),
                'ldap_group_dn': group.get('ldap_group_dn'),
                'ldap_value': group.get('ldap_value'),
            }
            for group in self.groups
            if group.get('entities_id', ROOT_ENTITY_ID) in scope
        ]
        logger.debug(f"{len(rows)} known groups in entities {sorted(scope)}")
        return rows

    def find_groups(self, **criteria) -> List[Dict[str, Any]]:
        self._ensure_loaded()
        return [
            dict(group) for group in self.groups
            if all(group.get(key) == value for key, value in criteria.items())
        ]

    def get_group(self, group_id: int) -> Optional[Dict[str, Any]]:
        matches = self.find_groups(id=group_id)
        return matches[0] if matches else None

    def add_group(self, data: Dict[str, Any]) -> int:
        self._ensure_loaded()
        group_id = max((group.get('id', 0) for group in self.groups), default=0) + 1
        group = {'id': group_id}
        for column in GROUP_COLUMNS[1:]:
            if column in data:
                group[column] = data[column]
        group.update({k: v for k, v in data.items() if k not in group and k != 'id'})
        self.groups.append(group)
        self._save()
        logger.debug(f"Added group {group_id}: {group.get('name')}")
        return group_id

    def update_group(self, group_id: int, data: Dict[str, Any]) -> bool:
        self._ensure_loaded()
        for group in self.groups:
            if group.get('id') == group_id:
                group.update({k: v for k, v in data.items() if k != 'id'})
                self._save()
                logger.debug(f"Updated group {group_id}")
                return True
        logger.warning(f"Group {group_id} not found in {self.path}")
        return False
