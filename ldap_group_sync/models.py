"""
Value types shared by the directory client, the reconciler and the group stores.

Directory attributes may be single-valued or multi-valued depending on the
directory schema, so ``cn`` and the raw attribute mapping keep whatever the
search returned instead of forcing everything to scalars.
"""

from dataclasses import dataclass, field
from enum import IntEnum
from typing import Any, Dict, Mapping, Optional, Sequence

# Lower-cased DN (or raw ldap_value) -> present
LocalGroupIndex = Dict[str, bool]

SEARCH_TYPE_GROUPS = 'groups'
SEARCH_TYPE_USERS = 'users'


class GroupSearchType(IntEnum):
    """Which directory search passes are used to find groups."""

    USERS = 0
    GROUPS = 1
    BOTH = 2

    @classmethod
    def from_config(cls, value: Any) -> 'GroupSearchType':
        """
        Parse a configured search type.

        Accepts the enum itself, its integer value, or its name in any case
        ('groups', 'users', 'both').
        """
        if isinstance(value, cls):
            return value
        if isinstance(value, int):
            return cls(value)
        try:
            return cls[str(value).strip().upper()]
        except KeyError:
            raise ValueError(f"Unknown group search type: {value!r}")


@dataclass(frozen=True)
class SyncFieldConfig:
    """Synchronization-by-field settings of one directory server."""

    field: Optional[str] = None

    @property
    def enabled(self) -> bool:
        return bool(self.field)

    @classmethod
    def from_config(cls, ldap_config: Mapping[str, Any]) -> 'SyncFieldConfig':
        return cls(field=ldap_config.get('sync_field_group') or None)


@dataclass(frozen=True)
class DirectoryGroup:
    """A group record returned by a directory search."""

    dn: str
    cn: Optional[Sequence[str]] = None
    search_type: Any = None
    attributes: Mapping[str, Any] = field(default_factory=dict)

    @classmethod
    def from_entry(cls, entry: Mapping[str, Any]) -> 'DirectoryGroup':
        """
        Build a group from a raw search record.

        Args:
            entry: Mapping with 'dn', optional 'cn' and 'search_type', plus any
                other directory attributes (e.g. the sync field)

        Returns:
            DirectoryGroup with the extra keys kept in ``attributes``
        """
        attributes = {
            key: value for key, value in entry.items()
            if key not in ('dn', 'cn', 'search_type')
        }
        cn = entry.get('cn')
        if isinstance(cn, list):
            cn = tuple(cn)
        return cls(
            dn=entry.get('dn', ''),
            cn=cn,
            search_type=entry.get('search_type'),
            attributes=attributes,
        )


@dataclass(frozen=True)
class ReconciliationResult:
    """A directory group selected for import or update."""

    dn: str
    cn: Optional[Sequence[str]] = None
    search_type: Any = None
    sync_field_group: Any = None

    @property
    def name(self) -> Optional[str]:
        if isinstance(self.cn, (list, tuple)):
            return self.cn[0] if self.cn else None
        return self.cn

    def to_dict(self) -> Dict[str, Any]:
        """Row form; keys that were absent on the directory group are omitted."""
        row = {'dn': self.dn}
        if self.cn is not None:
            row['cn'] = list(self.cn) if isinstance(self.cn, tuple) else self.cn
        if self.search_type is not None:
            row['search_type'] = self.search_type
        if self.sync_field_group is not None:
            row['sync_field_group'] = self.sync_field_group
        return row
