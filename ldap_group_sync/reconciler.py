"""
Reconciliation of directory groups against the locally known groups.

Given the groups returned by a directory search and an index of the groups
already stored locally, decide which ones are candidates for import (unknown
locally) or for synchronization (already known locally).

A group is known locally when either its DN is present in the local index or
its synchronization field value matches a local group. Both mechanisms are
honored because earlier imports may have used either one.
"""

import logging
import uuid
from collections.abc import Sequence
from typing import Any, Callable, Iterable, List, Mapping, Optional, Union

from ldap_group_sync.models import (
    DirectoryGroup,
    LocalGroupIndex,
    ReconciliationResult,
    SyncFieldConfig,
)

logger = logging.getLogger(__name__)

SyncLookup = Callable[[str], Any]

OBJECTGUID_FIELD = 'objectguid'


def _is_valid_guid(value: Any) -> bool:
    if not isinstance(value, str):
        return False
    try:
        uuid.UUID(value)
    except ValueError:
        return False
    return True


def _guid_to_string(value: Any) -> str:
    """Convert a binary Active Directory objectGUID to its string form."""
    if isinstance(value, str):
        value = value.encode('latin-1')
    return str(uuid.UUID(bytes_le=bytes(value)))


def get_field_value(attributes: Mapping[str, Any], field: str) -> Any:
    """
    Get the scalar value of a directory attribute.

    Multi-valued attributes yield their first value. Binary objectGUID values
    are converted to the usual string representation.

    Args:
        attributes: Directory attributes of one entry
        field: Attribute name

    Returns:
        Scalar value, or None if the attribute is missing or empty
    """
    raw = attributes.get(field)
    if isinstance(raw, (list, tuple)):
        value = raw[0] if raw else None
    else:
        value = raw

    if value is None or field.lower() != OBJECTGUID_FIELD:
        return value

    if _is_valid_guid(value):
        return value
    try:
        converted = _guid_to_string(value)
    except (ValueError, TypeError, UnicodeEncodeError):
        # not an objectGUID after all
        return value
    return converted if _is_valid_guid(converted) else value


def resolve_sync_key(group: DirectoryGroup, sync_config: SyncFieldConfig) -> Optional[Any]:
    """
    Resolve the synchronization key of a directory group.

    Args:
        group: Directory group
        sync_config: Sync field settings of the directory server

    Returns:
        The first value of the configured sync field as returned by the
        directory (str, bytes or int), or None when sync by field is disabled
        or the group carries no value for the field
    """
    if not sync_config.enabled or sync_config.field not in group.attributes:
        return None
    value = get_field_value(group.attributes, sync_config.field)
    if value is None or value == '':
        return None
    return value


def exists_locally(dn: str, local_index: LocalGroupIndex,
                   sync_key: Optional[Any] = None,
                   sync_lookup: Optional[SyncLookup] = None) -> bool:
    """
    Tell whether a directory group is already known locally.

    Args:
        dn: Distinguished name of the directory group
        local_index: Index built by :func:`build_local_index`
        sync_key: Resolved sync field value, if any
        sync_lookup: Callable reporting whether a local group carries a given
            sync field value

    Returns:
        True if the group matches by sync field or by DN
    """
    if sync_key is not None and sync_lookup is not None and sync_lookup(sync_key):
        return True

    return (dn or '').lower() in local_index


def build_local_index(rows: Iterable[Mapping[str, Any]]) -> LocalGroupIndex:
    """
    Index the locally known groups.

    Depending on the search type used when a group was imported, its DN is
    stored either in ``ldap_group_dn`` or in ``ldap_value``. DN keys are
    lower-cased; value keys are kept as they are.

    Args:
        rows: Local group rows with 'ldap_group_dn' and 'ldap_value' columns

    Returns:
        Mapping of index key to True
    """
    index: LocalGroupIndex = {}
    for row in rows:
        if row.get('ldap_group_dn'):
            index[row['ldap_group_dn'].lower()] = True
        elif row.get('ldap_value'):
            index[row['ldap_value']] = True
    return index


def select_groups(directory_groups: Any,
                  local_index: LocalGroupIndex,
                  sync_config: SyncFieldConfig,
                  import_mode: bool,
                  sync_lookup: Optional[SyncLookup] = None
                  ) -> Union[List[ReconciliationResult], Any]:
    """
    Select the directory groups to import or to synchronize.

    In import mode only groups unknown locally are kept; in synchronize mode
    only groups already known locally are kept. Input order is preserved and
    duplicates are passed through.

    Args:
        directory_groups: Groups from the directory search, as
            DirectoryGroup instances or raw record mappings
        local_index: Index of the locally known groups
        sync_config: Sync field settings of the directory server
        import_mode: True to import new groups, False to synchronize known ones
        sync_lookup: Sync field lookup against the local store

    Returns:
        List of ReconciliationResult rows. Empty or non-sequence input is
        returned unchanged.
    """
    if (not directory_groups
            or isinstance(directory_groups, (str, bytes))
            or not isinstance(directory_groups, Sequence)):
        return directory_groups

    selected = []
    for entry in directory_groups:
        group = entry if isinstance(entry, DirectoryGroup) else DirectoryGroup.from_entry(entry)

        sync_key = resolve_sync_key(group, sync_config)
        known = exists_locally(group.dn, local_index, sync_key, sync_lookup)

        if known == bool(import_mode):
            logger.debug(f"Skipping group {group.dn} (known locally: {known})")
            continue

        selected.append(ReconciliationResult(
            dn=group.dn,
            cn=group.cn,
            search_type=group.search_type,
            sync_field_group=sync_key,
        ))

    mode = 'import' if import_mode else 'synchronize'
    logger.debug(f"Selected {len(selected)} of {len(directory_groups)} directory groups for {mode}")
    return selected
