"""
Main orchestrator for LDAP Group Sync.

Connects to the directory and to the group store, selects the directory
groups to import (or synchronize) for the working entity and writes them to
the store.
"""

import sys
import json
import inspect
import logging
import argparse
import importlib
from datetime import datetime
from typing import Dict, Any, List, Optional

from ldap_group_sync.config import load_config, ConfigurationError, GROUP_MODES
from ldap_group_sync.ldap_client import LDAPClient, LDAPConnectionError, LDAPQueryError
from ldap_group_sync.logging_setup import setup_logging, audit_logger
from ldap_group_sync.retry import (
    retry_call,
    retry_settings,
    is_retryable_error,
    create_retry_callback,
    RetryableError,
    MaxRetriesExceeded,
)
from ldap_group_sync.stores.base import GroupStoreBase, GroupStoreError, GroupStoreAuthenticationError
from ldap_group_sync.synchronizer import GroupsSynchronizer

logger = logging.getLogger(__name__)

EXIT_SUCCESS = 0
EXIT_SYNC_FAILURES = 1
EXIT_CONFIGURATION_ERROR = 2
EXIT_LDAP_CONNECTION_ERROR = 3
EXIT_UNEXPECTED_ERROR = 4
EXIT_STORE_ERROR = 5


class SyncError(Exception):
    """Base exception for sync errors."""
    pass


class SyncOrchestrator:
    """
    Runs one group synchronization.

    Command line values (mode, entity, filters) override the ``groups``
    section of the configuration.
    """

    def __init__(self, config_path: Optional[str] = None, mode: Optional[str] = None,
                 entities_id: Optional[int] = None, filter: Optional[str] = None,
                 filter2: Optional[str] = None, dry_run: bool = False):
        self.config = None
        self.config_path = config_path
        self.ldap_client = None
        self.store = None
        self.synchronizer = None
        self.dry_run = dry_run
        self.selected_groups = []

        self.overrides = {
            key: value for key, value in (
                ('mode', mode), ('entities_id', entities_id),
                ('filter', filter), ('filter2', filter2),
            ) if value is not None
        }

        self.sync_stats = {
            'mode': None,
            'entities_id': None,
            'groups_found': 0,
            'groups_added': 0,
            'groups_updated': 0,
            'groups_failed': 0,
            'limit_exceeded': False,
            'start_time': None,
            'end_time': None,
            'runtime_seconds': 0,
        }

    def run(self) -> int:
        """
        Run the complete synchronization process.

        Returns:
            Exit code (0 for success, non-zero for failure)
        """
        try:
            self.sync_stats['start_time'] = datetime.now()

            self._load_configuration()
            setup_logging(self.config.get('logging', {}))

            logger.info("Starting LDAP Group Sync")

            self._connect_ldap()
            self._open_store()
            self.synchronizer = GroupsSynchronizer(self.ldap_client, self.store, self.config['ldap'])

            self._sync_groups()

            self.sync_stats['end_time'] = datetime.now()
            self.sync_stats['runtime_seconds'] = (
                self.sync_stats['end_time'] - self.sync_stats['start_time']
            ).total_seconds()
            self._log_sync_summary()

            if self.sync_stats['groups_failed'] > 0:
                logger.warning(f"Sync completed with {self.sync_stats['groups_failed']} group failures")
                return EXIT_SYNC_FAILURES
            logger.info("Sync completed successfully")
            return EXIT_SUCCESS

        except ConfigurationError as e:
            logger.error(f"Configuration error: {e}")
            return EXIT_CONFIGURATION_ERROR
        except LDAPConnectionError as e:
            logger.error(f"LDAP connection error: {e}")
            return EXIT_LDAP_CONNECTION_ERROR
        except GroupStoreError as e:
            logger.error(f"Group store error: {e}")
            return EXIT_STORE_ERROR
        except (LDAPQueryError, SyncError) as e:
            logger.error(f"Sync failed: {e}")
            return EXIT_SYNC_FAILURES
        except Exception as e:
            logger.error(f"Unexpected error: {e}", exc_info=True)
            return EXIT_UNEXPECTED_ERROR
        finally:
            self._cleanup()

    def _load_configuration(self):
        """Load and validate configuration, then apply command line overrides."""
        try:
            self.config = load_config(self.config_path)
        except ConfigurationError:
            raise
        except Exception as e:
            raise ConfigurationError(f"Failed to load configuration: {e}") from e

        groups_config = self.config.setdefault('groups', {})
        groups_config.update(self.overrides)
        if groups_config.get('mode') not in GROUP_MODES:
            raise ConfigurationError(f"Invalid mode '{groups_config.get('mode')}'")

        audit_logger.log_configuration_access(self.config_path or 'config.yaml')

    def _connect_ldap(self):
        ldap_config = self.config['ldap']
        error_config = self.config.get('error_handling', {})

        self.ldap_client = LDAPClient(ldap_config)
        try:
            self.ldap_client.connect(
                max_retries=error_config.get('max_retries', 3),
                retry_wait=error_config.get('retry_wait_seconds', 5)
            )
        except LDAPConnectionError:
            self.ldap_client = None
            raise

    def _open_store(self):
        self.store = self._load_store_module(self.config['store'])
        if not self.store.authenticate():
            raise GroupStoreAuthenticationError(f"Authentication failed for group store {self.store.name}")

    def _load_store_module(self, store_config: Dict[str, Any]) -> GroupStoreBase:
        """Import the configured store module and instantiate its store class."""
        module_name = store_config['module']
        full_module_name = f"ldap_group_sync.stores.{module_name}"

        try:
            store_module = importlib.import_module(full_module_name)
        except ImportError as e:
            raise ConfigurationError(f"Failed to import store module {module_name}: {e}") from e

        store_class = None
        for attr_name in dir(store_module):
            attr = getattr(store_module, attr_name)
            if (isinstance(attr, type) and
                    issubclass(attr, GroupStoreBase) and
                    not inspect.isabstract(attr)):
                store_class = attr
                break

        if not store_class:
            raise ConfigurationError(f"No GroupStoreBase subclass found in module {module_name}")

        return store_class(store_config)

    def _sync_groups(self):
        groups_config = self.config['groups']
        import_mode = groups_config['mode'] == 'import'
        entities_id = groups_config['entities_id']
        is_recursive = groups_config.get('is_recursive', True)

        self.sync_stats['mode'] = groups_config['mode']
        self.sync_stats['entities_id'] = entities_id

        rows, limit_exceeded = self.synchronizer.get_groups(
            entities_id,
            filter=groups_config.get('filter', ''),
            filter2=groups_config.get('filter2', ''),
            import_mode=import_mode,
            order=groups_config.get('order', 'DESC'),
            is_recursive=is_recursive,
        )
        rows = rows or []
        self.selected_groups = rows
        self.sync_stats['groups_found'] = len(rows)
        self.sync_stats['limit_exceeded'] = limit_exceeded

        if self.dry_run:
            for row in rows:
                logger.info(f"Would {groups_config['mode']} group {row.dn}")
            return

        options = {'entities_id': entities_id, 'is_recursive': is_recursive}
        max_errors = self.config.get('error_handling', {}).get('max_errors', 10)

        for row in rows:
            try:
                action, group_id = self._import_with_retry(row, options)
            except GroupStoreAuthenticationError:
                raise
            except (GroupStoreError, MaxRetriesExceeded) as e:
                logger.error(f"Error importing group {row.dn}: {e}")
                self._record_failure(max_errors)
                continue

            if group_id:
                self.sync_stats[f'groups_{action}'] += 1
                logger.info(f"Group {row.dn} {action} (id {group_id})")
            else:
                logger.error(f"Group {row.dn} could not be {action}")
                self._record_failure(max_errors)

    def _record_failure(self, max_errors: int):
        """Count a group failure; abort the run once max_errors is reached."""
        self.sync_stats['groups_failed'] += 1
        if self.sync_stats['groups_failed'] >= max_errors:
            raise SyncError(f"Aborting after {self.sync_stats['groups_failed']} group failures")

    def _import_with_retry(self, row, options: Dict[str, Any]):
        """Import one group, retrying transient store failures."""
        def attempt():
            try:
                return self.synchronizer.import_group(row, options)
            except GroupStoreAuthenticationError:
                raise
            except GroupStoreError as e:
                if is_retryable_error(e):
                    raise RetryableError(str(e)) from e
                raise

        try:
            return retry_call(
                attempt,
                exceptions=(RetryableError,),
                on_retry=create_retry_callback(f"Import of group {row.dn}"),
                **retry_settings(self.config.get('error_handling', {}))
            )
        except MaxRetriesExceeded as e:
            logger.warning(f"Retryable error after {e.attempts} attempts: {e.last_exception}")
            raise

    def _log_sync_summary(self):
        stats = self.sync_stats

        runtime_str = f"{stats['runtime_seconds']:.2f} seconds"
        if stats['runtime_seconds'] > 60:
            minutes = int(stats['runtime_seconds'] // 60)
            seconds = stats['runtime_seconds'] % 60
            runtime_str = f"{minutes}m {seconds:.1f}s"

        logger.info("=== Sync Summary ===")
        logger.info(f"Total runtime: {runtime_str}")
        logger.info(f"Mode: {stats['mode']} (entity {stats['entities_id']})")
        logger.info(f"Groups selected: {stats['groups_found']}")
        logger.info(f"Groups added: {stats['groups_added']}")
        logger.info(f"Groups updated: {stats['groups_updated']}")
        logger.info(f"Groups failed: {stats['groups_failed']}")
        if stats['limit_exceeded']:
            logger.warning("Directory size limit exceeded: some groups were not listed")

    def health_check(self) -> Dict[str, Any]:
        """
        Check configuration, directory connectivity and group store access.

        Returns:
            Dictionary containing health status and details
        """
        health_status = {
            'status': 'healthy',
            'timestamp': datetime.now().isoformat(),
            'checks': {}
        }

        try:
            self._load_configuration()
            health_status['checks']['configuration'] = {
                'status': 'pass',
                'message': 'Configuration loaded successfully'
            }
        except ConfigurationError as e:
            health_status['checks']['configuration'] = {
                'status': 'fail',
                'message': f'Configuration error: {e}'
            }
            health_status['status'] = 'unhealthy'
            return health_status

        try:
            test_client = LDAPClient(self.config['ldap'])
            test_client.connect(max_retries=0)
            test_client.disconnect()
            health_status['checks']['ldap'] = {
                'status': 'pass',
                'message': 'LDAP connection successful'
            }
        except LDAPConnectionError as e:
            health_status['checks']['ldap'] = {
                'status': 'fail',
                'message': f'LDAP connection failed: {e}'
            }
            health_status['status'] = 'unhealthy'

        try:
            store = self._load_store_module(self.config['store'])
            with store:
                store.authenticate()
            health_status['checks']['store'] = {
                'status': 'pass',
                'message': f'Group store {store.name} available'
            }
        except (ConfigurationError, GroupStoreError) as e:
            health_status['checks']['store'] = {
                'status': 'fail',
                'message': f'Group store unavailable: {e}'
            }
            health_status['status'] = 'unhealthy'

        return health_status

    def _cleanup(self):
        if self.ldap_client:
            self.ldap_client.disconnect()
        if self.store:
            try:
                self.store.close()
            except GroupStoreError as e:
                logger.warning(f"Error closing group store: {e}")


def _selected_groups_as_dicts(rows: List[Any]) -> List[Dict[str, Any]]:
    return [row.to_dict() for row in rows]


def main():
    """Main entry point for the application."""
    parser = argparse.ArgumentParser(description='LDAP Group Sync')
    parser.add_argument('--config', '-c', help='Path to configuration file')
    parser.add_argument('--mode', choices=GROUP_MODES,
                        help='import new groups or synchronize known ones')
    parser.add_argument('--entity', type=int, dest='entities_id', help='Working entity ID')
    parser.add_argument('--filter', help='LDAP filter for the group entry search')
    parser.add_argument('--filter2', help='LDAP filter for the user entry search')
    parser.add_argument('--dry-run', action='store_true',
                        help='List the selected groups without writing them')
    parser.add_argument('--health-check', action='store_true',
                        help='Perform health check instead of sync')

    args = parser.parse_args()

    orchestrator = SyncOrchestrator(
        config_path=args.config,
        mode=args.mode,
        entities_id=args.entities_id,
        filter=args.filter,
        filter2=args.filter2,
        dry_run=args.dry_run,
    )

    if args.health_check:
        health_status = orchestrator.health_check()
        print(json.dumps(health_status, indent=2))
        sys.exit(0 if health_status['status'] == 'healthy' else 1)

    exit_code = orchestrator.run()
    if args.dry_run and exit_code == EXIT_SUCCESS:
        print(json.dumps(_selected_groups_as_dicts(orchestrator.selected_groups), indent=2))
    sys.exit(exit_code)


if __name__ == "__main__":
    main()
