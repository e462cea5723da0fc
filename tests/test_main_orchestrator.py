#!/usr/bin/env python3
"""
Unit tests for the sync orchestrator.

The directory client and the group store are mocked; the synchronizer and the
reconciliation run for real.
"""

import os
import sys
import copy
import shutil
import tempfile
import unittest
from unittest.mock import Mock, MagicMock, patch

# Add the project directory to the path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from ldap_group_sync.config import ConfigurationError
from ldap_group_sync.ldap_client import LDAPConnectionError
from ldap_group_sync.main import (
    SyncOrchestrator,
    main,
    EXIT_SUCCESS,
    EXIT_SYNC_FAILURES,
    EXIT_CONFIGURATION_ERROR,
    EXIT_LDAP_CONNECTION_ERROR,
    EXIT_UNEXPECTED_ERROR,
    EXIT_STORE_ERROR,
)
from ldap_group_sync.stores.base import GroupStoreBase, GroupStoreError, GroupStoreAuthenticationError
from ldap_group_sync.stores.yaml_store import YamlGroupStore

ADMINS_DN = 'CN=Admins,OU=Groups,DC=example,DC=com'
STAFF_DN = 'CN=Staff,OU=Groups,DC=example,DC=com'

BASE_CONFIG = {
    'ldap': {
        'server_url': 'ldap://ldap.example.com',
        'base_dn': 'DC=example,DC=com',
        'group_search_type': 'groups',
        'group_field': None,
        'sync_field_group': None,
    },
    'groups': {
        'mode': 'import',
        'entities_id': 0,
        'is_recursive': True,
        'filter': '',
        'filter2': '',
        'order': 'DESC',
    },
    'error_handling': {
        'max_retries': 2,
        'retry_wait_seconds': 0,
        'max_errors': 10,
    },
    'logging': {},
    'store': {'module': 'yaml_store', 'path': 'groups.yaml'},
}


class TestSyncOrchestrator(unittest.TestCase):
    """Test cases for SyncOrchestrator.run."""

    def setUp(self):
        self.config = copy.deepcopy(BASE_CONFIG)

        patchers = [
            patch('ldap_group_sync.main.load_config', side_effect=lambda path: self.config),
            patch('ldap_group_sync.main.setup_logging'),
            patch('ldap_group_sync.main.LDAPClient'),
            patch('ldap_group_sync.retry.time.sleep'),
        ]
        mocks = [p.start() for p in patchers]
        for p in patchers:
            self.addCleanup(p.stop)
        self.mock_load_config, _, self.mock_ldap_class, self.mock_sleep = mocks

        self.ldap_client = self.mock_ldap_class.return_value
        self.ldap_client.connect.return_value = True
        self.ldap_client.get_all_groups.return_value = ([
            {'dn': ADMINS_DN, 'cn': ['Admins'], 'search_type': 'groups'},
            {'dn': STAFF_DN, 'cn': ['Staff'], 'search_type': 'groups'},
        ], False)

        self.store = Mock(spec=GroupStoreBase)
        self.store.name = 'MockStore'
        self.store.authenticate.return_value = True
        self.store.get_known_groups.return_value = [
            {'id': 1, 'ldap_group_dn': ADMINS_DN, 'ldap_value': None},
        ]
        self.store.find_by_sync_field.return_value = None
        self.store.find_by_dn.return_value = None
        self.store.add_group.return_value = 12

        store_patcher = patch.object(SyncOrchestrator, '_load_store_module', return_value=self.store)
        self.mock_load_store = store_patcher.start()
        self.addCleanup(store_patcher.stop)

    def test_import_new_groups(self):
        orchestrator = SyncOrchestrator()

        self.assertEqual(orchestrator.run(), EXIT_SUCCESS)

        self.assertEqual(orchestrator.sync_stats['groups_found'], 1)
        self.assertEqual(orchestrator.sync_stats['groups_added'], 1)
        self.assertEqual(orchestrator.sync_stats['groups_failed'], 0)
        self.assertEqual(self.store.add_group.call_args[0][0]['ldap_group_dn'], STAFF_DN)
        self.ldap_client.disconnect.assert_called_once()
        self.store.close.assert_called_once()

    def test_synchronize_override(self):
        self.store.find_by_dn.return_value = {'id': 1, 'name': 'Admins'}
        self.store.update_group.return_value = True
        orchestrator = SyncOrchestrator(mode='synchronize', entities_id=4, filter='(cn=A*)')

        self.assertEqual(orchestrator.run(), EXIT_SUCCESS)

        self.ldap_client.get_all_groups.assert_called_once_with('(cn=A*)', '', 'DESC')
        self.store.get_known_groups.assert_called_once_with(4, True)
        self.store.update_group.assert_called_once()
        self.assertEqual(self.store.update_group.call_args[0][0], 1)
        self.assertEqual(orchestrator.sync_stats['groups_updated'], 1)
        self.assertEqual(orchestrator.sync_stats['mode'], 'synchronize')
        self.store.add_group.assert_not_called()

    def test_dry_run_writes_nothing(self):
        orchestrator = SyncOrchestrator(dry_run=True)

        self.assertEqual(orchestrator.run(), EXIT_SUCCESS)

        self.store.add_group.assert_not_called()
        self.assertEqual([row.dn for row in orchestrator.selected_groups], [STAFF_DN])

    def test_nothing_to_import(self):
        self.ldap_client.get_all_groups.return_value = ([], True)
        orchestrator = SyncOrchestrator()

        self.assertEqual(orchestrator.run(), EXIT_SUCCESS)
        self.assertTrue(orchestrator.sync_stats['limit_exceeded'])
        self.assertEqual(orchestrator.sync_stats['groups_found'], 0)

    def test_configuration_error(self):
        self.mock_load_config.side_effect = ConfigurationError("Missing required LDAP field: base_dn")
        self.assertEqual(SyncOrchestrator().run(), EXIT_CONFIGURATION_ERROR)
        self.mock_ldap_class.assert_not_called()

    def test_invalid_mode(self):
        self.assertEqual(SyncOrchestrator(mode='merge').run(), EXIT_CONFIGURATION_ERROR)

    def test_ldap_connection_error(self):
        self.ldap_client.connect.side_effect = LDAPConnectionError("Failed to connect to LDAP after 3 attempts")

        orchestrator = SyncOrchestrator()
        self.assertEqual(orchestrator.run(), EXIT_LDAP_CONNECTION_ERROR)
        self.assertIsNone(orchestrator.ldap_client)
        self.mock_load_store.assert_not_called()

    def test_store_error(self):
        self.store.authenticate.side_effect = GroupStoreError("Cannot read groups.yaml")
        self.assertEqual(SyncOrchestrator().run(), EXIT_STORE_ERROR)

    def test_store_refuses_authentication(self):
        self.store.authenticate.return_value = False
        self.assertEqual(SyncOrchestrator().run(), EXIT_STORE_ERROR)

    def test_authentication_lost_during_sync(self):
        self.store.add_group.side_effect = GroupStoreAuthenticationError("Session expired", 401)
        self.assertEqual(SyncOrchestrator().run(), EXIT_STORE_ERROR)
        self.store.add_group.assert_called_once()

    def test_group_failure(self):
        self.store.add_group.side_effect = GroupStoreError("HTTP 400 Bad Request", 400)

        orchestrator = SyncOrchestrator()
        self.assertEqual(orchestrator.run(), EXIT_SYNC_FAILURES)
        self.assertEqual(orchestrator.sync_stats['groups_failed'], 1)
        self.store.add_group.assert_called_once()

    def test_group_without_id_counts_as_failure(self):
        self.store.add_group.return_value = 0

        orchestrator = SyncOrchestrator()
        self.assertEqual(orchestrator.run(), EXIT_SYNC_FAILURES)
        self.assertEqual(orchestrator.sync_stats['groups_failed'], 1)

    def test_transient_store_error_is_retried(self):
        self.store.add_group.side_effect = [GroupStoreError("HTTP 503 Service Unavailable", 503), 12]

        orchestrator = SyncOrchestrator()
        self.assertEqual(orchestrator.run(), EXIT_SUCCESS)
        self.assertEqual(self.store.add_group.call_count, 2)
        self.assertEqual(orchestrator.sync_stats['groups_added'], 1)
        self.mock_sleep.assert_called_once_with(0)

    def test_retries_exhausted(self):
        self.store.add_group.side_effect = GroupStoreError("HTTP 503 Service Unavailable", 503)

        orchestrator = SyncOrchestrator()
        self.assertEqual(orchestrator.run(), EXIT_SYNC_FAILURES)
        # max_retries=2 plus the first attempt
        self.assertEqual(self.store.add_group.call_count, 3)
        self.assertEqual(orchestrator.sync_stats['groups_failed'], 1)

    def test_abort_after_max_errors(self):
        self.config['error_handling']['max_errors'] = 1
        self.ldap_client.get_all_groups.return_value = ([
            {'dn': 'CN=One,DC=example,DC=com', 'cn': ['One'], 'search_type': 'groups'},
            {'dn': 'CN=Two,DC=example,DC=com', 'cn': ['Two'], 'search_type': 'groups'},
        ], False)
        self.store.add_group.side_effect = GroupStoreError("HTTP 400 Bad Request", 400)

        self.assertEqual(SyncOrchestrator().run(), EXIT_SYNC_FAILURES)
        self.store.add_group.assert_called_once()
        self.store.close.assert_called_once()

    def test_abort_after_max_writes_without_id(self):
        self.config['error_handling']['max_errors'] = 1
        self.ldap_client.get_all_groups.return_value = ([
            {'dn': 'CN=One,DC=example,DC=com', 'cn': ['One'], 'search_type': 'groups'},
            {'dn': 'CN=Two,DC=example,DC=com', 'cn': ['Two'], 'search_type': 'groups'},
            {'dn': 'CN=Three,DC=example,DC=com', 'cn': ['Three'], 'search_type': 'groups'},
        ], False)
        self.store.add_group.return_value = 0

        orchestrator = SyncOrchestrator()
        self.assertEqual(orchestrator.run(), EXIT_SYNC_FAILURES)
        self.store.add_group.assert_called_once()
        self.assertEqual(orchestrator.sync_stats['groups_failed'], 1)

    def test_abort_after_max_failed_updates(self):
        self.config['error_handling']['max_errors'] = 2
        self.store.find_by_dn.return_value = {'id': 1, 'name': 'Admins'}
        self.store.update_group.return_value = False
        self.ldap_client.get_all_groups.return_value = ([
            {'dn': 'CN=One,DC=example,DC=com', 'cn': ['One'], 'search_type': 'groups'},
            {'dn': 'CN=Two,DC=example,DC=com', 'cn': ['Two'], 'search_type': 'groups'},
            {'dn': 'CN=Three,DC=example,DC=com', 'cn': ['Three'], 'search_type': 'groups'},
        ], False)

        orchestrator = SyncOrchestrator()
        self.assertEqual(orchestrator.run(), EXIT_SYNC_FAILURES)
        self.assertEqual(self.store.update_group.call_count, 2)
        self.assertEqual(orchestrator.sync_stats['groups_failed'], 2)

    def test_unexpected_error(self):
        self.ldap_client.get_all_groups.side_effect = RuntimeError("boom")
        self.assertEqual(SyncOrchestrator().run(), EXIT_UNEXPECTED_ERROR)
        self.ldap_client.disconnect.assert_called_once()


class TestStoreLoading(unittest.TestCase):
    """Test cases for store module loading."""

    def setUp(self):
        self.temp_dir = tempfile.mkdtemp(prefix='ldap_group_sync_main_')

    def tearDown(self):
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def test_load_yaml_store(self):
        store = SyncOrchestrator()._load_store_module({
            'module': 'yaml_store',
            'path': os.path.join(self.temp_dir, 'groups.yaml'),
        })
        self.assertIsInstance(store, YamlGroupStore)

    def test_unknown_module(self):
        with self.assertRaises(ConfigurationError):
            SyncOrchestrator()._load_store_module({'module': 'no_such_store'})

    def test_module_without_store_class(self):
        with self.assertRaises(ConfigurationError):
            SyncOrchestrator()._load_store_module({'module': 'base'})


class TestHealthCheck(unittest.TestCase):
    """Test cases for SyncOrchestrator.health_check."""

    def setUp(self):
        self.config = copy.deepcopy(BASE_CONFIG)
        patchers = [
            patch('ldap_group_sync.main.load_config', side_effect=lambda path: self.config),
            patch('ldap_group_sync.main.LDAPClient'),
            patch.object(SyncOrchestrator, '_load_store_module', return_value=MagicMock()),
        ]
        mocks = [p.start() for p in patchers]
        for p in patchers:
            self.addCleanup(p.stop)
        self.mock_load_config, self.mock_ldap_class, self.mock_load_store = mocks

    def test_healthy(self):
        health = SyncOrchestrator().health_check()

        self.assertEqual(health['status'], 'healthy')
        self.assertEqual(set(health['checks']), {'configuration', 'ldap', 'store'})
        self.mock_ldap_class.return_value.disconnect.assert_called_once()
        self.mock_load_store.return_value.authenticate.assert_called_once()

    def test_ldap_unreachable(self):
        self.mock_ldap_class.return_value.connect.side_effect = LDAPConnectionError("refused")

        health = SyncOrchestrator().health_check()

        self.assertEqual(health['status'], 'unhealthy')
        self.assertEqual(health['checks']['ldap']['status'], 'fail')
        self.assertEqual(health['checks']['store']['status'], 'pass')

    def test_store_unavailable(self):
        self.mock_load_store.return_value.authenticate.side_effect = GroupStoreError("HTTP 500", 500)

        health = SyncOrchestrator().health_check()

        self.assertEqual(health['status'], 'unhealthy')
        self.assertEqual(health['checks']['store']['status'], 'fail')

    def test_bad_configuration_stops_early(self):
        self.mock_load_config.side_effect = ConfigurationError("Invalid YAML")

        health = SyncOrchestrator().health_check()

        self.assertEqual(health['status'], 'unhealthy')
        self.assertEqual(list(health['checks']), ['configuration'])
        self.mock_ldap_class.assert_not_called()


class TestMain(unittest.TestCase):
    """Test cases for the command line entry point."""

    @patch('builtins.print')
    @patch('ldap_group_sync.main.SyncOrchestrator')
    def test_arguments_passed_to_orchestrator(self, mock_orchestrator_class, mock_print):
        orchestrator = mock_orchestrator_class.return_value
        orchestrator.run.return_value = EXIT_SUCCESS
        orchestrator.selected_groups = []

        argv = ['ldap-group-sync', '--config', 'sync.yaml', '--mode', 'synchronize',
                '--entity', '3', '--filter2', '(uid=j*)', '--dry-run']
        with patch.object(sys, 'argv', argv):
            with self.assertRaises(SystemExit) as context:
                main()

        self.assertEqual(context.exception.code, EXIT_SUCCESS)
        mock_orchestrator_class.assert_called_once_with(
            config_path='sync.yaml',
            mode='synchronize',
            entities_id=3,
            filter=None,
            filter2='(uid=j*)',
            dry_run=True,
        )
        mock_print.assert_called_once_with('[]')

    @patch('builtins.print')
    @patch('ldap_group_sync.main.SyncOrchestrator')
    def test_health_check_exit_code(self, mock_orchestrator_class, mock_print):
        mock_orchestrator_class.return_value.health_check.return_value = {'status': 'unhealthy', 'checks': {}}

        with patch.object(sys, 'argv', ['ldap-group-sync', '--health-check']):
            with self.assertRaises(SystemExit) as context:
                main()

        self.assertEqual(context.exception.code, 1)
        mock_orchestrator_class.return_value.run.assert_not_called()


if __name__ == '__main__':
    unittest.main()
