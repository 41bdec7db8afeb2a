"""Tests for ConfigManager."""

import json
import os
import shutil
import tempfile
import unittest
from unittest.mock import patch

from storage_pool.config_manager import ConfigManager, PoolSettings


class TestConfigManager(unittest.TestCase):

    def setUp(self):
        self.temp_dir = tempfile.mkdtemp()
        self.config_file = os.path.join(self.temp_dir, 'storage_pool.json')

    def tearDown(self):
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def _write(self, data):
        with open(self.config_file, 'w') as f:
            json.dump(data, f)

    @patch.dict(os.environ, {}, clear=True)
    def test_defaults(self):
        config = ConfigManager().load_config()

        self.assertEqual(config.mount_base, '/mnt/disks')
        self.assertEqual(config.pool_mount_point, '/mnt/storage')
        self.assertEqual(config.snapraid_config_path, '/etc/snapraid.conf')
        self.assertEqual(config.cache_min_free_space, '200G')
        self.assertTrue(config.use_sudo)

    @patch.dict(os.environ, {}, clear=True)
    def test_config_file_overrides_defaults(self):
        self._write({'pool_mount_point': '/srv/pool', 'samba_group': 'users'})

        config = ConfigManager(self.config_file).load_config()

        self.assertEqual(config.pool_mount_point, '/srv/pool')
        self.assertEqual(config.samba_group, 'users')
        self.assertEqual(config.mount_base, '/mnt/disks')

    @patch.dict(os.environ, {}, clear=True)
    def test_unknown_file_keys_ignored(self):
        self._write({'pool_mount_point': '/srv/pool', 'docker_socket': '/var/run/docker.sock'})

        with self.assertLogs('storage_pool.config_manager', level='WARNING'):
            config = ConfigManager(self.config_file).load_config()

        self.assertEqual(config.pool_mount_point, '/srv/pool')

    @patch.dict(os.environ, {}, clear=True)
    def test_unreadable_file_falls_back_to_defaults(self):
        with open(self.config_file, 'w') as f:
            f.write('{not json')

        config = ConfigManager(self.config_file).load_config()

        self.assertEqual(config, PoolSettings())

    @patch.dict(os.environ, {
        'POOL_MOUNT_POINT': '/srv/env-pool',
        'OPERATION_WAIT_TIMEOUT': '30',
        'USE_SUDO': 'false',
    }, clear=True)
    def test_environment_overrides_file(self):
        self._write({'pool_mount_point': '/srv/pool', 'operation_wait_timeout': 900})

        config = ConfigManager(self.config_file).load_config()

        self.assertEqual(config.pool_mount_point, '/srv/env-pool')
        self.assertEqual(config.operation_wait_timeout, 30)
        self.assertFalse(config.use_sudo)

    @patch.dict(os.environ, {'MAX_COMMAND_TIMEOUT': 'soon'}, clear=True)
    def test_invalid_integer_uses_default(self):
        config = ConfigManager().load_config()
        self.assertEqual(config.max_command_timeout, 300)

    @patch.dict(os.environ, {}, clear=True)
    def test_load_is_cached_until_reload(self):
        manager = ConfigManager(self.config_file)
        first = manager.load_config()
        self._write({'samba_group': 'media'})

        self.assertIs(manager.load_config(), first)
        self.assertEqual(manager.reload_config().samba_group, 'media')

    @patch.dict(os.environ, {}, clear=True)
    def test_validation(self):
        cases = [
            {'operation_wait_timeout': 0},
            {'log_level': 'CHATTY'},
            {'mount_base': 'mnt/disks'},
            {'mount_base': '/mnt/disks', 'pool_mount_point': '/mnt/disks/pool'},
        ]
        for data in cases:
            with self.subTest(data=data):
                self._write(data)
                with self.assertRaises(ValueError):
                    ConfigManager(self.config_file).load_config()


if __name__ == '__main__':
    unittest.main()
