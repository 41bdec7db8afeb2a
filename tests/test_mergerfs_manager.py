"""Tests for MergerFS union mount management."""

import unittest
from unittest.mock import patch

from storage_pool.errors import CommandFailedError, FilesInUseError
from storage_pool.mergerfs_manager import MergerFSManager, order_branches, union_branches
from storage_pool.models import DiskRole, OperationLog, PoolDiskEntry, StepOutcome

from fake_host import HostFixture


class TestBranchOrdering(unittest.TestCase):

    def test_cache_branches_move_to_front_stably(self):
        roles = {
            '/mnt/disks/disk1': DiskRole.DATA,
            '/mnt/disks/disk2': DiskRole.DATA,
            '/mnt/disks/fast': DiskRole.CACHE,
        }
        ordered = order_branches(['/mnt/disks/disk1', '/mnt/disks/fast', '/mnt/disks/disk2'], roles)
        self.assertEqual(ordered, ['/mnt/disks/fast', '/mnt/disks/disk1', '/mnt/disks/disk2'])

    def test_unknown_branches_classified_by_name(self):
        ordered = order_branches(['/mnt/disks/disk1', '/mnt/disks/cache1/'], {})
        self.assertEqual(ordered, ['/mnt/disks/cache1/', '/mnt/disks/disk1'])

    def test_duplicates_dropped(self):
        self.assertEqual(order_branches(['/a', '/a', '/b'], {}), ['/a', '/b'])

    def test_union_branches_exclude_parity(self):
        entries = [
            PoolDiskEntry('sdb', DiskRole.DATA, '/mnt/disks/disk1'),
            PoolDiskEntry('sda', DiskRole.PARITY, '/mnt/parity1'),
            PoolDiskEntry('nvme0n1', DiskRole.CACHE, '/mnt/disks/cache1'),
        ]
        self.assertEqual(union_branches(entries), ['/mnt/disks/cache1', '/mnt/disks/disk1'])


class TestMergerFSManager(unittest.TestCase):

    def setUp(self):
        self.fx = HostFixture()
        self.host = self.fx.host
        self.pool = self.fx.settings.pool_mount_point
        self.manager = MergerFSManager(self.fx.executor, self.fx.mount_table, self.pool)
        self.disk1 = self.fx.mp('disks', 'disk1')
        self.disk2 = self.fx.mp('disks', 'disk2')
        self.cache1 = self.fx.mp('disks', 'cache1')

    def tearDown(self):
        self.fx.cleanup()

    def test_options_without_cache(self):
        options = self.manager.build_options(has_cache=False).split(',')
        self.assertEqual(options[:6], ['defaults', 'allow_other', 'nonempty', 'use_ino',
                                       'cache.files=partial', 'dropcacheonclose=true'])
        self.assertIn('category.create=mfs', options)
        self.assertIn('moveonenospc=true', options)
        self.assertFalse(any(o.startswith('minfreespace=') for o in options))

    def test_options_with_cache(self):
        options = self.manager.build_options(has_cache=True).split(',')
        self.assertIn('category.create=lfs', options)
        self.assertIn('moveonenospc=true', options)
        self.assertIn('minfreespace=200G', options)

    def test_topology_when_not_mounted(self):
        topology = self.manager.get_topology()
        self.assertFalse(topology.mounted)
        self.assertEqual(topology.branches, [])
        self.assertIsNone(topology.create_policy)

    def test_topology_ignores_other_filesystems(self):
        self.host.mount('/dev/sdb1', self.pool)
        self.assertFalse(self.manager.get_topology().mounted)

    def test_topology_from_mount_table(self):
        self.host.mount(f'{self.cache1}:{self.disk1}', self.pool, 'fuse.mergerfs',
                        'rw,category.create=lfs')

        topology = self.manager.get_topology()

        self.assertTrue(topology.mounted)
        self.assertEqual(topology.branches, [self.cache1, self.disk1])
        self.assertEqual(topology.create_policy, 'lfs')

    def test_topology_prefers_control_file(self):
        self.host.mount('disk1:disk2', self.pool, 'fuse.mergerfs', 'rw,allow_other')
        attrs = {
            'user.mergerfs.branches': f'{self.disk1}=RW:{self.disk2}=RW'.encode(),
            'user.mergerfs.category.create': b'mfs',
        }

        with patch('storage_pool.mergerfs_manager.os.getxattr',
                   side_effect=lambda path, name: attrs[name]):
            topology = self.manager.get_topology()

        self.assertEqual(topology.branches, [self.disk1, self.disk2])
        self.assertEqual(topology.create_policy, 'mfs')

    def test_mount(self):
        log = OperationLog()

        options = self.manager.mount([self.cache1, self.disk1], True, log)

        self.assertIn('category.create=lfs', options)
        self.assertEqual(self.fx.executor.calls[-1],
                         ['mergerfs', '-o', options, f'{self.cache1}:{self.disk1}', self.pool])
        self.assertEqual(self.manager.get_topology().branches, [self.cache1, self.disk1])
        self.assertEqual(len(log.rollback), 1)

    def test_mount_without_branches(self):
        with self.assertRaises(CommandFailedError):
            self.manager.mount([], False, OperationLog())
        self.assertEqual(self.fx.executor.calls, [])

    def test_mount_failure(self):
        self.host.fail.add('mergerfs')
        log = OperationLog()
        with self.assertRaises(CommandFailedError) as ctx:
            self.manager.mount([self.disk1], False, log)
        self.assertIn('MergerFS mount failed', ctx.exception.detail)
        self.assertEqual(log.steps[-1].outcome, StepOutcome.FATAL)

    def test_unmount_skips_when_not_mounted(self):
        log = OperationLog()
        self.assertFalse(self.manager.unmount(log))
        self.assertEqual(log.steps[0].outcome, StepOutcome.SKIPPED)
        self.assertEqual(self.fx.executor.calls, [])

    def test_unmount_busy_pool_strict(self):
        self.host.mount(self.disk1, self.pool, 'fuse.mergerfs', 'rw')
        self.host.stuck.add(self.pool)

        with self.assertRaises(FilesInUseError) as ctx:
            self.manager.unmount(OperationLog(), strict=True)
        self.assertEqual(ctx.exception.detail, "Cannot unmount pool. Files may be in use")

    def test_unmount_busy_pool_lenient(self):
        self.host.mount(self.disk1, self.pool, 'fuse.mergerfs', 'rw')
        self.host.stuck.add(self.pool)
        log = OperationLog()

        self.assertFalse(self.manager.unmount(log, strict=False))
        self.assertEqual(log.steps[-1].outcome, StepOutcome.WARNING)

    def test_remount_replaces_branches(self):
        self.host.mount(self.disk1, self.pool, 'fuse.mergerfs', 'rw,category.create=mfs')

        self.manager.remount([self.disk1, self.disk2], False, OperationLog())

        self.assertEqual(self.manager.get_topology().branches, [self.disk1, self.disk2])
        self.assertEqual(self.fx.executor.binaries(), ['umount', 'mkdir', 'mergerfs'])


if __name__ == '__main__':
    unittest.main()
