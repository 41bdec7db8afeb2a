"""Tests for the partition/format/mount primitives."""

import unittest

from storage_pool.disk_prep import DiskPreparer, disk_of_device, make_label
from storage_pool.models import DiskRole

from fake_host import HostFixture


class TestHelpers(unittest.TestCase):

    def test_make_label_truncates_to_ext4_limit(self):
        self.assertEqual(make_label(DiskRole.DATA, 'sdb'), 'data_sdb')
        self.assertEqual(make_label(DiskRole.PARITY, 'nvme10n1'), 'parity_nvme10n1')
        self.assertEqual(len(make_label(DiskRole.PARITY, 'nvme10n12')), 16)

    def test_disk_of_device(self):
        cases = {
            '/dev/sda2': 'sda',
            '/dev/sda': 'sda',
            '/dev/nvme0n1p3': 'nvme0n1',
            '/dev/nvme0n1': 'nvme0n1',
            '/dev/mmcblk0p2': 'mmcblk0',
            '/dev/mmcblk0': 'mmcblk0',
            '/dev/sdb1[/@home]': 'sdb',
            'overlay': None,
            '': None,
        }
        for device, expected in cases.items():
            with self.subTest(device=device):
                self.assertEqual(disk_of_device(device), expected)


class TestDiskPreparer(unittest.TestCase):

    def setUp(self):
        self.fx = HostFixture()
        self.host = self.fx.host
        self.executor = self.fx.executor
        self.prep = DiskPreparer(self.executor)

    def tearDown(self):
        self.fx.cleanup()

    def test_create_partition_sequence(self):
        self.host.add_disk('sdb')

        success, device = self.prep.create_partition('sdb')

        self.assertTrue(success)
        self.assertEqual(device, '/dev/sdb1')
        self.assertEqual(self.executor.calls, [
            ['parted', '-s', '/dev/sdb', 'mklabel', 'gpt'],
            ['parted', '-s', '/dev/sdb', 'mkpart', 'primary', 'ext4', '0%', '100%'],
            ['partprobe', '/dev/sdb'],
            ['udevadm', 'settle'],
        ])

    def test_create_partition_nvme_naming(self):
        self.host.add_disk('nvme0n1')
        self.assertEqual(self.prep.create_partition('nvme0n1'), (True, '/dev/nvme0n1p1'))

    def test_create_partition_stops_on_failure(self):
        self.host.add_disk('sdb')
        self.host.fail.add('parted:gpt')

        success, message = self.prep.create_partition('sdb')

        self.assertFalse(success)
        self.assertIn('simulated failure', message)
        self.assertEqual(self.executor.binaries(), ['parted'])

    def test_udev_settle_failure_is_not_fatal(self):
        self.host.add_disk('sdb')
        self.host.fail.add('udevadm')
        self.assertTrue(self.prep.create_partition('sdb')[0])

    def test_format_and_resolve_uuid(self):
        self.host.add_disk('sdb', partitioned=True)
        self.assertIsNone(self.prep.resolve_uuid('/dev/sdb1'))

        success, _ = self.prep.format_partition('/dev/sdb1', 'data_sdb')

        self.assertTrue(success)
        self.assertEqual(self.executor.calls[-1], ['mkfs.ext4', '-F', '-L', 'data_sdb', '/dev/sdb1'])
        self.assertEqual(self.prep.resolve_uuid('/dev/sdb1'), self.host.uuid_of('sdb1'))

    def test_root_disk(self):
        self.assertEqual(self.prep.root_disk(), 'mmcblk0')
        self.host.root_source = '/dev/sda2'
        self.assertEqual(self.prep.root_disk(), 'sda')
        self.host.fail.add('findmnt')
        self.assertIsNone(self.prep.root_disk())

    def test_unmount_escalates_to_lazy(self):
        self.host.add_disk('sdb', fstype='ext4')
        target = self.fx.mp('disks', 'disk1')
        self.host.mount('/dev/sdb1', target)
        self.host.busy.add(target)

        self.assertTrue(self.prep.unmount_escalating(target))
        self.assertEqual(self.executor.calls, [['umount', target], ['umount', '-l', target]])
        self.assertIsNone(self.host.mounted_at(target))

    def test_unmount_escalation_can_fail(self):
        target = self.fx.mp('storage')
        self.host.mount('a:b', target, 'fuse.mergerfs')
        self.host.stuck.add(target)
        self.assertFalse(self.prep.unmount_escalating(target))

    def test_set_permissions(self):
        path = self.fx.mp('storage')
        self.assertEqual(self.prep.set_permissions(path, 'sambashare'), (True, ''))
        self.assertEqual(self.executor.calls, [
            ['chown', '-R', ':sambashare', path],
            ['chmod', '-R', '2775', path],
        ])

    def test_set_permissions_reports_failure(self):
        self.host.fail.add('chown')
        success, message = self.prep.set_permissions(self.fx.mp('storage'), 'sambashare')
        self.assertFalse(success)
        self.assertEqual(self.executor.binaries(), ['chown'])


if __name__ == '__main__':
    unittest.main()
