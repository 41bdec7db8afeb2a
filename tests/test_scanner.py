"""Tests for the disk inventory scanner."""

import unittest

from storage_pool.errors import DeviceNotFoundError, ScanFailedError
from storage_pool.models import DiskRole, PoolDiskEntry
from storage_pool.scanner import DiskScanner, find_disk
from storage_pool.state_store import IGNORED_DISKS

from fake_host import HostFixture


class TestDiskScanner(unittest.TestCase):

    def setUp(self):
        self.fx = HostFixture()
        self.host = self.fx.host
        self.scanner = DiskScanner(self.fx.executor, self.fx.state, self.fx.settings.mount_base)

    def tearDown(self):
        self.fx.cleanup()

    def _ids(self, disks):
        return [d.id for d in disks]

    def test_filters_boot_media_virtual_and_small_devices(self):
        self.host.add_disk('mmcblk0', size_gb=32, fstype='ext4')
        self.host.add_disk('zram0', size_gb=2)
        self.host.add_disk('loop0', size_gb=4)
        self.host.add_disk('sdz', size_gb=0.5)
        self.host.add_disk('sdb', size_gb=4000)
        self.host.add_disk('sr0', size_gb=4, dev_type='rom')

        report = self.scanner.scan()

        self.assertEqual(self._ids(report.configured + report.unconfigured), ['sdb'])

    def test_unconfigured_disk_annotations(self):
        self.host.add_disk('sdb', size_gb=4000)
        self.host.add_disk('sdc', size_gb=2000, fstype='ntfs')
        self.host.add_disk('sdd', size_gb=2000, fstype='zfs_member')

        report = self.scanner.scan()

        disks = {d.id: d for d in report.unconfigured}
        self.assertFalse(disks['sdb'].has_data)
        self.assertFalse(disks['sdb'].formatted)
        self.assertTrue(disks['sdc'].has_data)
        self.assertTrue(disks['sdc'].formatted)
        self.assertTrue(disks['sdd'].has_data)
        self.assertFalse(disks['sdd'].formatted)
        self.assertEqual(disks['sdc'].to_dict()['size_formatted'], '2.0 TB')

    def test_persisted_entry_marks_disk_configured_with_role(self):
        self.host.add_disk('sda', fstype='ext4')
        self.host.add_disk('sdb', fstype='ext4')
        self.fx.state.save_pool_entries([
            PoolDiskEntry('sda', DiskRole.PARITY, self.fx.mp('parity1')),
        ])

        report = self.scanner.scan()

        self.assertEqual(self._ids(report.configured), ['sda'])
        self.assertEqual(report.configured[0].role, DiskRole.PARITY)
        self.assertEqual(report.configured[0].to_dict()['role'], 'parity')
        self.assertEqual(self._ids(report.unconfigured), ['sdb'])

    def test_mount_under_base_marks_disk_configured(self):
        self.host.add_disk('sdb', fstype='ext4')
        self.host.mount('/dev/sdb1', self.fx.mp('disks', 'disk1'))

        report = self.scanner.scan()

        self.assertEqual(self._ids(report.configured), ['sdb'])
        self.assertEqual(report.configured[0].role, DiskRole.DATA)

    def test_mount_elsewhere_does_not_configure(self):
        self.host.add_disk('sdb', fstype='ext4')
        self.host.mount('/dev/sdb1', self.fx.mp('disks-old'))

        report = self.scanner.scan()

        self.assertEqual(self._ids(report.unconfigured), ['sdb'])

    def test_ignored_disks_are_excluded_from_new_disks(self):
        self.host.add_disk('sdb')
        self.host.add_disk('sdc')
        self.fx.state.set(IGNORED_DISKS, ['sdc'])

        report = self.scanner.scan()

        self.assertEqual(self._ids(report.unconfigured), ['sdb', 'sdc'])
        self.assertEqual(self._ids(report.new_disks), ['sdb'])

    def test_lsblk_failure_raises(self):
        self.host.fail.add('lsblk')
        with self.assertRaises(ScanFailedError):
            self.scanner.scan()

    def test_unparsable_output_gives_empty_report(self):
        self.host._cmd_lsblk = lambda args: (True, 'not json', '')
        report = self.scanner.scan()
        self.assertEqual(report.configured, [])
        self.assertEqual(report.unconfigured, [])

    def test_probe_device(self):
        self.host.add_disk('sdc', size_gb=8000, fstype='ext4')

        disk = self.scanner.probe_device('sdc')

        self.assertEqual(disk.id, 'sdc')
        self.assertEqual([p.name for p in disk.partitions], ['sdc1'])
        self.assertTrue(disk.has_filesystem)
        self.assertEqual(self.fx.executor.calls[-1][-1], '/dev/sdc')

    def test_probe_missing_device(self):
        with self.assertRaises(DeviceNotFoundError):
            self.scanner.probe_device('sdq')

    def test_find_disk(self):
        self.host.add_disk('sdb')
        report = self.scanner.scan()
        self.assertEqual(find_disk(report, 'sdb').id, 'sdb')
        self.assertIsNone(find_disk(report, 'sdx'))


class TestWholeDiskFilesystem(unittest.TestCase):

    def test_filesystem_without_partition_table(self):
        descriptor = DiskScanner._to_descriptor({
            'name': 'sdf', 'size': 2 * 1024 ** 4, 'type': 'disk',
            'mountpoint': None, 'fstype': 'ext4', 'model': None, 'serial': None, 'tran': 'usb',
        })
        self.assertEqual([p.name for p in descriptor.partitions], ['sdf'])
        self.assertTrue(descriptor.has_known_filesystem)
        self.assertEqual(descriptor.model, 'Unknown')
        self.assertEqual(descriptor.transport, 'usb')


if __name__ == '__main__':
    unittest.main()
