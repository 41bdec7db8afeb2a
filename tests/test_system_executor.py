"""Unit tests for SystemCommandExecutor."""

import os
import shutil
import tempfile
import unittest
from unittest.mock import Mock, patch
import subprocess

from storage_pool.system_executor import SystemCommandExecutor, CommandType

from fake_host import FakeExecutor, FakeHost


def drain(generator):
    lines = []
    while True:
        try:
            lines.append(next(generator))
        except StopIteration as stop:
            return lines, stop.value


class TestArgumentValidation(unittest.TestCase):
    """Allow-list checks run before anything is executed."""

    def setUp(self):
        self.executor = SystemCommandExecutor(dry_run=True)

    def test_valid_commands_pass(self):
        valid = [
            (CommandType.LSBLK, ['-J', '-b', '-o', 'NAME,SIZE,TYPE', '/dev/sda']),
            (CommandType.PARTED, ['-s', '/dev/sdb', 'mkpart', 'primary', 'ext4', '0%', '100%']),
            (CommandType.FILESYSTEM, ['-F', '-L', 'data_sdb', '/dev/sdb1']),
            (CommandType.BLKID, ['-s', 'UUID', '-o', 'value', '/dev/sdb1']),
            (CommandType.MOUNT, ['UUID=1234abcd-0000-4000-8000-000000000000', '/mnt/disks/disk1']),
            (CommandType.MERGERFS, ['-o', 'defaults,allow_other,category.create=mfs',
                                    '/mnt/disks/disk1:/mnt/disks/disk2', '/mnt/storage']),
            (CommandType.CHOWN, ['-R', ':sambashare', '/mnt/storage']),
            (CommandType.CHMOD, ['-R', '2775', '/mnt/storage']),
            (CommandType.FINDMNT, ['-n', '-o', 'SOURCE', '/']),
            (CommandType.SNAPRAID, ['-c', '/etc/snapraid.conf', 'scrub', '-p', '10']),
        ]
        for command_type, args in valid:
            with self.subTest(command=command_type.value):
                success, _, _ = self.executor.execute(command_type, args)
                self.assertTrue(success)

    def test_shell_metacharacters_rejected(self):
        invalid = [
            (CommandType.LSBLK, ['/dev/sda; rm -rf /']),
            (CommandType.MOUNT, ['/dev/sdb1', '/mnt/disk1 && reboot']),
            (CommandType.MKDIR, ['-p', '/mnt/$(whoami)']),
            (CommandType.CHOWN, ['-R', ':root;id', '/mnt/storage']),
        ]
        for command_type, args in invalid:
            with self.subTest(args=args):
                with self.assertRaises(ValueError):
                    self.executor.execute(command_type, args)

    def test_path_traversal_rejected(self):
        with self.assertRaises(ValueError):
            self.executor.execute(CommandType.MKDIR, ['-p', '/mnt/disks/../../etc'])

    def test_unknown_flag_rejected(self):
        with self.assertRaises(ValueError):
            self.executor.execute(CommandType.UMOUNT, ['--recursive', '/mnt/storage'])

    def test_label_longer_than_ext4_limit_rejected(self):
        with self.assertRaises(ValueError):
            self.executor.execute(CommandType.FILESYSTEM,
                                  ['-F', '-L', 'a_label_that_is_far_too_long', '/dev/sdb1'])

    def test_value_flag_without_value_rejected(self):
        with self.assertRaises(ValueError):
            self.executor.execute(CommandType.LSBLK, ['-J', '-o'])

    def test_empty_argument_rejected(self):
        with self.assertRaises(ValueError):
            self.executor.execute(CommandType.MKDIR, ['-p', ''])


class TestCommandConstruction(unittest.TestCase):

    def test_privileged_commands_get_sudo(self):
        executor = SystemCommandExecutor(dry_run=True)
        self.assertEqual(executor._build_command(CommandType.MOUNT, ['/dev/sdb1', '/mnt/disk1']),
                         ['sudo', 'mount', '/dev/sdb1', '/mnt/disk1'])

    def test_read_only_commands_run_unprivileged(self):
        executor = SystemCommandExecutor(dry_run=True)
        self.assertEqual(executor._build_command(CommandType.LSBLK, ['-J']), ['lsblk', '-J'])

    def test_sudo_can_be_disabled(self):
        executor = SystemCommandExecutor(dry_run=True, use_sudo=False)
        self.assertEqual(executor._build_command(CommandType.UMOUNT, ['/mnt/disk1']),
                         ['umount', '/mnt/disk1'])

    def test_history_records_commands(self):
        executor = SystemCommandExecutor(dry_run=True)
        executor.execute(CommandType.MKDIR, ['-p', '/mnt/disks/disk1'])

        history = executor.get_command_history()
        self.assertEqual(len(history), 1)
        self.assertEqual(history[0]['type'], 'mkdir')
        self.assertEqual(history[0]['argv'], ['sudo', 'mkdir', '-p', '/mnt/disks/disk1'])
        self.assertTrue(history[0]['dry_run'])

        executor.clear_command_history()
        self.assertEqual(executor.get_command_history(), [])


class TestExecution(unittest.TestCase):

    def setUp(self):
        self.executor = SystemCommandExecutor(dry_run=False, use_sudo=False)

    @patch('storage_pool.system_executor.subprocess.run')
    def test_execute_success(self, mock_run):
        mock_run.return_value = Mock(returncode=0, stdout='ok\n', stderr='')

        success, stdout, stderr = self.executor.execute(CommandType.PARTPROBE, ['/dev/sdb'])

        self.assertTrue(success)
        self.assertEqual(stdout, 'ok\n')
        args, kwargs = mock_run.call_args
        self.assertEqual(args[0], ['partprobe', '/dev/sdb'])
        self.assertFalse(kwargs.get('shell', False))
        self.assertEqual(kwargs['timeout'], 10)

    @patch('storage_pool.system_executor.subprocess.run')
    def test_execute_failure(self, mock_run):
        mock_run.return_value = Mock(returncode=32, stdout='', stderr='mount: wrong fs type')

        success, _, stderr = self.executor.execute(CommandType.MOUNT, ['/dev/sdb1', '/mnt/disk1'])

        self.assertFalse(success)
        self.assertIn('wrong fs type', stderr)

    @patch('storage_pool.system_executor.subprocess.run')
    def test_execute_timeout(self, mock_run):
        mock_run.side_effect = subprocess.TimeoutExpired('mkfs.ext4', 300)

        success, _, stderr = self.executor.execute(CommandType.FILESYSTEM, ['-F', '/dev/sdb1'])

        self.assertFalse(success)
        self.assertEqual(stderr, 'Command timed out')

    @patch('storage_pool.system_executor.subprocess.run')
    def test_missing_binary(self, mock_run):
        mock_run.side_effect = FileNotFoundError('mergerfs')

        success, _, stderr = self.executor.execute(
            CommandType.MERGERFS, ['-o', 'defaults', '/mnt/disks/disk1', '/mnt/storage']
        )

        self.assertFalse(success)
        self.assertIn('mergerfs', stderr)

    @patch('storage_pool.system_executor.subprocess.Popen')
    def test_stream_yields_lines_and_returns_exit_code(self, mock_popen):
        process = Mock()
        process.stdout.readline.side_effect = ['Self test...\n', '50%\n', '']
        process.wait.return_value = 2
        mock_popen.return_value = process

        lines, code = drain(self.executor.stream(
            CommandType.SNAPRAID, ['-c', '/etc/snapraid.conf', 'sync', '-v']
        ))

        self.assertEqual(lines, ['Self test...', '50%'])
        self.assertEqual(code, 2)

    def test_stream_dry_run(self):
        executor = SystemCommandExecutor(dry_run=True)
        lines, code = drain(executor.stream(CommandType.SNAPRAID, ['sync']))
        self.assertEqual(lines, [])
        self.assertEqual(code, 0)


class TestInstallFile(unittest.TestCase):

    def setUp(self):
        self.root = tempfile.mkdtemp(prefix='pooltest')
        self.executor = FakeExecutor(FakeHost(self.root))

    def tearDown(self):
        shutil.rmtree(self.root, ignore_errors=True)

    def test_install_copies_then_sets_mode(self):
        destination = os.path.join(self.root, 'snapraid.conf')

        success, error = self.executor.install_file("parity /mnt/parity1/snapraid.parity\n",
                                                    destination)

        self.assertTrue(success, error)
        with open(destination) as f:
            self.assertEqual(f.read(), "parity /mnt/parity1/snapraid.parity\n")
        self.assertEqual(self.executor.binaries(), ['cp', 'chmod'])
        self.assertEqual(self.executor.calls[1], ['chmod', '644', destination])

    def test_staging_file_removed(self):
        self.executor.install_file("x\n", os.path.join(self.root, 'out'))
        self.assertEqual(os.listdir(self.executor.staging_dir), [])

    def test_copy_failure_reported(self):
        self.executor.host.fail.add('cp')
        destination = os.path.join(self.root, 'fstab')

        success, error = self.executor.install_file("x\n", destination)

        self.assertFalse(success)
        self.assertIn('simulated failure', error)
        self.assertFalse(os.path.exists(destination))
        self.assertEqual(os.listdir(self.executor.staging_dir), [])

    def test_invalid_destination_rejected(self):
        with self.assertRaises(ValueError):
            self.executor.install_file("x", "relative/path")


if __name__ == '__main__':
    unittest.main()
