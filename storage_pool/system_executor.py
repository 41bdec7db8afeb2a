"""Secure system command execution framework."""

import os
import re
import shlex
import logging
import subprocess
import tempfile
from enum import Enum
from typing import Dict, Generator, List, Optional, Tuple


logger = logging.getLogger(__name__)


class CommandType(Enum):
    """Supported command types for validation."""
    LSBLK = "lsblk"
    FINDMNT = "findmnt"
    PARTED = "parted"
    PARTPROBE = "partprobe"
    UDEVADM = "udevadm"
    FILESYSTEM = "mkfs.ext4"
    BLKID = "blkid"
    MOUNT = "mount"
    UMOUNT = "umount"
    MERGERFS = "mergerfs"
    MKDIR = "mkdir"
    RMDIR = "rmdir"
    CHOWN = "chown"
    CHMOD = "chmod"
    COPY = "cp"
    SNAPRAID = "snapraid"


# Positional argument patterns
DEVICE_PATH_PATTERN = re.compile(r'^/dev/[a-zA-Z0-9]+$')
FILE_PATH_PATTERN = re.compile(r'^/[a-zA-Z0-9/_.+-]+$')
UUID_SOURCE_PATTERN = re.compile(r'^UUID=[0-9a-fA-F-]{4,36}$')
BRANCH_LIST_PATTERN = re.compile(r'^/[a-zA-Z0-9/_.-]+(?::/[a-zA-Z0-9/_.-]+)*$')
GROUP_SPEC_PATTERN = re.compile(r'^:[a-z_][a-z0-9_-]{0,31}$')
MODE_PATTERN = re.compile(r'^[0-7]{3,4}$')
PERCENT_PATTERN = re.compile(r'^\d{1,3}%?$')

# Values following an option flag
OPTION_VALUE_PATTERN = re.compile(r'^[A-Za-z0-9_.=,:/+-]+$')
LABEL_PATTERN = re.compile(r'^[a-zA-Z0-9_-]{1,16}$')

PATTERNS = {
    'device': DEVICE_PATH_PATTERN,
    'path': FILE_PATH_PATTERN,
    'uuid_source': UUID_SOURCE_PATTERN,
    'branches': BRANCH_LIST_PATTERN,
    'group': GROUP_SPEC_PATTERN,
    'mode': MODE_PATTERN,
    'percent': PERCENT_PATTERN,
}


class SystemCommandExecutor:
    """Allow-listed command executor with privilege escalation.

    Commands are always passed to the OS as argument vectors; no shell is
    involved. Every argument must be an allowed flag, a value following an
    allowed value flag, or match one of the positional patterns of the
    command.
    """

    ALLOWED_COMMANDS = {
        CommandType.LSBLK: {
            'binary': 'lsblk',
            'allowed_args': {'-J', '--json', '-b', '--bytes', '-n', '--noheadings'},
            'value_flags': {'-o', '--output'},
            'patterns': ('device',),
            'requires_sudo': False,
            'timeout': 30,
        },
        CommandType.FINDMNT: {
            'binary': 'findmnt',
            'allowed_args': {'-n', '--noheadings', '/'},
            'value_flags': {'-o', '--output'},
            'patterns': ('path',),
            'requires_sudo': False,
            'timeout': 10,
        },
        CommandType.PARTED: {
            'binary': 'parted',
            'allowed_args': {'-s', '--script', 'mklabel', 'gpt', 'mkpart',
                             'primary', 'ext4'},
            'value_flags': set(),
            'patterns': ('device', 'percent'),
            'requires_sudo': True,
            'timeout': 30,
        },
        CommandType.PARTPROBE: {
            'binary': 'partprobe',
            'allowed_args': set(),
            'value_flags': set(),
            'patterns': ('device',),
            'requires_sudo': True,
            'timeout': 10,
        },
        CommandType.UDEVADM: {
            'binary': 'udevadm',
            'allowed_args': {'settle'},
            'value_flags': {'--timeout'},
            'patterns': (),
            'requires_sudo': True,
            'timeout': 30,
        },
        CommandType.FILESYSTEM: {
            'binary': 'mkfs.ext4',
            'allowed_args': {'-F', '-q'},
            'value_flags': {'-L', '--label'},
            'patterns': ('device',),
            'requires_sudo': True,
            'timeout': 300,
        },
        CommandType.BLKID: {
            'binary': 'blkid',
            'allowed_args': {'value', 'UUID', 'TYPE', 'LABEL'},
            'value_flags': {'-s', '--match-tag', '-o', '--output'},
            'patterns': ('device',),
            'requires_sudo': True,
            'timeout': 10,
        },
        CommandType.MOUNT: {
            'binary': 'mount',
            'allowed_args': set(),
            'value_flags': {'-t', '--types', '-o', '--options'},
            'patterns': ('device', 'uuid_source', 'path'),
            'requires_sudo': True,
            'timeout': 30,
        },
        CommandType.UMOUNT: {
            'binary': 'umount',
            'allowed_args': {'-f', '--force', '-l', '--lazy'},
            'value_flags': set(),
            'patterns': ('device', 'path'),
            'requires_sudo': True,
            'timeout': 30,
        },
        CommandType.MERGERFS: {
            'binary': 'mergerfs',
            'allowed_args': set(),
            'value_flags': {'-o'},
            'patterns': ('branches', 'path'),
            'requires_sudo': True,
            'timeout': 30,
        },
        CommandType.MKDIR: {
            'binary': 'mkdir',
            'allowed_args': {'-p'},
            'value_flags': set(),
            'patterns': ('path',),
            'requires_sudo': True,
            'timeout': 10,
        },
        CommandType.RMDIR: {
            'binary': 'rmdir',
            'allowed_args': set(),
            'value_flags': set(),
            'patterns': ('path',),
            'requires_sudo': True,
            'timeout': 10,
        },
        CommandType.CHOWN: {
            'binary': 'chown',
            'allowed_args': {'-R'},
            'value_flags': set(),
            'patterns': ('group', 'path'),
            'requires_sudo': True,
            'timeout': 600,
        },
        CommandType.CHMOD: {
            'binary': 'chmod',
            'allowed_args': {'-R'},
            'value_flags': set(),
            'patterns': ('mode', 'path'),
            'requires_sudo': True,
            'timeout': 600,
        },
        CommandType.COPY: {
            'binary': 'cp',
            'allowed_args': set(),
            'value_flags': set(),
            'patterns': ('path',),
            'requires_sudo': True,
            'timeout': 10,
        },
        CommandType.SNAPRAID: {
            'binary': 'snapraid',
            'allowed_args': {'status', 'sync', 'scrub', 'diff', '-v', '--verbose'},
            'value_flags': {'-c', '--conf', '-p', '--plan'},
            'patterns': (),
            'requires_sudo': True,
            'timeout': 7200,
        },
    }

    def __init__(self, dry_run: bool = False, use_sudo: bool = True,
                 max_timeout: int = 300, staging_dir: Optional[str] = None):
        """
        Initialize the SystemCommandExecutor.

        Args:
            dry_run: If True, commands will be logged but not executed
            use_sudo: Prefix privileged commands with sudo
            max_timeout: Default timeout for commands without their own
            staging_dir: Directory for temporary files handed to privileged copies
        """
        self.dry_run = dry_run
        self.use_sudo = use_sudo
        self.max_timeout = max_timeout
        self.staging_dir = staging_dir
        self._command_history: List[Dict] = []

    def execute(self,
                command_type: CommandType,
                args: List[str],
                input_text: Optional[str] = None,
                timeout: Optional[int] = None) -> Tuple[bool, str, str]:
        """
        Execute a validated command.

        Args:
            command_type: Type of command to execute
            args: Command arguments (never shell-interpreted)
            input_text: Optional data written to the command's stdin
            timeout: Override for the command's default timeout

        Returns:
            Tuple of (success, stdout, stderr)

        Raises:
            ValueError: If any argument is not allowed
        """
        full_command = self._build_command(command_type, args)
        command_str = self._record(full_command, command_type)

        if self.dry_run:
            logger.info("DRY RUN: Command would be executed")
            return True, "", ""

        config = self.ALLOWED_COMMANDS[command_type]
        effective_timeout = timeout or config.get('timeout') or self.max_timeout

        success, stdout, stderr = self._run(full_command, input_text, effective_timeout)
        if success:
            logger.info(f"Command executed successfully: {command_str}")
        else:
            logger.error(f"Command failed: {command_str}")
            if stderr:
                logger.error(f"Error output: {stderr.strip()}")
        return success, stdout, stderr

    def stream(self, command_type: CommandType,
               args: List[str]) -> Generator[str, None, int]:
        """
        Execute a validated command and yield its combined output line by line.

        Returns the exit code as the generator's return value.
        """
        full_command = self._build_command(command_type, args)
        self._record(full_command, command_type)

        if self.dry_run:
            logger.info("DRY RUN: Command would be executed")
            return 0

        return (yield from self._stream(full_command))

    def install_file(self, content: str, destination: str,
                     mode: str = '644') -> Tuple[bool, str]:
        """
        Write a file into a privileged location.

        The content goes to a temporary file first and is then copied into
        place with a privileged ``cp``, so a failed write never leaves a
        partial file at the destination.

        Returns:
            Tuple of (success, error message)
        """
        if not FILE_PATH_PATTERN.match(destination):
            raise ValueError(f"Invalid destination path: {destination}")

        if self.staging_dir:
            os.makedirs(self.staging_dir, exist_ok=True)
        fd, temp_path = tempfile.mkstemp(prefix='storage-pool-', dir=self.staging_dir)
        try:
            with os.fdopen(fd, 'w') as handle:
                handle.write(content)

            success, _, stderr = self.execute(CommandType.COPY, [temp_path, destination])
            if not success:
                return False, stderr.strip() or f"copy to {destination} failed"

            success, _, stderr = self.execute(CommandType.CHMOD, [mode, destination])
            if not success:
                return False, stderr.strip() or f"chmod {mode} {destination} failed"
            return True, ""
        finally:
            try:
                os.unlink(temp_path)
            except FileNotFoundError:
                pass

    def _build_command(self, command_type: CommandType, args: List[str]) -> List[str]:
        self._validate_command_args(command_type, args)
        config = self.ALLOWED_COMMANDS[command_type]
        if config['requires_sudo'] and self.use_sudo:
            return ['sudo', config['binary']] + list(args)
        return [config['binary']] + list(args)

    def _record(self, full_command: List[str], command_type: CommandType) -> str:
        command_str = ' '.join(shlex.quote(arg) for arg in full_command)
        logger.info(f"Executing command: {command_str}")
        self._command_history.append({
            'command': command_str,
            'argv': list(full_command),
            'type': command_type.value,
            'dry_run': self.dry_run
        })
        return command_str

    def _run(self, full_command: List[str], input_text: Optional[str],
             timeout: int) -> Tuple[bool, str, str]:
        try:
            result = subprocess.run(
                full_command,
                input=input_text,
                capture_output=True,
                text=True,
                timeout=timeout,
                check=False
            )
            return result.returncode == 0, result.stdout, result.stderr

        except subprocess.TimeoutExpired:
            logger.error(f"Command timed out after {timeout}s: {full_command[0]}")
            return False, "", "Command timed out"

        except OSError as e:
            logger.error(f"Error executing {full_command[0]}: {e}")
            return False, "", str(e)

    def _stream(self, full_command: List[str]) -> Generator[str, None, int]:
        try:
            process = subprocess.Popen(
                full_command,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                text=True
            )
        except OSError as e:
            logger.error(f"Error starting {full_command[0]}: {e}")
            yield str(e)
            return 127

        for line in iter(process.stdout.readline, ""):
            yield line.rstrip()
        process.stdout.close()
        return process.wait()

    def _validate_command_args(self, command_type: CommandType, args: List[str]) -> None:
        """
        Validate command arguments against the command's allow-list.

        Raises:
            ValueError: If any argument is not allowed
        """
        config = self.ALLOWED_COMMANDS[command_type]
        allowed_args = config['allowed_args']
        value_flags = config['value_flags']
        patterns = [PATTERNS[name] for name in config['patterns']]

        expect_value_for = None
        for arg in args:
            if not isinstance(arg, str) or not arg:
                raise ValueError(f"Empty or non-string argument for {command_type.value}")

            if expect_value_for is not None:
                value_pattern = LABEL_PATTERN if expect_value_for in {'-L', '--label'} else OPTION_VALUE_PATTERN
                if not value_pattern.match(arg):
                    raise ValueError(
                        f"Invalid value for {expect_value_for} in {command_type.value}: {arg}"
                    )
                expect_value_for = None
                continue

            if arg in value_flags:
                expect_value_for = arg
                continue

            if arg in allowed_args:
                continue

            if '..' in arg.split('/'):
                raise ValueError(f"Path traversal not allowed for {command_type.value}: {arg}")

            if any(pattern.match(arg) for pattern in patterns):
                continue

            raise ValueError(f"Argument not allowed for {command_type.value}: {arg}")

        if expect_value_for is not None:
            raise ValueError(f"Missing value for {expect_value_for} in {command_type.value}")

    def get_command_history(self) -> List[Dict]:
        """Get the history of executed commands."""
        return self._command_history.copy()

    def clear_command_history(self) -> None:
        """Clear the command history."""
        self._command_history.clear()
