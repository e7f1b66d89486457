"""Shared helpers for the permission set stuffer: errors, config, git and prompts."""

import configparser
import datetime
import subprocess
from dataclasses import dataclass
from pathlib import Path

import click
import questionary

CONFIG_SECTION = 'PermsetStuffer'
DEFAULT_CONFIG_FILENAME = 'config.ini'
DEFAULT_PERMSET_PATH = 'force-app/main/default/permissionsets'
DEFAULT_OBJECT_PATH = 'force-app/main/default/objects'
DEFAULT_REFERENCE_BRANCH = 'master'
DEFAULT_REMOTE = 'origin'
PERMISSION_VALUES = ('true', 'false')


class StufferError(click.ClickException):
    """Base class for errors that abort a run before any further file is written."""


class BranchCheckoutError(StufferError):
    """Raised when diff discovery has no usable branch to compare."""

    def __init__(self, branch_name: str | None, reference_branch: str):
        shown = branch_name or 'none'
        super().__init__(
            f"Checkout a branch other than '{reference_branch}' (current branch: {shown})."
        )
        self.branch_name = branch_name


class PermissionFlagConflictError(StufferError):
    """Raised when edit access is requested without read access."""

    def __init__(self, readable: str, editable: str):
        super().__init__(
            f"Edit permission cannot be '{editable}' while read permission is '{readable}'."
        )


class MetadataParseError(StufferError):
    """Raised when a metadata file is missing or is not well-formed XML."""


class FileIOError(StufferError):
    """Raised when reading or writing a metadata file fails."""


class GitCommandError(StufferError):
    """Raised when a git command exits with a non-zero status."""


@dataclass
class CommandResult:
    """Outcome of executing a subprocess command."""

    success: bool
    returncode: int | None
    stdout: str | None
    duration_seconds: float


@dataclass
class StufferSettings:
    """Validated defaults for a stuffer run, before CLI overrides."""

    permset_path: str = DEFAULT_PERMSET_PATH
    object_path: str = DEFAULT_OBJECT_PATH
    reference_branch: str = DEFAULT_REFERENCE_BRANCH
    remote: str = DEFAULT_REMOTE
    read_permission: str = 'true'
    edit_permission: str = 'true'
    no_prompt: bool = False
    print_all: bool = False


def run_command(command: list[str], cwd: Path = None) -> CommandResult:
    """Run a command, capturing its UTF-8 output."""

    command_str = subprocess.list2cmdline(command)
    start = datetime.datetime.now()
    try:
        result = subprocess.run(
            command,
            capture_output=True,
            text=True,
            encoding='utf-8',
            errors='replace',
            check=False,
            cwd=cwd,
        )
    except OSError as exc:
        raise GitCommandError(f"Unable to run '{command_str}': {exc}") from exc

    duration = (datetime.datetime.now() - start).total_seconds()
    return CommandResult(result.returncode == 0, result.returncode, result.stdout, duration)


class GitRepository:
    """The two git queries diff discovery needs, run in ``cwd``."""

    def __init__(self, cwd: Path | None = None, runner=run_command):
        self.cwd = cwd
        self._runner = runner

    def _git(self, *args: str) -> str:
        command = ['git', *args]
        result = self._runner(command, cwd=self.cwd)
        if not result.success:
            raise GitCommandError(
                f"'{subprocess.list2cmdline(command)}' failed with exit code {result.returncode}."
            )
        return result.stdout or ''

    def current_branch(self) -> str | None:
        """Return the checked out branch, or None when it cannot be determined."""

        for line in self._git('branch').splitlines():
            if not line.startswith('*'):
                continue
            name = line[1:].strip()
            # "(HEAD detached at 1a2b3c)" and similar are not branches.
            if not name or name.startswith('('):
                return None
            return name
        return None

    def changed_paths(self, branch: str, reference: str) -> list[str]:
        """Return the paths that differ between ``branch`` and ``reference``."""

        output = self._git('diff', '--name-only', f'{branch}..{reference}')
        return [line.strip() for line in output.splitlines() if line.strip()]


def prompt_yes_no(message: str) -> bool:
    """Ask a free-text question; only 'y' or 'yes' (any case) approves."""

    answer = questionary.text(message).ask()
    if answer is None:
        return False
    return answer.strip().lower() in ('y', 'yes')


def _read_permission_value(parser: configparser.ConfigParser, key: str) -> str:
    value = parser.get(CONFIG_SECTION, key, fallback='true').strip().lower()
    if value not in PERMISSION_VALUES:
        raise click.ClickException(
            f"Invalid value '{value}' for {CONFIG_SECTION}.{key}; expected 'true' or 'false'."
        )
    return value


def read_config(config_path: Path) -> StufferSettings:
    """Read INI defaults for a run; a missing file yields the built-in defaults."""

    parser = configparser.ConfigParser()
    try:
        parser.read(config_path, encoding='utf-8')
    except configparser.Error as exc:
        raise click.ClickException(f"Unable to read configuration {config_path}: {exc}") from exc

    if not parser.has_section(CONFIG_SECTION):
        return StufferSettings()

    try:
        no_prompt = parser.getboolean(CONFIG_SECTION, 'noprompt', fallback=False)
        print_all = parser.getboolean(CONFIG_SECTION, 'printall', fallback=False)
    except ValueError as exc:
        raise click.ClickException(f"Invalid boolean in {config_path}: {exc}") from exc

    return StufferSettings(
        permset_path=parser.get(CONFIG_SECTION, 'permsetpath', fallback=DEFAULT_PERMSET_PATH).strip(),
        object_path=parser.get(CONFIG_SECTION, 'objectpath', fallback=DEFAULT_OBJECT_PATH).strip(),
        reference_branch=parser.get(
            CONFIG_SECTION, 'reference_branch', fallback=DEFAULT_REFERENCE_BRANCH
        ).strip(),
        remote=parser.get(CONFIG_SECTION, 'remote', fallback=DEFAULT_REMOTE).strip(),
        read_permission=_read_permission_value(parser, 'readpermission'),
        edit_permission=_read_permission_value(parser, 'editpermission'),
        no_prompt=no_prompt,
        print_all=print_all,
    )


def check_permission_flags(readable: str, editable: str) -> None:
    """Reject edit access without read access."""

    if readable == 'false' and editable != 'false':
        raise PermissionFlagConflictError(readable, editable)
