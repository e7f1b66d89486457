import sys
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from permset_stuffer import (
    discover_field_paths,
    filter_eligible,
    glob_field_paths,
    is_custom_metadata_path,
)
from stuffer_utils import (
    BranchCheckoutError,
    CommandResult,
    GitCommandError,
    GitRepository,
    run_command,
)


class FakeGit:
    def __init__(self, branch, paths=()):
        self.branch = branch
        self.paths = list(paths)
        self.diff_calls = []

    def current_branch(self):
        return self.branch

    def changed_paths(self, branch, reference):
        self.diff_calls.append((branch, reference))
        return list(self.paths)


def _write_field(objects: Path, obj: str, name: str, full_name: str = None,
                 required: str = 'false', field_type: str = 'Text') -> Path:
    path = objects / obj / 'fields' / f'{name}.field-meta.xml'
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(
        '<?xml version="1.0" encoding="UTF-8"?>\n'
        '<CustomField xmlns="http://soap.sforce.com/2006/04/metadata">\n'
        f'    <fullName>{full_name or name}</fullName>\n'
        f'    <required>{required}</required>\n'
        f'    <type>{field_type}</type>\n'
        '</CustomField>\n',
        encoding='utf-8',
    )
    return path


def test_glob_lists_field_files_recursively_and_sorted(tmp_path):
    objects = tmp_path / 'objects'
    _write_field(objects, 'Contact', 'Zed__c')
    _write_field(objects, 'Account', 'Foo__c')
    (objects / 'Account' / 'Account.object-meta.xml').write_text('<CustomObject/>')
    (objects / 'Account' / 'listViews').mkdir()
    (objects / 'Account' / 'listViews' / 'All.listView-meta.xml').write_text('<ListView/>')

    paths = glob_field_paths(objects)

    assert [Path(p).relative_to(objects).as_posix() for p in paths] == [
        'Account/fields/Foo__c.field-meta.xml',
        'Contact/fields/Zed__c.field-meta.xml',
    ]


def test_glob_of_missing_directory_is_empty(tmp_path):
    assert glob_field_paths(tmp_path / 'does-not-exist') == []


def test_diff_mode_filters_to_field_files_under_object_path():
    git = FakeGit(
        'feature/new-fields',
        [
            'force-app/main/default/objects/Account/fields/Foo__c.field-meta.xml',
            'force-app/main/default/objects/Account/listViews/All.listView-meta.xml',
            'force-app/main/default/classes/Thing.cls',
            'other/objects/Account/fields/Bar__c.field-meta.xml',
        ],
    )

    paths = discover_field_paths(
        True, './force-app/main/default/objects', git, reference_branch='master', remote='origin'
    )

    assert paths == ['force-app/main/default/objects/Account/fields/Foo__c.field-meta.xml']
    assert git.diff_calls == [('feature/new-fields', 'origin/master')]


def test_diff_mode_without_remote_uses_local_reference():
    git = FakeGit('feature', [])

    assert discover_field_paths(True, 'objects', git, reference_branch='main') == []
    assert git.diff_calls == [('feature', 'main')]


@pytest.mark.parametrize('branch', ['master', None, ''])
def test_diff_mode_requires_a_branch_other_than_reference(branch):
    git = FakeGit(branch, ['objects/Account/fields/Foo__c.field-meta.xml'])

    with pytest.raises(BranchCheckoutError, match='Checkout a branch'):
        discover_field_paths(True, 'objects', git, reference_branch='master')
    assert git.diff_calls == []


def test_custom_metadata_paths_are_detected():
    assert is_custom_metadata_path('objects/Config__mdt/fields/Value__c.field-meta.xml')
    assert not is_custom_metadata_path('objects/Config__c/fields/Value__c.field-meta.xml')


def test_filter_drops_fields_that_need_no_permission(tmp_path):
    objects = tmp_path / 'objects'
    keep = _write_field(objects, 'Account', 'Keep__c')
    _write_field(objects, 'Account', 'Required__c', required='true')
    _write_field(objects, 'Line__c', 'Parent__c', field_type='MasterDetail')
    _write_field(objects, 'Account', 'Name', full_name='Name')
    _write_field(objects, 'Account', 'OwnerId', full_name='OwnerId', field_type='Lookup')
    _write_field(objects, 'Setting__mdt', 'Value__c')

    eligible = filter_eligible(glob_field_paths(objects))

    assert eligible == [str(keep)]


def test_filter_is_idempotent(tmp_path):
    objects = tmp_path / 'objects'
    _write_field(objects, 'Account', 'Keep__c')
    _write_field(objects, 'Account', 'Other__c', field_type='Checkbox')
    _write_field(objects, 'Account', 'Required__c', required='true')

    once = filter_eligible(glob_field_paths(objects))

    assert filter_eligible(once) == once


def test_git_repository_parses_current_branch():
    calls = []

    def runner(command, cwd=None):
        calls.append(command)
        return CommandResult(True, 0, '  main\n* feature/perms\n  other\n', 0.0)

    assert GitRepository(runner=runner).current_branch() == 'feature/perms'
    assert calls == [['git', 'branch']]


def test_git_repository_detached_head_has_no_branch():
    def runner(command, cwd=None):
        return CommandResult(True, 0, '* (HEAD detached at 1a2b3c4)\n  main\n', 0.0)

    assert GitRepository(runner=runner).current_branch() is None


def test_git_repository_changed_paths_splits_lines():
    calls = []

    def runner(command, cwd=None):
        calls.append(command)
        return CommandResult(True, 0, 'a/one.field-meta.xml\n\nb/two.field-meta.xml\n', 0.0)

    paths = GitRepository(runner=runner).changed_paths('feature', 'origin/master')

    assert paths == ['a/one.field-meta.xml', 'b/two.field-meta.xml']
    assert calls == [['git', 'diff', '--name-only', 'feature..origin/master']]


def test_git_repository_raises_on_failure():
    def runner(command, cwd=None):
        return CommandResult(False, 128, '', 0.0)

    with pytest.raises(GitCommandError, match='exit code 128'):
        GitRepository(runner=runner).current_branch()


def test_run_command_captures_output():
    result = run_command([sys.executable, '-c', 'print("feature/perms")'])

    assert result.success
    assert result.returncode == 0
    assert result.stdout.strip() == 'feature/perms'


def test_run_command_reports_non_zero_exit():
    result = run_command([sys.executable, '-c', 'import sys; sys.exit(3)'])

    assert not result.success
    assert result.returncode == 3


def test_run_command_missing_executable_raises(tmp_path):
    with pytest.raises(GitCommandError, match='Unable to run'):
        run_command([str(tmp_path / 'no-such-git')])
