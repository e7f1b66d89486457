#!/usr/bin/env python3
"""
Permission Set Stuffer

Adds read/edit field permissions for new custom fields to Salesforce
permission sets in a DX project, so new fields are not left without
field-level security.

Fields are discovered either from every *.field-meta.xml under the objects
directory (filtered to fields that need explicit permissions) or, with
--justbranch, from the files changed between the current git branch and the
reference branch. Each permission set is loaded, compared, confirmed and
rewritten in turn.

Usage:
python permset_stuffer.py --permissionset Permission_Set_Devname,Other_Permission_Set
python permset_stuffer.py -p Permission_Set_Devname --justbranch --noprompt
"""
import json
from dataclasses import dataclass, field
from pathlib import Path, PurePosixPath

import click

from permset_xml import (
    FIELD_META_SUFFIX,
    FieldPermissionEntry,
    FieldReference,
    load_field_metadata,
    load_permission_set,
    permission_set_path,
    save_permission_set,
)
from stuffer_utils import (
    BranchCheckoutError,
    DEFAULT_CONFIG_FILENAME,
    GitRepository,
    PERMISSION_VALUES,
    check_permission_flags,
    prompt_yes_no,
    read_config,
)

CUSTOM_METADATA_SUFFIX = '__mdt'
UNMANAGED_FIELD_NAMES = {'Name', 'OwnerId'}


@dataclass
class RunSummary:
    file_paths: list[str]
    permission_sets: list[str] = field(default_factory=list)
    updated: dict[str, int] = field(default_factory=dict)

    def as_dict(self) -> dict:
        return {
            'filePaths': self.file_paths,
            'permissionSets': self.permission_sets,
            'updated': self.updated,
        }


# --- Path Discovery ---

def _normalize(path: str) -> str:
    normalized = PurePosixPath(str(path).replace('\\', '/')).as_posix()
    return normalized[2:] if normalized.startswith('./') else normalized


def _is_under(path: str, directory: str) -> bool:
    directory = _normalize(directory).rstrip('/')
    return _normalize(path).startswith(f'{directory}/')


def glob_field_paths(object_path) -> list[str]:
    """Every field metadata file under the objects directory, sorted."""
    root = Path(object_path)
    if not root.is_dir():
        return []
    return sorted(str(p) for p in root.rglob(f'*{FIELD_META_SUFFIX}') if p.is_file())


def diff_field_paths(object_path, git, reference_branch: str, remote: str = '') -> list[str]:
    """Field files changed between the current branch and the reference branch."""
    branch_name = git.current_branch()
    if not branch_name or branch_name == reference_branch:
        raise BranchCheckoutError(branch_name, reference_branch)

    reference = f'{remote}/{reference_branch}' if remote else reference_branch
    return [
        path for path in git.changed_paths(branch_name, reference)
        if _is_under(path, object_path) and path.endswith(FIELD_META_SUFFIX)
    ]


def discover_field_paths(just_branch: bool, object_path, git=None,
                         reference_branch: str = 'master', remote: str = '') -> list[str]:
    if just_branch:
        return diff_field_paths(object_path, git or GitRepository(), reference_branch, remote)
    return glob_field_paths(object_path)


# --- Field Filter ---

def is_custom_metadata_path(path) -> bool:
    return any(part.endswith(CUSTOM_METADATA_SUFFIX) for part in PurePosixPath(_normalize(path)).parts)


def needs_no_permission(field_doc) -> bool:
    # Required, master-detail, Name and OwnerId fields are not governed by FLS.
    return (
        field_doc.required == 'true'
        or field_doc.field_type == 'MasterDetail'
        or field_doc.full_name in UNMANAGED_FIELD_NAMES
    )


def filter_eligible(paths) -> list[str]:
    """Drop custom metadata fields and fields that need no explicit permission."""
    eligible = []
    for path in paths:
        if is_custom_metadata_path(path):
            continue
        if needs_no_permission(load_field_metadata(path)):
            continue
        eligible.append(path)
    return eligible


# --- Confirmation ---

def _access_label(readable: str, editable: str) -> str:
    if editable == 'true':
        return 'read and edit'
    if readable == 'true':
        return 'read only'
    return 'no access'


def build_confirm_message(missing, permset_name: str, readable: str, editable: str,
                          print_all: bool) -> str:
    access = _access_label(readable, editable)
    if print_all:
        field_lines = '\n'.join(f'  {reference}' for reference in missing)
        return (
            f"These fields:\n{field_lines}\n"
            f"will be added to permission set {permset_name} with {access} access. Ok? (y/n)"
        )
    plural = 's' if len(missing) != 1 else ''
    return (
        f"{len(missing)} field{plural} will be added to permission set {permset_name} "
        f"with {access} access. Ok? (y/n)"
    )


# --- Pipeline ---

def _report(message: str, quiet: bool = False, **style) -> None:
    if not quiet:
        click.echo(click.style(message, **style) if style else message)


def stuff_permission_set(permset_name: str, references, permset_dir, readable: str = 'true',
                         editable: str = 'true', no_prompt: bool = False, print_all: bool = False,
                         dry_run: bool = False, confirm=None, quiet: bool = False) -> int:
    """Add missing field permissions to one permission set; return how many were written."""
    path = permission_set_path(permset_dir, permset_name)
    document = load_permission_set(path)
    missing = document.missing_fields(references)

    if not missing:
        _report(f"All fields accounted for in {permset_name}", quiet)
        return 0

    if dry_run:
        _report(f"DRY RUN: would add {len(missing)} field(s) to {permset_name}:", quiet, fg='yellow')
        for reference in missing:
            _report(f"  {reference}", quiet)
        return 0

    if not no_prompt:
        message = build_confirm_message(missing, permset_name, readable, editable, print_all)
        if not (confirm or prompt_yes_no)(message):
            _report(f"Skipped {permset_name}.", quiet, fg='yellow')
            return 0

    updated = document.with_entries_appended(
        FieldPermissionEntry(reference.api_name, readable=readable, editable=editable)
        for reference in missing
    )
    save_permission_set(path, updated)
    plural = 's' if len(missing) > 1 else ''
    _report(f"Wrote {len(missing)} field{plural} to {permset_name}", quiet, fg='green')
    return len(missing)


def stuff_permission_sets(permission_sets, just_branch: bool = False,
                          permset_dir='force-app/main/default/permissionsets',
                          object_dir='force-app/main/default/objects',
                          readable: str = 'true', editable: str = 'true',
                          no_prompt: bool = False, print_all: bool = False,
                          dry_run: bool = False, reference_branch: str = 'master',
                          remote: str = '', git=None, confirm=None,
                          quiet: bool = False) -> RunSummary:
    """Run the whole pipeline for each permission set in turn and summarize it."""
    check_permission_flags(readable, editable)

    file_paths = discover_field_paths(just_branch, object_dir, git, reference_branch, remote)
    if not just_branch:
        file_paths = filter_eligible(file_paths)
    if not file_paths:
        _report('No files found with the options specified', quiet)
        return RunSummary(file_paths=[])

    references = [FieldReference.from_path(path) for path in file_paths]
    summary = RunSummary(file_paths=list(file_paths), permission_sets=list(permission_sets))
    for permset_name in permission_sets:
        summary.updated[permset_name] = stuff_permission_set(
            permset_name,
            references,
            permset_dir,
            readable=readable,
            editable=editable,
            no_prompt=no_prompt,
            print_all=print_all,
            dry_run=dry_run,
            confirm=confirm,
            quiet=quiet,
        )
    return summary


def _split_names(values) -> list[str]:
    names = []
    for value in values:
        names.extend(name.strip() for name in value.split(',') if name.strip())
    return names


# --- Main CLI ---
@click.command(context_settings={"help_option_names": ["-h", "--help"]})
@click.option('-p', '--permissionset', 'permission_sets', multiple=True, required=True,
              help='Permission set API name(s), comma separated or repeated.')
@click.option('-j', '--justbranch', is_flag=True,
              help='Only add fields changed on this branch compared to the reference branch.')
@click.option('-f', '--permsetpath', default=None, help='Permission set directory.')
@click.option('-o', '--objectpath', default=None, help='Objects directory.')
@click.option('-b', '--reference-branch', default=None, help='Branch to compare against with --justbranch.')
@click.option('--remote', default=None, help="Remote holding the reference branch ('' for a local branch).")
@click.option('-n', '--noprompt', is_flag=True, help='Do not ask for confirmation.')
@click.option('-r', '--printall', is_flag=True, help='List every field in the confirmation.')
@click.option('-d', '--readpermission', type=click.Choice(PERMISSION_VALUES), default=None,
              help='Read permission for added fields.')
@click.option('-t', '--editpermission', type=click.Choice(PERMISSION_VALUES), default=None,
              help='Edit permission for added fields.')
@click.option('--dry-run', is_flag=True, help='Show what would be added without modifying files.')
@click.option('--json', 'as_json', is_flag=True, help='Print the run summary as JSON.')
@click.option('--config', 'config_path', default=DEFAULT_CONFIG_FILENAME, show_default=True,
              type=click.Path(dir_okay=False, path_type=Path), help='INI file with default options.')
def main(permission_sets, justbranch, permsetpath, objectpath, reference_branch, remote,
         noprompt, printall, readpermission, editpermission, dry_run, as_json, config_path):
    """Add field permissions for new custom fields to permission sets."""
    settings = read_config(config_path)
    names = _split_names(permission_sets)
    if not names:
        raise click.BadParameter('at least one permission set name is required',
                                 param_hint="'--permissionset'")

    if dry_run and not as_json:
        click.echo(click.style("DRY RUN MODE ENABLED", fg='yellow', bold=True))

    summary = stuff_permission_sets(
        names,
        just_branch=justbranch,
        permset_dir=permsetpath or settings.permset_path,
        object_dir=objectpath or settings.object_path,
        readable=readpermission or settings.read_permission,
        editable=editpermission or settings.edit_permission,
        no_prompt=noprompt or settings.no_prompt,
        print_all=printall or settings.print_all,
        dry_run=dry_run,
        reference_branch=reference_branch or settings.reference_branch,
        remote=settings.remote if remote is None else remote,
        quiet=as_json,
    )
    if as_json:
        click.echo(json.dumps(summary.as_dict(), indent=2))


if __name__ == '__main__':

    main()
