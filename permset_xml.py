"""Field and permission set metadata: parsing, value types and serialization."""

import copy
import xml.etree.ElementTree as ET
from dataclasses import dataclass, field, replace
from pathlib import Path, PurePath

from stuffer_utils import FileIOError, MetadataParseError

SF_NAMESPACE_URI = 'http://soap.sforce.com/2006/04/metadata'
NS = {'sf': SF_NAMESPACE_URI}
ET.register_namespace('', SF_NAMESPACE_URI)

PERMISSIONSET_SUFFIX = '.permissionset-meta.xml'
FIELD_META_SUFFIX = '.field-meta.xml'

# Canonical order of top-level PermissionSet elements, used to place new fieldPermissions.
PERMISSIONSET_ORDER = [
    'applicationVisibilities', 'classAccesses', 'customMetadataTypeAccesses', 'customPermissions',
    'customSettingAccesses', 'description', 'externalCredentialPrincipalAccesses',
    'externalDataSourceAccesses', 'fieldPermissions', 'flowAccesses', 'hasActivationRequired',
    'label', 'license', 'objectPermissions', 'pageAccesses', 'recordTypeVisibilities',
    'tabSettings', 'userLicense', 'userPermissions',
]


def _local_name(tag: str) -> str:
    return tag.split('}')[-1] if '}' in tag else tag


def _namespace_prefix(element: ET.Element) -> str:
    return element.tag[:element.tag.index('}') + 1] if element.tag.startswith('{') else ''


def _child_text(element: ET.Element, name: str) -> str | None:
    for child in element:
        if _local_name(child.tag) == name:
            return child.text.strip() if child.text else ''
    return None


@dataclass(frozen=True)
class FieldReference:
    """An ``Object.Field`` pair derived from a field metadata path."""

    object_name: str
    field_name: str

    @classmethod
    def from_path(cls, path) -> 'FieldReference':
        """Given ``path/to/Object__c/fields/Field__c.field-meta.xml`` return Object__c / Field__c."""
        parts = PurePath(str(path).replace('\\', '/')).parts
        if len(parts) < 3:
            raise ValueError(f"Not a field metadata path: {path}")
        object_name = parts[-3]
        field_name = parts[-1].split('.', 1)[0]
        if not object_name or not field_name:
            raise ValueError(f"Not a field metadata path: {path}")
        return cls(object_name, field_name)

    @property
    def api_name(self) -> str:
        return f"{self.object_name}.{self.field_name}"

    def __str__(self):
        return self.api_name


@dataclass(frozen=True)
class FieldMetadataDocument:
    """The parts of a CustomField definition the eligibility filter looks at."""

    path: Path
    full_name: str | None
    required: str | None
    field_type: str | None


@dataclass(frozen=True)
class FieldPermissionEntry:
    field: str
    readable: str = 'true'
    editable: str = 'true'

    def to_element(self, prefix: str = '') -> ET.Element:
        fp = ET.Element(f'{prefix}fieldPermissions')
        ET.SubElement(fp, f'{prefix}editable').text = self.editable
        ET.SubElement(fp, f'{prefix}field').text = self.field
        ET.SubElement(fp, f'{prefix}readable').text = self.readable
        return fp


@dataclass(frozen=True)
class PermissionSetDocument:
    """A parsed permission set plus the field permissions appended to it in this run.

    The source root is never modified; ``to_tree`` renders a fresh copy.
    """

    root: ET.Element
    existing: tuple[FieldPermissionEntry, ...]
    appended: tuple[FieldPermissionEntry, ...] = field(default=())

    @classmethod
    def from_root(cls, root: ET.Element) -> 'PermissionSetDocument':
        existing = []
        for child in root:
            if _local_name(child.tag) != 'fieldPermissions':
                continue
            existing.append(
                FieldPermissionEntry(
                    field=_child_text(child, 'field') or '',
                    readable=_child_text(child, 'readable') or 'false',
                    editable=_child_text(child, 'editable') or 'false',
                )
            )
        return cls(root=root, existing=tuple(existing))

    @property
    def entries(self) -> tuple[FieldPermissionEntry, ...]:
        return self.existing + self.appended

    def has_field(self, reference: FieldReference) -> bool:
        api_name = reference.api_name
        return any(entry.field == api_name for entry in self.entries)

    def missing_fields(self, references) -> list[FieldReference]:
        """References with no field permission entry, without duplicates, in input order."""
        missing = []
        seen = set()
        for reference in references:
            if reference in seen or self.has_field(reference):
                continue
            seen.add(reference)
            missing.append(reference)
        return missing

    def with_entries_appended(self, entries) -> 'PermissionSetDocument':
        return replace(self, appended=self.appended + tuple(entries))

    def to_tree(self) -> ET.ElementTree:
        root = copy.deepcopy(self.root)
        if self.appended:
            prefix = _namespace_prefix(root)
            parent, index = _find_insertion_point(root, 'fieldPermissions')
            for offset, entry in enumerate(self.appended):
                element = entry.to_element(prefix)
                if index is None:
                    parent.append(element)
                else:
                    parent.insert(index + offset, element)
        return ET.ElementTree(root)


def _find_insertion_point(root: ET.Element, new_element_tag: str) -> tuple[ET.Element, int | None]:
    """Index after the last ``new_element_tag`` (or its predecessors); None means append."""
    current_tag_index = PERMISSIONSET_ORDER.index(new_element_tag)
    insertion_index = None
    children = list(root)

    for child_idx, child in enumerate(children):
        name = _local_name(child.tag)
        if name not in PERMISSIONSET_ORDER:
            continue
        if name == new_element_tag or PERMISSIONSET_ORDER.index(name) < current_tag_index:
            insertion_index = child_idx + 1

    if insertion_index is not None:
        return root, insertion_index

    for child_idx, child in enumerate(children):
        name = _local_name(child.tag)
        if name in PERMISSIONSET_ORDER and PERMISSIONSET_ORDER.index(name) > current_tag_index:
            return root, child_idx
    return root, None


def _parse(path: Path, kind: str) -> ET.Element:
    try:
        return ET.parse(path).getroot()
    except FileNotFoundError as exc:
        raise MetadataParseError(f"{kind} file not found: {path}") from exc
    except ET.ParseError as exc:
        raise MetadataParseError(f"Error parsing {kind} XML {path}: {exc}") from exc
    except OSError as exc:
        raise FileIOError(f"Error reading {kind} file {path}: {exc}") from exc


def permission_set_path(permset_dir, name: str) -> Path:
    """Path of the named permission set file inside ``permset_dir``."""
    return Path(permset_dir) / f'{name}{PERMISSIONSET_SUFFIX}'


def load_field_metadata(path) -> FieldMetadataDocument:
    """Parse a CustomField file into the values the eligibility filter needs."""
    root = _parse(Path(path), 'field metadata')
    return FieldMetadataDocument(
        path=Path(path),
        full_name=_child_text(root, 'fullName'),
        required=_child_text(root, 'required'),
        field_type=_child_text(root, 'type'),
    )


def load_permission_set(path) -> PermissionSetDocument:
    """Parse a permission set file; missing or malformed files raise MetadataParseError."""
    root = _parse(Path(path), 'permission set')
    if _local_name(root.tag) != 'PermissionSet':
        raise MetadataParseError(
            f"Expected a PermissionSet document in {path}, found <{_local_name(root.tag)}>."
        )
    return PermissionSetDocument.from_root(root)


def save_permission_set(path, document: PermissionSetDocument) -> None:
    """Rewrite the whole file. Not atomic: an interrupted write leaves a truncated file."""
    tree = document.to_tree()
    ET.indent(tree, space="    ")
    try:
        Path(path).parent.mkdir(parents=True, exist_ok=True)
        tree.write(path, encoding='UTF-8', xml_declaration=True)
    except OSError as exc:
        raise FileIOError(f"Error writing permission set {path}: {exc}") from exc
