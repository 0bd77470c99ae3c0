# Vault file discovery and secret extraction for ansible-bws

# Standard library imports
import os, re, json
from io import BytesIO
from fnmatch import fnmatch
from datetime import date, datetime
from typing import Type, Hashable, Callable, Iterator, Iterable, Any

# External library imports
from ansible.parsing.vault import is_encrypted
from ruamel.yaml import YAML
from ruamel.yaml.nodes import ScalarNode
from ruamel.yaml.constructor import Constructor

# Internal module imports
from .errors import NoReadableRootsError, YAMLFormatError
from .constants import VAULT_HEADER_MARKER, DEFAULT_VAULT_PATTERNS, TEMPLATE_SUFFIX, ANSIBLE_LAYOUT_DIRS, VAULT_VAR_PREFIX, KeyPath

# Callback signature for skipped items and warnings: (path or key, reason)
Notifier = Callable[[str, str], None]

def _ignore(*_: Any) -> None:
    pass

class VaultFile():
    '''
    A discovered, vault-encrypted YAML file. The service name used in secret names is inferred from the filename.
    This class should be treated as static.
    '''

    def __init__(self, path: str) -> None:
        self.path: str = os.path.abspath(path)
        self.service_name: str = VaultFile.infer_service_name(self.path)

    @staticmethod
    def infer_service_name(path: str) -> str:
        '''
        Derives a kebab-case service name from a vault file path by dropping the directory, the extension and any `vault` token.
        `pihole_vault.yml` becomes `pihole`, `vault-tor-relay.yaml` becomes `tor-relay`.
        For the common `group_vars/<group>/vault.yml` layout nothing is left, so the parent directory's name is used.
        '''
        stem: str = os.path.splitext(os.path.basename(path))[0]
        tokens: list[str] = [ token for token in re.split(r'[^A-Za-z0-9]+', stem) if token and token.lower() != 'vault' ]
        if not tokens:
            parent: str = os.path.basename(os.path.dirname(os.path.abspath(path)))
            tokens = [ token for token in re.split(r'[^A-Za-z0-9]+', parent) if token ]
        return '-'.join(tokens).lower()

    def __eq__(self, __o: object) -> bool:
        return type(__o) is VaultFile and __o.path == self.path

    def __hash__(self) -> int:
        return hash(self.path)

    def __repr__(self) -> str:
        return f"VaultFile({ self.path })"

# Discovery

def check_ansible_layout(root: str) -> bool:
    '''Checks if a directory looks like an Ansible inventory (has `group_vars` or `host_vars`).'''
    return any(os.path.isdir(os.path.join(root, name)) for name in ANSIBLE_LAYOUT_DIRS)

def matches_vault_pattern(filename: str, patterns: Iterable[str] = DEFAULT_VAULT_PATTERNS) -> bool:
    '''Checks a basename against the vault filename globs (case-insensitive). Templates never match.'''
    name: str = filename.lower()
    if name.endswith(TEMPLATE_SUFFIX):
        return False
    return any(fnmatch(name, pattern.lower()) for pattern in patterns)

def has_vault_header(path: str) -> bool:
    '''Peeks at the first line of a file and checks for the Ansible vault ciphertext header. Raises `OSError` if unreadable.'''
    with open(path, 'rb') as file:
        first_line: bytes = file.readline(256)
    first_line = first_line.strip()
    return is_encrypted(first_line) and first_line.startswith(VAULT_HEADER_MARKER.encode())

def discover_vault_files(
    roots: Iterable[str], patterns: Iterable[str] = DEFAULT_VAULT_PATTERNS,
    on_skip: Notifier = _ignore, on_warning: Notifier = _ignore
) -> Iterator[VaultFile]:
    '''
    Recursively scans the root directories for vault files and yields them sorted by path.
    A file qualifies if its name matches one of the `patterns` (see `matches_vault_pattern`) and its first line is a vault header.

    Symlinks are followed, but directory loops are detected and every real file is only yielded once.
    Matching files without a vault header and `.template` copies of vault files are passed to `on_skip`, they are expected next to vaults.
    Unreadable roots, directories and files are passed to `on_warning` and left out.
    If not a single root is a readable directory, a `NoReadableRootsError` is raised before anything is yielded.
    '''
    patterns = tuple(patterns)
    readable_roots: list[str] = []
    for root in roots:
        root = os.path.abspath(root)
        if os.path.isdir(root) and os.access(root, os.R_OK | os.X_OK):
            readable_roots.append(root)
        else:
            on_warning(root, 'directory does not exist or is not readable')
    if not readable_roots:
        raise NoReadableRootsError('None of the directories to scan could be read')
    # Collect candidates first so we can sort, header checks happen lazily afterwards
    candidates: dict[str, str] = {}
    visited_dirs: set[tuple[int, int]] = set()
    for root in readable_roots:
        def _walk_error(error: OSError) -> None:
            on_warning(str(error.filename or root), f"could not read directory ({ error.strerror or error })")
        for dir_path, dir_names, file_names in os.walk(root, followlinks=True, onerror=_walk_error):
            try:
                stat: os.stat_result = os.stat(dir_path)
            except OSError as e:
                on_warning(dir_path, f"could not read directory ({ e.strerror or e })")
                dir_names.clear()
                continue
            # A directory we've already walked means a symlink loop or a second root inside the first one
            if (stat.st_dev, stat.st_ino) in visited_dirs:
                dir_names.clear()
                continue
            visited_dirs.add(( stat.st_dev, stat.st_ino ))
            dir_names.sort()
            for file_name in file_names:
                path: str = os.path.join(dir_path, file_name)
                if file_name.lower().endswith(TEMPLATE_SUFFIX):
                    if matches_vault_pattern(file_name[:-len(TEMPLATE_SUFFIX)], patterns):
                        on_skip(path, 'template file')
                    continue
                if not matches_vault_pattern(file_name, patterns):
                    continue
                candidates.setdefault(os.path.realpath(path), path)
    for path in sorted(candidates.values()):
        try:
            if not has_vault_header(path):
                on_skip(path, 'not vault-encrypted')
                continue
        except OSError as e:
            on_warning(path, f"could not read file ({ e.strerror or e })")
            continue
        yield VaultFile(path)

# Extraction

class EncryptedVar():
    '''
    A single `!vault` encrypted variable found inside decrypted vault content.
    Its value is still ciphertext and can not be migrated as-is.
    '''

    def __init__(self, cipher: str) -> None:
        self.cipher: str = cipher

    def __repr__(self) -> str:
        return 'EncryptedVar(<cipher>)'

    # ruamel.yaml loader converter

    yaml_tag: str = u'!vault'

    @classmethod
    def from_yaml(EncryptedVar: Type['EncryptedVar'], constructor: Constructor, node: ScalarNode) -> 'EncryptedVar':
        cipher: Any = constructor.construct_scalar(node)
        if not isinstance(cipher, str):
            raise TypeError(f"Expected encrypted value to be a str, but got { type(cipher) }")
        return EncryptedVar(cipher)

class SecretEntry():
    '''
    One secret extracted from a vault file, identified by the dotted path of its key.
    The `target_name` is assigned by the naming policy before migrating.
    The value is left out of `repr` and must never end up in output.
    '''

    def __init__(self, source_file: VaultFile, original_key: str, value: str) -> None:
        self.source_file: VaultFile = source_file
        self.original_key: str = original_key
        self.value: str = value
        self.target_name: str = ''

    def __repr__(self) -> str:
        return f"SecretEntry({ self.source_file.path }: { self.original_key })"

class FlattenPolicy():
    '''
    Decides which top-level keys are flattened into one secret per leaf and which are kept as a single opaque secret.

    By convention, variables named `vault_*` hold individual secrets, so they are flattened (`vault_users.0.password`, ...).
    Any other top-level key holding a mapping or sequence is treated as one secret blob (e.g. a whole encrypted config)
    and serialized to JSON once, unless `serialize_unprefixed` is disabled.
    Files matching one of the `opaque_files` globs have every non-scalar top-level key serialized, prefix or not.
    '''

    def __init__(self, secret_prefix: str = VAULT_VAR_PREFIX, serialize_unprefixed: bool = True, opaque_files: Iterable[str] = ()) -> None:
        self.secret_prefix: str = secret_prefix
        self.serialize_unprefixed: bool = serialize_unprefixed
        self.opaque_files: tuple[str, ...] = tuple(opaque_files)

    def is_opaque(self, key: str, value: Any, source_file: VaultFile) -> bool:
        '''Checks if a top-level key's value should be migrated as one serialized secret.'''
        if not isinstance(value, dict | list) or not value:
            return False
        filename: str = os.path.basename(source_file.path).lower()
        if any(fnmatch(filename, pattern.lower()) for pattern in self.opaque_files):
            return True
        return self.serialize_unprefixed and not key.startswith(self.secret_prefix)

    def __repr__(self) -> str:
        return f"FlattenPolicy(prefix={ self.secret_prefix }, serialize_unprefixed={ self.serialize_unprefixed })"

def _make_parser() -> YAML:
    '''Creates a safe YAML parser which loads inline `!vault` values as `EncryptedVar`s instead of failing.'''
    parser = YAML(typ='safe', pure=True)
    parser.allow_duplicate_keys = False
    parser.register_class(EncryptedVar)
    return parser

def to_text(value: Any) -> str:
    '''Converts a scalar into its canonical text form. Booleans become `true`/`false` like in YAML.'''
    if isinstance(value, bool):
        return 'true' if value else 'false'
    if isinstance(value, datetime | date):
        return value.isoformat()
    if isinstance(value, bytes):
        return value.decode('utf-8', errors='replace')
    return str(value)

def _json_default(value: Any) -> Any:
    '''Fallback for values JSON can't represent natively (dates, binary).'''
    if isinstance(value, EncryptedVar):
        raise TypeError('contains an inline !vault value')
    return to_text(value)

def serialize(value: Any) -> str:
    '''Serializes a mapping/sequence into a compact JSON string, keeping key order.'''
    return json.dumps(value, default=_json_default, ensure_ascii=False, separators=(',', ':'))

def _transform_leaves(
    value: Any, visit_fn: Callable[[KeyPath, Any], None], curr_path: KeyPath, parents: tuple[int, ...] = ()
) -> None:
    '''
    Walks the tree depth-first and calls `visit_fn` with the path and value of every leaf, in document order.
    `parents` holds the ids of the enclosing containers. A container nested in itself through a YAML alias
    raises a `YAMLFormatError`, while aliases that only repeat a node elsewhere are walked normally.
    '''
    if isinstance(value, dict | list):
        if id(value) in parents:
            raise YAMLFormatError(f"Decrypted content contains a self-referencing anchor at { format_key(curr_path) }")
        keys: list[Hashable] = list(value.keys()) if isinstance(value, dict) else list(range(len(value)))
        for key in keys:
            _transform_leaves(value[key], visit_fn, curr_path + ( key, ), parents + ( id(value), )) # type: ignore
    else:
        visit_fn(curr_path, value)

def format_key(path: KeyPath) -> str:
    '''Formats a traversal path as a dotted key (`tor_exit_nodes.0.ip`).'''
    return '.'.join(map(to_text, path))

def load_tree(yaml_content: bytes | str) -> Any:
    '''Parses decrypted YAML into plain dicts, lists and scalars. Raises a `YAMLFormatError` for invalid YAML.'''
    try:
        stream = BytesIO(yaml_content) if isinstance(yaml_content, bytes) else yaml_content
        return _make_parser().load(stream)
    except Exception as e:
        # The parser's message may quote the offending line, which could hold a secret
        raise YAMLFormatError(f"Decrypted content is not valid YAML ({ type(e).__name__ })", parent=e)

def extract_secrets(
    yaml_content: bytes | str, source_file: VaultFile, policy: FlattenPolicy | None = None, on_skip: Notifier = _ignore
) -> list[SecretEntry]:
    '''
    Parses decrypted vault content and returns its secrets as a flat list of `SecretEntry`s in document order.
    Keys are flattened into dotted paths, except for top-level keys the `policy` marks as opaque,
    which are serialized to JSON once. `None` values are left out (disabled or placeholder variables).
    Inline `!vault` values are passed to `on_skip` and left out, as they are still encrypted.
    If the content is empty or its root is not a mapping, no secrets are returned.
    '''
    policy = policy or FlattenPolicy()
    data: Any = load_tree(yaml_content)
    if not isinstance(data, dict):
        return []
    entries: list[SecretEntry] = []
    def _collect_leaf(path: KeyPath, value: Any) -> None:
        '''Turns a scalar leaf into a secret entry.'''
        if value is None:
            return
        if isinstance(value, EncryptedVar):
            on_skip(format_key(path), 'value is an inline !vault string')
            return
        entries.append(SecretEntry(source_file, format_key(path), to_text(value)))
    for key, value in data.items():
        key_path: KeyPath = ( key, )
        if policy.is_opaque(to_text(key), value, source_file):
            try:
                entries.append(SecretEntry(source_file, to_text(key), serialize(value)))
            except TypeError as e:
                on_skip(to_text(key), f"could not be serialized ({ e })")
            except ValueError as e:
                # json reports circular references as `ValueError`
                raise YAMLFormatError(f"Decrypted content contains a self-referencing anchor at { to_text(key) }", parent=e)
            continue
        _transform_leaves(value, _collect_leaf, key_path, ( id(data), ))
    return entries
