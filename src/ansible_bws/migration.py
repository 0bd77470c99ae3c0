# Migration run state and orchestration for ansible-bws

# Standard library imports
import os
from enum import StrEnum
from datetime import datetime
from typing import Protocol, Callable, Iterable, Any

# Internal module imports
from .naming import derive_name, NameRegistry
from .util import redact, truncate, version_older
from .vault import VaultFile, SecretEntry, FlattenPolicy, discover_vault_files, check_ansible_layout, extract_secrets
from .errors import FatalMigrationError, FileLevelError, EntryLevelError, NamingCollisionError, DuplicateNameError
from .constants import (
    DEFAULT_ENVIRONMENT, DEFAULT_VAULT_PATTERNS, REQUIRED_ANSIBLE_VERSION, REQUIRED_BWS_VERSION, TIMESTAMP_FORMAT,
    EXIT_OK, EXIT_FAILURES, EXIT_FATAL
)

# Console output callback: (level, message), with level being one of debug/info/good/warn/bad
Output = Callable[[str, str], None]

def _ignore(*_: Any) -> None:
    pass

class MigrationState(StrEnum):
    '''Lifecycle of a migration run.'''
    INIT = 'init'
    AUTHENTICATING = 'authenticating'
    DISCOVERING = 'discovering'
    PROCESSING_FILE = 'processing-file'
    FINALIZING = 'finalizing'
    REPORTING = 'reporting'
    DONE = 'done'
    ABORTED = 'aborted'

class Status(StrEnum):
    '''Outcome of a single secret.'''
    CREATED = 'created'
    SKIPPED_DRY_RUN = 'skipped-dry-run'
    FAILED = 'failed'

# Adapter interfaces, so fakes can stand in for the external tools

class Decryptor(Protocol):
    def version(self) -> str | None: ...
    def decrypt(self, vault_file: VaultFile) -> bytes: ...

class SecretStore(Protocol):
    def version(self) -> str | None: ...
    def authenticate(self) -> None: ...
    def list_existing(self, project_id: str | None = None) -> set[str]: ...
    def create(self, name: str, value: str, project_id: str | None = None) -> str: ...

class RunWriter(Protocol):
    def write(self, run: 'MigrationRun') -> Any: ...

class MigrationConfig():
    '''Settings of one migration run.'''

    def __init__(
        self, ansible_dirs: Iterable[str], environment: str = DEFAULT_ENVIRONMENT, project_id: str | None = None,
        dry_run: bool = False, patterns: Iterable[str] = DEFAULT_VAULT_PATTERNS, policy: FlattenPolicy | None = None
    ) -> None:
        self.ansible_dirs: list[str] = [ os.path.abspath(path) for path in ansible_dirs ]
        self.environment: str = environment
        self.project_id: str | None = project_id or None
        self.dry_run: bool = dry_run
        self.patterns: tuple[str, ...] = tuple(patterns)
        self.policy: FlattenPolicy = policy or FlattenPolicy()

    def __repr__(self) -> str:
        return f"MigrationConfig({ ', '.join(self.ansible_dirs) }, env={ self.environment }, dry_run={ self.dry_run })"

class MigrationResult():
    '''Outcome of migrating one secret. Error details are redacted and never contain the secret's value.'''

    def __init__(
        self, status: Status, secret_id: str = '', error_detail: str = '', error_kind: str = '', conflict: bool = False
    ) -> None:
        self.status: Status = status
        self.secret_id: str = secret_id
        self.error_detail: str = error_detail
        self.error_kind: str = error_kind
        self.conflict: bool = conflict

    @staticmethod
    def failed(error: EntryLevelError, secrets: Iterable[str] = (), conflict: bool = False) -> 'MigrationResult':
        '''Creates a failed result from an entry-level error, redacting the given secrets from its message.'''
        return MigrationResult(
            Status.FAILED, error_detail=truncate(redact(str(error), secrets)), error_kind=error.kind, conflict=conflict
        )

    def __repr__(self) -> str:
        return f"MigrationResult({ self.status }{ ', ' + self.error_kind if self.error_kind else '' })"

class MigrationRun():
    '''
    The accumulated state of one migration: counters, the result of every secret in discovery order,
    file-level errors and warnings. All problems are stored as sanitized text only.

    A run is finalized exactly once. Afterwards it is read-only and any attempt to change it raises a `RuntimeError`.
    '''

    def __init__(self, config: MigrationConfig, started_at: datetime | None = None) -> None:
        self.config: MigrationConfig = config
        self.started_at: datetime = started_at or datetime.now()
        self.state: MigrationState = MigrationState.INIT
        self.files_processed: int = 0
        self.files_skipped: int = 0
        self.secrets_discovered: int = 0
        self.secrets_created: int = 0
        self.errors: int = 0
        self.entries: list[tuple[SecretEntry, MigrationResult]] = []
        self.file_errors: list[tuple[str, str]] = []
        self.warnings: list[str] = []
        self.abort_reason: str | None = None
        self.interrupted: bool = False
        self._finalized: bool = False

    @property
    def timestamp(self) -> str:
        '''Start time formatted for artifact filenames.'''
        return self.started_at.strftime(TIMESTAMP_FORMAT)

    @property
    def finalized(self) -> bool:
        return self._finalized

    def _check_open(self) -> None:
        if self._finalized:
            raise RuntimeError('Migration run has already been finalized')

    def add_discovered(self, amount: int) -> None:
        self._check_open()
        self.secrets_discovered += amount

    def add_file(self) -> None:
        self._check_open()
        self.files_processed += 1

    def skip_file(self) -> None:
        self._check_open()
        self.files_skipped += 1

    def record(self, entry: SecretEntry, result: MigrationResult) -> None:
        '''Stores the outcome of a secret and updates the counters.'''
        self._check_open()
        self.entries.append(( entry, result ))
        if result.status == Status.CREATED:
            self.secrets_created += 1
        elif result.status == Status.FAILED:
            self.errors += 1

    def record_file_error(self, path: str, detail: str) -> None:
        self._check_open()
        self.file_errors.append(( path, detail ))
        self.errors += 1

    def warn(self, message: str) -> None:
        self._check_open()
        self.warnings.append(message)

    def abort(self, reason: str) -> None:
        self._check_open()
        self.abort_reason = reason
        self.state = MigrationState.ABORTED

    def interrupt(self) -> None:
        self._check_open()
        self.interrupted = True

    def finalize(self) -> None:
        '''Freezes the run. Its `state` still follows the remaining lifecycle steps.'''
        self._check_open()
        self._finalized = True

    @property
    def conflicts(self) -> list[tuple[SecretEntry, MigrationResult]]:
        return [ ( entry, result ) for entry, result in self.entries if result.conflict ]

    @property
    def failures(self) -> list[tuple[SecretEntry, MigrationResult]]:
        return [ ( entry, result ) for entry, result in self.entries if result.status == Status.FAILED ]

    @property
    def exit_code(self) -> int:
        '''2 if the run was aborted, 1 if anything failed or the run was interrupted, else 0.'''
        if self.abort_reason is not None:
            return EXIT_FATAL
        if self.errors or self.interrupted:
            return EXIT_FAILURES
        return EXIT_OK

    def summary(self) -> dict[str, Any]:
        '''The run's key figures as a JSON-compatible dictionary. Contains no secret values.'''
        return {
            'started_at': self.started_at.isoformat(timespec='seconds'),
            'ansible_dirs': self.config.ansible_dirs,
            'environment': self.config.environment,
            'project_id': self.config.project_id,
            'dry_run': self.config.dry_run,
            'state': str(self.state),
            'files_processed': self.files_processed,
            'files_skipped': self.files_skipped,
            'secrets_discovered': self.secrets_discovered,
            'secrets_created': self.secrets_created,
            'errors': self.errors,
            'conflicts': len(self.conflicts),
            'interrupted': self.interrupted,
            'abort_reason': self.abort_reason,
            'exit_code': self.exit_code
        }

    def __repr__(self) -> str:
        return f"MigrationRun({ self.timestamp }, { self.state }, { self.secrets_created }/{ self.secrets_discovered } created)"

class Migrator():
    '''
    Drives a migration run: authenticate, discover vault files, then decrypt, extract, name and create each secret.

    Problems are isolated as far as possible. A failing file or secret is recorded and the run moves on,
    so every discovered secret is attempted. Only fatal errors (missing tools, a rejected access token,
    no readable directories) abort the run, which is still finalized and reported afterwards.
    '''

    def __init__(
        self, config: MigrationConfig, decryptor: Decryptor, store: SecretStore,
        writer: RunWriter | None = None, output: Output = _ignore
    ) -> None:
        '''
        Create an orchestrator for the given config and adapters.
        `writer` (a `report.ReportWriter`) receives the finalized run, its artifact paths are stored in `report_paths`.
        `output` receives progress messages, which never contain secret values.
        '''
        self.config: MigrationConfig = config
        self.decryptor: Decryptor = decryptor
        self.store: SecretStore = store
        self.writer: RunWriter | None = writer
        self.output: Output = output
        self.report_paths: Any | None = None
        self._registry: NameRegistry = NameRegistry()
        self._existing: frozenset[str] = frozenset()
        self._cancelled: bool = False

    def cancel(self) -> None:
        '''Stops the run after the current secret. The run is marked as interrupted and still reported.'''
        self._cancelled = True

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def _enter(self, run: MigrationRun, state: MigrationState) -> None:
        self.output('debug', f"State: { run.state } -> { state }")
        run.state = state

    def _warn(self, run: MigrationRun, message: str) -> None:
        run.warn(message)
        self.output('warn', message)

    def run(self) -> MigrationRun:
        '''
        Executes the migration and returns the finalized run.
        Fatal errors don't propagate but abort the run, which can be checked via `MigrationRun.abort_reason`.
        Errors while writing the report (`OSError`) are raised.
        '''
        run = MigrationRun(self.config)
        try:
            self._authenticate(run)
            vault_files: list[VaultFile] = self._discover(run)
            for vault_file in vault_files:
                if self._cancelled:
                    break
                self._process_file(run, vault_file)
            if self._cancelled:
                run.interrupt()
                self._warn(run, 'Migration was interrupted, remaining secrets were not migrated')
            self._enter(run, MigrationState.FINALIZING)
        except FatalMigrationError as e:
            self.output('bad', f"Migration aborted: { e }")
            run.abort(str(e))
        run.finalize()
        if self.writer is not None:
            if run.state != MigrationState.ABORTED:
                self._enter(run, MigrationState.REPORTING)
            self.report_paths = self.writer.write(run)
        if run.state != MigrationState.ABORTED:
            self._enter(run, MigrationState.DONE)
        return run

    def _authenticate(self, run: MigrationRun) -> None:
        '''Checks the tool versions and credentials and loads the names of existing secrets once.'''
        self._enter(run, MigrationState.AUTHENTICATING)
        for tool_name, tool, required in (
            ( 'ansible-vault', self.decryptor, REQUIRED_ANSIBLE_VERSION ), ( 'bws', self.store, REQUIRED_BWS_VERSION )
        ):
            version: str | None = tool.version()
            if version is None:
                self._warn(run, f"Could not determine the version of { tool_name }")
            elif version_older(version, required):
                self._warn(run, f"{ tool_name } { version } is older than the required { required }, this may cause issues")
            else:
                self.output('debug', f"Found { tool_name } { version }")
        if self.config.project_id is None and not self.config.dry_run:
            self._warn(run, 'No project ID given, bws 1.x needs one to create secrets and will likely refuse every create call')
        self.store.authenticate()
        self.output('good', 'Bitwarden Secrets Manager authentication successful')
        self._existing = frozenset(self.store.list_existing(self.config.project_id))
        self.output('debug', f"Found { len(self._existing) } existing secret(s)")

    def _discover(self, run: MigrationRun) -> list[VaultFile]:
        self._enter(run, MigrationState.DISCOVERING)
        for root in self.config.ansible_dirs:
            if os.path.isdir(root) and not check_ansible_layout(root):
                self._warn(run, f"{ root } has no group_vars or host_vars directory, it might not be an Ansible directory")
        def _on_skip(path: str, reason: str) -> None:
            run.skip_file()
            self.output('debug', f"Skipping { path }: { reason }")
        def _on_warning(path: str, reason: str) -> None:
            self._warn(run, f"{ path }: { reason }")
        vault_files: list[VaultFile] = list(
            discover_vault_files(self.config.ansible_dirs, self.config.patterns, on_skip=_on_skip, on_warning=_on_warning)
        )
        if vault_files:
            self.output('info', f"Found { len(vault_files) } vault file(s)")
        else:
            self._warn(run, 'No vault files found')
        return vault_files

    def _process_file(self, run: MigrationRun, vault_file: VaultFile) -> None:
        '''Decrypts one vault file and migrates its secrets. File-level errors are recorded and skip the file.'''
        self._enter(run, MigrationState.PROCESSING_FILE)
        self.output('info', f"Processing { vault_file.path }")
        def _on_skip(key: str, reason: str) -> None:
            self._warn(run, f"Skipped { key } in { vault_file.path }: { reason }")
        try:
            content: bytes = self.decryptor.decrypt(vault_file)
            entries: list[SecretEntry] = extract_secrets(content, vault_file, self.config.policy, on_skip=_on_skip)
        except FileLevelError as e:
            run.record_file_error(vault_file.path, truncate(str(e)))
            self.output('bad', f"Skipping { vault_file.path }: { e }")
            return
        del content
        run.add_file()
        run.add_discovered(len(entries))
        if not entries:
            self._warn(run, f"No secrets found in { vault_file.path }")
            return
        self.output('debug', f"Extracted { len(entries) } secret(s) from { vault_file.path }")
        for entry in entries:
            if self._cancelled:
                return
            self._migrate_entry(run, entry)

    def _migrate_entry(self, run: MigrationRun, entry: SecretEntry) -> None:
        '''Names and creates a single secret, recording the outcome.'''
        entry.target_name = derive_name(self.config.environment, entry.source_file.service_name, entry.original_key)
        self.output('debug', f"{ entry.original_key } -> { entry.target_name }")
        try:
            self._registry.claim(entry)
        except NamingCollisionError as e:
            self._fail(run, entry, MigrationResult.failed(e, conflict=True))
            return
        if entry.target_name in self._existing:
            error = DuplicateNameError(f"A secret named { entry.target_name } already exists")
            self._fail(run, entry, MigrationResult.failed(error, conflict=True))
            return
        if self.config.dry_run:
            run.record(entry, MigrationResult(Status.SKIPPED_DRY_RUN))
            self.output('info', f"[dry run] Would create { entry.target_name }")
            return
        try:
            secret_id: str = self.store.create(entry.target_name, entry.value, self.config.project_id)
        except EntryLevelError as e:
            conflict: bool = isinstance(e, DuplicateNameError)
            self._fail(run, entry, MigrationResult.failed(e, secrets=[ entry.value ], conflict=conflict))
            return
        run.record(entry, MigrationResult(Status.CREATED, secret_id=secret_id))
        self.output('good', f"Created { entry.target_name } ({ secret_id })")

    def _fail(self, run: MigrationRun, entry: SecretEntry, result: MigrationResult) -> None:
        run.record(entry, result)
        self.output('bad', f"Failed to migrate { entry.original_key } from { entry.source_file.path }: { result.error_detail }")

    def __repr__(self) -> str:
        return f"Migrator({ self.config })"
