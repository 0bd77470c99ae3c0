# Report, mapping and error log writer for ansible-bws

# Standard library imports
import os, csv
from typing import IO, Iterator

# Internal module imports
from .migration import MigrationRun, MigrationState, Status
from .constants import REPORT_FILENAME, MAPPING_FILENAME, ERROR_LOG_FILENAME, MAPPING_COLUMNS, octal

class ReportPaths():
    '''Where the artifacts of a run were written to. `error_log` is None if the run had no errors.'''

    def __init__(self, report: str, mapping: str, error_log: str | None = None) -> None:
        self.report: str = report
        self.mapping: str = mapping
        self.error_log: str | None = error_log

    def as_dict(self) -> dict[str, str | None]:
        return { 'report': self.report, 'mapping': self.mapping, 'error_log': self.error_log }

    def __repr__(self) -> str:
        return f"ReportPaths({ self.report }, { self.mapping }, { self.error_log })"

class ReportWriter():
    '''
    Writes the artifacts of a finalized migration run into an output directory, all named after the run's start time:
    - `migration-report-<timestamp>.txt`: a human-readable summary with statistics, conflicts and errors
    - `secret-mapping-<timestamp>.csv`: one row per secret, mapping its origin to its new name and ID
    - `errors-<timestamp>.log`: every file- and entry-level error, only written if there were any

    Secret values are never written. The directory is created private to the user (0700) and so are the files (0600).
    Existing files are never overwritten, a numeric suffix is added to the name instead.
    '''

    DIR_MODE: octal = 0o700
    FILE_MODE: octal = 0o600
    OUTER_SEP: str = '=' * 64
    INNER_SEP: str = '-' * 64

    def __init__(self, output_dir: str) -> None:
        self.output_dir: str = os.path.abspath(output_dir)

    def write(self, run: MigrationRun) -> ReportPaths:
        '''Writes all artifacts of a finalized run and returns their paths. Raises an `OSError` if writing fails.'''
        if not run.finalized:
            raise ValueError('Only finalized migration runs can be reported')
        if not os.path.isdir(self.output_dir):
            os.makedirs(self.output_dir, mode=ReportWriter.DIR_MODE)
        mapping_path: str = self._write_mapping(run)
        error_log_path: str | None = self._write_error_log(run) if run.errors or run.abort_reason else None
        # The report lists the other artifacts, so it comes last
        report_path, report_file = self._open_new(REPORT_FILENAME.format(timestamp=run.timestamp))
        paths = ReportPaths(report_path, mapping_path, error_log_path)
        with report_file:
            report_file.write('\n'.join(self.format_report(run, paths)) + '\n')
        return paths

    def _open_new(self, filename: str, newline: str | None = None) -> tuple[str, IO[str]]:
        '''Creates a new file with restricted permissions, adding a suffix (`-1`, `-2`, ...) if the name is taken.'''
        stem, extension = os.path.splitext(filename)
        suffix: int = 0
        while True:
            path: str = os.path.join(self.output_dir, f"{ stem }-{ suffix }{ extension }" if suffix else filename)
            try:
                fd: int = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, ReportWriter.FILE_MODE)
            except FileExistsError:
                suffix += 1
                continue
            return path, os.fdopen(fd, 'w', encoding='utf-8', newline=newline)

    def _write_mapping(self, run: MigrationRun) -> str:
        path, file = self._open_new(MAPPING_FILENAME.format(timestamp=run.timestamp), newline='')
        with file:
            writer = csv.writer(file)
            writer.writerow(MAPPING_COLUMNS)
            for entry, result in run.entries:
                writer.writerow([ entry.source_file.path, entry.original_key, entry.target_name, result.secret_id, result.status ])
        return path

    def _write_error_log(self, run: MigrationRun) -> str:
        path, file = self._open_new(ERROR_LOG_FILENAME.format(timestamp=run.timestamp))
        with file:
            for line in self.format_errors(run):
                file.write(line + '\n')
        return path

    @staticmethod
    def format_errors(run: MigrationRun) -> Iterator[str]:
        '''Yields one line per error: `[<kind>] <file>[: <key>]: <detail>`.'''
        if run.abort_reason:
            yield f"[fatal] { run.abort_reason }"
        for path, detail in run.file_errors:
            yield f"[file-error] { path }: { detail }"
        for entry, result in run.failures:
            yield f"[{ result.error_kind }] { entry.source_file.path }: { entry.original_key }: { result.error_detail }"

    def format_report(self, run: MigrationRun, paths: ReportPaths) -> list[str]:
        '''Builds the lines of the prose report.'''
        config = run.config
        if run.state == MigrationState.ABORTED:
            outcome: str = f"ABORTED ({ run.abort_reason })"
        elif run.interrupted:
            outcome = 'INTERRUPTED'
        elif run.errors:
            outcome = f"COMPLETED WITH { run.errors } ERROR(S)"
        else:
            outcome = 'COMPLETED'
        lines: list[str] = [
            ReportWriter.OUTER_SEP,
            'Ansible Vault to Bitwarden Secrets Manager Migration Report',
            ReportWriter.OUTER_SEP,
            '',
            f"Date: { run.started_at.isoformat(sep=' ', timespec='seconds') }",
            f"Ansible Directory: { ', '.join(config.ansible_dirs) }",
            f"Environment: { config.environment }",
            f"Project ID: { config.project_id or '(none)' }",
            f"Dry Run: { 'yes' if config.dry_run else 'no' }",
            f"Result: { outcome }",
            '',
            'Statistics',
            ReportWriter.INNER_SEP,
            f"Files Processed: { run.files_processed }",
            f"Files Skipped: { run.files_skipped }",
            f"Secrets Discovered: { run.secrets_discovered }",
            f"Secrets Created: { run.secrets_created }",
            f"Secrets Skipped (dry run): { sum(result.status == Status.SKIPPED_DRY_RUN for _, result in run.entries) }",
            f"Conflicts: { len(run.conflicts) }",
            f"Errors: { run.errors }",
            ''
        ]
        if run.conflicts:
            lines += [ 'Conflicts (manual resolution required)', ReportWriter.INNER_SEP ]
            lines += [
                f"- { entry.target_name } <- { entry.original_key } in { entry.source_file.path } ({ result.error_kind })"
                for entry, result in run.conflicts
            ]
            lines.append('')
        errors: list[str] = list(ReportWriter.format_errors(run))
        if errors:
            lines += [ 'Errors', ReportWriter.INNER_SEP ] + [ f"- { line }" for line in errors ] + [ '' ]
        if run.warnings:
            lines += [ 'Warnings', ReportWriter.INNER_SEP ] + [ f"- { warning }" for warning in run.warnings ] + [ '' ]
        lines += [
            'Output Files',
            ReportWriter.INNER_SEP,
            f"Report: { paths.report }",
            f"Secret Mapping: { paths.mapping }"
        ]
        if paths.error_log:
            lines.append(f"Error Log: { paths.error_log }")
        lines += [
            '',
            'Next Steps',
            ReportWriter.INNER_SEP,
            f"1. Review the secret mapping file: { paths.mapping }",
            '2. Update Ansible playbooks to use the Bitwarden lookup:',
            '   OLD: variable: "{{ vault_variable_name }}"',
            '   NEW: variable: "{{ lookup(\'bitwarden.secrets.lookup\', \'<bws secret id>\') }}"',
            '3. Test the playbooks in a staging environment',
            '4. Archive the vault files after a successful migration'
        ]
        if config.dry_run:
            lines.append('This was a dry run, no secrets were created. Run again without --dry-run to migrate.')
        return lines
