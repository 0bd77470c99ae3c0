#!/usr/bin/env python3
# PYTHON_ARGCOMPLETE_OK

# CLI entry point for ansible-bws

# Standard library imports
import os, sys, json, signal
from enum import StrEnum
from builtins import print as std_print
from typing import Type, Any
from argparse import ArgumentParser, Namespace, RawDescriptionHelpFormatter

# External library imports
from argcomplete import autocomplete as shell_completion
from argcomplete.completers import DirectoriesCompleter, FilesCompleter
from termcolor import colored
from pygments import highlight
from pygments.style import StyleMeta
from pygments.styles import get_style_by_name
from pygments.lexers.data import JsonLexer
from pygments.formatter import Formatter
from pygments.formatters import TerminalFormatter, Terminal256Formatter, TerminalTrueColorFormatter

# Internal module imports
from .bws import BwsClient
from .vault import FlattenPolicy
from .report import ReportWriter
from .errors import FatalMigrationError
from .migration import MigrationConfig, MigrationRun, Migrator
from .vault_crypt import VaultDecryptor, resolve_passphrase_source
from .constants import (
    VERSION, ACCESS_TOKEN_ENV, DEFAULT_ENVIRONMENT, DEFAULT_OUTPUT_DIRNAME, DEFAULT_VAULT_PATTERNS, DEFAULT_TIMEOUT,
    DEFAULT_RETRY_ATTEMPTS, DEFAULT_DECRYPT_EXECUTABLE, DEFAULT_STORE_EXECUTABLE, EXIT_FATAL
)

## CLI argument parsing

HELP: dict[str, str] = {
    'epilog': f'''
examples:

# Preview the migration of all vault files in /etc/ansible without creating any secrets
ansible-bws --dry-run
# Migrate the vaults of an inventory into a Bitwarden project, tagging all secrets as staging secrets
ansible-bws --ansible-dir ./inventory --project-id <project uuid> --environment staging
# Prompt for the vault password instead of using a password file
ansible-bws --ansible-dir ./inventory --ask-vault-password
# Keep every nested variable of `secrets_vault.yml` as one JSON secret
ansible-bws --opaque-file 'secrets_vault.yml'

tips:

- The machine account token is read from the `{ ACCESS_TOKEN_ENV }` environment variable only, it can't be passed as an argument.
- Vault files are matched by name ({ ', '.join(f"`{ pattern }`" for pattern in DEFAULT_VAULT_PATTERNS) } by default) and must be vault-encrypted.
  Plain files and `.template` files with matching names are skipped.
- Secrets are named `<environment>-<service>-<variable>`, where the service is taken from the vault's filename
  (e.g. `vault_pihole_admin_password` in `pihole_vault.yml` becomes `prod-pihole-vault-pihole-admin-password`).
- Names which already exist in the secret store, or which two variables share, are reported as conflicts and not migrated.
- Every run writes a report and a CSV mapping of variables to secret IDs into the output directory. No secret values are ever written.

exit codes:

0  all secrets were migrated (or would be, in dry-run mode)
1  some files or secrets failed, or the run was interrupted
2  the run was aborted (missing tools, invalid access token, nothing to scan)
''',
    'passphrase_args': '''
By default, the vault password is read from `<ansible dir>/.vault_password`, then from the `vault_password_file` configured
in `<ansible dir>/ansible.cfg`. If neither exists, you are prompted for it once. The password is never written anywhere.
''',
    'flatten_args': '''
Variables named `vault_*` are flattened into one secret per value (`vault_users.0.password`, ...).
Any other variable holding a dictionary or list is migrated as a single JSON secret.
'''
}

# Not using defaults directly because we also want to ignore empty values
DEFAULT_ANSIBLE_DIR: str = os.environ.get('AB_ANSIBLE_DIR', None) or '/etc/ansible'
DEFAULT_ENV_TAG: str = os.environ.get('AB_ENVIRONMENT', None) or DEFAULT_ENVIRONMENT
DEFAULT_OUTPUT_DIR: str = os.environ.get('AB_OUTPUT_DIR', None) or os.path.join('.', DEFAULT_OUTPUT_DIRNAME)
DEFAULT_COLOR_MODE: str = os.environ.get('AB_COLOR_MODE', None) or ('256' if sys.stdout.isatty() else 'none')

args: ArgumentParser = ArgumentParser(
    prog = 'ansible-bws',
    epilog = HELP['epilog'],
    formatter_class = RawDescriptionHelpFormatter,
    description = 'Migrate Ansible Vault secrets to Bitwarden Secrets Manager.'
)

# Base args

args.add_argument('--version', action='version', version=f"%(prog)s { VERSION }")
args.add_argument('--verbose', '-v', action='store_true', help='print a trace of every step (never includes secret values)')
args.add_argument(
    '--color-mode', '-C', type=str, choices=['none', 'basic', '256', 'truecolor'], default=DEFAULT_COLOR_MODE,
    help=f"set terminal color capability (default: { DEFAULT_COLOR_MODE })"
)
args.add_argument('--json', '-j', action='store_true', dest='as_json', help='print the run summary as JSON (progress goes to stderr)')

migration_args = args.add_argument_group('migration')
# This arg can be repeated (results in [ path, ... ])
migration_args.add_argument(
    '--ansible-dir', '-a', type=str, action='append', dest='ansible_dirs', default=[], metavar='<path>',
    help=f"directory to scan for vault files, can be repeated (default: { DEFAULT_ANSIBLE_DIR })"
).completer = DirectoriesCompleter() # type: ignore
migration_args.add_argument('--project-id', '-p', type=str, metavar='<id>', help='Bitwarden project to create the secrets in')
migration_args.add_argument(
    '--environment', '-e', type=str, metavar='<tag>', default=DEFAULT_ENV_TAG,
    help=f"environment tag used as the first part of secret names (default: { DEFAULT_ENV_TAG })"
)
migration_args.add_argument('--dry-run', '-n', action='store_true', help='don\'t create any secrets, only show and report what would happen')
migration_args.add_argument(
    '--output-dir', '-o', type=str, metavar='<path>', default=DEFAULT_OUTPUT_DIR,
    help=f"directory for the report, mapping and error log (default: { DEFAULT_OUTPUT_DIR })"
).completer = DirectoriesCompleter() # type: ignore
# This arg can be repeated (results in [ glob, ... ])
migration_args.add_argument(
    '--pattern', type=str, action='append', dest='patterns', default=[], metavar='<glob>',
    help=f"filename pattern of vault files, can be repeated (default: { ' '.join(DEFAULT_VAULT_PATTERNS) })"
)
migration_args.add_argument(
    '--timeout', '-t', type=float, metavar='<seconds>', default=DEFAULT_TIMEOUT,
    help=f"time limit for each call of an external tool (default: { DEFAULT_TIMEOUT:g})"
)
migration_args.add_argument(
    '--retries', type=int, metavar='<amount>', default=DEFAULT_RETRY_ATTEMPTS,
    help=f"attempts for creating a secret when the connection fails (default: { DEFAULT_RETRY_ATTEMPTS })"
)

passphrase_args = args.add_argument_group('vault password', description=HELP['passphrase_args'])
passphrase_mutex = passphrase_args.add_mutually_exclusive_group()
passphrase_mutex.add_argument(
    '--vault-password-file', type=str, metavar='<path>', help='file (or script) providing the vault password'
).completer = FilesCompleter() # type: ignore
passphrase_mutex.add_argument('--ask-vault-password', '-k', action='store_true', help='prompt for the vault password')

flatten_args = args.add_argument_group('secret extraction', description=HELP['flatten_args'])
# This arg can be repeated (results in [ glob, ... ])
flatten_args.add_argument(
    '--opaque-file', type=str, action='append', dest='opaque_files', default=[], metavar='<glob>',
    help='vault filename pattern whose nested variables are all migrated as JSON secrets, can be repeated'
)
flatten_args.add_argument('--flatten-all', action='store_true', help='flatten every nested variable into single values, regardless of its name')

tool_args = args.add_argument_group('external tools')
tool_args.add_argument(
    '--ansible-vault-executable', type=str, metavar='<path>', default=DEFAULT_DECRYPT_EXECUTABLE,
    help=f"ansible-vault command to decrypt with (default: { DEFAULT_DECRYPT_EXECUTABLE })"
)
tool_args.add_argument(
    '--bws-executable', type=str, metavar='<path>', default=DEFAULT_STORE_EXECUTABLE,
    help=f"Bitwarden Secrets Manager CLI command (default: { DEFAULT_STORE_EXECUTABLE })"
)

# Replaced by the parsed arguments in `main`
config: Namespace = Namespace(verbose=False, color_mode='none', as_json=False)

## CLI helpers

# Terminal output

class Color(StrEnum):
    '''Available terminal message colors.'''
    DEBUG = 'blue'
    INFO = 'light_cyan'
    GOOD = 'light_green'
    MEH  = 'light_yellow'
    BAD  = 'light_red'
    TITLE = 'magenta'

# Overwrite standard print function with color support
def print(msg: Any, color: Color = Color.INFO, **print_args) -> None:
    '''Outputs text to the console, coloring it unless the `color_mode` is `none`. In JSON mode, text goes to stderr.'''
    msg = colored(str(msg), color=color.value) if config.color_mode != 'none' else str(msg) # type: ignore
    if config.as_json:
        print_args.setdefault('file', sys.stderr)
    std_print(msg, **print_args)

def debug(msg: Any, prefix: str = '(debug) ', **print_args) -> None:
    '''Outputs a debug message with a prefix.'''
    if config.verbose:
        print(prefix + str(msg), Color.DEBUG, **print_args)

_LEVEL_COLORS: dict[str, Color] = { 'info': Color.INFO, 'good': Color.GOOD, 'warn': Color.MEH, 'bad': Color.BAD }

def output(level: str, msg: str) -> None:
    '''Progress callback for the migrator.'''
    if level == 'debug':
        return debug(msg)
    print(msg, _LEVEL_COLORS.get(level, Color.INFO))

# zenburn has the best differentiation between token types while still having good contrast and readability
highlight_style: StyleMeta = get_style_by_name(os.environ.get('ANSIBLE_BWS_THEME', 'zenburn'))
json_highlight_lexer = JsonLexer(stripall=True)

def print_json(code: str) -> None:
    '''Print JSON code with syntax highlighting if a `color_mode` is available.'''
    if config.color_mode == 'none':
        return std_print(code)
    _formatter: Type[Formatter] = { 'basic': TerminalFormatter, '256': Terminal256Formatter, 'truecolor': TerminalTrueColorFormatter }[config.color_mode]
    highlight_formatter: Formatter = _formatter(linenos=False, cssclass="source", style=highlight_style)
    std_print(highlight(code, json_highlight_lexer, highlight_formatter).strip('\n'))

def print_summary(run: MigrationRun, migrator: Migrator) -> None:
    '''Prints the final statistics of a run and where its artifacts were written.'''
    sep: str = '=' * 64
    print(f"\n{ sep }\nMigration Summary\n{ sep }", Color.TITLE)
    if run.abort_reason:
        print(f"Migration aborted: { run.abort_reason }", Color.BAD)
    elif run.interrupted:
        print('Migration was interrupted', Color.MEH)
    elif run.errors:
        print(f"Migration completed with { run.errors } error(s)", Color.MEH)
    else:
        print('Migration completed successfully!' if not run.config.dry_run else 'Dry run completed successfully!', Color.GOOD)
    print(f"Files Processed: { run.files_processed } (skipped: { run.files_skipped })")
    print(f"Secrets Migrated: { run.secrets_created } / { run.secrets_discovered }")
    if run.conflicts:
        print(f"Conflicts: { len(run.conflicts) } (see report)", Color.MEH)
    if migrator.report_paths:
        print(f"Report: { migrator.report_paths.report }")
        print(f"Secret Mapping: { migrator.report_paths.mapping }")
        if migrator.report_paths.error_log:
            print(f"Error Log: { migrator.report_paths.error_log }", Color.MEH)

## CLI logic

# Print all exceptions unless we're in verbose mode
def _exc_hook(exctype, value, traceback) -> None:
    if config.verbose:
        sys.__excepthook__(exctype, value, traceback)
    else:
        print(f"{ value.__class__.__name__ }: { value }", Color.BAD)
        print('Use --verbose to get the full stacktrace')

# Entry point for python package
def main(argv: list[str] | None = None) -> int:
    '''Runs the migration with the given command line arguments and returns the exit code.'''
    global config
    shell_completion(args)
    config = args.parse_args(argv)
    sys.excepthook = _exc_hook
    ansible_dirs: list[str] = config.ansible_dirs or [ DEFAULT_ANSIBLE_DIR ]
    migration_config = MigrationConfig(
        ansible_dirs, environment=config.environment, project_id=config.project_id, dry_run=config.dry_run,
        patterns=config.patterns or DEFAULT_VAULT_PATTERNS,
        policy=FlattenPolicy(serialize_unprefixed=not config.flatten_all, opaque_files=config.opaque_files)
    )
    debug(f"Configuration: { migration_config }")
    if config.dry_run:
        print('Running in DRY RUN mode, no secrets will be created', Color.MEH)
    # The passphrase source is looked up relative to the first Ansible directory
    try:
        passphrase = resolve_passphrase_source(
            migration_config.ansible_dirs[0], password_file=config.vault_password_file, ask=config.ask_vault_password
        )
    except FatalMigrationError as e:
        print(f"{ e.__class__.__name__ }: { e }", Color.BAD)
        return EXIT_FATAL
    debug(f"Vault password source: { passphrase }")
    decryptor = VaultDecryptor(passphrase, executable=config.ansible_vault_executable, timeout=config.timeout)
    def _on_retry(name: str, attempt: int, error: BaseException) -> None:
        print(f"Attempt { attempt } to create { name } failed ({ error }), retrying", Color.MEH)
    store = BwsClient(
        os.environ.get(ACCESS_TOKEN_ENV, None), executable=config.bws_executable, timeout=config.timeout,
        retry_attempts=config.retries, on_retry=_on_retry
    )
    migrator = Migrator(migration_config, decryptor, store, writer=ReportWriter(config.output_dir), output=output)
    # First Ctrl+C stops after the current secret, the second one exits right away
    def _on_interrupt(signum, frame) -> None:
        if migrator.cancelled:
            raise KeyboardInterrupt
        print('\nInterrupted, finishing the current secret and writing the report (press Ctrl+C again to exit now)', Color.MEH)
        migrator.cancel()
    previous_handler = signal.signal(signal.SIGINT, _on_interrupt)
    try:
        run: MigrationRun = migrator.run()
    except OSError as e:
        print(f"Could not write the migration report: { e }", Color.BAD)
        return EXIT_FATAL
    finally:
        signal.signal(signal.SIGINT, previous_handler)
    if config.as_json:
        summary: dict[str, Any] = run.summary()
        summary['artifacts'] = migrator.report_paths.as_dict() if migrator.report_paths else None
        print_json(json.dumps(summary, indent=2))
    else:
        print_summary(run, migrator)
    return run.exit_code

if __name__ == '__main__':
    sys.exit(main())
