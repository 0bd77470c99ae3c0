# Vault decryption via the ansible-vault CLI for ansible-bws

# Standard library imports
import os, re
from getpass import getpass
from subprocess import CompletedProcess, TimeoutExpired
from typing import Callable

# External library imports
from ansible.config.manager import ConfigManager

# Internal module imports
from .vault import VaultFile
from .util import run_tool, describe_output, parse_version, timeout_message
from .errors import FatalMigrationError, WrongPassphraseError, UnexpectedExitError
from .constants import DEFAULT_DECRYPT_EXECUTABLE, DEFAULT_PASSWORD_FILENAME, DEFAULT_TIMEOUT

# ansible-vault reports a mismatching passphrase with one of these messages
WRONG_PASSPHRASE_PATTERN: re.Pattern[str] = re.compile(
    r'Decryption failed|no vault secrets (were )?found|HMAC verification failed', re.IGNORECASE
)

class PassphraseSource():
    '''Supplies the vault passphrase to ansible-vault calls without writing it anywhere.'''

    def vault_args(self) -> list[str]:
        '''Command line arguments which tell ansible-vault where to read the passphrase from.'''
        raise NotImplementedError

    def stdin(self) -> bytes | None:
        '''Data to pipe into ansible-vault's stdin, if any.'''
        return None

    def secrets(self) -> list[str]:
        '''Known secret material to redact from error messages.'''
        return []

class FilePassphrase(PassphraseSource):
    '''
    Reads the passphrase from a file (or an executable script printing it), which is handed to ansible-vault directly.
    This source is preferred over prompting, as it works unattended.
    '''

    def __init__(self, path: str) -> None:
        self.path: str = os.path.abspath(path)

    def vault_args(self) -> list[str]:
        return [ '--vault-password-file', self.path ]

    def __repr__(self) -> str:
        return f"FilePassphrase({ self.path })"

class InteractivePassphrase(PassphraseSource):
    '''
    Prompts for the passphrase once per process and pipes the same passphrase into every ansible-vault call.
    The passphrase is only ever held in memory.
    '''

    # ansible-vault reads a non-executable password file's content, a pipe works just as well
    STDIN_PATH: str = '/dev/stdin'

    def __init__(self, prompt: str = 'Vault password: ', reader: Callable[[str], str] = getpass) -> None:
        self.prompt: str = prompt
        self._reader: Callable[[str], str] = reader
        self._passphrase: str | None = None

    @property
    def passphrase(self) -> str:
        '''The cached passphrase, prompting for it on first access.'''
        if self._passphrase is None:
            self._passphrase = self._reader(self.prompt)
        return self._passphrase

    def vault_args(self) -> list[str]:
        return [ '--vault-password-file', InteractivePassphrase.STDIN_PATH ]

    def stdin(self) -> bytes | None:
        return (self.passphrase + '\n').encode('utf-8')

    def secrets(self) -> list[str]:
        return [ self._passphrase ] if self._passphrase else []

    def __repr__(self) -> str:
        return 'InteractivePassphrase()'

def resolve_passphrase_source(ansible_dir: str, password_file: str | None = None, ask: bool = False) -> PassphraseSource:
    '''
    Chooses where the vault passphrase comes from, in this order:
    - Prompt interactively if `ask` is set
    - An explicitly supplied `password_file` (a `FatalMigrationError` is raised if it doesn't exist)
    - `<ansible_dir>/.vault_password`
    - The `vault_password_file` configured in `<ansible_dir>/ansible.cfg` (or via `ANSIBLE_VAULT_PASSWORD_FILE`)
    - Prompt interactively as a last resort
    '''
    if ask:
        return InteractivePassphrase()
    if password_file:
        if not os.path.isfile(password_file):
            raise FatalMigrationError(f"Vault password file { password_file } could not be found")
        return FilePassphrase(password_file)
    default_file: str = os.path.join(ansible_dir, DEFAULT_PASSWORD_FILENAME)
    if os.path.isfile(default_file):
        return FilePassphrase(default_file)
    config_file: str = os.path.join(ansible_dir, 'ansible.cfg')
    if os.path.isfile(config_file):
        configured: str | None = ConfigManager(conf_file=config_file).get_config_value('DEFAULT_VAULT_PASSWORD_FILE')
        if configured:
            # Relative paths in the config are relative to the config file, not to our CWD
            configured = os.path.join(ansible_dir, os.path.expanduser(configured))
            if os.path.isfile(configured):
                return FilePassphrase(configured)
    return InteractivePassphrase()

class VaultDecryptor():
    '''
    Decrypts vault files by running `ansible-vault view` with stdout captured.
    Decrypted content only ever lives in memory: no `--output` file and no temporary files are involved.
    '''

    def __init__(
        self, passphrase: PassphraseSource, executable: str = DEFAULT_DECRYPT_EXECUTABLE,
        timeout: float | None = DEFAULT_TIMEOUT, runner: Callable[..., CompletedProcess[bytes]] = run_tool
    ) -> None:
        '''
        Create a decryptor using the given passphrase source.
        `runner` executes the command and defaults to `util.run_tool`, tests may substitute it.
        '''
        self.passphrase: PassphraseSource = passphrase
        self.executable: str = executable
        self.timeout: float | None = timeout
        self._runner: Callable[..., CompletedProcess[bytes]] = runner

    def version(self) -> str | None:
        '''
        Returns the installed ansible-vault version, or None if it can't be determined.
        Raises a `ToolNotFoundError` if the executable is missing.
        '''
        try:
            result: CompletedProcess[bytes] = self._runner([ self.executable, '--version' ], timeout=self.timeout)
        except TimeoutExpired:
            return None
        version: tuple[int, ...] | None = parse_version(result.stdout or b'')
        return '.'.join(map(str, version)) if version else None

    def decrypt(self, vault_file: VaultFile) -> bytes:
        '''
        Returns the decrypted content of a vault file.
        Raises a `WrongPassphraseError` if the passphrase doesn't match, an `UnexpectedExitError` for any other failure
        or a timeout, and a `ToolNotFoundError` if ansible-vault is missing.
        '''
        command: list[str] = [ self.executable, 'view', *self.passphrase.vault_args(), vault_file.path ]
        try:
            result: CompletedProcess[bytes] = self._runner(
                command, timeout=self.timeout, input=self.passphrase.stdin(),
                # ansible-vault would open a pager on a TTY, so we force plain output
                env={ 'PAGER': 'cat', 'ANSIBLE_PAGER': 'cat' }
            )
        except TimeoutExpired as e:
            raise UnexpectedExitError(timeout_message(self.executable, e))
        if result.returncode != 0:
            detail: str = describe_output(result.stderr, self.passphrase.secrets())
            if WRONG_PASSPHRASE_PATTERN.search(detail):
                raise WrongPassphraseError(f"Could not decrypt { vault_file.path } with the supplied vault password")
            raise UnexpectedExitError(
                f"{ self.executable } exited with code { result.returncode } for { vault_file.path }: { detail or 'no error output' }",
                returncode=result.returncode
            )
        return result.stdout

    def __repr__(self) -> str:
        return f"VaultDecryptor({ self.executable }, { self.passphrase })"
