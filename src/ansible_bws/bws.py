# Bitwarden Secrets Manager client via the bws CLI for ansible-bws

# Standard library imports
import re, json
from subprocess import CompletedProcess, TimeoutExpired
from typing import Callable, Any

# External library imports
from tenacity import Retrying, RetryCallState, stop_after_attempt, wait_incrementing, retry_if_exception_type

# Internal module imports
from .util import run_tool, describe_output, parse_version, timeout_message
from .errors import (
    FatalMigrationError, AuthError, SecretCreateError, DuplicateNameError, PermissionDeniedError, InvalidValueError, TransientStoreError
)
from .constants import ACCESS_TOKEN_ENV, DEFAULT_STORE_EXECUTABLE, DEFAULT_TIMEOUT, DEFAULT_RETRY_ATTEMPTS, DEFAULT_RETRY_WAIT

# Failure classification, checked in this order against the (redacted) error output
TRANSIENT_PATTERN: re.Pattern[str] = re.compile(
    r'timed? ?out|connection|network|temporar|rate.?limit|too many requests|\b(429|500|502|503|504)\b|unavailable|error sending request|dns',
    re.IGNORECASE
)
DUPLICATE_PATTERN: re.Pattern[str] = re.compile(r'already exists|duplicate|\b409\b', re.IGNORECASE)
PERMISSION_PATTERN: re.Pattern[str] = re.compile(
    r'permission|forbidden|unauthori[sz]ed|not authori[sz]ed|access denied|\b(401|403)\b', re.IGNORECASE
)
INVALID_PATTERN: re.Pattern[str] = re.compile(r'invalid|validation|bad request|too long|\b(400|422)\b', re.IGNORECASE)

def classify_failure(detail: str) -> type[SecretCreateError]:
    '''Maps a failed bws call's error output onto the matching `SecretCreateError` subclass.'''
    for pattern, error_type in (
        ( TRANSIENT_PATTERN, TransientStoreError ),
        ( DUPLICATE_PATTERN, DuplicateNameError ),
        ( PERMISSION_PATTERN, PermissionDeniedError ),
        ( INVALID_PATTERN, InvalidValueError )
    ):
        if pattern.search(detail):
            return error_type
    return SecretCreateError

class BwsClient():
    '''
    Talks to Bitwarden Secrets Manager by running the `bws` CLI.
    The access token is handed to bws through its environment only, it never appears on a command line or in output.
    Transient failures of `create` are retried with a linearly growing wait, every other failure is raised immediately.
    '''

    def __init__(
        self, access_token: str | None, executable: str = DEFAULT_STORE_EXECUTABLE, timeout: float | None = DEFAULT_TIMEOUT,
        retry_attempts: int = DEFAULT_RETRY_ATTEMPTS, retry_wait: float = DEFAULT_RETRY_WAIT,
        runner: Callable[..., CompletedProcess[bytes]] = run_tool,
        on_retry: Callable[[str, int, BaseException], None] | None = None
    ) -> None:
        '''
        Create a client for the given machine account token.
        `runner` executes the command and defaults to `util.run_tool`, tests may substitute it.
        `on_retry` is called with the secret name, the failed attempt's number and its error before waiting for the next attempt.
        '''
        self._access_token: str | None = access_token
        self.executable: str = executable
        self.timeout: float | None = timeout
        self.retry_attempts: int = max(retry_attempts, 1)
        self.retry_wait: float = max(retry_wait, 0)
        self._runner: Callable[..., CompletedProcess[bytes]] = runner
        self._on_retry: Callable[[str, int, BaseException], None] | None = on_retry

    def _run(self, *args: str) -> CompletedProcess[bytes]:
        '''Runs a bws subcommand with the token in its environment. Raises `TimeoutExpired` and `ToolNotFoundError` as-is.'''
        return self._runner(
            [ self.executable, *args ], timeout=self.timeout, env={ ACCESS_TOKEN_ENV: self._access_token or '' }
        )

    def _detail(self, result: CompletedProcess[bytes], *secrets: str | None) -> str:
        output: bytes = result.stderr or result.stdout or b''
        return describe_output(output, [ self._access_token, *secrets ]) or f"exit code { result.returncode }"

    def version(self) -> str | None:
        '''
        Returns the installed bws version, or None if it can't be determined.
        Raises a `ToolNotFoundError` if the executable is missing.
        '''
        try:
            result: CompletedProcess[bytes] = self._runner([ self.executable, '--version' ], timeout=self.timeout)
        except TimeoutExpired:
            return None
        version: tuple[int, ...] | None = parse_version(result.stdout or b'')
        return '.'.join(map(str, version)) if version else None

    def authenticate(self) -> None:
        '''
        Verifies the access token by listing secrets, which needs no project.
        Raises an `AuthError` if the token is missing or rejected, and a `ToolNotFoundError` if bws is missing.
        '''
        if not self._access_token:
            raise AuthError(f"No access token supplied, please set { ACCESS_TOKEN_ENV } to a machine account token")
        try:
            result: CompletedProcess[bytes] = self._run('secret', 'list', '--output', 'json')
        except TimeoutExpired as e:
            raise AuthError(f"Could not reach Bitwarden Secrets Manager: { timeout_message(self.executable, e) }")
        if result.returncode != 0:
            raise AuthError(f"Failed to authenticate with Bitwarden Secrets Manager: { self._detail(result) }")

    def list_existing(self, project_id: str | None = None) -> set[str]:
        '''
        Returns the names (keys) of all secrets visible to the token, limited to a project if one is given.
        Raises an `AuthError` if access is denied and a `FatalMigrationError` for any other failure.
        '''
        command: list[str] = [ 'secret', 'list', *([ project_id ] if project_id else []), '--output', 'json' ]
        try:
            result: CompletedProcess[bytes] = self._run(*command)
        except TimeoutExpired as e:
            raise FatalMigrationError(f"Could not list existing secrets: { timeout_message(self.executable, e) }")
        if result.returncode != 0:
            detail: str = self._detail(result)
            if PERMISSION_PATTERN.search(detail):
                raise AuthError(f"Access to existing secrets was denied: { detail }")
            raise FatalMigrationError(f"Could not list existing secrets: { detail }")
        try:
            # The listing includes secret values, so it is parsed but never echoed
            secrets: Any = json.loads(result.stdout or b'[]')
        except ValueError:
            raise FatalMigrationError('Could not list existing secrets: bws did not return valid JSON')
        if not isinstance(secrets, list):
            raise FatalMigrationError('Could not list existing secrets: bws did not return a list')
        return { str(secret['key']) for secret in secrets if isinstance(secret, dict) and 'key' in secret }

    def _create_once(self, name: str, value: str, project_id: str | None) -> str:
        '''Makes a single create attempt and returns the new secret's ID. Raises a classified `SecretCreateError`.'''
        # bws only accepts the value as an argument, so it has to go on the command line.
        # Positionals follow `--`, so names and values starting with a dash are never read as options
        command: list[str] = [ 'secret', 'create', '--output', 'json', '--', name, value, *([ project_id ] if project_id else []) ]
        try:
            result: CompletedProcess[bytes] = self._run(*command)
        except TimeoutExpired as e:
            raise TransientStoreError(timeout_message(self.executable, e))
        if result.returncode != 0:
            detail: str = self._detail(result, value)
            raise classify_failure(detail)(f"Could not create { name }: { detail }")
        try:
            created: Any = json.loads(result.stdout)
        except ValueError:
            raise SecretCreateError(f"Could not read the ID of { name }: bws did not return valid JSON")
        if not isinstance(created, dict) or not created.get('id'):
            raise SecretCreateError(f"Could not read the ID of { name }: bws returned no ID")
        return str(created['id'])

    def _before_sleep(self, retry_state: RetryCallState) -> None:
        if self._on_retry is None or retry_state.outcome is None:
            return
        error: BaseException | None = retry_state.outcome.exception()
        if error is not None:
            self._on_retry(retry_state.args[0], retry_state.attempt_number, error)

    def create(self, name: str, value: str, project_id: str | None = None) -> str:
        '''
        Creates a secret and returns its ID.
        `TransientStoreError`s are retried up to `retry_attempts` times in total, waiting `retry_wait` seconds longer each time.
        When all attempts fail the last `TransientStoreError` is raised, other `SecretCreateError`s are raised right away.
        '''
        retrying = Retrying(
            stop=stop_after_attempt(self.retry_attempts),
            wait=wait_incrementing(start=self.retry_wait, increment=self.retry_wait),
            retry=retry_if_exception_type(TransientStoreError),
            before_sleep=self._before_sleep,
            reraise=True
        )
        return retrying(self._create_once, name, value, project_id)

    def __repr__(self) -> str:
        return f"BwsClient({ self.executable })"
