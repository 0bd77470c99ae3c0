# Helpers for ansible-bws

# Standard library imports
import os, re
from typing import Iterable, Mapping
from subprocess import run as sys_command, CompletedProcess, TimeoutExpired

# Internal module imports
from .errors import ToolNotFoundError
from .constants import MAX_ERROR_DETAIL, REDACTED

# Subprocess calls

def run_tool(
    command: list[str], timeout: float | None = None, input: bytes | None = None, env: Mapping[str, str] | None = None
) -> CompletedProcess[bytes]:
    '''
    Runs an external tool with all output captured in memory and returns the finished process.
    Nothing is passed through a shell, so arguments are never re-interpreted.
    `env` entries are added on top of the current environment.
    Raises a `ToolNotFoundError` if the executable is missing or not executable.
    A `subprocess.TimeoutExpired` is raised as-is when `timeout` runs out, callers classify it.
    The tool runs in its own session, so a Ctrl+C on the terminal only reaches this process
    and an in-flight call can finish while a cancelled run winds down.
    '''
    full_env: dict[str, str] | None = { **os.environ, **env } if env else None
    try:
        return sys_command(
            command, capture_output=True, timeout=timeout, input=input, env=full_env, check=False, start_new_session=True
        )
    except (FileNotFoundError, PermissionError, NotADirectoryError):
        raise ToolNotFoundError(tool=command[0])

def timeout_message(tool: str, error: TimeoutExpired) -> str:
    '''Formats a timeout without echoing the command line, which may contain secrets.'''
    return f"{ tool } did not finish within { error.timeout:g}s"

# Secret-free error details

def redact(text: str, secrets: Iterable[str | None]) -> str:
    '''Replaces every occurrence of the given secrets in the text. Empty or unset secrets are ignored.'''
    # Longest first, so a secret containing another one is not partially revealed
    for secret in sorted(filter(None, secrets), key=len, reverse=True):
        text = text.replace(secret, REDACTED) # type: ignore
    return text

def truncate(text: str, limit: int = MAX_ERROR_DETAIL) -> str:
    '''Collapses whitespace into single spaces and cuts the text to `limit` characters.'''
    text = ' '.join(text.split())
    return text if len(text) <= limit else text[:max(limit - 3, 0)] + '...'

def describe_output(output: bytes | str | None, secrets: Iterable[str | None] = ()) -> str:
    '''Turns captured tool output into a short, redacted one-line detail.'''
    if output is None:
        return ''
    text: str = output.decode('utf-8', errors='replace') if isinstance(output, bytes) else output
    # Tools prefix their messages in different ways, we only want the message itself
    text = re.sub(r'^\s*(\[?ERROR\]?!?|Error:)\s*', '', text.strip(), flags=re.IGNORECASE)
    return truncate(redact(text, secrets))

# Tool versions

def parse_version(text: str | bytes) -> tuple[int, ...] | None:
    '''Extracts the first `<major>.<minor>.<patch>` version number from a tool's version output.'''
    if isinstance(text, bytes):
        text = text.decode('utf-8', errors='replace')
    match: re.Match[str] | None = re.search(r'(\d+)\.(\d+)\.(\d+)', text)
    return tuple(map(int, match.groups())) if match else None

def version_older(found: str | tuple[int, ...] | None, required: str) -> bool:
    '''Checks if a found version is older than the required one. Unknown versions never count as older.'''
    found_version: tuple[int, ...] | None = parse_version(found) if isinstance(found, str) else found
    required_version: tuple[int, ...] | None = parse_version(required)
    if found_version is None or required_version is None:
        return False
    return found_version < required_version
