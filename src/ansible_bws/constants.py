# Constant types and values for ansible-bws

# Standard library imports
from typing import Hashable

# Release version of ansible-bws
VERSION: str = '1.0.0'

# Type hints

# Specify an octal by writing 0o<number>
octal = int

# Traversal path of a leaf value in a YAML tree
KeyPath = tuple[Hashable, ...]

# Vault discovery

# First bytes of every Ansible vault ciphertext (`$ANSIBLE_VAULT;1.1;AES256` or `$ANSIBLE_VAULT;1.2;AES256;<vault id>`)
VAULT_HEADER_MARKER: str = '$ANSIBLE_VAULT;'

# Filename globs of vault files, matched case-insensitively against the basename
DEFAULT_VAULT_PATTERNS: tuple[str, ...] = ( '*vault*.yml', '*vault*.yaml' )

# Files with this suffix are examples for vault files and are never migrated
TEMPLATE_SUFFIX: str = '.template'

# Directories which mark the root of an Ansible inventory
ANSIBLE_LAYOUT_DIRS: tuple[str, ...] = ( 'group_vars', 'host_vars' )

# Extraction and naming

# Variables starting with this prefix are single secrets by convention and get flattened
VAULT_VAR_PREFIX: str = 'vault_'

# Environment tag used in secret names if none is supplied
DEFAULT_ENVIRONMENT: str = 'prod'

# External tools

DEFAULT_DECRYPT_EXECUTABLE: str = 'ansible-vault'
DEFAULT_STORE_EXECUTABLE: str = 'bws'
REQUIRED_ANSIBLE_VERSION: str = '2.19.0'
REQUIRED_BWS_VERSION: str = '1.0.0'

# The bws CLI reads its machine account token from this variable
ACCESS_TOKEN_ENV: str = 'BWS_ACCESS_TOKEN'

# Default passphrase file inside the Ansible directory
DEFAULT_PASSWORD_FILENAME: str = '.vault_password'

# Seconds until a single subprocess call is considered hung
DEFAULT_TIMEOUT: float = 30.0

# Attempts and linear backoff step (seconds) for transient secret store failures
DEFAULT_RETRY_ATTEMPTS: int = 3
DEFAULT_RETRY_WAIT: float = 2.0

# Stderr excerpts included in error details are cut to this length
MAX_ERROR_DETAIL: int = 240

# Replacement for secret material in error messages
REDACTED: str = '<redacted>'

# Output artifacts

DEFAULT_OUTPUT_DIRNAME: str = 'migration-output'
TIMESTAMP_FORMAT: str = '%Y%m%d_%H%M%S'
REPORT_FILENAME: str = 'migration-report-{timestamp}.txt'
MAPPING_FILENAME: str = 'secret-mapping-{timestamp}.csv'
ERROR_LOG_FILENAME: str = 'errors-{timestamp}.log'
MAPPING_COLUMNS: tuple[str, ...] = ( 'source_file', 'original_key', 'target_name', 'secret_id', 'status' )

# Exit codes

EXIT_OK: int = 0
EXIT_FAILURES: int = 1
EXIT_FATAL: int = 2
