# Custom exceptions for ansible-bws

# Fatal errors abort the whole run before any secret is touched

class FatalMigrationError(Exception):
    '''The migration can not continue. Maps to exit code 2.'''
    pass

class ToolNotFoundError(FatalMigrationError):
    '''A required external executable could not be found.'''

    def __init__(self, *args: object, tool: str | None = None) -> None:
        self.tool: str | None = tool
        super().__init__(*(args or (f"Required executable not found: { tool }",)))

class AuthError(FatalMigrationError):
    '''The secret store credential is missing or was rejected.'''
    pass

class NoReadableRootsError(FatalMigrationError):
    '''None of the directories to scan could be read.'''
    pass

# File-level errors skip one vault file

class FileLevelError(Exception):
    '''A single vault file could not be processed. Its secrets are skipped.'''
    pass

class DecryptError(FileLevelError):
    '''A vault file could not be decrypted.'''
    pass

class WrongPassphraseError(DecryptError):
    '''The vault passphrase did not match the file's ciphertext.'''
    pass

class UnexpectedExitError(DecryptError):
    '''The decryption tool failed or timed out for a reason other than a wrong passphrase.'''

    def __init__(self, *args: object, returncode: int | None = None) -> None:
        self.returncode: int | None = returncode
        super().__init__(*args)

class YAMLFormatError(FileLevelError):
    '''The decrypted content is not valid YAML. Supports passing the triggering parent exception.'''

    def __init__(self, *args: object, parent: Exception | None = None) -> None:
        self.parent: Exception | None = parent
        super().__init__(*args)

# Entry-level errors fail one secret

class EntryLevelError(Exception):
    '''A single secret could not be migrated. The entry is marked as failed.'''

    # Short label written to results and reports
    kind: str = 'entry-error'

class NamingCollisionError(EntryLevelError):
    '''Two secrets in the same run derived the same target name.'''
    kind = 'naming-collision'

class SecretCreateError(EntryLevelError):
    '''The secret store refused to create a secret.'''
    kind = 'store-error'

class DuplicateNameError(SecretCreateError):
    '''A secret with the same name already exists in the secret store.'''
    kind = 'duplicate-name'

class PermissionDeniedError(SecretCreateError):
    '''The access token may not create secrets (in this project).'''
    kind = 'permission-denied'

class InvalidValueError(SecretCreateError):
    '''The secret store rejected the secret's name or value.'''
    kind = 'invalid-value'

class TransientStoreError(SecretCreateError):
    '''Network failure, timeout or rate limiting. Eligible for a retry.'''
    kind = 'transient-failure'
