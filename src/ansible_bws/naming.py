# Secret naming policy for ansible-bws

# Standard library imports
import re

# Internal module imports
from .vault import SecretEntry
from .errors import NamingCollisionError

def derive_name(environment: str, service_name: str, original_key: str) -> str:
    '''
    Derives the secret store name for a secret, as `<environment>-<service>-<key>`.
    The result is lower-cased, underscores become hyphens, any other character outside `[a-z0-9-]` is replaced by a hyphen
    and runs of hyphens are collapsed. The same inputs always produce the same name.
    '''
    name: str = f"{ environment }-{ service_name }-{ original_key }".lower().replace('_', '-')
    name = re.sub(r'[^a-z0-9-]+', '-', name)
    name = re.sub(r'-{2,}', '-', name)
    return name.strip('-')

class NameRegistry():
    '''
    Tracks the target names claimed during one run.
    Two different secrets deriving the same name are a conflict: the first one keeps the name, later ones are refused.
    '''

    def __init__(self) -> None:
        self._claims: dict[str, SecretEntry] = {}

    def claim(self, entry: SecretEntry) -> None:
        '''Claims the entry's `target_name`. Raises a `NamingCollisionError` if another entry already holds it.'''
        holder: SecretEntry | None = self._claims.get(entry.target_name)
        if holder is not None and holder is not entry:
            raise NamingCollisionError(
                f"Name { entry.target_name } is already used by { holder.original_key } in { holder.source_file.path }"
            )
        self._claims[entry.target_name] = entry

    def owner(self, name: str) -> SecretEntry | None:
        return self._claims.get(name)
