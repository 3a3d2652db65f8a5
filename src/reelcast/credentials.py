"""Resolution of publish credential references to access tokens.

Job payloads only ever carry a ``credential_ref``; the token itself is read
from the environment when the publish handler runs, so it is never persisted
in the queue database.
"""

import os
import re
from typing import Dict, Mapping, Optional

from .errors import CredentialNotFound

ENV_PREFIX = "REELCAST_CREDENTIAL_"


def env_var_for(credential_ref: str) -> str:
    """Default env var for a reference: ``user-42`` -> ``REELCAST_CREDENTIAL_USER_42``."""
    return ENV_PREFIX + re.sub(r"[^A-Za-z0-9]", "_", credential_ref).upper()


class CredentialResolver:
    """Looks up tokens by reference.

    Lookup order:
    1. Explicit ``mapping`` (credential_ref -> env var name, from config)
    2. ``REELCAST_CREDENTIAL_<REF>``
    """

    def __init__(
        self,
        mapping: Optional[Mapping[str, str]] = None,
        environ: Optional[Mapping[str, str]] = None,
    ):
        self.mapping: Dict[str, str] = dict(mapping or {})
        self._environ = os.environ if environ is None else environ

    def resolve(self, credential_ref: str) -> str:
        """Return the token for ``credential_ref``.

        Raises:
            CredentialNotFound: If no token is configured for the reference
        """
        env_var = self.mapping.get(credential_ref) or env_var_for(credential_ref)
        token = self._environ.get(env_var)
        if not token:
            raise CredentialNotFound(
                f"No credential for reference '{credential_ref}' (expected in ${env_var})"
            )
        return token

    def __contains__(self, credential_ref: str) -> bool:
        try:
            self.resolve(credential_ref)
        except CredentialNotFound:
            return False
        return True
