"""Process-scoped storage for DNS provider credentials."""

import os
import threading
from collections.abc import Mapping

from pydantic import SecretStr

from fairydust._logging import get_logger, register_secret, unregister_secret
from fairydust.exceptions import CredentialError
from fairydust.models import ProviderCredential

logger = get_logger(__name__)

# Environment variable holding the secret for each supported provider
CREDENTIAL_ENV_VARS = {
    "cloudflare": "FAIRYDUST_CLOUDFLARE_API_TOKEN",
    "powerdns": "FAIRYDUST_POWERDNS_API_KEY",
}


class CredentialStore:
    """Holds one provider credential for the lifetime of the process.

    The secret is loaded once, handed to providers through ``get()``,
    and dropped by ``release()``. Its value is registered with the
    logging redaction filter while held.

    Args:
        credential: The credential to hold.
    """

    def __init__(self, credential: ProviderCredential):
        self._lock = threading.Lock()
        self._credential: ProviderCredential | None = credential
        register_secret(credential.token.get_secret_value())
        logger.debug("Credential loaded", extra={"credential": credential.name})

    @classmethod
    def from_env(
        cls, provider: str, environ: Mapping[str, str] | None = None
    ) -> "CredentialStore":
        """Load the credential for a provider from its environment variable.

        Raises:
            CredentialError: If the provider is unknown or the variable is unset.
        """
        environ = os.environ if environ is None else environ
        try:
            var = CREDENTIAL_ENV_VARS[provider]
        except KeyError:
            raise CredentialError(f"No credential source for provider: {provider}") from None
        token = environ.get(var)
        if not token:
            raise CredentialError(f"Missing credential: set {var}")
        return cls(ProviderCredential(name=provider, token=SecretStr(token)))

    def get(self) -> ProviderCredential:
        """Return the held credential.

        Raises:
            CredentialError: If the store has been released.
        """
        with self._lock:
            if self._credential is None:
                raise CredentialError("Credentials have been released")
            return self._credential

    def secret(self) -> str:
        """Return the raw secret for building an API request."""
        return self.get().token.get_secret_value()

    @property
    def released(self) -> bool:
        return self._credential is None

    def release(self) -> None:
        """Drop the credential. Safe to call more than once."""
        with self._lock:
            if self._credential is None:
                return
            name = self._credential.name
            unregister_secret(self._credential.token.get_secret_value())
            # str cannot be zeroed in place; dropping the only reference
            self._credential = None
        logger.debug("Credential released", extra={"credential": name})

    def __enter__(self) -> "CredentialStore":
        return self

    def __exit__(self, *args: object) -> None:
        self.release()

    def __repr__(self) -> str:
        state = "released" if self.released else "held"
        return f"<CredentialStore {state}>"
