# common/api_error/config_error.py
class ConfigurationError(RuntimeError):
    """
    Raised when application configuration is invalid.

    Fatal: never retried and never translated into a client-facing 4xx.
    """

    pass


class MissingCredentialError(ConfigurationError):
    """A provider credential (API key, secret) is not configured."""

    def __init__(self, credential: str, provider: str):
        self.credential = credential
        self.provider = provider
        super().__init__(f"{provider} credential {credential} is not configured")


__all__ = ["ConfigurationError", "MissingCredentialError"]
