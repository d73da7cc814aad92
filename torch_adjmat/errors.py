"""Exceptions raised while configuring or querying a contact matrix."""


class ConfigurationError(ValueError):
    """Raised when a contact matrix cannot be built from its configuration."""


class MissingKeywordError(ConfigurationError):
    """Raised when a required keyword is absent or has an empty value.

    Attributes:
        keyword (str): Name of the missing keyword, e.g. ``SWITCH22``.
    """

    def __init__(self, keyword: str, message: str | None = None) -> None:
        self.keyword = keyword
        super().__init__(message or f"missing {keyword} keyword")


class UnsupportedConfigurationError(ConfigurationError):
    """Raised for configurations the keyword numbering scheme cannot address."""


class DerivativeNotAvailableError(RuntimeError):
    """Raised when derivatives are requested for a task that was not
    evaluated with derivatives during the current cycle.
    """
