"""Exception types raised by the holder ledger."""


class HolderLedgerError(Exception):
    """Base class for every error raised by this package."""


class ConfigurationError(HolderLedgerError):
    """Missing contract address, ABI function or credential. Always fatal."""


class ProviderError(HolderLedgerError):
    """A remote call kept failing after all retries."""


class ProviderTimeout(ProviderError):
    """A remote call did not answer within its per-call timeout."""


class RateLimitedError(ProviderError):
    """The provider rejected a call because of its rate limit."""


class OwnerFetchError(ProviderError):
    """A page of the owner directory could not be fetched."""


class DataError(HolderLedgerError):
    """A provider answered with a value that cannot be used."""


class LogRangeTooLarge(DataError):
    """The provider refused a log query because the block range holds too many logs."""
