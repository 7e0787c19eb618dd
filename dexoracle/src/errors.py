"""Exception hierarchy for the DEX price oracle.

Caller input errors are raised before any ledger store I/O. Data integrity
errors fail the whole request. Store errors are surfaced unchanged; the core
never retries them itself.
"""


class OracleError(Exception):
    """Base exception for oracle errors."""

    pass


class InvalidAssetDescriptor(OracleError, ValueError):
    """Raised when an asset descriptor code is malformed or inconsistent."""

    pass


class UnsupportedAssetType(OracleError, ValueError):
    """Raised when an asset descriptor uses an unknown asset type.

    :ivar asset_type: The rejected type value.
    """

    def __init__(self, asset_type: object):
        """Initialize the error.

        :param asset_type: The rejected type value.
        """
        self.asset_type = asset_type
        super().__init__(f"Unsupported asset type: {asset_type}")


class InvalidContractId(OracleError, ValueError):
    """Raised when a contract identifier is neither a C... strkey nor a hex hash."""

    pass


class InvalidAccountId(OracleError, ValueError):
    """Raised when an account identifier is not a valid G... strkey."""

    pass


class MalformedContractState(OracleError):
    """Raised when contract storage cannot be decoded into a snapshot."""

    pass


class MalformedSignerEntry(OracleError):
    """Raised when any entry of an encoded signer list fails to decode."""

    pass


class AggregatorClosed(OracleError):
    """Raised when trades are fed to an aggregator after its prices were merged."""

    pass


class LedgerStoreError(OracleError):
    """Raised when the ledger store fails in a way that retrying will not fix."""

    pass


class TransientFetchError(LedgerStoreError):
    """Raised when a ledger store request failed but may succeed if retried."""

    pass


class AccountNotFound(LedgerStoreError):
    """Raised when the requested account does not exist on the ledger.

    :ivar account: The account that was looked up.
    """

    def __init__(self, account: str):
        """Initialize the error.

        :param account: The account that was looked up.
        """
        self.account = account
        super().__init__(f"Account not found: {account}")
