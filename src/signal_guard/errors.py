"""Exceptions raised to callers of administrative and lookup operations."""


class SignalGuardError(Exception):
    """Base signal guard error."""


class AccountNotFoundError(SignalGuardError, LookupError):
    """Raised when an account has no risk state yet."""

    def __init__(self, account_id: str) -> None:
        super().__init__(f"unknown_account: {account_id}")
        self.account_id = account_id


class StateStoreError(SignalGuardError):
    """Raised when account state cannot be loaded or saved."""


class NotifierError(SignalGuardError):
    """Raised when an alert cannot be delivered."""
