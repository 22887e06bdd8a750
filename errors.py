from typing import Optional


class StoreError(Exception):
    """Base class for errors raised by the storefront stores."""

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def __str__(self) -> str:
        return self.message


class ValidationError(StoreError):
    pass


class NotFoundError(StoreError):
    pass


class SyncError(StoreError):
    """A remote load, push or change-feed call failed."""

    def __init__(self, message: str, collection: Optional[str] = None, doc_id: Optional[str] = None):
        super().__init__(message)
        self.collection = collection
        self.doc_id = doc_id


class AuthRequiredError(StoreError):
    """The operation needs a signed-in user; callers should send them to ``redirect_to``."""

    def __init__(self, message: str = "Please sign in to continue", redirect_to: str = "/login"):
        super().__init__(message)
        self.redirect_to = redirect_to
