from .client import ExchangeClient, ExchangeAPIError
from .permissions import ExchangePermissionStore, folder_identity, is_already_present

__all__ = [
    "ExchangeClient",
    "ExchangeAPIError",
    "ExchangePermissionStore",
    "folder_identity",
    "is_already_present",
]
