from gradeforge.stores.base import (
    RemoteCollectionStore,
    RemoteStoreError,
    TabularSource,
    TokenHolder,
    TokenProvider,
    static_token,
)
from gradeforge.stores.drive import DriveCollectionStore
from gradeforge.stores.sheets import SheetsTabularSource

__all__ = [
    "DriveCollectionStore",
    "RemoteCollectionStore",
    "RemoteStoreError",
    "SheetsTabularSource",
    "TabularSource",
    "TokenHolder",
    "TokenProvider",
    "static_token",
]
