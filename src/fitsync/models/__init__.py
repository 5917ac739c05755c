from fitsync.models.activity import Activity
from fitsync.models.credential import IntegrationCredential
from fitsync.models.external_record import ExternalRecord
from fitsync.models.sync_run import SyncRun, SyncStatus, SyncTrigger
from fitsync.models.user import User

__all__ = [
    "Activity",
    "ExternalRecord",
    "IntegrationCredential",
    "SyncRun",
    "SyncStatus",
    "SyncTrigger",
    "User",
]
