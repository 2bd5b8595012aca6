from .documents import LocalDocument, DocumentConflict, UpdateSequence
from .sync import SyncCheckpoint, SyncEvent, SyncEventStatus

__all__ = [
    'LocalDocument', 'DocumentConflict', 'UpdateSequence',
    'SyncCheckpoint', 'SyncEvent', 'SyncEventStatus',
]
