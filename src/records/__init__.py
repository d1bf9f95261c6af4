"""Record domain: heritage-site records and their field categories.

Provides the ContentRecord model and its staged ChangeSet, plus the
closed status/classification/role enums.  The JSON-backed store lives in
``heritage.records.store``; it depends on the audit package, which in
turn depends on these models, so it is not re-exported here.
"""

from heritage.records.models import (
    DEFAULT_SPECIALIST_CLASSIFICATIONS,
    Actor,
    ChangeSet,
    Classification,
    ContentRecord,
    HeritageDeclaration,
    RecordStatus,
    RecordView,
    Role,
    UnpublishInfo,
)

__all__ = [
    "DEFAULT_SPECIALIST_CLASSIFICATIONS",
    "Actor",
    "ChangeSet",
    "Classification",
    "ContentRecord",
    "HeritageDeclaration",
    "RecordStatus",
    "RecordView",
    "Role",
    "UnpublishInfo",
]
