# Business logic services - token resolution and legacy adapters

from app.services.access_types import (
    AccessType,
    LegacySource,
    ResolvedAccess,
    FamilyAccessResolution,
    FamilyAccessRejection,
    ShareTokenView,
    UnifiedTokenPayload,
)

from app.services.legacy_tokens import (
    LegacyTokenAdapter,
    ShareTokenAdapter,
    StudentTokenAdapter,
    SubjectTokenAdapter,
    FolderTokenAdapter,
    LEGACY_ADAPTERS,
)

from app.services.public_access import PublicAccessService

__all__ = [
    "AccessType",
    "LegacySource",
    "ResolvedAccess",
    "FamilyAccessResolution",
    "FamilyAccessRejection",
    "ShareTokenView",
    "UnifiedTokenPayload",
    "LegacyTokenAdapter",
    "ShareTokenAdapter",
    "StudentTokenAdapter",
    "SubjectTokenAdapter",
    "FolderTokenAdapter",
    "LEGACY_ADAPTERS",
    "PublicAccessService",
]
