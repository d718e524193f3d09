"""Application services - job lifecycle and import orchestration."""

from soulbeet.application.services.acquisition_service import AcquisitionService
from soulbeet.application.services.folder_locks import FolderLockRegistry
from soulbeet.application.services.import_planner import plan_import_groups
from soulbeet.application.services.job_processor import JobProcessor

__all__ = [
    "AcquisitionService",
    "FolderLockRegistry",
    "JobProcessor",
    "plan_import_groups",
]
