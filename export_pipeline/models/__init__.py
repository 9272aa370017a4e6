"""SQLAlchemy models package."""

from .base import Base
from .export_job import ExportJob
from .export_template import ExportTemplate
from .scheduled_export import ScheduledExport

__all__ = [
    "Base",
    "ExportJob",
    "ExportTemplate",
    "ScheduledExport",
]
