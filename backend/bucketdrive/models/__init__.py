"""Import all models so SQLAlchemy metadata knows about them."""
from bucketdrive.models.base import Base
from bucketdrive.models.file_record import FileRecord, FOLDER_CONTENT_TYPE
from bucketdrive.models.profile import Profile
from bucketdrive.models.job import Job

__all__ = ["Base", "FileRecord", "FOLDER_CONTENT_TYPE", "Profile", "Job"]
