from .runner import ArchiveBundle, archive_filename, archive_package, write_archive

__all__ = ["ArchiveBundle", "archive_filename", "archive_package", "write_archive"]
