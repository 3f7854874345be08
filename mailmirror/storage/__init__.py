"""Local EML artifact storage."""

from mailmirror.storage.eml_storage import EmlStorage, StorageError

__all__ = ["EmlStorage", "StorageError"]
