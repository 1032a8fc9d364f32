from tenantvault.services.storage.base import ObjectStorage, StoredFile
from tenantvault.services.storage.local import LocalObjectStorage, get_object_storage

__all__ = ["LocalObjectStorage", "ObjectStorage", "StoredFile", "get_object_storage"]
