"""
Message Repository Module
CRUD operations over message records in MongoDB, scoped by owner, folder
and flags

Errors from the driver are re-raised as RepositoryError and never retried
here; retry policy belongs to the embedding server.
"""

import logging
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple, Union

from pymongo import ASCENDING
from pymongo.collection import Collection
from pymongo.errors import PyMongoError
from pymongo.results import UpdateResult

from .errors import RepositoryError
from .message_data import StructuredMessage

logger = logging.getLogger(__name__)

Folder = Union[str, Mapping[str, Any]]


def _owner_id(user: Any) -> Any:
    if isinstance(user, Mapping):
        return user["_id"]
    return getattr(user, "id", None) or getattr(user, "_id")


def _folder_id(folder: Folder) -> Any:
    """A folder object's special-use designation is preferred over its name."""
    if isinstance(folder, Mapping):
        return folder.get("special-use") or folder.get("name")
    return folder


class MessageRepository:
    """
    Wraps the messages collection

    Args:
        collection: pymongo Collection holding message documents
        debug: Log extra diagnostics (e.g. updates without an _id)
    """

    def __init__(self, collection: Collection, debug: bool = False):
        self.collection = collection
        self.debug = debug

    @staticmethod
    def build_query(user: Any = None, folder: Optional[Folder] = None,
                    flags: Optional[Iterable[str]] = None) -> Dict[str, Any]:
        """
        Build a filter from the supplied criteria, omitting the rest

        Args:
            user: User document (or object) carrying an _id
            folder: Folder mapping ({"special-use": ..., "name": ...}) or identifier
            flags: Flags every matched record must carry
        """
        query: Dict[str, Any] = {}
        if user:
            query["user"] = _owner_id(user)
        if folder:
            query["folder"] = _folder_id(folder)
        if flags:
            query["flags"] = {"$all": list(flags)}
        return query

    def find(self, user: Any = None, folder: Optional[Folder] = None,
             flags: Optional[Iterable[str]] = None,
             limit: Optional[int] = None) -> List[StructuredMessage]:
        """Return matching messages sorted by ascending uid."""
        query = self.build_query(user, folder, flags)
        try:
            cursor = self.collection.find(query).sort("uid", ASCENDING)
            if limit:
                cursor = cursor.limit(limit)
            return [StructuredMessage.from_document(doc) for doc in cursor]
        except PyMongoError as e:
            raise RepositoryError(f"find failed: {e}") from e

    def insert(self, message: StructuredMessage) -> StructuredMessage:
        """
        Insert a message under a fresh identity

        Any existing id is dropped first so a record is never re-inserted
        under its old identity.
        """
        message.id = None
        doc = message.to_document()
        try:
            result = self.collection.insert_one(doc)
        except PyMongoError as e:
            raise RepositoryError(f"insert failed: {e}") from e
        message.id = result.inserted_id
        logger.debug(
            "Inserted message %s into folder %s", message.id, message.folder,
            extra={"extra_fields": {"uid": message.uid, "folder": message.folder}},
        )
        return message

    def update(self, message: StructuredMessage) -> UpdateResult:
        """Replace the stored document of a message by its id."""
        if message.id is None and self.debug:
            logger.warning("Updating a message without an _id", stack_info=True)
        try:
            return self.collection.replace_one({"_id": message.id}, message.to_document())
        except PyMongoError as e:
            raise RepositoryError(f"update failed: {e}") from e

    def count(self, user: Any = None, folder: Optional[Folder] = None,
              flags: Optional[Iterable[str]] = None) -> int:
        query = self.build_query(user, folder, flags)
        try:
            return self.collection.count_documents(query)
        except PyMongoError as e:
            raise RepositoryError(f"count failed: {e}") from e

    def remove(self, user: Any = None, folder: Optional[Folder] = None,
               flags: Optional[Iterable[str]] = None) -> Tuple[List[StructuredMessage], int]:
        """
        Delete matching messages

        delete_many does not hand back the removed documents, and callers
        need them (e.g. to drop stored attachments), so they are read first.

        Returns:
            (deleted messages, deleted count)
        """
        query = self.build_query(user, folder, flags)
        try:
            deleted = [StructuredMessage.from_document(doc) for doc in self.collection.find(query)]
            result = self.collection.delete_many(query)
        except PyMongoError as e:
            raise RepositoryError(f"remove failed: {e}") from e
        count = result.deleted_count or 0
        if count != len(deleted):
            logger.warning(
                "Removed %d message(s) but %d matched beforehand", count, len(deleted)
            )
        return deleted, count
