"""
Sync Hub State

In-memory registry of live channels plus per-user and global collections.
HubState itself is not synchronized; SyncHub owns the only instance and
serializes every call behind its lock.
"""

import logging
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple, TYPE_CHECKING

if TYPE_CHECKING:
    from telesync.hub.connections import HubConnection

logger = logging.getLogger(__name__)

Document = Dict[str, Any]


def _find_index(documents: List[Document], document_id: str) -> int:
    for index, item in enumerate(documents):
        if item.get("id") == document_id:
            return index
    return -1


def _is_stale(existing: Document, incoming: Document) -> bool:
    """Last-writer-wins; equal timestamps resolve to the later arrival"""
    current = existing.get("lastModified")
    candidate = incoming.get("lastModified")
    if not isinstance(current, (int, float)) or not isinstance(candidate, (int, float)):
        return False
    return candidate < current


class HubState:
    """
    Hub data model

    - clients: user_id -> set of live connections (one per device)
    - user_data: user_id -> collection -> documents, created lazily, kept
      after the last device disconnects
    - global_data: collection -> documents shared by every user
    """

    def __init__(
        self,
        global_collections: Iterable[str] = ("doctors",),
        default_user_collections: Iterable[str] = (),
    ):
        self.clients: Dict[str, Set["HubConnection"]] = {}
        self.user_data: Dict[str, Dict[str, List[Document]]] = {}
        self.global_data: Dict[str, List[Document]] = {
            name: [] for name in global_collections
        }
        self.default_user_collections = list(default_user_collections)

    # ===== Registry =====

    def register(self, connection: "HubConnection") -> None:
        self.clients.setdefault(connection.user_id, set()).add(connection)
        self.ensure_user_store(connection.user_id)

    def unregister(self, connection: "HubConnection") -> bool:
        """Remove a channel; drops the user entry once its last device leaves"""
        connections = self.clients.get(connection.user_id)
        if not connections or connection not in connections:
            return False

        connections.discard(connection)
        if not connections:
            del self.clients[connection.user_id]
        return True

    def all_connections(self) -> List["HubConnection"]:
        return [conn for conns in self.clients.values() for conn in conns]

    def sibling_connections(self, sender: "HubConnection") -> List["HubConnection"]:
        """Other live devices of the sender's user"""
        return [
            conn for conn in self.clients.get(sender.user_id, set())
            if conn is not sender
        ]

    # ===== Collections =====

    def is_global(self, collection: str) -> bool:
        return collection in self.global_data

    def ensure_user_store(self, user_id: str) -> Dict[str, List[Document]]:
        if user_id not in self.user_data:
            self.user_data[user_id] = {
                name: [] for name in self.default_user_collections
            }
            logger.debug(f"Created user store for {user_id}")
        return self.user_data[user_id]

    def _collection_for(self, user_id: str, collection: str) -> List[Document]:
        if self.is_global(collection):
            return self.global_data[collection]
        return self.ensure_user_store(user_id).setdefault(collection, [])

    def upsert(self, user_id: str, collection: str, document: Document) -> bool:
        """
        Store a document by id.

        Returns:
            False when an equal-id document with a newer lastModified is held
        """
        documents = self._collection_for(user_id, collection)
        index = _find_index(documents, document["id"])

        if index >= 0:
            if _is_stale(documents[index], document):
                return False
            documents[index] = document
        else:
            documents.append(document)
        return True

    def remove(self, user_id: str, collection: str, document_id: str) -> bool:
        if self.is_global(collection):
            documents = self.global_data[collection]
        else:
            documents = self.user_data.get(user_id, {}).get(collection)
            if documents is None:
                return False

        index = _find_index(documents, document_id)
        if index < 0:
            return False
        documents.pop(index)
        return True

    def snapshot(self, user_id: Optional[str], create: bool = True) -> Dict[str, List[Document]]:
        """
        FULL_SYNC payload: the user's collections merged with every global one.

        With create=False an unknown user gets the default empty collections
        without a store being allocated.
        """
        if create and user_id is not None:
            store = self.ensure_user_store(user_id)
        else:
            store = self.user_data.get(user_id) or {
                name: [] for name in self.default_user_collections
            }

        data = {name: list(documents) for name, documents in store.items()}
        for name, documents in self.global_data.items():
            data[name] = list(documents)
        return data

    # ===== Stats =====

    def stats(self) -> Tuple[int, int, int]:
        """(connections, users, data entries)"""
        connections = sum(len(conns) for conns in self.clients.values())
        entries = sum(
            len(documents)
            for store in self.user_data.values()
            for documents in store.values()
        )
        entries += sum(len(documents) for documents in self.global_data.values())
        return connections, len(self.clients), entries
