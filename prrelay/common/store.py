"""
Document Store

Opaque key/value document collections plus a typed facade over them.
Any backend (Firestore, a JSON file, memory) implements DocumentStore; the
pipeline depends only on RelayStore, so backends are swappable without
touching pipeline code.

Read-modify-write is last-write-wins. No transactions are offered; callers
converge by recomputing from the stored aggregate.
"""

import asyncio
import copy
import json
import logging
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Dict, List, Optional

from .errors import TransientExternalError
from .schemas import (
    OAuthState,
    PullRequestReviewLedger,
    Repo,
    TrackedMessage,
    User,
    Verification,
    pr_key,
    user_key,
    utcnow,
)

logger = logging.getLogger("prrelay.common.store")

USERS = "users"
OAUTH_STATES = "oauth_states"
REPOS = "repos"
MESSAGES = "messages"
REVIEWS = "reviews"

COLLECTIONS = (USERS, OAUTH_STATES, REPOS, MESSAGES, REVIEWS)


class DocumentStore(ABC):
    """Pluggable persistence for JSON-compatible documents"""

    @abstractmethod
    async def get(self, collection: str, key: str) -> Optional[Dict[str, Any]]:
        """Return the document or None"""

    @abstractmethod
    async def put(self, collection: str, key: str, document: Dict[str, Any]) -> None:
        """Create or replace a document"""

    @abstractmethod
    async def delete(self, collection: str, key: str) -> None:
        """Delete a document; deleting a missing key is a no-op"""

    @abstractmethod
    async def query(self, collection: str, **equals: Any) -> List[Dict[str, Any]]:
        """Return all documents whose fields equal every given value"""

    async def close(self) -> None:
        """Release resources. Default is a no-op."""


class MemoryDocumentStore(DocumentStore):
    """In-process store, used for tests and local mode"""

    def __init__(self):
        self._data: Dict[str, Dict[str, Dict[str, Any]]] = {c: {} for c in COLLECTIONS}

    def _collection(self, name: str) -> Dict[str, Dict[str, Any]]:
        return self._data.setdefault(name, {})

    async def get(self, collection: str, key: str) -> Optional[Dict[str, Any]]:
        doc = self._collection(collection).get(key)
        return copy.deepcopy(doc) if doc is not None else None

    async def put(self, collection: str, key: str, document: Dict[str, Any]) -> None:
        self._collection(collection)[key] = copy.deepcopy(document)

    async def delete(self, collection: str, key: str) -> None:
        self._collection(collection).pop(key, None)

    async def query(self, collection: str, **equals: Any) -> List[Dict[str, Any]]:
        return [
            copy.deepcopy(doc)
            for doc in self._collection(collection).values()
            if all(doc.get(field) == value for field, value in equals.items())
        ]

    def count(self, collection: str) -> int:
        return len(self._collection(collection))


class JsonFileDocumentStore(MemoryDocumentStore):
    """
    Memory store persisted to a single JSON file after every write.

    Suitable for a single-process deployment.
    """

    def __init__(self, path: Path):
        super().__init__()
        self._path = Path(path)
        self._lock = asyncio.Lock()
        self._load()

    def _load(self) -> None:
        if not self._path.exists():
            return
        try:
            with open(self._path) as f:
                data = json.load(f)
        except (json.JSONDecodeError, IOError) as e:
            logger.warning("Failed to load store file %s: %s", self._path, e)
            return
        for name, docs in data.items():
            if isinstance(docs, dict):
                self._data[name] = docs

    def _save(self) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self._path.with_suffix(".tmp")
        with open(tmp, "w") as f:
            json.dump(self._data, f, indent=2, sort_keys=True)
        tmp.replace(self._path)

    async def put(self, collection: str, key: str, document: Dict[str, Any]) -> None:
        async with self._lock:
            await super().put(collection, key, document)
            self._persist()

    async def delete(self, collection: str, key: str) -> None:
        async with self._lock:
            await super().delete(collection, key)
            self._persist()

    def _persist(self) -> None:
        try:
            self._save()
        except OSError as e:
            raise TransientExternalError(f"store write failed: {e}") from e


class RelayStore:
    """Typed access to users, repos, tracked messages and review ledgers"""

    def __init__(self, documents: DocumentStore):
        self._docs = documents

    @property
    def documents(self) -> DocumentStore:
        return self._docs

    # ------------------------------------------------------------------ users

    async def get_user(self, team_id: str, user_id: str) -> Optional[User]:
        doc = await self._docs.get(USERS, user_key(team_id, user_id))
        return User.model_validate(doc) if doc else None

    async def get_or_create_user(self, team_id: str, user_id: str) -> User:
        user = await self.get_user(team_id, user_id)
        if user is None:
            user = User(slack_team_id=team_id, slack_user_id=user_id)
            await self.save_user(user)
        return user

    async def save_user(self, user: User) -> None:
        user.updated_at = utcnow()
        await self._docs.put(USERS, user.key, user.model_dump(mode="json"))

    async def find_verified_user_by_github(self, github_username: str) -> Optional[User]:
        """Verified binding for a GitHub login (case-insensitive), or None"""
        docs = await self._docs.query(USERS, verification=Verification.VERIFIED.value)
        wanted = github_username.lower()
        for doc in docs:
            if (doc.get("github_username") or "").lower() == wanted:
                return User.model_validate(doc)
        return None

    # ----------------------------------------------------------- oauth states

    async def get_oauth_state(self, state_id: str) -> Optional[OAuthState]:
        doc = await self._docs.get(OAUTH_STATES, state_id)
        return OAuthState.model_validate(doc) if doc else None

    async def save_oauth_state(self, state: OAuthState) -> None:
        await self._docs.put(OAUTH_STATES, state.id, state.model_dump(mode="json"))

    async def delete_oauth_state(self, state_id: str) -> None:
        await self._docs.delete(OAUTH_STATES, state_id)

    # ------------------------------------------------------------------ repos

    async def get_repo(self, full_name: str) -> Optional[Repo]:
        doc = await self._docs.get(REPOS, full_name.lower())
        return Repo.model_validate(doc) if doc else None

    async def save_repo(self, repo: Repo) -> None:
        repo.updated_at = utcnow()
        await self._docs.put(REPOS, repo.full_name.lower(), repo.model_dump(mode="json"))

    # ------------------------------------------------------- tracked messages

    async def find_message(
        self, repo_full_name: str, pr_number: int, channel: str
    ) -> Optional[TrackedMessage]:
        docs = await self._docs.query(
            MESSAGES,
            repo_full_name=repo_full_name.lower(),
            pr_number=pr_number,
            slack_channel=channel,
        )
        if not docs:
            return None
        docs.sort(key=lambda d: d.get("created_at", ""))
        return TrackedMessage.model_validate(docs[0])

    async def list_messages(self, repo_full_name: str, pr_number: int) -> List[TrackedMessage]:
        docs = await self._docs.query(
            MESSAGES, repo_full_name=repo_full_name.lower(), pr_number=pr_number
        )
        docs.sort(key=lambda d: d.get("created_at", ""))
        return [TrackedMessage.model_validate(d) for d in docs]

    async def save_message(self, message: TrackedMessage) -> None:
        message.repo_full_name = message.repo_full_name.lower()
        await self._docs.put(MESSAGES, message.id, message.model_dump(mode="json"))

    # ---------------------------------------------------------- review ledger

    async def get_ledger(self, repo_full_name: str, pr_number: int) -> PullRequestReviewLedger:
        doc = await self._docs.get(REVIEWS, pr_key(repo_full_name, pr_number))
        if doc:
            return PullRequestReviewLedger.model_validate(doc)
        return PullRequestReviewLedger(repo_full_name=repo_full_name.lower(), pr_number=pr_number)

    async def save_ledger(self, ledger: PullRequestReviewLedger) -> None:
        await self._docs.put(REVIEWS, ledger.key, ledger.model_dump(mode="json"))


def build_document_store(backend: str, path: str) -> DocumentStore:
    """Create the configured document store backend"""
    if backend == "memory":
        return MemoryDocumentStore()
    if backend == "json":
        return JsonFileDocumentStore(Path(path).expanduser())
    raise ValueError(f"Unsupported store backend: {backend!r}")
