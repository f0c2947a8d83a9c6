"""
Durable Store - File-backed persistence for summaries.

Layout under the context directory:
- <id>.summary.json                                 one per context summary
- hierarchical-summaries/<id>.hierarchical.json     one per hierarchical summary
- meta-summaries/<id>.meta.json                     one per meta-summary

Writes are whole-file rewrites through a temp file and an atomic replace,
serialized per file.
"""

import logging
import re
import uuid
from abc import ABC, abstractmethod
from pathlib import Path
from typing import List, Optional, Type, TypeVar

import aiofiles
import aiofiles.os
from pydantic import ValidationError

from .exceptions import NotFound
from .lifecycle import KeyedLocks
from .models import ContextSummary, HierarchicalSummary, MetaSummary, _Document

logger = logging.getLogger(__name__)

HIERARCHICAL_DIR = "hierarchical-summaries"
META_DIR = "meta-summaries"

SUMMARY_SUFFIX = ".summary.json"
HIERARCHICAL_SUFFIX = ".hierarchical.json"
META_SUFFIX = ".meta.json"

_UNSAFE_CHARS = re.compile(r'[/\\:*?"<>|]')

DocT = TypeVar("DocT", bound=_Document)


def sanitize_id(key: str) -> str:
    """Make an identifier safe to use as a file name."""
    return _UNSAFE_CHARS.sub("_", key)


class SummaryStore(ABC):
    """Interface the engine uses to persist summaries."""

    @abstractmethod
    async def save_summary(self, summary: ContextSummary) -> None: ...

    @abstractmethod
    async def load_summary(self, context_id: str) -> Optional[ContextSummary]: ...

    @abstractmethod
    async def save_hierarchical_summary(self, summary: HierarchicalSummary) -> None: ...

    @abstractmethod
    async def load_hierarchical_summary(self, context_id: str) -> Optional[HierarchicalSummary]: ...

    @abstractmethod
    async def save_meta_summary(self, summary: MetaSummary) -> None: ...

    @abstractmethod
    async def load_meta_summary(self, meta_id: str) -> Optional[MetaSummary]: ...

    @abstractmethod
    async def get_all_context_ids(self) -> List[str]: ...

    @abstractmethod
    async def get_all_hierarchical_context_ids(self) -> List[str]: ...

    @abstractmethod
    async def get_all_meta_summary_ids(self) -> List[str]: ...

    @abstractmethod
    async def delete_summary(self, context_id: str) -> bool: ...

    async def require_summary(self, context_id: str) -> ContextSummary:
        """Load a summary or raise NotFound."""
        summary = await self.load_summary(context_id)
        if summary is None:
            raise NotFound("Context summary", context_id)
        return summary

    async def require_meta_summary(self, meta_id: str) -> MetaSummary:
        """Load a meta-summary or raise NotFound."""
        meta = await self.load_meta_summary(meta_id)
        if meta is None:
            raise NotFound("Meta-summary", meta_id)
        return meta


async def write_document(path: Path, payload: str) -> None:
    """Write a JSON document atomically through a uniquely named temp file."""
    temp_file = path.with_name(f"{path.name}.{uuid.uuid4().hex}.tmp")
    try:
        async with aiofiles.open(temp_file, "w", encoding="utf-8") as f:
            await f.write(payload)
        await aiofiles.os.replace(temp_file, path)
    except OSError:
        if await aiofiles.os.path.exists(temp_file):
            await aiofiles.os.remove(temp_file)
        raise


async def read_document(path: Path, model: Type[DocT]) -> Optional[DocT]:
    """
    Read a JSON document into a model.

    Returns:
        The parsed document, or None if missing or unreadable.
    """
    if not await aiofiles.os.path.exists(path):
        return None

    try:
        async with aiofiles.open(path, "r", encoding="utf-8") as f:
            content = await f.read()
        return model.model_validate_json(content)
    except (OSError, ValidationError, ValueError) as e:
        logger.error(f"Error loading {path.name}: {e}")
        return None


class FileSystemStore(SummaryStore):
    """
    JSON-file implementation of SummaryStore.

    Usage:
        store = FileSystemStore(".prompt-context")
        await store.save_summary(summary)
        loaded = await store.load_summary("ctx-1")
    """

    def __init__(self, context_dir: str, hierarchical: bool = True):
        self.context_dir = Path(context_dir)
        self.hierarchical = hierarchical
        self.context_dir.mkdir(parents=True, exist_ok=True)
        if hierarchical:
            (self.context_dir / HIERARCHICAL_DIR).mkdir(exist_ok=True)
            (self.context_dir / META_DIR).mkdir(exist_ok=True)
        self._locks = KeyedLocks()

    def _summary_path(self, context_id: str) -> Path:
        return self.context_dir / f"{sanitize_id(context_id)}{SUMMARY_SUFFIX}"

    def _hierarchical_path(self, context_id: str) -> Path:
        return self.context_dir / HIERARCHICAL_DIR / f"{sanitize_id(context_id)}{HIERARCHICAL_SUFFIX}"

    def _meta_path(self, meta_id: str) -> Path:
        return self.context_dir / META_DIR / f"{sanitize_id(meta_id)}{META_SUFFIX}"

    async def _write(self, path: Path, payload: str) -> None:
        async with self._locks.lock(path):
            await write_document(path, payload)

    async def _list_ids(self, directory: Path, suffix: str) -> List[str]:
        if not await aiofiles.os.path.isdir(directory):
            return []
        names = await aiofiles.os.listdir(directory)
        return sorted(name[:-len(suffix)] for name in names if name.endswith(suffix))

    async def save_summary(self, summary: ContextSummary) -> None:
        await self._write(self._summary_path(summary.context_id), summary.to_json())

    async def load_summary(self, context_id: str) -> Optional[ContextSummary]:
        return await read_document(self._summary_path(context_id), ContextSummary)

    async def save_hierarchical_summary(self, summary: HierarchicalSummary) -> None:
        if not self.hierarchical:
            return
        await self._write(self._hierarchical_path(summary.context_id), summary.to_json())

    async def load_hierarchical_summary(self, context_id: str) -> Optional[HierarchicalSummary]:
        if not self.hierarchical:
            return None
        return await read_document(self._hierarchical_path(context_id), HierarchicalSummary)

    async def save_meta_summary(self, summary: MetaSummary) -> None:
        if not self.hierarchical:
            return
        await self._write(self._meta_path(summary.id), summary.to_json())

    async def load_meta_summary(self, meta_id: str) -> Optional[MetaSummary]:
        if not self.hierarchical:
            return None
        return await read_document(self._meta_path(meta_id), MetaSummary)

    async def get_all_context_ids(self) -> List[str]:
        return await self._list_ids(self.context_dir, SUMMARY_SUFFIX)

    async def get_all_hierarchical_context_ids(self) -> List[str]:
        if not self.hierarchical:
            return []
        return await self._list_ids(self.context_dir / HIERARCHICAL_DIR, HIERARCHICAL_SUFFIX)

    async def get_all_meta_summary_ids(self) -> List[str]:
        if not self.hierarchical:
            return []
        return await self._list_ids(self.context_dir / META_DIR, META_SUFFIX)

    async def delete_summary(self, context_id: str) -> bool:
        """
        Delete a context summary and its hierarchical summary.

        Returns:
            True if a summary file was removed.
        """
        summary_path = self._summary_path(context_id)
        async with self._locks.lock(summary_path):
            if not await aiofiles.os.path.exists(summary_path):
                return False
            await aiofiles.os.remove(summary_path)
        self._locks.discard(summary_path)

        hierarchical_path = self._hierarchical_path(context_id)
        async with self._locks.lock(hierarchical_path):
            if await aiofiles.os.path.exists(hierarchical_path):
                await aiofiles.os.remove(hierarchical_path)
        self._locks.discard(hierarchical_path)

        logger.info(f"Deleted summary for {context_id}")
        return True
