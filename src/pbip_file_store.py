"""
PBIP File Store
Storage primitives the lineage engine reads and writes a project through.

Every operation is awaitable so callers issue I/O strictly one step at a time.
Paths are project-relative and always use '/' as separator.
"""
import asyncio
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, List, Optional

logger = logging.getLogger(__name__)


def join_path(*parts: str) -> str:
    """Join project-relative path segments with '/'"""
    return "/".join(p.strip("/") for p in parts if p and p.strip("/"))


def split_path(path: str):
    """Split a project-relative path into (directory, file name)"""
    directory, _, name = path.rpartition("/")
    return directory, name


@dataclass
class DirectoryEntry:
    name: str
    is_directory: bool


class PBIPFileStore:
    """
    Interface of the storage collaborator

    Subclasses implement the six primitives below. rename_file is defined as
    read old, write new, delete old and is not assumed to be atomic.
    """

    async def list_directory(self, path: str) -> List[DirectoryEntry]:
        raise NotImplementedError

    async def read_file(self, path: str) -> str:
        raise NotImplementedError

    async def write_file(self, path: str, text: str) -> None:
        raise NotImplementedError

    async def rename_file(self, directory: str, old_name: str, new_name: str) -> None:
        raise NotImplementedError

    async def check_write_permission(self) -> bool:
        raise NotImplementedError

    async def request_write_permission(self) -> bool:
        raise NotImplementedError


class LocalFileStore(PBIPFileStore):
    """
    PBIPFileStore backed by a project folder on the local disk

    Usage:
        store = LocalFileStore("C:/Projects/Sales", read_only=False)
        content = await store.read_file("Sales.SemanticModel/definition/tables/Sales.tmdl")
    """

    def __init__(self, root_path: str, read_only: bool = False,
                 permission_check: Optional[Callable[[], bool]] = None):
        """
        Args:
            root_path: Folder that contains the .pbip file and its *.SemanticModel / *.Report folders
            read_only: Refuse every write permission request
            permission_check: Extra gate consulted before writes (e.g. a refactor policy)
        """
        root = Path(root_path)
        if root.is_file() and root.suffix == ".pbip":
            root = root.parent
        self.root = root.resolve()
        self.read_only = read_only
        self.permission_check = permission_check
        self._write_granted = False

    def _resolve(self, path: str) -> Path:
        target = (self.root / path).resolve() if path else self.root
        if target != self.root and self.root not in target.parents:
            raise PermissionError(f"Path escapes project root: {path}")
        return target

    async def _run(self, fn, *args):
        return await asyncio.get_event_loop().run_in_executor(None, fn, *args)

    def _list_sync(self, path: str) -> List[DirectoryEntry]:
        target = self._resolve(path)
        if not target.is_dir():
            raise FileNotFoundError(f"Directory not found: {path or '.'}")
        return [DirectoryEntry(name=p.name, is_directory=p.is_dir()) for p in sorted(target.iterdir())]

    def _read_sync(self, path: str) -> str:
        # newline='' keeps CRLF line endings intact so edits can be applied verbatim
        with open(self._resolve(path), 'r', encoding='utf-8', newline='') as f:
            return f.read()

    def _write_sync(self, path: str, text: str) -> None:
        target = self._resolve(path)
        target.parent.mkdir(parents=True, exist_ok=True)
        with open(target, 'w', encoding='utf-8', newline='') as f:
            f.write(text)

    def _rename_sync(self, directory: str, old_name: str, new_name: str) -> None:
        old_path = join_path(directory, old_name)
        new_path = join_path(directory, new_name)
        content = self._read_sync(old_path)
        self._write_sync(new_path, content)
        if self._resolve(old_path) != self._resolve(new_path):
            os.remove(self._resolve(old_path))
        logger.debug(f"Renamed {old_path} -> {new_path}")

    async def list_directory(self, path: str) -> List[DirectoryEntry]:
        return await self._run(self._list_sync, path)

    async def read_file(self, path: str) -> str:
        return await self._run(self._read_sync, path)

    async def write_file(self, path: str, text: str) -> None:
        await self._run(self._write_sync, path, text)

    async def rename_file(self, directory: str, old_name: str, new_name: str) -> None:
        await self._run(self._rename_sync, directory, old_name, new_name)

    async def check_write_permission(self) -> bool:
        """True when writes were already granted and are still allowed"""
        return self._write_granted and self._writes_allowed()

    async def request_write_permission(self) -> bool:
        """Evaluate read-only mode, folder permissions and the extra gate"""
        self._write_granted = self._writes_allowed()
        if self._write_granted:
            logger.info(f"Write permission granted for {self.root}")
        else:
            logger.warning(f"Write permission denied for {self.root}")
        return self._write_granted

    def _writes_allowed(self) -> bool:
        if self.read_only:
            return False
        if not os.access(self.root, os.W_OK):
            return False
        if self.permission_check is not None and not self.permission_check():
            return False
        return True
