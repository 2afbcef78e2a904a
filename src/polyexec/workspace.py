"""Ephemeral per-execution workspaces.

Every execution gets its own freshly created directory under a configurable
root.  The directory is the current working directory of the toolchain and
nothing else ever touches it while the execution is in flight.

Deletion is deferred by a short grace period after the result is final so
that writes from processes that were just killed do not race the delete.
Deferred deletions are explicit asyncio tasks keyed by workspace path;
cancelling one (or calling :meth:`WorkspaceManager.flush`) deletes the
directory immediately instead of dropping the deletion.  A background
sweeper reaps directories that no live execution owns, such as those left
behind by a crashed process.

The manager is meant to be used from a single event loop.
"""

from __future__ import annotations

import asyncio
import logging
import shutil
import tempfile
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, Optional, Set, Tuple

from .errors import ValidationFailed

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Workspace:
    """A directory exclusively owned by one execution."""

    path: Path
    execution_id: str
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class WorkspaceManager:
    """Create, populate and remove workspaces under ``root``."""

    def __init__(self, root: str | Path) -> None:
        self.root = Path(root)
        self.root.mkdir(parents=True, exist_ok=True)
        self._live: Set[Path] = set()
        self._pending: Dict[Path, Tuple[asyncio.Task[None], Workspace]] = {}
        self._removals: Set["asyncio.Future[None]"] = set()
        self._sweeper: Optional[asyncio.Task[None]] = None

    def allocate(self, execution_id: str) -> Workspace:
        """Create a new, empty, uniquely named directory for ``execution_id``."""
        path = Path(tempfile.mkdtemp(prefix=f"{execution_id}-", dir=str(self.root)))
        self._live.add(path)
        logger.debug("Allocated workspace %s for %s", path, execution_id)
        return Workspace(path=path, execution_id=execution_id)

    def write(self, workspace: Workspace, filename: str, content: str | bytes) -> Path:
        """Write ``content`` to ``filename`` inside ``workspace``.

        ``filename`` must resolve to a location inside the workspace.
        """
        root = workspace.path.resolve()
        dest = (root / filename).resolve()
        if root not in dest.parents:
            raise ValidationFailed(f"Path escapes workspace: {filename!r}")
        dest.parent.mkdir(parents=True, exist_ok=True)
        if isinstance(content, bytes):
            dest.write_bytes(content)
        else:
            dest.write_text(content, encoding="utf-8")
        return dest

    def destroy(self, workspace: Workspace) -> None:
        """Remove ``workspace`` recursively.

        Removing a workspace that is already gone is a no-op.  Failures are
        logged and never raised.
        """
        self._live.discard(workspace.path)
        self._remove(workspace.path)

    def _remove(self, path: Path) -> None:
        if not path.exists():
            return
        try:
            shutil.rmtree(path)
            logger.debug("Removed workspace %s", path)
        except FileNotFoundError:
            pass
        except OSError as exc:
            logger.warning("Failed to clean up workspace %s: %s", path, exc)

    def schedule_destroy(self, workspace: Workspace, delay: float) -> asyncio.Task[None]:
        """Delete ``workspace`` after ``delay`` seconds.

        Returns the task doing so.  Cancelling the task deletes the
        workspace right away.
        """
        if workspace.path in self._pending:
            return self._pending[workspace.path][0]
        task = asyncio.get_running_loop().create_task(self._destroy_later(delay))
        self._pending[workspace.path] = (task, workspace)
        task.add_done_callback(lambda t: self._forget(workspace))
        return task

    async def _destroy_later(self, delay: float) -> None:
        await asyncio.sleep(delay)

    def _forget(self, workspace: Workspace) -> None:
        # Runs on completion and on cancellation alike.  The tree itself is
        # removed on a worker thread; build output can be large.
        self._pending.pop(workspace.path, None)
        self._live.discard(workspace.path)
        removal = asyncio.get_running_loop().run_in_executor(None, self._remove, workspace.path)
        self._removals.add(removal)
        removal.add_done_callback(self._removals.discard)

    @property
    def pending(self) -> int:
        return len(self._pending)

    async def flush(self) -> None:
        """Delete every workspace whose deletion is still pending."""
        entries = list(self._pending.values())
        for task, _ in entries:
            task.cancel()
        if entries:
            await asyncio.gather(*(task for task, _ in entries), return_exceptions=True)
        if self._removals:
            await asyncio.gather(*list(self._removals), return_exceptions=True)

    def sweep(self, max_age_seconds: float) -> int:
        """Remove unowned workspace directories older than ``max_age_seconds``.

        Returns the number of directories removed.
        """
        cutoff = time.time() - max_age_seconds
        removed = 0
        for entry in self.root.iterdir():
            if not entry.is_dir() or entry in self._live:
                continue
            try:
                if entry.stat().st_mtime > cutoff:
                    continue
            except FileNotFoundError:
                continue
            self._remove(entry)
            removed += 1
        if removed:
            logger.info("Sweeper removed %d stale workspace(s)", removed)
        return removed

    def start_sweeper(self, interval: float, max_age_seconds: float) -> asyncio.Task[None]:
        if self._sweeper is None or self._sweeper.done():
            self._sweeper = asyncio.get_running_loop().create_task(
                self.run_sweeper(interval, max_age_seconds)
            )
        return self._sweeper

    async def run_sweeper(self, interval: float, max_age_seconds: float) -> None:
        while True:
            await asyncio.sleep(interval)
            try:
                await asyncio.to_thread(self.sweep, max_age_seconds)
            except OSError as exc:
                logger.warning("Workspace sweep failed: %s", exc)

    async def aclose(self) -> None:
        """Stop the sweeper and delete pending workspaces."""
        if self._sweeper is not None:
            self._sweeper.cancel()
            try:
                await self._sweeper
            except asyncio.CancelledError:
                pass
            self._sweeper = None
        await self.flush()
