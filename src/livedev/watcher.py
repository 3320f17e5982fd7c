"""File watching for live reload."""

import asyncio
import fnmatch
import logging
import pathlib
from typing import Awaitable, Callable, Iterable, Optional, Sequence, Set, Tuple

from watchfiles import Change, awatch

logger = logging.getLogger(__name__)

ChangeHandler = Callable[[str, str], Awaitable[None]]


def matches_patterns(
    relative_path: str,
    include: Sequence[str] = (),
    ignore: Sequence[str] = (),
) -> bool:
    """Check a root-relative POSIX path against include and ignore globs.

    Globs are matched against the path, the path with a leading slash (so
    `**/x/**` style patterns also hit top-level entries), and each path
    component. An empty include list accepts everything.
    """
    anchored = "/" + relative_path
    parts = relative_path.split("/")

    for pattern in ignore:
        if fnmatch.fnmatch(relative_path, pattern) or fnmatch.fnmatch(anchored, pattern):
            return False
        if any(fnmatch.fnmatch(part, pattern) for part in parts):
            return False

    if not include:
        return True

    return any(
        fnmatch.fnmatch(relative_path, pattern)
        or fnmatch.fnmatch(anchored, pattern)
        or fnmatch.fnmatch(parts[-1], pattern)
        for pattern in include
    )


class FileWatcher:
    """Watches a project tree and reports modified files.

    Only modifications are passed to `on_change`; additions and deletions
    are logged. Files that exist when watching starts produce no events.
    """

    def __init__(
        self,
        root: pathlib.Path,
        on_change: ChangeHandler,
        include: Iterable[str] = (),
        ignore: Iterable[str] = (),
    ):
        self.root = pathlib.Path(root).resolve()
        self.on_change = on_change
        self.include = tuple(include)
        self.ignore = tuple(ignore)

    def relative(self, path: str) -> Optional[str]:
        try:
            return pathlib.Path(path).resolve().relative_to(self.root).as_posix()
        except ValueError:
            return None

    def accepts(self, change: Change, path: str) -> bool:
        """watch_filter for awatch."""
        relative_path = self.relative(path)
        if relative_path is None:
            return False
        if change is Change.modified:
            return matches_patterns(relative_path, self.include, self.ignore)
        return matches_patterns(relative_path, (), self.ignore)

    async def dispatch(self, changes: Set[Tuple[Change, str]]) -> None:
        for change, path in sorted(changes, key=lambda c: c[1]):
            relative_path = self.relative(path)
            if relative_path is None:
                logger.debug(f"Ignoring file outside project: {path}")
                continue

            if change is Change.added:
                logger.info(f"File added: {relative_path}")
            elif change is Change.deleted:
                logger.info(f"File deleted: {relative_path}")
            else:
                logger.info(f"File changed: {relative_path}")
                try:
                    await self.on_change(relative_path, pathlib.PurePosixPath(relative_path).suffix)
                except Exception:
                    logger.exception(f"Error handling change to {relative_path}")

    async def run(self, stop_event: asyncio.Event) -> None:
        """Watch until `stop_event` is set. Failures are logged, not raised."""
        logger.info(f"Watching {self.root} for changes")
        if self.ignore:
            logger.debug(f"Ignore patterns: {list(self.ignore)}")
        try:
            async for changes in awatch(
                self.root, watch_filter=self.accepts, stop_event=stop_event
            ):
                await self.dispatch(changes)
        except Exception:
            logger.exception("File watcher failed; live reload is disabled until restart")
        else:
            logger.debug("File watcher stopped")
