"""
Retention pruning of downloaded clips.
"""

import logging
import os
import time
from collections.abc import Callable
from collections.abc import Iterator
from pathlib import Path

from nest_clip_sync.models import MANAGED_EXTENSION
from nest_clip_sync.models import PruneError
from nest_clip_sync.models import PruneStats
from nest_clip_sync.models import RetentionPolicy

logger = logging.getLogger(__name__)


def iter_clips(root: Path, on_error: Callable[[PruneError], None] | None = None) -> Iterator[Path]:
    """Yield every managed clip under ``root``.

    Each directory is listed once when it is visited, so files that appear
    afterwards are picked up next pass.  In-flight downloads carry the temp
    suffix and never match.
    """
    pending = [root]
    while pending:
        directory = pending.pop()
        try:
            with os.scandir(directory) as it:
                entries = list(it)
        except FileNotFoundError:
            continue
        except OSError as e:
            if on_error is not None:
                on_error(PruneError(f"Cannot list {directory}: {e}"))
            continue

        for entry in entries:
            try:
                if entry.is_dir(follow_symlinks=False):
                    pending.append(Path(entry.path))
                elif entry.is_file(follow_symlinks=False) and entry.name.endswith(
                    MANAGED_EXTENSION
                ):
                    yield Path(entry.path)
            except OSError as e:
                if on_error is not None:
                    on_error(PruneError(f"Cannot inspect {entry.path}: {e}"))


class PruneCycle:
    """Deletes clips whose modification time is older than the retention horizon."""

    def __init__(
        self,
        output_root: Path,
        policy: RetentionPolicy,
        clock: Callable[[], float] = time.time,
    ):
        self.output_root = output_root
        self.policy = policy
        self._clock = clock

    def run(self, dry_run: bool = False) -> PruneStats:
        stats = PruneStats(dry_run=dry_run)
        if self.policy.forever:
            logger.debug("Retention is forever; nothing to prune")
            return stats

        logger.info("Pruning clips older than %s", self.policy.describe())
        cutoff = self._clock() - self.policy.horizon.total_seconds()

        def record_error(error: PruneError) -> None:
            stats.errors += 1
            logger.error("%s", error)

        for path in iter_clips(self.output_root, record_error):
            stats.scanned += 1
            try:
                mtime = path.stat().st_mtime
            except FileNotFoundError:
                # Removed by someone else since the directory was listed.
                continue
            except OSError as e:
                record_error(PruneError(f"Cannot stat {path}: {e}"))
                continue

            if mtime >= cutoff:
                stats.kept += 1
                continue

            if dry_run:
                logger.info("[DRY RUN] Would delete %s", path)
                stats.deleted += 1
                continue

            try:
                path.unlink()
            except FileNotFoundError:
                continue
            except OSError as e:
                record_error(PruneError(f"Failed to delete {path}: {e}"))
                continue
            logger.info("Deleted old clip %s", path)
            stats.deleted += 1

        logger.info(
            "Prune complete: scanned=%d deleted=%d errors=%d",
            stats.scanned,
            stats.deleted,
            stats.errors,
        )
        return stats
