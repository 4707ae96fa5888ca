from __future__ import annotations

import logging
import os
import shutil
from dataclasses import dataclass
from pathlib import Path

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ScratchLayout:
    """Local scratch area for fetched bundles.

    Layout:
      scratch_root/
        _tmp/
          <run_id>/
            <filename>    -> local copy of one fetched bundle, deleted when its file is done
    """

    scratch_root: Path
    tmp_dirname: str = "_tmp"

    # ----------------------------
    # Paths
    # ----------------------------
    @property
    def tmp_root(self) -> Path:
        return self.scratch_root / self.tmp_dirname

    def get_scratch_path_for(self, filename: str, *, claim_token: str) -> Path:
        return self.tmp_root / claim_token / Path(filename).name

    # ----------------------------
    # IO helpers
    # ----------------------------
    def write_scratch_copy(self, scratch_path: Path, content: bytes) -> None:
        """Writes the local copy atomically: tmp -> rename."""
        scratch_path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = scratch_path.with_name(scratch_path.name + ".part")
        tmp_path.write_bytes(content)
        os.replace(tmp_path, scratch_path)

    def delete_scratch_copy(self, scratch_path: Path) -> None:
        """Delete a local copy, then prune empty parent directories up to the tmp root."""
        scratch_path.unlink(missing_ok=True)
        scratch_path.with_name(scratch_path.name + ".part").unlink(missing_ok=True)
        self._prune_empty_parents(scratch_path.parent)

    # ----------------------------
    # Cleanup helpers
    # ----------------------------
    def _is_protected_dir(self, p: Path) -> bool:
        # Never delete scratch_root itself, or special system dirs.
        return (p == self.scratch_root) or (p.name.startswith("_"))

    def _prune_empty_parents(self, start_dir: Path) -> int:
        """
        Walk upward deleting empty dirs until scratch_root or a protected dir is reached.
        Returns number of dirs removed.
        """
        removed = 0
        current = start_dir

        while True:
            if not current.exists() or not current.is_dir():
                break
            if self._is_protected_dir(current):
                break
            try:
                current.relative_to(self.scratch_root)
            except ValueError:
                break

            try:
                if any(current.iterdir()):
                    break
                current.rmdir()
                removed += 1
            except OSError:
                break

            current = current.parent

        return removed

    def prune_run_dir(self, run_id: str) -> None:
        """Remove the _tmp/<run_id>/ directory, including anything a crashed file left behind."""
        run_dir = self.tmp_root / run_id
        if run_dir.exists():
            shutil.rmtree(run_dir, ignore_errors=True)

    def cleanup_stale_scratch(self) -> int:
        """Wipe every leftover run directory. Only safe at startup, before any cycle runs."""
        if not self.tmp_root.exists():
            return 0

        removed = 0
        for run_dir in self.tmp_root.iterdir():
            if run_dir.is_dir():
                shutil.rmtree(run_dir, ignore_errors=True)
            else:
                run_dir.unlink(missing_ok=True)
            removed += 1

        if removed:
            logger.warning("Removed %s stale scratch entries from %s", removed, self.tmp_root)
        return removed
