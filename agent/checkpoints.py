"""
Checkpoint & snapshot management.

A checkpoint message records the text of every file that changed since the
previous checkpoint. Jumping between checkpoints restores files from those
records as a single transaction: every touched file is backed up first and
everything is rolled back if any save fails.

Backward jump (to < from): for every file recorded in (to, from], apply the
most recent snapshot at or before ``to``.
Forward jump (to > from): for every file recorded in (from, to], apply the
most recent snapshot in that range. A file the agent deleted is recorded as
a missing snapshot; jumping forward onto it removes the file again.
"""

import logging
from typing import Callable, Dict, Iterable, Optional, Set

from agent.events import Notification, INFO, WARNING, ERROR
from agent.messages import (
    AssistantMessage,
    CheckpointMessage,
    Snapshot,
    Thread,
    ToolMessage,
    UserMessage,
    RUNNING_NOW,
    SUCCESS,
)
from agent.ports import FileService, Notifier

logger = logging.getLogger(__name__)

JUMP_IN_PROGRESS = "A checkpoint jump is already in progress. Please wait for it to complete."
ROLLBACK_DONE = "Rollback completed. Files have been restored to their state before the failed checkpoint jump."


class CheckpointManager:

    def __init__(
        self,
        files: FileService,
        notifier: Notifier,
        mutating_tools: Iterable[str] = ("edit_file", "rewrite_file", "write_file"),
        on_change: Optional[Callable[[Thread], None]] = None,
    ):
        self.files = files
        self.notifier = notifier
        self.mutating_tools = frozenset(mutating_tools)
        self._on_change = on_change or (lambda thread: None)
        # thread id -> paths recorded by any checkpoint of that thread
        self._files_in_checkpoints: Dict[str, Set[str]] = {}
        self._jumping: Set[str] = set()

    def _notify(self, severity: str, message: str) -> None:
        self.notifier.notify(Notification(severity=severity, message=message, source="checkpoints"))

    def invalidate(self, thread_id: str) -> None:
        """Forget the cached file set of a thread (deleted or truncated)."""
        self._files_in_checkpoints.pop(thread_id, None)

    def is_jumping(self, thread_id: str) -> bool:
        return thread_id in self._jumping

    def _cached_files(self, thread: Thread) -> Set[str]:
        cached = self._files_in_checkpoints.get(thread.id)
        if cached is None:
            cached = set()
            for msg in thread.messages:
                if isinstance(msg, CheckpointMessage):
                    cached.update(msg.snapshot_by_path)
            self._files_in_checkpoints[thread.id] = cached
        return cached

    # ------------------------------------------------------------------
    # Diffing
    # ------------------------------------------------------------------

    @staticmethod
    def checkpoints_between(thread: Thread, lo: int, hi: int) -> Dict[str, int]:
        """Last checkpoint index in [lo, hi] recording each path (agent snapshots only)."""
        last_idx_of: Dict[str, int] = {}
        for i in range(max(lo, 0), min(hi, len(thread.messages) - 1) + 1):
            msg = thread.messages[i]
            if isinstance(msg, CheckpointMessage):
                for path in msg.snapshot_by_path:
                    last_idx_of[path] = i
        return last_idx_of

    def compute_new_checkpoint(self, thread: Thread) -> Dict[str, Snapshot]:
        """Live snapshots of every file that differs from its last checkpointed state."""
        last = thread.last_checkpoint_idx()
        if last is None:
            return {}

        changed: Dict[str, Snapshot] = {}
        last_idx_of = self.checkpoints_between(thread, 0, last)
        for path, idx in last_idx_of.items():
            live = self.files.snapshot(path)
            old = thread.messages[idx].snapshot_for(path)
            if live is None:
                if old is not None and old.existed:
                    changed[path] = Snapshot.missing()
                continue
            if old == live:
                continue
            changed[path] = live

        for msg in thread.messages[last + 1:]:
            if not isinstance(msg, ToolMessage) or msg.type != SUCCESS:
                continue
            if msg.name not in self.mutating_tools:
                continue
            path = msg.path
            if not path or path in changed or path in last_idx_of:
                continue
            live = self.files.snapshot(path)
            if live is not None:
                changed[path] = live
        return changed

    @staticmethod
    def should_add_checkpoint(thread: Thread) -> bool:
        """A new checkpoint needs a real exchange since the last one."""
        last = thread.last_checkpoint_idx()
        if last is None:
            return True
        since = thread.messages[last + 1:]
        has_real = any(
            (isinstance(m, UserMessage) and m.is_genuine) or isinstance(m, AssistantMessage)
            for m in since
        )
        has_output = any(
            isinstance(m, AssistantMessage)
            or (isinstance(m, ToolMessage) and m.type in (SUCCESS, RUNNING_NOW))
            for m in since
        )
        return has_real and has_output

    def add_checkpoint(self, thread: Thread) -> bool:
        if not self.should_add_checkpoint(thread):
            return False
        snapshots = self.compute_new_checkpoint(thread)
        thread.messages.append(CheckpointMessage(snapshot_by_path=snapshots))
        self._cached_files(thread).update(snapshots)
        logger.debug(f"Checkpoint {len(thread.messages) - 1} on {thread.id} ({len(snapshots)} files)")
        self._on_change(thread)
        return True

    def ensure_before_state(self, thread: Thread, path: str) -> None:
        """Record ``path``'s pre-mutation content in the first checkpoint, once per thread."""
        cached = self._cached_files(thread)
        if path in cached:
            return
        first = thread.first_checkpoint_idx()
        if first is None:
            logger.warning(f"No checkpoint on {thread.id}; before-state of {path} not recorded")
            return

        try:
            disk = self.files.read_disk(path)
            snapshot = Snapshot(file_text=disk) if disk is not None else Snapshot.missing()
        except Exception as e:
            logger.warning(f"Disk read failed for {path}, using buffer: {e}")
            snapshot = self.files.snapshot(path)
            if snapshot is None:
                logger.error(f"Cannot save before-state of {path}: no disk file and no buffer")
                return

        thread.messages[first].snapshot_by_path[path] = snapshot
        cached.add(path)
        logger.debug(f"Captured before-state of {path} (existed={snapshot.existed})")
        self._on_change(thread)

    # ------------------------------------------------------------------
    # Standing on checkpoints
    # ------------------------------------------------------------------

    def make_us_stand_on_checkpoint(self, thread: Thread) -> None:
        if thread.state.curr_checkpoint_idx is not None:
            return
        last = thread.messages[-1] if thread.messages else None
        if not isinstance(last, CheckpointMessage):
            self.add_checkpoint(thread)
        thread.state.curr_checkpoint_idx = thread.checkpoint_at_or_before(len(thread.messages) - 1)
        self._on_change(thread)

    def add_user_modifications_to_current(self, thread: Thread) -> None:
        curr = thread.state.curr_checkpoint_idx
        if curr is None or curr >= len(thread.messages):
            return
        checkpoint = thread.messages[curr]
        if not isinstance(checkpoint, CheckpointMessage):
            return
        checkpoint.user_modifications = self.compute_new_checkpoint(thread)
        self._on_change(thread)

    def capture_user_edit(self, thread: Thread, path: str) -> None:
        """Record a human edit of ``path`` without touching agent snapshots."""
        thread.files_with_user_changes.add(path)
        if thread.state.curr_checkpoint_idx is not None:
            self.add_user_modifications_to_current(thread)
        else:
            self._on_change(thread)

    # ------------------------------------------------------------------
    # Jumping
    # ------------------------------------------------------------------

    def _plan_backward(self, thread: Thread, to_idx: int, from_idx: int,
                       use_user_modified: bool) -> Dict[str, Snapshot]:
        restores: Dict[str, Snapshot] = {}
        for path in self.checkpoints_between(thread, to_idx + 1, from_idx):
            found: Optional[Snapshot] = None
            for k in range(to_idx, -1, -1):
                msg = thread.messages[k]
                if isinstance(msg, CheckpointMessage):
                    found = msg.snapshot_for(path, use_user_modified)
                    if found is not None:
                        break

            if found is not None:
                if found.existed:
                    restores[path] = found
                else:
                    self._notify_created(path)
                continue

            try:
                disk = self.files.read_disk(path)
            except Exception as e:
                logger.error(f"Disk recovery failed for {path}: {e}")
                self._notify(
                    WARNING,
                    f"Cannot restore file {path}: before state not found in checkpoints "
                    f"and disk recovery failed. {e}",
                )
                continue
            if disk is not None:
                restores[path] = Snapshot(file_text=disk)
            else:
                self._notify_created(path)
        return restores

    def _plan_forward(self, thread: Thread, to_idx: int, from_idx: int,
                      use_user_modified: bool) -> Dict[str, Snapshot]:
        restores: Dict[str, Snapshot] = {}
        for path in self.checkpoints_between(thread, from_idx + 1, to_idx):
            for k in range(to_idx, from_idx, -1):
                msg = thread.messages[k]
                if not isinstance(msg, CheckpointMessage):
                    continue
                snapshot = msg.snapshot_for(path, use_user_modified)
                if snapshot is None:
                    continue
                if snapshot.existed or self.files.exists(path):
                    restores[path] = snapshot
                break
        return restores

    def _notify_created(self, path: str) -> None:
        self._notify(
            INFO,
            f"File {path} was created during this conversation. "
            "Consider deleting it manually to fully restore the previous state.",
        )

    async def _apply(self, restores: Dict[str, Snapshot], failure_prefix: str) -> bool:
        """Restore and save every file, or roll all of them back."""
        claimed = []
        for path in restores:
            if not self.files.begin_edit(path):
                for p in claimed:
                    self.files.end_edit(p)
                self._notify(WARNING, f"{path} is being edited right now. Try the jump again when it finishes.")
                return False
            claimed.append(path)

        try:
            backups: Dict[str, Snapshot] = {}
            for path in restores:
                try:
                    live = self.files.snapshot(path)
                except Exception as e:
                    logger.warning(f"Failed to back up {path}: {e}")
                    continue
                if live is not None:
                    backups[path] = live

            try:
                for path, snapshot in restores.items():
                    if snapshot.existed:
                        self.files.restore(path, snapshot)
                for path, snapshot in restores.items():
                    try:
                        if snapshot.existed:
                            await self.files.save(path)
                        else:
                            await self.files.remove(path)
                    except Exception as e:
                        raise RuntimeError(f"Failed to save {path}: {e}") from e
            except Exception as e:
                logger.error(f"Checkpoint jump failed, rolling back {len(backups)} files: {e}")
                self._notify(ERROR, f"{failure_prefix} Rolling back changes... {e}")
                try:
                    for path, snapshot in backups.items():
                        self.files.restore(path, snapshot)
                    for path in backups:
                        await self.files.save(path)
                    self._notify(INFO, ROLLBACK_DONE)
                except Exception as rollback_error:
                    logger.error(f"Rollback failed: {rollback_error}")
                    self._notify(
                        ERROR,
                        f"CRITICAL: Rollback failed. Some files may be in an inconsistent state. {rollback_error}",
                    )
                return False
            return True
        finally:
            for path in claimed:
                self.files.end_edit(path)

    async def jump_to_checkpoint_before(self, thread: Thread, message_idx: int,
                                        jump_to_user_modified: bool = False) -> bool:
        """Move the thread's current checkpoint to the one at or before ``message_idx``.

        Returns True when the pointer moved. Only one jump per thread may run.
        """
        if thread.id in self._jumping:
            self._notify(WARNING, JUMP_IN_PROGRESS)
            return False
        self._jumping.add(thread.id)
        try:
            self.make_us_stand_on_checkpoint(thread)
            from_idx = thread.state.curr_checkpoint_idx
            to_idx = thread.checkpoint_at_or_before(message_idx)
            if from_idx is None or to_idx is None or to_idx == from_idx:
                return False

            self.add_user_modifications_to_current(thread)

            if to_idx < from_idx:
                restores = self._plan_backward(thread, to_idx, from_idx, jump_to_user_modified)
                ok = await self._apply(restores, "Failed to restore files to checkpoint.")
            else:
                restores = self._plan_forward(thread, to_idx, from_idx, jump_to_user_modified)
                ok = await self._apply(restores, "Failed to apply files to checkpoint.")
            if not ok:
                return False

            thread.state.curr_checkpoint_idx = to_idx
            logger.info(f"Jumped {thread.id} from checkpoint {from_idx} to {to_idx} ({len(restores)} files)")
            self._on_change(thread)
            return True
        finally:
            self._jumping.discard(thread.id)
