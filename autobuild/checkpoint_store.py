"""
Checkpoint persistence for autobuild.

This module handles:
- Loading and saving the project checkpoint at .autobuild/state/<project>.json
- Read-modify-write mutation of the whole document, written atomically
- A rolling .bak copy of the previous document for manual recovery
- Telling "no checkpoint" apart from "checkpoint is corrupt"
- A write lock around every read-modify-write of the document
- The per-project run lock that keeps two processes off one checkpoint
"""

from __future__ import annotations

import json
import os
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import TYPE_CHECKING, Callable, Iterator, Optional

from filelock import FileLock, Timeout

from autobuild.errors import (
    CheckpointLocked,
    CheckpointNotFound,
    CorruptState,
    InvalidTransition,
)
from autobuild.models import (
    Checkpoint,
    PhaseState,
    ProjectIdentity,
    ResourceTracking,
    VerificationState,
    model_to_json,
    parse_timestamp,
    utc_now,
)
from autobuild.utils.fs import (
    FileSystemError,
    copy_file,
    ensure_dir,
    file_exists,
    list_files,
    read_file,
    remove_file,
    safe_write,
)

if TYPE_CHECKING:
    from autobuild.config import BuildConfig
    from autobuild.logger import BuildLogger


Mutation = Callable[[Checkpoint], Optional[Checkpoint]]


class CheckpointStore:
    """
    Durable storage for one project's checkpoint.

    The checkpoint file is the only state autobuild persists for a run.
    Every change goes through mutate(), which re-reads the whole document,
    applies the change and replaces the file in one atomic rename, so an
    interrupted process leaves either the previous document or the new
    one on disk.
    """

    def __init__(
        self,
        config: BuildConfig,
        project: str,
        logger: Optional[BuildLogger] = None,
    ) -> None:
        """
        Initialize the store.

        Args:
            config: BuildConfig with paths configured.
            project: Project slug; names the checkpoint file.
            logger: Optional logger for recording operations.
        """
        self._config = config
        self.project = project
        self._logger = logger

    @property
    def path(self) -> Path:
        return self._config.state_path / f"{self.project}.json"

    @property
    def backup_path(self) -> Path:
        return self._config.state_path / f"{self.project}.json.bak"

    @property
    def lock_path(self) -> Path:
        return self._config.locks_path / f"{self.project}.lock"

    @property
    def write_lock_path(self) -> Path:
        return self._config.state_path / f"{self.project}.json.lock"

    @contextmanager
    def _writing(self) -> Iterator[None]:
        """
        Serialize read-modify-write cycles on the document across processes.

        Raises:
            CheckpointLocked: If the write lock is not acquired in time.
        """
        ensure_dir(self._config.state_path)
        timeout = self._config.sessions.write_lock_timeout
        try:
            with FileLock(self.write_lock_path, timeout=timeout):
                yield
        except Timeout:
            self._log("checkpoint_write_lock_timeout", {"timeout": timeout}, level="error")
            raise CheckpointLocked(
                f"Timeout acquiring the checkpoint write lock for '{self.project}'",
                holder={"lock": str(self.write_lock_path)},
            )

    def _log(self, event_type: str, data: Optional[dict] = None, level: str = "info") -> None:
        """Log an event if logger is configured."""
        if self._logger:
            log_data = {"component": "checkpoint_store", "project": self.project}
            if data:
                log_data.update(data)
            self._logger.log(event_type, log_data, level=level)

    # Document Operations

    def exists(self) -> bool:
        return file_exists(self.path)

    def load(self) -> Optional[Checkpoint]:
        """
        Load the checkpoint.

        Returns:
            The Checkpoint, or None if this project has never been started.

        Raises:
            CorruptState: If the file exists but cannot be parsed. The file
                is left untouched so it can be recovered.
        """
        if not file_exists(self.path):
            self._log("checkpoint_load_miss", level="debug")
            return None

        try:
            content = read_file(self.path)
        except FileSystemError as e:
            self._log("checkpoint_read_error", {"error": str(e)}, level="error")
            raise CorruptState(f"Checkpoint for '{self.project}' is unreadable: {e}", path=str(self.path))

        try:
            data = json.loads(content)
            checkpoint = Checkpoint.from_dict(data)
            checkpoint.check_invariants()
        except json.JSONDecodeError as e:
            self._log("checkpoint_corrupted", {"error": str(e), "path": str(self.path)}, level="error")
            raise CorruptState(
                f"Checkpoint for '{self.project}' is not valid JSON: {e}",
                path=str(self.path),
            )
        except (KeyError, ValueError, TypeError) as e:
            self._log("checkpoint_invalid", {"error": str(e), "path": str(self.path)}, level="error")
            raise CorruptState(
                f"Checkpoint for '{self.project}' is malformed: {e}",
                path=str(self.path),
            )

        self._log("checkpoint_loaded", {"phase": checkpoint.phase.current.name}, level="debug")
        return checkpoint

    def _save(self, checkpoint: Checkpoint) -> None:
        if file_exists(self.path):
            copy_file(self.path, self.backup_path)
        safe_write(self.path, model_to_json(checkpoint.to_dict(), indent=2))

    def initialize(
        self,
        identity: ProjectIdentity,
        overwrite: bool = False,
    ) -> Checkpoint:
        """
        Create the first checkpoint for a project.

        Budgets and attempt caps are copied from configuration so the
        document records the limits it was run under.

        Raises:
            InvalidTransition: If a checkpoint already exists and overwrite is False.
        """
        budget = self._config.budget
        checkpoint = Checkpoint(
            project=identity,
            phase=PhaseState(),
            resource_tracking=ResourceTracking(
                budget=budget.session_budget,
                approaching_ratio=budget.approaching_ratio,
            ),
            verification=VerificationState(max_attempts=self._config.verification.max_attempts),
        )
        with self._writing():
            if not overwrite and self.exists():
                raise InvalidTransition(f"Checkpoint for '{self.project}' already exists")
            self._save(checkpoint)
        self._log("checkpoint_initialized", {"request_length": len(identity.request)})
        return checkpoint

    def mutate(self, fn: Mutation) -> Checkpoint:
        """
        Apply one logical change to the checkpoint.

        `fn` receives the freshly loaded document and either changes it in
        place (returning None) or returns a replacement. The result must
        satisfy the checkpoint invariants; otherwise nothing is written.
        Callers are expected to use set/union style updates so replaying a
        mutation after a crash is harmless.

        Raises:
            CheckpointNotFound: If no checkpoint exists.
            CheckpointLocked: If another writer holds the document too long.
            CorruptState: If the stored document cannot be parsed.
            ValueError: If the mutated document breaks an invariant.
        """
        with self._writing():
            checkpoint = self.load()
            if checkpoint is None:
                raise CheckpointNotFound(f"No checkpoint for '{self.project}'")

            result = fn(checkpoint)
            if result is not None:
                checkpoint = result

            checkpoint.touch()
            checkpoint.resume_hint = checkpoint.derive_resume_hint()
            checkpoint.check_invariants()
            self._save(checkpoint)
        self._log("checkpoint_saved", {
            "phase": checkpoint.phase.current.name,
            "status": checkpoint.phase.status.name,
        }, level="debug")
        return checkpoint

    def delete(self, force: bool = False) -> bool:
        """
        Delete the checkpoint. An explicit operator action only.

        A corrupt checkpoint is only deleted with force=True, because it may
        still be recoverable from the .bak file or version control.

        Returns:
            True if a checkpoint was deleted, False if none existed.

        Raises:
            CorruptState: If the document is corrupt and force is False.
        """
        if not self.exists():
            return False
        if not force:
            self.load()
        remove_file(self.path)
        self._log("checkpoint_deleted", {"forced": force}, level="warn")
        return True

    def restore_backup(self) -> Checkpoint:
        """
        Replace the checkpoint with the previous version kept in .bak.

        Raises:
            CheckpointNotFound: If there is no backup.
            CorruptState: If the backup itself cannot be parsed.
        """
        if not file_exists(self.backup_path):
            raise CheckpointNotFound(f"No backup checkpoint for '{self.project}'")
        try:
            checkpoint = Checkpoint.from_dict(json.loads(read_file(self.backup_path)))
        except (json.JSONDecodeError, KeyError, ValueError, TypeError) as e:
            raise CorruptState(f"Backup checkpoint is unusable: {e}", path=str(self.backup_path))
        with self._writing():
            safe_write(self.path, model_to_json(checkpoint.to_dict(), indent=2))
        self._log("checkpoint_restored_from_backup", level="warn")
        return checkpoint

    # Run Lock

    def _read_lock(self) -> Optional[dict]:
        try:
            return json.loads(self.lock_path.read_text())
        except (OSError, ValueError):
            return None

    def _lock_is_stale(self, holder: Optional[dict]) -> bool:
        if not holder or "acquired_at" not in holder:
            return True
        try:
            acquired = parse_timestamp(holder["acquired_at"])
        except ValueError:
            return True
        age = datetime.now(timezone.utc) - acquired
        return age >= timedelta(minutes=self._config.sessions.stale_lock_minutes)

    def acquire_lock(self) -> None:
        """
        Claim the project for this process.

        Raises:
            CheckpointLocked: If another live holder has the lock.
        """
        ensure_dir(self._config.locks_path)
        payload = json.dumps({"pid": os.getpid(), "acquired_at": utc_now()})

        for _ in range(2):
            try:
                fd = os.open(self.lock_path, os.O_CREAT | os.O_EXCL | os.O_WRONLY)
            except FileExistsError:
                holder = self._read_lock()
                if holder and holder.get("pid") == os.getpid():
                    return
                if not self._lock_is_stale(holder):
                    raise CheckpointLocked(
                        f"Project '{self.project}' is held by another process",
                        holder=holder,
                    )
                self._log("stale_lock_cleaned", {"holder": holder}, level="warn")
                try:
                    self.lock_path.unlink()
                except FileNotFoundError:
                    pass
                continue
            with os.fdopen(fd, "w") as f:
                f.write(payload)
            self._log("lock_acquired", {"pid": os.getpid()}, level="debug")
            return

        raise CheckpointLocked(f"Could not acquire lock for '{self.project}'")

    def release_lock(self) -> None:
        """Release the lock if this process holds it."""
        holder = self._read_lock()
        if holder is None or holder.get("pid") == os.getpid():
            try:
                self.lock_path.unlink()
            except FileNotFoundError:
                pass

    def is_locked(self) -> bool:
        """True if a non-stale lock is held by any process."""
        if not self.lock_path.exists():
            return False
        return not self._lock_is_stale(self._read_lock())

    @contextmanager
    def hold(self) -> Iterator[CheckpointStore]:
        """Hold the run lock for the duration of the block."""
        self.acquire_lock()
        try:
            yield self
        finally:
            self.release_lock()


def list_projects(config: BuildConfig) -> list[str]:
    """Names of every project with a checkpoint."""
    return [p.stem for p in list_files(config.state_path, "*.json")]
