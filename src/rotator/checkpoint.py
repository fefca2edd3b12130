"""Durable session checkpoint.

Every write goes to a temp file next to the target, is fsynced, read back and compared
byte for byte, then renamed over the target; the target is read back once more after the
rename. Any mismatch or I/O error retries the whole write after a fixed delay. A caller
that gets False must treat the checkpoint as not written.
"""

import asyncio
import json
import logging
import os
from pathlib import Path

import rotator.constants as C
from rotator.accounts import Account
from rotator.session import Session

log = logging.getLogger("rotator.checkpoint")


class CheckpointMismatch(Exception):
    pass


class FileMedium:
    """Plain filesystem access; swapped out in tests to simulate a bad disk."""

    def write_bytes(self, path: Path, data: bytes) -> None:
        with open(path, "wb") as f:
            f.write(data)
            f.flush()
            os.fsync(f.fileno())

    def read_bytes(self, path: Path) -> bytes:
        return path.read_bytes()

    def replace(self, src: Path, dst: Path) -> None:
        os.replace(src, dst)


def encode_session(session: Session) -> bytes:
    return json.dumps(session.to_dict(), indent=2).encode()


class SessionCheckpoint:
    def __init__(
        self,
        path: str | Path,
        *,
        medium: FileMedium | None = None,
        retries: int = C.WRITE_RETRIES,
        delay: float = C.WRITE_RETRY_DELAY,
    ) -> None:
        self.path = Path(path)
        self.medium = medium or FileMedium()
        self.retries = retries
        self.delay = delay

    @classmethod
    def for_session(cls, session: Session, directory: str | Path, **kwargs) -> "SessionCheckpoint":
        return cls(Path(directory) / session.file_name, **kwargs)

    def load(self) -> Session:
        return Session.from_dict(json.loads(self.medium.read_bytes(self.path)))

    def _write_verified(self, data: bytes) -> None:
        tmp = self.path.with_name(self.path.name + ".tmp")
        self.medium.write_bytes(tmp, data)
        if self.medium.read_bytes(tmp) != data:
            raise CheckpointMismatch(f"{tmp} does not match what was written")
        self.medium.replace(tmp, self.path)
        if self.medium.read_bytes(self.path) != data:
            raise CheckpointMismatch(f"{self.path} does not match what was written")

    async def save(self, session: Session) -> bool:
        data = encode_session(session)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        for attempt in range(1, self.retries + 1):
            try:
                self._write_verified(data)
                log.debug("Checkpoint %s written (%s bytes, attempt %s)", self.path.name, len(data), attempt)
                return True
            except (OSError, CheckpointMismatch) as e:
                log.warning("Checkpoint write %s/%s failed: %s", attempt, self.retries, e)
                if attempt < self.retries:
                    await asyncio.sleep(self.delay)
        log.error("Checkpoint %s not written after %s attempts", self.path, self.retries)
        return False

    async def append(self, new_workers: list[Account]) -> bool:
        """Append a freshly generated worker set to the persisted session."""
        try:
            session = self.load()
        except (OSError, ValueError, KeyError) as e:
            log.error("Cannot read checkpoint %s: %s", self.path, e)
            return False
        if not new_workers:
            return True
        known = {w.address for w in session.workers}
        dup = [w for w in new_workers if w.address in known]
        if dup:
            log.error("Refusing to append %s workers already in the session", len(dup))
            return False
        session.workers.extend(new_workers)
        log.info("Appending %s workers to %s (%s total)", len(new_workers), self.path.name, len(session.workers))
        return await self.save(session)

    async def replace_admin(self, admin: Account) -> bool:
        try:
            session = self.load()
        except (OSError, ValueError, KeyError) as e:
            log.error("Cannot read checkpoint %s: %s", self.path, e)
            return False
        session.admin = admin
        log.info("Admin for %s is now %s", self.path.name, admin.address)
        return await self.save(session)


def list_sessions(directory: str | Path) -> list[Path]:
    d = Path(directory)
    if not d.is_dir():
        return []
    return sorted(d.glob("*_session.json"), key=lambda p: p.stat().st_mtime, reverse=True)
