"""
Credential Store — durable, crash-safe persistence for session material.

One directory per session. Each credential fragment lives in its own blob
file stamped with the version that wrote it; `manifest.json` names the
blob for every fragment and is the single commit point:

    store/auth/
        manifest.json              {"version": 3, "fragments": {"noise-key": "noise-key.1.blob", ...}}
        noise-key.1.blob
        registered.3.blob
        .lock                      PID of the owning process

An update writes new blobs (temp file + fsync + rename), then atomically
replaces the manifest, then deletes blobs nothing references any more. A
crash at any point leaves a manifest that names either the old or the new
set of complete blobs, never a mix.

Usage:
    store = CredentialStore(Path("./store/auth"))
    await store.start()

    creds = await store.load()
    await store.apply_update(CredentialDelta(updates={"noise-key": b"..."}))
    await store.stop()
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
from pathlib import Path

import devicelink.core.config as config_module
from devicelink.core.errors import PersistenceError, StoreLockedError
from devicelink.core.metrics import metrics
from devicelink.credentials.crypto import FragmentCipher
from devicelink.credentials.models import Credentials, CredentialDelta

logger = logging.getLogger(__name__)

MANIFEST_NAME = "manifest.json"
LOCK_NAME = ".lock"
BLOB_SUFFIX = ".blob"
TMP_SUFFIX = ".tmp"


def _atomic_write_bytes(path: Path, data: bytes) -> None:
    tmp_path = path.with_name(path.name + TMP_SUFFIX)
    fd = os.open(tmp_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, "wb") as handle:
        handle.write(data)
        handle.flush()
        os.fsync(handle.fileno())
    os.replace(tmp_path, path)


def _fsync_dir(path: Path) -> None:
    # Directory fsync makes the rename itself durable; not available on Windows.
    if os.name == "nt":
        return
    fd = os.open(path, os.O_RDONLY)
    try:
        os.fsync(fd)
    finally:
        os.close(fd)


def _pid_alive(pid: int) -> bool:
    if pid <= 0:
        return False
    if os.name == "nt":
        # os.kill(pid, 0) terminates the process on Windows; trust the lock.
        return True
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


class CredentialStore:
    """
    Filesystem-backed credential persistence.

    Public methods are coroutines; the blocking file work runs in a worker
    thread so the event loop keeps consuming transport events. Callers are
    expected to serialise writes (the state machine handles one event at a
    time), so there is no internal write lock.
    """

    def __init__(
        self,
        auth_dir: Path | str | None = None,
        *,
        cipher: FragmentCipher | None = None,
        write_retries: int | None = None,
        write_retry_delay: float | None = None,
    ):
        cfg = config_module.config.store
        self.auth_dir = Path(auth_dir if auth_dir is not None else cfg.auth_dir)
        self._cipher = cipher or FragmentCipher.from_secret(cfg.secret)
        self._write_retries = max(
            1, write_retries if write_retries is not None else cfg.write_retries
        )
        self._write_retry_delay = (
            write_retry_delay
            if write_retry_delay is not None
            else cfg.write_retry_delay
        )
        self._locked = False
        self.recovered_stale_lock = False

    @property
    def manifest_path(self) -> Path:
        return self.auth_dir / MANIFEST_NAME

    @property
    def lock_path(self) -> Path:
        return self.auth_dir / LOCK_NAME

    # ─── Lifecycle ────────────────────────────────────────────────

    async def start(self) -> None:
        """Create the directory and take the process lock."""
        await asyncio.to_thread(self._acquire_lock_sync)
        logger.info(
            "CredentialStore started (dir=%s, encrypted=%s)",
            self.auth_dir,
            self._cipher.enabled,
            extra={"auth_dir": str(self.auth_dir)},
        )

    async def stop(self) -> None:
        """Release the process lock."""
        if self._locked:
            await asyncio.to_thread(self._release_lock_sync)

    async def __aenter__(self) -> CredentialStore:
        await self.start()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.stop()

    # ─── Operations ───────────────────────────────────────────────

    async def load(self) -> Credentials:
        """Read the committed credentials, or Credentials.empty()."""
        return await asyncio.to_thread(self._load_sync)

    async def is_registered(self) -> bool:
        return (await self.load()).registered

    async def apply_update(self, delta: CredentialDelta) -> Credentials:
        """
        Merge `delta` into the persisted credentials and flush durably.

        Replaying a delta that is already reflected on disk is a no-op: no
        write happens and the version does not move. Write failures are
        retried, then surfaced as PersistenceError.
        """
        last_error: OSError | None = None
        for attempt in range(1, self._write_retries + 1):
            try:
                return await asyncio.to_thread(self._apply_sync, delta)
            except OSError as e:
                last_error = e
                logger.warning(
                    "Credential write failed (attempt %d/%d): %s",
                    attempt,
                    self._write_retries,
                    e,
                    extra={"attempt": attempt, "auth_dir": str(self.auth_dir)},
                )
                if attempt < self._write_retries:
                    await asyncio.sleep(self._write_retry_delay)

        metrics.inc("credentials.write_failures")
        raise PersistenceError(
            f"Could not persist credentials to {self.auth_dir}: {last_error}"
        ) from last_error

    async def mark_registered(self) -> Credentials:
        return await self.apply_update(CredentialDelta(registered=True))

    async def clear(self) -> None:
        """Delete every fragment and the manifest. The lock is kept."""
        await asyncio.to_thread(self._clear_sync)
        metrics.inc("credentials.clears")
        logger.info(
            "Credentials cleared (dir=%s)",
            self.auth_dir,
            extra={"auth_dir": str(self.auth_dir)},
        )

    # ─── Sync internals (worker thread) ───────────────────────────

    def _load_sync(self) -> Credentials:
        try:
            raw = self.manifest_path.read_bytes()
        except FileNotFoundError:
            return Credentials.empty()
        except OSError as e:
            logger.warning("Cannot read credential manifest, treating as empty: %s", e)
            return Credentials.empty()

        try:
            manifest = json.loads(raw.decode("utf-8"))
            version, files = self._parse_manifest(manifest)
            fragments = {
                name: self._cipher.open((self.auth_dir / filename).read_bytes())
                for name, filename in files.items()
            }
        except (OSError, ValueError, TypeError, KeyError) as e:
            logger.warning(
                "Credential store at %s is corrupt, treating as empty: %s",
                self.auth_dir,
                e,
                extra={"auth_dir": str(self.auth_dir)},
            )
            metrics.inc("credentials.corrupt_loads")
            return Credentials.empty()

        return Credentials(version=version, fragments=fragments)

    @staticmethod
    def _parse_manifest(manifest: object) -> tuple[int, dict[str, str]]:
        if not isinstance(manifest, dict):
            raise ValueError("manifest must be a JSON object")
        version = manifest["version"]
        files = manifest["fragments"]
        if not isinstance(version, int) or isinstance(version, bool) or version < 1:
            raise ValueError(f"invalid manifest version: {version!r}")
        if not isinstance(files, dict):
            raise ValueError("manifest fragments must be an object")
        for name, filename in files.items():
            if (
                not isinstance(filename, str)
                or Path(filename).name != filename
                or not filename.endswith(BLOB_SUFFIX)
            ):
                raise ValueError(f"invalid blob name for fragment {name!r}: {filename!r}")
        return version, files

    def _read_manifest_files(self) -> dict[str, str]:
        try:
            manifest = json.loads(self.manifest_path.read_bytes().decode("utf-8"))
            return self._parse_manifest(manifest)[1]
        except (OSError, ValueError, TypeError, KeyError):
            return {}

    def _apply_sync(self, delta: CredentialDelta) -> Credentials:
        current = self._load_sync()
        merged = current.merged(delta)
        if merged == dict(current.fragments):
            logger.debug("Credential delta already applied (version=%d)", current.version)
            return current

        version = current.version + 1
        self.auth_dir.mkdir(parents=True, exist_ok=True)

        existing_files = self._read_manifest_files()
        files: dict[str, str] = {}
        for name, data in sorted(merged.items()):
            if name in existing_files and current.fragments.get(name) == data:
                files[name] = existing_files[name]
                continue
            filename = f"{name}.{version}{BLOB_SUFFIX}"
            _atomic_write_bytes(self.auth_dir / filename, self._cipher.seal(data))
            files[name] = filename

        manifest = json.dumps(
            {"version": version, "fragments": files}, sort_keys=True, indent=2
        ).encode("utf-8")
        _atomic_write_bytes(self.manifest_path, manifest)
        _fsync_dir(self.auth_dir)

        self._collect_garbage(set(files.values()))
        metrics.inc("credentials.writes")
        logger.debug(
            "Credentials committed (version=%d, fragments=%d)", version, len(files)
        )
        return Credentials(version=version, fragments=merged)

    def _collect_garbage(self, keep: set[str]) -> None:
        for path in self.auth_dir.iterdir():
            name = path.name
            if name.endswith(BLOB_SUFFIX) and name not in keep:
                path.unlink(missing_ok=True)
            elif name.endswith(TMP_SUFFIX):
                path.unlink(missing_ok=True)

    def _clear_sync(self) -> None:
        if not self.auth_dir.exists():
            return
        # Manifest first: once it is gone the store reads as empty.
        self.manifest_path.unlink(missing_ok=True)
        _fsync_dir(self.auth_dir)
        self._collect_garbage(set())

    def _acquire_lock_sync(self) -> None:
        self.auth_dir.mkdir(parents=True, exist_ok=True)
        for _ in range(2):
            try:
                fd = os.open(self.lock_path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
            except FileExistsError:
                owner = self._read_lock_owner()
                if owner is not None and _pid_alive(owner):
                    raise StoreLockedError(
                        f"Credential store {self.auth_dir} is in use by process {owner}"
                    )
                logger.warning(
                    "Removing stale lock on %s (owner pid=%s). The previous run was "
                    "killed without a graceful close; the remote may report a "
                    "session conflict on this start.",
                    self.auth_dir,
                    owner,
                    extra={"auth_dir": str(self.auth_dir)},
                )
                self.recovered_stale_lock = True
                self.lock_path.unlink(missing_ok=True)
                continue
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(str(os.getpid()))
            self._locked = True
            return
        raise StoreLockedError(f"Could not acquire lock on {self.auth_dir}")

    def _read_lock_owner(self) -> int | None:
        try:
            return int(self.lock_path.read_text(encoding="utf-8").strip())
        except (OSError, ValueError):
            return None

    def _release_lock_sync(self) -> None:
        if self._read_lock_owner() == os.getpid():
            self.lock_path.unlink(missing_ok=True)
        self._locked = False

    def __repr__(self) -> str:
        return f"<CredentialStore(dir={self.auth_dir})>"
