"""
snipewatch Infrastructure: Profile Store

Persistent profile storage with atomic writes.

Layout per profile:
    <base_dir>/<name>/config.json     current version
    <base_dir>/<name>/history/        previous versions (newest 5 kept)
    <base_dir>/<name>/.lock           StaleLockGuard lease

Writes require the lease: a process that does not hold it gets NotLocked.
Reads (load_profile, list_profiles) never need it.
"""

import json
import os
import re
import shutil
import tempfile
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, Iterable, Iterator, List, Optional
import logging

from core.exceptions import ConfigurationError, LockContention, NotLocked
from core.models import (
    Network,
    Profile,
    ProfileSettings,
    ProfileSummary,
    Snipe,
    SnipeResult,
    SnipeStatus,
    amount_to_sats,
    generate_snipe_id,
    normalize_amount,
    utcnow,
)
from infra.profile_lock import DEFAULT_STALE_TIMEOUT_SECONDS, StaleLockGuard

logger = logging.getLogger(__name__)

SCHEMA_VERSION = "1.0"
CONFIG_FILENAME = "config.json"
HISTORY_DIRNAME = "history"
DEFAULT_MAX_VERSIONS = 5
MAX_EXECUTION_HISTORY = 50

PROFILE_NAME_PATTERN = re.compile(r"^[a-zA-Z0-9_-]+$")
MAX_PROFILE_NAME_LENGTH = 50
RESERVED_NAMES = {"con", "prn", "aux", "nul", "com1", "com2", "lpt1", "lpt2"}

TOKEN_ADDRESS_PATTERNS = (
    re.compile(r"^[0-9a-fA-F]{40,64}$"),     # token id / pool id
    re.compile(r"^0x[0-9a-fA-F]{64}$", re.IGNORECASE),
    re.compile(r"^btkn[a-z0-9]{30,100}$"),   # bech32 token address
    re.compile(r"^[a-zA-Z0-9]+:[a-zA-Z0-9]+$"),  # ticker:name
)


def validate_profile_name(name: str) -> str:
    """
    Raises:
        ConfigurationError: if the name cannot be used as a profile directory
    """
    name = (name or "").strip()
    if not name:
        raise ConfigurationError("Profile name cannot be empty")
    if len(name) > MAX_PROFILE_NAME_LENGTH:
        raise ConfigurationError(f"Profile name must be {MAX_PROFILE_NAME_LENGTH} characters or less")
    if not PROFILE_NAME_PATTERN.match(name):
        raise ConfigurationError("Profile name can only contain letters, numbers, underscores, and hyphens")
    if name.lower() in RESERVED_NAMES:
        raise ConfigurationError(f"'{name}' is a reserved name")
    return name


def validate_token_address(address: str) -> str:
    address = (address or "").strip()
    if not address:
        raise ConfigurationError("Token address cannot be empty")
    if not any(p.match(address) for p in TOKEN_ADDRESS_PATTERNS):
        raise ConfigurationError(f"Invalid token address format: {address}")
    return address


class ProfileStore:
    """
    Profile storage using one JSON file per profile.

    Features:
    - Atomic writes (temp file + fsync + rename)
    - Previous versions kept in history/ (bounded)
    - Lease-guarded writes (StaleLockGuard)
    - Unknown fields ignored on read
    """

    def __init__(
        self,
        base_dir: str = "profiles",
        lock_guard: Optional[StaleLockGuard] = None,
        max_versions: int = DEFAULT_MAX_VERSIONS,
        stale_timeout_seconds: float = DEFAULT_STALE_TIMEOUT_SECONDS,
    ):
        """
        Initialize profile store.

        Args:
            base_dir: Directory holding one sub-directory per profile
            lock_guard: Lease manager (default: a StaleLockGuard over base_dir)
            max_versions: Previous versions kept per profile
            stale_timeout_seconds: Lease age after which it can be taken over
        """
        self.base_dir = Path(base_dir)
        self.base_dir.mkdir(parents=True, exist_ok=True)
        self.guard = lock_guard or StaleLockGuard(str(self.base_dir), stale_timeout_seconds)
        self.max_versions = int(max_versions)
        logger.info(f"Initialized ProfileStore at {self.base_dir}")

    @property
    def holder_id(self) -> str:
        return self.guard.holder.holder_id

    def profile_dir(self, name: str) -> Path:
        return self.base_dir / name

    def config_path(self, name: str) -> Path:
        return self.profile_dir(name) / CONFIG_FILENAME

    def history_dir(self, name: str) -> Path:
        return self.profile_dir(name) / HISTORY_DIRNAME

    def exists(self, name: str) -> bool:
        return self.config_path(name).exists()

    # ------------------------------------------------------------------
    # Locking
    # ------------------------------------------------------------------

    def acquire_lock(self, name: str) -> bool:
        return self.guard.acquire(name)

    def release_lock(self, name: str) -> bool:
        return self.guard.release(name)

    def refresh_lock(self, name: str) -> bool:
        return self.guard.refresh(name)

    @contextmanager
    def locked(self, name: str) -> Iterator[None]:
        """
        Hold the lease for the duration of the block. A lease already held
        by this store is reused and left in place afterwards.

        Raises:
            LockContention: if another live process holds the lease
        """
        already_held = self.guard.holds(name)
        if not already_held and not self.guard.acquire(name):
            info = self.guard.get_lock_info(name)
            raise LockContention(name, info.holder_id if info else None)
        try:
            yield
        finally:
            if not already_held:
                self.guard.release(name)

    # ------------------------------------------------------------------
    # Load / save
    # ------------------------------------------------------------------

    def _read_file(self, path: Path) -> Profile:
        try:
            with open(path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except json.JSONDecodeError as e:
            raise ConfigurationError(f"Profile file {path} is corrupted: {e}")

        if not isinstance(data, dict):
            raise ConfigurationError(f"Invalid profile file format: {path}")

        version = str(data.get("schema_version", SCHEMA_VERSION))
        try:
            major = int(version.split(".")[0])
        except ValueError:
            raise ConfigurationError(f"Invalid schema_version {version!r} in {path}")
        if major > int(SCHEMA_VERSION.split(".")[0]):
            raise ConfigurationError(
                f"Profile {path} uses schema {version}, newer than supported {SCHEMA_VERSION}"
            )
        return Profile.from_dict(data)

    def load_profile(self, name: str) -> Profile:
        """
        Raises:
            ConfigurationError: if the profile is missing, corrupted or too new
        """
        path = self.config_path(name)
        if not path.exists():
            raise ConfigurationError(f"Profile '{name}' not found")
        profile = self._read_file(path)
        logger.debug(f"Loaded profile '{name}'")
        return profile

    def save(self, profile: Profile) -> None:
        """
        Save profile atomically. The previous version is copied into history/.

        Raises:
            NotLocked: unless this store holds the lease on the profile
        """
        if not self.guard.holds(profile.name):
            raise NotLocked(profile.name)

        profile.last_used = utcnow()
        data = {"schema_version": SCHEMA_VERSION, **profile.to_dict()}

        path = self.config_path(profile.name)
        path.parent.mkdir(parents=True, exist_ok=True)
        if path.exists():
            self._backup(profile.name)

        self._atomic_write(path, data)
        logger.debug(f"Saved profile '{profile.name}'")

    def _atomic_write(self, path: Path, data: Dict[str, Any]) -> None:
        temp_fd, temp_path = tempfile.mkstemp(
            dir=path.parent,
            prefix=".config_",
            suffix=".json.tmp",
        )
        try:
            with os.fdopen(temp_fd, "w", encoding="utf-8") as f:
                json.dump(data, f, indent=2)
                f.flush()
                os.fsync(f.fileno())

            # Atomic rename
            os.replace(temp_path, path)
        except BaseException:
            if os.path.exists(temp_path):
                os.unlink(temp_path)
            raise

    def _backup(self, name: str) -> None:
        history = self.history_dir(name)
        history.mkdir(parents=True, exist_ok=True)
        target = history / f"config-{time.time_ns()}.json"
        shutil.copy2(self.config_path(name), target)
        self._prune_history(name)

    def _prune_history(self, name: str) -> None:
        for stale in self.list_history(name)[self.max_versions:]:
            try:
                stale.unlink()
            except FileNotFoundError:
                pass

    def list_history(self, name: str) -> List[Path]:
        """Previous versions, newest first."""
        history = self.history_dir(name)
        if not history.exists():
            return []

        def _stamp(path: Path) -> int:
            try:
                return int(path.stem.split("-", 1)[1])
            except (IndexError, ValueError):
                return 0

        return sorted(history.glob("config-*.json"), key=_stamp, reverse=True)

    def restore_version(self, name: str, version: str) -> Profile:
        """Make a previous version current again (the current one goes to history)."""
        path = self.history_dir(name) / version
        if not path.exists():
            raise ConfigurationError(f"Version '{version}' of profile '{name}' not found")
        profile = self._read_file(path)
        profile.name = name
        with self.locked(name):
            self.save(profile)
        logger.info(f"Restored profile '{name}' from {version}")
        return profile

    # ------------------------------------------------------------------
    # Profiles
    # ------------------------------------------------------------------

    def create_profile(self, name: str, settings: Optional[ProfileSettings] = None) -> Profile:
        name = validate_profile_name(name)
        if self.exists(name):
            raise ConfigurationError(f"Profile '{name}' already exists")

        profile = Profile(name=name, settings=settings or ProfileSettings())
        with self.locked(name):
            self.save(profile)
        logger.info(f"Created profile '{name}'")
        return profile

    def delete_profile(self, name: str) -> None:
        """
        Raises:
            LockContention: if another process is using the profile
        """
        if not self.profile_dir(name).exists():
            raise ConfigurationError(f"Profile '{name}' not found")
        if self.guard.is_locked(name) and not self.guard.holds(name):
            info = self.guard.get_lock_info(name)
            raise LockContention(name, info.holder_id if info else None)
        shutil.rmtree(self.profile_dir(name))
        logger.info(f"Deleted profile '{name}'")

    def list_profiles(self) -> List[ProfileSummary]:
        """Summaries of every readable profile, most recently used first."""
        summaries = []
        for directory in sorted(p for p in self.base_dir.iterdir() if p.is_dir()):
            if not (directory / CONFIG_FILENAME).exists():
                continue
            try:
                profile = self._read_file(directory / CONFIG_FILENAME)
            except (ConfigurationError, OSError) as e:
                logger.warning(f"Skipping unreadable profile '{directory.name}': {e}")
                continue

            info = self.guard.get_lock_info(directory.name)
            summaries.append(ProfileSummary(
                name=profile.name,
                snipe_count=len(profile.snipes),
                active_snipe_count=len(profile.active_snipes()),
                last_used=profile.last_used,
                is_locked=info is not None,
                status="LOCKED" if info is not None else "IDLE",
                holder_id=info.holder_id if info else None,
            ))
        return sorted(summaries, key=lambda s: s.last_used, reverse=True)

    def update_settings(self, name: str, **changes: Any) -> Profile:
        with self.locked(name):
            profile = self.load_profile(name)
            current = profile.settings.to_dict()
            unknown = set(changes) - set(current)
            if unknown:
                raise ConfigurationError(f"Unknown profile settings: {', '.join(sorted(unknown))}")
            current.update(changes)
            profile.settings = ProfileSettings.from_dict(current)
            self.save(profile)
        return profile

    # ------------------------------------------------------------------
    # Snipes
    # ------------------------------------------------------------------

    def add_snipe(
        self,
        name: str,
        token_address: str,
        amount_btc: Optional[str] = None,
        credential_ref: str = "",
        wallet_address: str = "",
    ) -> Snipe:
        token_address = validate_token_address(token_address)
        with self.locked(name):
            profile = self.load_profile(name)
            amount = normalize_amount(amount_btc or profile.settings.default_amount)
            amount_to_sats(amount)

            snipe = Snipe(
                id=generate_snipe_id(),
                token_address=token_address,
                amount_btc=amount,
                credential_ref=credential_ref,
                wallet_address=wallet_address,
                status=SnipeStatus.VALIDATED,
            )
            profile.snipes.append(snipe)
            self.save(profile)
        logger.info(f"Added snipe {snipe.id} to '{name}': {token_address[:10]}... -> {amount} BTC")
        return snipe

    def _require_snipe(self, profile: Profile, snipe_id: str) -> Snipe:
        snipe = profile.find_snipe(snipe_id)
        if snipe is None:
            raise ConfigurationError(f"Snipe '{snipe_id}' not found in profile '{profile.name}'")
        return snipe

    def remove_snipe(self, name: str, snipe_id: str) -> None:
        with self.locked(name):
            profile = self.load_profile(name)
            snipe = self._require_snipe(profile, snipe_id)
            profile.snipes.remove(snipe)
            self.save(profile)
        logger.info(f"Removed snipe {snipe_id} from '{name}'")

    def toggle_snipe(self, name: str, snipe_id: str) -> Snipe:
        with self.locked(name):
            profile = self.load_profile(name)
            snipe = self._require_snipe(profile, snipe_id)
            snipe.is_active = not snipe.is_active
            self.save(profile)
        logger.info(f"{'Activated' if snipe.is_active else 'Deactivated'} snipe {snipe_id}")
        return snipe

    def set_snipe_status(self, name: str, snipe_id: str, status: SnipeStatus) -> Snipe:
        with self.locked(name):
            profile = self.load_profile(name)
            snipe = self._require_snipe(profile, snipe_id)
            snipe.status = SnipeStatus(status)
            self.save(profile)
        return snipe

    def record_results(
        self,
        name: str,
        results: Iterable[SnipeResult],
        network: Network,
        trigger: str = "manual",
    ) -> Profile:
        """
        Merge a run's results into the profile.

        Real runs set SUCCESS/FAILED and executed_at; test runs ("test")
        set TESTED and last_tested_at. A run summary is appended to the
        bounded execution_history.
        """
        results = list(results)
        now = utcnow()
        with self.locked(name):
            profile = self.load_profile(name)
            for result in results:
                snipe = profile.find_snipe(result.snipe_id)
                if snipe is None:
                    logger.warning(f"Result for unknown snipe {result.snipe_id} in '{name}'")
                    continue
                snipe.last_result = result
                if trigger == "test":
                    snipe.last_tested_at = now
                    snipe.status = SnipeStatus.TESTED if result.success else SnipeStatus.FAILED
                else:
                    snipe.status = SnipeStatus.SUCCESS if result.success else SnipeStatus.FAILED
                    if result.success:
                        snipe.executed_at = now

            profile.execution_history.append({
                "timestamp": now.isoformat(),
                "network": Network.parse(network).value,
                "trigger": trigger,
                "total": len(results),
                "succeeded": sum(1 for r in results if r.success),
                "results": [r.to_dict() for r in results],
            })
            profile.execution_history = profile.execution_history[-MAX_EXECUTION_HISTORY:]
            self.save(profile)
        return profile
