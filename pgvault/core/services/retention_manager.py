"""Retention enforcement over a storage prefix.

Each artifact is dated from the ``YYYYMMDD-HHMMSS`` token in its key, or
from the object's last-modified time when the key carries none. The keep-set
is the union of the active rules; everything else under the prefix is
deleted. Daily, weekly and monthly rules bucket by calendar period and keep
the newest artifact of each period that falls inside the rule's horizon.
"""

import calendar
import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, Hashable, Iterable, List, Optional, Sequence, Set

from pgvault.core.config.job_config import RetentionPolicy
from pgvault.core.errors import StorageError
from pgvault.core.helpers.path_template import TIMESTAMP_FORMAT
from pgvault.core.interfaces.storage_client_interface import StorageClient, StorageObject

logger = logging.getLogger(__name__)

TIMESTAMP_PATTERN = re.compile(r"(\d{8}-\d{6})")


@dataclass(frozen=True)
class BackupArtifact:
    key: str
    timestamp: datetime
    size: int = 0


@dataclass
class RetentionResult:
    prefix: str
    kept: List[str] = field(default_factory=list)
    deleted: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)
    dry_run: bool = False


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def parse_timestamp_from_key(key: str) -> Optional[datetime]:
    match = TIMESTAMP_PATTERN.search(key)
    if not match:
        return None
    try:
        return datetime.strptime(match.group(1), TIMESTAMP_FORMAT).replace(tzinfo=timezone.utc)
    except ValueError:
        return None


def subtract_months(moment: datetime, months: int) -> datetime:
    """Step back whole calendar months; a day past the target month's end rolls forward.

    2026-03-31 minus one month is 2026-03-03, not 2026-02-28.
    """
    total = moment.year * 12 + moment.month - 1 - months
    year, month = divmod(total, 12)
    month += 1
    last_day = calendar.monthrange(year, month)[1]
    result = moment.replace(year=year, month=month, day=min(moment.day, last_day))
    if moment.day > last_day:
        result += timedelta(days=moment.day - last_day)
    return result


def to_artifacts(objects: Iterable[StorageObject]) -> List[BackupArtifact]:
    """Date every object and sort newest first. Undatable objects are dropped."""
    artifacts = []
    for obj in objects:
        timestamp = parse_timestamp_from_key(obj.key)
        if timestamp is None:
            timestamp = obj.last_modified
        if timestamp is None:
            logger.debug(f"Skipping {obj.key}: no timestamp in key and no modification time")
            continue
        artifacts.append(BackupArtifact(key=obj.key, timestamp=timestamp, size=obj.size))
    artifacts.sort(key=lambda a: a.timestamp, reverse=True)
    return artifacts


def _keep_per_bucket(
    artifacts: Sequence[BackupArtifact],
    cutoff: datetime,
    bucket: Callable[[datetime], Hashable],
) -> Set[str]:
    seen: Set[Hashable] = set()
    keep: Set[str] = set()
    for artifact in artifacts:
        if artifact.timestamp < cutoff:
            continue
        period = bucket(artifact.timestamp.astimezone(timezone.utc))
        if period in seen:
            continue
        seen.add(period)
        keep.add(artifact.key)
    return keep


def keep_last(artifacts: Sequence[BackupArtifact], count: int, now: datetime) -> Set[str]:
    return {artifact.key for artifact in artifacts[:count]}


def keep_daily(artifacts: Sequence[BackupArtifact], count: int, now: datetime) -> Set[str]:
    return _keep_per_bucket(artifacts, now - timedelta(days=count), lambda ts: ts.date())


def keep_weekly(artifacts: Sequence[BackupArtifact], count: int, now: datetime) -> Set[str]:
    return _keep_per_bucket(artifacts, now - timedelta(days=7 * count), lambda ts: ts.isocalendar()[:2])


def keep_monthly(artifacts: Sequence[BackupArtifact], count: int, now: datetime) -> Set[str]:
    return _keep_per_bucket(artifacts, subtract_months(now, count), lambda ts: (ts.year, ts.month))


RULES: Dict[str, Callable[[Sequence[BackupArtifact], int, datetime], Set[str]]] = {
    "keep_last": keep_last,
    "keep_daily": keep_daily,
    "keep_weekly": keep_weekly,
    "keep_monthly": keep_monthly,
}


class RetentionManager:

    def __init__(self, storage_client: StorageClient, clock: Optional[Callable[[], datetime]] = None) -> None:
        self.storage_client = storage_client
        self.clock = clock or utc_now

    def calculate_keep_set(
        self, artifacts: Sequence[BackupArtifact], policy: RetentionPolicy, now: datetime
    ) -> Set[str]:
        keep: Set[str] = set()
        for attribute, rule in RULES.items():
            count = getattr(policy, attribute)
            if count is None or count <= 0:
                continue
            keep |= rule(artifacts, count, now)
        return keep

    def _plan(self, prefix: str, policy: Optional[RetentionPolicy]):
        if policy is None or not policy.has_active_rules:
            logger.info(f"No active retention rules for {prefix!r}, nothing to do")
            return [], []

        try:
            objects = self.storage_client.list(prefix)
        except Exception as e:
            raise StorageError(f"failed to list backup files: {e}")
        if not objects:
            logger.info(f"No backups found under {prefix!r}")
            return [], []

        artifacts = to_artifacts(objects)
        keep = self.calculate_keep_set(artifacts, policy, self.clock())
        kept = [a.key for a in artifacts if a.key in keep]
        delete = [a.key for a in artifacts if a.key not in keep]
        logger.info(
            f"Retention for {prefix!r}: {len(artifacts)} backups, "
            f"keeping {len(kept)}, deleting {len(delete)}"
        )
        return kept, delete

    def apply_retention(self, prefix: str, policy: Optional[RetentionPolicy]) -> List[str]:
        """Return the keys under ``prefix`` the policy does not keep, newest first."""
        return self._plan(prefix, policy)[1]

    def delete_files(self, keys: Iterable[str]) -> List[str]:
        """Delete every key independently; returns the keys that could not be deleted."""
        failed = []
        for key in keys:
            try:
                self.storage_client.delete(key)
            except Exception as e:
                logger.warning(f"Failed to delete {key}: {e}")
                failed.append(key)
                continue
            logger.info(f"Deleted {key}")
        return failed

    def enforce(self, prefix: str, policy: Optional[RetentionPolicy], dry_run: bool = False) -> RetentionResult:
        kept, delete = self._plan(prefix, policy)
        result = RetentionResult(prefix=prefix, kept=kept, dry_run=dry_run)
        if dry_run:
            for key in delete:
                logger.info(f"[dry-run] Would delete {key}")
            result.deleted = delete
            return result

        result.failed = self.delete_files(delete)
        result.deleted = [key for key in delete if key not in result.failed]
        return result
