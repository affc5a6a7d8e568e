"""
Backup, upload, download, rotate and cleanup workflows.

A backup classifies the current instant into a tier, uploads the file under
a tier-prefixed, timestamped key and then prunes the tier. Rotation never
runs when the upload failed, and rotation failures never undo an upload.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Callable, Iterable, List, Optional, Tuple

from errors import RotationWarning, StoreError
from rotation import RotationPolicy, Tier, classify_tier, compute_prunable
from transfer import TransferPipeline, TransferRequest, utc_now


logger = logging.getLogger(__name__)


@dataclass
class RotationResult:
    bucket: str
    deleted: List[str] = field(default_factory=list)
    failures: List[Tuple[str, StoreError]] = field(default_factory=list)

    def merge(self, other: "RotationResult") -> None:
        self.deleted.extend(other.deleted)
        self.failures.extend(other.failures)

    def warning(self) -> Optional[RotationWarning]:
        if not self.failures:
            return None
        return RotationWarning(self.bucket, self.failures)


@dataclass
class BackupResult:
    key: str
    tier: Tier
    rotation: RotationResult


class BackupOrchestrator:
    def __init__(
        self,
        store,
        *,
        pipeline: Optional[TransferPipeline] = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.store = store
        self.pipeline = pipeline or TransferPipeline(store, clock=clock)
        self._clock = clock

    def run_backup(
        self, request: TransferRequest, policy: RotationPolicy, *, dry_run: bool = False
    ) -> BackupResult:
        now = self._clock()
        tier = classify_tier(now)
        prefix = policy.prefix_for(tier)
        logger.info("Backup classified as %s (prefix %r)", tier.value, prefix)

        key = self.pipeline.upload(
            replace(request, apply_naming=True),
            tier_prefix=prefix,
            dry_run=dry_run,
            instant=now,
        )

        rotation = self._rotate_tier(
            request.bucket,
            policy,
            tier,
            bucket_directory=request.bucket_directory,
            dry_run=dry_run,
            protected=(key,),
        )
        return BackupResult(key=key, tier=tier, rotation=rotation)

    def run_upload(self, request: TransferRequest, *, dry_run: bool = False) -> str:
        return self.pipeline.upload(replace(request, apply_naming=False), dry_run=dry_run)

    def run_download(self, request: TransferRequest, *, dry_run: bool = False) -> None:
        self.pipeline.download(request, dry_run=dry_run)

    def run_rotate(
        self,
        bucket: str,
        policy: RotationPolicy,
        *,
        bucket_directory: str = "",
        dry_run: bool = False,
        tiers: Optional[Iterable[Tier]] = None,
    ) -> RotationResult:
        result = RotationResult(bucket=bucket)
        for tier in tiers or (Tier.DAILY, Tier.WEEKLY, Tier.MONTHLY):
            result.merge(
                self._rotate_tier(
                    bucket, policy, tier, bucket_directory=bucket_directory, dry_run=dry_run
                )
            )
        return result

    def run_cleanup(self, bucket: str, *, dry_run: bool = False) -> int:
        return self.store.abort_abandoned_uploads(bucket, dry_run=dry_run)

    def _rotate_tier(
        self,
        bucket: str,
        policy: RotationPolicy,
        tier: Tier,
        *,
        bucket_directory: str,
        dry_run: bool,
        protected: Iterable[str] = (),
    ) -> RotationResult:
        result = RotationResult(bucket=bucket)
        if tier is Tier.MONTHLY:
            logger.debug("Monthly backups are left to bucket lifecycle rules")
            return result

        prefix = f"{bucket_directory}{policy.prefix_for(tier)}"
        try:
            entries = self.store.list_objects(bucket, prefix)
        except StoreError as error:
            logger.error("Failed to list s3://%s/%s: %s", bucket, prefix, error)
            result.failures.append((prefix, error))
            return result
        protected_keys = set(protected)
        prunable = [
            key
            for key in compute_prunable(policy, tier, entries, self._clock())
            if key not in protected_keys
        ]
        logger.info(
            "Rotating %s backups under s3://%s/%s: %d found, %d to delete",
            tier.value,
            bucket,
            prefix,
            len(entries),
            len(prunable),
        )

        action = "Would delete" if dry_run else "Deleting"
        for key in prunable:
            logger.info("%s %s backup s3://%s/%s", action, tier.value, bucket, key)
            if dry_run:
                continue
            try:
                self.store.delete_object(bucket, key)
            except StoreError as error:
                logger.error("Failed to delete s3://%s/%s: %s", bucket, key, error)
                result.failures.append((key, error))
                continue
            result.deleted.append(key)
        return result
