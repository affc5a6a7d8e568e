#!/usr/bin/env python3
"""
GFS backup rotation for an S3 bucket.

Uploads a file under a monthly, weekly or daily key, prunes older objects
of the same tier, and offers plain upload, download, rotate-only and
multipart cleanup actions.
"""
from __future__ import annotations

import argparse
import configparser
import logging
import os
import sys
from dataclasses import dataclass
from datetime import timedelta
from pathlib import Path
from typing import Dict, Iterable, Mapping, Optional

from errors import BackupError, ConfigurationError, ValidationError
from orchestrator import BackupOrchestrator
from rotation import RotationPolicy
from store import S3ObjectStore, create_s3_client, quiet_external_loggers
from transfer import TransferRequest


CONFIG_SECTION = "s3backup"
ACTIONS = ("backup", "upload", "download", "rotate", "cleanup")

ENV_CRED_FILE = "AWS_CRED_FILE"
ENV_PROFILE = "AWS_PROFILE"
ENV_REGION = "AWS_REGION"
ENV_ENDPOINT = "AWS_ENDPOINT"
ENV_BUCKET_DIR = "AWS_BUCKET_DIR"
# Older deployments name the bucket directory AWS_BUCKET.
ENV_LEGACY_BUCKET_DIR = "AWS_BUCKET"
ENV_BUCKET = "S3BACKUP_BUCKET"


@dataclass
class BackupConfig:
    action: str
    bucket: str
    region: Optional[str] = None
    bucket_dir: str = ""
    cred_file: Optional[Path] = None
    profile: Optional[str] = None
    endpoint: Optional[str] = None
    path_to_file: Optional[Path] = None
    s3_file_name: Optional[str] = None
    timeout: int = 3600
    dry_run: bool = False
    concurrent_workers: int = 5
    part_size: int = 50
    enforce_retention_period: bool = True
    daily_retention_count: int = 6
    daily_retention_period: int = 168
    weekly_retention_count: int = 4
    weekly_retention_period: int = 672


def parse_args(argv: Optional[Iterable[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Upload backups to S3 and rotate them with a Grandfather-Father-Son policy."
    )
    parser.add_argument(
        "action",
        choices=ACTIONS,
        help="The action to run: backup, upload, download, rotate or cleanup.",
    )
    parser.add_argument(
        "-c",
        "--config",
        type=Path,
        help="Path to an INI config file with an [s3backup] section.",
    )
    parser.add_argument("--region", help="AWS region of the bucket.")
    parser.add_argument("--bucket", help="The S3 bucket to operate on.")
    parser.add_argument(
        "--bucket-dir",
        help="Directory chain inside the bucket. Must include the trailing slash.",
    )
    parser.add_argument(
        "--cred-file",
        type=Path,
        help="AWS shared credentials file, when environment credentials are not used.",
    )
    parser.add_argument("--profile", help="Profile to use from the credentials file.")
    parser.add_argument(
        "--endpoint",
        help="Endpoint URL of an S3 compatible provider.",
    )
    parser.add_argument(
        "--path-to-file",
        type=Path,
        help="Local file to upload, or destination path for download.",
    )
    parser.add_argument(
        "--s3-file-name",
        help="Name of the object as it should appear in the bucket.",
    )
    parser.add_argument(
        "--timeout",
        type=int,
        help="Deadline for a transfer in seconds (default: 3600).",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        default=None,
        help="Show planned actions without uploading or deleting objects.",
    )
    parser.add_argument(
        "--concurrent-workers",
        type=int,
        help="Number of worker threads per transfer (default: 5).",
    )
    parser.add_argument(
        "--part-size",
        type=int,
        help="Chunk size of multipart transfers in MB (default: 50).",
    )
    parser.add_argument(
        "--enforce-retention-period",
        dest="enforce_retention_period",
        action="store_true",
        help="Only rotate objects older than their tier's retention period (default).",
    )
    parser.add_argument(
        "--no-enforce-retention-period",
        dest="enforce_retention_period",
        action="store_false",
        help="Rotate purely by count, ignoring object age.",
    )
    parser.set_defaults(enforce_retention_period=None)
    parser.add_argument(
        "--daily-retention-count",
        type=int,
        help="Number of daily objects to keep (default: 6).",
    )
    parser.add_argument(
        "--daily-retention-period",
        type=int,
        help="Hours a daily object is kept at minimum (default: 168).",
    )
    parser.add_argument(
        "--weekly-retention-count",
        type=int,
        help="Number of weekly objects to keep (default: 4).",
    )
    parser.add_argument(
        "--weekly-retention-period",
        type=int,
        help="Hours a weekly object is kept at minimum (default: 672).",
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"],
        help="Logging verbosity (default: INFO).",
    )
    return parser.parse_args(argv)


def read_config_file(config_path: Path) -> Dict[str, str]:
    parser = configparser.ConfigParser()
    read_files = parser.read(config_path)
    if not read_files:
        raise ConfigurationError(f"Config file {config_path} could not be read.")
    if CONFIG_SECTION not in parser:
        raise ConfigurationError(
            f"Config file {config_path} is missing the [{CONFIG_SECTION}] section."
        )
    return {k: v for k, v in parser[CONFIG_SECTION].items()}


def read_environment(environ: Mapping[str, str]) -> Dict[str, str]:
    mapping = {
        ENV_CRED_FILE: "cred_file",
        ENV_PROFILE: "profile",
        ENV_REGION: "region",
        ENV_ENDPOINT: "endpoint",
        ENV_LEGACY_BUCKET_DIR: "bucket_dir",
        ENV_BUCKET_DIR: "bucket_dir",
        ENV_BUCKET: "bucket",
    }
    return {name: environ[var] for var, name in mapping.items() if environ.get(var)}


def parse_bool(value: str) -> bool:
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ConfigurationError(f"Invalid boolean value: {value}")


def parse_int(value: str, name: str) -> int:
    try:
        return int(value)
    except ValueError as error:
        raise ConfigurationError(f"{name} must be an integer.") from error


def merge_config(
    args: argparse.Namespace,
    file_config: Optional[Dict[str, str]] = None,
    env_config: Optional[Dict[str, str]] = None,
) -> BackupConfig:
    file_cfg = dict(env_config or {})
    file_cfg.update(file_config or {})
    defaults = BackupConfig(action=args.action, bucket="")

    def pick_str(name: str) -> Optional[str]:
        value = getattr(args, name)
        if value is not None:
            return str(value)
        return file_cfg.get(name)

    def pick_int(name: str) -> int:
        value = getattr(args, name)
        if value is not None:
            return value
        if name in file_cfg:
            return parse_int(file_cfg[name], name)
        return getattr(defaults, name)

    def pick_bool(name: str) -> bool:
        value = getattr(args, name)
        if value is not None:
            return value
        if name in file_cfg:
            return parse_bool(file_cfg[name])
        return getattr(defaults, name)

    bucket = pick_str("bucket")
    if not bucket:
        raise ConfigurationError("bucket must be supplied via CLI, config file or environment.")

    if args.action in ("backup", "upload", "download"):
        if not pick_str("path_to_file"):
            raise ConfigurationError(f"path_to_file is required for the {args.action} action.")
        if not pick_str("s3_file_name"):
            raise ConfigurationError(f"s3_file_name is required for the {args.action} action.")

    config = BackupConfig(
        action=args.action,
        bucket=bucket,
        region=pick_str("region"),
        bucket_dir=pick_str("bucket_dir") or "",
        profile=pick_str("profile"),
        endpoint=pick_str("endpoint"),
        s3_file_name=pick_str("s3_file_name"),
        timeout=pick_int("timeout"),
        dry_run=pick_bool("dry_run"),
        concurrent_workers=pick_int("concurrent_workers"),
        part_size=pick_int("part_size"),
        enforce_retention_period=pick_bool("enforce_retention_period"),
        daily_retention_count=pick_int("daily_retention_count"),
        daily_retention_period=pick_int("daily_retention_period"),
        weekly_retention_count=pick_int("weekly_retention_count"),
        weekly_retention_period=pick_int("weekly_retention_period"),
    )

    cred_file = pick_str("cred_file")
    if cred_file:
        config.cred_file = Path(cred_file).expanduser().resolve()
    path_to_file = pick_str("path_to_file")
    if path_to_file:
        config.path_to_file = Path(path_to_file).expanduser().resolve()
    return config


def build_rotation_policy(config: BackupConfig) -> RotationPolicy:
    if not config.enforce_retention_period:
        logging.warning(
            "Running with retention period enforcement disabled; objects may be "
            "deleted before their retention period has passed."
        )
    return RotationPolicy(
        daily_retention_count=config.daily_retention_count,
        daily_retention_period=timedelta(hours=config.daily_retention_period),
        weekly_retention_count=config.weekly_retention_count,
        weekly_retention_period=timedelta(hours=config.weekly_retention_period),
        enforce_retention_period=config.enforce_retention_period,
    )


def build_transfer_request(config: BackupConfig) -> TransferRequest:
    return TransferRequest(
        source_path=config.path_to_file or "",
        destination_key=config.s3_file_name or "",
        bucket=config.bucket,
        bucket_directory=config.bucket_dir,
        deadline=timedelta(seconds=config.timeout),
        worker_count=config.concurrent_workers,
        chunk_size_mb=config.part_size,
    )


def log_config(config: BackupConfig) -> None:
    logging.info("Loaded s3backup with settings:")
    for name, value in vars(config).items():
        logging.info("  %s=%s", name, value)


def configure_logging(log_level: str) -> None:
    level = getattr(logging, log_level.upper(), None)
    if level is None:
        raise ValueError(f"Invalid log level: {log_level}")
    logging.basicConfig(
        level=level, format="%(asctime)s %(levelname)s %(name)s: %(message)s"
    )
    quiet_external_loggers()


def run_action(orchestrator: BackupOrchestrator, config: BackupConfig) -> None:
    if config.action == "backup":
        result = orchestrator.run_backup(
            build_transfer_request(config), build_rotation_policy(config), dry_run=config.dry_run
        )
        warning = result.rotation.warning()
        if warning is not None:
            logging.warning("Backup %s stored, but rotation was incomplete: %s", result.key, warning)
        logging.info("Upload and rotation complete: %s", result.key)
    elif config.action == "upload":
        key = orchestrator.run_upload(build_transfer_request(config), dry_run=config.dry_run)
        logging.info("Upload complete: %s", key)
    elif config.action == "download":
        orchestrator.run_download(build_transfer_request(config), dry_run=config.dry_run)
    elif config.action == "rotate":
        rotation = orchestrator.run_rotate(
            config.bucket,
            build_rotation_policy(config),
            bucket_directory=config.bucket_dir,
            dry_run=config.dry_run,
        )
        warning = rotation.warning()
        if warning is not None:
            logging.warning("%s", warning)
        logging.info("Rotation complete: %d object(s) deleted", len(rotation.deleted))
    elif config.action == "cleanup":
        aborted = orchestrator.run_cleanup(config.bucket, dry_run=config.dry_run)
        logging.info("Cleanup complete: %d multipart upload(s) aborted", aborted)
    else:
        raise ConfigurationError(f"Unsupported action: {config.action}")


def create_orchestrator(config: BackupConfig) -> BackupOrchestrator:
    from botocore.exceptions import BotoCoreError

    try:
        client = create_s3_client(
            aws_profile=config.profile,
            aws_region=config.region,
            endpoint_url=config.endpoint,
            credentials_file=config.cred_file,
            max_pool_connections=max(10, config.concurrent_workers),
            timeout=config.timeout,
        )
    except (BotoCoreError, ValueError) as error:
        raise ConfigurationError(f"Could not create the S3 client: {error}") from error
    return BackupOrchestrator(S3ObjectStore(client))


def main(argv: Optional[Iterable[str]] = None) -> int:
    args = parse_args(argv)
    try:
        configure_logging(args.log_level)
    except ValueError as error:
        logging.error("%s", error)
        return 2

    try:
        file_config: Optional[Dict[str, str]] = None
        if args.config:
            file_config = read_config_file(args.config)
        config = merge_config(args, file_config, read_environment(os.environ))
    except ConfigurationError as error:
        logging.error("%s", error)
        return 2

    log_config(config)

    try:
        orchestrator = create_orchestrator(config)
        run_action(orchestrator, config)
    except (ConfigurationError, ValidationError) as error:
        logging.error("%s", error)
        return 2
    except BackupError as error:
        logging.error("%s %s failed: %s", CONFIG_SECTION, config.action, error)
        return 1

    logging.info("Finished s3backup %s", config.action)
    return 0


if __name__ == "__main__":
    sys.exit(main())
