"""Run metrics, summary and log rotation for borgrunner."""

import json
import os
import tempfile
import time
from typing import Any, Dict

from borgrunner.constants import FILE_MODE


class MetricsService:
    """Writes the per-run metrics JSON and rotates old logs."""

    def __init__(self, log_dir: str, logger, filesystem_service):
        self.log_dir = log_dir
        self.logger = logger
        self.filesystem_service = filesystem_service

    def metrics_file(self, timestamp: str) -> str:
        return os.path.join(self.log_dir, f"metrics_{timestamp}.json")

    @staticmethod
    def extract_sizes(archive_info: Dict[str, Any]):
        archives = archive_info.get("archives") or [{}]
        stats = (archives[0] or {}).get("stats") or {}
        return int(stats.get("original_size") or 0), int(stats.get("compressed_size") or 0)

    def collect(self, timestamp: str, archive_name: str, archive_info: Dict[str, Any], started_at: float) -> str:
        self.logger.info("Collecting backup metrics...")
        original_size, compressed_size = self.extract_sizes(archive_info)
        record = {
            "timestamp": timestamp,
            "archive_name": archive_name,
            "original_size": original_size,
            "compressed_size": compressed_size,
            "duration": int(time.time() - started_at),
        }

        path = self.metrics_file(timestamp)
        os.makedirs(self.log_dir, exist_ok=True)
        fd, temp_path = tempfile.mkstemp(prefix="metrics-", suffix=".json", dir=self.log_dir)
        try:
            os.fchmod(fd, FILE_MODE)
            with os.fdopen(fd, "w", encoding="utf-8") as file_obj:
                json.dump(record, file_obj, indent=2, sort_keys=True)
                file_obj.write("\n")
            os.replace(temp_path, path)
        except OSError:
            self.filesystem_service.cleanup_file(temp_path)
            raise

        self.logger.info("Metrics collected: %s", path)
        return path

    def print_summary(self, archive_name: str, dumps_included: bool, retention_days: int):
        self.logger.info("Backup summary:")
        self.logger.info("  - Archive name: %s", archive_name)
        if dumps_included:
            self.logger.info("  - Database dumps included.")
        self.logger.info("  - Retention policy: Keep %s daily archives", retention_days)

    def rotate_logs(self, retention_days: int):
        self.logger.info("Rotating logs older than %s days...", retention_days)
        removed = self.filesystem_service.delete_older_than(self.log_dir, "bootstrap_", ".log", retention_days)
        removed += self.filesystem_service.delete_older_than(self.log_dir, "metrics_", ".json", retention_days)
        if removed:
            self.logger.info("Removed %s old log/metrics file(s).", removed)
