"""
Sync Logger - Background sync run history

Provides logging for:
1. Sync run history (sync_runs.jsonl)
2. Aggregate summary over recorded runs
"""

import json
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional


class SyncLogger:
    """Logger for background sync runs"""

    def __init__(self, log_path: str, name: str = "background_sync"):
        """
        Initialize sync logger

        Args:
            log_path: Base path for logs (e.g., ./logs)
            name: Subdirectory for this service's history
        """
        self.log_path = log_path
        self.name = name
        self.base_dir = Path(log_path) / name
        self.runs_file = self.base_dir / "sync_runs.jsonl"

        # Ensure directories exist
        self.base_dir.mkdir(parents=True, exist_ok=True)

    def log_run(self, run: Dict[str, Any]) -> None:
        """
        Log a single sync run

        Args:
            run: Run details including:
                - users_processed: Users visited in this run
                - accounts_processed: Accounts refreshed
                - errors: Users or accounts that failed
                - execution_time: Run duration in seconds
                - started_at: Run start time (ISO-8601)
        """
        run_record = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "started_at": run.get("started_at"),
            "users_processed": run.get("users_processed", 0),
            "accounts_processed": run.get("accounts_processed", 0),
            "errors": run.get("errors", 0),
            "execution_time": run.get("execution_time", 0.0),
            "success": run.get("errors", 0) == 0,
        }

        # Append to runs file
        with open(self.runs_file, "a") as f:
            f.write(json.dumps(run_record) + "\n")

    def get_run_history(self, limit: int = 100) -> List[Dict[str, Any]]:
        """
        Get recent sync runs

        Args:
            limit: Maximum number of runs to return

        Returns:
            List of run records, oldest first
        """
        runs = []
        if self.runs_file.exists():
            with open(self.runs_file, "r") as f:
                for line in f:
                    try:
                        runs.append(json.loads(line.strip()))
                    except json.JSONDecodeError:
                        continue

        return runs[-limit:]

    def get_summary(self) -> Dict[str, Any]:
        """
        Get summary over all recorded runs

        Returns:
            Totals and averages over the run history
        """
        runs = self.get_run_history(limit=10000)

        if not runs:
            return {
                "total_runs": 0,
                "failed_runs": 0,
                "accounts_processed": 0,
                "avg_execution_time": 0.0,
                "last_run": None,
            }

        return {
            "total_runs": len(runs),
            "failed_runs": sum(1 for r in runs if not r.get("success")),
            "accounts_processed": sum(r.get("accounts_processed", 0) for r in runs),
            "avg_execution_time": sum(r.get("execution_time", 0.0) for r in runs) / len(runs),
            "last_run": runs[-1].get("timestamp"),
        }


def get_sync_logger(log_path: str, name: Optional[str] = None) -> SyncLogger:
    """
    Create a sync logger instance

    Args:
        log_path: Base path for logs
        name: Optional subdirectory name

    Returns:
        SyncLogger instance
    """
    return SyncLogger(log_path, name or "background_sync")
