"""Persisted synchronization state, one record per contract."""
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

ERROR_LOG_LIMIT = 500


class SyncStep(str, Enum):
    IDLE = "idle"
    STARTING = "starting"
    FETCHING_SUPPLY = "fetching_supply"
    FETCHING_HOLDERS = "fetching_holders"
    VERIFYING_OWNERSHIP = "verifying_ownership"
    FETCHING_TIERS = "fetching_tiers"
    FETCHING_REWARDS = "fetching_rewards"
    BUILDING_HOLDERS = "building_holders"
    COMPLETED = "completed"
    FAILED = "failed"


def now_ms() -> int:
    return int(time.time() * 1000)


def error_entry(phase, error, **context):
    entry = {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "phase": phase,
        "error": str(error),
    }
    entry.update(context)
    return entry


@dataclass
class ProgressState:
    step: str = SyncStep.IDLE.value
    processed_nfts: int = 0
    total_nfts: int = 0
    processed_tiers: int = 0
    total_tiers: int = 0
    error: Optional[str] = None
    error_log: list = field(default_factory=list)
    last_updated: Optional[int] = None

    @property
    def percentage(self) -> str:
        if self.step == SyncStep.COMPLETED.value:
            return "100%"
        if not self.total_nfts:
            return "0%"
        return f"{min(100.0, self.processed_nfts / self.total_nfts * 100):.1f}%"

    def to_dict(self):
        return {
            "step": self.step,
            "processedNfts": self.processed_nfts,
            "totalNfts": self.total_nfts,
            "processedTiers": self.processed_tiers,
            "totalTiers": self.total_tiers,
            "error": self.error,
            "errorLog": list(self.error_log),
            "progressPercentage": self.percentage,
            "lastUpdated": self.last_updated,
        }

    @classmethod
    def from_dict(cls, data):
        data = data if isinstance(data, dict) else {}
        log = data.get("errorLog")
        return cls(
            step=data.get("step") or SyncStep.IDLE.value,
            processed_nfts=data.get("processedNfts") or 0,
            total_nfts=data.get("totalNfts") or 0,
            processed_tiers=data.get("processedTiers") or 0,
            total_tiers=data.get("totalTiers") or 0,
            error=data.get("error") or None,
            error_log=list(log) if isinstance(log, list) else [],
            last_updated=data.get("lastUpdated"),
        )


@dataclass
class CacheState:
    is_populating: bool = False
    total_owners: int = 0
    total_live_holders: int = 0
    progress: ProgressState = field(default_factory=ProgressState)
    last_updated: Optional[int] = None
    last_processed_block: Optional[int] = None
    global_metrics: dict = field(default_factory=dict)

    def record_error(self, phase, error, **context):
        """Append to the error log, keeping the most recent entries only."""
        entry = error_entry(phase, error, **context)
        self.progress.error_log.append(entry)
        del self.progress.error_log[:-ERROR_LOG_LIMIT]
        return entry

    def extend_errors(self, entries):
        self.progress.error_log.extend(entries)
        del self.progress.error_log[:-ERROR_LOG_LIMIT]

    def touch(self):
        self.last_updated = self.progress.last_updated = now_ms()

    def to_dict(self):
        return {
            "isPopulating": self.is_populating,
            "totalOwners": self.total_owners,
            "totalLiveHolders": self.total_live_holders,
            "progressState": self.progress.to_dict(),
            "lastUpdated": self.last_updated,
            "lastProcessedBlock": self.last_processed_block,
            "globalMetrics": dict(self.global_metrics),
        }

    @classmethod
    def from_dict(cls, data):
        if not isinstance(data, dict) or not isinstance(data.get("progressState"), dict):
            return None
        block = data.get("lastProcessedBlock")
        try:
            block = int(block) if block is not None else None
        except (TypeError, ValueError):
            block = None
        return cls(
            is_populating=bool(data.get("isPopulating", False)),
            total_owners=data.get("totalOwners") or 0,
            total_live_holders=data.get("totalLiveHolders") or 0,
            progress=ProgressState.from_dict(data["progressState"]),
            last_updated=data.get("lastUpdated"),
            last_processed_block=block,
            global_metrics=data.get("globalMetrics") or {},
        )
