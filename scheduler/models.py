from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone

from scheduler.cron import CronSchedule, parse_cron


def bucket_of(dt: datetime) -> int:
    """Minute bucket number (minutes since the epoch, UTC) containing `dt`."""
    return int(dt.astimezone(timezone.utc).timestamp()) // 60


def bucket_start(bucket: int) -> datetime:
    return datetime.fromtimestamp(int(bucket) * 60, tz=timezone.utc)


def bucket_to_text(bucket: int | None) -> str | None:
    if bucket is None:
        return None
    return bucket_start(bucket).isoformat()


def bucket_from_text(value: str | None) -> int | None:
    if not value:
        return None
    try:
        return bucket_of(datetime.fromisoformat(str(value)))
    except ValueError:
        return None


@dataclass(slots=True)
class ScheduledTask:
    id: str
    owner_id: int
    channel_id: int
    cron_expression: str
    prompt: str
    created_at_utc: str
    enabled: bool = True
    last_fired_bucket: int | None = None
    last_run_at_utc: str | None = None
    last_error: str | None = None
    schedule: CronSchedule | None = field(default=None, repr=False, compare=False)

    @classmethod
    def from_row(cls, row: dict) -> "ScheduledTask":
        return cls(
            id=str(row["id"]),
            owner_id=int(row["owner_id"]),
            channel_id=int(row["channel_id"]),
            cron_expression=str(row["cron_expression"]),
            prompt=str(row["prompt"]),
            created_at_utc=str(row["created_at_utc"]),
            enabled=bool(row["enabled"]),
            last_fired_bucket=bucket_from_text(row.get("last_fired_bucket")),
            last_run_at_utc=row.get("last_run_at_utc"),
            last_error=row.get("last_error"),
            schedule=parse_cron(str(row["cron_expression"])),
        )

    def to_row(self) -> dict:
        return {
            "id": self.id,
            "owner_id": int(self.owner_id),
            "channel_id": int(self.channel_id),
            "cron_expression": self.cron_expression,
            "prompt": self.prompt,
            "enabled": 1 if self.enabled else 0,
            "created_at_utc": self.created_at_utc,
            "last_fired_bucket": bucket_to_text(self.last_fired_bucket),
            "last_run_at_utc": self.last_run_at_utc,
            "last_error": self.last_error,
        }

    @property
    def created_bucket(self) -> int | None:
        return bucket_from_text(self.created_at_utc)
