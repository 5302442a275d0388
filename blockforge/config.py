from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

DEFAULT_SERVER_VERSION = "1.21.1"
# Vanilla /fill refuses regions larger than this.
VANILLA_FILL_LIMIT = 32_768


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def _env_delays(name: str, default: tuple[int, ...]) -> tuple[int, ...]:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    return tuple(int(part) for part in raw.replace(";", ",").split(",") if part.strip())


def _env_list(name: str, default: tuple[str, ...]) -> tuple[str, ...]:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    return tuple(part.strip().lower() for part in raw.split(",") if part.strip())


@dataclass(frozen=True)
class BuilderSettings:
    state_dir: Path
    placements_per_second: float = 50.0
    text_command_min_delay_ms: int = 500
    settle_delay_ms: int = 50
    retry_delays_ms: tuple[int, ...] = (50, 100, 200)
    bulk_command_latency_ms: int = 600
    checkpoint_interval: int = 5_000
    max_region_volume: int = VANILLA_FILL_LIMIT
    min_run_length: int = 10
    prefer_bulk: bool = True
    # The console target has no sphere or cylinder command.
    bulk_commands: tuple[str, ...] = ("fill", "walls")
    reach: float = 4.5
    move_poll_interval_ms: int = 200
    move_timeout_ms: int = 3_000
    move_tolerance: float = 2.0
    max_terminal_records: int = 10
    undo_history_limit: int = 10_000
    progress_interval: int = 10
    container_name: str = "minecraft"
    agent_name: str = ""
    assume_creative: bool = False
    server_version: str = DEFAULT_SERVER_VERSION
    api_token: str = ""
    job_history: int = 50
    log_level: str = "INFO"

    @property
    def max_attempts(self) -> int:
        return len(self.retry_delays_ms)

    @classmethod
    def from_env(cls) -> "BuilderSettings":
        return cls(
            state_dir=Path(os.getenv("BLOCKFORGE_STATE_DIR", "./data/build-state")).resolve(),
            placements_per_second=float(os.getenv("BLOCKFORGE_PLACEMENTS_PER_SECOND", "50")),
            text_command_min_delay_ms=int(os.getenv("BLOCKFORGE_TEXT_COMMAND_MIN_DELAY_MS", "500")),
            settle_delay_ms=int(os.getenv("BLOCKFORGE_SETTLE_DELAY_MS", "50")),
            retry_delays_ms=_env_delays("BLOCKFORGE_RETRY_DELAYS_MS", (50, 100, 200)),
            bulk_command_latency_ms=int(os.getenv("BLOCKFORGE_BULK_COMMAND_LATENCY_MS", "600")),
            checkpoint_interval=int(os.getenv("BLOCKFORGE_CHECKPOINT_INTERVAL", "5000")),
            max_region_volume=int(os.getenv("BLOCKFORGE_MAX_REGION_VOLUME", str(VANILLA_FILL_LIMIT))),
            min_run_length=int(os.getenv("BLOCKFORGE_MIN_RUN_LENGTH", "10")),
            prefer_bulk=_env_bool("BLOCKFORGE_PREFER_BULK", True),
            bulk_commands=_env_list("BLOCKFORGE_BULK_COMMANDS", ("fill", "walls")),
            reach=float(os.getenv("BLOCKFORGE_REACH", "4.5")),
            move_poll_interval_ms=int(os.getenv("BLOCKFORGE_MOVE_POLL_INTERVAL_MS", "200")),
            move_timeout_ms=int(os.getenv("BLOCKFORGE_MOVE_TIMEOUT_MS", "3000")),
            move_tolerance=float(os.getenv("BLOCKFORGE_MOVE_TOLERANCE", "2")),
            max_terminal_records=int(os.getenv("BLOCKFORGE_MAX_TERMINAL_RECORDS", "10")),
            undo_history_limit=int(os.getenv("BLOCKFORGE_UNDO_HISTORY_LIMIT", "10000")),
            progress_interval=int(os.getenv("BLOCKFORGE_PROGRESS_INTERVAL", "10")),
            container_name=os.getenv("BLOCKFORGE_CONTAINER", "minecraft").strip(),
            agent_name=os.getenv("BLOCKFORGE_AGENT", "").strip(),
            assume_creative=_env_bool("BLOCKFORGE_ASSUME_CREATIVE", False),
            server_version=os.getenv("BLOCKFORGE_SERVER_VERSION", DEFAULT_SERVER_VERSION).strip(),
            api_token=os.getenv("BLOCKFORGE_API_TOKEN", ""),
            job_history=int(os.getenv("BLOCKFORGE_JOB_HISTORY", "50")),
            log_level=os.getenv("BLOCKFORGE_LOG_LEVEL", "INFO").upper(),
        )
