"""Configuration for PartnerMatch with validation."""

from pathlib import Path
from typing import Optional
from pydantic import BaseModel, Field, field_validator, ConfigDict
import structlog
import toml

log = structlog.get_logger()


class TeamLimits(BaseModel):
    """Team and membership limits."""
    min_capacity: int = Field(ge=1, default=1)
    max_capacity: int = Field(ge=1, le=20, default=20)
    max_owned_teams: int = Field(gt=0, default=5)
    max_memberships: int = Field(gt=0, default=5)
    max_name_length: int = Field(gt=0, default=20)
    max_description_length: int = Field(gt=0, default=512)
    max_password_length: int = Field(gt=0, default=32)
    # False keeps the unlocked count-then-insert for the owned-team cap
    strict_owner_cap: bool = True

    @field_validator('max_capacity')
    @classmethod
    def capacity_range_not_empty(cls, v, info):
        if 'min_capacity' in info.data and v < info.data['min_capacity']:
            raise ValueError('max_capacity must not be below min_capacity')
        return v


class MatchConfig(BaseModel):
    """Ranking configuration."""
    max_limit: int = Field(gt=0, le=20, default=20)
    page_size: int = Field(gt=0, le=20, default=20)


class CacheConfig(BaseModel):
    """Recommendation cache configuration."""
    backend: str = Field(default="sqlite", pattern="^(sqlite|memory)$")
    namespace: str = "partnermatch:user:recommend"
    ttl_ms: int = Field(gt=0, default=30000)

    @field_validator('namespace')
    @classmethod
    def namespace_not_empty(cls, v):
        if not v or not v.strip():
            raise ValueError('Cache namespace cannot be empty')
        return v.strip()


class LockConfig(BaseModel):
    """Distributed lock configuration."""
    backend: str = Field(default="sqlite", pattern="^(sqlite|memory)$")
    key_prefix: str = "partnermatch"
    join_lock_scope: str = Field(default="team", pattern="^(team|global)$")
    # None waits until the lock frees up
    wait_seconds: Optional[float] = Field(ge=0, default=10.0)
    # None means indefinite, renewed by the watchdog
    lease_seconds: Optional[float] = Field(gt=0, default=None)
    watchdog_lease_seconds: float = Field(gt=0, default=30.0)
    retry_interval_seconds: float = Field(gt=0, default=0.05)


class PrewarmConfig(BaseModel):
    """Daily recommendation pre-warming."""
    enabled: bool = True
    trigger_time: str = Field(default="00:00", pattern=r"^([01]\d|2[0-3]):[0-5]\d$")
    watch_list: list[int] = Field(default_factory=lambda: [1])
    lock_name: str = "partnermatch:precachejob:docache:lock"


class PartnerMatchConfig(BaseModel):
    """Main configuration for PartnerMatch with validation."""

    model_config = ConfigDict(validate_assignment=True)

    # Paths
    data_dir: Path = Field(default_factory=lambda: Path.home() / ".partnermatch")
    db_path: Optional[Path] = None  # Computed from data_dir if None

    teams: TeamLimits = Field(default_factory=TeamLimits)
    match: MatchConfig = Field(default_factory=MatchConfig)
    cache: CacheConfig = Field(default_factory=CacheConfig)
    locks: LockConfig = Field(default_factory=LockConfig)
    prewarm: PrewarmConfig = Field(default_factory=PrewarmConfig)

    # Logging
    log_level: str = Field(default="INFO", pattern="^(DEBUG|INFO|WARNING|ERROR)$")
    log_file: Optional[Path] = None
    log_json: bool = False
    # Tag on every log event; host:pid when unset
    instance_id: Optional[str] = None

    def model_post_init(self, __context):
        """Set computed values after initialization."""
        self.data_dir = Path(self.data_dir).expanduser()
        self.data_dir.mkdir(parents=True, exist_ok=True)

        if self.db_path is None:
            self.db_path = self.data_dir / "partnermatch.db"

    @classmethod
    def load(cls, path: Optional[str] = None) -> 'PartnerMatchConfig':
        """Load configuration from TOML file.

        Search order if path not provided:
        1. ./partnermatch.toml (project-specific)
        2. ~/.partnermatch/config.toml (user default)

        Args:
            path: Optional explicit config file path

        Returns:
            PartnerMatchConfig instance
        """
        if path is None:
            candidates = [
                Path("partnermatch.toml"),
                Path("~/.partnermatch/config.toml").expanduser()
            ]
            for candidate in candidates:
                if candidate.exists():
                    path = str(candidate)
                    log.info("config_found", path=path)
                    break

        if path and Path(path).exists():
            try:
                data = toml.load(path)
                log.info("config_loaded", path=path)
                return cls(**data)
            except Exception as e:
                log.error("config_load_failed", path=path, error=str(e))
                return cls()

        log.info("config_using_defaults")
        return cls()

    def save(self, path: str):
        """Save configuration to TOML file.

        Args:
            path: File path to save to
        """
        Path(path).parent.mkdir(parents=True, exist_ok=True)
        with open(path, 'w') as f:
            data = self.model_dump(mode='json', exclude_none=True)
            toml.dump(data, f)
        log.info("config_saved", path=path)


def validate_config(config: PartnerMatchConfig) -> list[str]:
    """Validate configuration and return warnings.

    Args:
        config: Config to validate

    Returns:
        List of warning messages
    """
    warnings = []

    if config.match.page_size > config.match.max_limit:
        warnings.append(
            f"Page size ({config.match.page_size}) exceeds the match limit "
            f"({config.match.max_limit}); pages will be truncated"
        )

    if config.teams.max_owned_teams > config.teams.max_memberships:
        warnings.append(
            f"max_owned_teams ({config.teams.max_owned_teams}) can never be reached "
            f"with max_memberships ({config.teams.max_memberships})"
        )

    if not config.teams.strict_owner_cap:
        warnings.append(
            "Owned-team cap is enforced without a lock; concurrent creates may exceed it"
        )

    if config.locks.lease_seconds is not None and config.locks.wait_seconds is None:
        warnings.append(
            "Fixed lease with unbounded wait: a crashed holder blocks joins for a full lease"
        )

    if config.prewarm.enabled and not config.prewarm.watch_list:
        warnings.append("Pre-warming is enabled but the watch list is empty")

    if config.locks.backend == "memory" or config.cache.backend == "memory":
        warnings.append(
            "In-memory lock or cache backend only coordinates a single process"
        )

    try:
        config.data_dir.mkdir(parents=True, exist_ok=True)
        test_file = config.data_dir / ".write_test"
        test_file.touch()
        test_file.unlink()
    except Exception as e:
        warnings.append(f"Data directory not writable: {e}")

    return warnings
