"""
Configuration management for the scheduler engine.
"""

from __future__ import annotations

import os
import socket
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from loguru import logger


def _default_database_url() -> str:
    """Resolve the store URL.

    Priority:
    1) SCHEDULER_DATABASE_URL env
    2) memory:// (single process, nothing persisted)
    """
    return os.getenv('SCHEDULER_DATABASE_URL') or 'memory://'


def _default_node_name() -> str:
    env_node = os.getenv('SCHEDULER_NODE')
    if env_node:
        return env_node
    try:
        return f"{socket.gethostname()}-{os.getpid()}"
    except Exception:
        return f"node-{os.getpid()}"


def _env_bool(key: str, default: str) -> bool:
    return os.getenv(key, default).strip().lower() in {'1', 'true', 'yes', 'y', 'on'}


def _parse_queue_limits(raw: str) -> Dict[str, int]:
    """Parse ``"default=10,emails=2"`` into ``{"default": 10, "emails": 2}``."""
    out: Dict[str, int] = {}
    for part in (raw or '').split(','):
        s = part.strip()
        if not s or '=' not in s:
            continue
        name, _, value = s.partition('=')
        try:
            out[name.strip()] = int(value.strip())
        except ValueError:
            logger.warning(f"Ignoring invalid queue limit entry: {s}")
    return out


@dataclass
class SchedulerConfig:
    """
    Complete configuration for the scheduler engine.

    Every field can be overridden through a ``SCHEDULER_*`` environment variable.
    Times are seconds.
    """

    # Store
    database_url: str = field(default_factory=_default_database_url)

    # Node identity
    node: str = field(default_factory=_default_node_name)

    # Cron loop
    tick_interval: float = field(
        default_factory=lambda: float(os.getenv('SCHEDULER_TICK_INTERVAL', '1.0'))
    )
    batch_size: int = field(
        default_factory=lambda: int(os.getenv('SCHEDULER_BATCH_SIZE', '100'))
    )

    # Workflow loop
    workflow_tick_interval: float = field(
        default_factory=lambda: float(os.getenv('SCHEDULER_WORKFLOW_TICK_INTERVAL', '60'))
    )
    workflow_batch_size: int = field(
        default_factory=lambda: int(os.getenv('SCHEDULER_WORKFLOW_BATCH_SIZE', '50'))
    )
    step_concurrency: int = field(
        default_factory=lambda: int(os.getenv('SCHEDULER_STEP_CONCURRENCY', '10'))
    )

    # Lifeline
    lifeline_enabled: bool = field(
        default_factory=lambda: _env_bool('SCHEDULER_LIFELINE_ENABLED', 'true')
    )
    lifeline_interval: float = field(
        default_factory=lambda: float(os.getenv('SCHEDULER_LIFELINE_INTERVAL', '60'))
    )
    rescue_after: float = field(
        default_factory=lambda: float(os.getenv('SCHEDULER_RESCUE_AFTER', '300'))
    )
    heartbeat_interval: float = field(
        default_factory=lambda: float(os.getenv('SCHEDULER_HEARTBEAT_INTERVAL', '30'))
    )

    # Leadership
    peer: str = field(
        default_factory=lambda: os.getenv('SCHEDULER_PEER', 'local').strip().lower()
    )
    leader_ttl: float = field(
        default_factory=lambda: float(os.getenv('SCHEDULER_LEADER_TTL', '30'))
    )
    postgres_dsn: Optional[str] = field(
        default_factory=lambda: os.getenv('SCHEDULER_POSTGRES_DSN') or None
    )
    advisory_lock_key: int = field(
        default_factory=lambda: int(os.getenv('SCHEDULER_ADVISORY_LOCK_KEY', '123456789'))
    )
    election_interval: float = field(
        default_factory=lambda: float(os.getenv('SCHEDULER_ELECTION_INTERVAL', '10'))
    )

    # Queues
    default_queue: str = field(
        default_factory=lambda: os.getenv('SCHEDULER_DEFAULT_QUEUE', 'default')
    )
    default_concurrency: int = field(
        default_factory=lambda: int(os.getenv('SCHEDULER_DEFAULT_CONCURRENCY', '10'))
    )
    queue_concurrency: Dict[str, int] = field(
        default_factory=lambda: _parse_queue_limits(os.getenv('SCHEDULER_QUEUE_CONCURRENCY', ''))
    )

    # Retention
    execution_retention_days: int = field(
        default_factory=lambda: int(os.getenv('SCHEDULER_EXECUTION_RETENTION', '7'))
    )
    prune_limit: int = field(
        default_factory=lambda: int(os.getenv('SCHEDULER_PRUNE_LIMIT', '10000'))
    )
    dead_letter_retention_days: int = field(
        default_factory=lambda: int(os.getenv('SCHEDULER_DEAD_LETTER_RETENTION', '30'))
    )

    # Monitoring
    metrics_enabled: bool = field(
        default_factory=lambda: _env_bool('SCHEDULER_METRICS_ENABLED', 'true')
    )

    @property
    def is_memory(self) -> bool:
        return self.database_url.lower().startswith('memory://') or self.database_url == ':memory:'

    @property
    def is_sqlite(self) -> bool:
        return self.database_url.lower().startswith('sqlite')

    def concurrency_for(self, queue: str) -> int:
        return int(self.queue_concurrency.get(queue, self.default_concurrency))

    def __post_init__(self):
        self._validate()
        logger.debug(
            f"Scheduler configuration initialized: store={self.database_url} node={self.node} "
            f"peer={self.peer} tick={self.tick_interval}s"
        )

    def _validate(self):
        """Validate configuration values"""
        errors = []

        if self.tick_interval <= 0:
            errors.append(f"tick_interval must be > 0, got {self.tick_interval}")

        if self.workflow_tick_interval <= 0:
            errors.append(f"workflow_tick_interval must be > 0, got {self.workflow_tick_interval}")

        if self.batch_size < 1:
            errors.append(f"batch_size must be >= 1, got {self.batch_size}")

        if self.workflow_batch_size < 1:
            errors.append(f"workflow_batch_size must be >= 1, got {self.workflow_batch_size}")

        if self.step_concurrency < 1:
            errors.append(f"step_concurrency must be >= 1, got {self.step_concurrency}")

        if self.default_concurrency < 1:
            errors.append(f"default_concurrency must be >= 1, got {self.default_concurrency}")

        for name, limit in self.queue_concurrency.items():
            if limit < 1:
                errors.append(f"queue_concurrency[{name}] must be >= 1, got {limit}")

        if self.heartbeat_interval <= 0:
            errors.append(f"heartbeat_interval must be > 0, got {self.heartbeat_interval}")

        if self.rescue_after <= self.heartbeat_interval:
            errors.append(
                f"rescue_after ({self.rescue_after}) should be greater than "
                f"heartbeat_interval ({self.heartbeat_interval})"
            )

        if self.peer not in {'local', 'store', 'postgres'}:
            errors.append(f"peer must be one of local|store|postgres, got {self.peer}")

        if self.peer == 'postgres' and not self.postgres_dsn:
            errors.append("postgres_dsn is required when peer=postgres")

        if self.leader_ttl <= 0:
            errors.append(f"leader_ttl must be > 0, got {self.leader_ttl}")

        if not self.database_url:
            errors.append("database_url cannot be empty")

        if errors:
            error_msg = "Configuration validation failed:\n" + "\n".join(f"  - {e}" for e in errors)
            raise ValueError(error_msg)

    def _safe_dsn(self) -> Optional[str]:
        """Return the postgres DSN with the password masked"""
        dsn = self.postgres_dsn
        if dsn and '@' in dsn and '://' in dsn:
            prefix, _, host = dsn.rpartition('@')
            if prefix.count(':') >= 2:
                scheme_user = prefix.rsplit(':', 1)[0]
                return f"{scheme_user}:****@{host}"
        return dsn

    def to_dict(self) -> Dict[str, Any]:
        """Convert configuration to dictionary"""
        return {
            'database_url': self.database_url,
            'node': self.node,
            'tick_interval': self.tick_interval,
            'batch_size': self.batch_size,
            'workflow_tick_interval': self.workflow_tick_interval,
            'workflow_batch_size': self.workflow_batch_size,
            'step_concurrency': self.step_concurrency,
            'lifeline_enabled': self.lifeline_enabled,
            'lifeline_interval': self.lifeline_interval,
            'rescue_after': self.rescue_after,
            'heartbeat_interval': self.heartbeat_interval,
            'peer': self.peer,
            'leader_ttl': self.leader_ttl,
            'postgres_dsn': self._safe_dsn(),
            'advisory_lock_key': self.advisory_lock_key,
            'election_interval': self.election_interval,
            'default_queue': self.default_queue,
            'default_concurrency': self.default_concurrency,
            'queue_concurrency': dict(self.queue_concurrency),
            'execution_retention_days': self.execution_retention_days,
            'prune_limit': self.prune_limit,
            'dead_letter_retention_days': self.dead_letter_retention_days,
            'metrics_enabled': self.metrics_enabled,
        }


# Global configuration instance
_config: Optional[SchedulerConfig] = None


def get_config() -> SchedulerConfig:
    """Get the global configuration instance"""
    global _config
    if _config is None:
        _config = SchedulerConfig()
    return _config


def set_config(config: SchedulerConfig) -> None:
    """Set the global configuration instance"""
    global _config
    _config = config


def reset_config() -> None:
    """Reset configuration (useful for testing)"""
    global _config
    _config = None
