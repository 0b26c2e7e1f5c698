"""
Configuration management for netfault.

Uses pydantic-settings so every knob can be set from ``NETFAULT_*``
environment variables or a ``.env`` file; command-line options override.
"""

from functools import lru_cache
from pathlib import Path

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from netfault.models import (
    ConsistencyLevel,
    NodeRole,
    TargetNode,
    WorkloadMode,
    WorkloadSpec,
)

# Loss levels of the built-in sweep, in percent
DEFAULT_SWEEP_LOSSES = [1, 5, 10, 15, 20, 25, 30, 35, 40, 45, 50, 70]


class Settings(BaseSettings):
    """Cluster layout, workload defaults and campaign policy."""

    model_config = SettingsConfigDict(
        env_prefix="NETFAULT_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Storage
    output_dir: Path = Field(default=Path("outputs"), description="Root of run directories")

    # Cluster
    docker_bin: str = Field(default="docker", description="Container runtime CLI")
    interface: str = Field(default="eth0", description="Interface shaped by netem")
    seed_nodes: list[str] = Field(default_factory=lambda: ["cassandra_a"])
    peer_nodes: list[str] = Field(default_factory=lambda: ["cassandra_b", "cassandra_c"])

    # Load generator
    stress_container: str = Field(default="cassandra_a")
    stress_path: str = Field(default="/opt/cassandra/tools/bin/cassandra-stress")
    cql_port: int = Field(default=9042, ge=1, le=65535)
    workload_mode: WorkloadMode = WorkloadMode.write
    threads: int = Field(default=50, gt=0)
    replication_factor: int = Field(default=3, gt=0)
    consistency_level: ConsistencyLevel | None = None

    # Timing
    grace_seconds: float = Field(default=30.0, ge=0, description="Workload ceiling beyond its duration")
    kill_after_seconds: float = Field(default=5.0, ge=0, description="SIGTERM to SIGKILL window")
    fault_timeout_seconds: float = Field(default=10.0, gt=0, description="Ceiling per fault operation")
    settle_seconds: float = Field(default=5.0, ge=0, description="Pause after a fault is applied")

    # Campaign policy
    verify_faults: bool = True
    abort_on_error: bool = False
    sweep_losses: list[int] = Field(default_factory=lambda: list(DEFAULT_SWEEP_LOSSES))
    tail_lines: int = Field(default=15, ge=0)

    # Logging
    log_level: str = Field(default="INFO", description="Logging level")
    json_logs: bool = False

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        valid = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        if v.upper() not in valid:
            raise ValueError(f"log_level must be one of {valid}")
        return v.upper()

    @property
    def nodes(self) -> list[TargetNode]:
        """Every cluster member, seeds first."""
        return [TargetNode(name=n, role=NodeRole.seed) for n in self.seed_nodes] + [
            TargetNode(name=n, role=NodeRole.peer) for n in self.peer_nodes
        ]

    @property
    def peers(self) -> list[TargetNode]:
        return [node for node in self.nodes if node.role == NodeRole.peer]

    def resolve_nodes(self, names: list[str]) -> list[TargetNode]:
        """Map node names to configured nodes.

        Raises:
            ValueError: a name is not a configured node.
        """
        by_name = {node.name: node for node in self.nodes}
        unknown = [name for name in names if name not in by_name]
        if unknown:
            raise ValueError(
                f"unknown node(s) {', '.join(unknown)}; configured: {', '.join(by_name)}"
            )
        return [by_name[name] for name in names]

    def workload(self) -> WorkloadSpec:
        """The default workload built from these settings."""
        return WorkloadSpec(
            mode=self.workload_mode,
            concurrency=self.threads,
            replication_factor=self.replication_factor,
            consistency_level=self.consistency_level,
        )


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
