"""Configuration schema using Pydantic."""

from pydantic import BaseModel, Field, ConfigDict
from pydantic.alias_generators import to_camel
from pydantic_settings import BaseSettings


class Base(BaseModel):
    """Base model that accepts both camelCase and snake_case keys."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class AutomationConfig(Base):
    """Rule engine configuration."""

    enabled: bool = True
    rules_path: str = ""                  # Path to automation_rules.json (empty = in-memory only)
    timezone: str = ""                    # IANA zone for time/dayOfWeek conditions (empty = host local time)
    action_timeout_seconds: float = 10.0  # Upper bound for one device command or notification call
    max_condition_depth: int = 32         # Nesting cap for condition groups
    log_buffer_size: int = 1000           # Execution logs kept by MemoryLogSink
    low_battery_soc: float = 20           # lowBattery event fires at soc <= this
    full_battery_soc: float = 100         # fullBattery event fires at soc >= this


class ClientConfig(Base):
    """UI-side state reconciliation."""

    pending_command_ttl_seconds: float = 10.0  # How long an optimistic value wins over server pushes


class Config(BaseSettings):
    """Root configuration for powerdeck."""

    automation: AutomationConfig = Field(default_factory=AutomationConfig)
    client: ClientConfig = Field(default_factory=ClientConfig)

    model_config = ConfigDict(env_prefix="POWERDECK_", env_nested_delimiter="__")
