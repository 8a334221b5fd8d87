"""Runtime configuration for the fleet agent."""
from __future__ import annotations

from functools import lru_cache
from typing import Dict, List, Literal, Optional, Tuple, Union
from urllib.parse import urlparse

from pydantic import BaseModel, Field, SecretStr, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from fleet_agent.profiles import DEFAULT_PROFILE, PROFILES

MIN_INTERVAL_SECONDS = 1.0
MAX_INTERVAL_SECONDS = 3600.0


def _clamp_interval_seconds(value: float, *, field: str) -> float:
    try:
        parsed = float(value)
    except Exception as exc:
        raise ValueError(f"{field} must be a number") from exc
    if parsed != parsed:  # NaN
        raise ValueError(f"{field} must be a real number")
    return max(MIN_INTERVAL_SECONDS, min(parsed, MAX_INTERVAL_SECONDS))


class PropertyConfig(BaseModel):
    property_id: str
    name: Optional[str] = Field(default=None, description="Display name")
    kind: Literal["numeric", "text"] = "numeric"
    unit: Optional[str] = None
    precision: Optional[int] = Field(default=None, ge=0, le=6, description="Decimal places in payloads")
    initial: Optional[Union[float, str]] = None
    source: Optional[str] = Field(
        default=None,
        description="Reading that feeds this property, as '<device kind>.<reading>' (e.g. air_quality.temperature)",
    )
    input_min: Optional[float] = Field(default=None, description="Raw reading minimum (e.g. 4 mA)")
    input_max: Optional[float] = Field(default=None, description="Raw reading maximum (e.g. 20 mA)")
    output_min: Optional[float] = Field(default=None, description="Engineering units minimum")
    output_max: Optional[float] = Field(default=None, description="Engineering units maximum")
    offset: float = Field(default=0.0, description="Additive offset applied after scaling")
    scale: float = Field(default=1.0, description="Multiplicative factor applied after offset")
    smoothing_samples: int = Field(
        default=1,
        ge=1,
        le=600,
        description="Moving-average window in samples (1 disables smoothing)",
    )
    mirror_field: Optional[str] = Field(default=None, description="Time-series field name; unset skips mirroring")

    @field_validator("source")
    @classmethod
    def _check_source(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        kind, sep, reading = value.strip().partition(".")
        if not sep or not kind or not reading:
            raise ValueError(f"source must look like '<kind>.<reading>', got {value!r}")
        return f"{kind}.{reading}"

    @model_validator(mode="after")
    def _check_kind(self):
        if self.kind == "text" and self.source:
            raise ValueError(f"Text property {self.property_id} cannot be fed from a numeric reading")
        if self.kind == "numeric" and isinstance(self.initial, str):
            self.initial = float(self.initial)
        return self

    @property
    def source_kind(self) -> Optional[str]:
        return self.source.split(".", 1)[0] if self.source else None

    @property
    def source_reading(self) -> Optional[str]:
        return self.source.split(".", 1)[1] if self.source else None

    def apply_scaling(self, value: float) -> float:
        scaled = float(value)
        if self.input_min is not None and self.input_max is not None and self.output_max is not None:
            input_span = self.input_max - self.input_min
            if input_span != 0:
                output_min = self.output_min or 0.0
                output_span = self.output_max - output_min
                scaled = output_min + ((scaled - self.input_min) / input_span) * output_span
        if self.offset:
            scaled += self.offset
        if self.scale not in (None, 1, 1.0):
            scaled *= float(self.scale)
        return scaled


class NodeConfig(BaseModel):
    node_id: str
    name: str
    type: str = "no-type"
    properties: List[PropertyConfig] = Field(default_factory=list)


class Settings(BaseSettings):
    """Environment driven settings; a profile fills in whatever is not set explicitly."""

    profile: str = Field(default=DEFAULT_PROFILE, description="Built-in device schema")
    device_id: Optional[str] = Field(default=None, description="Homie device id (topic segment)")
    device_name: Optional[str] = None
    nodes: List[NodeConfig] = Field(default_factory=list)

    mqtt_url: str = Field(default="mqtt://127.0.0.1:1883", description="MQTT broker URL")
    mqtt_username: Optional[str] = None
    mqtt_password: Optional[SecretStr] = None
    mqtt_client_id: Optional[str] = None
    mqtt_keepalive_seconds: int = Field(default=30, ge=5, le=3600)
    mqtt_connect_timeout_seconds: float = Field(default=10.0, gt=0)
    base_topic: str = "homie"
    reconnect_initial_seconds: float = Field(default=2.0, gt=0)
    reconnect_max_seconds: float = Field(default=60.0, gt=0)
    outbound_queue_max: int = Field(default=1000, ge=10)
    log_topic: Optional[str] = Field(default=None, description="Republish log records under this topic")

    link_driver: Literal["tinkerforge", "simulated"] = "tinkerforge"
    brick_host: str = "127.0.0.1"
    brick_port: int = 4223

    sample_interval_seconds: float = 5.0
    read_timeout_seconds: float = Field(default=2.0, gt=0, le=60)
    failure_threshold: int = Field(default=3, ge=0)
    recovery_delay_seconds: float = Field(default=2.0, ge=0)

    influx_enabled: bool = False
    influx_url: str = "http://127.0.0.1:8086"
    influx_token: Optional[SecretStr] = None
    influx_org: Optional[str] = None
    influx_bucket: Optional[str] = None
    influx_measurement: Optional[str] = None
    influx_mirror_interval_seconds: float = 5.0
    influx_timeout_seconds: float = Field(default=5.0, gt=0)

    log_level: str = "INFO"
    log_file: Optional[str] = None
    service_name: str = "fleet-agent"
    http_host: str = "0.0.0.0"
    http_port: int = 9100

    model_config = SettingsConfigDict(
        env_prefix="FLEET_",
        env_file=".env",
        extra="ignore",
    )

    @field_validator("sample_interval_seconds")
    @classmethod
    def _clamp_sample(cls, value: float) -> float:
        return _clamp_interval_seconds(value, field="sample_interval_seconds")

    @field_validator("influx_mirror_interval_seconds")
    @classmethod
    def _clamp_mirror(cls, value: float) -> float:
        return _clamp_interval_seconds(value, field="influx_mirror_interval_seconds")

    @model_validator(mode="after")
    def _apply_profile(self):
        profile = PROFILES.get(self.profile)
        if profile is None:
            raise ValueError(f"Unknown profile {self.profile!r}; expected one of {sorted(PROFILES)}")
        if not self.device_id:
            self.device_id = profile["device_id"]
        if not self.device_name:
            self.device_name = profile["device_name"]
        if not self.influx_measurement:
            self.influx_measurement = profile["measurement"]
        if not self.nodes:
            self.nodes = [NodeConfig.model_validate(node) for node in profile["nodes"]]
        if self.reconnect_max_seconds < self.reconnect_initial_seconds:
            self.reconnect_max_seconds = self.reconnect_initial_seconds
        if self.influx_enabled:
            missing = [
                name
                for name in ("influx_token", "influx_org", "influx_bucket")
                if not getattr(self, name)
            ]
            if missing:
                raise ValueError(f"InfluxDB mirroring enabled but {', '.join(missing)} not set")
        return self

    @property
    def mqtt_host(self) -> str:
        return _parsed_mqtt(self.mqtt_url).hostname or "127.0.0.1"

    @property
    def mqtt_port(self) -> int:
        return _parsed_mqtt(self.mqtt_url).port or 1883

    def property_configs(self) -> List[Tuple[NodeConfig, PropertyConfig]]:
        return [(node, prop) for node in self.nodes for prop in node.properties]

    def source_kinds(self) -> set[str]:
        return {prop.source_kind for _, prop in self.property_configs() if prop.source_kind}

    def mirror_fields(self) -> Dict[str, str]:
        """Property name -> time-series field name."""

        return {
            f"{node.node_id}/{prop.property_id}": prop.mirror_field
            for node, prop in self.property_configs()
            if prop.mirror_field
        }


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()


@lru_cache(maxsize=32)
def _parsed_mqtt(url: str):
    return urlparse(url)
