import json
from datetime import date, datetime, time
from typing import Any, Dict, List, Literal, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from relay_backend.models.identity import normalize_identity

WEEKDAYS = ("monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday")
_WEEKDAY_ALIASES = {day[:3]: day for day in WEEKDAYS}
DEFAULT_NUM_RELAYS = 8


def weekday_token(moment: datetime | date) -> str:
    return WEEKDAYS[moment.weekday()]


def _document_id(doc: Mapping[str, Any]) -> Optional[str]:
    raw = doc.get("id", doc.get("_id"))
    return None if raw is None else str(raw)


class RelayConfiguration(BaseModel):
    """Administrator-authored description of one relay board."""

    model_config = ConfigDict(extra="ignore")

    id: Optional[str] = None
    relay_id: str = Field(..., description="Device identity (MAC address or logical device id).")
    mac_address: Optional[str] = Field(default=None, description="Board MAC when relay_id is a logical id.")
    relay_name: str = Field(..., description="Display name, also usable as a command target.")
    relay_map: Dict[str, int] = Field(default_factory=dict, description="Relay name -> physical index.")
    num_relays: int = Field(default=DEFAULT_NUM_RELAYS, ge=1)
    capabilities: List[str] = Field(default_factory=list)
    ssid: Optional[str] = None
    password: Optional[str] = None
    secret: Optional[str] = None
    is_active: bool = True
    command_format: Literal["relay_control", "set_relay"] = "relay_control"

    @field_validator("relay_id")
    @classmethod
    def normalize_relay_id(cls, value):
        return normalize_identity(value)

    @field_validator("mac_address")
    @classmethod
    def normalize_mac_address(cls, value):
        if value is None or not str(value).strip():
            return None
        return normalize_identity(value)

    @model_validator(mode="after")
    def validate_relay_map(self):
        for name, index in self.relay_map.items():
            if not 0 <= index < self.num_relays:
                raise ValueError(f"relay '{name}' maps to index {index}, outside 0..{self.num_relays - 1}")
        return self

    @classmethod
    def from_document(cls, doc: Mapping[str, Any]) -> "RelayConfiguration":
        data = dict(doc)
        data["id"] = _document_id(doc)
        if not data.get("relay_map") and data.get("channel_config"):
            data["relay_map"] = channel_config_to_relay_map(data["channel_config"])
        return cls.model_validate(data)

    @property
    def identities(self) -> List[str]:
        """Device identities this configuration applies to, MAC first."""
        if self.mac_address and self.mac_address != self.relay_id:
            return [self.mac_address, self.relay_id]
        return [self.relay_id]

    def relay_index(self, relay_name: str) -> Optional[int]:
        if relay_name in self.relay_map:
            return self.relay_map[relay_name]
        lowered = relay_name.lower()
        for name, index in self.relay_map.items():
            if name.lower() == lowered:
                return index
        return None

    def channel_layout(self) -> List[Dict[str, Any]]:
        by_index = {index: name for name, index in self.relay_map.items()}
        return [
            {
                "bitPosition": i,
                "function": by_index.get(i, f"unused_{i}"),
                "enabled": i in by_index,
            }
            for i in range(self.num_relays)
        ]


def channel_config_to_relay_map(channel_config: Any) -> Dict[str, int]:
    """Convert the `{"channel0": {"function": ..., "enabled": ...}}` layout into name -> index."""
    if isinstance(channel_config, str):
        channel_config = json.loads(channel_config)
    relay_map: Dict[str, int] = {}
    for key, channel in (channel_config or {}).items():
        if not key.startswith("channel") or not isinstance(channel, dict):
            continue
        try:
            index = int(key[len("channel"):])
        except ValueError:
            continue
        function = channel.get("function")
        if function and channel.get("enabled", True) is not False:
            relay_map.setdefault(function, index)
    return relay_map


class RecurringTaskDefinition(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str
    template_id: Optional[str] = None
    task_type: str
    floor: Optional[str] = None
    shelf_point: Optional[str] = None
    schedule_time: time = Field(..., description="Time of day, minute resolution, operator local zone.")
    days_of_week: List[str] = Field(default_factory=list)
    is_active: bool = True
    created_at: Optional[datetime] = None

    @field_validator("template_id", "floor", "shelf_point", mode="before")
    @classmethod
    def coerce_reference(cls, value):
        return None if value is None else str(value)

    @field_validator("schedule_time", mode="before")
    @classmethod
    def parse_schedule_time(cls, value):
        if isinstance(value, str):
            parts = value.strip().split(":")
            if len(parts) not in (2, 3):
                raise ValueError("schedule_time must be HH:MM or HH:MM:SS")
            return time(int(parts[0]), int(parts[1]))
        if isinstance(value, datetime):
            value = value.time()
        if isinstance(value, time):
            return value.replace(second=0, microsecond=0, tzinfo=None)
        return value

    @field_validator("days_of_week", mode="before")
    @classmethod
    def normalize_days(cls, value):
        if isinstance(value, str):
            value = [part for part in value.replace("{", "").replace("}", "").split(",")]
        days: List[str] = []
        for raw in value or []:
            token = str(raw).strip().lower()
            if not token:
                continue
            token = _WEEKDAY_ALIASES.get(token, token)
            if token not in WEEKDAYS:
                raise ValueError(f"unknown weekday '{raw}'")
            if token not in days:
                days.append(token)
        return days

    @model_validator(mode="after")
    def require_days_when_active(self):
        if self.is_active and not self.days_of_week:
            raise ValueError("an active recurring task needs at least one weekday")
        return self

    @classmethod
    def from_document(cls, doc: Mapping[str, Any]) -> "RecurringTaskDefinition":
        data = dict(doc)
        data["id"] = _document_id(doc)
        return cls.model_validate(data)

    def schedule_label(self) -> str:
        return self.schedule_time.strftime("%H:%M")


class DispatchRecord(BaseModel):
    definition_id: str
    dispatch_date: date
    status: Literal["claimed", "dispatched", "rejected"] = "claimed"
    claimed_at: datetime
    task_id: Optional[str] = None
    reason: Optional[str] = None


class DispatchResult(BaseModel):
    """Answer of the task dispatch bridge."""

    accepted: bool
    reason: Optional[str] = None
    task_id: Optional[str] = None

    @classmethod
    def accept(cls, task_id: Optional[str] = None) -> "DispatchResult":
        return cls(accepted=True, task_id=task_id)

    @classmethod
    def reject(cls, reason: str) -> "DispatchResult":
        return cls(accepted=False, reason=reason)


class DispatchOutcome(BaseModel):
    definition_id: str
    status: Literal["dispatched", "rejected", "failed", "skipped"]
    task_id: Optional[str] = None
    reason: Optional[str] = None


class ConnectedRelay(BaseModel):
    """Point-in-time view of one live device session."""

    identity: str
    capabilities: List[str] = Field(default_factory=list)
    last_heartbeat: datetime
    config_name: Optional[str] = None
    config_id: Optional[str] = None
    ip: Optional[str] = None
    states: Dict[str, bool] = Field(default_factory=dict)
