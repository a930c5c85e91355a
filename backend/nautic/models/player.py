from typing import Any, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel


class TrackInfo(BaseModel):
    model_config = ConfigDict(frozen=True, extra="ignore")

    id: int
    kind: Literal["video", "audio", "subtitle"]
    lang: Optional[str] = None
    title: Optional[str] = None
    selected: bool = False

    @model_validator(mode="before")
    @classmethod
    def _from_engine(cls, data: Any) -> Any:
        # mpv reports tracks as {"type": "video" | "audio" | "sub", ...}
        if isinstance(data, dict) and "kind" not in data and "type" in data:
            data = dict(data)
            kind = data.pop("type")
            data["kind"] = "subtitle" if kind == "sub" else kind
        return data


class PlayerState(BaseModel):
    model_config = ConfigDict(frozen=True, alias_generator=to_camel, populate_by_name=True)

    time: float = 0.0
    duration: float = 0.0
    paused: bool = True
    volume: int = 100 # 0-100
    muted: bool = False
    filename: str = "No Media"
    tracks: List[TrackInfo] = Field(default_factory=list)
    connected_clients: int = 0
    device_name: str = "NauticPlayer PC"

    @field_validator("volume", mode="before")
    @classmethod
    def _clamp_volume(cls, value: Any) -> int:
        try:
            return max(0, min(100, int(round(float(value)))))
        except (TypeError, OverflowError) as e:
            raise ValueError(f"volume must be a number, got {value!r}") from e

    @field_validator("filename", mode="before")
    @classmethod
    def _filename_or_empty(cls, value: Any) -> str:
        return "" if value is None else str(value)

    @field_validator("time", "duration", mode="before")
    @classmethod
    def _seconds(cls, value: Any) -> float:
        if value is None:
            return 0.0
        try:
            return float(value)
        except TypeError as e:
            raise ValueError(f"expected seconds, got {value!r}") from e

    def wire(self) -> dict:
        return self.model_dump(by_alias=True)
