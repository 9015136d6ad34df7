"""Rollup level definitions."""

from __future__ import annotations

from datetime import timedelta

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

RAW_LEVEL = "raw"


class RollupLevel(BaseModel):
    """One resolution tier of the aggregation cascade.

    Attributes:
        name: Level name used as the key in the rollup table
        width: Window width, aligned to the Unix epoch
        start_offset: How far back the first refresh reaches
        end_offset: Settling lag; windows ending later than
            ``now - end_offset`` are still accumulating
        refresh_interval: Interval of the level's refresh job
        initial_delay: Startup offset of the refresh job
        retention: Buckets older than this are dropped (overridable at
            runtime through ``PipelineSettings.level_retention``)
    """

    model_config = ConfigDict(frozen=True)

    name: str = Field(..., min_length=1, max_length=32, pattern=r"^[A-Za-z0-9_\-]+$")
    width: timedelta
    start_offset: timedelta
    end_offset: timedelta = timedelta(minutes=1)
    refresh_interval: timedelta = timedelta(minutes=1)
    initial_delay: timedelta = timedelta(0)
    retention: timedelta = timedelta(days=7)

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        if v == RAW_LEVEL:
            raise ValueError(f"'{RAW_LEVEL}' is reserved for raw events")
        return v

    @field_validator("width", "refresh_interval")
    @classmethod
    def validate_positive(cls, v: timedelta) -> timedelta:
        if v <= timedelta(0):
            raise ValueError("must be positive")
        return v

    @field_validator("end_offset", "initial_delay")
    @classmethod
    def validate_non_negative(cls, v: timedelta) -> timedelta:
        if v < timedelta(0):
            raise ValueError("must not be negative")
        return v

    @model_validator(mode="after")
    def validate_offsets(self) -> "RollupLevel":
        if self.start_offset < self.width + self.end_offset:
            raise ValueError(
                f"level '{self.name}': start_offset must cover at least one "
                "window plus the end_offset"
            )
        if self.retention < self.width:
            raise ValueError(f"level '{self.name}': retention shorter than one window")
        return self


def validate_cascade(levels: list[RollupLevel]) -> list[RollupLevel]:
    """Check that levels form a valid cascade.

    Each level must be coarser than the one below it and its width a whole
    multiple of the lower width, so every upper window is exactly covered by
    lower windows.

    Raises:
        ValueError: If the cascade is empty, names repeat or widths do not nest
    """
    if not levels:
        raise ValueError("at least one rollup level is required")

    names = [level.name for level in levels]
    if len(set(names)) != len(names):
        raise ValueError(f"duplicate rollup level names: {names}")

    for lower, upper in zip(levels, levels[1:]):
        if upper.width <= lower.width:
            raise ValueError(
                f"level '{upper.name}' must be wider than level '{lower.name}'"
            )
        if upper.width % lower.width != timedelta(0):
            raise ValueError(
                f"width of '{upper.name}' ({upper.width}) is not a multiple of "
                f"'{lower.name}' ({lower.width})"
            )
    return levels


DEFAULT_LEVELS: tuple[RollupLevel, ...] = (
    RollupLevel(
        name="1m",
        width=timedelta(minutes=1),
        start_offset=timedelta(hours=1),
        end_offset=timedelta(minutes=1),
        refresh_interval=timedelta(minutes=1),
        retention=timedelta(days=7),
    ),
    RollupLevel(
        name="1h",
        width=timedelta(hours=1),
        start_offset=timedelta(days=7),
        end_offset=timedelta(minutes=1),
        refresh_interval=timedelta(minutes=1),
        initial_delay=timedelta(seconds=15),
        retention=timedelta(days=30),
    ),
    RollupLevel(
        name="1d",
        width=timedelta(days=1),
        start_offset=timedelta(days=90),
        end_offset=timedelta(minutes=5),
        refresh_interval=timedelta(minutes=5),
        initial_delay=timedelta(seconds=30),
        retention=timedelta(days=365),
    ),
)
