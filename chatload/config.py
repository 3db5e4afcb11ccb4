import os
import re
from dataclasses import dataclass, field
from typing import Optional, Tuple

from .errors import ConfigError

DEFAULT_URL = "ws://localhost:8383/ws"

_DURATION_PART = re.compile(r"(\d+(?:\.\d+)?)(ms|h|m|s)")
_UNITS = {"ms": 0.001, "s": 1.0, "m": 60.0, "h": 3600.0}


@dataclass(frozen=True)
class Stage:
    duration: float
    target: int

    def __post_init__(self):
        if self.duration < 0:
            raise ConfigError(f"stage duration must be >= 0, got {self.duration}")
        if self.target < 0:
            raise ConfigError(f"stage target must be >= 0, got {self.target}")


DEFAULT_STAGES = (
    Stage(120.0, 1000),
    Stage(240.0, 2800),
    Stage(240.0, 2800),
    Stage(120.0, 0),
)


def parse_duration(text):
    """
    Parse ``"2m"``, ``"1m30s"``, ``"500ms"`` or a bare number of seconds.
    """
    text = str(text).strip()
    try:
        return float(text)
    except ValueError:
        pass

    pos = 0
    total = 0.0
    for match in _DURATION_PART.finditer(text):
        if match.start() != pos:
            break
        total += float(match.group(1)) * _UNITS[match.group(2)]
        pos = match.end()
    if pos == 0 or pos != len(text):
        raise ConfigError(f"invalid duration: {text!r}")
    return total


def parse_stages(text):
    """Parse ``"2m:1000,4m:2800,2m:0"`` into a tuple of stages."""
    stages = []
    for item in text.split(","):
        item = item.strip()
        if not item:
            continue
        duration, sep, target = item.partition(":")
        if not sep:
            raise ConfigError(f"invalid stage {item!r}, expected <duration>:<target>")
        try:
            target = int(target)
        except ValueError:
            raise ConfigError(f"invalid stage target in {item!r}") from None
        stages.append(Stage(parse_duration(duration), target))
    if not stages:
        raise ConfigError("at least one stage is required")
    return tuple(stages)


def _env_bool(value):
    return value.strip().lower() not in ("0", "false", "no", "off", "")


@dataclass(frozen=True)
class HarnessConfig:
    url: str = DEFAULT_URL
    channels: Tuple[str, ...] = ("chat",)
    messages_per_user: int = 5
    pause_range: Tuple[float, float] = (2.0, 14.0)
    unsubscribe_odd: bool = True
    linger: float = 5.0
    stages: Tuple[Stage, ...] = field(default=DEFAULT_STAGES)
    tick: float = 1.0
    graceful_stop: float = 30.0
    connect_timeout: Optional[float] = None

    def __post_init__(self):
        if not self.url.startswith(("ws://", "wss://")):
            raise ConfigError(f"url must be a ws:// or wss:// URL, got {self.url!r}")
        if self.messages_per_user < 0:
            raise ConfigError("messages_per_user must be >= 0")
        low, high = self.pause_range
        if low < 0 or high < low:
            raise ConfigError(f"invalid pause range {self.pause_range!r}")
        if self.tick <= 0:
            raise ConfigError("tick must be > 0")
        if not self.stages:
            raise ConfigError("at least one stage is required")

    @property
    def total_duration(self):
        return sum(stage.duration for stage in self.stages)

    @classmethod
    def from_env(cls, environ=None, **overrides):
        environ = os.environ if environ is None else environ
        values = {}
        if environ.get("CHATLOAD_URL"):
            values["url"] = environ["CHATLOAD_URL"]
        if environ.get("CHATLOAD_CHANNELS"):
            values["channels"] = tuple(
                c.strip() for c in environ["CHATLOAD_CHANNELS"].split(",") if c.strip()
            )
        if environ.get("CHATLOAD_MESSAGES"):
            try:
                values["messages_per_user"] = int(environ["CHATLOAD_MESSAGES"])
            except ValueError:
                raise ConfigError("CHATLOAD_MESSAGES must be an integer") from None
        if environ.get("CHATLOAD_STAGES"):
            values["stages"] = parse_stages(environ["CHATLOAD_STAGES"])
        if "CHATLOAD_UNSUBSCRIBE_ODD" in environ:
            values["unsubscribe_odd"] = _env_bool(environ["CHATLOAD_UNSUBSCRIBE_ODD"])
        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**values)
