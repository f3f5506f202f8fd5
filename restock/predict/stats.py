"""Counters reported by a prediction run."""

from dataclasses import asdict, dataclass


@dataclass
class RunStats:
    """Summary of one engine invocation."""

    processed: int = 0
    auto_added: int = 0
    suggested: int = 0
    ema_updated: int = 0
    errors: int = 0

    def merge(self, other: "RunStats") -> "RunStats":
        for name, value in asdict(other).items():
            setattr(self, name, getattr(self, name) + value)
        return self

    def to_dict(self) -> dict:
        return asdict(self)
