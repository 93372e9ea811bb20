# options.py helper functions
from __future__ import annotations

from omegaconf import OmegaConf


def _structured_merge_to_obj(cls, section) -> object:
    """
    Merge a YAML section onto a structured
    config made from the dataclass `cls`,
    then return a dataclass instance.
    """
    base = OmegaConf.structured(cls)
    merged = OmegaConf.merge(base, section or {})
    return OmegaConf.to_object(merged)


def _require_positive(obj, *names: str) -> None:
    for name in names:
        value = getattr(obj, name)
        if not value > 0:
            raise ValueError(
                f"{type(obj).__name__}.{name} must be positive, got {value}"
            )
