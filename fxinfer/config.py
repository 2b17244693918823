# fxinfer/config.py
"""
Analysis configuration.

A single immutable :class:`FxConfig` value is created once per analysis
unit and passed explicitly to every component (range engine, affine
engine, operation rules, planner, driver).  Nothing in the package reads
process-wide settings.

Option keys
-----------
The plugin-style option keys accepted by :meth:`FxConfig.from_options`:

    round            round to nearest before discarding fraction bits
    round-positive   round ties toward +infinity (implies ``round``)
    guard            reserve a guard bit when a rounding add could overflow
    dpmult           allow double-width multiplication
    div2mult         turn division by a constant into multiplication
    interval         interval range tracking
    affine           affine range tracking (implies ``interval``)
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field, replace
from typing import FrozenSet, Iterable, List

from fxinfer.errors import ConfigError

#: Hard ceiling on Measure passes.
MAX_PASSES = 256

#: Largest aggregate that is tracked per element.
MAX_ELEMENTS = 256

#: Width used to classify real-valued constants.
REAL_CONSTANT_WIDTH = 32


class RangeMode(enum.Enum):
    """How value ranges are tracked."""
    BITS = "bits"            # range is the full span of the format
    INTERVAL = "interval"
    AFFINE = "affine"


OPTION_KEYS = (
    "round",
    "round-positive",
    "guard",
    "dpmult",
    "div2mult",
    "interval",
    "affine",
)


@dataclass(frozen=True)
class FxConfig:
    """Tuning knobs for one analysis run."""
    mode: RangeMode = RangeMode.INTERVAL
    rounding: bool = False
    guarding: bool = False
    round_positive: bool = False
    double_precision_mults: bool = False
    const_div_to_mult: bool = False
    max_passes: int = MAX_PASSES
    max_elements: int = MAX_ELEMENTS
    real_width: int = REAL_CONSTANT_WIDTH
    fatal_warnings: FrozenSet[str] = field(default_factory=frozenset)

    def __post_init__(self) -> None:
        # round-positive only makes sense with rounding enabled
        if self.round_positive and not self.rounding:
            object.__setattr__(self, "rounding", True)
        if not isinstance(self.fatal_warnings, frozenset):
            object.__setattr__(self, "fatal_warnings", frozenset(self.fatal_warnings))

    @property
    def interval(self) -> bool:
        return self.mode in (RangeMode.INTERVAL, RangeMode.AFFINE)

    @property
    def affine(self) -> bool:
        return self.mode is RangeMode.AFFINE

    @classmethod
    def from_options(cls, options: Iterable[str], **overrides) -> "FxConfig":
        """Build a configuration from plugin option keys.

        Without ``interval`` or ``affine`` the range mode is
        :attr:`RangeMode.BITS`.
        """
        flags = set()
        for raw in options:
            key = raw.strip().lower()
            if not key:
                continue
            if key not in OPTION_KEYS:
                raise ConfigError(
                    f"unknown option '{raw}'",
                    hint="valid options: " + ", ".join(OPTION_KEYS),
                )
            flags.add(key)

        if "affine" in flags:
            mode = RangeMode.AFFINE
        elif "interval" in flags:
            mode = RangeMode.INTERVAL
        else:
            mode = RangeMode.BITS

        kwargs = dict(
            mode=mode,
            rounding="round" in flags or "round-positive" in flags,
            round_positive="round-positive" in flags,
            guarding="guard" in flags,
            double_precision_mults="dpmult" in flags,
            const_div_to_mult="div2mult" in flags,
        )
        kwargs.update(overrides)
        return cls(**kwargs)

    def with_changes(self, **changes) -> "FxConfig":
        return replace(self, **changes)

    def options(self) -> List[str]:
        """Return the option keys equivalent to this configuration."""
        out: List[str] = []
        if self.round_positive:
            out.append("round-positive")
        elif self.rounding:
            out.append("round")
        if self.guarding:
            out.append("guard")
        if self.double_precision_mults:
            out.append("dpmult")
        if self.const_div_to_mult:
            out.append("div2mult")
        if self.mode is RangeMode.AFFINE:
            out.append("affine")
        elif self.mode is RangeMode.INTERVAL:
            out.append("interval")
        return out

    def validate(self) -> List[str]:
        """Return a list of validation warnings (empty if valid)."""
        warnings: List[str] = []
        if self.max_passes <= 0:
            warnings.append("max_passes must be positive")
        if self.max_elements <= 0:
            warnings.append("max_elements must be positive")
        if self.real_width < 2:
            warnings.append("real_width must be at least 2")
        if self.guarding and not self.rounding:
            warnings.append("guard has no effect without round")
        return warnings
