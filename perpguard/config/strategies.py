"""
Strategy risk profiles.

A profile fixes how far the initial stop sits from entry (ATR multiple with a
percent band), how profit is taken (fixed target or staged R-multiples) and
when the trailing stop engages. Built-in profiles can be overridden from a
YAML file.
"""

from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Dict, List, Optional

import yaml

from ..errors import FatalConfigError


@dataclass(frozen=True)
class TakeProfitStage:
    """
    One rung of the staged take-profit ladder.

    Attributes:
        stage: 1-based stage number, unique within a profile
        r_multiple: Trigger distance from entry in units of initial risk
        close_percent: Percent of the REMAINING quantity to close
        move_stop_to_r: If set, move the stop to entry + this many R after closing
    """
    stage: int
    r_multiple: float
    close_percent: float
    move_stop_to_r: Optional[float] = None


DEFAULT_STAGES = (
    TakeProfitStage(stage=1, r_multiple=1.0, close_percent=33.33, move_stop_to_r=0.0),
    TakeProfitStage(stage=2, r_multiple=2.0, close_percent=50.0, move_stop_to_r=1.0),
)


@dataclass(frozen=True)
class StrategyProfile:
    """Risk parameters for one strategy."""
    name: str
    atr_multiplier: float
    min_stop_percent: float
    max_stop_percent: float
    take_profit_mode: str = "staged"      # "staged" or "fixed"
    fixed_target_percent: float = 0.0
    stages: tuple = field(default=DEFAULT_STAGES)
    extreme_r: float = 5.0
    trailing_activation_r: float = 3.0
    trailing_distance_r: float = 1.0

    def validate(self) -> List[str]:
        """Return a list of problems; empty when the profile is usable."""
        errors = []
        if self.atr_multiplier <= 0:
            errors.append(f"{self.name}: atr_multiplier must be positive")
        if not 0 < self.min_stop_percent < self.max_stop_percent:
            errors.append(
                f"{self.name}: stop band must satisfy 0 < min ({self.min_stop_percent}) "
                f"< max ({self.max_stop_percent})"
            )
        if self.take_profit_mode not in ("staged", "fixed"):
            errors.append(f"{self.name}: unknown take_profit_mode '{self.take_profit_mode}'")
        if self.take_profit_mode == "fixed" and self.fixed_target_percent <= 0:
            errors.append(f"{self.name}: fixed mode needs a positive fixed_target_percent")

        seen = set()
        last_r = 0.0
        for stage in self.stages:
            if stage.stage in seen:
                errors.append(f"{self.name}: duplicate stage {stage.stage}")
            seen.add(stage.stage)
            if stage.r_multiple <= last_r:
                errors.append(f"{self.name}: stage {stage.stage} R-multiple must increase")
            last_r = stage.r_multiple
            if not 0 < stage.close_percent <= 100:
                errors.append(f"{self.name}: stage {stage.stage} close_percent out of range")
        if self.stages and self.extreme_r <= last_r:
            errors.append(f"{self.name}: extreme_r must exceed the last stage")
        if self.trailing_distance_r <= 0 or self.trailing_activation_r <= 0:
            errors.append(f"{self.name}: trailing parameters must be positive")
        return errors


STRATEGY_PROFILES: Dict[str, StrategyProfile] = {
    "ultra-short": StrategyProfile(
        name="ultra-short", atr_multiplier=1.5, min_stop_percent=0.3, max_stop_percent=2.0,
        trailing_activation_r=2.0,
    ),
    "swing-trend": StrategyProfile(
        name="swing-trend", atr_multiplier=2.5, min_stop_percent=1.0, max_stop_percent=6.0,
    ),
    "conservative": StrategyProfile(
        name="conservative", atr_multiplier=2.5, min_stop_percent=1.0, max_stop_percent=4.0,
    ),
    "balanced": StrategyProfile(
        name="balanced", atr_multiplier=2.0, min_stop_percent=0.5, max_stop_percent=5.0,
    ),
    "aggressive": StrategyProfile(
        name="aggressive", atr_multiplier=1.5, min_stop_percent=0.5, max_stop_percent=5.0,
    ),
}


def _stage_from_dict(data: dict) -> TakeProfitStage:
    return TakeProfitStage(
        stage=int(data["stage"]),
        r_multiple=float(data["r_multiple"]),
        close_percent=float(data["close_percent"]),
        move_stop_to_r=(
            float(data["move_stop_to_r"]) if data.get("move_stop_to_r") is not None else None
        ),
    )


def load_strategy_profiles(path: Optional[str] = None) -> Dict[str, StrategyProfile]:
    """
    Built-in profiles, optionally overridden from a YAML file.

    The file maps profile names to fields of StrategyProfile. Unknown names
    define new profiles and must carry the three stop fields; known names only
    override what they list.

    Example:
        balanced:
          atr_multiplier: 2.2
          stages:
            - {stage: 1, r_multiple: 1.0, close_percent: 30, move_stop_to_r: 0}
    """
    profiles = dict(STRATEGY_PROFILES)
    if not path:
        return profiles

    file_path = Path(path)
    if not file_path.exists():
        raise FatalConfigError(f"Strategy profile file not found: {path}")

    try:
        with open(file_path, "r", encoding="utf-8") as f:
            raw = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise FatalConfigError(f"Invalid strategy profile YAML in {path}: {e}") from e

    if not isinstance(raw, dict):
        raise FatalConfigError(f"Strategy profile file {path} must contain a mapping")

    for name, overrides in raw.items():
        try:
            overrides = dict(overrides or {})
            if "stages" in overrides:
                overrides["stages"] = tuple(_stage_from_dict(s) for s in overrides["stages"])
            if name in profiles:
                profiles[name] = replace(profiles[name], **overrides)
            else:
                profiles[name] = StrategyProfile(name=name, **overrides)
        except (TypeError, KeyError, ValueError) as e:
            raise FatalConfigError(f"Strategy profile '{name}': {e}") from e

    return profiles
