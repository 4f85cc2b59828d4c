"""Default values for variables that text reads before anything sets them.

The choice is a pure function of the variable name: the final path segment
is matched case-insensitively against an ordered keyword table and the first
matching rule wins.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Union

from branchvars.config import settings
from branchvars.core.paths import normalize_path

DefaultValue = Union[int, str]


@dataclass(frozen=True)
class DefaultValueRule:
    """Keywords that select a default, and how to produce it."""
    name: str
    keywords: tuple[str, ...]
    value: Callable[[], DefaultValue]

    def matches(self, segment: str) -> bool:
        lowered = segment.lower()
        return any(k in lowered for k in self.keywords)


DEFAULT_VALUE_RULES: tuple[DefaultValueRule, ...] = (
    DefaultValueRule(
        "numeric",
        ("count", "数量", "day", "天数", "level", "等级", "exp", "经验",
         "affinity", "亲密度", "好感", "阶段", "score", "points"),
        lambda: 0,
    ),
    DefaultValueRule(
        "boolean",
        ("is", "has", "是否", "已", "拥有", "完成"),
        lambda: 0,
    ),
    DefaultValueRule(
        "time",
        ("time", "时间", "date", "日期"),
        lambda: settings.default_time_value,
    ),
    DefaultValueRule(
        "location",
        ("location", "place", "位置", "地点"),
        lambda: settings.default_location_value,
    ),
    DefaultValueRule(
        "state",
        ("state", "status", "mode", "状态", "模式"),
        lambda: settings.default_state_value,
    ),
)


def infer_default_value(path: object) -> DefaultValue:
    """Initial value for an unset variable, chosen from its final path segment.

    Never raises: anything that is not a usable path gets ``""``.
    """
    segments = normalize_path(path)
    if not segments:
        return ""
    last = segments[-1]
    for rule in DEFAULT_VALUE_RULES:
        if rule.matches(last):
            return rule.value()
    return ""
