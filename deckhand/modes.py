"""Interaction modes and the rule sets and tool catalogue each one implies."""

from dataclasses import dataclass
from enum import Enum

from deckhand.config import Config, PermissionsConfig
from deckhand.logging import get_logger
from deckhand.permissions import (
    Category,
    Disposition,
    ModeRules,
    PermissionRule,
    evaluate,
)

log = get_logger(__name__)

# Tools that change files, run commands or reach the network
MUTATING_TOOLS = frozenset({"write_file", "edit_file", "bash", "web_fetch"})
PLAN_EXIT_TOOL = "exit_plan_mode"
DEFAULT_BASH_ALLOW = ("ls *", "grep *", "find *")


class Mode(str, Enum):
    """Agent interaction mode."""

    NORMAL = "normal"
    PLAN = "plan"
    APPLY = "apply"
    YOLO = "yolo"


_CYCLE = {
    Mode.NORMAL: Mode.PLAN,
    Mode.PLAN: Mode.APPLY,
    Mode.APPLY: Mode.NORMAL,
}


@dataclass(frozen=True)
class ModeSnapshot:
    """Frozen view of the mode used for one loop iteration."""

    mode: Mode
    rules: ModeRules

    @property
    def yolo(self) -> bool:
        return self.mode is Mode.YOLO

    def offers(self, tool_name: str, mutating: bool | None = None) -> bool:
        """Return whether *tool_name* belongs in this iteration's catalogue."""
        if mutating is None:
            mutating = tool_name in MUTATING_TOOLS
        if tool_name == PLAN_EXIT_TOOL:
            return self.mode is Mode.PLAN
        if self.mode is Mode.PLAN and mutating:
            return False
        if self.mode is Mode.YOLO:
            return True
        return not evaluate(self.rules, Category.TOOL, tool_name).denied


def _default_rules(configured: ModeRules, mode: Mode) -> list[PermissionRule]:
    """Mode defaults for anything the configuration does not mention."""
    named = {rule.pattern for rule in configured.for_category(Category.TOOL)}
    defaults: list[PermissionRule] = []

    if mode is Mode.APPLY:
        for tool_name in ("write_file", "edit_file"):
            if tool_name not in named:
                defaults.append(PermissionRule(tool_name, Disposition.ALLOW, Category.TOOL, "default"))
    if mode is Mode.PLAN and PLAN_EXIT_TOOL not in named:
        defaults.append(PermissionRule(PLAN_EXIT_TOOL, Disposition.ASK, Category.TOOL, "default"))

    if not configured.names(Category.BASH, Disposition.ALLOW):
        defaults.extend(
            PermissionRule(pattern, Disposition.ALLOW, Category.BASH, "default")
            for pattern in DEFAULT_BASH_ALLOW
        )
    return defaults


def build_mode_rules(permissions: PermissionsConfig) -> dict[Mode, ModeRules]:
    """Build the rule set for every non-yolo mode. Plan starts from normal."""
    configured = {
        Mode.NORMAL: ModeRules.from_config(permissions.normal),
        Mode.PLAN: ModeRules.from_config(permissions.normal),
        Mode.APPLY: ModeRules.from_config(permissions.apply),
    }
    return {
        mode: rules.with_rules(_default_rules(rules, mode))
        for mode, rules in configured.items()
    }


class ModeController:
    """Holds the current mode and answers which rules and tools apply."""

    def __init__(self, config: Config, initial: Mode | str = Mode.NORMAL):
        self._rules = build_mode_rules(config.permissions)
        self._mode = Mode(initial)
        if self._mode is Mode.YOLO:
            self._mode = Mode.NORMAL
        self._before_yolo: Mode | None = None

    @property
    def mode(self) -> Mode:
        return self._mode

    @property
    def persistent_mode(self) -> Mode:
        """Mode to store with the session; yolo is never persisted."""
        if self._mode is Mode.YOLO:
            return self._before_yolo or Mode.NORMAL
        return self._mode

    def rules_for(self, mode: Mode) -> ModeRules:
        if mode is Mode.YOLO:
            return ModeRules()
        return self._rules[mode]

    def cycle(self) -> Mode:
        """Advance Normal -> Plan -> Apply -> Normal. Leaving yolo lands on Normal."""
        if self._mode is Mode.YOLO:
            self._before_yolo = None
            return self._set(Mode.NORMAL)
        return self._set(_CYCLE[self._mode])

    def toggle_yolo(self) -> Mode:
        """Enter yolo, or return to the mode that was active before it."""
        if self._mode is Mode.YOLO:
            previous = self._before_yolo or Mode.NORMAL
            self._before_yolo = None
            return self._set(previous)
        self._before_yolo = self._mode
        return self._set(Mode.YOLO)

    def set_mode(self, mode: Mode | str) -> Mode:
        mode = Mode(mode)
        if mode is Mode.YOLO:
            if self._mode is not Mode.YOLO:
                return self.toggle_yolo()
            return self._mode
        self._before_yolo = None
        return self._set(mode)

    def snapshot(self) -> ModeSnapshot:
        return ModeSnapshot(mode=self._mode, rules=self.rules_for(self._mode))

    def _set(self, mode: Mode) -> Mode:
        if mode is not self._mode:
            log.info("Mode changed", previous=self._mode.value, mode=mode.value)
        self._mode = mode
        return mode
