"""Permission decisions for tool calls.

Evaluation is a pure function of the active mode's rules, a category and a
subject string. Deny rules always win, then allow rules (plus session grants
for web fetches), then ask rules, then the category default.
"""

import shlex
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Iterable
from urllib.parse import urlsplit

from deckhand.config import ModeRulesConfig, RuleListConfig
from deckhand.patterns import matches


class Disposition(str, Enum):
    """Outcome of a permission check."""

    ALLOW = "allow"
    ASK = "ask"
    DENY = "deny"


class Category(str, Enum):
    """What a rule's pattern is matched against."""

    TOOL = "tool"
    BASH = "bash"
    WEB_FETCH = "web_fetch"


# Tools that only read state are allowed unless a rule says otherwise
TOOL_DEFAULTS: dict[str, Disposition] = {
    "read_file": Disposition.ALLOW,
    "glob": Disposition.ALLOW,
    "grep": Disposition.ALLOW,
    "ask_user_question": Disposition.ALLOW,
}

# Tools whose arguments carry a second subject with its own rule category
SUBJECT_ARGUMENTS: dict[str, tuple[Category, str]] = {
    "bash": (Category.BASH, "command"),
    "web_fetch": (Category.WEB_FETCH, "url"),
}

_SHELL_SEPARATOR_CHARS = ";&|\n"

# Markers of command or process substitution, which hide commands from patterns
_SUBSTITUTION_MARKERS = ("$(", "`", "<(", ">(")


@dataclass(frozen=True)
class PermissionRule:
    """One allow/ask/deny pattern."""

    pattern: str
    disposition: Disposition
    category: Category
    source: str = "config"

    def applies_to(self, subject: str) -> bool:
        if self.category is Category.TOOL:
            return self.pattern == subject
        return matches(self.pattern, subject)


@dataclass(frozen=True)
class PermissionDecision:
    """A disposition plus the rule that produced it (None for defaults)."""

    disposition: Disposition
    rule: PermissionRule | None = None
    reason: str = ""

    @property
    def allowed(self) -> bool:
        return self.disposition is Disposition.ALLOW

    @property
    def denied(self) -> bool:
        return self.disposition is Disposition.DENY

    @property
    def needs_approval(self) -> bool:
        return self.disposition is Disposition.ASK


@dataclass(frozen=True)
class ModeRules:
    """Immutable rule set for one mode."""

    rules: tuple[PermissionRule, ...] = ()

    def for_category(self, category: Category) -> tuple[PermissionRule, ...]:
        return tuple(rule for rule in self.rules if rule.category is category)

    def with_rules(self, extra: Iterable[PermissionRule]) -> "ModeRules":
        return ModeRules(rules=self.rules + tuple(extra))

    def names(self, category: Category, disposition: Disposition) -> set[str]:
        return {
            rule.pattern
            for rule in self.rules
            if rule.category is category and rule.disposition is disposition
        }

    @classmethod
    def from_config(cls, config: ModeRulesConfig, source: str = "config") -> "ModeRules":
        """Build rules from the allow/ask/deny lists of one mode section."""
        rules: list[PermissionRule] = []
        sections: tuple[tuple[Category, RuleListConfig], ...] = (
            (Category.TOOL, config.tools),
            (Category.BASH, config.bash),
            (Category.WEB_FETCH, config.web_fetch),
        )
        for category, lists in sections:
            for disposition, patterns in (
                (Disposition.DENY, lists.deny),
                (Disposition.ALLOW, lists.allow),
                (Disposition.ASK, lists.ask),
            ):
                for pattern in patterns:
                    cleaned = str(pattern or "").strip()
                    if cleaned:
                        rules.append(PermissionRule(cleaned, disposition, category, source))
        return cls(rules=tuple(rules))


class ApprovalChoice(str, Enum):
    """Answers a human can give to an approval prompt."""

    APPROVE_ONCE = "approve_once"
    DENY_ONCE = "deny_once"
    APPROVE_DOMAIN = "approve_domain"


@dataclass
class ApprovalRequest:
    """What the human is asked to decide on."""

    tool_name: str
    arguments: dict[str, Any]
    subject: str
    reason: str
    grant_pattern: str | None = None
    choices: list[ApprovalChoice] = field(default_factory=list)

    def __post_init__(self) -> None:
        if not self.choices:
            self.choices = [ApprovalChoice.APPROVE_ONCE, ApprovalChoice.DENY_ONCE]
            if self.grant_pattern:
                self.choices.insert(1, ApprovalChoice.APPROVE_DOMAIN)


def category_default(category: Category, subject: str) -> Disposition:
    """Static default when no rule matches."""
    if category is Category.TOOL:
        return TOOL_DEFAULTS.get(subject, Disposition.ASK)
    return Disposition.ASK


def _shell_tokens(command: str) -> list[str]:
    """Tokenise *command*, keeping quotes. Raises ValueError on unbalanced quotes."""
    lexer = shlex.shlex(command, posix=False, punctuation_chars=_SHELL_SEPARATOR_CHARS)
    lexer.whitespace = " \t\r"
    lexer.whitespace_split = True
    lexer.commenters = ""
    return list(lexer)


def split_command(command: str) -> list[str]:
    """Split a compound shell command on ``;``, ``&``, ``&&``, ``||``, ``|`` and newlines.

    Quoted separators are kept inside their segment, as is the ``&`` of a
    redirection such as ``2>&1``. Unbalanced quotes make the whole command one
    segment.
    """
    try:
        tokens = _shell_tokens(command)
    except ValueError:
        return [command.strip()] if command.strip() else []

    segments: list[str] = []
    current: list[str] = []
    separators = set(_SHELL_SEPARATOR_CHARS)
    glue = False
    for token in tokens:
        is_separator = set(token) <= separators
        if glue and not is_separator:
            current[-1] += token
            glue = False
            continue
        glue = False
        if token == "&" and current and current[-1].endswith((">", "<")):
            current[-1] += token
            glue = True
            continue
        if is_separator:
            if current:
                segments.append(" ".join(current))
                current = []
            continue
        current.append(token)
    if current:
        segments.append(" ".join(current))
    return segments


def hides_commands(command: str) -> bool:
    """Return whether *command* may run something no pattern can see.

    Command and process substitution qualify, as do unbalanced quotes, since
    the shell may read past them into later lines.
    """
    if any(marker in command for marker in _SUBSTITUTION_MARKERS):
        return True
    try:
        _shell_tokens(command)
    except ValueError:
        return True
    return False


def _evaluate_subject(
    rules: ModeRules,
    category: Category,
    subject: str,
    grants: Iterable[str] = (),
) -> PermissionDecision:
    candidates = rules.for_category(category)

    for rule in candidates:
        if rule.disposition is Disposition.DENY and rule.applies_to(subject):
            return PermissionDecision(Disposition.DENY, rule, f"matches deny rule '{rule.pattern}'")

    if not (category is Category.BASH and hides_commands(subject)):
        for rule in candidates:
            if rule.disposition is Disposition.ALLOW and rule.applies_to(subject):
                return PermissionDecision(Disposition.ALLOW, rule, f"matches allow rule '{rule.pattern}'")

    if category is Category.WEB_FETCH:
        for pattern in grants:
            if matches(pattern, subject):
                grant = PermissionRule(pattern, Disposition.ALLOW, category, source="grant")
                return PermissionDecision(Disposition.ALLOW, grant, f"domain approved this session '{pattern}'")

    for rule in candidates:
        if rule.disposition is Disposition.ASK and rule.applies_to(subject):
            return PermissionDecision(Disposition.ASK, rule, f"matches ask rule '{rule.pattern}'")

    default = category_default(category, subject)
    return PermissionDecision(default, None, f"no {category.value} rule matched; default is {default.value}")


def evaluate(
    rules: ModeRules,
    category: Category,
    subject: str,
    grants: Iterable[str] = (),
) -> PermissionDecision:
    """Decide Allow, Ask or Deny for *subject* under *rules*.

    Compound shell commands are checked segment by segment: any denied segment
    denies the whole command and every segment must be allowed for the command
    to be allowed.
    """
    grants = tuple(grants)
    whole = _evaluate_subject(rules, category, subject, grants)
    if category is not Category.BASH:
        return whole

    segments = split_command(subject)
    if len(segments) <= 1:
        return whole
    if whole.denied:
        return whole

    decisions = [_evaluate_subject(rules, category, segment) for segment in segments]
    for segment, decision in zip(segments, decisions):
        if decision.denied:
            return PermissionDecision(
                Disposition.DENY, decision.rule, f"segment '{segment}' {decision.reason}"
            )
    if all(decision.allowed for decision in decisions):
        return PermissionDecision(Disposition.ALLOW, decisions[0].rule, "every segment is allowed")
    for segment, decision in zip(segments, decisions):
        if not decision.allowed:
            return PermissionDecision(
                Disposition.ASK, decision.rule, f"segment '{segment}' {decision.reason}"
            )
    return whole


def subject_for(tool_name: str, arguments: dict[str, Any]) -> tuple[Category, str] | None:
    """Return the secondary category and subject a tool call is checked against."""
    entry = SUBJECT_ARGUMENTS.get(tool_name)
    if entry is None:
        return None
    category, key = entry
    return category, str(arguments.get(key) or "").strip()


def resolve_action(
    rules: ModeRules,
    tool_name: str,
    arguments: dict[str, Any],
    grants: Iterable[str] = (),
) -> PermissionDecision:
    """Combine the tool-level decision with the command or URL decision."""
    tool_decision = evaluate(rules, Category.TOOL, tool_name)
    if tool_decision.denied:
        return tool_decision

    target = subject_for(tool_name, arguments)
    if target is None:
        return tool_decision

    category, subject = target
    decision = evaluate(rules, category, subject, grants)
    if decision.denied:
        return decision
    if tool_decision.allowed and decision.needs_approval and decision.rule is None:
        return tool_decision
    return decision


def domain_pattern(url: str) -> str | None:
    """Return ``scheme://host/*`` for *url*, or None when it has no host."""
    try:
        parsed = urlsplit(str(url or "").strip())
        port = parsed.port
    except ValueError:
        return None
    if not parsed.scheme or not parsed.hostname:
        return None
    host = parsed.hostname
    if port is not None:
        host = f"{host}:{port}"
    return f"{parsed.scheme}://{host}/*"
