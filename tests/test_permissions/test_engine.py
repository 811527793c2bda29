import pytest

from deckhand.config import Config, ModeRulesConfig, RuleListConfig
from deckhand.modes import ModeController
from deckhand.permissions import (
    ApprovalChoice,
    ApprovalRequest,
    Category,
    Disposition,
    ModeRules,
    PermissionRule,
    domain_pattern,
    evaluate,
    hides_commands,
    resolve_action,
    split_command,
)


def _rules(**lists) -> ModeRules:
    return ModeRules.from_config(
        ModeRulesConfig(
            tools=RuleListConfig(**lists.get("tools", {})),
            bash=RuleListConfig(**lists.get("bash", {})),
            web_fetch=RuleListConfig(**lists.get("web_fetch", {})),
        )
    )


def test_deny_wins_over_allow_regardless_of_order():
    rules = ModeRules(
        rules=(
            PermissionRule("git *", Disposition.ALLOW, Category.BASH),
            PermissionRule("git push *", Disposition.DENY, Category.BASH),
            PermissionRule("git *", Disposition.ASK, Category.BASH),
        )
    )
    decision = evaluate(rules, Category.BASH, "git push origin main")
    assert decision.disposition is Disposition.DENY
    assert decision.rule.pattern == "git push *"

    assert evaluate(rules, Category.BASH, "git status x").disposition is Disposition.ALLOW


def test_allow_beats_ask_and_ask_beats_default():
    rules = _rules(bash={"allow": ["make *"], "ask": ["make *", "cargo *"]})
    assert evaluate(rules, Category.BASH, "make test").allowed
    decision = evaluate(rules, Category.BASH, "cargo build")
    assert decision.needs_approval
    assert decision.rule.pattern == "cargo *"


def test_tool_defaults():
    empty = ModeRules()
    for name in ("read_file", "glob", "grep", "ask_user_question"):
        assert evaluate(empty, Category.TOOL, name).allowed
    for name in ("write_file", "edit_file", "bash", "web_fetch"):
        decision = evaluate(empty, Category.TOOL, name)
        assert decision.needs_approval
        assert decision.rule is None
    assert evaluate(empty, Category.BASH, "ls").needs_approval
    assert evaluate(empty, Category.WEB_FETCH, "https://x.io/").needs_approval


def test_tool_rules_use_exact_names():
    rules = _rules(tools={"deny": ["read"]})
    assert evaluate(rules, Category.TOOL, "read_file").allowed
    rules = _rules(tools={"deny": ["read_file"]})
    assert evaluate(rules, Category.TOOL, "read_file").denied


def test_grants_only_apply_to_web_fetch_and_never_beat_deny():
    grants = ["https://docs.example.com/*"]
    rules = _rules(web_fetch={"deny": ["https://docs.example.com/private/*"]})

    allowed = evaluate(rules, Category.WEB_FETCH, "https://docs.example.com/guide", grants)
    assert allowed.allowed
    assert allowed.rule.source == "grant"

    denied = evaluate(rules, Category.WEB_FETCH, "https://docs.example.com/private/x", grants)
    assert denied.denied

    assert evaluate(ModeRules(), Category.BASH, "https://docs.example.com/guide", grants).needs_approval


def test_split_command_on_control_operators():
    assert split_command("ls -la && rm -rf x") == ["ls -la", "rm -rf x"]
    assert split_command("cat a | grep b; echo done || true") == ["cat a", "grep b", "echo done", "true"]
    assert split_command("echo 'a;b'") == ["echo 'a;b'"]
    assert split_command("echo 'unterminated") == ["echo 'unterminated"]


def test_split_command_on_background_operator_and_newlines():
    assert split_command("ls & rm -rf x") == ["ls", "rm -rf x"]
    assert split_command("ls\nrm -rf x") == ["ls", "rm -rf x"]
    assert split_command("ls &\nrm -rf x") == ["ls", "rm -rf x"]
    assert split_command("make build 2>&1 | tail") == ["make build 2>&1", "tail"]
    assert split_command("echo 'a & b'") == ["echo 'a & b'"]


def test_hides_commands():
    assert hides_commands("ls $(rm -rf x)")
    assert hides_commands("ls `rm -rf x`")
    assert hides_commands("diff <(ls a) <(ls b)")
    assert hides_commands("ls 'unterminated\nrm -rf x")
    assert not hides_commands("ls -la 2>&1")


@pytest.mark.parametrize(
    "command",
    [
        "ls & rm -rf /tmp/x",
        "ls\nrm -rf /tmp/x",
        "ls $(rm -rf /tmp/x)",
        "ls `rm -rf /tmp/x`",
        "ls <(rm -rf /tmp/x)",
        "ls 'x\nrm -rf /tmp/x",
    ],
)
def test_default_bash_allow_rules_cannot_be_smuggled_past(command):
    rules = ModeController(Config()).snapshot().rules
    assert resolve_action(rules, "bash", {"command": "ls -la"}).allowed
    decision = resolve_action(rules, "bash", {"command": command})
    assert decision.needs_approval


def test_substitution_still_hits_deny_rules():
    rules = _rules(bash={"allow": ["echo *"], "deny": ["*rm -rf*"]})
    assert evaluate(rules, Category.BASH, "echo $(rm -rf x)").denied
    assert evaluate(rules, Category.BASH, "echo $(date)").needs_approval


def test_compound_command_needs_every_segment_allowed():
    rules = _rules(bash={"allow": ["ls *"], "deny": ["rm *"]})
    assert evaluate(rules, Category.BASH, "ls -la").allowed
    assert evaluate(rules, Category.BASH, "ls -la && ls -R").allowed
    assert evaluate(rules, Category.BASH, "ls -la && rm -rf build").denied
    assert evaluate(rules, Category.BASH, "ls -la | wc -l").needs_approval


def test_resolve_action_combines_tool_and_command():
    rules = _rules(tools={"allow": ["bash"]}, bash={"deny": ["rm *"]})
    assert resolve_action(rules, "bash", {"command": "rm -rf build"}).denied
    # Tool-level allow covers commands no bash rule mentions
    assert resolve_action(rules, "bash", {"command": "make"}).allowed

    rules = _rules(tools={"deny": ["bash"]}, bash={"allow": ["ls *"]})
    assert resolve_action(rules, "bash", {"command": "ls -la"}).denied

    rules = _rules(bash={"allow": ["ls *"]})
    assert resolve_action(rules, "bash", {"command": "ls -la"}).allowed
    assert resolve_action(rules, "bash", {"command": "cat x"}).needs_approval
    assert resolve_action(rules, "read_file", {"path": "x"}).allowed


def test_explicit_ask_rule_is_not_overridden_by_tool_allow():
    rules = _rules(tools={"allow": ["bash"]}, bash={"ask": ["git push *"]})
    assert resolve_action(rules, "bash", {"command": "git push origin"}).needs_approval


def test_domain_pattern():
    assert domain_pattern("https://docs.python.org/3/library/") == "https://docs.python.org/*"
    assert domain_pattern("http://localhost:8000/x?y=1") == "http://localhost:8000/*"
    assert domain_pattern("not a url") is None


def test_approval_request_offers_domain_only_with_grant_pattern():
    plain = ApprovalRequest("bash", {"command": "ls"}, "ls", "default")
    assert ApprovalChoice.APPROVE_DOMAIN not in plain.choices

    fetch = ApprovalRequest(
        "web_fetch",
        {"url": "https://x.io/a"},
        "https://x.io/a",
        "default",
        grant_pattern="https://x.io/*",
    )
    assert ApprovalChoice.APPROVE_DOMAIN in fetch.choices
