import pytest

from deckhand.instructions import InstructionLoader


def test_packaged_system_prompt_renders_for_every_mode(tmp_path):
    loader = InstructionLoader(personal_dir=tmp_path)
    for mode in ("normal", "plan", "apply", "yolo"):
        prompt = loader.system_prompt(mode, "/work", "2026-01-02")
        assert "Working directory: /work" in prompt
        assert f"Current mode: {mode}" in prompt
        assert "{mode_guidance}" not in prompt


def test_personal_template_overrides_packaged_one(tmp_path):
    (tmp_path / "mode_plan.md").write_text("Plan carefully. Keep {braces} as written.\n")
    loader = InstructionLoader(personal_dir=tmp_path)

    prompt = loader.system_prompt("plan", "/work", "today")

    assert "Plan carefully. Keep {braces} as written." in prompt


def test_render_leaves_unknown_placeholders(tmp_path):
    (tmp_path / "note.md").write_text("{known} and {unknown} and {}")
    loader = InstructionLoader(packaged_dir=tmp_path / "missing", personal_dir=tmp_path)

    assert loader.render("note.md", known="{x}") == "{x} and {unknown} and {}"


def test_missing_template(tmp_path):
    loader = InstructionLoader(packaged_dir=tmp_path, personal_dir=tmp_path)
    with pytest.raises(FileNotFoundError):
        loader.load("absent.md")
