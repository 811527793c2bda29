"""Prompt templates: the system prompt per mode and the compaction prompts.

Templates ship in ``deckhand/instructions/``. A file of the same name in
``~/.deckhand/instructions/`` replaces the packaged one.
"""

import re
from pathlib import Path

PACKAGED_DIR = Path(__file__).resolve().parent / "instructions"
PERSONAL_DIR = Path("~/.deckhand/instructions").expanduser()

_PLACEHOLDER = re.compile(r"\{(\w+)\}")


class InstructionLoader:
    """Loads templates once and fills ``{name}`` placeholders."""

    def __init__(self, packaged_dir: Path = PACKAGED_DIR, personal_dir: Path = PERSONAL_DIR):
        self.search_path = (Path(personal_dir).expanduser(), Path(packaged_dir))
        self._cache: dict[str, str] = {}

    def load(self, name: str) -> str:
        """Return the text of template *name*.

        Raises:
            FileNotFoundError: No directory on the search path has it
        """
        if name not in self._cache:
            path = next((d / name for d in self.search_path if (d / name).is_file()), None)
            if path is None:
                raise FileNotFoundError(f"Instruction template not found: {name}")
            self._cache[name] = path.read_text(encoding="utf-8").strip()
        return self._cache[name]

    def render(self, name: str, **variables: object) -> str:
        """Fill the template's placeholders. Unknown placeholders and other braces stay as written."""
        values = {key: str(value) for key, value in variables.items()}
        return _PLACEHOLDER.sub(lambda m: values.get(m.group(1), m.group(0)), self.load(name))

    def system_prompt(self, mode: str, cwd: str, date: str) -> str:
        return self.render(
            "system_prompt.md",
            mode=mode,
            mode_guidance=self.load(f"mode_{mode}.md"),
            cwd=cwd,
            date=date,
        )
