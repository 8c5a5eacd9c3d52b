"""Prompt templates for the session system prompt and the next-speaker check.

Templates ship in ``turnloop/prompts/``. A file of the same name in
``~/.turnloop/instructions/`` takes precedence, and ``TURNLOOP_INSTRUCTIONS_DIR``
replaces the shipped directory.
"""

import os
import re
from pathlib import Path

SYSTEM_PROMPT = "system_prompt.md"
NEXT_SPEAKER_PROMPT = "next_speaker_prompt.md"

_PERSONAL_DIR = Path("~/.turnloop/instructions").expanduser()
_SHIPPED_DIR = Path(__file__).resolve().parent / "prompts"
_PLACEHOLDER_RE = re.compile(r"\{([A-Za-z_][A-Za-z0-9_]*)\}")


class InstructionLoader:
    """Find prompt templates and fill their ``{placeholder}`` fields."""

    def __init__(
        self,
        base_dir: Path | str | None = None,
        personal_dir: Path | str | None = None,
    ):
        if base_dir is None:
            base_dir = os.getenv("TURNLOOP_INSTRUCTIONS_DIR") or _SHIPPED_DIR
        self.search_dirs: list[Path] = [
            Path(personal_dir if personal_dir is not None else _PERSONAL_DIR).expanduser(),
            Path(base_dir).expanduser(),
        ]

    def load(self, name: str) -> str:
        """Return the stripped text of the first ``name`` found in the search dirs."""
        for directory in self.search_dirs:
            path = directory / name
            if path.is_file():
                return path.read_text(encoding="utf-8").strip()
        raise FileNotFoundError(f"Instruction template not found: {self.search_dirs[-1] / name}")

    def render(self, name: str, /, **variables: object) -> str:
        """Substitute known placeholders; other braces are left as written."""
        values = {key: str(value) for key, value in variables.items()}
        return _PLACEHOLDER_RE.sub(
            lambda match: values.get(match.group(1), match.group(0)),
            self.load(name),
        )
