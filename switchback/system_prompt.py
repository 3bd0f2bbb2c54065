"""System prompt templates.

Templates ship in ``switchback/prompts/``. A file of the same name in
``~/.switchback/instructions/`` replaces the packaged copy.
"""

import re
from pathlib import Path

from switchback.logging import get_logger

log = get_logger(__name__)

PACKAGED_DIR = Path(__file__).resolve().parent / "prompts"
PERSONAL_DIR = Path("~/.switchback/instructions").expanduser()

_PLACEHOLDER_RE = re.compile(r"\{(\w+)\}")


class PromptTemplates:
    """Renders prompt files, personal copies first."""

    def __init__(self, personal_dir: Path | str | None = None, packaged_dir: Path | str | None = None):
        self.personal_dir = Path(personal_dir).expanduser() if personal_dir is not None else PERSONAL_DIR
        self.packaged_dir = Path(packaged_dir) if packaged_dir is not None else PACKAGED_DIR
        self._loaded: dict[str, str] = {}

    def template(self, name: str) -> str:
        if name not in self._loaded:
            for directory in (self.personal_dir, self.packaged_dir):
                path = directory / name
                if path.is_file():
                    log.debug("Prompt template loaded", template=name, path=str(path))
                    self._loaded[name] = path.read_text(encoding="utf-8").strip()
                    break
            else:
                raise FileNotFoundError(f"Prompt template not found: {name}")
        return self._loaded[name]

    def render(self, name: str, **values: object) -> str:
        """Fill ``{name}`` placeholders; unknown ones stay as written."""
        return _PLACEHOLDER_RE.sub(
            lambda match: str(values[match.group(1)]) if match.group(1) in values else match.group(0),
            self.template(name),
        )
