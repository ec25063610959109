"""Prompt files for the discussion and critique protocols.

Each ``<name>.yaml`` file in the prompts directory maps prompt keys to Mako
template strings (or to plain data such as default criteria). Defs from
``_macros.yaml`` are available to every template.
"""

from enum import Enum
from functools import lru_cache
from pathlib import Path
from typing import Any

import structlog
import yaml
from mako.template import Template

logger = structlog.get_logger()

MACROS_FILE = "_macros"


class PromptManager:
    """Renders packaged prompts by file stem and key.

    Example:
        >>> manager = PromptManager()
        >>> manager.render(
        ...     "critique",
        ...     CritiquePrompts.EVALUATION_PROMPT,
        ...     output="draft",
        ...     criteria=[],
        ... )
    """

    def __init__(self, prompts_dir: Path | None = None) -> None:
        self.prompts_dir = prompts_dir or Path(__file__).parent
        self._files: dict[str, dict[str, Any]] = {}
        self._templates: dict[tuple[str, str], Template] = {}

    def get_data(self, prompt_file: str, key: Enum) -> Any:
        """Raw entry for ``key``, without rendering.

        Raises:
            FileNotFoundError: If the prompt file doesn't exist
            KeyError: If the file has no such key
        """
        entries = self._entries(prompt_file)
        try:
            return entries[key.value]
        except KeyError:
            raise KeyError(
                f"Key '{key.value}' not found in {prompt_file}.yaml. "
                f"Available keys: {sorted(entries)}"
            ) from None

    def render(self, prompt_file: str, prompt_key: Enum, **kwargs: Any) -> str:
        """Render one prompt with ``kwargs`` as template variables.

        Undefined variables are errors, not blanks.

        Raises:
            KeyError: If the key doesn't exist
            ValueError: If the entry isn't a string or rendering fails
        """
        template = self._template(prompt_file, prompt_key)
        try:
            rendered = template.render(**kwargs)
        except Exception as e:
            logger.error(
                "template_render_error",
                prompt_file=prompt_file,
                prompt_key=prompt_key.value,
                variables=sorted(kwargs),
                error=str(e),
            )
            raise ValueError(f"Failed to render template: {e}") from e
        return str(rendered).strip()

    def clear_cache(self) -> None:
        """Forget loaded files and compiled templates."""
        self._files.clear()
        self._templates.clear()
        logger.debug("prompt_cache_cleared")

    def _template(self, prompt_file: str, prompt_key: Enum) -> Template:
        cache_key = (prompt_file, prompt_key.value)
        cached = self._templates.get(cache_key)
        if cached is not None:
            return cached

        source = self.get_data(prompt_file, prompt_key)
        if not isinstance(source, str):
            raise ValueError(
                f"Prompt '{prompt_key.value}' in {prompt_file}.yaml must be a string, "
                f"got {type(source).__name__}"
            )
        macros = self._macros()
        if macros:
            source = f"{macros}\n{source}"

        template = Template(text=source, strict_undefined=True)
        self._templates[cache_key] = template
        return template

    def _macros(self) -> str:
        if not (self.prompts_dir / f"{MACROS_FILE}.yaml").exists():
            return ""
        try:
            entries = self._entries(MACROS_FILE)
        except yaml.YAMLError as e:
            logger.warning("macros_load_error", prompts_dir=str(self.prompts_dir), error=str(e))
            return ""
        return "\n".join(value for value in entries.values() if isinstance(value, str))

    def _entries(self, prompt_file: str) -> dict[str, Any]:
        if prompt_file not in self._files:
            self._files[prompt_file] = self._read(prompt_file)
        return self._files[prompt_file]

    def _read(self, prompt_file: str) -> dict[str, Any]:
        path = self.prompts_dir / f"{prompt_file}.yaml"
        if not path.is_file():
            available = sorted(p.stem for p in self.prompts_dir.glob("*.yaml"))
            raise FileNotFoundError(f"Prompt file not found: {path}. Available: {available}")

        try:
            loaded = yaml.safe_load(path.read_text(encoding="utf-8"))
        except yaml.YAMLError as e:
            logger.error("yaml_parse_error", prompt_file=prompt_file, error=str(e))
            raise
        if not isinstance(loaded, dict):
            loaded = {}
        logger.debug("prompt_file_loaded", prompt_file=prompt_file, keys=len(loaded))
        return loaded


@lru_cache(maxsize=1)
def get_prompt_manager() -> PromptManager:
    """Shared manager over the packaged prompts."""
    return PromptManager()
