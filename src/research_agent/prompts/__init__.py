"""Prompt templates for the research workflow.

Each template is a markdown file next to this module, filled in with
str.format(); literal braces are written as {{ and }}. Every template may
use {language}, which defaults to DEFAULT_LANGUAGE.
"""

from functools import lru_cache
from pathlib import Path

PROMPTS_DIR = Path(__file__).parent
PROMPT_SUFFIX = ".md"

DEFAULT_LANGUAGE = "English"


@lru_cache(maxsize=None)
def load_prompt(name: str) -> str:
    """Load a prompt template by name, e.g. "plan_system" or "plan_system.md".

    Raises:
        FileNotFoundError: If no template has this name
    """
    filename = name if name.endswith(PROMPT_SUFFIX) else f"{name}{PROMPT_SUFFIX}"
    path = PROMPTS_DIR / filename
    if not path.is_file():
        raise FileNotFoundError(f"Prompt '{name}' not found in {PROMPTS_DIR}")
    return path.read_text(encoding="utf-8")


def format_prompt(name: str, language: str = DEFAULT_LANGUAGE, **values: str) -> str:
    """Fill a template and trim surrounding whitespace.

    Raises:
        KeyError: If the template uses a placeholder that was not given
    """
    template = load_prompt(name)
    try:
        return template.format(language=language, **values).strip()
    except KeyError as e:
        raise KeyError(f"Prompt '{name}' needs a value for {e}") from None
