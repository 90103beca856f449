"""Loader for prompts.yaml: personas, commentary pools and LLM prompt templates."""

import logging
import re
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

import yaml

logger = logging.getLogger(__name__)

PROMPTS_PATH = Path(__file__).with_name("prompts.yaml")
_PLACEHOLDER = re.compile(r"\{(\w+)\}")


def render(template: str, variables: Mapping[str, Any]) -> str:
    """Substitute ``{name}`` placeholders; unknown names are left as-is."""
    def replace(match):
        key = match.group(1)
        return str(variables[key]) if key in variables else match.group(0)

    return _PLACEHOLDER.sub(replace, template)


class PromptLibrary:
    def __init__(self, data: Dict[str, Any]):
        self.data = data or {}

    @classmethod
    def load(cls, path: Optional[Path] = None) -> 'PromptLibrary':
        path = path or PROMPTS_PATH
        with open(path, "r", encoding="utf-8") as fh:
            data = yaml.safe_load(fh)
        logger.debug(f"Loaded prompt library from {path}")
        return cls(data)

    def persona(self, archetype_id: str) -> Dict[str, str]:
        return dict(self.data.get("personas", {}).get(archetype_id, {}))

    def archetype_commentary(self, archetype_id: str) -> Dict[str, List[str]]:
        pools = self.data.get("archetype_commentary", {}).get(archetype_id, {})
        return {trigger: list(lines) for trigger, lines in pools.items()}

    def generic_commentary(self, trigger: str) -> List[str]:
        return list(self.data.get("generic_commentary", {}).get(trigger, []))

    def template(self, name: str) -> str:
        """A prompt template such as ``agent_decision.system``."""
        node: Any = self.data.get("templates", {})
        for part in name.split("."):
            if not isinstance(node, dict) or part not in node:
                raise KeyError(f"Prompt template not found: {name}")
            node = node[part]
        return str(node)


@lru_cache(maxsize=1)
def get_prompts() -> PromptLibrary:
    return PromptLibrary.load()
