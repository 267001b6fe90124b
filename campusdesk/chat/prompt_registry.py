"""
CampusDesk
Prompt Registry.

YAML-based prompt template management with:
    - Template loading from campusdesk/chat/prompts/
    - ``{{variable}}`` rendering
    - Version tracking

Usage:
    from campusdesk.chat.prompt_registry import get_registry
    text = get_registry().render_system("role_admin", user_id="suzuki")
"""

import logging
import os
import re
from pathlib import Path

import yaml

logger = logging.getLogger(__name__)

_PROMPTS_DIR = os.path.join(os.path.dirname(__file__), "prompts")


class PromptTemplate:
    """A single prompt template with metadata."""

    def __init__(self, name: str, version: str, system: str, user: str = "",
                 description: str = "", metadata: dict | None = None):
        self.name = name
        self.version = version
        self.system = system
        self.user = user
        self.description = description
        self.metadata = metadata or {}

    def render(self, **variables) -> list[dict]:
        """Render template with variables, returning chat messages."""
        system_rendered = self._substitute(self.system, variables)
        user_rendered = self._substitute(self.user, variables)

        messages = []
        if system_rendered.strip():
            messages.append({"role": "system", "content": system_rendered})
        if user_rendered.strip():
            messages.append({"role": "user", "content": user_rendered})
        return messages

    @staticmethod
    def _substitute(template: str, variables: dict) -> str:
        """Replace {{var}} placeholders with values; unknown placeholders are left as-is."""
        def replacer(match):
            key = match.group(1).strip()
            return str(variables.get(key, f"{{{{{key}}}}}"))
        return re.sub(r'\{\{(\s*\w+\s*)\}\}', replacer, template or "")

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "version": self.version,
            "description": self.description,
            "system_preview": self.system[:200],
        }


class PromptRegistry:
    """Registry of prompt templates loaded from YAML files."""

    def __init__(self, prompts_dir: str | None = None):
        self._prompts_dir = prompts_dir or _PROMPTS_DIR
        self._templates: dict[str, dict[str, PromptTemplate]] = {}  # name → {version → template}
        self._load_from_dir()

    def _load_from_dir(self):
        prompts_path = Path(self._prompts_dir)
        if not prompts_path.exists():
            logger.warning("Prompts directory not found: %s", self._prompts_dir)
            return

        for yaml_file in sorted(prompts_path.glob("*.yaml")):
            with open(yaml_file, "r", encoding="utf-8") as f:
                data = yaml.safe_load(f)
            if not data or not isinstance(data, dict):
                continue

            tpl = PromptTemplate(
                name=data.get("name", yaml_file.stem),
                version=str(data.get("version", "v1")),
                system=data.get("system", ""),
                user=data.get("user", ""),
                description=data.get("description", ""),
                metadata=data.get("metadata", {}),
            )
            self._register(tpl)
            logger.debug("Loaded prompt template: %s (%s) from %s",
                         tpl.name, tpl.version, yaml_file.name)

    def _register(self, template: PromptTemplate):
        self._templates.setdefault(template.name, {})[template.version] = template

    def get(self, name: str, version: str = "v1") -> PromptTemplate | None:
        return self._templates.get(name, {}).get(version)

    def render(self, name: str, version: str = "v1", **variables) -> list[dict]:
        """
        Render a prompt template with variables.

        Raises:
            KeyError: If template not found.
        """
        tpl = self.get(name, version)
        if not tpl:
            raise KeyError(f"Prompt template not found: {name} {version}")
        return tpl.render(**variables)

    def render_system(self, name: str, version: str = "v1", **variables) -> str:
        """Render only the system part of a template as plain text."""
        return "\n\n".join(
            m["content"] for m in self.render(name, version, **variables) if m["role"] == "system"
        )

    def list_templates(self) -> list[dict]:
        return [tpl.to_dict() for versions in self._templates.values() for tpl in versions.values()]

    def get_versions(self, name: str) -> list[str]:
        return list(self._templates.get(name, {}).keys())


_registry: PromptRegistry | None = None


def get_registry() -> PromptRegistry:
    """Module-level cache; templates are read-only after load."""
    global _registry
    if _registry is None:
        _registry = PromptRegistry()
    return _registry
