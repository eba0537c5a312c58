"""Prompt templates for every backend-calling phase, kept in ``prompts/prompts.json``."""
from __future__ import annotations

import json
from pathlib import Path
from string import Template
from typing import Any, Iterator

PROMPTS_PATH = Path(__file__).resolve().parents[1] / "prompts" / "prompts.json"


class PromptCatalog:
    """Dotted-key access to a nested JSON catalog, reloaded when the file changes."""

    def __init__(self, path: Path = PROMPTS_PATH):
        self.path = path
        self._entries: dict[str, Any] | None = None
        self._mtime_ns: int | None = None

    def _current(self) -> dict[str, Any]:
        mtime_ns = self.path.stat().st_mtime_ns
        if self._entries is not None and self._mtime_ns == mtime_ns:
            return self._entries
        payload = json.loads(self.path.read_text(encoding="utf-8"))
        if not isinstance(payload, dict):
            raise ValueError(f"Prompt catalog {self.path} must be a JSON object.")
        self._entries = payload
        self._mtime_ns = mtime_ns
        return payload

    def template(self, key: str) -> Template:
        node: Any = self._current()
        for part in key.split("."):
            if not isinstance(node, dict) or part not in node:
                raise KeyError(f"Prompt key not found: {key}")
            node = node[part]
        if not isinstance(node, str):
            raise TypeError(f"Prompt key must map to a string: {key}")
        return Template(node)

    def render(self, key: str, **values: Any) -> str:
        # Substituted values are inserted verbatim, so user text may contain "$".
        try:
            return self.template(key).substitute(**values)
        except KeyError as exc:
            missing = str(exc.args[0])
            raise KeyError(f"Missing template value '{missing}' for prompt '{key}'") from exc

    def keys(self) -> Iterator[str]:
        def walk(node: dict[str, Any], prefix: str) -> Iterator[str]:
            for name, value in node.items():
                dotted = f"{prefix}{name}"
                if isinstance(value, dict):
                    yield from walk(value, f"{dotted}.")
                elif isinstance(value, str):
                    yield dotted

        return walk(self._current(), "")

    def invalidate(self) -> None:
        self._entries = None
        self._mtime_ns = None


_catalog = PromptCatalog()


def render_prompt(key: str, **values: Any) -> str:
    return _catalog.render(key, **values)


def prompt_keys() -> list[str]:
    return list(_catalog.keys())
