"""Built-in output modes.

Each mode names the syntax it produces, whether it has a live execution
preview, and the system instruction sent with every generation. Modes are
grouped by category for listing; lookups are by id across all categories.
"""

from __future__ import annotations

import re
from typing import Callable, Literal

from pydantic import BaseModel, ConfigDict

NON_CODE_SYNTAXES = frozenset({"text", "markdown", "image"})

_FENCE_OPEN = re.compile(r"^\s*```[A-Za-z0-9_+.-]*[ \t]*\n", re.IGNORECASE)
_FENCE_CLOSE = re.compile(r"\n?```\s*$")


def text_only_modifier(text: str) -> str:
    """Strip a leading and trailing markdown code fence from a model response."""
    text = _FENCE_OPEN.sub("", text, count=1)
    text = _FENCE_CLOSE.sub("", text, count=1)
    return text.strip()


RESPONSE_MODIFIERS: dict[str, Callable[[str], str]] = {
    "text_only": text_only_modifier,
}


class BuiltinMode(BaseModel):
    """One entry of the static mode catalog."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["builtin"] = "builtin"
    id: str
    name: str
    icon: str
    category: str
    syntax: str
    is_renderable: bool
    image_output: bool = False
    system_instruction: str = ""
    # Fixed model key; None means the sidebar model.
    model: str | None = None
    api_id: str | None = None
    response_modifier: str | None = "text_only"


def _expert_preamble(tech: str) -> str:
    return (
        f"You are a world-class senior software engineer specializing in {tech}. "
        "Write complete, production-ready code that fulfills the user's request. "
        "The code MUST be fully functional and self-contained. Never leave functions "
        "unimplemented or use placeholder comments. Your entire response MUST be only "
        "the raw code, with no explanatory text and no markdown fences."
    )


_MODES: dict[str, list[BuiltinMode]] = {
    "Code & Creative": [
        BuiltinMode(
            id="html",
            name="HTML/JS",
            icon="article",
            category="Code & Creative",
            syntax="html",
            is_renderable=True,
            system_instruction=(
                f"{_expert_preamble('vanilla HTML, CSS, and JavaScript')} "
                "Create a complete, single-file web app starting with <!DOCTYPE html>. "
                "Do not use network calls or external assets. Return ONLY the HTML page."
            ),
        ),
        BuiltinMode(
            id="javascript",
            name="JavaScript",
            icon="javascript",
            category="Code & Creative",
            syntax="javascript",
            is_renderable=True,
            system_instruction=(
                f"{_expert_preamble('modern JavaScript')} "
                "Write a standalone script that demonstrates its result through console output. "
                "Return ONLY the JavaScript code."
            ),
        ),
        BuiltinMode(
            id="canvas",
            name="Canvas",
            icon="brush",
            category="Code & Creative",
            syntax="javascript",
            is_renderable=True,
            system_instruction=(
                f"{_expert_preamble('the HTML5 Canvas 2D API')} "
                "A `canvas` element and its 2D context `ctx` are already defined; draw with them "
                "directly and do not create new elements. Return ONLY the JavaScript code."
            ),
        ),
        BuiltinMode(
            id="python",
            name="Python Script",
            icon="terminal",
            category="Code & Creative",
            syntax="python",
            is_renderable=True,
            system_instruction=(
                f"{_expert_preamble('Python 3')} "
                "Write a standalone script using only the standard library that prints its "
                "result. Do not read stdin, files, or the network. Return ONLY the Python code."
            ),
        ),
        BuiltinMode(
            id="svg",
            name="SVG",
            icon="shapes",
            category="Code & Creative",
            syntax="xml",
            is_renderable=True,
            system_instruction=(
                "You are an expert vector illustrator. Create a self-contained SVG image that "
                "satisfies the prompt. Return ONLY the <svg> element."
            ),
        ),
        BuiltinMode(
            id="mermaid",
            name="Mermaid",
            icon="account_tree",
            category="Code & Creative",
            syntax="markdown",
            is_renderable=True,
            system_instruction=(
                "You are an expert at creating diagrams in Mermaid.js syntax. "
                "Return ONLY the Mermaid diagram definition."
            ),
        ),
        BuiltinMode(
            id="image",
            name="Image",
            icon="image",
            category="Code & Creative",
            syntax="image",
            is_renderable=True,
            image_output=True,
            model="imagen-3.0-generate-002",
            system_instruction="Create a high-quality, detailed image.",
            response_modifier=None,
        ),
    ],
    "Writing & Data": [
        BuiltinMode(
            id="text",
            name="Text",
            icon="notes",
            category="Writing & Data",
            syntax="text",
            is_renderable=True,
            system_instruction="You are a helpful, precise writing assistant.",
            response_modifier=None,
        ),
        BuiltinMode(
            id="markdown",
            name="Markdown",
            icon="description",
            category="Writing & Data",
            syntax="markdown",
            is_renderable=True,
            system_instruction=(
                "Respond with well-structured Markdown. Return ONLY the Markdown content."
            ),
        ),
        BuiltinMode(
            id="json",
            name="JSON",
            icon="data_object",
            category="Writing & Data",
            syntax="json",
            is_renderable=True,
            system_instruction="Respond with a single valid JSON document and nothing else.",
        ),
    ],
    "Backend & Systems": [
        BuiltinMode(
            id="go",
            name="Go",
            icon="code",
            category="Backend & Systems",
            syntax="go",
            is_renderable=False,
            system_instruction=f"{_expert_preamble('Go')} Return ONLY the Go code.",
        ),
        BuiltinMode(
            id="rust",
            name="Rust",
            icon="code",
            category="Backend & Systems",
            syntax="rust",
            is_renderable=False,
            system_instruction=f"{_expert_preamble('Rust')} Return ONLY the Rust code.",
        ),
        BuiltinMode(
            id="shell",
            name="Shell Script",
            icon="terminal",
            category="Backend & Systems",
            syntax="shell",
            is_renderable=False,
            system_instruction=(
                f"{_expert_preamble('POSIX shell scripting')} Return ONLY the shell script."
            ),
        ),
    ],
}

BUILTIN_MODES: dict[str, BuiltinMode] = {
    mode.id: mode for category in _MODES.values() for mode in category
}


def get_mode(mode_id: str) -> BuiltinMode | None:
    return BUILTIN_MODES.get(mode_id)


def list_modes() -> dict[str, list[BuiltinMode]]:
    return {category: list(modes) for category, modes in _MODES.items()}


def resolve_modifier(name: str | None) -> Callable[[str], str] | None:
    if name is None:
        return None
    return RESPONSE_MODIFIERS.get(name)
