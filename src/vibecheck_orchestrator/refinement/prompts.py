"""Prompt text for the refinement loop."""

from __future__ import annotations

CRITIQUE_SYSTEM_INSTRUCTION = (
    "You are a meticulous code reviewer. Your task is to analyze the provided code against "
    "the user's original request AND any runtime errors. Identify bugs, logical flaws, style "
    "issues, or incomplete work. Provide your response as a concise, professional, bulleted "
    "list in Markdown format. If the code is perfect and fulfills the request completely, "
    'respond with ONLY the word "perfect".'
)

ITERATION_DELIMITER = "\n\n---\n\n"
MAX_ITERATIONS_NOTE = "**Max iterations reached.**"


def refinement_system_instruction(
    *,
    system_instruction: str,
    prompt: str,
    previous_artifact: str,
    accumulated_critique: str,
) -> str:
    return (
        f"{system_instruction}\n\n"
        "You must refine a previous attempt based on critique and errors. Your goal is to "
        "produce a final, perfect, bug-free, and complete version of the code. "
        f'The user\'s original prompt was: "{prompt}".\n\n'
        f"The previous code was:\n```\n{previous_artifact}\n```\n\n"
        f"The critique and errors were:\n{accumulated_critique}\n\n"
        "Based on all this information, produce the final, corrected, and improved code. "
        "Your response MUST be only the raw code, with no explanatory text, commentary, or "
        "markdown fences. Do not leave placeholders or partial sections. You must finish the work."
    ).lstrip()


def refinement_prompt(prompt: str) -> str:
    return f'Produce the final code for the prompt: "{prompt}"'


def execution_summary(errors: list[str]) -> str:
    if not errors:
        return "The code ran without console errors."
    return "The code produced the following console errors:\n- " + "\n- ".join(errors)


def critique_prompt(*, prompt: str, artifact: str, syntax: str, errors: list[str]) -> str:
    return (
        f'Original User Prompt: "{prompt}"\n\n'
        f"Code to Review:\n```{syntax or 'code'}\n{artifact}\n```\n\n"
        f"Runtime Analysis:\n{execution_summary(errors)}"
    )


def iteration_feedback(iteration: int, critique: str, errors: list[str]) -> str:
    console = ", ".join(errors) if errors else "None"
    return (
        f"**Iteration {iteration} Feedback:**\n"
        f"*Critique:* {critique}\n"
        f"*Console Errors:* {console}"
    )


def iteration_passed(iteration: int) -> str:
    return f"**Iteration {iteration}**: Passed with no errors or critiques."


def is_perfect(critique: str) -> bool:
    return critique.strip().lower() == "perfect"


def append_entry(log: str, entry: str, *, delimiter: str = "\n\n") -> str:
    return f"{log}{delimiter}{entry}" if log else entry
