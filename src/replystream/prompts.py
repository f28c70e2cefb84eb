from __future__ import annotations

from datetime import date
from textwrap import dedent

DEFAULT_CONTEXT = "General writing assistance."

_INSTRUCTIONS = dedent(
    """\
    You are a writing assistant working alongside the user in a shared chat.
    Help draft, edit, restructure and brainstorm text, and coach the user on
    their writing when asked.

    Today's date is {today}. Use it for anything time-sensitive.

    Answer directly without preambles such as "Here's the edit:". Use clear
    structure and formatting where it helps.

    Writing context: {context}"""
)


def format_today(today: date | None = None) -> str:
    value = today or date.today()
    return f"{value:%B} {value.day}, {value.year}"


def writing_instructions(context: str | None = None, *, today: date | None = None) -> str:
    return _INSTRUCTIONS.format(
        today=format_today(today),
        context=context or DEFAULT_CONTEXT,
    )


def build_prompt(
    text: str, *, writing_task: str | None = None, today: date | None = None
) -> str:
    context = f"Writing Task: {writing_task}" if writing_task else None
    instructions = writing_instructions(context, today=today)
    return f"{instructions}\n\nUser Message: {text}"
