from __future__ import annotations

from dataclasses import dataclass, field
from typing import Sequence


class Prompter:
    def confirm(self, message: str, default: bool = False) -> bool:
        raise NotImplementedError

    def choose(self, message: str, choices: Sequence[str], default: str | None = None) -> str:
        raise NotImplementedError


class TyperPrompter(Prompter):
    """Console prompts through typer."""

    def confirm(self, message: str, default: bool = False) -> bool:
        import typer

        return typer.confirm(message, default=default)

    def choose(self, message: str, choices: Sequence[str], default: str | None = None) -> str:
        import typer

        options = ", ".join(choices)
        while True:
            answer = typer.prompt(f"{message} [{options}]", default=default)
            if answer in choices:
                return answer
            typer.echo(f"Please answer one of: {options}")


@dataclass
class StaticPrompter(Prompter):
    """Canned answers for non-interactive runs and tests."""

    confirm_answer: bool = True
    choice: str | None = None
    asked: list[str] = field(default_factory=list)

    def confirm(self, message: str, default: bool = False) -> bool:
        self.asked.append(message)
        return self.confirm_answer

    def choose(self, message: str, choices: Sequence[str], default: str | None = None) -> str:
        self.asked.append(message)
        if self.choice is not None:
            return self.choice
        if default is not None:
            return default
        return choices[0]
