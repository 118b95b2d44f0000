"""A small declarative command-line parser with nested subcommands."""

from __future__ import annotations

import sys
from collections import deque
from dataclasses import dataclass, field


class ParseError(ValueError):
    """Raised when a command line does not fit its command definition."""


@dataclass(frozen=True)
class _Flag:
    short_name: str
    long_name: str
    help: str


@dataclass
class ParsedCommand:
    """The result of parsing one level of a command line."""

    name: str
    flags: dict[str, str] = field(default_factory=dict)
    positional_args: dict[str, str] = field(default_factory=dict)
    subcommand: ParsedCommand | None = None


class Command:
    """Definition of a command: positional arguments, flags and subcommands.

    A command without a name is the root command and is shown under the
    program's own name.
    """

    def __init__(self, name: str | None, help: str) -> None:
        self.name = name
        self.help = help
        self.flags: list[_Flag] = []
        self.positional_args: list[tuple[str, str]] = []
        self.subcommands: list[Command] = []

    def add_flag(self, short_name: str, long_name: str, help: str) -> None:
        """Add a flag taking one argument, given as -short or --long."""
        self.flags.append(_Flag(short_name, long_name, help))

    def add_subcommand(self, subcommand: Command) -> None:
        self.subcommands.append(subcommand)

    def add_positional_arg(self, name: str, help: str) -> None:
        self.positional_args.append((name, help))

    def generate_help(self, program_name: str | None = None) -> str:
        """Return the help text for this command and all its subcommands."""
        if program_name is None:
            program_name = sys.argv[0] if sys.argv else ""
        return self._help(program_name, 0)

    def _help(self, program_name: str, indentation: int) -> str:
        indent = " " * indentation
        parts = [indent]
        if self.name is None:
            parts.append(f"USAGE: {program_name}")
        else:
            parts.append(self.name)

        parts.extend(f" <{arg.upper()}>" for arg, _ in self.positional_args)
        if self.flags:
            parts.append(" [OPTIONS]")
        if self.subcommands:
            parts.append(" <SUBCOMMAND>")

        parts.append(f"\n    {indent}{self.help}\n")

        for arg_name, arg_help in self.positional_args:
            parts.append(f"\n{indent}{arg_name.upper()}:\n")
            parts.append(f"{indent}    {arg_help}\n")

        if self.flags:
            parts.append(f"\n{indent}OPTIONS:\n")
            flag_texts = [
                f"{indent}    -{flag.short_name}, --{flag.long_name}  <ARGUMENT>\n"
                f"{indent}        {flag.help}\n"
                for flag in self.flags
            ]
            parts.append("\n".join(flag_texts))

        if self.subcommands:
            parts.append(f"\n{indent}SUBCOMMANDs:\n")
            parts.append(
                "\n\n".join(
                    sub._help(program_name, indentation + 4) for sub in self.subcommands
                )
            )

        return "".join(parts)


def parse(command: Command, argv: list[str] | None = None) -> ParsedCommand:
    """Parse ``argv`` (program name first, as in ``sys.argv``) against ``command``."""
    args = deque(sys.argv if argv is None else argv)
    if not args:
        raise ParseError("no program name was provided")
    program_name = args.popleft()
    return _parse(command, args, program_name)


def _parse(command: Command, args: deque[str], program_name: str) -> ParsedCommand:
    parsed = ParsedCommand(name=command.name if command.name is not None else program_name)

    for arg_name, _ in command.positional_args:
        if not args:
            if command.name is not None:
                raise ParseError(
                    f"no {arg_name} was provided to the {command.name} subcommand"
                )
            raise ParseError(f"no {arg_name} was provided")
        parsed.positional_args[arg_name] = args.popleft()

    if command.flags:
        while args and args[0].startswith("-"):
            arg = args.popleft()
            flag = next(
                (
                    f
                    for f in command.flags
                    if arg in (f"-{f.short_name}", f"--{f.long_name}")
                ),
                None,
            )
            if flag is None:
                raise ParseError(f"unknown flag: {arg}")
            if not args:
                raise ParseError(f"the flag {arg} is missing a positional argument")
            parsed.flags[flag.long_name] = args.popleft()

    if command.subcommands:
        if not args:
            if command.name is not None:
                raise ParseError(
                    f"no subcommand was provided to the {command.name} subcommand"
                )
            raise ParseError("no subcommand was provided")
        arg = args.popleft()

        for subcommand in command.subcommands:
            if subcommand.name is None:
                raise ParseError("all subcommands must have names")
            if subcommand.name == arg:
                parsed.subcommand = _parse(subcommand, args, program_name)
                break
        else:
            if command.name is not None:
                raise ParseError(
                    f"an unknown subcommand was provided to the {command.name} subcommand"
                )
            raise ParseError(f"unknown subcommand: {arg}")

    return parsed