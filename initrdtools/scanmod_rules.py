"""Rule files that select kernel modules by their metadata and symbols."""

from __future__ import annotations

import enum
import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable

log = logging.getLogger(__name__)

_POSIX_CLASSES = {
    "alnum": "0-9A-Za-z",
    "alpha": "A-Za-z",
    "blank": " \\t",
    "cntrl": "\\x00-\\x1f\\x7f",
    "digit": "0-9",
    "graph": "!-~",
    "lower": "a-z",
    "print": " -~",
    "punct": "!-/:-@\\[-`{-~",
    "space": " \\t\\n\\r\\f\\v",
    "upper": "A-Z",
    "xdigit": "0-9A-Fa-f",
}
_POSIX_CLASS = re.compile(r"\[:([a-z]+):\]")


class RulesError(Exception):
    """Raised when a rules file cannot be read or has a bad line."""


class RuleType(enum.Enum):
    MATCH = 0
    NOT_MATCH = 1


class Keyword(enum.Enum):
    ALIAS = "alias"
    AUTHOR = "author"
    DEPENDS = "depends"
    DESCRIPTION = "description"
    FILENAME = "filename"
    FIRMWARE = "firmware"
    LICENSE = "license"
    NAME = "name"
    SYMBOL = "symbol"

    @property
    def is_info(self) -> bool:
        """True for keywords matched against module information."""
        return self not in (Keyword.FILENAME, Keyword.SYMBOL)


def _compile(pattern: str) -> re.Pattern:
    translated = _POSIX_CLASS.sub(lambda m: _POSIX_CLASSES.get(m[1], m[0]), pattern)
    return re.compile(translated)


@dataclass(frozen=True)
class Rule:
    """One line of a rules file: a keyword and an extended regular expression."""

    type: RuleType
    keyword: Keyword
    pattern: re.Pattern

    def matches(self, text: str) -> bool:
        """True if the expression matches anywhere in ``text``."""
        return self.pattern.search(text) is not None


@dataclass
class Ruleset:
    """The rules of one file, grouped by what they are matched against."""

    filename: str
    info: list[Rule] = field(default_factory=list)
    symbols: list[Rule] = field(default_factory=list)
    paths: list[Rule] = field(default_factory=list)

    def add(self, rule: Rule) -> None:
        """Put ``rule`` into the group its keyword belongs to."""
        if rule.keyword is Keyword.SYMBOL:
            self.symbols.append(rule)
        elif rule.keyword is Keyword.FILENAME:
            self.paths.append(rule)
        else:
            self.info.append(rule)

    @property
    def has_info(self) -> bool:
        return bool(self.info)

    @property
    def has_symbols(self) -> bool:
        return bool(self.symbols)

    @property
    def has_paths(self) -> bool:
        return bool(self.paths)


def _parse_line(body: str, filename: str, number: int) -> Rule:
    rule_type = RuleType.NOT_MATCH
    tokens = body[4:].split() if body.startswith("not-") else []
    if len(tokens) >= 2:
        kw, value = tokens[0], tokens[1]
    else:
        rule_type = RuleType.MATCH
        parts = body.split(None, 1)
        if len(parts) < 2:
            raise RulesError(f"{filename}:{number}: bad line format")
        kw, value = parts

    try:
        keyword = Keyword(kw)
    except ValueError:
        raise RulesError(f"{filename}:{number}: unknown keyword") from None

    try:
        pattern = _compile(value)
    except re.error:
        raise RulesError(
            f"{filename}:{number}: '{value}' is not a regular expression"
        ) from None

    return Rule(rule_type, keyword, pattern)


def parse_ruleset_text(text: str, filename: str = "<rules>") -> Ruleset:
    """Parse the contents of a rules file."""
    ruleset = Ruleset(filename)
    text = text.split("\0", 1)[0]
    for number, line in enumerate(text.split("\n"), start=1):
        body = line.lstrip(" \t")
        if not body or body.startswith("#"):
            continue
        ruleset.add(_parse_line(body, filename, number))
    return ruleset


def parse_ruleset(filename) -> Ruleset:
    """Read and parse the rules file ``filename``."""
    name = str(filename)
    try:
        data = Path(filename).read_bytes()
    except OSError as exc:
        raise RulesError(f"open: {name}: {exc.strerror}") from exc
    if not data:
        log.warning("file %s is empty", name)
        return Ruleset(name)
    return parse_ruleset_text(data.decode("utf-8", "surrogateescape"), name)


def parse_rules(files: Iterable) -> list[Ruleset]:
    """Parse every rules file once, in the order given."""
    rulesets: list[Ruleset] = []
    seen: set[str] = set()
    for filename in files:
        if filename is None or str(filename) in seen:
            continue
        seen.add(str(filename))
        rulesets.append(parse_ruleset(filename))
    return rulesets