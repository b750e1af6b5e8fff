#!/usr/bin/env python3

"""
Name: groupby
Description: group lines of input based on a regular expression
License: perl
"""

from __future__ import annotations

import sys
import os
import re
import argparse
from typing import Iterable, Iterator

# Constants
EX_SUCCESS = 0
EX_BADGROUP = 1
EX_FAILURE = 2
VERSION = '0.2.0'

NO_MATCH = '***NO-MATCH***'
INDENT = '    '

Me = os.path.basename(sys.argv[0])


class GroupId:
    """
    Selects the part of a match used as the grouping key: the whole match,
    a capture group by index, or a capture group by name.
    """
    NONE = 'none'
    INDEX = 'index'
    NAME = 'name'

    def __init__(self, kind: str, value: int | str | None = None):
        self.kind = kind
        self.value = value

    @classmethod
    def none(cls) -> GroupId:
        return cls(cls.NONE)

    @classmethod
    def index(cls, n: int) -> GroupId:
        return cls(cls.INDEX, n)

    @classmethod
    def name(cls, s: str) -> GroupId:
        return cls(cls.NAME, s)

    @classmethod
    def parse(cls, text: str | None) -> GroupId:
        """
        An unsigned integer, optionally written with a single leading '+',
        is an index. Anything else is a group name.
        """
        if text is None:
            return cls.none()
        digits = text[1:] if text.startswith('+') else text
        # str.isdigit() accepts non-ASCII digits that int() might still take
        if digits.isascii() and digits.isdigit():
            return cls.index(int(digits))
        return cls.name(text)

    def __eq__(self, other):
        if not isinstance(other, GroupId):
            return NotImplemented
        return (self.kind, self.value) == (other.kind, other.value)

    def __hash__(self):
        return hash((self.kind, self.value))

    def __repr__(self):
        if self.kind == self.NONE:
            return 'GroupId.none()'
        return f'GroupId.{self.kind}({self.value!r})'


class RegexMatcher:
    """Turns a line into its grouping key."""

    def __init__(self, regex: re.Pattern, group_id: GroupId):
        self.regex = regex
        self.group_id = group_id

    def extract(self, line: str) -> str:
        match = self.regex.search(line)
        if match is None:
            return NO_MATCH

        if self.group_id.kind == GroupId.NONE:
            text = match.group(0)
        else:
            text = match.group(self.group_id.value)

        # A group that exists but sat in an untaken branch of the match.
        if text is None:
            return NO_MATCH
        return text


class UniqueGroup:
    """Distinct member lines, iterated in sorted order."""

    def __init__(self):
        self.lines = set()

    def add(self, line: str) -> None:
        self.lines.add(line)

    def __len__(self) -> int:
        return len(self.lines)

    def __iter__(self):
        return iter(sorted(self.lines))


class AllGroup:
    """Every member line, duplicates included, in arrival order."""

    def __init__(self):
        self.lines = []

    def add(self, line: str) -> None:
        self.lines.append(line)

    def __len__(self) -> int:
        return len(self.lines)

    def __iter__(self):
        return iter(self.lines)


def group_factory(unique: bool) -> type:
    return UniqueGroup if unique else AllGroup


def has_named_capture(regex: re.Pattern, name: str) -> bool:
    return name in regex.groupindex


def has_indexed_capture(regex: re.Pattern, index: int) -> bool:
    # Group 0 is the whole match, so a pattern with n groups accepts 0..n.
    return index <= regex.groups


def validate_group_id(group_id: GroupId, regex: re.Pattern) -> str | None:
    """
    Checks the group-id against the compiled pattern.
    Returns an error message, or None if the group-id is usable.
    """
    if group_id.kind == GroupId.NAME:
        if not has_named_capture(regex, group_id.value):
            return f"Group name unknown: {group_id.value}"
    elif group_id.kind == GroupId.INDEX:
        if not has_indexed_capture(regex, group_id.value):
            return f"Group index too large: {group_id.value}"
    return None


def read_lines(stream) -> Iterator[str]:
    """
    Yields the lines of a binary stream as text, without line terminators.
    Input that is not valid UTF-8 raises UnicodeDecodeError.
    """
    for raw in stream:
        line = raw.decode('utf-8')
        if line.endswith('\n'):
            line = line[:-1]
            if line.endswith('\r'):
                line = line[:-1]
        yield line


def groupby(lines: Iterable[str], key: RegexMatcher, factory) -> dict:
    """
    Buckets every line under key.extract(line). Each bucket is created on
    first use by calling factory().
    """
    grouping = {}
    for line in lines:
        k = key.extract(line)
        members = grouping.get(k)
        if members is None:
            members = grouping[k] = factory()
        members.add(line)
    return grouping


def groupby_regex(lines: Iterable[str], regex: re.Pattern, group_id: GroupId,
                  unique: bool = False) -> dict:
    return groupby(lines, RegexMatcher(regex, group_id), group_factory(unique))


def format_members(grouping: dict) -> Iterator[str]:
    """Yields each key followed by its indented member lines."""
    for key in sorted(grouping):
        yield key
        for line in grouping[key]:
            yield f"{INDENT}{line}"


def format_counts(grouping: dict) -> Iterator[str]:
    """
    Yields '<count>: <key>' for each key. Counts are zero-padded to the
    width of the largest one.
    """
    if not grouping:
        return
    width = max(len(str(len(members))) for members in grouping.values())
    for key in sorted(grouping):
        yield f"{len(grouping[key]):0{width}d}: {key}"


def print_groupby(grouping: dict, count_only: bool = False, out=None) -> None:
    if out is None:
        out = sys.stdout
    formatter = format_counts if count_only else format_members
    for text in formatter(grouping):
        out.write(text + '\n')


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='groupby',
        description="Group lines based on a given regex.",
        usage="%(prog)s [-u] [--count-only] [-g group-id] regex"
    )
    parser.add_argument('-V', '--version', action='version',
                        version=f'%(prog)s {VERSION}')
    parser.add_argument('regex',
                        help='The regex to group by. The match will use the entire '
                             'expression, unless a group-id is provided.')
    parser.add_argument('-g', '--group-id', metavar='group-id', default=None,
                        help='The group-id to group by. Can be an index or a group name.')
    parser.add_argument('-u', '--unique', action='store_true',
                        help='Remove duplicate lines in the same group.')
    parser.add_argument('--count-only', action='store_true',
                        help='Only show the count of matches per group.')
    return parser


def main(argv: list[str] | None = None) -> int:
    """Parses arguments, groups standard input and prints the groups."""
    args = build_parser().parse_args(argv)

    # Input is read as UTF-8, so write it back out the same way regardless
    # of the locale.
    if hasattr(sys.stdout, 'reconfigure'):
        sys.stdout.reconfigure(encoding='utf-8')

    try:
        regex = re.compile(args.regex)
    except re.error as e:
        sys.stderr.write(f"{Me}: bad pattern: {e}\n")
        return EX_FAILURE

    group_id = GroupId.parse(args.group_id)

    # Must happen before stdin is touched.
    message = validate_group_id(group_id, regex)
    if message is not None:
        print(message)
        return EX_BADGROUP

    try:
        grouping = groupby_regex(read_lines(sys.stdin.buffer), regex,
                                 group_id, unique=args.unique)
    except (UnicodeDecodeError, OSError) as e:
        sys.stderr.write(f"{Me}: I/O error: {e}\n")
        return EX_FAILURE

    try:
        print_groupby(grouping, count_only=args.count_only)
        sys.stdout.flush()
    except BrokenPipeError:
        # The reader went away (e.g. `groupby ... | head`). Point stdout at
        # devnull so the interpreter's final flush does not complain.
        devnull = os.open(os.devnull, os.O_WRONLY)
        os.dup2(devnull, sys.stdout.fileno())
    return EX_SUCCESS


def run() -> None:
    try:
        sys.exit(main())
    except KeyboardInterrupt:
        sys.exit(130)


if __name__ == "__main__":
    run()
