#!/usr/bin/env python3

# SPDX-FileCopyrightText: 2011-present Łukasz Langa <lukasz@langa.pl>
# SPDX-License-Identifier: GPL-3.0-or-later
#
# This program is free software: you can redistribute it and/or modify
# it under the terms of the GNU General Public License as published by
# the Free Software Foundation, version 3 of the License.

# This program is distributed in the hope that it will be useful,
# but WITHOUT ANY WARRANTY; without even the implied warranty of
# MERCHANTABILITY or FITNESS FOR A PARTICULAR PURPOSE.  See the
# GNU General Public License for more details.
#
# You should have received a copy of the GNU General Public License
# along with this program.  If not, see <http://www.gnu.org/licenses/>.

"""Renames files in the current directory using wildcards or regular expressions.

Captured groups are referenced in the replacement as #1, #2, ... with #0
being the entire file name.  All renames are planned and validated before
the first file is touched.
"""

#
# This utility should use no dependencies other than Python 3.7+.
#

from __future__ import annotations

import argparse
import os
import re
import shutil
import sys
import uuid
from typing import Iterable, Iterator, NamedTuple, NewType, NoReturn, TextIO

__version__ = "26.10.0"


StatusCode = NewType("StatusCode", int)

EXIT_OK = StatusCode(0)
EXIT_USAGE = StatusCode(1)
EXIT_COLLISION = StatusCode(2)
EXIT_OVERWRITE = StatusCode(3)
EXIT_FAILED = StatusCode(4)

WILDCARD = {
    "*": "(.*)",
    "?": "(.)",
    ".": r"\.",
    " ": r"\s",
}
PLACEHOLDER = re.compile(r"#(\d+)")


class RenameError(ValueError):
    """Base class for failures that abort the run before anything is renamed."""

    status = EXIT_USAGE


class UsageError(RenameError):
    pass


class PatternError(RenameError):
    pass


class TemplateError(RenameError):
    pass


class CollisionError(RenameError):
    status = EXIT_COLLISION

    def __init__(self, target: str, sources: Iterable[str]) -> None:
        self.target = target
        self.sources = list(sources)
        files = ", ".join(self.sources)
        super().__init__(f"Multiple files ({files}) would be written to {target}")


class OverwriteError(RenameError):
    status = EXIT_OVERWRITE

    def __init__(self, target: str, source: str) -> None:
        self.target = target
        self.source = source
        super().__init__(f"Target {target} already exists for source {source}")


class CompiledPattern(NamedTuple):
    source: str
    mode: str
    regex: re.Pattern[str]

    @property
    def groups(self) -> int:
        return self.regex.groups


class RenamePair(NamedTuple):
    old: str
    new: str


class Move(NamedTuple):
    """A single os.rename() call.

    `pair` is the rename this move belongs to.  Most pairs are a single
    move; a pair that closes a rename cycle is split in two, going through
    a temporary name first.
    """

    source: str
    target: str
    pair: RenamePair

    @property
    def final(self) -> bool:
        return self.target == self.pair.new


def wildcard_to_regex(pattern: str) -> str:
    """Translates a shell-style wildcard into an anchored regular expression.

    Every `*` and `?` becomes its own capturing group, numbered left to
    right.  A space matches any single whitespace character.  Character
    classes in brackets are copied as they are, with a leading `!` meaning
    negation like in the shell.
    """
    result = ["^"]
    i = 0
    while i < len(pattern):
        char = pattern[i]
        i += 1
        if char in WILDCARD:
            result.append(WILDCARD[char])
        elif char == "[":
            # a `]` right after `[` or `[!` belongs to the class
            start = i + 1 if pattern.startswith("!", i) else i
            end = pattern.find("]", start + 1)
            if end == -1:
                raise PatternError(
                    f"Unterminated character class in wildcard {pattern!r}"
                )
            body = pattern[i:end]
            if body.startswith("!"):
                body = "^" + body[1:]
            result.append(f"[{body}]")
            i = end + 1
        elif char == "]":
            result.append(char)
        else:
            result.append(re.escape(char))
    result.append("$")
    return "".join(result)


def compile_pattern(
    pattern: str, *, regex: bool = False, case_insensitive: bool = False
) -> CompiledPattern:
    mode = "regex" if regex else "wildcard"
    expression = pattern if regex else wildcard_to_regex(pattern)
    flags = re.IGNORECASE if case_insensitive else 0
    try:
        compiled = re.compile(expression, flags)
    except re.error as exc:
        raise PatternError(f"Invalid {mode} pattern {pattern!r}: {exc}") from None
    return CompiledPattern(pattern, mode, compiled)


def match(compiled: CompiledPattern, name: str) -> tuple[str, ...] | None:
    """Matches the whole of `name`, returning all captures or None.

    Index 0 is the entire name.  Groups that didn't participate in the
    match are empty strings.
    """
    m = compiled.regex.fullmatch(name)
    if m is None:
        return None
    return (m.group(0),) + m.groups(default="")


def tokenize_template(template: str) -> Iterator[tuple[str, int | None]]:
    """Splits `template` into literal runs and placeholders, left to right.

    Yields `(text, None)` for literal text and `(text, index)` for a
    placeholder like `#12`.  A `#` not followed by a digit is literal.
    """
    position = 0
    for m in PLACEHOLDER.finditer(template):
        if m.start() > position:
            yield template[position : m.start()], None
        yield m.group(), int(m.group(1))
        position = m.end()
    if position < len(template):
        yield template[position:], None


def check_template(template: str, compiled: CompiledPattern) -> None:
    for text, index in tokenize_template(template):
        if index is not None and index > compiled.groups:
            raise TemplateError(
                f"Placeholder {text} in {template!r} refers to a missing group,"
                f" the pattern only defines {compiled.groups}"
            )


def expand(template: str, captures: tuple[str, ...]) -> str:
    parts = []
    for text, index in tokenize_template(template):
        if index is None:
            parts.append(text)
        elif index < len(captures):
            parts.append(captures[index])
        else:
            raise TemplateError(
                f"Placeholder {text} in {template!r} refers to a missing group"
            )
    return "".join(parts)


class RenamePlan:
    """Validated old name -> new name pairs, in the order they were found."""

    def __init__(self) -> None:
        self.pairs: list[RenamePair] = []
        # new name -> old name
        self.sources: dict[str, str] = {}

    def __iter__(self) -> Iterator[RenamePair]:
        return iter(self.pairs)

    def __len__(self) -> int:
        return len(self.pairs)

    def add(self, old: str, new: str) -> None:
        if new in self.sources:
            raise CollisionError(new, [self.sources[new], old])
        self.pairs.append(RenamePair(old, new))
        self.sources[new] = old

    @property
    def pending(self) -> list[RenamePair]:
        return [pair for pair in self.pairs if pair.old != pair.new]

    def moves(self, existing: Iterable[str] = ()) -> list[Move]:
        """Orders the renames so that no move lands on a name still in use.

        A rename whose target is the source of another rename runs after
        it.  Renames forming a cycle are broken up by moving one member of
        the cycle to a temporary name not found in `existing`.
        """
        pending = {pair.old: pair for pair in self.pending}
        by_target = {pair.new: pair for pair in pending.values()}
        taken = set(existing) | set(self.sources) | set(pending)
        result: list[Move] = []
        for pair in self.pending:
            if pair.old not in pending or pair.new in pending:
                continue
            # `pair` ends a chain, walk it back to its start
            link: RenamePair | None = pair
            while link is not None:
                del pending[link.old]
                result.append(Move(link.old, link.new, link))
                link = by_target.get(link.old)
        while pending:
            start = next(iter(pending.values()))
            staging = staging_name(start.old, taken)
            taken.add(staging)
            del pending[start.old]
            result.append(Move(start.old, staging, start))
            link = by_target[start.old]
            while link is not start:
                del pending[link.old]
                result.append(Move(link.old, link.new, link))
                link = by_target[link.old]
            result.append(Move(staging, start.new, start))
        return result


def staging_name(name: str, taken: set[str]) -> str:
    while True:
        candidate = f".{name}.ren-{uuid.uuid4().hex[:8]}"
        if candidate not in taken:
            return candidate


def plan(
    candidates: Iterable[str],
    compiled: CompiledPattern,
    template: str,
    *,
    existing: Iterable[str] | None = None,
    trace: TextIO | None = None,
) -> RenamePlan:
    """Computes and validates the new name for every matching candidate.

    `existing` is every name currently in the directory; it defaults to
    the candidates themselves.  Raises a `RenameError` subclass on the
    first problem found, in which case no plan is returned at all.
    """
    check_template(template, compiled)
    candidates = list(candidates)
    existing = set(candidates if existing is None else existing)
    matches = []
    for name in candidates:
        captures = match(compiled, name)
        if captures is None:
            if trace:
                print(f"debug: {name} doesn't match", file=trace)
            continue
        matches.append((name, captures))
    # every matching name is the source of some rename in this plan
    renamed = {name for name, _captures in matches}
    result = RenamePlan()
    for name, captures in matches:
        new_name = expand(template, captures)
        if not new_name:
            raise TemplateError(f"{template!r} gives an empty name for {name}")
        if trace:
            print(f"debug: {name} -> {new_name} groups={captures[1:]}", file=trace)
        result.add(name, new_name)
        if new_name != name and new_name in existing and new_name not in renamed:
            raise OverwriteError(new_name, name)
    return result


def execute(
    rename_plan: RenamePlan,
    *,
    dry_run: bool = False,
    existing: Iterable[str] = (),
    stdout: TextIO = sys.stdout,
    stderr: TextIO = sys.stderr,
) -> int:
    """Performs the planned renames in the current directory.

    With `dry_run=True` only prints what it would do.  A move that fails
    is reported on `stderr` and the remaining moves still run.  Returns
    the number of failed renames.
    """
    for pair in rename_plan:
        if pair.old == pair.new and dry_run:
            print(
                f"note: file {pair.old} matches but name doesn't change.",
                file=stderr,
            )
    failed: set[RenamePair] = set()
    for move in rename_plan.moves(existing):
        if dry_run:
            print(f"Would run os.rename{move.source, move.target}", file=stdout)
            continue
        try:
            if os.path.lexists(move.target) and not is_same_file(
                move.source, move.target
            ):
                raise OverwriteError(move.pair.new, move.pair.old)
            os.rename(move.source, move.target)
        except (OSError, OverwriteError) as exc:
            failed.add(move.pair)
            message = f"error: cannot rename {move.pair.old} to {move.pair.new}: {exc}"
            if move.source != move.pair.old:
                # the file is parked under a temporary name
                message += restore(move.source, move.pair.old)
            print(message, file=stderr)
            continue
        if move.final:
            print(f"{move.pair.old} -> {move.pair.new}", file=stdout)
    return len(failed)


def restore(staging: str, original: str) -> str:
    """Moves a file back from its temporary name, describing the outcome."""
    try:
        if os.path.lexists(original):
            raise OverwriteError(original, staging)
        os.rename(staging, original)
    except (OSError, OverwriteError) as exc:
        return f" (restore also failed, file left as {staging}: {exc})"
    return f" (restored as {original})"


def is_same_file(file1: str, file2: str) -> bool:
    return (
        os.path.abspath(file1).lower() == os.path.abspath(file2).lower()
        and os.stat(file1).st_ino == os.stat(file2).st_ino
    )


def list_files(directory: str = ".") -> list[str]:
    """Returns the sorted names of regular files in `directory`."""
    with os.scandir(directory) as entries:
        return sorted(
            entry.name
            for entry in entries
            if entry.is_file(follow_symlinks=False) and "\n" not in entry.name
        )


def list_entries(directory: str = ".") -> set[str]:
    return set(os.listdir(directory))


class Renamer:
    def __init__(
        self,
        *,
        dry_run: bool = False,
        debug: bool = False,
        regex: bool = False,
        case_insensitive: bool = False,
        quiet: bool = False,
        except_regex: str = "",
    ):
        self.dry_run = dry_run
        self.debug = debug
        self.regex = regex
        self.case_insensitive = case_insensitive
        self.quiet = quiet
        self.except_regex = except_regex

    @classmethod
    def from_args(cls, args: argparse.Namespace) -> Renamer:
        return cls(
            dry_run=args.dry_run,
            debug=args.debug,
            regex=args.regex,
            case_insensitive=args.case_insensitive,
            quiet=args.quiet,
            except_regex=args.except_regex or "",
        )

    def rename(self, pattern: str, *, target: str) -> StatusCode:
        """Renames files in the current directory matching `pattern`.

        Returns a non-zero status code on failure, outputting any error
        information to stderr.
        """
        DEVNULL = open(os.devnull, "w")
        stdout = DEVNULL if self.quiet else sys.stdout
        stderr = DEVNULL if self.quiet else sys.stderr
        trace = stderr if self.debug else DEVNULL
        try:
            failures = self._rename(
                pattern, target=target, stdout=stdout, stderr=stderr, trace=trace
            )
            if failures:
                print(f"{failures} file(s) could not be renamed.", file=stderr)
                return EXIT_FAILED
            return EXIT_OK
        except RenameError as exc:
            print(exc, file=stderr)
            return StatusCode(exc.status)
        except Exception as exc:  # pragma: no cover
            # Unhandled exceptions, unexpected exceptions.
            # No test coverage for that.
            print(exc, file=stderr)
            return EXIT_FAILED
        finally:
            DEVNULL.close()

    def _rename(
        self,
        pattern: str,
        *,
        target: str,
        stdout: TextIO = sys.stdout,
        stderr: TextIO = sys.stderr,
        trace: TextIO | None = None,
    ) -> int:
        """Plans all renames, then performs them.

        Raises on the first planning failure without renaming anything.
        Returns the number of renames that failed during execution.
        """
        if not pattern or not target:
            raise UsageError("Both the pattern and the replacement must be given.")
        for label, value in (("pattern", pattern), ("replacement", target)):
            if os.sep in value:
                print(
                    f"warning: {os.sep} found in <{label}> but"
                    f" this tool doesn't support directory traversal.",
                    file=stderr,
                )
        compiled = compile_pattern(
            pattern, regex=self.regex, case_insensitive=self.case_insensitive
        )
        if trace:
            print(
                f"debug: {compiled.mode} {pattern!r} compiled to"
                f" {compiled.regex.pattern!r} with {compiled.groups} group(s)",
                file=trace,
            )
        files = list_files()
        if self.except_regex:
            flags = re.IGNORECASE if self.case_insensitive else 0
            try:
                exc = re.compile(self.except_regex, flags)
            except re.error as e:
                raise PatternError(
                    f"Invalid exclusion pattern {self.except_regex!r}: {e}"
                ) from None
            files = [f for f in files if not exc.search(f)]
        existing = list_entries()
        rename_plan = plan(files, compiled, target, existing=existing, trace=trace)
        if trace:
            print(
                f"debug: {len(rename_plan.pending)} of {len(files)} file(s)"
                f" to rename",
                file=trace,
            )
        return execute(
            rename_plan,
            dry_run=self.dry_run,
            existing=existing,
            stdout=stdout,
            stderr=stderr,
        )


class ArgumentParser(argparse.ArgumentParser):
    """Exits with status 1 on bad usage, status 2 means a collision here."""

    def error(self, message: str) -> NoReturn:
        self.print_usage(sys.stderr)
        self.exit(EXIT_USAGE, f"{self.prog}: error: {message}\n")


class SentinelStr(str):
    """A special string that the user cannot ever pass."""


use_tmp = SentinelStr("use_tmp")


def run(cmdline_args: list[str] | None = None) -> None:
    selftest_parser = ArgumentParser(prog="ren", add_help=False)
    parser = ArgumentParser(
        prog="ren",
        description="Renames files in the current directory. Every * and ? in"
        " the pattern (or every group of the regular expression with -E) can"
        " be referenced in the replacement as #1, #2, and so on; #0 is the"
        " whole file name.",
    )
    for p in (selftest_parser, parser):
        p.add_argument(
            "--selftest",
            nargs="?",
            const=use_tmp,
            metavar="use_directory",
            help="run internal unit tests",
        )
    parser.add_argument(
        "-d",
        "--dry-run",
        action="store_true",
        help="only print what would be renamed, don't touch any files",
    )
    parser.add_argument(
        "-D", "--debug", action="store_true", help="print a verbose trace to stderr"
    )
    parser.add_argument(
        "-E",
        "--regex",
        action="store_true",
        help="treat the pattern as a regular expression instead of a wildcard",
    )
    parser.add_argument(
        "-i",
        "-I",
        "--case-insensitive",
        action="store_true",
        help="match the pattern case-insensitively",
    )
    parser.add_argument(
        "-q",
        "--quiet",
        action="store_true",
        help="don't print anything, just return status codes",
    )
    parser.add_argument(
        "-v",
        "--except",
        dest="except_regex",
        action="store",
        default="",
        help="exclude files matching the following regular expression",
    )
    parser.add_argument(
        "-V", "--version", action="version", version=f"%(prog)s {__version__}"
    )
    parser.add_argument(
        "pattern", help="wildcard (or regular expression with -E) to match files"
    )
    parser.add_argument(
        "replacement",
        help="new name, with #N replaced by the N-th group of the pattern",
    )
    known_args, _rest = selftest_parser.parse_known_args(cmdline_args)
    if known_args.selftest:
        status_code = selftest(known_args.selftest)
    else:
        args = parser.parse_args(cmdline_args)
        renamer = Renamer.from_args(args)
        status_code = renamer.rename(args.pattern, target=args.replacement)
    sys.exit(status_code)


def selftest(temp_dir: str = use_tmp) -> StatusCode:
    if temp_dir is use_tmp:
        temp_dir = ""

    test_count = 0
    failures = 0

    def _runcase(
        *,
        desc: str,
        before: set[str],
        pattern: str,
        target: str,
        renamer: Renamer | None = None,
        result: StatusCode = EXIT_OK,
        files: set[str] | None = None,
    ) -> None:
        nonlocal failures
        nonlocal test_count
        test_count += 1
        import tempfile

        r = renamer or Renamer()
        r.quiet = True
        expected = before if files is None else files
        dirpath = tempfile.mkdtemp(".selftest", "ren_", temp_dir or None)
        cwd = os.getcwd()
        try:
            for name in before:
                with open(os.path.join(dirpath, name), "w") as f:
                    f.write(name)
            os.chdir(dirpath)
            # dry run first, nothing may change
            r.dry_run = True
            actual_result = r.rename(pattern, target=target)
            if actual_result != result or set(os.listdir(".")) != before:
                raise ValueError(f"dry run gave {actual_result}")
            r.dry_run = False
            actual_result = r.rename(pattern, target=target)
            if actual_result != result:
                raise ValueError(f"got status {actual_result}, expected {result}")
            actual_files = set(os.listdir("."))
            if actual_files != expected:
                extra_files = actual_files - expected
                missing_files = expected - actual_files
                if extra_files:
                    print("Extra files:", extra_files)
                if missing_files:
                    print("Missing files:", missing_files)
                raise ValueError("unexpected files")
            print(f"Test {test_count} OK.")
        except (OSError, ValueError) as e:  # pragma: no cover
            print(f"Test {test_count} ({desc}) failed: {e}.", file=sys.stderr)
            failures += 1
        finally:
            os.chdir(cwd)
            shutil.rmtree(dirpath)

    _runcase(
        desc="regex with one group",
        before={"img_001.jpg", "img_999.jpg", "notes.txt"},
        pattern=r"^img_([0-9]+)\.jpg$",
        target="image-#1.jpg",
        renamer=Renamer(regex=True),
        files={"image-001.jpg", "image-999.jpg", "notes.txt"},
    )
    _runcase(
        desc="wildcard with seven groups",
        before={"Screenshot from 2025-05-10 22-52-47.png"},
        pattern="Screenshot from * ??-??-??.png",
        target="Screenshot_#1_(#2#3:#4#5:#6#7).png",
        files={"Screenshot_2025-05-10_(22:52:47).png"},
    )
    _runcase(
        desc="collision",
        before={"a.txt", "b.txt"},
        pattern="*.txt",
        target="same.txt",
        result=EXIT_COLLISION,
    )
    _runcase(
        desc="overwrite",
        before={"x.txt", "y.txt"},
        pattern="x.txt",
        target="y.txt",
        result=EXIT_OVERWRITE,
    )
    _runcase(
        desc="unchanged names",
        before={"a.txt", "b.txt"},
        pattern="*.txt",
        target="#1.txt",
    )
    _runcase(
        desc="chain",
        before={"a", "aa"},
        pattern="*",
        target="#1a",
        files={"aa", "aaa"},
    )
    _runcase(
        desc="character class, whole name",
        before={"ab", "ba", "cd"},
        pattern="[ab][ab]",
        target="#0",
    )
    _runcase(
        desc="swap",
        before={"ab", "ba", "cd"},
        pattern=r"([ab])([ab])",
        target="#2#1",
        renamer=Renamer(regex=True),
    )
    _runcase(
        desc="missing group",
        before={"a.txt"},
        pattern="*.txt",
        target="#2.txt",
        result=EXIT_USAGE,
    )
    _runcase(
        desc="invalid regex",
        before={"a.txt"},
        pattern="(",
        target="b.txt",
        renamer=Renamer(regex=True),
        result=EXIT_USAGE,
    )
    if failures == 0:  # pragma: no cover
        print("All tests OK.")
    return StatusCode(failures)


if __name__ == "__main__":
    run()
