"""
Ant-style file selection.

Patterns use ``*`` (any run of characters inside one path segment), ``?``
(one character inside a segment) and ``**`` (zero or more whole segments).
Several patterns may be given in one string, separated by commas or
whitespace. A pattern ending in ``/`` means everything below that directory.
Matching is case-sensitive and runs against the path relative to the
workspace root, always with forward slashes.
"""

import logging
import os
import re
import stat
from pathlib import Path
from typing import Iterable, List, Optional, Pattern, Sequence, Union

from .exceptions import ValidationError
from .models import CandidateFile

logger = logging.getLogger(__name__)

# Ant's DirectoryScanner default excludes: editor droppings and VCS metadata.
DEFAULT_EXCLUDES = (
    "**/*~",
    "**/#*#",
    "**/.#*",
    "**/%*%",
    "**/._*",
    "**/CVS",
    "**/CVS/**",
    "**/.cvsignore",
    "**/SCCS",
    "**/SCCS/**",
    "**/vssver.scc",
    "**/.svn",
    "**/.svn/**",
    "**/.git",
    "**/.git/**",
    "**/.gitattributes",
    "**/.gitignore",
    "**/.gitmodules",
    "**/.hg",
    "**/.hg/**",
    "**/.hgignore",
    "**/.hgsub",
    "**/.hgsubstate",
    "**/.hgtags",
    "**/.bzr",
    "**/.bzr/**",
    "**/.bzrignore",
    "**/.DS_Store",
)

PatternInput = Union[str, Sequence[str], None]


def split_patterns(patterns: PatternInput) -> List[str]:
    """Split a comma/whitespace separated pattern string into single patterns."""
    if patterns is None:
        return []
    if isinstance(patterns, str):
        patterns = [patterns]
    result = []
    for chunk in patterns:
        result.extend(p for p in re.split(r"[,\s]+", chunk) if p)
    return result


def _normalize(pattern: str) -> str:
    pattern = pattern.replace("\\", "/")
    while pattern.startswith("./"):
        pattern = pattern[2:]
    pattern = pattern.lstrip("/")
    if pattern.endswith("/"):
        pattern += "**"
    return pattern


def _translate_segment(segment: str) -> str:
    out = []
    i = 0
    while i < len(segment):
        ch = segment[i]
        if ch == "*":
            while i + 1 < len(segment) and segment[i + 1] == "*":
                i += 1
            out.append("[^/]*")
        elif ch == "?":
            out.append("[^/]")
        else:
            out.append(re.escape(ch))
        i += 1
    return "".join(out)


def compile_ant_pattern(pattern: str) -> Pattern:
    """Compile one Ant pattern into a regex to be used with ``fullmatch``."""
    segments = [s for s in _normalize(pattern).split("/") if s]
    parts = []
    for i, segment in enumerate(segments):
        last = i == len(segments) - 1
        if segment == "**":
            parts.append(".*" if last else "(?:[^/]+/)*")
        else:
            parts.append(_translate_segment(segment) + ("" if last else "/"))
    return re.compile("".join(parts))


class PathMatcher:
    """Resolves include/exclude patterns against a workspace directory."""

    def __init__(self, default_excludes: bool = True) -> None:
        self.default_excludes = default_excludes

    def select(
        self,
        root: Union[str, Path],
        include_globs: PatternInput,
        exclude_globs: PatternInput = None,
    ) -> List[CandidateFile]:
        """Return every regular file under *root* matching an include and no exclude.

        Results are sorted by relative path. Symlinks, directories and special
        files are never returned, and symlinked directories are not followed.
        """
        root = Path(root)
        includes = split_patterns(include_globs)
        if not includes:
            raise ValidationError("include_globs", "No include pattern given; nothing would be selected.")
        if not root.is_dir():
            raise ValidationError("workspace", f"Workspace directory not found: {root}")

        excludes = split_patterns(exclude_globs)
        if self.default_excludes:
            excludes.extend(DEFAULT_EXCLUDES)

        include_res = [compile_ant_pattern(p) for p in includes]
        exclude_res = [compile_ant_pattern(p) for p in excludes]
        # Directories fully covered by a "dir/**" exclude are not walked at all
        prune_res = [
            compile_ant_pattern(_normalize(p)[:-3])
            for p in excludes
            if _normalize(p).endswith("/**") and len(_normalize(p)) > 3
        ]

        selected: List[CandidateFile] = []
        for dirpath, dirnames, filenames in os.walk(root, followlinks=False):
            rel_dir = Path(dirpath).relative_to(root).as_posix()
            rel_dir = "" if rel_dir == "." else rel_dir

            kept_dirs = []
            for name in sorted(dirnames):
                rel = f"{rel_dir}/{name}" if rel_dir else name
                if not any(r.fullmatch(rel) for r in prune_res):
                    kept_dirs.append(name)
            dirnames[:] = kept_dirs

            for name in sorted(filenames):
                rel = f"{rel_dir}/{name}" if rel_dir else name
                if not _matches(rel, include_res, exclude_res):
                    continue
                full = Path(dirpath) / name
                st = os.lstat(full)
                if not stat.S_ISREG(st.st_mode):
                    logger.debug(f"Skipping non-regular file: {rel}")
                    continue
                selected.append(CandidateFile(relative_path=rel, absolute_path=full, size=st.st_size))

        selected.sort(key=lambda c: c.relative_path)
        logger.debug(
            f"Selected {len(selected)} file(s) under {root} "
            f"(includes={includes}, excludes={split_patterns(exclude_globs)})"
        )
        return selected


def _matches(rel_path: str, include_res: Iterable[Pattern], exclude_res: Iterable[Pattern]) -> bool:
    if not any(r.fullmatch(rel_path) for r in include_res):
        return False
    return not any(r.fullmatch(rel_path) for r in exclude_res)


def matches(rel_path: str, include_globs: PatternInput, exclude_globs: Optional[PatternInput] = None) -> bool:
    """Check a single relative path against include/exclude patterns."""
    return _matches(
        rel_path,
        [compile_ant_pattern(p) for p in split_patterns(include_globs)],
        [compile_ant_pattern(p) for p in split_patterns(exclude_globs)],
    )
