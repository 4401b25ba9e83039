"""Layered extraction of file paths from free-form model output.

Strategies run in order and a later one is tried only when the earlier one
yields nothing:

1. ``tagged``: ``<file path="..."/>`` or ``<file>...</file>`` elements.
2. ``markdown``: list items and backtick-quoted tokens.
3. ``heuristic``: line-by-line scan accepting tokens with a path separator,
   a known source extension, no invalid characters and a sane length.
"""

from __future__ import annotations

import re
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from pathlib import PurePosixPath

MAX_PATH_LENGTH = 255

SOURCE_EXTENSIONS = frozenset(
    {
        ".js", ".jsx", ".ts", ".tsx", ".mjs", ".cjs", ".py", ".java", ".c", ".cpp", ".h",
        ".hpp", ".cs", ".go", ".rb", ".php", ".html", ".css", ".scss", ".json", ".xml",
        ".yaml", ".yml", ".md", ".txt", ".sh", ".bat", ".ps1", ".sql", ".graphql",
        ".prisma", ".vue", ".svelte", ".dart", ".kt", ".swift", ".m", ".rs", ".toml",
        ".ini", ".cfg",
    },
)  # fmt: skip
EXTENSIONLESS_FILENAMES = frozenset(
    {"Makefile", "Dockerfile", "Procfile", "Gemfile", "Rakefile", "LICENSE", "Jenkinsfile"},
)
SKIPPED_DIRECTORIES = frozenset({"node_modules", ".git", "__pycache__", ".venv"})
FALSE_POSITIVE_TOKENS = frozenset(
    {
        "TODO", "NOTE", "FIXME", "HACK", "BUG", "ISSUE", "WARNING", "ERROR", "DEPRECATED",
        "IMPORTANT", "REVIEW", "REFACTOR", "OPTIMIZE", "json", "JSON", "null", "undefined",
    },
)  # fmt: skip
IGNORED_LINE_PREFIXES: tuple[str, ...] = (
    "Note:", "Analysis:", "Here are", "The following", "Based on", "I found", "I've found",
    "These are", "Please", "You should", "Consider", "Check", "Look at", "Important:",
    "Warning:", "Error:", "Summary:", "Result:", "Explanation:", "However", "Therefore",
    "Additionally", "Furthermore", "Moreover",
)  # fmt: skip
LABEL_PREFIXES: tuple[str, ...] = ("File:", "Path:", "Files:", "Paths:")

_INVALID_CHARS = re.compile(r'[<>:"|?*\x00-\x1f]')
_TAGGED_FILE = re.compile(
    r"""<file\b(?:[^>]*?\bpath\s*=\s*["']([^"']+)["'])?[^>]*?>(?:\s*([^<]+?)\s*</file>)?""",
    re.IGNORECASE,
)
_INLINE_CODE = re.compile(r"`([^`\n]+)`")
_LIST_ITEM = re.compile(
    r"^\s*(?:[-*+•]|->|=>|>>|>|\d+[.):-]|[A-Za-z][.)])\s+(?P<item>.+)$",
)
_EDGE_PUNCTUATION = "\"'`,;:[]{}()<>*"


@dataclass(slots=True)
class PathExtraction:
    """Extracted paths and the strategy that produced them."""

    paths: list[str] = field(default_factory=list)
    strategy: str = "none"


def extract_paths(text: str, *, project_directory: str | None = None) -> PathExtraction:
    """Run the strategies in order and return the first non-empty result."""

    strategies: tuple[tuple[str, Callable[[str], Iterable[str]]], ...] = (
        ("tagged", _tagged_candidates),
        ("markdown", _markdown_candidates),
        ("heuristic", _heuristic_candidates),
    )
    for name, strategy in strategies:
        paths = _finalize(strategy(text), project_directory=project_directory)
        if paths:
            return PathExtraction(paths=paths, strategy=name)
    return PathExtraction()


def normalize_path(raw: str, *, project_directory: str | None = None) -> str:
    """Trim delimiters, unify separators and make project-absolute paths relative."""

    path = raw.strip().strip(_EDGE_PUNCTUATION).strip()
    path = path.replace("\\", "/")
    if path.endswith(".") and not path.endswith(".."):
        path = path[:-1]
    while path.startswith("./"):
        path = path[2:]
    if project_directory:
        root = project_directory.replace("\\", "/").rstrip("/") + "/"
        if path.startswith(root):
            path = path[len(root) :]
    return path


def is_plausible_path(path: str) -> bool:
    """Structural checks shared by every strategy."""

    if not path or len(path) > MAX_PATH_LENGTH or len(path) < 2:
        return False
    if path in FALSE_POSITIVE_TOKENS:
        return False
    if _INVALID_CHARS.search(path[2:] if _is_windows_drive(path) else path):
        return False
    if any(char.isspace() for char in path):
        return False
    parts = PurePosixPath(path).parts
    return not any(part in SKIPPED_DIRECTORIES for part in parts)


def has_source_extension(path: str) -> bool:
    name = PurePosixPath(path).name
    if name in EXTENSIONLESS_FILENAMES:
        return True
    suffix = PurePosixPath(name).suffix.lower()
    return suffix in SOURCE_EXTENSIONS


def _looks_like_path(path: str) -> bool:
    return is_plausible_path(path) and ("/" in path or has_source_extension(path))


def _tagged_candidates(text: str) -> Iterable[str]:
    for match in _TAGGED_FILE.finditer(text):
        candidate = match.group(1) or match.group(2)
        if candidate and is_plausible_path(normalize_path(candidate)):
            yield candidate


def _markdown_candidates(text: str) -> Iterable[str]:
    for line in text.splitlines():
        inline = _INLINE_CODE.findall(line)
        if inline:
            for token in inline:
                if _looks_like_path(normalize_path(token)):
                    yield token
            continue
        match = _LIST_ITEM.match(line)
        if match is None:
            continue
        item = match.group("item").strip()
        token = item.split()[0] if item.split() else item
        if _looks_like_path(normalize_path(token)):
            yield token


def _heuristic_candidates(text: str) -> Iterable[str]:
    in_code_block = False
    for raw_line in text.replace("\r\n", "\n").split("\n"):
        line = raw_line.strip()
        if line.startswith("```"):
            in_code_block = not in_code_block
            continue
        if len(line) < 2:
            continue
        if not in_code_block:
            if line.startswith(("//", "#")):
                continue
            if line.startswith(IGNORED_LINE_PREFIXES):
                continue
            for label in LABEL_PREFIXES:
                if line.startswith(label):
                    line = line[len(label) :].strip()
                    break
        list_match = _LIST_ITEM.match(line)
        if list_match is not None:
            line = list_match.group("item").strip()
        candidate = normalize_path(line)
        # bare filenames in prose are too ambiguous without a separator
        if "/" not in candidate:
            continue
        if is_plausible_path(candidate) and has_source_extension(candidate):
            yield candidate


def _finalize(candidates: Iterable[str], *, project_directory: str | None) -> list[str]:
    seen: set[str] = set()
    paths: list[str] = []
    for candidate in candidates:
        path = normalize_path(candidate, project_directory=project_directory)
        if not is_plausible_path(path) or path in seen:
            continue
        seen.add(path)
        paths.append(path)
    return paths


def _is_windows_drive(path: str) -> bool:
    return len(path) > 2 and path[1] == ":" and path[0].isalpha() and path[2] in "/\\"
