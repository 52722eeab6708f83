"""Read-only navigation tools: reading files, symbols, listing and searching."""

import ast
import logging
import re
from typing import Dict, List, Optional, Tuple

import pathspec

from backend import Backend, split_lines

from ._common import ToolResult
from .text import (
    get_text_from_lines,
    parse_line_number,
    prepend_line_numbers,
    to_internal_line,
    to_user_line,
)

logger = logging.getLogger(__name__)

EXPAND_STRING = "..."
_PUNCTUATION_RE = re.compile(r"[:(){}\[\]]")

# Nested {name: children}; a file is an entry with no children
GroupedFiles = Dict[str, "GroupedFiles"]


# ============================================================
# ReadFile / GetFileSymbols
# ============================================================

def read_file(backend: Backend, filename: str, start_line_num: str = "", end_line_num: str = "",
              max_lines: int = 100) -> ToolResult:
    """Read a file, or a line range of it, with 1-based ``N:`` prefixes."""
    filename = str(filename)
    if not filename.strip() or not backend.file_exists(filename):
        return ToolResult(
            f"Could not open file '{filename}'. Make sure the file exists by searching with FindFiles.",
            failed=True,
        )
    text = backend.read_file(filename)
    line_count = len(split_lines(text))

    if not start_line_num and not end_line_num and line_count > max_lines:
        symbols = get_file_symbols(backend, filename)
        if symbols.failed or len(symbols.observation.split("\n")) < 2:
            return ToolResult(
                f"The file '{filename}' is too long to display. Use FindTextInFiles to search for exactly "
                f"what you are looking or use the startLineNum & endLineNum parameters to read a subset.",
                failed=True,
            )
        return ToolResult(
            f"The file '{filename}' has {line_count} lines, showing its symbols. Use the startLineNum & "
            f"endLineNum parameters to read a subset.\n\n{symbols.observation}"
        )

    start = to_internal_line(parse_line_number(start_line_num)) if start_line_num else 0
    end = to_internal_line(parse_line_number(end_line_num)) if end_line_num else line_count - 1
    chunk = get_text_from_lines(text, filename, start, end)
    return ToolResult(prepend_line_numbers(chunk, to_user_line(start)))


_SYMBOL_PATTERNS: List[Tuple[str, "re.Pattern[str]"]] = [
    ("Class", re.compile(r"^\s*(?:export\s+)?(?:default\s+)?(?:abstract\s+)?class\s+(\w+)")),
    ("Interface", re.compile(r"^\s*(?:export\s+)?interface\s+(\w+)")),
    ("Function", re.compile(r"^\s*(?:export\s+)?(?:default\s+)?(?:async\s+)?function\s*\*?\s*(\w+)\s*\(")),
    ("Function", re.compile(r"^\s*(?:export\s+)?(?:const|let|var)\s+(\w+)\s*=\s*(?:async\s*)?(?:\([^)]*\)|\w+)\s*=>")),
    ("Function", re.compile(r"^\s*func\s+(?:\([^)]*\)\s*)?(\w+)\s*\(")),
    ("Function", re.compile(r"^\s*(?:pub\s+)?fn\s+(\w+)")),
    ("Struct", re.compile(r"^\s*(?:pub\s+)?struct\s+(\w+)")),
    ("Enum", re.compile(r"^\s*(?:export\s+)?(?:pub\s+)?enum\s+(\w+)")),
    ("Method", re.compile(r"^\s+(?:public|private|protected)\s+(?:static\s+)?(?:[\w<>\[\]]+\s+)?(\w+)\s*\(")),
]


def _python_symbols(text: str) -> List[str]:
    tree = ast.parse(text)
    out: List[str] = []

    def visit(nodes, indent: str) -> None:
        for node in nodes:
            if isinstance(node, ast.ClassDef):
                out.append(f"{indent}Class {node.name} (lines {node.lineno}-{node.end_lineno})")
                visit(node.body, indent + "  ")
            elif isinstance(node, (ast.FunctionDef, ast.AsyncFunctionDef)):
                kind = "Method" if indent else "Function"
                out.append(f"{indent}{kind} {node.name} (lines {node.lineno}-{node.end_lineno})")
            elif isinstance(node, ast.Assign) and not indent:
                for target in node.targets:
                    if isinstance(target, ast.Name):
                        out.append(f"Variable {target.id} (line {node.lineno})")

    visit(tree.body, "")
    return out


def _regex_symbols(text: str) -> List[str]:
    out = []
    for i, line in enumerate(split_lines(text)):
        for kind, pattern in _SYMBOL_PATTERNS:
            match = pattern.match(line)
            if match:
                out.append(f"{kind} {match.group(1)} (line {to_user_line(i)})")
                break
    return out


def get_file_symbols(backend: Backend, filename: str) -> ToolResult:
    filename = str(filename)
    if not backend.file_exists(filename):
        return ToolResult(f"There are no symbols for '{filename}'.", failed=True)
    text = backend.read_file(filename)
    if filename.endswith((".py", ".pyi")):
        try:
            symbols = _python_symbols(text)
        except SyntaxError:
            symbols = _regex_symbols(text)
    else:
        symbols = _regex_symbols(text)
    if not symbols:
        return ToolResult(f"There are no symbols for '{filename}'.", failed=True)
    return ToolResult("\n".join(symbols))


# ============================================================
# Grouped file listings
# ============================================================

def _group_by_directory(files: List[str]) -> GroupedFiles:
    grouped: GroupedFiles = {}
    for f in files:
        current = grouped
        for part in f.split("/"):
            current = current.setdefault(part, {})
    return grouped


def _sort_group_files(grouped: GroupedFiles, directory_first: bool = True) -> GroupedFiles:
    dirs = []
    others = []
    for name, sub in grouped.items():
        is_dir = len(sub) > 0
        entry = (name, _sort_group_files(sub, directory_first) if is_dir else sub)
        (dirs if is_dir and directory_first else others).append(entry)
    dirs.sort(key=lambda e: e[0].lower())
    others.sort(key=lambda e: e[0].lower())
    return dict(dirs + others)


def _filter_files(grouped: GroupedFiles, max_files: int = 100) -> None:
    """Breadth-first: once max_files entries are shown, deeper levels collapse to ``...``."""
    queue = [({}, "", grouped, 0)]
    cur_depth = 0
    num_files = 0
    while queue:
        parent, dir_name, files, depth = queue.pop(0)
        if depth > cur_depth and num_files >= max_files:
            parent[dir_name] = {EXPAND_STRING: {}} if files else {}
            continue
        cur_depth = depth
        for name, sub in files.items():
            queue.append((files, name, sub, cur_depth + 1))
            num_files += 1


def _stringify_grouped_files(grouped: GroupedFiles, indent: int = 0, needs_leading_text: bool = True) -> str:
    result = ""
    for name, sub in grouped.items():
        is_dir = len(sub) > 0
        has_one_child = len(sub) == 1
        tabs = "\t" * indent
        leading = f"{tabs}- " if needs_leading_text else ""
        trailing_slash = "/" if is_dir else ""
        trailing_newline = "" if has_one_child else "\n"
        child_indent = indent if has_one_child else indent + 1
        # a directory with a single child is shown condensed on one line
        result += f"{leading}{name}{trailing_slash}{trailing_newline}"
        result += _stringify_grouped_files(sub, child_indent, not has_one_child)
    return result


def render_files(files: List[str], max_files: Optional[int] = None) -> str:
    grouped = _sort_group_files(_group_by_directory(files), True)
    if max_files is not None:
        _filter_files(grouped, max_files)
    return _stringify_grouped_files(grouped)


def list_directory_recursively(backend: Backend, directory_path: str = "./", max_files: int = 50) -> ToolResult:
    directory_path = str(directory_path or "./")
    subdir = "" if directory_path.strip() in ("", ".", "./") else directory_path.strip()
    if subdir and not backend.is_dir(subdir):
        return ToolResult(f"0 file(s) in '{directory_path}'\n", failed=True)
    files = backend.list_files(subdir)
    prefix = backend.relative_path(subdir).rstrip("/") + "/" if subdir else ""
    relative = [f[len(prefix):] if prefix and f.startswith(prefix) else f for f in files]
    relative = [f for f in relative if not any(part.startswith(".") for part in f.split("/"))]
    output = f"{len(relative)} file(s) in '{directory_path}'\n{render_files(relative, max_files)}"
    return ToolResult(output, failed=len(relative) == 0)


def _find_files(backend: Backend, query: str) -> List[str]:
    query = query.strip().strip("/").lower()
    spec = pathspec.PathSpec.from_lines("gitwildmatch", [f"**/*{query}*/*", f"**/*{query}*"])
    return [f for f in backend.list_files("") if spec.match_file(f.lower())]


def find_files(backend: Backend, query: str) -> ToolResult:
    """Case-insensitive match of query (glob wildcards allowed) against file and directory names."""
    query = str(query)
    matches = _find_files(backend, query)
    output = f"{len(matches)} file(s) that matches query '{query}'\n{render_files(matches)}"
    return ToolResult(output, failed=len(matches) == 0)


# ============================================================
# Text search
# ============================================================

def search_chunks(backend: Backend, query: str, subdir: str = "", ignore_case: bool = True,
                  context: int = 1) -> List[Tuple[str, int, int, str]]:
    """Search and coalesce matches plus context lines into (path, start, end, text) chunks."""
    matches = backend.search(query, path=subdir, ignore_case=ignore_case)

    by_file: Dict[str, List[int]] = {}
    for m in matches:
        by_file.setdefault(m["path"], []).append(m["line"])

    chunks = []
    for path, line_nums in by_file.items():
        lines = split_lines(backend.read_file(path))
        wanted = sorted({
            n for line in line_nums
            for n in range(max(line - context, 0), min(line + context, len(lines) - 1) + 1)
        })
        start = prev = None
        for n in wanted + [None]:
            if start is not None and (n is None or n != prev + 1):
                chunks.append((path, start, prev, "\n".join(lines[start:prev + 1])))
                start = None
            if n is not None and start is None:
                start = n
            prev = n
    return chunks


def _chunk_to_str(path: str, start: int, end: int, text: str) -> str:
    range_text = f"{to_user_line(start)}" if start == end else f"{to_user_line(start)}-{to_user_line(end)}"
    return f"{path}:{range_text}\n{prepend_line_numbers(text, to_user_line(start))}"


def find_text_in_files(backend: Backend, query: str, sub_directory: str = "", max_results: int = 15) -> ToolResult:
    query = str(query)
    chunks = search_chunks(backend, query, str(sub_directory or ""))
    if len(chunks) > max_results:
        return ToolResult(f"Too many results ({len(chunks)}) to display. Please refine your search.", failed=True)
    if not chunks:
        return ToolResult(f"No matches found for query '{query}'.", failed=True)
    return ToolResult("\n\n".join(_chunk_to_str(*c) for c in chunks))


# ============================================================
# GetFilesRelevantToEndpoint
# ============================================================

def _is_variable_part(part: str) -> bool:
    """Heuristic for path parameters such as ids, hashes or ``{id}`` / ``:id``."""
    if not part:
        return False
    digits = sum(c.isdigit() for c in part)
    return (
        len(part) > 10
        or digits > 4
        or bool(_PUNCTUATION_RE.search(part))
        or digits / len(part) > 0.5
    )


def _endpoint_permutations(endpoint: str) -> List[Tuple[str, str]]:
    """(file glob, text regex) pairs for every contiguous run of path parts."""
    path = endpoint.split("?", 1)[0]
    parts = [p for p in path.split("/") if p]
    seen = set()
    perms: List[Tuple[str, str]] = []

    def add(file_parts: List[str], text_parts: List[str]) -> None:
        key = "/".join(file_parts)
        if key and key not in seen:
            seen.add(key)
            perms.append((key, "/".join(text_parts)))

    for i in range(len(parts)):
        for j in range(i + 1, len(parts) + 1):
            cur = parts[i:j]
            for k, part in enumerate(cur):
                if _is_variable_part(part):
                    add(cur[:k] + ["*"] + cur[k + 1:],
                        [re.escape(p) for p in cur[:k]] + ["[^/]+"] + [re.escape(p) for p in cur[k + 1:]])
            add(cur, [re.escape(p) for p in cur])

    perms.sort(key=lambda p: (len(p[0]), p[0].count("/")), reverse=True)
    return perms


def get_files_relevant_to_endpoint(backend: Backend, endpoint: str, max_queries: int = 3,
                                   max_results_per_query: int = 5) -> ToolResult:
    endpoint = str(endpoint)
    files: List[str] = []
    text_matches: List[str] = []
    current_queries = 0
    cur_max_parts: Optional[int] = None

    for file_glob, text_regex in _endpoint_permutations(endpoint):
        cur_parts = file_glob.count("/") + 1
        if current_queries >= max_queries or (cur_max_parts is not None and cur_parts <= cur_max_parts):
            break
        found = _find_files(backend, file_glob)
        if found:
            files.append(render_files(found))
        chunks = search_chunks(backend, text_regex, ignore_case=False)[:max_results_per_query]
        if chunks:
            text_matches.append("\n\n".join(_chunk_to_str(*c) for c in chunks))
        if found or chunks:
            if cur_max_parts is None:
                cur_max_parts = cur_parts
            current_queries += 1

    if current_queries == 0:
        return ToolResult("No relevant files found.", failed=True)
    return ToolResult(
        f"Files relevant to endpoint '{endpoint}'\n\n" + "\n".join(files) + "\n" + "\n".join(text_matches)
    )
