"""Tests for the read-only navigation tools."""

from backend import LocalBackend
from tools.gitignore import invalidate_ignore_cache
from tools.navigation import (
    _endpoint_permutations,
    _is_variable_part,
    find_files,
    find_text_in_files,
    get_file_symbols,
    list_directory_recursively,
    read_file,
    render_files,
)


def _backend(tmp_path, files):
    for name, text in files.items():
        path = tmp_path / name
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(text)
    invalidate_ignore_cache()
    return LocalBackend(str(tmp_path))


def test_read_file_numbers_lines(tmp_path):
    backend = _backend(tmp_path, {"a.py": "x = 1\ny = 2\nz = 3"})
    result = read_file(backend, "a.py")
    assert not result.failed
    assert result.observation == "1:x = 1\n2:y = 2\n3:z = 3"


def test_read_file_range(tmp_path):
    backend = _backend(tmp_path, {"a.py": "a\nb\nc\nd"})
    assert read_file(backend, "a.py", "2", "3").observation == "2:b\n3:c"


def test_read_file_missing(tmp_path):
    backend = _backend(tmp_path, {})
    result = read_file(backend, "nope.py")
    assert result.failed
    assert "Could not open file 'nope.py'" in result.observation


def test_long_file_shows_symbols(tmp_path):
    body = "def first():\n    pass\n\n\nclass Second:\n    def method(self):\n        pass\n" + "\n" * 120
    backend = _backend(tmp_path, {"big.py": body})
    result = read_file(backend, "big.py")
    assert not result.failed
    assert "showing its symbols" in result.observation
    assert "Function first (lines 1-2)" in result.observation
    assert "  Method method" in result.observation


def test_symbols_for_other_languages(tmp_path):
    backend = _backend(tmp_path, {"app.ts": "export class App {}\nexport function start() {}\n"})
    result = get_file_symbols(backend, "app.ts")
    assert result.observation == "Class App (line 1)\nFunction start (line 2)"


def test_render_files_groups_directories_first():
    output = render_files(["a.py", "src/b.py", "src/c.py"])
    assert output == "- src/\n\t- b.py\n\t- c.py\n- a.py\n"


def test_list_directory_respects_gitignore(tmp_path):
    backend = _backend(tmp_path, {
        ".gitignore": "build/\n*.log\n",
        "main.py": "",
        "build/out.js": "",
        "debug.log": "",
        "src/util.py": "",
    })
    result = list_directory_recursively(backend, "./")
    assert result.observation.startswith("2 file(s) in './'\n")
    assert "util.py" in result.observation
    assert "main.py" in result.observation
    assert "out.js" not in result.observation
    assert "debug.log" not in result.observation


def test_list_missing_directory(tmp_path):
    backend = _backend(tmp_path, {"a.py": ""})
    result = list_directory_recursively(backend, "missing")
    assert result.failed
    assert result.observation == "0 file(s) in 'missing'\n"


def test_find_files_is_case_insensitive(tmp_path):
    backend = _backend(tmp_path, {"src/UserService.py": "", "README.md": ""})
    result = find_files(backend, "userservice")
    assert result.observation.startswith("1 file(s) that matches query 'userservice'")
    assert "UserService.py" in result.observation


def test_find_text_in_files(tmp_path):
    backend = _backend(tmp_path, {"a.py": "one\ntwo\nNeedle here\nfour\nfive\n"})
    result = find_text_in_files(backend, "needle")
    assert not result.failed
    assert result.observation == "a.py:2-4\n2:two\n3:Needle here\n4:four"


def test_find_text_no_match(tmp_path):
    backend = _backend(tmp_path, {"a.py": "one\n"})
    result = find_text_in_files(backend, "absent")
    assert result.failed


def test_variable_path_parts():
    assert _is_variable_part("{id}")
    assert _is_variable_part(":userId")
    assert _is_variable_part("12345")
    assert not _is_variable_part("users")
    assert not _is_variable_part("")


def test_endpoint_permutations_longest_first():
    perms = _endpoint_permutations("/api/users/{id}?page=1")
    globs = [p[0] for p in perms]
    assert globs[:2] == ["api/users/{id}", "api/users/*"]
    assert "users" in globs
    text_regex = dict(perms)["users/*"]
    assert text_regex == "users/[^/]+"


def test_find_text_is_scoped_to_the_subdirectory(tmp_path):
    backend = _backend(tmp_path, {
        "src/app.py": "needle = 1\n",
        "lib/resources/data.py": "needle = 2\n",
    })
    result = find_text_in_files(backend, "needle", "src")
    assert "src/app.py" in result.observation
    assert "lib/resources" not in result.observation
