"""Tests for the list_files and grep tools."""

import pytest

from skiff.tools import MAX_GREP_MATCHES, MAX_LIST_RESULTS, ToolContext, _grep, _list_files


@pytest.fixture
def sandbox(tmp_path):
    (tmp_path / "src").mkdir()
    (tmp_path / "src" / "app.py").write_text("import os\n\ndef main():\n    return TODO_VALUE\n")
    (tmp_path / "src" / "util.py").write_text("def helper():\n    pass\n")
    (tmp_path / "README.md").write_text("# Demo\nTODO_VALUE lives in src\n")
    (tmp_path / "node_modules").mkdir()
    (tmp_path / "node_modules" / "dep.py").write_text("TODO_VALUE = 1\n")
    (tmp_path / ".git").mkdir()
    (tmp_path / ".git" / "config.py").write_text("TODO_VALUE\n")
    return tmp_path


@pytest.fixture
def ctx(sandbox):
    return ToolContext(working_dirs=[str(sandbox)])


# =========================================================================
# list_files
# =========================================================================


class TestListFiles:
    def test_recursive_glob(self, ctx):
        result = _list_files("**/*.py", ctx)
        assert result.success
        assert result.output == "Found 2 file(s):\nsrc/app.py\nsrc/util.py"

    def test_single_level_glob(self, ctx):
        result = _list_files("*.md", ctx)
        assert result.output == "Found 1 file(s):\nREADME.md"

    def test_star_does_not_cross_directories(self, ctx):
        assert _list_files("*.py", ctx).output == "No files found matching the pattern."

    def test_search_in_subdirectory(self, ctx):
        result = _list_files("*.py", ctx, path="src")
        assert "src/app.py" in result.output
        assert "src/util.py" in result.output

    def test_excluded_dirs_skipped(self, ctx):
        result = _list_files("**/*", ctx)
        assert "node_modules" not in result.output
        assert ".git" not in result.output

    def test_results_capped(self, sandbox, ctx):
        many = sandbox / "many"
        many.mkdir()
        for i in range(MAX_LIST_RESULTS + 5):
            (many / f"f{i:03d}.txt").write_text("")
        result = _list_files("many/*.txt", ctx)
        assert result.output.startswith(f"Found {MAX_LIST_RESULTS + 5} file(s):")
        assert result.output.endswith("... and 5 more files")
        assert "many/f099.txt" in result.output
        assert "many/f100.txt" not in result.output

    def test_absolute_pattern_rejected(self, ctx):
        result = _list_files("/etc/*", ctx)
        assert not result.success
        assert "must be relative" in result.error

    def test_dotdot_pattern_rejected(self, ctx):
        result = _list_files("../*", ctx)
        assert not result.success
        assert "'..'" in result.error

    def test_missing_path(self, ctx):
        result = _list_files("*", ctx, path="nowhere")
        assert not result.success
        assert "does not exist" in result.error

    def test_path_is_file(self, ctx):
        result = _list_files("*", ctx, path="README.md")
        assert not result.success
        assert "not a directory" in result.error


# =========================================================================
# grep
# =========================================================================


class TestGrep:
    def test_matches_sorted_by_path_then_line(self, ctx):
        result = _grep("TODO_VALUE", ctx)
        assert result.success
        assert result.output == (
            "Found 2 match(es) in 2 file(s):\n"
            "README.md:2: TODO_VALUE lives in src\n"
            "src/app.py:4:     return TODO_VALUE"
        )

    def test_include_filter(self, ctx):
        result = _grep("TODO_VALUE", ctx, include="*.py")
        assert result.output == "Found 1 match(es) in 1 file(s):\nsrc/app.py:4:     return TODO_VALUE"

    def test_regex(self, ctx):
        result = _grep(r"^def \w+\(\):", ctx)
        assert "src/app.py:3: def main():" in result.output
        assert "src/util.py:1: def helper():" in result.output

    def test_no_matches(self, ctx):
        assert _grep("nothing-here", ctx).output == "No matches found."

    def test_invalid_regex(self, ctx):
        result = _grep("(unclosed", ctx)
        assert not result.success
        assert "invalid regex" in result.error

    def test_binary_files_skipped(self, sandbox, ctx):
        (sandbox / "blob.bin").write_bytes(b"TODO_VALUE\x00\x01")
        assert "blob.bin" not in _grep("TODO_VALUE", ctx).output

    def test_matches_capped(self, sandbox, ctx):
        (sandbox / "lots.txt").write_text("hit\n" * (MAX_GREP_MATCHES + 10))
        result = _grep("hit", ctx)
        header = result.output.splitlines()[0]
        assert header == f"Found {MAX_GREP_MATCHES + 10} match(es) in 1 file(s) (showing first {MAX_GREP_MATCHES}):"
        assert len(result.output.splitlines()) == MAX_GREP_MATCHES + 1

    def test_include_with_dotdot_rejected(self, ctx):
        result = _grep("x", ctx, include="../*.py")
        assert not result.success

    def test_traversal_outside_working_dirs(self, sandbox):
        inner = sandbox / "src"
        ctx = ToolContext(working_dirs=[str(inner)])
        result = _grep("TODO_VALUE", ctx, path="..")
        assert not result.success
        assert result.error.startswith("Security:")
