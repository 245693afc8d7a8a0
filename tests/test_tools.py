"""Tests for read_file, write_file, edit_file and dispatch in tools.py."""

import os
import sys

import pytest

from skiff.tools import (
    MAX_LINE_LENGTH,
    MAX_READ_LINES,
    TOOLS,
    ToolContext,
    ToolName,
    ToolResult,
    _edit_file,
    _read_file,
    _write_file,
    dispatch,
)


@pytest.fixture
def ctx(tmp_path):
    return ToolContext(working_dirs=[str(tmp_path)])


# =========================================================================
# Schema
# =========================================================================


class TestSchema:
    def test_schema_matches_tool_names(self):
        names = [t["function"]["name"] for t in TOOLS]
        assert names == [name.value for name in ToolName]

    def test_every_tool_is_dispatchable(self, ctx):
        for name in ToolName:
            result = dispatch(name.value, {}, ctx)
            assert not result.success
            assert "unknown tool" not in result.error
            assert "missing required argument" in result.error

    def test_required_parameters_declared(self):
        for tool in TOOLS:
            params = tool["function"]["parameters"]
            assert params["type"] == "object"
            for req in params["required"]:
                assert req in params["properties"]


# =========================================================================
# ToolResult
# =========================================================================


class TestToolResult:
    def test_success_content(self):
        assert ToolResult.ok("done").to_content() == "done"

    def test_empty_success_gets_placeholder(self):
        result = ToolResult.ok("")
        assert result.output == ""
        assert result.to_content() == "(no output)"

    def test_failure_content(self):
        assert ToolResult.failure("boom").to_content() == "error: boom"

    def test_failure_with_output(self):
        assert ToolResult.failure("boom", output="partial").to_content() == "error: boom\npartial"

    def test_warning_prefixed(self):
        result = ToolResult.ok("text", warning="careful")
        assert result.to_content() == "warning: careful\ntext"


# =========================================================================
# read_file
# =========================================================================


class TestReadFile:
    def test_line_numbered_output(self, tmp_path, ctx):
        (tmp_path / "hello.txt").write_text("alpha\nbeta\ngamma\n", encoding="utf-8")
        result = _read_file("hello.txt", ctx)
        assert result.success
        assert result.output == "1: alpha\n2: beta\n3: gamma"

    def test_offset_and_limit(self, tmp_path, ctx):
        (tmp_path / "nums.txt").write_text(
            "\n".join(f"line{i}" for i in range(1, 11)) + "\n", encoding="utf-8"
        )
        result = _read_file("nums.txt", ctx, offset=3, limit=4)
        assert result.output.startswith("3: line3\n4: line4\n5: line5\n6: line6")
        assert "[4 more lines, use offset=7 to continue]" in result.output

    def test_default_limit_is_capped(self, tmp_path, ctx):
        (tmp_path / "big.txt").write_text(
            "\n".join(str(i) for i in range(MAX_READ_LINES + 50)), encoding="utf-8"
        )
        result = _read_file("big.txt", ctx, limit=10_000)
        lines = result.output.splitlines()
        assert lines[MAX_READ_LINES - 1] == f"{MAX_READ_LINES}: {MAX_READ_LINES - 1}"
        assert f"use offset={MAX_READ_LINES + 1} to continue" in result.output

    def test_long_lines_truncated(self, tmp_path, ctx):
        (tmp_path / "wide.txt").write_text("x" * (MAX_LINE_LENGTH + 10), encoding="utf-8")
        result = _read_file("wide.txt", ctx)
        assert "[line truncated]" in result.output
        assert len(result.output) < MAX_LINE_LENGTH + 50

    def test_absolute_path(self, tmp_path, ctx):
        f = tmp_path / "abs.txt"
        f.write_text("content", encoding="utf-8")
        assert _read_file(str(f), ctx).output == "1: content"

    def test_empty_file(self, tmp_path, ctx):
        (tmp_path / "empty.txt").write_text("", encoding="utf-8")
        result = _read_file("empty.txt", ctx)
        assert result.success
        assert result.output == "(empty file)"

    def test_missing_file(self, ctx):
        result = _read_file("nope.txt", ctx)
        assert not result.success
        assert "does not exist" in result.error

    def test_directory_rejected(self, tmp_path, ctx):
        (tmp_path / "sub").mkdir()
        result = _read_file("sub", ctx)
        assert not result.success
        assert "directory" in result.error
        assert "list_files" in result.error

    def test_binary_rejected(self, tmp_path, ctx):
        (tmp_path / "blob.bin").write_bytes(b"abc\x00def")
        result = _read_file("blob.bin", ctx)
        assert not result.success
        assert "binary" in result.error

    def test_oversized_file_rejected(self, tmp_path, ctx, monkeypatch):
        import skiff.tools

        monkeypatch.setattr(skiff.tools, "MAX_READ_BYTES", 10)
        (tmp_path / "large.txt").write_text("x" * 100, encoding="utf-8")
        result = _read_file("large.txt", ctx)
        assert not result.success
        assert "too large" in result.error
        assert "grep" in result.error

    def test_offset_past_end(self, tmp_path, ctx):
        (tmp_path / "short.txt").write_text("a\nb\n", encoding="utf-8")
        result = _read_file("short.txt", ctx, offset=10)
        assert not result.success
        assert "past the end" in result.error

    def test_invalid_offset(self, tmp_path, ctx):
        (tmp_path / "a.txt").write_text("a", encoding="utf-8")
        assert not _read_file("a.txt", ctx, offset=0).success
        assert not _read_file("a.txt", ctx, limit=True).success

    def test_blocked_path(self, ctx):
        result = _read_file("/etc/shadow", ctx)
        assert not result.success
        assert result.error.startswith("Security:")
        assert "critical" in result.error

    def test_traversal_outside_working_dirs(self, tmp_path):
        inner = tmp_path / "inner"
        inner.mkdir()
        (tmp_path / "outside.txt").write_text("secret-ish", encoding="utf-8")
        ctx = ToolContext(working_dirs=[str(inner)])
        result = _read_file("../outside.txt", ctx)
        assert not result.success
        assert "escapes allowed directories" in result.error

    def test_traversal_into_added_dir(self, tmp_path):
        inner = tmp_path / "inner"
        other = tmp_path / "other"
        inner.mkdir()
        other.mkdir()
        (other / "shared.txt").write_text("ok", encoding="utf-8")
        ctx = ToolContext(working_dirs=[str(inner), str(other)])
        assert _read_file("../other/shared.txt", ctx).output == "1: ok"

    def test_sensitive_file_warns(self, tmp_path, ctx):
        (tmp_path / ".env").write_text("A=1\n", encoding="utf-8")
        result = _read_file(".env", ctx)
        assert result.success
        assert result.warning
        assert result.to_content().startswith("warning: ")


# =========================================================================
# write_file
# =========================================================================


class TestWriteFile:
    def test_new_file(self, tmp_path, ctx):
        result = _write_file("out.txt", "hello", ctx)
        assert result.success
        assert (tmp_path / "out.txt").read_text() == "hello"
        assert "Wrote 5 bytes" in result.output
        assert "new file" in result.output

    def test_creates_parent_dirs(self, tmp_path, ctx):
        result = _write_file("a/b/c.txt", "x", ctx)
        assert result.success
        assert (tmp_path / "a" / "b" / "c.txt").read_text() == "x"

    def test_overwrite_reports_delta(self, tmp_path, ctx):
        (tmp_path / "f.txt").write_text("0123456789", encoding="utf-8")
        result = _write_file("f.txt", "abc", ctx)
        assert result.success
        assert "was 10 bytes, -7" in result.output
        assert (tmp_path / "f.txt").read_text() == "abc"

    def test_counts_utf8_bytes(self, ctx):
        result = _write_file("u.txt", "é", ctx)
        assert "Wrote 2 bytes" in result.output

    def test_too_large_rejected(self, tmp_path, ctx, monkeypatch):
        import skiff.tools

        monkeypatch.setattr(skiff.tools, "MAX_WRITE_BYTES", 4)
        result = _write_file("big.txt", "12345", ctx)
        assert not result.success
        assert "too large" in result.error
        assert not (tmp_path / "big.txt").exists()

    def test_directory_target_rejected(self, tmp_path, ctx):
        (tmp_path / "d").mkdir()
        result = _write_file("d", "x", ctx)
        assert not result.success
        assert "directory" in result.error

    def test_blocked_path(self, ctx):
        result = _write_file("/etc/passwd", "root::0:0::/:/bin/sh", ctx)
        assert not result.success
        assert result.error.startswith("Security:")


# =========================================================================
# edit_file
# =========================================================================


class TestEditFile:
    def test_single_replacement(self, tmp_path, ctx):
        (tmp_path / "m.py").write_text("x = 1\ny = 2\n", encoding="utf-8")
        result = _edit_file("m.py", "y = 2", "y = 3", ctx)
        assert result.success
        assert "1 replacement" in result.output
        assert (tmp_path / "m.py").read_text() == "x = 1\ny = 3\n"

    def test_ambiguous_without_replace_all(self, tmp_path, ctx):
        (tmp_path / "m.py").write_text("a\na\na\n", encoding="utf-8")
        result = _edit_file("m.py", "a", "b", ctx)
        assert not result.success
        assert "3" in result.error
        assert (tmp_path / "m.py").read_text() == "a\na\na\n"

    def test_replace_all(self, tmp_path, ctx):
        (tmp_path / "m.py").write_text("a\na\na\n", encoding="utf-8")
        result = _edit_file("m.py", "a", "b", ctx, replace_all=True)
        assert result.success
        assert "3 replacements" in result.output
        assert (tmp_path / "m.py").read_text() == "b\nb\nb\n"

    def test_missing_file(self, ctx):
        result = _edit_file("ghost.py", "a", "b", ctx)
        assert not result.success
        assert "does not exist" in result.error

    def test_not_found(self, tmp_path, ctx):
        (tmp_path / "m.py").write_text("abc", encoding="utf-8")
        result = _edit_file("m.py", "xyz", "b", ctx)
        assert not result.success
        assert "not found" in result.error

    def test_identical_strings(self, tmp_path, ctx):
        (tmp_path / "m.py").write_text("abc", encoding="utf-8")
        result = _edit_file("m.py", "abc", "abc", ctx)
        assert not result.success


# =========================================================================
# dispatch
# =========================================================================


class TestDispatch:
    def test_routes_read_file(self, tmp_path, ctx):
        (tmp_path / "f.txt").write_text("hi", encoding="utf-8")
        result = dispatch("read_file", {"file_path": "f.txt"}, ctx)
        assert result.success
        assert result.output == "1: hi"

    def test_routes_edit_file_with_replace_all(self, tmp_path, ctx):
        (tmp_path / "f.txt").write_text("a a", encoding="utf-8")
        result = dispatch(
            "edit_file",
            {"file_path": "f.txt", "old_string": "a", "new_string": "b", "replace_all": True},
            ctx,
        )
        assert result.success
        assert (tmp_path / "f.txt").read_text() == "b b"

    @pytest.mark.skipif(sys.platform == "win32", reason="symlinks need privileges on Windows")
    def test_symlinked_blocked_file_not_readable(self, tmp_path, ctx):
        os.symlink("/etc/passwd", tmp_path / "notes.txt")
        result = dispatch("read_file", {"file_path": "notes.txt"}, ctx)
        assert not result.success
        assert result.error.startswith("Security:")
        assert "root:" not in result.to_content()

    @pytest.mark.skipif(sys.platform == "win32", reason="symlinks need privileges on Windows")
    def test_write_through_symlink_out_of_roots_denied(self, tmp_path):
        project = tmp_path / "project"
        outside = tmp_path / "outside"
        project.mkdir()
        outside.mkdir()
        os.symlink(outside, project / "out")
        ctx = ToolContext(working_dirs=[str(project)])
        result = dispatch("write_file", {"file_path": "out/x.txt", "content": "data"}, ctx)
        assert not result.success
        assert not (outside / "x.txt").exists()

    def test_unknown_tool(self, ctx):
        result = dispatch("delete_everything", {}, ctx)
        assert not result.success
        assert "unknown tool" in result.error

    def test_missing_argument(self, ctx):
        result = dispatch("write_file", {"file_path": "x.txt"}, ctx)
        assert not result.success
        assert "'content'" in result.error

    def test_non_object_arguments(self, ctx):
        result = dispatch("read_file", ["f.txt"], ctx)
        assert not result.success

    def test_internal_fault_becomes_failure(self, ctx, monkeypatch):
        import skiff.tools

        def explode(**kwargs):
            raise RuntimeError("disk on fire")

        monkeypatch.setattr(skiff.tools, "_read_file", explode)
        result = dispatch("read_file", {"file_path": "x"}, ctx)
        assert not result.success
        assert "disk on fire" in result.error

    def test_relative_paths_use_base_dir_not_cwd(self, tmp_path, ctx, monkeypatch):
        other = tmp_path / "elsewhere"
        other.mkdir()
        monkeypatch.chdir(other)
        dispatch("write_file", {"file_path": "here.txt", "content": "x"}, ctx)
        assert (tmp_path / "here.txt").exists()
        assert not (other / "here.txt").exists()
        assert os.getcwd() == str(other)
