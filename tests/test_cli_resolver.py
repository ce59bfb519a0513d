"""Tests for Claude CLI resolution."""

from __future__ import annotations

import os
import shutil
import sys
from pathlib import Path

import pytest

import cli_resolver
from cli_resolver import ExecutableNotFoundError, _parse_cmd_shim, resolve_executable

posix_only = pytest.mark.skipif(sys.platform == "win32", reason="uses shell-script fakes")


def _fake_cli(path: Path, *, version: str = "2.0.14", exit_code: int = 0) -> Path:
    path.write_text(f'#!/bin/sh\necho "{version} (Claude Code)"\nexit {exit_code}\n', encoding="utf-8")
    path.chmod(0o755)
    return path


@posix_only
class TestResolveExecutable:
    @pytest.mark.asyncio
    async def test_explicit_path_validated(self, tmp_path: Path) -> None:
        cli = _fake_cli(tmp_path / "claude")
        resolved = await resolve_executable(str(cli))
        assert resolved.path == str(cli)
        assert resolved.version == "2.0.14"

    @pytest.mark.asyncio
    async def test_explicit_path_nonzero_exit(self, tmp_path: Path) -> None:
        cli = _fake_cli(tmp_path / "claude", exit_code=1)
        with pytest.raises(ExecutableNotFoundError):
            await resolve_executable(str(cli))

    @pytest.mark.asyncio
    async def test_explicit_path_without_version(self, tmp_path: Path) -> None:
        cli = _fake_cli(tmp_path / "claude", version="unknown")
        with pytest.raises(ExecutableNotFoundError):
            await resolve_executable(str(cli))

    @pytest.mark.asyncio
    async def test_explicit_path_missing(self, tmp_path: Path) -> None:
        with pytest.raises(ExecutableNotFoundError):
            await resolve_executable(str(tmp_path / "nope"))

    @pytest.mark.asyncio
    async def test_found_on_path(self, tmp_path: Path, monkeypatch) -> None:
        cli = _fake_cli(tmp_path / "claude")
        monkeypatch.setenv("PATH", str(tmp_path))

        resolved = await resolve_executable()

        assert Path(resolved.path) == cli
        assert resolved.script_path is None

    @pytest.mark.asyncio
    async def test_not_on_path(self, tmp_path: Path, monkeypatch) -> None:
        monkeypatch.setenv("PATH", str(tmp_path))
        with pytest.raises(ExecutableNotFoundError, match="not found on PATH"):
            await resolve_executable()

    @pytest.mark.asyncio
    async def test_traced_script_preferred(self, tmp_path: Path, monkeypatch) -> None:
        _fake_cli(tmp_path / "claude")
        script = _fake_cli(tmp_path / "cli.js", version="2.1.0")
        monkeypatch.setenv("PATH", str(tmp_path))

        async def fake_trace(wrapper: str):
            return str(script)

        monkeypatch.setattr(cli_resolver, "_trace_script_path", fake_trace)
        resolved = await resolve_executable()

        assert resolved.path == str(script)
        assert resolved.version == "2.1.0"
        assert resolved.script_path == str(script)

    @pytest.mark.asyncio
    async def test_broken_traced_script_falls_back_to_wrapper(self, tmp_path: Path, monkeypatch) -> None:
        wrapper = _fake_cli(tmp_path / "claude")
        script = _fake_cli(tmp_path / "cli.js", exit_code=3)
        monkeypatch.setenv("PATH", str(tmp_path))

        async def fake_trace(wrapper: str):
            return str(script)

        monkeypatch.setattr(cli_resolver, "_trace_script_path", fake_trace)
        resolved = await resolve_executable()

        assert Path(resolved.path) == wrapper
        assert resolved.script_path == str(script)

    @pytest.mark.asyncio
    async def test_trace_without_node_returns_none(self, tmp_path: Path) -> None:
        cli = _fake_cli(tmp_path / "claude")
        assert await cli_resolver._trace_script_path(str(cli)) is None

    @pytest.mark.asyncio
    @pytest.mark.skipif(shutil.which("node") is None, reason="needs node")
    async def test_node_wrapper_traced_to_script(self, tmp_path: Path, monkeypatch) -> None:
        node = shutil.which("node")
        script = tmp_path / "lib" / "cli.js"
        script.parent.mkdir()
        script.write_text('#!/usr/bin/env node\nconsole.log("2.0.1 (Claude Code)");\n', encoding="utf-8")
        script.chmod(0o755)
        wrapper = tmp_path / "bin" / "claude"
        wrapper.parent.mkdir()
        wrapper.write_text(f'#!/bin/sh\nexec "{node}" "{script}" "$@"\n', encoding="utf-8")
        wrapper.chmod(0o755)
        monkeypatch.setenv("PATH", os.pathsep.join([str(wrapper.parent), str(Path(node).parent)]))

        resolved = await resolve_executable()

        assert resolved.script_path == str(script.resolve())
        assert resolved.path == str(script.resolve())
        assert resolved.version == "2.0.1"


class TestParseCmdShim:
    def test_npm_shim(self, tmp_path: Path) -> None:
        script = tmp_path / "node_modules" / "@anthropic-ai" / "claude-code" / "cli.js"
        script.parent.mkdir(parents=True)
        script.write_text("// cli", encoding="utf-8")
        shim = tmp_path / "claude.cmd"
        shim.write_text(
            "@ECHO off\r\n"
            "SETLOCAL\r\n"
            'IF EXIST "%dp0%\\node.exe" (\r\n'
            '  SET "_prog=%dp0%\\node.exe"\r\n'
            ")\r\n"
            'endLocal & goto #_undefined_# 2>NUL || "%_prog%"  "%dp0%\\node_modules\\@anthropic-ai\\claude-code\\cli.js" %*\r\n',
            encoding="utf-8",
        )
        assert _parse_cmd_shim(str(shim)) == str(script.resolve())

    def test_legacy_shim(self, tmp_path: Path) -> None:
        script = tmp_path / "node_modules" / "pkg" / "cli.js"
        script.parent.mkdir(parents=True)
        script.write_text("// cli", encoding="utf-8")
        shim = tmp_path / "claude.cmd"
        shim.write_text('@"%~dp0\\node_modules\\pkg\\cli.js" %*\r\n', encoding="utf-8")
        assert _parse_cmd_shim(str(shim)) == str(script.resolve())

    def test_shim_pointing_to_missing_script(self, tmp_path: Path) -> None:
        shim = tmp_path / "claude.cmd"
        shim.write_text('"%dp0%\\node_modules\\gone\\cli.js" %*', encoding="utf-8")
        assert _parse_cmd_shim(str(shim)) is None

    def test_missing_shim(self, tmp_path: Path) -> None:
        assert _parse_cmd_shim(str(tmp_path / "claude.cmd")) is None
